#!/usr/bin/env python3
# kube_who_can.py - Which subjects can perform VERB on a resource (or non-resource URL)?
#
# Resolves the requested resource against the cluster's discovery data, then walks
# every Role/ClusterRole and RoleBinding/ClusterRoleBinding to list the bindings and
# subjects that grant it. Read-only: nothing is ever written to the cluster.
#
# Requires:
# pip install "kubernetes>=29.0.0,<36"
#
# Usage:
# python kube_who_can.py VERB (TYPE | TYPE/NAME | NONRESOURCEURL)
# [--namespace NS | --all-namespaces] [--subresource SUB]
# [--context NAME] [--kubeconfig PATH] [--output table|json]
import argparse
import json
import os
import sys
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional, Tuple

from kubernetes import client, config
from kubernetes.client import ApiException

VERB_ALL = "*"
RESOURCE_ALL = "*"
NON_RESOURCE_ALL = "*"
NAMESPACE_ALL = ""
CLUSTER_ROLE_KIND = "ClusterRole"
RBAC_GROUP = "rbac.authorization.k8s.io"
RBAC_RESOURCES = {"roles", "rolebindings", "clusterroles", "clusterrolebindings"}

SA_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

USAGE = "kube-who-can VERB (TYPE | TYPE/NAME | NONRESOURCEURL) [flags]"
EXAMPLES = """examples:
  # List who can get pods in any namespace
  kube-who-can get pods --all-namespaces

  # List who can get the service named "mongodb" in the namespace "bar"
  kube-who-can get svc/mongodb --namespace bar

  # List who can read pod logs
  kube-who-can get pods --subresource=log

  # List who can access the URL /logs/
  kube-who-can get /logs
"""


# ----------------------------- Helpers -----------------------------
def ts():
    return datetime.now(timezone.utc).isoformat()


def api_error(e: ApiException) -> str:
    return f"{e.status} {e.reason}"


def binding_subjects(sbj_list):
    out = []
    for s in sbj_list or []:
        out.append({"kind": s.kind, "name": s.name, "namespace": s.namespace})
    return out


# ----------------------------- Errors -----------------------------
class WhoCanError(Exception):
    """Base class for every error reported to the user."""


class ResourceNotFound(WhoCanError):
    def __init__(self, name: str):
        super().__init__(f'the server doesn\'t have a resource type "{name}"')
        self.name = name


class VerbNotSupported(WhoCanError):
    def __init__(self, resource: str, verb: str, supported: List[str]):
        super().__init__(
            f'the "{resource}" resource does not support the "{verb}" verb, only [{" ".join(supported)}]'
        )
        self.resource = resource
        self.verb = verb
        self.supported = supported


class DiscoveryFailure(WhoCanError):
    pass


class MappingFailure(WhoCanError):
    pass


class NamespaceError(WhoCanError):
    pass


class InventoryFailure(WhoCanError):
    pass


class AccessCheckFailure(WhoCanError):
    pass


# ----------------------------- Discovery -----------------------------
class Discovery:
    """
    Thin wrapper over the discovery endpoints (/api and /apis).
    preferred_resources() is fetched once per instance; build a new instance for a new cluster snapshot.
    """

    def __init__(self, api_client: client.ApiClient):
        self.api_client = api_client
        self._preferred: Optional[List[Tuple[str, client.V1APIResource]]] = None

    def server_groups(self) -> List[client.V1APIGroup]:
        core_versions = client.CoreApi(self.api_client).get_api_versions()
        versions = [client.V1GroupVersionForDiscovery(group_version=v, version=v) for v in core_versions.versions or []]
        groups = []
        if versions:
            groups.append(client.V1APIGroup(name="", versions=versions, preferred_version=versions[0]))
        groups += client.ApisApi(self.api_client).get_api_versions().groups or []
        return groups

    def server_resources_for_group_version(self, group_version: str) -> client.V1APIResourceList:
        if "/" not in group_version:
            return client.CoreV1Api(self.api_client).get_api_resources()
        return self.api_client.call_api(
            f"/apis/{group_version}",
            "GET",
            header_params={"Accept": "application/json"},
            response_type="V1APIResourceList",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
        )

    def preferred_resources(self) -> List[Tuple[str, client.V1APIResource]]:
        """(group name, resource) for every resource served by a group's preferred version."""
        if self._preferred is not None:
            return self._preferred
        try:
            groups = self.server_groups()
        except ApiException as e:
            raise DiscoveryFailure(f"getting API groups: {api_error(e)}") from e

        out = []
        for g in groups:
            preferred = g.preferred_version.group_version if g.preferred_version else None
            for v in g.versions or []:
                # Consider only preferred versions
                if v.group_version != preferred:
                    continue
                try:
                    rs_list = self.server_resources_for_group_version(v.group_version)
                except ApiException as e:
                    raise DiscoveryFailure(f"getting resources for API group: {api_error(e)}") from e
                for res in rs_list.resources or []:
                    out.append((g.name, res))
        self._preferred = out
        return out


class RESTMapper:
    """Maps a loose resource token (singular, kind, plural, optionally `.group`-qualified) to its plural name."""

    def __init__(self, discovery: Discovery):
        self.discovery = discovery

    def resource_for(self, token: str) -> str:
        resource, _, group = token.lower().partition(".")
        if not resource:
            raise MappingFailure(f'no matches for resource "{token}"')
        for grp, res in self.discovery.preferred_resources():
            if "/" in res.name:
                continue
            if group and grp != group:
                continue
            if resource in (res.name, (res.singular_name or "").lower(), (res.kind or "").lower()):
                return res.name
        raise MappingFailure(f'no matches for resource "{token}"')


# ----------------------------- Resource Resolution -----------------------------
def index_resources(discovery: Discovery) -> Dict[str, client.V1APIResource]:
    """Lookup index keyed by plural name, every short name, and `<parent>/<sub>` for sub-resources."""
    index = {}
    for _, res in discovery.preferred_resources():
        index[res.name] = res
        for sn in res.short_names or []:
            index[sn] = res
    return index


def is_verb_supported_by(verb: str, resource: client.V1APIResource) -> bool:
    if verb == VERB_ALL:
        return True
    return verb in (resource.verbs or [])


class ResourceResolver:
    def __init__(self, discovery: Discovery, mapper: Optional[RESTMapper] = None):
        self.discovery = discovery
        self.mapper = mapper or RESTMapper(discovery)
        self._index: Optional[Dict[str, client.V1APIResource]] = None

    @property
    def index(self) -> Dict[str, client.V1APIResource]:
        if self._index is None:
            self._index = index_resources(self.discovery)
        return self._index

    def resolve(self, verb: str, resource: str, sub_resource: str = "") -> str:
        """
        Canonical name of `resource` (e.g. `persistentvolumes` for `pv`, `pods/log` with sub-resource `log`).
        Raises ResourceNotFound, VerbNotSupported or DiscoveryFailure.
        """
        if resource == RESOURCE_ALL:
            return resource

        name = f"{resource}/{sub_resource}" if sub_resource else resource
        try:
            api_resource = self._lookup(resource)
        except MappingFailure as e:
            raise ResourceNotFound(name) from e
        if sub_resource:
            api_resource = self.index.get(f"{api_resource.name}/{sub_resource}")
            if api_resource is None:
                raise ResourceNotFound(name)

        if not is_verb_supported_by(verb, api_resource):
            raise VerbNotSupported(api_resource.name, verb, list(api_resource.verbs or []))
        return api_resource.name

    def _lookup(self, resource: str) -> client.V1APIResource:
        found = self.index.get(resource)
        if found is not None:
            return found
        mapped = self.mapper.resource_for(resource)
        found = self.index.get(mapped)
        if found is None:
            raise MappingFailure(f'"{resource}" mapped to unknown resource "{mapped}"')
        return found


# ----------------------------- Policy Rule Matching -----------------------------
def _contains(values, value: str, wildcard: str) -> bool:
    values = values or []
    return wildcard in values or value in values


def policy_rule_matches(
    rule: client.V1PolicyRule, verb: str, resource: str = "", resource_name: str = "", non_resource_url: str = ""
) -> bool:
    if not _contains(rule.verbs, verb, VERB_ALL):
        return False
    if non_resource_url:
        return _contains(rule.non_resource_ur_ls, non_resource_url, NON_RESOURCE_ALL)
    if not _contains(rule.resources, resource, RESOURCE_ALL):
        return False
    # no resourceNames -> any object; otherwise the name must be listed verbatim
    return not rule.resource_names or resource_name in rule.resource_names


# ----------------------------- Role Reference Index -----------------------------
class RoleIdentity(NamedTuple):
    name: str
    is_cluster_role: bool


class RoleIndex:
    def __init__(self):
        self._roles = set()

    def add(self, name: str, is_cluster_role: bool):
        self._roles.add(RoleIdentity(name, is_cluster_role))

    def match(self, role_ref: client.V1RoleRef) -> bool:
        return RoleIdentity(role_ref.name, role_ref.kind == CLUSTER_ROLE_KIND) in self._roles

    def __contains__(self, identity) -> bool:
        return identity in self._roles

    def __len__(self):
        return len(self._roles)


# ----------------------------- Binding Aggregation -----------------------------
class Inventory(NamedTuple):
    roles: List[client.V1Role]
    cluster_roles: List[client.V1ClusterRole]
    role_bindings: List[client.V1RoleBinding]
    cluster_role_bindings: List[client.V1ClusterRoleBinding]


def index_granting_roles(index: RoleIndex, roles, is_cluster_role: bool, **action):
    for r in roles or []:
        if any(policy_rule_matches(rule, **action) for rule in r.rules or []):
            index.add(r.metadata.name, is_cluster_role)


def bindings_referencing(index: RoleIndex, bindings) -> list:
    return [b for b in bindings or [] if index.match(b.role_ref)]


def compute_granting_bindings(
    verb: str,
    resource: str,
    resource_name: str,
    non_resource_url: str,
    roles,
    cluster_roles,
    role_bindings,
    cluster_role_bindings,
):
    """
    Returns (matching RoleBindings, matching ClusterRoleBindings), each in inventory order.
    Non-resource URLs are authorized cluster-wide only, so no RoleBinding is reported for them.
    """
    action = dict(verb=verb, resource=resource, resource_name=resource_name, non_resource_url=non_resource_url)
    index = RoleIndex()
    index_granting_roles(index, roles, False, **action)
    index_granting_roles(index, cluster_roles, True, **action)

    matching_rbs = [] if non_resource_url else bindings_referencing(index, role_bindings)
    matching_crbs = bindings_referencing(index, cluster_role_bindings)
    return matching_rbs, matching_crbs


# ----------------------------- Inventory -----------------------------
def fetch_inventory(rbac: client.RbacAuthorizationV1Api, namespace: str) -> Inventory:
    if namespace == NAMESPACE_ALL:
        calls = [
            ("roles", rbac.list_role_for_all_namespaces),
            ("rolebindings", rbac.list_role_binding_for_all_namespaces),
        ]
    else:
        calls = [
            ("roles", lambda: rbac.list_namespaced_role(namespace)),
            ("rolebindings", lambda: rbac.list_namespaced_role_binding(namespace)),
        ]
    calls += [
        ("clusterroles", rbac.list_cluster_role),
        ("clusterrolebindings", rbac.list_cluster_role_binding),
    ]

    items = {}
    for kind, list_fn in calls:
        try:
            items[kind] = list_fn().items or []
        except ApiException as e:
            raise InventoryFailure(f"listing {kind}: {api_error(e)}") from e
    return Inventory(items["roles"], items["clusterroles"], items["rolebindings"], items["clusterrolebindings"])


# ----------------------------- Authorization (SSAR) -----------------------------
def can_i(authz_api, verb, resource, group="", namespace=None, name=None, subresource=None):
    spec = client.V1SelfSubjectAccessReviewSpec(
        resource_attributes=client.V1ResourceAttributes(
            verb=verb,
            resource=resource,
            group=group or "",
            namespace=namespace,
            name=name,
            subresource=subresource,
        )
    )
    body = client.V1SelfSubjectAccessReview(spec=spec)
    resp = authz_api.create_self_subject_access_review(body=body)
    allowed = bool(resp.status.allowed)
    reason = resp.status.reason or ""
    return allowed, reason


class AccessChecker:
    def __init__(self, authz_api: client.AuthorizationV1Api):
        self.authz_api = authz_api

    def is_allowed_to(self, verb: str, resource: str, namespace: str = NAMESPACE_ALL) -> bool:
        group = RBAC_GROUP if resource in RBAC_RESOURCES else ""
        try:
            allowed, _ = can_i(self.authz_api, verb, resource, group=group, namespace=namespace or None)
        except ApiException as e:
            where = f" in ns/{namespace}" if namespace else ""
            raise AccessCheckFailure(f"checking access to {verb} {resource}{where}: {api_error(e)}") from e
        return allowed


def check_api_access(access_checker, core: client.CoreV1Api, namespace: str) -> List[str]:
    """
    Warnings for every list permission the caller lacks that would make the result incomplete.
    """
    checks = []
    if namespace == NAMESPACE_ALL:
        checks.append(("list", "namespaces", NAMESPACE_ALL))
        try:
            namespaces = [n.metadata.name for n in core.list_namespace().items or []]
        except ApiException as e:
            raise NamespaceError(f"listing namespaces: {api_error(e)}") from e
    else:
        namespaces = [namespace]

    for ns in namespaces:
        checks.append(("list", "roles", ns))
        checks.append(("list", "rolebindings", ns))

    warnings = []
    for verb, resource, ns in checks:
        if access_checker.is_allowed_to(verb, resource, ns):
            continue
        if ns == NAMESPACE_ALL:
            warnings.append(f"The user is not allowed to {verb} {resource}")
        else:
            warnings.append(f"The user is not allowed to {verb} {resource} in the {ns} namespace")
    return warnings


def print_api_access_warnings(warnings: Optional[List[str]], out=None):
    if not warnings:
        return
    out = out or sys.stdout
    out.write("Warning: The list might not be complete due to missing permission(s):\n")
    for w in warnings:
        out.write(f"\t{w}\n")
    out.write("\n")


# ----------------------------- Arguments / Namespace -----------------------------
class Action(NamedTuple):
    verb: str
    resource: str = ""
    resource_name: str = ""
    non_resource_url: str = ""
    sub_resource: str = ""

    def pretty(self) -> str:
        if self.non_resource_url:
            return f"{self.verb} {self.non_resource_url}"
        name = f"/{self.resource_name}" if self.resource_name else ""
        return f"{self.verb} {self.resource}{name}"


def resolve_args(args: List[str], sub_resource: str, resolver) -> Action:
    if len(args) < 2:
        raise WhoCanError("you must specify two or three arguments: verb, resource, and optional resourceName")

    verb, target = args[0], args[1]
    if target.startswith("/"):
        return Action(verb, non_resource_url=target, sub_resource=sub_resource)

    resource, _, resource_name = target.partition("/")
    try:
        resource = resolver.resolve(verb, resource, sub_resource)
    except WhoCanError as e:
        raise WhoCanError(f"resolving resource: {e}") from e
    return Action(verb, resource=resource, resource_name=resource_name, sub_resource=sub_resource)


def context_namespace(kubeconfig: Optional[str] = None, context: Optional[str] = None) -> str:
    try:
        contexts, active = config.list_kube_config_contexts(config_file=kubeconfig)
    except Exception as e:
        # no kubeconfig: running in a pod
        if os.path.isfile(SA_NAMESPACE_FILE):
            with open(SA_NAMESPACE_FILE, "r", encoding="utf-8") as f:
                return f.read().strip()
        raise NamespaceError(f"getting namespace from current context: {e}") from e

    if context:
        active = next((c for c in contexts or [] if c.get("name") == context), None)
        if active is None:
            raise NamespaceError(f'getting namespace from current context: context "{context}" not found')
    return ((active or {}).get("context") or {}).get("namespace") or "default"


def resolve_namespace(namespace: Optional[str], all_namespaces: bool, current=context_namespace) -> str:
    if all_namespaces:
        return NAMESPACE_ALL
    if namespace:
        return namespace
    return current()


class NamespaceValidator:
    def __init__(self, core: client.CoreV1Api):
        self.core = core

    def validate(self, name: str):
        if name == NAMESPACE_ALL:
            return
        try:
            ns = self.core.read_namespace(name)
        except ApiException as e:
            if e.status == 404:
                raise NamespaceError(f'"{name}" not found') from e
            raise NamespaceError(f"getting namespace: {api_error(e)}") from e
        phase = ns.status.phase if ns.status else None
        if phase != "Active":
            raise NamespaceError(f"invalid status: {phase}")


def validate(action: Action, namespace: str, namespace_validator):
    if action.non_resource_url and action.sub_resource:
        raise WhoCanError("--subresource cannot be used with NONRESOURCEURL")
    try:
        namespace_validator.validate(namespace)
    except WhoCanError as e:
        raise WhoCanError(f"validating namespace: {e}") from e


# ----------------------------- Output -----------------------------
def format_table(header: List[str], rows: List[List[str]]) -> str:
    table = [header] + rows
    widths = [max(len(r[i] or "") for r in table) + 2 for i in range(len(header) - 1)]
    lines = []
    for r in table:
        cells = [(c or "").ljust(w) for c, w in zip(r, widths)]
        lines.append("".join(cells) + (r[-1] or ""))
    return "\n".join(lines) + "\n"


def render_table(action: Action, role_bindings, cluster_role_bindings) -> str:
    out = ""
    pretty = action.pretty()
    if not action.non_resource_url:
        if not role_bindings:
            out += f"No subjects found with permissions to {pretty} assigned through RoleBindings\n"
        else:
            rows = [
                [rb.metadata.name, rb.metadata.namespace, s.name, s.kind, s.namespace]
                for rb in role_bindings
                for s in rb.subjects or []
            ]
            out += format_table(["ROLEBINDING", "NAMESPACE", "SUBJECT", "TYPE", "SA-NAMESPACE"], rows)
        out += "\n"

    if not cluster_role_bindings:
        out += f"No subjects found with permissions to {pretty} assigned through ClusterRoleBindings\n"
    else:
        rows = [[crb.metadata.name, s.name, s.kind, s.namespace] for crb in cluster_role_bindings for s in crb.subjects or []]
        out += format_table(["CLUSTERROLEBINDING", "SUBJECT", "TYPE", "SA-NAMESPACE"], rows)
    return out


def _binding_entry(b, kind: str):
    return {
        "kind": kind,
        "name": b.metadata.name,
        "namespace": b.metadata.namespace if kind == "RoleBinding" else None,
        "roleRef": f"{b.role_ref.kind}:{b.role_ref.name}",
        "subjects": binding_subjects(b.subjects),
    }


def build_results(action: Action, namespace: str, warnings: List[str], role_bindings, cluster_role_bindings):
    return {
        "generated_at": ts(),
        "action": {
            "verb": action.verb,
            "resource": action.resource,
            "resource_name": action.resource_name,
            "non_resource_url": action.non_resource_url,
        },
        "namespace": namespace or None,
        "warnings": warnings,
        "role_bindings": [_binding_entry(b, "RoleBinding") for b in role_bindings],
        "cluster_role_bindings": [_binding_entry(b, "ClusterRoleBinding") for b in cluster_role_bindings],
    }


# ----------------------------- Main -----------------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="kube-who-can",
        usage=USAGE,
        description="Shows which users, groups and service accounts can perform a given verb on a given resource type.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    ap.add_argument("args", nargs="*", metavar="VERB TARGET", help="verb and TYPE, TYPE/NAME or NONRESOURCEURL")
    ap.add_argument("--context", help="kubeconfig context name")
    ap.add_argument("--kubeconfig", help="path to kubeconfig")
    ap.add_argument("-n", "--namespace", help="namespace scope of the query")
    ap.add_argument("-A", "--all-namespaces", action="store_true", help="query all namespaces")
    ap.add_argument("--subresource", default="", help="sub-resource such as pod/log or deployment/scale")
    ap.add_argument("-o", "--output", choices=["table", "json"], default="table", help="output format")
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)

    # Load config
    try:
        if args.kubeconfig or args.context:
            config.load_kube_config(config_file=args.kubeconfig, context=args.context)
        else:
            try:
                config.load_kube_config()
            except Exception:
                config.load_incluster_config()
    except Exception as e:
        print(f"[fatal] failed to configure kube client: {e}", file=sys.stderr)
        sys.exit(2)

    # Clients
    core = client.CoreV1Api()
    rbac = client.RbacAuthorizationV1Api()
    authz = client.AuthorizationV1Api()
    resolver = ResourceResolver(Discovery(core.api_client))

    try:
        action = resolve_args(args.args, args.subresource, resolver)
        namespace = resolve_namespace(
            args.namespace, args.all_namespaces, lambda: context_namespace(args.kubeconfig, args.context)
        )
        validate(action, namespace, NamespaceValidator(core))
        warnings = check_api_access(AccessChecker(authz), core, namespace)
        inventory = fetch_inventory(rbac, namespace)
    except WhoCanError as e:
        print(f"[error] {e}", file=sys.stderr)
        return 1

    role_bindings, cluster_role_bindings = compute_granting_bindings(
        action.verb,
        action.resource,
        action.resource_name,
        action.non_resource_url,
        inventory.roles,
        inventory.cluster_roles,
        inventory.role_bindings,
        inventory.cluster_role_bindings,
    )

    if args.output == "json":
        for w in warnings:
            print(f"[warn] {w}", file=sys.stderr)
        results = build_results(action, namespace, warnings, role_bindings, cluster_role_bindings)
        print(json.dumps(results, indent=2, sort_keys=True))
    else:
        print_api_access_warnings(warnings)
        sys.stdout.write(render_table(action, role_bindings, cluster_role_bindings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
