"""Shared fixtures: factories for kubernetes client models."""

import pytest
from kubernetes import client

RBAC_GROUP = "rbac.authorization.k8s.io"


@pytest.fixture
def api_resource():
    def make(name, kind, verbs, short_names=None, singular_name=""):
        return client.V1APIResource(
            name=name,
            kind=kind,
            namespaced=True,
            singular_name=singular_name,
            short_names=short_names,
            verbs=verbs,
        )

    return make


@pytest.fixture
def rule():
    def make(verbs, resources=None, resource_names=None, non_resource_urls=None):
        return client.V1PolicyRule(
            verbs=verbs,
            resources=resources,
            resource_names=resource_names,
            non_resource_ur_ls=non_resource_urls,
        )

    return make


@pytest.fixture
def role():
    def make(name, rules, namespace="default"):
        return client.V1Role(metadata=client.V1ObjectMeta(name=name, namespace=namespace), rules=rules)

    return make


@pytest.fixture
def cluster_role():
    def make(name, rules):
        return client.V1ClusterRole(metadata=client.V1ObjectMeta(name=name), rules=rules)

    return make


def _subjects(subjects):
    return [client.RbacV1Subject(kind=kind, name=name, namespace=ns) for kind, name, ns in subjects]


@pytest.fixture
def role_binding():
    def make(name, role_kind, role_name, subjects, namespace="default"):
        return client.V1RoleBinding(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            role_ref=client.V1RoleRef(api_group=RBAC_GROUP, kind=role_kind, name=role_name),
            subjects=_subjects(subjects),
        )

    return make


@pytest.fixture
def cluster_role_binding():
    def make(name, role_name, subjects):
        return client.V1ClusterRoleBinding(
            metadata=client.V1ObjectMeta(name=name),
            role_ref=client.V1RoleRef(api_group=RBAC_GROUP, kind="ClusterRole", name=role_name),
            subjects=_subjects(subjects),
        )

    return make
