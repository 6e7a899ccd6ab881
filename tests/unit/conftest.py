#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

import copy
from unittest.mock import MagicMock, patch

import pytest
from lightkube import Client
from lightkube.core.exceptions import ApiError
from lightkube.resources.core_v1 import Secret

from ingress import IngressRelocationManager
from lightkube_helpers import RESOURCE_TYPES
from models import RelocationConfig
from tls_secrets import encode_secret_data, generate_tls_key_pair

IngressController = RESOURCE_TYPES["ingress_controller"]
IngressConfig = RESOURCE_TYPES["ingress_config"]
Route = RESOURCE_TYPES["route"]
ClusterOperator = RESOURCE_TYPES["cluster_operator"]


def api_error(code: int, message: str = "error") -> ApiError:
    response = MagicMock()
    response.json.return_value = {
        "apiVersion": "v1",
        "kind": "Status",
        "code": code,
        "message": message,
    }
    return ApiError(response=response)


def apply_merge_patch(target, patch):
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class FakeClient:
    """An in-memory stand-in for the lightkube Client.

    Objects are stored as dictionaries. Merge patches are applied per RFC 7386
    and a stale resourceVersion is refused with a 409, like the API server does.
    """

    def __init__(self):
        self.objects = {}
        self.writes = []
        self.conflicts = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, resource, obj):
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = self._next_version()
        self.objects[(resource, metadata.get("namespace"), metadata["name"])] = obj

    def stored(self, resource, name, namespace=None):
        return self.objects.get((resource, namespace, name))

    def get(self, resource, name, *, namespace=None):
        obj = self.stored(resource, name, namespace)
        if obj is None:
            raise api_error(404, f"{name} not found")
        return resource.from_dict(copy.deepcopy(obj))

    def create(self, obj, *, namespace=None):
        resource = type(obj)
        data = copy.deepcopy(obj.to_dict())
        metadata = data["metadata"]
        key = (resource, metadata.get("namespace"), metadata["name"])
        if key in self.objects:
            raise api_error(409, "already exists")
        self.writes.append(("create", resource, metadata.get("namespace"), metadata["name"]))
        self.add(resource, data)
        return obj

    def patch(self, resource, name, obj, *, namespace=None, patch_type=None):
        stored = self.stored(resource, name, namespace)
        if stored is None:
            raise api_error(404, f"{name} not found")
        if self.conflicts:
            self.conflicts -= 1
            stored["metadata"]["resourceVersion"] = self._next_version()
            raise api_error(409, "the object has been modified")
        obj = copy.deepcopy(obj)
        expected_version = obj.get("metadata", {}).pop("resourceVersion", None)
        if expected_version and expected_version != stored["metadata"]["resourceVersion"]:
            raise api_error(409, "the object has been modified")
        self.writes.append(("patch", resource, namespace, name))
        updated = apply_merge_patch(stored, obj)
        updated["metadata"]["resourceVersion"] = self._next_version()
        self.objects[(resource, namespace, name)] = updated
        return resource.from_dict(copy.deepcopy(updated))

    def list(self, resource, *, namespace=None):
        for (kind, obj_namespace, _), obj in list(self.objects.items()):
            if kind is resource and namespace in ("*", obj_namespace):
                yield resource.from_dict(copy.deepcopy(obj))

    def delete(self, resource, name, *, namespace=None):
        if self.objects.pop((resource, namespace, name), None) is None:
            raise api_error(404, f"{name} not found")
        self.writes.append(("delete", resource, namespace, name))


def make_route(name, namespace, host, router_name="default"):
    return {
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"host": host},
        "status": {"ingress": [{"host": host, "routerName": router_name}]},
    }


def make_tls_secret(name, namespace, domain, secret_type="kubernetes.io/tls"):
    return {
        "metadata": {"name": name, "namespace": namespace},
        "type": secret_type,
        "data": encode_secret_data(generate_tls_key_pair(domain, "*.apps")),
    }


@pytest.fixture(autouse=True)
def mock_lightkube_client():
    """Global mock for the Lightkube Client to avoid loading kubeconfig in CI."""
    with patch.object(Client, "__init__", lambda self, *args, **kwargs: None):
        yield


@pytest.fixture()
def fake_client():
    client = FakeClient()
    client.add(
        IngressController,
        {
            "metadata": {"name": "default", "namespace": "openshift-ingress-operator"},
            "spec": {"replicas": 2, "httpErrorCodePages": {"name": "custom-pages"}},
        },
    )
    client.add(
        IngressConfig,
        {
            "metadata": {"name": "cluster"},
            "spec": {
                "domain": "apps.original.example.org",
                "loadBalancer": {"platform": {"type": "AWS"}},
            },
        },
    )
    client.add(
        ClusterOperator,
        {
            "metadata": {"name": "openshift-apiserver"},
            "status": {
                "conditions": [
                    {"type": "Available", "status": "True"},
                    {"type": "Progressing", "status": "False"},
                    {"type": "Degraded", "status": "False"},
                ]
            },
        },
    )
    return client


@pytest.fixture()
def relocation_config():
    return RelocationConfig(readiness_timeout=0, readiness_check_interval=0)


@pytest.fixture()
def relocation_manager(fake_client, relocation_config):
    return IngressRelocationManager(client=fake_client, config=relocation_config)
