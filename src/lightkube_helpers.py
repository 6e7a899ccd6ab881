#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""A helper module that extends lightkube functionality in managing OpenShift resources."""


import copy
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from httpx import HTTPError
from lightkube.core.client import Client
from lightkube.core.exceptions import ApiError
from lightkube.generic_resource import create_global_resource, create_namespaced_resource
from lightkube.resources.core_v1 import Secret
from lightkube.types import PatchType

from utils import DependencyError, OperationResult, compute_merge_patch, prune_empty

logger = logging.getLogger(__name__)

ALL_NAMESPACES = "*"

RESOURCE_TYPES = {
    "secret": Secret,
    "ingress_controller": create_namespaced_resource(
        "operator.openshift.io", "v1", "IngressController", "ingresscontrollers"
    ),
    "ingress_config": create_global_resource(
        "config.openshift.io", "v1", "Ingress", "ingresses"
    ),
    "route": create_namespaced_resource("route.openshift.io", "v1", "Route", "routes"),
    "cluster_operator": create_global_resource(
        "config.openshift.io", "v1", "ClusterOperator", "clusteroperators"
    ),
}

Mutator = Callable[[Dict[str, Any]], None]


def _object_key(name: str, namespace: Optional[str]) -> str:
    return f"{namespace}/{name}" if namespace else name


def _as_dict(obj) -> Dict[str, Any]:
    return prune_empty(copy.deepcopy(obj.to_dict()))


def is_cluster_operator_ready(cluster_operator: Dict[str, Any]) -> bool:
    """Return True when a ClusterOperator is available, settled and healthy."""
    conditions = {
        condition.get("type"): condition.get("status")
        for condition in (cluster_operator.get("status") or {}).get("conditions") or []
    }
    return (
        conditions.get("Available") == "True"
        and conditions.get("Progressing", "False") == "False"
        and conditions.get("Degraded", "False") == "False"
    )


class KubernetesCRDManager:
    """Cluster resources manager.

    Every read returns a plain dictionary and every failure talking to the API
    server surfaces as a DependencyError.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        field_manager: str = "cluster-relocation",
        conflict_retries: int = 5,
    ):
        self.client = client if client is not None else Client(field_manager=field_manager)
        self.conflict_retries = conflict_retries
        self.resources = RESOURCE_TYPES

    def _resource(self, resource_type: str):
        if resource_type not in self.resources:
            raise ValueError(f"Unsupported resource type: {resource_type}")
        return self.resources[resource_type]

    def get_resource(
        self, resource_type: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Return the specified resource by type and name.

        Args:
            resource_type (str): The type of the resource to retrieve.
            name (str): The name of the resource to retrieve.
            namespace (Optional[str]): The namespace of the resource, None if cluster-scoped.

        Returns:
            Optional[Dict[str, Any]]: The resource as a dictionary, None if it does not exist.

        Raises:
            DependencyError: if the API server could not be queried.
        """
        resource = self._resource(resource_type)
        try:
            obj = self.client.get(resource, name=name, namespace=namespace)
        except ApiError as e:
            if e.status.code == 404:
                logger.debug(f"Resource {resource_type} {_object_key(name, namespace)} not found")
                return None
            raise DependencyError(
                f"Failed to get {resource_type} {_object_key(name, namespace)}: {e}"
            ) from e
        except HTTPError as e:
            raise DependencyError(
                f"Failed to get {resource_type} {_object_key(name, namespace)}: {e}"
            ) from e
        return _as_dict(obj)

    def create_or_update(
        self,
        resource_type: str,
        name: str,
        namespace: Optional[str],
        mutate: Mutator,
        create_missing: bool = True,
    ) -> OperationResult:
        """Converge a resource through read, mutate and conditional write.

        ``mutate`` receives a copy of the current object (or a bare skeleton when
        the object is missing) and edits it in place. Only the fields it changed
        are sent, as a JSON merge patch pinned to the resourceVersion that was
        read. Setting a field to None removes it. On a write conflict the whole
        cycle is repeated from a fresh read.

        Args:
            resource_type (str): The type of the resource to converge.
            name (str): The name of the resource.
            namespace (Optional[str]): The namespace of the resource, None if cluster-scoped.
            mutate (Mutator): Callback editing the object towards the desired state.
            create_missing (bool): Create the object when it does not exist yet. When False a
                missing object is an error.

        Returns:
            OperationResult: whether the object was created, updated or left unchanged.

        Raises:
            DependencyError: on API failures, a missing object that may not be created, or
                when every retry conflicted.
        """
        resource = self._resource(resource_type)
        key = _object_key(name, namespace)

        for _ in range(self.conflict_retries):
            current = self.get_resource(resource_type, name, namespace)

            if current is None:
                if not create_missing:
                    raise DependencyError(f"{resource_type} {key} not found")
                metadata = {"name": name}
                if namespace:
                    metadata["namespace"] = namespace
                desired: Dict[str, Any] = {"metadata": metadata}
                mutate(desired)
                try:
                    self.client.create(resource.from_dict(prune_empty(desired)))
                except ApiError as e:
                    if e.status.code == 409:
                        logger.info(f"{resource_type} {key} was created concurrently, retrying")
                        continue
                    raise DependencyError(f"Failed to create {resource_type} {key}: {e}") from e
                except HTTPError as e:
                    raise DependencyError(f"Failed to create {resource_type} {key}: {e}") from e
                return OperationResult.CREATED

            desired = copy.deepcopy(current)
            mutate(desired)
            patch = compute_merge_patch(current, prune_empty(desired))
            if not patch:
                return OperationResult.NONE

            resource_version = current.get("metadata", {}).get("resourceVersion")
            if resource_version:
                patch.setdefault("metadata", {})["resourceVersion"] = resource_version
            try:
                self.client.patch(
                    resource,
                    name,
                    patch,
                    namespace=namespace,
                    patch_type=PatchType.MERGE,
                )
            except ApiError as e:
                if e.status.code == 409:
                    logger.info(f"{resource_type} {key} changed while patching, retrying")
                    continue
                raise DependencyError(f"Failed to patch {resource_type} {key}: {e}") from e
            except HTTPError as e:
                raise DependencyError(f"Failed to patch {resource_type} {key}: {e}") from e
            return OperationResult.UPDATED

        raise DependencyError(
            f"Gave up on {resource_type} {key} after {self.conflict_retries} conflicting writes"
        )

    def list_resources(
        self, resource_type: str, namespace: str = ALL_NAMESPACES
    ) -> List[Dict[str, Any]]:
        """Return every resource of the given type, across all namespaces by default.

        Raises:
            DependencyError: if the API server could not be queried.
        """
        resource = self._resource(resource_type)
        try:
            return [_as_dict(obj) for obj in self.client.list(resource, namespace=namespace)]
        except ApiError as e:
            raise DependencyError(f"Failed to list {resource_type}: {e}") from e
        except HTTPError as e:
            raise DependencyError(f"Failed to list {resource_type}: {e}") from e

    def delete_resource(self, resource_type: str, name: str, namespace: Optional[str]) -> bool:
        """Delete the specified resource by type and name in the given namespace.

        Args:
            resource_type (str): The type of the resource to delete.
            name (str): The name of the resource to delete.
            namespace (Optional[str]): The namespace of the resource to delete.

        Returns:
            bool: True if the resource was deleted, False if it was already gone.

        Raises:
            DependencyError: if the deletion failed for any other reason.
        """
        resource = self._resource(resource_type)
        key = _object_key(name, namespace)
        try:
            self.client.delete(resource, name=name, namespace=namespace)
        except ApiError as e:
            if e.status.code == 404:
                logger.info(f"Resource {key} not found, skipping deletion.")
                return False
            raise DependencyError(f"Failed to delete {resource_type} {key}: {e}") from e
        except HTTPError as e:
            raise DependencyError(f"Failed to delete {resource_type} {key}: {e}") from e
        return True

    def wait_for_cluster_operator(
        self,
        name: str,
        timeout: int,
        check_interval: int,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Block until the named ClusterOperator reports ready.

        Setting ``cancel`` stops the wait at the next check or mid-sleep.

        Raises:
            DependencyError: if the operator cannot be read, the wait was
                cancelled, or it is still not ready once ``timeout`` seconds
                worth of checks have elapsed.
        """
        if cancel is None:
            cancel = threading.Event()
        attempts = max(1, timeout // max(check_interval, 1))

        for attempt in range(attempts):
            if cancel.is_set():
                raise DependencyError(f"Cancelled waiting for ClusterOperator {name}")
            cluster_operator = self.get_resource("cluster_operator", name)
            if cluster_operator is not None and is_cluster_operator_ready(cluster_operator):
                logger.debug(f"ClusterOperator {name} is ready")
                return
            if cluster_operator is None:
                logger.warning(f"ClusterOperator {name} not found, retrying...")
            else:
                logger.warning(f"ClusterOperator {name} not ready, retrying...")
            if attempt < attempts - 1 and cancel.wait(check_interval):
                raise DependencyError(f"Cancelled waiting for ClusterOperator {name}")

        raise DependencyError(f"ClusterOperator {name} not ready after {timeout} seconds")
