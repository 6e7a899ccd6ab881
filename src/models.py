#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.
"""This module defines Pydantic schemas for the relocation request and the resources it drives."""
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from utils import build_owner_reference

RELOCATION_API_VERSION = "rhsyseng.github.io/v1beta1"
RELOCATION_KIND = "ClusterRelocation"
TLS_SECRET_TYPE = "kubernetes.io/tls"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


# Relocation request schema
class SecretReference(BaseModel):
    """SecretReference points at a secret by name and namespace."""

    name: str = ""
    namespace: str = ""

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class RelocationRequest(BaseModel):
    """RelocationRequest is the user's intent to move the cluster to a new domain."""

    domain: str = Field(min_length=1)
    certificate_ref: Optional[SecretReference] = Field(default=None, alias="ingressCertRef")
    name: str = "cluster"
    uid: str = Field(min_length=1)
    api_version: str = Field(default=RELOCATION_API_VERSION, alias="apiVersion")
    kind: str = RELOCATION_KIND
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def from_custom_resource(cls, resource: Dict[str, Any]) -> "RelocationRequest":
        """Build a request from a ClusterRelocation object as returned by the API server."""
        metadata = resource.get("metadata") or {}
        spec = resource.get("spec") or {}
        return cls(
            domain=spec.get("domain", ""),
            certificate_ref=spec.get("ingressCertRef"),
            name=metadata.get("name", "cluster"),
            uid=metadata.get("uid", ""),
            api_version=resource.get("apiVersion", RELOCATION_API_VERSION),
            kind=resource.get("kind", RELOCATION_KIND),
        )

    @property
    def apps_domain(self) -> str:
        return f"apps.{self.domain}"

    def owner_reference(self, controller: bool) -> Dict[str, Any]:
        """Return an owner reference pointing at the ClusterRelocation behind this request."""
        return build_owner_reference(self.api_version, self.kind, self.name, self.uid, controller)


# Secret ownership
class OwnershipPolicy(BaseModel):
    """OwnershipPolicy decides which copies of a replicated secret the request owns.

    Owned copies get an owner reference to the request. Controller-owned copies
    are garbage collected with it, merely owned ones are only watched.
    """

    own_original: bool
    original_owned_by_controller: bool
    own_destination: bool
    destination_owned_by_controller: bool
    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def validate_controller_implies_owned(self):
        """Validate that a controller-owned copy is also owned."""
        if self.original_owned_by_controller and not self.own_original:
            raise ValueError("original cannot be controller-owned without being owned")
        if self.destination_owned_by_controller and not self.own_destination:
            raise ValueError("destination cannot be controller-owned without being owned")
        return self


class CopyPolicy(Enum):
    """CopyPolicy names the ownership presets used when replicating ingress certificates."""

    # The original is already controlled by the request, only the copy needs an owner.
    GENERATED_OWNED = OwnershipPolicy(
        own_original=False,
        original_owned_by_controller=False,
        own_destination=True,
        destination_owned_by_controller=True,
    )
    # The original may be controlled by cert-manager or similar: watch it, never collect it.
    FOREIGN_READ_ONLY = OwnershipPolicy(
        own_original=True,
        original_owned_by_controller=False,
        own_destination=True,
        destination_owned_by_controller=True,
    )


# Cluster Ingress schema
class SecretNameReference(BaseModel):
    """SecretNameReference names a secret in the namespace implied by its consumer."""

    name: str


class ComponentRoute(BaseModel):
    """ComponentRoute overrides the hostname and serving certificate of a platform route."""

    name: str
    namespace: str
    hostname: str
    servingCertKeyPairSecret: SecretNameReference  # noqa: N815


class ComponentRouteTemplate(BaseModel):
    """ComponentRouteTemplate describes a well-known platform route to move."""

    name: str
    namespace: str
    subdomain: str

    def render(self, apps_domain: str, secret_name: str) -> ComponentRoute:
        """Return the component route for ``apps_domain`` served with ``secret_name``."""
        return ComponentRoute(
            name=self.name,
            namespace=self.namespace,
            hostname=f"{self.subdomain}.{apps_domain}",
            servingCertKeyPairSecret=SecretNameReference(name=secret_name),
        )


DEFAULT_COMPONENT_ROUTES = [
    ComponentRouteTemplate(
        name="console", namespace="openshift-console", subdomain="console-openshift-console"
    ),
    ComponentRouteTemplate(
        name="downloads", namespace="openshift-console", subdomain="downloads-openshift-console"
    ),
    ComponentRouteTemplate(
        name="oauth-openshift", namespace="openshift-authentication", subdomain="oauth-openshift"
    ),
]

# open-cluster-management-agent-addon: the Klusterlet add-on ignores spec.appsDomain and
# always re-creates its Route with the original domain. Drop it once
# https://github.com/stolostron/multicloud-operators-foundation/pull/642 is released.
DEFAULT_ROUTE_EXCLUSIONS = frozenset(
    {"openshift-console", "openshift-authentication", "open-cluster-management-agent-addon"}
)


# Configuration
class RelocationConfig(BaseModel):
    """RelocationConfig holds the well-known names the reconciler works against."""

    ingress_namespace: str = "openshift-ingress"
    config_namespace: str = "openshift-config"
    generated_secret_name: str = "generated-ingress-secret"
    copied_secret_name: str = "copied-ingress-secret"
    ingress_controller_namespace: str = "openshift-ingress-operator"
    ingress_controller_name: str = "default"
    cluster_ingress_name: str = "cluster"
    default_router_name: str = "default"
    readiness_cluster_operator: str = "openshift-apiserver"
    route_exclusions: FrozenSet[str] = DEFAULT_ROUTE_EXCLUSIONS
    component_routes: List[ComponentRouteTemplate] = Field(
        default_factory=lambda: list(DEFAULT_COMPONENT_ROUTES)
    )
    wildcard_prefix: str = "*.apps"
    field_manager: str = "cluster-relocation"
    readiness_timeout: int = Field(default=600, ge=0)
    readiness_check_interval: int = Field(default=10, ge=0)
    conflict_retries: int = Field(default=5, ge=1)
    model_config = ConfigDict(frozen=True)
