#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Ingress relocation.

Moves the cluster's ingress identity (default certificate, apps domain and
the console/oauth component routes) to the domain of a relocation request, and
puts it back when the request goes away.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from lightkube.core.client import Client

from lightkube_helpers import KubernetesCRDManager
from models import (
    TLS_CERT_KEY,
    TLS_SECRET_TYPE,
    CopyPolicy,
    RelocationConfig,
    RelocationRequest,
    SecretReference,
)
from tls_secrets import (
    copy_secret,
    decode_secret_value,
    encode_secret_data,
    generate_tls_key_pair,
    get_cert_common_name,
    validate_secret_type,
)
from utils import OperationResult, ValidationError, set_owner_reference

logger = logging.getLogger(__name__)

ReconcileReport = Dict[str, OperationResult]


class IngressRelocationManager:
    """Reconciles the cluster ingress against a relocation request.

    Every step reads the current state and writes only what differs, so any
    entry point can be re-run after a failure to converge again.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        config: Optional[RelocationConfig] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.config = config or RelocationConfig()
        self.manager = KubernetesCRDManager(
            client=client,
            field_manager=self.config.field_manager,
            conflict_retries=self.config.conflict_retries,
        )
        self.logger = log or logger

    def _log_result(self, op: OperationResult, message: str) -> None:
        if op != OperationResult.NONE:
            self.logger.info(f"{message} (OperationResult: {op.value})")

    def reconcile(self, request: RelocationRequest) -> ReconcileReport:
        """Converge the certificate, the IngressController and the cluster Ingress.

        Returns:
            ReconcileReport: the outcome of every write, keyed by resource.

        Raises:
            ValidationError: if the certificate reference is incomplete or not a TLS secret.
            DependencyError: if the cluster API fails.
            GenerationError: if a certificate cannot be generated or parsed.
        """
        report: ReconcileReport = {}
        secret_ref = self.provision_certificate(request, report)
        report.update(self.sync_cluster_config(request, secret_ref))
        return report

    def provision_certificate(
        self, request: RelocationRequest, report: Optional[ReconcileReport] = None
    ) -> SecretReference:
        """Make sure a TLS secret for the request's domain exists where the platform needs it.

        Returns:
            SecretReference: the secret, in the ingress namespace, that the
                IngressController and the component routes must serve.
        """
        if report is None:
            report = {}
        if request.certificate_ref is None:
            return self._provision_generated_certificate(request, report)
        return self._provision_user_certificate(request, report)

    def _provision_generated_certificate(
        self, request: RelocationRequest, report: ReconcileReport
    ) -> SecretReference:
        cfg = self.config
        common_name = f"{cfg.wildcard_prefix}.{request.domain}"
        owner_reference = request.owner_reference(controller=True)

        def mutate(secret: Dict[str, Any]) -> None:
            current_cert = decode_secret_value(secret, TLS_CERT_KEY)
            if not current_cert:
                self.logger.info("generating new TLS cert for Ingresses")
                secret["data"] = encode_secret_data(
                    generate_tls_key_pair(request.domain, cfg.wildcard_prefix)
                )
            elif get_cert_common_name(current_cert) != common_name:
                self.logger.info(
                    "Domain name has changed, generating new TLS certificate for Ingresses"
                )
                secret["data"] = encode_secret_data(
                    generate_tls_key_pair(request.domain, cfg.wildcard_prefix)
                )
            else:
                self.logger.debug("TLS cert already exists for Ingresses")
            secret["type"] = TLS_SECRET_TYPE
            # Garbage collected along with the relocation request
            set_owner_reference(secret["metadata"], owner_reference)

        op = self.manager.create_or_update(
            "secret", cfg.generated_secret_name, cfg.ingress_namespace, mutate
        )
        report[f"secret/{cfg.ingress_namespace}/{cfg.generated_secret_name}"] = op
        self._log_result(op, "Self-signed Ingress TLS cert modified")

        generated = SecretReference(
            name=cfg.generated_secret_name, namespace=cfg.ingress_namespace
        )
        op = copy_secret(
            self.manager,
            request,
            generated,
            cfg.generated_secret_name,
            cfg.config_namespace,
            CopyPolicy.GENERATED_OWNED,
        )
        report[f"secret/{cfg.config_namespace}/{cfg.generated_secret_name}"] = op
        self._log_result(op, f"Generated Ingress cert copied to {cfg.config_namespace}")
        return generated

    def _provision_user_certificate(
        self, request: RelocationRequest, report: ReconcileReport
    ) -> SecretReference:
        cfg = self.config
        ref = request.certificate_ref
        if not ref.name or not ref.namespace:
            raise ValidationError("must specify secret name and namespace")
        validate_secret_type(self.manager, ref, TLS_SECRET_TYPE)
        self.logger.info(f"Using user provided Ingress certificate {ref}")

        # The platform reads the certificate from both namespaces, while the
        # original may live anywhere and belong to another controller.
        for namespace in (cfg.ingress_namespace, cfg.config_namespace):
            op = copy_secret(
                self.manager,
                request,
                ref,
                cfg.copied_secret_name,
                namespace,
                CopyPolicy.FOREIGN_READ_ONLY,
            )
            report[f"secret/{namespace}/{cfg.copied_secret_name}"] = op
            self._log_result(op, f"User provided Ingress cert copied to {namespace}")

        return SecretReference(name=cfg.copied_secret_name, namespace=cfg.ingress_namespace)

    def sync_cluster_config(
        self, request: RelocationRequest, secret_ref: SecretReference
    ) -> ReconcileReport:
        """Point the IngressController and the cluster Ingress at the new domain."""
        cfg = self.config
        report: ReconcileReport = {}

        def set_default_certificate(ingress_controller: Dict[str, Any]) -> None:
            spec = ingress_controller.setdefault("spec", {})
            spec["defaultCertificate"] = {"name": secret_ref.name}

        op = self.manager.create_or_update(
            "ingress_controller",
            cfg.ingress_controller_name,
            cfg.ingress_controller_namespace,
            set_default_certificate,
            create_missing=False,
        )
        report["ingress_controller"] = op
        self._log_result(op, "IngressController modified")

        component_routes = [
            template.render(request.apps_domain, secret_ref.name).model_dump()
            for template in cfg.component_routes
        ]

        def set_domain_aliases(ingress: Dict[str, Any]) -> None:
            spec = ingress.setdefault("spec", {})
            spec["appsDomain"] = request.apps_domain
            spec["componentRoutes"] = component_routes

        op = self.manager.create_or_update(
            "ingress_config",
            cfg.cluster_ingress_name,
            None,
            set_domain_aliases,
            create_missing=False,
        )
        report["ingress_config"] = op
        self._log_result(op, "Ingress domain aliases modified")
        return report

    def cleanup(self, request: Optional[RelocationRequest] = None) -> ReconcileReport:
        """Put the IngressController and the cluster Ingress back the way we found them.

        Secrets are left to garbage collection through their owner references.
        """
        cfg = self.config
        report: ReconcileReport = {}
        if request is not None:
            self.logger.info(f"Reverting ingress changes made for {request.kind} {request.name}")

        def unset_default_certificate(ingress_controller: Dict[str, Any]) -> None:
            ingress_controller.setdefault("spec", {})["defaultCertificate"] = None

        op = self.manager.create_or_update(
            "ingress_controller",
            cfg.ingress_controller_name,
            cfg.ingress_controller_namespace,
            unset_default_certificate,
            create_missing=False,
        )
        report["ingress_controller"] = op
        self._log_result(op, "Ingress Controller reverted to original state")

        def unset_domain_aliases(ingress: Dict[str, Any]) -> None:
            spec = ingress.setdefault("spec", {})
            spec["appsDomain"] = None
            spec["componentRoutes"] = None

        op = self.manager.create_or_update(
            "ingress_config",
            cfg.cluster_ingress_name,
            None,
            unset_domain_aliases,
            create_missing=False,
        )
        report["ingress_config"] = op
        self._log_result(op, "Cluster Ingress reverted to original state")
        return report

    def reset_routes(
        self, domain: str, cancel: Optional[threading.Event] = None
    ) -> List[str]:
        """Delete default-router Routes whose host is not under ``domain``.

        The platform re-creates deleted Routes with the new domain. Routes in
        the excluded namespaces are left alone. Setting ``cancel`` aborts the
        wait for the API server.

        Returns:
            List[str]: the deleted Routes, as ``namespace/name``.

        Raises:
            DependencyError: if the API server is not ready in time, the wait is
                cancelled, or listing or deleting fails.
        """
        cfg = self.config
        self.manager.wait_for_cluster_operator(
            cfg.readiness_cluster_operator,
            timeout=cfg.readiness_timeout,
            check_interval=cfg.readiness_check_interval,
            cancel=cancel,
        )

        deleted = []
        for route in self.manager.list_resources("route"):
            metadata = route.get("metadata") or {}
            name, namespace = metadata.get("name"), metadata.get("namespace")
            if namespace in cfg.route_exclusions:
                continue

            stale_host = self._stale_host(route, domain)
            if stale_host is None:
                continue
            if self.manager.delete_resource("route", name, namespace):
                deleted.append(f"{namespace}/{name}")
                self.logger.info(
                    f"Deleted Route {namespace}/{name} so that it can be re-created with "
                    f"new domain (Host: {stale_host})"
                )
        return deleted

    def _stale_host(self, route: Dict[str, Any], domain: str) -> Optional[str]:
        for ingress in (route.get("status") or {}).get("ingress") or []:
            if ingress.get("routerName") != self.config.default_router_name:
                continue
            host = ingress.get("host") or ""
            if domain not in host:
                return host
        return None

    def sync(
        self, request: RelocationRequest, cancel: Optional[threading.Event] = None
    ) -> Tuple[ReconcileReport, List[str]]:
        """Run reconcile followed by reset_routes for the request's domain."""
        report = self.reconcile(request)
        return report, self.reset_routes(request.domain, cancel=cancel)
