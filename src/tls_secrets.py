#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""TLS material and secret replication helpers.

Secret payloads are handled the way the API server serves them: ``data`` maps
keys to base64 encoded values.
"""
import base64
import binascii
import copy
import datetime
import logging
from typing import Any, Dict, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from lightkube_helpers import KubernetesCRDManager
from models import (
    TLS_CERT_KEY,
    TLS_PRIVATE_KEY_KEY,
    CopyPolicy,
    OwnershipPolicy,
    RelocationRequest,
    SecretReference,
)
from utils import (
    DependencyError,
    GenerationError,
    OperationResult,
    ValidationError,
    has_owner_reference,
    set_owner_reference,
)

logger = logging.getLogger(__name__)

CERTIFICATE_VALIDITY = datetime.timedelta(days=365)
RSA_KEY_SIZE = 2048


def generate_tls_key_pair(domain: str, wildcard_prefix: str = "*.apps") -> Dict[str, bytes]:
    """Generate a self-signed certificate and its private key for ``<wildcard_prefix>.<domain>``.

    Args:
        domain: the base domain of the cluster.
        wildcard_prefix: prepended to ``domain`` to form the common name.

    Returns:
        PEM encoded certificate and key under the ``tls.crt`` and ``tls.key`` keys.

    Raises:
        GenerationError: if the key or certificate cannot be produced.
    """
    common_name = f"{wildcard_prefix}.{domain}"
    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        now = datetime.datetime.now(datetime.timezone.utc)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + CERTIFICATE_VALIDITY)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(common_name)]), critical=False
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
            )
            .sign(key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        raise GenerationError(f"Failed to generate TLS key pair for {common_name}: {e}") from e

    return {
        TLS_CERT_KEY: certificate.public_bytes(serialization.Encoding.PEM),
        TLS_PRIVATE_KEY_KEY: key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    }


def get_cert_common_name(cert_pem: bytes) -> str:
    """Return the subject common name of a PEM encoded certificate, empty if it has none.

    Raises:
        GenerationError: if ``cert_pem`` is not a PEM certificate.
    """
    try:
        certificate = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise GenerationError(f"Failed to parse certificate: {e}") from e

    attributes = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return ""
    value = attributes[0].value
    return value.decode() if isinstance(value, bytes) else value


def encode_secret_data(data: Dict[str, bytes]) -> Dict[str, str]:
    return {key: base64.b64encode(value).decode() for key, value in data.items()}


def decode_secret_value(secret: Dict[str, Any], key: str) -> bytes:
    """Return the decoded value of ``key`` in a secret's data, empty when absent.

    Raises:
        GenerationError: if the stored value is not valid base64.
    """
    value = (secret.get("data") or {}).get(key)
    if not value:
        return b""
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise GenerationError(f"Failed to decode {key}: {e}") from e


def validate_secret_type(
    manager: KubernetesCRDManager, ref: SecretReference, expected_type: str
) -> None:
    """Check that the referenced secret exists and is of ``expected_type``.

    Raises:
        ValidationError: if the secret has another type.
        DependencyError: if the secret cannot be read.
    """
    secret = manager.get_resource("secret", ref.name, ref.namespace)
    if secret is None:
        raise DependencyError(f"Secret {ref} not found")
    if secret.get("type") != expected_type:
        raise ValidationError(
            f"Secret {ref} is of type {secret.get('type')!r}, expected {expected_type!r}"
        )


def copy_secret(
    manager: KubernetesCRDManager,
    owner: RelocationRequest,
    source: SecretReference,
    dest_name: str,
    dest_namespace: str,
    policy: Union[OwnershipPolicy, CopyPolicy],
) -> OperationResult:
    """Replicate a secret into ``dest_namespace`` under ``dest_name``.

    The destination receives the source's data and type. Owner references to
    ``owner`` are added to the source and/or destination according to
    ``policy``; the source's payload is never touched.

    Returns:
        OperationResult: the outcome for the destination secret.

    Raises:
        DependencyError: if the source is missing or the API server fails.
    """
    if isinstance(policy, CopyPolicy):
        policy = policy.value

    original = manager.get_resource("secret", source.name, source.namespace)
    if original is None:
        raise DependencyError(f"Secret {source} not found")

    if policy.own_original:
        original_reference = owner.owner_reference(controller=policy.original_owned_by_controller)
        if not has_owner_reference(original.get("metadata") or {}, original_reference):
            op = manager.create_or_update(
                "secret",
                source.name,
                source.namespace,
                lambda secret: set_owner_reference(secret["metadata"], original_reference),
                create_missing=False,
            )
            logger.debug(f"Owner reference on secret {source}: {op.value}")

    destination_reference = owner.owner_reference(
        controller=policy.destination_owned_by_controller
    )

    def mutate(secret: Dict[str, Any]) -> None:
        secret["data"] = copy.deepcopy(original.get("data") or {})
        secret["type"] = original.get("type")
        if policy.own_destination:
            set_owner_reference(secret["metadata"], destination_reference)

    return manager.create_or_update("secret", dest_name, dest_namespace, mutate)
