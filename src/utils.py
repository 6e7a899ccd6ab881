#!/usr/bin/env python3

# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.

"""Utility functions for the cluster relocation ingress reconciler.

This module contains the error taxonomy, the outcome type reported by every
write, and the helpers used to compute merge patches and owner references.
Functions here work on plain dictionaries as returned by ``to_dict()``.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Exception Classes
# ============================================================================
class RelocationError(RuntimeError):
    """Base class for errors raised while relocating the ingress."""


class ValidationError(RelocationError):
    """Raised when the relocation request cannot be acted upon as written."""


class DependencyError(RelocationError):
    """Raised when the cluster API or a platform component fails us."""


class GenerationError(RelocationError):
    """Raised when TLS material cannot be generated or parsed."""


# ============================================================================
# Operation results
# ============================================================================
class OperationResult(str, Enum):
    """Outcome of an idempotent write."""

    NONE = "unchanged"
    CREATED = "created"
    UPDATED = "updated"


# ============================================================================
# Merge patches
# ============================================================================
def compute_merge_patch(current: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Return the JSON merge patch (RFC 7386) turning ``current`` into ``desired``.

    Keys missing from ``desired`` are mapped to None so the server removes them.
    A missing mapping nulls its direct members instead, leaving the parent in
    place. Nested mappings are diffed recursively, anything else (lists included)
    is replaced wholesale.

    Args:
        current: the object as read from the cluster.
        desired: the object after the caller's mutation.

    Returns:
        The patch; empty when both sides are equal.
    """
    patch: Dict[str, Any] = {}
    for key in sorted(set(current) | set(desired)):
        if key not in desired:
            if isinstance(current[key], dict) and current[key]:
                patch[key] = {child: None for child in sorted(current[key])}
            else:
                patch[key] = None
        elif key not in current:
            patch[key] = desired[key]
        elif isinstance(current[key], dict) and isinstance(desired[key], dict):
            nested = compute_merge_patch(current[key], desired[key])
            if nested:
                patch[key] = nested
        elif current[key] != desired[key]:
            patch[key] = desired[key]
    return patch


def prune_empty(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys whose value is None or an empty mapping, recursively.

    Both sides of a comparison go through here so that an absent field, a null
    field and an empty object all read as "unset".
    """
    pruned = {}
    for key, value in obj.items():
        if isinstance(value, dict):
            value = prune_empty(value)
        if value is None or value == {}:
            continue
        pruned[key] = value
    return pruned


# ============================================================================
# Owner references
# ============================================================================
def build_owner_reference(
    api_version: str, kind: str, name: str, uid: str, controller: bool
) -> Dict[str, Any]:
    """Build an owner reference the way controller-runtime does.

    Controller references also block owner deletion, plain ones set neither flag.
    """
    reference: Dict[str, Any] = {
        "apiVersion": api_version,
        "kind": kind,
        "name": name,
        "uid": uid,
    }
    if controller:
        reference["controller"] = True
        reference["blockOwnerDeletion"] = True
    return reference


def set_owner_reference(metadata: Dict[str, Any], reference: Dict[str, Any]) -> None:
    """Upsert ``reference`` into ``metadata["ownerReferences"]``.

    Raises:
        ValidationError: if ``reference`` is a controller reference and another
            owner already controls the object.
    """
    references: List[Dict[str, Any]] = list(metadata.get("ownerReferences") or [])
    if reference.get("controller"):
        current_controller = _find_controller(references)
        if current_controller is not None and current_controller.get("uid") != reference["uid"]:
            raise ValidationError(
                f"{metadata.get('namespace')}/{metadata.get('name')} is already controlled by "
                f"{current_controller.get('kind')} {current_controller.get('name')}"
            )

    for index, existing in enumerate(references):
        if existing.get("uid") == reference["uid"]:
            references[index] = reference
            break
    else:
        references.append(reference)
    metadata["ownerReferences"] = references


def has_owner_reference(metadata: Dict[str, Any], reference: Dict[str, Any]) -> bool:
    """Check whether ``metadata`` already carries exactly ``reference``."""
    return any(existing == reference for existing in metadata.get("ownerReferences") or [])


def _find_controller(references: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for reference in references:
        if reference.get("controller"):
            return reference
    return None
