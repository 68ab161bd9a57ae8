"""Ownership-verified diff between desired and existing resources.

Existing resources are discovered by label, but labels are only a
pre-filter: a live object counts as ours, and may therefore be changed or
deleted, only when its owner references contain the custom resource's
apiVersion, kind, name and uid.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NamedTuple

from .errors import InvariantViolation

if TYPE_CHECKING:
    from .cluster import Cluster

logger = logging.getLogger(__name__)

# Owner reference fields that identify the owner
OWNER_IDENTITY_KEYS = ("apiVersion", "kind", "name", "uid")

# Kinds the operator manages, listed on every pass to find abandoned objects
MANAGED_KINDS: tuple[tuple[str, str], ...] = (
    ("apps/v1", "StatefulSet"),
    ("apps/v1", "Deployment"),
    ("batch/v1", "Job"),
    ("v1", "PersistentVolumeClaim"),
    ("v1", "Secret"),
    ("v1", "Service"),
    ("v1", "ConfigMap"),
    ("networking.k8s.io/v1", "Ingress"),
)


class ResourceKey(NamedTuple):
    """Identity of a namespaced object."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


def resource_key(obj: dict[str, Any]) -> ResourceKey:
    metadata = obj.get("metadata") or {}
    return ResourceKey(obj.get("kind", ""), metadata.get("namespace", ""), metadata.get("name", ""))


def is_owned(obj: dict[str, Any], owner_reference: dict[str, Any]) -> bool:
    """Check whether ``obj`` carries an owner reference equal to ours."""
    for ref in (obj.get("metadata") or {}).get("ownerReferences") or []:
        if all(ref.get(key) == owner_reference.get(key) for key in OWNER_IDENTITY_KEYS):
            return True
    return False


@dataclass
class ChangedResource:
    """A desired resource paired with its live counterpart."""

    desired: dict[str, Any]
    live: dict[str, Any]

    @property
    def key(self) -> ResourceKey:
        return resource_key(self.desired)


@dataclass
class ResourceDiff:
    """Result of comparing desired against existing owned resources.

    Attributes:
        new: Desired resources with no owned live counterpart.
        changed: Desired resources with an owned live counterpart. Whether
            anything actually differs is decided per kind at apply time.
        abandoned: Owned live resources absent from the desired set.
    """

    new: list[dict[str, Any]] = field(default_factory=list)
    changed: list[ChangedResource] = field(default_factory=list)
    abandoned: list[dict[str, Any]] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            "new": len(self.new),
            "changed": len(self.changed),
            "abandoned": len(self.abandoned),
        }


def list_owned_resources(
    cluster: Cluster,
    namespace: str,
    label_selector: str,
    owner_reference: dict[str, Any],
    kinds: Iterable[tuple[str, str]] = MANAGED_KINDS,
) -> list[dict[str, Any]]:
    """List labeled objects of ``kinds`` and keep the ones we own.

    Args:
        cluster: Cluster gateway.
        namespace: Namespace to search.
        label_selector: Discovery pre-filter.
        owner_reference: Owner reference of the custom resource.
        kinds: (apiVersion, kind) pairs to list.

    Returns:
        Owned live objects.
    """
    owned: list[dict[str, Any]] = []
    seen: set[tuple[str, str]] = set()
    for api_version, kind in kinds:
        if (api_version, kind) in seen:
            continue
        seen.add((api_version, kind))
        for obj in cluster.list(api_version, kind, namespace, label_selector):
            if is_owned(obj, owner_reference):
                owned.append(obj)
            else:
                logger.warning(
                    "Ignoring labeled resource not owned by this instance",
                    extra={"resource": str(resource_key(obj)), "namespace": namespace},
                )
    return owned


def compute_diff(
    desired: list[dict[str, Any]],
    existing: list[dict[str, Any]],
    owner_reference: dict[str, Any],
) -> ResourceDiff:
    """Classify desired resources as new or changed and find abandoned ones.

    Every existing object is re-checked for ownership before it is matched,
    so a foreign object can never be reported as changed or abandoned.

    Raises:
        InvariantViolation: If the desired set contains duplicate identities.
    """
    desired_by_key: dict[ResourceKey, dict[str, Any]] = {}
    for obj in desired:
        key = resource_key(obj)
        if key in desired_by_key:
            raise InvariantViolation(f"Duplicate desired resource: {key}")
        desired_by_key[key] = obj

    existing_by_key = {
        resource_key(obj): obj for obj in existing if is_owned(obj, owner_reference)
    }

    diff = ResourceDiff()
    for key, obj in desired_by_key.items():
        live = existing_by_key.get(key)
        if live is None:
            diff.new.append(obj)
        else:
            diff.changed.append(ChangedResource(desired=obj, live=live))

    for key, live in existing_by_key.items():
        if key not in desired_by_key:
            diff.abandoned.append(live)

    logger.debug("Computed resource diff", extra=diff.summary())
    return diff
