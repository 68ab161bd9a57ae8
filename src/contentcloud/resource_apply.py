"""Per-kind create, patch and replace semantics.

Kinds differ in what may be changed on a live object. A Job's pod template
is immutable, a claim can only grow, and a workload should be patched in
place so that the controller rolls it instead of recreating it. Handlers are
registered for abstract kind classes and looked up by walking
KIND_HIERARCHY from the concrete kind towards ``Resource``:

    StatefulSet, Deployment  -> ScalableWorkload -> Resource
    Job                      -> RunOnce          -> Resource
    PersistentVolumeClaim    -> CapacityClaim    -> Resource
    anything else                                -> Resource

Every object written carries a hash of its desired form in the
DESIRED_HASH_ANNOTATION. A live object whose hash matches is up to date; a
field dropped from the desired object changes the hash, which a subset
comparison alone cannot see. Objects without the annotation fall back to the
DiffNormalizer subset comparison.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .cluster import Cluster
from .config import DESIRED_HASH_ANNOTATION
from .diff_normalizer import IGNORED_TOP_LEVEL, SERVER_MANAGED_METADATA, DiffNormalizer
from .errors import ConfigurationError, TransientClusterError
from .resource_diff import resource_key

logger = logging.getLogger(__name__)

GENERIC_KIND = "Resource"

KIND_HIERARCHY: dict[str, str] = {
    "StatefulSet": "ScalableWorkload",
    "Deployment": "ScalableWorkload",
    "ScalableWorkload": GENERIC_KIND,
    "Job": "RunOnce",
    "RunOnce": GENERIC_KIND,
    "PersistentVolumeClaim": "CapacityClaim",
    "CapacityClaim": GENERIC_KIND,
}

# Spec fields of a workload that may be changed on a live object
WORKLOAD_PATCH_FIELDS = ("replicas", "template", "updateStrategy", "strategy", "minReadySeconds")

# Service fields assigned by the API server that cannot be replaced
SERVICE_ASSIGNED_FIELDS = ("clusterIP", "clusterIPs")

STORAGE_PATH = "spec.resources.requests.storage"

HASH_LENGTH = 16


class ApplyOutcome(str, Enum):
    """What applying one desired resource did to the cluster."""

    CREATED = "created"
    REPLACED = "replaced"
    PATCHED = "patched"
    UNCHANGED = "unchanged"


ResourceApplier = Callable[
    [Cluster, dict[str, Any], "dict[str, Any] | None", DiffNormalizer], ApplyOutcome
]

RESOURCE_APPLIERS: dict[str, ResourceApplier] = {}


def resource_applier(kind: str) -> Callable[[ResourceApplier], ResourceApplier]:
    """Register the apply handler for ``kind``."""

    def decorator(func: ResourceApplier) -> ResourceApplier:
        RESOURCE_APPLIERS[kind] = func
        return func

    return decorator


def applier_for(kind: str) -> ResourceApplier:
    """Most specific handler for ``kind``, falling back to the generic one."""
    current: str | None = kind
    while current is not None:
        handler = RESOURCE_APPLIERS.get(current)
        if handler is not None:
            return handler
        current = KIND_HIERARCHY.get(current)
    return RESOURCE_APPLIERS[GENERIC_KIND]


def apply_resource(
    cluster: Cluster,
    desired: dict[str, Any],
    live: dict[str, Any] | None,
    normalizer: DiffNormalizer | None = None,
) -> ApplyOutcome:
    """Create ``desired``, or bring the owned ``live`` object in line with it.

    Args:
        cluster: Cluster gateway.
        desired: Desired object.
        live: Owned live counterpart, None when the object is new.
        normalizer: Equivalence rules, defaults to the built-in ones.

    Returns:
        What was done.

    Raises:
        ConfigurationError: If a new object collides with one we do not own.
        TransientClusterError: On retryable API failures.
    """
    handler = applier_for(desired.get("kind", ""))
    outcome = handler(cluster, with_desired_hash(desired), live, normalizer or DiffNormalizer())
    if outcome is not ApplyOutcome.UNCHANGED:
        logger.debug(
            "Applied resource",
            extra={"resource": str(resource_key(desired)), "outcome": outcome.value},
        )
    return outcome


def _without_hash(obj: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``obj`` without status, server metadata and the hash annotation."""
    body = {k: copy.deepcopy(v) for k, v in obj.items() if k not in IGNORED_TOP_LEVEL}
    metadata = body.get("metadata") or {}
    for key in SERVER_MANAGED_METADATA:
        metadata.pop(key, None)
    annotations = metadata.get("annotations")
    if annotations is not None:
        annotations.pop(DESIRED_HASH_ANNOTATION, None)
        if not annotations:
            del metadata["annotations"]
    return body


def desired_hash(desired: dict[str, Any]) -> str:
    """Content hash of a desired object, independent of key order."""
    content = json.dumps(_without_hash(desired), sort_keys=True, default=str)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def with_desired_hash(desired: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``desired`` annotated with its content hash."""
    body = copy.deepcopy(desired)
    annotations = body.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[DESIRED_HASH_ANNOTATION] = desired_hash(desired)
    return body


def live_hash(live: dict[str, Any]) -> str | None:
    annotations = (live.get("metadata") or {}).get("annotations") or {}
    return annotations.get(DESIRED_HASH_ANNOTATION)


def _hash_patch(desired: dict[str, Any]) -> dict[str, Any]:
    return {"annotations": {DESIRED_HASH_ANNOTATION: desired_hash(desired)}}


def create(cluster: Cluster, desired: dict[str, Any]) -> ApplyOutcome:
    try:
        cluster.create(desired)
    except TransientClusterError as e:
        if e.status == 409:
            raise ConfigurationError(
                f"{resource_key(desired)} already exists and is not owned by this instance"
            ) from e
        raise
    return ApplyOutcome.CREATED


def _owner_patch(desired: dict[str, Any], live: dict[str, Any]) -> dict[str, Any]:
    """Metadata fields (labels, owner references) that differ from ``live``."""
    desired_meta = desired.get("metadata") or {}
    live_meta = live.get("metadata") or {}
    patch: dict[str, Any] = {}
    if desired_meta.get("ownerReferences") != live_meta.get("ownerReferences"):
        patch["ownerReferences"] = desired_meta.get("ownerReferences")
    labels = desired_meta.get("labels") or {}
    live_labels = live_meta.get("labels") or {}
    if any(live_labels.get(k) != v for k, v in labels.items()):
        patch["labels"] = labels
    return patch


def _patch(cluster: Cluster, desired: dict[str, Any], patch: dict[str, Any]) -> ApplyOutcome:
    key = resource_key(desired)
    cluster.patch(desired["apiVersion"], key.kind, key.namespace, key.name, patch)
    return ApplyOutcome.PATCHED


@resource_applier(GENERIC_KIND)
def apply_generic(
    cluster: Cluster,
    desired: dict[str, Any],
    live: dict[str, Any] | None,
    normalizer: DiffNormalizer,
) -> ApplyOutcome:
    """Create, or replace the whole object when it differs."""
    if live is None:
        return create(cluster, desired)
    recorded = live_hash(live)
    if recorded is not None:
        if recorded == desired_hash(desired):
            return ApplyOutcome.UNCHANGED
    elif normalizer.are_equivalent(_without_hash(desired), live):
        return ApplyOutcome.UNCHANGED

    body = with_desired_hash(desired)
    metadata = body.setdefault("metadata", {})
    for key in SERVER_MANAGED_METADATA:
        metadata.pop(key, None)
    live_version = (live.get("metadata") or {}).get("resourceVersion")
    if live_version:
        metadata["resourceVersion"] = live_version

    if body.get("kind") == "Service":
        live_spec = live.get("spec") or {}
        spec = body.setdefault("spec", {})
        for field in SERVICE_ASSIGNED_FIELDS:
            if field in live_spec and field not in spec:
                spec[field] = live_spec[field]

    cluster.replace(body)
    return ApplyOutcome.REPLACED


@resource_applier("ScalableWorkload")
def apply_scalable_workload(
    cluster: Cluster,
    desired: dict[str, Any],
    live: dict[str, Any] | None,
    normalizer: DiffNormalizer,
) -> ApplyOutcome:
    """Create, or merge-patch the mutable workload fields.

    A changed workload gets every mutable field patched in full, so that
    list entries removed from the desired object (args, env, ports) are
    removed from the live one, together with the new hash.
    """
    if live is None:
        return create(cluster, desired)

    kind = desired.get("kind", "")
    desired_spec = desired.get("spec") or {}
    live_spec = live.get("spec") or {}
    recorded = live_hash(live)
    if recorded is not None:
        changed = recorded != desired_hash(desired)
    else:
        changed = any(
            field in desired_spec
            and not normalizer.is_subset(
                desired_spec[field], live_spec.get(field), kind, f"spec.{field}"
            )
            for field in WORKLOAD_PATCH_FIELDS
        )

    spec_patch: dict[str, Any] = {}
    metadata_patch = _owner_patch(desired, live)
    if changed:
        spec_patch = {f: desired_spec[f] for f in WORKLOAD_PATCH_FIELDS if f in desired_spec}
        metadata_patch.update(_hash_patch(desired))

    patch: dict[str, Any] = {}
    if spec_patch:
        patch["spec"] = spec_patch
    if metadata_patch:
        patch["metadata"] = metadata_patch
    if not patch:
        return ApplyOutcome.UNCHANGED
    return _patch(cluster, desired, patch)


@resource_applier("RunOnce")
def apply_run_once(
    cluster: Cluster,
    desired: dict[str, Any],
    live: dict[str, Any] | None,
    normalizer: DiffNormalizer,
) -> ApplyOutcome:
    """Create only. A changed job gets a new name, never an update."""
    if live is None:
        return create(cluster, desired)
    return ApplyOutcome.UNCHANGED


@resource_applier("CapacityClaim")
def apply_capacity_claim(
    cluster: Cluster,
    desired: dict[str, Any],
    live: dict[str, Any] | None,
    normalizer: DiffNormalizer,
) -> ApplyOutcome:
    """Create, or patch the storage request and owner references."""
    if live is None:
        return create(cluster, desired)

    kind = desired.get("kind", "")
    desired_storage = _storage_request(desired)
    live_storage = _storage_request(live)

    patch: dict[str, Any] = {}
    if desired_storage is not None and normalizer.normalize_value(
        desired_storage, kind, STORAGE_PATH
    ) != normalizer.normalize_value(live_storage, kind, STORAGE_PATH):
        patch["spec"] = {"resources": {"requests": {"storage": desired_storage}}}
    metadata_patch = _owner_patch(desired, live)
    if metadata_patch:
        patch["metadata"] = metadata_patch
    if not patch:
        return ApplyOutcome.UNCHANGED
    return _patch(cluster, desired, patch)


def _storage_request(obj: dict[str, Any]) -> Any:
    resources = (obj.get("spec") or {}).get("resources") or {}
    return (resources.get("requests") or {}).get("storage")
