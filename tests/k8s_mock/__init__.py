"""Kubernetes API mock for reconcile tests.

Provides an in-memory implementation of the operator's cluster gateway plus
builders for ContentCloud bodies and child objects.

Usage:
    from k8s_mock import MockCluster, content_cloud

    cluster = MockCluster()
    reconciler = Reconciler(Config(), cluster)
    reconciler.reconcile(content_cloud(spec={"with": {"management": False}}))

    assert cluster.mutation_count == 0
"""

from __future__ import annotations

import copy
from typing import Any

from contentcloud.config import API_GROUP_VERSION, KIND

from .cluster import MockCluster, Mutation, merge_patch

__all__ = [
    "MockCluster",
    "Mutation",
    "content_cloud",
    "mark_jobs_succeeded",
    "mark_stateful_sets_ready",
    "merge_patch",
    "owner_reference",
    "with_status",
]

DEFAULT_UID = "5f0c2a8e-0000-4000-8000-000000000001"


def content_cloud(
    name: str = "site",
    namespace: str = "default",
    uid: str = DEFAULT_UID,
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a ContentCloud body as kopf would deliver it."""
    body: dict[str, Any] = {
        "apiVersion": API_GROUP_VERSION,
        "kind": KIND,
        "metadata": {"name": name, "namespace": namespace, "uid": uid, "generation": 1},
        "spec": copy.deepcopy(spec) if spec is not None else {},
    }
    if status is not None:
        body["status"] = copy.deepcopy(status)
    return body


def owner_reference(name: str = "site", uid: str = DEFAULT_UID) -> dict[str, Any]:
    return {
        "apiVersion": API_GROUP_VERSION,
        "kind": KIND,
        "name": name,
        "uid": uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def with_status(body: dict[str, Any], cluster: MockCluster) -> dict[str, Any]:
    """Body with every status patch recorded so far applied."""
    updated = copy.deepcopy(body)
    updated["status"] = merge_patch(updated.get("status") or {}, cluster.last_status())
    for _, _, patch in cluster.cr_patches:
        updated = merge_patch(updated, {k: v for k, v in patch.items() if k == "spec"})
    return updated


def mark_stateful_sets_ready(cluster: MockCluster) -> None:
    """Report every stored StatefulSet as fully rolled out."""
    for obj in cluster.objects("StatefulSet"):
        replicas = obj["spec"].get("replicas", 1)
        metadata = obj["metadata"]
        cluster.set_status(
            "StatefulSet",
            metadata["namespace"],
            metadata["name"],
            {"replicas": replicas, "readyReplicas": replicas},
        )


def mark_jobs_succeeded(cluster: MockCluster) -> None:
    for obj in cluster.objects("Job"):
        metadata = obj["metadata"]
        cluster.set_status("Job", metadata["namespace"], metadata["name"], {"succeeded": 1})
