"""Kubernetes API gateway.

All cluster I/O of a reconcile pass goes through a ``Cluster``. The
production implementation wraps the kubernetes dynamic client so that every
kind is handled uniformly as plain dicts; tests substitute an in-memory
implementation with the same surface.

API errors are translated at this boundary:

- 404 on a read returns None
- 404/409/429/5xx on writes raise TransientClusterError (retried with backoff)
- any other 4xx raises ClusterRequestError
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import NotFoundError, ResourceNotFoundError

from .config import API_GROUP, API_VERSION, PLURAL
from .errors import ClusterRequestError, TransientClusterError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({404, 409, 429, 500, 502, 503, 504})

BACKGROUND_DELETE = {"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Background"}

MERGE_PATCH = "application/merge-patch+json"


class Cluster(Protocol):
    """Operations a reconcile pass needs from the cluster."""

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        ...

    def list(
        self, api_version: str, kind: str, namespace: str, label_selector: str
    ) -> list[dict[str, Any]]:
        ...

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        ...

    def replace(self, body: dict[str, Any]) -> dict[str, Any]:
        ...

    def patch(
        self, api_version: str, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        ...

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        ...

    def patch_custom_resource(self, namespace: str, name: str, patch: dict[str, Any]) -> None:
        ...

    def patch_custom_resource_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> None:
        ...


def _translate(e: ApiException, action: str, target: str) -> Exception:
    status = getattr(e, "status", None)
    message = f"Failed to {action} {target}: {status} {getattr(e, 'reason', '')}".strip()
    if status is None or status in TRANSIENT_STATUS_CODES:
        return TransientClusterError(message, status=status)
    return ClusterRequestError(message, status=status)


def _describe(kind: str, namespace: str, name: str) -> str:
    return f"{kind} {namespace}/{name}"


class KubernetesCluster:
    """Cluster gateway backed by the kubernetes dynamic client."""

    def __init__(self, api_client: client.ApiClient | None = None) -> None:
        self._api_client = api_client or client.ApiClient()
        self._dynamic = DynamicClient(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)

    @classmethod
    def from_environment(cls) -> KubernetesCluster:
        """Load in-cluster credentials, falling back to the local kubeconfig."""
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            logger.info("Loaded local kubeconfig")
        return cls()

    def _resource(self, api_version: str, kind: str) -> Any:
        try:
            return self._dynamic.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as e:
            raise ClusterRequestError(f"Unknown resource type {api_version}/{kind}") from e

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        resource = self._resource(api_version, kind)
        try:
            return resource.get(name=name, namespace=namespace).to_dict()
        except NotFoundError:
            return None
        except ApiException as e:
            raise _translate(e, "get", _describe(kind, namespace, name)) from e

    def list(
        self, api_version: str, kind: str, namespace: str, label_selector: str
    ) -> list[dict[str, Any]]:
        resource = self._resource(api_version, kind)
        try:
            result = resource.get(namespace=namespace, label_selector=label_selector).to_dict()
        except ApiException as e:
            raise _translate(e, "list", f"{kind} in {namespace}") from e

        items = result.get("items") or []
        for item in items:
            # List items omit apiVersion and kind
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
        return items

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        metadata = body["metadata"]
        resource = self._resource(body["apiVersion"], body["kind"])
        try:
            created = resource.create(body=body, namespace=metadata["namespace"]).to_dict()
        except ApiException as e:
            raise _translate(
                e, "create", _describe(body["kind"], metadata["namespace"], metadata["name"])
            ) from e
        logger.info(
            "Created resource",
            extra={
                "kind": body["kind"],
                "resource_name": metadata["name"],
                "namespace": metadata["namespace"],
            },
        )
        return created

    def replace(self, body: dict[str, Any]) -> dict[str, Any]:
        metadata = body["metadata"]
        resource = self._resource(body["apiVersion"], body["kind"])
        try:
            replaced = resource.replace(body=body, namespace=metadata["namespace"]).to_dict()
        except ApiException as e:
            raise _translate(
                e, "replace", _describe(body["kind"], metadata["namespace"], metadata["name"])
            ) from e
        logger.info(
            "Replaced resource",
            extra={
                "kind": body["kind"],
                "resource_name": metadata["name"],
                "namespace": metadata["namespace"],
            },
        )
        return replaced

    def patch(
        self, api_version: str, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        resource = self._resource(api_version, kind)
        try:
            patched = resource.patch(
                body=patch, name=name, namespace=namespace, content_type=MERGE_PATCH
            ).to_dict()
        except ApiException as e:
            raise _translate(e, "patch", _describe(kind, namespace, name)) from e
        logger.info(
            "Patched resource",
            extra={
                "kind": kind,
                "resource_name": name,
                "namespace": namespace,
                "fields": sorted(patch),
            },
        )
        return patched

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        resource = self._resource(api_version, kind)
        try:
            resource.delete(name=name, namespace=namespace, body=BACKGROUND_DELETE)
        except NotFoundError:
            logger.debug("Resource already gone", extra={"kind": kind, "resource_name": name})
            return
        except ApiException as e:
            raise _translate(e, "delete", _describe(kind, namespace, name)) from e
        logger.info(
            "Deleted resource",
            extra={"kind": kind, "resource_name": name, "namespace": namespace},
        )

    def patch_custom_resource(self, namespace: str, name: str, patch: dict[str, Any]) -> None:
        try:
            self._custom.patch_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
                body=patch,
            )
        except ApiException as e:
            raise _translate(e, "patch", f"{PLURAL} {namespace}/{name}") from e

    def patch_custom_resource_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> None:
        try:
            self._custom.patch_namespaced_custom_object_status(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL,
                name=name,
                body={"status": status},
            )
        except ApiException as e:
            raise _translate(e, "patch status of", f"{PLURAL} {namespace}/{name}") from e


class DetachedCluster:
    """A cluster with no objects that refuses writes.

    Used to render the desired state of a custom resource offline.
    """

    def get(self, api_version: str, kind: str, namespace: str, name: str) -> dict[str, Any] | None:
        return None

    def list(
        self, api_version: str, kind: str, namespace: str, label_selector: str
    ) -> list[dict[str, Any]]:
        return []

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        raise ClusterRequestError("Detached cluster is read-only")

    def replace(self, body: dict[str, Any]) -> dict[str, Any]:
        raise ClusterRequestError("Detached cluster is read-only")

    def patch(
        self, api_version: str, kind: str, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        raise ClusterRequestError("Detached cluster is read-only")

    def delete(self, api_version: str, kind: str, namespace: str, name: str) -> None:
        raise ClusterRequestError("Detached cluster is read-only")

    def patch_custom_resource(self, namespace: str, name: str, patch: dict[str, Any]) -> None:
        raise ClusterRequestError("Detached cluster is read-only")

    def patch_custom_resource_status(
        self, namespace: str, name: str, status: dict[str, Any]
    ) -> None:
        raise ClusterRequestError("Detached cluster is read-only")
