"""Shared builders for components running as a StatefulSet behind a Service."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..milestones import Readiness
from ..models import ComponentSpec
from .base import Capability, Component, ServiceEndpoint

if TYPE_CHECKING:
    from ..targetstate import TargetState

logger = logging.getLogger(__name__)

DEFAULT_HTTP_PORT = 8080
DATA_VOLUME = "data"


def stateful_set_readiness(live: dict[str, Any] | None) -> Readiness:
    """Readiness of a live StatefulSet.

    Ready when scaled up with every replica ready, or when scaled to zero
    and no replica is left running.
    """
    if live is None:
        return Readiness.NOT_READY
    status = live.get("status") or {}
    replicas = status.get("replicas") or 0
    ready = status.get("readyReplicas") or 0
    if (live.get("spec") or {}).get("replicas") == 0:
        return Readiness.READY if replicas == 0 else Readiness.NOT_READY
    if replicas > 0 and ready == replicas:
        return Readiness.READY
    return Readiness.NOT_READY


class StatefulSetComponent(Component):
    """A component running as one StatefulSet with a ClusterIP Service."""

    default_repository = "contentcloud/generic"
    default_tag: str | None = None
    container_port = DEFAULT_HTTP_PORT
    port_name = "http"

    def __init__(self, target_state: TargetState, spec: ComponentSpec) -> None:
        super().__init__(target_state, spec)
        self.capabilities[Capability.SERVICE] = ServiceEndpoint(self.target_name, self.port)

    @property
    def port(self) -> int:
        return int(self.spec.extra.get("port", self.container_port))

    def build_resources(self) -> list[dict[str, Any]]:
        return [self.build_stateful_set(), self.build_service()]

    def is_ready(self) -> Readiness:
        live = self.target_state.cluster.get(
            "apps/v1", "StatefulSet", self.target_state.namespace, self.target_name
        )
        return stateful_set_readiness(live)

    def build_env(self) -> list[dict[str, Any]]:
        return list(self.spec.env) + self.secret_env()

    def build_volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Return (volumes, volumeMounts) of the main container."""
        return [], []

    def build_container(self) -> dict[str, Any]:
        _, mounts = self.build_volumes()
        container: dict[str, Any] = {
            "name": self.object_name,
            "image": self.image(self.default_repository, self.default_tag),
            "imagePullPolicy": self.target_state.defaults.image_pull_policy,
            "ports": [{"name": self.port_name, "containerPort": self.port, "protocol": "TCP"}],
            "env": self.build_env(),
            "readinessProbe": {
                "tcpSocket": {"port": self.port},
                "periodSeconds": 10,
            },
        }
        if self.spec.args:
            container["args"] = list(self.spec.args)
        if mounts:
            container["volumeMounts"] = mounts
        return container

    def build_stateful_set(self) -> dict[str, Any]:
        volumes, _ = self.build_volumes()
        selector = {"matchLabels": self.target_state.selector_labels(self.object_name)}
        pod_spec: dict[str, Any] = {"containers": [self.build_container()]}
        if volumes:
            pod_spec["volumes"] = volumes
        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": self.metadata(),
            "spec": {
                "replicas": self.spec.replicas,
                "serviceName": self.target_name,
                "selector": selector,
                "updateStrategy": {"type": "RollingUpdate"},
                "template": {
                    "metadata": {"labels": self.target_state.selector_labels(self.object_name)},
                    "spec": pod_spec,
                },
            },
        }

    def build_service(self) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self.metadata(),
            "spec": {
                "type": "ClusterIP",
                "selector": self.target_state.selector_labels(self.object_name),
                "ports": [
                    {
                        "name": self.port_name,
                        "port": self.port,
                        "targetPort": self.port,
                        "protocol": "TCP",
                    }
                ],
            },
        }

    @property
    def claim_name(self) -> str:
        return self.target_state.resource_name(self.object_name, DATA_VOLUME)

    def build_pvc(self) -> dict[str, Any]:
        """A standalone claim named after the component."""
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": self.metadata(self.claim_name),
            "spec": {
                "accessModes": ["ReadWriteOnce"],
                "resources": {"requests": {"storage": self.spec.volume_size}},
            },
        }
