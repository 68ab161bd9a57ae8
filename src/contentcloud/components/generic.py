"""General-purpose and delivery components."""

from __future__ import annotations

from typing import Any

from ..milestones import Milestone
from .base import register_component
from .workloads import StatefulSetComponent


@register_component("generic")
class GenericComponent(StatefulSetComponent):
    """Any image run as a StatefulSet behind a Service.

    Image, args, env, replicas and ``extra.port`` come straight from the spec.
    Client secrets listed under ``schemas`` are requested and wired into the
    container environment as ``<KIND>_<ENTRY>`` variables.
    """


@register_component("cae")
class ContentApplicationEngine(StatefulSetComponent):
    """Delivery web application reading content from the live content server."""

    default_repository = "contentcloud/cae"
    default_milestone = Milestone.DELIVERY_SERVICES_READY

    # Content server the engine reads from
    repository_kind = "mls"

    def build_env(self) -> list[dict[str, Any]]:
        env = super().build_env()
        url = self.target_state.registry.service_url_for("content-server", self.repository_kind)
        env.append({"name": "REPOSITORY_URL", "value": f"{url}/ior"})
        return env
