"""Content server components (content management and master live)."""

from __future__ import annotations

from typing import Any

from ..milestones import Milestone
from .base import register_component
from .workloads import StatefulSetComponent

# Database schema used by each content server kind
SCHEMA_BY_KIND = {
    "cms": "management",
    "mls": "master",
    "rls": "replication",
}


@register_component("content-server")
class ContentServerComponent(StatefulSetComponent):
    """A content server; the kind selects its role and database schema."""

    default_repository = "contentcloud/content-server"
    default_milestone = Milestone.DATABASES_READY

    def default_secret_schemas(self) -> dict[str, str]:
        return {"jdbc": SCHEMA_BY_KIND.get(self.kind, self.kind or "content")}

    def build_env(self) -> list[dict[str, Any]]:
        env = super().build_env()
        env.append({"name": "CONTENT_SERVER_KIND", "value": self.kind})
        return env
