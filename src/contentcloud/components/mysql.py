"""Managed MySQL database server.

The server hosts one schema per ``jdbc`` client secret provisioned in the
same pass. Users and schemas are created by an init script rendered into a
ConfigMap; the script is rebuilt every convergence round from the broker's
current set of jdbc secrets, so consumers registered late are included.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from ..milestones import Milestone
from ..models import ComponentSpec
from ..secret_broker import MYSQL_PORT, ClientSecret
from .base import Capability, DatabaseEndpoint, register_component
from .workloads import StatefulSetComponent

if TYPE_CHECKING:
    from ..targetstate import TargetState

logger = logging.getLogger(__name__)

ROOT_KIND = "mysql"
ROOT_SCHEMA = "root"
USERS_SQL_KEY = "create-users.sql"
INITDB_PATH = "/docker-entrypoint-initdb.d"
DATA_PATH = "/var/lib/mysql"


def users_sql(client_secrets: dict[str, ClientSecret], host: str) -> str:
    """Render the statements creating a schema and user per client secret.

    Secrets pointing at another host, or without a payload, are skipped.
    """
    statements: list[str] = []
    for schema, client_secret in sorted(client_secrets.items()):
        if client_secret.entry("hostname") != host:
            continue
        username = client_secret.entry("username") or schema
        password = client_secret.password
        if password is None:
            continue
        statements.extend(
            [
                f"CREATE SCHEMA IF NOT EXISTS `{schema}` "
                "CHARACTER SET utf8mb4 COLLATE utf8mb4_bin;",
                f"CREATE USER IF NOT EXISTS '{username}'@'%' IDENTIFIED BY '{password}';",
                f"ALTER USER '{username}'@'%' IDENTIFIED BY '{password}';",
                f"GRANT ALL PRIVILEGES ON `{schema}`.* TO '{username}'@'%';",
            ]
        )
    return "\n".join(statements) + "\n" if statements else ""


@register_component("mysql")
class MySQLComponent(StatefulSetComponent):
    """MySQL server serving every automatically provisioned jdbc schema."""

    default_repository = "mysql"
    default_tag = "8.0"
    default_milestone = Milestone.DEPLOYMENT_STARTED
    container_port = MYSQL_PORT
    port_name = "mysql"

    def __init__(self, target_state: TargetState, spec: ComponentSpec) -> None:
        super().__init__(target_state, spec)
        self.capabilities[Capability.DATABASE] = DatabaseEndpoint(
            host=self.target_name, port=self.port, kinds=frozenset({"jdbc", ROOT_KIND})
        )

    def default_secret_schemas(self) -> dict[str, str]:
        return {ROOT_KIND: ROOT_SCHEMA}

    def add_dependent_components(self) -> None:
        sql = users_sql(self.target_state.secrets.get_all("jdbc"), self.target_name)
        if self.spec.extra.get(USERS_SQL_KEY, "") != sql:
            logger.debug(
                "Updated database users",
                extra={"component": self.display_name, "statements": sql.count("\n")},
            )
            extra = {**self.spec.extra, USERS_SQL_KEY: sql}
            self.spec = self.spec.model_copy(update={"extra": extra})

    @property
    def config_map_name(self) -> str:
        return self.target_state.resource_name(self.object_name, "initdb")

    def build_env(self) -> list[dict[str, Any]]:
        ref = self.target_state.secrets.get_ref(ROOT_KIND, ROOT_SCHEMA)
        env = list(self.spec.env)
        if ref is not None:
            env.append(
                {
                    "name": "MYSQL_ROOT_PASSWORD",
                    "valueFrom": {
                        "secretKeyRef": {"name": ref.secret_name, "key": ref.password_key}
                    },
                }
            )
        return env

    def build_volumes(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        volumes = [
            {"name": "data", "persistentVolumeClaim": {"claimName": self.claim_name}},
            {"name": "initdb", "configMap": {"name": self.config_map_name}},
        ]
        mounts = [
            {"name": "data", "mountPath": DATA_PATH},
            {"name": "initdb", "mountPath": INITDB_PATH, "readOnly": True},
        ]
        return volumes, mounts

    def build_config_map(self) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self.metadata(self.config_map_name),
            "data": {USERS_SQL_KEY: self.spec.extra.get(USERS_SQL_KEY, "")},
        }

    def build_resources(self) -> list[dict[str, Any]]:
        return [
            self.build_pvc(),
            self.build_config_map(),
            self.build_stateful_set(),
            self.build_service(),
        ]
