"""Client secret broker.

Maps (kind, schema) pairs to connection secrets for one reconcile pass.
References declared in ``spec.clientSecretRefs`` pre-seed the broker; any
other pair is provisioned on first request when the feature flags allow it.

Provisioning is lazy and idempotent: the Secret is loaded from the cluster
first and only generated when absent, so a password never changes once it
has been written. Repeated requests within a pass return the same entry.
"""

from __future__ import annotations

import base64
import copy
import logging
import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .diff_normalizer import SERVER_MANAGED_METADATA
from .errors import MissingSecretError
from .models import ClientSecretRef, concat_optional
from .resource_diff import is_owned

if TYPE_CHECKING:
    from .cluster import Cluster

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits

MYSQL_DRIVER = "com.mysql.cj.jdbc.Driver"
MYSQL_PORT = 3306
MONGODB_PORT = 27017


@dataclass
class ClientSecret:
    """A client secret reference plus its payload once materialized.

    Attributes:
        kind: Client kind, e.g. ``jdbc``.
        schema: Schema within the kind, e.g. ``master``.
        ref: Secret name and key names.
        secret: The Secret object, loaded or generated; None until then.
        owned: Whether this operator owns the Secret and must emit it.
    """

    kind: str
    schema: str
    ref: ClientSecretRef
    secret: dict[str, Any] | None = None
    owned: bool = False

    def entry(self, name: str) -> str | None:
        """Decoded value of a logical entry (see SECRET_KEYS), if present."""
        if self.secret is None:
            return None
        key = self.ref.key_for(name)
        string_data = self.secret.get("stringData") or {}
        if key in string_data:
            return string_data[key]
        encoded = (self.secret.get("data") or {}).get(key)
        if encoded is None:
            return None
        return base64.b64decode(encoded).decode("utf-8")

    @property
    def password(self) -> str | None:
        return self.entry("password")


BuildOrLoad = Callable[[ClientSecret, str], None]


def generate_password(length: int) -> str:
    """Random alphanumeric password from a CSPRNG."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def secret_name(prefix: str, kind: str, schema: str) -> str:
    """Deterministic Secret name ``[<prefix>-]<kind>-<schema>``."""
    name = concat_optional(prefix, kind, schema).lower()
    return re.sub(r"[^a-z0-9-]", "-", name)


def connection_entries(
    kind: str, schema: str, password: str, host: str, port: int | None = None
) -> dict[str, str]:
    """Logical connection entries for a freshly provisioned secret.

    Args:
        kind: Client kind selecting the template.
        schema: Database schema, also used as user name.
        password: Password to store.
        host: Database host name.
        port: Database port, defaulting per kind.

    Returns:
        Entries keyed by logical key name.
    """
    match kind:
        case "jdbc":
            port = port or MYSQL_PORT
            return {
                "driver": MYSQL_DRIVER,
                "hostname": host,
                "password": password,
                "schema": schema,
                "url": f"jdbc:mysql://{host}:{port}/{schema}",
                "username": schema,
            }
        case "mysql":
            port = port or MYSQL_PORT
            return {
                "hostname": host,
                "password": password,
                "schema": schema,
                "url": f"mysql://{host}:{port}",
                "username": schema,
            }
        case "mongodb":
            port = port or MONGODB_PORT
            return {
                "hostname": host,
                "password": password,
                "schema": schema,
                "url": f"mongodb://{schema}:{password}@{host}:{port}/{schema}",
                "username": schema,
            }
        case _:
            return {
                "hostname": host,
                "password": password,
                "schema": schema,
                "username": schema,
            }


class ClientSecretBroker:
    """Memoized (kind, schema) to client secret mapping for one pass.

    Args:
        cluster: Cluster gateway used to load existing Secrets.
        namespace: Namespace of the custom resource.
        name_prefix: Prefix for generated Secret names.
        declared: ``spec.clientSecretRefs``.
        auto_provision: Predicate telling whether a kind may be provisioned.
        password_length: Length of generated passwords.
        insecure_password: Fixed password replacing generated ones.
        owner_reference: Owner reference of the custom resource.
        metadata: Builds object metadata for a generated Secret.
    """

    def __init__(
        self,
        cluster: Cluster,
        namespace: str,
        name_prefix: str,
        declared: dict[str, dict[str, ClientSecretRef]],
        auto_provision: Callable[[str], bool],
        password_length: int,
        insecure_password: str | None,
        owner_reference: dict[str, Any],
        metadata: Callable[[str], dict[str, Any]],
    ) -> None:
        self._cluster = cluster
        self._namespace = namespace
        self._name_prefix = name_prefix
        self._auto_provision = auto_provision
        self._password_length = password_length
        self._insecure_password = insecure_password
        self._owner_reference = owner_reference
        self._metadata = metadata
        self._secrets: dict[str, dict[str, ClientSecret]] = {}

        for kind, by_schema in declared.items():
            for schema, ref in by_schema.items():
                self._secrets.setdefault(kind, {})[schema] = ClientSecret(kind, schema, ref)

    def get_ref(
        self, kind: str, schema: str, build_or_load: BuildOrLoad | None = None
    ) -> ClientSecretRef | None:
        """Look up, or create, the reference for (kind, schema).

        Without ``build_or_load`` this never creates anything and returns
        None for unknown pairs. With it, an unknown pair gets a
        deterministic Secret name, a password, and ``build_or_load`` is
        invoked once to load or generate the payload.

        Raises:
            MissingSecretError: If provisioning is disabled for ``kind`` and
                no reference was declared.
        """
        existing = self._secrets.get(kind, {}).get(schema)
        if existing is not None:
            return existing.ref
        if build_or_load is None:
            return None

        if not self._auto_provision(kind):
            raise MissingSecretError(
                f"No client secret declared for kind '{kind}' schema '{schema}' "
                f"and automatic provisioning of '{kind}' is disabled"
            )

        ref = ClientSecretRef(secret_name=secret_name(self._name_prefix, kind, schema))
        client_secret = ClientSecret(kind, schema, ref)
        self._secrets.setdefault(kind, {})[schema] = client_secret
        build_or_load(client_secret, self.new_password())
        logger.debug(
            "Client secret requested",
            extra={"kind": kind, "schema": schema, "secret_name": ref.secret_name},
        )
        return ref

    def get(self, kind: str, schema: str) -> ClientSecret | None:
        """The client secret entry for (kind, schema), payload back-filled."""
        client_secret = self._secrets.get(kind, {}).get(schema)
        if client_secret is not None and client_secret.secret is None:
            self.load(client_secret)
        return client_secret

    def get_all(self, kind: str) -> dict[str, ClientSecret]:
        """Every client secret of ``kind`` keyed by schema.

        Entries without a payload are back-filled from the cluster.
        """
        by_schema = self._secrets.get(kind, {})
        for client_secret in by_schema.values():
            if client_secret.secret is None:
                self.load(client_secret)
        return dict(sorted(by_schema.items()))

    def new_password(self) -> str:
        if self._insecure_password:
            return self._insecure_password
        return generate_password(self._password_length)

    def load(self, client_secret: ClientSecret) -> bool:
        """Load the Secret from the cluster.

        Returns:
            True if the Secret exists.
        """
        live = self._cluster.get("v1", "Secret", self._namespace, client_secret.ref.secret_name)
        if live is None:
            return False
        client_secret.secret = live
        client_secret.owned = is_owned(live, self._owner_reference)
        return True

    def build(self, client_secret: ClientSecret, entries: dict[str, str]) -> None:
        """Generate new Secret content from logical entries."""
        ref = client_secret.ref
        data = {
            ref.key_for(entry): base64.b64encode(value.encode("utf-8")).decode("ascii")
            for entry, value in sorted(entries.items())
        }
        client_secret.secret = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": self._metadata(ref.secret_name),
            "type": "Opaque",
            "data": data,
        }
        client_secret.owned = True
        logger.info(
            "Generated client secret",
            extra={
                "kind": client_secret.kind,
                "schema": client_secret.schema,
                "secret_name": ref.secret_name,
            },
        )

    def load_or_build(self, client_secret: ClientSecret, entries: dict[str, str]) -> None:
        """Reuse the Secret in the cluster, or build it from ``entries``."""
        if not self.load(client_secret):
            self.build(client_secret, entries)

    def build_secret_resources(self) -> list[dict[str, Any]]:
        """Secret objects this operator owns, ready to be applied.

        User-provided Secrets are never emitted.
        """
        resources: list[dict[str, Any]] = []
        for kind in sorted(self._secrets):
            for schema in sorted(self._secrets[kind]):
                client_secret = self._secrets[kind][schema]
                if not client_secret.owned or client_secret.secret is None:
                    continue
                resources.append(_strip_server_fields(client_secret.secret))
        return resources


def _strip_server_fields(secret: dict[str, Any]) -> dict[str, Any]:
    body = copy.deepcopy(secret)
    metadata = body.setdefault("metadata", {})
    for key in SERVER_MANAGED_METADATA:
        metadata.pop(key, None)
    return body
