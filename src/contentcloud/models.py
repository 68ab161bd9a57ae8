"""Pydantic models for the ContentCloud custom resource.

These models provide:
1. Type-safe parsing of the custom resource body
2. Validation at the boundary (fail fast, fail loudly)
3. Serialization of status back to the camelCase wire format
"""

from __future__ import annotations

import re
from typing import Annotated, Any, NamedTuple

from pydantic import BaseModel, Field, field_validator

from .config import API_GROUP_VERSION, KIND
from .milestones import Milestone

# DNS-1123 label, used for component names and kinds
VALID_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"

# Logical key names of a client secret
SECRET_KEYS = ("driver", "hostname", "password", "schema", "url", "username")


def concat_optional(*parts: str | None, separator: str = "-") -> str:
    """Join the non-empty parts with ``separator``."""
    return separator.join(part for part in parts if part)


class ComponentIdentity(NamedTuple):
    """Registry key of a component."""

    type: str
    kind: str
    name: str


# =============================================================================
# Components
# =============================================================================


class ComponentSpec(BaseModel):
    """Declarative description of one component."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str = ""
    kind: str = ""
    name: str = ""
    milestone: Milestone | None = None
    image: str = ""
    replicas: Annotated[int, Field(ge=0, le=100)] = 1
    args: list[str] = Field(default_factory=list)
    env: list[dict[str, Any]] = Field(default_factory=list)
    extra: dict[str, str] = Field(default_factory=dict)

    # kind -> schema of the client secrets this component consumes
    schemas: dict[str, str] = Field(default_factory=dict)

    volume_size: str = Field("8Gi", alias="volumeSize")

    @field_validator("kind", "name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if v and not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"must be a lowercase DNS label: {v!r}")
        return v

    @property
    def identity(self) -> ComponentIdentity:
        return ComponentIdentity(self.type, self.kind, self.name or self.type)


# =============================================================================
# Client secrets
# =============================================================================


class ClientSecretRef(BaseModel):
    """Name of a Secret plus the keys holding each connection detail.

    Carries no secret bytes.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    secret_name: Annotated[str, Field(min_length=1, alias="secretName")]
    driver_key: str = Field("driver", alias="driverKey")
    hostname_key: str = Field("hostname", alias="hostnameKey")
    password_key: str = Field("password", alias="passwordKey")
    schema_key: str = Field("schema", alias="schemaKey")
    url_key: str = Field("url", alias="urlKey")
    username_key: str = Field("username", alias="usernameKey")

    def key_for(self, entry: str) -> str:
        """Map a logical key name (see SECRET_KEYS) to the stored key."""
        return getattr(self, f"{entry}_key")

    def key_map(self) -> dict[str, str]:
        return {entry: self.key_for(entry) for entry in SECRET_KEYS}


# =============================================================================
# Spec
# =============================================================================


class ComponentDefaults(BaseModel):
    """Defaults shared by every component."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name_prefix: str = Field("", alias="namePrefix")
    name_suffix: str = Field("", alias="nameSuffix")
    ingress_domain: str = Field("", alias="ingressDomain")
    insecure_database_password: str = Field("", alias="insecureDatabasePassword")
    image_registry: str = Field("", alias="imageRegistry")
    image_tag: str = Field("latest", alias="imageTag")
    image_pull_policy: str = Field("IfNotPresent", alias="imagePullPolicy")

    @field_validator("image_pull_policy")
    @classmethod
    def validate_pull_policy(cls, v: str) -> str:
        valid = {"Always", "IfNotPresent", "Never"}
        if v not in valid:
            raise ValueError(f"imagePullPolicy must be one of {valid}")
        return v


class DeliveryOptions(BaseModel):
    """Delivery tier feature flags."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    min_cae: bool = Field(False, alias="minCae")


class WithOptions(BaseModel):
    """Feature flags selecting built-in default components."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    databases: bool = False
    databases_override: dict[str, bool] = Field(default_factory=dict, alias="databasesOverride")
    management: bool = True
    delivery: DeliveryOptions = Field(default_factory=DeliveryOptions)
    ingress_annotations: dict[str, str] = Field(default_factory=dict, alias="ingressAnnotations")

    def databases_for(self, kind: str) -> bool:
        """Whether client secrets of ``kind`` are provisioned automatically."""
        return self.databases_override.get(kind, self.databases)


class SiteMapping(BaseModel):
    """Routes a public hostname to a component's service."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    hostname: Annotated[str, Field(min_length=1)]
    primary_segment: str = Field("", alias="primarySegment")
    target: str = "cae"
    additional_segments: list[str] = Field(default_factory=list, alias="additionalSegments")


class ContentCloudSpec(BaseModel):
    """Desired state declared by the user."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    components: list[ComponentSpec] = Field(default_factory=list)
    client_secret_refs: dict[str, dict[str, ClientSecretRef]] = Field(
        default_factory=dict, alias="clientSecretRefs"
    )
    defaults: ComponentDefaults = Field(default_factory=ComponentDefaults)
    with_: WithOptions = Field(default_factory=WithOptions, alias="with")
    site_mappings: list[SiteMapping] = Field(default_factory=list, alias="siteMappings")
    job: str = ""
    comment: str = ""


# =============================================================================
# Status
# =============================================================================


class ContentCloudStatus(BaseModel):
    """Observed state written back by the operator."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    milestone: Milestone = Milestone.DEPLOYMENT_STARTED
    error: str = ""
    error_message: str = Field("", alias="errorMessage")
    job: str = ""
    flags: dict[str, str] = Field(default_factory=dict)
    owned_resources: list[str] = Field(default_factory=list, alias="ownedResources")
    pending_components: list[str] = Field(default_factory=list, alias="pendingComponents")

    def to_patch(self) -> dict[str, Any]:
        """Serialize for a merge patch of the status subresource."""
        return self.model_dump(mode="json", by_alias=True)


# =============================================================================
# Custom resource
# =============================================================================


class ObjectMeta(BaseModel):
    """The subset of object metadata the operator relies on."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


class ContentCloud(BaseModel):
    """One ContentCloud custom resource.

    Instances are private copies of the event body. Reconciling mutates
    ``status`` (and clears ``spec.job``) on the copy, never on the event.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_GROUP_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: ContentCloudSpec = Field(default_factory=ContentCloudSpec)
    status: ContentCloudStatus = Field(default_factory=ContentCloudStatus)

    @field_validator("spec", "status", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return {} if v is None else v

    @classmethod
    def from_body(cls, body: Any) -> ContentCloud:
        """Parse a custom resource body (a mapping or a kopf Body)."""
        return cls.model_validate(_plain(body))

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def owner_reference(self) -> dict[str, Any]:
        """Owner reference stamped on every resource this instance owns."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.metadata.name,
            "uid": self.metadata.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


def _plain(value: Any) -> Any:
    """Deep-copy mappings and sequences into plain dicts and lists."""
    if hasattr(value, "items"):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    return value
