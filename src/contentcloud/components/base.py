"""Component contract and the static factory table.

A component turns one ComponentSpec into the Kubernetes objects it needs,
reports its readiness, and asks the secret broker for the credentials it
consumes. Concrete components register themselves by spec ``type`` with
``@register_component``; the registry looks constructors up in
COMPONENT_FACTORIES and never inspects classes at runtime.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import InvariantViolation
from ..milestones import DEFAULT_COMPONENT_MILESTONE, Milestone, Readiness
from ..models import ComponentIdentity, ComponentSpec

if TYPE_CHECKING:
    from ..targetstate import TargetState

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    """Optional features a component can offer to others."""

    # Exposes a ClusterIP service (value: ServiceEndpoint)
    SERVICE = "service"

    # Hosts databases for a client secret kind (value: DatabaseEndpoint)
    DATABASE = "database"


@dataclass(frozen=True)
class ServiceEndpoint:
    """In-cluster address of a component's service."""

    service_name: str
    port: int

    @property
    def url(self) -> str:
        return f"http://{self.service_name}:{self.port}"


@dataclass(frozen=True)
class DatabaseEndpoint:
    """Address of a database server and the secret kinds it serves."""

    host: str
    port: int
    kinds: frozenset[str]


ComponentFactory = Callable[["TargetState", ComponentSpec], "Component"]

COMPONENT_FACTORIES: dict[str, ComponentFactory] = {}


def register_component(type_: str) -> Callable[[type[Component]], type[Component]]:
    """Class decorator registering a component constructor for ``type_``."""

    def decorator(cls: type[Component]) -> type[Component]:
        if type_ in COMPONENT_FACTORIES:
            raise InvariantViolation(f"Component type registered twice: {type_}")
        COMPONENT_FACTORIES[type_] = cls
        cls.component_type = type_
        return cls

    return decorator


class Component(ABC):
    """Runtime instance of a ComponentSpec within one reconcile pass.

    Attributes:
        target_state: The pass this component belongs to.
        spec: Current (possibly updated) spec.
        capabilities: Features offered to other components.
    """

    component_type: str = ""
    default_milestone: Milestone = DEFAULT_COMPONENT_MILESTONE

    def __init__(self, target_state: TargetState, spec: ComponentSpec) -> None:
        self.target_state = target_state
        self.spec = spec.model_copy(deep=True)
        self.capabilities: dict[Capability, Any] = {}

    # -- identity ---------------------------------------------------------

    @property
    def type(self) -> str:
        return self.spec.type

    @property
    def kind(self) -> str:
        return self.spec.kind

    @property
    def base_name(self) -> str:
        return self.spec.name or self.spec.type

    @property
    def identity(self) -> ComponentIdentity:
        return self.spec.identity

    @property
    def object_name(self) -> str:
        """Unprefixed name of the primary Kubernetes object."""
        return self.spec.name or self.spec.kind or self.spec.type

    @property
    def display_name(self) -> str:
        return self.base_name if not self.kind else f"{self.base_name}/{self.kind}"

    @property
    def target_name(self) -> str:
        """Name of the primary Kubernetes object, with prefix and suffix."""
        return self.target_state.resource_name(self.object_name)

    @property
    def milestone(self) -> Milestone:
        return self.spec.milestone or self.default_milestone

    # -- lifecycle --------------------------------------------------------

    def update_spec(self, spec: ComponentSpec) -> None:
        """Merge a later spec with the same identity into this component.

        Only fields explicitly set on ``spec`` override current values.

        Raises:
            InvariantViolation: If the identity differs.
        """
        if spec.identity != self.identity:
            raise InvariantViolation(
                f"Cannot update component {self.identity} with spec for {spec.identity}"
            )
        updates = {name: getattr(spec, name) for name in spec.model_fields_set}
        self.spec = self.spec.model_copy(update=updates, deep=True)

    def default_secret_schemas(self) -> dict[str, str]:
        """Client secrets consumed regardless of the spec, kind -> schema."""
        return {}

    def secret_schemas(self) -> dict[str, str]:
        """Client secrets this component consumes, kind -> schema."""
        return {**self.default_secret_schemas(), **self.spec.schemas}

    def request_required_resources(self) -> None:
        """Ask the secret broker for everything this component consumes."""
        broker = self.target_state.secrets
        for kind, schema in sorted(self.secret_schemas().items()):
            broker.get_ref(kind, schema, self.target_state.secret_builder(kind))

    def secret_env(self) -> list[dict[str, Any]]:
        """Environment variables wiring every consumed secret into a container.

        Raises:
            InvariantViolation: If a secret was not requested beforehand.
        """
        env: list[dict[str, Any]] = []
        for kind, schema in sorted(self.secret_schemas().items()):
            ref = self.target_state.secrets.get_ref(kind, schema)
            if ref is None:
                raise InvariantViolation(
                    f"{self.display_name} builds resources before requesting {kind}/{schema}"
                )
            for entry, key in sorted(ref.key_map().items()):
                env.append(
                    {
                        "name": f"{kind}_{entry}".upper(),
                        "valueFrom": {"secretKeyRef": {"name": ref.secret_name, "key": key}},
                    }
                )
        return env

    def add_dependent_components(self) -> None:
        """Register or update components derived from requested resources."""
        pass

    def is_build_resources(self) -> bool:
        """Whether this component's resources belong in the desired state."""
        return self.target_state.milestone.reached(self.milestone)

    def is_ready(self) -> Readiness:
        return Readiness.NOT_APPLICABLE

    @abstractmethod
    def build_resources(self) -> list[dict[str, Any]]:
        """Build the Kubernetes objects of this component."""

    # -- helpers ----------------------------------------------------------

    def metadata(self, name: str | None = None) -> dict[str, Any]:
        """Object metadata for a resource of this component."""
        return self.target_state.metadata(name or self.target_name, component=self.object_name)

    def image(self, default_repository: str, tag: str | None = None) -> str:
        """Resolve the container image from the spec or the CR defaults."""
        if self.spec.image:
            return self.spec.image
        defaults = self.target_state.defaults
        repository = default_repository
        if defaults.image_registry:
            repository = f"{defaults.image_registry.rstrip('/')}/{repository}"
        return f"{repository}:{tag or defaults.image_tag}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.display_name})"
