"""Keyed collection of the components of one reconcile pass."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from ..errors import (
    ConfigurationError,
    MissingCapabilityError,
    NoSuchComponentError,
    UnknownComponentTypeError,
)
from ..models import ComponentIdentity, ComponentSpec

# Importing the component modules fills COMPONENT_FACTORIES
from . import content_server, generic, management, mysql  # noqa: F401
from .base import COMPONENT_FACTORIES, Capability, Component, ServiceEndpoint

if TYPE_CHECKING:
    from ..targetstate import TargetState

logger = logging.getLogger(__name__)


class ComponentRegistry:
    """Components keyed by (type, kind, name-or-type), in insertion order."""

    def __init__(self, target_state: TargetState) -> None:
        self._target_state = target_state
        self._components: dict[ComponentIdentity, Component] = {}

    def add(self, spec: ComponentSpec) -> Component:
        """Create a component from ``spec``, or update the one already registered.

        Raises:
            ConfigurationError: If the spec has no type.
            UnknownComponentTypeError: If no factory exists for the type.
            InvariantViolation: If an update would change the identity.
        """
        if not spec.type:
            raise ConfigurationError(f"Component spec without type: {spec.model_dump()}")

        existing = self._components.get(spec.identity)
        if existing is not None:
            existing.update_spec(spec)
            return existing

        factory = COMPONENT_FACTORIES.get(spec.type)
        if factory is None:
            raise UnknownComponentTypeError(
                f"Unknown component type '{spec.type}'. "
                f"Valid types: {sorted(COMPONENT_FACTORIES)}"
            )
        component = factory(self._target_state, spec)
        self._components[spec.identity] = component
        logger.debug("Registered component", extra={"component": component.display_name})
        return component

    def add_all(self, specs: Iterable[ComponentSpec]) -> None:
        for spec in specs:
            self.add(spec)

    def remove(self, type_: str, kind: str = "", name: str = "") -> Component | None:
        return self._components.pop(ComponentIdentity(type_, kind, name or type_), None)

    def all(self) -> list[Component]:
        return list(self._components.values())

    def identities(self) -> frozenset[ComponentIdentity]:
        return frozenset(self._components)

    def __len__(self) -> int:
        return len(self._components)

    def find(
        self,
        predicate: Callable[[Component], bool],
        capability: Capability | None = None,
        description: str = "matching predicate",
    ) -> Component:
        """Return the first component matching ``predicate``.

        Raises:
            NoSuchComponentError: If nothing matches.
            MissingCapabilityError: If the match lacks ``capability``.
        """
        for component in self._components.values():
            if predicate(component):
                if capability is not None and capability not in component.capabilities:
                    raise MissingCapabilityError(
                        f"Component {component.display_name} does not provide {capability.value}"
                    )
                return component
        raise NoSuchComponentError(f"No component {description}")

    def find_by_name(
        self, name: str, kind: str | None = None, capability: Capability | None = None
    ) -> Component:
        """Return the component with ``name`` (and ``kind``, when given)."""
        description = f"named '{name}'" + (f" of kind '{kind}'" if kind is not None else "")
        return self.find(
            lambda c: c.base_name == name and (kind is None or c.kind == kind),
            capability=capability,
            description=description,
        )

    def find_all(self, type_: str, kind: str | None = None) -> list[Component]:
        return [
            c
            for c in self._components.values()
            if c.type == type_ and (kind is None or c.kind == kind)
        ]

    def find_with(self, capability: Capability) -> list[Component]:
        """Every component offering ``capability``."""
        return [c for c in self._components.values() if capability in c.capabilities]

    def service_for(self, name: str, kind: str | None = None) -> ServiceEndpoint:
        """Service endpoint of the named component."""
        component = self.find_by_name(name, kind, capability=Capability.SERVICE)
        return component.capabilities[Capability.SERVICE]

    def service_name_for(self, name: str, kind: str | None = None) -> str:
        return self.service_for(name, kind).service_name

    def service_url_for(self, name: str, kind: str | None = None) -> str:
        return self.service_for(name, kind).url
