"""Desired state of one ContentCloud for one reconcile pass.

Components can depend on each other: a content server requests a jdbc
secret, which makes the managed database add a schema for it, which changes
the database's init script. ``TargetState.converge`` resolves these
dependencies with a bounded fixed-point iteration before any resource is
built. Each round:

1. registers built-in default components selected by feature flags
2. registers (or updates) the components declared in the spec
3. lets every component request the client secrets it consumes
4. lets components derive dependent configuration from those requests
5. evaluates the milestone once

The loop stops as soon as a round leaves both the set of component
identities and the milestone unchanged.
"""

from __future__ import annotations

import logging
from typing import Any

from .cluster import Cluster
from .components.base import Capability, Component, DatabaseEndpoint
from .components.registry import ComponentRegistry
from .config import (
    COMPONENT_LABEL,
    INSTANCE_LABEL,
    OPERATOR_LABEL,
    OPERATOR_LABEL_VALUE,
    Config,
)
from .errors import ConvergenceError, NoSuchComponentError
from .milestones import Milestone, MilestoneTracker
from .models import ComponentDefaults, ComponentSpec, ContentCloud, concat_optional
from .secret_broker import BuildOrLoad, ClientSecret, ClientSecretBroker, connection_entries

logger = logging.getLogger(__name__)


class TargetState:
    """Registry, secret broker and milestone of one pass.

    Args:
        cr: Private copy of the custom resource. Status changes made during
            the pass (milestone, job pointer) are applied to this copy.
        cluster: Cluster gateway, read-only during convergence.
        config: Operator configuration.
    """

    def __init__(self, cr: ContentCloud, cluster: Cluster, config: Config) -> None:
        self.cr = cr
        self.cluster = cluster
        self.config = config
        self.owner_reference = cr.owner_reference()
        self.tracker = MilestoneTracker(current=cr.status.milestone)
        self.registry = ComponentRegistry(self)
        self.secrets = ClientSecretBroker(
            cluster=cluster,
            namespace=cr.namespace,
            name_prefix=self.defaults.name_prefix,
            declared=cr.spec.client_secret_refs,
            auto_provision=cr.spec.with_.databases_for,
            password_length=config.password_length,
            insecure_password=(
                self.defaults.insecure_database_password or config.insecure_database_password
            ),
            owner_reference=self.owner_reference,
            metadata=self.metadata,
        )
        self.rounds = 0
        self._converged = False

    # -- naming -----------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self.cr.namespace

    @property
    def defaults(self) -> ComponentDefaults:
        return self.cr.spec.defaults

    @property
    def milestone(self) -> Milestone:
        return self.tracker.current

    def resource_name(self, *parts: str) -> str:
        """Object name with the configured prefix and suffix."""
        return concat_optional(self.defaults.name_prefix, *parts, self.defaults.name_suffix)

    def instance_labels(self) -> dict[str, str]:
        return {OPERATOR_LABEL: OPERATOR_LABEL_VALUE, INSTANCE_LABEL: self.cr.name}

    def label_selector(self) -> str:
        return ",".join(f"{k}={v}" for k, v in sorted(self.instance_labels().items()))

    def selector_labels(self, component: str) -> dict[str, str]:
        return {INSTANCE_LABEL: self.cr.name, COMPONENT_LABEL: component}

    def metadata(self, name: str, component: str | None = None) -> dict[str, Any]:
        """Metadata of an owned object: namespace, labels and owner reference."""
        labels = self.instance_labels()
        if component:
            labels[COMPONENT_LABEL] = component
        return {
            "name": name,
            "namespace": self.namespace,
            "labels": labels,
            "ownerReferences": [dict(self.owner_reference)],
        }

    # -- secrets ----------------------------------------------------------

    def database_endpoint(self, kind: str) -> DatabaseEndpoint:
        """The database server hosting client secrets of ``kind``.

        Raises:
            NoSuchComponentError: If no component serves ``kind``.
        """
        for component in self.registry.find_with(Capability.DATABASE):
            endpoint: DatabaseEndpoint = component.capabilities[Capability.DATABASE]
            if kind in endpoint.kinds:
                return endpoint
        raise NoSuchComponentError(f"No component provides databases for client kind '{kind}'")

    def secret_builder(self, kind: str) -> BuildOrLoad:
        """Load-or-build callback for a client secret of ``kind``.

        The database endpoint is only resolved when the Secret does not
        exist yet and has to be generated.
        """

        def build_or_load(client_secret: ClientSecret, password: str) -> None:
            if self.secrets.load(client_secret):
                return
            endpoint = self.database_endpoint(kind)
            self.secrets.build(
                client_secret,
                connection_entries(
                    kind, client_secret.schema, password, endpoint.host, endpoint.port
                ),
            )

        return build_or_load

    # -- convergence ------------------------------------------------------

    def default_component_specs(self) -> list[ComponentSpec]:
        """Built-in components selected by the feature flags."""
        flags = self.cr.spec.with_
        specs: list[ComponentSpec] = []
        if flags.databases:
            specs.append(ComponentSpec(type="mysql"))
        if flags.management:
            specs.append(ComponentSpec(type="content-server", kind="cms"))
            specs.append(ComponentSpec(type="content-server", kind="mls"))
        if flags.delivery.min_cae:
            specs.append(ComponentSpec(type="cae"))
        return specs

    def converge(self) -> None:
        """Run the convergence loop until a fixed point.

        Raises:
            ConvergenceError: If no fixed point is reached within
                ``config.max_convergence_rounds`` rounds.
        """
        if self._converged:
            return

        previous: tuple[frozenset, Milestone] | None = None
        for round_number in range(1, self.config.max_convergence_rounds + 1):
            self.rounds = round_number
            self.registry.add_all(self.default_component_specs())
            self.registry.add_all(self.cr.spec.components)
            self._check_requested_job()

            for component in self.registry.all():
                component.request_required_resources()
            for component in self.registry.all():
                component.add_dependent_components()

            self.tracker.advance_if_ready(self.registry.all())
            if self.tracker.left_run_once and self.cr.status.job:
                logger.info("Job completed", extra={"job": self.cr.status.job})
                self.cr.status.job = ""

            snapshot = (self.registry.identities(), self.tracker.current)
            if snapshot == previous:
                self._converged = True
                logger.debug(
                    "Target state converged",
                    extra={
                        "instance": self.cr.name,
                        "rounds": round_number,
                        "milestone": self.milestone.value,
                        "components": len(self.registry),
                    },
                )
                return
            previous = snapshot

        logger.error(
            "Target state did not converge",
            extra={"instance": self.cr.name, "rounds": self.config.max_convergence_rounds},
        )
        raise ConvergenceError(
            f"No fixed point after {self.config.max_convergence_rounds} convergence rounds "
            f"(milestone {self.milestone.value})"
        )

    def find_run_once(self, name: str) -> Component:
        """Return the run-once component called ``name``.

        Raises:
            NoSuchComponentError: If no run-once component has that name.
        """
        component = self.registry.find_by_name(name)
        if not component.milestone.is_run_once:
            raise NoSuchComponentError(f"Component {component.display_name} is not a job")
        return component

    def _check_requested_job(self) -> None:
        """Drop a job request whose component is gone.

        The run-once stage then has nothing pending and settles on Ready.
        """
        if self.milestone is not Milestone.RUN_JOB or not self.cr.status.job:
            return
        try:
            self.find_run_once(self.cr.status.job)
        except NoSuchComponentError as e:
            logger.warning(
                "Dropping job request",
                extra={"instance": self.cr.name, "job": self.cr.status.job, "error": str(e)},
            )
            self.cr.status.job = ""

    # -- resources --------------------------------------------------------

    def build_resources(self) -> list[dict[str, Any]]:
        """Converge, then collect every desired resource of this pass."""
        self.converge()
        resources: list[dict[str, Any]] = []
        resources.extend(self.build_component_resources())
        resources.extend(self.build_extra_resources())
        resources.extend(self.build_ingress_resources())
        return resources

    def build_component_resources(self) -> list[dict[str, Any]]:
        resources: list[dict[str, Any]] = []
        for component in self.registry.all():
            if component.is_build_resources():
                resources.extend(component.build_resources())
        return resources

    def build_extra_resources(self) -> list[dict[str, Any]]:
        """Secrets provisioned by the broker."""
        return self.secrets.build_secret_resources()

    def build_ingress_resources(self) -> list[dict[str, Any]]:
        """One Ingress per site mapping whose target component is built."""
        site_mappings = self.cr.spec.site_mappings
        if not site_mappings:
            return []

        annotations_base = dict(self.cr.spec.with_.ingress_annotations)
        resources: list[dict[str, Any]] = []
        for mapping in site_mappings:
            component = self.registry.find_by_name(mapping.target, capability=Capability.SERVICE)
            if not component.is_build_resources():
                continue
            endpoint = component.capabilities[Capability.SERVICE]
            host = mapping.hostname
            if "." not in host and self.defaults.ingress_domain:
                host = f"{host}.{self.defaults.ingress_domain}"

            annotations = dict(annotations_base)
            paths = [mapping.primary_segment, *mapping.additional_segments]
            if mapping.primary_segment:
                annotations["nginx.ingress.kubernetes.io/rewrite-target"] = (
                    f"/{mapping.primary_segment}/$2"
                )

            metadata = self.metadata(
                self.resource_name(mapping.hostname.split(".")[0], "ingress"),
                component=component.object_name,
            )
            if annotations:
                metadata["annotations"] = annotations
            resources.append(
                {
                    "apiVersion": "networking.k8s.io/v1",
                    "kind": "Ingress",
                    "metadata": metadata,
                    "spec": {
                        "rules": [
                            {
                                "host": host,
                                "http": {
                                    "paths": [
                                        _ingress_path(segment, endpoint.service_name, endpoint.port)
                                        for segment in (paths if any(paths) else [""])
                                    ]
                                },
                            }
                        ]
                    },
                }
            )
        return resources

    # -- status -----------------------------------------------------------

    def update_status(self) -> None:
        """Record the outcome of convergence on the custom resource copy."""
        status = self.cr.status
        status.milestone = self.milestone
        status.pending_components = list(self.tracker.pending)


def _ingress_path(segment: str, service_name: str, port: int) -> dict[str, Any]:
    path = "/(.*)" if not segment else f"/{segment}(/|$)(.*)"
    return {
        "path": path,
        "pathType": "ImplementationSpecific",
        "backend": {"service": {"name": service_name, "port": {"number": port}}},
    }
