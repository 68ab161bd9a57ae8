"""Configuration management with validation.

Operator-wide settings are loaded once from the environment and threaded
explicitly into the reconciler and the kopf handler registry. Invalid
settings fail at startup rather than mid-reconcile.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ConfigurationError

__all__ = ["Config", "ConfigurationError"]

# Custom resource coordinates
API_GROUP = "contentcloud.io"
API_VERSION = "v1"
API_GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"
KIND = "ContentCloud"
PLURAL = "contentclouds"

# Labels and annotations stamped on every owned resource
OPERATOR_LABEL = "contentcloud.io/operator"
OPERATOR_LABEL_VALUE = "contentcloud"
INSTANCE_LABEL = "contentcloud.io/instance"
COMPONENT_LABEL = "contentcloud.io/component"
TRIGGER_ANNOTATION = "contentcloud.io/reconcile-trigger"
DESIRED_HASH_ANNOTATION = "contentcloud.io/desired-hash"

# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 30
MAX_RECONCILE_INTERVAL_SECONDS = 3600

# Must exceed the number of milestones so that vacuous readiness can
# walk the whole rollout in a single pass.
DEFAULT_MAX_CONVERGENCE_ROUNDS = 10
MIN_CONVERGENCE_ROUNDS = 2
MAX_CONVERGENCE_ROUNDS = 50

DEFAULT_PASSWORD_LENGTH = 16
MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 64

# Security constraints
MAX_RESOURCE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max custom resource file
MAX_NAME_LENGTH = 63


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Namespaces to watch, empty means cluster-wide
    watch_namespaces: tuple[str, ...] = ()

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    # Convergence
    max_convergence_rounds: int = DEFAULT_MAX_CONVERGENCE_ROUNDS

    # Credentials
    password_length: int = DEFAULT_PASSWORD_LENGTH
    insecure_database_password: str | None = None

    # Behavior
    dry_run: bool = False
    enable_json_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (MIN_CONVERGENCE_ROUNDS <= self.max_convergence_rounds <= MAX_CONVERGENCE_ROUNDS):
            errors.append(
                f"MAX_CONVERGENCE_ROUNDS must be between {MIN_CONVERGENCE_ROUNDS} "
                f"and {MAX_CONVERGENCE_ROUNDS}"
            )

        if not (MIN_PASSWORD_LENGTH <= self.password_length <= MAX_PASSWORD_LENGTH):
            errors.append(
                f"PASSWORD_LENGTH must be between {MIN_PASSWORD_LENGTH} "
                f"and {MAX_PASSWORD_LENGTH}"
            )

        for namespace in self.watch_namespaces:
            if not namespace or len(namespace) > MAX_NAME_LENGTH:
                errors.append(f"WATCH_NAMESPACES contains an invalid namespace: {namespace!r}")

        if self.insecure_database_password is not None and not self.insecure_database_password:
            errors.append("INSECURE_DATABASE_PASSWORD must not be empty when set")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def clusterwide(self) -> bool:
        """Whether the operator watches every namespace."""
        return not self.watch_namespaces

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            WATCH_NAMESPACES: Comma-separated namespaces (default: cluster-wide)
            RECONCILE_INTERVAL: Seconds between periodic reconciles (default: 300)
            MAX_CONVERGENCE_ROUNDS: Fixed-point iteration cap (default: 10)
            PASSWORD_LENGTH: Length of generated database passwords (default: 16)
            INSECURE_DATABASE_PASSWORD: Fixed password for all generated
                secrets, for development clusters only (default: unset)
            DRY_RUN: If "true", compute diffs without writing (default: false)
            ENABLE_JSON_LOGGING: Emit JSON logs to stdout (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        namespaces = tuple(
            ns.strip() for ns in os.environ.get("WATCH_NAMESPACES", "").split(",") if ns.strip()
        )

        return cls(
            watch_namespaces=namespaces,
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            max_convergence_rounds=get_int(
                "MAX_CONVERGENCE_ROUNDS", DEFAULT_MAX_CONVERGENCE_ROUNDS
            ),
            password_length=get_int("PASSWORD_LENGTH", DEFAULT_PASSWORD_LENGTH),
            insecure_database_password=os.environ.get("INSECURE_DATABASE_PASSWORD"),
            dry_run=get_bool("DRY_RUN", False),
            enable_json_logging=get_bool("ENABLE_JSON_LOGGING", True),
        )
