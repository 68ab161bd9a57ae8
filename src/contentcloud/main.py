"""Main entry point for the ContentCloud operator.

Handlers are registered on an explicit kopf registry built from the
operator ``Config``, so nothing depends on module-level state:

- create/update/resume and a periodic timer run a reconcile pass
- events on owned StatefulSets and Jobs bump a trigger annotation on the
  owning custom resource, which schedules a pass on readiness changes
- deletion removes every owned child resource
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

import kopf

from .cluster import Cluster, KubernetesCluster
from .config import API_GROUP, API_VERSION, OPERATOR_LABEL, OPERATOR_LABEL_VALUE, PLURAL, Config
from .errors import TransientClusterError
from .reconciler import Reconciler

logger = logging.getLogger(__name__)

# Seconds before kopf retries a pass that hit a transient API error
TRANSIENT_RETRY_DELAY_SECONDS = 15

# Prefix for kopf's own bookkeeping annotations
KOPF_ANNOTATION_PREFIX = "kopf.contentcloud.io"

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_logs: bool = True) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from the Kubernetes client and kopf's per-object logs
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kopf.objects").setLevel(logging.WARNING)


def build_registry(config: Config, cluster: Cluster) -> kopf.OperatorRegistry:
    """Register every handler of the operator on a fresh kopf registry."""
    registry = kopf.OperatorRegistry()
    reconciler = Reconciler(config, cluster)
    owned_selector = {OPERATOR_LABEL: OPERATOR_LABEL_VALUE}

    @kopf.on.startup(registry=registry)
    def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
        settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
            prefix=KOPF_ANNOTATION_PREFIX
        )
        settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
            prefix=KOPF_ANNOTATION_PREFIX
        )
        settings.posting.level = logging.WARNING

    def run_reconcile(body: Any) -> None:
        try:
            reconciler.reconcile(body)
        except TransientClusterError as e:
            raise kopf.TemporaryError(str(e), delay=TRANSIENT_RETRY_DELAY_SECONDS) from e

    @kopf.on.create(API_GROUP, API_VERSION, PLURAL, registry=registry)
    @kopf.on.update(API_GROUP, API_VERSION, PLURAL, registry=registry)
    @kopf.on.resume(API_GROUP, API_VERSION, PLURAL, registry=registry)
    def on_change(body: kopf.Body, **_: Any) -> None:
        run_reconcile(body)

    @kopf.timer(
        API_GROUP,
        API_VERSION,
        PLURAL,
        interval=config.reconcile_interval_seconds,
        idle=config.reconcile_interval_seconds,
        registry=registry,
    )
    def on_timer(body: kopf.Body, **_: Any) -> None:
        run_reconcile(body)

    @kopf.on.event("apps", "v1", "statefulsets", labels=owned_selector, registry=registry)
    @kopf.on.event("batch", "v1", "jobs", labels=owned_selector, registry=registry)
    def on_child_event(body: kopf.Body, type: str | None, **_: Any) -> None:
        if type == "DELETED":
            return
        try:
            reconciler.trigger_owner(body)
        except TransientClusterError as e:
            logger.debug("Owner trigger skipped", extra={"error": str(e)})

    @kopf.on.delete(API_GROUP, API_VERSION, PLURAL, registry=registry)
    def on_delete(body: kopf.Body, **_: Any) -> None:
        try:
            reconciler.cleanup(body)
        except TransientClusterError as e:
            raise kopf.TemporaryError(str(e), delay=TRANSIENT_RETRY_DELAY_SECONDS) from e

    return registry


def run(config: Config | None = None) -> None:
    """Load configuration, connect to the cluster and run kopf until stopped."""
    config = config or Config.from_env()
    setup_logging(config.enable_json_logging)

    logger.info(
        "Starting ContentCloud operator",
        extra={
            "namespaces": list(config.watch_namespaces) or "*",
            "reconcile_interval_seconds": config.reconcile_interval_seconds,
            "dry_run": config.dry_run,
        },
    )

    cluster = KubernetesCluster.from_environment()
    registry = build_registry(config, cluster)
    kopf.run(
        registry=registry,
        standalone=True,
        clusterwide=config.clusterwide,
        namespaces=list(config.watch_namespaces),
    )
    logger.info("Operator stopped")
