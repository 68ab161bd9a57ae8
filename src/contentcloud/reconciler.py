"""Reconcile controller for ContentCloud custom resources.

One pass per event:

1. Parse a private copy of the custom resource from the event body; a
   malformed body is recorded as a configuration error
2. Enter the run-once stage when a job is waiting and the rollout is Ready
3. Converge the target state and build every desired resource
4. List owned resources and diff them against the desired set
5. Delete abandoned resources, then create or update new and changed ones
6. Clear the error, hand a known ``spec.job`` over to ``status.job``, persist
   status

Nothing is written to the cluster before the desired state has been built
completely, so a configuration error never leaves a half-applied rollout.

Error handling:
- TransientClusterError is re-raised untouched; the caller maps it to a
  retry and no error is written to the status.
- Every other failure is written to ``status.error`` and
  ``status.errorMessage`` and then re-raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .cluster import Cluster
from .config import API_GROUP_VERSION, KIND, TRIGGER_ANNOTATION, Config
from .diff_normalizer import DiffNormalizer
from .errors import ConfigurationError, NoSuchComponentError, TransientClusterError
from .milestones import Milestone
from .models import ContentCloud
from .resource_apply import ApplyOutcome, apply_resource
from .resource_diff import (
    MANAGED_KINDS,
    ResourceDiff,
    compute_diff,
    list_owned_resources,
    resource_key,
)
from .spec_loader import format_validation_errors
from .targetstate import TargetState

logger = logging.getLogger(__name__)

STATUS_ERROR = "error"


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    name: str
    namespace: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    milestone: Milestone | None = None
    rounds: int = 0
    diff: ResourceDiff | None = None
    outcomes: dict[ApplyOutcome, int] = field(default_factory=dict)
    deleted: int = 0
    dry_run: bool = False
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def mutations(self) -> int:
        """Number of writes to child resources."""
        changed = sum(n for o, n in self.outcomes.items() if o is not ApplyOutcome.UNCHANGED)
        return changed + self.deleted


class Reconciler:
    """Runs reconcile passes against one cluster.

    Args:
        config: Operator configuration.
        cluster: Cluster gateway.
        normalizer: Equivalence rules for comparing desired and live objects.
    """

    def __init__(
        self, config: Config, cluster: Cluster, normalizer: DiffNormalizer | None = None
    ) -> None:
        self._config = config
        self._cluster = cluster
        self._normalizer = normalizer or DiffNormalizer()

    @property
    def config(self) -> Config:
        return self._config

    def reconcile(self, body: Any) -> ReconcileResult:
        """Run one pass for the custom resource in ``body``.

        Raises:
            TransientClusterError: On retryable API failures. No status is
                written.
            OperatorError: Any other failure, after it has been recorded on
                the custom resource status.
        """
        cr = self._parse(body)
        result = ReconcileResult(
            name=cr.name, namespace=cr.namespace, dry_run=self._config.dry_run
        )
        try:
            self._reconcile(cr, result)
        except TransientClusterError as e:
            result.error = e
            raise
        except Exception as e:
            result.error = e
            self._record_error(cr.namespace, cr.name, e)
            raise
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)
        return result

    def _parse(self, body: Any) -> ContentCloud:
        """Parse the event body, recording a malformed resource on its status.

        Raises:
            ConfigurationError: If the body fails validation.
        """
        try:
            return ContentCloud.from_body(body)
        except ValidationError as e:
            metadata = body.get("metadata") or {}
            namespace = metadata.get("namespace", "")
            name = metadata.get("name", "")
            error = ConfigurationError(
                f"Invalid {KIND} {namespace}/{name}:\n{format_validation_errors(e)}"
            )
            logger.error(
                "Reconciliation failed",
                extra={
                    "instance": name,
                    "namespace": namespace,
                    "error": str(error),
                    "error_type": type(error).__name__,
                },
            )
            self._record_error(namespace, name, error)
            raise error from e

    def _reconcile(self, cr: ContentCloud, result: ReconcileResult) -> None:
        status = cr.status
        if status.job and status.milestone is Milestone.READY:
            logger.info(
                "Starting job",
                extra={"instance": cr.name, "namespace": cr.namespace, "job": status.job},
            )
            status.milestone = Milestone.RUN_JOB

        target = TargetState(cr, self._cluster, self._config)
        desired = target.build_resources()
        target.update_status()
        result.milestone = target.milestone
        result.rounds = target.rounds

        kinds = list(MANAGED_KINDS) + sorted({(r["apiVersion"], r["kind"]) for r in desired})
        existing = list_owned_resources(
            self._cluster, cr.namespace, target.label_selector(), target.owner_reference, kinds
        )
        diff = compute_diff(desired, existing, target.owner_reference)
        result.diff = diff

        if self._config.dry_run:
            logger.info(
                "Dry run: skipping apply",
                extra={"instance": cr.name, "namespace": cr.namespace, **diff.summary()},
            )
            return

        for obj in diff.abandoned:
            key = resource_key(obj)
            self._cluster.delete(obj["apiVersion"], key.kind, key.namespace, key.name)
            result.deleted += 1

        for obj in diff.new:
            self._count(result, apply_resource(self._cluster, obj, None, self._normalizer))
        for changed in diff.changed:
            self._count(
                result,
                apply_resource(self._cluster, changed.desired, changed.live, self._normalizer),
            )

        status.error = ""
        status.error_message = ""
        status.owned_resources = sorted(str(resource_key(obj)) for obj in desired)

        # An unknown job stays in spec.job and fails the pass once the
        # rollout progress has been persisted.
        job_error: NoSuchComponentError | None = None
        if cr.spec.job and not status.job:
            try:
                target.find_run_once(cr.spec.job)
            except NoSuchComponentError as e:
                job_error = NoSuchComponentError(f"Cannot run job '{cr.spec.job}': {e}")
                status.error = STATUS_ERROR
                status.error_message = str(job_error)
            else:
                status.job = cr.spec.job
                self._cluster.patch_custom_resource(
                    cr.namespace, cr.name, {"spec": {"job": ""}}
                )

        self._cluster.patch_custom_resource_status(cr.namespace, cr.name, status.to_patch())
        if job_error is not None:
            raise job_error

    @staticmethod
    def _count(result: ReconcileResult, outcome: ApplyOutcome) -> None:
        result.outcomes[outcome] = result.outcomes.get(outcome, 0) + 1

    def _record_error(self, namespace: str, name: str, error: Exception) -> None:
        """Write a failed pass to the status. Only error fields are touched."""
        if self._config.dry_run:
            return
        patch = {"error": STATUS_ERROR, "errorMessage": str(error)}
        try:
            self._cluster.patch_custom_resource_status(namespace, name, patch)
        except Exception as e:
            logger.warning(
                "Failed to record error on status",
                extra={"instance": name, "namespace": namespace, "error": str(e)},
            )

    def cleanup(self, body: Any) -> int:
        """Delete every owned child of a custom resource being deleted.

        Returns:
            Number of deleted objects.
        """
        cr = ContentCloud.from_body(body)
        target = TargetState(cr, self._cluster, self._config)
        owned = list_owned_resources(
            self._cluster, cr.namespace, target.label_selector(), target.owner_reference
        )
        if self._config.dry_run:
            logger.info(
                "Dry run: skipping cleanup", extra={"instance": cr.name, "count": len(owned)}
            )
            return 0
        for obj in owned:
            key = resource_key(obj)
            self._cluster.delete(obj["apiVersion"], key.kind, key.namespace, key.name)
        logger.info(
            "Cleaned up owned resources",
            extra={"instance": cr.name, "namespace": cr.namespace, "count": len(owned)},
        )
        return len(owned)

    def trigger_owner(self, child: Any) -> str | None:
        """Bump the trigger annotation of the custom resource owning ``child``.

        Called for events on owned workloads so that readiness changes are
        picked up without waiting for the periodic timer. The annotation
        value only changes when the child's readiness does.

        Returns:
            Name of the triggered custom resource, if any.
        """
        metadata = child.get("metadata") or {}
        owner = next(
            (
                ref
                for ref in metadata.get("ownerReferences") or []
                if ref.get("apiVersion") == API_GROUP_VERSION and ref.get("kind") == KIND
            ),
            None,
        )
        if owner is None:
            return None

        fingerprint = f"{child.get('kind')}/{metadata.get('name')}:{_readiness_fingerprint(child)}"
        patch = {"metadata": {"annotations": {TRIGGER_ANNOTATION: fingerprint}}}
        self._cluster.patch_custom_resource(metadata.get("namespace", ""), owner["name"], patch)
        logger.debug(
            "Triggered owner",
            extra={"instance": owner["name"], "trigger": fingerprint},
        )
        return owner["name"]

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "instance": result.name,
            "namespace": result.namespace,
            "duration_seconds": result.duration_seconds,
            "rounds": result.rounds,
            "mutations": result.mutations,
            "dry_run": result.dry_run,
        }
        if result.milestone is not None:
            extra["milestone"] = result.milestone.value
        if result.diff is not None:
            extra.update(result.diff.summary())

        if result.error is None:
            logger.info("Reconciliation result", extra=extra)
        elif isinstance(result.error, TransientClusterError):
            extra["error"] = str(result.error)
            logger.warning("Reconciliation deferred", extra=extra)
        else:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)


def _readiness_fingerprint(child: Any) -> str:
    status = child.get("status") or {}
    if child.get("kind") == "Job":
        return f"succeeded={status.get('succeeded') or 0}"
    return f"{status.get('readyReplicas') or 0}/{status.get('replicas') or 0}"
