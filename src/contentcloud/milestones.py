"""Rollout milestones.

A ContentCloud rolls out in ordered stages. Components are gated on a
milestone: they are built once the current milestone has reached their
gate, and the rollout advances one stage whenever every in-scope component
reports ready.

Stage order::

    DeploymentStarted < DatabasesReady < ContentServerReady
        < ManagementReady < DeliveryServicesReady < Ready < RunJob < Never

``Ready`` is terminal for ordinary rollouts. ``RunJob`` is entered only when
a one-shot job is requested and falls back to ``Ready`` once the job has
completed. ``Never`` suspends progression permanently.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .components.base import Component

logger = logging.getLogger(__name__)


class Milestone(str, Enum):
    """Ordered rollout stages."""

    DEPLOYMENT_STARTED = "DeploymentStarted"
    DATABASES_READY = "DatabasesReady"
    CONTENT_SERVER_READY = "ContentServerReady"
    MANAGEMENT_READY = "ManagementReady"
    DELIVERY_SERVICES_READY = "DeliveryServicesReady"
    READY = "Ready"
    RUN_JOB = "RunJob"
    NEVER = "Never"

    @property
    def rank(self) -> int:
        """Position of this stage in the rollout order."""
        return _ORDER.index(self)

    def reached(self, gate: Milestone) -> bool:
        """Check whether this stage has reached or passed ``gate``."""
        return self.rank >= gate.rank

    def next(self) -> Milestone:
        """Return the successor stage.

        Stages below ``Ready`` advance by one. ``Ready`` and the run-once
        stage above it settle on ``Ready``. ``Never`` is absorbing.
        """
        if self is Milestone.NEVER:
            return Milestone.NEVER
        if self.rank >= Milestone.READY.rank:
            return Milestone.READY
        return _ORDER[self.rank + 1]

    @property
    def is_run_once(self) -> bool:
        return self in RUN_ONCE_MILESTONES


_ORDER: tuple[Milestone, ...] = tuple(Milestone)

RUN_ONCE_MILESTONES = frozenset({Milestone.RUN_JOB})

DEFAULT_COMPONENT_MILESTONE = Milestone.DELIVERY_SERVICES_READY


class Readiness(str, Enum):
    """Tri-state readiness reported by a component."""

    NOT_APPLICABLE = "NotApplicable"
    NOT_READY = "NotReady"
    READY = "Ready"


def in_scope(gate: Milestone, current: Milestone) -> bool:
    """Check whether a component gated on ``gate`` counts at ``current``.

    A gate is in scope once the current stage has reached it, so a run-once
    gate ranked above the current stage never is. Run-once components narrow
    this further in their own ``is_ready``.
    """
    return current.reached(gate)


@dataclass
class MilestoneTracker:
    """Tracks the milestone of one reconcile pass.

    Attributes:
        current: Milestone the pass is currently at.
        pending: Sorted names of components blocking the next stage.
        left_run_once: Set once the pass moved out of a run-once stage.
    """

    current: Milestone = Milestone.DEPLOYMENT_STARTED
    pending: list[str] = field(default_factory=list)
    left_run_once: bool = False

    def advance_if_ready(self, components: Iterable[Component]) -> bool:
        """Evaluate in-scope components and advance at most one stage.

        Args:
            components: Every component registered for this pass.

        Returns:
            True if the milestone changed.
        """
        pending: list[str] = []
        for component in components:
            if not in_scope(component.milestone, self.current):
                continue
            if component.is_ready() is Readiness.NOT_READY:
                pending.append(component.display_name)

        self.pending = sorted(pending)
        if self.pending:
            logger.debug(
                "Milestone blocked",
                extra={"milestone": self.current.value, "pending": self.pending},
            )
            return False

        successor = self.current.next()
        if successor is self.current:
            return False

        logger.info(
            "Milestone advanced",
            extra={"from_milestone": self.current.value, "to_milestone": successor.value},
        )
        if self.current.is_run_once:
            self.left_run_once = True
        self.current = successor
        return True
