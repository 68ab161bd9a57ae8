"""Tests for rollout milestones and the milestone tracker."""

from dataclasses import dataclass

import pytest

from contentcloud.milestones import (
    DEFAULT_COMPONENT_MILESTONE,
    Milestone,
    MilestoneTracker,
    Readiness,
    in_scope,
)


@dataclass
class FakeComponent:
    """Stand-in exposing the attributes the tracker reads."""

    display_name: str
    milestone: Milestone
    readiness: Readiness = Readiness.READY

    def is_ready(self) -> Readiness:
        return self.readiness


class TestMilestoneOrder:
    """Tests for ordering and successor rules."""

    def test_total_order(self) -> None:
        """Test that stages are ranked in rollout order."""
        order = list(Milestone)
        assert order == [
            Milestone.DEPLOYMENT_STARTED,
            Milestone.DATABASES_READY,
            Milestone.CONTENT_SERVER_READY,
            Milestone.MANAGEMENT_READY,
            Milestone.DELIVERY_SERVICES_READY,
            Milestone.READY,
            Milestone.RUN_JOB,
            Milestone.NEVER,
        ]
        assert [m.rank for m in order] == list(range(len(order)))

    @pytest.mark.parametrize(
        ("current", "expected"),
        [
            (Milestone.DEPLOYMENT_STARTED, Milestone.DATABASES_READY),
            (Milestone.DATABASES_READY, Milestone.CONTENT_SERVER_READY),
            (Milestone.CONTENT_SERVER_READY, Milestone.MANAGEMENT_READY),
            (Milestone.MANAGEMENT_READY, Milestone.DELIVERY_SERVICES_READY),
            (Milestone.DELIVERY_SERVICES_READY, Milestone.READY),
            (Milestone.READY, Milestone.READY),
            (Milestone.RUN_JOB, Milestone.READY),
            (Milestone.NEVER, Milestone.NEVER),
        ],
    )
    def test_next(self, current: Milestone, expected: Milestone) -> None:
        """Test successor of every stage."""
        assert current.next() is expected

    def test_reached(self) -> None:
        """Test that a stage has reached itself and every earlier stage."""
        assert Milestone.READY.reached(Milestone.READY)
        assert Milestone.READY.reached(Milestone.DEPLOYMENT_STARTED)
        assert not Milestone.DATABASES_READY.reached(Milestone.READY)

    def test_run_once(self) -> None:
        """Test that only RunJob is a run-once stage."""
        assert Milestone.RUN_JOB.is_run_once
        assert not Milestone.READY.is_run_once
        assert not Milestone.NEVER.is_run_once

    def test_parse_wire_value(self) -> None:
        """Test that milestones round-trip through their status value."""
        assert Milestone("ContentServerReady") is Milestone.CONTENT_SERVER_READY

    def test_default_component_gate(self) -> None:
        """Test the gate of components declaring no milestone."""
        assert DEFAULT_COMPONENT_MILESTONE is Milestone.DELIVERY_SERVICES_READY


class TestInScope:
    """Tests for the in-scope rule."""

    def test_gate_reached(self) -> None:
        """Test that a component counts once the rollout reached its gate."""
        assert in_scope(Milestone.DATABASES_READY, Milestone.CONTENT_SERVER_READY)
        assert in_scope(Milestone.DATABASES_READY, Milestone.DATABASES_READY)

    def test_gate_ahead(self) -> None:
        """Test that a component gated ahead of the rollout is ignored."""
        assert not in_scope(Milestone.READY, Milestone.DATABASES_READY)

    def test_run_once_gate_above_current(self) -> None:
        """Test that a run-once gate above the current stage is out of scope."""
        assert not in_scope(Milestone.RUN_JOB, Milestone.READY)
        assert in_scope(Milestone.RUN_JOB, Milestone.RUN_JOB)


class TestMilestoneTracker:
    """Tests for MilestoneTracker.advance_if_ready."""

    def test_vacuous_advance(self) -> None:
        """Test that an empty component set advances exactly one stage."""
        tracker = MilestoneTracker()

        assert tracker.advance_if_ready([]) is True
        assert tracker.current is Milestone.DATABASES_READY
        assert tracker.pending == []

    def test_blocked_by_not_ready(self) -> None:
        """Test that an in-scope component that is not ready blocks advancement."""
        tracker = MilestoneTracker(current=Milestone.DATABASES_READY)
        components = [
            FakeComponent("mysql", Milestone.DEPLOYMENT_STARTED, Readiness.NOT_READY),
            FakeComponent("cms", Milestone.DATABASES_READY, Readiness.NOT_READY),
            FakeComponent("cae", Milestone.DELIVERY_SERVICES_READY, Readiness.NOT_READY),
        ]

        assert tracker.advance_if_ready(components) is False
        assert tracker.current is Milestone.DATABASES_READY
        assert tracker.pending == ["cms", "mysql"]

    def test_not_applicable_does_not_block(self) -> None:
        """Test that components without readiness never block."""
        tracker = MilestoneTracker()
        components = [FakeComponent("x", Milestone.DEPLOYMENT_STARTED, Readiness.NOT_APPLICABLE)]

        assert tracker.advance_if_ready(components) is True

    def test_one_step_per_call(self) -> None:
        """Test that the tracker never moves more than one stage."""
        tracker = MilestoneTracker()
        components = [FakeComponent("x", Milestone.DEPLOYMENT_STARTED)]

        tracker.advance_if_ready(components)
        tracker.advance_if_ready(components)

        assert tracker.current is Milestone.CONTENT_SERVER_READY

    def test_ready_is_terminal(self) -> None:
        """Test that Ready stays Ready."""
        tracker = MilestoneTracker(current=Milestone.READY)

        assert tracker.advance_if_ready([]) is False
        assert tracker.current is Milestone.READY

    def test_never_is_absorbing(self) -> None:
        """Test that Never never moves."""
        tracker = MilestoneTracker(current=Milestone.NEVER)

        assert tracker.advance_if_ready([]) is False
        assert tracker.current is Milestone.NEVER

    def test_leaving_run_job(self) -> None:
        """Test that completing the run-once stage falls back to Ready."""
        tracker = MilestoneTracker(current=Milestone.RUN_JOB)
        job = FakeComponent("tools", Milestone.RUN_JOB, Readiness.READY)

        assert tracker.advance_if_ready([job]) is True
        assert tracker.current is Milestone.READY
        assert tracker.left_run_once is True

    def test_run_job_waits_for_job(self) -> None:
        """Test that the run-once stage holds while the job has not succeeded."""
        tracker = MilestoneTracker(current=Milestone.RUN_JOB)
        job = FakeComponent("tools", Milestone.RUN_JOB, Readiness.NOT_READY)

        assert tracker.advance_if_ready([job]) is False
        assert tracker.current is Milestone.RUN_JOB
        assert tracker.left_run_once is False
        assert tracker.pending == ["tools"]
