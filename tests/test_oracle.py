"""Tests for the Oracle monitoring loop."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from devfactory_oracle.config import OracleConfig
from devfactory_oracle.context_loader import ContextProvider, FileContextLoader
from devfactory_oracle.exceptions import SessionNotFoundError
from devfactory_oracle.models import (
    ActivityEntry,
    ActivityType,
    InterventionStatus,
    InterventionType,
    OracleContext,
    ProductContext,
    SpecContext,
    StuckReason,
    TaskContext,
    TaskStatus,
    WorkerContext,
    WorkerStatus,
)
from devfactory_oracle.oracle import Oracle, OracleEvents
from devfactory_oracle.takeover import SessionStatus


class StaticProvider(ContextProvider):
    """Serves a fixed list of workers, counting loads."""

    def __init__(self, workers):
        self.workers = workers
        self.loads = 0

    def load_context(self) -> OracleContext:
        self.loads += 1
        return OracleContext(
            product=ProductContext(mission="Test mission", tech_stack=["Python"]),
            specs=[
                SpecContext(
                    id="phase-1-core",
                    name="phase-1-core",
                    tasks=[TaskContext(id="t1", title="Task one", status=TaskStatus.IN_PROGRESS)],
                )
            ],
            workers=self.workers,
        )


class FailingProvider(ContextProvider):
    def load_context(self) -> OracleContext:
        raise RuntimeError("state.json unreadable")


def quiet_worker(minutes=6, worker_id="w1"):
    """A working worker whose last meaningful activity was ``minutes`` ago."""
    return WorkerContext(
        id=worker_id,
        status=WorkerStatus.WORKING,
        current_task="t1",
        recent_activity=[
            ActivityEntry(
                timestamp=datetime.now() - timedelta(minutes=minutes),
                type=ActivityType.TASK_COMPLETE,
                message="finished step",
            )
        ],
    )


def stuck_worker(minutes=15):
    return WorkerContext(
        id="w1",
        status=WorkerStatus.STUCK,
        current_task="t1",
        stuck_duration_ms=minutes * 60 * 1000,
    )


def make_oracle(workers, events=None, executor=None):
    return Oracle(
        OracleConfig(poll_interval_seconds=60),
        events=events,
        context_provider=StaticProvider(workers),
        takeover_executor=executor,
    )


class TestMonitoringCycle:
    """Tests for a single monitoring cycle."""

    def test_guidance_for_quiet_worker(self):
        oracle = make_oracle([quiet_worker(minutes=6)])
        oracle.run_cycle()

        interventions = oracle.get_recent_interventions()
        assert len(interventions) == 1
        tracked = interventions[0]
        assert tracked.type == InterventionType.GUIDANCE
        assert tracked.indicator.reason == StuckReason.NO_PROGRESS
        assert tracked.status == InterventionStatus.EXECUTING
        assert tracked.executed_at is not None

    def test_no_intervention_for_healthy_worker(self):
        oracle = make_oracle([quiet_worker(minutes=1)])
        oracle.run_cycle()
        assert oracle.get_stats().total == 0

    def test_context_is_kept(self):
        oracle = make_oracle([quiet_worker(minutes=1)])
        assert oracle.get_context() is None
        oracle.run_cycle()
        assert oracle.get_context().product.mission == "Test mission"

    def test_one_active_intervention_per_worker_task(self):
        oracle = make_oracle([quiet_worker(minutes=6)])
        oracle.run_cycle()
        oracle.run_cycle()
        oracle.run_cycle()

        assert oracle.get_stats().total == 1

    def test_new_intervention_after_completion(self):
        oracle = make_oracle([quiet_worker(minutes=6)])
        oracle.run_cycle()
        first = oracle.get_recent_interventions()[0]
        oracle.complete_intervention(first.id, True, "Worker resumed")
        oracle.run_cycle()

        assert oracle.get_stats().total == 2

    def test_reassign_to_idle_worker(self):
        idle = WorkerContext(id="w2", name="Bravo", status=WorkerStatus.IDLE)
        oracle = make_oracle([quiet_worker(minutes=8), idle])
        oracle.run_cycle()

        tracked = oracle.get_recent_interventions()[0]
        assert tracked.type == InterventionType.REASSIGN
        assert tracked.target_worker == "w2"

    def test_events_are_emitted(self):
        events = OracleEvents(
            on_context_loaded=MagicMock(),
            on_stuck_detected=MagicMock(),
            on_intervention_created=MagicMock(),
        )
        oracle = make_oracle([quiet_worker(minutes=6)], events=events)
        oracle.run_cycle()

        events.on_context_loaded.assert_called_once()
        indicators = events.on_stuck_detected.call_args[0][0]
        assert [i.worker_id for i in indicators] == ["w1"]
        intervention = events.on_intervention_created.call_args[0][0]
        assert intervention.type == InterventionType.GUIDANCE

    def test_failing_handler_does_not_break_cycle(self):
        events = OracleEvents(on_stuck_detected=MagicMock(side_effect=ValueError("bad handler")))
        oracle = make_oracle([quiet_worker(minutes=6)], events=events)
        oracle.run_cycle()

        assert oracle.get_stats().total == 1

    def test_provider_error_reported(self):
        on_error = MagicMock()
        oracle = Oracle(
            OracleConfig(),
            events=OracleEvents(on_error=on_error),
            context_provider=FailingProvider(),
        )

        oracle.run_cycle()

        error = on_error.call_args[0][0]
        assert isinstance(error, RuntimeError)
        assert str(error) == "state.json unreadable"

    def test_provider_error_without_handler(self):
        oracle = Oracle(OracleConfig(), context_provider=FailingProvider())
        oracle.run_cycle()
        assert oracle.get_context() is None


class TestTakeoverFlow:
    """Tests for takeover orchestration across cycles."""

    def test_takeover_session_created_and_executed(self):
        executor = MagicMock()
        oracle = make_oracle([stuck_worker(minutes=15)], executor=executor)
        oracle.run_cycle()

        tracked = oracle.get_recent_interventions()[0]
        assert tracked.type == InterventionType.TAKEOVER
        assert tracked.status == InterventionStatus.EXECUTING

        sessions = oracle.get_active_takeovers()
        assert len(sessions) == 1
        assert sessions[0].status == SessionStatus.EXECUTING
        assert sessions[0].attempts == 1
        assert sessions[0].intervention_id == tracked.id
        executor.assert_called_once_with(sessions[0])

    def test_executing_session_not_restarted(self):
        executor = MagicMock()
        oracle = make_oracle([stuck_worker()], executor=executor)
        oracle.run_cycle()
        oracle.run_cycle()

        assert executor.call_count == 1
        assert oracle.get_stats().total == 1

    def test_complete_takeover_success(self):
        on_completed = MagicMock()
        oracle = make_oracle(
            [stuck_worker()], events=OracleEvents(on_intervention_completed=on_completed)
        )
        oracle.run_cycle()
        session = oracle.get_active_takeovers()[0]

        oracle.complete_takeover(session.id, True, "Implemented the fix")

        assert session.status == SessionStatus.COMPLETED
        assert session.result == "Implemented the fix"
        tracked, success = on_completed.call_args[0]
        assert success is True
        assert tracked.status == InterventionStatus.COMPLETED
        assert tracked.duration_ms is not None
        assert oracle.get_stats().success_rate == 1.0

    def test_complete_takeover_default_result(self):
        oracle = make_oracle([stuck_worker()])
        oracle.run_cycle()
        session = oracle.get_active_takeovers()[0]

        oracle.complete_takeover(session.id, True)
        assert session.result == "Task completed successfully"

    def test_complete_takeover_failure_requeues_session(self):
        oracle = make_oracle([stuck_worker()])
        oracle.run_cycle()
        session = oracle.get_active_takeovers()[0]

        oracle.complete_takeover(session.id, False)

        assert session.status == SessionStatus.PREPARING
        assert session.error == "Task failed"
        tracked = oracle.get_recent_interventions()[0]
        assert tracked.status == InterventionStatus.FAILED

    def test_complete_unknown_takeover(self):
        oracle = make_oracle([])
        with pytest.raises(SessionNotFoundError):
            oracle.complete_takeover("takeover_nope", True)

    def test_late_report_on_completed_takeover_rejected(self):
        """A failure reported after success leaves the session and its record completed."""
        oracle = make_oracle([stuck_worker()])
        oracle.run_cycle()
        session = oracle.get_active_takeovers()[0]
        oracle.complete_takeover(session.id, True, "done")

        with pytest.raises(SessionNotFoundError):
            oracle.complete_takeover(session.id, False, "late failure")

        assert session.status == SessionStatus.COMPLETED
        assert session.attempts == 1
        tracked = oracle.get_recent_interventions()[0]
        assert tracked.status == InterventionStatus.COMPLETED
        assert oracle.get_stats().success_rate == 1.0

        # The next cycle must not execute the completed session again
        oracle.run_cycle()
        assert session.attempts == 1

    def test_executor_failure_fails_intervention(self):
        on_completed = MagicMock()
        oracle = make_oracle(
            [stuck_worker()],
            events=OracleEvents(on_intervention_completed=on_completed),
            executor=MagicMock(side_effect=RuntimeError("no agent available")),
        )
        oracle.run_cycle()

        session = oracle.takeover_manager.get_sessions()[0]
        assert session.status == SessionStatus.PREPARING
        assert session.error == "no agent available"

        tracked, success = on_completed.call_args[0]
        assert success is False
        assert tracked.status == InterventionStatus.FAILED
        assert tracked.notes == "no agent available"

    def test_failed_takeover_retries_without_new_intervention(self):
        executor = MagicMock(side_effect=RuntimeError("boom"))
        oracle = make_oracle([stuck_worker()], executor=executor)

        for _ in range(3):
            oracle.run_cycle()

        session = oracle.takeover_manager.get_sessions()[0]
        assert session.status == SessionStatus.FAILED
        assert session.attempts == 3
        assert executor.call_count == 3
        assert oracle.get_stats().total == 1

        # Once the session is exhausted a fresh intervention may be opened
        oracle.run_cycle()
        assert oracle.get_stats().total == 2

    def test_session_creation_failure(self):
        oracle = make_oracle([stuck_worker()])
        oracle.takeover_manager.create_session = MagicMock(side_effect=RuntimeError("disk full"))
        oracle.run_cycle()

        tracked = oracle.get_recent_interventions()[0]
        assert tracked.status == InterventionStatus.FAILED
        assert tracked.notes == "disk full"
        assert tracked.executed_at is None


class TestLifecycle:
    """Tests for start/stop and helpers."""

    def test_start_runs_cycle_immediately(self):
        oracle = make_oracle([quiet_worker(minutes=1)])
        oracle.start()
        try:
            assert oracle.is_active()
            assert oracle.context_provider.loads == 1
        finally:
            oracle.close()

        assert not oracle.is_active()

    def test_start_twice_is_noop(self):
        oracle = make_oracle([])
        oracle.start()
        oracle.start()
        try:
            assert oracle.context_provider.loads == 1
        finally:
            oracle.close()

    def test_stop_without_start(self):
        oracle = make_oracle([])
        oracle.stop()
        assert not oracle.is_active()

    def test_restart_after_stop(self):
        oracle = make_oracle([])
        oracle.start()
        oracle.stop(wait=True)
        oracle.start()
        try:
            assert oracle.is_active()
            assert oracle.context_provider.loads == 2
        finally:
            oracle.close()

    def test_default_provider(self, tmp_path):
        oracle = Oracle(OracleConfig(project_root=tmp_path))
        assert isinstance(oracle.context_provider, FileContextLoader)
        assert oracle.context_provider.project_root == tmp_path

    def test_refresh_context(self):
        oracle = make_oracle([quiet_worker()])
        context = oracle.refresh_context()

        assert context is oracle.get_context()
        assert oracle.get_stats().total == 0

    def test_prune_interventions(self):
        oracle = make_oracle([quiet_worker(minutes=6)])
        oracle.run_cycle()
        oracle.get_recent_interventions()[0].created_at = datetime.now() - timedelta(days=10)

        assert oracle.prune_interventions() == 1
        assert oracle.get_stats().total == 0

    def test_prune_old_sessions(self):
        oracle = make_oracle([stuck_worker()])
        oracle.run_cycle()
        session = oracle.get_active_takeovers()[0]
        oracle.complete_takeover(session.id, True)
        session.started_at = datetime.now() - timedelta(hours=2)

        assert oracle.prune_old_sessions() == 1
        assert oracle.takeover_manager.get_sessions() == []

    def test_persists_interventions(self, tmp_path):
        path = tmp_path / "oracle" / "interventions.json"
        oracle = Oracle(
            OracleConfig(persist_path=path),
            context_provider=StaticProvider([quiet_worker(minutes=6)]),
        )
        oracle.run_cycle()
        oracle.close()

        assert path.exists()
        assert '"type": "guidance"' in path.read_text()
