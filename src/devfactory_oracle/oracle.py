"""
The Oracle: supervises workers and orchestrates interventions.

Each monitoring cycle:
1. Load a fresh context snapshot
2. Detect stuck workers
3. Decide and track an intervention per indicator (one active
   intervention per worker/task), opening a takeover session when needed
4. Execute takeover sessions waiting in PREPARING
5. Clean up old takeover sessions

Cycles run on a background thread at a fixed interval. A failing cycle is
reported through ``on_error`` and the next one runs on schedule.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from .config import OracleConfig
from .context_loader import ContextProvider, FileContextLoader
from .exceptions import SessionNotFoundError
from .intervention import InterventionEngine
from .models import Intervention, InterventionType, OracleContext, StuckIndicator
from .stuck_detector import StuckDetector
from .takeover import SessionStatus, TakeoverManager, TakeoverSession
from .tracker import InterventionStats, InterventionTracker, TrackedIntervention

logger = logging.getLogger(__name__)


@dataclass
class OracleEvents:
    """Optional callbacks for observing the Oracle."""

    on_context_loaded: Optional[Callable[[OracleContext], None]] = None
    on_stuck_detected: Optional[Callable[[list[StuckIndicator]], None]] = None
    on_intervention_created: Optional[Callable[[Intervention], None]] = None
    on_intervention_completed: Optional[Callable[[TrackedIntervention, bool], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None


class Oracle:
    """
    Monitors workers, detects stuck situations and orchestrates interventions.

    Example usage:
        oracle = Oracle(
            OracleConfig(project_root=Path("."), poll_interval_seconds=30),
            events=OracleEvents(on_intervention_created=deliver_to_worker),
        )
        oracle.start()
        ...
        oracle.close()
    """

    def __init__(
        self,
        config: Optional[OracleConfig] = None,
        events: Optional[OracleEvents] = None,
        context_provider: Optional[ContextProvider] = None,
        takeover_executor: Optional[Callable[[TakeoverSession], None]] = None,
    ):
        self.config = config or OracleConfig()
        self.events = events or OracleEvents()

        self.context_provider = context_provider or FileContextLoader(self.config.project_root)
        self.stuck_detector = StuckDetector(self.config.stuck_detector)
        self.intervention_engine = InterventionEngine()
        self.takeover_manager = TakeoverManager(self.config.takeover, executor=takeover_executor)
        self.tracker = InterventionTracker(self.config.persist_path, self.config.store)

        self.context: Optional[OracleContext] = None
        self._running = False
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._poll_thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Run a cycle immediately, then keep polling in the background."""
        if self._running:
            return
        self._running = True
        self._stop_event = threading.Event()

        logger.info(f"Starting monitoring (poll interval {self.config.poll_interval_seconds}s)")
        self.run_cycle()

        self._poll_thread = threading.Thread(
            target=self._poll_loop, args=(self._stop_event,), name="oracle-poll", daemon=True
        )
        self._poll_thread.start()

    def stop(self, wait: bool = False) -> None:
        """Stop polling. An in-flight cycle is allowed to finish.

        Args:
            wait: Block until the polling thread has exited.
        """
        self._running = False
        self._stop_event.set()
        thread, self._poll_thread = self._poll_thread, None
        if wait and thread is not None and thread is not threading.current_thread():
            thread.join()
        logger.info("Stopped monitoring")

    def close(self) -> None:
        """Stop polling and flush the intervention log."""
        self.stop(wait=True)
        self.tracker.close()

    def is_active(self) -> bool:
        return self._running

    def _poll_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.poll_interval_seconds):
            self.run_cycle()

    def run_cycle(self) -> None:
        """Run a single monitoring cycle. Never raises."""
        with self._lock:
            try:
                self.context = self.context_provider.load_context()
                self._emit("on_context_loaded", self.context)

                indicators = self.stuck_detector.detect_stuck(self.context.workers)
                if indicators:
                    logger.info(f"Detected {len(indicators)} stuck indicators")
                    self._emit("on_stuck_detected", indicators)
                    for indicator in indicators:
                        self._handle_stuck_worker(indicator, self.context)

                self._check_active_takeovers()
                self.takeover_manager.cleanup_sessions()
            except Exception as e:
                logger.error(f"Error in monitoring cycle: {e}", exc_info=True)
                self._emit("on_error", e)

    def _handle_stuck_worker(self, indicator: StuckIndicator, context: OracleContext) -> None:
        existing = self.tracker.get_active_for(indicator.worker_id, indicator.task_id)
        if existing:
            logger.debug(
                f"Already handling {indicator.worker_id}/{indicator.task_id} ({existing.id})"
            )
            return

        # A retrying takeover outlives its failed intervention record
        session = self.takeover_manager.get_session_for_worker(indicator.worker_id)
        if session and session.task_id == indicator.task_id:
            logger.debug(f"Takeover {session.id} still open for {indicator.worker_id}")
            return

        intervention = self.intervention_engine.determine_intervention(indicator, context)
        if intervention is None:
            logger.info(
                f"No intervention strategy for {indicator.reason.value} on "
                f"{indicator.worker_id}/{indicator.task_id}"
            )
            return

        self.tracker.track(intervention, indicator)
        self._emit("on_intervention_created", intervention)
        logger.info(
            f"Created {intervention.type.value} intervention {intervention.id} "
            f"for {indicator.worker_id}/{indicator.task_id}"
        )

        if intervention.type == InterventionType.TAKEOVER:
            try:
                self.takeover_manager.create_session(intervention, context)
            except Exception as e:
                logger.error(f"Failed to create takeover session for {intervention.id}: {e}")
                self.tracker.mark_completed(intervention.id, False, str(e))
            # Marked executing once the session actually starts
            return

        self.tracker.mark_executed(intervention.id)

    def _check_active_takeovers(self) -> None:
        for session in self.takeover_manager.get_sessions():
            if session.status != SessionStatus.PREPARING:
                continue

            try:
                self.takeover_manager.execute_takeover(session.id)
            except Exception as e:
                logger.error(f"Failed to execute takeover {session.id}: {e}")
                self.takeover_manager.fail_session(session.id, str(e))
                self.tracker.mark_completed(session.intervention_id, False, str(e))
                tracked = self.tracker.get(session.intervention_id)
                if tracked:
                    self._emit("on_intervention_completed", tracked, False)
                continue

            tracked = self.tracker.get(session.intervention_id)
            if tracked and tracked.executed_at is None:
                self.tracker.mark_executed(session.intervention_id)

    def complete_takeover(
        self, session_id: str, success: bool, result: Optional[str] = None
    ) -> TakeoverSession:
        """Report the outcome of a takeover performed by the external executor.

        Raises:
            SessionNotFoundError: If no active session has this ID, including
                sessions that already completed or failed.
        """
        with self._lock:
            session = self.takeover_manager.get_session(session_id)
            if session is None or session.status.is_terminal:
                raise SessionNotFoundError(session_id)

            if success:
                session = self.takeover_manager.complete_session(
                    session_id, result or "Task completed successfully"
                )
            else:
                session = self.takeover_manager.fail_session(session_id, result or "Task failed")

            self.tracker.mark_completed(session.intervention_id, success, result)
            tracked = self.tracker.get(session.intervention_id)
            if tracked:
                self._emit("on_intervention_completed", tracked, success)
            return session

    def complete_intervention(
        self, intervention_id: str, success: bool, notes: Optional[str] = None
    ) -> Optional[TrackedIntervention]:
        """Report the outcome of a guidance, reassign or skip intervention."""
        with self._lock:
            self.tracker.mark_completed(intervention_id, success, notes)
            tracked = self.tracker.get(intervention_id)
            if tracked:
                self._emit("on_intervention_completed", tracked, success)
            return tracked

    def refresh_context(self) -> OracleContext:
        """Force a context reload outside the polling schedule."""
        with self._lock:
            self.context = self.context_provider.load_context()
            return self.context

    def get_context(self) -> Optional[OracleContext]:
        return self.context

    def get_stats(self) -> InterventionStats:
        return self.tracker.get_stats()

    def get_recent_interventions(self, limit: int = 10) -> list[TrackedIntervention]:
        return self.tracker.get_recent(limit)

    def get_active_takeovers(self) -> list[TakeoverSession]:
        return self.takeover_manager.get_active_sessions()

    def prune_old_sessions(self) -> int:
        return self.takeover_manager.cleanup_sessions()

    def prune_interventions(self, max_age_days: float = 7) -> int:
        return self.tracker.cleanup(max_age_days)

    def _emit(self, name: str, *args) -> None:
        handler = getattr(self.events, name)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as e:
            logger.warning(f"Event handler {name} failed: {e}")
