"""Takeover session management.

A takeover session is created from a takeover intervention and moves
through ``preparing -> executing -> completed | failed``. A failed session
with attempts left goes back to ``preparing`` so it can be executed again.
The actual work is done by an external executor; this module prepares the
prompt and tracks the session state.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from .exceptions import InvalidInterventionError, SessionNotFoundError
from .models import Intervention, InterventionType, OracleContext, TaskStatus, round_minutes

logger = logging.getLogger(__name__)


class SessionStatus(Enum):
    """Takeover session states."""

    PREPARING = "preparing"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


@dataclass
class TakeoverConfig:
    """Configuration for takeover sessions."""

    max_attempts: int = 3
    session_retention_seconds: float = 60 * 60


@dataclass
class TakeoverSession:
    """The Oracle's attempt at completing a stuck worker's task."""

    id: str
    intervention_id: str
    worker_id: str
    task_id: str
    prompt: str
    max_attempts: int
    started_at: datetime = field(default_factory=datetime.now)
    status: SessionStatus = SessionStatus.PREPARING
    attempts: int = 0
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "intervention_id": self.intervention_id,
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "result": self.result,
            "error": self.error,
        }


def generate_session_id() -> str:
    return f"takeover_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class TakeoverManager:
    """Manage takeover sessions.

    Args:
        config: Takeover configuration.
        executor: Optional callable invoked with the session each time it
            starts executing. Used to dispatch the session to whatever
            performs the work. Exceptions propagate to the caller.
    """

    def __init__(
        self,
        config: Optional[TakeoverConfig] = None,
        executor: Optional[Callable[[TakeoverSession], None]] = None,
    ):
        self.config = config or TakeoverConfig()
        self.executor = executor
        self._sessions: dict[str, TakeoverSession] = {}

    def create_session(
        self, intervention: Intervention, context: OracleContext
    ) -> TakeoverSession:
        """Create a new takeover session from a takeover intervention.

        Raises:
            InvalidInterventionError: If the intervention is not a takeover.
        """
        if intervention.type != InterventionType.TAKEOVER:
            raise InvalidInterventionError(intervention.type.value)

        session = TakeoverSession(
            id=generate_session_id(),
            intervention_id=intervention.id,
            worker_id=intervention.target_worker,
            task_id=intervention.target_task,
            prompt=self.generate_takeover_prompt(intervention, context),
            max_attempts=self.config.max_attempts,
        )
        self._sessions[session.id] = session
        logger.info(
            f"Created takeover session {session.id} for "
            f"{session.worker_id}/{session.task_id}"
        )
        return session

    def execute_takeover(self, session_id: str) -> TakeoverSession:
        """Start (or restart) execution of a session.

        Raises:
            SessionNotFoundError: If the session ID is unknown or the session
                already completed or failed.
        """
        session = self._get_active(session_id)
        session.status = SessionStatus.EXECUTING
        session.attempts += 1
        logger.info(
            f"Executing takeover {session.id} "
            f"(attempt {session.attempts}/{session.max_attempts})"
        )

        if self.executor is not None:
            self.executor(session)

        return session

    def complete_session(self, session_id: str, result: str) -> TakeoverSession:
        """Mark an active session as completed.

        Raises:
            SessionNotFoundError: If no active session has this ID.
        """
        session = self._get_active(session_id)
        session.status = SessionStatus.COMPLETED
        session.result = result
        logger.info(f"Takeover {session.id} completed")
        return session

    def fail_session(self, session_id: str, error: str) -> TakeoverSession:
        """Mark an active session as failed, returning it to PREPARING if attempts remain.

        Raises:
            SessionNotFoundError: If no active session has this ID.
        """
        session = self._get_active(session_id)
        session.error = error
        if session.can_retry:
            session.status = SessionStatus.PREPARING
            logger.warning(
                f"Takeover {session.id} failed ({error}), will retry "
                f"({session.attempts}/{session.max_attempts} attempts used)"
            )
        else:
            session.status = SessionStatus.FAILED
            logger.error(f"Takeover {session.id} failed after {session.attempts} attempts: {error}")
        return session

    def get_session(self, session_id: str) -> Optional[TakeoverSession]:
        return self._sessions.get(session_id)

    def get_session_for_worker(self, worker_id: str) -> Optional[TakeoverSession]:
        """Get the non-terminal session for a worker, if any."""
        for session in self._sessions.values():
            if session.worker_id == worker_id and not session.status.is_terminal:
                return session
        return None

    def get_sessions(self) -> list[TakeoverSession]:
        """All sessions still held, terminal ones included until cleanup."""
        return list(self._sessions.values())

    def get_active_sessions(self) -> list[TakeoverSession]:
        return [s for s in self._sessions.values() if not s.status.is_terminal]

    def cleanup_sessions(self) -> int:
        """Remove terminal sessions started before the retention window.

        Returns:
            Number of sessions removed.
        """
        cutoff = datetime.now() - timedelta(seconds=self.config.session_retention_seconds)
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.status.is_terminal and session.started_at < cutoff
        ]
        for session_id in expired:
            del self._sessions[session_id]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} takeover sessions")
        return len(expired)

    def _get_active(self, session_id: str) -> TakeoverSession:
        # Terminal sessions are kept until cleanup but can no longer transition
        session = self._sessions.get(session_id)
        if session is None or session.status.is_terminal:
            raise SessionNotFoundError(session_id)
        return session

    def generate_takeover_prompt(self, intervention: Intervention, context: OracleContext) -> str:
        """Build the full-context prompt for a takeover."""
        worker = context.find_worker(intervention.target_worker)
        task = context.find_task(intervention.target_task)
        spec = context.find_spec_for_task(intervention.target_task)
        product = context.product

        sections = [
            "# Oracle Takeover - Direct Intervention Required",
            "",
            "The Oracle has detected that a worker is stuck and needs direct assistance.",
            "You are now operating with full project context and authority to complete this task.",
            "",
            "## Project Mission",
            product.mission,
            "",
            "## Tech Stack",
        ]
        sections += [f"- {tech}" for tech in product.tech_stack]
        sections.append("")

        if product.patterns:
            sections.append("## Architecture Patterns & Conventions")
            sections += [f"- {pattern}" for pattern in product.patterns]
            sections.append("")

        if spec:
            sections += [
                "## Current Specification",
                f"**Spec**: {spec.name} (Phase: {spec.phase})",
                "",
                "**Acceptance Criteria**:",
            ]
            sections += [f"- {criteria}" for criteria in spec.acceptance_criteria]
            sections.append("")

        sections.append("## Task to Complete")
        if task:
            sections += [
                f"**Task ID**: {task.id}",
                f"**Title**: {task.title}",
                f"**Status**: {task.status.value}",
                f"**Attempts**: {task.attempts}",
            ]
            if task.started_at:
                elapsed_ms = (datetime.now() - task.started_at).total_seconds() * 1000
                sections.append(f"**Duration**: {round_minutes(elapsed_ms)} minutes")
        else:
            sections += [
                f"**Task ID**: {intervention.target_task}",
                "**Title**: Unknown",
            ]
        sections.append("")

        sections.append("## What the Worker Tried (and Why It Failed)")
        if worker:
            sections += [
                f"**Worker**: {worker.display_name} ({worker.id})",
                f"**Status**: {worker.status.value}",
            ]
            if worker.stuck_duration_ms:
                sections.append(
                    f"**Stuck Duration**: {round_minutes(worker.stuck_duration_ms)} minutes"
                )
            sections.append("")

            if worker.recent_activity:
                sections.append("**Recent Activity**:")
                sections += [
                    f"- [{a.timestamp.isoformat()}] {a.type.value}: {a.message}"
                    for a in worker.recent_activity[-5:]
                ]
                sections.append("")
        else:
            sections += [f"**Worker**: Unknown ({intervention.target_worker})", ""]

        if task and task.last_error:
            sections += ["**Last Error**:", "```", task.last_error, "```", ""]

        sections += ["## Oracle Analysis", intervention.reason, ""]

        if spec:
            related = [
                t for t in spec.tasks
                if t.id != intervention.target_task
                and t.status in (TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS)
            ]
            if related:
                sections.append("## Related Tasks in This Spec")
                sections += [f"- [{t.status.value}] {t.title}" for t in related]
                sections.append("")

        state = context.current_state
        sections += [
            "## Overall Project State",
            f"**Status**: {state.status.value}",
            f"**Progress**: {state.completed_tasks}/{state.total_tasks} tasks",
        ]
        if state.active_spec:
            sections.append(f"**Active Spec**: {state.active_spec}")
        sections.append("")

        sections += [
            "## Success Criteria for This Takeover",
            "To complete this intervention successfully, you must:",
            "",
            "1. **Understand the Root Cause**: Identify why the worker got stuck",
            "2. **Complete the Task**: Implement the solution that satisfies the task requirements",
            "3. **Follow Patterns**: Adhere to the established architecture patterns and tech stack",
            "4. **Verify Quality**: Ensure the implementation meets the spec's acceptance criteria",
            "5. **Document Changes**: Provide clear explanation of what was done and why",
            "",
            "## Your Instructions",
            "",
            "You have full authority to:",
            "- Read any files in the codebase",
            "- Make any necessary code changes",
            "- Run tests and verify functionality",
            "- Install dependencies if needed",
            "- Modify architecture if truly necessary (with justification)",
            "",
            "**Proceed with confidence and complete this task.**",
            "",
            "Report back with:",
            "1. Root cause analysis",
            "2. Solution implemented",
            "3. Verification results",
            "4. Any follow-up recommendations",
        ]
        return "\n".join(sections)
