"""Stuck detection for supervised workers.

Scans worker snapshots and emits stuck indicators. Each working worker is
checked independently for lack of progress, repeated errors and task
timeout, so one worker may produce several indicators in the same cycle.
"""

import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .models import (
    ActivityEntry,
    ActivityType,
    StuckIndicator,
    StuckReason,
    WorkerContext,
    WorkerStatus,
)

# Only the most recent errors are considered for pattern grouping
ERROR_WINDOW = 10

# Timestamps go before line:col, whose pattern would otherwise eat HH:MM:SS
_NORMALIZERS = [
    (re.compile(r"/[^\s]+\.(ts|js|tsx|jsx|py|go|java)"), "FILE"),
    (
        re.compile(
            r"\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"
        ),
        "TIMESTAMP",
    ),
    (re.compile(r":\d+:\d+"), ":LINE"),
    (re.compile(r"line \d+", re.IGNORECASE), "LINE"),
    (re.compile(r"0x[0-9a-f]+", re.IGNORECASE), "ADDRESS"),
    (
        re.compile(
            r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
            re.IGNORECASE,
        ),
        "UUID",
    ),
    # Bare numbers only; error codes such as E2304 or 404b survive
    (re.compile(r"\b\d+(?!\d*[a-zA-Z])\b"), "NUM"),
    (re.compile(r"\s+"), " "),
]


def normalize_error(message: str) -> str:
    """Reduce an error message to a comparable signature.

    File paths, line:col positions, ISO timestamps, hex addresses, UUIDs
    and bare numbers are replaced with placeholder tokens, then the result
    is lowercased with whitespace collapsed.
    """
    normalized = message
    for pattern, replacement in _NORMALIZERS:
        normalized = pattern.sub(replacement, normalized)
    return normalized.strip().lower()


@dataclass
class StuckDetectorConfig:
    """Thresholds for stuck detection (milliseconds)."""

    no_progress_threshold_ms: int = 5 * 60 * 1000
    repeated_error_threshold: int = 3
    task_timeout_ms: int = 30 * 60 * 1000
    activity_window_ms: int = 2 * 60 * 1000


class StuckDetector:
    """Detect stuck workers from their activity snapshots.

    Args:
        config: Detection thresholds.
        clock: Returns the current time. Defaults to ``datetime.now``.
    """

    def __init__(
        self,
        config: Optional[StuckDetectorConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or StuckDetectorConfig()
        self.clock = clock

    def detect_stuck(self, workers: list[WorkerContext]) -> list[StuckIndicator]:
        """Analyze all workers and return stuck indicators."""
        indicators: list[StuckIndicator] = []
        now = self.clock()

        for worker in workers:
            if worker.status in (WorkerStatus.OFFLINE, WorkerStatus.IDLE):
                continue

            if worker.status == WorkerStatus.STUCK:
                explicit = self._check_explicit_stuck(worker)
                if explicit:
                    indicators.append(explicit)
                continue

            for check in (self._check_no_progress, self._check_repeated_errors, self._check_timeout):
                indicator = check(worker, now)
                if indicator:
                    indicators.append(indicator)

        return indicators

    def _check_explicit_stuck(self, worker: WorkerContext) -> Optional[StuckIndicator]:
        if not worker.current_task:
            return None

        return StuckIndicator(
            worker_id=worker.id,
            task_id=worker.current_task,
            reason=StuckReason.EXPLICIT_STUCK,
            duration_ms=worker.stuck_duration_ms or 0,
            confidence=1.0,
        )

    def _check_no_progress(self, worker: WorkerContext, now: datetime) -> Optional[StuckIndicator]:
        """Check whether the worker has gone quiet."""
        if not worker.current_task:
            return None

        meaningful = [a for a in worker.recent_activity if a.is_meaningful]
        window_ms = self.config.activity_window_ms
        if any(_elapsed_ms(a.timestamp, now) <= window_ms for a in meaningful):
            return None

        last_activity = _latest(meaningful)
        if last_activity is None:
            # No activity at all
            return StuckIndicator(
                worker_id=worker.id,
                task_id=worker.current_task,
                reason=StuckReason.NO_PROGRESS,
                duration_ms=self.config.no_progress_threshold_ms,
                confidence=0.7,
            )

        since_last = _elapsed_ms(last_activity.timestamp, now)
        if since_last < self.config.no_progress_threshold_ms:
            return None

        return StuckIndicator(
            worker_id=worker.id,
            task_id=worker.current_task,
            reason=StuckReason.NO_PROGRESS,
            duration_ms=since_last,
            confidence=self.calculate_confidence(StuckReason.NO_PROGRESS, since_last),
        )

    def _check_repeated_errors(
        self, worker: WorkerContext, now: datetime
    ) -> Optional[StuckIndicator]:
        """Check for the same error repeating."""
        if not worker.current_task:
            return None

        errors = [a for a in worker.recent_activity if a.type == ActivityType.ERROR]
        errors = errors[-ERROR_WINDOW:]
        if len(errors) < self.config.repeated_error_threshold:
            return None

        signatures = [normalize_error(e.message) for e in errors]
        # most_common keeps first-seen order among equal counts
        pattern, count = Counter(signatures).most_common(1)[0]
        if count < self.config.repeated_error_threshold:
            return None

        first = errors[signatures.index(pattern)]
        last = errors[-1]
        duration = (last.timestamp - first.timestamp).total_seconds() * 1000

        return StuckIndicator(
            worker_id=worker.id,
            task_id=worker.current_task,
            reason=StuckReason.REPEATED_ERRORS,
            duration_ms=duration,
            confidence=self.calculate_confidence(StuckReason.REPEATED_ERRORS, count),
            error_pattern=pattern,
        )

    def _check_timeout(self, worker: WorkerContext, now: datetime) -> Optional[StuckIndicator]:
        """Check whether the current task has run past the timeout."""
        if not worker.current_task:
            return None

        task_start = next(
            (a for a in worker.recent_activity if a.type == ActivityType.TASK_START), None
        )
        if task_start is None:
            return None

        elapsed = _elapsed_ms(task_start.timestamp, now)
        if elapsed < self.config.task_timeout_ms:
            return None

        return StuckIndicator(
            worker_id=worker.id,
            task_id=worker.current_task,
            reason=StuckReason.TIMEOUT,
            duration_ms=elapsed,
            confidence=self.calculate_confidence(StuckReason.TIMEOUT, elapsed),
        )

    def calculate_confidence(self, reason: StuckReason, value: float) -> float:
        """Map the evidence for a reason to a confidence in [0, 1].

        ``value`` is a duration in milliseconds for NO_PROGRESS and TIMEOUT,
        and a repetition count for REPEATED_ERRORS.
        """
        if reason == StuckReason.NO_PROGRESS:
            minutes = value / 60000
            if minutes >= 30:
                return 0.95
            if minutes >= 20:
                return 0.85
            if minutes >= 10:
                return 0.75
            return 0.6

        if reason == StuckReason.REPEATED_ERRORS:
            if value >= 10:
                return 0.95
            if value >= 7:
                return 0.85
            if value >= 5:
                return 0.75
            return 0.65

        if reason == StuckReason.TIMEOUT:
            ratio = value / self.config.task_timeout_ms
            if ratio >= 2.0:
                return 0.95
            if ratio >= 1.5:
                return 0.85
            if ratio >= 1.2:
                return 0.75
            return 0.65

        return 1.0


def _elapsed_ms(timestamp: datetime, now: datetime) -> float:
    return (now - timestamp).total_seconds() * 1000


def _latest(activities: list[ActivityEntry]) -> Optional[ActivityEntry]:
    return max(activities, key=lambda a: a.timestamp, default=None)
