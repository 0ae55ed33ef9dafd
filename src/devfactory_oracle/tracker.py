"""
Intervention tracking.

Keeps every intervention the Oracle issues together with the indicator
that triggered it, records execution and outcome, and derives aggregate
statistics. When a persist path is given the log is mirrored to a shared
JSON store; storage problems are logged and never fail tracking.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional, Union

from .models import (
    Intervention,
    InterventionStatus,
    InterventionType,
    StuckIndicator,
    parse_timestamp,
)
from .storage import JsonFileStore, StoreConfig

logger = logging.getLogger(__name__)


@dataclass
class TrackedIntervention:
    """An intervention plus its triggering indicator and outcome."""

    id: str
    type: InterventionType
    target_worker: str
    target_task: str
    reason: str
    created_at: datetime
    status: InterventionStatus
    indicator: StuckIndicator
    prompt: Optional[str] = None
    result: Optional[str] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None  # Execution phase only
    success: Optional[bool] = None
    notes: Optional[str] = None

    @classmethod
    def from_intervention(
        cls, intervention: Intervention, indicator: StuckIndicator
    ) -> "TrackedIntervention":
        return cls(
            id=intervention.id,
            type=intervention.type,
            target_worker=intervention.target_worker,
            target_task=intervention.target_task,
            reason=intervention.reason,
            created_at=intervention.created_at,
            status=intervention.status,
            indicator=indicator,
            prompt=intervention.prompt,
            result=intervention.result,
        )

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def to_dict(self) -> dict:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "target_worker": self.target_worker,
            "target_task": self.target_task,
            "reason": self.reason,
            "prompt": self.prompt,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "result": self.result,
            "indicator": self.indicator.to_dict(),
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration_ms,
            "success": self.success,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrackedIntervention":
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            type=InterventionType(data["type"]),
            target_worker=data["target_worker"],
            target_task=data["target_task"],
            reason=data.get("reason", ""),
            created_at=parse_timestamp(data["created_at"]),
            status=InterventionStatus(data["status"]),
            indicator=StuckIndicator.from_dict(data["indicator"]),
            prompt=data.get("prompt"),
            result=data.get("result"),
            executed_at=parse_timestamp(data.get("executed_at")),
            completed_at=parse_timestamp(data.get("completed_at")),
            duration_ms=data.get("duration"),
            success=data.get("success"),
            notes=data.get("notes"),
        )


@dataclass
class InterventionStats:
    """Aggregate view over tracked interventions."""

    total: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_worker: dict[str, int] = field(default_factory=dict)
    success_rate: float = 0.0
    average_duration_ms: float = 0.0
    # (reason, count), most common first; ties keep first-seen order
    most_common_reasons: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_type": self.by_type,
            "by_worker": self.by_worker,
            "success_rate": self.success_rate,
            "average_duration": self.average_duration_ms,
            "most_common_reasons": [
                {"reason": reason, "count": count} for reason, count in self.most_common_reasons
            ],
        }


class InterventionTracker:
    """Log of interventions keyed by ID.

    Args:
        persist_path: JSON file to mirror the log to. None keeps it in memory.
        store_config: Locking behaviour for the JSON store.
        background: Write to disk on a background thread. When False, writes
            happen inline (still never raising).

    Example:
        tracker = InterventionTracker(".devfactory/oracle/interventions.json")
        tracked = tracker.track(intervention, indicator)
        tracker.mark_executed(tracked.id)
        tracker.mark_completed(tracked.id, success=True, notes="Fixed import")
        print(tracker.get_stats().success_rate)
    """

    def __init__(
        self,
        persist_path: Optional[Union[str, Path]] = None,
        store_config: Optional[StoreConfig] = None,
        background: bool = True,
    ):
        self._interventions: dict[str, TrackedIntervention] = {}
        self._lock = threading.RLock()
        self._pending: list[Future] = []

        self.store = JsonFileStore(persist_path, store_config) if persist_path else None
        self._writer: Optional[ThreadPoolExecutor] = None
        if self.store and background:
            # Single worker so writes land in submission order
            self._writer = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="intervention-store"
            )

        if self.store:
            self._load()

    def track(self, intervention: Intervention, indicator: StuckIndicator) -> TrackedIntervention:
        """Start tracking a new intervention."""
        tracked = TrackedIntervention.from_intervention(intervention, indicator)
        with self._lock:
            self._interventions[tracked.id] = tracked
        self._persist()
        return tracked

    def mark_executed(self, intervention_id: str) -> None:
        """Record that an intervention started executing. Unknown IDs are ignored."""
        with self._lock:
            tracked = self._interventions.get(intervention_id)
            if tracked is None:
                return
            tracked.executed_at = datetime.now()
            tracked.status = InterventionStatus.EXECUTING
        self._persist()

    def mark_completed(
        self, intervention_id: str, success: bool, notes: Optional[str] = None
    ) -> None:
        """Record the outcome of an intervention. Unknown IDs are ignored.

        Duration is only measured when the intervention was marked executed,
        so time spent pending is never counted.
        """
        with self._lock:
            tracked = self._interventions.get(intervention_id)
            if tracked is None:
                return
            tracked.completed_at = datetime.now()
            tracked.status = InterventionStatus.COMPLETED if success else InterventionStatus.FAILED
            tracked.success = success
            tracked.notes = notes
            if tracked.executed_at is not None:
                elapsed = (tracked.completed_at - tracked.executed_at).total_seconds() * 1000
                tracked.duration_ms = max(0.0, elapsed)
        self._persist()

    def get(self, intervention_id: str) -> Optional[TrackedIntervention]:
        return self._interventions.get(intervention_id)

    def get_all(self) -> list[TrackedIntervention]:
        with self._lock:
            return list(self._interventions.values())

    def get_for_worker(self, worker_id: str) -> list[TrackedIntervention]:
        """All interventions targeting a worker, in no particular order."""
        return [i for i in self.get_all() if i.target_worker == worker_id]

    def get_active_for(self, worker_id: str, task_id: str) -> Optional[TrackedIntervention]:
        """Find a non-terminal intervention concerning a worker's task.

        Matches on the target worker or on the worker the triggering
        indicator was raised for, since a reassignment targets a different
        worker than the stuck one.
        """
        for tracked in self.get_all():
            if tracked.target_task != task_id or not tracked.is_active:
                continue
            if worker_id in (tracked.target_worker, tracked.indicator.worker_id):
                return tracked
        return None

    def get_recent(self, limit: int = 10) -> list[TrackedIntervention]:
        """Most recently created interventions first."""
        ordered = sorted(self.get_all(), key=lambda i: i.created_at, reverse=True)
        return ordered[:limit]

    def get_stats(self) -> InterventionStats:
        """Compute aggregate statistics."""
        everything = self.get_all()
        completed = [i for i in everything if i.completed_at is not None]
        successful = [i for i in completed if i.success]
        durations = [i.duration_ms for i in everything if i.duration_ms is not None]

        by_type: dict[str, int] = {}
        by_worker: dict[str, int] = {}
        reason_counts: dict[str, int] = {}
        for tracked in everything:
            by_type[tracked.type.value] = by_type.get(tracked.type.value, 0) + 1
            by_worker[tracked.target_worker] = by_worker.get(tracked.target_worker, 0) + 1
            reason = tracked.indicator.reason.value
            reason_counts[reason] = reason_counts.get(reason, 0) + 1

        most_common = sorted(reason_counts.items(), key=lambda item: item[1], reverse=True)

        return InterventionStats(
            total=len(everything),
            by_type=by_type,
            by_worker=by_worker,
            success_rate=len(successful) / len(completed) if completed else 0.0,
            average_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            most_common_reasons=most_common,
        )

    def cleanup(self, max_age_days: float = 7) -> int:
        """Remove interventions created more than ``max_age_days`` ago.

        Returns:
            Number of interventions removed.
        """
        cutoff = datetime.now() - timedelta(days=max_age_days)
        with self._lock:
            expired = [i.id for i in self._interventions.values() if i.created_at < cutoff]
            for intervention_id in expired:
                del self._interventions[intervention_id]

        if expired:
            logger.info(f"Removed {len(expired)} interventions older than {max_age_days} days")
            self._persist()
        return len(expired)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for pending background writes to finish."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        """Flush pending writes and stop the background writer."""
        self.flush()
        if self._writer is not None:
            self._writer.shutdown(wait=True)
            self._writer = None

    def _persist(self) -> None:
        if self.store is None:
            return

        with self._lock:
            records = [i.to_dict() for i in self._interventions.values()]
            if self._writer is None:
                self._write(records)
                return
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(self._writer.submit(self._write, records))

    def _write(self, records: list[dict]) -> None:
        try:
            self.store.write(records)
        except Exception as e:
            logger.error(f"Failed to persist interventions to {self.store.path}: {e}")

    def _load(self) -> None:
        """Load the persisted log. Missing or corrupt files start empty."""
        # ValueError covers malformed JSON and undecodable bytes
        try:
            records = self.store.read()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load interventions from {self.store.path}: {e}")
            return

        if not records:
            return

        loaded: dict[str, TrackedIntervention] = {}
        try:
            for record in records:
                tracked = TrackedIntervention.from_dict(record)
                loaded[tracked.id] = tracked
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Corrupt intervention store {self.store.path}, starting empty: {e}")
            return

        with self._lock:
            self._interventions = loaded
        logger.info(f"Loaded {len(loaded)} interventions from {self.store.path}")
