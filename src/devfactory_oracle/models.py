"""
Data models for the Oracle.

Snapshots of workers, tasks and specs are produced by a context provider
and treated as read-only for the duration of one monitoring cycle.
Indicators and interventions are produced by the Oracle itself.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class WorkerStatus(Enum):
    """Worker lifecycle states as reported by the context provider."""
    IDLE = "idle"
    WORKING = "working"
    STUCK = "stuck"
    OFFLINE = "offline"


class ActivityType(Enum):
    """Kinds of entries in a worker's activity feed."""
    TASK_START = "task_start"
    TASK_COMPLETE = "task_complete"
    ERROR = "error"
    INTERVENTION = "intervention"
    MESSAGE = "message"


class TaskStatus(Enum):
    """Task states within a spec."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class BeastStatus(Enum):
    """Overall run status."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class StuckReason(Enum):
    """Why a worker is considered stuck."""
    NO_PROGRESS = "no_progress"
    REPEATED_ERRORS = "repeated_errors"
    TIMEOUT = "timeout"
    EXPLICIT_STUCK = "explicit_stuck"


class InterventionType(Enum):
    """Corrective actions the Oracle can decide on."""
    GUIDANCE = "guidance"
    TAKEOVER = "takeover"
    REASSIGN = "reassign"
    SKIP = "skip"


class InterventionStatus(Enum):
    """Intervention lifecycle states."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (InterventionStatus.COMPLETED, InterventionStatus.FAILED)


@dataclass(frozen=True)
class ActivityEntry:
    """A single entry from a worker's activity feed."""
    timestamp: datetime
    type: ActivityType
    message: str
    metadata: Optional[dict[str, Any]] = None

    @property
    def is_meaningful(self) -> bool:
        """Plain messages are chatter, everything else counts as progress signal."""
        return self.type != ActivityType.MESSAGE

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "message": self.message,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityEntry":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            type=ActivityType(data["type"]),
            message=data.get("message", ""),
            metadata=data.get("metadata"),
        )


@dataclass
class WorkerContext:
    """Point-in-time snapshot of a worker."""
    id: str
    status: WorkerStatus
    name: str = ""
    current_task: Optional[str] = None
    recent_activity: list[ActivityEntry] = field(default_factory=list)
    stuck_duration_ms: Optional[float] = None  # Only set when status is STUCK

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass
class TaskContext:
    """A task as seen by the Oracle."""
    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None


@dataclass
class SpecContext:
    """A specification and the tasks it contains."""
    id: str
    name: str
    phase: str = "unknown"
    tasks: list[TaskContext] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)


@dataclass
class ProductContext:
    """Project mission, stack and conventions."""
    mission: str = ""
    tech_stack: list[str] = field(default_factory=list)
    patterns: list[str] = field(default_factory=list)


@dataclass
class BeastState:
    """Overall run status and progress."""
    status: BeastStatus = BeastStatus.IDLE
    active_spec: Optional[str] = None
    started_at: Optional[datetime] = None
    total_tasks: int = 0
    completed_tasks: int = 0


@dataclass
class OracleContext:
    """Everything the Oracle knows about the project for one cycle."""
    product: ProductContext = field(default_factory=ProductContext)
    specs: list[SpecContext] = field(default_factory=list)
    workers: list[WorkerContext] = field(default_factory=list)
    current_state: BeastState = field(default_factory=BeastState)

    def find_task(self, task_id: str) -> Optional[TaskContext]:
        """Find a task by ID across all specs."""
        for spec in self.specs:
            for task in spec.tasks:
                if task.id == task_id:
                    return task
        return None

    def find_spec_for_task(self, task_id: str) -> Optional[SpecContext]:
        """Find the spec that contains a given task."""
        for spec in self.specs:
            if any(task.id == task_id for task in spec.tasks):
                return spec
        return None

    def find_worker(self, worker_id: str) -> Optional[WorkerContext]:
        for worker in self.workers:
            if worker.id == worker_id:
                return worker
        return None


@dataclass
class StuckIndicator:
    """Evidence, with a confidence score, that a worker is not progressing."""
    worker_id: str
    task_id: str
    reason: StuckReason
    duration_ms: float
    confidence: float
    error_pattern: Optional[str] = None

    @property
    def duration_minutes(self) -> int:
        return round_minutes(self.duration_ms)

    def to_dict(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "task_id": self.task_id,
            "reason": self.reason.value,
            "duration": self.duration_ms,
            "error_pattern": self.error_pattern,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StuckIndicator":
        return cls(
            worker_id=data["worker_id"],
            task_id=data["task_id"],
            reason=StuckReason(data["reason"]),
            duration_ms=data.get("duration", 0),
            confidence=data.get("confidence", 0.0),
            error_pattern=data.get("error_pattern"),
        )


@dataclass
class Intervention:
    """A decided corrective action for a stuck situation."""
    id: str
    type: InterventionType
    target_worker: str
    target_task: str
    reason: str
    created_at: datetime = field(default_factory=datetime.now)
    status: InterventionStatus = InterventionStatus.PENDING
    prompt: Optional[str] = None
    result: Optional[str] = None


def round_minutes(duration_ms: float) -> int:
    """Convert milliseconds to whole minutes, rounding halves up."""
    return int(duration_ms / 60000 + 0.5)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive local time.

    Offsets (including a trailing ``Z``) are converted to local time so the
    result compares with ``datetime.now()``.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed
