"""
devfactory-oracle: supervision of autonomous workers.

This package provides:
- Stuck detection over worker activity snapshots
- Priority-ordered intervention strategies (takeover, reassign, guidance, skip)
- Takeover session lifecycle with retries
- A durable, lock-guarded intervention log with statistics
- The Oracle polling loop tying them together

Quick Start:
    from devfactory_oracle import Oracle, OracleConfig, OracleEvents

    oracle = Oracle(
        OracleConfig(project_root=Path("."), persist_path=Path("interventions.json")),
        events=OracleEvents(on_intervention_created=print),
    )
    oracle.start()
"""

__version__ = "0.1.0"

from devfactory_oracle.config import Config, OracleConfig, load_oracle_config
from devfactory_oracle.context_loader import ContextProvider, FileContextLoader
from devfactory_oracle.exceptions import (
    InvalidInterventionError,
    OracleError,
    SessionNotFoundError,
    StoreLockError,
)
from devfactory_oracle.intervention import InterventionEngine, InterventionStrategy
from devfactory_oracle.models import (
    ActivityEntry,
    ActivityType,
    BeastState,
    BeastStatus,
    Intervention,
    InterventionStatus,
    InterventionType,
    OracleContext,
    ProductContext,
    SpecContext,
    StuckIndicator,
    StuckReason,
    TaskContext,
    TaskStatus,
    WorkerContext,
    WorkerStatus,
)
from devfactory_oracle.oracle import Oracle, OracleEvents
from devfactory_oracle.storage import JsonFileStore, StoreConfig
from devfactory_oracle.stuck_detector import StuckDetector, StuckDetectorConfig, normalize_error
from devfactory_oracle.takeover import (
    SessionStatus,
    TakeoverConfig,
    TakeoverManager,
    TakeoverSession,
)
from devfactory_oracle.tracker import InterventionStats, InterventionTracker, TrackedIntervention

__all__ = [
    "__version__",
    # Orchestration
    "Oracle",
    "OracleEvents",
    "OracleConfig",
    "Config",
    "load_oracle_config",
    # Context
    "ContextProvider",
    "FileContextLoader",
    "OracleContext",
    "ProductContext",
    "SpecContext",
    "TaskContext",
    "TaskStatus",
    "WorkerContext",
    "WorkerStatus",
    "ActivityEntry",
    "ActivityType",
    "BeastState",
    "BeastStatus",
    # Detection
    "StuckDetector",
    "StuckDetectorConfig",
    "StuckIndicator",
    "StuckReason",
    "normalize_error",
    # Interventions
    "InterventionEngine",
    "InterventionStrategy",
    "Intervention",
    "InterventionStatus",
    "InterventionType",
    # Takeover
    "TakeoverManager",
    "TakeoverConfig",
    "TakeoverSession",
    "SessionStatus",
    # Tracking
    "InterventionTracker",
    "TrackedIntervention",
    "InterventionStats",
    "JsonFileStore",
    "StoreConfig",
    # Errors
    "OracleError",
    "InvalidInterventionError",
    "SessionNotFoundError",
    "StoreLockError",
]
