"""
Context providers.

The Oracle consumes an ``OracleContext`` snapshot once per cycle. Anything
implementing ``ContextProvider`` can supply it; ``FileContextLoader`` reads
the ``.devfactory/`` directory tree written by the worker runtime:

    .devfactory/
        product/mission.md
        product/tech-stack.md
        specs/<spec-name>/orchestration.yml
        specs/<spec-name>/tasks.md
        beast/state.json
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .models import (
    ActivityEntry,
    ActivityType,
    BeastState,
    BeastStatus,
    OracleContext,
    ProductContext,
    SpecContext,
    TaskContext,
    TaskStatus,
    WorkerContext,
    WorkerStatus,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

# Activities kept per worker
ACTIVITY_LIMIT = 10

_BOLD_BULLET = re.compile(r"[-*]\s+\*\*([^*]+)\*\*")
_BULLET = re.compile(r"^[-*]\s+(.+)$", re.MULTILINE)
_PRINCIPLE = re.compile(r"^### \d+\. (.+)$", re.MULTILINE)
_PHASE = re.compile(r"^phase-\d+")


class ContextProvider(ABC):
    """Supplies the Oracle with a fresh context snapshot."""

    @abstractmethod
    def load_context(self) -> OracleContext:
        """Load a complete, internally consistent snapshot.

        Exceptions propagate to the Oracle, which treats them as a failed cycle.
        """


class FileContextLoader(ContextProvider):
    """Load context from a project's ``.devfactory/`` directory."""

    def __init__(self, project_root: Union[str, Path]):
        self.project_root = Path(project_root)
        self.devfactory_path = self.project_root / ".devfactory"

    def load_context(self) -> OracleContext:
        state = self._load_state_json()
        product = self.load_product_context()
        specs = self.load_spec_contexts(state)
        workers = self.load_worker_contexts(state)
        current_state = self.load_beast_state(state)

        logger.debug(f"Context loaded: {len(specs)} specs, {len(workers)} workers")
        return OracleContext(
            product=product, specs=specs, workers=workers, current_state=current_state
        )

    def load_product_context(self) -> ProductContext:
        """Load mission, tech stack and patterns from ``product/``."""
        product_path = self.devfactory_path / "product"

        mission = _read_text(product_path / "mission.md")
        if not mission:
            logger.warning("mission.md not found, using default")
            mission = "No mission statement available."

        tech_stack_content = _read_text(product_path / "tech-stack.md")
        tech_stack = list(dict.fromkeys(
            m.strip() for m in _BOLD_BULLET.findall(tech_stack_content)
        ))

        patterns = [m.strip() for m in _PRINCIPLE.findall(_section(mission, "Core Principles"))]

        return ProductContext(mission=mission, tech_stack=tech_stack, patterns=patterns)

    def load_spec_contexts(self, state: Optional[dict] = None) -> list[SpecContext]:
        """Load every spec under ``specs/``."""
        specs_path = self.devfactory_path / "specs"
        if not specs_path.is_dir():
            logger.warning("specs/ directory not found")
            return []

        task_overrides = {t["id"]: t for t in (state or {}).get("tasks") or [] if "id" in t}
        specs = []
        for spec_dir in sorted(p for p in specs_path.iterdir() if p.is_dir()):
            spec = self._load_spec(spec_dir, task_overrides)
            if spec:
                specs.append(spec)
        return specs

    def load_worker_contexts(self, state: Optional[dict] = None) -> list[WorkerContext]:
        """Build worker snapshots from ``beast/state.json``."""
        now = datetime.now()
        workers = []
        for raw in (state or {}).get("workers") or []:
            try:
                status = WorkerStatus(raw.get("status", "idle"))
                stuck_duration_ms = None
                heartbeat = parse_timestamp(raw.get("lastHeartbeat"))
                if status == WorkerStatus.STUCK and heartbeat:
                    stuck_duration_ms = (now - heartbeat).total_seconds() * 1000

                activity = [
                    ActivityEntry(
                        timestamp=parse_timestamp(a["timestamp"]),
                        type=ActivityType(a["type"]),
                        message=a.get("message", ""),
                        metadata=a.get("metadata"),
                    )
                    for a in raw.get("activity", [])[-ACTIVITY_LIMIT:]
                ]

                workers.append(WorkerContext(
                    id=raw["id"],
                    name=raw.get("name", ""),
                    status=status,
                    current_task=raw.get("currentTask"),
                    recent_activity=activity,
                    stuck_duration_ms=stuck_duration_ms,
                ))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed worker entry {raw.get('id', '?')}: {e}")
        return workers

    def load_beast_state(self, state: Optional[dict] = None) -> BeastState:
        state = state or {}
        try:
            status = BeastStatus(state.get("status", "idle"))
        except ValueError:
            logger.warning(f"Unknown run status {state.get('status')!r}, assuming idle")
            status = BeastStatus.IDLE

        return BeastState(
            status=status,
            active_spec=state.get("activeSpec"),
            started_at=parse_timestamp(state.get("startedAt")),
            total_tasks=state.get("totalTasks", 0),
            completed_tasks=state.get("completedTasks", 0),
        )

    def _load_spec(self, spec_dir: Path, task_overrides: dict[str, dict]) -> Optional[SpecContext]:
        orchestration_path = spec_dir / "orchestration.yml"
        try:
            orchestration = yaml.safe_load(_read_text(orchestration_path)) or {}
            tasks = [
                _task_from_yaml(raw, task_overrides.get(raw["id"], {}))
                for raw in orchestration.get("tasks") or []
            ]
        except (yaml.YAMLError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load spec {spec_dir.name}: {e}")
            return None

        tasks_md = _read_text(spec_dir / "tasks.md")
        criteria = [c.strip() for c in _BULLET.findall(_section(tasks_md, "Verification Criteria"))]

        phase_match = _PHASE.match(spec_dir.name)
        return SpecContext(
            id=orchestration.get("spec") or spec_dir.name,
            name=spec_dir.name,
            phase=phase_match.group(0) if phase_match else "unknown",
            tasks=tasks,
            acceptance_criteria=criteria,
        )

    def _load_state_json(self) -> Optional[dict[str, Any]]:
        state_path = self.devfactory_path / "beast" / "state.json"
        try:
            return json.loads(state_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("state.json not found, using defaults")
        except json.JSONDecodeError as e:
            logger.warning(f"state.json is invalid ({e}), using defaults")
        return None


def _task_from_yaml(raw: dict, override: dict) -> TaskContext:
    """Merge a task declared in orchestration.yml with its runtime state."""
    return TaskContext(
        id=raw["id"],
        title=raw.get("title") or override.get("title") or raw["id"],
        status=TaskStatus(override.get("status", "pending")),
        assigned_worker=override.get("assignedWorker"),
        started_at=parse_timestamp(override.get("startedAt")),
        completed_at=parse_timestamp(override.get("completedAt")),
        attempts=override.get("attempts", 0),
        last_error=override.get("lastError"),
    )


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def _section(markdown: str, heading: str) -> str:
    """Return the body of a ``## heading`` section, up to the next ``##``."""
    match = re.search(rf"^## {re.escape(heading)}\s*$(.*?)(?=^## |\Z)", markdown, re.M | re.S)
    return match.group(1) if match else ""
