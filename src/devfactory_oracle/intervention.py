"""Intervention strategies.

Maps a stuck indicator plus project context to a concrete intervention.
Strategies are tried highest priority first and the first one whose
``can_handle`` accepts the indicator wins:

- takeover (30): the Oracle completes the task itself
- reassign (20): move the task to an idle worker
- guidance (10): hint the worker toward progress
- skip (5): give up on a long-timed-out task
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from .models import (
    Intervention,
    InterventionType,
    OracleContext,
    StuckIndicator,
    StuckReason,
    TaskContext,
    WorkerContext,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

TAKEOVER_MIN_CONFIDENCE = 0.8
TAKEOVER_MIN_DURATION_MS = 10 * 60 * 1000
GUIDANCE_MAX_CONFIDENCE = 0.7
SKIP_MIN_DURATION_MS = 60 * 60 * 1000

GUIDANCE_SUGGESTIONS = {
    StuckReason.NO_PROGRESS: [
        "Review the task requirements and ensure you understand what needs to be done",
        "Check if there are any missing dependencies or prerequisite tasks",
        "Break down the task into smaller, manageable steps",
        "Verify that your approach aligns with the project patterns",
    ],
    StuckReason.REPEATED_ERRORS: [
        "Analyze the error pattern - is it the same error repeating?",
        "Try a different approach instead of repeating the same action",
        "Check if the error indicates a missing dependency or configuration",
        "Consult the tech stack documentation for guidance",
    ],
    StuckReason.TIMEOUT: [
        "The task may be too large - consider breaking it into smaller pieces",
        "Check if you are waiting for external resources that are unavailable",
        "Review your implementation approach for efficiency",
        "Consider whether this task should be reassigned or escalated",
    ],
    StuckReason.EXPLICIT_STUCK: [
        "Review why you marked yourself as stuck",
        "Check the task acceptance criteria for clarity",
        "Look at similar completed tasks for reference",
        "Consider reaching out to the Oracle for takeover if truly blocked",
    ],
}


@dataclass
class InterventionStrategy:
    """A named, prioritized rule for turning an indicator into an intervention."""

    name: str
    priority: int
    can_handle: Callable[[StuckIndicator, OracleContext], bool]
    create_intervention: Callable[[StuckIndicator, OracleContext], Intervention]


def generate_intervention_id() -> str:
    """Generate a unique intervention ID."""
    return f"int_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class InterventionEngine:
    """Choose an intervention for a stuck indicator.

    Example:
        engine = InterventionEngine()
        intervention = engine.determine_intervention(indicator, context)
        if intervention and intervention.type == InterventionType.TAKEOVER:
            ...
    """

    def __init__(self):
        self.strategies: list[InterventionStrategy] = []
        self._register_default_strategies()

    def register_strategy(self, strategy: InterventionStrategy) -> None:
        """Register a strategy, keeping the list sorted by descending priority.

        Equal priorities keep their registration order.
        """
        self.strategies.append(strategy)
        self.strategies.sort(key=lambda s: s.priority, reverse=True)

    def determine_intervention(
        self, indicator: StuckIndicator, context: OracleContext
    ) -> Optional[Intervention]:
        """Return the intervention of the first strategy that accepts the indicator."""
        for strategy in self.strategies:
            if strategy.can_handle(indicator, context):
                logger.debug(
                    f"Strategy {strategy.name} handles {indicator.reason.value} "
                    f"for {indicator.worker_id}/{indicator.task_id}"
                )
                return strategy.create_intervention(indicator, context)
        return None

    def _register_default_strategies(self) -> None:
        self.register_strategy(InterventionStrategy(
            name="guidance",
            priority=10,
            can_handle=lambda ind, _ctx: (
                ind.confidence < GUIDANCE_MAX_CONFIDENCE
                and ind.reason == StuckReason.NO_PROGRESS
            ),
            create_intervention=self._create_guidance_intervention,
        ))
        self.register_strategy(InterventionStrategy(
            name="takeover",
            priority=30,
            can_handle=lambda ind, _ctx: (
                ind.confidence >= TAKEOVER_MIN_CONFIDENCE
                and ind.duration_ms > TAKEOVER_MIN_DURATION_MS
            ),
            create_intervention=self._create_takeover_intervention,
        ))
        self.register_strategy(InterventionStrategy(
            name="reassign",
            priority=20,
            can_handle=lambda ind, ctx: find_available_worker(ind, ctx) is not None,
            create_intervention=self._create_reassign_intervention,
        ))
        self.register_strategy(InterventionStrategy(
            name="skip",
            priority=5,
            can_handle=lambda ind, _ctx: (
                ind.reason == StuckReason.TIMEOUT and ind.duration_ms > SKIP_MIN_DURATION_MS
            ),
            create_intervention=self._create_skip_intervention,
        ))

    # Intervention builders

    def _create_guidance_intervention(
        self, indicator: StuckIndicator, context: OracleContext
    ) -> Intervention:
        task = context.find_task(indicator.task_id)
        return Intervention(
            id=generate_intervention_id(),
            type=InterventionType.GUIDANCE,
            target_worker=indicator.worker_id,
            target_task=indicator.task_id,
            reason=(
                f"Worker appears stuck with {indicator.reason.value}. "
                "Providing guidance to help progress."
            ),
            prompt=self._build_guidance_prompt(indicator, task, context),
        )

    def _create_takeover_intervention(
        self, indicator: StuckIndicator, context: OracleContext
    ) -> Intervention:
        task = context.find_task(indicator.task_id)
        worker = context.find_worker(indicator.worker_id)
        return Intervention(
            id=generate_intervention_id(),
            type=InterventionType.TAKEOVER,
            target_worker=indicator.worker_id,
            target_task=indicator.task_id,
            reason=(
                f"Worker stuck for {indicator.duration_minutes} minutes with high "
                f"confidence ({indicator.confidence}). Oracle taking over task completion."
            ),
            prompt=self._build_takeover_prompt(indicator, task, worker, context),
        )

    def _create_reassign_intervention(
        self, indicator: StuckIndicator, context: OracleContext
    ) -> Intervention:
        available = find_available_worker(indicator, context)
        task = context.find_task(indicator.task_id)
        return Intervention(
            id=generate_intervention_id(),
            type=InterventionType.REASSIGN,
            target_worker=available.id if available else "unknown",
            target_task=indicator.task_id,
            reason=(
                f"Reassigning task from stuck worker {indicator.worker_id} to available "
                f"worker {available.display_name if available else 'TBD'}. "
                f"Original issue: {indicator.reason.value}."
            ),
            prompt=self._build_reassign_prompt(indicator, task, available, context),
        )

    def _create_skip_intervention(
        self, indicator: StuckIndicator, context: OracleContext
    ) -> Intervention:
        issue = indicator.reason.value
        if indicator.error_pattern:
            issue += f" ({indicator.error_pattern})"
        return Intervention(
            id=generate_intervention_id(),
            type=InterventionType.SKIP,
            target_worker=indicator.worker_id,
            target_task=indicator.task_id,
            reason=(
                f"Task has timed out after {indicator.duration_minutes} minutes. "
                f"Skipping to prevent blocking other tasks. Issue: {issue}."
            ),
        )

    # Prompt builders

    def _build_guidance_prompt(
        self,
        indicator: StuckIndicator,
        task: Optional[TaskContext],
        context: OracleContext,
    ) -> str:
        lines = [
            "# Oracle Guidance",
            "",
            "## Current Situation",
            f"You are working on: {task.title if task else 'Unknown task'}",
            f"Status: Stuck ({indicator.reason.value})",
            f"Duration: {indicator.duration_minutes} minutes",
            "",
        ]

        if indicator.error_pattern:
            lines += ["## Error Pattern Detected", indicator.error_pattern, ""]

        if task and task.last_error:
            lines += ["## Last Error", task.last_error, ""]

        lines += [
            "## Project Context",
            f"Mission: {context.product.mission}",
            f"Tech Stack: {', '.join(context.product.tech_stack)}",
            "",
            "## Suggested Actions",
            "",
        ]
        for i, suggestion in enumerate(GUIDANCE_SUGGESTIONS[indicator.reason], 1):
            lines.append(f"{i}. {suggestion}")

        lines += ["", "## Available Resources"]
        if context.product.patterns:
            lines.append("Project patterns you should follow:")
            lines += [f"- {pattern}" for pattern in context.product.patterns]

        return "\n".join(lines)

    def _build_takeover_prompt(
        self,
        indicator: StuckIndicator,
        task: Optional[TaskContext],
        worker: Optional[WorkerContext],
        context: OracleContext,
    ) -> str:
        lines = [
            "# Oracle Takeover Mission",
            "",
            "You are the Oracle, assuming control of a stuck task.",
            "",
            "## Project Mission",
            context.product.mission,
            "",
            "## Tech Stack",
            ", ".join(context.product.tech_stack),
            "",
            "## Task to Complete",
            f"ID: {task.id if task else indicator.task_id}",
            f"Title: {task.title if task else 'Unknown'}",
            f"Status: {task.status.value if task else 'Unknown'}",
            f"Attempts: {task.attempts if task else 0}",
            "",
        ]

        if task and task.last_error:
            lines += ["## Previous Error", task.last_error, ""]

        if indicator.error_pattern:
            lines += ["## Error Pattern", indicator.error_pattern, ""]

        lines += [
            "## Context from Stuck Worker",
            f"Worker was stuck for: {indicator.duration_minutes} minutes",
            f"Reason: {indicator.reason.value}",
            f"Confidence: {round(indicator.confidence * 100)}%",
            "",
        ]

        if worker and worker.recent_activity:
            lines.append("## Recent Worker Activity")
            lines += [
                f"- [{activity.type.value}] {activity.message}"
                for activity in worker.recent_activity[-5:]
            ]
            lines.append("")

        lines.append("## Project Patterns to Follow")
        lines += [f"- {pattern}" for pattern in context.product.patterns]
        lines += [
            "",
            "## Your Mission",
            "1. Analyze the task requirements and previous attempts",
            "2. Implement a complete solution following project patterns",
            "3. Verify your implementation meets acceptance criteria",
            "4. Document any important decisions or changes",
            "",
            "Complete this task fully and mark it as done.",
        ]
        return "\n".join(lines)

    def _build_reassign_prompt(
        self,
        indicator: StuckIndicator,
        task: Optional[TaskContext],
        new_worker: Optional[WorkerContext],
        context: OracleContext,
    ) -> str:
        worker_name = new_worker.display_name if new_worker else "Worker"
        lines = [
            "# Task Reassignment Notice",
            "",
            f"You ({worker_name}) are being assigned a task that another worker "
            "was unable to complete.",
            "",
            "## Task Details",
            f"ID: {task.id if task else indicator.task_id}",
            f"Title: {task.title if task else 'Unknown'}",
            f"Previous attempts: {task.attempts if task else 0}",
            "",
            "## Why Reassigned",
            f"Previous worker: {indicator.worker_id}",
            f"Issue: {indicator.reason.value}",
            f"Stuck duration: {indicator.duration_minutes} minutes",
            "",
        ]

        if task and task.last_error:
            lines += [
                "## Previous Error",
                task.last_error,
                "",
                "Learn from this error and try a different approach.",
                "",
            ]

        lines += [
            "## Fresh Start Guidelines",
            "1. Review the task requirements with fresh eyes",
            "2. Do not repeat the approach that led to the previous failure",
            "3. Follow project patterns and tech stack guidelines",
            "4. If you encounter similar issues, escalate immediately",
            "",
            "## Project Context",
            f"Mission: {context.product.mission}",
            f"Tech Stack: {', '.join(context.product.tech_stack)}",
        ]
        return "\n".join(lines)


def find_available_worker(
    indicator: StuckIndicator, context: OracleContext
) -> Optional[WorkerContext]:
    """Return the first idle worker, in context order, other than the stuck one."""
    for worker in context.workers:
        if worker.status == WorkerStatus.IDLE and worker.id != indicator.worker_id:
            return worker
    return None
