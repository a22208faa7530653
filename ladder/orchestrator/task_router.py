"""Task state machine for Ladder.

Manages legal status transitions for tasks and enforces the state graph.
Tasks flow: QUEUED → DISPATCHED → VERIFYING → SUCCEEDED, looping back to
DISPATCHED through GATHERING_CONTEXT, ESCALATING or a same-tier retry.
ABANDONED is reachable from every non-terminal state.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ladder.core.exceptions import InvalidTransitionError
from ladder.core.models import Task, TaskState
from ladder.core.protocols import TaskStore

logger = logging.getLogger("ladder.orchestrator.task_router")

# Legal state transitions: each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.QUEUED: {TaskState.DISPATCHED, TaskState.ABANDONED},
    TaskState.DISPATCHED: {TaskState.VERIFYING, TaskState.ABANDONED},
    TaskState.VERIFYING: {
        TaskState.SUCCEEDED,
        TaskState.GATHERING_CONTEXT,
        TaskState.ESCALATING,
        TaskState.DISPATCHED,
        TaskState.ABANDONED,
    },
    TaskState.GATHERING_CONTEXT: {TaskState.DISPATCHED, TaskState.ABANDONED},
    TaskState.ESCALATING: {TaskState.DISPATCHED, TaskState.ABANDONED},
    TaskState.SUCCEEDED: set(),  # Terminal
    TaskState.ABANDONED: set(),  # Terminal
}

TransitionHook = Callable[[Task, TaskState, Optional[str]], None]


class TaskRouter:
    """Manages task status transitions with validation.

    All status changes go through this router to ensure legal transitions,
    logging, and task store persistence.
    """

    def __init__(self, store: TaskStore, on_transition: Optional[TransitionHook] = None):
        self.store = store
        self.on_transition = on_transition

    def transition(self, task: Task, new_status: TaskState, reason: Optional[str] = None) -> Task:
        """Move a task to a new status.

        Args:
            task: The task to transition.
            new_status: Target status.
            reason: Optional reason for the transition (logged).

        Returns:
            A copy of the task carrying the new status.

        Raises:
            InvalidTransitionError: If transition is not allowed.
        """
        if not self.can_transition(task.status, new_status):
            raise InvalidTransitionError(
                f"Invalid transition: {task.status.value} → {new_status.value} "
                f"for task '{task.title}' ({task.id})"
            )

        old_status = task.status
        self.store.put_status(task.id, new_status)
        updated = task.with_status(new_status)

        log_msg = f"Task '{task.title}': {old_status.value} → {new_status.value}"
        if reason:
            log_msg += f" ({reason})"
        logger.info(log_msg)

        if self.on_transition is not None:
            self.on_transition(updated, old_status, reason)
        return updated

    def can_transition(self, from_status: TaskState, to_status: TaskState) -> bool:
        """Check if a transition is legal."""
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    def mark_abandoned(self, task: Task, reason: str) -> Task:
        """Convenience method to abandon a task with a reason."""
        return self.transition(task, TaskState.ABANDONED, reason=reason)

    def mark_succeeded(self, task: Task) -> Task:
        """Convenience method to mark a task as SUCCEEDED."""
        return self.transition(task, TaskState.SUCCEEDED, reason="verification passed")
