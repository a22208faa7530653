"""In-process task store.

A lock-guarded dict used as the backlog when no database is configured and
throughout the tests. Claims are atomic claim-or-skip: a claimed task is
never handed out again.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Optional

from ladder.core.exceptions import DuplicateTaskError, TaskNotFoundError
from ladder.core.models import Task, TaskState

logger = logging.getLogger("ladder.db.memory_store")


class InMemoryTaskStore:
    """TaskStore backed by a dict, ordered by priority then insertion."""

    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._order: dict[str, int] = {}
        self._claimed: set[str] = set()
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def add(self, task: Task) -> None:
        with self._lock:
            if task.id in self._tasks:
                raise DuplicateTaskError(task.id)
            self._tasks[task.id] = task
            self._order[task.id] = next(self._counter)

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def contains(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def put_status(self, task_id: str, status: TaskState) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._tasks[task_id] = task.with_status(status)

    def claim_next(self) -> Optional[Task]:
        """Claim the highest-priority queued task whose dependencies all succeeded."""
        with self._lock:
            ready = [
                t for t in self._tasks.values()
                if t.status == TaskState.QUEUED
                and t.id not in self._claimed
                and self._dependencies_met(t)
            ]
            if not ready:
                return None
            task = min(ready, key=lambda t: (-t.priority, self._order[t.id]))
            self._claimed.add(task.id)
            return task

    def claim(self, task_id: str) -> Optional[Task]:
        """Claim a specific queued task regardless of readiness; None if taken."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.id in self._claimed or task.status != TaskState.QUEUED:
                return None
            self._claimed.add(task.id)
            return task

    def list_tasks(self, status: Optional[TaskState] = None) -> list[Task]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: self._order[t.id])
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def _dependencies_met(self, task: Task) -> bool:
        for dep_id in task.dependencies:
            dep = self._tasks.get(dep_id)
            if dep is None or dep.status != TaskState.SUCCEEDED:
                return False
        return True
