"""PostgreSQL-backed task store for Ladder.

All backlog SQL lives here. The orchestrator never writes raw SQL; it calls
PostgresTaskStore methods that return Pydantic models. Claims use
``FOR UPDATE SKIP LOCKED`` so concurrent runners (threads or processes)
never receive the same task.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Optional

from ladder.core.exceptions import TaskNotFoundError
from ladder.core.models import TERMINAL_STATES, Task, TaskState
from ladder.db.engine import DatabaseEngine

_SELECT_TASK = """
    SELECT t.*,
           COALESCE(
               (SELECT array_agg(d.depends_on ORDER BY d.depends_on)
                  FROM ladder_task_dependencies d
                 WHERE d.task_id = t.id),
               ARRAY[]::text[]
           ) AS dependencies
      FROM ladder_tasks t
"""


class PostgresTaskStore:
    """TaskStore wrapping DatabaseEngine with typed methods."""

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    def add(self, task: Task) -> None:
        with self.engine.transaction() as cur:
            cur.execute(
                """INSERT INTO ladder_tasks
                       (id, title, description, acceptance_criteria, priority,
                        architecturally_complex, reviewable, verification_commands,
                        status, created_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                [
                    task.id,
                    task.title,
                    task.description,
                    json.dumps(list(task.acceptance_criteria)),
                    task.priority,
                    task.architecturally_complex,
                    task.reviewable,
                    json.dumps(list(task.verification_commands)),
                    task.status.value,
                    task.created_at,
                ],
            )
            for dep_id in sorted(task.dependencies):
                cur.execute(
                    "INSERT INTO ladder_task_dependencies (task_id, depends_on) VALUES (%s, %s)",
                    [task.id, dep_id],
                )

    def get(self, task_id: str) -> Task:
        row = self.engine.fetch_one(_SELECT_TASK + " WHERE t.id = %s", [task_id])
        if row is None:
            raise TaskNotFoundError(task_id)
        return _row_to_task(row)

    def contains(self, task_id: str) -> bool:
        row = self.engine.fetch_one("SELECT 1 AS found FROM ladder_tasks WHERE id = %s", [task_id])
        return row is not None

    def put_status(self, task_id: str, status: TaskState) -> None:
        completed_at = datetime.now(UTC) if status in TERMINAL_STATES else None
        row = self.engine.fetch_one(
            """UPDATE ladder_tasks
                  SET status = %s, updated_at = now(), completed_at = %s
                WHERE id = %s
            RETURNING id""",
            [status.value, completed_at, task_id],
        )
        if row is None:
            raise TaskNotFoundError(task_id)

    def claim_next(self) -> Optional[Task]:
        """Atomically claim the highest-priority ready task, skipping locked rows."""
        with self.engine.transaction() as cur:
            cur.execute(
                """UPDATE ladder_tasks
                      SET claimed_at = now(), updated_at = now()
                    WHERE id = (
                        SELECT t.id
                          FROM ladder_tasks t
                         WHERE t.status = 'queued'
                           AND t.claimed_at IS NULL
                           AND NOT EXISTS (
                               SELECT 1
                                 FROM ladder_task_dependencies d
                                 JOIN ladder_tasks p ON p.id = d.depends_on
                                WHERE d.task_id = t.id
                                  AND p.status <> 'succeeded'
                           )
                         ORDER BY t.priority DESC, t.insertion_seq ASC
                         LIMIT 1
                           FOR UPDATE SKIP LOCKED
                    )
                RETURNING id"""
            )
            row = cur.fetchone()
        if row is None:
            return None
        return self.get(row["id"])

    def claim(self, task_id: str) -> Optional[Task]:
        """Claim a specific queued task; None if it is already claimed or started."""
        row = self.engine.fetch_one(
            """UPDATE ladder_tasks
                  SET claimed_at = now(), updated_at = now()
                WHERE id = %s AND status = 'queued' AND claimed_at IS NULL
            RETURNING id""",
            [task_id],
        )
        if row is None:
            if not self.contains(task_id):
                raise TaskNotFoundError(task_id)
            return None
        return self.get(task_id)

    def list_tasks(self, status: Optional[TaskState] = None) -> list[Task]:
        if status is None:
            rows = self.engine.fetch_all(_SELECT_TASK + " ORDER BY t.insertion_seq ASC")
        else:
            rows = self.engine.fetch_all(
                _SELECT_TASK + " WHERE t.status = %s ORDER BY t.insertion_seq ASC",
                [status.value],
            )
        return [_row_to_task(r) for r in rows]


# ---------------------------------------------------------------------------
# Row-to-model converters
# ---------------------------------------------------------------------------

def _row_to_task(row: dict) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row.get("description") or "",
        acceptance_criteria=tuple(row.get("acceptance_criteria") or ()),
        priority=row.get("priority", 0),
        dependencies=frozenset(row.get("dependencies") or ()),
        architecturally_complex=row.get("architecturally_complex", False),
        reviewable=row.get("reviewable", False),
        verification_commands=tuple(row.get("verification_commands") or ()),
        status=TaskState(row["status"]),
        created_at=row.get("created_at") or datetime.now(UTC),
    )
