"""Tests for ladder/db/repository.py — PostgreSQL task store.

Requires a running PostgreSQL instance. Skipped if unavailable.
All tests use real database operations — no mocks.
"""

import pytest

from ladder.core.exceptions import TaskNotFoundError
from ladder.core.models import Task, TaskState
from ladder.db.repository import PostgresTaskStore

from tests.conftest import requires_postgres


@pytest.fixture
def pg_store(db_engine):
    return PostgresTaskStore(db_engine)


def _task(task_id, priority=0, deps=(), **kwargs):
    return Task(id=task_id, title=f"Task {task_id}", priority=priority,
                dependencies=frozenset(deps), **kwargs)


@requires_postgres
class TestTaskCRUD:
    def test_add_and_get_round_trips_fields(self, pg_store):
        pg_store.add(_task(
            "a", priority=7,
            description="Page 2 repeats a row",
            acceptance_criteria=("no overlap", "tests pass"),
            architecturally_complex=True,
            reviewable=True,
            verification_commands=("pytest -q",),
        ))
        fetched = pg_store.get("a")
        assert fetched.priority == 7
        assert fetched.acceptance_criteria == ("no overlap", "tests pass")
        assert fetched.architecturally_complex
        assert fetched.reviewable
        assert fetched.verification_commands == ("pytest -q",)
        assert fetched.status == TaskState.QUEUED

    def test_dependencies_stored(self, pg_store):
        pg_store.add(_task("a"))
        pg_store.add(_task("b", deps=["a"]))
        assert pg_store.get("b").dependencies == frozenset({"a"})

    def test_get_not_found(self, pg_store):
        with pytest.raises(TaskNotFoundError):
            pg_store.get("ghost")
        assert not pg_store.contains("ghost")

    def test_put_status(self, pg_store):
        pg_store.add(_task("a"))
        pg_store.add(_task("b"))
        pg_store.put_status("a", TaskState.SUCCEEDED)
        assert pg_store.get("a").status == TaskState.SUCCEEDED
        assert pg_store.get("b").status == TaskState.QUEUED

    def test_put_status_not_found(self, pg_store):
        with pytest.raises(TaskNotFoundError):
            pg_store.put_status("ghost", TaskState.ABANDONED)

    def test_list_tasks_filter(self, pg_store):
        pg_store.add(_task("a"))
        pg_store.add(_task("b"))
        pg_store.put_status("b", TaskState.ABANDONED)
        assert [t.id for t in pg_store.list_tasks()] == ["a", "b"]
        assert [t.id for t in pg_store.list_tasks(TaskState.ABANDONED)] == ["b"]


@requires_postgres
class TestClaims:
    def test_claim_next_by_priority(self, pg_store):
        pg_store.add(_task("low", priority=1))
        pg_store.add(_task("high", priority=9))
        assert pg_store.claim_next().id == "high"
        assert pg_store.claim_next().id == "low"
        assert pg_store.claim_next() is None

    def test_claim_next_respects_dependencies(self, pg_store):
        pg_store.add(_task("a"))
        pg_store.add(_task("b", priority=9, deps=["a"]))
        assert pg_store.claim_next().id == "a"
        assert pg_store.claim_next() is None
        pg_store.put_status("a", TaskState.SUCCEEDED)
        assert pg_store.claim_next().id == "b"

    def test_claim_specific(self, pg_store):
        pg_store.add(_task("a"))
        assert pg_store.claim("a").id == "a"
        assert pg_store.claim("a") is None

    def test_claim_unknown(self, pg_store):
        with pytest.raises(TaskNotFoundError):
            pg_store.claim("ghost")
