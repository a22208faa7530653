"""Tests for ladder/db/engine.py — PostgreSQL engine.

Requires a running PostgreSQL instance. Skipped if unavailable.
"""

import pytest

from ladder.core.config import DatabaseConfig
from ladder.core.exceptions import ConnectionError, DatabaseError
from ladder.db.engine import SCHEMA_PATH, DatabaseEngine

from tests.conftest import requires_postgres


def test_schema_file_ships_with_package():
    assert SCHEMA_PATH.exists()
    assert "ladder_tasks" in SCHEMA_PATH.read_text()


def test_connect_failure_raises_connection_error():
    engine = DatabaseEngine(DatabaseConfig(backend="postgresql", host="127.0.0.1", port=1))
    with pytest.raises(ConnectionError):
        engine.fetch_one("SELECT 1")


@requires_postgres
class TestDatabaseEngine:
    def test_connect_and_query(self, db_engine):
        result = db_engine.fetch_one("SELECT 1 AS num")
        assert result["num"] == 1

    def test_schema_initialized(self, db_engine):
        tables = db_engine.fetch_all(
            """SELECT table_name FROM information_schema.tables
               WHERE table_schema = 'public' AND table_type = 'BASE TABLE'"""
        )
        names = {r["table_name"] for r in tables}
        assert {"ladder_tasks", "ladder_task_dependencies"} <= names

    def test_schema_initialization_is_idempotent(self, db_engine):
        db_engine.initialize_schema()

    def test_fetch_all(self, db_engine):
        rows = db_engine.fetch_all("SELECT 1 AS a UNION SELECT 2 AS a ORDER BY a")
        assert [r["a"] for r in rows] == [1, 2]

    def test_bad_query_raises_database_error(self, db_engine):
        with pytest.raises(DatabaseError):
            db_engine.execute("SELECT * FROM no_such_table")

    def test_transaction_rolls_back_on_error(self, db_engine):
        with pytest.raises(RuntimeError):
            with db_engine.transaction() as cur:
                cur.execute("INSERT INTO ladder_tasks (id, title) VALUES ('tx', 'Tx')")
                raise RuntimeError("abort")
        assert db_engine.fetch_one("SELECT id FROM ladder_tasks WHERE id = 'tx'") is None

    def test_transaction_commits(self, db_engine):
        with db_engine.transaction() as cur:
            cur.execute("INSERT INTO ladder_tasks (id, title) VALUES ('tx', 'Tx')")
        assert db_engine.fetch_one("SELECT id FROM ladder_tasks WHERE id = 'tx'")["id"] == "tx"
