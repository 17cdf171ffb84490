"""
Tests for the database-specific statements.

Statements are compiled against each SQLAlchemy dialect; no database server
is needed.
"""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest
from sqlalchemy.dialects import mysql, postgresql, sqlite

from stowage.storage.dialects import (
    DialectProtocol,
    MySQLDialect,
    PostgreSQLDialect,
    SQLiteDialect,
    dialect_for,
)

NOW = datetime(2024, 1, 1, tzinfo=UTC)


def render(stmt, dialect) -> str:
    return str(stmt.compile(dialect=dialect)).upper()


class TestDialectFor:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("sqlite", SQLiteDialect),
            ("postgresql", PostgreSQLDialect),
            ("mysql", MySQLDialect),
            ("mariadb", MySQLDialect),
        ],
    )
    def test_known_databases(self, name, expected):
        engine = SimpleNamespace(dialect=SimpleNamespace(name=name))

        dialect = dialect_for(engine)

        assert isinstance(dialect, expected)
        assert isinstance(dialect, DialectProtocol)

    def test_unknown_database(self):
        with pytest.raises(ValueError, match="oracle"):
            dialect_for(SimpleNamespace(dialect=SimpleNamespace(name="oracle")))


class TestSQLiteDialect:
    def test_dequeue_query_has_no_row_locks(self):
        sql = render(SQLiteDialect().dequeue_query("default", 10), sqlite.dialect())

        assert "FOR UPDATE" not in sql
        assert "ORDER BY WORKFLOW_QUEUE.PRIORITY DESC, WORKFLOW_QUEUE.LAST_MOD_TS ASC" in sql
        assert "LIMIT" in sql

    def test_stale_delete_uses_limited_subquery(self):
        sql = render(SQLiteDialect().delete_stale_responses_stmt(100, NOW), sqlite.dialect())

        assert sql.startswith("DELETE FROM WORKFLOW_RESPONSES")
        assert "IN (SELECT" in sql
        assert "LIMIT" in sql
        assert "NOT" in sql
        assert "EXISTS" in sql


class TestPostgreSQLDialect:
    def test_dequeue_query_skips_locked_queue_rows(self):
        sql = render(PostgreSQLDialect().dequeue_query("default", 10), postgresql.dialect())

        assert "FOR UPDATE OF WORKFLOW_QUEUE SKIP LOCKED" in sql

    def test_promotion_query_locks_instances(self):
        sql = render(PostgreSQLDialect().promotion_query(10, NOW), postgresql.dialect())

        assert "FOR UPDATE OF WORKFLOW_INSTANCES SKIP LOCKED" in sql
        assert "EXISTS" in sql
        assert "DISTINCT" not in sql

    def test_stale_delete_skips_locked_responses(self):
        sql = render(
            PostgreSQLDialect().delete_stale_responses_stmt(100, NOW), postgresql.dialect()
        )

        assert "SKIP LOCKED" in sql
        assert "LIMIT" in sql


class TestMySQLDialect:
    def test_dequeue_query_skips_locked_rows(self):
        sql = render(MySQLDialect().dequeue_query("default", 10), mysql.dialect())

        assert "SKIP LOCKED" in sql

    def test_stale_delete_uses_delete_limit(self):
        sql = render(MySQLDialect().delete_stale_responses_stmt(100, NOW), mysql.dialect())

        assert sql.startswith("DELETE FROM WORKFLOW_RESPONSES")
        assert "IN (SELECT" not in sql
        assert "LIMIT" in sql
