from pathlib import Path

import pytest

import src.infrastructure.postgres_migrations as migrations_module
from src.infrastructure.postgres_migrations import (
    PostgresMigration,
    _migration_lock_key,
    apply_postgres_migrations,
    list_pending_migrations,
)


class _FakeCursor:
    def __init__(self, rows=None):
        self._rows = rows or []

    def fetchall(self):
        return list(self._rows)


class _FakeConnection:
    def __init__(self):
        self.schema_migrations: dict[tuple[str, str], str] = {}
        self.applied_statements: list[str] = []
        self.commit_count = 0
        self.rollback_count = 0
        self.lock_calls: list[int] = []
        self.unlock_calls: list[int] = []

    def execute(self, query, args=None):
        sql = " ".join(str(query).split())
        if sql == "SELECT pg_advisory_lock(%s::bigint)":
            self.lock_calls.append(int(args[0]))
            return _FakeCursor()
        if sql == "SELECT pg_advisory_unlock(%s::bigint)":
            self.unlock_calls.append(int(args[0]))
            return _FakeCursor()
        if sql.startswith("CREATE TABLE IF NOT EXISTS schema_migrations"):
            return _FakeCursor()
        if "FROM schema_migrations" in sql:
            namespace = args[0]
            rows = [
                {"version": version, "checksum": checksum}
                for (stored_namespace, version), checksum in self.schema_migrations.items()
                if stored_namespace == namespace
            ]
            return _FakeCursor(rows=sorted(rows, key=lambda row: row["version"]))
        if "INSERT INTO schema_migrations" in sql:
            self.schema_migrations[(args[1], args[0])] = args[2]
            return _FakeCursor()
        self.applied_statements.append(sql)
        return _FakeCursor()

    def commit(self):
        self.commit_count += 1

    def rollback(self):
        self.rollback_count += 1


def _single_migration(monkeypatch, tmp_path: Path, sql: str, checksum: str = "checksum-1"):
    sql_path = tmp_path / "0001_test.sql"
    sql_path.write_text(sql, encoding="utf-8")
    migration = PostgresMigration(version="0001", sql_path=sql_path, checksum=checksum)
    monkeypatch.setattr(migrations_module, "_load_migrations", lambda namespace: [migration])


def test_workflow_migrations_are_forward_only_and_idempotent():
    connection = _FakeConnection()

    applied = apply_postgres_migrations(connection=connection, namespace="workflow")
    first_count = len(connection.applied_statements)
    assert applied == ["0001"]
    assert first_count > 0
    assert ("workflow", "workflow:0001") in connection.schema_migrations
    assert connection.commit_count == 1
    assert connection.lock_calls == [_migration_lock_key(namespace="workflow")]
    assert connection.unlock_calls == [_migration_lock_key(namespace="workflow")]

    assert apply_postgres_migrations(connection=connection, namespace="workflow") == []
    assert len(connection.applied_statements) == first_count
    assert connection.commit_count == 2


def test_workflow_schema_creates_every_table():
    connection = _FakeConnection()

    apply_postgres_migrations(connection=connection, namespace="workflow")

    created = {
        statement.split()[5]
        for statement in connection.applied_statements
        if statement.startswith("CREATE TABLE IF NOT EXISTS")
    }
    assert created == {
        "workflow_applications",
        "workflow_tasks",
        "workflow_queries",
        "workflow_audit_events",
        "workflow_notifications",
        "workflow_arn_sequences",
        "workflow_holidays",
        "workflow_officer_postings",
    }
    assert any(
        "workflow_tasks_one_open_per_application" in statement
        for statement in connection.applied_statements
    )


def test_list_pending_migrations_reports_unapplied_versions():
    connection = _FakeConnection()

    assert list_pending_migrations(connection=connection, namespace="workflow") == ["0001"]
    apply_postgres_migrations(connection=connection, namespace="workflow")
    assert list_pending_migrations(connection=connection, namespace="workflow") == []


def test_comment_lines_are_not_executed(monkeypatch, tmp_path: Path):
    _single_migration(
        monkeypatch,
        tmp_path,
        "-- sample table\nCREATE TABLE IF NOT EXISTS sample_table (id TEXT PRIMARY KEY);\n-- end\n",
    )
    connection = _FakeConnection()

    apply_postgres_migrations(connection=connection, namespace="custom")

    assert connection.applied_statements == [
        "CREATE TABLE IF NOT EXISTS sample_table (id TEXT PRIMARY KEY)"
    ]


def test_checksum_mismatch_is_rejected(monkeypatch, tmp_path: Path):
    _single_migration(
        monkeypatch,
        tmp_path,
        "CREATE TABLE IF NOT EXISTS sample_table (id TEXT PRIMARY KEY);",
        checksum="checksum-new",
    )
    connection = _FakeConnection()
    connection.schema_migrations[("custom", "0001")] = "checksum-old"

    with pytest.raises(RuntimeError) as exc:
        apply_postgres_migrations(connection=connection, namespace="custom")
    assert str(exc.value) == "POSTGRES_MIGRATION_CHECKSUM_MISMATCH:custom:0001"
    assert connection.rollback_count == 1
    assert connection.unlock_calls == [_migration_lock_key(namespace="custom")]


def test_unknown_namespace_is_rejected():
    with pytest.raises(RuntimeError) as exc:
        apply_postgres_migrations(connection=_FakeConnection(), namespace="missing")
    assert str(exc.value) == "POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:missing"


def test_migration_lock_key_is_stable_and_namespace_scoped():
    assert _migration_lock_key(namespace="workflow") == _migration_lock_key(namespace="workflow")
    assert _migration_lock_key(namespace="workflow") != _migration_lock_key(namespace="custom")
