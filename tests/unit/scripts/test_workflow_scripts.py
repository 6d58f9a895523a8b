import json

import pytest

import scripts.postgres_migrate as migrate_script
import src.api.routers.workflow_config as config_module
import src.infrastructure.postgres_migrations as migrations_module
from scripts.detect_sla_breaches import main as sweep_main
from scripts.detect_sla_breaches import run_sweep
from scripts.verify_audit_chain import main as verify_main
from scripts.verify_audit_chain import run_verification
from src.core.workflow import AuditChainMismatchError, SlaBatchFailedError
from src.infrastructure.workflow import InMemoryWorkflowRepository
from src.infrastructure.workflow.in_memory import InMemoryWorkflowUnitOfWork
from tests.factories import CITIZEN_ID, build_service, create_draft


def _repository_with_submission() -> InMemoryWorkflowRepository:
    repository = InMemoryWorkflowRepository()
    service = build_service(repository=repository)
    application = create_draft(service)
    service.submit_application(application_id=application.application_id, actor_id=CITIZEN_ID)
    return repository


def test_run_verification_summarizes_an_intact_chain():
    summary = run_verification(repository=_repository_with_submission(), batch_size=2)

    assert summary == {"ok": True, "checked": 3, "mismatch": None}


def test_verification_script_fails_on_tampered_chain(monkeypatch, capsys):
    repository = _repository_with_submission()
    repository._tables.audit_events[1].payload = {"to_state": "APPROVED"}

    with pytest.raises(AuditChainMismatchError) as exc:
        run_verification(repository=repository)
    assert str(exc.value).startswith("AUDIT_CHAIN_MISMATCH: EVENT_HASH_MISMATCH at position 2")

    monkeypatch.setattr(config_module, "build_repository", lambda: repository)
    assert verify_main([]) == 2
    assert "AUDIT_CHAIN_MISMATCH" in capsys.readouterr().err


def test_verification_script_prints_summary(monkeypatch, capsys):
    monkeypatch.setattr(config_module, "build_repository", _repository_with_submission)

    assert verify_main(["--batch-size", "1"]) == 0
    assert json.loads(capsys.readouterr().out)["checked"] == 3


def test_sla_sweep_records_overdue_tasks():
    # The seeded submission is due in March 2026; the sweep runs on the wall clock.
    repository = _repository_with_submission()

    first = run_sweep(repository=repository)
    second = run_sweep(repository=repository)

    assert first["breached_tasks"] == 1
    assert first["breach_events_created"] == 1
    assert second["breach_events_created"] == 0


def test_sla_sweep_script_reports_batch_failure(monkeypatch, capsys):
    repository = _repository_with_submission()

    def _insert_notification(self, notification):
        raise RuntimeError("notification store unavailable")

    monkeypatch.setattr(InMemoryWorkflowUnitOfWork, "insert_notification", _insert_notification)

    with pytest.raises(SlaBatchFailedError) as exc:
        run_sweep(repository=repository)
    assert str(exc.value) == "SLA_BATCH_FAILED: notification store unavailable"

    monkeypatch.setattr(config_module, "build_repository", lambda: repository)
    assert sweep_main([]) == 1
    assert "SLA_BATCH_FAILED" in capsys.readouterr().err


def test_migrate_script_requires_dsn(monkeypatch):
    monkeypatch.delenv("WORKFLOW_POSTGRES_DSN", raising=False)

    try:
        migrate_script.main([])
    except RuntimeError as exc:
        assert str(exc) == "POSTGRES_MIGRATION_DSN_REQUIRED:workflow"
    else:
        raise AssertionError("Expected RuntimeError")


def test_migrate_script_requires_driver(monkeypatch):
    monkeypatch.setattr(migrate_script, "find_spec", lambda _name: None)

    try:
        migrate_script.main(["--dsn", "postgresql://u:p@localhost:5432/workflow"])
    except RuntimeError as exc:
        assert str(exc) == "POSTGRES_MIGRATION_DRIVER_MISSING"
    else:
        raise AssertionError("Expected RuntimeError")


class _FakeConnection:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


@pytest.mark.parametrize(("pending", "exit_code"), [(["0001"], 1), ([], 0)])
def test_migrate_script_check_mode(monkeypatch, capsys, pending, exit_code):
    import psycopg

    monkeypatch.setattr(psycopg, "connect", lambda *_args, **_kwargs: _FakeConnection())
    monkeypatch.setattr(
        migrations_module,
        "list_pending_migrations",
        lambda *, connection, namespace: list(pending),
    )

    assert migrate_script.main(["--dsn", "postgresql://u:p@db:5432/workflow", "--check"]) == (
        exit_code
    )
    assert "namespace=workflow" in capsys.readouterr().out


def test_migrate_script_applies_pending_migrations(monkeypatch, capsys):
    import psycopg

    monkeypatch.setattr(psycopg, "connect", lambda *_args, **_kwargs: _FakeConnection())
    monkeypatch.setattr(
        migrations_module,
        "apply_postgres_migrations",
        lambda *, connection, namespace: ["0001"],
    )

    assert migrate_script.main(["--dsn", "postgresql://u:p@db:5432/workflow"]) == 0
    assert "Applied migrations for namespace=workflow: ['0001']" in capsys.readouterr().out
