import os
from contextlib import closing

import pytest

from src.infrastructure.workflow.postgres import PostgresWorkflowRepository
from tests.factories import CITIZEN_ID, build_service, create_draft, open_task_id, take_action
from tests.unit.workflow.storage.test_workflow_repository_postgres import (
    _build_repository as _build_fake_repository,
)

_DSN = os.getenv("WORKFLOW_POSTGRES_INTEGRATION_DSN", "").strip()


@pytest.fixture
def repository(monkeypatch: pytest.MonkeyPatch) -> PostgresWorkflowRepository:
    if _DSN:
        try:
            repo = PostgresWorkflowRepository(dsn=_DSN)
            _reset_tables(repo)
            return repo
        except Exception:
            pass
    repo, _ = _build_fake_repository(monkeypatch)
    return repo


def test_live_postgres_workflow_repository_parity_contract(
    repository: PostgresWorkflowRepository,
) -> None:
    service = build_service(repository=repository)
    application = create_draft(service)
    application_id = application.application_id

    service.submit_application(application_id=application_id, actor_id=CITIZEN_ID)
    submitted = service.get_application(application_id=application_id)
    assert submitted.arn == "PUDA/2026/000001"
    assert service.get_application_by_arn(arn=submitted.arn).application_id == application_id

    task_id = open_task_id(service, application_id)
    assigned = service.assign_task(task_id=task_id, officer_id="officer_clerk")
    assert assigned.status == "IN_PROGRESS"

    for role_id in ("CLERK", "SR_ASSISTANT_ACCOUNTS"):
        take_action(service, application_id, action="FORWARD", role_id=role_id)
    take_action(service, application_id, action="APPROVE", role_id="ACCOUNT_OFFICER")
    service.close_application(application_id=application_id)

    closed = service.get_application(application_id=application_id)
    assert closed.current_state == "CLOSED"
    assert closed.disposal_type == "APPROVED"
    tasks = service.list_tasks(application_id=application_id)
    assert [task.status for task in tasks] == ["COMPLETED", "COMPLETED", "COMPLETED"]
    assert service.dispatcher.get_open_task(application_id=application_id) is None
    assert [item.event_type for item in service.list_notifications(user_id=CITIZEN_ID)] == [
        "APPLICATION_SUBMITTED",
        "APPLICATION_APPROVED",
    ]
    verification = service.verify_audit_chain(batch_size=2)
    assert verification.ok is True
    assert verification.checked == len(service.audit_feed(application_id=application_id).events)


def _reset_tables(repository: PostgresWorkflowRepository) -> None:
    with closing(repository._connect()) as connection:  # noqa: SLF001
        connection.execute(
            "TRUNCATE TABLE workflow_notifications, workflow_audit_events, workflow_queries, "
            "workflow_tasks, workflow_applications, workflow_arn_sequences, "
            "workflow_holidays, workflow_officer_postings CASCADE"
        )
        connection.commit()
