import pytest

from src.core.workflow.paths import (
    build_happy_path,
    build_query_loop_path,
    build_rejection_path,
)
from tests.factories import create_draft, walk_path

SERVICE_KEYS = ["no_due_certificate", "water_supply_connection"]


def _state_changes(service, application_id):
    return [
        event
        for event in service.audit_feed(application_id=application_id).events
        if event.event_type == "STATE_CHANGED"
    ]


@pytest.mark.parametrize("service_key", SERVICE_KEYS)
def test_happy_path_reaches_closed_with_approval(workflow_service, service_key):
    workflow = workflow_service.get_workflow(service_key=service_key)
    application = create_draft(workflow_service, service_key)
    steps = build_happy_path(workflow)

    walk_path(workflow_service, application.application_id, steps)

    final = workflow_service.get_application(application_id=application.application_id)
    assert final.current_state == "CLOSED"
    assert final.disposal_type == "APPROVED"
    assert final.disposed_at is not None
    # Submission records SUBMIT and the automatic ASSIGN.
    changes = _state_changes(workflow_service, application.application_id)
    assert len(changes) == len(steps) + 1
    assert [change.payload["to_state"] for change in changes][-2:] == ["APPROVED", "CLOSED"]
    tasks = workflow_service.list_tasks(application_id=application.application_id)
    assert [task.role_id for task in tasks] == workflow.definition.officer_chain
    assert {task.status for task in tasks} == {"COMPLETED"}
    assert workflow_service.verify_audit_chain().ok is True


@pytest.mark.parametrize("service_key", SERVICE_KEYS)
@pytest.mark.parametrize("level_index", [0, 1, 2])
def test_rejection_at_each_level_closes_as_rejected(workflow_service, service_key, level_index):
    workflow = workflow_service.get_workflow(service_key=service_key)
    application = create_draft(workflow_service, service_key)

    walk_path(
        workflow_service,
        application.application_id,
        build_rejection_path(workflow, level_index),
    )

    final = workflow_service.get_application(application_id=application.application_id)
    assert final.current_state == "CLOSED"
    assert final.disposal_type == "REJECTED"
    tasks = workflow_service.list_tasks(application_id=application.application_id)
    assert len(tasks) == level_index + 1
    assert tasks[-1].decision == "REJECT"


@pytest.mark.parametrize("service_key", SERVICE_KEYS)
@pytest.mark.parametrize("level_index", [0, 1, 2])
def test_query_loop_returns_to_the_raising_level(workflow_service, service_key, level_index):
    workflow = workflow_service.get_workflow(service_key=service_key)
    application = create_draft(workflow_service, service_key)

    walk_path(
        workflow_service,
        application.application_id,
        build_query_loop_path(workflow, level_index),
    )

    final = workflow_service.get_application(application_id=application.application_id)
    assert final.current_state == "CLOSED"
    assert final.disposal_type == "APPROVED"
    assert final.query_count == 1
    queries = workflow_service.list_queries(application_id=application.application_id)
    assert [query.status for query in queries] == ["RESPONDED"]
    assert queries[0].raised_by_role == workflow.officer_levels[level_index].role_id
    tasks = workflow_service.list_tasks(application_id=application.application_id)
    assert len(tasks) == len(workflow.officer_levels) + 1
    assert [task.decision for task in tasks].count("QUERY") == 1


def test_rejection_path_rejects_levels_outside_the_chain(workflow_service):
    workflow = workflow_service.get_workflow(service_key="no_due_certificate")

    with pytest.raises(IndexError):
        build_rejection_path(workflow, 3)
