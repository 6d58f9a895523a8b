import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from tests.factories import CITIZEN_ID, officer_id_for


@pytest.fixture
def client(api_workflow_service):
    with TestClient(app) as test_client:
        yield test_client


def _submitted(client: TestClient) -> str:
    created = client.post(
        "/applications",
        json={
            "service_key": "no_due_certificate",
            "authority_id": "PUDA",
            "applicant_id": CITIZEN_ID,
            "payload": {"applicant": {"full_name": "A. Singh"}, "property": {"upn": "PUDA-1"}},
        },
    )
    application_id = created.json()["application_id"]
    client.post(f"/applications/{application_id}/submit", json={"actor_id": CITIZEN_ID})
    return application_id


def _open_task_id(client: TestClient, application_id: str) -> str:
    tasks = client.get(f"/applications/{application_id}/tasks").json()
    return [task for task in tasks if task["status"] in {"PENDING", "IN_PROGRESS"}][0]["task_id"]


def _action(client: TestClient, task_id: str, action: str, role_id: str, **extra):
    body = {
        "action": action,
        "actor_id": extra.pop("actor_id", officer_id_for(role_id)),
        "actor_role": role_id,
    }
    body.update(extra)
    return client.post(f"/tasks/{task_id}/actions", json=body)


def test_inbox_lists_pending_tasks_for_the_officer(client):
    first = _submitted(client)
    second = _submitted(client)

    clerk_inbox = client.get("/tasks/inbox", params={"officer_id": officer_id_for("CLERK")})
    paged = client.get(
        "/tasks/inbox",
        params={"officer_id": officer_id_for("CLERK"), "limit": 1, "offset": 1},
    )
    other_authority = client.get(
        "/tasks/inbox",
        params={"officer_id": officer_id_for("CLERK"), "authority_id": "GMADA"},
    )
    account_officer_inbox = client.get(
        "/tasks/inbox", params={"officer_id": officer_id_for("ACCOUNT_OFFICER")}
    )

    assert clerk_inbox.status_code == 200
    assert [task["application_id"] for task in clerk_inbox.json()] == [first, second]
    assert [task["application_id"] for task in paged.json()] == [second]
    assert other_authority.json() == []
    assert account_officer_inbox.json() == []


@pytest.mark.parametrize(
    "params",
    [
        {"limit": 0},
        {"limit": 201},
        {"offset": -1},
        {"status": "COMPLETED"},
    ],
)
def test_inbox_rejects_invalid_query_parameters(client, params):
    response = client.get(
        "/tasks/inbox", params={"officer_id": officer_id_for("CLERK"), **params}
    )

    assert response.status_code == 422


def test_assign_moves_task_to_in_progress_inbox(client):
    application_id = _submitted(client)
    task_id = _open_task_id(client, application_id)

    assigned = client.post(f"/tasks/{task_id}/assign", json={"officer_id": officer_id_for("CLERK")})
    pending = client.get("/tasks/inbox", params={"officer_id": officer_id_for("CLERK")})
    in_progress = client.get(
        "/tasks/inbox",
        params={"officer_id": officer_id_for("CLERK"), "status": "IN_PROGRESS"},
    )
    wrong_role = client.post(
        f"/tasks/{task_id}/assign", json={"officer_id": officer_id_for("ACCOUNT_OFFICER")}
    )
    missing = client.post("/tasks/task_missing/assign", json={"officer_id": "officer_clerk"})

    assert assigned.status_code == 200
    assert assigned.json()["status"] == "IN_PROGRESS"
    assert assigned.json()["assignee_id"] == officer_id_for("CLERK")
    assert pending.json() == []
    assert [task["task_id"] for task in in_progress.json()] == [task_id]
    assert wrong_role.status_code == 403
    assert wrong_role.json()["detail"].startswith("FORBIDDEN")
    assert missing.status_code == 404


def test_actions_drive_the_application_to_approval(client, api_workflow_service):
    application_id = _submitted(client)
    workflow = api_workflow_service.get_workflow(service_key="no_due_certificate")
    chain = workflow.definition.officer_chain

    responses = []
    for role_id in chain[:-1]:
        responses.append(_action(client, _open_task_id(client, application_id), "FORWARD", role_id))
    responses.append(_action(client, _open_task_id(client, application_id), "APPROVE", chain[-1]))

    assert all(response.status_code == 200 for response in responses)
    assert all(response.json()["success"] is True for response in responses)
    assert responses[-1].json()["new_state_id"] == "APPROVED"
    assert responses[-1].json()["task_id"] is None
    application = client.get(f"/applications/{application_id}").json()
    assert application["disposal_type"] == "APPROVED"
    notifications = client.get("/notifications", params={"user_id": CITIZEN_ID}).json()
    assert notifications[-1]["event_type"] == "APPLICATION_APPROVED"


def test_action_errors_return_structured_bodies(client):
    application_id = _submitted(client)
    task_id = _open_task_id(client, application_id)

    forbidden = _action(client, task_id, "FORWARD", "CLERK", actor_id="officer_unknown")
    invalid = _action(client, task_id, "APPROVE", "CLERK")
    missing = _action(client, "task_missing", "FORWARD", "CLERK")
    forwarded = _action(client, task_id, "FORWARD", "CLERK")
    superseded = _action(client, task_id, "FORWARD", "CLERK")

    assert forbidden.status_code == 403
    assert forbidden.json()["success"] is False
    assert forbidden.json()["error"] == "FORBIDDEN"
    assert invalid.status_code == 422
    assert invalid.json()["error"] == "INVALID_TRANSITION"
    assert missing.status_code == 404
    assert missing.json() == {
        "success": False,
        "error": "TASK_NOT_FOUND",
        "detail": "TASK_NOT_FOUND: task_missing",
    }
    assert forwarded.status_code == 200
    assert superseded.status_code == 409
    assert superseded.json()["error"] == "TASK_SUPERSEDED"


def test_query_action_without_message_is_unprocessable(client):
    application_id = _submitted(client)

    response = _action(client, _open_task_id(client, application_id), "QUERY", "CLERK")

    assert response.status_code == 422
    assert response.json()["error"] == "VALIDATION_FAILED"


def test_second_query_on_a_parked_application_conflicts(client):
    application_id = _submitted(client)
    task_id = _open_task_id(client, application_id)

    first = _action(client, task_id, "QUERY", "CLERK", query_message="Upload the NOC.")
    second = _action(client, task_id, "QUERY", "CLERK", query_message="Upload the site plan.")

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error"] == "QUERY_ALREADY_OPEN"
