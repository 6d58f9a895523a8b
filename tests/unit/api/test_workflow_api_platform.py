import json
import logging

from fastapi.testclient import TestClient

from src.api.main import app
from src.api.observability import (
    JsonFormatter,
    bind_log_context,
    correlation_id_var,
    log_context_var,
)


def test_workflow_definitions_are_listed_and_fetched(api_workflow_service):
    with TestClient(app) as client:
        listed = client.get("/workflows")
        fetched = client.get("/workflows/no_due_certificate")
        missing = client.get("/workflows/building_plan")

    assert listed.status_code == 200
    assert {item["service_key"] for item in listed.json()} == {
        "no_due_certificate",
        "water_supply_connection",
    }
    assert fetched.status_code == 200
    assert fetched.json()["officer_chain"] == ["CLERK", "SR_ASSISTANT_ACCOUNTS", "ACCOUNT_OFFICER"]
    assert missing.status_code == 404
    assert missing.json()["detail"] == "WORKFLOW_NOT_FOUND: building_plan"


def test_health_and_metrics_endpoints():
    with TestClient(app) as client:
        health = client.get("/health")
        metrics = client.get("/metrics")

    assert health.status_code == 200
    assert health.json() == {"status": "ok"}
    assert metrics.status_code == 200
    assert "http_request" in metrics.text


def test_correlation_headers_are_generated_and_propagated():
    trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
    with TestClient(app) as client:
        generated = client.get("/health")
        propagated = client.get(
            "/health",
            headers={
                "X-Correlation-Id": "corr_from_gateway",
                "X-Request-Id": "req_from_gateway",
                "traceparent": f"00-{trace_id}-00f067aa0ba902b7-01",
            },
        )

    assert generated.headers["X-Correlation-Id"].startswith("corr_")
    assert generated.headers["X-Request-Id"].startswith("req_")
    assert len(generated.headers["X-Trace-Id"]) == 32
    assert propagated.headers["X-Correlation-Id"] == "corr_from_gateway"
    assert propagated.headers["X-Request-Id"] == "req_from_gateway"
    assert propagated.headers["X-Trace-Id"] == trace_id
    assert propagated.headers["traceparent"] == f"00-{trace_id}-0000000000000001-01"


def test_malformed_traceparent_gets_a_fresh_trace_id():
    with TestClient(app) as client:
        response = client.get("/health", headers={"traceparent": "00-short-01"})

    assert response.headers["X-Trace-Id"] != "short"
    assert len(response.headers["X-Trace-Id"]) == 32


def test_unhandled_errors_become_problem_details(api_workflow_service, monkeypatch):
    def _boom():
        raise KeyError("registry offline")

    monkeypatch.setattr(api_workflow_service, "list_workflows", _boom)

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/workflows")

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/problem+json")
    assert response.json()["title"] == "Internal Server Error"
    assert response.json()["instance"] == "/workflows"


def test_json_formatter_includes_context_and_extra_fields(monkeypatch):
    monkeypatch.setenv("SERVICE_NAME", "workflow-test")
    token = correlation_id_var.set("corr_fixed")
    try:
        record = logging.LogRecord(
            name="workflow.test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="sla.sweep.completed",
            args=(),
            exc_info=None,
        )
        record.extra_fields = {"breached_tasks": 2}
        payload = json.loads(JsonFormatter().format(record))
    finally:
        correlation_id_var.reset(token)

    assert payload["service"] == "workflow-test"
    assert payload["level"] == "INFO"
    assert payload["message"] == "sla.sweep.completed"
    assert payload["correlation_id"] == "corr_fixed"
    assert payload["breached_tasks"] == 2
    assert "request_id" not in payload


def test_bound_workflow_context_is_added_to_log_records():
    token = log_context_var.set(None)
    try:
        bind_log_context(task_id="task_001", actor_id="officer_clerk", remarks=None)
        bind_log_context(application_id="app_001")
        record = logging.LogRecord(
            name="src.core.workflow.executor",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="workflow.transition.rejected",
            args=(),
            exc_info=None,
        )
        payload = json.loads(JsonFormatter().format(record))
    finally:
        log_context_var.reset(token)

    assert payload["task_id"] == "task_001"
    assert payload["application_id"] == "app_001"
    assert payload["actor_id"] == "officer_clerk"
    assert "remarks" not in payload
    assert log_context_var.get() is None
