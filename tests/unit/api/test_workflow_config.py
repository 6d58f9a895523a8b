import shutil

import pytest
from fastapi.testclient import TestClient

import src.api.routers.workflow_config as config_module
from src.api.main import app
from src.api.routers.workflow_config import (
    DEFAULT_ROLE_CACHE_TTL_SECONDS,
    authority_timezones,
    build_registry,
    build_repository,
    role_cache_ttl_seconds,
    workflow_store_backend_name,
)
from src.api.routers.workflow_http_errors import (
    raise_workflow_http_exception,
    workflow_error_status,
)
from src.core.workflow import (
    InvalidTransitionError,
    SlaBatchFailedError,
    TaskSupersededError,
    WorkflowDefinitionError,
)
from src.core.workflow.definitions import DEFAULT_SERVICE_PACKS_DIR
from src.infrastructure.workflow import InMemoryWorkflowRepository


def test_in_memory_backend_is_deprecated(monkeypatch):
    monkeypatch.setenv("WORKFLOW_STORE_BACKEND", "in_memory")

    with pytest.warns(DeprecationWarning):
        assert workflow_store_backend_name() == "IN_MEMORY"
    with pytest.warns(DeprecationWarning):
        assert isinstance(build_repository(), InMemoryWorkflowRepository)


def test_postgres_backend_requires_dsn(monkeypatch):
    monkeypatch.setenv("WORKFLOW_POSTGRES_DSN", " ")

    with pytest.raises(RuntimeError) as exc:
        build_repository()
    assert str(exc.value) == "WORKFLOW_POSTGRES_DSN_REQUIRED"


def test_postgres_connection_errors_are_normalized(monkeypatch):
    def _refuse(**_kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(config_module, "PostgresWorkflowRepository", _refuse)

    with pytest.raises(RuntimeError) as exc:
        build_repository()
    assert str(exc.value) == "WORKFLOW_POSTGRES_CONNECTION_FAILED"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, DEFAULT_ROLE_CACHE_TTL_SECONDS),
        ("15", 15.0),
        ("0", 0.0),
        ("-1", DEFAULT_ROLE_CACHE_TTL_SECONDS),
        ("soon", DEFAULT_ROLE_CACHE_TTL_SECONDS),
    ],
)
def test_role_cache_ttl_parsing(monkeypatch, value, expected):
    if value is None:
        monkeypatch.delenv("WORKFLOW_ROLE_CACHE_TTL_SECONDS", raising=False)
    else:
        monkeypatch.setenv("WORKFLOW_ROLE_CACHE_TTL_SECONDS", value)

    assert role_cache_ttl_seconds() == expected


def test_authority_timezones_parsing(monkeypatch):
    assert authority_timezones() == {}

    monkeypatch.setenv("WORKFLOW_AUTHORITY_TIMEZONES_JSON", '{"PUDA": "Asia/Kolkata"}')
    assert authority_timezones() == {"PUDA": "Asia/Kolkata"}

    for invalid in ("{not json", '["Asia/Kolkata"]'):
        monkeypatch.setenv("WORKFLOW_AUTHORITY_TIMEZONES_JSON", invalid)
        with pytest.raises(RuntimeError) as exc:
            authority_timezones()
        assert str(exc.value) == "WORKFLOW_AUTHORITY_TIMEZONES_INVALID"


def test_registry_loads_packs_from_configured_directory(monkeypatch, tmp_path):
    shutil.copy(DEFAULT_SERVICE_PACKS_DIR / "water_supply_connection.json", tmp_path)
    monkeypatch.setenv("WORKFLOW_SERVICE_PACKS_DIR", str(tmp_path))

    assert [workflow.service_key for workflow in build_registry().list()] == [
        "water_supply_connection"
    ]

    (tmp_path / "broken.json").write_text("{", encoding="utf-8")
    with pytest.raises(WorkflowDefinitionError) as exc:
        build_registry()
    assert str(exc.value).startswith("WORKFLOW_DEFINITION_INVALID: broken.json")


@pytest.mark.parametrize(
    ("env", "expected_detail"),
    [
        ({"WORKFLOW_POSTGRES_DSN": ""}, "WORKFLOW_POSTGRES_DSN_REQUIRED"),
        ({"WORKFLOW_AUTHORITY_TIMEZONES_JSON": "[1]"}, "WORKFLOW_AUTHORITY_TIMEZONES_INVALID"),
    ],
)
def test_backend_init_failures_return_503(monkeypatch, env, expected_detail):
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    with TestClient(app) as client:
        response = client.get("/workflows")

    assert response.status_code == 503
    assert response.json()["detail"] == expected_detail


def test_unknown_backend_init_failure_is_reported_as_connection_failure(monkeypatch):
    def _refuse(**_kwargs):
        raise RuntimeError("pool exhausted")

    monkeypatch.setattr(config_module, "PostgresWorkflowRepository", _refuse)

    with TestClient(app) as client:
        response = client.get("/workflows")

    assert response.status_code == 503
    assert response.json()["detail"] == "WORKFLOW_POSTGRES_CONNECTION_FAILED"


def test_workflow_error_status_mapping():
    assert workflow_error_status(TaskSupersededError("TASK_SUPERSEDED: task_1")) == 409
    assert workflow_error_status(InvalidTransitionError("INVALID_TRANSITION: x")) == 422
    assert workflow_error_status(WorkflowDefinitionError("WORKFLOW_NOT_FOUND: x")) == 404
    assert workflow_error_status(WorkflowDefinitionError("WORKFLOW_INVALID: x")) is None

    with pytest.raises(SlaBatchFailedError):
        raise_workflow_http_exception(SlaBatchFailedError("SLA_BATCH_FAILED: store down"))
