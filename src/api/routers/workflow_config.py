import json
import os
import warnings
from pathlib import Path
from typing import Optional, cast

from src.core.workflow.definitions import WorkflowRegistry
from src.core.workflow.repository import WorkflowRepository
from src.infrastructure.workflow import InMemoryWorkflowRepository, PostgresWorkflowRepository

DEFAULT_ROLE_CACHE_TTL_SECONDS = 60.0


def workflow_store_backend_name() -> str:
    backend = os.getenv("WORKFLOW_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        ("WORKFLOW_STORE_BACKEND legacy runtime backend (IN_MEMORY) is deprecated; use POSTGRES."),
        DeprecationWarning,
        stacklevel=2,
    )
    return "IN_MEMORY"


def workflow_postgres_dsn() -> str:
    return os.getenv("WORKFLOW_POSTGRES_DSN", "").strip()


def workflow_service_packs_dir() -> Optional[Path]:
    value = os.getenv("WORKFLOW_SERVICE_PACKS_DIR", "").strip()
    return Path(value) if value else None


def role_cache_ttl_seconds() -> float:
    value = os.getenv("WORKFLOW_ROLE_CACHE_TTL_SECONDS")
    if value is None:
        return DEFAULT_ROLE_CACHE_TTL_SECONDS
    try:
        parsed = float(value)
    except ValueError:
        return DEFAULT_ROLE_CACHE_TTL_SECONDS
    return parsed if parsed >= 0 else DEFAULT_ROLE_CACHE_TTL_SECONDS


def authority_timezones() -> dict[str, str]:
    value = os.getenv("WORKFLOW_AUTHORITY_TIMEZONES_JSON", "").strip()
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise RuntimeError("WORKFLOW_AUTHORITY_TIMEZONES_INVALID") from exc
    if not isinstance(parsed, dict):
        raise RuntimeError("WORKFLOW_AUTHORITY_TIMEZONES_INVALID")
    return {str(key): str(zone) for key, zone in parsed.items()}


def internal_job_secret() -> str:
    return os.getenv("INTERNAL_JOB_SECRET", "").strip()


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repository() -> WorkflowRepository:
    backend = workflow_store_backend_name()
    if backend == "POSTGRES":
        dsn = workflow_postgres_dsn()
        if not dsn:
            raise RuntimeError("WORKFLOW_POSTGRES_DSN_REQUIRED")
        try:
            return cast(WorkflowRepository, PostgresWorkflowRepository(dsn=dsn))
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("WORKFLOW_POSTGRES_CONNECTION_FAILED") from exc
    return cast(WorkflowRepository, InMemoryWorkflowRepository())


def build_registry() -> WorkflowRegistry:
    return WorkflowRegistry.from_directory(workflow_service_packs_dir())
