from typing import NoReturn, Optional

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse

from src.core.workflow import (
    ApplicationNotFoundError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    QueryAlreadyOpenError,
    QueryNotFoundError,
    TaskNotFoundError,
    TaskSupersededError,
    ValidationFailedError,
    WorkflowDefinitionError,
    WorkflowError,
)

HTTP_422_UNPROCESSABLE = getattr(
    status,
    "HTTP_422_UNPROCESSABLE_CONTENT",
    status.HTTP_422_UNPROCESSABLE_ENTITY,
)


def workflow_error_status(exc: WorkflowError) -> Optional[int]:
    if isinstance(exc, (ApplicationNotFoundError, TaskNotFoundError, QueryNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, WorkflowDefinitionError) and exc.code == "WORKFLOW_NOT_FOUND":
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ForbiddenError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, (InvalidStateError, TaskSupersededError, QueryAlreadyOpenError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (InvalidTransitionError, ValidationFailedError)):
        return HTTP_422_UNPROCESSABLE
    return None


def raise_workflow_http_exception(exc: WorkflowError) -> NoReturn:
    status_code = workflow_error_status(exc)
    if status_code is None:
        raise exc
    raise HTTPException(status_code=status_code, detail=str(exc)) from exc


def workflow_error_response(exc: WorkflowError) -> JSONResponse:
    status_code = workflow_error_status(exc)
    if status_code is None:
        raise exc
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": exc.code, "detail": str(exc)},
    )


_KNOWN_BACKEND_INIT_ERRORS = {
    "WORKFLOW_POSTGRES_DSN_REQUIRED",
    "WORKFLOW_POSTGRES_DRIVER_MISSING",
    "WORKFLOW_AUTHORITY_TIMEZONES_INVALID",
}


def raise_backend_unavailable(exc: RuntimeError) -> NoReturn:
    detail = str(exc)
    if detail not in _KNOWN_BACKEND_INIT_ERRORS:
        detail = "WORKFLOW_POSTGRES_CONNECTION_FAILED"
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail) from exc
