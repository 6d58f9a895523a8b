"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.observability import setup_observability
from src.api.persistence_profile import validate_persistence_profile_guardrails
from src.api.routers.applications import router as applications_router
from src.api.routers.internal_jobs import router as internal_jobs_router
from src.api.routers.tasks import router as tasks_router
from src.api.routers.workflows import router as workflows_router


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    yield


app = FastAPI(
    title="Application Workflow API",
    version="0.1.0",
    description=(
        "Moves citizen applications through configurable multi-officer approval workflows.\n\n"
        "Every state change is recorded in a tamper-evident audit hash chain."
    ),
    openapi_tags=[
        {
            "name": "Applications",
            "description": "Draft, submission, query response, and audit feed endpoints.",
        },
        {
            "name": "Tasks",
            "description": "Officer inbox, task assignment, and task action endpoints.",
        },
        {
            "name": "Workflow Definitions",
            "description": "Read-only access to the loaded service workflows.",
        },
        {
            "name": "Internal Jobs",
            "description": "Scheduler-invoked SLA sweep and audit chain verification.",
        },
    ],
    lifespan=_app_lifespan,
)

setup_observability(app)
logger = logging.getLogger(__name__)

app.include_router(applications_router)
app.include_router(tasks_router)
app.include_router(workflows_router)
app.include_router(internal_jobs_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"], summary="Liveness Probe")
def health() -> dict:
    return {"status": "ok"}
