import hmac
import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from src.api.routers.applications import get_workflow_service
from src.api.routers.workflow_config import internal_job_secret
from src.core.workflow import BreachSweepResult, ChainVerificationResult, WorkflowService
from src.core.workflow.audit_chain import DEFAULT_VERIFY_BATCH_SIZE
from src.core.workflow.models import BacklogMetrics

router = APIRouter(tags=["Internal Jobs"])
logger = logging.getLogger(__name__)


def require_internal_secret(
    secret: Annotated[
        Optional[str],
        Header(
            alias="X-Internal-Secret",
            description="Shared secret for scheduler-invoked jobs.",
            examples=["local-job-secret"],
        ),
    ] = None,
) -> None:
    expected = internal_job_secret()
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="INTERNAL_JOBS_DISABLED",
        )
    if secret is None or not hmac.compare_digest(secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="INTERNAL_JOB_SECRET_INVALID",
        )


@router.post(
    "/internal/jobs/escalate-sla",
    response_model=BreachSweepResult,
    status_code=status.HTTP_200_OK,
    summary="Run SLA Breach Sweep",
    description=(
        "Records one SLA_BREACHED audit event and notification per overdue open task. "
        "Re-running the sweep does not duplicate breach events."
    ),
    dependencies=[Depends(require_internal_secret)],
)
def escalate_sla(
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> BreachSweepResult:
    result = service.detect_sla_breaches()
    logger.info(
        "sla.sweep.completed",
        extra={"extra_fields": result.model_dump()},
    )
    return result


@router.post(
    "/internal/jobs/verify-audit-chain",
    response_model=ChainVerificationResult,
    status_code=status.HTTP_200_OK,
    summary="Verify Audit Hash Chain",
    description="Recomputes every event hash in chain order and reports the first mismatch.",
    dependencies=[Depends(require_internal_secret)],
)
def verify_audit_chain(
    batch_size: Annotated[
        int,
        Query(ge=1, le=10000, description="Events read per batch.", examples=[500]),
    ] = DEFAULT_VERIFY_BATCH_SIZE,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> ChainVerificationResult:
    return service.verify_audit_chain(batch_size=batch_size)


@router.get(
    "/internal/metrics/backlog",
    response_model=BacklogMetrics,
    status_code=status.HTTP_200_OK,
    summary="Task Backlog Metrics",
    dependencies=[Depends(require_internal_secret)],
)
def get_backlog_metrics(
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> BacklogMetrics:
    return service.backlog_metrics()
