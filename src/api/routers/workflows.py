from typing import Annotated, List

from fastapi import APIRouter, Depends, Path, status

from src.api.routers.applications import get_workflow_service
from src.api.routers.workflow_http_errors import raise_workflow_http_exception
from src.core.workflow import WorkflowError, WorkflowService
from src.core.workflow.models import WorkflowDefinition, WorkflowSummary

router = APIRouter(tags=["Workflow Definitions"])


@router.get(
    "/workflows",
    response_model=List[WorkflowSummary],
    status_code=status.HTTP_200_OK,
    summary="List Workflow Definitions",
)
def list_workflows(
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> List[WorkflowSummary]:
    return [workflow.summary() for workflow in service.list_workflows()]


@router.get(
    "/workflows/{service_key}",
    response_model=WorkflowDefinition,
    status_code=status.HTTP_200_OK,
    summary="Get Workflow Definition",
    description="Returns the validated definition for one service, as loaded at startup.",
)
def get_workflow(
    service_key: Annotated[
        str,
        Path(description="Workflow service key.", examples=["no_due_certificate"]),
    ],
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> WorkflowDefinition:
    try:
        return service.get_workflow(service_key=service_key).definition
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)
