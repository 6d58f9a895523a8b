from typing import Annotated, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, Path, Query, status
from fastapi.responses import JSONResponse

from src.api.observability import bind_log_context
from src.api.routers.applications import get_workflow_service
from src.api.routers.workflow_http_errors import (
    raise_workflow_http_exception,
    workflow_error_response,
)
from src.core.workflow import (
    ActionRequest,
    ActionResponse,
    TaskRecord,
    WorkflowError,
    WorkflowService,
)
from src.core.workflow.dispatcher import DEFAULT_INBOX_LIMIT
from src.core.workflow.models import TaskAssignRequest

router = APIRouter(tags=["Tasks"])


@router.get(
    "/tasks/inbox",
    response_model=List[TaskRecord],
    status_code=status.HTTP_200_OK,
    summary="Officer Inbox",
    description=(
        "Returns open tasks for the roles the officer holds at each posted authority, ordered by "
        "SLA due date. IN_PROGRESS listing is limited to tasks assigned to the officer."
    ),
)
def get_inbox(
    officer_id: Annotated[
        str,
        Query(description="Officer user id.", examples=["officer_clerk_1"]),
    ],
    authority_id: Annotated[
        Optional[str],
        Query(description="Restrict to one authority.", examples=["PUDA"]),
    ] = None,
    task_status: Annotated[
        Literal["PENDING", "IN_PROGRESS"],
        Query(alias="status", description="Task status filter.", examples=["PENDING"]),
    ] = "PENDING",
    limit: Annotated[
        int,
        Query(ge=1, le=200, description="Page size.", examples=[DEFAULT_INBOX_LIMIT]),
    ] = DEFAULT_INBOX_LIMIT,
    offset: Annotated[
        int,
        Query(ge=0, description="Page offset.", examples=[0]),
    ] = 0,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> List[TaskRecord]:
    return service.inbox(
        officer_id=officer_id,
        authority_id=authority_id,
        status=task_status,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/tasks/{task_id}/assign",
    response_model=TaskRecord,
    status_code=status.HTTP_200_OK,
    summary="Assign Task",
    description="Claims an open task for an officer holding the task role.",
)
def assign_task(
    task_id: Annotated[
        str,
        Path(description="Task identifier.", examples=["task_001"]),
    ],
    payload: TaskAssignRequest,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> TaskRecord:
    bind_log_context(task_id=task_id, actor_id=payload.officer_id)
    try:
        return service.assign_task(task_id=task_id, officer_id=payload.officer_id)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.post(
    "/tasks/{task_id}/actions",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Take Task Action",
    description=(
        "Applies a workflow action (FORWARD, APPROVE, REJECT, QUERY) on the open task. Domain "
        "failures return `{success: false, error, detail}`."
    ),
    responses={
        403: {"description": "Actor may not act on this task."},
        404: {"description": "Task or application not found."},
        409: {"description": "Task superseded or application in a non-actionable state."},
        422: {"description": "Action not legal from the current state."},
    },
)
def take_task_action(
    task_id: Annotated[
        str,
        Path(description="Task identifier.", examples=["task_001"]),
    ],
    payload: ActionRequest,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> Union[ActionResponse, JSONResponse]:
    bind_log_context(task_id=task_id, actor_id=payload.actor_id, actor_role=payload.actor_role)
    try:
        return service.take_action(task_id=task_id, request=payload)
    except WorkflowError as exc:
        return workflow_error_response(exc)
