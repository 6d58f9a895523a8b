from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from src.api.observability import bind_log_context
from src.api.routers.workflow_config import (
    authority_timezones,
    build_registry,
    build_repository,
    role_cache_ttl_seconds,
)
from src.api.routers.workflow_http_errors import (
    raise_backend_unavailable,
    raise_workflow_http_exception,
)
from src.core.workflow import (
    ActionResponse,
    ApplicationCreateRequest,
    ApplicationRecord,
    QueryRecord,
    TaskRecord,
    WorkflowError,
    WorkflowService,
)
from src.core.workflow.models import (
    ApplicationPayloadUpdateRequest,
    ApplicationSubmitRequest,
    AuditFeedResponse,
    NotificationRecord,
    QueryResponseRequest,
)

router = APIRouter(tags=["Applications"])

_SERVICE: Optional[WorkflowService] = None


def get_workflow_service() -> WorkflowService:
    global _SERVICE
    if _SERVICE is None:
        try:
            _SERVICE = WorkflowService(
                repository=build_repository(),
                registry=build_registry(),
                role_cache_ttl_seconds=role_cache_ttl_seconds(),
                authority_timezones=authority_timezones(),
            )
        except RuntimeError as exc:
            raise_backend_unavailable(exc)
    return _SERVICE


def reset_workflow_service_for_tests() -> None:
    global _SERVICE
    _SERVICE = None


@router.post(
    "/applications",
    response_model=ApplicationRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Create Draft Application",
    description="Creates an application in the initial state of its service workflow.",
)
def create_application(
    payload: ApplicationCreateRequest,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> ApplicationRecord:
    try:
        return service.create_application(payload=payload)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.get(
    "/applications/{application_id}",
    response_model=ApplicationRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Application",
)
def get_application(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> ApplicationRecord:
    try:
        return service.get_application(application_id=application_id)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.put(
    "/applications/{application_id}/payload",
    response_model=ApplicationRecord,
    status_code=status.HTTP_200_OK,
    summary="Update Draft Payload",
    description="Deep-merges a payload fragment into a draft. Only the applicant may edit.",
)
def update_application_payload(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    payload: ApplicationPayloadUpdateRequest,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> ApplicationRecord:
    try:
        return service.update_draft_payload(
            application_id=application_id,
            actor_id=payload.actor_id,
            payload=payload.payload,
        )
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.post(
    "/applications/{application_id}/submit",
    response_model=ApplicationRecord,
    status_code=status.HTTP_200_OK,
    summary="Submit Application",
    description=(
        "Issues the ARN, applies the SUBMIT transition, and routes the first task to the "
        "first officer role."
    ),
)
def submit_application(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    payload: ApplicationSubmitRequest,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> ApplicationRecord:
    bind_log_context(application_id=application_id, actor_id=payload.actor_id)
    try:
        service.submit_application(application_id=application_id, actor_id=payload.actor_id)
        return service.get_application(application_id=application_id)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.get(
    "/applications/{application_id}/tasks",
    response_model=List[TaskRecord],
    status_code=status.HTTP_200_OK,
    summary="List Application Tasks",
)
def list_application_tasks(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> List[TaskRecord]:
    try:
        return service.list_tasks(application_id=application_id)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.get(
    "/applications/{application_id}/queries",
    response_model=List[QueryRecord],
    status_code=status.HTTP_200_OK,
    summary="List Application Queries",
)
def list_application_queries(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> List[QueryRecord]:
    try:
        return service.list_queries(application_id=application_id)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.post(
    "/applications/{application_id}/queries/{query_id}/response",
    response_model=ActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Respond To Query",
    description=(
        "Records the applicant response, applies edits to unlocked fields, and routes the "
        "application back to the officer who raised the query."
    ),
)
def respond_to_query(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    query_id: Annotated[
        str,
        Path(description="Open query identifier.", examples=["qry_001"]),
    ],
    payload: QueryResponseRequest,
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> ActionResponse:
    bind_log_context(application_id=application_id, query_id=query_id, actor_id=payload.actor_id)
    try:
        outcomes = service.respond_to_query(
            application_id=application_id,
            query_id=query_id,
            response_message=payload.response_message,
            updated_payload=payload.updated_payload,
            actor_id=payload.actor_id,
        )
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)
    final = outcomes[-1]
    return ActionResponse(success=True, new_state_id=final.new_state, task_id=final.task_id)


@router.get(
    "/applications/{application_id}/audit-events",
    response_model=AuditFeedResponse,
    status_code=status.HTTP_200_OK,
    summary="Application Audit Feed",
    description="Returns the application's audit events in chain order, without hash fields.",
)
def get_application_audit_feed(
    application_id: Annotated[
        str,
        Path(description="Application identifier.", examples=["app_001"]),
    ],
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> AuditFeedResponse:
    try:
        return service.audit_feed(application_id=application_id)
    except WorkflowError as exc:
        raise_workflow_http_exception(exc)


@router.get(
    "/notifications",
    response_model=List[NotificationRecord],
    status_code=status.HTTP_200_OK,
    summary="List User Notifications",
)
def list_notifications(
    user_id: Annotated[
        str,
        Query(description="Notification recipient.", examples=["citizen_001"]),
    ],
    service: Annotated[WorkflowService, Depends(get_workflow_service)] = None,
) -> List[NotificationRecord]:
    return service.list_notifications(user_id=user_id)
