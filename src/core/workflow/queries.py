import logging
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from src.core.workflow.definitions import WorkflowRegistry
from src.core.workflow.errors import (
    ApplicationNotFoundError,
    ForbiddenError,
    InvalidStateError,
    QueryNotFoundError,
    ValidationFailedError,
    WorkflowDefinitionError,
)
from src.core.workflow.executor import QUERY_ACTION, READ_ONLY_PAYLOAD_ROOT, StateMachineExecutor
from src.core.workflow.models import CITIZEN_ROLE, SYSTEM_ROLE, QueryRecord, TransitionOutcome
from src.core.workflow.repository import WorkflowRepository

logger = logging.getLogger(__name__)

QUERY_RESPOND_ACTION = "QUERY_RESPOND"


class QueryService:
    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        registry: WorkflowRegistry,
        executor: StateMachineExecutor,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._executor = executor
        self._clock = clock

    def open_query(
        self,
        *,
        application_id: str,
        message: str,
        actor_id: str,
        actor_role: str,
        task_id: Optional[str] = None,
        unlocked_fields: Optional[list[str]] = None,
        remarks: Optional[str] = None,
    ) -> TransitionOutcome:
        return self._executor.execute(
            application_id=application_id,
            action=QUERY_ACTION,
            actor_role=actor_role,
            actor_id=actor_id,
            remarks=remarks,
            task_id=task_id,
            query_message=message,
            unlocked_fields=unlocked_fields,
        )

    def respond_to_query(
        self,
        *,
        application_id: str,
        query_id: str,
        response_message: str,
        updated_payload: Optional[dict[str, Any]],
        actor_id: str,
    ) -> list[TransitionOutcome]:
        updated_payload = updated_payload or {}
        if not response_message or not response_message.strip():
            raise ValidationFailedError("VALIDATION_FAILED: response message is required")
        with self._repository.unit_of_work() as uow:
            application = uow.get_application(application_id=application_id, for_update=True)
            if application is None:
                raise ApplicationNotFoundError(f"APPLICATION_NOT_FOUND: {application_id}")
            workflow = self._registry.get(application.service_key)
            if workflow.state(application.current_state).type != "QUERY":
                raise InvalidStateError(
                    f"INVALID_STATE: application is {application.current_state}, "
                    "not awaiting a query response"
                )
            query = uow.get_open_query(application_id=application_id)
            if query is None or query.query_id != query_id:
                raise QueryNotFoundError(f"QUERY_NOT_FOUND: no open query {query_id}")
            if actor_id != application.applicant_id:
                raise ForbiddenError("FORBIDDEN: only the applicant can respond to a query")

            changed_fields = _flatten_paths(updated_payload)
            _check_unlocked(changed_fields, query)
            application.payload = deep_merge(application.payload, updated_payload)

            now = self._clock()
            query.status = "RESPONDED"
            query.response_message = response_message.strip()
            query.responded_at = now
            uow.update_query(query)

            respond = workflow.transition_for(
                state_id=application.current_state, action=QUERY_RESPOND_ACTION
            )
            return_route = workflow.transition_by_id(query.return_transition_id)
            if respond is None or return_route is None:
                raise WorkflowDefinitionError(
                    "WORKFLOW_DEFINITION_INVALID: "
                    f"{workflow.service_key}: query loop is not routable"
                )
            outcomes = [
                self._executor.apply_transition(
                    uow,
                    workflow=workflow,
                    application=application,
                    transition=respond,
                    actor_role=CITIZEN_ROLE,
                    actor_id=actor_id,
                    remarks=query.response_message,
                    extra_payload={"query_id": query.query_id, "updated_fields": changed_fields},
                ),
                self._executor.apply_transition(
                    uow,
                    workflow=workflow,
                    application=application,
                    transition=return_route,
                    actor_role=SYSTEM_ROLE,
                    actor_id=None,
                    extra_payload={"query_id": query.query_id},
                ),
            ]
        logger.info(
            "workflow.query.responded",
            extra={
                "extra_fields": {
                    "application_id": application_id,
                    "query_id": query_id,
                    "returned_to": outcomes[-1].new_state,
                }
            },
        )
        return outcomes

    def list_queries(self, *, application_id: str) -> list[QueryRecord]:
        return self._repository.list_queries(application_id=application_id)


def deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _flatten_paths(payload: dict[str, Any], prefix: str = "") -> list[str]:
    paths: list[str] = []
    for key, value in payload.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            paths.extend(_flatten_paths(value, path))
        else:
            paths.append(path)
    return sorted(paths)


def _check_unlocked(changed_fields: list[str], query: QueryRecord) -> None:
    read_only = [
        path
        for path in changed_fields
        if path == READ_ONLY_PAYLOAD_ROOT or path.startswith(f"{READ_ONLY_PAYLOAD_ROOT}.")
    ]
    if read_only:
        raise ValidationFailedError(f"VALIDATION_FAILED: read-only fields {', '.join(read_only)}")
    if not query.unlocked_fields:
        return
    locked = [
        path
        for path in changed_fields
        if not any(
            path == unlocked or path.startswith(f"{unlocked}.")
            for unlocked in query.unlocked_fields
        )
    ]
    if locked:
        raise ValidationFailedError(f"VALIDATION_FAILED: fields not unlocked {', '.join(locked)}")
