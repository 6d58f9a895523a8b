import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from src.core.workflow.audit_chain import AuditChainRecorder
from src.core.workflow.definitions import CLOSE_ACTION, CompiledWorkflow, WorkflowRegistry
from src.core.workflow.dispatcher import TaskDispatcher
from src.core.workflow.errors import (
    ApplicationNotFoundError,
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    QueryAlreadyOpenError,
    TaskNotFoundError,
    TaskSupersededError,
    ValidationFailedError,
)
from src.core.workflow.models import (
    CITIZEN_ROLE,
    OPEN_TASK_STATUSES,
    SYSTEM_ROLE,
    ActorType,
    ApplicationRecord,
    NotificationRecord,
    QueryRecord,
    TransitionOutcome,
    WorkflowTransitionDefinition,
)
from src.core.workflow.repository import WorkflowRepository, WorkflowUnitOfWork
from src.core.workflow.roles import OfficerRoleCache

logger = logging.getLogger(__name__)

SUBMIT_ACTION = "SUBMIT"
ASSIGN_ACTION = "ASSIGN"
QUERY_ACTION = "QUERY"
READ_ONLY_PAYLOAD_ROOT = "applicant"

_NOTIFICATION_TEMPLATES = {
    "APPLICATION_SUBMITTED": (
        "Application Submitted",
        "Your application {arn} has been submitted.",
    ),
    "QUERY_RAISED": (
        "Query Raised",
        "A query has been raised on application {arn}. Please respond before the due date.",
    ),
    "APPLICATION_APPROVED": ("Application Approved", "Your application {arn} has been approved."),
    "APPLICATION_REJECTED": ("Application Rejected", "Your application {arn} has been rejected."),
}


class OutputGenerator(Protocol):
    def generate(self, *, application: ApplicationRecord) -> None: ...


class LoggingOutputGenerator:
    def generate(self, *, application: ApplicationRecord) -> None:
        logger.info(
            "workflow.output.requested",
            extra={
                "extra_fields": {
                    "application_id": application.application_id,
                    "arn": application.arn,
                    "disposal_type": application.disposal_type,
                }
            },
        )


class StateMachineExecutor:
    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        registry: WorkflowRegistry,
        dispatcher: TaskDispatcher,
        audit: AuditChainRecorder,
        roles: OfficerRoleCache,
        output_generator: Optional[OutputGenerator] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._dispatcher = dispatcher
        self._audit = audit
        self._roles = roles
        self._output_generator = output_generator or LoggingOutputGenerator()
        self._clock = clock

    def execute(
        self,
        *,
        application_id: str,
        action: str,
        actor_role: str,
        actor_id: str,
        remarks: Optional[str] = None,
        task_id: Optional[str] = None,
        query_message: Optional[str] = None,
        unlocked_fields: Optional[list[str]] = None,
    ) -> TransitionOutcome:
        if action == SUBMIT_ACTION:
            outcomes = self.submit(application_id=application_id, actor_id=actor_id)
            return outcomes[-1]
        try:
            with self._repository.unit_of_work() as uow:
                application = self._lock_application(uow, application_id)
                if action == QUERY_ACTION and uow.get_open_query(
                    application_id=application.application_id
                ) is not None:
                    raise QueryAlreadyOpenError(
                        "QUERY_ALREADY_OPEN: application already has an open query"
                    )
                workflow = self._registry.get(application.service_key)
                self._check_task(
                    uow,
                    application=application,
                    task_id=task_id,
                    actor_role=actor_role,
                    actor_id=actor_id,
                )
                transition = self._resolve_transition(workflow, application, action)
                self._authorize(application, transition, actor_role=actor_role, actor_id=actor_id)
                outcome = self.apply_transition(
                    uow,
                    workflow=workflow,
                    application=application,
                    transition=transition,
                    actor_role=actor_role,
                    actor_id=actor_id,
                    remarks=remarks,
                    query_message=query_message,
                    unlocked_fields=unlocked_fields,
                )
        except (
            ForbiddenError,
            InvalidStateError,
            InvalidTransitionError,
            QueryAlreadyOpenError,
        ) as exc:
            logger.warning(
                "workflow.transition.rejected",
                extra={
                    "extra_fields": {
                        "application_id": application_id,
                        "action": action,
                        "actor_id": actor_id,
                        "error": exc.code,
                    }
                },
            )
            raise
        self._after_commit(outcome)
        return outcome

    def submit(self, *, application_id: str, actor_id: str) -> list[TransitionOutcome]:
        with self._repository.unit_of_work() as uow:
            application = self._lock_application(uow, application_id)
            workflow = self._registry.get(application.service_key)
            initial = workflow.initial_state
            if application.current_state != initial.state_id:
                raise InvalidStateError(
                    f"INVALID_STATE: cannot submit from {application.current_state}"
                )
            if actor_id != application.applicant_id:
                raise ForbiddenError("FORBIDDEN: only the applicant can submit")
            missing = [
                path
                for path in workflow.definition.required_payload_fields
                if _is_blank(_lookup_path(application.payload, path))
            ]
            if missing:
                raise ValidationFailedError(
                    f"VALIDATION_FAILED: missing required fields {', '.join(missing)}"
                )
            now = self._clock()
            sequence = uow.next_arn_sequence(authority_id=application.authority_id, year=now.year)
            application.arn = f"{application.authority_id}/{now.year}/{sequence:06d}"
            application.submitted_at = now
            submit = workflow.transition_for(state_id=initial.state_id, action=SUBMIT_ACTION)
            outcomes = [
                self.apply_transition(
                    uow,
                    workflow=workflow,
                    application=application,
                    transition=submit,
                    actor_role=CITIZEN_ROLE,
                    actor_id=actor_id,
                )
            ]
            assign = workflow.transition_for(
                state_id=application.current_state, action=ASSIGN_ACTION
            )
            if assign is not None:
                outcomes.append(
                    self.apply_transition(
                        uow,
                        workflow=workflow,
                        application=application,
                        transition=assign,
                        actor_role=SYSTEM_ROLE,
                        actor_id=None,
                    )
                )
        logger.info(
            "workflow.application.submitted",
            extra={"extra_fields": {"application_id": application_id, "arn": application.arn}},
        )
        return outcomes

    def close(self, *, application_id: str) -> TransitionOutcome:
        with self._repository.unit_of_work() as uow:
            application = self._lock_application(uow, application_id)
            workflow = self._registry.get(application.service_key)
            transition = workflow.transition_for(
                state_id=application.current_state, action=CLOSE_ACTION
            )
            if transition is None:
                raise InvalidStateError(
                    f"INVALID_STATE: cannot close from {application.current_state}"
                )
            return self.apply_transition(
                uow,
                workflow=workflow,
                application=application,
                transition=transition,
                actor_role=SYSTEM_ROLE,
                actor_id=None,
            )

    def apply_transition(
        self,
        uow: WorkflowUnitOfWork,
        *,
        workflow: CompiledWorkflow,
        application: ApplicationRecord,
        transition: WorkflowTransitionDefinition,
        actor_role: str,
        actor_id: Optional[str],
        remarks: Optional[str] = None,
        query_message: Optional[str] = None,
        unlocked_fields: Optional[list[str]] = None,
        extra_payload: Optional[dict[str, Any]] = None,
    ) -> TransitionOutcome:
        now = self._clock()
        actor_type = _actor_type(actor_role)
        previous_state = application.current_state
        target = workflow.state(transition.to_state)

        closed_task_id = None
        open_task = uow.get_open_task(application_id=application.application_id)
        if open_task is not None:
            self._dispatcher.close_task(
                uow,
                task=open_task,
                decision=transition.action,
                remarks=remarks,
                actor_id=actor_id if actor_type == "OFFICER" else None,
                now=now,
            )
            closed_task_id = open_task.task_id

        query_id = None
        if target.type == "QUERY":
            query = self._open_query(
                uow,
                workflow=workflow,
                application=application,
                transition=transition,
                actor_role=actor_role,
                actor_id=actor_id,
                message=query_message,
                unlocked_fields=unlocked_fields or [],
                now=now,
            )
            query_id = query.query_id

        application.current_state = target.state_id
        application.row_version += 1
        application.updated_at = now
        if target.disposal is not None:
            application.disposal_type = target.disposal
            application.disposed_at = now

        task_id = None
        if target.type == "TASK":
            task = self._dispatcher.open_task(
                uow,
                application=application,
                state=target,
                sla_days=transition.sla_days,
                now=now,
            )
            task_id = task.task_id
        uow.update_application(application)

        payload: dict[str, Any] = {
            "from_state": previous_state,
            "to_state": target.state_id,
            "transition_id": transition.transition_id,
            "action": transition.action,
            "remarks": remarks,
        }
        if closed_task_id is not None:
            payload["closed_task_id"] = closed_task_id
        if task_id is not None:
            payload["task_id"] = task_id
        if query_id is not None:
            payload["query_id"] = query_id
        if extra_payload:
            payload.update(extra_payload)
        event = self._audit.append(
            uow,
            event_type="STATE_CHANGED",
            application_id=application.application_id,
            actor_type=actor_type,
            actor_id=actor_id,
            payload=payload,
            created_at=now,
        )
        self._notify(
            uow,
            application=application,
            transition=transition,
            target_type=target.type,
            now=now,
        )
        logger.info(
            "workflow.transition.applied",
            extra={
                "extra_fields": {
                    "application_id": application.application_id,
                    "transition_id": transition.transition_id,
                    "from_state": previous_state,
                    "to_state": target.state_id,
                }
            },
        )
        return TransitionOutcome(
            application_id=application.application_id,
            previous_state=previous_state,
            new_state=target.state_id,
            transition_id=transition.transition_id,
            task_id=task_id,
            closed_task_id=closed_task_id,
            query_id=query_id,
            disposal_type=target.disposal,
            event_id=event.event_id,
        )

    def _lock_application(self, uow: WorkflowUnitOfWork, application_id: str) -> ApplicationRecord:
        application = uow.get_application(application_id=application_id, for_update=True)
        if application is None:
            raise ApplicationNotFoundError(f"APPLICATION_NOT_FOUND: {application_id}")
        return application

    def _check_task(
        self,
        uow: WorkflowUnitOfWork,
        *,
        application: ApplicationRecord,
        task_id: Optional[str],
        actor_role: str,
        actor_id: str,
    ) -> None:
        open_task = uow.get_open_task(application_id=application.application_id)
        if task_id is not None:
            task = uow.get_task(task_id=task_id, for_update=True)
            if task is None or task.application_id != application.application_id:
                raise TaskNotFoundError(f"TASK_NOT_FOUND: {task_id}")
            if task.status not in OPEN_TASK_STATUSES or (
                open_task is not None and open_task.task_id != task.task_id
            ):
                raise TaskSupersededError(f"TASK_SUPERSEDED: task {task_id} is no longer open")
        if (
            open_task is not None
            and _actor_type(actor_role) == "OFFICER"
            and open_task.assignee_id is not None
            and open_task.assignee_id != actor_id
        ):
            raise ForbiddenError("FORBIDDEN: task is assigned to another officer")

    def _resolve_transition(
        self, workflow: CompiledWorkflow, application: ApplicationRecord, action: str
    ) -> WorkflowTransitionDefinition:
        transition = workflow.transition_for(state_id=application.current_state, action=action)
        if transition is not None:
            return transition
        current = workflow.state(application.current_state)
        if current.type in ("TERMINAL", "QUERY", "INITIAL") or application.disposal_type:
            raise InvalidStateError(
                f"INVALID_STATE: {action} not allowed while application is "
                f"{application.current_state}"
            )
        raise InvalidTransitionError(
            f"INVALID_TRANSITION: no rule for {action} from {application.current_state}"
        )

    def _authorize(
        self,
        application: ApplicationRecord,
        transition: WorkflowTransitionDefinition,
        *,
        actor_role: str,
        actor_id: str,
    ) -> None:
        if actor_role != transition.role:
            raise ForbiddenError(
                f"FORBIDDEN: {transition.transition_id} requires role {transition.role}"
            )
        if transition.role == SYSTEM_ROLE:
            return
        if transition.role == CITIZEN_ROLE:
            if actor_id != application.applicant_id:
                raise ForbiddenError("FORBIDDEN: actor is not the applicant")
            return
        if not self._roles.has_role(
            user_id=actor_id, authority_id=application.authority_id, role_id=transition.role
        ):
            raise ForbiddenError(
                f"FORBIDDEN: officer lacks role {transition.role} at {application.authority_id}"
            )

    def _open_query(
        self,
        uow: WorkflowUnitOfWork,
        *,
        workflow: CompiledWorkflow,
        application: ApplicationRecord,
        transition: WorkflowTransitionDefinition,
        actor_role: str,
        actor_id: Optional[str],
        message: Optional[str],
        unlocked_fields: list[str],
        now: datetime,
    ) -> QueryRecord:
        if uow.get_open_query(application_id=application.application_id) is not None:
            raise QueryAlreadyOpenError("QUERY_ALREADY_OPEN: application already has an open query")
        if not message or not message.strip():
            raise ValidationFailedError("VALIDATION_FAILED: query message is required")
        protected = [
            field
            for field in unlocked_fields
            if field == READ_ONLY_PAYLOAD_ROOT or field.startswith(f"{READ_ONLY_PAYLOAD_ROOT}.")
        ]
        if protected:
            raise ValidationFailedError(
                f"VALIDATION_FAILED: fields are read-only {', '.join(protected)}"
            )
        application.query_count += 1
        query = QueryRecord(
            query_id=f"qry_{uuid.uuid4().hex[:12]}",
            application_id=application.application_id,
            query_number=application.query_count,
            message=message.strip(),
            status="OPEN",
            raised_by_id=actor_id or "",
            raised_by_role=actor_role,
            raised_from_state=transition.from_state,
            return_transition_id=workflow.return_transition_for(transition).transition_id,
            unlocked_fields=sorted(set(unlocked_fields)),
            response_due_at=now + timedelta(days=workflow.definition.query_response_days),
            raised_at=now,
        )
        uow.insert_query(query)
        return query

    def _notify(
        self,
        uow: WorkflowUnitOfWork,
        *,
        application: ApplicationRecord,
        transition: WorkflowTransitionDefinition,
        target_type: str,
        now: datetime,
    ) -> None:
        event_type = None
        if transition.action == SUBMIT_ACTION:
            event_type = "APPLICATION_SUBMITTED"
        elif target_type == "QUERY":
            event_type = "QUERY_RAISED"
        elif application.disposal_type == "APPROVED" and transition.action != CLOSE_ACTION:
            event_type = "APPLICATION_APPROVED"
        elif application.disposal_type == "REJECTED" and transition.action != CLOSE_ACTION:
            event_type = "APPLICATION_REJECTED"
        if event_type is None:
            return
        title, template = _NOTIFICATION_TEMPLATES[event_type]
        uow.insert_notification(
            NotificationRecord(
                notification_id=f"ntf_{uuid.uuid4().hex[:12]}",
                user_id=application.applicant_id,
                application_id=application.application_id,
                event_type=event_type,
                title=title,
                message=template.format(arn=application.arn or application.application_id),
                created_at=now,
            )
        )

    def _after_commit(self, outcome: TransitionOutcome) -> None:
        if outcome.disposal_type is None:
            return
        application = self._repository.get_application(application_id=outcome.application_id)
        if application is not None:
            self._output_generator.generate(application=application)


def _actor_type(actor_role: str) -> ActorType:
    if actor_role == SYSTEM_ROLE:
        return "SYSTEM"
    if actor_role == CITIZEN_ROLE:
        return "CITIZEN"
    return "OFFICER"


def _lookup_path(payload: dict[str, Any], path: str) -> Any:
    current: Any = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False
