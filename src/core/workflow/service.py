import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from src.core.workflow.audit_chain import AuditChainRecorder
from src.core.workflow.calendar import WorkingDayCalendar
from src.core.workflow.definitions import CompiledWorkflow, WorkflowRegistry
from src.core.workflow.dispatcher import DEFAULT_INBOX_LIMIT, TaskDispatcher
from src.core.workflow.errors import (
    ApplicationNotFoundError,
    ForbiddenError,
    InvalidStateError,
    TaskNotFoundError,
)
from src.core.workflow.executor import OutputGenerator, StateMachineExecutor
from src.core.workflow.models import (
    ActionRequest,
    ActionResponse,
    ApplicationCreateRequest,
    ApplicationRecord,
    AuditFeedEvent,
    AuditFeedResponse,
    BacklogMetrics,
    BreachSweepResult,
    ChainVerificationResult,
    HolidayRecord,
    NotificationRecord,
    OfficerPosting,
    QueryRecord,
    TaskRecord,
    TransitionOutcome,
)
from src.core.workflow.queries import QueryService, deep_merge
from src.core.workflow.repository import WorkflowRepository
from src.core.workflow.roles import OfficerRoleCache
from src.core.workflow.sla import SlaBreachDetector

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowService:
    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        registry: WorkflowRegistry,
        role_cache_ttl_seconds: float = 60.0,
        authority_timezones: Optional[dict[str, str]] = None,
        output_generator: Optional[OutputGenerator] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._clock = clock
        self.roles = OfficerRoleCache(directory=repository, ttl_seconds=role_cache_ttl_seconds)
        self.calendar = WorkingDayCalendar(
            holidays=repository, authority_timezones=authority_timezones
        )
        self.audit = AuditChainRecorder(repository=repository)
        self.dispatcher = TaskDispatcher(
            repository=repository,
            calendar=self.calendar,
            audit=self.audit,
            roles=self.roles,
            clock=clock,
        )
        self.executor = StateMachineExecutor(
            repository=repository,
            registry=registry,
            dispatcher=self.dispatcher,
            audit=self.audit,
            roles=self.roles,
            output_generator=output_generator,
            clock=clock,
        )
        self.queries = QueryService(
            repository=repository, registry=registry, executor=self.executor, clock=clock
        )
        self.sla = SlaBreachDetector(repository=repository, audit=self.audit, clock=clock)

    def list_workflows(self) -> list[CompiledWorkflow]:
        return self._registry.list()

    def get_workflow(self, *, service_key: str) -> CompiledWorkflow:
        return self._registry.get(service_key)

    def create_application(self, *, payload: ApplicationCreateRequest) -> ApplicationRecord:
        workflow = self._registry.get(payload.service_key)
        now = self._clock()
        application = ApplicationRecord(
            application_id=f"app_{uuid.uuid4().hex[:12]}",
            authority_id=payload.authority_id,
            service_key=payload.service_key,
            applicant_id=payload.applicant_id,
            current_state=workflow.initial_state.state_id,
            payload=payload.payload,
            created_at=now,
            updated_at=now,
        )
        with self._repository.unit_of_work() as uow:
            uow.insert_application(application)
            self.audit.append(
                uow,
                event_type="APPLICATION_CREATED",
                application_id=application.application_id,
                actor_type="CITIZEN",
                actor_id=application.applicant_id,
                payload={
                    "service_key": application.service_key,
                    "authority_id": application.authority_id,
                },
                created_at=now,
            )
        return application

    def get_application(self, *, application_id: str) -> ApplicationRecord:
        application = self._repository.get_application(application_id=application_id)
        if application is None:
            raise ApplicationNotFoundError(f"APPLICATION_NOT_FOUND: {application_id}")
        return application

    def get_application_by_arn(self, *, arn: str) -> ApplicationRecord:
        application = self._repository.get_application_by_arn(arn=arn)
        if application is None:
            raise ApplicationNotFoundError(f"APPLICATION_NOT_FOUND: {arn}")
        return application

    def update_draft_payload(
        self, *, application_id: str, actor_id: str, payload: dict[str, Any]
    ) -> ApplicationRecord:
        with self._repository.unit_of_work() as uow:
            application = uow.get_application(application_id=application_id, for_update=True)
            if application is None:
                raise ApplicationNotFoundError(f"APPLICATION_NOT_FOUND: {application_id}")
            workflow = self._registry.get(application.service_key)
            if application.current_state != workflow.initial_state.state_id:
                raise InvalidStateError(
                    f"INVALID_STATE: payload is locked in {application.current_state}"
                )
            if actor_id != application.applicant_id:
                raise ForbiddenError("FORBIDDEN: only the applicant can edit the draft")
            application.payload = deep_merge(application.payload, payload)
            application.row_version += 1
            application.updated_at = self._clock()
            uow.update_application(application)
        return application

    def submit_application(self, *, application_id: str, actor_id: str) -> list[TransitionOutcome]:
        return self.executor.submit(application_id=application_id, actor_id=actor_id)

    def take_action(self, *, task_id: str, request: ActionRequest) -> ActionResponse:
        task = self._repository.get_task(task_id=task_id)
        if task is None:
            raise TaskNotFoundError(f"TASK_NOT_FOUND: {task_id}")
        outcome = self.executor.execute(
            application_id=task.application_id,
            action=request.action,
            actor_role=request.actor_role,
            actor_id=request.actor_id,
            remarks=request.remarks,
            task_id=task_id,
            query_message=request.query_message,
            unlocked_fields=request.unlocked_fields,
        )
        return ActionResponse(
            success=True,
            new_state_id=outcome.new_state,
            task_id=outcome.task_id,
            query_id=outcome.query_id,
        )

    def close_application(self, *, application_id: str) -> TransitionOutcome:
        return self.executor.close(application_id=application_id)

    def assign_task(self, *, task_id: str, officer_id: str) -> TaskRecord:
        return self.dispatcher.assign(task_id=task_id, officer_id=officer_id)

    def list_tasks(self, *, application_id: str) -> list[TaskRecord]:
        self.get_application(application_id=application_id)
        return self._repository.list_tasks(application_id=application_id)

    def inbox(
        self,
        *,
        officer_id: str,
        authority_id: Optional[str] = None,
        status: str = "PENDING",
        limit: int = DEFAULT_INBOX_LIMIT,
        offset: int = 0,
    ) -> list[TaskRecord]:
        return self.dispatcher.inbox(
            officer_id=officer_id,
            authority_id=authority_id,
            status=status,
            limit=limit,
            offset=offset,
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
        return self.queries.respond_to_query(
            application_id=application_id,
            query_id=query_id,
            response_message=response_message,
            updated_payload=updated_payload,
            actor_id=actor_id,
        )

    def list_queries(self, *, application_id: str) -> list[QueryRecord]:
        self.get_application(application_id=application_id)
        return self.queries.list_queries(application_id=application_id)

    def audit_feed(self, *, application_id: str) -> AuditFeedResponse:
        self.get_application(application_id=application_id)
        events = self.audit.list_events(application_id=application_id)
        return AuditFeedResponse(
            application_id=application_id,
            events=[
                AuditFeedEvent(
                    event_type=event.event_type,
                    actor_type=event.actor_type,
                    actor_id=event.actor_id,
                    payload=event.payload,
                    created_at=event.created_at,
                )
                for event in events
            ],
        )

    def list_notifications(self, *, user_id: str) -> list[NotificationRecord]:
        return self._repository.list_notifications(user_id=user_id)

    def detect_sla_breaches(self, *, now: Optional[datetime] = None) -> BreachSweepResult:
        return self.sla.detect_breaches(now)

    def backlog_metrics(self) -> BacklogMetrics:
        return self.sla.backlog_metrics()

    def verify_audit_chain(self, *, batch_size: int = 500) -> ChainVerificationResult:
        return self.audit.verify_chain(batch_size=batch_size)

    def register_officer_posting(self, posting: OfficerPosting) -> None:
        self._repository.upsert_officer_posting(posting)
        self.roles.invalidate(posting.user_id)

    def add_holiday(self, holiday: HolidayRecord) -> None:
        self._repository.add_holiday(holiday)
