import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from src.core.workflow.audit_chain import AuditChainRecorder
from src.core.workflow.calendar import WorkingDayCalendar
from src.core.workflow.errors import (
    ApplicationNotFoundError,
    ForbiddenError,
    InvalidStateError,
    TaskNotFoundError,
    TaskSupersededError,
)
from src.core.workflow.models import (
    OPEN_TASK_STATUSES,
    ApplicationRecord,
    TaskRecord,
    WorkflowStateDefinition,
)
from src.core.workflow.repository import WorkflowRepository, WorkflowUnitOfWork
from src.core.workflow.roles import OfficerRoleCache

logger = logging.getLogger(__name__)

DEFAULT_INBOX_LIMIT = 50


class TaskDispatcher:
    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        calendar: WorkingDayCalendar,
        audit: AuditChainRecorder,
        roles: OfficerRoleCache,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._calendar = calendar
        self._audit = audit
        self._roles = roles
        self._clock = clock

    def assign(self, *, task_id: str, officer_id: str) -> TaskRecord:
        snapshot = self._repository.get_task(task_id=task_id)
        if snapshot is None:
            raise TaskNotFoundError(f"TASK_NOT_FOUND: {task_id}")
        with self._repository.unit_of_work() as uow:
            application = uow.get_application(
                application_id=snapshot.application_id, for_update=True
            )
            if application is None:
                raise ApplicationNotFoundError(f"APPLICATION_NOT_FOUND: {snapshot.application_id}")
            task = uow.get_task(task_id=task_id, for_update=True)
            if task is None:
                raise TaskNotFoundError(f"TASK_NOT_FOUND: {task_id}")
            if task.status not in OPEN_TASK_STATUSES:
                raise TaskSupersededError(f"TASK_SUPERSEDED: task is {task.status}")
            if not self._roles.has_role(
                user_id=officer_id, authority_id=task.authority_id, role_id=task.role_id
            ):
                raise ForbiddenError(
                    f"FORBIDDEN: officer lacks role {task.role_id} at {task.authority_id}"
                )
            if task.assignee_id == officer_id:
                return task
            if task.status == "IN_PROGRESS":
                raise ForbiddenError("FORBIDDEN: task already assigned to another officer")
            now = self._clock()
            task.assignee_id = officer_id
            task.status = "IN_PROGRESS"
            task.started_at = now
            uow.update_task(task)
            self._audit.append(
                uow,
                event_type="TASK_ASSIGNED",
                application_id=task.application_id,
                actor_type="OFFICER",
                actor_id=officer_id,
                payload={"task_id": task.task_id, "state_id": task.state_id},
                created_at=now,
            )
        logger.info(
            "workflow.task.assigned",
            extra={"extra_fields": {"task_id": task_id, "officer_id": officer_id}},
        )
        return task

    def get_open_task(self, *, application_id: str) -> Optional[TaskRecord]:
        with self._repository.unit_of_work() as uow:
            return uow.get_open_task(application_id=application_id)

    def inbox(
        self,
        *,
        officer_id: str,
        authority_id: Optional[str] = None,
        status: str = "PENDING",
        limit: int = DEFAULT_INBOX_LIMIT,
        offset: int = 0,
    ) -> list[TaskRecord]:
        roles_by_authority = self._roles.postings_for(user_id=officer_id)
        if authority_id is not None:
            roles_by_authority = {
                key: value for key, value in roles_by_authority.items() if key == authority_id
            }
        if not roles_by_authority:
            return []
        return self._repository.list_inbox_tasks(
            roles_by_authority=roles_by_authority,
            status=status,
            assignee_id=officer_id if status == "IN_PROGRESS" else None,
            limit=limit,
            offset=offset,
        )

    def open_task(
        self,
        uow: WorkflowUnitOfWork,
        *,
        application: ApplicationRecord,
        state: WorkflowStateDefinition,
        sla_days: Optional[int],
        now: datetime,
    ) -> TaskRecord:
        existing = uow.get_open_task(application_id=application.application_id)
        if existing is not None:
            raise InvalidStateError(
                f"INVALID_STATE: application already has open task {existing.task_id}"
            )
        effective_sla_days = sla_days if sla_days is not None else state.sla_days
        sla_due_at = None
        if effective_sla_days is not None:
            sla_due_at = self._calendar.add_working_days(
                now, effective_sla_days, application.authority_id
            )
        task = TaskRecord(
            task_id=f"task_{uuid.uuid4().hex[:12]}",
            application_id=application.application_id,
            authority_id=application.authority_id,
            state_id=state.state_id,
            role_id=state.role_id,
            status="PENDING",
            sla_due_at=sla_due_at,
            created_at=now,
        )
        uow.insert_task(task)
        return task

    def close_task(
        self,
        uow: WorkflowUnitOfWork,
        *,
        task: TaskRecord,
        decision: str,
        remarks: Optional[str],
        actor_id: Optional[str],
        now: datetime,
    ) -> TaskRecord:
        task.status = "COMPLETED"
        task.decision = decision
        if remarks:
            task.remarks = f"{task.remarks}; {remarks}" if task.remarks else remarks
        task.completed_at = now
        if task.assignee_id is None and actor_id is not None:
            task.assignee_id = actor_id
            task.started_at = task.started_at or now
        uow.update_task(task)
        return task
