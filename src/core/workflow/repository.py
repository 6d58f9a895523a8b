from datetime import date, datetime
from typing import ContextManager, Optional, Protocol

from src.core.workflow.models import (
    ApplicationRecord,
    AuditEventRecord,
    HolidayRecord,
    NotificationRecord,
    OfficerPosting,
    QueryRecord,
    TaskRecord,
)


class WorkflowUnitOfWork(Protocol):
    """One transaction. Commits when the owning context exits cleanly, rolls back otherwise."""

    def get_application(
        self, *, application_id: str, for_update: bool = False
    ) -> Optional[ApplicationRecord]: ...

    def insert_application(self, application: ApplicationRecord) -> None: ...

    def update_application(self, application: ApplicationRecord) -> None: ...

    def next_arn_sequence(self, *, authority_id: str, year: int) -> int: ...

    def get_task(self, *, task_id: str, for_update: bool = False) -> Optional[TaskRecord]: ...

    def get_open_task(self, *, application_id: str) -> Optional[TaskRecord]: ...

    def insert_task(self, task: TaskRecord) -> None: ...

    def update_task(self, task: TaskRecord) -> None: ...

    def list_overdue_open_tasks(self, *, now: datetime) -> list[TaskRecord]: ...

    def get_open_query(self, *, application_id: str) -> Optional[QueryRecord]: ...

    def insert_query(self, query: QueryRecord) -> None: ...

    def update_query(self, query: QueryRecord) -> None: ...

    def lock_audit_tail(self) -> Optional[AuditEventRecord]: ...

    def insert_audit_event(self, event: AuditEventRecord) -> None: ...

    def breached_task_ids(self, *, task_ids: list[str]) -> set[str]: ...

    def insert_notification(self, notification: NotificationRecord) -> None: ...


class WorkflowRepository(Protocol):
    def unit_of_work(self) -> ContextManager[WorkflowUnitOfWork]: ...

    def get_application(self, *, application_id: str) -> Optional[ApplicationRecord]: ...

    def get_application_by_arn(self, *, arn: str) -> Optional[ApplicationRecord]: ...

    def get_task(self, *, task_id: str) -> Optional[TaskRecord]: ...

    def list_tasks(self, *, application_id: str) -> list[TaskRecord]: ...

    def list_inbox_tasks(
        self,
        *,
        roles_by_authority: dict[str, frozenset[str]],
        status: str,
        assignee_id: Optional[str],
        limit: int,
        offset: int,
    ) -> list[TaskRecord]: ...

    def list_queries(self, *, application_id: str) -> list[QueryRecord]: ...

    def list_audit_events(self, *, application_id: str) -> list[AuditEventRecord]: ...

    def audit_tail_position(self) -> int: ...

    def list_audit_chain(
        self, *, after_position: int, up_to_position: int, limit: int
    ) -> list[AuditEventRecord]: ...

    def list_notifications(self, *, user_id: str) -> list[NotificationRecord]: ...

    def count_open_tasks(self, *, now: datetime) -> tuple[int, int]: ...

    def list_holidays(self, *, authority_id: str, start: date, end: date) -> list[date]: ...

    def add_holiday(self, holiday: HolidayRecord) -> None: ...

    def list_officer_postings(self, *, user_id: str) -> list[OfficerPosting]: ...

    def upsert_officer_posting(self, posting: OfficerPosting) -> None: ...
