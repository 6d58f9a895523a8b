from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import date, datetime
from threading import RLock
from typing import Iterator, Optional

from src.core.workflow.models import (
    OPEN_TASK_STATUSES,
    ApplicationRecord,
    AuditEventRecord,
    HolidayRecord,
    NotificationRecord,
    OfficerPosting,
    QueryRecord,
    TaskRecord,
)
from src.core.workflow.repository import WorkflowRepository


@dataclass
class _WorkflowTables:
    applications: dict[str, ApplicationRecord] = field(default_factory=dict)
    tasks: dict[str, TaskRecord] = field(default_factory=dict)
    queries: dict[str, QueryRecord] = field(default_factory=dict)
    audit_events: list[AuditEventRecord] = field(default_factory=list)
    notifications: list[NotificationRecord] = field(default_factory=list)
    arn_sequences: dict[tuple[str, int], int] = field(default_factory=dict)


class InMemoryWorkflowUnitOfWork:
    def __init__(self, tables: _WorkflowTables) -> None:
        self._tables = tables

    def get_application(
        self, *, application_id: str, for_update: bool = False
    ) -> Optional[ApplicationRecord]:
        application = self._tables.applications.get(application_id)
        return deepcopy(application) if application is not None else None

    def insert_application(self, application: ApplicationRecord) -> None:
        self._tables.applications[application.application_id] = deepcopy(application)

    def update_application(self, application: ApplicationRecord) -> None:
        self._tables.applications[application.application_id] = deepcopy(application)

    def next_arn_sequence(self, *, authority_id: str, year: int) -> int:
        key = (authority_id, year)
        self._tables.arn_sequences[key] = self._tables.arn_sequences.get(key, 0) + 1
        return self._tables.arn_sequences[key]

    def get_task(self, *, task_id: str, for_update: bool = False) -> Optional[TaskRecord]:
        task = self._tables.tasks.get(task_id)
        return deepcopy(task) if task is not None else None

    def get_open_task(self, *, application_id: str) -> Optional[TaskRecord]:
        for task in self._tables.tasks.values():
            if task.application_id == application_id and task.status in OPEN_TASK_STATUSES:
                return deepcopy(task)
        return None

    def insert_task(self, task: TaskRecord) -> None:
        self._tables.tasks[task.task_id] = deepcopy(task)

    def update_task(self, task: TaskRecord) -> None:
        self._tables.tasks[task.task_id] = deepcopy(task)

    def list_overdue_open_tasks(self, *, now: datetime) -> list[TaskRecord]:
        overdue = [
            task
            for task in self._tables.tasks.values()
            if task.status in OPEN_TASK_STATUSES
            and task.sla_due_at is not None
            and task.sla_due_at < now
        ]
        return [deepcopy(task) for task in sorted(overdue, key=lambda task: task.sla_due_at)]

    def get_open_query(self, *, application_id: str) -> Optional[QueryRecord]:
        for query in self._tables.queries.values():
            if query.application_id == application_id and query.status == "OPEN":
                return deepcopy(query)
        return None

    def insert_query(self, query: QueryRecord) -> None:
        self._tables.queries[query.query_id] = deepcopy(query)

    def update_query(self, query: QueryRecord) -> None:
        self._tables.queries[query.query_id] = deepcopy(query)

    def lock_audit_tail(self) -> Optional[AuditEventRecord]:
        if not self._tables.audit_events:
            return None
        return deepcopy(self._tables.audit_events[-1])

    def insert_audit_event(self, event: AuditEventRecord) -> None:
        self._tables.audit_events.append(deepcopy(event))

    def breached_task_ids(self, *, task_ids: list[str]) -> set[str]:
        wanted = set(task_ids)
        return {
            event.payload.get("task_id")
            for event in self._tables.audit_events
            if event.event_type == "SLA_BREACHED" and event.payload.get("task_id") in wanted
        }

    def insert_notification(self, notification: NotificationRecord) -> None:
        self._tables.notifications.append(deepcopy(notification))


class InMemoryWorkflowRepository(WorkflowRepository):
    """Process-local store. Units of work run one at a time on a staged copy of the tables."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._tables = _WorkflowTables()
        self._holidays: dict[str, dict[date, HolidayRecord]] = {}
        self._postings: dict[str, dict[str, OfficerPosting]] = {}

    @contextmanager
    def unit_of_work(self) -> Iterator[InMemoryWorkflowUnitOfWork]:
        with self._lock:
            staged = deepcopy(self._tables)
            yield InMemoryWorkflowUnitOfWork(staged)
            self._tables = staged

    def get_application(self, *, application_id: str) -> Optional[ApplicationRecord]:
        with self._lock:
            application = self._tables.applications.get(application_id)
            return deepcopy(application) if application is not None else None

    def get_application_by_arn(self, *, arn: str) -> Optional[ApplicationRecord]:
        with self._lock:
            for application in self._tables.applications.values():
                if application.arn == arn:
                    return deepcopy(application)
            return None

    def get_task(self, *, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            task = self._tables.tasks.get(task_id)
            return deepcopy(task) if task is not None else None

    def list_tasks(self, *, application_id: str) -> list[TaskRecord]:
        with self._lock:
            tasks = [
                task
                for task in self._tables.tasks.values()
                if task.application_id == application_id
            ]
            return deepcopy(sorted(tasks, key=lambda task: task.created_at))

    def list_inbox_tasks(
        self,
        *,
        roles_by_authority: dict[str, frozenset[str]],
        status: str,
        assignee_id: Optional[str],
        limit: int,
        offset: int,
    ) -> list[TaskRecord]:
        with self._lock:
            matches = []
            for task in self._tables.tasks.values():
                if task.status != status:
                    continue
                if task.role_id not in roles_by_authority.get(task.authority_id, frozenset()):
                    continue
                if assignee_id is not None and task.assignee_id != assignee_id:
                    continue
                application = self._tables.applications.get(task.application_id)
                if application is None or application.disposal_type is not None:
                    continue
                matches.append(task)
            matches.sort(
                key=lambda task: (
                    task.sla_due_at is None,
                    task.sla_due_at or task.created_at,
                    task.created_at,
                )
            )
            return deepcopy(matches[offset : offset + limit])

    def list_queries(self, *, application_id: str) -> list[QueryRecord]:
        with self._lock:
            queries = [
                query
                for query in self._tables.queries.values()
                if query.application_id == application_id
            ]
            return deepcopy(sorted(queries, key=lambda query: query.query_number))

    def list_audit_events(self, *, application_id: str) -> list[AuditEventRecord]:
        with self._lock:
            return deepcopy(
                [
                    event
                    for event in self._tables.audit_events
                    if event.application_id == application_id
                ]
            )

    def audit_tail_position(self) -> int:
        with self._lock:
            if not self._tables.audit_events:
                return 0
            return self._tables.audit_events[-1].chain_position

    def list_audit_chain(
        self, *, after_position: int, up_to_position: int, limit: int
    ) -> list[AuditEventRecord]:
        with self._lock:
            events = [
                event
                for event in self._tables.audit_events
                if after_position < event.chain_position <= up_to_position
            ]
            events.sort(key=lambda event: event.chain_position)
            return deepcopy(events[:limit])

    def list_notifications(self, *, user_id: str) -> list[NotificationRecord]:
        with self._lock:
            return deepcopy(
                [item for item in self._tables.notifications if item.user_id == user_id]
            )

    def count_open_tasks(self, *, now: datetime) -> tuple[int, int]:
        with self._lock:
            open_tasks = [
                task for task in self._tables.tasks.values() if task.status in OPEN_TASK_STATUSES
            ]
            overdue = [
                task for task in open_tasks if task.sla_due_at is not None and task.sla_due_at < now
            ]
            return len(open_tasks), len(overdue)

    def list_holidays(self, *, authority_id: str, start: date, end: date) -> list[date]:
        with self._lock:
            return sorted(
                day for day in self._holidays.get(authority_id, {}) if start <= day <= end
            )

    def add_holiday(self, holiday: HolidayRecord) -> None:
        with self._lock:
            self._holidays.setdefault(holiday.authority_id, {})[holiday.holiday_date] = deepcopy(
                holiday
            )

    def list_officer_postings(self, *, user_id: str) -> list[OfficerPosting]:
        with self._lock:
            return deepcopy(list(self._postings.get(user_id, {}).values()))

    def upsert_officer_posting(self, posting: OfficerPosting) -> None:
        with self._lock:
            self._postings.setdefault(posting.user_id, {})[posting.authority_id] = deepcopy(posting)
