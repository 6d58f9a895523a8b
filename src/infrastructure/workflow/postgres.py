import json
from contextlib import closing, contextmanager
from datetime import date, datetime, timezone
from importlib.util import find_spec
from typing import Any, Iterator, Optional

from src.core.workflow.models import (
    ApplicationRecord,
    AuditEventRecord,
    HolidayRecord,
    NotificationRecord,
    OfficerPosting,
    QueryRecord,
    TaskRecord,
)
from src.infrastructure.postgres_migrations import apply_postgres_migrations

AUDIT_CHAIN_LOCK_KEY = 982451653
DEFAULT_LOCK_TIMEOUT = "5s"

_APPLICATION_COLUMNS = """
    application_id,
    arn,
    authority_id,
    service_key,
    applicant_id,
    current_state,
    disposal_type,
    disposed_at,
    payload_json,
    query_count,
    row_version,
    created_at,
    updated_at,
    submitted_at
"""

_TASK_COLUMNS = """
    task_id,
    application_id,
    authority_id,
    state_id,
    role_id,
    assignee_id,
    status,
    sla_due_at,
    remarks,
    decision,
    created_at,
    started_at,
    completed_at
"""

_QUERY_COLUMNS = """
    query_id,
    application_id,
    query_number,
    message,
    response_message,
    status,
    raised_by_id,
    raised_by_role,
    raised_from_state,
    return_transition_id,
    unlocked_fields_json,
    response_due_at,
    raised_at,
    responded_at
"""

_AUDIT_COLUMNS = """
    event_id,
    chain_position,
    application_id,
    event_type,
    actor_type,
    actor_id,
    payload_json,
    created_at,
    hash_version,
    prev_event_hash,
    event_hash
"""


class PostgresWorkflowUnitOfWork:
    def __init__(self, connection: Any) -> None:
        self._connection = connection

    def get_application(
        self, *, application_id: str, for_update: bool = False
    ) -> Optional[ApplicationRecord]:
        query = f"""
            SELECT {_APPLICATION_COLUMNS}
            FROM workflow_applications
            WHERE application_id = %s
            {"FOR UPDATE" if for_update else ""}
        """
        row = self._connection.execute(query, (application_id,)).fetchone()
        return _to_application(row)

    def insert_application(self, application: ApplicationRecord) -> None:
        query = f"""
            INSERT INTO workflow_applications ({_APPLICATION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(query, _application_params(application))

    def update_application(self, application: ApplicationRecord) -> None:
        query = """
            UPDATE workflow_applications SET
                arn = %s,
                current_state = %s,
                disposal_type = %s,
                disposed_at = %s,
                payload_json = %s,
                query_count = %s,
                row_version = %s,
                updated_at = %s,
                submitted_at = %s
            WHERE application_id = %s
        """
        self._connection.execute(
            query,
            (
                application.arn,
                application.current_state,
                application.disposal_type,
                application.disposed_at,
                _json_dump(application.payload),
                application.query_count,
                application.row_version,
                application.updated_at,
                application.submitted_at,
                application.application_id,
            ),
        )

    def next_arn_sequence(self, *, authority_id: str, year: int) -> int:
        query = """
            INSERT INTO workflow_arn_sequences (authority_id, year, last_value)
            VALUES (%s, %s, 1)
            ON CONFLICT (authority_id, year) DO UPDATE SET
                last_value = workflow_arn_sequences.last_value + 1
            RETURNING last_value
        """
        row = self._connection.execute(query, (authority_id, year)).fetchone()
        return int(row["last_value"])

    def get_task(self, *, task_id: str, for_update: bool = False) -> Optional[TaskRecord]:
        query = f"""
            SELECT {_TASK_COLUMNS}
            FROM workflow_tasks
            WHERE task_id = %s
            {"FOR UPDATE" if for_update else ""}
        """
        row = self._connection.execute(query, (task_id,)).fetchone()
        return _to_task(row)

    def get_open_task(self, *, application_id: str) -> Optional[TaskRecord]:
        query = f"""
            SELECT {_TASK_COLUMNS}
            FROM workflow_tasks
            WHERE application_id = %s AND status IN ('PENDING', 'IN_PROGRESS')
        """
        row = self._connection.execute(query, (application_id,)).fetchone()
        return _to_task(row)

    def insert_task(self, task: TaskRecord) -> None:
        query = f"""
            INSERT INTO workflow_tasks ({_TASK_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(query, _task_params(task))

    def update_task(self, task: TaskRecord) -> None:
        query = """
            UPDATE workflow_tasks SET
                assignee_id = %s,
                status = %s,
                sla_due_at = %s,
                remarks = %s,
                decision = %s,
                started_at = %s,
                completed_at = %s
            WHERE task_id = %s
        """
        self._connection.execute(
            query,
            (
                task.assignee_id,
                task.status,
                task.sla_due_at,
                task.remarks,
                task.decision,
                task.started_at,
                task.completed_at,
                task.task_id,
            ),
        )

    def list_overdue_open_tasks(self, *, now: datetime) -> list[TaskRecord]:
        query = f"""
            SELECT {_TASK_COLUMNS}
            FROM workflow_tasks
            WHERE status IN ('PENDING', 'IN_PROGRESS')
              AND sla_due_at IS NOT NULL
              AND sla_due_at < %s
            ORDER BY sla_due_at ASC
            FOR UPDATE SKIP LOCKED
        """
        rows = self._connection.execute(query, (now,)).fetchall()
        return [_to_task(row) for row in rows]

    def get_open_query(self, *, application_id: str) -> Optional[QueryRecord]:
        query = f"""
            SELECT {_QUERY_COLUMNS}
            FROM workflow_queries
            WHERE application_id = %s AND status = 'OPEN'
        """
        row = self._connection.execute(query, (application_id,)).fetchone()
        return _to_query(row)

    def insert_query(self, query_record: QueryRecord) -> None:
        query = f"""
            INSERT INTO workflow_queries ({_QUERY_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(query, _query_params(query_record))

    def update_query(self, query_record: QueryRecord) -> None:
        query = """
            UPDATE workflow_queries SET
                response_message = %s,
                status = %s,
                responded_at = %s
            WHERE query_id = %s
        """
        self._connection.execute(
            query,
            (
                query_record.response_message,
                query_record.status,
                query_record.responded_at,
                query_record.query_id,
            ),
        )

    def lock_audit_tail(self) -> Optional[AuditEventRecord]:
        self._connection.execute(
            "SELECT pg_advisory_xact_lock(%s::bigint)", (AUDIT_CHAIN_LOCK_KEY,)
        )
        query = f"""
            SELECT {_AUDIT_COLUMNS}
            FROM workflow_audit_events
            ORDER BY chain_position DESC
            LIMIT 1
        """
        row = self._connection.execute(query).fetchone()
        return _to_audit_event(row)

    def insert_audit_event(self, event: AuditEventRecord) -> None:
        query = f"""
            INSERT INTO workflow_audit_events ({_AUDIT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(
            query,
            (
                event.event_id,
                event.chain_position,
                event.application_id,
                event.event_type,
                event.actor_type,
                event.actor_id,
                _json_dump(event.payload),
                event.created_at,
                event.hash_version,
                event.prev_event_hash,
                event.event_hash,
            ),
        )

    def breached_task_ids(self, *, task_ids: list[str]) -> set[str]:
        if not task_ids:
            return set()
        query = """
            SELECT DISTINCT payload_json::jsonb->>'task_id' AS task_id
            FROM workflow_audit_events
            WHERE event_type = 'SLA_BREACHED'
              AND payload_json::jsonb->>'task_id' = ANY(%s)
        """
        rows = self._connection.execute(query, (list(task_ids),)).fetchall()
        return {row["task_id"] for row in rows}

    def insert_notification(self, notification: NotificationRecord) -> None:
        query = """
            INSERT INTO workflow_notifications (
                notification_id,
                user_id,
                application_id,
                event_type,
                title,
                message,
                read,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(
            query,
            (
                notification.notification_id,
                notification.user_id,
                notification.application_id,
                notification.event_type,
                notification.title,
                notification.message,
                notification.read,
                notification.created_at,
            ),
        )


class PostgresWorkflowRepository:
    def __init__(self, *, dsn: str, lock_timeout: str = DEFAULT_LOCK_TIMEOUT) -> None:
        if not dsn:
            raise RuntimeError("WORKFLOW_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("WORKFLOW_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._lock_timeout = lock_timeout
        self._init_db()

    @contextmanager
    def unit_of_work(self) -> Iterator[PostgresWorkflowUnitOfWork]:
        with closing(self._connect()) as connection:
            try:
                connection.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout}'")
                yield PostgresWorkflowUnitOfWork(connection)
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def get_application(self, *, application_id: str) -> Optional[ApplicationRecord]:
        with closing(self._connect()) as connection:
            return PostgresWorkflowUnitOfWork(connection).get_application(
                application_id=application_id
            )

    def get_application_by_arn(self, *, arn: str) -> Optional[ApplicationRecord]:
        query = f"""
            SELECT {_APPLICATION_COLUMNS}
            FROM workflow_applications
            WHERE arn = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (arn,)).fetchone()
        return _to_application(row)

    def get_task(self, *, task_id: str) -> Optional[TaskRecord]:
        with closing(self._connect()) as connection:
            return PostgresWorkflowUnitOfWork(connection).get_task(task_id=task_id)

    def list_tasks(self, *, application_id: str) -> list[TaskRecord]:
        query = f"""
            SELECT {_TASK_COLUMNS}
            FROM workflow_tasks
            WHERE application_id = %s
            ORDER BY created_at ASC, task_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (application_id,)).fetchall()
        return [_to_task(row) for row in rows]

    def list_inbox_tasks(
        self,
        *,
        roles_by_authority: dict[str, frozenset[str]],
        status: str,
        assignee_id: Optional[str],
        limit: int,
        offset: int,
    ) -> list[TaskRecord]:
        if not roles_by_authority:
            return []
        scope_clauses = []
        args: list[Any] = [status]
        for authority_id, role_ids in sorted(roles_by_authority.items()):
            scope_clauses.append("(t.authority_id = %s AND t.role_id = ANY(%s))")
            args.extend([authority_id, sorted(role_ids)])
        assignee_clause = ""
        if assignee_id is not None:
            assignee_clause = "AND t.assignee_id = %s"
            args.append(assignee_id)
        args.extend([limit, offset])
        columns = ", ".join(f"t.{column.strip()}" for column in _TASK_COLUMNS.split(","))
        query = f"""
            SELECT {columns}
            FROM workflow_tasks t
            JOIN workflow_applications a ON a.application_id = t.application_id
            WHERE t.status = %s
              AND a.disposal_type IS NULL
              AND ({" OR ".join(scope_clauses)})
              {assignee_clause}
            ORDER BY t.sla_due_at ASC NULLS LAST, t.created_at ASC
            LIMIT %s OFFSET %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(args)).fetchall()
        return [_to_task(row) for row in rows]

    def list_queries(self, *, application_id: str) -> list[QueryRecord]:
        query = f"""
            SELECT {_QUERY_COLUMNS}
            FROM workflow_queries
            WHERE application_id = %s
            ORDER BY query_number ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (application_id,)).fetchall()
        return [_to_query(row) for row in rows]

    def list_audit_events(self, *, application_id: str) -> list[AuditEventRecord]:
        query = f"""
            SELECT {_AUDIT_COLUMNS}
            FROM workflow_audit_events
            WHERE application_id = %s
            ORDER BY chain_position ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (application_id,)).fetchall()
        return [_to_audit_event(row) for row in rows]

    def audit_tail_position(self) -> int:
        query = "SELECT COALESCE(MAX(chain_position), 0) AS tail FROM workflow_audit_events"
        with closing(self._connect()) as connection:
            row = connection.execute(query).fetchone()
        return int(row["tail"])

    def list_audit_chain(
        self, *, after_position: int, up_to_position: int, limit: int
    ) -> list[AuditEventRecord]:
        query = f"""
            SELECT {_AUDIT_COLUMNS}
            FROM workflow_audit_events
            WHERE chain_position > %s AND chain_position <= %s
            ORDER BY chain_position ASC
            LIMIT %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (after_position, up_to_position, limit)).fetchall()
        return [_to_audit_event(row) for row in rows]

    def list_notifications(self, *, user_id: str) -> list[NotificationRecord]:
        query = """
            SELECT
                notification_id,
                user_id,
                application_id,
                event_type,
                title,
                message,
                read,
                created_at
            FROM workflow_notifications
            WHERE user_id = %s
            ORDER BY created_at ASC, notification_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (user_id,)).fetchall()
        return [
            NotificationRecord(
                notification_id=row["notification_id"],
                user_id=row["user_id"],
                application_id=row["application_id"],
                event_type=row["event_type"],
                title=row["title"],
                message=row["message"],
                read=bool(row["read"]),
                created_at=_as_datetime(row["created_at"]),
            )
            for row in rows
        ]

    def count_open_tasks(self, *, now: datetime) -> tuple[int, int]:
        query = """
            SELECT
                COUNT(*) AS open_tasks,
                COUNT(*) FILTER (WHERE sla_due_at < %s) AS overdue_tasks
            FROM workflow_tasks
            WHERE status IN ('PENDING', 'IN_PROGRESS')
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (now,)).fetchone()
        return int(row["open_tasks"]), int(row["overdue_tasks"])

    def list_holidays(self, *, authority_id: str, start: date, end: date) -> list[date]:
        query = """
            SELECT holiday_date
            FROM workflow_holidays
            WHERE authority_id = %s AND holiday_date BETWEEN %s AND %s
            ORDER BY holiday_date ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (authority_id, start, end)).fetchall()
        return [_as_date(row["holiday_date"]) for row in rows]

    def add_holiday(self, holiday: HolidayRecord) -> None:
        query = """
            INSERT INTO workflow_holidays (authority_id, holiday_date, description)
            VALUES (%s, %s, %s)
            ON CONFLICT (authority_id, holiday_date) DO UPDATE SET
                description=excluded.description
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query, (holiday.authority_id, holiday.holiday_date, holiday.description)
            )
            connection.commit()

    def list_officer_postings(self, *, user_id: str) -> list[OfficerPosting]:
        query = """
            SELECT user_id, authority_id, role_ids_json
            FROM workflow_officer_postings
            WHERE user_id = %s
            ORDER BY authority_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (user_id,)).fetchall()
        return [
            OfficerPosting(
                user_id=row["user_id"],
                authority_id=row["authority_id"],
                role_ids=json.loads(row["role_ids_json"]),
            )
            for row in rows
        ]

    def upsert_officer_posting(self, posting: OfficerPosting) -> None:
        query = """
            INSERT INTO workflow_officer_postings (user_id, authority_id, role_ids_json)
            VALUES (%s, %s, %s)
            ON CONFLICT (user_id, authority_id) DO UPDATE SET
                role_ids_json=excluded.role_ids_json
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (posting.user_id, posting.authority_id, json.dumps(sorted(posting.role_ids))),
            )
            connection.commit()

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="workflow")


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _json_dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _optional_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return _as_datetime(value)


def _as_date(value: Any) -> date:
    if isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(value, datetime):
        return value.date()
    return value


def _application_params(application: ApplicationRecord) -> tuple:
    return (
        application.application_id,
        application.arn,
        application.authority_id,
        application.service_key,
        application.applicant_id,
        application.current_state,
        application.disposal_type,
        application.disposed_at,
        _json_dump(application.payload),
        application.query_count,
        application.row_version,
        application.created_at,
        application.updated_at,
        application.submitted_at,
    )


def _task_params(task: TaskRecord) -> tuple:
    return (
        task.task_id,
        task.application_id,
        task.authority_id,
        task.state_id,
        task.role_id,
        task.assignee_id,
        task.status,
        task.sla_due_at,
        task.remarks,
        task.decision,
        task.created_at,
        task.started_at,
        task.completed_at,
    )


def _query_params(query: QueryRecord) -> tuple:
    return (
        query.query_id,
        query.application_id,
        query.query_number,
        query.message,
        query.response_message,
        query.status,
        query.raised_by_id,
        query.raised_by_role,
        query.raised_from_state,
        query.return_transition_id,
        json.dumps(query.unlocked_fields),
        query.response_due_at,
        query.raised_at,
        query.responded_at,
    )


def _to_application(row) -> Optional[ApplicationRecord]:
    if row is None:
        return None
    return ApplicationRecord(
        application_id=row["application_id"],
        arn=row["arn"],
        authority_id=row["authority_id"],
        service_key=row["service_key"],
        applicant_id=row["applicant_id"],
        current_state=row["current_state"],
        disposal_type=row["disposal_type"],
        disposed_at=_optional_datetime(row["disposed_at"]),
        payload=json.loads(row["payload_json"]),
        query_count=int(row["query_count"]),
        row_version=int(row["row_version"]),
        created_at=_as_datetime(row["created_at"]),
        updated_at=_as_datetime(row["updated_at"]),
        submitted_at=_optional_datetime(row["submitted_at"]),
    )


def _to_task(row) -> Optional[TaskRecord]:
    if row is None:
        return None
    return TaskRecord(
        task_id=row["task_id"],
        application_id=row["application_id"],
        authority_id=row["authority_id"],
        state_id=row["state_id"],
        role_id=row["role_id"],
        assignee_id=row["assignee_id"],
        status=row["status"],
        sla_due_at=_optional_datetime(row["sla_due_at"]),
        remarks=row["remarks"],
        decision=row["decision"],
        created_at=_as_datetime(row["created_at"]),
        started_at=_optional_datetime(row["started_at"]),
        completed_at=_optional_datetime(row["completed_at"]),
    )


def _to_query(row) -> Optional[QueryRecord]:
    if row is None:
        return None
    return QueryRecord(
        query_id=row["query_id"],
        application_id=row["application_id"],
        query_number=int(row["query_number"]),
        message=row["message"],
        response_message=row["response_message"],
        status=row["status"],
        raised_by_id=row["raised_by_id"],
        raised_by_role=row["raised_by_role"],
        raised_from_state=row["raised_from_state"],
        return_transition_id=row["return_transition_id"],
        unlocked_fields=json.loads(row["unlocked_fields_json"]),
        response_due_at=_as_datetime(row["response_due_at"]),
        raised_at=_as_datetime(row["raised_at"]),
        responded_at=_optional_datetime(row["responded_at"]),
    )


def _to_audit_event(row) -> Optional[AuditEventRecord]:
    if row is None:
        return None
    return AuditEventRecord(
        event_id=row["event_id"],
        chain_position=int(row["chain_position"]),
        application_id=row["application_id"],
        event_type=row["event_type"],
        actor_type=row["actor_type"],
        actor_id=row["actor_id"],
        payload=json.loads(row["payload_json"]),
        created_at=_as_datetime(row["created_at"]),
        hash_version=row["hash_version"],
        prev_event_hash=row["prev_event_hash"],
        event_hash=row["event_hash"],
    )
