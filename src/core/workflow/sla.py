import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from src.core.workflow.audit_chain import AuditChainRecorder
from src.core.workflow.models import BacklogMetrics, BreachSweepResult, NotificationRecord
from src.core.workflow.repository import WorkflowRepository

logger = logging.getLogger(__name__)

SLA_BREACHED_EVENT = "SLA_BREACHED"


class SlaBreachDetector:
    """Periodic sweep that records each overdue open task once.

    The whole sweep runs in one unit of work. A failed sweep is rolled back, logged
    and reported in ``errors``; the next scheduled pass retries it.
    """

    def __init__(
        self,
        *,
        repository: WorkflowRepository,
        audit: AuditChainRecorder,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._clock = clock

    def detect_breaches(self, now: Optional[datetime] = None) -> BreachSweepResult:
        now = now or self._clock()
        breached_tasks = 0
        try:
            with self._repository.unit_of_work() as uow:
                overdue = uow.list_overdue_open_tasks(now=now)
                breached_tasks = len(overdue)
                already_recorded = uow.breached_task_ids(
                    task_ids=[task.task_id for task in overdue]
                )
                events_created = 0
                notifications_created = 0
                for task in overdue:
                    if task.task_id in already_recorded:
                        continue
                    application = uow.get_application(application_id=task.application_id)
                    self._audit.append(
                        uow,
                        event_type=SLA_BREACHED_EVENT,
                        application_id=task.application_id,
                        actor_type="SYSTEM",
                        actor_id=None,
                        payload={
                            "task_id": task.task_id,
                            "state_id": task.state_id,
                            "role_id": task.role_id,
                            "sla_due_at": task.sla_due_at.isoformat(),
                            "breached_at": now.isoformat(),
                        },
                        created_at=now,
                    )
                    events_created += 1
                    annotation = f"SLA_BREACHED at {now.isoformat()}"
                    task.remarks = f"{task.remarks}; {annotation}" if task.remarks else annotation
                    uow.update_task(task)
                    if application is not None:
                        uow.insert_notification(
                            NotificationRecord(
                                notification_id=f"ntf_{uuid.uuid4().hex[:12]}",
                                user_id=application.applicant_id,
                                application_id=application.application_id,
                                event_type=SLA_BREACHED_EVENT,
                                title="Application SLA Breach",
                                message=(
                                    f"Processing of application "
                                    f"{application.arn or application.application_id} "
                                    f"at {task.state_id} is past its due date."
                                ),
                                created_at=now,
                            )
                        )
                        notifications_created += 1
        except Exception as exc:
            logger.exception(
                "SLA_BATCH_FAILED",
                extra={"extra_fields": {"breached_tasks": breached_tasks}},
            )
            return BreachSweepResult(
                breached_tasks=breached_tasks,
                breach_events_created=0,
                notifications_created=0,
                errors=[f"SLA_BATCH_FAILED: {exc}"],
            )
        if events_created:
            logger.info(
                "workflow.sla.breaches_recorded",
                extra={
                    "extra_fields": {
                        "breached_tasks": breached_tasks,
                        "breach_events_created": events_created,
                    }
                },
            )
        return BreachSweepResult(
            breached_tasks=breached_tasks,
            breach_events_created=events_created,
            notifications_created=notifications_created,
        )

    def backlog_metrics(self, now: Optional[datetime] = None) -> BacklogMetrics:
        now = now or self._clock()
        open_tasks, overdue_tasks = self._repository.count_open_tasks(now=now)
        return BacklogMetrics(open_tasks=open_tasks, overdue_tasks=overdue_tasks, measured_at=now)
