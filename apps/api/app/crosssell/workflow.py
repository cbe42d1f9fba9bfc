from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Iterator

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.context import correlation_scope
from app.core.config import get_settings
from app.crosssell.models import Opportunity
from app.crosssell.notifications import notification_dispatcher, resolve_bu_head
from app.crosssell.repositories import NotificationRepository, TaskRepository
from app.crosssell.schemas import NotificationCreate
from app.crosssell.service import add_service_to_client, notification_service, utcnow
from app.metrics import observe_job


logger = logging.getLogger("app.crosssell.jobs")
tracer = trace.get_tracer("app.crosssell.jobs")


@dataclass
class JobResult:
    job_type: str
    processed: int = 0
    notifications: int = 0
    details: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


@contextmanager
def _job_run(job_type: str) -> Iterator[JobResult]:
    result = JobResult(job_type=job_type)
    started = time.perf_counter()
    final_status = "Failed"
    with correlation_scope(job_type) as correlation_id, tracer.start_as_current_span("crosssell.job.run") as span:
        span.set_attribute("job_type", job_type)
        span.set_attribute("correlation_id", correlation_id)
        logger.info("job.started", extra={"job_type": job_type, "status": "Running", "duration_ms": 0.0})
        try:
            yield result
            final_status = "Succeeded"
            span.set_attribute("processed", result.processed)
            logger.info(
                "job.finished",
                extra={
                    "job_type": job_type,
                    "status": final_status,
                    "count": result.processed,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            logger.info(
                "job.finished",
                extra={
                    "job_type": job_type,
                    "status": final_status,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error": str(exc)[:500],
                },
            )
            raise
        finally:
            observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WorkflowService:
    def __init__(self) -> None:
        self.task_repository = TaskRepository()
        self.notification_repository = NotificationRepository()

    def process_overdue_tasks(self, session: Session, now: datetime | None = None) -> JobResult:
        """Remind assignees of overdue tasks and escalate long-overdue ones to the BU head.

        Each kind of notification goes out at most once per task per UTC day, so the
        job can run on any schedule.
        """
        current = _as_utc(now or utcnow())
        start_of_day = datetime.combine(current.date(), dt_time.min, tzinfo=timezone.utc)
        escalation_after = timedelta(hours=get_settings().task_escalation_hours)

        with _job_run("process_overdue_tasks") as result:
            for task in self.task_repository.list_overdue(session, current.date()):
                result.processed += 1
                due_start = datetime.combine(task.due_date, dt_time.min, tzinfo=timezone.utc)
                pending: list[NotificationCreate] = []

                if task.assigned_user_id is not None and not self._already_sent(
                    session, task.assigned_user_id, "task_overdue", task.id, start_of_day
                ):
                    pending.append(
                        NotificationCreate(
                            user_id=task.assigned_user_id,
                            type="task_overdue",
                            title="Task Overdue",
                            message=f'Task "{task.name}" is overdue. Please complete it as soon as possible.',
                            related_to="task",
                            related_id=task.id,
                        )
                    )

                if current - due_start >= escalation_after:
                    business_unit = task.opportunity.service.business_unit if task.opportunity else None
                    bu_head_id = resolve_bu_head(session, business_unit)
                    if bu_head_id is not None and not self._already_sent(
                        session, bu_head_id, "task_overdue_escalation", task.id, start_of_day
                    ):
                        assignee = task.assigned_user.username if task.assigned_user else "unassigned"
                        pending.append(
                            NotificationCreate(
                                user_id=bu_head_id,
                                type="task_overdue_escalation",
                                title="Task Overdue Escalation",
                                message=f'Task "{task.name}" assigned to {assignee} is more than 24 hours overdue.',
                                related_to="task",
                                related_id=task.id,
                            )
                        )

                if pending:
                    notification_service.create_many(session, pending)
                    result.notifications += len(pending)
                    result.details.append(task.id)
        return result

    def process_won_opportunities(self, session: Session) -> JobResult:
        """Add the service of every won opportunity to its client when it is missing."""
        with _job_run("process_won_opportunities") as result:
            won = session.scalars(
                select(Opportunity).where(Opportunity.status == "won").order_by(Opportunity.id.asc())
            ).all()
            for opportunity in won:
                client = opportunity.client
                service = opportunity.service
                if client is None or service is None or service.status != "active":
                    continue
                if not add_service_to_client(client, service.id):
                    continue
                session.commit()
                result.processed += 1
                result.details.append(opportunity.id)
                created = notification_dispatcher.on_opportunity_won(
                    session,
                    {
                        "opportunity_id": opportunity.id,
                        "name": opportunity.name,
                        "client_name": client.name,
                        "service_name": service.name,
                        "business_unit": service.business_unit,
                        "account_owner_id": client.account_owner_id,
                    },
                    None,
                )
                result.notifications += len(created)
        return result

    def cleanup_notifications(self, session: Session, days: int | None = None, now: datetime | None = None) -> JobResult:
        retention = days if days is not None else get_settings().notification_retention_days
        with _job_run("cleanup_notifications") as result:
            result.processed = notification_service.cleanup_older_than(session, retention, now=now)
        return result

    def _already_sent(
        self,
        session: Session,
        user_id: int,
        notification_type: str,
        task_id: int,
        since: datetime,
    ) -> bool:
        return self.notification_repository.exists_since(
            session,
            user_id=user_id,
            notification_type=notification_type,
            related_id=task_id,
            since=since,
        )


workflow_service = WorkflowService()
