from celery import Celery

from app.core.config import get_settings
from app.core.database import SessionLocal
from app.crosssell.workflow import workflow_service

settings = get_settings()

celery_app = Celery("crosssell_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "process-overdue-tasks": {
        "task": "app.tasks.process_overdue_tasks",
        "schedule": float(settings.overdue_scan_interval_seconds),
    },
    "process-won-opportunities": {
        "task": "app.tasks.process_won_opportunities",
        "schedule": float(settings.overdue_scan_interval_seconds),
    },
    "cleanup-notifications": {
        "task": "app.tasks.cleanup_notifications",
        "schedule": 86400.0,
    },
}


@celery_app.task(name="app.tasks.process_overdue_tasks")
def process_overdue_tasks_task() -> dict:
    with SessionLocal() as session:
        return workflow_service.process_overdue_tasks(session).as_dict()


@celery_app.task(name="app.tasks.process_won_opportunities")
def process_won_opportunities_task() -> dict:
    with SessionLocal() as session:
        return workflow_service.process_won_opportunities(session).as_dict()


@celery_app.task(name="app.tasks.cleanup_notifications")
def cleanup_notifications_task(days: int | None = None) -> dict:
    with SessionLocal() as session:
        return workflow_service.cleanup_notifications(session, days=days).as_dict()
