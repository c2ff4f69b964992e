"""
Celery application: broker and result backend from settings.
Tasks are in app.workers.tasks (payments reconciliation, generation).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from app.core.config import settings

celery_app = Celery(
    "app",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.payments",
        "app.workers.tasks.generation",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=3600,
    result_expires=86400,
    beat_schedule={
        "poll-pending-payments": {
            "task": "app.workers.tasks.payments.poll_pending_payments",
            "schedule": crontab(minute="*/5"),
        },
        "expire-stale-payments": {
            "task": "app.workers.tasks.payments.expire_stale_payments",
            "schedule": crontab(minute=15),
        },
        "audit-balances": {
            "task": "app.workers.tasks.payments.audit_balances",
            "schedule": crontab(minute=30, hour="*/6"),
        },
    },
)

celery_app.conf.task_routes = {
    "app.workers.tasks.generation.run_generation": {"queue": "generation"},
}


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    from app.core.logging import configure_logging

    configure_logging()


celery_app.autodiscover_tasks(["app.workers.tasks"])
