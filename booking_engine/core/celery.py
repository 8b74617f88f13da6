from celery import Celery

from booking_engine.core.config import settings


# Producer-side app. Notification tasks are consumed by the messaging workers,
# which register them under the names below.
celery_app = Celery(
    "booking_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

SEND_CONFIRMATION_TASK = "notifications.send_confirmation"
SCHEDULE_REMINDER_TASK = "notifications.schedule_reminder"

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
    task_routes={
        "notifications.*": {"queue": settings.NOTIFICATION_QUEUE},
    },
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    worker_max_tasks_per_child=1000,
)
