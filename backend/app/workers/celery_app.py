from celery import Celery

from app.core.config import settings

# Producer-side app: the approval engine only publishes completion signals;
# the consuming tasks live in the expense/project/budget services.
celery_app = Celery(
    "approval_engine",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
    task_routes={
        settings.COMPLETION_SIGNAL_TASK: {"queue": settings.COMPLETION_SIGNAL_QUEUE},
    },
)
