from celery import Celery
from paypulse.config import settings

celery_app = Celery("paypulse", broker=settings.REDIS_URL)
celery_app.conf.update(
    result_backend=settings.REDIS_URL,
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
)

# Ensure tasks are imported to register them with Celery
import paypulse.tasks  # noqa: E402,F401
