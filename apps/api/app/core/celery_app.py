from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("crm_api", broker=settings.redis_url, backend=settings.redis_url, include=["app.crm.tasks"])
celery_app.conf.update(
    task_ignore_result=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_serializer="json",
    accept_content=["json"],
    # Publish retries stay under one second in total.
    task_publish_retry_policy={"max_retries": 2, "interval_start": 0, "interval_step": 0.2, "interval_max": 0.5},
)
