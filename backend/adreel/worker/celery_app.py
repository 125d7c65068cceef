"""
Celery application for video production jobs.

Broker/backend: Redis (REDIS_URL env).
Default queue: production.
"""
from celery import Celery

from adreel.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "adreel_factory",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=2 * 3600,       # 2 hours hard limit
    task_soft_time_limit=90 * 60,
    task_default_queue="production",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout must exceed task_time_limit or long jobs get redelivered
    broker_transport_options={"visibility_timeout": 3 * 3600},
)

celery_app.autodiscover_tasks(["adreel.worker"])
