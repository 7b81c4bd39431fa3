"""Celery application configuration.

Celery is the invocation platform: the launch, every fan-out group and every
chunk render run as independent tasks with no shared memory.
"""

from celery import Celery
from celery.signals import after_setup_logger

from splitrender.config import get_settings
from splitrender.logging_config import configure_logging

settings = get_settings()

celery_app = Celery(
    "splitrender",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["splitrender.tasks.launch_task", "splitrender.tasks.fire_task"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,  # Upper bound of one orchestrator invocation
    task_soft_time_limit=870,
    worker_prefetch_multiplier=1,
    task_acks_late=True,  # Workers tolerate at-least-once delivery
    task_reject_on_worker_lost=True,
    task_ignore_result=True,  # Dispatch is fire-and-forget
)


@after_setup_logger.connect
def _setup_logging(**kwargs) -> None:
    configure_logging()
