"""
Celery configuration for deferred export work
"""
from celery import Celery
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

celery_app = Celery(
    "koperasi_exports",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.modules.exports.tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Export tasks are not retried by the engine; the broker redelivers
    # unacknowledged messages after a worker crash.
    task_acks_late=True,

    result_expires=3600,  # 1 hour

    task_routes={
        "app.modules.exports.tasks.*": {"queue": settings.EXPORT_QUEUE},
    },

    beat_schedule={
        "cleanup-old-exports": {
            "task": "app.modules.exports.tasks.cleanup_old_exports",
            "schedule": 86400.0,  # Run daily
        },
    }
)


if __name__ == "__main__":
    celery_app.start()
