from celery import Celery
from celery.schedules import schedule
from kombu import Queue

from enrollment_bridge.core.config import settings

celery_app = Celery(
    "enrollment_bridge",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_default_queue="enrollment",
    task_queues=(
        Queue("enrollment"),
        Queue("scheduler"),
    ),
    task_routes={
        "workers.tasks.create_moodle_user": {"queue": "enrollment"},
        "workers.tasks.enroll_order_courses": {"queue": "enrollment"},
        "workers.tasks.retry_failed_enrollments": {"queue": "scheduler"},
        "workers.tasks.worker_heartbeat": {"queue": "scheduler"},
    },
    beat_schedule={
        "failed-enrollment-sweep": {
            "task": "workers.tasks.retry_failed_enrollments",
            "schedule": schedule(settings.failed_enrollment_sweep_interval_seconds),
            "options": {"queue": "scheduler"},
        },
        "worker-heartbeat-every-15s": {
            "task": "workers.tasks.worker_heartbeat",
            "schedule": schedule(15.0),
            "options": {"queue": "scheduler"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
