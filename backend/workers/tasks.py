import logging
from datetime import UTC, datetime

from redis.exceptions import RedisError

from enrollment_bridge.application.services.compensation_cache import CompensationCache
from enrollment_bridge.application.services.compensation_service import CompensationService
from enrollment_bridge.application.services.enrollment_orchestrator import (
    UserReadyMessage,
    dispatch_enrollment,
    enroll_courses,
    fail_enrollment,
    fail_user_creation,
    provision_user,
)
from enrollment_bridge.application.services.medusa_order import MedusaOrder
from enrollment_bridge.core.config import settings
from enrollment_bridge.infrastructure.cache.redis_client import get_redis_client
from enrollment_bridge.infrastructure.db.session import SessionLocal
from enrollment_bridge.infrastructure.logging.context import reset_order_id, set_order_id
from enrollment_bridge.infrastructure.observability.metrics import measure_redis
from enrollment_bridge.integrations.moodle.client import MoodleClient
from enrollment_bridge.integrations.moodle.errors import MoodleConfigurationError, classify_error
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)

MAX_TASK_RETRIES = max(0, settings.enrollment_max_attempts - 1)
TASK_TIME_LIMIT_SECONDS = settings.enrollment_job_time_limit_seconds
TASK_SOFT_TIME_LIMIT_SECONDS = max(1, TASK_TIME_LIMIT_SECONDS - 10)
TASK_DELIVERY_TTL_SECONDS = 7 * 24 * 3600


def _retry_countdown(exc: BaseException, attempt: int) -> int:
    return max(settings.retry_countdown(attempt), int(getattr(exc, "retry_after_seconds", 0) or 0))


def _budget_exhausted(attempt: int) -> bool:
    return attempt >= settings.enrollment_max_attempts


def _record_delivery(redis_client, task_id: str | None) -> int:
    """Count deliveries of one task id, retries included. Returns 0 when unknown.

    A worker killed at the hard time limit never reaches the retry bookkeeping,
    and the broker redelivers with the same ``request.retries``.
    """
    if not task_id:
        return 0
    key = f"task_deliveries:{task_id}"
    try:
        with measure_redis("task_delivery_incr"):
            deliveries = int(redis_client.incr(key))
            if deliveries == 1:
                redis_client.expire(key, TASK_DELIVERY_TTL_SECONDS)
    except RedisError:
        logger.warning("task_delivery_count_unavailable task_id=%s", task_id, exc_info=True)
        return 0
    return deliveries


def _delivery_budget_error(deliveries: int) -> RuntimeError:
    return RuntimeError(f"Task delivered {deliveries} times without completing")


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(
    bind=True,
    name="workers.tasks.create_moodle_user",
    max_retries=MAX_TASK_RETRIES,
    acks_late=True,
    time_limit=TASK_TIME_LIMIT_SECONDS,
    soft_time_limit=TASK_SOFT_TIME_LIMIT_SECONDS,
)
def create_moodle_user(self, order: dict) -> dict:
    medusa_order = MedusaOrder.from_dict(order)
    order_token = set_order_id(medusa_order.order_id)
    redis_client = get_redis_client()
    deliveries = _record_delivery(redis_client, self.request.id)
    attempt = max(self.request.retries + 1, deliveries)
    try:
        with SessionLocal() as db:
            if attempt > settings.enrollment_max_attempts:
                error = _delivery_budget_error(deliveries)
                fail_user_creation(db, order=medusa_order, error=error)
                return {"status": "failed", "order_id": medusa_order.order_id, "error": str(error)}
            try:
                with MoodleClient.from_settings(settings, redis_client) as client:
                    message = provision_user(db, client=client, order=medusa_order)
            except MoodleConfigurationError:
                logger.exception("moodle_not_configured order_id=%s", medusa_order.order_id)
                raise
            except Exception as exc:
                db.rollback()
                if _budget_exhausted(attempt):
                    fail_user_creation(db, order=medusa_order, error=exc)
                    return {"status": "failed", "order_id": medusa_order.order_id, "error": str(exc)}
                countdown = _retry_countdown(exc, attempt)
                logger.warning(
                    "create_moodle_user_retry order_id=%s attempt=%s countdown=%s kind=%s error=%s",
                    medusa_order.order_id,
                    attempt,
                    countdown,
                    classify_error(exc),
                    str(exc),
                )
                raise self.retry(exc=exc, countdown=countdown)

        if message is None:
            return {"status": "skipped", "order_id": medusa_order.order_id}
        dispatch_enrollment(message)
        return {
            "status": "user_created",
            "order_id": medusa_order.order_id,
            "moodle_user_id": message.moodle_user.id,
            "existing": message.moodle_user.existing,
        }
    finally:
        reset_order_id(order_token)


@celery_app.task(
    bind=True,
    name="workers.tasks.enroll_order_courses",
    max_retries=MAX_TASK_RETRIES,
    acks_late=True,
    time_limit=TASK_TIME_LIMIT_SECONDS,
    soft_time_limit=TASK_SOFT_TIME_LIMIT_SECONDS,
)
def enroll_order_courses(self, message: dict) -> dict:
    user_ready = UserReadyMessage.from_dict(message)
    order_token = set_order_id(user_ready.order_id)
    redis_client = get_redis_client()
    deliveries = _record_delivery(redis_client, self.request.id)
    attempt = max(self.request.retries + 1, deliveries)
    try:
        with SessionLocal() as db:
            compensation = CompensationService(db, CompensationCache(redis_client))
            if attempt > settings.enrollment_max_attempts:
                error = _delivery_budget_error(deliveries)
                fail_enrollment(db, compensation=compensation, message=user_ready, error=error)
                return {"status": "enrollment_failed", "order_id": user_ready.order_id, "error": str(error)}
            try:
                with MoodleClient.from_settings(settings, redis_client) as client:
                    outcome = enroll_courses(db, client=client, compensation=compensation, message=user_ready)
            except MoodleConfigurationError:
                logger.exception("moodle_not_configured order_id=%s", user_ready.order_id)
                raise
            except Exception as exc:
                db.rollback()
                if _budget_exhausted(attempt):
                    fail_enrollment(db, compensation=compensation, message=user_ready, error=exc)
                    return {"status": "enrollment_failed", "order_id": user_ready.order_id, "error": str(exc)}
                countdown = _retry_countdown(exc, attempt)
                logger.warning(
                    "enroll_order_courses_retry order_id=%s attempt=%s countdown=%s kind=%s error=%s",
                    user_ready.order_id,
                    attempt,
                    countdown,
                    getattr(exc, "kind", classify_error(exc)),
                    str(exc),
                )
                raise self.retry(exc=exc, countdown=countdown)

        return {
            "status": outcome.status,
            "order_id": outcome.order_id,
            "enrolled": outcome.enrolled,
            "already_enrolled": outcome.already_enrolled,
        }
    finally:
        reset_order_id(order_token)


@celery_app.task(name="workers.tasks.retry_failed_enrollments")
def retry_failed_enrollments(days: int | None = None) -> dict:
    redis_client = get_redis_client()
    with SessionLocal() as db, MoodleClient.from_settings(settings, redis_client) as client:
        service = CompensationService(db, CompensationCache(redis_client), moodle_client=client)
        resolved = service.retry_failed_enrollments(days)
        db.commit()
    logger.info("failed_enrollment_sweep_completed resolved=%s", resolved)
    return {"resolved": resolved}
