import json
import logging
from enum import StrEnum

from redis import Redis
from redis.exceptions import RedisError

from enrollment_bridge.infrastructure.observability.metrics import measure_redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "compensation:user"


class CompensationStatus(StrEnum):
    PENDING_ENROLLMENT = "pending_enrollment"
    COMPLETED = "completed"
    FAILED = "failed"


def compensation_key(order_id: str) -> str:
    return f"{KEY_PREFIX}:{order_id}"


class CompensationCache:
    """Short-lived per-order state in Redis.

    The cache is advisory. Read failures behave like a miss and write failures
    are logged, so callers must tolerate lost updates.
    """

    def __init__(self, redis_client: Redis) -> None:
        self.redis_client = redis_client

    def get(self, order_id: str) -> dict | None:
        try:
            with measure_redis("compensation_get"):
                raw = self.redis_client.get(compensation_key(order_id))
        except RedisError:
            logger.warning("compensation_cache_read_failed order_id=%s", order_id, exc_info=True)
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("compensation_cache_corrupt order_id=%s", order_id)
            return None
        return data if isinstance(data, dict) else None

    def put(self, order_id: str, state: dict, *, ttl_hours: int) -> None:
        try:
            with measure_redis("compensation_set"):
                self.redis_client.set(
                    compensation_key(order_id),
                    json.dumps(state),
                    ex=max(1, int(ttl_hours)) * 3600,
                )
        except RedisError:
            logger.warning("compensation_cache_write_failed order_id=%s", order_id, exc_info=True)
