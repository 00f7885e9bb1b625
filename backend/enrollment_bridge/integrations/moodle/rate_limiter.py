import logging
import sys

from redis import Redis
from redis.exceptions import RedisError

from enrollment_bridge.core.config import Settings
from enrollment_bridge.infrastructure.observability.metrics import measure_redis
from enrollment_bridge.integrations.moodle.errors import MoodleRateLimitError

logger = logging.getLogger(__name__)

GLOBAL_IDENTIFIER = "global"
UNLIMITED = sys.maxsize


class MoodleRateLimiter:
    """Fixed-window throttle for outbound Moodle calls.

    ``attempt`` only reads the counter and ``hit`` only writes it, so callers
    check, call, then record. Two workers can both pass ``attempt`` on the last
    free slot; the limiter is a best-effort throttle, not admission control.
    """

    key_prefix = "moodle_rate_limit"

    def __init__(
        self,
        redis_client: Redis,
        *,
        enabled: bool = True,
        max_attempts: int = 60,
        decay_seconds: int = 60,
    ) -> None:
        self.redis_client = redis_client
        self.enabled = enabled
        self.max_attempts = max(1, int(max_attempts))
        self.decay_seconds = max(1, int(decay_seconds))

    @classmethod
    def from_settings(cls, redis_client: Redis, settings: Settings) -> "MoodleRateLimiter":
        return cls(
            redis_client,
            enabled=settings.moodle_rate_limit_enabled,
            max_attempts=settings.moodle_rate_limit_max_attempts,
            decay_seconds=settings.moodle_rate_limit_decay_seconds,
        )

    def _key(self, identifier: str) -> str:
        return f"{self.key_prefix}:{identifier}"

    def _current(self, key: str) -> int:
        with measure_redis("moodle_rate_limit_get"):
            raw = self.redis_client.get(key)
        return int(raw or 0)

    def attempt(self, identifier: str = GLOBAL_IDENTIFIER) -> bool:
        if not self.enabled:
            return True

        key = self._key(identifier)
        try:
            attempts = self._current(key)
            if attempts < self.max_attempts:
                return True
            with measure_redis("moodle_rate_limit_ttl"):
                ttl = int(self.redis_client.ttl(key))
        except RedisError:
            # Fail-open: an unavailable counter must not stop enrollments.
            logger.warning("moodle_rate_limit_unavailable identifier=%s", identifier, exc_info=True)
            return True

        retry_after = ttl if ttl > 0 else self.decay_seconds
        logger.warning(
            "moodle_rate_limit_exceeded identifier=%s attempts=%s max_attempts=%s retry_after=%s",
            identifier,
            attempts,
            self.max_attempts,
            retry_after,
        )
        raise MoodleRateLimitError(
            self.max_attempts,
            retry_after,
            context={"identifier": identifier},
        )

    def hit(self, identifier: str = GLOBAL_IDENTIFIER) -> None:
        if not self.enabled:
            return

        key = self._key(identifier)
        try:
            with measure_redis("moodle_rate_limit_incr"):
                current = int(self.redis_client.incr(key))
                if current == 1:
                    self.redis_client.expire(key, self.decay_seconds)
        except RedisError:
            logger.warning("moodle_rate_limit_hit_failed identifier=%s", identifier, exc_info=True)
            return

        logger.debug(
            "moodle_api_call_tracked identifier=%s attempts=%s max_attempts=%s",
            identifier,
            current,
            self.max_attempts,
        )

    def remaining(self, identifier: str = GLOBAL_IDENTIFIER) -> int:
        if not self.enabled:
            return UNLIMITED
        try:
            attempts = self._current(self._key(identifier))
        except RedisError:
            return self.max_attempts
        return max(0, self.max_attempts - attempts)

    def reset(self, identifier: str = GLOBAL_IDENTIFIER) -> None:
        with measure_redis("moodle_rate_limit_reset"):
            self.redis_client.delete(self._key(identifier))
