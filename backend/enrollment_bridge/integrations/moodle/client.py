from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
import string
from dataclasses import asdict, dataclass
from time import perf_counter

import httpx
from redis import Redis
from redis.exceptions import RedisError

from enrollment_bridge.core.config import Settings
from enrollment_bridge.infrastructure.observability.metrics import measure_redis, record_moodle_call
from enrollment_bridge.integrations.moodle.errors import (
    MoodleConfigurationError,
    MoodleConnectionError,
    MoodleDuplicateError,
    MoodleServiceError,
    MoodleValidationError,
    error_for_http_status,
    error_for_remote_exception,
)
from enrollment_bridge.integrations.moodle.rate_limiter import MoodleRateLimiter
from enrollment_bridge.integrations.moodle.roles import MoodleRole

logger = logging.getLogger(__name__)

REST_ENDPOINT = "/webservice/rest/server.php"
PASSWORD_SPECIALS = "!@#$%"
_CONTROL_CHARS = "".join(chr(code) for code in range(32))
_USERNAME_STRIP = re.compile(r"[^a-zA-Z0-9]")


@dataclass(frozen=True)
class MoodleUser:
    id: int
    username: str
    email: str
    firstname: str = ""
    lastname: str = ""
    existing: bool = False
    password: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("password")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> MoodleUser:
        return cls(
            id=int(data["id"]),
            username=str(data.get("username") or ""),
            email=str(data.get("email") or ""),
            firstname=str(data.get("firstname") or ""),
            lastname=str(data.get("lastname") or ""),
            existing=bool(data.get("existing", False)),
        )


def flatten_params(params: dict | list | tuple, prefix: str = "") -> dict[str, str]:
    """Flatten nested parameters into Moodle's ``users[0][email]`` form fields."""
    flat: dict[str, str] = {}
    items = params.items() if isinstance(params, dict) else enumerate(params)
    for key, value in items:
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, (dict, list, tuple)):
            flat.update(flatten_params(value, name))
        elif value is None:
            continue
        elif isinstance(value, bool):
            flat[name] = "1" if value else "0"
        else:
            flat[name] = str(value)
    return flat


def generate_username(email: str) -> str:
    local_part = email.split("@", 1)[0]
    username = _USERNAME_STRIP.sub("", local_part).lower()
    if len(username) < 4:
        username = hashlib.md5(email.encode("utf-8")).hexdigest()[:8]
    return username + secrets.token_hex(5)


def generate_password(length: int = 12) -> str:
    pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits, PASSWORD_SPECIALS]
    alphabet = "".join(pools)
    chars = [secrets.choice(pool) for pool in pools]
    chars.extend(secrets.choice(alphabet) for _ in range(max(0, length - len(pools))))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class MoodleClient:
    """Stateless wrapper around the Moodle REST web service.

    Every call passes through the rate limiter and every failure surfaces as a
    ``MoodleServiceError`` subclass.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        rate_limiter: MoodleRateLimiter,
        redis_client: Redis | None = None,
        timeout_seconds: float = 30.0,
        user_cache_ttl_seconds: int = 3600,
        profile_defaults: dict | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        if not base_url or not token:
            raise MoodleConfigurationError("Moodle URL and token must be configured")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.rate_limiter = rate_limiter
        self.redis_client = redis_client
        self.timeout_seconds = timeout_seconds
        self.user_cache_ttl_seconds = user_cache_ttl_seconds
        self.profile_defaults = profile_defaults or {}
        self._http = http_client or httpx.Client(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, redis_client: Redis) -> MoodleClient:
        if not settings.moodle_url or not settings.moodle_token:
            raise MoodleConfigurationError("MOODLE_URL and MOODLE_TOKEN must be set")
        return cls(
            base_url=settings.moodle_url,
            token=settings.moodle_token,
            rate_limiter=MoodleRateLimiter.from_settings(redis_client, settings),
            redis_client=redis_client,
            timeout_seconds=settings.moodle_timeout_seconds,
            user_cache_ttl_seconds=settings.moodle_user_cache_ttl_seconds,
            profile_defaults={
                "auth": "manual",
                "lang": settings.moodle_user_lang,
                "timezone": settings.moodle_user_timezone,
                "mailformat": 1,
                "maildisplay": 2,
                "city": settings.moodle_user_city,
                "country": settings.moodle_user_country,
            },
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> MoodleClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def call(self, function: str, params: dict | None = None):
        self.rate_limiter.attempt()

        data = {
            "wstoken": self.token,
            "wsfunction": function,
            "moodlewsrestformat": "json",
            **flatten_params(params or {}),
        }
        started_at = perf_counter()
        try:
            response = self._http.post(f"{self.base_url}{REST_ENDPOINT}", data=data, timeout=self.timeout_seconds)
        except httpx.TimeoutException as exc:
            record_moodle_call(function, "timeout", perf_counter() - started_at)
            logger.error("moodle_api_timeout function=%s error=%s", function, exc)
            raise MoodleConnectionError(f"Moodle request timed out: {exc}", context={"function": function}) from exc
        except httpx.HTTPError as exc:
            record_moodle_call(function, "connection_error", perf_counter() - started_at)
            logger.error("moodle_api_connection_error function=%s error=%s", function, exc)
            raise MoodleConnectionError(
                f"Failed to connect to Moodle: {exc}", context={"function": function}
            ) from exc

        duration = perf_counter() - started_at
        self.rate_limiter.hit()
        logger.info(
            "moodle_api_call function=%s status=%s time_ms=%s rate_limit_remaining=%s",
            function,
            response.status_code,
            round(duration * 1000, 2),
            self.rate_limiter.remaining(),
        )

        if response.status_code >= 400:
            record_moodle_call(function, "http_error", duration)
            retry_after = response.headers.get("Retry-After", "")
            raise error_for_http_status(
                function,
                response.status_code,
                response.text,
                retry_after_seconds=int(retry_after) if retry_after.isdigit() else 0,
            )

        body = response.text.strip(_CONTROL_CHARS)
        if not body or body == "null":
            record_moodle_call(function, "ok", duration)
            return None
        try:
            payload = json.loads(body)
        except ValueError as exc:
            record_moodle_call(function, "invalid_json", duration)
            raise MoodleValidationError(
                f"Invalid JSON response from Moodle: {exc}", context={"function": function}
            ) from exc

        if isinstance(payload, dict) and "exception" in payload:
            record_moodle_call(function, "remote_exception", duration)
            error = error_for_remote_exception(function, payload)
            logger.error("moodle_api_error function=%s error_code=%s", function, error.context.get("errorcode"))
            raise error

        record_moodle_call(function, "ok", duration)
        return payload

    def _user_cache_key(self, email: str) -> str:
        return f"moodle_user:{email.strip().lower()}"

    def _cached_user(self, email: str) -> MoodleUser | None:
        if self.redis_client is None:
            return None
        try:
            with measure_redis("moodle_user_cache_get"):
                raw = self.redis_client.get(self._user_cache_key(email))
        except RedisError:
            logger.warning("moodle_user_cache_unavailable", exc_info=True)
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return MoodleUser.from_dict({**data, "existing": True})
        except (ValueError, TypeError, KeyError):
            logger.warning("moodle_user_cache_corrupt email=%s", email)
            return None

    def _cache_user(self, user: MoodleUser) -> None:
        if self.redis_client is None:
            return
        try:
            with measure_redis("moodle_user_cache_set"):
                self.redis_client.set(
                    self._user_cache_key(user.email),
                    json.dumps(user.to_dict()),
                    ex=max(1, self.user_cache_ttl_seconds),
                )
        except RedisError:
            logger.warning("moodle_user_cache_write_failed user_id=%s", user.id, exc_info=True)

    def find_user_by_email(self, email: str) -> MoodleUser | None:
        cached = self._cached_user(email)
        if cached is not None:
            return cached

        response = self.call("core_user_get_users_by_field", {"field": "email", "values": [email]})
        if not isinstance(response, list) or not response or "id" not in response[0]:
            return None

        user = MoodleUser.from_dict({**response[0], "existing": True})
        self._cache_user(user)
        return user

    def create_user(self, *, username: str, password: str, firstname: str, lastname: str, email: str) -> MoodleUser:
        logger.info("moodle_user_create_started email=%s", email)
        users = [
            {
                "username": username,
                "password": password,
                "firstname": firstname,
                "lastname": lastname,
                "email": email,
                **self.profile_defaults,
            }
        ]
        response = self.call("core_user_create_users", {"users": users})
        if not isinstance(response, list) or not response or "id" not in response[0]:
            raise MoodleValidationError(
                f"Failed to create user {email}: Unexpected response format",
                context={"email": email, "response": response},
            )

        user = MoodleUser(
            id=int(response[0]["id"]),
            username=username,
            email=email,
            firstname=firstname,
            lastname=lastname,
            existing=False,
            password=password,
        )
        logger.info("moodle_user_created user_id=%s email=%s", user.id, email)
        self._cache_user(user)
        return user

    def create_or_find_user(self, *, email: str, firstname: str, lastname: str) -> MoodleUser:
        existing = self.find_user_by_email(email)
        if existing is not None:
            logger.info("moodle_user_exists user_id=%s email=%s", existing.id, email)
            return existing
        try:
            return self.create_user(
                username=generate_username(email),
                password=generate_password(),
                firstname=firstname,
                lastname=lastname,
                email=email,
            )
        except MoodleDuplicateError:
            # Created concurrently between the lookup and the create.
            existing = self.find_user_by_email(email)
            if existing is None:
                raise
            logger.info("moodle_user_exists user_id=%s email=%s", existing.id, email)
            return existing

    def enroll_user(self, user_id: int, course_id: int, role_id: int = MoodleRole.STUDENT) -> None:
        if not MoodleRole.is_valid(role_id):
            raise MoodleValidationError(
                f"Invalid role ID: {role_id}. Must be a valid Moodle role.",
                context={"user_id": user_id, "course_id": course_id, "role_id": role_id},
            )
        self.call(
            "enrol_manual_enrol_users",
            {"enrolments": [{"roleid": int(role_id), "userid": user_id, "courseid": course_id}]},
        )
        logger.info("moodle_user_enrolled user_id=%s course_id=%s role_id=%s", user_id, course_id, int(role_id))

    def is_user_enrolled(self, user_id: int, course_id: int) -> bool:
        response = self.call("core_enrol_get_users_courses", {"userid": user_id})
        if not isinstance(response, list):
            return False
        return any(str(course.get("id")) == str(course_id) for course in response if isinstance(course, dict))

    def get_site_info(self) -> dict:
        info = self.call("core_webservice_get_site_info") or {}
        logger.info(
            "moodle_site_info sitename=%s username=%s functions=%s",
            info.get("sitename", "N/A"),
            info.get("username", "N/A"),
            len(info.get("functions") or []),
        )
        return info

    def test_connection(self) -> bool:
        try:
            self.get_site_info()
        except MoodleServiceError:
            logger.exception("moodle_connection_check_failed")
            return False
        return True
