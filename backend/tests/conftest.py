import math
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MEDUSA_WEBHOOK_SECRET", "")

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from enrollment_bridge.application.services.compensation_cache import CompensationCache
from enrollment_bridge.application.services.compensation_service import CompensationService
from enrollment_bridge.domain import models  # noqa: F401
from enrollment_bridge.infrastructure.db.base import Base
from enrollment_bridge.integrations.moodle.client import MoodleUser
from enrollment_bridge.integrations.moodle.errors import MoodleValidationError


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the service issues."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self.now = 1_000_000.0

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _purge(self, key: str) -> None:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= self.now:
            self._data.pop(key, None)
            self._expires_at.pop(key, None)

    def get(self, key: str):
        self._purge(key)
        return self._data.get(key)

    def set(self, key: str, value, ex: int | None = None, nx: bool = False):
        self._purge(key)
        if nx and key in self._data:
            return None
        self._data[key] = str(value)
        if ex:
            self._expires_at[key] = self.now + ex
        else:
            self._expires_at.pop(key, None)
        return True

    def incr(self, key: str, amount: int = 1) -> int:
        self._purge(key)
        value = int(self._data.get(key, 0)) + amount
        self._data[key] = str(value)
        return value

    def expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        if key not in self._data:
            return False
        self._expires_at[key] = self.now + seconds
        return True

    def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._data:
            return -2
        if key not in self._expires_at:
            return -1
        return math.ceil(self._expires_at[key] - self.now)

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge(key)
            if self._data.pop(key, None) is not None:
                removed += 1
            self._expires_at.pop(key, None)
        return removed

    def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self.get(key) is not None)

    def ping(self) -> bool:
        return True


class UnavailableRedis:
    def __getattr__(self, name):
        def _fail(*args, **kwargs):
            raise RedisConnectionError("redis unavailable")

        return _fail


class StubMoodleClient:
    """Records calls and answers from in-memory users and enrollments."""

    def __init__(self) -> None:
        self.users: dict[str, MoodleUser] = {}
        self.enrollments: set[tuple[int, int]] = set()
        self.enroll_failures: dict[int, Exception] = {}
        self.create_failure: Exception | None = None
        self.calls: list[tuple] = []
        self._next_id = 100

    def add_user(self, email: str, user_id: int) -> MoodleUser:
        user = MoodleUser(id=user_id, username=email.split("@")[0], email=email, existing=True)
        self.users[email] = user
        return user

    def find_user_by_email(self, email: str) -> MoodleUser | None:
        self.calls.append(("find_user_by_email", email))
        return self.users.get(email)

    def create_or_find_user(self, *, email: str, firstname: str, lastname: str) -> MoodleUser:
        self.calls.append(("create_or_find_user", email))
        if self.create_failure is not None:
            raise self.create_failure
        existing = self.users.get(email)
        if existing is not None:
            return existing
        user = MoodleUser(
            id=self._next_id,
            username=email.split("@")[0],
            email=email,
            firstname=firstname,
            lastname=lastname,
            existing=False,
            password="Secret#123",
        )
        self._next_id += 1
        self.users[email] = user
        return user

    def is_user_enrolled(self, user_id: int, course_id: int) -> bool:
        self.calls.append(("is_user_enrolled", user_id, course_id))
        return (user_id, course_id) in self.enrollments

    def enroll_user(self, user_id: int, course_id: int, role_id: int = 5) -> None:
        self.calls.append(("enroll_user", user_id, course_id, role_id))
        failure = self.enroll_failures.get(course_id)
        if failure is not None:
            raise failure
        self.enrollments.add((user_id, course_id))

    def enroll_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] == "enroll_user"]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN on its own; SAVEPOINT needs the transaction started explicitly.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def compensation_cache(fake_redis):
    return CompensationCache(fake_redis)


@pytest.fixture
def stub_moodle():
    return StubMoodleClient()


@pytest.fixture
def compensation(db_session, compensation_cache, stub_moodle):
    return CompensationService(db_session, compensation_cache, moodle_client=stub_moodle)


@pytest.fixture
def course_not_found():
    return MoodleValidationError("Moodle Error [invalidrecord]: course not found", context={"errorcode": "invalidrecord"})
