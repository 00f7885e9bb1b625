from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_bridge.application.services.compensation_service import CompensationService
from enrollment_bridge.application.services.medusa_order import MedusaOrder
from enrollment_bridge.application.services.order_state import can_transition, get_order, transition_order
from enrollment_bridge.application.services.webhook_idempotency_service import normalize_email
from enrollment_bridge.core.config import settings
from enrollment_bridge.domain.models.customer_identity import CustomerIdentity
from enrollment_bridge.domain.models.failed_enrollment import FailedEnrollment
from enrollment_bridge.domain.models.failed_job import FailedJob
from enrollment_bridge.domain.models.order import Order, OrderStatus
from enrollment_bridge.infrastructure.observability.metrics import ENROLLMENTS_TOTAL
from enrollment_bridge.integrations.moodle.client import MoodleClient, MoodleUser
from enrollment_bridge.integrations.moodle.errors import ErrorKind, MoodleRateLimitError, classify_error

logger = logging.getLogger(__name__)

USER_CREATION_JOB = "create_moodle_user"


@dataclass(frozen=True)
class UserReadyMessage:
    """Hand-off from user provisioning to course enrollment."""

    order_id: str
    moodle_user: MoodleUser
    course_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "moodle_user": self.moodle_user.to_dict(),
            "course_ids": list(self.course_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> UserReadyMessage:
        return cls(
            order_id=str(data["order_id"]),
            moodle_user=MoodleUser.from_dict(data["moodle_user"]),
            course_ids=[int(course_id) for course_id in data.get("course_ids") or []],
        )


@dataclass(frozen=True)
class EnrollmentOutcome:
    order_id: str
    status: str
    enrolled: list[int] = field(default_factory=list)
    already_enrolled: list[int] = field(default_factory=list)


class CourseEnrollmentError(RuntimeError):
    """Raised after the course loop when one or more courses could not be enrolled.

    ``course_id`` and ``kind`` describe the first failure; ``failed_course_ids``
    lists every course left unenrolled.
    """

    def __init__(
        self,
        order_id: str,
        course_id: int,
        cause: BaseException,
        *,
        failed_course_ids: list[int] | None = None,
    ) -> None:
        self.failed_course_ids = list(failed_course_ids or [course_id])
        courses = ", ".join(str(failed) for failed in self.failed_course_ids)
        super().__init__(f"Failed to enroll user in course {courses}: {cause}")
        self.order_id = order_id
        self.course_id = course_id
        self.cause = cause
        self.kind: ErrorKind = classify_error(cause)
        self.retry_after_seconds = int(getattr(cause, "retry_after_seconds", 0) or 0)


def ensure_order(db: Session, order: MedusaOrder, *, webhook_id: str | None = None) -> Order:
    row = get_order(db, order.order_id)
    if row is not None:
        return row
    row = Order(
        medusa_order_id=order.order_id,
        webhook_id=webhook_id,
        customer_email=normalize_email(order.customer_email),
        customer_name=order.full_name or None,
        status=OrderStatus.RECEIVED.value,
        course_ids=order.course_ids(settings.moodle_default_course_id),
    )
    db.add(row)
    db.flush()
    return row


def _find_identity(db: Session, email: str) -> CustomerIdentity | None:
    return db.execute(select(CustomerIdentity).where(CustomerIdentity.email == email)).scalar_one_or_none()


def upsert_identity(db: Session, *, order: MedusaOrder, user: MoodleUser) -> CustomerIdentity:
    email = normalize_email(order.customer_email)
    identity = _find_identity(db, email)
    if identity is None:
        identity = CustomerIdentity(email=email)
        try:
            with db.begin_nested():
                db.add(identity)
                db.flush()
        except IntegrityError:
            identity = _find_identity(db, email)

    identity.full_name = order.full_name or identity.full_name
    identity.moodle_user_id = user.id
    identity.moodle_username = user.username or identity.moodle_username
    identity.medusa_order_id = order.order_id
    identity.moodle_processed_at = datetime.now(UTC)
    db.add(identity)
    db.flush()
    return identity


def _message_from_row(row: Order, order: MedusaOrder) -> UserReadyMessage:
    return UserReadyMessage(
        order_id=row.medusa_order_id,
        moodle_user=MoodleUser(
            id=int(row.moodle_user_id),
            username="",
            email=row.customer_email,
            firstname=order.customer_first_name,
            lastname=order.customer_last_name,
            existing=True,
        ),
        course_ids=list(row.course_ids or order.course_ids(settings.moodle_default_course_id)),
    )


def provision_user(db: Session, *, client: MoodleClient, order: MedusaOrder) -> UserReadyMessage | None:
    """Create or find the Moodle account for ``order``.

    Returns the message for the enrollment step, or ``None`` when the order
    has already moved past provisioning.
    """
    row = ensure_order(db, order)
    if row.status == OrderStatus.USER_CREATED.value and row.moodle_user_id is not None:
        logger.info("user_creation_already_done order_id=%s", order.order_id)
        return _message_from_row(row, order)
    if row.status not in {OrderStatus.RECEIVED.value, OrderStatus.USER_CREATING.value}:
        logger.info("user_creation_skipped order_id=%s status=%s", order.order_id, row.status)
        return None

    transition_order(row, OrderStatus.USER_CREATING)
    db.commit()

    user = client.create_or_find_user(
        email=order.customer_email,
        firstname=order.customer_first_name,
        lastname=order.customer_last_name,
    )
    upsert_identity(db, order=order, user=user)

    course_ids = order.course_ids(settings.moodle_default_course_id)
    row.moodle_user_id = user.id
    row.course_ids = course_ids
    transition_order(row, OrderStatus.USER_CREATED)
    db.add(row)
    db.commit()
    logger.info(
        "moodle_user_ready order_id=%s moodle_user_id=%s existing=%s courses=%s",
        order.order_id,
        user.id,
        user.existing,
        course_ids,
    )
    return UserReadyMessage(order_id=order.order_id, moodle_user=user, course_ids=course_ids)


def prepare_existing_customer(
    db: Session,
    *,
    order: MedusaOrder,
    identity: CustomerIdentity,
    webhook_id: str | None = None,
) -> UserReadyMessage:
    """Move a repeat customer's order straight to ``user_created``."""
    row = ensure_order(db, order, webhook_id=webhook_id)
    if row.status == OrderStatus.RECEIVED.value:
        transition_order(row, OrderStatus.USER_CREATING)
        row.moodle_user_id = identity.moodle_user_id
        transition_order(row, OrderStatus.USER_CREATED)
        db.add(row)
        db.flush()
    return UserReadyMessage(
        order_id=order.order_id,
        moodle_user=MoodleUser(
            id=int(identity.moodle_user_id),
            username=identity.moodle_username or "",
            email=identity.email,
            firstname=order.customer_first_name,
            lastname=order.customer_last_name,
            existing=True,
        ),
        course_ids=list(row.course_ids),
    )


def fail_user_creation(db: Session, *, order: MedusaOrder, error: BaseException) -> None:
    row = get_order(db, order.order_id)
    if row is not None and can_transition(row.status, OrderStatus.USER_CREATION_FAILED):
        transition_order(row, OrderStatus.USER_CREATION_FAILED, error_message=str(error))
        db.add(row)
    db.add(
        FailedJob(
            job_type=USER_CREATION_JOB,
            payload=order.to_dict(),
            error_message=str(error)[:2000],
        )
    )
    db.commit()
    logger.error(
        "moodle_user_creation_failed order_id=%s kind=%s error=%s",
        order.order_id,
        classify_error(error),
        error,
    )


def enroll_courses(
    db: Session,
    *,
    client: MoodleClient,
    compensation: CompensationService,
    message: UserReadyMessage,
    role_id: int | None = None,
) -> EnrollmentOutcome:
    order_id = message.order_id
    user_id = message.moodle_user.id
    role = settings.moodle_default_role_id if role_id is None else role_id

    row = get_order(db, order_id)
    if row is not None:
        if row.status == OrderStatus.ENROLLED.value:
            logger.info("enrollment_already_done order_id=%s", order_id)
            return EnrollmentOutcome(order_id=order_id, status=row.status)
        transition_order(row, OrderStatus.ENROLLING)
        db.add(row)
        db.commit()

    compensation.record_user_creation(user_id, order_id)

    enrolled: list[int] = []
    already_enrolled: list[int] = []
    failures: list[tuple[int, Exception]] = []
    course_ids = list(dict.fromkeys(message.course_ids or [settings.moodle_default_course_id]))
    for index, course_id in enumerate(course_ids):
        try:
            if client.is_user_enrolled(user_id, course_id):
                ENROLLMENTS_TOTAL.labels(outcome="already_enrolled").inc()
                logger.info("user_already_enrolled order_id=%s user_id=%s course_id=%s", order_id, user_id, course_id)
                already_enrolled.append(course_id)
                continue
            client.enroll_user(user_id, course_id, role)
        except MoodleRateLimitError as exc:
            # Later calls in this window would be refused as well.
            ENROLLMENTS_TOTAL.labels(outcome="failed").inc()
            failures.extend((pending, exc) for pending in course_ids[index:])
            break
        except Exception as exc:
            ENROLLMENTS_TOTAL.labels(outcome="failed").inc()
            logger.warning(
                "course_enrollment_failed order_id=%s user_id=%s course_id=%s kind=%s error=%s",
                order_id,
                user_id,
                course_id,
                classify_error(exc),
                exc,
            )
            failures.append((course_id, exc))
            continue
        ENROLLMENTS_TOTAL.labels(outcome="enrolled").inc()
        enrolled.append(course_id)

    if failures:
        first_course_id, first_error = failures[0]
        raise CourseEnrollmentError(
            order_id,
            first_course_id,
            first_error,
            failed_course_ids=[failed for failed, _ in failures],
        ) from first_error

    if row is not None:
        transition_order(row, OrderStatus.ENROLLED)
        db.add(row)
        db.commit()
    compensation.mark_enrollment_success(order_id)
    logger.info(
        "order_enrollment_completed order_id=%s user_id=%s enrolled=%s already_enrolled=%s",
        order_id,
        user_id,
        enrolled,
        already_enrolled,
    )
    return EnrollmentOutcome(
        order_id=order_id,
        status=OrderStatus.ENROLLED.value,
        enrolled=enrolled,
        already_enrolled=already_enrolled,
    )


def fail_enrollment(
    db: Session,
    *,
    compensation: CompensationService,
    message: UserReadyMessage,
    error: BaseException,
) -> FailedEnrollment | None:
    reason = str(error)
    row = get_order(db, message.order_id)
    if row is not None and can_transition(row.status, OrderStatus.ENROLLMENT_FAILED):
        transition_order(row, OrderStatus.ENROLLMENT_FAILED, error_message=reason)
        db.add(row)
        db.flush()

    failure = compensation.compensate_failed_enrollment(
        message.order_id,
        reason,
        course_id=getattr(error, "course_id", None),
    )
    db.commit()
    ENROLLMENTS_TOTAL.labels(outcome="compensated").inc()
    logger.error(
        "order_enrollment_failed order_id=%s kind=%s error=%s",
        message.order_id,
        getattr(error, "kind", classify_error(error)),
        reason,
    )
    return failure


def dispatch_user_creation(order: MedusaOrder) -> None:
    from workers.tasks import create_moodle_user  # local import to avoid import cycle

    create_moodle_user.apply_async(kwargs={"order": order.to_dict()})
    logger.info("create_moodle_user_enqueued order_id=%s", order.order_id)


def dispatch_enrollment(message: UserReadyMessage, countdown: int | None = None) -> None:
    from workers.tasks import enroll_order_courses  # local import to avoid import cycle

    delay = settings.enrollment_dispatch_delay_seconds if countdown is None else countdown
    enroll_order_courses.apply_async(kwargs={"message": message.to_dict()}, countdown=delay)
    logger.info(
        "enroll_order_courses_enqueued order_id=%s moodle_user_id=%s countdown=%s",
        message.order_id,
        message.moodle_user.id,
        delay,
    )
