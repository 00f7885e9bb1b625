from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_bridge.domain.models.failed_enrollment import FailedEnrollment

logger = logging.getLogger(__name__)


def find_open_failure(db: Session, order_id: str) -> FailedEnrollment | None:
    return db.execute(
        select(FailedEnrollment).where(
            FailedEnrollment.order_id == order_id,
            FailedEnrollment.requires_manual_review.is_(True),
        )
    ).scalar_one_or_none()


def create_failed_enrollment(
    db: Session,
    *,
    order_id: str,
    moodle_user_id: int,
    failure_reason: str,
    course_id: int | None = None,
    user_data: dict | None = None,
) -> FailedEnrollment | None:
    """Open a review row for ``order_id`` unless one is already open.

    Returns ``None`` when an unresolved row exists, including one inserted by a
    concurrent writer between the lookup and the flush.
    """
    if find_open_failure(db, order_id) is not None:
        return None

    failure = FailedEnrollment(
        order_id=order_id,
        moodle_user_id=moodle_user_id,
        course_id=course_id,
        failure_reason=failure_reason,
        requires_manual_review=True,
        user_data=user_data,
        created_at=datetime.now(UTC),
    )
    try:
        with db.begin_nested():
            db.add(failure)
            db.flush()
    except IntegrityError:
        logger.info("failed_enrollment_already_open order_id=%s", order_id)
        return None
    return failure


def find_pending_retries(db: Session, *, days: int, now: datetime | None = None) -> list[FailedEnrollment]:
    cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
    return list(
        db.execute(
            select(FailedEnrollment)
            .where(
                FailedEnrollment.requires_manual_review.is_(True),
                FailedEnrollment.created_at > cutoff,
            )
            .order_by(FailedEnrollment.created_at.asc())
        )
        .scalars()
        .all()
    )


def mark_resolved(db: Session, failure: FailedEnrollment, *, now: datetime | None = None) -> None:
    failure.requires_manual_review = False
    failure.resolved_at = now or datetime.now(UTC)
    db.add(failure)
    db.flush()
