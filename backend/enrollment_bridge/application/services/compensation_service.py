from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from enrollment_bridge.application.services.compensation_cache import CompensationCache, CompensationStatus
from enrollment_bridge.application.services.failed_enrollment_repository import (
    create_failed_enrollment,
    find_pending_retries,
    mark_resolved,
)
from enrollment_bridge.application.services.order_state import get_order, transition_order
from enrollment_bridge.core.config import Settings, settings as default_settings
from enrollment_bridge.domain.models.failed_enrollment import FailedEnrollment
from enrollment_bridge.domain.models.order import OrderStatus
from enrollment_bridge.infrastructure.observability.metrics import (
    COMPENSATIONS_TOTAL,
    FAILED_ENROLLMENT_RETRIES_TOTAL,
)
from enrollment_bridge.integrations.moodle.client import MoodleClient
from enrollment_bridge.integrations.moodle.errors import MoodleConfigurationError, MoodleRateLimitError

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class CompensationService:
    """Records remote users created during an order and reconciles enrollments
    that did not complete.

    Remote users are never deleted. A failed enrollment becomes a review row
    that the periodic sweep retries.
    """

    def __init__(
        self,
        db: Session,
        cache: CompensationCache,
        *,
        moodle_client: MoodleClient | None = None,
        settings: Settings = default_settings,
    ) -> None:
        self.db = db
        self.cache = cache
        self.moodle_client = moodle_client
        self.settings = settings

    def _durable_state(self, order_id: str) -> dict | None:
        order = get_order(self.db, order_id)
        if order is None or order.moodle_user_id is None:
            return None
        return {
            "moodle_user_id": int(order.moodle_user_id),
            "order_id": order_id,
            "status": CompensationStatus.PENDING_ENROLLMENT.value,
            "created_at": order.created_at.isoformat() if order.created_at else _now_iso(),
        }

    def record_user_creation(self, moodle_user_id: int, order_id: str) -> None:
        existing = self.cache.get(order_id)
        created_at = existing.get("created_at") if existing else None
        self.cache.put(
            order_id,
            {
                "moodle_user_id": int(moodle_user_id),
                "order_id": order_id,
                "status": CompensationStatus.PENDING_ENROLLMENT.value,
                "created_at": created_at or _now_iso(),
            },
            ttl_hours=self.settings.compensation_pending_ttl_hours,
        )
        COMPENSATIONS_TOTAL.labels(action="recorded").inc()
        logger.info("compensation_user_recorded order_id=%s moodle_user_id=%s", order_id, moodle_user_id)

    def mark_enrollment_success(self, order_id: str) -> None:
        state = self.cache.get(order_id)
        if state is None:
            logger.info("compensation_state_missing_on_success order_id=%s", order_id)
            return
        if state.get("status") == CompensationStatus.COMPLETED.value:
            return
        state["status"] = CompensationStatus.COMPLETED.value
        state["completed_at"] = _now_iso()
        self.cache.put(order_id, state, ttl_hours=self.settings.compensation_completed_ttl_hours)
        COMPENSATIONS_TOTAL.labels(action="completed").inc()
        logger.info("compensation_enrollment_completed order_id=%s", order_id)

    def compensate_failed_enrollment(
        self,
        order_id: str,
        failure_reason: str,
        *,
        course_id: int | None = None,
    ) -> FailedEnrollment | None:
        state = self.cache.get(order_id)
        if state is None:
            state = self._durable_state(order_id)
            if state is None:
                logger.warning("compensation_state_missing order_id=%s", order_id)
                COMPENSATIONS_TOTAL.labels(action="missing_state").inc()
                return None
            logger.info("compensation_state_recovered order_id=%s source=orders", order_id)

        moodle_user_id = int(state["moodle_user_id"])
        logger.warning(
            "compensation_enrollment_failed order_id=%s moodle_user_id=%s reason=%s",
            order_id,
            moodle_user_id,
            failure_reason,
        )

        failure = create_failed_enrollment(
            self.db,
            order_id=order_id,
            moodle_user_id=moodle_user_id,
            course_id=course_id,
            failure_reason=failure_reason,
            user_data=dict(state),
        )
        if failure is None:
            logger.info("compensation_already_recorded order_id=%s", order_id)
            COMPENSATIONS_TOTAL.labels(action="already_open").inc()
            return None

        state["status"] = CompensationStatus.FAILED.value
        state["failure_reason"] = failure_reason
        state["failed_at"] = _now_iso()
        self.cache.put(order_id, state, ttl_hours=self.settings.compensation_failed_ttl_hours)
        COMPENSATIONS_TOTAL.labels(action="failure_recorded").inc()
        logger.error(
            "enrollment_requires_manual_review order_id=%s moodle_user_id=%s",
            order_id,
            moodle_user_id,
        )
        return failure

    def retry_failed_enrollments(self, days: int | None = None) -> int:
        """Re-attempt unresolved failures created within the last ``days``.

        Returns the number resolved. A rate limit stops the sweep early and the
        remaining rows wait for the next run.
        """
        if self.moodle_client is None:
            raise MoodleConfigurationError("A Moodle client is required to retry enrollments")

        window = self.settings.failed_enrollment_retry_days if days is None else days
        resolved = 0
        for failure in find_pending_retries(self.db, days=window):
            try:
                course_ids = self._reenroll(failure)
            except MoodleRateLimitError as exc:
                FAILED_ENROLLMENT_RETRIES_TOTAL.labels(outcome="rate_limited").inc()
                logger.warning(
                    "failed_enrollment_retry_rate_limited order_id=%s retry_after=%s",
                    failure.order_id,
                    exc.retry_after_seconds,
                )
                break
            except Exception as exc:
                FAILED_ENROLLMENT_RETRIES_TOTAL.labels(outcome="failed").inc()
                logger.warning(
                    "failed_enrollment_retry_failed order_id=%s error=%s",
                    failure.order_id,
                    exc,
                )
                continue

            mark_resolved(self.db, failure)
            self._mark_order_enrolled(failure.order_id)
            self.mark_enrollment_success(failure.order_id)
            FAILED_ENROLLMENT_RETRIES_TOTAL.labels(outcome="resolved").inc()
            logger.info(
                "failed_enrollment_retry_succeeded order_id=%s moodle_user_id=%s course_ids=%s",
                failure.order_id,
                failure.moodle_user_id,
                course_ids,
            )
            resolved += 1

        return resolved

    def _courses_for(self, failure: FailedEnrollment) -> list[int]:
        order = get_order(self.db, failure.order_id)
        if order is not None and order.course_ids:
            return [int(course_id) for course_id in dict.fromkeys(order.course_ids)]
        return [int(failure.course_id or self.settings.moodle_default_course_id)]

    def _reenroll(self, failure: FailedEnrollment) -> list[int]:
        """Enroll the user in every course of the order, skipping ones already held."""
        user_id = int(failure.moodle_user_id)
        course_ids = self._courses_for(failure)
        for course_id in course_ids:
            if self.moodle_client.is_user_enrolled(user_id, course_id):
                continue
            self.moodle_client.enroll_user(user_id, course_id, self.settings.moodle_default_role_id)
        return course_ids

    def _mark_order_enrolled(self, order_id: str) -> None:
        order = get_order(self.db, order_id)
        if order is None:
            return
        if order.status == OrderStatus.ENROLLMENT_FAILED.value:
            transition_order(order, OrderStatus.ENROLLING)
        if order.status != OrderStatus.ENROLLING.value:
            return
        transition_order(order, OrderStatus.ENROLLED)
        self.db.add(order)
        self.db.flush()
