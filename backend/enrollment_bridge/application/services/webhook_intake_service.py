from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from sqlalchemy.orm import Session

from enrollment_bridge.application.services import enrollment_orchestrator
from enrollment_bridge.application.services.medusa_order import MedusaOrder
from enrollment_bridge.application.services.webhook_idempotency_service import (
    IdempotencyReason,
    can_process_webhook,
    claim_webhook,
    link_existing_identity,
)
from enrollment_bridge.core.config import settings
from enrollment_bridge.domain.models.failed_job import FailedJob
from enrollment_bridge.infrastructure.observability.metrics import WEBHOOKS_RECEIVED_TOTAL

logger = logging.getLogger(__name__)

CLAIM_CONFLICT_MESSAGE = "Webhook is already being processed"


@dataclass(frozen=True)
class IntakeResult:
    status: str
    order_id: str
    reason: str
    message: str
    moodle_user_id: int | None = None

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _duplicate(order_id: str, reason: str, message: str) -> IntakeResult:
    return IntakeResult(status="duplicate", order_id=order_id, reason=reason, message=message)


def handle_order_paid(db: Session, *, order: MedusaOrder, webhook_id: str, raw_payload: dict) -> IntakeResult:
    """Run the idempotency checks for a paid order and hand new work to the workers.

    Duplicates and repeat customers are acknowledged without new work so the
    sender does not redeliver.
    """
    decision = can_process_webhook(
        db,
        webhook_id=webhook_id,
        order_id=order.order_id,
        customer_email=order.customer_email,
    )
    WEBHOOKS_RECEIVED_TOTAL.labels(decision=decision.reason.value).inc()

    if decision.reason in {IdempotencyReason.DUPLICATE_WEBHOOK, IdempotencyReason.DUPLICATE_ORDER}:
        return _duplicate(order.order_id, decision.reason.value, decision.message)

    claimed = claim_webhook(
        db,
        webhook_id=webhook_id,
        order_id=order.order_id,
        payload=raw_payload,
        customer_email=order.customer_email,
    )
    if not claimed:
        db.rollback()
        WEBHOOKS_RECEIVED_TOTAL.labels(decision="claim_conflict").inc()
        return _duplicate(order.order_id, IdempotencyReason.DUPLICATE_WEBHOOK.value, CLAIM_CONFLICT_MESSAGE)

    if decision.reason == IdempotencyReason.USER_EXISTS:
        identity = decision.identity
        link_existing_identity(db, identity=identity, order_id=order.order_id)
        message = None
        if settings.enroll_existing_customers:
            message = enrollment_orchestrator.prepare_existing_customer(
                db, order=order, identity=identity, webhook_id=webhook_id
            )
        db.commit()
        if message is not None:
            enrollment_orchestrator.dispatch_enrollment(message)
        return IntakeResult(
            status="linked",
            order_id=order.order_id,
            reason=decision.reason.value,
            message=decision.message,
            moodle_user_id=identity.moodle_user_id,
        )

    enrollment_orchestrator.ensure_order(db, order, webhook_id=webhook_id)
    db.commit()
    try:
        enrollment_orchestrator.dispatch_user_creation(order)
    except Exception as exc:
        # The claim is committed, so a redelivery would be rejected; keep the job for replay.
        db.add(
            FailedJob(
                job_type=enrollment_orchestrator.USER_CREATION_JOB,
                payload=order.to_dict(),
                error_message=f"enqueue failed: {exc}"[:2000],
            )
        )
        db.commit()
        logger.exception("create_moodle_user_enqueue_failed order_id=%s", order.order_id)
        raise

    logger.info("order_paid_accepted order_id=%s webhook_id=%s", order.order_id, webhook_id)
    return IntakeResult(
        status="queued",
        order_id=order.order_id,
        reason=decision.reason.value,
        message="Order queued for Moodle provisioning",
    )
