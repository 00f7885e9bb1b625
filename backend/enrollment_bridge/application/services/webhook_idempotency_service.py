from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_bridge.core.config import settings
from enrollment_bridge.domain.models.customer_identity import CustomerIdentity
from enrollment_bridge.domain.models.webhook_record import WebhookRecord

logger = logging.getLogger(__name__)

DEFAULT_EVENT_TYPE = "order.paid"


class IdempotencyReason(StrEnum):
    DUPLICATE_WEBHOOK = "duplicate_webhook"
    DUPLICATE_ORDER = "duplicate_order"
    USER_EXISTS = "user_exists"
    NEW_WEBHOOK = "new_webhook"


@dataclass(frozen=True)
class IdempotencyDecision:
    can_process: bool
    reason: IdempotencyReason
    message: str
    identity: CustomerIdentity | None = None


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _webhook_exists(db: Session, webhook_id: str) -> bool:
    return db.execute(
        select(WebhookRecord.id).where(WebhookRecord.webhook_id == webhook_id).limit(1)
    ).first() is not None


def _order_exists(db: Session, order_id: str, *, since: datetime | None = None) -> bool:
    query = select(WebhookRecord.id).where(WebhookRecord.medusa_order_id == order_id)
    if since is not None:
        query = query.where(WebhookRecord.processed_at > since)
    return db.execute(query.limit(1)).first() is not None


def find_provisioned_identity(db: Session, email: str) -> CustomerIdentity | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.execute(
        select(CustomerIdentity).where(
            CustomerIdentity.email == normalized,
            CustomerIdentity.moodle_user_id.is_not(None),
        )
    ).scalar_one_or_none()


def can_process_webhook(
    db: Session,
    *,
    webhook_id: str,
    order_id: str,
    customer_email: str | None,
    now: datetime | None = None,
) -> IdempotencyDecision:
    if not webhook_id:
        raise ValueError("webhook_id must not be empty")

    if _webhook_exists(db, webhook_id):
        logger.info("webhook_already_processed webhook_id=%s reason=duplicate_webhook_id", webhook_id)
        return IdempotencyDecision(
            can_process=False,
            reason=IdempotencyReason.DUPLICATE_WEBHOOK,
            message="This webhook has already been processed",
        )

    window_start = (now or datetime.now(UTC)) - timedelta(hours=settings.order_dedup_window_hours)
    if _order_exists(db, order_id, since=window_start):
        logger.info("order_already_processed order_id=%s reason=duplicate_order_id", order_id)
        return IdempotencyDecision(
            can_process=False,
            reason=IdempotencyReason.DUPLICATE_ORDER,
            message="This order has already been processed",
        )

    identity = find_provisioned_identity(db, customer_email or "")
    if identity is not None:
        logger.info(
            "moodle_user_already_exists order_id=%s moodle_user_id=%s reason=user_exists",
            order_id,
            identity.moodle_user_id,
        )
        return IdempotencyDecision(
            can_process=False,
            reason=IdempotencyReason.USER_EXISTS,
            message="User already exists in Moodle",
            identity=identity,
        )

    return IdempotencyDecision(
        can_process=True,
        reason=IdempotencyReason.NEW_WEBHOOK,
        message="Webhook can be processed",
    )


def claim_webhook(
    db: Session,
    *,
    webhook_id: str,
    order_id: str,
    payload: dict,
    customer_email: str | None = None,
    event_type: str | None = None,
) -> bool:
    """Insert the ledger row unless one exists for either key.

    The insert runs in a savepoint and both keys carry unique constraints, so a
    concurrent claimer that slipped past the pre-check fails on flush and gets
    ``False``. The caller commits.
    """
    if _webhook_exists(db, webhook_id) or _order_exists(db, order_id):
        return False

    if customer_email is None:
        customer = payload.get("customer") if isinstance(payload, dict) else None
        customer_email = customer.get("email") if isinstance(customer, dict) else None

    record = WebhookRecord(
        webhook_id=webhook_id,
        medusa_order_id=order_id,
        event_type=event_type or DEFAULT_EVENT_TYPE,
        customer_email=normalize_email(customer_email) or None,
        payload=payload,
        processed_at=datetime.now(UTC),
    )
    try:
        with db.begin_nested():
            db.add(record)
            db.flush()
    except IntegrityError:
        logger.info("webhook_claim_conflict webhook_id=%s order_id=%s", webhook_id, order_id)
        return False

    logger.info("webhook_claimed webhook_id=%s order_id=%s", webhook_id, order_id)
    return True


def link_existing_identity(db: Session, *, identity: CustomerIdentity, order_id: str) -> None:
    identity.medusa_order_id = order_id
    if identity.moodle_processed_at is None:
        identity.moodle_processed_at = datetime.now(UTC)
    db.add(identity)
    db.flush()
    logger.info(
        "order_linked_to_existing_user order_id=%s moodle_user_id=%s",
        order_id,
        identity.moodle_user_id,
    )
