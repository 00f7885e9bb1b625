import json
import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.orm import Session

from enrollment_bridge.application.services.medusa_order import MedusaOrder, derive_order_id
from enrollment_bridge.application.services.webhook_intake_service import handle_order_paid
from enrollment_bridge.core.security import verify_medusa_signature
from enrollment_bridge.infrastructure.db.session import get_db
from enrollment_bridge.infrastructure.logging.context import reset_order_id, set_order_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/medusa", tags=["webhooks"])

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class MedusaCustomer(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)


class MedusaLineItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    metadata: dict[str, Any] | None = None


class OrderPaidPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    customer: MedusaCustomer
    items: list[MedusaLineItem] = Field(min_length=1)


@router.get("/health")
def medusa_webhook_health() -> dict:
    return {
        "status": "ok",
        "service": "medusa-moodle-webhook",
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.post("/order-paid", status_code=status.HTTP_200_OK)
async def order_paid_webhook(
    request: Request,
    medusa_signature: str | None = Header(default=None, alias="X-Medusa-Signature"),
    webhook_id_header: str | None = Header(default=None, alias="X-Webhook-Id"),
    db: Session = Depends(get_db),
):
    payload_bytes = await request.body()
    verify_medusa_signature(payload_bytes=payload_bytes, signature_header=medusa_signature)

    try:
        raw_payload = json.loads(payload_bytes or b"null")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
    if not isinstance(raw_payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be a JSON object")

    try:
        payload = OrderPaidPayload.model_validate(raw_payload)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    order_id, strategy = derive_order_id(raw_payload)
    webhook_id = (webhook_id_header or "").strip() or order_id
    order = MedusaOrder(
        order_id=order_id,
        customer_email=payload.customer.email.strip().lower(),
        customer_first_name=payload.customer.first_name.strip(),
        customer_last_name=payload.customer.last_name.strip(),
        items=[item.model_dump() for item in payload.items],
    )

    order_token = set_order_id(order_id)
    try:
        logger.info(
            "medusa_webhook_received order_id=%s webhook_id=%s strategy=%s items=%s",
            order_id,
            webhook_id,
            strategy,
            len(order.items),
        )
        result = handle_order_paid(db, order=order, webhook_id=webhook_id, raw_payload=raw_payload)
        return result.to_dict()
    except Exception:
        db.rollback()
        logger.exception("medusa_webhook_failed order_id=%s webhook_id=%s", order_id, webhook_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "order_id": order_id,
                "message": "Internal server error processing webhook",
                "trace_id": getattr(request.state, "request_id", None),
            },
        )
    finally:
        reset_order_id(order_token)
