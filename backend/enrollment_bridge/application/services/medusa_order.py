from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from uuid import uuid4

logger = logging.getLogger(__name__)

COURSE_ID_METADATA_KEYS = ("course_id", "moodle_course_id")

OrderIdStrategy = Callable[[dict], str | None]


def _clean(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _from_payload_id(payload: dict) -> str | None:
    return _clean(payload.get("id"))


def _from_order_id_field(payload: dict) -> str | None:
    return _clean(payload.get("order_id"))


def _from_metadata(payload: dict) -> str | None:
    metadata = payload.get("metadata")
    if not isinstance(metadata, dict):
        return None
    return _clean(metadata.get("order_id")) or _clean(metadata.get("medusa_order_id"))


def _from_customer_timestamp(payload: dict) -> str | None:
    customer_id = _clean(payload.get("customer_id"))
    if customer_id is None:
        customer = payload.get("customer")
        customer_id = _clean(customer.get("id")) if isinstance(customer, dict) else None
    if customer_id is None:
        return None
    return f"{customer_id}_{int(time.time())}"


def _from_first_item(payload: dict) -> str | None:
    items = payload.get("items")
    if not isinstance(items, list) or not items or not isinstance(items[0], dict):
        return None
    item_id = _clean(items[0].get("id"))
    return f"item_{item_id}" if item_id else None


def _generated_token(payload: dict) -> str:
    return f"order_{uuid4().hex}"


# Upstream event types disagree on where the order id lives; first hit wins.
ORDER_ID_STRATEGIES: tuple[tuple[str, OrderIdStrategy], ...] = (
    ("payload_id", _from_payload_id),
    ("order_id_field", _from_order_id_field),
    ("metadata_order_id", _from_metadata),
    ("customer_timestamp", _from_customer_timestamp),
    ("first_item_id", _from_first_item),
    ("generated_token", _generated_token),
)


def derive_order_id(payload: dict) -> tuple[str, str]:
    """Return ``(order_id, strategy_name)`` for a webhook payload."""
    for name, strategy in ORDER_ID_STRATEGIES:
        order_id = strategy(payload)
        if order_id:
            if name != "payload_id":
                logger.warning("order_id_derived strategy=%s order_id=%s", name, order_id)
            return order_id, name
    raise RuntimeError("order id strategies exhausted")  # generated_token always yields


def _as_course_id(value) -> int | None:
    try:
        course_id = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return course_id if course_id > 0 else None


@dataclass(frozen=True)
class MedusaOrder:
    order_id: str
    customer_email: str
    customer_first_name: str
    customer_last_name: str
    items: list[dict] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.customer_first_name} {self.customer_last_name}".strip()

    def course_ids(self, default_course_id: int) -> list[int]:
        """Distinct course ids from item metadata, in item order."""
        course_ids: list[int] = []
        for item in self.items:
            metadata = item.get("metadata") if isinstance(item, dict) else None
            if not isinstance(metadata, dict):
                continue
            for key in COURSE_ID_METADATA_KEYS:
                course_id = _as_course_id(metadata.get(key))
                if course_id is not None:
                    if course_id not in course_ids:
                        course_ids.append(course_id)
                    break
        return course_ids or [default_course_id]

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "customer_email": self.customer_email,
            "customer_first_name": self.customer_first_name,
            "customer_last_name": self.customer_last_name,
            "items": list(self.items),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MedusaOrder:
        return cls(
            order_id=str(data["order_id"]),
            customer_email=str(data["customer_email"]),
            customer_first_name=str(data.get("customer_first_name") or ""),
            customer_last_name=str(data.get("customer_last_name") or ""),
            items=list(data.get("items") or []),
        )
