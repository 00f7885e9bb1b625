import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from enrollment_bridge.domain.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

# Self-loops cover job re-delivery and retry attempts of the same step.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.RECEIVED: frozenset({OrderStatus.USER_CREATING}),
    OrderStatus.USER_CREATING: frozenset(
        {OrderStatus.USER_CREATING, OrderStatus.USER_CREATED, OrderStatus.USER_CREATION_FAILED}
    ),
    OrderStatus.USER_CREATED: frozenset({OrderStatus.ENROLLING}),
    OrderStatus.ENROLLING: frozenset(
        {OrderStatus.ENROLLING, OrderStatus.ENROLLED, OrderStatus.ENROLLMENT_FAILED}
    ),
    OrderStatus.ENROLLMENT_FAILED: frozenset({OrderStatus.ENROLLING}),
    OrderStatus.ENROLLED: frozenset(),
    OrderStatus.USER_CREATION_FAILED: frozenset(),
}

class InvalidOrderTransition(RuntimeError):
    def __init__(self, order_id: str, current: str, target: str) -> None:
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def transition_order(order: Order, target: OrderStatus, *, error_message: str | None = None) -> None:
    if not can_transition(order.status, target):
        raise InvalidOrderTransition(order.medusa_order_id, order.status, target.value)
    previous = order.status
    order.status = target.value
    if error_message is not None:
        order.error_message = error_message[:2000]
    elif target in {OrderStatus.ENROLLED, OrderStatus.USER_CREATED}:
        order.error_message = None
    if previous != target.value:
        logger.info("order_status_changed order_id=%s from=%s to=%s", order.medusa_order_id, previous, target.value)


def get_order(db: Session, order_id: str) -> Order | None:
    return db.execute(select(Order).where(Order.medusa_order_id == order_id)).scalar_one_or_none()
