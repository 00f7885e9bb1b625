from enrollment_bridge.domain.models.customer_identity import CustomerIdentity
from enrollment_bridge.domain.models.failed_enrollment import FailedEnrollment
from enrollment_bridge.domain.models.failed_job import FailedJob
from enrollment_bridge.domain.models.order import Order, OrderStatus
from enrollment_bridge.domain.models.webhook_record import WebhookRecord

__all__ = [
    "CustomerIdentity",
    "FailedEnrollment",
    "FailedJob",
    "Order",
    "OrderStatus",
    "WebhookRecord",
]
