import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, CheckConstraint, DateTime, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from enrollment_bridge.infrastructure.db.base import Base, JSONType


class OrderStatus(StrEnum):
    RECEIVED = "received"
    USER_CREATING = "user_creating"
    USER_CREATED = "user_created"
    ENROLLING = "enrolling"
    ENROLLED = "enrolled"
    ENROLLMENT_FAILED = "enrollment_failed"
    USER_CREATION_FAILED = "user_creation_failed"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "status IN ('received', 'user_creating', 'user_created', 'enrolling', "
            "'enrolled', 'enrollment_failed', 'user_creation_failed')",
            name="ck_orders_status_values",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    medusa_order_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    webhook_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=OrderStatus.RECEIVED.value)
    moodle_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    course_ids: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
