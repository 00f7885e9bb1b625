import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from enrollment_bridge.infrastructure.db.base import Base


class CustomerIdentity(Base):
    """Local projection of a customer email onto its Moodle account."""

    __tablename__ = "customer_identities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    moodle_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    moodle_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    medusa_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    moodle_processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
