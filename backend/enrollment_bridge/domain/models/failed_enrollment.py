import uuid
from datetime import UTC, datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from enrollment_bridge.infrastructure.db.base import Base, JSONType


class FailedEnrollment(Base):
    __tablename__ = "failed_enrollments"
    __table_args__ = (
        Index(
            "uq_failed_enrollments_open_order",
            "order_id",
            unique=True,
            postgresql_where=text("requires_manual_review"),
            sqlite_where=text("requires_manual_review = 1"),
        ),
        Index("ix_failed_enrollments_review_created", "requires_manual_review", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    moodle_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    course_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    user_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
