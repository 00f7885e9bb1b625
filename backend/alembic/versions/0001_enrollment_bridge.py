"""enrollment bridge ledgers, orders and identities

Revision ID: 0001_enrollment_bridge
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_enrollment_bridge"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "processed_webhooks",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("webhook_id", sa.String(length=255), nullable=False),
        sa.Column("medusa_order_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=128), nullable=False, server_default="order.paid"),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_processed_webhooks_webhook_id", "processed_webhooks", ["webhook_id"], unique=True)
    op.create_index("ix_processed_webhooks_medusa_order_id", "processed_webhooks", ["medusa_order_id"], unique=True)
    op.create_index("ix_processed_webhooks_customer_email", "processed_webhooks", ["customer_email"], unique=False)
    op.create_index("ix_processed_webhooks_processed_at", "processed_webhooks", ["processed_at"], unique=False)

    op.create_table(
        "failed_enrollments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", sa.String(length=255), nullable=False),
        sa.Column("moodle_user_id", sa.BigInteger(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=False),
        sa.Column("requires_manual_review", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("user_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_enrollments_order_id", "failed_enrollments", ["order_id"], unique=False)
    op.create_index("ix_failed_enrollments_moodle_user_id", "failed_enrollments", ["moodle_user_id"], unique=False)
    op.create_index(
        "ix_failed_enrollments_review_created",
        "failed_enrollments",
        ["requires_manual_review", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_failed_enrollments_open_order",
        "failed_enrollments",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("requires_manual_review"),
    )

    op.create_table(
        "customer_identities",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("moodle_user_id", sa.BigInteger(), nullable=True),
        sa.Column("moodle_username", sa.String(length=255), nullable=True),
        sa.Column("medusa_order_id", sa.String(length=255), nullable=True),
        sa.Column("moodle_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customer_identities_email", "customer_identities", ["email"], unique=True)
    op.create_index("ix_customer_identities_moodle_user_id", "customer_identities", ["moodle_user_id"], unique=False)
    op.create_index("ix_customer_identities_medusa_order_id", "customer_identities", ["medusa_order_id"], unique=False)

    op.create_table(
        "orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("medusa_order_id", sa.String(length=255), nullable=False),
        sa.Column("webhook_id", sa.String(length=255), nullable=True),
        sa.Column("customer_email", sa.String(length=255), nullable=False),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
        sa.Column("moodle_user_id", sa.BigInteger(), nullable=True),
        sa.Column("course_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "status IN ('received', 'user_creating', 'user_created', 'enrolling', "
            "'enrolled', 'enrollment_failed', 'user_creation_failed')",
            name="ck_orders_status_values",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_orders_medusa_order_id", "orders", ["medusa_order_id"], unique=True)
    op.create_index("ix_orders_customer_email", "orders", ["customer_email"], unique=False)

    op.create_table(
        "failed_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("job_type", sa.String(length=64), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_jobs_job_type", "failed_jobs", ["job_type"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_failed_jobs_job_type", table_name="failed_jobs")
    op.drop_table("failed_jobs")

    op.drop_index("ix_orders_customer_email", table_name="orders")
    op.drop_index("ix_orders_medusa_order_id", table_name="orders")
    op.drop_table("orders")

    op.drop_index("ix_customer_identities_medusa_order_id", table_name="customer_identities")
    op.drop_index("ix_customer_identities_moodle_user_id", table_name="customer_identities")
    op.drop_index("ix_customer_identities_email", table_name="customer_identities")
    op.drop_table("customer_identities")

    op.drop_index("uq_failed_enrollments_open_order", table_name="failed_enrollments")
    op.drop_index("ix_failed_enrollments_review_created", table_name="failed_enrollments")
    op.drop_index("ix_failed_enrollments_moodle_user_id", table_name="failed_enrollments")
    op.drop_index("ix_failed_enrollments_order_id", table_name="failed_enrollments")
    op.drop_table("failed_enrollments")

    op.drop_index("ix_processed_webhooks_processed_at", table_name="processed_webhooks")
    op.drop_index("ix_processed_webhooks_customer_email", table_name="processed_webhooks")
    op.drop_index("ix_processed_webhooks_medusa_order_id", table_name="processed_webhooks")
    op.drop_index("ix_processed_webhooks_webhook_id", table_name="processed_webhooks")
    op.drop_table("processed_webhooks")
