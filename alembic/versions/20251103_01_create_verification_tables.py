from __future__ import annotations

from alembic import op
import sqlalchemy as sa

from agegate.models.status import JobStatus, WebhookEventStatus, enum_values
from agegate.models.types import GUID

revision = "20251103_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "customer_reconcile_jobs",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("subject_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("resolved_subject_key", sa.String(length=128), nullable=True),
        sa.Column(
            "status",
            sa.Enum(JobStatus, name="jobstatus", native_enum=False, values_callable=enum_values),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("register_id", sa.String(length=128), nullable=True),
        sa.Column("outlet_id", sa.String(length=128), nullable=True),
        sa.Column("transaction_total", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_customer_id", sa.String(length=128), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_customer_reconcile_jobs_due", "customer_reconcile_jobs", ["status", "next_attempt_at"], unique=False
    )

    op.create_table(
        "pos_webhook_events",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("event_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("signature_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("signature_reason", sa.String(length=128), nullable=True),
        sa.Column(
            "status",
            sa.Enum(WebhookEventStatus, name="webhookeventstatus", native_enum=False, values_callable=enum_values),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("headers", sa.JSON(), nullable=True),
        sa.Column("raw_body", sa.Text(), nullable=True),
        sa.Column("body_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicate_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pos_webhook_events_due", "pos_webhook_events", ["status", "next_attempt_at"], unique=False)

    op.create_table(
        "banned_customers",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("document_type", sa.String(length=50), nullable=False),
        sa.Column("document_number", sa.String(length=64), nullable=False),
        sa.Column("issuing_region", sa.String(length=16), nullable=False, server_default=""),
        sa.Column("first_name", sa.String(length=100), nullable=True),
        sa.Column("last_name", sa.String(length=100), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("notes", sa.String(length=1024), nullable=True),
        sa.UniqueConstraint(
            "document_type", "document_number", "issuing_region", name="uq_banned_customers_document"
        ),
    )
    op.create_index(
        op.f("ix_banned_customers_document_number"), "banned_customers", ["document_number"], unique=False
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_banned_customers_document_number"), table_name="banned_customers")
    op.drop_table("banned_customers")
    op.drop_index("ix_pos_webhook_events_due", table_name="pos_webhook_events")
    op.drop_table("pos_webhook_events")
    op.drop_index("ix_customer_reconcile_jobs_due", table_name="customer_reconcile_jobs")
    op.drop_table("customer_reconcile_jobs")
