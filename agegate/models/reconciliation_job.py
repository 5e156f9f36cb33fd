from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Enum as SAEnum, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from agegate.models.base import Base, PrimaryKeyUUIDMixin, TimestampMixin
from agegate.models.status import JobStatus, enum_values
from agegate.models.types import UTCDateTime, utcnow


class ReconciliationJob(PrimaryKeyUUIDMixin, TimestampMixin, Base):
    """Customer-profile fill for a verified transaction, retried until the POS links a customer."""

    __tablename__ = "customer_reconcile_jobs"
    __table_args__ = (Index("ix_customer_reconcile_jobs_due", "status", "next_attempt_at"),)

    subject_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    resolved_subject_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        SAEnum(JobStatus, name="jobstatus", native_enum=False, values_callable=enum_values),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    register_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    outlet_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    transaction_total: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    last_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
