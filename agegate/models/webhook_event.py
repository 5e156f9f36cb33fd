from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Enum as SAEnum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from agegate.models.base import Base, PrimaryKeyUUIDMixin
from agegate.models.status import WebhookEventStatus, enum_values
from agegate.models.types import UTCDateTime, utcnow


class WebhookEvent(PrimaryKeyUUIDMixin, Base):
    """
    Inbound POS webhook, stored once per distinct (topic, raw body).

    Redeliveries of byte-identical content bump ``duplicate_count`` on the
    existing row instead of queueing the event again.
    """

    __tablename__ = "pos_webhook_events"
    __table_args__ = (Index("ix_pos_webhook_events_due", "status", "next_attempt_at"),)

    event_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    topic: Mapped[str] = mapped_column(String(128), nullable=False)

    signature_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signature_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[WebhookEventStatus] = mapped_column(
        SAEnum(WebhookEventStatus, name="webhookeventstatus", native_enum=False, values_callable=enum_values),
        nullable=False,
        default=WebhookEventStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    payload: Mapped[dict[str, Any] | list[Any] | None] = mapped_column(JSON, nullable=True)
    headers: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    raw_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
