from __future__ import annotations

from datetime import date

from sqlalchemy import Date, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from agegate.models.base import Base, PrimaryKeyUUIDMixin, TimestampMixin


class BannedCustomer(PrimaryKeyUUIDMixin, TimestampMixin, Base):
    __tablename__ = "banned_customers"
    __table_args__ = (
        UniqueConstraint("document_type", "document_number", "issuing_region", name="uq_banned_customers_document"),
    )

    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    document_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Empty string rather than NULL so the unique constraint holds for unknown regions.
    issuing_region: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(String(1024), nullable=True)
