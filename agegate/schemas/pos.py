from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class PosTransaction(BaseModel):
    transaction_id: str
    customer_id: str | None = None
    register_id: str | None = None
    outlet_id: str | None = None
    total: float | None = None
    status: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "PosTransaction":
        total = data.get("total_price", data.get("total"))
        return cls(
            transaction_id=str(data.get("id") or ""),
            customer_id=(str(data["customer_id"]).strip() or None) if data.get("customer_id") else None,
            register_id=data.get("register_id"),
            outlet_id=data.get("outlet_id"),
            total=float(total) if total is not None else None,
            status=data.get("status"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class CustomerUpdateResult(BaseModel):
    updated: bool = False
    fields: list[str] = Field(default_factory=list)
    skipped: str | None = None
    status: int | None = None
    error: str | None = None
