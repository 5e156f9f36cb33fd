from __future__ import annotations

from datetime import date, datetime
from enum import Enum as PyEnum

from pydantic import BaseModel, ConfigDict, Field

from agegate.models.status import SessionStatus


class DecodedDocument(BaseModel):
    """Identity fields read from one scanned barcode. Lives for a single request."""

    model_config = ConfigDict(frozen=True)

    first_name: str = ""
    middle_name: str = ""
    last_name: str = ""
    date_of_birth: date | None = None
    age: int | None = None
    document_type: str = "drivers_license"
    document_number: str = ""
    document_number_is_placeholder: bool = False
    issuing_region: str = ""
    issuing_country: str = ""
    sex: str = ""
    expiry_date: date | None = None
    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    warnings: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class DecisionCode(str, PyEnum):
    APPROVED = "approved"
    DOB_UNREADABLE = "dob_unreadable"
    UNDERAGE = "underage"
    BANNED = "banned"


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    approved: bool
    code: DecisionCode
    reason: str | None = None


class SessionCreateRequest(BaseModel):
    register_id: str | None = Field(default=None, max_length=128)
    outlet_id: str | None = Field(default=None, max_length=128)


class SessionLogRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=500)
    level: str = Field(default="info", pattern="^(info|success|warn|error)$")


class ScanRequest(BaseModel):
    barcode_data: str = Field(..., min_length=1, max_length=8192)
    register_id: str | None = Field(default=None, max_length=128)
    outlet_id: str | None = Field(default=None, max_length=128)
    clerk_id: str | None = Field(default=None, max_length=100)
    transaction_total: float | None = None


class ActivityLogEntryResponse(BaseModel):
    time: datetime
    message: str
    level: str


class SessionResponse(BaseModel):
    transaction_id: str
    status: SessionStatus
    customer_id: str | None
    customer_name: str | None
    age: int | None
    reason: str | None
    register_id: str | None
    outlet_id: str | None
    device_linked: bool
    last_heartbeat: datetime | None
    activity_log: list[ActivityLogEntryResponse]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session) -> "SessionResponse":
        return cls(
            transaction_id=session.transaction_id,
            status=session.status,
            customer_id=session.customer_id,
            customer_name=session.customer_name,
            age=session.age,
            reason=session.reason,
            register_id=session.register_id,
            outlet_id=session.outlet_id,
            device_linked=session.device_linked,
            last_heartbeat=session.last_heartbeat,
            activity_log=[
                ActivityLogEntryResponse(time=entry.time, message=entry.message, level=entry.level)
                for entry in session.activity_log
            ],
            created_at=session.created_at,
            updated_at=session.updated_at,
            expires_at=session.expires_at,
        )


class ScanResponse(BaseModel):
    approved: bool
    code: DecisionCode
    reason: str | None
    age: int | None
    first_name: str
    last_name: str
    document_number: str
    reconcile_queued: bool
    session: SessionResponse | None


class SessionStatsResponse(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    expired: int
    active_devices: int
