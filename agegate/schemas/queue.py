from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class EnqueueResult(BaseModel):
    queued: bool
    subject_key: str | None = None
    created: bool = False
    next_attempt_at: datetime | None = None
    reason: str | None = None


class BatchSummary(BaseModel):
    ok: bool = True
    claimed: int = 0
    processed: int = 0
    pending: int = 0
    failed: int = 0
    released: int = 0
    reason: str | None = None


class QueueHealth(BaseModel):
    pending: int = 0
    processing: int = 0
    done: int = 0
    failed: int = 0
    next_due_at: datetime | None = None
    last_updated_at: datetime | None = None


class CleanupResult(BaseModel):
    deleted: int
    done_days: int
    pending_days: int


class SignatureResult(BaseModel):
    verified: bool
    reason: str


class WebhookIngestResult(BaseModel):
    stored: bool
    event_key: str | None = None
    duplicate: bool = False


class WebhookAck(BaseModel):
    ok: bool = True
    topic: str
    signature_verified: bool
    stored: bool
    duplicate: bool = False


class QueuesCleanupResponse(BaseModel):
    reconciliation: CleanupResult
    webhooks: CleanupResult


class QueuesHealthResponse(BaseModel):
    reconciliation: QueueHealth
    webhooks: QueueHealth
