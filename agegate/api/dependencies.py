from __future__ import annotations

import hmac
from datetime import timedelta
from functools import lru_cache

import httpx
from fastapi import Header

from agegate.core.config import settings
from agegate.core.logger import get_logger
from agegate.services.deny_list import DenyListService
from agegate.services.pos_service import PosService
from agegate.services.pos_service_mock import PosServiceMock
from agegate.services.reconciliation_queue import ReconciliationQueue
from agegate.services.session_store import LiveSessionStore
from agegate.services.verification_service import VerificationService
from agegate.services.webhook_queue import WebhookQueue

logger = get_logger(component="Dependencies")


class CronAuthorizationError(Exception):
    """Raised when a job trigger call does not carry the configured cron secret."""


@lru_cache(maxsize=1)
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient()


@lru_cache(maxsize=1)
def get_pos_service() -> PosService | PosServiceMock:
    if settings.pos_mock_mode:
        logger.warning("POS mock mode enabled, using in-memory POS client")
        return PosServiceMock(writes_enabled=settings.pos_writes_enabled)
    return PosService(get_http_client())


@lru_cache(maxsize=1)
def get_session_store() -> LiveSessionStore:
    return LiveSessionStore(
        ttl=timedelta(minutes=settings.session_ttl_minutes),
        heartbeat_timeout=timedelta(seconds=settings.heartbeat_timeout_seconds),
        log_limit=settings.session_log_limit,
        sweep_interval_seconds=settings.session_sweep_interval_seconds,
    )


@lru_cache(maxsize=1)
def get_reconciliation_queue() -> ReconciliationQueue:
    return ReconciliationQueue(
        get_pos_service(),
        session_store=get_session_store(),
        initial_delay=timedelta(seconds=settings.reconcile_initial_delay_seconds),
        concurrency=settings.queue_concurrency,
        max_attempts=settings.reconcile_max_attempts,
        max_age=timedelta(minutes=settings.reconcile_max_age_minutes),
        stale_after=timedelta(minutes=settings.queue_stale_processing_minutes),
    )


@lru_cache(maxsize=1)
def get_webhook_queue() -> WebhookQueue:
    reconciliation_queue = get_reconciliation_queue()
    return WebhookQueue(
        reconciliation_queue=reconciliation_queue,
        customer_sync=reconciliation_queue.expedite_waiting_for_customer,
        store_raw_body=settings.webhook_store_raw_body,
        concurrency=settings.queue_concurrency,
        max_attempts=settings.webhook_max_attempts,
        stale_after=timedelta(minutes=settings.queue_stale_processing_minutes),
    )


@lru_cache(maxsize=1)
def get_verification_service() -> VerificationService:
    return VerificationService(
        session_store=get_session_store(),
        reconciliation_queue=get_reconciliation_queue(),
        deny_list_service=DenyListService(),
    )


def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    """Accept ``X-Cron-Secret: <secret>`` or ``Authorization: Bearer <secret>``."""
    expected = settings.cron_secret
    if not expected:
        raise CronAuthorizationError("CRON_SECRET is not configured")

    presented = x_cron_secret
    if not presented and authorization and authorization.lower().startswith("bearer "):
        presented = authorization[7:].strip()
    if not presented or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        raise CronAuthorizationError("Invalid cron secret")
