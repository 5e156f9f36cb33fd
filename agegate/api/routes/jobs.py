from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from agegate.api.dependencies import get_reconciliation_queue, get_webhook_queue, require_cron_secret
from agegate.core.config import settings
from agegate.schemas.queue import BatchSummary, QueuesCleanupResponse, QueuesHealthResponse
from agegate.services.reconciliation_queue import ReconciliationQueue
from agegate.services.webhook_queue import WebhookQueue

# Schedulers differ in the verb they use for trigger calls, so runs accept both.
router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_cron_secret)])


@router.api_route("/reconciliation/run", methods=["GET", "POST"], response_model=BatchSummary)
async def run_reconciliation(
    limit: int | None = Query(default=None, ge=1, le=500),
    max_duration_ms: int | None = Query(default=None, ge=1000, le=60000),
    queue: ReconciliationQueue = Depends(get_reconciliation_queue),
):
    return await queue.run_batch(
        limit=limit or settings.queue_batch_limit,
        max_duration_ms=max_duration_ms or settings.queue_max_duration_ms,
    )


@router.api_route("/webhooks/run", methods=["GET", "POST"], response_model=BatchSummary)
async def run_webhooks(
    limit: int | None = Query(default=None, ge=1, le=500),
    max_duration_ms: int | None = Query(default=None, ge=1000, le=60000),
    queue: WebhookQueue = Depends(get_webhook_queue),
):
    return await queue.run_batch(
        limit=limit or settings.queue_batch_limit,
        max_duration_ms=max_duration_ms or settings.queue_max_duration_ms,
    )


@router.api_route("/cleanup", methods=["GET", "POST"], response_model=QueuesCleanupResponse)
async def cleanup_queues(
    done_days: int | None = Query(default=None, ge=1, le=30),
    pending_days: int | None = Query(default=None, ge=1, le=30),
    reconciliation: ReconciliationQueue = Depends(get_reconciliation_queue),
    webhooks: WebhookQueue = Depends(get_webhook_queue),
):
    done_window = done_days or settings.retention_done_days
    pending_window = pending_days or settings.retention_pending_days
    return QueuesCleanupResponse(
        reconciliation=await reconciliation.cleanup(done_window, pending_window),
        webhooks=await webhooks.cleanup(done_window, pending_window),
    )


@router.get("/health", response_model=QueuesHealthResponse)
async def queues_health(
    reconciliation: ReconciliationQueue = Depends(get_reconciliation_queue),
    webhooks: WebhookQueue = Depends(get_webhook_queue),
):
    return QueuesHealthResponse(reconciliation=await reconciliation.health(), webhooks=await webhooks.health())
