from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from agegate.api.dependencies import get_webhook_queue
from agegate.core.config import settings
from agegate.core.logger import get_logger
from agegate.schemas.queue import WebhookAck
from agegate.services.webhook_gate import normalize_topic, parse_webhook_body, verify_signature
from agegate.services.webhook_queue import MAX_RAW_BODY_BYTES, WebhookQueue

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = get_logger(component="WebhookRoutes")


async def _ingest(topic: str | None, request: Request, queue: WebhookQueue):
    normalized_topic = normalize_topic(topic)
    raw_body = await request.body()
    if len(raw_body) > MAX_RAW_BODY_BYTES:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content={"ok": False, "error": "WEBHOOK_BODY_TOO_LARGE"},
        )

    signature = verify_signature(raw_body, request.headers.get("x-signature"), settings.webhook_client_secret)
    if not signature.verified:
        # Unverified deliveries are still stored; the outcome stays on the row for audit.
        logger.warning("Webhook signature could not be verified", topic=normalized_topic, reason=signature.reason)

    payload = parse_webhook_body(raw_body)
    try:
        result = await queue.enqueue_event(
            normalized_topic, raw_body, payload, signature, headers=dict(request.headers)
        )
    except Exception as exc:
        logger.exception("Failed to store webhook", topic=normalized_topic, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": "WEBHOOK_STORE_FAILED"},
        )

    logger.info(
        "Webhook received",
        topic=normalized_topic,
        event_key=result.event_key,
        duplicate=result.duplicate,
        signature_verified=signature.verified,
    )
    return WebhookAck(
        topic=normalized_topic,
        signature_verified=signature.verified,
        stored=result.stored,
        duplicate=result.duplicate,
    )


@router.post("/pos", response_model=WebhookAck)
async def receive_webhook(request: Request, queue: WebhookQueue = Depends(get_webhook_queue)):
    topic = request.query_params.get("type") or request.query_params.get("topic")
    return await _ingest(topic, request, queue)


@router.post("/pos/{topic}", response_model=WebhookAck)
async def receive_topic_webhook(topic: str, request: Request, queue: WebhookQueue = Depends(get_webhook_queue)):
    return await _ingest(topic, request, queue)
