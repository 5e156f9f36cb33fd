"""
POS webhook storage and dispatch.

Sale events pull the matching reconciliation job forward; customer events go
to an optional sync hook. Unknown topics are stored and marked processed.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from agegate.models.status import WEBHOOK_STATUSES
from agegate.models.types import utcnow
from agegate.models.webhook_event import WebhookEvent
from agegate.schemas.queue import SignatureResult, WebhookIngestResult
from agegate.services.job_queue import DurableJobQueue, JobOutcome, dialect_insert
from agegate.services.webhook_gate import compute_event_key, normalize_topic, sanitize_headers

MAX_RAW_BODY_BYTES = 1024 * 1024
SALE_TOPIC_PREFIXES = ("sale.", "register_sale.")
CUSTOMER_TOPIC_PREFIX = "customer."

CustomerSync = Callable[[str, Any], Awaitable[Any]]


def extract_sale_reference(payload: Any) -> tuple[str | None, str | None]:
    """``(sale id, customer id)`` from a sale webhook body, tolerating a ``data`` envelope."""
    if not isinstance(payload, Mapping):
        return None, None
    body = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    sale_id = str(body.get("id") or body.get("sale_id") or "").strip() or None
    customer_id = str(body.get("customer_id") or "").strip() or None
    return sale_id, customer_id


class WebhookQueue(DurableJobQueue[WebhookEvent]):
    """
    Stored POS webhooks awaiting processing.

    Ingestion only has to land the row; everything the event triggers runs
    later from :meth:`run_batch`, so the vendor gets its 200 quickly.
    """

    model = WebhookEvent
    statuses = WEBHOOK_STATUSES
    created_column = "received_at"
    completed_column = "processed_at"
    name = "webhooks"

    def __init__(
        self,
        *,
        reconciliation_queue: Any = None,
        customer_sync: CustomerSync | None = None,
        store_raw_body: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._reconciliation_queue = reconciliation_queue
        self._customer_sync = customer_sync
        self._store_raw_body = store_raw_body

    async def enqueue_event(
        self,
        topic: str | None,
        raw_body: bytes,
        payload: Any,
        signature: SignatureResult,
        headers: Mapping[str, Any] | None = None,
    ) -> WebhookIngestResult:
        normalized_topic = normalize_topic(topic)
        event_key = compute_event_key(normalized_topic, raw_body)
        raw_text = (
            raw_body[:MAX_RAW_BODY_BYTES].decode("utf-8", errors="replace") if self._store_raw_body else None
        )
        now = utcnow()
        model = self.model

        async with self._session_factory() as session:
            async with session.begin():
                stmt = dialect_insert(session, model).values(
                    event_key=event_key,
                    topic=normalized_topic,
                    signature_verified=signature.verified,
                    signature_reason=signature.reason,
                    status=self.statuses.pending,
                    attempts=0,
                    next_attempt_at=now,
                    payload=payload,
                    headers=sanitize_headers(headers or {}),
                    raw_body=raw_text,
                    body_bytes=len(raw_body),
                    duplicate_count=0,
                    received_at=now,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["event_key"],
                    set_={"duplicate_count": model.duplicate_count + 1, "updated_at": now},
                ).returning(model.duplicate_count)
                duplicate_count = (await session.execute(stmt)).scalar_one()

        duplicate = duplicate_count > 0
        self._log.info(
            "Webhook stored",
            topic=normalized_topic,
            event_key=event_key,
            duplicate=duplicate,
            duplicate_count=duplicate_count,
            body_bytes=len(raw_body),
        )
        return WebhookIngestResult(stored=True, event_key=event_key, duplicate=duplicate)

    async def handle(self, row: WebhookEvent) -> JobOutcome:
        topic = normalize_topic(row.topic)

        if topic.startswith(SALE_TOPIC_PREFIXES):
            sale_id, customer_id = extract_sale_reference(row.payload)
            if sale_id and customer_id and self._reconciliation_queue is not None:
                await self._reconciliation_queue.expedite(sale_id)
            return JobOutcome.done()

        if topic.startswith(CUSTOMER_TOPIC_PREFIX):
            if self._customer_sync is not None:
                await self._customer_sync(topic, row.payload)
            return JobOutcome.done()

        self._log.debug("No handler for webhook topic", topic=topic, event_key=row.event_key)
        return JobOutcome.done()
