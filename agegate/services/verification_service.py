from __future__ import annotations

from dataclasses import dataclass
from functools import partial

from sqlalchemy.ext.asyncio import AsyncSession

from agegate.core.config import settings
from agegate.core.logger import get_logger
from agegate.schemas.verification import DecodedDocument, Decision, ScanRequest
from agegate.services.barcode_decoder import decode
from agegate.services.customer_fields import build_customer_update_payload
from agegate.services.decision_engine import decide
from agegate.services.deny_list import DenyListService
from agegate.services.reconciliation_queue import ReconciliationQueue
from agegate.services.session_store import LiveSessionStore, SessionResult, VerificationSession

logger = get_logger(component="VerificationService")


@dataclass
class ScanOutcome:
    document: DecodedDocument
    decision: Decision
    session: VerificationSession | None
    reconcile_queued: bool


class VerificationService:
    def __init__(
        self,
        session_store: LiveSessionStore,
        reconciliation_queue: ReconciliationQueue,
        deny_list_service: DenyListService,
        *,
        minimum_age: int | None = None,
    ) -> None:
        self.session_store = session_store
        self.reconciliation_queue = reconciliation_queue
        self.deny_list_service = deny_list_service
        self.minimum_age = settings.minimum_age if minimum_age is None else minimum_age

    async def scan(self, session: AsyncSession, transaction_id: str, request: ScanRequest) -> ScanOutcome:
        """Decode, decide, publish the verdict to the live session and queue profile reconciliation."""
        document = decode(request.barcode_data)
        lookup = partial(self.deny_list_service.find_banned_customer, session)
        decision = await decide(document, lookup, minimum_age=self.minimum_age)

        self.session_store.create(transaction_id, register_id=request.register_id, outlet_id=request.outlet_id)
        for warning in document.warnings:
            self.session_store.append_log(transaction_id, f"DECODE: {warning}", "warn")
        live_session = self.session_store.update(
            transaction_id,
            SessionResult(
                approved=decision.approved,
                reason=decision.reason,
                age=document.age,
                customer_name=document.full_name or None,
                register_id=request.register_id,
            ),
        )

        reconcile_queued = False
        if decision.approved:
            reconcile_queued = await self._queue_reconciliation(transaction_id, document, request)

        logger.info(
            "Scan evaluated",
            transaction_id=transaction_id,
            clerk_id=request.clerk_id,
            approved=decision.approved,
            code=decision.code.value,
            age=document.age,
            document_type=document.document_type,
            placeholder_document_number=document.document_number_is_placeholder,
            reconcile_queued=reconcile_queued,
        )
        if reconcile_queued:
            live_session = self.session_store.get(transaction_id) or live_session
        return ScanOutcome(
            document=document, decision=decision, session=live_session, reconcile_queued=reconcile_queued
        )

    async def _queue_reconciliation(
        self, transaction_id: str, document: DecodedDocument, request: ScanRequest
    ) -> bool:
        payload = build_customer_update_payload(document)
        if not payload:
            return False
        try:
            result = await self.reconciliation_queue.enqueue(
                transaction_id,
                payload,
                register_id=request.register_id,
                outlet_id=request.outlet_id,
                transaction_total=request.transaction_total,
            )
        except Exception as exc:
            # Enqueue failures never change the verdict.
            logger.exception("Failed to queue reconciliation", transaction_id=transaction_id, error=str(exc))
            self.session_store.append_log(transaction_id, "RECONCILE: Could not queue profile update", "error")
            return False

        if result.queued:
            self.session_store.append_log(transaction_id, "RECONCILE: Customer profile update queued", "info")
        return result.queued
