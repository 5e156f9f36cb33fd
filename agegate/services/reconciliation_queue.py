"""
Customer-profile reconciliation jobs.

A verified scan knows the customer's identity fields before the POS has a
customer attached to the sale. The job waits (with backoff) until a customer
shows up on the sale, then fills that customer's blank profile fields.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select, update

from agegate.models.reconciliation_job import ReconciliationJob
from agegate.models.status import JOB_STATUSES
from agegate.models.types import utcnow
from agegate.schemas.pos import PosTransaction
from agegate.schemas.queue import EnqueueResult
from agegate.services.customer_fields import merge_fill_blanks
from agegate.services.job_queue import (
    DurableJobQueue,
    FailureKind,
    JobOutcome,
    classify_status,
    dialect_insert,
)
from agegate.services.pos_service import PosApiError
from agegate.services.session_store import LiveSessionStore

TOTAL_TOLERANCE = 0.02
OPEN_TRANSACTION_SCAN_LIMIT = 50
CUSTOMER_NOT_ATTACHED = "customer_not_attached_yet"
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _normalize_key(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None


def _normalize_total(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        return None


def _recency(transaction: PosTransaction) -> datetime:
    stamp = transaction.updated_at or transaction.created_at
    if stamp is None:
        return _EPOCH
    return stamp if stamp.tzinfo is not None else stamp.replace(tzinfo=timezone.utc)


def choose_best_transaction(
    candidates: Iterable[PosTransaction], *, total: float | None = None
) -> PosTransaction | None:
    """Prefer a candidate whose total matches within two cents, then the most recently touched."""
    pool = list(candidates)
    if not pool:
        return None
    expected = _normalize_total(total)
    if expected is not None:
        matches = [
            txn for txn in pool if txn.total is not None and round(abs(txn.total - expected), 2) <= TOTAL_TOLERANCE
        ]
        if matches:
            pool = matches
    return max(pool, key=_recency)


class ReconciliationQueue(DurableJobQueue[ReconciliationJob]):
    model = ReconciliationJob
    statuses = JOB_STATUSES
    name = "reconciliation"
    timeout_reason = "timeout_waiting_for_customer"

    def __init__(
        self,
        pos_service: Any,
        *,
        session_store: LiveSessionStore | None = None,
        initial_delay: timedelta = timedelta(seconds=5),
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._pos = pos_service
        self._session_store = session_store
        self._initial_delay = initial_delay

    async def enqueue(
        self,
        subject_key: str | None,
        payload: dict[str, Any] | None = None,
        *,
        delay: timedelta | None = None,
        register_id: str | None = None,
        outlet_id: str | None = None,
        transaction_total: float | None = None,
        resolved_subject_key: str | None = None,
    ) -> EnqueueResult:
        """
        Upsert the job for ``subject_key``.

        A new key inserts a pending row. A terminal row is reset to pending
        with a fresh attempt budget and age. A live row keeps its attempts, takes the
        earlier of the two due times and only gains payload fields it lacks.
        """
        key = _normalize_key(subject_key)
        if key is None:
            return EnqueueResult(queued=False, reason="missing_subject_key")

        now = utcnow()
        wait = self._initial_delay if delay is None else max(delay, timedelta(0))
        next_attempt_at = now + wait
        meta = {
            "resolved_subject_key": _normalize_key(resolved_subject_key),
            "register_id": _normalize_key(register_id),
            "outlet_id": _normalize_key(outlet_id),
            "transaction_total": _normalize_total(transaction_total),
        }
        model = self.model

        async with self._session_factory() as session:
            async with session.begin():
                insert_stmt = (
                    dialect_insert(session, model)
                    .values(
                        subject_key=key,
                        status=self.statuses.pending,
                        attempts=0,
                        next_attempt_at=next_attempt_at,
                        payload=payload or None,
                        created_at=now,
                        updated_at=now,
                        **meta,
                    )
                    .on_conflict_do_nothing(index_elements=["subject_key"])
                    .returning(model.id)
                )
                created = (await session.execute(insert_stmt)).scalar_one_or_none() is not None

                if not created:
                    job = (
                        await session.execute(select(model).where(model.subject_key == key).with_for_update())
                    ).scalar_one()
                    if job.status in self.statuses.terminal:
                        self.statuses.check(job.status, self.statuses.pending)
                        job.status = self.statuses.pending
                        job.attempts = 0
                        job.next_attempt_at = next_attempt_at
                        job.payload = payload or None
                        job.last_error = None
                        job.completed_at = None
                        job.created_at = now
                    else:
                        job.payload = merge_fill_blanks(job.payload, payload) or None
                        job.next_attempt_at = min(job.next_attempt_at, next_attempt_at)
                    for column, value in meta.items():
                        if value is not None:
                            setattr(job, column, value)
                    job.updated_at = now
                    next_attempt_at = job.next_attempt_at

        self._log.info(
            "Reconciliation job enqueued",
            subject_key=key,
            created=created,
            next_attempt_at=next_attempt_at.isoformat(),
        )
        return EnqueueResult(queued=True, subject_key=key, created=created, next_attempt_at=next_attempt_at)

    async def expedite(self, subject_key: str | None) -> bool:
        """Make a pending job due now, e.g. when a webhook says the customer is attached."""
        key = _normalize_key(subject_key)
        if key is None:
            return False
        model = self.model
        now = utcnow()
        stmt = (
            update(model)
            .where(
                (model.subject_key == key) | (model.resolved_subject_key == key),
                model.status == self.statuses.pending,
                model.next_attempt_at > now,
            )
            .values(next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        expedited = (result.rowcount or 0) > 0
        if expedited:
            self._log.info("Reconciliation job expedited", subject_key=key)
        return expedited

    async def expedite_waiting_for_customer(self, topic: str, payload: Any = None) -> int:
        """
        Customer webhook hook: make jobs that last retried for a missing customer due now.

        A customer create or update usually lands as the clerk attaches the
        customer to the sale, so those jobs are likely to succeed on the next run.
        """
        model = self.model
        now = utcnow()
        stmt = (
            update(model)
            .where(
                model.status == self.statuses.pending,
                model.last_error == CUSTOMER_NOT_ATTACHED,
                model.next_attempt_at > now,
            )
            .values(next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        expedited = result.rowcount or 0
        if expedited:
            self._log.info("Jobs waiting for a customer expedited", topic=topic, expedited=expedited)
        return expedited

    async def handle(self, row: ReconciliationJob) -> JobOutcome:
        payload = row.payload if isinstance(row.payload, dict) else None
        if not payload:
            return JobOutcome.failed("missing_fields")

        try:
            transaction = await self._resolve_transaction(row)
        except PosApiError as exc:
            return self._pos_failure(exc.status, str(exc))

        if transaction is None:
            self._progress(row, "RECONCILE: Waiting for sale to resolve...", "warn")
            return JobOutcome.retry("sale_unresolved")

        customer_id = _normalize_key(transaction.customer_id)
        if customer_id is None:
            self._progress(row, "RECONCILE: Waiting for loyalty customer attach...", "warn")
            return JobOutcome.retry(CUSTOMER_NOT_ATTACHED)

        self._progress(row, f"RECONCILE: Updating customer fields ({customer_id})...", "info")
        try:
            result = await self._pos.update_customer_by_id(customer_id, payload, fill_blanks_only=True)
        except PosApiError as exc:
            return self._pos_failure(exc.status, str(exc))

        if result.updated or result.skipped == "no_blank_fields":
            self._progress(row, f"RECONCILE: Customer profile up to date ({len(result.fields)} field(s))", "success")
            return JobOutcome.done(last_customer_id=customer_id)
        if result.skipped == "writes_disabled":
            return JobOutcome.failed("writes_disabled")
        return self._pos_failure(result.status, result.error or f"customer_update_failed:{result.status or 'unknown'}")

    async def _resolve_transaction(self, row: ReconciliationJob) -> PosTransaction | None:
        for candidate in dict.fromkeys(key for key in (row.resolved_subject_key, row.subject_key) if key):
            transaction = await self._pos.get_transaction_by_id(candidate)
            if transaction is not None:
                if transaction.transaction_id and transaction.transaction_id != row.resolved_subject_key:
                    await self._set_resolved(row, transaction.transaction_id)
                return transaction

        # The caller's id may be a register-side id; fall back to the register's open sales.
        if not row.register_id:
            return None
        candidates: Sequence[PosTransaction] = await self._pos.list_open_transactions(
            register_id=row.register_id, outlet_id=row.outlet_id, limit=OPEN_TRANSACTION_SCAN_LIMIT
        )
        best = choose_best_transaction(candidates, total=row.transaction_total)
        if best is not None and best.transaction_id:
            await self._set_resolved(row, best.transaction_id)
            return best
        return None

    async def _set_resolved(self, row: ReconciliationJob, transaction_id: str) -> None:
        model = self.model
        stmt = (
            update(model)
            .where(model.id == row.id, model.status == self.statuses.processing)
            .values(resolved_subject_key=transaction_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)
        row.resolved_subject_key = transaction_id
        self._log.info("Resolved POS transaction", subject_key=row.subject_key, resolved=transaction_id)

    def _pos_failure(self, status: int | None, error: str) -> JobOutcome:
        if classify_status(status) is FailureKind.PERMANENT:
            return JobOutcome.failed(f"auth_failed:{status}")
        return JobOutcome.retry(error)

    def _progress(self, row: ReconciliationJob, message: str, level: str) -> None:
        if self._session_store is not None:
            self._session_store.append_log(row.subject_key, message, level)

