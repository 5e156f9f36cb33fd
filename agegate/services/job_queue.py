"""
Postgres-table job queue shared by customer reconciliation and webhook ingestion.

Rows move ``pending -> processing -> done | failed`` with ``processing ->
pending`` on a transient failure. All coordination between concurrent
invocations goes through the database:

- claiming is one ``UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP
  LOCKED) RETURNING ...`` statement committed in its own transaction, so a
  row is never handed to two claimers;
- every later status write is checked against the transition table and
  guarded by ``status = 'processing'`` in SQL, so a stale worker cannot move
  a row it no longer owns.

The queue is driven by external triggers (cron, scheduler HTTP calls) and
never runs its own loop.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum as PyEnum
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agegate.core.logger import get_logger
from agegate.db.session import AsyncSessionFactory
from agegate.models.status import QueueStatuses
from agegate.models.types import utcnow
from agegate.schemas.queue import BatchSummary, CleanupResult, QueueHealth

logger = get_logger(component="JobQueue")

BACKOFF_SCHEDULE_SECONDS: tuple[int, ...] = (5, 8, 15, 25, 45, 90, 180, 600, 1800, 7200)
PERMANENT_STATUSES = frozenset({401, 403})
TRANSIENT_STATUSES = frozenset({408, 409, 425, 429})
MAX_CLAIM_LIMIT = 500
BUDGET_SAFETY_MARGIN_MS = 750
MAX_ERROR_LENGTH = 2000

RowT = TypeVar("RowT")


def compute_backoff(attempts: int) -> timedelta:
    n = max(1, int(attempts or 1))
    index = min(len(BACKOFF_SCHEDULE_SECONDS) - 1, n - 1)
    return timedelta(seconds=BACKOFF_SCHEDULE_SECONDS[index])


class FailureKind(str, PyEnum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


def classify_status(status: int | None) -> FailureKind:
    if status in PERMANENT_STATUSES:
        return FailureKind.PERMANENT
    if status in TRANSIENT_STATUSES or (status is not None and status >= 500):
        return FailureKind.TRANSIENT
    # Unknown statuses and transport errors retry until the attempt budget runs out.
    return FailureKind.TRANSIENT


class OutcomeKind(str, PyEnum):
    DONE = "done"
    RETRY = "retry"
    FAILED = "failed"


@dataclass
class JobOutcome:
    kind: OutcomeKind
    error: str | None = None
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def done(cls, **values: Any) -> "JobOutcome":
        return cls(OutcomeKind.DONE, None, values)

    @classmethod
    def retry(cls, error: str) -> "JobOutcome":
        return cls(OutcomeKind.RETRY, error)

    @classmethod
    def failed(cls, error: str) -> "JobOutcome":
        return cls(OutcomeKind.FAILED, error)

    @classmethod
    def from_status(cls, status: int | None, error: str) -> "JobOutcome":
        if classify_status(status) is FailureKind.PERMANENT:
            return cls.failed(error)
        return cls.retry(error)


def dialect_insert(session: AsyncSession, model: Any):
    """``INSERT`` construct with ``ON CONFLICT`` support for the bound backend."""
    dialect = session.bind.dialect.name if session.bind is not None else ""
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"ON CONFLICT upserts are not supported on {dialect or 'an unbound session'}")


class DurableJobQueue(ABC, Generic[RowT]):
    model: ClassVar[Any]
    statuses: ClassVar[QueueStatuses]
    created_column: ClassVar[str] = "created_at"
    completed_column: ClassVar[str] = "completed_at"
    name: ClassVar[str] = "queue"
    timeout_reason: ClassVar[str] = "max_age_exceeded"

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionFactory,
        concurrency: int = 3,
        max_attempts: int = 25,
        max_age: timedelta | None = None,
        stale_after: timedelta = timedelta(minutes=15),
    ) -> None:
        self._session_factory = session_factory
        self._concurrency = max(1, concurrency)
        self._max_attempts = max(1, max_attempts)
        self._max_age = max_age
        self._stale_after = stale_after
        self._log = logger.bind(queue=self.name)

    @abstractmethod
    async def handle(self, row: RowT) -> JobOutcome:
        """Do the work for one claimed row. Exceptions count as transient failures."""

    @property
    def _created(self):
        return getattr(self.model, self.created_column)

    @property
    def _completed(self):
        return getattr(self.model, self.completed_column)

    async def lookup(self, **criteria: Any) -> RowT | None:
        async with self._session_factory() as session:
            result = await session.execute(select(self.model).filter_by(**criteria).limit(1))
            return result.scalar_one_or_none()

    async def claim_due(self, limit: int = 100) -> list[RowT]:
        model = self.model
        pending, processing = self.statuses.pending, self.statuses.processing
        normalized_limit = max(1, min(int(limit or 100), MAX_CLAIM_LIMIT))
        now = utcnow()

        due_ids = (
            select(model.id)
            .where(model.status == pending, model.next_attempt_at <= now)
            .order_by(model.next_attempt_at, self._created)
            .limit(normalized_limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(model)
            .where(model.id.in_(due_ids), model.status == pending)
            .values(status=processing, attempts=model.attempts + 1, updated_at=now)
            .returning(model)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            async with session.begin():
                rows = list((await session.execute(stmt)).scalars().all())

        rows.sort(key=lambda row: row.next_attempt_at)
        if rows:
            self._log.info("Claimed due jobs", claimed=len(rows))
        return rows

    async def reschedule(self, job_id: Any, attempts: int, error: str | None) -> bool:
        now = utcnow()
        return await self._transition(
            job_id,
            self.statuses.pending,
            next_attempt_at=now + compute_backoff(attempts),
            last_error=_truncate(error or "pending"),
            updated_at=now,
        )

    async def mark_done(self, job_id: Any, **values: Any) -> bool:
        now = utcnow()
        return await self._transition(
            job_id,
            self.statuses.done,
            last_error=None,
            payload=None,
            updated_at=now,
            **{self.completed_column: now},
            **values,
        )

    async def mark_failed(self, job_id: Any, error: str | None) -> bool:
        return await self._transition(
            job_id,
            self.statuses.failed,
            last_error=_truncate(error or "failed"),
            updated_at=utcnow(),
        )

    async def release(self, job_ids: Sequence[Any]) -> int:
        """Hand claimed-but-unstarted rows back without a backoff penalty or a spent attempt."""
        if not job_ids:
            return 0
        model = self.model
        now = utcnow()
        stmt = (
            update(model)
            .where(model.id.in_(list(job_ids)), model.status == self.statuses.processing)
            .values(status=self.statuses.pending, attempts=model.attempts - 1, next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount or 0

    async def recover_stale(self) -> int:
        """Return rows stuck in ``processing`` (crashed invocation) to ``pending``."""
        model = self.model
        now = utcnow()
        stmt = (
            update(model)
            .where(model.status == self.statuses.processing, model.updated_at < now - self._stale_after)
            .values(status=self.statuses.pending, next_attempt_at=now, last_error="stale_processing", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        recovered = result.rowcount or 0
        if recovered:
            self._log.warning("Recovered stale processing jobs", recovered=recovered)
        return recovered

    async def cleanup(self, done_days: int = 3, pending_days: int = 2) -> CleanupResult:
        model = self.model
        done_window = max(1, min(int(done_days or 3), 30))
        pending_window = max(1, min(int(pending_days or 2), 30))
        now = utcnow()
        stmt = (
            delete(model)
            .where(
                or_(
                    (model.status == self.statuses.done) & (self._completed < now - timedelta(days=done_window)),
                    model.status.in_([self.statuses.pending, self.statuses.failed])
                    & (self._created < now - timedelta(days=pending_window)),
                )
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        deleted = result.rowcount or 0
        self._log.info("Queue cleanup finished", deleted=deleted, done_days=done_window, pending_days=pending_window)
        return CleanupResult(deleted=deleted, done_days=done_window, pending_days=pending_window)

    async def health(self) -> QueueHealth:
        model = self.model
        async with self._session_factory() as session:
            counts = dict(
                (await session.execute(select(model.status, func.count()).group_by(model.status))).all()
            )
            next_due_at = (
                await session.execute(
                    select(func.min(model.next_attempt_at)).where(model.status == self.statuses.pending)
                )
            ).scalar_one_or_none()
            last_updated_at = (await session.execute(select(func.max(model.updated_at)))).scalar_one_or_none()

        return QueueHealth(
            pending=counts.get(self.statuses.pending, 0),
            processing=counts.get(self.statuses.processing, 0),
            done=counts.get(self.statuses.done, 0),
            failed=counts.get(self.statuses.failed, 0),
            next_due_at=next_due_at,
            last_updated_at=last_updated_at,
        )

    async def run_batch(self, *, limit: int = 100, max_duration_ms: int = 8000) -> BatchSummary:
        """
        Claim one bounded batch and work it within ``max_duration_ms``.

        At most ``concurrency`` rows are in flight. Once the remaining budget
        is too small to finish another row, the rest are released for the
        next invocation.
        """
        started = time.monotonic()
        await self.recover_stale()
        claimed = await self.claim_due(limit)
        summary = BatchSummary(claimed=len(claimed))
        if not claimed:
            return summary

        semaphore = asyncio.Semaphore(self._concurrency)
        skipped: list[Any] = []

        async def work(row: RowT) -> None:
            async with semaphore:
                elapsed_ms = (time.monotonic() - started) * 1000
                if elapsed_ms > max_duration_ms - BUDGET_SAFETY_MARGIN_MS:
                    skipped.append(row.id)
                    return
                kind = await self._process_row(row)
                if kind is OutcomeKind.DONE:
                    summary.processed += 1
                elif kind is OutcomeKind.RETRY:
                    summary.pending += 1
                else:
                    summary.failed += 1

        await asyncio.gather(*(work(row) for row in claimed))
        summary.released = await self.release(skipped)
        self._log.info(
            "Queue batch finished",
            claimed=summary.claimed,
            processed=summary.processed,
            pending=summary.pending,
            failed=summary.failed,
            released=summary.released,
            duration_ms=round((time.monotonic() - started) * 1000),
        )
        return summary

    async def _process_row(self, row: RowT) -> OutcomeKind:
        try:
            outcome = await self.handle(row)
        except Exception as exc:
            self._log.exception("Job handler raised", job_id=str(row.id), error=str(exc))
            outcome = JobOutcome.retry(str(exc) or exc.__class__.__name__)

        if outcome.kind is OutcomeKind.DONE:
            await self.mark_done(row.id, **outcome.values)
            return OutcomeKind.DONE
        if outcome.kind is OutcomeKind.FAILED:
            await self.mark_failed(row.id, outcome.error)
            self._log.warning("Job failed permanently", job_id=str(row.id), error=outcome.error)
            return OutcomeKind.FAILED
        return await self._retry_or_fail(row, outcome.error)

    async def _retry_or_fail(self, row: RowT, error: str | None) -> OutcomeKind:
        attempts = int(row.attempts or 0)
        if attempts >= self._max_attempts:
            await self.mark_failed(row.id, f"max_attempts_reached:{error or 'unknown'}")
            self._log.warning("Job exhausted its attempts", job_id=str(row.id), attempts=attempts, error=error)
            return OutcomeKind.FAILED
        created = getattr(row, self.created_column)
        if self._max_age is not None and created is not None and utcnow() - created > self._max_age:
            await self.mark_failed(row.id, f"{self.timeout_reason}:{error or 'unknown'}")
            self._log.warning("Job exceeded its max age", job_id=str(row.id), error=error)
            return OutcomeKind.FAILED
        await self.reschedule(row.id, attempts, error)
        return OutcomeKind.RETRY

    async def _transition(self, job_id: Any, target: PyEnum, **values: Any) -> bool:
        # Workers only ever move rows they hold in ``processing``.
        source = self.statuses.processing
        self.statuses.check(source, target)
        model = self.model
        stmt = (
            update(model)
            .where(model.id == job_id, model.status == source)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        moved = (result.rowcount or 0) == 1
        if not moved:
            self._log.warning("Status transition skipped", job_id=str(job_id), target=target.value)
        return moved


def _truncate(message: str) -> str:
    return message[:MAX_ERROR_LENGTH]
