"""Tests for the shared durable job queue, exercised through the reconciliation table."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from conftest import backdate, force_due

from agegate.models.reconciliation_job import ReconciliationJob
from agegate.models.status import JOB_STATUSES, InvalidTransitionError, JobStatus
from agegate.models.types import utcnow
from agegate.services.job_queue import (
    FailureKind,
    JobOutcome,
    OutcomeKind,
    classify_status,
    compute_backoff,
)
from agegate.services.pos_service_mock import PosServiceMock
from agegate.services.reconciliation_queue import ReconciliationQueue

PAYLOAD = {"first_name": "John", "date_of_birth": "1990-01-15"}


class ScriptedQueue(ReconciliationQueue):
    """Reconciliation table with a handler that returns canned outcomes per subject key."""

    def __init__(self, script: dict[str, Any], **kwargs: Any) -> None:
        kwargs.setdefault("initial_delay", timedelta(0))
        super().__init__(PosServiceMock(), **kwargs)
        self.script = script
        self.handled: list[str] = []

    async def handle(self, row: ReconciliationJob) -> JobOutcome:
        self.handled.append(row.subject_key)
        outcome = self.script[row.subject_key]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# ==================== Backoff and Classification Tests ====================


@pytest.mark.parametrize(
    "attempts, seconds",
    [(0, 5), (1, 5), (2, 8), (3, 15), (4, 25), (5, 45), (6, 90), (7, 180), (8, 600), (9, 1800), (10, 7200), (40, 7200)],
)
def test_compute_backoff_schedule(attempts, seconds):
    assert compute_backoff(attempts) == timedelta(seconds=seconds)


def test_compute_backoff_never_decreases():
    delays = [compute_backoff(n) for n in range(1, 30)]
    assert delays == sorted(delays)


@pytest.mark.parametrize(
    "status, kind",
    [
        (401, FailureKind.PERMANENT),
        (403, FailureKind.PERMANENT),
        (404, FailureKind.TRANSIENT),
        (408, FailureKind.TRANSIENT),
        (429, FailureKind.TRANSIENT),
        (500, FailureKind.TRANSIENT),
        (503, FailureKind.TRANSIENT),
        (None, FailureKind.TRANSIENT),
    ],
)
def test_classify_status(status, kind):
    assert classify_status(status) is kind


def test_outcome_from_status():
    assert JobOutcome.from_status(403, "denied").kind is OutcomeKind.FAILED
    assert JobOutcome.from_status(502, "bad gateway").kind is OutcomeKind.RETRY
    assert JobOutcome.from_status(None, "reset").error == "reset"


def test_transition_table_rejects_illegal_moves():
    JOB_STATUSES.check(JobStatus.PROCESSING, JobStatus.DONE)
    with pytest.raises(InvalidTransitionError):
        JOB_STATUSES.check(JobStatus.DONE, JobStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        JOB_STATUSES.check(JobStatus.PENDING, JobStatus.DONE)


# ==================== Enqueue Tests ====================


async def test_enqueue_is_idempotent_per_subject(reconciliation_queue):
    first = await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    second = await reconciliation_queue.enqueue("txn-1", PAYLOAD)

    assert first.queued and first.created is True
    assert second.queued and second.created is False
    health = await reconciliation_queue.health()
    assert health.pending == 1


async def test_enqueue_rejects_blank_subject(reconciliation_queue):
    result = await reconciliation_queue.enqueue("   ", PAYLOAD)
    assert result.queued is False
    assert result.reason == "missing_subject_key"


async def test_enqueue_merges_payload_without_overwriting(reconciliation_queue):
    """Test a second enqueue only fills payload keys the live row lacks."""
    await reconciliation_queue.enqueue("txn-1", {"first_name": "John", "last_name": ""})
    await reconciliation_queue.enqueue("txn-1", {"first_name": "Jon", "last_name": "Smith", "gender": "M"})

    job = await reconciliation_queue.lookup(subject_key="txn-1")
    assert job.payload == {"first_name": "John", "last_name": "Smith", "gender": "M"}


async def test_enqueue_keeps_earliest_due_time(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD, delay=timedelta(hours=1))
    sooner = await reconciliation_queue.enqueue("txn-1", PAYLOAD, delay=timedelta(seconds=0))
    later = await reconciliation_queue.enqueue("txn-1", PAYLOAD, delay=timedelta(hours=2))

    assert later.next_attempt_at == sooner.next_attempt_at
    assert sooner.next_attempt_at <= utcnow()


async def test_enqueue_fills_metadata_columns(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD, register_id="reg-1")
    await reconciliation_queue.enqueue("txn-1", PAYLOAD, outlet_id="out-1", transaction_total=19.999)

    job = await reconciliation_queue.lookup(subject_key="txn-1")
    assert job.register_id == "reg-1"
    assert job.outlet_id == "out-1"
    assert job.transaction_total == 20.0


@pytest.mark.parametrize("terminal", ["done", "failed"])
async def test_enqueue_resets_terminal_row(reconciliation_queue, terminal):
    """Test a finished row comes back pending with a fresh attempt budget and payload."""
    await reconciliation_queue.enqueue("txn-1", {"first_name": "Old"})
    [job] = await reconciliation_queue.claim_due()
    if terminal == "done":
        assert await reconciliation_queue.mark_done(job.id)
    else:
        assert await reconciliation_queue.mark_failed(job.id, "auth_failed:403")

    result = await reconciliation_queue.enqueue("txn-1", {"first_name": "New"})
    job = await reconciliation_queue.lookup(subject_key="txn-1")

    assert result.created is False
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert job.payload == {"first_name": "New"}
    assert job.last_error is None
    assert job.completed_at is None


# ==================== Claim Tests ====================


async def test_claim_marks_processing_and_counts_attempt(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)

    [job] = await reconciliation_queue.claim_due()
    assert job.status is JobStatus.PROCESSING
    assert job.attempts == 1
    assert await reconciliation_queue.claim_due() == []


async def test_claim_skips_rows_not_yet_due(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD, delay=timedelta(minutes=5))
    assert await reconciliation_queue.claim_due() == []


async def test_claim_respects_limit_and_due_order(reconciliation_queue):
    for index in range(3):
        await reconciliation_queue.enqueue(f"txn-{index}", PAYLOAD, delay=timedelta(minutes=5))
    await force_due(ReconciliationJob, subject_key="txn-2")
    await force_due(ReconciliationJob, subject_key="txn-0")

    claimed = await reconciliation_queue.claim_due(limit=1)
    assert len(claimed) == 1
    assert claimed[0].subject_key in {"txn-0", "txn-2"}


async def test_concurrent_claimers_never_share_a_row(reconciliation_queue):
    """Test racing claim calls partition the due rows between them."""
    for index in range(6):
        await reconciliation_queue.enqueue(f"txn-{index}", PAYLOAD)

    batches = await asyncio.gather(*(reconciliation_queue.claim_due(limit=4) for _ in range(3)))
    claimed_ids = [job.id for batch in batches for job in batch]

    assert len(claimed_ids) == 6
    assert len(set(claimed_ids)) == 6


# ==================== Status Write Tests ====================


async def test_status_writes_require_processing(reconciliation_queue):
    """Test a worker cannot move a row it does not hold."""
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    job = await reconciliation_queue.lookup(subject_key="txn-1")

    assert await reconciliation_queue.mark_done(job.id) is False
    assert await reconciliation_queue.reschedule(job.id, 1, "later") is False
    assert await reconciliation_queue.mark_failed(job.id, "nope") is False
    assert (await reconciliation_queue.lookup(subject_key="txn-1")).status is JobStatus.PENDING


async def test_reschedule_applies_backoff(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    [job] = await reconciliation_queue.claim_due()

    before = utcnow()
    assert await reconciliation_queue.reschedule(job.id, 3, "customer_not_attached_yet") is True
    job = await reconciliation_queue.lookup(subject_key="txn-1")

    assert job.status is JobStatus.PENDING
    assert job.last_error == "customer_not_attached_yet"
    assert job.next_attempt_at >= before + timedelta(seconds=15)
    assert job.next_attempt_at <= utcnow() + timedelta(seconds=15)


async def test_mark_done_clears_payload(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    [job] = await reconciliation_queue.claim_due()

    assert await reconciliation_queue.mark_done(job.id, last_customer_id="cust-1") is True
    job = await reconciliation_queue.lookup(subject_key="txn-1")
    assert job.status is JobStatus.DONE
    assert job.payload is None
    assert job.last_customer_id == "cust-1"
    assert job.completed_at is not None


async def test_long_errors_are_truncated(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    [job] = await reconciliation_queue.claim_due()

    await reconciliation_queue.mark_failed(job.id, "x" * 5000)
    assert len((await reconciliation_queue.lookup(subject_key="txn-1")).last_error) == 2000


async def test_release_restores_attempt(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    [job] = await reconciliation_queue.claim_due()

    assert await reconciliation_queue.release([job.id]) == 1
    assert await reconciliation_queue.release([]) == 0
    job = await reconciliation_queue.lookup(subject_key="txn-1")
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0


async def test_recover_stale_processing(reconciliation_queue):
    await reconciliation_queue.enqueue("txn-1", PAYLOAD)
    await reconciliation_queue.enqueue("txn-2", PAYLOAD)
    await reconciliation_queue.claim_due()
    await backdate(ReconciliationJob, "updated_at", timedelta(minutes=20), subject_key="txn-1")

    assert await reconciliation_queue.recover_stale() == 1
    stale = await reconciliation_queue.lookup(subject_key="txn-1")
    fresh = await reconciliation_queue.lookup(subject_key="txn-2")
    assert stale.status is JobStatus.PENDING
    assert stale.last_error == "stale_processing"
    assert fresh.status is JobStatus.PROCESSING


# ==================== Cleanup and Health Tests ====================


async def test_cleanup_deletes_old_rows_only(reconciliation_queue):
    for key in ("old-done", "fresh-done", "old-pending", "fresh-pending"):
        await reconciliation_queue.enqueue(key, PAYLOAD)
    for job in await reconciliation_queue.claim_due():
        if job.subject_key.endswith("done"):
            await reconciliation_queue.mark_done(job.id)
        else:
            await reconciliation_queue.release([job.id])
    await backdate(ReconciliationJob, "completed_at", timedelta(days=4), subject_key="old-done")
    await backdate(ReconciliationJob, "created_at", timedelta(days=3), subject_key="old-pending")

    result = await reconciliation_queue.cleanup(done_days=3, pending_days=2)

    assert result.deleted == 2
    assert await reconciliation_queue.lookup(subject_key="old-done") is None
    assert await reconciliation_queue.lookup(subject_key="old-pending") is None
    assert await reconciliation_queue.lookup(subject_key="fresh-done") is not None
    assert await reconciliation_queue.lookup(subject_key="fresh-pending") is not None


async def test_cleanup_clamps_windows(reconciliation_queue):
    result = await reconciliation_queue.cleanup(done_days=-5, pending_days=99)
    assert (result.done_days, result.pending_days) == (1, 30)


async def test_health_counts_by_status(reconciliation_queue):
    for key in ("a", "b", "c"):
        await reconciliation_queue.enqueue(key, PAYLOAD)
    await reconciliation_queue.enqueue("later", PAYLOAD, delay=timedelta(hours=1))
    claimed = await reconciliation_queue.claim_due(limit=2)
    await reconciliation_queue.mark_done(claimed[0].id)

    health = await reconciliation_queue.health()
    assert (health.pending, health.processing, health.done, health.failed) == (2, 1, 1, 0)
    assert health.next_due_at is not None
    assert health.last_updated_at is not None


# ==================== Batch Runner Tests ====================


async def test_run_batch_applies_each_outcome():
    queue = ScriptedQueue(
        {
            "ok": JobOutcome.done(last_customer_id="cust-1"),
            "wait": JobOutcome.retry("customer_not_attached_yet"),
            "deny": JobOutcome.failed("auth_failed:403"),
            "boom": RuntimeError("handler exploded"),
        }
    )
    for key in queue.script:
        await queue.enqueue(key, PAYLOAD)

    summary = await queue.run_batch(limit=10)

    assert (summary.claimed, summary.processed, summary.pending, summary.failed, summary.released) == (4, 1, 2, 1, 0)
    assert (await queue.lookup(subject_key="ok")).last_customer_id == "cust-1"
    assert (await queue.lookup(subject_key="wait")).status is JobStatus.PENDING
    assert (await queue.lookup(subject_key="deny")).last_error == "auth_failed:403"
    boom = await queue.lookup(subject_key="boom")
    assert boom.status is JobStatus.PENDING
    assert boom.last_error == "handler exploded"


async def test_run_batch_fails_after_max_attempts():
    queue = ScriptedQueue({"wait": JobOutcome.retry("sale_unresolved")}, max_attempts=2)
    await queue.enqueue("wait", PAYLOAD)

    await queue.run_batch()
    await force_due(ReconciliationJob, subject_key="wait")
    summary = await queue.run_batch()

    job = await queue.lookup(subject_key="wait")
    assert summary.failed == 1
    assert job.status is JobStatus.FAILED
    assert job.last_error == "max_attempts_reached:sale_unresolved"


async def test_run_batch_fails_jobs_past_max_age():
    queue = ScriptedQueue({"wait": JobOutcome.retry("customer_not_attached_yet")}, max_age=timedelta(hours=4))
    await queue.enqueue("wait", PAYLOAD)
    await backdate(ReconciliationJob, "created_at", timedelta(hours=5), subject_key="wait")

    await queue.run_batch()

    job = await queue.lookup(subject_key="wait")
    assert job.status is JobStatus.FAILED
    assert job.last_error == "timeout_waiting_for_customer:customer_not_attached_yet"


async def test_run_batch_releases_rows_when_budget_is_spent():
    """Test rows that cannot start within the time budget go back untouched."""
    queue = ScriptedQueue({"a": JobOutcome.done(), "b": JobOutcome.done()})
    await queue.enqueue("a", PAYLOAD)
    await queue.enqueue("b", PAYLOAD)

    summary = await queue.run_batch(max_duration_ms=0)

    assert summary.claimed == 2
    assert summary.released == 2
    assert queue.handled == []
    for key in ("a", "b"):
        job = await queue.lookup(subject_key=key)
        assert job.status is JobStatus.PENDING
        assert job.attempts == 0


async def test_run_batch_with_nothing_due():
    summary = await ScriptedQueue({}).run_batch()
    assert summary.ok is True
    assert summary.claimed == 0


async def test_reset_job_gets_a_fresh_age_budget():
    """Test a job re-enqueued long after its first run is not timed out on its first wait."""
    queue = ScriptedQueue({"txn-1": JobOutcome.retry("sale_unresolved")}, max_age=timedelta(hours=4))
    await queue.enqueue("txn-1", PAYLOAD)
    [job] = await queue.claim_due()
    await queue.mark_done(job.id)
    await backdate(ReconciliationJob, "created_at", timedelta(hours=5), subject_key="txn-1")

    await queue.enqueue("txn-1", PAYLOAD)
    summary = await queue.run_batch()

    job = await queue.lookup(subject_key="txn-1")
    assert summary.pending == 1
    assert job.status is JobStatus.PENDING
    assert job.last_error == "sale_unresolved"
    assert utcnow() - job.created_at < timedelta(minutes=1)
