from __future__ import annotations

import pytest

from agegate.core.config import settings
from agegate.workers import queue_runner


@pytest.fixture
def runner_queues(monkeypatch, reconciliation_queue, webhook_queue):
    monkeypatch.setattr(queue_runner, "get_reconciliation_queue", lambda: reconciliation_queue)
    monkeypatch.setattr(queue_runner, "get_webhook_queue", lambda: webhook_queue)
    return reconciliation_queue, webhook_queue


def test_parser_defaults_follow_settings():
    args = queue_runner.build_parser().parse_args(["reconciliation"])
    assert args.limit == settings.queue_batch_limit
    assert args.max_duration_ms == settings.queue_max_duration_ms


def test_parser_rejects_unknown_command():
    with pytest.raises(SystemExit):
        queue_runner.build_parser().parse_args(["documents"])


async def test_run_reconciliation_batch(runner_queues, pos_mock):
    reconciliation_queue, _ = runner_queues
    pos_mock.add_customer("cust-1")
    pos_mock.add_transaction("txn-1", customer_id="cust-1")
    await reconciliation_queue.enqueue("txn-1", {"first_name": "John"})

    args = queue_runner.build_parser().parse_args(["reconciliation", "--limit", "5"])
    result = await queue_runner.run(args)

    assert result["claimed"] == 1
    assert result["processed"] == 1


async def test_run_health_and_cleanup(runner_queues):
    reconciliation_queue, _ = runner_queues
    await reconciliation_queue.enqueue("txn-1", {"first_name": "John"})

    health = await queue_runner.run(queue_runner.build_parser().parse_args(["health"]))
    cleanup = await queue_runner.run(queue_runner.build_parser().parse_args(["cleanup", "--done-days", "7"]))

    assert health["reconciliation"]["pending"] == 1
    assert health["webhooks"]["pending"] == 0
    assert cleanup["reconciliation"] == {"deleted": 0, "done_days": 7, "pending_days": settings.retention_pending_days}
