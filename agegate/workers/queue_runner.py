"""One-shot queue runner for schedulers that invoke a command instead of an HTTP endpoint."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence

from agegate.api.dependencies import get_reconciliation_queue, get_webhook_queue
from agegate.core.config import settings
from agegate.core.logger import configure_logging, get_logger

logger = get_logger(component="QueueRunner")

COMMANDS = ("reconciliation", "webhooks", "cleanup", "health")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agegate-run-queue", description=__doc__)
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("--limit", type=int, default=settings.queue_batch_limit)
    parser.add_argument("--max-duration-ms", type=int, default=settings.queue_max_duration_ms)
    parser.add_argument("--done-days", type=int, default=settings.retention_done_days)
    parser.add_argument("--pending-days", type=int, default=settings.retention_pending_days)
    return parser


async def run(args: argparse.Namespace) -> dict:
    reconciliation = get_reconciliation_queue()
    webhooks = get_webhook_queue()

    if args.command == "reconciliation":
        summary = await reconciliation.run_batch(limit=args.limit, max_duration_ms=args.max_duration_ms)
        return summary.model_dump(mode="json")
    if args.command == "webhooks":
        summary = await webhooks.run_batch(limit=args.limit, max_duration_ms=args.max_duration_ms)
        return summary.model_dump(mode="json")
    if args.command == "cleanup":
        return {
            "reconciliation": (await reconciliation.cleanup(args.done_days, args.pending_days)).model_dump(),
            "webhooks": (await webhooks.cleanup(args.done_days, args.pending_days)).model_dump(),
        }
    return {
        "reconciliation": (await reconciliation.health()).model_dump(mode="json"),
        "webhooks": (await webhooks.health()).model_dump(mode="json"),
    }


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        result = asyncio.run(run(args))
    except Exception as exc:
        logger.exception("Queue run failed", command=args.command, error=str(exc))
        return 1
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
