"""Status enums and the transitions each queue table allows."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum as PyEnum
from typing import NamedTuple


def enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


class InvalidTransitionError(Exception):
    """Raised when a row is asked to move between statuses the table forbids."""


class JobStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class WebhookEventStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class SessionStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def from_decision(cls, approved: bool) -> "SessionStatus":
        return cls.APPROVED if approved else cls.REJECTED


class QueueStatuses(NamedTuple):
    """The four roles a queue status plays, bound to one table's enum."""

    pending: PyEnum
    processing: PyEnum
    done: PyEnum
    failed: PyEnum

    @property
    def terminal(self) -> tuple[PyEnum, PyEnum]:
        return (self.done, self.failed)

    def transitions(self) -> Mapping[PyEnum, frozenset[PyEnum]]:
        # done/failed only leave their terminal state through a fresh enqueue.
        return {
            self.pending: frozenset({self.processing}),
            self.processing: frozenset({self.pending, self.done, self.failed}),
            self.done: frozenset({self.pending}),
            self.failed: frozenset({self.pending}),
        }

    def check(self, current: PyEnum, target: PyEnum) -> None:
        if target not in self.transitions().get(current, frozenset()):
            raise InvalidTransitionError(f"{current.value} -> {target.value} is not allowed")


JOB_STATUSES = QueueStatuses(JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.DONE, JobStatus.FAILED)
WEBHOOK_STATUSES = QueueStatuses(
    WebhookEventStatus.PENDING,
    WebhookEventStatus.PROCESSING,
    WebhookEventStatus.PROCESSED,
    WebhookEventStatus.FAILED,
)
