"""In-process store of live verification sessions, keyed by POS transaction id."""

from __future__ import annotations

import asyncio
import copy
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from agegate.core.logger import get_logger
from agegate.models.status import SessionStatus
from agegate.models.types import utcnow

logger = get_logger(component="LiveSessionStore")

IDLE_MESSAGE = "IDLE: Waiting for handheld connection..."
CONNECTED_MESSAGE = "HANDSHAKE: Handheld scanner connected"
DISCONNECTED_MESSAGE = "DISCONNECT: Handheld scanner timed out"


class SessionNotFoundError(Exception):
    """Raised by API handlers when a transaction has no live session."""


@dataclass
class ActivityLogEntry:
    time: datetime
    message: str
    level: str = "info"


@dataclass
class SessionResult:
    approved: bool
    reason: str | None = None
    age: int | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    register_id: str | None = None
    status: SessionStatus | None = None


@dataclass
class VerificationSession:
    transaction_id: str
    created_at: datetime
    expires_at: datetime
    activity_log: deque[ActivityLogEntry]
    status: SessionStatus = SessionStatus.PENDING
    customer_id: str | None = None
    customer_name: str | None = None
    age: int | None = None
    reason: str | None = None
    register_id: str | None = None
    outlet_id: str | None = None
    device_linked: bool = False
    last_heartbeat: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class LiveSessionStore:
    """
    TTL-bounded map guarded by one re-entrant lock.

    Every public method takes the lock for its whole read-modify-write and
    hands back a deep copy, so callers never see a session mid-update.
    Expiry is enforced lazily on access and by :meth:`sweep`, which the
    owned background task runs on a fixed interval.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(minutes=15),
        heartbeat_timeout: timedelta = timedelta(seconds=10),
        log_limit: int = 50,
        sweep_interval_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ttl = ttl
        self._heartbeat_timeout = heartbeat_timeout
        self._log_limit = log_limit
        self._sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sessions: dict[str, VerificationSession] = {}
        self._lock = threading.RLock()
        self._sweeper: asyncio.Task | None = None

    def create(
        self, transaction_id: str, *, register_id: str | None = None, outlet_id: str | None = None
    ) -> VerificationSession:
        with self._lock:
            now = self._clock()
            existing = self._live(transaction_id, now)
            if existing is not None:
                return self._snapshot(existing)

            session = VerificationSession(
                transaction_id=transaction_id,
                created_at=now,
                updated_at=now,
                expires_at=now + self._ttl,
                register_id=register_id,
                outlet_id=outlet_id,
                activity_log=deque([ActivityLogEntry(now, IDLE_MESSAGE, "info")], maxlen=self._log_limit),
            )
            self._sessions[transaction_id] = session
            logger.info(
                "Verification session created",
                transaction_id=transaction_id,
                register_id=register_id,
                expires_at=session.expires_at.isoformat(),
            )
            return self._snapshot(session)

    def update(self, transaction_id: str, result: SessionResult) -> VerificationSession | None:
        with self._lock:
            now = self._clock()
            session = self._live(transaction_id, now)
            if session is None:
                logger.warning("Update for missing or expired session", transaction_id=transaction_id)
                return None

            session.status = result.status or SessionStatus.from_decision(result.approved)
            session.customer_id = result.customer_id
            session.customer_name = result.customer_name
            session.age = result.age
            session.reason = result.reason
            session.register_id = result.register_id or session.register_id
            session.updated_at = now
            self._append(
                session,
                f"RESULT: Scan {'Approved' if result.approved else 'Rejected'} ({result.reason or 'OK'})",
                "success" if result.approved else "error",
                now,
            )
            logger.info(
                "Verification session updated",
                transaction_id=transaction_id,
                status=session.status.value,
                age=session.age,
            )
            return self._snapshot(session)

    def heartbeat(self, transaction_id: str) -> VerificationSession | None:
        with self._lock:
            now = self._clock()
            session = self._live(transaction_id, now)
            if session is None:
                return None
            if not session.device_linked:
                self._append(session, CONNECTED_MESSAGE, "success", now)
            session.device_linked = True
            session.last_heartbeat = now
            session.updated_at = now
            return self._snapshot(session)

    def get(self, transaction_id: str) -> VerificationSession | None:
        with self._lock:
            now = self._clock()
            session = self._live(transaction_id, now)
            if session is None:
                return None
            if (
                session.device_linked
                and session.last_heartbeat is not None
                and now - session.last_heartbeat > self._heartbeat_timeout
            ):
                session.device_linked = False
                self._append(session, DISCONNECTED_MESSAGE, "error", now)
            return self._snapshot(session)

    def append_log(self, transaction_id: str, message: str, level: str = "info") -> bool:
        with self._lock:
            now = self._clock()
            session = self._live(transaction_id, now)
            if session is None:
                return False
            self._append(session, message, level, now)
            return True

    def complete(self, transaction_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(transaction_id, None)
        if session is None:
            return False
        logger.info("Verification session completed", transaction_id=transaction_id, status=session.status.value)
        return True

    def sweep(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
            for key in expired:
                del self._sessions[key]
            remaining = len(self._sessions)
        if expired:
            logger.info("Expired verification sessions swept", expired=len(expired), remaining=remaining)
        return len(expired)

    def stats(self) -> dict[str, int]:
        with self._lock:
            now = self._clock()
            counts = {"total": len(self._sessions), "pending": 0, "approved": 0, "rejected": 0, "expired": 0}
            active_devices = 0
            for session in self._sessions.values():
                if session.is_expired(now):
                    counts["expired"] += 1
                    continue
                counts[session.status.value] += 1
                if session.device_linked:
                    active_devices += 1
        return {**counts, "active_devices": active_devices}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            try:
                self.sweep()
            except Exception as exc:
                logger.exception("Session sweep failed", error=str(exc))

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper())
            logger.info("Session sweeper started", interval_seconds=self._sweep_interval_seconds)

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        logger.info("Session sweeper stopped")

    def _live(self, transaction_id: str, now: datetime) -> VerificationSession | None:
        session = self._sessions.get(transaction_id)
        if session is None:
            return None
        if session.is_expired(now):
            del self._sessions[transaction_id]
            logger.info("Verification session expired", transaction_id=transaction_id, status=session.status.value)
            return None
        return session

    @staticmethod
    def _append(session: VerificationSession, message: str, level: str, now: datetime) -> None:
        session.activity_log.append(ActivityLogEntry(now, message, level))

    @staticmethod
    def _snapshot(session: VerificationSession) -> VerificationSession:
        return copy.deepcopy(session)
