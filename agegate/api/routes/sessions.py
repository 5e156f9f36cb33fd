from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from agegate.api.dependencies import get_session_store, get_verification_service
from agegate.db.session import get_db_session
from agegate.schemas.verification import (
    ScanRequest,
    ScanResponse,
    SessionCreateRequest,
    SessionLogRequest,
    SessionResponse,
    SessionStatsResponse,
)
from agegate.services.session_store import LiveSessionStore, SessionNotFoundError
from agegate.services.verification_service import VerificationService

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _not_found(transaction_id: str) -> SessionNotFoundError:
    return SessionNotFoundError(f"No live verification session for transaction {transaction_id}")


@router.get("/stats", response_model=SessionStatsResponse)
async def session_stats(store: LiveSessionStore = Depends(get_session_store)):
    return SessionStatsResponse(**store.stats())


@router.post("/{transaction_id}", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    transaction_id: str,
    payload: SessionCreateRequest | None = None,
    store: LiveSessionStore = Depends(get_session_store),
):
    meta = payload or SessionCreateRequest()
    session = store.create(transaction_id, register_id=meta.register_id, outlet_id=meta.outlet_id)
    return SessionResponse.from_session(session)


@router.get("/{transaction_id}", response_model=SessionResponse)
async def get_session(transaction_id: str, store: LiveSessionStore = Depends(get_session_store)):
    session = store.get(transaction_id)
    if session is None:
        raise _not_found(transaction_id)
    return SessionResponse.from_session(session)


@router.post("/{transaction_id}/heartbeat", response_model=SessionResponse)
async def heartbeat(transaction_id: str, store: LiveSessionStore = Depends(get_session_store)):
    session = store.heartbeat(transaction_id)
    if session is None:
        raise _not_found(transaction_id)
    return SessionResponse.from_session(session)


@router.post("/{transaction_id}/logs", status_code=status.HTTP_204_NO_CONTENT)
async def append_log(
    transaction_id: str,
    payload: SessionLogRequest,
    store: LiveSessionStore = Depends(get_session_store),
):
    if not store.append_log(transaction_id, payload.message, payload.level):
        raise _not_found(transaction_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{transaction_id}/scan", response_model=ScanResponse)
async def scan_document(
    transaction_id: str,
    payload: ScanRequest,
    session: AsyncSession = Depends(get_db_session),
    verification_service: VerificationService = Depends(get_verification_service),
):
    outcome = await verification_service.scan(session, transaction_id, payload)
    document = outcome.document
    return ScanResponse(
        approved=outcome.decision.approved,
        code=outcome.decision.code,
        reason=outcome.decision.reason,
        age=document.age,
        first_name=document.first_name,
        last_name=document.last_name,
        document_number=document.document_number,
        reconcile_queued=outcome.reconcile_queued,
        session=SessionResponse.from_session(outcome.session) if outcome.session is not None else None,
    )


@router.delete("/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def complete_session(transaction_id: str, store: LiveSessionStore = Depends(get_session_store)):
    if not store.complete(transaction_id):
        raise _not_found(transaction_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
