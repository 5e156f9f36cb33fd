from __future__ import annotations

from datetime import date
from typing import Any, Protocol

from agegate.core.logger import get_logger
from agegate.schemas.verification import DecodedDocument, Decision, DecisionCode

logger = get_logger(component="DecisionEngine")

DOB_UNREADABLE_REASON = "DOB unreadable"
BANNED_DEFAULT_REASON = "Customer is on the deny list"


class BannedRecord(Protocol):
    notes: str | None


class DenyListLookup(Protocol):
    async def __call__(
        self,
        *,
        document_type: str,
        document_number: str | None,
        issuing_region: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
        date_of_birth: date | None = None,
    ) -> Any: ...


def check_age(document: DecodedDocument, minimum_age: int) -> Decision | None:
    """Age rules only; ``None`` means the document is old enough to continue."""
    if document.age is None:
        return Decision(approved=False, code=DecisionCode.DOB_UNREADABLE, reason=DOB_UNREADABLE_REASON)
    if document.age < minimum_age:
        return Decision(
            approved=False,
            code=DecisionCode.UNDERAGE,
            reason=f"Underage: {document.age} (minimum {minimum_age})",
        )
    return None


def evaluate(document: DecodedDocument, banned: BannedRecord | None, *, minimum_age: int) -> Decision:
    """Pure verdict for a document and an already-fetched deny-list result."""
    age_verdict = check_age(document, minimum_age)
    if age_verdict is not None:
        return age_verdict
    if banned is not None:
        return Decision(
            approved=False,
            code=DecisionCode.BANNED,
            reason=(banned.notes or "").strip() or BANNED_DEFAULT_REASON,
        )
    return Decision(approved=True, code=DecisionCode.APPROVED, reason=None)


async def decide(
    document: DecodedDocument, lookup: DenyListLookup | None, *, minimum_age: int
) -> Decision:
    age_verdict = check_age(document, minimum_age)
    if age_verdict is not None:
        return age_verdict

    banned = None
    if lookup is not None:
        try:
            banned = await lookup(
                document_type=document.document_type,
                document_number=None if document.document_number_is_placeholder else document.document_number,
                issuing_region=document.issuing_region,
                first_name=document.first_name or None,
                last_name=document.last_name or None,
                date_of_birth=document.date_of_birth,
            )
        except Exception as exc:
            # Fail open on the lookup only; the age rules above already ran.
            logger.warning(
                "Deny-list lookup failed, treating as no match",
                error=str(exc),
                document_type=document.document_type,
            )
            banned = None

    return evaluate(document, banned, minimum_age=minimum_age)
