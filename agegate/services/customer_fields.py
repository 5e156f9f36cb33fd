from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agegate.schemas.verification import DecodedDocument


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def merge_fill_blanks(existing: Mapping[str, Any] | None, incoming: Mapping[str, Any] | None) -> dict[str, Any]:
    """Copy ``incoming`` values only into keys that are empty in ``existing``."""
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if is_blank(value):
            continue
        if is_blank(merged.get(key)):
            merged[key] = value
    return merged


def blank_fields_to_write(current: Mapping[str, Any] | None, incoming: Mapping[str, Any] | None) -> dict[str, Any]:
    """Subset of ``incoming`` that would land on a blank field of ``current``."""
    current = current or {}
    merged = merge_fill_blanks(current, incoming)
    return {key: value for key, value in merged.items() if is_blank(current.get(key)) and not is_blank(value)}


def normalize_pos_gender(value: str | None) -> str | None:
    # The POS rejects spelled-out genders with a 400; it only takes single-letter codes.
    raw = (value or "").strip().lower()
    if raw in {"m", "male"}:
        return "M"
    if raw in {"f", "female"}:
        return "F"
    if raw in {"x", "other", "nonbinary", "non-binary"}:
        return "X"
    return None


def build_customer_update_payload(document: DecodedDocument) -> dict[str, Any]:
    address = {
        "address_1": document.address1 or None,
        "address_2": document.address2 or None,
        "city": document.city or None,
        "state": document.state or None,
        "postcode": document.postal_code or None,
    }
    payload: dict[str, Any] = {
        "first_name": document.first_name.title() or None,
        "last_name": document.last_name.title() or None,
        "date_of_birth": document.date_of_birth.isoformat() if document.date_of_birth else None,
        "gender": normalize_pos_gender(document.sex),
    }
    for key, value in address.items():
        payload[f"physical_{key}"] = value
        payload[f"postal_{key}"] = value
    return {key: value for key, value in payload.items() if value is not None}
