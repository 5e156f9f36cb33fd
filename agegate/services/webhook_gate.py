"""Authenticity and identity checks for inbound POS webhooks."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from collections.abc import Iterable, Mapping
from typing import Any
from urllib.parse import parse_qs

from agegate.schemas.queue import SignatureResult

SUPPORTED_ALGORITHM = "HMAC-SHA256"
STRIPPED_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "proxy-authorization", "x-cron-secret"})
STRIPPED_HEADER_PREFIXES = ("x-admin", "x-api")


def normalize_topic(topic: str | None) -> str:
    raw = (topic or "").strip()
    return raw.lower() if raw else "unknown"


def parse_signature_header(header_value: str | None) -> tuple[str, str | None] | None:
    """
    Parse ``signature=<sig>, algorithm=<alg>`` into ``(signature, ALGORITHM)``.

    Keys are case-insensitive and order does not matter. Returns ``None`` when
    no signature part is present.
    """
    parts: dict[str, str] = {}
    for part in (header_value or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep or not key.strip():
            continue
        parts[key.strip().lower()] = value.strip()
    signature = parts.get("signature")
    if not signature:
        return None
    algorithm = parts.get("algorithm", "").upper() or None
    return signature, algorithm


def _digest_variants(raw_body: bytes, secret: str) -> tuple[str, str, str]:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    b64 = base64.b64encode(digest).decode("ascii")
    b64url = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return digest.hex(), b64, b64url


def verify_signature(raw_body: bytes, header_value: str | None, client_secret: str | None) -> SignatureResult:
    parsed = parse_signature_header(header_value)
    if parsed is None:
        return SignatureResult(verified=False, reason="missing_signature_header")
    received, algorithm = parsed
    algorithm = algorithm or SUPPORTED_ALGORITHM
    if algorithm != SUPPORTED_ALGORITHM:
        return SignatureResult(verified=False, reason=f"unsupported_algorithm:{algorithm}")

    secret = (client_secret or "").strip()
    if not secret:
        return SignatureResult(verified=False, reason="missing_client_secret")

    received_bytes = received.encode("utf-8")
    # Check every encoding so the comparison count does not depend on which one matches.
    matches = [
        hmac.compare_digest(received_bytes, candidate.encode("utf-8"))
        for candidate in _digest_variants(raw_body, secret)
    ]
    verified = any(matches)
    return SignatureResult(verified=verified, reason="ok" if verified else "mismatch")


def compute_event_key(topic: str, raw_body: bytes) -> str:
    hasher = hashlib.sha256()
    hasher.update((topic or "unknown").encode("utf-8"))
    hasher.update(b"\n")
    hasher.update(raw_body)
    return hasher.hexdigest()


def sanitize_headers(headers: Mapping[str, Any] | Iterable[tuple[str, Any]]) -> dict[str, str]:
    items = headers.items() if isinstance(headers, Mapping) else headers
    sanitized: dict[str, str] = {}
    for key, value in items:
        name = str(key or "").strip().lower()
        if not name or name in STRIPPED_HEADERS or name.startswith(STRIPPED_HEADER_PREFIXES):
            continue
        text = ",".join(str(v) for v in value) if isinstance(value, (list, tuple)) else str(value)
        sanitized[name] = f"{sanitized[name]},{text}" if name in sanitized else text
    return sanitized


def parse_webhook_body(raw_body: bytes) -> Any | None:
    """JSON body, or a form body whose ``payload`` field holds JSON. ``None`` if neither."""
    text = raw_body.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass

    form = parse_qs(text, keep_blank_values=True)
    candidates = form.get("payload")
    if not candidates:
        return None
    try:
        return json.loads(candidates[0])
    except ValueError:
        return {"payload": candidates[0]}
