"""Webhook signature verification.

The identity-verification provider signs each delivery with up to three
HMAC-SHA256 schemes, tried in priority order (any match accepts):

1. ``X-Signature-V2``: HMAC over the canonical JSON of the payload
   (keys sorted recursively, arrays kept in order, compact separators).
   Survives proxies that re-serialize the body with a different key order.
2. ``X-Signature-Simple``: HMAC over
   ``"{timestamp}:{session_id}:{status}:{event_type}"``.
3. ``X-Signature``: HMAC over the raw body bytes.

When an ``X-Timestamp`` header is present, deliveries drifting more than
the allowed window from now are rejected even if the signature matches,
which bounds how long a captured request can be replayed.

A tenant with no webhook secret gets no signature check at all unless
``require_webhook_secret`` is set; such deliveries are accepted with the
``unverified`` reason and logged as such.
"""

import hashlib
import hmac
import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel

logger = logging.getLogger("trustgate.signatures")

HEADER_V2 = "x-signature-v2"
HEADER_SIMPLE = "x-signature-simple"
HEADER_RAW = "x-signature"
HEADER_TIMESTAMP = "x-timestamp"
SIGNING_PROVIDER_HEADERS = ("x-documenso-signature", "x-webhook-signature")

DEFAULT_MAX_DRIFT = timedelta(minutes=5)

# Timestamps below this are seconds, at or above are milliseconds.
_MILLISECONDS_THRESHOLD = 1_000_000_000_000


class SignatureCheck(BaseModel):
    """Outcome of verifying one webhook delivery.

    Attributes:
        accepted: Whether the delivery may be processed.
        reason: ``valid``, ``unverified``, ``missing_signature``,
            ``invalid_signature``, ``stale_timestamp`` or
            ``secret_not_configured``.
        scheme: Which scheme matched (``v2``, ``simple``, ``raw``).
    """

    accepted: bool
    reason: str
    scheme: Optional[str] = None


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def _canonicalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _canonicalize(value[k]) for k in sorted(value)}
    if isinstance(value, list):
        return [_canonicalize(v) for v in value]
    # JS serializers print 1.0 as 1
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def canonical_json(payload: Any) -> bytes:
    """Serialize ``payload`` with recursively sorted keys and no whitespace."""
    return json.dumps(
        _canonicalize(payload), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def hmac_hex(secret: str, message: bytes) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def same_secret(expected: Optional[str], supplied: Optional[str]) -> bool:
    """Constant-time equality for tokens and digests; False if either is empty."""
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def _digest_matches(expected: str, supplied: str) -> bool:
    return same_secret(expected, supplied.strip().lower())


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items() if v}


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def composite_fields(payload: Mapping[str, Any]) -> tuple[Any, Any, Any]:
    """Session id, status and event type as used by the simple scheme."""
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    session_id = _first(payload.get("session_id"), data.get("session_id"), data.get("sessionId"))
    status = _first(payload.get("status"), data.get("status"))
    event_type = _first(payload.get("webhook_type"), payload.get("event"), payload.get("type"))
    return session_id, status, event_type


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse a seconds-or-milliseconds epoch header; None if not numeric.

    Raises:
        ValueError: The value is numeric but not a representable instant
            (NaN, infinite or beyond the datetime range).
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        raise ValueError(f"Timestamp is not finite: {value!r}")
    if number < _MILLISECONDS_THRESHOLD:
        number *= 1000
    try:
        return datetime.fromtimestamp(number / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as exc:
        raise ValueError(f"Timestamp out of range: {value!r}") from exc


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def _match_scheme(
    raw_body: bytes,
    payload: Any,
    headers: dict[str, str],
    secret: str,
) -> Optional[str]:
    signature_v2 = headers.get(HEADER_V2)
    signature_simple = headers.get(HEADER_SIMPLE)
    signature_raw = headers.get(HEADER_RAW)
    timestamp = headers.get(HEADER_TIMESTAMP)

    if signature_v2 and payload is not None:
        if _digest_matches(hmac_hex(secret, canonical_json(payload)), signature_v2):
            return "v2"

    if signature_simple and timestamp and isinstance(payload, dict):
        session_id, status, event_type = composite_fields(payload)
        if session_id and status and event_type:
            message = f"{timestamp}:{session_id}:{status}:{event_type}".encode("utf-8")
            if _digest_matches(hmac_hex(secret, message), signature_simple):
                return "simple"

    if signature_raw:
        if _digest_matches(hmac_hex(secret, raw_body), signature_raw):
            return "raw"

    return None


def verify_webhook_signature(
    raw_body: bytes,
    payload: Any,
    headers: Mapping[str, str],
    secret: Optional[str],
    now: Optional[datetime] = None,
    max_drift: timedelta = DEFAULT_MAX_DRIFT,
    require_secret: bool = False,
) -> SignatureCheck:
    """Verify an identity-provider webhook.

    Args:
        raw_body: Exact request bytes.
        payload: The parsed JSON body.
        headers: Request headers (any case).
        secret: Tenant webhook secret, or None when not configured.
        now: Reference time for the replay window.
        max_drift: Largest accepted distance between ``X-Timestamp`` and now.
        require_secret: Reject instead of accepting when no secret is set.

    Returns:
        A :class:`SignatureCheck`.
    """
    if not secret:
        if require_secret:
            logger.error("Rejecting webhook: no webhook secret configured")
            return SignatureCheck(accepted=False, reason="secret_not_configured")
        logger.warning("Accepting unsigned webhook: no webhook secret configured")
        return SignatureCheck(accepted=True, reason="unverified")

    lowered = _lower_headers(headers)
    if not any(lowered.get(h) for h in (HEADER_V2, HEADER_SIMPLE, HEADER_RAW)):
        logger.error("Missing webhook signature headers")
        return SignatureCheck(accepted=False, reason="missing_signature")

    scheme = _match_scheme(raw_body, payload, lowered, secret)
    if scheme is None:
        logger.error("Invalid webhook signature")
        return SignatureCheck(accepted=False, reason="invalid_signature")

    timestamp_header = lowered.get(HEADER_TIMESTAMP)
    if timestamp_header:
        reference = now or datetime.now(timezone.utc)
        try:
            sent_at = parse_timestamp(timestamp_header)
        except ValueError:
            logger.error("Webhook timestamp out of range: %r", timestamp_header)
            return SignatureCheck(accepted=False, reason="stale_timestamp", scheme=scheme)
        if sent_at is not None:
            if abs(reference - sent_at) > max_drift:
                logger.error(
                    "Webhook timestamp outside allowed window (%s vs %s)",
                    sent_at.isoformat(), reference.isoformat(),
                )
                return SignatureCheck(accepted=False, reason="stale_timestamp", scheme=scheme)

    logger.info("Webhook signature verified (%s)", scheme)
    return SignatureCheck(accepted=True, reason="valid", scheme=scheme)


def verify_signing_provider_signature(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    require_secret: bool = False,
) -> SignatureCheck:
    """Verify an e-signature provider webhook (raw-body HMAC)."""
    if not secret:
        if require_secret:
            logger.error("Rejecting signing webhook: no webhook secret configured")
            return SignatureCheck(accepted=False, reason="secret_not_configured")
        logger.warning("Accepting unsigned signing webhook: no webhook secret configured")
        return SignatureCheck(accepted=True, reason="unverified")

    lowered = _lower_headers(headers)
    supplied = _first(*(lowered.get(h) for h in SIGNING_PROVIDER_HEADERS))
    if not supplied:
        logger.error("Missing signing webhook signature header")
        return SignatureCheck(accepted=False, reason="missing_signature")

    if not _digest_matches(hmac_hex(secret, raw_body), supplied):
        logger.error("Invalid signing webhook signature")
        return SignatureCheck(accepted=False, reason="invalid_signature")

    return SignatureCheck(accepted=True, reason="valid", scheme="raw")
