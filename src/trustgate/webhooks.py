"""Inbound provider webhooks.

Each provider has one entry point that turns a raw delivery into a
:class:`WebhookResponse`. Nothing raises past these methods: malformed
bodies get 400, rejected signatures 401, store failures 500, and a
session nobody created is acknowledged with 200 so the provider stops
redelivering it.

Deliveries are safe to process twice. The attempt's current status is
checked before any transition, and every notification is guarded by the
audit ledger.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel

from .config import GateConfig
from .errors import OrphanedEventError, TrustGateError
from .models import Document, IntegrationType, utcnow
from .signatures import verify_signing_provider_signature, verify_webhook_signature
from .signing import SigningService
from .store import RecordStore
from .verification import VerificationMachine, normalize_status, resolve_outcome

logger = logging.getLogger("trustgate.webhooks")

RECIPIENT_SIGNED_EVENTS = frozenset({"document_signed", "recipient.signed", "recipient_signed"})
DOCUMENT_COMPLETED_EVENTS = frozenset({"document_completed", "document.completed"})
DOCUMENT_CANCELLED_EVENTS = frozenset({"document_cancelled", "document.cancelled"})


class WebhookResponse(BaseModel):
    """HTTP status and JSON body to answer the provider with."""

    status_code: int = 200
    body: dict[str, Any]


def _first(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def parse_body(raw_body: bytes) -> Optional[dict[str, Any]]:
    """JSON object from the raw body, or None if it is not one."""
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def extract_session_id(payload: dict[str, Any]) -> Optional[str]:
    data = _as_dict(payload.get("data")) or payload
    session_id = _first(
        data.get("session_id"),
        data.get("sessionId"),
        _as_dict(data.get("session")).get("id"),
        payload.get("session_id"),
        payload.get("sessionId"),
        _as_dict(payload.get("session")).get("id"),
    )
    return str(session_id) if session_id else None


def extract_status(payload: dict[str, Any]) -> Any:
    data = _as_dict(payload.get("data")) or payload
    return _first(
        data.get("status"),
        payload.get("status"),
        _as_dict(data.get("decision")).get("status"),
        _as_dict(payload.get("decision")).get("status"),
    )


def parse_instant(value: Any) -> Optional[datetime]:
    """ISO-8601 timestamp (``Z`` accepted) as aware UTC, or None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class WebhookIngestor:
    """Verifies and dispatches provider webhooks.

    Args:
        store: Record store.
        machine: Verification state machine.
        signing: Signing service (e-signature provider events).
        config: Deployment settings.
        clock: Returns the current time.
    """

    def __init__(
        self,
        store: RecordStore,
        machine: VerificationMachine,
        signing: SigningService,
        config: Optional[GateConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.machine = machine
        self.signing = signing
        self.config = config or GateConfig()
        self.clock = clock

    def _secret(self, integration_type: IntegrationType, tenant_id: Optional[str]) -> Optional[str]:
        integration = self.store.find_integration(integration_type, tenant_id)
        return integration.webhook_secret if integration else None

    # ------------------------------------------------------------------
    # Identity verification provider
    # ------------------------------------------------------------------

    def ingest_verification(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        tenant_id: Optional[str] = None,
    ) -> WebhookResponse:
        now = self.clock()
        payload = parse_body(raw_body)
        if payload is None:
            logger.error("Invalid JSON payload")
            return WebhookResponse(status_code=400, body={"success": False, "error": "Invalid JSON payload"})

        try:
            secret = self._secret(IntegrationType.DIDIT, tenant_id)
        except TrustGateError as exc:
            logger.error("Could not load webhook secret: %s", exc.message)
            return WebhookResponse(status_code=500, body={"success": False, "error": exc.message})

        check = verify_webhook_signature(
            raw_body,
            payload,
            headers,
            secret,
            now=now,
            max_drift=self.config.webhook_max_drift,
            require_secret=self.config.require_webhook_secret,
        )
        if not check.accepted:
            return WebhookResponse(status_code=401, body={"success": False, "error": check.reason})

        event_type = _first(payload.get("webhook_type"), payload.get("event"), payload.get("type"))
        event_data = _as_dict(payload.get("data")) or payload
        session_id = extract_session_id(payload)
        status = extract_status(payload)

        if not session_id:
            logger.error("No session_id found in webhook payload")
            return WebhookResponse(status_code=400, body={"success": False, "error": "Missing session_id"})

        try:
            attempt = self.store.find_attempt_by_session(session_id)
            if attempt is None:
                raise OrphanedEventError(session_id)

            outcome = resolve_outcome(event_type, status)
            if outcome is None:
                logger.info(
                    "Unhandled verification webhook (event=%r, status=%r, session=%s)",
                    event_type, normalize_status(status), session_id,
                )
                return WebhookResponse(body={"success": True, "message": "Webhook ignored"})

            logger.info(
                "Verification webhook %r (status=%r) for attempt %s -> %s",
                event_type, normalize_status(status), attempt.attempt_id[:8], outcome.value,
            )
            result = self.machine.apply(attempt, outcome, event_data, now)
        except OrphanedEventError as exc:
            logger.error(
                "Verification attempt not found for session %s (event=%r); acknowledging",
                session_id, event_type,
            )
            return WebhookResponse(status_code=exc.status_code, body={"success": False, **exc.to_dict()})
        except TrustGateError as exc:
            logger.exception("Error processing verification webhook for session %s", session_id)
            return WebhookResponse(status_code=500, body={"success": False, "error": exc.message})

        return WebhookResponse(
            body={
                "success": True,
                "message": "Webhook processed",
                "applied": result.applied,
                "reason": result.reason,
            }
        )

    # ------------------------------------------------------------------
    # E-signature provider
    # ------------------------------------------------------------------

    def ingest_signing(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        tenant_id: Optional[str] = None,
    ) -> WebhookResponse:
        now = self.clock()
        payload = parse_body(raw_body)
        if payload is None:
            logger.error("Invalid JSON payload")
            return WebhookResponse(status_code=400, body={"success": False, "error": "Invalid JSON payload"})

        try:
            secret = self._secret(IntegrationType.DOCUMENSO, tenant_id)
        except TrustGateError as exc:
            logger.error("Could not load webhook secret: %s", exc.message)
            return WebhookResponse(status_code=500, body={"success": False, "error": exc.message})

        check = verify_signing_provider_signature(
            raw_body, headers, secret, require_secret=self.config.require_webhook_secret
        )
        if not check.accepted:
            return WebhookResponse(status_code=401, body={"success": False, "error": check.reason})

        event_key = str(_first(payload.get("event"), payload.get("type")) or "").lower()
        event_data = _first(
            _as_dict(payload.get("payload")), _as_dict(payload.get("data"))
        ) or payload
        recipients = event_data.get("recipients") or event_data.get("Recipient") or []
        if not isinstance(recipients, list):
            recipients = []

        try:
            document = self._resolve_document(event_data, recipients)
            if document is None:
                logger.error("Document not found for signing webhook (event=%r)", event_key)
                return WebhookResponse(body={"success": False, "error": "Document not found"})

            if event_key in RECIPIENT_SIGNED_EVENTS:
                self._recipients_signed(document, recipients, now)
            elif event_key in DOCUMENT_COMPLETED_EVENTS:
                self.signing.mark_completed(document.document_id, now)
            elif event_key in DOCUMENT_CANCELLED_EVENTS:
                self.signing.cancel(document.document_id, now)
            else:
                logger.info("Unhandled signing event %r, applying heuristics", event_key)
                if recipients:
                    self._recipients_signed(document, recipients, now)
                status = str(event_data.get("status") or payload.get("status") or "").lower()
                if "completed" in event_key or status == "completed":
                    self.signing.mark_completed(document.document_id, now)
        except TrustGateError as exc:
            logger.exception("Error processing signing webhook (event=%r)", event_key)
            return WebhookResponse(status_code=500, body={"success": False, "error": exc.message})

        return WebhookResponse(body={"success": True, "message": "Webhook processed"})

    def _resolve_document(
        self, event_data: dict[str, Any], recipients: list[Any]
    ) -> Optional[Document]:
        envelope_id = _first(
            event_data.get("id"), event_data.get("documentId"), event_data.get("envelope_id")
        )
        if envelope_id:
            document = self.store.find_document_by_envelope(str(envelope_id))
            if document is not None:
                return document

        first = _as_dict(recipients[0]) if recipients else {}
        recipient_id = _first(first.get("id"), first.get("recipientId"))
        if recipient_id:
            signer = self.store.find_signer_by_recipient_id(str(recipient_id))
            if signer is not None:
                return self.store.find_document(signer.document_id)
        return None

    def _recipients_signed(self, document: Document, recipients: list[Any], now: datetime) -> None:
        for recipient in recipients:
            recipient = _as_dict(recipient)
            signing_status = str(
                recipient.get("signingStatus") or recipient.get("status") or ""
            ).upper()
            if signing_status != "SIGNED" and recipient.get("signed") is not True:
                continue

            recipient_id = _first(recipient.get("id"), recipient.get("recipientId"))
            signer = (
                self.store.find_signer_by_recipient_id(str(recipient_id)) if recipient_id else None
            )
            if signer is None or signer.document_id != document.document_id:
                logger.warning(
                    "Signed recipient %s has no signer on document %s",
                    recipient_id, document.document_id[:8],
                )
                continue

            signed_at = parse_instant(
                _first(recipient.get("signedAt"), recipient.get("signed_at"))
            ) or now
            self.signing.apply_recipient_signed(
                document, signer, signed_at, {"recipient_id": str(recipient_id)}
            )

        self.signing.complete_if_done(document.document_id, now)
