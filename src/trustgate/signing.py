"""Signing and document completion.

Two paths mark a signer SIGNED: the signing room (``mark_signed``), which
enforces the deadline, the verified device session and the signing
order, and the e-signature provider's webhook (``apply_recipient_signed``),
which reports a signature that already happened. Both finish with the same
completion cascade on the document.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from .device import DeviceSessionBinder
from .errors import AuthorizationError, ConflictError, StateError
from .models import (
    ActorType,
    AuditEvent,
    AuditEventType,
    Document,
    DocumentStatus,
    Signer,
    SignerStatus,
)
from .notifications import Notifier
from .signing_order import evaluate_signing_order
from .store import RecordStore

logger = logging.getLogger("trustgate.signing")

_NOT_SIGNED = frozenset(s for s in SignerStatus if s != SignerStatus.SIGNED)
_OPEN_DOCUMENT = frozenset({DocumentStatus.PENDING, DocumentStatus.IN_PROGRESS})

_SESSION_MESSAGES = {
    "not_verified": "Verification is required before signing",
    "token_missing": "This signing session is not bound to the current browser. Restart verification.",
    "device_mismatch": "This signing session is not bound to the current browser. Restart verification.",
    "ttl_expired": "Verification session expired. Restart identity verification.",
}


class SignedResult(BaseModel):
    """A signer after signing and the document after the cascade."""

    signer: Signer
    document: Document


class SigningService:
    """Marks signers signed and completes documents.

    Args:
        store: Record store.
        notifier: Deduplicated email sender.
        binder: Device session binder (session validity).
    """

    def __init__(self, store: RecordStore, notifier: Notifier, binder: DeviceSessionBinder) -> None:
        self.store = store
        self.notifier = notifier
        self.binder = binder

    def mark_signed(
        self,
        signer: Signer,
        device_token: Optional[str],
        now: datetime,
    ) -> SignedResult:
        """Sign on behalf of ``signer`` from the signing room.

        Raises:
            StateError: Document final, deadline passed or already signed.
            AuthorizationError: 403 with the session check reason.
            ConflictError: ``signing_order_blocked`` with the pending list.
        """
        document = self.store.get_document(signer.document_id)

        if signer.status == SignerStatus.SIGNED:
            raise StateError("already_signed", "Signer has already signed")
        if document.is_final:
            raise StateError(
                f"document_{document.status.value.lower()}",
                f"Document is {document.status.value.lower()}",
            )
        if document.signing_deadline and now > document.signing_deadline:
            raise StateError("signing_deadline_passed", "The signing deadline has passed")

        session = self.binder.check_session(signer, document, device_token, now)
        if not session.valid:
            raise AuthorizationError(
                session.reason or "session_invalid",
                _SESSION_MESSAGES.get(session.reason or "", "Signing session is not valid"),
                status_code=403,
            )

        order = evaluate_signing_order(self.store.list_signers(document.document_id), signer)
        if order.blocked:
            raise ConflictError(
                "signing_order_blocked",
                "Signing order not satisfied",
                details={"signingOrder": order.model_dump(mode="json")},
            )

        if signer.needs_identity_check(document):
            # The session that was checked must still be the one on record.
            expect = {
                "status": SignerStatus.VERIFIED,
                "device_session_token": device_token,
                "verified_at": signer.verified_at,
            }
        else:
            expect = {"status": _NOT_SIGNED}
        updated = self.store.update_signer(
            signer.signer_id,
            {"status": SignerStatus.SIGNED, "signed_at": now},
            expect=expect,
        )
        if updated is None:
            raise self._lost_race(signer.signer_id, document, device_token, now)

        self.store.append_audit(
            AuditEvent(
                document_id=document.document_id,
                signer_id=signer.signer_id,
                event_type=AuditEventType.SIGNER_SIGNED,
                description=f"{signer.name} ({signer.email}) signed",
                actor_type=ActorType.SIGNER,
                event_data={"signed_at": now.isoformat()},
            )
        )
        logger.info("Signer %s signed document %s", signer.signer_id[:8], document.document_id[:8])
        return SignedResult(signer=updated, document=self.complete_if_done(document.document_id, now))

    def _lost_race(
        self, signer_id: str, document: Document, device_token: Optional[str], now: datetime
    ) -> Exception:
        current = self.store.get_signer(signer_id)
        if current.status == SignerStatus.SIGNED:
            return StateError("already_signed", "Signer has already signed")
        session = self.binder.check_session(current, document, device_token, now)
        reason = session.reason or "session_changed"
        logger.warning("Signer %s session changed before signing: %s", signer_id[:8], reason)
        return AuthorizationError(
            reason,
            _SESSION_MESSAGES.get(reason, "Signing session is not valid"),
            status_code=403,
        )

    def apply_recipient_signed(
        self,
        document: Document,
        signer: Signer,
        signed_at: datetime,
        event_data: Optional[dict[str, Any]] = None,
    ) -> Optional[Signer]:
        """Record a signature reported by the e-signature provider.

        Returns the updated signer, or None when it was already SIGNED.
        """
        if signer.status == SignerStatus.SIGNED:
            logger.info("Signer %s already SIGNED, skipping", signer.signer_id[:8])
            return None

        updated = self.store.update_signer(
            signer.signer_id,
            {"status": SignerStatus.SIGNED, "signed_at": signed_at},
            expect={"status": _NOT_SIGNED},
        )
        if updated is None:
            return None

        self.store.append_audit(
            AuditEvent(
                document_id=document.document_id,
                signer_id=signer.signer_id,
                event_type=AuditEventType.RECIPIENT_SIGNED,
                description=f"{signer.name} ({signer.email}) completed their signature",
                actor_type=ActorType.SIGNER,
                event_data={
                    **(event_data or {}),
                    "signed_at": signed_at.isoformat(),
                    "signer_name": signer.name,
                    "signer_email": signer.email,
                },
            )
        )
        self.notifier.creator_signer_signed(document, updated)
        return updated

    def complete_if_done(self, document_id: str, now: datetime) -> Document:
        """COMPLETED once every participating signer signed.

        With some but not all signatures in, a PENDING document moves to
        IN_PROGRESS; with none it is left alone.

        Both writes are conditional, so the status never moves backwards
        and a cancelled document stays cancelled.
        """
        signers = [s for s in self.store.list_signers(document_id) if s.participates]
        signed = [s for s in signers if s.status == SignerStatus.SIGNED]

        if not signers or len(signed) < len(signers):
            if not signed:
                return self.store.get_document(document_id)
            updated = self.store.update_document(
                document_id,
                {"status": DocumentStatus.IN_PROGRESS},
                expect={"status": DocumentStatus.PENDING},
            )
            if updated is not None:
                logger.info("Document %s -> IN_PROGRESS", document_id[:8])
            return updated or self.store.get_document(document_id)

        return self.mark_completed(document_id, now)

    def mark_completed(self, document_id: str, now: datetime) -> Document:
        """Complete an open document; audit and notify the creator once."""
        updated = self.store.update_document(
            document_id,
            {"status": DocumentStatus.COMPLETED, "completed_at": now},
            expect={"status": _OPEN_DOCUMENT},
        )
        if updated is None:
            return self.store.get_document(document_id)

        self.store.append_audit(
            AuditEvent(
                document_id=document_id,
                event_type=AuditEventType.DOCUMENT_COMPLETED,
                description="All signers have signed",
                event_data={"completed_at": now.isoformat()},
            )
        )
        logger.info("Document %s -> COMPLETED", document_id[:8])
        self.notifier.creator_document_completed(updated)
        return updated

    def cancel(self, document_id: str, now: datetime) -> Document:
        """Cancel an open document."""
        updated = self.store.update_document(
            document_id,
            {"status": DocumentStatus.CANCELLED},
            expect={"status": _OPEN_DOCUMENT},
        )
        if updated is None:
            return self.store.get_document(document_id)

        self.store.append_audit(
            AuditEvent(
                document_id=document_id,
                event_type=AuditEventType.DOCUMENT_CANCELLED,
                description="Document cancelled",
                event_data={"cancelled_at": now.isoformat()},
            )
        )
        logger.info("Document %s -> CANCELLED", document_id[:8])
        return updated
