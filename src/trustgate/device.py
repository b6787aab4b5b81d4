"""Device session binding and the post-verification signing window.

A verified session is bound to the browser that completed verification,
identified by an opaque device token the client generates. Signing must
happen from that device within a fixed window after ``verified_at``.
There is no background expiry: the window is checked against the wall
clock each time the session is used.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .errors import ConflictError, StateError, ValidationError
from .models import (
    TERMINAL_ATTEMPT_STATUSES,
    ActorType,
    AttemptStatus,
    AuditEvent,
    AuditEventType,
    Document,
    SessionCheck,
    Signer,
    SignerStatus,
)
from .signatures import same_secret
from .store import RecordStore

logger = logging.getLogger("trustgate.device")

SIGNING_TTL = timedelta(minutes=10)

NON_TERMINAL_ATTEMPT_STATUSES = frozenset(
    s for s in AttemptStatus if s not in TERMINAL_ATTEMPT_STATUSES
)


def check_session(
    signer: Signer,
    document: Document,
    local_token: Optional[str],
    now: datetime,
    ttl: timedelta = SIGNING_TTL,
) -> SessionCheck:
    """Whether ``signer`` may sign from the device holding ``local_token``.

    Checks run in a fixed order and the first failure is reported, so a
    structural problem is never hidden behind an expired window.
    """
    if not signer.needs_identity_check(document):
        return SessionCheck(valid=True, required=False)

    if signer.status != SignerStatus.VERIFIED:
        return SessionCheck(valid=False, reason="not_verified")

    if not local_token or not signer.device_session_token:
        return SessionCheck(valid=False, reason="token_missing")

    if not same_secret(signer.device_session_token, local_token):
        return SessionCheck(valid=False, reason="device_mismatch")

    if signer.verified_at is None:
        return SessionCheck(valid=False, reason="ttl_expired")

    expires_at = signer.verified_at + ttl
    if now >= expires_at:
        return SessionCheck(valid=False, reason="ttl_expired", expires_at=expires_at)

    return SessionCheck(
        valid=True,
        expires_at=expires_at,
        remaining_seconds=int((expires_at - now).total_seconds()),
    )


class DeviceSessionBinder:
    """Binds signers to a device and resets verification state.

    Args:
        store: Record store.
        ttl: Signing window after verification.
    """

    def __init__(self, store: RecordStore, ttl: timedelta = SIGNING_TTL) -> None:
        self.store = store
        self.ttl = ttl

    def bind(self, signer_id: str, device_token: Optional[str]) -> Signer:
        """Claim the signer's session for ``device_token``.

        Compare-and-set on an empty slot. Re-binding the same token is a
        no-op.

        Raises:
            ValidationError: If no token is supplied.
            ConflictError: ``device_already_bound`` when another token holds
                the session.
        """
        if not device_token or not isinstance(device_token, str):
            raise ValidationError("missing_device_session_token", "Missing deviceSessionToken")

        updated = self.store.update_signer(
            signer_id,
            {"device_session_token": device_token},
            expect={"device_session_token": None},
        )
        if updated is None:
            current = self.store.get_signer(signer_id)
            if same_secret(current.device_session_token, device_token):
                return current
            logger.warning("Signer %s already bound to another device", signer_id[:8])
            raise ConflictError(
                "device_already_bound",
                "Device session already bound to a different token",
            )

        self.store.append_audit(
            AuditEvent(
                document_id=updated.document_id,
                signer_id=signer_id,
                event_type=AuditEventType.DEVICE_SESSION_BOUND,
                description="Signing session bound to device",
                actor_type=ActorType.SIGNER,
            )
        )
        logger.info("Bound device session for signer %s", signer_id[:8])
        return updated

    def check_session(
        self,
        signer: Signer,
        document: Document,
        local_token: Optional[str],
        now: datetime,
    ) -> SessionCheck:
        return check_session(signer, document, local_token, now, self.ttl)

    def reset(self, signer_id: str, now: datetime) -> Signer:
        """Clear verification state so the signer can verify again.

        Signer goes back to PENDING with no ``verified_at`` and no bound
        device; every non-terminal attempt is expired.

        Raises:
            StateError: ``already_signed`` for a signer who has signed.
        """
        updated = self.store.update_signer(
            signer_id,
            {"status": SignerStatus.PENDING, "verified_at": None, "device_session_token": None},
            expect={"status": {s for s in SignerStatus if s != SignerStatus.SIGNED}},
        )
        if updated is None:
            raise StateError("already_signed", "Signer has already signed")

        expired = []
        for attempt in self.store.list_attempts(signer_id, NON_TERMINAL_ATTEMPT_STATUSES):
            result = self.store.update_attempt(
                attempt.attempt_id,
                {"status": AttemptStatus.EXPIRED, "completed_at": now},
                expect={"status": NON_TERMINAL_ATTEMPT_STATUSES},
            )
            if result is not None:
                expired.append(attempt.attempt_id)

        self.store.append_audit(
            AuditEvent(
                document_id=updated.document_id,
                signer_id=signer_id,
                event_type=AuditEventType.VERIFICATION_RESET,
                description="Identity verification reset",
                actor_type=ActorType.SIGNER,
                event_data={"expired_attempts": expired},
            )
        )
        logger.info("Reset verification for signer %s (%d attempts expired)", signer_id[:8], len(expired))
        return updated
