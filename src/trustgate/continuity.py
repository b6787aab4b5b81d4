"""Continuity tokens for resuming after manual identity review.

When a verification goes to manual review the signer has usually closed
the page by the time a reviewer approves it. The attempt therefore gets
a random single-use token, emailed as part of a link; redeeming it is the
only way a review-approved attempt reaches SUCCESS and the only place the
signing window starts for that flow.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from .errors import StateError, StoreError
from .models import (
    ActorType,
    AttemptStatus,
    AuditEvent,
    AuditEventType,
    Signer,
    SignerStatus,
    VerificationAttempt,
)
from .store import RecordStore

logger = logging.getLogger("trustgate.continuity")

CONTINUITY_TOKEN_TTL = timedelta(hours=48)


class RedemptionResult(BaseModel):
    """Outcome of a successful redemption."""

    attempt: VerificationAttempt
    signer: Signer
    verified_at: datetime


def generate_token() -> str:
    """32 random bytes, URL-safe."""
    return secrets.token_urlsafe(32)


class ContinuityTokenManager:
    """Issues and single-use-redeems continuity tokens.

    Args:
        store: Record store.
        ttl: Token validity window.
    """

    def __init__(self, store: RecordStore, ttl: timedelta = CONTINUITY_TOKEN_TTL) -> None:
        self.store = store
        self.ttl = ttl

    def issue(self, attempt: VerificationAttempt, now: datetime) -> VerificationAttempt:
        """Give ``attempt`` a token unless it already holds one.

        The write is conditional on the token still being empty, so
        duplicate webhook deliveries racing here end with exactly one
        token. Returns the attempt as stored afterwards.
        """
        if attempt.continuity_token:
            return attempt

        token = generate_token()
        updated = self.store.update_attempt(
            attempt.attempt_id,
            {
                "continuity_token": token,
                "continuity_token_expires_at": now + self.ttl,
                "continuity_token_used_at": None,
            },
            expect={"continuity_token": None},
        )
        if updated is None:
            logger.info("Attempt %s already holds a continuity token", attempt.attempt_id[:8])
            return self.store.get_attempt(attempt.attempt_id)

        logger.info(
            "Issued continuity token for attempt %s (expires %s)",
            attempt.attempt_id[:8], updated.continuity_token_expires_at,
        )
        return updated

    def lookup(self, token: str, signer: Signer) -> Optional[VerificationAttempt]:
        attempt = self.store.find_attempt_by_continuity_token(token) if token else None
        if attempt is None or attempt.signer_id != signer.signer_id:
            return None
        return attempt

    def redeem(self, token: str, signer: Signer, now: datetime) -> RedemptionResult:
        """Redeem ``token`` for ``signer``.

        Raises:
            StateError: ``invalid_token``, ``token_already_used``,
                ``token_expired`` or ``not_approved``.
            StoreError: If the signer could not be updated.
        """
        attempt = self.lookup(token, signer)
        if attempt is None:
            raise StateError("invalid_token", "Invalid continuity token")
        if attempt.continuity_token_used_at is not None:
            raise StateError(
                "token_already_used",
                "Continuity token already used",
                details={"used_at": attempt.continuity_token_used_at.isoformat()},
            )
        if attempt.continuity_token_expires_at and now > attempt.continuity_token_expires_at:
            raise StateError("token_expired", "Continuity token expired")
        if attempt.status != AttemptStatus.REVIEW_APPROVED:
            raise StateError("not_approved", "Verification is not approved")
        if signer.status == SignerStatus.SIGNED:
            raise StateError("already_signed", "Signer has already signed")

        redeemed = self.store.update_attempt(
            attempt.attempt_id,
            {
                "continuity_token_used_at": now,
                "status": AttemptStatus.SUCCESS,
                "completed_at": now,
            },
            expect={
                "continuity_token_used_at": None,
                "status": AttemptStatus.REVIEW_APPROVED,
            },
        )
        if redeemed is None:
            # Lost the race against a concurrent redemption.
            raise StateError("token_already_used", "Continuity token already used")

        updated_signer = self.store.update_signer(
            signer.signer_id,
            {"status": SignerStatus.VERIFIED, "verified_at": now},
            expect={"status": {s for s in SignerStatus if s != SignerStatus.SIGNED}},
        )
        if updated_signer is None:
            raise StoreError("signer_update_failed", "Signer could not be marked verified")

        self.store.append_audit(
            AuditEvent(
                document_id=signer.document_id,
                signer_id=signer.signer_id,
                attempt_id=attempt.attempt_id,
                event_type=AuditEventType.CONTINUITY_TOKEN_REDEEMED,
                description="Continuity token redeemed after manual review approval",
                actor_type=ActorType.SIGNER,
                event_data={"redeemed_at": now.isoformat()},
            )
        )
        logger.info("Continuity token redeemed for signer %s", signer.signer_id[:8])
        return RedemptionResult(attempt=redeemed, signer=updated_signer, verified_at=now)
