"""Identity-verification state machine.

The machine is the only writer of a signer's verification status and of
an attempt's status. Inputs are provider *outcomes*, never raw status
assignments: webhook events and polled decisions are first normalized
and classified, then applied through the transition table.

Attempt lifecycle::

    PENDING ──► IN_PROGRESS ──► SUCCESS | FAILED | EXPIRED
                     │
                     ▼
                 IN_REVIEW ──► REVIEW_APPROVED ──► SUCCESS (token redemption)
                     │
                     ▼
                   FAILED

The signer's status is a projection of its latest attempt. An older
attempt resolving late updates only itself, and a SIGNED signer is never
touched again.
"""

import logging
import re
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel

from .config import GateConfig
from .continuity import ContinuityTokenManager
from .errors import NotFoundError, StateError
from .models import (
    TERMINAL_ATTEMPT_STATUSES,
    ActorType,
    AttemptStatus,
    AuditEvent,
    AuditEventType,
    Signer,
    SignerStatus,
    VerificationAttempt,
)
from .notifications import Notifier
from .store import RecordStore

logger = logging.getLogger("trustgate.verification")


class VerificationOutcome(str, Enum):
    """Provider-independent meaning of a webhook or decision."""

    APPROVED = "approved"
    DECLINED = "declined"
    EXPIRED = "expired"
    IN_REVIEW = "in_review"
    IN_PROGRESS = "in_progress"
    DATA_UPDATED = "data_updated"


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

STATUS_OUTCOMES: dict[VerificationOutcome, frozenset[str]] = {
    VerificationOutcome.APPROVED: frozenset({"approved", "verified", "completed", "success"}),
    VerificationOutcome.DECLINED: frozenset({"declined", "failed", "rejected"}),
    VerificationOutcome.EXPIRED: frozenset({"abandoned", "expired", "cancelled", "canceled"}),
    VerificationOutcome.IN_REVIEW: frozenset({"in_review"}),
    VerificationOutcome.IN_PROGRESS: frozenset({"in_progress", "started", "pending", "not_started"}),
}

# Event names that carry their own meaning. "statusupdated" and unknown
# names defer to the status field.
EVENT_OUTCOMES: dict[str, VerificationOutcome] = {
    "sessioncompleted": VerificationOutcome.APPROVED,
    "sessionverified": VerificationOutcome.APPROVED,
    "verificationcompleted": VerificationOutcome.APPROVED,
    "sessionfailed": VerificationOutcome.DECLINED,
    "verificationfailed": VerificationOutcome.DECLINED,
    "sessionexpired": VerificationOutcome.EXPIRED,
    "verificationexpired": VerificationOutcome.EXPIRED,
    "dataupdated": VerificationOutcome.DATA_UPDATED,
}

ATTEMPT_TRANSITIONS: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    AttemptStatus.PENDING: frozenset({
        AttemptStatus.IN_PROGRESS,
        AttemptStatus.IN_REVIEW,
        AttemptStatus.SUCCESS,
        AttemptStatus.FAILED,
        AttemptStatus.EXPIRED,
    }),
    AttemptStatus.IN_PROGRESS: frozenset({
        AttemptStatus.IN_REVIEW,
        AttemptStatus.SUCCESS,
        AttemptStatus.FAILED,
        AttemptStatus.EXPIRED,
    }),
    AttemptStatus.IN_REVIEW: frozenset({AttemptStatus.REVIEW_APPROVED, AttemptStatus.FAILED}),
    # SUCCESS from here only through ContinuityTokenManager.redeem
    AttemptStatus.REVIEW_APPROVED: frozenset({AttemptStatus.SUCCESS}),
    AttemptStatus.SUCCESS: frozenset(),
    AttemptStatus.FAILED: frozenset(),
    AttemptStatus.EXPIRED: frozenset(),
}

_SEPARATORS = re.compile(r"[\s_-]+")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_status(value: Any) -> str:
    """``" In-Review "`` -> ``"in_review"``."""
    if value is None:
        return ""
    return _SEPARATORS.sub("_", str(value).strip().lower())


def normalize_event_key(value: Any) -> str:
    """``"status.updated"`` -> ``"statusupdated"``."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).strip().lower())


def classify_status(value: Any) -> VerificationOutcome:
    """Map a provider status string to an outcome.

    Unrecognized strings are treated as still in progress, never as a
    terminal decision.
    """
    status = normalize_status(value)
    for outcome, names in STATUS_OUTCOMES.items():
        if status in names:
            return outcome
    return VerificationOutcome.IN_PROGRESS


def resolve_outcome(event_type: Any, status: Any) -> Optional[VerificationOutcome]:
    """Outcome of a webhook: an explicit event name wins, else the status.

    Returns None when the event is not recognized and carries no status,
    which leaves nothing to apply.
    """
    explicit = EVENT_OUTCOMES.get(normalize_event_key(event_type))
    if explicit is not None:
        return explicit
    if not normalize_status(status):
        return None
    return classify_status(status)


def decision_status(decision: Mapping[str, Any]) -> Optional[str]:
    """First status-like field of a polled decision payload."""
    nested = decision.get("decision")
    candidates = (
        decision.get("status"),
        nested.get("status") if isinstance(nested, dict) else None,
        decision.get("verification_status"),
        decision.get("review_status"),
    )
    for candidate in candidates:
        if candidate:
            return str(candidate)
    return None


def failure_reason(event_data: Mapping[str, Any]) -> str:
    decision = event_data.get("decision") if isinstance(event_data.get("decision"), dict) else {}
    for candidate in (
        decision.get("reason"),
        decision.get("status_reason"),
        event_data.get("failure_reason"),
        event_data.get("error"),
    ):
        if candidate:
            return str(candidate)
    return "Verification failed"


def can_transition(current: AttemptStatus, target: AttemptStatus) -> bool:
    return target in ATTEMPT_TRANSITIONS.get(current, frozenset())


class TransitionResult(BaseModel):
    """What applying an outcome did.

    Attributes:
        applied: Whether anything was written.
        attempt: The attempt as stored afterwards.
        signer_status: Signer status afterwards (None if not read).
        reason: Why nothing was written, or the outcome applied.
    """

    applied: bool
    attempt: VerificationAttempt
    signer_status: Optional[SignerStatus] = None
    reason: Optional[str] = None


_NOT_SIGNED = frozenset(s for s in SignerStatus if s != SignerStatus.SIGNED)


class VerificationMachine:
    """Applies verification outcomes to attempts and signers.

    Args:
        store: Record store.
        notifier: Deduplicated email sender.
        tokens: Continuity token manager.
        config: Deployment settings.
    """

    def __init__(
        self,
        store: RecordStore,
        notifier: Notifier,
        tokens: ContinuityTokenManager,
        config: Optional[GateConfig] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.tokens = tokens
        self.config = config or GateConfig()

    # ------------------------------------------------------------------
    # Session start
    # ------------------------------------------------------------------

    def start_session(
        self,
        signer: Signer,
        session_id: str,
        verification_url: str,
        now: datetime,
    ) -> VerificationAttempt:
        """Record a provider session as a new IN_PROGRESS attempt.

        Raises:
            StateError: ``already_signed`` if the signer has signed.
            StoreError: If the attempt cannot be persisted.
        """
        if signer.status == SignerStatus.SIGNED:
            raise StateError("already_signed", "Signer has already signed")

        attempt = VerificationAttempt(
            signer_id=signer.signer_id,
            session_id=session_id,
            verification_url=verification_url,
            status=AttemptStatus.IN_PROGRESS,
            created_at=now,
            updated_at=now,
        )
        self.store.save_attempt(attempt)
        self.store.update_signer(
            signer.signer_id,
            {"status": SignerStatus.VERIFYING},
            expect={"status": _NOT_SIGNED},
        )
        self._audit(
            signer, attempt, AuditEventType.IDENTITY_VERIFICATION_STARTED,
            f"Identity verification started for {signer.name} ({signer.email})",
            {"session_id": session_id, "verification_url": verification_url},
            actor=ActorType.SIGNER,
        )
        logger.info("Verification session %s started for signer %s", session_id, signer.signer_id[:8])
        return attempt

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def target_status(
        self, attempt: VerificationAttempt, outcome: VerificationOutcome
    ) -> Optional[AttemptStatus]:
        if outcome == VerificationOutcome.APPROVED:
            return AttemptStatus.REVIEW_APPROVED if attempt.was_in_review else AttemptStatus.SUCCESS
        return {
            VerificationOutcome.DECLINED: AttemptStatus.FAILED,
            VerificationOutcome.EXPIRED: AttemptStatus.EXPIRED,
            VerificationOutcome.IN_REVIEW: AttemptStatus.IN_REVIEW,
            VerificationOutcome.IN_PROGRESS: AttemptStatus.IN_PROGRESS,
        }.get(outcome)

    def apply(
        self,
        attempt: VerificationAttempt,
        outcome: VerificationOutcome,
        event_data: Optional[dict[str, Any]],
        now: datetime,
    ) -> TransitionResult:
        """Apply ``outcome`` to ``attempt`` and project it onto the signer.

        Re-applying an outcome the attempt already reflects, or one the
        transition table does not allow, writes nothing.

        Raises:
            StoreError: If a write fails.
        """
        event_data = event_data or {}

        if outcome == VerificationOutcome.DATA_UPDATED:
            updated = self.store.update_attempt(
                attempt.attempt_id, {"verification_data": event_data}
            )
            return TransitionResult(applied=True, attempt=updated, reason=outcome.value)

        target = self.target_status(attempt, outcome)
        if target is None or attempt.status == target:
            logger.info(
                "Attempt %s already %s, ignoring %s",
                attempt.attempt_id[:8], attempt.status.value, outcome.value,
            )
            return TransitionResult(applied=False, attempt=attempt, reason="already_applied")

        if not can_transition(attempt.status, target):
            logger.warning(
                "Ignoring %s for attempt %s: %s -> %s not allowed",
                outcome.value, attempt.attempt_id[:8], attempt.status.value, target.value,
            )
            return TransitionResult(applied=False, attempt=attempt, reason="invalid_transition")

        changes: dict[str, Any] = {"status": target, "verification_data": event_data}
        if target == AttemptStatus.IN_REVIEW:
            changes["was_in_review"] = True
        if target in TERMINAL_ATTEMPT_STATUSES or target == AttemptStatus.REVIEW_APPROVED:
            changes["completed_at"] = now
        if target == AttemptStatus.FAILED:
            changes["failure_reason"] = failure_reason(event_data)

        updated = self.store.update_attempt(
            attempt.attempt_id, changes, expect={"status": attempt.status}
        )
        if updated is None:
            logger.info("Attempt %s changed concurrently, skipping %s", attempt.attempt_id[:8], outcome.value)
            return TransitionResult(
                applied=False,
                attempt=self.store.get_attempt(attempt.attempt_id),
                reason="concurrent_update",
            )

        if target in (AttemptStatus.IN_REVIEW, AttemptStatus.REVIEW_APPROVED):
            updated = self.tokens.issue(updated, now)

        logger.info(
            "Attempt %s: %s -> %s", attempt.attempt_id[:8], attempt.status.value, target.value
        )
        signer = self._project(updated, outcome, now)
        if signer is not None:
            self._record(signer, updated, outcome, now)
        return TransitionResult(
            applied=True,
            attempt=updated,
            signer_status=signer.status if signer else None,
            reason=outcome.value,
        )

    def _signer_target(
        self, attempt: VerificationAttempt, outcome: VerificationOutcome, now: datetime
    ) -> dict[str, Any]:
        if outcome == VerificationOutcome.APPROVED:
            if attempt.status == AttemptStatus.REVIEW_APPROVED:
                return {"status": SignerStatus.REVIEW_APPROVED}
            return {"status": SignerStatus.VERIFIED, "verified_at": now}
        if outcome in (VerificationOutcome.DECLINED, VerificationOutcome.EXPIRED):
            return {"status": SignerStatus.VERIFICATION_FAILED}
        return {"status": SignerStatus.VERIFYING}

    def _project(
        self, attempt: VerificationAttempt, outcome: VerificationOutcome, now: datetime
    ) -> Optional[Signer]:
        """Update the signer from its latest attempt. Returns the signer read."""
        signer = self.store.find_signer(attempt.signer_id)
        if signer is None:
            logger.error("Attempt %s references missing signer %s", attempt.attempt_id[:8], attempt.signer_id)
            return None
        if signer.status == SignerStatus.SIGNED:
            return signer

        latest = self.store.latest_attempt(signer.signer_id)
        if latest is None or latest.attempt_id != attempt.attempt_id:
            logger.info(
                "Attempt %s is not the latest for signer %s, signer left as %s",
                attempt.attempt_id[:8], signer.signer_id[:8], signer.status.value,
            )
            return signer

        updated = self.store.update_signer(
            signer.signer_id,
            self._signer_target(attempt, outcome, now),
            expect={"status": _NOT_SIGNED},
        )
        return updated or self.store.get_signer(signer.signer_id)

    def _record(
        self,
        signer: Signer,
        attempt: VerificationAttempt,
        outcome: VerificationOutcome,
        now: datetime,
    ) -> None:
        """Audit the transition and send its notifications."""
        if outcome == VerificationOutcome.IN_PROGRESS:
            return

        data = {"session_id": attempt.session_id}

        document = self.store.find_document(signer.document_id)

        if outcome == VerificationOutcome.APPROVED and attempt.status == AttemptStatus.SUCCESS:
            self._audit(
                signer, attempt, AuditEventType.IDENTITY_VERIFIED,
                f"Identity verified for {signer.name} ({signer.email})",
                {**data, "verified_at": now.isoformat()},
                actor=ActorType.SIGNER,
            )
        elif outcome == VerificationOutcome.APPROVED:
            self._audit(
                signer, attempt, AuditEventType.IDENTITY_REVIEW_APPROVED,
                f"Manual review approved for {signer.name} ({signer.email}), awaiting continuity token",
                {**data, "approved_at": now.isoformat()},
            )
            if document and signer.status != SignerStatus.SIGNED:
                self.notifier.review_approved(document, signer, attempt)
        elif outcome == VerificationOutcome.DECLINED:
            self._audit(
                signer, attempt, AuditEventType.IDENTITY_VERIFICATION_FAILED,
                f"Identity verification failed for {signer.name}: {attempt.failure_reason}",
                {**data, "failure_reason": attempt.failure_reason},
                actor=ActorType.SIGNER,
            )
            if document:
                self.notifier.creator_failed(document, signer, attempt, attempt.failure_reason)
        elif outcome == VerificationOutcome.EXPIRED:
            self._audit(
                signer, attempt, AuditEventType.IDENTITY_VERIFICATION_EXPIRED,
                f"Identity verification expired for {signer.name}",
                data,
            )
        elif outcome == VerificationOutcome.IN_REVIEW:
            expires = attempt.continuity_token_expires_at
            self._audit(
                signer, attempt, AuditEventType.IDENTITY_VERIFICATION_IN_REVIEW,
                f"Verification sent to manual review for {signer.name} ({signer.email})",
                {**data, "continuity_token_expires_at": expires.isoformat() if expires else None},
            )
            if document:
                self.notifier.signer_in_review(document, signer, attempt)
                self.notifier.creator_in_review(document, signer, attempt)

    def _audit(
        self,
        signer: Signer,
        attempt: VerificationAttempt,
        event_type: AuditEventType,
        description: str,
        data: dict[str, Any],
        actor: ActorType = ActorType.SYSTEM,
    ) -> None:
        self.store.append_audit(
            AuditEvent(
                document_id=signer.document_id,
                signer_id=signer.signer_id,
                attempt_id=attempt.attempt_id,
                event_type=event_type,
                description=description,
                actor_type=actor,
                event_data=data,
            )
        )

    # ------------------------------------------------------------------
    # Pull-based resolution and client reports
    # ------------------------------------------------------------------

    def resolve_from_decision(
        self,
        attempt: VerificationAttempt,
        decision: dict[str, Any],
        now: datetime,
    ) -> TransitionResult:
        """Apply a polled decision with the same classification as webhooks.

        An unresolved decision (still in progress) writes nothing, so
        clients may poll as often as they like.
        """
        outcome = classify_status(decision_status(decision))
        if outcome == VerificationOutcome.IN_PROGRESS:
            return TransitionResult(applied=False, attempt=attempt, reason="unresolved")
        return self.apply(attempt, outcome, decision, now)

    def expire_attempt(self, signer: Signer, attempt_id: str, now: datetime) -> TransitionResult:
        """Expire an attempt the signer abandoned.

        Raises:
            NotFoundError: If the attempt does not belong to ``signer``.
        """
        attempt = self.store.find_attempt(attempt_id)
        if attempt is None or attempt.signer_id != signer.signer_id:
            raise NotFoundError("attempt_not_found", "Verification attempt not found")
        return self.apply(attempt, VerificationOutcome.EXPIRED, attempt.verification_data, now)

    def report_client_failure(self, signer: Signer) -> Signer:
        """Mark the signer VERIFICATION_FAILED on the client's report.

        Only accepted when the latest attempt already ended in a decline
        or expiry; anything else must come from the provider.

        Raises:
            StateError: ``no_attempt``, ``attempt_not_failed`` or
                ``already_signed``.
        """
        latest = self.store.latest_attempt(signer.signer_id)
        if latest is None:
            raise StateError("no_attempt", "No verification attempt for signer")
        if latest.status not in (AttemptStatus.FAILED, AttemptStatus.EXPIRED):
            raise StateError(
                "attempt_not_failed",
                "Latest verification attempt has not failed",
                details={"attempt_status": latest.status.value},
            )
        updated = self.store.update_signer(
            signer.signer_id,
            {"status": SignerStatus.VERIFICATION_FAILED},
            expect={"status": _NOT_SIGNED},
        )
        if updated is None:
            raise StateError("already_signed", "Signer has already signed")
        return updated
