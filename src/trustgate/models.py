"""Core data models for TrustGate signing orchestration.

Four durable entities drive the whole flow: a Document owns its Signers,
a Signer owns its VerificationAttempts, and AuditEvents form an
append-only ledger that references any of them. Status values are stored
upper-case, the way the identity and signing providers report them once
normalized.

The ledger doubles as the idempotency record for side effects: the
existence of a notification event for a signer means that notification
has already been handled.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """Lifecycle states for a document.

    Monotonic PENDING -> IN_PROGRESS -> COMPLETED, except for an explicit
    cancellation.
    """

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SignerStatus(str, Enum):
    """Lifecycle states for an individual signer."""

    PENDING = "PENDING"
    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    REVIEW_APPROVED = "REVIEW_APPROVED"
    SIGNED = "SIGNED"


class SignerRole(str, Enum):
    """Part a recipient plays on a document.

    Viewers receive the document but never sign, so they neither block
    the signing order nor hold back completion.
    """

    SIGNER = "SIGNER"
    APPROVER = "APPROVER"
    VIEWER = "VIEWER"


class AttemptStatus(str, Enum):
    """Lifecycle states for one identity-verification run."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    REVIEW_APPROVED = "REVIEW_APPROVED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


TERMINAL_ATTEMPT_STATUSES = frozenset(
    {AttemptStatus.SUCCESS, AttemptStatus.FAILED, AttemptStatus.EXPIRED}
)


class ActorType(str, Enum):
    """Who caused an audited occurrence."""

    SIGNER = "signer"
    SYSTEM = "system"


class AuditEventType(str, Enum):
    """Occurrences recorded in the audit ledger."""

    IDENTITY_VERIFICATION_STARTED = "identity_verification_started"
    IDENTITY_VERIFIED = "identity_verified"
    IDENTITY_VERIFICATION_FAILED = "identity_verification_failed"
    IDENTITY_VERIFICATION_EXPIRED = "identity_verification_expired"
    IDENTITY_VERIFICATION_IN_REVIEW = "identity_verification_in_review"
    IDENTITY_REVIEW_APPROVED = "identity_review_approved"
    CONTINUITY_TOKEN_REDEEMED = "continuity_token_redeemed"
    VERIFICATION_RESET = "verification_reset"
    DEVICE_SESSION_BOUND = "device_session_bound"
    SIGNER_SIGNED = "signer_signed"
    RECIPIENT_SIGNED = "recipient_signed"
    DOCUMENT_COMPLETED = "document_completed"
    DOCUMENT_CANCELLED = "document_cancelled"
    AUDIT_PACKAGE_EXPORTED = "audit_package_exported"
    # Notification outcomes (idempotency keys for outbound email)
    REVIEW_APPROVED_EMAIL_SENT = "review_approved_email_sent"
    SIGNER_IN_REVIEW_EMAIL_SENT = "signer_in_review_email_sent"
    CREATOR_IDENTITY_FAILED_EMAIL_SENT = "creator_identity_failed_email_sent"
    CREATOR_IDENTITY_IN_REVIEW_EMAIL_SENT = "creator_identity_in_review_email_sent"
    SIGNER_SIGNED_EMAIL_SENT = "signer_signed_email_sent"
    DOCUMENT_COMPLETED_EMAIL_SENT = "document_completed_email_sent"


class IntegrationType(str, Enum):
    """External providers a tenant can configure."""

    DIDIT = "didit"
    DOCUMENSO = "documenso"


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------

class Document(BaseModel):
    """A document in the signing workflow.

    Attributes:
        document_id: Unique identifier.
        tenant_id: Owning tenant.
        title: Human-readable title (file name in most tenants).
        status: Current lifecycle status.
        signing_deadline: Optional instant after which nobody may sign.
        requires_identity_verification: Document-level verification flag.
        created_by_email: Creator contact used for notifications.
        created_by_name: Creator display name.
        documenso_envelope_id: Linkage to the e-signature provider.
        created_at: Creation timestamp.
        completed_at: When the last signer finished.
    """

    document_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: Optional[str] = None
    title: str = ""
    status: DocumentStatus = DocumentStatus.PENDING
    signing_deadline: Optional[datetime] = None
    requires_identity_verification: bool = False
    created_by_email: Optional[str] = None
    created_by_name: Optional[str] = None
    documenso_envelope_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        """Completed or cancelled documents accept no more signatures."""
        return self.status in (DocumentStatus.COMPLETED, DocumentStatus.CANCELLED)


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------

class Signer(BaseModel):
    """A party who must sign a document.

    Attributes:
        signer_id: Unique identifier.
        document_id: Owning document.
        name: Display name.
        email: Contact email.
        role: Recipient role.
        signing_order: Position in the signing sequence (1 = first).
            Equal values sign in parallel.
        requires_verification: Per-signer override of the document flag.
        status: Current status.
        verified_at: When verification completed; starts the signing TTL.
        device_session_token: Browser the verified session is bound to.
        signed_at: When the signer signed. Immutable once set.
        signing_token: Per-signer secret that authenticates session calls.
        documenso_recipient_id: Recipient id at the signing provider.
        documenso_signing_token: Recipient token or full signing URL.
        created_at: Insertion time, breaks signing-order ties.
    """

    signer_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    name: str = ""
    email: Optional[str] = None
    role: SignerRole = SignerRole.SIGNER
    signing_order: int = Field(1, ge=1)
    requires_verification: bool = True
    status: SignerStatus = SignerStatus.PENDING
    verified_at: Optional[datetime] = None
    device_session_token: Optional[str] = None
    signed_at: Optional[datetime] = None
    signing_token: str = Field(default_factory=lambda: str(uuid4()))
    documenso_recipient_id: Optional[str] = None
    documenso_signing_token: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def participates(self) -> bool:
        """Whether this recipient signs (and so counts for order/completion)."""
        return self.role != SignerRole.VIEWER

    def needs_identity_check(self, document: Document) -> bool:
        """Verification applies only when both document and signer ask for it."""
        return bool(document.requires_identity_verification and self.requires_verification)


# ---------------------------------------------------------------------------
# Verification attempt
# ---------------------------------------------------------------------------

class VerificationAttempt(BaseModel):
    """One run of the identity-verification flow for a signer.

    Attributes:
        attempt_id: Unique identifier.
        signer_id: Signer being verified.
        session_id: Provider session id.
        verification_url: URL the signer completes verification at.
        status: Attempt status.
        was_in_review: Sticky flag, set once the attempt entered manual review.
        continuity_token: Single-use token issued for manual review flows.
        continuity_token_expires_at: Token expiry.
        continuity_token_used_at: When the token was redeemed.
        verification_data: Last raw provider payload.
        failure_reason: Why the provider declined.
        created_at: Creation time ("latest attempt" ordering).
        updated_at: Last write.
        completed_at: When the attempt reached a decision.
    """

    attempt_id: str = Field(default_factory=lambda: str(uuid4()))
    signer_id: str
    session_id: Optional[str] = None
    verification_url: Optional[str] = None
    status: AttemptStatus = AttemptStatus.PENDING
    was_in_review: bool = False
    continuity_token: Optional[str] = None
    continuity_token_expires_at: Optional[datetime] = None
    continuity_token_used_at: Optional[datetime] = None
    verification_data: dict[str, Any] = Field(default_factory=dict)
    failure_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES


# ---------------------------------------------------------------------------
# Audit ledger
# ---------------------------------------------------------------------------

class AuditEvent(BaseModel):
    """Immutable audit ledger entry.

    Attributes:
        event_id: Unique identifier.
        document_id: Related document.
        signer_id: Related signer (if any).
        attempt_id: Related verification attempt (if any).
        event_type: What happened.
        description: Human-readable summary.
        actor_type: Who caused it.
        event_data: Structured payload.
        created_at: When it happened.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    signer_id: Optional[str] = None
    attempt_id: Optional[str] = None
    event_type: AuditEventType
    description: str = ""
    actor_type: ActorType = ActorType.SYSTEM
    event_data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Tenant integrations
# ---------------------------------------------------------------------------

class TenantIntegration(BaseModel):
    """Provider credentials configured by a tenant.

    ``config`` keys: ``webhook_secret``, ``api_key``, ``workflow_id``,
    ``base_url``.
    """

    tenant_id: str
    integration_type: IntegrationType
    is_enabled: bool = True
    config: dict[str, str] = Field(default_factory=dict)

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.config.get("webhook_secret") or None


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------

class PendingSigner(BaseModel):
    """A predecessor that still has to sign."""

    signer_id: str
    name: str
    email: Optional[str] = None
    signing_order: int
    status: SignerStatus


class SigningOrderBlock(BaseModel):
    """Result of the signing-order gate."""

    blocked: bool = False
    pending: list[PendingSigner] = Field(default_factory=list)


class SessionCheck(BaseModel):
    """Whether a signer's verified session may be used to sign right now.

    Attributes:
        valid: True when signing is allowed.
        reason: First failing check (``not_verified``, ``token_missing``,
            ``device_mismatch``, ``ttl_expired``), or None.
        required: Whether identity verification applies at all.
        expires_at: End of the signing window, when one is open.
        remaining_seconds: Seconds left in the window (0 when closed).
    """

    valid: bool
    reason: Optional[str] = None
    required: bool = True
    expires_at: Optional[datetime] = None
    remaining_seconds: int = 0
