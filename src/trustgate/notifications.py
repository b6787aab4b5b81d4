"""Outbound notifications, deduplicated through the audit ledger.

Every email kind maps to an :class:`~trustgate.models.AuditEventType`.
Before sending, the ledger is checked for that event on the same
(document, signer); if present the email is skipped. The send outcome,
success or failure, is recorded as that event, so a provider redelivering
the same webhook never produces a second email.
"""

import html
import logging
import threading
from typing import Optional

from .config import GateConfig
from .models import (
    ActorType,
    AuditEvent,
    AuditEventType,
    Document,
    Signer,
    VerificationAttempt,
)
from .providers import EmailClient, EmailResult
from .store import RecordStore

logger = logging.getLogger("trustgate.notifications")


def _layout(heading: str, body_html: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; color:#0f172a; line-height:1.5;'
        ' background:#f8fafc; padding:24px;">'
        '<div style="max-width:560px; margin:0 auto; background:#ffffff;'
        ' border-radius:14px; border:1px solid #e2e8f0; padding:24px;">'
        f'<h2 style="margin:0 0 8px; font-size:20px;">{html.escape(heading)}</h2>'
        f"{body_html}"
        '<p style="margin:16px 0 0; font-size:12px; color:#94a3b8;">TrustGate</p>'
        "</div></div>"
    )


def _greeting(name: Optional[str]) -> str:
    return f"Hello <strong>{html.escape(name)}</strong>," if name else "Hello,"


def _document_line(document: Document) -> str:
    if not document.title:
        return ""
    return f"<p>Document: <strong>{html.escape(document.title)}</strong></p>"


def _signer_line(signer: Signer) -> str:
    label = html.escape(signer.name or "Unnamed signer")
    if signer.email:
        label += f" ({html.escape(signer.email)})"
    return f"<p>Signer: <strong>{label}</strong></p>"


def _subject(prefix: str, document: Document) -> str:
    return f"{prefix}: {document.title}" if document.title else prefix


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def continuity_link(config: GateConfig, signer: Signer, token: str) -> str:
    """Link that resumes signing after manual review."""
    base = config.app_base_url.rstrip("/")
    return f"{base}/sign/{signer.signing_token}?continuity_token={token}"


def review_approved_email(
    config: GateConfig, document: Document, signer: Signer, token: str
) -> tuple[str, str]:
    link = html.escape(continuity_link(config, signer, token), quote=True)
    ttl_minutes = config.signing_ttl_seconds // 60
    body = (
        f"<p>{_greeting(signer.name)} your identity verification was approved.</p>"
        f"{_document_line(document)}"
        f'<p><a href="{link}">Continue to signing</a></p>'
        f"<p>Once you open the link you have {ttl_minutes} minutes to sign. "
        f"The link expires in {config.continuity_token_ttl_hours} hours.</p>"
    )
    return _subject("Verification approved", document), _layout("Verification approved", body)


def signer_in_review_email(document: Document, signer: Signer) -> tuple[str, str]:
    body = (
        f"<p>{_greeting(signer.name)} your identity verification needs a manual review.</p>"
        f"{_document_line(document)}"
        "<p>We will email you a link to continue as soon as it is approved.</p>"
    )
    return _subject("Verification under review", document), _layout("Verification under review", body)


def creator_verification_email(
    document: Document, signer: Signer, status_label: str, detail: Optional[str] = None
) -> tuple[str, str]:
    body = (
        f"<p>{_greeting(document.created_by_name)} there is an identity update.</p>"
        f"{_document_line(document)}"
        f"{_signer_line(signer)}"
    )
    if detail:
        body += f'<p style="color:#64748b; font-size:13px;">{html.escape(detail)}</p>'
    return _subject(status_label, document), _layout(status_label, body)


def signer_signed_email(document: Document, signer: Signer) -> tuple[str, str]:
    body = (
        f"<p>{_greeting(document.created_by_name)} a signer completed their signature.</p>"
        f"{_document_line(document)}"
        f"{_signer_line(signer)}"
    )
    return _subject("Signature completed", document), _layout("Signature completed", body)


def document_completed_email(document: Document) -> tuple[str, str]:
    body = (
        f"<p>{_greeting(document.created_by_name)} all signatures were collected.</p>"
        f"{_document_line(document)}"
    )
    return _subject("Document completed", document), _layout("Document completed", body)


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------

class Notifier:
    """Sends each notification kind at most once per (document, signer).

    Args:
        store: Record store holding the audit ledger.
        email: Email client.
        config: Deployment settings (links, TTL wording).
    """

    def __init__(self, store: RecordStore, email: EmailClient, config: GateConfig) -> None:
        self.store = store
        self.email = email
        self.config = config
        self._lock = threading.Lock()
        self._sending: set[tuple[str, AuditEventType, Optional[str]]] = set()

    def notify_once(
        self,
        kind: AuditEventType,
        document: Document,
        to: Optional[str],
        subject: str,
        html_body: str,
        signer: Optional[Signer] = None,
        attempt: Optional[VerificationAttempt] = None,
    ) -> Optional[EmailResult]:
        """Send unless the ledger already records ``kind`` for this signer.

        Returns:
            The send result, or None when skipped.
        """
        if not to:
            logger.info("No recipient for %s on %s, skipping", kind.value, document.document_id[:8])
            return None

        signer_id = signer.signer_id if signer else None
        key = (document.document_id, kind, signer_id)
        with self._lock:
            if key in self._sending or self.store.has_audit_event(document.document_id, kind, signer_id):
                logger.info(
                    "%s already recorded for %s/%s, skipping",
                    kind.value, document.document_id[:8], (signer_id or "-")[:8],
                )
                return None
            self._sending.add(key)

        try:
            result = self.email.send(to, subject, html_body)
            self.store.append_audit(
                AuditEvent(
                    document_id=document.document_id,
                    signer_id=signer_id,
                    attempt_id=attempt.attempt_id if attempt else None,
                    event_type=kind,
                    description=(
                        f"Email sent to {to}"
                        if result.success
                        else f"Error sending email to {to}: {result.error}"
                    ),
                    actor_type=ActorType.SYSTEM,
                    event_data={
                        "email_sent": result.success,
                        "email_id": result.id,
                        "error": result.error,
                    },
                )
            )
        finally:
            with self._lock:
                self._sending.discard(key)
        return result

    # ------------------------------------------------------------------
    # Named notifications
    # ------------------------------------------------------------------

    def review_approved(
        self, document: Document, signer: Signer, attempt: VerificationAttempt
    ) -> Optional[EmailResult]:
        if not attempt.continuity_token:
            logger.error("Review approved without continuity token (attempt %s)", attempt.attempt_id[:8])
            return None
        subject, body = review_approved_email(
            self.config, document, signer, attempt.continuity_token
        )
        return self.notify_once(
            AuditEventType.REVIEW_APPROVED_EMAIL_SENT, document, signer.email,
            subject, body, signer=signer, attempt=attempt,
        )

    def signer_in_review(
        self, document: Document, signer: Signer, attempt: VerificationAttempt
    ) -> Optional[EmailResult]:
        subject, body = signer_in_review_email(document, signer)
        return self.notify_once(
            AuditEventType.SIGNER_IN_REVIEW_EMAIL_SENT, document, signer.email,
            subject, body, signer=signer, attempt=attempt,
        )

    def creator_in_review(
        self, document: Document, signer: Signer, attempt: VerificationAttempt
    ) -> Optional[EmailResult]:
        subject, body = creator_verification_email(
            document, signer, "Verification sent to review",
            "The identity verification requires a manual review.",
        )
        return self.notify_once(
            AuditEventType.CREATOR_IDENTITY_IN_REVIEW_EMAIL_SENT, document,
            document.created_by_email, subject, body, signer=signer, attempt=attempt,
        )

    def creator_failed(
        self,
        document: Document,
        signer: Signer,
        attempt: VerificationAttempt,
        reason: Optional[str],
    ) -> Optional[EmailResult]:
        subject, body = creator_verification_email(
            document, signer, "Identity verification failed",
            f"Reason: {reason}" if reason else None,
        )
        return self.notify_once(
            AuditEventType.CREATOR_IDENTITY_FAILED_EMAIL_SENT, document,
            document.created_by_email, subject, body, signer=signer, attempt=attempt,
        )

    def creator_signer_signed(self, document: Document, signer: Signer) -> Optional[EmailResult]:
        subject, body = signer_signed_email(document, signer)
        return self.notify_once(
            AuditEventType.SIGNER_SIGNED_EMAIL_SENT, document,
            document.created_by_email, subject, body, signer=signer,
        )

    def creator_document_completed(self, document: Document) -> Optional[EmailResult]:
        subject, body = document_completed_email(document)
        return self.notify_once(
            AuditEventType.DOCUMENT_COMPLETED_EMAIL_SENT, document,
            document.created_by_email, subject, body,
        )
