"""Tests for deduplicated notifications."""

import threading

import pytest

from trustgate.models import AuditEventType, Document
from trustgate.notifications import Notifier, review_approved_email
from trustgate.providers import EmailResult


class BlockingEmail:
    """Email double whose sends wait until released."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.sent: list[str] = []

    def send(self, to: str, subject: str, html: str) -> EmailResult:
        self.entered.set()
        assert self.release.wait(timeout=5)
        self.sent.append(to)
        return EmailResult(success=True, id=f"email-{len(self.sent)}")


@pytest.fixture
def blocking():
    return BlockingEmail()


@pytest.fixture
def notifier(tmp_store, blocking, config):
    return Notifier(tmp_store, blocking, config)


class TestNotifyOnce:
    """At-most-once sends guarded by the audit ledger."""

    def test_ledger_entry_suppresses_resend(self, tmp_store, email, config, document, signer):
        notifier = Notifier(tmp_store, email, config)
        kind = AuditEventType.SIGNER_IN_REVIEW_EMAIL_SENT

        assert notifier.notify_once(kind, document, signer.email, "Hi", "<p>Hi</p>", signer=signer).success
        assert notifier.notify_once(kind, document, signer.email, "Hi", "<p>Hi</p>", signer=signer) is None
        assert len(email.sent) == 1
        assert tmp_store.has_audit_event(document.document_id, kind, signer.signer_id)

    def test_no_recipient_skips(self, tmp_store, email, config, document):
        notifier = Notifier(tmp_store, email, config)
        assert notifier.notify_once(AuditEventType.DOCUMENT_COMPLETED_EMAIL_SENT, document, None, "s", "b") is None
        assert email.sent == []

    def test_send_does_not_hold_other_notifications(self, notifier, blocking, document, signer):
        results = {}

        def first():
            results["first"] = notifier.notify_once(
                AuditEventType.SIGNER_IN_REVIEW_EMAIL_SENT, document, "ada@example.com", "s", "b", signer=signer
            )

        worker = threading.Thread(target=first)
        worker.start()
        assert blocking.entered.wait(timeout=5)

        # Same kind while the first send is in flight: skipped without waiting.
        duplicate = notifier.notify_once(
            AuditEventType.SIGNER_IN_REVIEW_EMAIL_SENT, document, "ada@example.com", "s", "b", signer=signer
        )
        assert duplicate is None

        # A different kind reaches the email client while the first is still blocked.
        other = threading.Thread(
            target=notifier.notify_once,
            args=(AuditEventType.DOCUMENT_COMPLETED_EMAIL_SENT, document, "owner@example.com", "s", "b"),
        )
        blocking.entered.clear()
        other.start()
        assert blocking.entered.wait(timeout=5)

        blocking.release.set()
        worker.join(timeout=5)
        other.join(timeout=5)
        assert results["first"].success
        assert sorted(blocking.sent) == ["ada@example.com", "owner@example.com"]


class TestTemplates:
    """Email bodies."""

    def test_review_approved_escapes_and_links(self, config, make_signer):
        doc = Document(title="<b>Lease</b>")
        signer = make_signer(name="Ada <script>")
        subject, body = review_approved_email(config, doc, signer, "tok-123")

        assert subject == "Verification approved: <b>Lease</b>"
        assert "&lt;b&gt;Lease&lt;/b&gt;" in body
        assert "<script>" not in body
        assert f"https://sign.example.com/sign/{signer.signing_token}?continuity_token=tok-123" in body
        assert "10 minutes" in body
