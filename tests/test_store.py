"""Tests for the TrustGate record store."""

from datetime import timedelta

import pytest

from trustgate.errors import NotFoundError
from trustgate.models import (
    AttemptStatus,
    AuditEvent,
    AuditEventType,
    Document,
    DocumentStatus,
    IntegrationType,
    Signer,
    SignerStatus,
    TenantIntegration,
    VerificationAttempt,
)


class TestDocumentStore:
    """Document CRUD."""

    def test_save_and_get_document(self, tmp_store):
        doc = Document(title="My Agreement", signing_deadline=None)
        tmp_store.save_document(doc)
        loaded = tmp_store.get_document(doc.document_id)
        assert loaded.title == "My Agreement"
        assert loaded.status == DocumentStatus.PENDING

    def test_get_missing_document(self, tmp_store):
        assert tmp_store.find_document("nonexistent") is None
        with pytest.raises(NotFoundError) as exc:
            tmp_store.get_document("nonexistent")
        assert exc.value.reason == "document_not_found"

    def test_find_by_envelope(self, tmp_store):
        tmp_store.save_document(Document(title="A", documenso_envelope_id="env-a"))
        b = tmp_store.save_document(Document(title="B", documenso_envelope_id="env-b"))
        assert tmp_store.find_document_by_envelope("env-b").document_id == b.document_id
        assert tmp_store.find_document_by_envelope("env-z") is None

    def test_list_documents_newest_first(self, tmp_store, clock):
        old = tmp_store.save_document(Document(title="Old", created_at=clock.now - timedelta(days=1)))
        new = tmp_store.save_document(Document(title="New", created_at=clock.now))
        assert [d.document_id for d in tmp_store.list_documents()] == [new.document_id, old.document_id]


class TestConditionalUpdates:
    """Compare-and-set semantics shared by every record type."""

    def test_update_applies_when_expectation_holds(self, tmp_store):
        doc = tmp_store.save_document(Document(title="X"))
        updated = tmp_store.update_document(
            doc.document_id,
            {"status": DocumentStatus.IN_PROGRESS},
            expect={"status": DocumentStatus.PENDING},
        )
        assert updated.status == DocumentStatus.IN_PROGRESS
        assert tmp_store.get_document(doc.document_id).status == DocumentStatus.IN_PROGRESS

    def test_update_skipped_when_expectation_fails(self, tmp_store):
        doc = tmp_store.save_document(Document(title="X", status=DocumentStatus.CANCELLED))
        result = tmp_store.update_document(
            doc.document_id,
            {"status": DocumentStatus.COMPLETED},
            expect={"status": DocumentStatus.PENDING},
        )
        assert result is None
        assert tmp_store.get_document(doc.document_id).status == DocumentStatus.CANCELLED

    def test_expect_accepts_a_set(self, tmp_store, document):
        signer = tmp_store.save_signer(Signer(document_id=document.document_id, status=SignerStatus.VERIFYING))
        updated = tmp_store.update_signer(
            signer.signer_id,
            {"status": SignerStatus.VERIFIED},
            expect={"status": {SignerStatus.PENDING, SignerStatus.VERIFYING}},
        )
        assert updated.status == SignerStatus.VERIFIED

    def test_update_missing_record(self, tmp_store):
        with pytest.raises(NotFoundError):
            tmp_store.update_signer("nope", {"name": "x"})

    def test_attempt_update_touches_updated_at(self, tmp_store, clock):
        attempt = tmp_store.save_attempt(
            VerificationAttempt(signer_id="s", created_at=clock.now, updated_at=clock.now - timedelta(days=3650))
        )
        updated = tmp_store.update_attempt(attempt.attempt_id, {"status": AttemptStatus.IN_PROGRESS})
        assert updated.updated_at > attempt.updated_at


class TestSignerStore:
    """Signer lookups."""

    def test_lookups(self, tmp_store, document):
        signer = tmp_store.save_signer(
            Signer(document_id=document.document_id, name="Ada", documenso_recipient_id="rcp-1")
        )
        assert tmp_store.find_signer_by_signing_token(signer.signing_token).signer_id == signer.signer_id
        assert tmp_store.find_signer_by_recipient_id("rcp-1").signer_id == signer.signer_id
        assert tmp_store.find_signer_by_signing_token("wrong") is None

    def test_token_lookups_compare_in_constant_time(self, tmp_store, signer, monkeypatch):
        import trustgate.store as store_module

        calls = []
        real = store_module.same_secret

        def recording(expected, supplied):
            calls.append(supplied)
            return real(expected, supplied)

        monkeypatch.setattr(store_module, "same_secret", recording)
        assert tmp_store.find_signer_by_signing_token(signer.signing_token).signer_id == signer.signer_id
        assert tmp_store.find_attempt_by_continuity_token("missing") is None
        assert signer.signing_token in calls

    def test_non_ascii_token_is_no_match(self, tmp_store, signer):
        assert tmp_store.find_signer_by_signing_token("t\u00f6ken") is None

    def test_list_signers_by_order_then_insertion(self, tmp_store, make_signer, document):
        third = make_signer(name="C", signing_order=2)
        first = make_signer(name="A", signing_order=1)
        second = make_signer(name="B", signing_order=1)
        make_signer(name="Elsewhere", document_id="other-doc")
        names = [s.name for s in tmp_store.list_signers(document.document_id)]
        assert names == [first.name, second.name, third.name]


class TestAttemptStore:
    """Verification attempt lookups."""

    def test_latest_attempt_by_creation_time(self, tmp_store, clock):
        older = tmp_store.save_attempt(VerificationAttempt(signer_id="s", created_at=clock.now))
        newer = tmp_store.save_attempt(
            VerificationAttempt(signer_id="s", created_at=clock.now + timedelta(minutes=1))
        )
        tmp_store.save_attempt(
            VerificationAttempt(signer_id="other", created_at=clock.now + timedelta(hours=1))
        )
        assert tmp_store.latest_attempt("s").attempt_id == newer.attempt_id
        assert [a.attempt_id for a in tmp_store.list_attempts("s")] == [newer.attempt_id, older.attempt_id]
        assert tmp_store.latest_attempt("nobody") is None

    def test_list_attempts_filtered(self, tmp_store):
        tmp_store.save_attempt(VerificationAttempt(signer_id="s", status=AttemptStatus.SUCCESS))
        live = tmp_store.save_attempt(VerificationAttempt(signer_id="s", status=AttemptStatus.IN_REVIEW))
        found = tmp_store.list_attempts("s", {AttemptStatus.IN_REVIEW, AttemptStatus.IN_PROGRESS})
        assert [a.attempt_id for a in found] == [live.attempt_id]

    def test_find_by_session_and_token(self, tmp_store):
        attempt = tmp_store.save_attempt(
            VerificationAttempt(signer_id="s", session_id="sess-9", continuity_token="tok-9")
        )
        assert tmp_store.find_attempt_by_session("sess-9").attempt_id == attempt.attempt_id
        assert tmp_store.find_attempt_by_continuity_token("tok-9").attempt_id == attempt.attempt_id
        assert tmp_store.find_attempt_by_session("sess-0") is None


class TestAuditStore:
    """Append-only audit ledger."""

    def test_append_and_read(self, tmp_store):
        for event_type in (AuditEventType.DEVICE_SESSION_BOUND, AuditEventType.SIGNER_SIGNED):
            tmp_store.append_audit(AuditEvent(document_id="doc-1", event_type=event_type))
        trail = tmp_store.get_audit_trail("doc-1")
        assert [e.event_type for e in trail] == [
            AuditEventType.DEVICE_SESSION_BOUND,
            AuditEventType.SIGNER_SIGNED,
        ]

    def test_empty_trail(self, tmp_store):
        assert tmp_store.get_audit_trail("nothing") == []

    def test_has_audit_event_per_signer(self, tmp_store):
        tmp_store.append_audit(
            AuditEvent(
                document_id="doc-1",
                signer_id="signer-a",
                event_type=AuditEventType.SIGNER_IN_REVIEW_EMAIL_SENT,
            )
        )
        kind = AuditEventType.SIGNER_IN_REVIEW_EMAIL_SENT
        assert tmp_store.has_audit_event("doc-1", kind, "signer-a")
        assert not tmp_store.has_audit_event("doc-1", kind, "signer-b")
        assert tmp_store.has_audit_event("doc-1", kind)
        assert not tmp_store.has_audit_event("doc-1", AuditEventType.SIGNER_SIGNED)

    def test_corrupt_line_is_skipped(self, tmp_store, tmp_path):
        tmp_store.append_audit(AuditEvent(document_id="doc-1", event_type=AuditEventType.SIGNER_SIGNED))
        with open(tmp_path / "audit" / "doc-1.jsonl", "a", encoding="utf-8") as f:
            f.write("{not json\n")
        assert len(tmp_store.get_audit_trail("doc-1")) == 1


class TestIntegrationStore:
    """Tenant provider integrations."""

    def test_find_enabled_for_tenant(self, tmp_store):
        tmp_store.save_integration(
            TenantIntegration(tenant_id="t1", integration_type=IntegrationType.DIDIT, config={"api_key": "k1"})
        )
        tmp_store.save_integration(
            TenantIntegration(tenant_id="t2", integration_type=IntegrationType.DIDIT, config={"api_key": "k2"})
        )
        assert tmp_store.find_integration(IntegrationType.DIDIT, "t2").config["api_key"] == "k2"
        assert tmp_store.find_integration(IntegrationType.DOCUMENSO, "t1") is None

    def test_disabled_integration_ignored(self, tmp_store):
        tmp_store.save_integration(
            TenantIntegration(tenant_id="t1", integration_type=IntegrationType.DIDIT, is_enabled=False)
        )
        assert tmp_store.find_integration(IntegrationType.DIDIT, "t1") is None
        assert len(tmp_store.list_integrations()) == 1
