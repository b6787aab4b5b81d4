"""Tests for the signing room and verification proxy entry points."""

import pytest

from trustgate.errors import (
    AuthorizationError,
    ConflictError,
    StateError,
    StoreError,
    ValidationError,
)
from trustgate.models import (
    AttemptStatus,
    IntegrationType,
    SignerStatus,
    TenantIntegration,
    VerificationAttempt,
)
from trustgate.session import (
    SigningRoom,
    VerificationProxy,
    attempt_view,
    signing_url,
    split_name,
)


@pytest.fixture
def room(engine):
    return SigningRoom(engine)


@pytest.fixture
def proxy(engine):
    return VerificationProxy(engine)


def _call(room, signer, action, **body):
    return room.handle({"action": action, "signingToken": signer.signing_token, **body})


class TestHelpers:
    """Pure helpers."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Ada King Lovelace", ("Ada", "King Lovelace")),
            ("Plato", ("Plato", "")),
            ("  ", ("", "")),
            (None, ("", "")),
        ],
    )
    def test_split_name(self, name, expected):
        assert split_name(name) == expected

    def test_signing_url(self, make_signer):
        token_only = make_signer(documenso_signing_token="rcp-token")
        full = make_signer(documenso_signing_token="https://sign.documenso.com/sign/abc")
        none = make_signer()
        assert signing_url(token_only, "https://app.documenso.com/") == "https://app.documenso.com/sign/rcp-token"
        assert signing_url(token_only, None) is None
        assert signing_url(full, None) == "https://sign.documenso.com/sign/abc"
        assert signing_url(none, "https://app.documenso.com") is None

    def test_attempt_view_hides_token(self):
        view = attempt_view(VerificationAttempt(signer_id="s", continuity_token="secret"))
        assert "continuity_token" not in view
        assert view["status"] == "PENDING"
        assert attempt_view(None) is None


class TestAuthentication:
    """signingToken checks."""

    def test_missing_token(self, room):
        with pytest.raises(ValidationError) as exc:
            room.handle({"action": "get-signer"})
        assert exc.value.reason == "missing_signing_token"

    def test_unknown_token(self, room):
        with pytest.raises(AuthorizationError) as exc:
            room.handle({"action": "get-signer", "signingToken": "forged"})
        assert exc.value.status_code == 401

    def test_signer_mismatch(self, room, signer):
        with pytest.raises(AuthorizationError) as exc:
            _call(room, signer, "get-signer", signerId="someone-else")
        assert exc.value.status_code == 403

    def test_missing_action(self, room, signer):
        with pytest.raises(ValidationError) as exc:
            room.handle({"signingToken": signer.signing_token})
        assert exc.value.reason == "missing_action"

    def test_unknown_action(self, room, signer):
        with pytest.raises(ValidationError) as exc:
            _call(room, signer, "sign-everything")
        assert exc.value.reason == "unknown_action"


class TestSigningRoom:
    """Signer actions."""

    def test_get_signer(self, room, tmp_store, make_signer, document):
        tmp_store.save_integration(
            TenantIntegration(
                tenant_id=document.tenant_id,
                integration_type=IntegrationType.DOCUMENSO,
                config={"base_url": "https://app.documenso.com", "tenant_name": "Acme Corp"},
            )
        )
        make_signer(name="Grace Hopper", email="grace@example.com", signing_order=1)
        second = make_signer(signing_order=2, documenso_signing_token="rcp-2")

        data = _call(room, second, "get-signer")

        assert data["signer"]["signer_id"] == second.signer_id
        assert data["document"]["title"] == document.title
        assert data["tenantName"] == "Acme Corp"
        assert data["documensoBaseUrl"] == "https://app.documenso.com"
        assert data["signingUrl"] == "https://app.documenso.com/sign/rcp-2"
        assert data["signingOrder"]["blocked"] is True
        assert data["session"]["valid"] is False
        assert data["session"]["reason"] == "not_verified"

    def test_latest_attempt(self, room, engine, signer, clock):
        assert _call(room, signer, "get-latest-attempt") == {"attempt": None}
        engine.machine.start_session(signer, "sess-1", "https://verify.example.com/1", clock.now)
        attempt = _call(room, signer, "get-latest-attempt")["attempt"]
        assert attempt["session_id"] == "sess-1"
        assert attempt["status"] == "IN_PROGRESS"

    def test_bind_device_session(self, room, signer):
        assert _call(room, signer, "bind-device-session", deviceSessionToken="device-a") == {
            "ok": True,
            "deviceSessionToken": "device-a",
        }
        with pytest.raises(ConflictError):
            _call(room, signer, "bind-device-session", deviceSessionToken="device-b")

    def test_reset_verification(self, room, tmp_store, signer):
        _call(room, signer, "bind-device-session", deviceSessionToken="device-a")
        assert _call(room, signer, "reset-verification") == {"ok": True}
        assert tmp_store.get_signer(signer.signer_id).device_session_token is None

    def test_set_signer_status_only_failed(self, room, engine, tmp_store, signer, clock):
        with pytest.raises(ValidationError) as exc:
            _call(room, signer, "set-signer-status", status="VERIFIED")
        assert exc.value.reason == "status_not_allowed"

        attempt = engine.machine.start_session(signer, "sess-1", "https://verify.example.com/1", clock.now)
        engine.machine.expire_attempt(signer, attempt.attempt_id, clock.now)
        tmp_store.update_signer(signer.signer_id, {"status": SignerStatus.VERIFYING})
        assert _call(room, signer, "set-signer-status", status="verification_failed") == {"ok": True}
        assert tmp_store.get_signer(signer.signer_id).status == SignerStatus.VERIFICATION_FAILED

    def test_redeem_twice_is_soft_success(self, room, engine, tmp_store, signer, clock):
        attempt = engine.machine.start_session(signer, "sess-1", "https://verify.example.com/1", clock.now)
        tmp_store.update_attempt(
            attempt.attempt_id, {"status": AttemptStatus.REVIEW_APPROVED, "was_in_review": True}
        )
        token = engine.tokens.issue(tmp_store.get_attempt(attempt.attempt_id), clock.now).continuity_token

        first = _call(room, signer, "redeem-continuity-token", token=token)
        clock.advance(seconds=5)
        second = _call(room, signer, "redeem-continuity-token", token=token)

        assert first["already_redeemed"] is False
        assert second["already_redeemed"] is True
        assert second["verified_at"] == first["verified_at"]
        assert second["expires_at"] == first["expires_at"]

    def test_redeem_after_reset_is_hard_error(self, room, engine, tmp_store, signer, clock):
        attempt = engine.machine.start_session(signer, "sess-1", "https://verify.example.com/1", clock.now)
        tmp_store.update_attempt(attempt.attempt_id, {"status": AttemptStatus.REVIEW_APPROVED})
        token = engine.tokens.issue(tmp_store.get_attempt(attempt.attempt_id), clock.now).continuity_token
        _call(room, signer, "redeem-continuity-token", token=token)
        _call(room, signer, "reset-verification")

        with pytest.raises(StateError) as exc:
            _call(room, signer, "redeem-continuity-token", token=token)
        assert exc.value.reason == "token_already_used"

    def test_redeem_requires_token(self, room, signer):
        with pytest.raises(ValidationError) as exc:
            _call(room, signer, "redeem-continuity-token")
        assert exc.value.reason == "missing_token"

    def test_expire_attempt_requires_id(self, room, signer):
        with pytest.raises(ValidationError) as exc:
            _call(room, signer, "expire-attempt")
        assert exc.value.reason == "missing_attempt_id"

    def test_resolve_decision(self, room, engine, tmp_store, signer, didit, clock):
        engine.machine.start_session(signer, "sess-1", "https://verify.example.com/1", clock.now)
        didit.decision = {"status": "In Progress"}
        assert _call(room, signer, "resolve-decision")["reason"] == "unresolved"

        didit.decision = {"status": "Approved"}
        data = _call(room, signer, "resolve-decision")
        assert data["applied"] is True
        assert data["signerStatus"] == "VERIFIED"
        assert data["attempt"]["status"] == "SUCCESS"

    def test_mark_signed(self, room, tmp_store, signer, clock):
        tmp_store.update_signer(
            signer.signer_id, {"status": SignerStatus.VERIFIED, "verified_at": clock.now}
        )
        _call(room, signer, "bind-device-session", deviceSessionToken="device-a")
        data = _call(room, signer, "mark-signed", deviceSessionToken="device-a")
        assert data == {"ok": True, "documentStatus": "COMPLETED", "signedAt": clock.now.isoformat()}


class TestVerificationProxy:
    """Identity provider proxy."""

    def _body(self, signer, action, **extra):
        return {
            "action": action,
            "signerId": signer.signer_id,
            "signingToken": signer.signing_token,
            **extra,
        }

    def test_requires_credentials(self, proxy, signer):
        with pytest.raises(ValidationError):
            proxy.handle({"action": "create-session", "signerId": signer.signer_id})
        with pytest.raises(AuthorizationError):
            proxy.handle(self._body(signer, "create-session") | {"signingToken": "forged"})

    def test_create_session(self, proxy, tmp_store, signer, didit, config):
        data = proxy.handle(self._body(signer, "create-session"))

        assert data["sessionId"] == "sess-1"
        assert data["verificationUrl"] == "https://verify.example.com/sess-1"
        attempt = tmp_store.get_attempt(data["attemptId"])
        assert attempt.status == AttemptStatus.IN_PROGRESS
        assert tmp_store.get_signer(signer.signer_id).status == SignerStatus.VERIFYING

        call = didit.created[0]
        assert call["vendor_data"] == signer.signer_id
        assert call["callback"] == f"{config.app_base_url}/sign/{signer.signing_token}"
        assert (call["first_name"], call["last_name"]) == ("Ada", "Lovelace")
        assert call["email"] == "ada@example.com"

    def test_expected_details_override_name(self, proxy, signer, didit):
        proxy.handle(
            self._body(signer, "create-session", expectedDetails={"firstName": "Augusta", "lastName": "King"})
        )
        assert (didit.created[0]["first_name"], didit.created[0]["last_name"]) == ("Augusta", "King")

    def test_single_name_sends_no_last_name(self, proxy, make_signer, didit):
        plato = make_signer(name="Plato", email="plato@example.com")
        proxy.handle(self._body(plato, "create-session"))
        assert didit.created[0]["last_name"] is None

    def test_store_failure_deletes_provider_session(self, proxy, engine, signer, didit, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreError("write_failed", "disk full")

        monkeypatch.setattr(engine.machine, "start_session", broken)
        with pytest.raises(StoreError):
            proxy.handle(self._body(signer, "create-session"))
        assert didit.deleted == ["sess-1"]

    def test_decision_only_for_own_session(self, proxy, make_signer, signer, didit):
        proxy.handle(self._body(signer, "create-session"))
        other = make_signer(name="Mallory Jones", email="mallory@example.com")

        assert proxy.handle(self._body(signer, "get-decision", sessionId="sess-1"))["session_id"] == "sess-1"
        with pytest.raises(AuthorizationError) as exc:
            proxy.handle(self._body(other, "get-decision", sessionId="sess-1"))
        assert exc.value.reason == "session_not_found"

    def test_delete_session(self, proxy, signer, didit):
        proxy.handle(self._body(signer, "create-session"))
        assert proxy.handle(self._body(signer, "delete-session", sessionId="sess-1")) == {
            "ok": True,
            "deleted": True,
        }
        assert didit.deleted == ["sess-1"]

    def test_signed_signer_cannot_start(self, proxy, make_signer, clock, didit):
        signed = make_signer(status=SignerStatus.SIGNED, signed_at=clock.now)
        with pytest.raises(StateError):
            proxy.handle(self._body(signed, "create-session"))
        assert didit.created == []

    def test_status_and_detail_for_own_session(self, proxy, make_signer, signer, didit):
        proxy.handle(self._body(signer, "create-session"))
        didit.decision = {"status": "In Review"}

        status = proxy.handle(self._body(signer, "get-status", sessionId="sess-1"))
        assert status == {"session_id": "sess-1", "status": "In Review"}
        detail = proxy.handle(self._body(signer, "get-session-detail", sessionId="sess-1"))
        assert detail["detail"] is True

        other = make_signer(name="Mallory Jones", email="mallory@example.com")
        for action in ("get-status", "get-session-detail"):
            with pytest.raises(AuthorizationError) as exc:
                proxy.handle(self._body(other, action, sessionId="sess-1"))
            assert exc.value.reason == "session_not_found"

    def test_review_decision_not_a_signer_action(self, proxy, signer, didit):
        proxy.handle(self._body(signer, "create-session"))
        for action in ("update-status", "generate-pdf"):
            with pytest.raises(ValidationError) as exc:
                proxy.handle(self._body(signer, action, sessionId="sess-1", newStatus="Approved"))
            assert exc.value.reason == "unknown_action"
        assert didit.updates == []
