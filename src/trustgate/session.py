"""Session entry points used by the signing UI.

``SigningRoom`` serves the signer's page: every call carries the signer's
``signingToken`` and an ``action``. ``VerificationProxy`` fronts the
identity provider so its API key never reaches the browser.

Both return plain JSON-ready dicts and raise
:class:`~trustgate.errors.TrustGateError` subclasses; the HTTP layer maps
those to status codes.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from .engine import TrustGateEngine
from .errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    StoreError,
    UpstreamError,
    ValidationError,
)
from .models import (
    Document,
    IntegrationType,
    Signer,
    SignerStatus,
    VerificationAttempt,
)
from .signatures import same_secret
from .signing_order import evaluate_signing_order

logger = logging.getLogger("trustgate.session")

Handler = Callable[[Signer, Document, dict[str, Any]], dict[str, Any]]


def _required(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not value or not isinstance(value, str):
        raise ValidationError(f"missing_{_snake(key)}", f"Missing {key}")
    return value


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def attempt_view(attempt: Optional[VerificationAttempt]) -> Optional[dict[str, Any]]:
    """Attempt as shown to the client. The continuity token only travels by email."""
    if attempt is None:
        return None
    return attempt.model_dump(mode="json", exclude={"continuity_token"})


def signing_url(signer: Signer, base_url: Optional[str]) -> Optional[str]:
    """Full signing URL from the stored recipient token or URL."""
    token = signer.documenso_signing_token
    if not token:
        return None
    if token.startswith(("http://", "https://")):
        return token
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/sign/{token}"


def split_name(name: Optional[str]) -> tuple[str, str]:
    """``"Ada King Lovelace"`` -> ``("Ada", "King Lovelace")``."""
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


# ---------------------------------------------------------------------------
# Signing room
# ---------------------------------------------------------------------------

class SigningRoom:
    """Action dispatcher for the signer's page."""

    def __init__(self, engine: TrustGateEngine) -> None:
        self.engine = engine
        self.store = engine.store
        self._actions: dict[str, Handler] = {
            "get-signer": self.get_signer,
            "get-latest-attempt": self.get_latest_attempt,
            "bind-device-session": self.bind_device_session,
            "reset-verification": self.reset_verification,
            "set-signer-status": self.set_signer_status,
            "mark-signed": self.mark_signed,
            "redeem-continuity-token": self.redeem_continuity_token,
            "expire-attempt": self.expire_attempt,
            "resolve-decision": self.resolve_decision,
        }

    def authenticate(self, body: dict[str, Any]) -> Signer:
        """Signer owning ``signingToken``.

        Raises:
            ValidationError: Missing token.
            AuthorizationError: Unknown token (401) or ``signerId`` of
                someone else (403).
        """
        signing_token = body.get("signingToken")
        if not signing_token or not isinstance(signing_token, str):
            raise ValidationError("missing_signing_token", "Missing signing token")

        signer = self.store.find_signer_by_signing_token(signing_token)
        if signer is None:
            raise AuthorizationError("invalid_signing_token", "Invalid signing token")

        signer_id = body.get("signerId")
        if signer_id and signer_id != signer.signer_id:
            raise AuthorizationError("signer_mismatch", "Signer mismatch", status_code=403)
        return signer

    def handle(self, body: dict[str, Any]) -> dict[str, Any]:
        action = body.get("action")
        if not action:
            raise ValidationError("missing_action", "Missing action")

        signer = self.authenticate(body)
        handler = self._actions.get(action)
        if handler is None:
            raise ValidationError("unknown_action", f"Unknown action: {action}")

        document = self.store.get_document(signer.document_id)
        logger.debug("signing-room %s for signer %s", action, signer.signer_id[:8])
        return handler(signer, document, body)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def get_signer(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        integration = self.store.find_integration(IntegrationType.DOCUMENSO, document.tenant_id)
        base_url = integration.config.get("base_url") if integration else None
        session = self.engine.binder.check_session(
            signer, document, body.get("deviceSessionToken"), self.engine.now()
        )
        order = evaluate_signing_order(self.store.list_signers(document.document_id), signer)
        return {
            "signer": signer.model_dump(mode="json"),
            "document": document.model_dump(mode="json"),
            "tenantName": integration.config.get("tenant_name") if integration else None,
            "documensoBaseUrl": base_url,
            "signingUrl": signing_url(signer, base_url),
            "signingOrder": order.model_dump(mode="json"),
            "session": session.model_dump(mode="json"),
        }

    def get_latest_attempt(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        return {"attempt": attempt_view(self.store.latest_attempt(signer.signer_id))}

    def bind_device_session(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        bound = self.engine.binder.bind(signer.signer_id, body.get("deviceSessionToken"))
        return {"ok": True, "deviceSessionToken": bound.device_session_token}

    def reset_verification(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        self.engine.binder.reset(signer.signer_id, self.engine.now())
        return {"ok": True}

    def set_signer_status(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        status = _required(body, "status").strip().upper()
        if status != SignerStatus.VERIFICATION_FAILED.value:
            raise ValidationError(
                "status_not_allowed", f"Status {status} cannot be set by the client"
            )
        self.engine.machine.report_client_failure(signer)
        return {"ok": True}

    def mark_signed(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        result = self.engine.signing.mark_signed(
            signer, body.get("deviceSessionToken"), self.engine.now()
        )
        return {
            "ok": True,
            "documentStatus": result.document.status.value,
            "signedAt": _iso(result.signer.signed_at),
        }

    def redeem_continuity_token(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        token = _required(body, "token")
        ttl = self.engine.config.signing_ttl
        try:
            result = self.engine.tokens.redeem(token, signer, self.engine.now())
        except StateError as exc:
            if exc.reason != "token_already_used":
                raise
            # Same redemption seen twice (double navigation): report success.
            attempt = self.engine.tokens.lookup(token, signer)
            current = self.store.get_signer(signer.signer_id)
            if (
                attempt is not None
                and current.status == SignerStatus.VERIFIED
                and current.verified_at is not None
                and current.verified_at == attempt.continuity_token_used_at
            ):
                return {
                    "ok": True,
                    "verified_at": _iso(current.verified_at),
                    "expires_at": _iso(current.verified_at + ttl),
                    "already_redeemed": True,
                }
            raise

        return {
            "ok": True,
            "verified_at": _iso(result.verified_at),
            "expires_at": _iso(result.verified_at + ttl),
            "already_redeemed": False,
        }

    def expire_attempt(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        attempt_id = _required(body, "attemptId")
        result = self.engine.machine.expire_attempt(signer, attempt_id, self.engine.now())
        return {"ok": True, "applied": result.applied, "attempt": attempt_view(result.attempt)}

    def resolve_decision(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        attempt_id = body.get("attemptId")
        attempt = (
            self.store.find_attempt(attempt_id) if attempt_id
            else self.store.latest_attempt(signer.signer_id)
        )
        if attempt is None or attempt.signer_id != signer.signer_id:
            raise NotFoundError("attempt_not_found", "Verification attempt not found")
        if not attempt.session_id:
            raise StateError("no_session", "Verification attempt has no provider session")

        client = self.engine.didit_client(document.tenant_id)
        decision = client.get_decision(attempt.session_id)
        result = self.engine.machine.resolve_from_decision(attempt, decision, self.engine.now())
        current = self.store.get_signer(signer.signer_id)
        return {
            "ok": True,
            "applied": result.applied,
            "reason": result.reason,
            "attempt": attempt_view(result.attempt),
            "signerStatus": current.status.value,
        }


# ---------------------------------------------------------------------------
# Verification proxy
# ---------------------------------------------------------------------------

class VerificationProxy:
    """Identity provider calls on behalf of an authenticated signer."""

    def __init__(self, engine: TrustGateEngine) -> None:
        self.engine = engine
        self.store = engine.store

    def authenticate(self, body: dict[str, Any]) -> Signer:
        signer_id = body.get("signerId")
        signing_token = body.get("signingToken")
        if not signer_id or not signing_token:
            raise ValidationError("missing_credentials", "Missing signerId or signingToken")

        signer = self.store.find_signer(str(signer_id))
        if signer is None or not same_secret(signer.signing_token, str(signing_token)):
            raise AuthorizationError("invalid_signer_token", "Invalid signer token")
        return signer

    def handle(self, body: dict[str, Any]) -> dict[str, Any]:
        action = body.get("action")
        if not action:
            raise ValidationError("missing_action", "Missing action")

        signer = self.authenticate(body)
        document = self.store.get_document(signer.document_id)

        if action == "create-session":
            return self.create_session(signer, document, body)
        if action == "get-status":
            return self.get_status(signer, document, body)
        if action == "get-decision":
            return self.get_decision(signer, document, body)
        if action == "get-session-detail":
            return self.get_session_detail(signer, document, body)
        if action == "delete-session":
            return self.delete_session(signer, document, body)
        raise ValidationError("unknown_action", f"Unknown action: {action}")

    def _owned_session(self, signer: Signer, body: dict[str, Any]) -> str:
        session_id = _required(body, "sessionId")
        attempt = self.store.find_attempt_by_session(session_id)
        if attempt is None or attempt.signer_id != signer.signer_id:
            raise AuthorizationError("session_not_found", "Session not found for signer")
        return session_id

    def create_session(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        """Open a provider session and record it as the signer's new attempt.

        If the attempt cannot be stored the provider session is deleted
        again, so no webhook ever arrives for an unknown session.
        """
        if signer.status == SignerStatus.SIGNED:
            raise StateError("already_signed", "Signer has already signed")

        expected = body.get("expectedDetails") or {}
        parsed_first, parsed_last = split_name(body.get("name") or signer.name)
        first_name = str(expected.get("first_name") or expected.get("firstName") or parsed_first).strip()
        last_name = str(expected.get("last_name") or expected.get("lastName") or parsed_last).strip()
        callback = body.get("callbackUrl") or (
            f"{self.engine.config.app_base_url.rstrip('/')}/sign/{signer.signing_token}"
        )

        client = self.engine.didit_client(document.tenant_id)
        session = client.create_session(
            vendor_data=signer.signer_id,
            callback=callback,
            email=body.get("email") or signer.email,
            first_name=first_name or None,
            last_name=last_name or None,
            language=body.get("language"),
        )

        try:
            attempt = self.engine.machine.start_session(
                signer, session.session_id, session.verification_url, self.engine.now()
            )
        except StoreError:
            logger.error(
                "Failed to save verification attempt for signer %s (session %s), deleting session",
                signer.signer_id[:8], session.session_id,
            )
            try:
                client.delete_session(session.session_id)
            except UpstreamError as exc:
                logger.error("Failed to clean up session %s: %s", session.session_id, exc.body)
            raise

        return {
            "sessionId": session.session_id,
            "verificationUrl": session.verification_url,
            "attemptId": attempt.attempt_id,
        }

    def get_decision(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        session_id = self._owned_session(signer, body)
        return self.engine.didit_client(document.tenant_id).get_decision(session_id)

    def get_status(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        session_id = self._owned_session(signer, body)
        return self.engine.didit_client(document.tenant_id).get_session(session_id)

    def get_session_detail(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        session_id = self._owned_session(signer, body)
        return self.engine.didit_client(document.tenant_id).get_session_detail(session_id)

    def delete_session(self, signer: Signer, document: Document, body: dict[str, Any]) -> dict[str, Any]:
        session_id = self._owned_session(signer, body)
        deleted = self.engine.didit_client(document.tenant_id).delete_session(session_id)
        return {"ok": True, "deleted": deleted}
