"""TrustGate exceptions.

Every error carries a machine-readable ``reason`` and the HTTP status the
API layer responds with, so handlers raise and the API maps in one place.
"""

from typing import Any, Optional


class TrustGateError(Exception):
    """Base exception for signing orchestration errors."""

    status_code = 500

    def __init__(
        self,
        reason: str,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or reason)
        self.reason = reason
        self.message = message or reason
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "reason": self.reason}
        body.update(self.details)
        return body


class ValidationError(TrustGateError):
    """A required field is missing or malformed. Client-correctable."""

    status_code = 400


class AuthorizationError(TrustGateError):
    """Invalid signing token, signer mismatch or unusable session."""

    status_code = 401


class ConflictError(TrustGateError):
    """Device already bound, or signing order not satisfied."""

    status_code = 409


class StateError(TrustGateError):
    """Operation not allowed in the current state (token used, not approved...)."""

    status_code = 400


class NotFoundError(TrustGateError):
    """A record does not exist."""

    status_code = 404


class UpstreamError(TrustGateError):
    """A provider call failed.

    ``status_code`` mirrors the provider's response where one exists;
    ``body`` keeps the raw response text for logs; it is not part of
    the client-facing ``to_dict()``.
    """

    status_code = 502

    def __init__(
        self,
        provider: str,
        status_code: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(
            "upstream_error",
            f"{provider} request failed" + (f" ({status_code})" if status_code else ""),
            status_code=status_code or 502,
            details={"provider": provider},
        )
        self.provider = provider
        self.body = body


class OrphanedEventError(TrustGateError):
    """A webhook references a session nobody created.

    Acknowledged with 200 so the provider stops redelivering.
    """

    status_code = 200

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "orphaned_event",
            "Verification attempt not found",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class StoreError(TrustGateError):
    """The record store failed to persist a change."""

    status_code = 500
