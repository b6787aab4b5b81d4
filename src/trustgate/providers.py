"""Outbound clients for the identity-verification and email providers.

Both clients speak JSON over HTTPS with a bounded timeout. Failures are
logged together with the raw response body and raised as
:class:`~trustgate.errors.UpstreamError`; nothing here retries. Retrying
is left to the caller (a client refresh or a provider redelivery).
"""

import json
import logging
import urllib.error
import urllib.request
from typing import Any, Optional

from pydantic import BaseModel

from .errors import UpstreamError

logger = logging.getLogger("trustgate.providers")


class ProviderSession(BaseModel):
    """A verification session created at the identity provider."""

    session_id: str
    verification_url: str


class EmailResult(BaseModel):
    """Outcome of one email send."""

    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


def _request(
    provider: str,
    method: str,
    url: str,
    headers: dict[str, str],
    body: Optional[dict[str, Any]] = None,
    timeout: float = 15.0,
) -> tuple[int, bytes]:
    """Perform one HTTP call.

    Returns:
        (status code, response bytes) for 2xx responses.

    Raises:
        UpstreamError: On non-2xx responses or transport failures.
    """
    data = json.dumps(body).encode("utf-8") if body is not None else None
    req = urllib.request.Request(url, data=data, headers=headers, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as exc:
        text = exc.read().decode("utf-8", errors="replace")
        logger.error("%s %s %s failed (%s): %s", provider, method, url, exc.code, text)
        raise UpstreamError(provider, exc.code, text) from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        logger.error("%s %s %s failed: %s", provider, method, url, exc)
        raise UpstreamError(provider, None, str(exc)) from exc


def _decode(provider: str, raw: bytes) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as exc:
        text = raw.decode("utf-8", errors="replace")
        logger.error("%s returned non-JSON body: %s", provider, text)
        raise UpstreamError(provider, None, text) from exc
    return data if isinstance(data, dict) else {"data": data}


# ---------------------------------------------------------------------------
# Identity verification (Didit)
# ---------------------------------------------------------------------------

class DiditClient:
    """Client for the identity-verification provider.

    Args:
        api_key: Tenant API key.
        workflow_id: Verification workflow to run.
        base_url: API root.
        timeout: Per-request timeout in seconds.
    """

    name = "didit"

    def __init__(
        self,
        api_key: str,
        workflow_id: str,
        base_url: str = "https://verification.didit.me",
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.workflow_id = workflow_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _headers(self, with_body: bool = False) -> dict[str, str]:
        headers = {"x-api-key": self.api_key, "Accept": "application/json"}
        if with_body:
            headers["Content-Type"] = "application/json"
        return headers

    def create_session(
        self,
        vendor_data: str,
        callback: str,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        language: Optional[str] = None,
    ) -> ProviderSession:
        """Start a verification session.

        Expected name details are only sent when both first and last name
        are known; the provider rejects a blank last name.

        Args:
            vendor_data: Our reference (the signer id).
            callback: Where the provider sends the user afterwards.
            email: Signer contact email.
            first_name: Expected first name.
            last_name: Expected last name.
            language: UI language code.

        Returns:
            The created :class:`ProviderSession`.
        """
        body: dict[str, Any] = {
            "workflow_id": self.workflow_id,
            "callback": callback,
            "vendor_data": vendor_data,
        }
        if language:
            body["language"] = language
        if email:
            body["contact_details"] = {"email": email}
        if first_name and last_name:
            body["expected_details"] = {"first_name": first_name, "last_name": last_name}
        elif first_name or last_name:
            logger.warning("Skipping expected_details: incomplete name for %s", vendor_data)

        _, raw = _request(
            self.name, "POST", f"{self.base_url}/v2/session/",
            self._headers(with_body=True), body, self.timeout,
        )
        data = _decode(self.name, raw)
        session_id = data.get("session_id")
        url = data.get("url") or data.get("verification_url")
        if not session_id or not url:
            logger.error("Session response missing session_id/url: %s", data)
            raise UpstreamError(self.name, None, json.dumps(data))
        return ProviderSession(session_id=str(session_id), verification_url=str(url))

    def get_decision(self, session_id: str) -> dict[str, Any]:
        """Fetch the current decision payload for a session."""
        _, raw = _request(
            self.name, "GET", f"{self.base_url}/v3/session/{session_id}/decision/",
            self._headers(), timeout=self.timeout,
        )
        return _decode(self.name, raw)

    def get_session(self, session_id: str) -> dict[str, Any]:
        """Fetch the session record (status, URL, vendor data)."""
        _, raw = _request(
            self.name, "GET", f"{self.base_url}/v2/session/{session_id}/",
            self._headers(), timeout=self.timeout,
        )
        return _decode(self.name, raw)

    def get_session_detail(self, session_id: str) -> dict[str, Any]:
        """Full verification detail for a session.

        The decision endpoint carries the richest payload; when it is not
        available yet the session record is returned instead.

        Raises:
            UpstreamError: With the status and body of the last failed call.
        """
        try:
            return self.get_decision(session_id)
        except UpstreamError as exc:
            logger.info("Decision for %s unavailable (%s), trying session detail", session_id, exc.status_code)

        last: Optional[UpstreamError] = None
        for path in (f"/v3/session/{session_id}/", f"/v2/session/{session_id}/"):
            try:
                _, raw = _request(
                    self.name, "GET", f"{self.base_url}{path}", self._headers(), timeout=self.timeout
                )
            except UpstreamError as exc:
                last = exc
                continue
            return _decode(self.name, raw)
        raise last

    def update_status(self, session_id: str, new_status: str, comment: str = "") -> dict[str, Any]:
        """Relay a manual review decision (``Approved`` or ``Declined``).

        The provider confirms the change through the usual status webhook.
        """
        _, raw = _request(
            self.name, "PATCH", f"{self.base_url}/v3/session/{session_id}/update-status",
            self._headers(with_body=True),
            {"new_status": new_status, "comment": comment or ""},
            self.timeout,
        )
        return _decode(self.name, raw) or {"success": True}

    def generate_pdf(self, session_id: str) -> bytes:
        """Download the provider's verification report as PDF bytes."""
        _, raw = _request(
            self.name, "GET", f"{self.base_url}/v3/session/{session_id}/generate-pdf",
            {"x-api-key": self.api_key, "Accept": "application/pdf"}, timeout=self.timeout,
        )
        return raw

    def delete_session(self, session_id: str) -> bool:
        """Delete a session. Returns False when it did not exist."""
        try:
            _request(
                self.name, "DELETE", f"{self.base_url}/v1/session/{session_id}/delete/",
                self._headers(), timeout=self.timeout,
            )
        except UpstreamError as exc:
            if exc.status_code == 404:
                return False
            raise
        return True


# ---------------------------------------------------------------------------
# Email (Resend)
# ---------------------------------------------------------------------------

class EmailClient:
    """Transactional email sender.

    Sending never raises: the outcome is returned so the caller can record
    it in the audit ledger.
    """

    name = "email"

    def __init__(
        self,
        api_key: Optional[str],
        sender: str = "noreply@resend.dev",
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str) -> EmailResult:
        if not self.api_key:
            logger.warning("Email API key not configured - skipping email to %s", to)
            return EmailResult(success=False, error="email API key not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = {"from": self.sender, "to": to, "subject": subject, "html": html}
        try:
            _, raw = _request(self.name, "POST", self.api_url, headers, body, self.timeout)
            data = _decode(self.name, raw)
        except UpstreamError as exc:
            return EmailResult(success=False, error=exc.body or exc.message)

        logger.info("Email sent to %s (%s)", to, data.get("id"))
        return EmailResult(success=True, id=data.get("id"))
