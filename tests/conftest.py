"""Shared fixtures for TrustGate tests."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

FIXED_NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec-test-secret"
TENANT_ID = "tenant-acme"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEmail:
    """Email double that records every send and always succeeds."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def send(self, to: str, subject: str, html: str):
        from trustgate.providers import EmailResult

        self.sent.append({"to": to, "subject": subject, "html": html})
        return EmailResult(success=True, id=f"email-{len(self.sent)}")

    def to(self, address: str) -> list[dict]:
        return [m for m in self.sent if m["to"] == address]


class FakeDidit:
    """Identity provider double with a settable decision."""

    def __init__(self) -> None:
        self.created: list[dict] = []
        self.deleted: list[str] = []
        self.decision: dict = {"status": "In Progress"}
        self.updates: list[tuple] = []
        self.pdf_failures: set[str] = set()
        self._counter = 0

    def create_session(self, vendor_data, callback, email=None, first_name=None,
                       last_name=None, language=None):
        from trustgate.providers import ProviderSession

        self._counter += 1
        self.created.append({
            "vendor_data": vendor_data,
            "callback": callback,
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "language": language,
        })
        session_id = f"sess-{self._counter}"
        return ProviderSession(
            session_id=session_id,
            verification_url=f"https://verify.example.com/{session_id}",
        )

    def get_decision(self, session_id: str) -> dict:
        return {"session_id": session_id, **self.decision}

    def get_session(self, session_id: str) -> dict:
        return {"session_id": session_id, "status": self.decision.get("status")}

    def get_session_detail(self, session_id: str) -> dict:
        return {"session_id": session_id, "detail": True, **self.decision}

    def update_status(self, session_id: str, new_status: str, comment: str = "") -> dict:
        self.updates.append((session_id, new_status, comment))
        return {"success": True}

    def generate_pdf(self, session_id: str) -> bytes:
        if session_id in self.pdf_failures:
            from trustgate.errors import UpstreamError

            raise UpstreamError("didit", 404, "no report")
        return f"%PDF-1.4 {session_id}".encode("utf-8")

    def delete_session(self, session_id: str) -> bool:
        self.deleted.append(session_id)
        return True


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def didit():
    return FakeDidit()


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary RecordStore."""
    from trustgate.store import RecordStore

    return RecordStore(base_dir=tmp_path)


@pytest.fixture
def config(tmp_path):
    from trustgate.config import GateConfig

    return GateConfig(data_dir=tmp_path, app_base_url="https://sign.example.com")


@pytest.fixture
def engine(config, tmp_store, email, didit, clock):
    """Engine on a temporary store with a frozen clock and provider doubles."""
    from trustgate.engine import TrustGateEngine

    return TrustGateEngine(
        config,
        store=tmp_store,
        email=email,
        didit_factory=lambda tenant_id: didit,
        clock=clock,
    )


@pytest.fixture
def document(tmp_store):
    """A document that requires identity verification."""
    from trustgate.models import Document

    doc = Document(
        tenant_id=TENANT_ID,
        title="Master Services Agreement",
        requires_identity_verification=True,
        created_by_email="owner@example.com",
        created_by_name="Olive Owner",
        documenso_envelope_id="env-1",
    )
    return tmp_store.save_document(doc)


@pytest.fixture
def make_signer(tmp_store, document, clock):
    """Factory adding signers to ``document`` (or another document)."""
    from trustgate.models import Signer

    counter = {"n": 0}

    def _make(
        name: str = "Ada Lovelace",
        email: Optional[str] = "ada@example.com",
        signing_order: int = 1,
        document_id: Optional[str] = None,
        **fields,
    ):
        counter["n"] += 1
        signer = Signer(
            document_id=document_id or document.document_id,
            name=name,
            email=email,
            signing_order=signing_order,
            created_at=clock.now + timedelta(microseconds=counter["n"]),
            **fields,
        )
        return tmp_store.save_signer(signer)

    return _make


@pytest.fixture
def signer(make_signer):
    return make_signer()


@pytest.fixture
def didit_integration(tmp_store):
    """Identity provider integration with a webhook secret for the tenant."""
    from trustgate.models import IntegrationType, TenantIntegration

    return tmp_store.save_integration(
        TenantIntegration(
            tenant_id=TENANT_ID,
            integration_type=IntegrationType.DIDIT,
            config={
                "api_key": "didit-key",
                "workflow_id": "wf-1",
                "webhook_secret": WEBHOOK_SECRET,
            },
        )
    )
