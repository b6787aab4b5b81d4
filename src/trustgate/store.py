"""Filesystem-backed record store for TrustGate.

Everything lives on disk as JSON under ``~/.trustgate/`` (or the configured
data directory). Audit logs are append-only JSONL, one file per document.

Directory layout::

    ~/.trustgate/
    ├── documents/          # <document-id>.json
    ├── signers/            # <signer-id>.json
    ├── attempts/           # <attempt-id>.json (verification attempts)
    ├── audit/              # <document-id>.jsonl (append-only ledger)
    └── integrations/       # <tenant-id>.<type>.json (provider credentials)

State transitions never overwrite blindly: ``update_*`` methods take an
``expect`` mapping and only apply the change when every expected field
still holds, under a store-wide lock. A ``None`` return means another
caller got there first.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from .errors import NotFoundError, StoreError
from .models import (
    AttemptStatus,
    AuditEvent,
    AuditEventType,
    Document,
    IntegrationType,
    Signer,
    TenantIntegration,
    VerificationAttempt,
    utcnow,
)
from .signatures import same_secret

logger = logging.getLogger("trustgate.store")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _matches(current: Any, expected: Any) -> bool:
    if isinstance(expected, (set, frozenset, tuple, list)):
        return current in expected
    return current == expected


class RecordStore:
    """Filesystem-backed CRUD with conditional updates.

    Args:
        base_dir: Root directory for all TrustGate data.
    """

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        from .config import DEFAULT_TRUSTGATE_DIR

        self.base = Path(base_dir) if base_dir else DEFAULT_TRUSTGATE_DIR
        self._documents_dir = self.base / "documents"
        self._signers_dir = self.base / "signers"
        self._attempts_dir = self.base / "attempts"
        self._audit_dir = self.base / "audit"
        self._integrations_dir = self.base / "integrations"
        self._lock = threading.RLock()

        for d in (
            self._documents_dir,
            self._signers_dir,
            self._attempts_dir,
            self._audit_dir,
            self._integrations_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    def _write(self, path: Path, record: BaseModel) -> None:
        tmp = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        try:
            tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            tmp.unlink(missing_ok=True)
            raise StoreError("write_failed", f"Could not write {path.name}: {exc}") from exc

    @staticmethod
    def _read(path: Path, model: type[ModelT]) -> Optional[ModelT]:
        if not path.exists():
            return None
        try:
            return model.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StoreError("read_failed", f"Could not read {path.name}: {exc}") from exc

    def _scan(self, directory: Path, model: type[ModelT]) -> Iterator[ModelT]:
        for f in sorted(directory.glob("*.json")):
            try:
                yield model.model_validate_json(f.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable record %s: %s", f.name, exc)

    def _conditional_update(
        self,
        path: Path,
        model: type[ModelT],
        changes: dict[str, Any],
        expect: Optional[dict[str, Any]],
        label: str,
    ) -> Optional[ModelT]:
        with self._lock:
            current = self._read(path, model)
            if current is None:
                raise NotFoundError("not_found", f"{label} not found: {path.stem}")
            for field, expected in (expect or {}).items():
                if not _matches(getattr(current, field), expected):
                    logger.debug(
                        "Conditional update on %s %s skipped: %s=%r, expected %r",
                        label, path.stem[:8], field, getattr(current, field), expected,
                    )
                    return None
            if "updated_at" in model.model_fields and "updated_at" not in changes:
                changes = {**changes, "updated_at": utcnow()}
            updated = model.model_validate({**current.model_dump(), **changes})
            self._write(path, updated)
            return updated

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document) -> Document:
        with self._lock:
            self._write(self._documents_dir / f"{document.document_id}.json", document)
        logger.info("Saved document %s (%s)", document.title, document.document_id[:8])
        return document

    def find_document(self, document_id: str) -> Optional[Document]:
        return self._read(self._documents_dir / f"{document_id}.json", Document)

    def get_document(self, document_id: str) -> Document:
        """Load a document by ID.

        Raises:
            NotFoundError: If the document doesn't exist.
        """
        doc = self.find_document(document_id)
        if doc is None:
            raise NotFoundError("document_not_found", f"Document not found: {document_id}")
        return doc

    def find_document_by_envelope(self, envelope_id: str) -> Optional[Document]:
        for doc in self._scan(self._documents_dir, Document):
            if doc.documenso_envelope_id == envelope_id:
                return doc
        return None

    def list_documents(self) -> list[Document]:
        """All documents, newest first."""
        docs = list(self._scan(self._documents_dir, Document))
        docs.sort(key=lambda d: d.created_at, reverse=True)
        return docs

    def update_document(
        self,
        document_id: str,
        changes: dict[str, Any],
        expect: Optional[dict[str, Any]] = None,
    ) -> Optional[Document]:
        """Apply ``changes`` if every ``expect`` field still matches."""
        return self._conditional_update(
            self._documents_dir / f"{document_id}.json", Document, changes, expect, "Document"
        )

    # ------------------------------------------------------------------
    # Signers
    # ------------------------------------------------------------------

    def save_signer(self, signer: Signer) -> Signer:
        with self._lock:
            self._write(self._signers_dir / f"{signer.signer_id}.json", signer)
        return signer

    def find_signer(self, signer_id: str) -> Optional[Signer]:
        return self._read(self._signers_dir / f"{signer_id}.json", Signer)

    def get_signer(self, signer_id: str) -> Signer:
        signer = self.find_signer(signer_id)
        if signer is None:
            raise NotFoundError("signer_not_found", f"Signer not found: {signer_id}")
        return signer

    def find_signer_by_signing_token(self, signing_token: str) -> Optional[Signer]:
        for signer in self._scan(self._signers_dir, Signer):
            if same_secret(signer.signing_token, signing_token):
                return signer
        return None

    def find_signer_by_recipient_id(self, recipient_id: str) -> Optional[Signer]:
        for signer in self._scan(self._signers_dir, Signer):
            if signer.documenso_recipient_id == recipient_id:
                return signer
        return None

    def list_signers(self, document_id: str) -> list[Signer]:
        """Signers of a document ordered by signing order, then insertion."""
        signers = [
            s for s in self._scan(self._signers_dir, Signer) if s.document_id == document_id
        ]
        signers.sort(key=lambda s: (s.signing_order, s.created_at))
        return signers

    def update_signer(
        self,
        signer_id: str,
        changes: dict[str, Any],
        expect: Optional[dict[str, Any]] = None,
    ) -> Optional[Signer]:
        """Apply ``changes`` if every ``expect`` field still matches."""
        return self._conditional_update(
            self._signers_dir / f"{signer_id}.json", Signer, changes, expect, "Signer"
        )

    # ------------------------------------------------------------------
    # Verification attempts
    # ------------------------------------------------------------------

    def save_attempt(self, attempt: VerificationAttempt) -> VerificationAttempt:
        with self._lock:
            self._write(self._attempts_dir / f"{attempt.attempt_id}.json", attempt)
        return attempt

    def find_attempt(self, attempt_id: str) -> Optional[VerificationAttempt]:
        return self._read(self._attempts_dir / f"{attempt_id}.json", VerificationAttempt)

    def get_attempt(self, attempt_id: str) -> VerificationAttempt:
        attempt = self.find_attempt(attempt_id)
        if attempt is None:
            raise NotFoundError("attempt_not_found", f"Attempt not found: {attempt_id}")
        return attempt

    def find_attempt_by_session(self, session_id: str) -> Optional[VerificationAttempt]:
        for attempt in self._scan(self._attempts_dir, VerificationAttempt):
            if attempt.session_id == session_id:
                return attempt
        return None

    def find_attempt_by_continuity_token(self, token: str) -> Optional[VerificationAttempt]:
        for attempt in self._scan(self._attempts_dir, VerificationAttempt):
            if same_secret(attempt.continuity_token, token):
                return attempt
        return None

    def list_attempts(
        self,
        signer_id: str,
        statuses: Optional[Iterable[AttemptStatus]] = None,
    ) -> list[VerificationAttempt]:
        """Attempts of a signer, newest first, optionally filtered by status."""
        wanted = set(statuses) if statuses is not None else None
        attempts = [
            a
            for a in self._scan(self._attempts_dir, VerificationAttempt)
            if a.signer_id == signer_id and (wanted is None or a.status in wanted)
        ]
        attempts.sort(key=lambda a: a.created_at, reverse=True)
        return attempts

    def latest_attempt(self, signer_id: str) -> Optional[VerificationAttempt]:
        """Most recent attempt by creation time. Always read, never cached."""
        attempts = self.list_attempts(signer_id)
        return attempts[0] if attempts else None

    def update_attempt(
        self,
        attempt_id: str,
        changes: dict[str, Any],
        expect: Optional[dict[str, Any]] = None,
    ) -> Optional[VerificationAttempt]:
        """Apply ``changes`` if every ``expect`` field still matches."""
        return self._conditional_update(
            self._attempts_dir / f"{attempt_id}.json",
            VerificationAttempt,
            changes,
            expect,
            "Attempt",
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, event: AuditEvent) -> AuditEvent:
        """Append an event to the document's ledger (JSONL)."""
        log_path = self._audit_dir / f"{event.document_id}.jsonl"
        with self._lock:
            try:
                with open(log_path, "a", encoding="utf-8") as f:
                    f.write(event.model_dump_json() + "\n")
            except OSError as exc:
                raise StoreError("audit_write_failed", f"Could not append audit: {exc}") from exc
        return event

    def get_audit_trail(self, document_id: str) -> list[AuditEvent]:
        """Chronological ledger for a document."""
        log_path = self._audit_dir / f"{document_id}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(AuditEvent.model_validate_json(line))
            except ValueError:
                logger.warning("Skipping corrupt audit line for %s", document_id[:8])
        return sorted(entries, key=lambda e: e.created_at)

    def has_audit_event(
        self,
        document_id: str,
        event_type: AuditEventType,
        signer_id: Optional[str] = None,
    ) -> bool:
        """Whether the ledger already holds ``event_type`` (for ``signer_id``)."""
        for entry in self.get_audit_trail(document_id):
            if entry.event_type != event_type:
                continue
            if signer_id is None or entry.signer_id == signer_id:
                return True
        return False

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    def save_integration(self, integration: TenantIntegration) -> TenantIntegration:
        name = f"{integration.tenant_id}.{integration.integration_type.value}.json"
        with self._lock:
            self._write(self._integrations_dir / name, integration)
        return integration

    def find_integration(
        self,
        integration_type: IntegrationType,
        tenant_id: Optional[str] = None,
    ) -> Optional[TenantIntegration]:
        """Enabled integration of a type; the tenant's own when one is given."""
        for integration in self._scan(self._integrations_dir, TenantIntegration):
            if integration.integration_type != integration_type or not integration.is_enabled:
                continue
            if tenant_id is None or integration.tenant_id == tenant_id:
                return integration
        return None

    def list_integrations(self) -> list[TenantIntegration]:
        return list(self._scan(self._integrations_dir, TenantIntegration))

