"""Audit package export: a document's evidence bundle as a ZIP archive.

Archive layout::

    audit-report.json                     # document, signers, attempts, audit trail
    didit-verification.pdf                # provider report (one signer)
    didit-verification-<signer-name>.pdf  # provider reports (several signers)
    manifest.json                         # SHA-256 of every file above

The report carries a ``content_hash``: SHA-256 over the canonical JSON of
the report without that field, so the report can be checked on its own.
Secrets (signing tokens, device tokens, continuity tokens) never enter the
package.
"""

import hashlib
import io
import json
import logging
import re
import zipfile
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .engine import TrustGateEngine
from .errors import TrustGateError
from .models import (
    ActorType,
    AuditEvent,
    AuditEventType,
    Document,
    IntegrationType,
    Signer,
)
from .signatures import canonical_json

logger = logging.getLogger("trustgate.audit_package")

REPORT_NAME = "audit-report.json"
MANIFEST_NAME = "manifest.json"

_SIGNER_SECRETS = {"signing_token", "device_session_token", "documenso_signing_token"}


def hash_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of raw bytes.

    Args:
        data: Bytes to hash.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(data).hexdigest()


def report_hash(report: dict[str, Any]) -> str:
    """SHA-256 of a report's canonical JSON, ignoring its ``content_hash``."""
    body = {k: v for k, v in report.items() if k != "content_hash"}
    return hash_bytes(canonical_json(body))


def _slug(value: str, fallback: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or fallback


class AuditPackage(BaseModel):
    """A built archive and what went into it."""

    file_name: str
    content: bytes
    content_hash: str
    files: dict[str, str] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class AuditPackageBuilder:
    """Builds audit packages from the record store.

    Args:
        engine: Engine providing the store, clock and provider clients.
    """

    def __init__(self, engine: TrustGateEngine) -> None:
        self.engine = engine
        self.store = engine.store

    def build_report(self, document: Document, generated_at: datetime) -> dict[str, Any]:
        """Everything recorded about ``document``, hashed."""
        signers = self.store.list_signers(document.document_id)
        integration = self.store.find_integration(IntegrationType.DOCUMENSO, document.tenant_id)

        report: dict[str, Any] = {
            "generated_at": generated_at.isoformat(),
            "tenant_name": integration.config.get("tenant_name") if integration else None,
            "document": document.model_dump(mode="json"),
            "signers": [
                {
                    **s.model_dump(mode="json", exclude=_SIGNER_SECRETS),
                    "attempts": [
                        a.model_dump(mode="json", exclude={"continuity_token"})
                        for a in self.store.list_attempts(s.signer_id)
                    ],
                }
                for s in signers
            ],
            "audit_trail": [
                e.model_dump(mode="json")
                for e in self.store.get_audit_trail(document.document_id)
            ],
        }
        report["content_hash"] = report_hash(report)
        return report

    def _provider_reports(self, document: Document, signers: list[Signer]) -> tuple[dict[str, bytes], list[str]]:
        sessions = []
        for signer in signers:
            attempt = self.store.latest_attempt(signer.signer_id)
            if attempt is not None and attempt.session_id:
                sessions.append((signer, attempt.session_id))
        if not sessions:
            return {}, []

        try:
            client = self.engine.didit_client(document.tenant_id)
        except TrustGateError as exc:
            logger.warning("Skipping provider reports for %s: %s", document.document_id[:8], exc.message)
            return {}, [f"Provider reports unavailable: {exc.message}"]

        files: dict[str, bytes] = {}
        errors: list[str] = []
        for signer, session_id in sessions:
            if len(sessions) > 1:
                name = f"didit-verification-{_slug(signer.name, signer.signer_id[:8])}.pdf"
            else:
                name = "didit-verification.pdf"
            try:
                files[name] = client.generate_pdf(session_id)
            except TrustGateError as exc:
                logger.error("Provider report for signer %s failed: %s", signer.signer_id[:8], exc.message)
                errors.append(f"Could not download verification report for {signer.name}")
        return files, errors

    def build(self, document_id: str, include_provider_reports: bool = True) -> AuditPackage:
        """Build the archive and record the export in the audit trail.

        Raises:
            NotFoundError: If the document does not exist.
        """
        document = self.store.get_document(document_id)
        now = self.engine.now()

        report = self.build_report(document, now)
        files: dict[str, bytes] = {
            REPORT_NAME: json.dumps(report, indent=2, ensure_ascii=False).encode("utf-8")
        }
        errors: list[str] = []
        if include_provider_reports:
            provider_files, errors = self._provider_reports(
                document, self.store.list_signers(document.document_id)
            )
            files.update(provider_files)

        digests = {name: hash_bytes(data) for name, data in files.items()}
        manifest = {
            "document_id": document.document_id,
            "generated_at": now.isoformat(),
            "content_hash": report["content_hash"],
            "files": digests,
            "errors": errors,
        }
        files[MANIFEST_NAME] = json.dumps(manifest, indent=2).encode("utf-8")

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, data in files.items():
                info = zipfile.ZipInfo(name, date_time=now.timetuple()[:6])
                info.compress_type = zipfile.ZIP_DEFLATED
                archive.writestr(info, data)

        self.store.append_audit(
            AuditEvent(
                document_id=document.document_id,
                event_type=AuditEventType.AUDIT_PACKAGE_EXPORTED,
                description="Audit package exported",
                actor_type=ActorType.SYSTEM,
                event_data={"content_hash": report["content_hash"], "files": digests, "errors": errors},
            )
        )
        logger.info(
            "Exported audit package for %s (%d files, %d errors)",
            document.document_id[:8], len(files), len(errors),
        )

        file_name = (
            f"audit-package-{_slug(document.title, 'document')}-{now.strftime('%Y-%m-%dT%H-%M-%S')}.zip"
        )
        return AuditPackage(
            file_name=file_name,
            content=buffer.getvalue(),
            content_hash=report["content_hash"],
            files=digests,
            errors=errors,
        )
