"""TrustGate REST API: FastAPI server for verified document signing.

Routes:

* ``POST /api/signing-room``: signer actions (see :class:`SigningRoom`)
* ``POST /api/verification``: identity provider proxy
* ``POST /api/webhooks/verification``: identity provider webhook
* ``POST /api/webhooks/signing``: e-signature provider webhook
* ``GET  /api/documents/{id}/audit``: audit ledger
* ``GET  /api/documents/{id}/audit-package``: audit package (ZIP)
* ``GET  /api/health``

Errors raised by the core carry their own HTTP status; one exception
handler turns them into ``{"error", "reason", ...}`` bodies.

Request bodies are read on the event loop; the handlers themselves block
(file store, provider calls, email) and run in the threadpool.
"""

import json
import logging
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .audit_package import AuditPackageBuilder
from .config import GateConfig
from .engine import TrustGateEngine
from .errors import TrustGateError, ValidationError
from .models import AuditEvent
from .session import SigningRoom, VerificationProxy

logger = logging.getLogger("trustgate.api")


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    try:
        body = json.loads(raw or b"{}")
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValidationError("invalid_json", "Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise ValidationError("invalid_json", "JSON body must be an object")
    return body


def create_app(engine: Optional[TrustGateEngine] = None) -> FastAPI:
    """Build the API around ``engine`` (one from the environment by default)."""
    engine = engine or TrustGateEngine(GateConfig.from_env())
    signing_room = SigningRoom(engine)
    proxy = VerificationProxy(engine)

    app = FastAPI(
        title="TrustGate",
        description="Identity-verified, order-enforced document signing.",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TrustGateError)
    async def trustgate_error_handler(request: Request, exc: TrustGateError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # -----------------------------------------------------------------------
    # Session entry points
    # -----------------------------------------------------------------------

    @app.post("/api/signing-room")
    async def signing_room_action(request: Request) -> dict[str, Any]:
        """Dispatch a signer action authenticated by ``signingToken``."""
        return await run_in_threadpool(signing_room.handle, await _json_body(request))

    @app.post("/api/verification")
    async def verification_action(request: Request) -> dict[str, Any]:
        """Create, inspect or delete an identity verification session."""
        return await run_in_threadpool(proxy.handle, await _json_body(request))

    # -----------------------------------------------------------------------
    # Webhooks
    # -----------------------------------------------------------------------

    @app.post("/api/webhooks/verification")
    async def verification_webhook(
        request: Request,
        tenant_id: Optional[str] = Query(None, description="Tenant whose secret signs the delivery"),
    ) -> JSONResponse:
        """Identity provider webhook. Raw body is needed for the HMAC."""
        result = await run_in_threadpool(
            engine.webhooks.ingest_verification, await request.body(), request.headers, tenant_id=tenant_id
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.post("/api/webhooks/signing")
    async def signing_webhook(
        request: Request,
        tenant_id: Optional[str] = Query(None, description="Tenant whose secret signs the delivery"),
    ) -> JSONResponse:
        """E-signature provider webhook."""
        result = await run_in_threadpool(
            engine.webhooks.ingest_signing, await request.body(), request.headers, tenant_id=tenant_id
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    # -----------------------------------------------------------------------
    # Documents
    # -----------------------------------------------------------------------

    @app.get("/api/documents/{document_id}/audit", response_model=list[AuditEvent])
    def get_audit_trail(document_id: str) -> list[AuditEvent]:
        """Get the audit trail for a document."""
        engine.store.get_document(document_id)
        return engine.store.get_audit_trail(document_id)

    @app.get("/api/documents/{document_id}/audit-package")
    def get_audit_package(
        document_id: str,
        provider_reports: bool = Query(True, description="Include identity provider PDF reports"),
    ) -> Response:
        """Download the audit package (ZIP) for a document."""
        package = AuditPackageBuilder(engine).build(document_id, include_provider_reports=provider_reports)
        return Response(
            content=package.content,
            media_type="application/zip",
            headers={
                "Content-Disposition": f'attachment; filename="{package.file_name}"',
                "X-Content-Hash": package.content_hash,
            },
        )

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
