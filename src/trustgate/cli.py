"""TrustGate CLI: manage documents, signers and provider integrations.

Usage:
    trustgate create-document "NDA" --creator-email owner@example.com --require-verification
    trustgate add-signer <document-id> --name "Ada Lovelace" --email ada@example.com --order 1
    trustgate status <document-id>
    trustgate audit <document-id>
    trustgate export-audit <document-id> -o package.zip
    trustgate integration <tenant-id> didit --set api_key=... --set webhook_secret=...
    trustgate check-session <signing-token> --device-token <token>
    trustgate review-decision <session-id> --status Approved
    trustgate serve [--port 8400]
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .audit_package import AuditPackageBuilder
from .config import GateConfig
from .engine import TrustGateEngine
from .errors import TrustGateError
from .models import (
    Document,
    DocumentStatus,
    IntegrationType,
    Signer,
    SignerRole,
    SignerStatus,
    TenantIntegration,
)
from .signing_order import evaluate_signing_order
from .webhooks import parse_instant

console = Console()

_SECRET_KEYS = {"api_key", "webhook_secret"}

_DOCUMENT_COLORS = {
    DocumentStatus.PENDING: "yellow",
    DocumentStatus.IN_PROGRESS: "blue",
    DocumentStatus.COMPLETED: "green",
    DocumentStatus.CANCELLED: "red",
}

_SIGNER_COLORS = {
    SignerStatus.PENDING: "dim",
    SignerStatus.VERIFYING: "yellow",
    SignerStatus.VERIFIED: "cyan",
    SignerStatus.VERIFICATION_FAILED: "red",
    SignerStatus.REVIEW_APPROVED: "magenta",
    SignerStatus.SIGNED: "green",
}


def _mask(key: str, value: str) -> str:
    if key not in _SECRET_KEYS:
        return value
    return f"{value[:4]}…" if len(value) > 4 else "****"


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="TrustGate data directory (default: ~/.trustgate)",
)
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str]) -> None:
    """TrustGate: identity-verified, order-enforced document signing."""
    ctx.ensure_object(dict)
    config = GateConfig.from_env()
    if data_dir:
        config = config.model_copy(update={"data_dir": Path(data_dir)})
    ctx.obj["config"] = config
    ctx.obj["engine"] = TrustGateEngine(config)


# ---------------------------------------------------------------------------
# Documents and signers
# ---------------------------------------------------------------------------

@main.command("create-document")
@click.argument("title")
@click.option("--tenant", "tenant_id", default=None, help="Owning tenant id")
@click.option("--creator-email", default=None, help="Creator email for notifications")
@click.option("--creator-name", default=None, help="Creator display name")
@click.option("--require-verification", is_flag=True, default=False, help="Require identity verification")
@click.option("--deadline", default=None, help="Signing deadline (ISO-8601)")
@click.option("--envelope-id", default=None, help="E-signature provider envelope id")
@click.pass_context
def create_document(
    ctx: click.Context,
    title: str,
    tenant_id: Optional[str],
    creator_email: Optional[str],
    creator_name: Optional[str],
    require_verification: bool,
    deadline: Optional[str],
    envelope_id: Optional[str],
) -> None:
    """Create a document awaiting signers."""
    engine: TrustGateEngine = ctx.obj["engine"]

    signing_deadline: Optional[datetime] = None
    if deadline:
        signing_deadline = parse_instant(deadline)
        if signing_deadline is None:
            console.print(f"[red]Invalid deadline: {deadline}[/]")
            sys.exit(1)

    doc = Document(
        title=title,
        tenant_id=tenant_id,
        created_by_email=creator_email,
        created_by_name=creator_name,
        requires_identity_verification=require_verification,
        signing_deadline=signing_deadline,
        documenso_envelope_id=envelope_id,
    )
    engine.store.save_document(doc)

    console.print(
        Panel(
            f"[bold green]Document created[/]\n\n"
            f"  Title:        {doc.title}\n"
            f"  ID:           {doc.document_id}\n"
            f"  Verification: {'required' if require_verification else 'not required'}\n"
            f"  Deadline:     {signing_deadline.isoformat() if signing_deadline else '-'}",
            title="TrustGate",
            border_style="green",
        )
    )


@main.command("add-signer")
@click.argument("document_id")
@click.option("--name", required=True, help="Signer display name")
@click.option("--email", default=None, help="Signer email")
@click.option("--order", "signing_order", default=1, type=click.IntRange(min=1), help="Signing order (1 = first)")
@click.option(
    "--role",
    default=SignerRole.SIGNER.value,
    type=click.Choice([r.value for r in SignerRole], case_sensitive=False),
    help="Recipient role",
)
@click.option("--no-verification", is_flag=True, default=False, help="Exempt this signer from verification")
@click.option("--recipient-id", default=None, help="E-signature provider recipient id")
@click.option("--signing-url", default=None, help="Provider recipient token or signing URL")
@click.pass_context
def add_signer(
    ctx: click.Context,
    document_id: str,
    name: str,
    email: Optional[str],
    signing_order: int,
    role: str,
    no_verification: bool,
    recipient_id: Optional[str],
    signing_url: Optional[str],
) -> None:
    """Add a signer to a document and print its signing token."""
    engine: TrustGateEngine = ctx.obj["engine"]

    doc = engine.store.find_document(document_id)
    if doc is None:
        console.print(f"[red]Document not found: {document_id}[/]")
        sys.exit(1)

    signer = Signer(
        document_id=doc.document_id,
        name=name,
        email=email,
        role=SignerRole(role.upper()),
        signing_order=signing_order,
        requires_verification=not no_verification,
        documenso_recipient_id=recipient_id,
        documenso_signing_token=signing_url,
    )
    engine.store.save_signer(signer)

    console.print(
        Panel(
            f"[bold green]Signer added[/]\n\n"
            f"  Name:          {signer.name}\n"
            f"  ID:            {signer.signer_id}\n"
            f"  Order:         {signer.signing_order}\n"
            f"  Signing token: {signer.signing_token}\n"
            f"  Link:          {engine.config.app_base_url.rstrip('/')}/sign/{signer.signing_token}",
            title="TrustGate",
            border_style="green",
        )
    )


@main.command("list")
@click.pass_context
def list_docs(ctx: click.Context) -> None:
    """List all documents."""
    engine: TrustGateEngine = ctx.obj["engine"]
    docs = engine.store.list_documents()

    if not docs:
        console.print("[dim]No documents found.[/]")
        return

    table = Table(title="TrustGate Documents")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Title", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Signed", justify="right")
    table.add_column("Created")

    for doc in docs:
        signers = [s for s in engine.store.list_signers(doc.document_id) if s.participates]
        signed = sum(1 for s in signers if s.status == SignerStatus.SIGNED)
        color = _DOCUMENT_COLORS.get(doc.status, "white")
        table.add_row(
            doc.document_id[:12],
            doc.title,
            f"[{color}]{doc.status.value}[/]",
            f"{signed}/{len(signers)}",
            doc.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command()
@click.argument("document_id")
@click.pass_context
def status(ctx: click.Context, document_id: str) -> None:
    """Show signers, verification attempts and signing order for a document."""
    engine: TrustGateEngine = ctx.obj["engine"]

    doc = engine.store.find_document(document_id)
    if doc is None:
        console.print(f"[red]Document not found: {document_id}[/]")
        sys.exit(1)

    signers = engine.store.list_signers(doc.document_id)
    color = _DOCUMENT_COLORS.get(doc.status, "white")
    table = Table(title=f"{doc.title} [{color}]{doc.status.value}[/]")
    table.add_column("Order", justify="right")
    table.add_column("Signer", style="cyan")
    table.add_column("Role")
    table.add_column("Status", justify="center")
    table.add_column("Latest attempt")
    table.add_column("Blocked by")

    for signer in signers:
        attempt = engine.store.latest_attempt(signer.signer_id)
        order = evaluate_signing_order(signers, signer)
        signer_color = _SIGNER_COLORS.get(signer.status, "white")
        table.add_row(
            str(signer.signing_order),
            f"{signer.name} <{signer.email or '-'}>",
            signer.role.value,
            f"[{signer_color}]{signer.status.value}[/]",
            attempt.status.value if attempt else "-",
            ", ".join(p.name for p in order.pending) or "-",
        )

    console.print(table)


@main.command()
@click.argument("document_id")
@click.pass_context
def audit(ctx: click.Context, document_id: str) -> None:
    """Show the audit trail for a document."""
    engine: TrustGateEngine = ctx.obj["engine"]
    entries = engine.store.get_audit_trail(document_id)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Actor")
    table.add_column("Description")

    for e in entries:
        table.add_row(
            e.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            e.event_type.value,
            e.actor_type.value,
            e.description,
        )

    console.print(table)


@main.command("export-audit")
@click.argument("document_id")
@click.option("--output", "-o", type=click.Path(), default=None, help="Archive path (default: generated name)")
@click.option(
    "--no-provider-reports",
    is_flag=True,
    default=False,
    help="Skip downloading identity provider PDF reports",
)
@click.pass_context
def export_audit(ctx: click.Context, document_id: str, output: Optional[str], no_provider_reports: bool) -> None:
    """Export a document's audit package (ZIP)."""
    engine: TrustGateEngine = ctx.obj["engine"]

    try:
        package = AuditPackageBuilder(engine).build(
            document_id, include_provider_reports=not no_provider_reports
        )
    except TrustGateError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(1)

    path = Path(output) if output else Path(package.file_name)
    path.write_bytes(package.content)

    table = Table(title=f"Audit package: {path}")
    table.add_column("File", style="cyan")
    table.add_column("SHA-256", style="dim")
    for name, digest in package.files.items():
        table.add_row(name, digest)
    console.print(table)
    console.print(f"Report hash: [bold]{package.content_hash}[/]")
    for error in package.errors:
        console.print(f"[yellow]Warning:[/] {error}")


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------

@main.command()
@click.argument("tenant_id")
@click.argument("integration_type", type=click.Choice([t.value for t in IntegrationType]))
@click.option("--set", "settings", multiple=True, help="Config entry as key=value (repeatable)")
@click.option("--disable", is_flag=True, default=False, help="Disable the integration")
@click.pass_context
def integration(
    ctx: click.Context,
    tenant_id: str,
    integration_type: str,
    settings: tuple[str, ...],
    disable: bool,
) -> None:
    """Configure a tenant's provider integration."""
    engine: TrustGateEngine = ctx.obj["engine"]
    kind = IntegrationType(integration_type)

    existing = next(
        (
            i for i in engine.store.list_integrations()
            if i.tenant_id == tenant_id and i.integration_type == kind
        ),
        None,
    )
    config = dict(existing.config) if existing else {}
    for entry in settings:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            console.print(f"[red]Expected key=value, got: {entry}[/]")
            sys.exit(1)
        config[key.strip()] = value

    record = TenantIntegration(
        tenant_id=tenant_id,
        integration_type=kind,
        is_enabled=not disable,
        config=config,
    )
    engine.store.save_integration(record)

    table = Table(title=f"{kind.value} for {tenant_id} ({'enabled' if record.is_enabled else 'disabled'})")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key in sorted(config):
        table.add_row(key, _mask(key, config[key]))
    console.print(table)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@main.command("check-session")
@click.argument("signing_token")
@click.option("--device-token", default=None, help="Device session token held by the browser")
@click.pass_context
def check_session(ctx: click.Context, signing_token: str, device_token: Optional[str]) -> None:
    """Check whether a signer could sign right now."""
    engine: TrustGateEngine = ctx.obj["engine"]

    signer = engine.store.find_signer_by_signing_token(signing_token)
    if signer is None:
        console.print("[red]Invalid signing token[/]")
        sys.exit(1)

    try:
        document = engine.store.get_document(signer.document_id)
    except TrustGateError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(1)

    check = engine.binder.check_session(signer, document, device_token, engine.now())
    order = evaluate_signing_order(engine.store.list_signers(document.document_id), signer)

    if not check.required:
        session_line = "[dim]not required[/]"
    elif check.valid:
        session_line = f"[bold green]VALID[/] ({check.remaining_seconds}s left)"
    else:
        session_line = f"[bold red]{check.reason}[/]"

    ok = check.valid and not order.blocked
    console.print(
        Panel(
            f"  Signer:   {signer.name} ({signer.status.value})\n"
            f"  Document: {document.title} ({document.status.value})\n"
            f"  Session:  {session_line}\n"
            f"  Order:    {'blocked by ' + ', '.join(p.name for p in order.pending) if order.blocked else 'clear'}",
            title="TrustGate Session",
            border_style="green" if ok else "red",
        )
    )
    if not ok:
        sys.exit(1)


@main.command("review-decision")
@click.argument("session_id")
@click.option(
    "--status",
    "new_status",
    type=click.Choice(["Approved", "Declined"]),
    required=True,
    help="Manual review outcome",
)
@click.option("--comment", default="", help="Reviewer comment")
@click.pass_context
def review_decision(ctx: click.Context, session_id: str, new_status: str, comment: str) -> None:
    """Relay a manual review decision to the identity provider."""
    engine: TrustGateEngine = ctx.obj["engine"]

    attempt = engine.store.find_attempt_by_session(session_id)
    if attempt is None:
        console.print(f"[red]Unknown verification session: {session_id}[/]")
        sys.exit(1)

    try:
        signer = engine.store.get_signer(attempt.signer_id)
        document = engine.store.get_document(signer.document_id)
        engine.didit_client(document.tenant_id).update_status(session_id, new_status, comment)
    except TrustGateError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(1)

    console.print(
        f"[green]Review decision sent:[/] {session_id} -> [bold]{new_status}[/] "
        f"for {signer.name}. The status webhook applies it."
    )


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8400, help="Port")
@click.option("--log-level", default="info", help="Log level")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, log_level: str) -> None:
    """Start the TrustGate API server."""
    import uvicorn

    config: GateConfig = ctx.obj["config"]
    os.environ["TRUSTGATE_DATA_DIR"] = str(config.data_dir)

    console.print(
        f"[bold]TrustGate API[/] listening on [cyan]http://{host}:{port}[/]"
    )
    console.print(f"[dim]Data directory: {config.data_dir}[/]\n")
    uvicorn.run(
        "trustgate.api:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=log_level,
    )


if __name__ == "__main__":
    main()
