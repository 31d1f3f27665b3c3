"""cblock documents: upload, review and track documents."""

import mimetypes
from datetime import datetime
from pathlib import Path

import click

from cblock.cli.main import actor_option, cli, echo_json, get_service, reports_errors, run
from cblock.documents.lifecycle import LEDGER_FAILURES
from cblock.documents.models import (
    AttestationInput,
    DocumentFilters,
    DocumentMetadata,
    DocumentStatus,
    FileUpload,
    MintingInput,
    UserRole,
)

STATUS_CHOICE = click.Choice([s.value for s in DocumentStatus])
ROLE_CHOICE = click.Choice([r.value for r in UserRole])


@cli.group()
def documents() -> None:
    """Document lifecycle commands."""


@documents.command("list")
@click.option("--status", type=STATUS_CHOICE, default=None)
@click.option("--role", "uploader_role", type=ROLE_CHOICE, default=None, help="Uploader role")
@click.option("--uploader", default=None, help="Uploader identity")
@click.option("--project-type", default=None, help="Project type substring")
@click.option("--search", default=None, help="Free text over name, description and uploader")
@click.option("--remote", is_flag=True, default=False, help="Reconcile with the ledger first")
@reports_errors
def list_documents(
    status: str | None,
    uploader_role: str | None,
    uploader: str | None,
    project_type: str | None,
    search: str | None,
    remote: bool,
) -> None:
    """List documents, newest first."""
    service = get_service()
    filters = DocumentFilters(
        status=status,
        uploader_role=uploader_role,
        uploader=uploader,
        project_type=project_type,
        search=search,
    )
    docs = run(service.engine.list_documents(filters, prefer_local=not remote))
    if not docs:
        click.echo("No documents.")
        return
    for doc in docs:
        click.echo(
            f"  {doc.id:<28} {doc.status.value:<9} {doc.source.value:<10} "
            f"{doc.metadata.project_name[:32]:<32} {doc.uploader}"
        )


@documents.command()
@click.argument("document_id")
@reports_errors
def show(document_id: str) -> None:
    """Print one document as JSON."""
    service = get_service()
    doc = run(service.engine.get_document(document_id))
    echo_json(doc.model_dump(mode="json"))


@documents.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--project-name", required=True)
@click.option("--project-type", default="")
@click.option("--description", default="")
@click.option("--location", default="")
@click.option("--credits", "estimated_credits", default=0.0, type=float)
@click.option("--mime-type", default=None, help="Override the guessed MIME type")
@actor_option
@reports_errors
def upload(
    path: Path,
    project_name: str,
    project_type: str,
    description: str,
    location: str,
    estimated_credits: float,
    mime_type: str | None,
    actor: str,
) -> None:
    """Upload a document and register it on the ledger."""
    service = get_service()
    user = service.resolve_actor(actor)
    file = FileUpload(
        filename=path.name,
        mime_type=mime_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream",
        content=path.read_bytes(),
    )
    metadata = DocumentMetadata(
        project_name=project_name,
        project_type=project_type,
        description=description,
        location=location,
        estimated_credits=estimated_credits,
    )
    result = run(service.lifecycle.register_upload(file, metadata, service.uploader_for(user)))
    click.echo(f"{result.message}")
    click.echo(f"  id:         {result.document.id}")
    click.echo(f"  content id: {result.document.content_id}")


@documents.command()
@click.argument("document_id")
@click.option("--project-id", "external_project_id", required=True, help="External project id")
@click.option("--serial", "external_serial", required=True, help="External serial number")
@click.option("--amount", default=None, type=int, help="Credits (default: estimated credits)")
@click.option("--nonce", required=True, type=int)
@click.option("--recipient", default=None, help="Recipient address (default: uploader)")
@actor_option
@reports_errors
def attest(
    document_id: str,
    external_project_id: str,
    external_serial: str,
    amount: int | None,
    nonce: int,
    recipient: str | None,
    actor: str,
) -> None:
    """Attest a pending document (verifiers only)."""
    service = get_service()
    user = service.resolve_actor(actor)
    result = run(
        service.lifecycle.attest(
            document_id,
            AttestationInput(
                external_project_id=external_project_id,
                external_serial=external_serial,
                amount=amount,
                nonce=nonce,
                recipient=recipient,
            ),
            user,
        )
    )
    click.echo(result.message)
    click.echo(f"  signature: {result.document.attestation.signature[:32]}...")


@documents.command()
@click.argument("document_id")
@click.option("--reason", required=True)
@actor_option
@reports_errors
def reject(document_id: str, reason: str, actor: str) -> None:
    """Reject a pending or attested document (verifiers only)."""
    service = get_service()
    doc = run(service.lifecycle.reject(document_id, reason, service.resolve_actor(actor)))
    click.echo(f"Document {doc.id} rejected.")


@documents.command()
@click.argument("document_id")
@click.option("--tx", "transaction_ref", required=True, help="Mint transaction reference")
@click.option("--amount", required=True, type=int)
@click.option("--recipient", required=True)
@click.option("--token", "token_ref", default=None)
@click.option("--minted-at", default=None, type=click.DateTime(), help="Default: now")
@click.option("--by", "minted_by", default=None, help="Who minted")
@reports_errors
def mint(
    document_id: str,
    transaction_ref: str,
    amount: int,
    recipient: str,
    token_ref: str | None,
    minted_at: datetime | None,
    minted_by: str | None,
) -> None:
    """Record a completed mint for an attested document."""
    service = get_service()
    doc = run(
        service.lifecycle.record_minting(
            document_id,
            MintingInput(
                transaction_ref=transaction_ref,
                amount=amount,
                recipient=recipient,
                token_ref=token_ref,
                minted_by=minted_by,
                minted_at=minted_at,
            ),
        )
    )
    click.echo(f"Document {doc.id} is {doc.status.value}.")


@documents.command()
@click.argument("document_id")
@reports_errors
def eligibility(document_id: str) -> None:
    """Check whether a document can be minted."""
    service = get_service()
    result = run(service.lifecycle.check_mint_eligibility(document_id))
    mark = "✓" if result.eligible else "✗"
    click.echo(f"{mark} {result.reason}")
    if not result.eligible:
        raise SystemExit(1)


@documents.command()
@reports_errors
def stats() -> None:
    """Document counts per status."""
    service = get_service()
    s = run(service.engine.document_stats())
    click.echo(f"  total:    {s.total}")
    click.echo(f"  pending:  {s.pending}")
    click.echo(f"  attested: {s.attested}")
    click.echo(f"  minted:   {s.minted}")
    click.echo(f"  rejected: {s.rejected}")


@documents.command()
@click.argument("document_id", required=False)
@reports_errors
def sync(document_id: str | None) -> None:
    """Register local-only documents on the ledger."""
    service = get_service()
    if document_id:
        targets = [document_id]
    else:
        targets = [d.id for d in service.store.list_all() if not d.registered_remotely]
    if not targets:
        click.echo("Nothing to sync.")
        return

    failed = 0
    for target in targets:
        try:
            doc = run(service.lifecycle.retry_registration(target))
        except LEDGER_FAILURES as e:
            failed += 1
            click.echo(f"  ✗ {target}: {getattr(e, 'reason', e)}")
            continue
        click.echo(f"  ✓ {target} -> {doc.id}")
    if failed:
        raise SystemExit(1)
