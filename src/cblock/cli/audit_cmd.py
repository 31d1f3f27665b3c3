"""cblock audit: administrative audit trail commands."""

import click

from cblock.admin.models import AuditLogFilters, AuditLogType
from cblock.cli.main import actor_option, cli, echo_json, get_service, reports_errors


@cli.group()
def audit() -> None:
    """Audit trail commands."""


@audit.command()
def verify() -> None:
    """Verify audit log hash chain integrity."""
    service = get_service()
    result = service.audit_log.verify()

    if result.valid:
        click.echo(f"Audit log verified: {result.entries_checked} entries, chain intact.")
    else:
        click.echo(f"VERIFICATION FAILED at entry {result.entries_checked}")
        click.echo(f"Error: {result.first_error}")
        raise SystemExit(1)


@audit.command()
@click.option("--type", "entry_type", type=click.Choice([t.value for t in AuditLogType]))
@click.option("--actor-id", default=None, help="Only entries by this admin")
@click.option("--target", "target_user_id", default=None, help="Only entries about this user")
@click.option("--last", "n", default=20, type=int, help="Number of entries to show")
@click.option("--json", "as_json", is_flag=True, default=False)
@actor_option
@reports_errors
def show(
    entry_type: str | None,
    actor_id: str | None,
    target_user_id: str | None,
    n: int,
    as_json: bool,
    actor: str,
) -> None:
    """Print recent audit entries, newest first."""
    service = get_service()
    entries = service.admin.get_audit_logs(
        service.resolve_actor(actor),
        AuditLogFilters(type=entry_type, actor_id=actor_id, target_user_id=target_user_id),
    )[:n]

    if as_json:
        echo_json([e.model_dump(mode="json") for e in entries])
        return
    for entry in entries:
        target = f" -> {entry.target_user_id}" if entry.target_user_id else ""
        click.echo(
            f"  {entry.timestamp.isoformat()[:19]}  {entry.type.value:<20} "
            f"{entry.actor_email}{target}"
        )
        reason = entry.details.get("reason")
        if reason:
            click.echo(f"    reason: {reason}")
