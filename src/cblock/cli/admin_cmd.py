"""cblock admin: roles, verifier credentials, users, stats and backups."""

import json
from datetime import datetime
from pathlib import Path

import click

from cblock.admin.models import CredentialInput, RestoreOptions
from cblock.cli.main import actor_option, cli, echo_json, get_service, reports_errors
from cblock.documents.models import UserRole

ROLE_CHOICE = click.Choice([r.value for r in UserRole])


@cli.group()
def admin() -> None:
    """Administrative commands (admin role required)."""


@admin.command()
@click.argument("user_id")
@click.argument("role", type=ROLE_CHOICE)
@click.option("--reason", default="")
@actor_option
@reports_errors
def role(user_id: str, role: str, reason: str, actor: str) -> None:
    """Change a user's role."""
    service = get_service()
    user = service.admin.change_user_role(service.resolve_actor(actor), user_id, role, reason)
    click.echo(f"{user.email} is now {user.role.value}.")


@admin.group()
def credentials() -> None:
    """Verifier credential management."""


@credentials.command("assign")
@click.argument("user_id")
@click.option("--cert", "certification_id", required=True, help="Certification id")
@click.option("--authority", "issuing_authority", required=True, help="Issuing authority")
@click.option("--valid-until", required=True, type=click.DateTime(), help="Expiry (UTC)")
@actor_option
@reports_errors
def assign_credentials(
    user_id: str,
    certification_id: str,
    issuing_authority: str,
    valid_until: datetime,
    actor: str,
) -> None:
    """Assign or update a verifier's credentials."""
    service = get_service()
    cred = service.admin.assign_verifier_credentials(
        service.resolve_actor(actor),
        user_id,
        CredentialInput(
            certification_id=certification_id,
            issuing_authority=issuing_authority,
            valid_until=valid_until,
        ),
    )
    click.echo(f"Credentials {cred.status.value} until {cred.valid_until.isoformat()}.")


@credentials.command("remove")
@click.argument("user_id")
@click.option("--reason", default="")
@actor_option
@reports_errors
def remove_credentials(user_id: str, reason: str, actor: str) -> None:
    """Remove a verifier's credentials."""
    service = get_service()
    service.admin.remove_verifier_credentials(service.resolve_actor(actor), user_id, reason)
    click.echo("Credentials removed.")


@credentials.command("show")
@click.argument("user_id")
@actor_option
@reports_errors
def show_credentials(user_id: str, actor: str) -> None:
    """Print a verifier's credentials."""
    service = get_service()
    cred = service.admin.get_verifier_credentials(service.resolve_actor(actor), user_id)
    if cred is None:
        click.echo("No credentials.")
        return
    echo_json(cred.model_dump(mode="json"))


@credentials.command("check")
@click.argument("user_id")
@reports_errors
def check_credentials(user_id: str) -> None:
    """Check whether a verifier's credentials are currently valid."""
    service = get_service()
    result = service.admin.validate_verifier_credentials(user_id)
    if result.valid:
        click.echo("✓ Credentials valid")
    else:
        click.echo(f"✗ {result.reason}")
        raise SystemExit(1)


@admin.group()
def users() -> None:
    """User management."""


@users.command("list")
@actor_option
@reports_errors
def list_users(actor: str) -> None:
    """List users with their derived status."""
    service = get_service()
    for summary in service.admin.list_users(service.resolve_actor(actor)):
        u = summary.user
        click.echo(f"  {u.id:<18} {u.role.value:<10} {summary.status:<20} {u.email}")


@users.command("add")
@click.argument("email")
@click.option("--name", default="")
@click.option("--role", "user_role", type=ROLE_CHOICE, default=UserRole.INDIVIDUAL.value)
@click.option("--wallet", "wallet_address", default=None)
@click.option("--unverified", is_flag=True, default=False)
@actor_option
@reports_errors
def add_user(
    email: str,
    name: str,
    user_role: str,
    wallet_address: str | None,
    unverified: bool,
    actor: str,
) -> None:
    """Create a user."""
    service = get_service()
    user = service.admin.create_user(
        service.resolve_actor(actor),
        email=email,
        name=name,
        role=user_role,
        wallet_address=wallet_address,
        is_verified=not unverified,
    )
    click.echo(f"Created {user.email} ({user.id}).")


@users.command("remove")
@click.argument("user_id")
@click.option("--reason", default="")
@actor_option
@reports_errors
def remove_user(user_id: str, reason: str, actor: str) -> None:
    """Delete a user and any verifier credentials."""
    service = get_service()
    user = service.admin.delete_user(service.resolve_actor(actor), user_id, reason)
    click.echo(f"Deleted {user.email}.")


@admin.command()
@actor_option
@reports_errors
def stats(actor: str) -> None:
    """System statistics."""
    service = get_service()
    s = service.admin.get_system_stats(service.resolve_actor(actor))
    click.echo(f"  users:            {s.total_users}")
    for name, count in sorted(s.role_counts.items()):
        click.echo(f"    {name:<14} {count}")
    click.echo(f"  active verifiers: {s.active_verifiers}")
    click.echo(f"  audit entries:    {s.total_audit_logs}")
    click.echo(f"  credentials:      {s.credentials_managed}")


@admin.command()
@click.option("--output", "output_path", default=None, type=click.Path(path_type=Path))
@actor_option
@reports_errors
def backup(output_path: Path | None, actor: str) -> None:
    """Export users, audit log, credentials and documents."""
    service = get_service()
    data = service.admin.create_backup(service.resolve_actor(actor))
    content = data.model_dump_json(indent=2)
    if output_path:
        output_path.write_text(content)
        click.echo(f"Backup written to {output_path}")
    else:
        click.echo(content)


@admin.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--skip-users", is_flag=True, default=False)
@click.option("--skip-audit-logs", is_flag=True, default=False)
@click.option("--skip-credentials", is_flag=True, default=False)
@click.option("--skip-documents", is_flag=True, default=False)
@actor_option
@reports_errors
def restore(
    path: Path,
    skip_users: bool,
    skip_audit_logs: bool,
    skip_credentials: bool,
    skip_documents: bool,
    actor: str,
) -> None:
    """Restore from a backup file."""
    service = get_service()
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise click.ClickException(f"Invalid backup data: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException("Invalid backup data")
    service.admin.restore_from_backup(
        service.resolve_actor(actor),
        data,
        RestoreOptions(
            restore_users=not skip_users,
            restore_audit_logs=not skip_audit_logs,
            restore_credentials=not skip_credentials,
            restore_documents=not skip_documents,
        ),
    )
    click.echo("Restore complete.")
