"""cblock init: interactive setup wizard."""

import click
import yaml

from cblock import config as cblock_config
from cblock.cli.main import cli
from cblock.documents.models import UserRole


@cli.command()
@click.option("--admin-email", default=None, help="Email of the bootstrap admin user")
@click.option("--admin-name", default=None, help="Display name of the bootstrap admin user")
def init(admin_email: str | None, admin_name: str | None) -> None:
    """Set up CBlock: directories, signing key, config and the first admin."""
    click.echo()
    click.echo("CBlock Setup")
    click.echo("============")
    click.echo()

    cblock_config.ensure_dirs()
    _setup_signing_key()
    _write_default_config()
    _create_admin(admin_email, admin_name)

    click.echo()
    click.echo("Ready. Try: cblock documents list")


def _setup_signing_key() -> None:
    from cblock.identity.keys import SigningKeyStore

    keys = SigningKeyStore(cblock_config.KEYS_DIR)
    click.echo("Attestation signing key...")
    _, created = keys.load_or_create()
    if created:
        click.echo(f"  ✓ Keypair written to {keys.keys_dir} (private key owner-read only)")
        click.echo(f"  ✓ Fingerprint: {keys.fingerprint()}")
    else:
        click.echo(f"  Keypair already exists at {keys.keys_dir} ({keys.fingerprint()[:24]}...)")
    click.echo()


def _write_default_config() -> None:
    config_path = cblock_config.CBLOCK_DIR / "config.yaml"
    if config_path.exists():
        click.echo(f"Config already exists at {config_path}")
        return
    defaults = cblock_config.CBlockConfig().model_dump()
    config_path.write_text(yaml.dump(defaults, sort_keys=False, default_flow_style=False))
    click.echo(f"  ✓ Config written to {config_path}")


def _create_admin(email: str | None, name: str | None) -> None:
    from cblock.admin.users import UserDirectory
    from cblock.storage.backend import JsonFileBackend

    users = UserDirectory.open(JsonFileBackend(cblock_config.DATA_DIR))
    admins = [u for u in users.list_all() if u.role == UserRole.ADMIN]
    if admins:
        click.echo(f"  Admin already exists: {admins[0].email} ({admins[0].id})")
        return

    email = email or click.prompt("  Admin email")
    name = name or click.prompt("  Admin name", default="Administrator")
    admin = users.add(email=email, name=name, role=UserRole.ADMIN)
    click.echo(f"  ✓ Admin {admin.email} created ({admin.id})")
    click.echo(f"  Use it with: export CBLOCK_ACTOR={admin.email}")
