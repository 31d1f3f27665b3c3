"""cblock serve: start the MCP server."""

import click

from cblock.cli.main import cli


@cli.command()
@click.option("--transport", default="stdio", type=click.Choice(["stdio", "sse"]))
@click.option("--port", default=8080, type=int, help="Port for SSE transport")
def serve(transport: str, port: int) -> None:
    """Start the CBlock MCP server."""
    from cblock.config import KEYS_DIR, ensure_dirs, load_config
    from cblock.identity.keys import SigningKeyStore

    ensure_dirs()
    config = load_config()

    click.echo(err=True)
    click.echo("CBlock v0.1.0", err=True)
    click.echo("=============", err=True)
    keys = SigningKeyStore(KEYS_DIR)
    if keys.exists():
        fingerprint = keys.fingerprint()
        click.echo(f"  ✓ Signing key {fingerprint[:24]}...", err=True)
    else:
        click.echo("  ⚠ Signing key not found (run 'cblock init')", err=True)
    ledger = "enabled" if config.ledger_enabled else "disabled (local only)"
    click.echo(f"  Ledger: {ledger}", err=True)
    click.echo(f"MCP server ready on {transport}", err=True)

    from cblock.server import mcp as mcp_server

    if transport == "sse":
        mcp_server.settings.port = port
        mcp_server.run(transport="sse")
    else:
        mcp_server.run(transport="stdio")
