"""cblock watch: stream document and balance changes."""

import asyncio

import click

from cblock.cli.main import cli, get_service
from cblock.sync.events import (
    BalanceChanged,
    DocumentAdded,
    DocumentStatusChanged,
    SnapshotLoaded,
    SyncEvent,
)


def describe(event: SyncEvent) -> str:
    if isinstance(event, SnapshotLoaded):
        return f"loaded {len(event.documents)} documents, balance {event.balance}"
    if isinstance(event, DocumentAdded):
        return f"new document {event.document.id} ({event.document.metadata.project_name})"
    if isinstance(event, DocumentStatusChanged):
        return (
            f"document {event.document.id}: "
            f"{event.old_status.value} -> {event.new_status.value}"
        )
    if isinstance(event, BalanceChanged):
        return f"balance {event.old_balance} -> {event.new_balance} ({event.delta:+d})"
    return type(event).__name__


@cli.command()
@click.option("--owner", default=None, help="Identity whose minted balance is tracked")
@click.option("--interval", default=None, type=float, help="Seconds between polls")
def watch(owner: str | None, interval: float | None) -> None:
    """Poll the ledger and print changes until interrupted."""
    service = get_service()
    poller = service.poller(owner=owner)
    if interval is not None:
        poller.interval = interval

    def on_event(event: SyncEvent) -> None:
        click.echo(f"[{event.timestamp.isoformat()[:19]}] {describe(event)}")

    async def main() -> None:
        unsubscribe = poller.subscribe(on_event)
        try:
            await asyncio.Event().wait()
        finally:
            unsubscribe()

    click.echo(f"Watching every {poller.interval:g}s (Ctrl-C to stop)")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        click.echo("Stopped.")
