"""Click CLI group for CBlock, plus helpers shared by the subcommands."""

import asyncio
import functools
import json
from collections.abc import Callable
from typing import Any, TypeVar

import click

from cblock.errors import CBlockError
from cblock.logging_config import configure_logging

F = TypeVar("F", bound=Callable[..., Any])

actor_option = click.option(
    "--as",
    "actor",
    envvar="CBLOCK_ACTOR",
    required=True,
    help="Acting user: id, email or wallet address (env: CBLOCK_ACTOR)",
)


@click.group()
@click.version_option(package_name="cblock")
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"]),
    default=None,
    help="Log renderer (default: config log_format)",
)
def cli(log_format: str | None) -> None:
    """CBlock: document reconciliation, attestation lifecycle and admin audit trail."""
    if log_format is None:
        from cblock.config import load_config

        log_format = load_config().log_format
    configure_logging(log_format)


def reports_errors(fn: F) -> F:
    """Turn domain errors into a clean CLI failure with the error's reason."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except CBlockError as e:
            raise click.ClickException(e.reason) from e

    return wrapper  # type: ignore[return-value]


def get_service():
    from cblock.service import build_service

    return build_service()


def run(coro: Any) -> Any:
    return asyncio.run(coro)


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))
