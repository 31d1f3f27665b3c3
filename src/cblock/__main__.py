"""CLI entrypoint for CBlock."""

import cblock.cli.admin_cmd  # noqa: F401
import cblock.cli.audit_cmd  # noqa: F401
import cblock.cli.documents_cmd  # noqa: F401
import cblock.cli.init  # noqa: F401
import cblock.cli.serve  # noqa: F401
import cblock.cli.watch  # noqa: F401
from cblock.cli.main import cli


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
