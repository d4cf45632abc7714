"""Drop and recreate every Jarsmith table.

Schema changes ship without migrations, so a development database is moved
forward by recreating it from the ORM models. Jobs, their logs, overrides and
configuration records are all deleted.

Usage:
    python script/reset_db.py --yes
"""

from __future__ import annotations

import argparse
import sys

from rich.console import Console

from jarsmith.config import get_settings
from jarsmith.log_setup import configure_logging

console = Console()


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--yes", action="store_true", help="Confirm the irreversible reset.")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    if not args.yes:
        console.print("[bold red]Not resetting without --yes.[/] Every table and its rows would be dropped.")
        return 2

    configure_logging(get_settings(), component="reset_db")
    from jarsmith.db.base import reset_database_schema, safe_dsn

    console.print(f"[yellow]Resetting[/] {safe_dsn}")
    reset_database_schema()
    console.print("[bold green]Done.[/]")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
