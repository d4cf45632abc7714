from __future__ import annotations

"""Entry script for running the Jarsmith HTTP API with uvicorn.

Usage:

    python script/run_api.py --port 8000
"""

import argparse
from typing import Sequence

import uvicorn
from loguru import logger
from rich.console import Console

from jarsmith.config import get_settings
from jarsmith.log_setup import configure_logging

console = Console()
log = logger.bind(module="script.run_api")


def _build_arg_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        description="Run the Jarsmith job API.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", default=settings.api_host, help="Bind host.")
    parser.add_argument("--port", type=int, default=settings.api_port, help="Bind port.")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only).")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_arg_parser().parse_args(list(argv) if argv is not None else None)
    level = configure_logging(component="api")

    console.log(f"[bold green]Jarsmith API online[/] host={args.host} port={args.port}")
    log.info("Starting Jarsmith API on {}:{}", args.host, args.port)

    uvicorn.run(
        "jarsmith.api.app:app",
        host=str(args.host),
        port=int(args.port),
        reload=bool(args.reload),
        log_level=level.lower(),
        # Keep the loguru bridge installed by configure_logging().
        log_config=None,
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
