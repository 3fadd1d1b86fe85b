from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from chartreader.cli.commands import (
    config_cmd,
    export_cmd,
    init_cmd,
    jobs_cmd,
    pages_cmd,
    scan_cmd,
    worker_cmd,
)
from chartreader.cli.context import CLIContext
from chartreader.core.config import load_paths
from chartreader.core.errors import ChartReaderError
from chartreader.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chartreader",
        description="Chart scan extraction CLI",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root holding the files/ directory (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_cmd.register(subparsers)
    scan_cmd.register(subparsers)
    jobs_cmd.register(subparsers)
    config_cmd.register(subparsers)
    worker_cmd.register(subparsers)
    export_cmd.register(subparsers)
    pages_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose)
    console = Console()

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, console=console)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except ChartReaderError as exc:
        logger.error(str(exc))
        return 1
