from __future__ import annotations

import argparse

from rich.table import Table

from chartreader.application.services.project_service import ProjectService
from chartreader.cli.context import CLIContext
from chartreader.core.config import WorkerSettings
from chartreader.domain.models.run import WorkerConfig
from chartreader.infrastructure.db.repos.config_repo import ConfigRepo


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("config", help="Show or change the worker configuration")
    config_subparsers = parser.add_subparsers(dest="config_command", required=True)

    show = config_subparsers.add_parser("show", help="Show worker configuration")
    show.set_defaults(handler=run_show)

    update = config_subparsers.add_parser("set", help="Change concurrency, pause state or model")
    update.add_argument("--concurrency", type=int)
    pause_group = update.add_mutually_exclusive_group()
    pause_group.add_argument("--pause", dest="paused", action="store_true", default=None)
    pause_group.add_argument("--resume", dest="paused", action="store_false")
    update.add_argument("--model")
    update.set_defaults(handler=run_set, paused=None)


def run_show(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    _print_config(ctx, ConfigRepo(ctx.paths.db_path).get_config())
    return 0


def run_set(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    config = ConfigRepo(ctx.paths.db_path).update_config(
        concurrency=args.concurrency,
        paused=args.paused,
        model=args.model,
    )
    ctx.console.print("[green]Configuration updated[/green]")
    _print_config(ctx, config)
    return 0


def _print_config(ctx: CLIContext, config: WorkerConfig) -> None:
    settings = WorkerSettings.from_env()
    table = Table(title="Worker configuration", show_header=False)
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("concurrency", str(config.concurrency))
    table.add_row("paused", "yes" if config.paused else "no")
    table.add_row("model", config.model)
    table.add_row("fallback model", settings.fallback_model)
    table.add_row("chart filter", "on" if settings.chart_filter_enabled else "off")
    table.add_row("tick seconds", f"{settings.tick_seconds:g}")
    ctx.console.print(table)
