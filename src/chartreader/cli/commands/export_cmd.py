from __future__ import annotations

import argparse

from chartreader.application.services.project_service import ProjectService
from chartreader.cli.context import CLIContext
from chartreader.infrastructure.db.repos.run_repo import RunRepo
from chartreader.infrastructure.export.csv_exporter import CsvExporter


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("export", help="Rebuild output.csv from each document's active run")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    exporter = CsvExporter(RunRepo(ctx.paths.db_path), ctx.paths.output_csv_path)
    result = exporter.export_latest_runs_only()
    ctx.console.print(f"[green]Wrote[/green] {result.total_rows} rows to {ctx.paths.output_csv_path}")
    return 0
