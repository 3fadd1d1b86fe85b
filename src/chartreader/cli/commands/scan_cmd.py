from __future__ import annotations

import argparse
from pathlib import Path

from chartreader.application.services.intake_service import IntakeService
from chartreader.application.services.project_service import ProjectService
from chartreader.cli.context import CLIContext
from chartreader.core.errors import ValidationError
from chartreader.infrastructure.db.repos.job_repo import JobRepo


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("scan", help="Register chart scans as extraction jobs")
    parser.add_argument(
        "files",
        nargs="*",
        type=Path,
        help="Files to copy into new/ first (default: only pick up what is already there)",
    )
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    intake = IntakeService(ctx.paths, JobRepo(ctx.paths.db_path))

    jobs = []
    for path in args.files:
        if not path.is_file():
            raise ValidationError(f"Not a file: {path}")
        jobs.append(intake.store_upload(path.name, path.read_bytes()))
    jobs.extend(intake.scan_new_dir())

    if not jobs:
        ctx.console.print("[yellow]No new files found[/yellow]")
        return 0

    for job in jobs:
        if job.status == "error":
            ctx.console.print(f"[red]{job.filename}[/red] {job.error}")
        else:
            ctx.console.print(f"[green]{job.status}[/green] {job.filename} ({job.id})")
    return 0
