from __future__ import annotations

import argparse

from rich.panel import Panel
from rich.table import Table

from chartreader.application.services.intake_service import IntakeService
from chartreader.application.services.project_service import ProjectService
from chartreader.cli.context import CLIContext
from chartreader.core.errors import ValidationError
from chartreader.domain.models.job import Job
from chartreader.infrastructure.db.repos.job_repo import JobRepo
from chartreader.infrastructure.db.repos.run_repo import RunRepo

_STATUS_STYLES = {
    "queued": "cyan",
    "processing": "blue",
    "completed": "green",
    "error": "red",
    "cancelled": "yellow",
    "awaiting_review": "magenta",
    "deleted": "dim",
}


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("jobs", help="Inspect and control extraction jobs")
    jobs_subparsers = parser.add_subparsers(dest="jobs_command", required=True)

    list_parser = jobs_subparsers.add_parser("list", help="List jobs, newest first")
    list_parser.add_argument("--limit", type=int, default=200)
    list_parser.add_argument("--all", action="store_true", help="Include deleted jobs")
    list_parser.set_defaults(handler=run_list)

    show = jobs_subparsers.add_parser("show", help="Show a job and the rows of its active run")
    show.add_argument("job_id")
    show.add_argument("--rows", type=int, default=25, help="Maximum rows to print")
    show.set_defaults(handler=run_show)

    runs = jobs_subparsers.add_parser("runs", help="List the extraction runs of a job")
    runs.add_argument("job_id")
    runs.set_defaults(handler=run_runs)

    rerun = jobs_subparsers.add_parser("rerun", help="Queue a job for another extraction")
    rerun.add_argument("job_id")
    rerun.set_defaults(handler=run_rerun)

    stop = jobs_subparsers.add_parser("stop", help="Cancel a queued, processing or review job")
    stop.add_argument("job_id")
    stop.set_defaults(handler=run_stop)

    delete = jobs_subparsers.add_parser("delete", help="Delete a job's files and hide it from the CSV")
    delete.add_argument("job_id")
    delete.set_defaults(handler=run_delete)

    confirm = jobs_subparsers.add_parser("confirm-page", help="Confirm the PDF page to extract")
    confirm.add_argument("job_id")
    confirm.add_argument("page", type=int)
    confirm.set_defaults(handler=run_confirm_page)


def _intake(ctx: CLIContext) -> IntakeService:
    ProjectService(ctx.paths).require_initialized()
    return IntakeService(ctx.paths, JobRepo(ctx.paths.db_path))


def _status_markup(status: str) -> str:
    style = _STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    jobs = JobRepo(ctx.paths.db_path).list_jobs(limit=args.limit, include_deleted=args.all)

    table = Table(title=f"Jobs ({len(jobs)})")
    table.add_column("ID", overflow="fold")
    table.add_column("Filename")
    table.add_column("Entry date")
    table.add_column("Status")
    table.add_column("Step")
    table.add_column("Runs", justify="right")
    table.add_column("Rows", justify="right")
    table.add_column("Error", overflow="fold")

    for job in jobs:
        table.add_row(
            job.id,
            job.filename,
            job.entry_date or "",
            _status_markup(job.status),
            job.progress_step or "",
            str(job.run_count),
            "" if job.rows_appended_last_run is None else str(job.rows_appended_last_run),
            job.error or "",
        )

    ctx.console.print(table)
    return 0


def run_show(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    job = JobRepo(ctx.paths.db_path).require(args.job_id)
    ctx.console.print(Panel(_describe(job), title=job.filename))

    if not job.last_run_id:
        ctx.console.print("[yellow]No active run[/yellow]")
        return 0

    rows = RunRepo(ctx.paths.db_path).list_rows_for_run(job.last_run_id)
    table = Table(title=f"Rows of run {job.last_run_id} ({len(rows)})")
    for column in ("Section", "Chart", "TW", "LW", "2W", "Wks", "Title", "Artist", "Label"):
        table.add_column(column)
    for row in rows[: max(0, args.rows)]:
        table.add_row(
            row.chart_section,
            row.chart_title,
            _rank(row.this_week_rank),
            _rank(row.last_week_rank),
            _rank(row.two_weeks_ago_rank),
            _rank(row.weeks_on_chart),
            row.title,
            row.artist,
            row.label,
        )
    ctx.console.print(table)
    return 0


def run_runs(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    job = JobRepo(ctx.paths.db_path).require(args.job_id)
    runs = RunRepo(ctx.paths.db_path).list_runs_for_job(job.id)

    table = Table(title=f"Runs of {job.filename} ({len(runs)})")
    table.add_column("Run")
    table.add_column("Extracted at")
    table.add_column("Model")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Active")
    table.add_column("Error", overflow="fold")
    for run in runs:
        table.add_row(
            run.run_id,
            run.extracted_at,
            run.model,
            run.status,
            str(run.rows_inserted),
            "yes" if run.run_id == job.last_run_id else "",
            run.error or "",
        )
    ctx.console.print(table)
    return 0


def run_rerun(args: argparse.Namespace, ctx: CLIContext) -> int:
    job = _intake(ctx).rerun(args.job_id)
    ctx.console.print(f"[green]Queued[/green] {job.filename}")
    return 0


def run_stop(args: argparse.Namespace, ctx: CLIContext) -> int:
    job = _intake(ctx).stop(args.job_id)
    ctx.console.print(f"{_status_markup(job.status)} {job.filename}")
    return 0


def run_delete(args: argparse.Namespace, ctx: CLIContext) -> int:
    job = _intake(ctx).delete(args.job_id)
    ctx.console.print(f"[green]Deleted[/green] {job.filename}")
    return 0


def run_confirm_page(args: argparse.Namespace, ctx: CLIContext) -> int:
    if args.page < 1:
        raise ValidationError("Page numbers start at 1")
    job = _intake(ctx).confirm_pdf_page(args.job_id, args.page)
    ctx.console.print(f"[green]Queued[/green] {job.filename} page {job.selected_pdf_page}")
    return 0


def _describe(job: Job) -> str:
    lines = [
        f"ID: {job.id}",
        f"Status: {_status_markup(job.status)}",
        f"Entry date: {job.entry_date or '-'}",
        f"Canonical name: {job.canonical_filename}",
        f"File location: {job.file_location}",
        f"Versions: {job.version_count}",
        f"Runs: {job.run_count} (active {job.last_run_id or '-'})",
    ]
    if job.pending_filename:
        lines.append(f"Pending version: {job.pending_filename}")
    if job.is_pdf:
        candidates = ", ".join(str(page) for page in job.review_candidates()) or "-"
        if job.selected_pdf_page:
            page = str(job.selected_pdf_page)
        elif job.pdf_default_page:
            page = f"{job.pdf_default_page} (suggested, unconfirmed)"
        else:
            page = "-"
        lines.append(f"PDF page: {page} of {job.pdf_page_count or '?'}")
        lines.append(f"Candidate pages: {candidates}")
    if job.error:
        lines.append(f"Error: {job.error}")
    return "\n".join(lines)


def _rank(value: int | None) -> str:
    return "" if value is None else str(value)
