from __future__ import annotations

import argparse
import logging
import threading

from chartreader.application.services.notifications import EventHub
from chartreader.application.services.project_service import ProjectService
from chartreader.application.services.worker_service import ExtractionWorker
from chartreader.cli.context import CLIContext
from chartreader.domain.models.job import TERMINAL_STATUSES
from chartreader.infrastructure.db.repos.config_repo import ConfigRepo
from chartreader.infrastructure.db.repos.job_repo import JobRepo
from chartreader.infrastructure.db.repos.run_repo import RunRepo
from chartreader.infrastructure.extraction.gemini_client import GeminiExtractionClient

logger = logging.getLogger(__name__)


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("worker", help="Run the extraction worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process everything currently queued, then exit",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Give up waiting after this many seconds")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    ProjectService(ctx.paths).require_initialized()
    events = EventHub()
    events.subscribe(lambda event, payload: _print_event(ctx, event, payload))
    worker = ExtractionWorker(
        paths=ctx.paths,
        job_repo=JobRepo(ctx.paths.db_path),
        run_repo=RunRepo(ctx.paths.db_path),
        config_repo=ConfigRepo(ctx.paths.db_path),
        client=GeminiExtractionClient(),
        events=events,
    )

    if args.once:
        processed = worker.run_until_idle(timeout=args.timeout)
        worker.stop()
        ctx.console.print(f"[green]Processed[/green] {processed} job(s)")
        return 0

    worker.start()
    ctx.console.print("[green]Worker running[/green] (Ctrl-C to stop)")
    try:
        threading.Event().wait(timeout=args.timeout)
    except KeyboardInterrupt:
        ctx.console.print("[yellow]Stopping worker[/yellow]")
    finally:
        worker.stop()
    return 0


def _print_event(ctx: CLIContext, event: str, payload: dict) -> None:
    if event == "job":
        status = payload.get("status")
        if status in TERMINAL_STATUSES or status == "awaiting_review":
            detail = payload.get("error") or ""
            ctx.console.print(f"[bold]{status}[/bold] {payload.get('filename')} {detail}".rstrip())
    elif event == "csv_updated":
        ctx.console.print(f"[green]CSV updated[/green] {payload.get('total')} rows")
    elif event == "csv_error":
        ctx.console.print(f"[red]CSV export failed[/red] {payload.get('message')}")
    elif event == "config":
        logger.info("Worker configuration now %s", payload)
