from __future__ import annotations

import argparse
from pathlib import Path

from rich.table import Table

from chartreader.application.services.page_scoring import looks_like_chart_page, score_page_text
from chartreader.application.services.page_selection_service import PageSelector
from chartreader.cli.context import CLIContext
from chartreader.core.config import WorkerSettings
from chartreader.infrastructure.pdf.pdf_document import PdfDocument


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("pages", help="Score the pages of a PDF the way the worker does")
    parser.add_argument("pdf", type=Path)
    parser.add_argument("--limit", type=int, default=None, help="Number of candidates to list")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    settings = WorkerSettings.from_env()
    limit = args.limit or settings.pdf_candidate_limit
    with PdfDocument.open(args.pdf) as document:
        candidates = PageSelector().select_candidates(
            document,
            max_pages_to_scan=settings.pdf_max_scan_pages,
            candidate_limit=limit,
        )
        scores = {
            candidate.page_number: candidate.text_score or score_page_text(document.page_text(candidate.page_number))
            for candidate in candidates
        }
        page_count = document.page_count

    table = Table(title=f"{args.pdf.name}: {len(candidates)} candidate(s) of {page_count} page(s)")
    table.add_column("#", justify="right")
    table.add_column("Page", justify="right")
    table.add_column("Source")
    table.add_column("Score", justify="right")
    table.add_column("Base", justify="right")
    table.add_column("Boost", justify="right")
    table.add_column("Ranks", justify="right")
    table.add_column("Chart-like")
    for index, candidate in enumerate(candidates, start=1):
        text_score = scores[candidate.page_number]
        table.add_row(
            str(index),
            str(candidate.page_number),
            candidate.source,
            f"{candidate.score:.1f}",
            f"{text_score.base_score:.1f}",
            f"{text_score.disco_boost:.1f}",
            str(text_score.rank_count),
            "yes" if looks_like_chart_page(text_score) else "no",
        )
    ctx.console.print(table)
    return 0
