from __future__ import annotations

import csv
import os
from dataclasses import dataclass
from pathlib import Path

from chartreader.core.files import ensure_directory
from chartreader.core.time import now_utc_iso
from chartreader.infrastructure.db.repos.run_repo import RunRepo

CSV_COLUMNS = (
    "entry_date",
    "chart_title",
    "chart_section",
    "this_week_rank",
    "last_week_rank",
    "two_weeks_ago_rank",
    "weeks_on_chart",
    "title",
    "artist",
    "label",
    "source_file",
    "run_id",
    "extracted_at",
)


@dataclass(slots=True)
class CsvExportResult:
    updated_at: str
    total_rows: int

    def to_dict(self) -> dict[str, object]:
        return {"updated_at": self.updated_at, "total": self.total_rows}


class CsvExporter:
    def __init__(self, run_repo: RunRepo, output_path: Path) -> None:
        self.run_repo = run_repo
        self.output_path = output_path

    def export_latest_runs_only(self) -> CsvExportResult:
        """Rewrite the CSV from each document's active run only."""
        rows = self.run_repo.list_active_rows()
        ensure_directory(self.output_path.parent)
        temp_path = self.output_path.parent / f".{self.output_path.name}.tmp"
        with temp_path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(CSV_COLUMNS)
            for row in rows:
                writer.writerow(
                    [
                        row.entry_date,
                        row.chart_title,
                        row.chart_section,
                        _cell(row.this_week_rank),
                        _cell(row.last_week_rank),
                        _cell(row.two_weeks_ago_rank),
                        _cell(row.weeks_on_chart),
                        row.title,
                        row.artist,
                        row.label,
                        row.source_file,
                        row.run_id,
                        row.extracted_at,
                    ]
                )
        os.replace(temp_path, self.output_path)
        return CsvExportResult(updated_at=now_utc_iso(), total_rows=len(rows))


def _cell(value: int | None) -> str:
    return "" if value is None else str(value)
