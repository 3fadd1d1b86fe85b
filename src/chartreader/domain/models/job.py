from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

JOB_STATUSES = (
    "queued",
    "processing",
    "completed",
    "error",
    "cancelled",
    "awaiting_review",
    "deleted",
)
TERMINAL_STATUSES = frozenset({"completed", "error", "cancelled", "deleted"})
FILE_LOCATIONS = ("new", "completed", "missing")


@dataclass(slots=True)
class Job:
    id: str
    filename: str
    canonical_filename: str
    entry_date: str | None
    status: str
    progress_step: str | None
    error: str | None
    created_at: str
    started_at: str | None
    finished_at: str | None
    run_count: int
    last_run_id: str | None
    rows_appended_last_run: int | None
    file_location: str
    version_count: int
    pending_filename: str | None
    selected_pdf_page: int | None
    pdf_page_count: int | None
    pdf_review_candidates: str | None
    pdf_default_page: int | None = None

    @property
    def is_pdf(self) -> bool:
        return self.filename.lower().endswith(".pdf")

    def review_candidates(self) -> list[int]:
        if not self.pdf_review_candidates:
            return []
        try:
            parsed = json.loads(self.pdf_review_candidates)
        except json.JSONDecodeError:
            return []
        if not isinstance(parsed, list):
            return []
        return [int(item) for item in parsed if isinstance(item, int) and not isinstance(item, bool)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "canonical_filename": self.canonical_filename,
            "entry_date": self.entry_date,
            "status": self.status,
            "progress_step": self.progress_step,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "run_count": self.run_count,
            "last_run_id": self.last_run_id,
            "rows_appended_last_run": self.rows_appended_last_run,
            "file_location": self.file_location,
            "version_count": self.version_count,
            "pending_filename": self.pending_filename,
            "selected_pdf_page": self.selected_pdf_page,
            "pdf_page_count": self.pdf_page_count,
            "pdf_review_candidates": self.review_candidates(),
            "pdf_default_page": self.pdf_default_page,
        }
