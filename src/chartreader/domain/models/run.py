from __future__ import annotations

from dataclasses import dataclass

RUN_STATUSES = ("completed", "error", "cancelled")


@dataclass(slots=True)
class Run:
    run_id: str
    job_id: str
    model: str
    extracted_at: str
    rows_inserted: int
    raw_result_json: str | None
    status: str = "completed"
    error: str | None = None


@dataclass(slots=True)
class WorkerConfig:
    concurrency: int
    paused: bool
    model: str
