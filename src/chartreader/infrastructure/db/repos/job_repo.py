from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from chartreader.core.errors import StoreError
from chartreader.core.time import now_utc_iso
from chartreader.domain.models.job import FILE_LOCATIONS, JOB_STATUSES, Job
from chartreader.infrastructure.db.sqlite import get_connection, immediate_transaction

_UPDATABLE_COLUMNS = frozenset(
    {
        "filename",
        "entry_date",
        "status",
        "progress_step",
        "error",
        "started_at",
        "finished_at",
        "file_location",
        "pending_filename",
        "version_count",
        "selected_pdf_page",
        "pdf_page_count",
        "pdf_review_candidates",
        "pdf_default_page",
    }
)


class JobRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert_job(self, job: Job) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    id,
                    filename,
                    canonical_filename,
                    entry_date,
                    status,
                    progress_step,
                    error,
                    created_at,
                    started_at,
                    finished_at,
                    run_count,
                    last_run_id,
                    rows_appended_last_run,
                    file_location,
                    version_count,
                    pending_filename,
                    selected_pdf_page,
                    pdf_page_count,
                    pdf_review_candidates,
                    pdf_default_page
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.filename,
                    job.canonical_filename,
                    job.entry_date,
                    job.status,
                    job.progress_step,
                    job.error,
                    job.created_at,
                    job.started_at,
                    job.finished_at,
                    job.run_count,
                    job.last_run_id,
                    job.rows_appended_last_run,
                    job.file_location,
                    job.version_count,
                    job.pending_filename,
                    job.selected_pdf_page,
                    job.pdf_page_count,
                    job.pdf_review_candidates,
                    job.pdf_default_page,
                ),
            )
            conn.commit()

    def get(self, job_id: str) -> Job | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._to_job(row) if row else None

    def require(self, job_id: str) -> Job:
        job = self.get(job_id)
        if job is None:
            raise StoreError(f"Job not found: {job_id}")
        return job

    def get_status(self, job_id: str) -> str | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return str(row["status"]) if row else None

    def list_jobs(self, *, limit: int = 500, include_deleted: bool = False) -> list[Job]:
        safe_limit = max(1, min(int(limit), 50_000))
        where = "" if include_deleted else "WHERE status != 'deleted'"
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs {where} ORDER BY created_at DESC, id DESC LIMIT ?",
                (safe_limit,),
            ).fetchall()
        return [self._to_job(row) for row in rows]

    def find_live_by_canonical(self, canonical_filename: str) -> Job | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT *
                FROM jobs
                WHERE canonical_filename = ?
                  AND status != 'deleted'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """,
                (canonical_filename,),
            ).fetchone()
        return self._to_job(row) if row else None

    def is_filename_taken(self, filename: str, *, exclude_job_id: str | None = None) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT 1
                FROM jobs
                WHERE (filename = ? OR pending_filename = ?)
                  AND id != COALESCE(?, '')
                LIMIT 1
                """,
                (filename, filename, exclude_job_id),
            ).fetchone()
        return row is not None

    def known_filenames(self) -> set[str]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute("SELECT filename, pending_filename FROM jobs").fetchall()
        names: set[str] = set()
        for row in rows:
            names.add(str(row["filename"]))
            if row["pending_filename"]:
                names.add(str(row["pending_filename"]))
        return names

    def count_processing(self) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM jobs WHERE status = 'processing'").fetchone()
        return int(row["count"] or 0)

    def claim_queued(self, limit: int) -> list[Job]:
        """Atomically flip up to ``limit`` queued jobs to processing, oldest first."""
        if limit <= 0:
            return []
        now = now_utc_iso()
        with immediate_transaction(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id
                FROM jobs
                WHERE status = 'queued'
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
            claimed_ids: list[str] = []
            for row in rows:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'processing',
                        progress_step = 'starting',
                        error = NULL,
                        started_at = ?,
                        finished_at = NULL
                    WHERE id = ? AND status = 'queued'
                    """,
                    (now, row["id"]),
                )
                if cursor.rowcount == 1:
                    claimed_ids.append(str(row["id"]))
            if not claimed_ids:
                return []
            placeholders = ",".join("?" for _ in claimed_ids)
            claimed = conn.execute(
                f"SELECT * FROM jobs WHERE id IN ({placeholders}) ORDER BY created_at ASC, id ASC",
                claimed_ids,
            ).fetchall()
        return [self._to_job(row) for row in claimed]

    def requeue_interrupted(self) -> int:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'queued',
                    progress_step = NULL,
                    error = NULL,
                    started_at = NULL,
                    finished_at = NULL
                WHERE status = 'processing'
                """
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    def update_fields(self, job_id: str, **fields: Any) -> Job:
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise StoreError(f"Unsupported job fields: {', '.join(sorted(unknown))}")
        if "status" in fields and fields["status"] not in JOB_STATUSES:
            raise StoreError(f"Unknown job status: {fields['status']}")
        if "file_location" in fields and fields["file_location"] not in FILE_LOCATIONS:
            raise StoreError(f"Unknown file location: {fields['file_location']}")
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            with get_connection(self.db_path) as conn:
                conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE id = ?",
                    (*fields.values(), job_id),
                )
                conn.commit()
        return self.require(job_id)

    def set_progress(self, job_id: str, step: str) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE jobs SET progress_step = ? WHERE id = ? AND status = 'processing'",
                (step, job_id),
            )
            conn.commit()
        return cursor.rowcount == 1

    def mark_error(
        self,
        job_id: str,
        message: str,
        *,
        run_id: str | None = None,
        rows_appended: int | None = None,
    ) -> bool:
        """Record a failure; a run id with rows makes that partial run active."""
        now = now_utc_iso()
        with get_connection(self.db_path) as conn:
            if run_id is not None:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'error',
                        error = ?,
                        finished_at = ?,
                        run_count = run_count + 1,
                        last_run_id = ?,
                        rows_appended_last_run = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (message, now, run_id, rows_appended, job_id),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'error',
                        error = ?,
                        finished_at = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (message, now, job_id),
                )
            conn.commit()
        return cursor.rowcount == 1

    def mark_cancelled(self, job_id: str, reason: str) -> bool:
        now = now_utc_iso()
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'cancelled',
                    progress_step = 'cancelled',
                    error = ?,
                    finished_at = ?
                WHERE id = ? AND status IN ('queued', 'processing', 'awaiting_review')
                """,
                (reason, now, job_id),
            )
            conn.commit()
        return cursor.rowcount == 1

    def mark_awaiting_review(
        self,
        job_id: str,
        *,
        candidates: list[int],
        page_count: int,
        default_page: int,
    ) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'awaiting_review',
                    progress_step = 'awaiting_review',
                    error = NULL,
                    finished_at = ?,
                    pdf_review_candidates = ?,
                    pdf_page_count = ?,
                    pdf_default_page = ?
                WHERE id = ? AND status = 'processing'
                """,
                (now_utc_iso(), json.dumps(candidates), page_count, default_page, job_id),
            )
            conn.commit()
        return cursor.rowcount == 1

    def mark_completed(
        self,
        job_id: str,
        *,
        run_id: str,
        rows_appended: int,
        filename: str,
        file_location: str,
    ) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET status = 'completed',
                    progress_step = NULL,
                    error = NULL,
                    finished_at = ?,
                    run_count = run_count + 1,
                    last_run_id = ?,
                    rows_appended_last_run = ?,
                    filename = ?,
                    file_location = ?
                WHERE id = ? AND status = 'processing'
                """,
                (now_utc_iso(), run_id, rows_appended, filename, file_location, job_id),
            )
            conn.commit()
        return cursor.rowcount == 1

    def promote_pending(self, job_id: str, *, entry_date: str | None) -> Job | None:
        """Swap in a newer upload that arrived while the job was busy."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET filename = pending_filename,
                    pending_filename = NULL,
                    entry_date = COALESCE(entry_date, ?),
                    status = 'queued',
                    progress_step = NULL,
                    error = NULL,
                    started_at = NULL,
                    finished_at = NULL,
                    file_location = 'new',
                    selected_pdf_page = NULL,
                    pdf_page_count = NULL,
                    pdf_review_candidates = NULL,
                    pdf_default_page = NULL
                WHERE id = ?
                  AND pending_filename IS NOT NULL
                  AND status NOT IN ('processing', 'deleted')
                """,
                (entry_date, job_id),
            )
            conn.commit()
        if cursor.rowcount != 1:
            return None
        return self.get(job_id)

    @staticmethod
    def _to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=str(row["id"]),
            filename=str(row["filename"]),
            canonical_filename=str(row["canonical_filename"] or row["filename"]),
            entry_date=row["entry_date"],
            status=str(row["status"]),
            progress_step=row["progress_step"],
            error=row["error"],
            created_at=str(row["created_at"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            run_count=int(row["run_count"] or 0),
            last_run_id=row["last_run_id"],
            rows_appended_last_run=row["rows_appended_last_run"],
            file_location=str(row["file_location"] or "missing"),
            version_count=int(row["version_count"] or 1),
            pending_filename=row["pending_filename"],
            selected_pdf_page=row["selected_pdf_page"],
            pdf_page_count=row["pdf_page_count"],
            pdf_review_candidates=row["pdf_review_candidates"],
            pdf_default_page=row["pdf_default_page"],
        )
