from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from chartreader.application.services.notifications import EventHub
from chartreader.core.config import AppPaths
from chartreader.core.errors import JobStateError, ValidationError
from chartreader.core.files import (
    ensure_directory,
    is_supported_file,
    make_unique_filename,
    sanitize_filename,
    write_bytes_atomic,
)
from chartreader.core.ids import new_uuid
from chartreader.core.text import parse_entry_date
from chartreader.core.time import now_utc_iso
from chartreader.domain.models.job import TERMINAL_STATUSES, Job
from chartreader.infrastructure.db.repos.job_repo import JobRepo
from chartreader.infrastructure.pdf.pdf_document import preview_filenames

logger = logging.getLogger(__name__)

MISSING_DATE_ERROR = "Date not found in filename (expected YYYY-MM-DD)"


class IntakeService:
    """Turns files under ``new/`` into jobs and applies operator control actions."""

    def __init__(
        self,
        paths: AppPaths,
        job_repo: JobRepo,
        *,
        events: EventHub | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.paths = paths
        self.job_repo = job_repo
        self.events = events
        self.on_change = on_change

    def store_upload(self, original_filename: str, content: bytes) -> Job:
        canonical = sanitize_filename(original_filename)
        if not is_supported_file(canonical):
            raise ValidationError(f"Unsupported upload type: {original_filename}")
        ensure_directory(self.paths.new_dir)
        staged_name = make_unique_filename(canonical, self._is_name_taken)
        write_bytes_atomic(self.paths.new_dir / staged_name, content)
        return self.register_file(staged_name, canonical_filename=canonical)

    def scan_new_dir(self) -> list[Job]:
        if not self.paths.new_dir.exists():
            return []
        known = self.job_repo.known_filenames()
        registered: list[Job] = []
        for path in sorted(self.paths.new_dir.iterdir()):
            if not path.is_file() or path.name.startswith(".") or path.name in known:
                continue
            if not is_supported_file(path.name):
                logger.info("Skipping unsupported file in new/: %s", path.name)
                continue
            registered.append(self.register_file(path.name))
        return registered

    def register_file(self, filename: str, *, canonical_filename: str | None = None) -> Job:
        """Create a job for a staged file, or fold it into the live job for the same document."""
        canonical = canonical_filename or filename
        existing = self.job_repo.find_live_by_canonical(canonical)
        if existing is None:
            job = self._create_job(filename, canonical)
        elif existing.status == "processing":
            job = self._queue_pending_version(existing, filename)
        else:
            job = self._supersede(existing, filename)
        self._changed(job)
        return job

    def rerun(self, job_id: str) -> Job:
        job = self.job_repo.require(job_id)
        if job.status in {"processing", "deleted"}:
            raise JobStateError(f"Cannot rerun a job that is {job.status}")
        fields: dict[str, object] = {
            "status": "queued",
            "progress_step": None,
            "error": None,
            "started_at": None,
            "finished_at": None,
        }
        if job.status == "awaiting_review":
            fields.update(selected_pdf_page=None, pdf_review_candidates=None, pdf_default_page=None)
        updated = self.job_repo.update_fields(job_id, **fields)
        self._changed(updated)
        return updated

    def stop(self, job_id: str, reason: str = "Cancelled by user request") -> Job:
        job = self.job_repo.require(job_id)
        if job.status in TERMINAL_STATUSES:
            return job
        self.job_repo.mark_cancelled(job_id, reason)
        updated = self.job_repo.require(job_id)
        self._changed(updated)
        return updated

    def confirm_pdf_page(self, job_id: str, page_number: int) -> Job:
        job = self.job_repo.require(job_id)
        if not job.is_pdf:
            raise JobStateError(f"Job {job_id} is not a PDF")
        if job.status in {"processing", "deleted"}:
            raise JobStateError(f"Cannot change the page of a job that is {job.status}")
        page = int(page_number)
        if page < 1 or (job.pdf_page_count is not None and page > job.pdf_page_count):
            raise ValidationError(f"Page {page} is outside 1..{job.pdf_page_count or '?'}")
        updated = self.job_repo.update_fields(
            job_id,
            selected_pdf_page=page,
            status="queued",
            progress_step=None,
            error=None,
            started_at=None,
            finished_at=None,
        )
        self._changed(updated)
        return updated

    def delete(self, job_id: str) -> Job:
        job = self.job_repo.require(job_id)
        if job.status == "processing":
            raise JobStateError("Cannot delete a job while it is processing")
        for name in filter(None, [job.filename, job.pending_filename]):
            self._remove_quietly(self.paths.new_dir / name)
            self._remove_quietly(self.paths.completed_dir / name)
            for preview in preview_filenames(name):
                self._remove_quietly(self.paths.previews_dir / preview)
        updated = self.job_repo.update_fields(
            job_id,
            status="deleted",
            progress_step=None,
            file_location="missing",
            pending_filename=None,
        )
        self._changed(updated)
        return updated

    def _create_job(self, filename: str, canonical: str) -> Job:
        entry_date = parse_entry_date(filename) or parse_entry_date(canonical)
        job = Job(
            id=new_uuid(),
            filename=filename,
            canonical_filename=canonical,
            entry_date=entry_date,
            status="queued" if entry_date else "error",
            progress_step=None,
            error=None if entry_date else MISSING_DATE_ERROR,
            created_at=now_utc_iso(),
            started_at=None,
            finished_at=None,
            run_count=0,
            last_run_id=None,
            rows_appended_last_run=None,
            file_location="new",
            version_count=1,
            pending_filename=None,
            selected_pdf_page=None,
            pdf_page_count=None,
            pdf_review_candidates=None,
            pdf_default_page=None,
        )
        self.job_repo.insert_job(job)
        logger.info("Registered %s as job %s", filename, job.id)
        return job

    def _queue_pending_version(self, job: Job, filename: str) -> Job:
        if job.pending_filename and job.pending_filename != filename:
            self._remove_quietly(self.paths.new_dir / job.pending_filename)
        logger.info("Job %s is busy; holding %s as its next version", job.id, filename)
        return self.job_repo.update_fields(
            job.id,
            pending_filename=filename,
            version_count=job.version_count + 1,
        )

    def _supersede(self, job: Job, filename: str) -> Job:
        if job.file_location == "new" and job.filename != filename:
            self._remove_quietly(self.paths.new_dir / job.filename)
        entry_date = job.entry_date or parse_entry_date(filename)
        logger.info("New version of %s replaces %s on job %s", job.canonical_filename, job.filename, job.id)
        return self.job_repo.update_fields(
            job.id,
            filename=filename,
            entry_date=entry_date,
            status="queued" if entry_date else "error",
            progress_step=None,
            error=None if entry_date else MISSING_DATE_ERROR,
            started_at=None,
            finished_at=None,
            file_location="new",
            version_count=job.version_count + 1,
            selected_pdf_page=None,
            pdf_page_count=None,
            pdf_review_candidates=None,
            pdf_default_page=None,
        )

    def _is_name_taken(self, name: str) -> bool:
        return (
            (self.paths.new_dir / name).exists()
            or (self.paths.completed_dir / name).exists()
            or self.job_repo.is_filename_taken(name)
        )

    def _changed(self, job: Job) -> None:
        if self.events is not None:
            self.events.publish("job", job.to_dict())
        if self.on_change is not None:
            self.on_change()

    @staticmethod
    def _remove_quietly(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
