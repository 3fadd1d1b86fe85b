from __future__ import annotations

import json
import logging
import mimetypes
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from chartreader.application.services.chart_filter import filter_rows_to_dance_charts
from chartreader.application.services.completeness_service import (
    RankInferenceRules,
    find_missing_groups,
    merge_missing_rows,
    summarize_missing_groups,
)
from chartreader.application.services.intake_service import MISSING_DATE_ERROR
from chartreader.application.services.notifications import EventHub
from chartreader.application.services.page_selection_service import PageSelector
from chartreader.core.cancellation import DEFAULT_CANCEL_REASON, CancellationToken
from chartreader.core.config import AppPaths, WorkerSettings
from chartreader.core.errors import CompletenessError, ExtractionError, JobCancelledError, ValidationError
from chartreader.core.files import ensure_directory, make_unique_filename, move_file, write_bytes_atomic
from chartreader.core.ids import new_run_id
from chartreader.core.text import coerce_rank, parse_entry_date
from chartreader.core.time import now_utc_iso
from chartreader.domain.models.chart import ChartRow, ExtractedRow, MissingChartGroup
from chartreader.domain.models.job import Job
from chartreader.domain.models.run import Run, WorkerConfig
from chartreader.infrastructure.db.repos.config_repo import ConfigRepo
from chartreader.infrastructure.db.repos.job_repo import JobRepo
from chartreader.infrastructure.db.repos.run_repo import RunRepo
from chartreader.infrastructure.export.csv_exporter import CsvExporter
from chartreader.infrastructure.extraction.gemini_client import ExtractionClient, ExtractionMode
from chartreader.infrastructure.pdf.pdf_document import (
    PdfDocument,
    encode_model_image,
    make_thumbnail,
    raster_preview_filename,
    thumbnail_filename,
)

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
STORE_POLL_INTERVAL_SECONDS = 0.25


def mime_type_for(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix == ".pdf":
        return PDF_MIME_TYPE
    if suffix in IMAGE_MIME_TYPES:
        return IMAGE_MIME_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(filename)
    raise ValidationError(f"Unsupported file type: {guessed or 'application/octet-stream'}")


@dataclass(slots=True)
class _JobRun:
    """Per-claim bookkeeping for one pass of the pipeline."""

    job: Job
    token: CancellationToken
    model: str
    job_repo: JobRepo
    run_id: str = field(default_factory=new_run_id)
    model_used: str = ""
    attempts: list[dict[str, Any]] = field(default_factory=list)
    payloads: list[dict[str, Any]] = field(default_factory=list)
    run_persisted: bool = False
    rows_persisted: int = 0
    last_store_poll: float = 0.0

    def __post_init__(self) -> None:
        self.model_used = self.model

    def checkpoint(self, context: str) -> None:
        self.token.raise_if_cancelled(context)
        now_mono = time.monotonic()
        if (now_mono - self.last_store_poll) < STORE_POLL_INTERVAL_SECONDS:
            return
        self.last_store_poll = now_mono
        status = self.job_repo.get_status(self.job.id)
        if status != "processing":
            self.token.cancel(DEFAULT_CANCEL_REASON)
            self.token.raise_if_cancelled(context)

    def raw_result_json(self, missing_summary: str | None = None) -> str:
        return json.dumps(
            {
                "model": self.model_used,
                "attempts": self.attempts,
                "responses": self.payloads,
                "missing": missing_summary,
            },
            ensure_ascii=True,
            sort_keys=True,
        )


class ExtractionWorker:
    """Claims queued jobs and runs each one through the extraction pipeline on its own thread."""

    def __init__(
        self,
        *,
        paths: AppPaths,
        job_repo: JobRepo,
        run_repo: RunRepo,
        config_repo: ConfigRepo,
        client: ExtractionClient,
        exporter: CsvExporter | None = None,
        events: EventHub | None = None,
        settings: WorkerSettings | None = None,
        rank_rules: RankInferenceRules | None = None,
        page_selector: PageSelector | None = None,
        pdf_opener: Callable[[Path], PdfDocument] = PdfDocument.open,
    ) -> None:
        self.paths = paths
        self.job_repo = job_repo
        self.run_repo = run_repo
        self.config_repo = config_repo
        self.client = client
        self.exporter = exporter or CsvExporter(run_repo, paths.output_csv_path)
        self.events = events or EventHub()
        self.settings = settings or WorkerSettings.from_env()
        self.rank_rules = rank_rules or RankInferenceRules.from_env()
        self.page_selector = page_selector or PageSelector()
        self.pdf_opener = pdf_opener
        self._tokens: dict[str, CancellationToken] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._poller: threading.Thread | None = None
        self._last_config: WorkerConfig | None = None
        self._export_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="csv-export")

    def start(self) -> None:
        if self._poller is not None and self._poller.is_alive():
            return
        recovered = self.job_repo.requeue_interrupted()
        if recovered:
            logger.info("Requeued %s job(s) left processing by a previous worker", recovered)
        self._stop.clear()
        self._poller = threading.Thread(target=self._poll_loop, daemon=True, name="extraction-worker")
        self._poller.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._poller is not None and self._poller.is_alive():
            self._poller.join(timeout=timeout)
        self.wait_for_idle(timeout)
        self._export_executor.shutdown(wait=True)

    def request_tick(self) -> None:
        self._wakeup.set()

    def tick(self) -> list[str]:
        """Claim as many queued jobs as there are free slots and start them."""
        with self._tick_lock:
            config = self.config_repo.get_config()
            if config != self._last_config:
                self._last_config = config
                self.events.publish(
                    "config",
                    {"concurrency": config.concurrency, "paused": config.paused, "model": config.model},
                )
            if config.paused:
                return []
            with self._lock:
                live = len(self._tokens)
            available = config.concurrency - max(self.job_repo.count_processing(), live)
            if available <= 0:
                return []
            claimed = self.job_repo.claim_queued(available)
            for job in claimed:
                token = CancellationToken()
                thread = threading.Thread(
                    target=self._run_job,
                    args=(job, token, config.model),
                    daemon=True,
                    name=f"extract-{job.id[:8]}",
                )
                with self._lock:
                    self._tokens[job.id] = token
                    self._threads[job.id] = thread
                self.events.publish("job", job.to_dict())
                logger.info("Claimed job %s (%s) with %s", job.id, job.filename, config.model)
                thread.start()
            return [job.id for job in claimed]

    def request_cancel(self, job_id: str, reason: str = DEFAULT_CANCEL_REASON) -> bool:
        changed = self.job_repo.mark_cancelled(job_id, reason)
        with self._lock:
            token = self._tokens.get(job_id)
        if token is not None:
            token.cancel(reason)
        if changed:
            self._publish_job(job_id)
        self._wakeup.set()
        return changed or token is not None

    def wait_for_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                threads = list(self._threads.values())
            if not threads:
                break
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(timeout=remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._lock:
                    if self._threads:
                        return False
                break
        try:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            self._export_executor.submit(lambda: None).result(timeout=remaining)
        except RuntimeError:
            pass
        except FutureTimeoutError:
            return False
        return True

    def run_until_idle(self, timeout: float | None = None) -> int:
        """Tick until nothing is left to claim; returns the number of jobs processed."""
        processed = 0
        while True:
            claimed = self.tick()
            if not claimed:
                break
            processed += len(claimed)
            if not self.wait_for_idle(timeout):
                break
        self.wait_for_idle(timeout)
        return processed

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Worker tick failed")
            self._wakeup.wait(timeout=self.settings.tick_seconds)
            self._wakeup.clear()

    def _run_job(self, job: Job, token: CancellationToken, model: str) -> None:
        run = _JobRun(job=job, token=token, model=model, job_repo=self.job_repo)
        try:
            self._process_job(run)
        except Exception as exc:
            try:
                self._record_outcome(run, exc)
            except Exception:
                logger.exception("Could not record the outcome of job %s", job.id)
        finally:
            with self._lock:
                self._tokens.pop(job.id, None)
                self._threads.pop(job.id, None)
            try:
                self._promote_pending(job.id)
                self._publish_job(job.id)
            except Exception:
                logger.exception("Could not promote or publish job %s", job.id)
            self._wakeup.set()

    def _record_outcome(self, run: _JobRun, exc: Exception) -> None:
        job_id = run.job.id
        if isinstance(exc, JobCancelledError):
            self._record_cancelled(run, str(exc) or run.token.reason)
        elif run.token.cancelled or self.job_repo.get_status(job_id) == "cancelled":
            self._record_cancelled(run, run.token.reason)
        else:
            if isinstance(exc, (ValidationError, CompletenessError)):
                logger.warning("Extraction job %s failed: %s", job_id, exc)
            else:
                logger.error("Extraction job failed: %s", job_id, exc_info=exc)
            self._record_failure(run, str(exc) or exc.__class__.__name__)

    def _process_job(self, run: _JobRun) -> None:
        job = run.job
        self._step(run, "validating_file")
        source_path, location = self._locate_file(job)
        entry_date = job.entry_date or parse_entry_date(job.filename)
        if not entry_date:
            raise ValidationError(MISSING_DATE_ERROR)
        mime_type = mime_type_for(job.filename)
        run.checkpoint("file validation")

        if mime_type == PDF_MIME_TYPE:
            if job.selected_pdf_page is None:
                self._step(run, "selecting_pdf_page")
                self._suspend_for_review(run, source_path)
                return
            self._step(run, "rendering_pdf_page")
            image, mime_type = self._render_pdf_page(run, source_path, job.selected_pdf_page)
        else:
            image = source_path.read_bytes()

        self._step(run, "extracting")
        rows = self._extract_full(run, image, mime_type)

        self._step(run, "checking_completeness")
        rows, missing = self._fill_gaps(run, rows, image, mime_type)
        summary = summarize_missing_groups(missing) if missing else None

        run.checkpoint("before writing rows")
        self._step(run, "writing_db")
        self._persist(run, rows, entry_date, summary)
        run.checkpoint("after writing rows")

        if summary:
            raise CompletenessError(f"Incomplete chart extraction: {summary}")

        self._step(run, "moving_file")
        final_name, final_location = self._move_to_completed(run, source_path, location)

        self._step(run, "exporting_csv")
        completed = self.job_repo.mark_completed(
            job.id,
            run_id=run.run_id,
            rows_appended=run.rows_persisted,
            filename=final_name,
            file_location=final_location,
        )
        if not completed:
            raise JobCancelledError(DEFAULT_CANCEL_REASON, checkpoint="completion")
        logger.info("Job %s completed with %s rows (%s)", job.id, run.rows_persisted, run.model_used)
        self._enqueue_export()

    def _step(self, run: _JobRun, step: str) -> None:
        run.token.raise_if_cancelled(step)
        if not self.job_repo.set_progress(run.job.id, step):
            run.token.cancel(DEFAULT_CANCEL_REASON)
            run.token.raise_if_cancelled(step)
        self._publish_job(run.job.id)

    def _locate_file(self, job: Job) -> tuple[Path, str]:
        for directory, location in ((self.paths.new_dir, "new"), (self.paths.completed_dir, "completed")):
            candidate = directory / job.filename
            if candidate.is_file():
                if job.file_location != location:
                    self.job_repo.update_fields(job.id, file_location=location)
                return candidate, location
        self.job_repo.update_fields(job.id, file_location="missing")
        raise ValidationError(f"File not found in new/completed: {job.filename}")

    def _suspend_for_review(self, run: _JobRun, source_path: Path) -> None:
        with self.pdf_opener(source_path) as document:
            candidates = self.page_selector.select_candidates(
                document,
                max_pages_to_scan=self.settings.pdf_max_scan_pages,
                candidate_limit=self.settings.pdf_candidate_limit,
                cancel_token=run.token,
            )
            page_count = document.page_count
        pages = [candidate.page_number for candidate in candidates] or [1]
        run.checkpoint("page review hand-off")
        suspended = self.job_repo.mark_awaiting_review(
            run.job.id,
            candidates=pages,
            page_count=page_count,
            default_page=pages[0],
        )
        if not suspended:
            raise JobCancelledError(DEFAULT_CANCEL_REASON, checkpoint="page review hand-off")
        logger.info("Job %s awaits page review; candidates %s of %s pages", run.job.id, pages, page_count)

    def _render_pdf_page(self, run: _JobRun, source_path: Path, page_number: int) -> tuple[bytes, str]:
        with self.pdf_opener(source_path) as document:
            if page_number > document.page_count:
                raise ValidationError(
                    f"Selected PDF page {page_number} is outside 1..{document.page_count}"
                )
            rendered = document.render_for_model(page_number)
        encoded = encode_model_image(rendered)
        thumbnail = make_thumbnail(rendered)
        ensure_directory(self.paths.previews_dir)
        write_bytes_atomic(
            self.paths.previews_dir / raster_preview_filename(run.job.filename, encoded.mime_type),
            encoded.data,
        )
        write_bytes_atomic(self.paths.previews_dir / thumbnail_filename(run.job.filename), thumbnail.data)
        logger.debug(
            "Rendered page %s of %s at %sx%s", page_number, run.job.filename, encoded.width, encoded.height
        )
        return encoded.data, encoded.mime_type

    def _extract_full(self, run: _JobRun, image: bytes, mime_type: str) -> list[ExtractedRow]:
        run.checkpoint("before extraction")
        try:
            result = self.client.extract(image, mime_type, run.model, ExtractionMode.FULL, cancel_token=run.token)
        except JobCancelledError:
            raise
        except Exception as exc:
            run.attempts.append(
                {"mode": ExtractionMode.FULL.value, "model": run.model, "error": str(exc) or exc.__class__.__name__}
            )
            raise
        run.payloads.append(result.raw_payload)
        rows = list(result.rows)
        attempt: dict[str, Any] = {
            "mode": ExtractionMode.FULL.value,
            "model": run.model,
            "rows_returned": len(rows),
        }
        if self.settings.chart_filter_enabled:
            filtered = filter_rows_to_dance_charts(rows)
            attempt["filter_mode"] = filtered.mode
            attempt["rows_kept"] = len(filtered.rows)
            run.attempts.append(attempt)
            if not filtered.rows:
                raise ExtractionError(
                    f"No DANCE/DISCO chart rows found in extraction ({len(rows)} rows returned)"
                )
            return filtered.rows
        run.attempts.append(attempt)
        if not rows:
            raise ExtractionError("Extraction returned no chart rows")
        return rows

    def _fill_gaps(
        self,
        run: _JobRun,
        rows: list[ExtractedRow],
        image: bytes,
        mime_type: str,
    ) -> tuple[list[ExtractedRow], list[MissingChartGroup]]:
        hint = run.job.canonical_filename or run.job.filename
        missing = find_missing_groups(rows, hint, self.rank_rules)
        models = [run.model]
        if self.settings.fallback_model and self.settings.fallback_model != run.model:
            models.append(self.settings.fallback_model)

        for model in models:
            if not missing:
                break
            run.checkpoint("before targeted extraction")
            attempt: dict[str, Any] = {
                "mode": ExtractionMode.MISSING_ROWS.value,
                "model": model,
                "missing_before": summarize_missing_groups(missing),
            }
            try:
                result = self.client.extract(
                    image,
                    mime_type,
                    model,
                    ExtractionMode.MISSING_ROWS,
                    missing_groups=missing,
                    cancel_token=run.token,
                )
            except JobCancelledError:
                raise
            except ExtractionError as exc:
                logger.warning("Targeted extraction with %s failed for job %s: %s", model, run.job.id, exc)
                attempt["error"] = str(exc)
                run.attempts.append(attempt)
                continue

            run.payloads.append(result.raw_payload)
            merged = merge_missing_rows(rows, result.rows, missing)
            rows = merged.rows
            if merged.rows_added and model != run.model:
                run.model_used = model
            missing = find_missing_groups(rows, hint, self.rank_rules)
            attempt.update(
                rows_returned=len(result.rows),
                rows_added=merged.rows_added,
                missing_after=summarize_missing_groups(missing) if missing else None,
            )
            run.attempts.append(attempt)
        return rows, missing

    def _persist(
        self,
        run: _JobRun,
        rows: list[ExtractedRow],
        entry_date: str,
        missing_summary: str | None,
    ) -> None:
        extracted_at = now_utc_iso()
        chart_rows = [
            ChartRow(
                run_id=run.run_id,
                job_id=run.job.id,
                entry_date=entry_date,
                chart_title=row.chart_title,
                chart_section=row.chart_section,
                this_week_rank=coerce_rank(row.this_week_rank),
                last_week_rank=coerce_rank(row.last_week_rank),
                two_weeks_ago_rank=coerce_rank(row.two_weeks_ago_rank),
                weeks_on_chart=coerce_rank(row.weeks_on_chart),
                title=row.title,
                artist=row.artist,
                label=row.label,
                source_file=run.job.filename,
                extracted_at=extracted_at,
            )
            for row in rows
        ]
        record = Run(
            run_id=run.run_id,
            job_id=run.job.id,
            model=run.model_used,
            extracted_at=extracted_at,
            rows_inserted=len(chart_rows),
            raw_result_json=run.raw_result_json(missing_summary),
            status="error" if missing_summary else "completed",
            error=f"Incomplete chart extraction: {missing_summary}" if missing_summary else None,
        )
        self.run_repo.insert_run_with_rows(record, chart_rows)
        run.run_persisted = True
        run.rows_persisted = len(chart_rows)

    def _move_to_completed(self, run: _JobRun, source_path: Path, location: str) -> tuple[str, str]:
        job = run.job
        if location == "completed":
            return job.filename, "completed"
        completed_dir = self.paths.completed_dir
        ensure_directory(completed_dir)

        def is_taken(name: str) -> bool:
            return (completed_dir / name).exists() or self.job_repo.is_filename_taken(
                name, exclude_job_id=job.id
            )

        target_name = make_unique_filename(job.filename, is_taken)
        move_file(source_path, completed_dir / target_name)
        if target_name != job.filename:
            self.run_repo.update_source_file(run.run_id, target_name)
            logger.info("Stored %s as completed/%s", job.filename, target_name)
        return target_name, "completed"

    def _record_cancelled(self, run: _JobRun, reason: str) -> None:
        logger.info("Job %s cancelled: %s", run.job.id, reason)
        self.job_repo.mark_cancelled(run.job.id, reason)
        if run.run_persisted:
            self.run_repo.update_run_status(run.run_id, status="cancelled", error=reason)
            return
        self.run_repo.insert_run(self._empty_run(run, status="cancelled", error=reason))

    def _record_failure(self, run: _JobRun, message: str) -> None:
        if run.run_persisted:
            self.run_repo.update_run_status(run.run_id, status="error", error=message)
            if run.rows_persisted > 0:
                self.job_repo.mark_error(
                    run.job.id,
                    message,
                    run_id=run.run_id,
                    rows_appended=run.rows_persisted,
                )
                self._enqueue_export()
                return
        else:
            self.run_repo.insert_run(self._empty_run(run, status="error", error=message))
        self.job_repo.mark_error(run.job.id, message)

    @staticmethod
    def _empty_run(run: _JobRun, *, status: str, error: str) -> Run:
        return Run(
            run_id=run.run_id,
            job_id=run.job.id,
            model=run.model_used,
            extracted_at=now_utc_iso(),
            rows_inserted=0,
            raw_result_json=run.raw_result_json(),
            status=status,
            error=error,
        )

    def _promote_pending(self, job_id: str) -> None:
        current = self.job_repo.get(job_id)
        if current is None or not current.pending_filename:
            return
        previous_name = current.filename
        promoted = self.job_repo.promote_pending(job_id, entry_date=parse_entry_date(current.pending_filename))
        if promoted is None:
            return
        if current.file_location == "new" and previous_name != promoted.filename:
            (self.paths.new_dir / previous_name).unlink(missing_ok=True)
        logger.info("Job %s picked up newer upload %s", job_id, promoted.filename)

    def _enqueue_export(self) -> None:
        try:
            self._export_executor.submit(self._export_csv)
        except RuntimeError:
            logger.warning("CSV export skipped; worker is shutting down")

    def _export_csv(self) -> None:
        try:
            result = self.exporter.export_latest_runs_only()
        except Exception as exc:
            logger.exception("CSV export failed")
            self.events.publish("csv_error", {"message": str(exc)})
            return
        logger.debug("CSV export wrote %s rows", result.total_rows)
        self.events.publish("csv_updated", result.to_dict())

    def _publish_job(self, job_id: str) -> None:
        job = self.job_repo.get(job_id)
        if job is not None:
            self.events.publish("job", job.to_dict())
