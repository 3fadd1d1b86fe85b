from __future__ import annotations

import csv
import logging
import json
import threading
from pathlib import Path
from typing import Callable

from PIL import Image

from chartreader.application.services.completeness_service import RankInferenceRules
from chartreader.application.services.intake_service import IntakeService
from chartreader.application.services.notifications import EventHub
from chartreader.application.services.page_selection_service import PageSelector
from chartreader.application.services.project_service import ProjectService
from chartreader.application.services.worker_service import ExtractionWorker
from chartreader.core.config import AppPaths, WorkerSettings, load_paths
from chartreader.core.errors import ExtractionError, StoreError
from chartreader.domain.models.chart import ExtractedRow
from chartreader.infrastructure.db.repos.config_repo import ConfigRepo
from chartreader.infrastructure.db.repos.job_repo import JobRepo
from chartreader.infrastructure.db.repos.run_repo import RunRepo
from chartreader.infrastructure.extraction.gemini_client import ExtractionMode, ExtractionResult

PRIMARY = "gemini-2.5-flash"
FALLBACK = "fallback-model"

HEADER = "THIS WEEK LAST WEEK WKS ON CHART TITLE ARTIST LABEL"
ROWS = " ".join(f"{rank} {rank + 1} Song {rank} Artist Label" for rank in range(1, 41))


def _row(rank: int, title: str = "Disco Chart", section: str = "") -> ExtractedRow:
    return ExtractedRow(
        chart_title=title,
        chart_section=section,
        this_week_rank=str(rank),
        last_week_rank=None,
        two_weeks_ago_rank=None,
        weeks_on_chart="2",
        title=f"Song {rank}",
        artist="Artist",
        label="Label",
    )


Responder = Callable[[str, ExtractionMode], list[ExtractedRow]]


class FakeClient:
    def __init__(self, respond: Responder) -> None:
        self.respond = respond
        self.calls: list[tuple[ExtractionMode, str, str]] = []

    def extract(self, image, mime_type, model, mode, missing_groups=None, cancel_token=None) -> ExtractionResult:
        self.calls.append((mode, model, mime_type))
        rows = self.respond(model, mode)
        return ExtractionResult(rows=rows, raw_payload={"model": model, "mode": mode.value})


class FakePdf:
    def __init__(self, texts: list[str]) -> None:
        self.texts = texts

    def __enter__(self) -> "FakePdf":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    @property
    def page_count(self) -> int:
        return len(self.texts)

    def page_text(self, page_number: int) -> str:
        return self.texts[page_number - 1]

    def render_page(self, page_number: int, *, dpi: int, max_dimension: int, max_pixels: int) -> Image.Image:
        return Image.new("L", (4, 4), color=page_number)

    def render_for_model(self, page_number: int) -> Image.Image:
        return Image.new("RGB", (40, 60), color="white")


class LevelScorer:
    def score(self, image: Image.Image) -> float:
        return float(image.getpixel((0, 0)))


class Harness:
    def __init__(self, tmp_path: Path, monkeypatch, client: FakeClient) -> None:
        monkeypatch.delenv("CHARTREADER_FILES_DIR", raising=False)
        monkeypatch.delenv("GEMINI_MODEL", raising=False)
        self.paths: AppPaths = load_paths(tmp_path)
        ProjectService(self.paths).init_project()
        self.job_repo = JobRepo(self.paths.db_path)
        self.run_repo = RunRepo(self.paths.db_path)
        self.config_repo = ConfigRepo(self.paths.db_path)
        self.events = EventHub()
        self.seen: list[tuple[str, dict]] = []
        self.events.subscribe(lambda event, payload: self.seen.append((event, payload)))
        self.client = client
        self.worker = ExtractionWorker(
            paths=self.paths,
            job_repo=self.job_repo,
            run_repo=self.run_repo,
            config_repo=self.config_repo,
            client=client,
            events=self.events,
            settings=WorkerSettings(tick_seconds=0.05, fallback_model=FALLBACK),
            rank_rules=RankInferenceRules(),
            page_selector=PageSelector(LevelScorer()),
            pdf_opener=lambda path: FakePdf(["Letters to the editor", f"HOT DANCE/DISCO {HEADER} {ROWS}"]),
        )
        self.intake = IntakeService(self.paths, self.job_repo, events=self.events, on_change=self.worker.request_tick)

    def csv_records(self) -> list[dict[str, str]]:
        with self.paths.output_csv_path.open(encoding="utf-8", newline="") as handle:
            return list(csv.DictReader(handle))


def test_image_job_runs_to_completion(tmp_path: Path, monkeypatch) -> None:
    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        return [_row(1), _row(2), _row(3), _row(1, title="Hot Country Singles")]

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpeg bytes")

    assert harness.worker.run_until_idle(timeout=10) == 1
    harness.worker.stop()

    done = harness.job_repo.require(job.id)
    assert done.status == "completed"
    assert done.file_location == "completed"
    assert done.run_count == 1
    assert done.rows_appended_last_run == 3
    assert (harness.paths.completed_dir / "disco_1979-03-10.jpg").read_bytes() == b"jpeg bytes"
    assert not (harness.paths.new_dir / "disco_1979-03-10.jpg").exists()

    run = harness.run_repo.get_run(done.last_run_id or "")
    assert run is not None
    assert run.status == "completed"
    assert run.model == PRIMARY
    assert [row.this_week_rank for row in harness.run_repo.list_rows_for_run(run.run_id)] == [1, 2, 3]

    assert harness.client.calls == [(ExtractionMode.FULL, PRIMARY, "image/jpeg")]
    assert [record["title"] for record in harness.csv_records()] == ["Song 1", "Song 2", "Song 3"]
    assert any(event == "csv_updated" and payload["total"] == 3 for event, payload in harness.seen)


def test_fallback_model_fills_remaining_gaps(tmp_path: Path, monkeypatch) -> None:
    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        if mode is ExtractionMode.FULL:
            return [_row(1), _row(2), _row(4)]
        if model == FALLBACK:
            return [_row(3), _row(4)]
        return []

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    job = harness.intake.store_upload("disco_1979-03-10.png", b"png")

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    done = harness.job_repo.require(job.id)
    assert done.status == "completed"
    assert done.rows_appended_last_run == 4
    run = harness.run_repo.get_run(done.last_run_id or "")
    assert run is not None
    assert run.model == FALLBACK
    attempts = json.loads(run.raw_result_json or "{}")["attempts"]
    assert [(attempt["mode"], attempt["model"]) for attempt in attempts] == [
        ("full", PRIMARY),
        ("missing_rows", PRIMARY),
        ("missing_rows", FALLBACK),
    ]
    assert attempts[-1]["rows_added"] == 1


def test_unfilled_gaps_keep_rows_but_fail_the_job(tmp_path: Path, monkeypatch) -> None:
    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        if mode is ExtractionMode.FULL:
            return [_row(1), _row(2), _row(4)]
        raise ExtractionError(f"{model} timed out")

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    failed = harness.job_repo.require(job.id)
    assert failed.status == "error"
    assert failed.error is not None
    assert failed.error.startswith("Incomplete chart extraction: Disco Chart")
    assert failed.file_location == "new"
    assert (harness.paths.new_dir / "disco_1979-03-10.jpg").exists()

    run = harness.run_repo.get_run(failed.last_run_id or "")
    assert run is not None
    assert run.status == "error"
    assert run.rows_inserted == 3
    attempts = json.loads(run.raw_result_json or "{}")["attempts"]
    assert [attempt.get("error") for attempt in attempts[1:]] == [
        f"{PRIMARY} timed out",
        f"{FALLBACK} timed out",
    ]
    assert len(harness.csv_records()) == 3


def test_cancel_during_extraction_records_cancelled_run(tmp_path: Path, monkeypatch) -> None:
    entered = threading.Event()
    release = threading.Event()

    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        entered.set()
        release.wait(timeout=5)
        return [_row(1), _row(2)]

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    harness.config_repo.update_config(concurrency=1)
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")

    assert harness.worker.tick() == [job.id]
    assert entered.wait(timeout=5)
    other = harness.intake.store_upload("disco_1979-03-17.jpg", b"jpg")
    assert harness.worker.tick() == []

    assert harness.worker.request_cancel(job.id) is True
    release.set()
    assert harness.worker.wait_for_idle(timeout=10)

    cancelled = harness.job_repo.require(job.id)
    assert cancelled.status == "cancelled"
    assert cancelled.error == "Cancelled by user request"
    assert cancelled.last_run_id is None
    runs = harness.run_repo.list_runs_for_job(job.id)
    assert [(run.status, run.error, run.rows_inserted) for run in runs] == [
        ("cancelled", "Cancelled by user request", 0)
    ]
    assert (harness.paths.new_dir / "disco_1979-03-10.jpg").exists()
    assert harness.job_repo.require(other.id).status == "queued"
    harness.worker.stop()


def test_tick_without_work_changes_nothing(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: []))

    assert harness.worker.tick() == []
    harness.seen.clear()
    assert harness.worker.tick() == []
    assert harness.seen == []
    assert harness.job_repo.list_jobs(include_deleted=True) == []

    harness.config_repo.update_config(paused=True)
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")
    assert harness.worker.tick() == []
    assert harness.job_repo.require(job.id).status == "queued"
    assert harness.client.calls == []
    harness.worker.stop()


def test_missing_file_fails_with_location_missing(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1)]))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")
    (harness.paths.new_dir / job.filename).unlink()

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    failed = harness.job_repo.require(job.id)
    assert failed.status == "error"
    assert failed.error == "File not found in new/completed: disco_1979-03-10.jpg"
    assert failed.file_location == "missing"
    assert [run.status for run in harness.run_repo.list_runs_for_job(job.id)] == ["error"]
    assert harness.client.calls == []


def test_unsupported_file_type_fails(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1)]))
    (harness.paths.new_dir / "disco_1979-03-10.gif").write_bytes(b"gif")
    job = harness.intake.register_file("disco_1979-03-10.gif")

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    failed = harness.job_repo.require(job.id)
    assert failed.status == "error"
    assert failed.error == "Unsupported file type: image/gif"


def test_chart_filter_rejects_pages_without_dance_charts(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1, title="Hot Country Singles")]))
    job = harness.intake.store_upload("country_1979-03-10.jpg", b"jpg")

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    failed = harness.job_repo.require(job.id)
    assert failed.status == "error"
    assert failed.error == "No DANCE/DISCO chart rows found in extraction (1 rows returned)"


def test_pdf_waits_for_page_review_then_extracts_confirmed_page(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1), _row(2)]))
    job = harness.intake.store_upload("issue_1979-03-10.pdf", b"%PDF-1.4 fake")

    harness.worker.run_until_idle(timeout=10)

    waiting = harness.job_repo.require(job.id)
    assert waiting.status == "awaiting_review"
    assert waiting.progress_step == "awaiting_review"
    assert waiting.review_candidates() == [2, 1]
    assert waiting.pdf_default_page == 2
    assert waiting.selected_pdf_page is None
    assert waiting.pdf_page_count == 2
    assert harness.client.calls == []

    harness.intake.confirm_pdf_page(job.id, 2)
    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    done = harness.job_repo.require(job.id)
    assert done.status == "completed"
    assert done.rows_appended_last_run == 2
    assert len(harness.client.calls) == 1
    assert harness.client.calls[0][2] in {"image/webp", "image/jpeg"}
    assert (harness.paths.previews_dir / "issue_1979-03-10__pdf_thumb.jpg").exists()


def test_upload_during_processing_is_promoted_afterwards(tmp_path: Path, monkeypatch) -> None:
    entered = threading.Event()
    release = threading.Event()

    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        entered.set()
        release.wait(timeout=5)
        return [_row(1), _row(2)]

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"v1")

    assert harness.worker.tick() == [job.id]
    assert entered.wait(timeout=5)
    harness.intake.store_upload("disco_1979-03-10.jpg", b"v2")
    release.set()
    assert harness.worker.wait_for_idle(timeout=10)

    promoted = harness.job_repo.require(job.id)
    assert promoted.status == "queued"
    assert promoted.filename == "disco_1979-03-10_1.jpg"
    assert promoted.pending_filename is None
    assert promoted.run_count == 1
    assert (harness.paths.completed_dir / "disco_1979-03-10.jpg").read_bytes() == b"v1"
    assert (harness.paths.new_dir / "disco_1979-03-10_1.jpg").read_bytes() == b"v2"
    harness.worker.stop()


def test_stopped_review_job_scans_again_on_rerun(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1), _row(2)]))
    job = harness.intake.store_upload("issue_1979-03-10.pdf", b"%PDF-1.4 fake")
    harness.worker.run_until_idle(timeout=10)
    assert harness.job_repo.require(job.id).status == "awaiting_review"

    harness.intake.stop(job.id)
    harness.intake.rerun(job.id)
    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    again = harness.job_repo.require(job.id)
    assert again.status == "awaiting_review"
    assert again.selected_pdf_page is None
    assert again.pdf_default_page == 2
    assert harness.client.calls == []


def test_cancel_after_rows_written_leaves_run_inactive(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1), _row(2)]))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")
    insert_run_with_rows = harness.run_repo.insert_run_with_rows

    def insert_then_cancel(run, rows) -> None:
        insert_run_with_rows(run, rows)
        harness.worker.request_cancel(job.id, "Stopped after write")

    monkeypatch.setattr(harness.run_repo, "insert_run_with_rows", insert_then_cancel)

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    cancelled = harness.job_repo.require(job.id)
    assert cancelled.status == "cancelled"
    assert cancelled.error == "Stopped after write"
    assert cancelled.last_run_id is None
    assert cancelled.run_count == 0
    runs = harness.run_repo.list_runs_for_job(job.id)
    assert [(run.status, run.error, run.rows_inserted) for run in runs] == [
        ("cancelled", "Stopped after write", 2)
    ]
    assert (harness.paths.new_dir / "disco_1979-03-10.jpg").exists()
    assert not harness.paths.output_csv_path.exists()
    assert not any(event == "csv_updated" for event, _ in harness.seen)


def test_stop_from_another_process_cancels_running_job(tmp_path: Path, monkeypatch) -> None:
    entered = threading.Event()
    release = threading.Event()

    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        entered.set()
        release.wait(timeout=5)
        return [_row(1), _row(2)]

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")

    assert harness.worker.tick() == [job.id]
    assert entered.wait(timeout=5)
    assert JobRepo(harness.paths.db_path).mark_cancelled(job.id, "Stopped from another shell")
    release.set()
    assert harness.worker.wait_for_idle(timeout=10)
    harness.worker.stop()

    cancelled = harness.job_repo.require(job.id)
    assert cancelled.status == "cancelled"
    assert cancelled.error == "Stopped from another shell"
    assert cancelled.last_run_id is None
    assert [run.status for run in harness.run_repo.list_runs_for_job(job.id)] == ["cancelled"]
    assert harness.client.calls == [(ExtractionMode.FULL, PRIMARY, "image/jpeg")]


def test_start_requeues_jobs_left_processing(tmp_path: Path, monkeypatch) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: []))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")
    assert [claimed.id for claimed in harness.job_repo.claim_queued(1)] == [job.id]
    harness.config_repo.update_config(paused=True)

    harness.worker.start()
    harness.worker.stop()

    recovered = harness.job_repo.require(job.id)
    assert recovered.status == "queued"
    assert recovered.progress_step is None
    assert recovered.started_at is None
    assert harness.client.calls == []


def test_failed_full_extraction_is_kept_in_run_audit(tmp_path: Path, monkeypatch) -> None:
    def respond(model: str, mode: ExtractionMode) -> list[ExtractedRow]:
        raise ExtractionError("model unavailable")

    harness = Harness(tmp_path, monkeypatch, FakeClient(respond))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")

    harness.worker.run_until_idle(timeout=10)
    harness.worker.stop()

    failed = harness.job_repo.require(job.id)
    assert failed.status == "error"
    assert failed.error == "model unavailable"
    runs = harness.run_repo.list_runs_for_job(job.id)
    assert [run.status for run in runs] == ["error"]
    attempts = json.loads(runs[0].raw_result_json or "{}")["attempts"]
    assert attempts == [{"mode": "full", "model": PRIMARY, "error": "model unavailable"}]


def test_store_failure_while_recording_outcome_is_logged(tmp_path: Path, monkeypatch, caplog) -> None:
    harness = Harness(tmp_path, monkeypatch, FakeClient(lambda model, mode: [_row(1)]))
    job = harness.intake.store_upload("disco_1979-03-10.jpg", b"jpg")
    (harness.paths.new_dir / job.filename).unlink()

    def broken_insert(run) -> None:
        raise StoreError("database is locked")

    monkeypatch.setattr(harness.run_repo, "insert_run", broken_insert)
    caplog.set_level(logging.ERROR, logger="chartreader.application.services.worker_service")

    assert harness.worker.tick() == [job.id]
    assert harness.worker.wait_for_idle(timeout=10)
    harness.worker.stop()

    assert any("Could not record the outcome of job" in record.getMessage() for record in caplog.records)
    assert harness.run_repo.list_runs_for_job(job.id) == []
