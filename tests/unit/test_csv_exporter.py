from __future__ import annotations

import csv
from pathlib import Path

from chartreader.domain.models.chart import ChartRow
from chartreader.domain.models.job import Job
from chartreader.domain.models.run import Run
from chartreader.infrastructure.db.repos.job_repo import JobRepo
from chartreader.infrastructure.db.repos.run_repo import RunRepo
from chartreader.infrastructure.db.sqlite import initialize_schema
from chartreader.infrastructure.export.csv_exporter import CSV_COLUMNS, CsvExporter


def _bootstrap(tmp_path: Path) -> tuple[JobRepo, RunRepo]:
    db_path = tmp_path / "app.db"
    initialize_schema(db_path)
    return JobRepo(db_path), RunRepo(db_path)


def _job(job_id: str, filename: str, canonical: str, entry_date: str, created_at: str) -> Job:
    return Job(
        id=job_id,
        filename=filename,
        canonical_filename=canonical,
        entry_date=entry_date,
        status="completed",
        progress_step=None,
        error=None,
        created_at=created_at,
        started_at=None,
        finished_at=None,
        run_count=0,
        last_run_id=None,
        rows_appended_last_run=None,
        file_location="completed",
        version_count=1,
        pending_filename=None,
        selected_pdf_page=None,
        pdf_page_count=None,
        pdf_review_candidates=None,
    )


def _add_run(run_repo: RunRepo, job: Job, run_id: str, titles: list[str]) -> None:
    rows = [
        ChartRow(
            run_id=run_id,
            job_id=job.id,
            entry_date=job.entry_date or "",
            chart_title="Disco Top 80",
            chart_section="",
            this_week_rank=index,
            last_week_rank=None,
            two_weeks_ago_rank=index + 1,
            weeks_on_chart=3,
            title=title,
            artist="Artist",
            label="Label",
            source_file=job.filename,
            extracted_at="2026-01-01T00:00:00.000Z",
        )
        for index, title in enumerate(titles, start=1)
    ]
    run_repo.insert_run_with_rows(
        Run(
            run_id=run_id,
            job_id=job.id,
            model="gemini-2.5-flash",
            extracted_at="2026-01-01T00:00:00.000Z",
            rows_inserted=len(rows),
            raw_result_json="{}",
        ),
        rows,
    )


def test_export_uses_only_active_runs_of_live_jobs(tmp_path: Path) -> None:
    job_repo, run_repo = _bootstrap(tmp_path)
    older = _job("a", "b_1979-03-17.jpg", "b_1979-03-17.jpg", "1979-03-17", "2026-01-01T00:00:01.000Z")
    newer_duplicate = _job("b", "b_1979-03-17_1.jpg", "b_1979-03-17.jpg", "1979-03-17", "2026-01-01T00:00:02.000Z")
    rerun = _job("c", "a_1979-03-10.jpg", "a_1979-03-10.jpg", "1979-03-10", "2026-01-01T00:00:03.000Z")
    deleted = _job("d", "c_1979-03-24.jpg", "c_1979-03-24.jpg", "1979-03-24", "2026-01-01T00:00:04.000Z")
    for job in (older, newer_duplicate, rerun, deleted):
        job_repo.insert_job(job)

    _add_run(run_repo, older, "run-a", ["Keep A"])
    _add_run(run_repo, newer_duplicate, "run-b", ["Shadowed B"])
    _add_run(run_repo, rerun, "run-c1", ["Stale C"])
    _add_run(run_repo, rerun, "run-c2", ["Fresh C1", "Fresh C2"])
    _add_run(run_repo, deleted, "run-d", ["Deleted D"])

    with_active = {"a": "run-a", "b": "run-b", "c": "run-c2", "d": "run-d"}
    for job_id, run_id in with_active.items():
        job_repo.update_fields(job_id, status="processing")
        job_repo.mark_completed(
            job_id,
            run_id=run_id,
            rows_appended=1,
            filename=job_repo.require(job_id).filename,
            file_location="completed",
        )
    job_repo.update_fields("d", status="deleted")

    output = tmp_path / "files" / "output.csv"
    result = CsvExporter(run_repo, output).export_latest_runs_only()

    with output.open(encoding="utf-8", newline="") as handle:
        reader = csv.DictReader(handle)
        assert tuple(reader.fieldnames or ()) == CSV_COLUMNS
        records = list(reader)

    assert result.total_rows == 3
    assert result.to_dict()["total"] == 3
    assert [record["title"] for record in records] == ["Fresh C1", "Fresh C2", "Keep A"]
    assert records[0]["entry_date"] == "1979-03-10"
    assert records[0]["this_week_rank"] == "1"
    assert records[0]["last_week_rank"] == ""
    assert records[0]["two_weeks_ago_rank"] == "2"
    assert records[0]["run_id"] == "run-c2"
    assert not (output.parent / ".output.csv.tmp").exists()


def test_export_with_no_runs_writes_header_only(tmp_path: Path) -> None:
    _, run_repo = _bootstrap(tmp_path)
    output = tmp_path / "output.csv"

    result = CsvExporter(run_repo, output).export_latest_runs_only()

    assert result.total_rows == 0
    assert output.read_text(encoding="utf-8").strip() == ",".join(CSV_COLUMNS)
