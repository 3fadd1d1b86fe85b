from __future__ import annotations

import sqlite3
from pathlib import Path

from chartreader.core.errors import StoreError
from chartreader.domain.models.chart import ChartRow
from chartreader.domain.models.run import RUN_STATUSES, Run
from chartreader.infrastructure.db.sqlite import get_connection, immediate_transaction

_INSERT_RUN_SQL = """
    INSERT INTO runs (
        run_id,
        job_id,
        model,
        extracted_at,
        rows_inserted,
        raw_result_json,
        status,
        error
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

_INSERT_ROW_SQL = """
    INSERT INTO chart_rows (
        run_id,
        job_id,
        entry_date,
        chart_title,
        chart_section,
        this_week_rank,
        last_week_rank,
        two_weeks_ago_rank,
        weeks_on_chart,
        title,
        artist,
        label,
        source_file,
        extracted_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class RunRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert_run(self, run: Run) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(_INSERT_RUN_SQL, self._run_params(run))
            conn.commit()

    def insert_run_with_rows(self, run: Run, rows: list[ChartRow]) -> None:
        """Write a run and its rows in one transaction; either all land or none."""
        with immediate_transaction(self.db_path) as conn:
            conn.execute(_INSERT_RUN_SQL, self._run_params(run))
            conn.executemany(
                _INSERT_ROW_SQL,
                [
                    (
                        row.run_id,
                        row.job_id,
                        row.entry_date,
                        row.chart_title,
                        row.chart_section,
                        row.this_week_rank,
                        row.last_week_rank,
                        row.two_weeks_ago_rank,
                        row.weeks_on_chart,
                        row.title,
                        row.artist,
                        row.label,
                        row.source_file,
                        row.extracted_at,
                    )
                    for row in rows
                ],
            )

    def update_run_status(self, run_id: str, *, status: str, error: str | None) -> None:
        if status not in RUN_STATUSES:
            raise StoreError(f"Unknown run status: {status}")
        with get_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE runs SET status = ?, error = ? WHERE run_id = ?",
                (status, error, run_id),
            )
            conn.commit()

    def update_source_file(self, run_id: str, source_file: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE chart_rows SET source_file = ? WHERE run_id = ?",
                (source_file, run_id),
            )
            conn.commit()

    def get_run(self, run_id: str) -> Run | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        return self._to_run(row) if row else None

    def list_runs_for_job(self, job_id: str) -> list[Run]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM runs
                WHERE job_id = ?
                ORDER BY extracted_at DESC, rowid DESC
                """,
                (job_id,),
            ).fetchall()
        return [self._to_run(row) for row in rows]

    def list_rows_for_run(self, run_id: str) -> list[ChartRow]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM chart_rows WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._to_chart_row(row) for row in rows]

    def list_active_rows(self) -> list[ChartRow]:
        """Rows of each live job's active run, one job per canonical filename."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT r.*
                FROM chart_rows r
                JOIN jobs j ON j.id = r.job_id AND j.last_run_id = r.run_id
                WHERE j.status != 'deleted'
                  AND j.id = (
                      SELECT j2.id
                      FROM jobs j2
                      WHERE j2.canonical_filename = j.canonical_filename
                        AND j2.status != 'deleted'
                        AND j2.last_run_id IS NOT NULL
                      ORDER BY j2.created_at ASC, j2.id ASC
                      LIMIT 1
                  )
                ORDER BY r.entry_date ASC, r.source_file ASC, r.id ASC
                """
            ).fetchall()
        return [self._to_chart_row(row) for row in rows]

    @staticmethod
    def _run_params(run: Run) -> tuple[object, ...]:
        return (
            run.run_id,
            run.job_id,
            run.model,
            run.extracted_at,
            run.rows_inserted,
            run.raw_result_json,
            run.status,
            run.error,
        )

    @staticmethod
    def _to_run(row: sqlite3.Row) -> Run:
        return Run(
            run_id=str(row["run_id"]),
            job_id=str(row["job_id"]),
            model=str(row["model"]),
            extracted_at=str(row["extracted_at"]),
            rows_inserted=int(row["rows_inserted"] or 0),
            raw_result_json=row["raw_result_json"],
            status=str(row["status"] or "completed"),
            error=row["error"],
        )

    @staticmethod
    def _to_chart_row(row: sqlite3.Row) -> ChartRow:
        return ChartRow(
            id=int(row["id"]),
            run_id=str(row["run_id"]),
            job_id=str(row["job_id"]),
            entry_date=str(row["entry_date"]),
            chart_title=str(row["chart_title"]),
            chart_section=str(row["chart_section"] or ""),
            this_week_rank=row["this_week_rank"],
            last_week_rank=row["last_week_rank"],
            two_weeks_ago_rank=row["two_weeks_ago_rank"],
            weeks_on_chart=row["weeks_on_chart"],
            title=str(row["title"]),
            artist=str(row["artist"]),
            label=str(row["label"]),
            source_file=str(row["source_file"]),
            extracted_at=str(row["extracted_at"]),
        )
