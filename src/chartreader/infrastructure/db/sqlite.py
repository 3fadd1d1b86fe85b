from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from chartreader.core.files import strip_version_suffix

DEFAULT_SQLITE_CONNECT_TIMEOUT_SECONDS = 30.0
DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30_000

SCHEMA_PATH = Path(__file__).resolve().with_name("schema.sql")


def _read_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _sqlite_connect_timeout_seconds() -> float:
    return _read_float_env("CHARTREADER_SQLITE_CONNECT_TIMEOUT_SECONDS", DEFAULT_SQLITE_CONNECT_TIMEOUT_SECONDS)


def _sqlite_busy_timeout_ms() -> int:
    return _read_int_env("CHARTREADER_SQLITE_BUSY_TIMEOUT_MS", DEFAULT_SQLITE_BUSY_TIMEOUT_MS)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute(f"PRAGMA busy_timeout = {_sqlite_busy_timeout_ms()};")


def get_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=_sqlite_connect_timeout_seconds())
    conn.row_factory = sqlite3.Row
    _configure_connection(conn)
    return conn


@contextmanager
def immediate_transaction(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection holding the write lock until commit or rollback."""
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()


def initialize_schema(db_path: Path, schema_path: Path = SCHEMA_PATH) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with get_connection(db_path) as conn:
        conn.executescript(schema_path.read_text(encoding="utf-8"))
        _apply_lightweight_migrations(conn)
        conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row["name"] == column for row in rows)


def _apply_lightweight_migrations(conn: sqlite3.Connection) -> None:
    if not _column_exists(conn, "jobs", "canonical_filename"):
        conn.execute("ALTER TABLE jobs ADD COLUMN canonical_filename TEXT")
    if not _column_exists(conn, "jobs", "version_count"):
        conn.execute("ALTER TABLE jobs ADD COLUMN version_count INTEGER NOT NULL DEFAULT 1")
    if not _column_exists(conn, "jobs", "pending_filename"):
        conn.execute("ALTER TABLE jobs ADD COLUMN pending_filename TEXT")
    if not _column_exists(conn, "jobs", "selected_pdf_page"):
        conn.execute("ALTER TABLE jobs ADD COLUMN selected_pdf_page INTEGER")
    if not _column_exists(conn, "jobs", "pdf_page_count"):
        conn.execute("ALTER TABLE jobs ADD COLUMN pdf_page_count INTEGER")
    if not _column_exists(conn, "jobs", "pdf_review_candidates"):
        conn.execute("ALTER TABLE jobs ADD COLUMN pdf_review_candidates TEXT")
    if not _column_exists(conn, "jobs", "pdf_default_page"):
        conn.execute("ALTER TABLE jobs ADD COLUMN pdf_default_page INTEGER")
        # Older databases kept the suggested page in selected_pdf_page.
        conn.execute(
            """
            UPDATE jobs
            SET pdf_default_page = selected_pdf_page,
                selected_pdf_page = NULL
            WHERE status = 'awaiting_review'
            """
        )
    if not _column_exists(conn, "runs", "status"):
        conn.execute("ALTER TABLE runs ADD COLUMN status TEXT NOT NULL DEFAULT 'completed'")
    if not _column_exists(conn, "runs", "error"):
        conn.execute("ALTER TABLE runs ADD COLUMN error TEXT")

    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_canonical ON jobs(canonical_filename)")
    _backfill_canonical_filenames(conn)


def _backfill_canonical_filenames(conn: sqlite3.Connection) -> None:
    rows = conn.execute(
        "SELECT id, filename FROM jobs WHERE canonical_filename IS NULL OR canonical_filename = ''"
    ).fetchall()
    for row in rows:
        canonical = strip_version_suffix(str(row["filename"]))
        conn.execute("UPDATE jobs SET canonical_filename = ? WHERE id = ?", (canonical, row["id"]))
