from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    files_dir: Path
    new_dir: Path
    completed_dir: Path
    previews_dir: Path
    state_dir: Path
    db_path: Path
    output_csv_path: Path


DEFAULT_FILES_DIRNAME = "files"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-pro"
DEFAULT_TICK_SECONDS = 1.0
DEFAULT_PDF_MAX_SCAN_PAGES = 300
DEFAULT_PDF_CANDIDATE_LIMIT = 12


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    files_dir_raw = os.getenv("CHARTREADER_FILES_DIR")
    if files_dir_raw:
        files_dir = Path(files_dir_raw).expanduser().resolve()
    else:
        files_dir = root / DEFAULT_FILES_DIRNAME

    state_dir = files_dir / "state"
    return AppPaths(
        project_root=root,
        files_dir=files_dir,
        new_dir=files_dir / "new",
        completed_dir=files_dir / "completed",
        previews_dir=files_dir / "previews",
        state_dir=state_dir,
        db_path=state_dir / "app.db",
        output_csv_path=files_dir / "output.csv",
    )


@dataclass(frozen=True)
class WorkerSettings:
    """Process-level tunables for the extraction worker.

    Runtime knobs an operator changes while the worker runs (concurrency,
    pause, primary model) live in the config table instead.
    """

    tick_seconds: float = DEFAULT_TICK_SECONDS
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    chart_filter_enabled: bool = True
    pdf_max_scan_pages: int = DEFAULT_PDF_MAX_SCAN_PAGES
    pdf_candidate_limit: int = DEFAULT_PDF_CANDIDATE_LIMIT

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        tick_raw = os.getenv("CHARTREADER_TICK_SECONDS")
        tick_seconds = DEFAULT_TICK_SECONDS
        if tick_raw:
            try:
                tick_seconds = max(0.05, float(tick_raw))
            except ValueError:
                tick_seconds = DEFAULT_TICK_SECONDS
        fallback_model = (os.getenv("CHARTREADER_FALLBACK_MODEL") or "").strip() or DEFAULT_FALLBACK_MODEL
        return cls(
            tick_seconds=tick_seconds,
            fallback_model=fallback_model,
            chart_filter_enabled=env_bool("CHARTREADER_CHART_FILTER", default=True),
            pdf_max_scan_pages=max(
                1, env_non_negative_int("CHARTREADER_PDF_MAX_SCAN_PAGES", default=DEFAULT_PDF_MAX_SCAN_PAGES)
            ),
            pdf_candidate_limit=max(
                1, env_non_negative_int("CHARTREADER_PDF_CANDIDATE_LIMIT", default=DEFAULT_PDF_CANDIDATE_LIMIT)
            ),
        )


def env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def env_non_negative_int(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default
