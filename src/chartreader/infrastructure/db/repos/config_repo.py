from __future__ import annotations

import os
from pathlib import Path

from chartreader.core.errors import ConfigurationError
from chartreader.domain.models.run import WorkerConfig
from chartreader.infrastructure.db.sqlite import get_connection

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_CONCURRENCY = 2
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10

_MODEL_ALIASES = {
    "gemini-3-flash": "gemini-3-flash-preview",
    "gemini-3-pro": "gemini-3-pro-preview",
}


def normalize_model_id(model: str) -> str:
    value = model.strip()
    if value.startswith("models/"):
        value = value[len("models/") :]
    return _MODEL_ALIASES.get(value, value)


def default_model() -> str:
    return normalize_model_id(os.getenv("GEMINI_MODEL") or "") or DEFAULT_MODEL


class ConfigRepo:
    """Single-row worker configuration, re-read by the worker on every tick."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def get_config(self) -> WorkerConfig:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO config (id, concurrency, paused, model) VALUES (1, ?, 0, ?)",
                (DEFAULT_CONCURRENCY, default_model()),
            )
            conn.commit()
            row = conn.execute("SELECT concurrency, paused, model FROM config WHERE id = 1").fetchone()
        return WorkerConfig(
            concurrency=int(row["concurrency"]),
            paused=bool(row["paused"]),
            model=normalize_model_id(str(row["model"])) or DEFAULT_MODEL,
        )

    def update_config(
        self,
        *,
        concurrency: int | None = None,
        paused: bool | None = None,
        model: str | None = None,
    ) -> WorkerConfig:
        current = self.get_config()
        if concurrency is not None:
            if not MIN_CONCURRENCY <= int(concurrency) <= MAX_CONCURRENCY:
                raise ConfigurationError(
                    f"Concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, got {concurrency}"
                )
            current.concurrency = int(concurrency)
        if paused is not None:
            current.paused = bool(paused)
        if model is not None:
            normalized = normalize_model_id(model)
            if not normalized:
                raise ConfigurationError("Model must be a non-empty model id")
            current.model = normalized

        with get_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE config SET concurrency = ?, paused = ?, model = ? WHERE id = 1",
                (current.concurrency, int(current.paused), current.model),
            )
            conn.commit()
        return current
