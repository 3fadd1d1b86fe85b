from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

import google.generativeai as genai

from chartreader.core.cancellation import CancellationToken
from chartreader.core.errors import ConfigurationError, ExtractionError
from chartreader.core.text import format_rank_ranges
from chartreader.domain.models.chart import ExtractedRow, MissingChartGroup
from chartreader.infrastructure.extraction.schema import parse_extraction_rows, rows_to_json

logger = logging.getLogger(__name__)

API_KEY_ENV_VARS = ("GOOGLE_GENERATIVE_AI_API_KEY", "GEMINI_API_KEY")


class ExtractionMode(str, enum.Enum):
    FULL = "full"
    MISSING_ROWS = "missing_rows"


@dataclass(slots=True)
class ExtractionResult:
    rows: list[ExtractedRow]
    raw_payload: dict[str, Any] = field(default_factory=dict)


class ExtractionClient(Protocol):
    def extract(
        self,
        image: bytes,
        mime_type: str,
        model: str,
        mode: ExtractionMode,
        missing_groups: Sequence[MissingChartGroup] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExtractionResult: ...


SYSTEM_PROMPT = "\n".join(
    [
        "You are a high-precision OCR and table extraction engine for scanned chart pages.",
        "Return only JSON matching the requested shape, with no commentary or markdown.",
        "Never guess: prefer null for unreadable rank fields and omit rows whose title, artist or label is unreadable.",
        "Never mix data across different chart tables on the same page.",
    ]
)

ROW_SHAPE = "\n".join(
    [
        'Output: {"rows": [ ... ]} where each row is an object with keys',
        "chartTitle, chartSection, thisWeekRank, lastWeekRank, twoWeeksAgoRank, weeksOnChart, title, artist, label.",
        "chartTitle is the chart block's own title; chartSection is the broader page header grouping charts ('' if none).",
        "Rank fields are digit strings or null (blank, dash, NEW or unreadable cells are null).",
    ]
)

FULL_EXTRACTION_PROMPT = "\n".join(
    [
        "Extract every chart table row from this scanned page.",
        "Treat side-by-side or stacked chart blocks as separate tables and never copy ranks between them.",
        "Ignore decorative symbols near ranks and trailing separator dashes in text.",
        "Extract only chart rows; ignore articles, ads and sidebars.",
        "Preserve top-to-bottom row order within each table region.",
        ROW_SHAPE,
    ]
)


def describe_missing_groups(groups: Sequence[MissingChartGroup]) -> str:
    lines = []
    for index, group in enumerate(groups, start=1):
        label = group.chart_title or "(unknown chart)"
        if group.chart_section:
            label = f"{label} [{group.chart_section}]"
        ranks = format_rank_ranges(group.missing_this_week_ranks, max_ranges=60) or "(unknown)"
        lines.append(
            f"{index}) {label}: extracted {group.actual_row_count}/{group.expected_row_count}; "
            f"missing thisWeekRank {ranks}"
        )
    return "\n".join(lines)


def build_missing_rows_prompt(groups: Sequence[MissingChartGroup]) -> str:
    return "\n".join(
        [
            "Rows were missed in a previous extraction of this page.",
            "Locate them using the ranks you can read clearly and the chart titles and sections listed below.",
            "Output ONLY the missing rows, using exactly the chartTitle and chartSection given.",
            "",
            describe_missing_groups(groups),
            "",
            ROW_SHAPE,
        ]
    )


def resolve_api_key() -> str:
    for name in API_KEY_ENV_VARS:
        value = (os.getenv(name) or "").strip()
        if value:
            return value
    raise ConfigurationError(f"{API_KEY_ENV_VARS[0]} is not set")


class GeminiExtractionClient:
    """Vision extraction through the Gemini API."""

    def __init__(self, api_key: str | None = None, *, temperature: float = 0.0) -> None:
        genai.configure(api_key=api_key or resolve_api_key())
        self.temperature = temperature

    def extract(
        self,
        image: bytes,
        mime_type: str,
        model: str,
        mode: ExtractionMode,
        missing_groups: Sequence[MissingChartGroup] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ExtractionResult:
        if mode is ExtractionMode.MISSING_ROWS:
            if not missing_groups:
                raise ExtractionError("Targeted extraction needs at least one missing chart group")
            prompt = build_missing_rows_prompt(missing_groups)
        else:
            prompt = FULL_EXTRACTION_PROMPT

        if cancel_token is not None:
            cancel_token.raise_if_cancelled("extraction request")

        generative_model = genai.GenerativeModel(
            model_name=model,
            system_instruction=SYSTEM_PROMPT,
            generation_config={"temperature": self.temperature, "response_mime_type": "application/json"},
        )
        try:
            response = generative_model.generate_content([prompt, {"mime_type": mime_type, "data": image}])
            text = (getattr(response, "text", "") or "").strip()
        except Exception as exc:
            raise ExtractionError(f"{model} extraction call failed: {exc}") from exc

        if cancel_token is not None:
            cancel_token.raise_if_cancelled("extraction response")

        if not text:
            raise ExtractionError(f"{model} returned an empty response")
        rows, dropped = parse_extraction_rows(text)
        logger.info("%s %s extraction returned %s rows (%s dropped)", model, mode.value, len(rows), dropped)
        return ExtractionResult(
            rows=rows,
            raw_payload={
                "model": model,
                "mode": mode.value,
                "object": {"rows": rows_to_json(rows)},
                "dropped_rows": dropped,
                "usage": _usage_dict(getattr(response, "usage_metadata", None)),
            },
        )


def _usage_dict(usage: Any) -> dict[str, Any]:
    if usage is None:
        return {}
    return {
        "prompt_token_count": getattr(usage, "prompt_token_count", None),
        "candidates_token_count": getattr(usage, "candidates_token_count", None),
        "total_token_count": getattr(usage, "total_token_count", None),
    }
