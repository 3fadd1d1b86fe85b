from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chartreader.core.errors import ExtractionError
from chartreader.core.text import normalize_extracted_text, normalize_rank_text
from chartreader.domain.models.chart import ExtractedRow

logger = logging.getLogger(__name__)


class ExtractedRowPayload(BaseModel):
    """One row as returned by the model, normalized on the way in."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chart_title: str = Field(..., alias="chartTitle")
    chart_section: str = Field("", alias="chartSection")
    this_week_rank: Optional[str] = Field(None, alias="thisWeekRank")
    last_week_rank: Optional[str] = Field(None, alias="lastWeekRank")
    two_weeks_ago_rank: Optional[str] = Field(None, alias="twoWeeksAgoRank")
    weeks_on_chart: Optional[str] = Field(None, alias="weeksOnChart")
    title: str
    artist: str
    label: str

    @field_validator("chart_section", mode="before")
    @classmethod
    def normalize_section(cls, value: Any) -> str:
        return normalize_extracted_text(None if value is None else str(value))

    @field_validator("chart_title", "title", "artist", "label", mode="before")
    @classmethod
    def normalize_required_text(cls, value: Any) -> str:
        text = normalize_extracted_text(None if value is None else str(value))
        if not text:
            raise ValueError("must not be blank")
        return text

    @field_validator("this_week_rank", "last_week_rank", "two_weeks_ago_rank", "weeks_on_chart", mode="before")
    @classmethod
    def normalize_rank(cls, value: Union[str, int, float, None]) -> Optional[str]:
        if value is None:
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return normalize_rank_text(str(value))

    def to_row(self) -> ExtractedRow:
        return ExtractedRow(
            chart_title=self.chart_title,
            chart_section=self.chart_section,
            this_week_rank=self.this_week_rank,
            last_week_rank=self.last_week_rank,
            two_weeks_ago_rank=self.two_weeks_ago_rank,
            weeks_on_chart=self.weeks_on_chart,
            title=self.title,
            artist=self.artist,
            label=self.label,
        )


class ExtractionEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rows: List[Any]


def parse_extraction_rows(raw: Union[str, bytes, dict[str, Any]]) -> tuple[list[ExtractedRow], int]:
    """Validate a model response; returns the usable rows and how many were dropped."""
    try:
        if isinstance(raw, (str, bytes)):
            envelope = ExtractionEnvelope.model_validate_json(raw)
        else:
            envelope = ExtractionEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise ExtractionError(f"Extraction response did not match the row schema: {exc.error_count()} error(s)") from exc

    rows: list[ExtractedRow] = []
    dropped = 0
    for index, item in enumerate(envelope.rows):
        try:
            rows.append(ExtractedRowPayload.model_validate(item).to_row())
        except ValidationError as exc:
            dropped += 1
            logger.debug("Dropping extracted row %s: %s", index, exc.errors(include_url=False))
    return rows, dropped


def rows_to_json(rows: list[ExtractedRow]) -> list[dict[str, Any]]:
    return [
        {
            "chartTitle": row.chart_title,
            "chartSection": row.chart_section,
            "thisWeekRank": row.this_week_rank,
            "lastWeekRank": row.last_week_rank,
            "twoWeeksAgoRank": row.two_weeks_ago_rank,
            "weeksOnChart": row.weeks_on_chart,
            "title": row.title,
            "artist": row.artist,
            "label": row.label,
        }
        for row in rows
    ]
