from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from chartreader.core.cancellation import CancellationToken
from chartreader.core.errors import ConfigurationError, ExtractionError, JobCancelledError
from chartreader.domain.models.chart import MissingChartGroup
from chartreader.infrastructure.extraction import gemini_client
from chartreader.infrastructure.extraction.gemini_client import (
    ExtractionMode,
    GeminiExtractionClient,
    build_missing_rows_prompt,
    resolve_api_key,
)


class FakeGenai:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.configured: dict[str, object] = {}
        self.requests: list[dict[str, object]] = []

    def configure(self, **kwargs: object) -> None:
        self.configured.update(kwargs)

    def GenerativeModel(self, **kwargs: object) -> "FakeGenai._Model":
        return FakeGenai._Model(self, kwargs)

    class _Model:
        def __init__(self, owner: "FakeGenai", options: dict[str, object]) -> None:
            self.owner = owner
            self.options = options

        def generate_content(self, contents: list[object]) -> SimpleNamespace:
            self.owner.requests.append({"options": self.options, "contents": contents})
            if self.owner.error is not None:
                raise self.owner.error
            return SimpleNamespace(
                text=self.owner.text,
                usage_metadata=SimpleNamespace(prompt_token_count=10, candidates_token_count=5, total_token_count=15),
            )


def _group() -> MissingChartGroup:
    return MissingChartGroup(
        chart_title="Disco Top 15",
        chart_section="Disco Action",
        expected_max_rank=15,
        min_rank=1,
        max_rank=12,
        expected_row_count=15,
        actual_row_count=11,
        missing_this_week_ranks=[3, 13, 14, 15],
    )


def test_full_extraction_parses_json_rows(monkeypatch) -> None:
    fake = FakeGenai(
        text=json.dumps(
            {
                "rows": [
                    {"chartTitle": "Disco Top 15", "thisWeekRank": "1", "title": "T", "artist": "A", "label": "L"},
                    {"chartTitle": "Disco Top 15", "thisWeekRank": "2", "title": "", "artist": "A", "label": "L"},
                ]
            }
        )
    )
    monkeypatch.setattr(gemini_client, "genai", fake)

    result = GeminiExtractionClient(api_key="key").extract(b"img", "image/png", "gemini-2.5-flash", ExtractionMode.FULL)

    assert fake.configured == {"api_key": "key"}
    assert [row.this_week_rank for row in result.rows] == ["1"]
    assert result.raw_payload["dropped_rows"] == 1
    assert result.raw_payload["usage"]["total_token_count"] == 15
    request = fake.requests[0]
    assert request["options"]["model_name"] == "gemini-2.5-flash"
    assert request["options"]["generation_config"]["response_mime_type"] == "application/json"
    assert request["contents"][1] == {"mime_type": "image/png", "data": b"img"}


def test_remote_failure_becomes_extraction_error(monkeypatch) -> None:
    monkeypatch.setattr(gemini_client, "genai", FakeGenai(error=RuntimeError("quota exceeded")))

    with pytest.raises(ExtractionError, match="quota exceeded"):
        GeminiExtractionClient(api_key="key").extract(b"img", "image/png", "m", ExtractionMode.FULL)


def test_targeted_mode_requires_groups_and_lists_ranks(monkeypatch) -> None:
    monkeypatch.setattr(gemini_client, "genai", FakeGenai(text='{"rows": []}'))
    client = GeminiExtractionClient(api_key="key")

    with pytest.raises(ExtractionError):
        client.extract(b"img", "image/png", "m", ExtractionMode.MISSING_ROWS)

    prompt = build_missing_rows_prompt([_group()])
    assert "Disco Top 15 [Disco Action]: extracted 11/15; missing thisWeekRank 3, 13-15" in prompt


def test_cancelled_token_stops_before_the_request(monkeypatch) -> None:
    fake = FakeGenai(text='{"rows": []}')
    monkeypatch.setattr(gemini_client, "genai", fake)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(JobCancelledError):
        GeminiExtractionClient(api_key="key").extract(
            b"img", "image/png", "m", ExtractionMode.FULL, cancel_token=token
        )
    assert fake.requests == []


def test_api_key_resolution(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_GENERATIVE_AI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        resolve_api_key()

    monkeypatch.setenv("GEMINI_API_KEY", " secret ")
    assert resolve_api_key() == "secret"
