from __future__ import annotations

import re
from dataclasses import dataclass, field

from chartreader.domain.models.chart import ExtractedRow

_WHITESPACE = re.compile(r"\s+")
_DISCO_OR_DANCE = re.compile(r"\b(?:disco|dance)\b", re.IGNORECASE)
_RELATED_TITLE = re.compile(r"\bclub\s*play\b|\b12\s*inch\b|\b12\s*in\.", re.IGNORECASE)


@dataclass(slots=True)
class ChartFilterResult:
    mode: str
    rows: list[ExtractedRow]
    matched_sections: list[str] = field(default_factory=list)
    matched_chart_keys: list[tuple[str, str]] = field(default_factory=list)


def _normalize(value: str) -> str:
    return _WHITESPACE.sub(" ", value or "").strip().lower()


def section_matches(section: str) -> bool:
    return bool(_DISCO_OR_DANCE.search(_normalize(section)))


def title_matches(title: str) -> bool:
    text = _normalize(title)
    return bool(_DISCO_OR_DANCE.search(text) or _RELATED_TITLE.search(text))


def filter_rows_to_dance_charts(rows: list[ExtractedRow]) -> ChartFilterResult:
    """Keep the dance/disco charts of a page.

    A page section naming dance or disco wins outright; otherwise chart
    titles are matched individually.
    """
    keys: list[tuple[str, str]] = []
    for row in rows:
        if row.group_key not in keys:
            keys.append(row.group_key)

    sections: list[str] = []
    for section, _ in keys:
        if section_matches(section) and section not in sections:
            sections.append(section)
    if sections:
        wanted = set(sections)
        return ChartFilterResult(
            mode="section",
            rows=[row for row in rows if row.chart_section in wanted],
            matched_sections=sections,
            matched_chart_keys=[key for key in keys if key[0] in wanted],
        )

    title_keys = [key for key in keys if title_matches(key[1])]
    if title_keys:
        wanted_keys = set(title_keys)
        return ChartFilterResult(
            mode="title",
            rows=[row for row in rows if row.group_key in wanted_keys],
            matched_chart_keys=title_keys,
        )

    return ChartFilterResult(mode="none", rows=[])
