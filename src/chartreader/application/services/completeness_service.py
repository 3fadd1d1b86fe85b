from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from chartreader.core.config import env_non_negative_int
from chartreader.core.text import coerce_rank, format_rank_ranges
from chartreader.domain.models.chart import ExtractedRow, MissingChartGroup

DEFAULT_MIN_EXPECTED_RANK = 2
DEFAULT_MAX_EXPECTED_RANK = 200

DEFAULT_TITLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bTOP\s*(\d{2,3})\b", re.IGNORECASE),
    re.compile(r"\bHOT\s*(\d{2,3})\b", re.IGNORECASE),
)
DEFAULT_FILENAME_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:^|[^a-z0-9])top[_ -]?(\d{2,3})(?!\d)", re.IGNORECASE),
)


@dataclass(frozen=True)
class RankInferenceRules:
    """How the expected size of a chart is guessed from its title or filename."""

    min_rank: int = DEFAULT_MIN_EXPECTED_RANK
    max_rank: int = DEFAULT_MAX_EXPECTED_RANK
    title_patterns: tuple[re.Pattern[str], ...] = DEFAULT_TITLE_PATTERNS
    filename_patterns: tuple[re.Pattern[str], ...] = DEFAULT_FILENAME_PATTERNS

    @classmethod
    def from_env(cls) -> "RankInferenceRules":
        min_rank = env_non_negative_int("CHARTREADER_RANK_MIN", default=DEFAULT_MIN_EXPECTED_RANK)
        max_rank = env_non_negative_int("CHARTREADER_RANK_MAX", default=DEFAULT_MAX_EXPECTED_RANK)
        if max_rank < min_rank:
            min_rank, max_rank = DEFAULT_MIN_EXPECTED_RANK, DEFAULT_MAX_EXPECTED_RANK
        return cls(min_rank=min_rank, max_rank=max_rank)

    def accepts(self, value: int) -> bool:
        return self.min_rank <= value <= self.max_rank

    def first_match(self, text: str, patterns: Iterable[re.Pattern[str]]) -> int | None:
        for pattern in patterns:
            match = pattern.search(text)
            if not match:
                continue
            value = int(match.group(1))
            if self.accepts(value):
                return value
        return None


@dataclass(slots=True)
class MergeResult:
    rows: list[ExtractedRow]
    rows_added: int


@dataclass(slots=True)
class _ChartGroup:
    chart_title: str
    chart_section: str
    rows: list[ExtractedRow] = field(default_factory=list)


def group_rows(rows: Iterable[ExtractedRow]) -> dict[tuple[str, str], _ChartGroup]:
    groups: dict[tuple[str, str], _ChartGroup] = {}
    for row in rows:
        group = groups.get(row.group_key)
        if group is None:
            group = _ChartGroup(chart_title=row.chart_title, chart_section=row.chart_section)
            groups[row.group_key] = group
        group.rows.append(row)
    return groups


def infer_expected_max_rank(
    chart_title: str,
    source_filename_hint: str | None,
    observed_max: int,
    rules: RankInferenceRules,
) -> int | None:
    """Returns None when neither a hint nor the observed max falls inside the rank bounds."""
    inferred = rules.first_match(chart_title, rules.title_patterns)
    if inferred is None and source_filename_hint:
        inferred = rules.first_match(source_filename_hint, rules.filename_patterns)
    if inferred is None:
        if not rules.accepts(observed_max):
            return None
        inferred = observed_max
    return max(inferred, observed_max)


def find_missing_groups(
    rows: Iterable[ExtractedRow],
    source_filename_hint: str | None = None,
    rules: RankInferenceRules | None = None,
) -> list[MissingChartGroup]:
    """Chart groups whose this-week ranks do not form a complete run."""
    active_rules = rules or RankInferenceRules()
    missing: list[MissingChartGroup] = []
    for group in group_rows(rows).values():
        ranks = [rank for rank in (coerce_rank(row.this_week_rank) for row in group.rows) if rank is not None]
        if not ranks:
            continue
        observed_min = min(ranks)
        observed_max = max(ranks)
        expected_max = infer_expected_max_rank(group.chart_title, source_filename_hint, observed_max, active_rules)
        if expected_max is None:
            continue
        expected_rows = expected_max - observed_min + 1
        actual_rows = len(group.rows)
        if actual_rows >= expected_rows:
            continue
        present = set(ranks)
        missing.append(
            MissingChartGroup(
                chart_title=group.chart_title,
                chart_section=group.chart_section,
                expected_max_rank=expected_max,
                min_rank=observed_min,
                max_rank=observed_max,
                expected_row_count=expected_rows,
                actual_row_count=actual_rows,
                missing_this_week_ranks=[
                    rank for rank in range(observed_min, expected_max + 1) if rank not in present
                ],
            )
        )
    return missing


def merge_missing_rows(
    existing: list[ExtractedRow],
    incoming: Iterable[ExtractedRow],
    missing_groups: Iterable[MissingChartGroup],
) -> MergeResult:
    outstanding = {group.group_key: set(group.missing_this_week_ranks) for group in missing_groups}
    present: dict[tuple[str, str], set[int]] = {}
    for row in existing:
        rank = coerce_rank(row.this_week_rank)
        if rank is not None:
            present.setdefault(row.group_key, set()).add(rank)

    merged = list(existing)
    added = 0
    for row in incoming:
        wanted = outstanding.get(row.group_key)
        if not wanted:
            continue
        rank = coerce_rank(row.this_week_rank)
        if rank is None or rank not in wanted:
            continue
        seen = present.setdefault(row.group_key, set())
        if rank in seen:
            continue
        seen.add(rank)
        wanted.discard(rank)
        merged.append(row)
        added += 1

    return MergeResult(rows=sort_rows_by_chart_order(merged), rows_added=added)


def sort_rows_by_chart_order(rows: list[ExtractedRow]) -> list[ExtractedRow]:
    group_order: dict[tuple[str, str], int] = {}
    for row in rows:
        group_order.setdefault(row.group_key, len(group_order))

    def sort_key(item: tuple[int, ExtractedRow]) -> tuple[int, int, int, int]:
        index, row = item
        rank = coerce_rank(row.this_week_rank)
        return (
            group_order[row.group_key],
            1 if rank is None else 0,
            rank if rank is not None else 0,
            index,
        )

    return [row for _, row in sorted(enumerate(rows), key=sort_key)]


def summarize_missing_groups(groups: Iterable[MissingChartGroup], max_ranges: int = 20) -> str:
    lines = []
    for group in groups:
        label = group.chart_title or "(unknown chart)"
        if group.chart_section:
            label = f"{label} [{group.chart_section}]"
        ranks = format_rank_ranges(group.missing_this_week_ranks, max_ranges=max_ranges) or "(unknown)"
        lines.append(
            f"{label}: extracted {group.actual_row_count}/{group.expected_row_count}; "
            f"missing thisWeekRank {ranks}"
        )
    return "; ".join(lines)
