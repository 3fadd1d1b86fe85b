from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class ExtractedRow:
    chart_title: str
    chart_section: str
    this_week_rank: str | None
    last_week_rank: str | None
    two_weeks_ago_rank: str | None
    weeks_on_chart: str | None
    title: str
    artist: str
    label: str

    @property
    def group_key(self) -> tuple[str, str]:
        return (self.chart_section, self.chart_title)


@dataclass(slots=True)
class ChartRow:
    run_id: str
    job_id: str
    entry_date: str
    chart_title: str
    chart_section: str
    this_week_rank: int | None
    last_week_rank: int | None
    two_weeks_ago_rank: int | None
    weeks_on_chart: int | None
    title: str
    artist: str
    label: str
    source_file: str
    extracted_at: str
    id: int | None = None


@dataclass(slots=True)
class MissingChartGroup:
    chart_title: str
    chart_section: str
    expected_max_rank: int
    min_rank: int
    max_rank: int
    expected_row_count: int
    actual_row_count: int
    missing_this_week_ranks: list[int] = field(default_factory=list)

    @property
    def group_key(self) -> tuple[str, str]:
        return (self.chart_section, self.chart_title)
