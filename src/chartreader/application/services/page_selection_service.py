from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from PIL import Image

from chartreader.application.services.page_scoring import (
    EMPTY_PAGE_SCORE,
    PageTextScore,
    looks_like_chart_page,
    score_page_text,
)
from chartreader.core.cancellation import CancellationToken
from chartreader.core.errors import PageSelectionError
from chartreader.infrastructure.pdf.raster_scoring import RasterPageScorer, RasterScorer

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES_TO_SCAN = 300
DEFAULT_BEST_PAGE_SCAN = 40
DEFAULT_CANDIDATE_LIMIT = 12
DEFAULT_TEXT_CANDIDATE_CAP = 6

RASTER_DPI = 50
RASTER_MAX_DIMENSION = 900
RASTER_MAX_PIXELS = 1_200_000


class PageSource(Protocol):
    @property
    def page_count(self) -> int: ...

    def page_text(self, page_number: int) -> str: ...

    def render_page(
        self,
        page_number: int,
        *,
        dpi: int,
        max_dimension: int,
        max_pixels: int,
    ) -> Image.Image: ...


@dataclass(frozen=True, slots=True)
class PageCandidate:
    page_number: int
    source: str
    score: float
    text_score: PageTextScore | None = None


class PageSelector:
    """Ranks the pages of a multi-page document by how likely they hold the target chart."""

    def __init__(
        self,
        raster_scorer: RasterScorer | None = None,
        *,
        text_candidate_cap: int = DEFAULT_TEXT_CANDIDATE_CAP,
    ) -> None:
        self.raster_scorer = raster_scorer or RasterPageScorer()
        self.text_candidate_cap = max(1, int(text_candidate_cap))

    def select_candidates(
        self,
        document: PageSource,
        *,
        max_pages_to_scan: int = DEFAULT_MAX_PAGES_TO_SCAN,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        cancel_token: CancellationToken | None = None,
    ) -> list[PageCandidate]:
        page_count = int(document.page_count)
        if page_count < 1:
            raise PageSelectionError("PDF has no pages")
        limit = max(1, int(candidate_limit))
        scan_pages = min(page_count, max(1, int(max_pages_to_scan)))

        text_candidates: list[PageCandidate] = []
        for page_number in range(1, scan_pages + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("PDF page scan")
            scored = score_page_text(document.page_text(page_number))
            if looks_like_chart_page(scored):
                text_candidates.append(
                    PageCandidate(
                        page_number=page_number,
                        source="text",
                        score=scored.effective_score,
                        text_score=scored,
                    )
                )

        text_candidates.sort(key=_text_sort_key)
        selected = text_candidates[: min(limit, self.text_candidate_cap)]
        logger.debug(
            "Text scan picked %s of %s chart-like pages (%s pages scanned)",
            len(selected),
            len(text_candidates),
            scan_pages,
        )

        remaining = limit - len(selected)
        if remaining > 0:
            seen = {candidate.page_number for candidate in selected}
            raster_candidates = self._raster_candidates(
                document,
                [page for page in range(1, scan_pages + 1) if page not in seen],
                cancel_token=cancel_token,
            )
            selected.extend(raster_candidates[:remaining])

        return selected

    def select_best_page(
        self,
        document: PageSource,
        *,
        max_pages_to_scan: int = DEFAULT_BEST_PAGE_SCAN,
        cancel_token: CancellationToken | None = None,
    ) -> int:
        candidates = self.select_candidates(
            document,
            max_pages_to_scan=max_pages_to_scan,
            candidate_limit=1,
            cancel_token=cancel_token,
        )
        return candidates[0].page_number

    def _raster_candidates(
        self,
        document: PageSource,
        page_numbers: list[int],
        *,
        cancel_token: CancellationToken | None,
    ) -> list[PageCandidate]:
        scored: list[PageCandidate] = []
        for page_number in page_numbers:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("PDF page render")
            image = document.render_page(
                page_number,
                dpi=RASTER_DPI,
                max_dimension=RASTER_MAX_DIMENSION,
                max_pixels=RASTER_MAX_PIXELS,
            )
            scored.append(
                PageCandidate(
                    page_number=page_number,
                    source="raster",
                    score=float(self.raster_scorer.score(image)),
                )
            )
        scored.sort(key=lambda candidate: (-candidate.score, candidate.page_number))
        return scored


def _text_sort_key(candidate: PageCandidate) -> tuple[int, float, int, int]:
    text_score = candidate.text_score or EMPTY_PAGE_SCORE
    return (
        0 if text_score.disco_boost > 0 else 1,
        -text_score.effective_score,
        -text_score.text_length,
        candidate.page_number,
    )
