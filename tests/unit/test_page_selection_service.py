from __future__ import annotations

import pytest
from PIL import Image

from chartreader.application.services.page_selection_service import PageSelector
from chartreader.core.cancellation import CancellationToken
from chartreader.core.errors import JobCancelledError, PageSelectionError

HEADER = "THIS WEEK LAST WEEK WKS ON CHART TITLE ARTIST LABEL"
ROWS = " ".join(f"{rank} {rank + 1} Song {rank} Artist Label" for rank in range(1, 41))
DANCE_PAGE = f"HOT DANCE/DISCO {HEADER} {ROWS}"
ROCK_PAGE = f"HOT ROCK TRACKS {HEADER} {ROWS}"
PROSE_PAGE = "An interview about the season's tours and the disco revival in the clubs. " * 12


class FakePdf:
    def __init__(self, texts: list[str], raster_levels: dict[int, int] | None = None) -> None:
        self.texts = texts
        self.raster_levels = raster_levels or {}
        self.rendered: list[int] = []

    @property
    def page_count(self) -> int:
        return len(self.texts)

    def page_text(self, page_number: int) -> str:
        return self.texts[page_number - 1]

    def render_page(self, page_number: int, *, dpi: int, max_dimension: int, max_pixels: int) -> Image.Image:
        self.rendered.append(page_number)
        level = self.raster_levels.get(page_number, 0)
        return Image.new("L", (4, 4), color=level)


class LevelScorer:
    def score(self, image: Image.Image) -> float:
        return float(image.getpixel((0, 0)))


def test_best_page_is_the_dance_chart() -> None:
    document = FakePdf([PROSE_PAGE, DANCE_PAGE, ROCK_PAGE])

    assert PageSelector(LevelScorer()).select_best_page(document) == 2


def test_candidates_prefer_text_then_fill_from_raster() -> None:
    document = FakePdf(
        [PROSE_PAGE, ROCK_PAGE, "", DANCE_PAGE, ""],
        raster_levels={1: 10, 3: 200, 5: 50},
    )

    candidates = PageSelector(LevelScorer()).select_candidates(document, candidate_limit=4)

    assert [c.page_number for c in candidates] == [4, 2, 3, 5]
    assert [c.source for c in candidates] == ["text", "text", "raster", "raster"]
    assert sorted(document.rendered) == [1, 3, 5]


def test_text_candidates_are_capped() -> None:
    document = FakePdf([ROCK_PAGE] * 5, raster_levels={5: 99})

    candidates = PageSelector(LevelScorer(), text_candidate_cap=2).select_candidates(document, candidate_limit=3)

    assert [c.source for c in candidates] == ["text", "text", "raster"]
    assert candidates[2].page_number == 5


def test_empty_pdf_is_rejected() -> None:
    with pytest.raises(PageSelectionError):
        PageSelector(LevelScorer()).select_candidates(FakePdf([]))


def test_scan_stops_when_cancelled() -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(JobCancelledError) as excinfo:
        PageSelector(LevelScorer()).select_candidates(FakePdf([DANCE_PAGE]), cancel_token=token)

    assert str(excinfo.value) == "Cancelled by user request"
