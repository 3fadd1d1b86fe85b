from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np
from PIL import Image


class RasterScorer(Protocol):
    def score(self, image: Image.Image) -> float: ...


@dataclass(frozen=True, slots=True)
class RasterPageScorer:
    """Scores how much a rendered page looks like a printed table.

    Chart pages are mostly white with crisp dark glyphs and rules, so dark
    pixel density, horizontal edge density and the share of dark pixels that
    are truly black all count in favour; grey mid-tones (photos, halftone ads)
    count against.
    """

    black_threshold: float = 60.0
    mid_threshold: float = 200.0
    edge_threshold: float = 22.0
    black_weight: float = 2.0
    edge_weight: float = 1.4
    bimodal_weight: float = 1.2
    mid_weight: float = 1.0

    def score(self, image: Image.Image) -> float:
        pixels = np.asarray(image.convert("RGB"), dtype=np.float32)
        if pixels.size == 0:
            return 0.0
        return self.score_array(pixels)

    def score_array(self, pixels: np.ndarray) -> float:
        height, width = pixels.shape[0], pixels.shape[1]
        total = float(height * width)
        if total == 0:
            return 0.0

        lum = (pixels[..., 0] * 3 + pixels[..., 1] * 6 + pixels[..., 2]) / 10
        black = float(np.count_nonzero(lum < self.black_threshold))
        mid = float(np.count_nonzero((lum >= self.black_threshold) & (lum < self.mid_threshold)))
        edges = float(np.count_nonzero(np.abs(np.diff(lum, axis=1)) > self.edge_threshold))

        black_density = black / total
        mid_density = mid / total
        edge_density = edges / total
        bimodal = black_density / max(1e-6, black_density + mid_density)

        return (
            black_density * self.black_weight
            + edge_density * self.edge_weight
            + bimodal * self.bimodal_weight
            - mid_density * self.mid_weight
        )
