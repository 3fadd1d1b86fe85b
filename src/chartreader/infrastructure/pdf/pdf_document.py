from __future__ import annotations

import io
import logging
import math
from dataclasses import dataclass
from pathlib import Path

import fitz
from PIL import Image

from chartreader.core.errors import PageSelectionError

logger = logging.getLogger(__name__)

PDF_POINTS_PER_INCH = 72
MODEL_RENDER_DPI = 300
MODEL_MAX_RENDER_PIXELS = 12_000_000
MODEL_MAX_RENDER_DIMENSION = 4096
MODEL_IMAGE_QUALITY = 95
THUMBNAIL_MAX_DIMENSION = 240
THUMBNAIL_IMAGE_QUALITY = 82


@dataclass(slots=True)
class EncodedImage:
    data: bytes
    mime_type: str
    width: int
    height: int


class PdfDocument:
    """PyMuPDF-backed page source; page numbers are 1-based."""

    def __init__(self, doc: fitz.Document, path: Path | None = None) -> None:
        self._doc = doc
        self.path = path

    @classmethod
    def open(cls, path: Path) -> "PdfDocument":
        try:
            doc = fitz.open(path)
        except (RuntimeError, OSError, ValueError) as exc:
            raise PageSelectionError(f"Could not open PDF {path.name}: {exc}") from exc
        return cls(doc, path)

    def __enter__(self) -> "PdfDocument":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._doc.close()

    @property
    def page_count(self) -> int:
        return int(self._doc.page_count)

    def page_text(self, page_number: int) -> str:
        page = self._doc.load_page(page_number - 1)
        try:
            return str(page.get_text("text") or "")
        except RuntimeError:
            logger.warning("Text extraction failed for page %s of %s", page_number, self.path)
            return ""

    def render_page(
        self,
        page_number: int,
        *,
        dpi: int,
        max_dimension: int,
        max_pixels: int,
    ) -> Image.Image:
        page = self._doc.load_page(page_number - 1)
        scale = _bounded_scale(
            page.rect.width,
            page.rect.height,
            dpi=dpi,
            max_dimension=max_dimension,
            max_pixels=max_pixels,
        )
        pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        return Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)

    def render_for_model(self, page_number: int) -> Image.Image:
        return self.render_page(
            page_number,
            dpi=MODEL_RENDER_DPI,
            max_dimension=MODEL_MAX_RENDER_DIMENSION,
            max_pixels=MODEL_MAX_RENDER_PIXELS,
        )


def _bounded_scale(
    width_pt: float,
    height_pt: float,
    *,
    dpi: int,
    max_dimension: int,
    max_pixels: int,
) -> float:
    requested = dpi / PDF_POINTS_PER_INCH
    requested_width = max(1.0, math.ceil(width_pt * requested))
    requested_height = max(1.0, math.ceil(height_pt * requested))
    dimension_scale = min(1.0, max_dimension / requested_width, max_dimension / requested_height)
    pixel_scale = min(1.0, math.sqrt(max_pixels / (requested_width * requested_height)))
    return max(requested * min(dimension_scale, pixel_scale), 1 / PDF_POINTS_PER_INCH)


def encode_model_image(image: Image.Image) -> EncodedImage:
    """WebP keeps uploads small at OCR-friendly quality; JPEG when WebP is unavailable."""
    rgb = image.convert("RGB")
    buffer = io.BytesIO()
    try:
        rgb.save(buffer, format="WEBP", quality=MODEL_IMAGE_QUALITY)
        mime_type = "image/webp"
    except (KeyError, OSError):
        buffer = io.BytesIO()
        rgb.save(buffer, format="JPEG", quality=MODEL_IMAGE_QUALITY)
        mime_type = "image/jpeg"
    return EncodedImage(data=buffer.getvalue(), mime_type=mime_type, width=rgb.width, height=rgb.height)


def make_thumbnail(image: Image.Image) -> EncodedImage:
    scale = min(1.0, THUMBNAIL_MAX_DIMENSION / image.width, THUMBNAIL_MAX_DIMENSION / image.height)
    size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    thumb = image.convert("RGB").resize(size, Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    thumb.save(buffer, format="JPEG", quality=THUMBNAIL_IMAGE_QUALITY)
    return EncodedImage(data=buffer.getvalue(), mime_type="image/jpeg", width=thumb.width, height=thumb.height)


def raster_preview_filename(source_filename: str, mime_type: str) -> str:
    ext = "webp" if mime_type == "image/webp" else "jpg"
    return f"{Path(source_filename).stem}__pdf_raster.{ext}"


def thumbnail_filename(source_filename: str) -> str:
    return f"{Path(source_filename).stem}__pdf_thumb.jpg"


def preview_filenames(source_filename: str) -> list[str]:
    return [
        raster_preview_filename(source_filename, "image/webp"),
        raster_preview_filename(source_filename, "image/jpeg"),
        thumbnail_filename(source_filename),
    ]
