from __future__ import annotations

import re
from typing import Iterable

_WHITESPACE = re.compile(r"\s+")
_EDGE_DECORATION = re.compile(
    r"^[\s*★☆•●○◆♦◦▪]+"
    r"|[\s*★☆•●○◆♦◦▪]+$"
)
_TRAILING_DASHES = re.compile(r"[‐‑‒–—−-]+$")
_NON_DIGITS = re.compile(r"[^0-9]")
_ENTRY_DATE = re.compile(r"(\d{4}-\d{2}-\d{2})")


def normalize_extracted_text(value: str | None) -> str:
    """Collapse whitespace and strip decorative bullets and trailing dashes."""
    if value is None:
        return ""
    text = _WHITESPACE.sub(" ", str(value)).strip()
    if not text:
        return ""
    text = _EDGE_DECORATION.sub("", text).strip()
    text = _TRAILING_DASHES.sub("", text).strip()
    return text


def normalize_rank_text(value: str | None) -> str | None:
    if value is None:
        return None
    text = normalize_extracted_text(value)
    if not text or text.upper() == "NEW":
        return None
    digits = _NON_DIGITS.sub("", text)
    return digits or None


def coerce_rank(value: object) -> int | None:
    """Digits-only integer for a printed rank; None for blanks, dashes and NEW."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    digits = _NON_DIGITS.sub("", str(value))
    if not digits:
        return None
    return int(digits)


def parse_entry_date(filename: str) -> str | None:
    match = _ENTRY_DATE.search(filename)
    return match.group(1) if match else None


def format_rank_ranges(ranks: Iterable[int], max_ranges: int = 20) -> str:
    """Compact ``1-3, 5`` rendering of a rank list, truncated after ``max_ranges`` runs."""
    unique = sorted(set(ranks))
    if not unique:
        return ""
    runs: list[tuple[int, int]] = []
    start = prev = unique[0]
    for value in unique[1:]:
        if value == prev + 1:
            prev = value
            continue
        runs.append((start, prev))
        start = prev = value
    runs.append((start, prev))

    limit = max(1, int(max_ranges))
    parts = [str(lo) if lo == hi else f"{lo}-{hi}" for lo, hi in runs[:limit]]
    text = ", ".join(parts)
    if len(runs) > limit:
        text += ", …"
    return text
