from __future__ import annotations

import re
from dataclasses import dataclass
from itertools import islice

_WHITESPACE = re.compile(r"\s+")
_RANK_TOKEN = re.compile(r"\b\d{1,3}\b")

MAX_RANK_TOKENS = 300
RANK_TOKEN_WEIGHT = 0.45
MAX_LENGTH_BONUS = 40.0

# (pattern, weight, max counted hits)
HEADER_PATTERNS: tuple[tuple[re.Pattern[str], float, int], ...] = (
    (re.compile(r"\bthis\s*week\b"), 70, 2),
    (re.compile(r"\blast\s*week\b"), 60, 2),
    (re.compile(r"\btwo\s*weeks?\s*ago\b"), 45, 2),
    (re.compile(r"\bweeks?\s*on\s*chart\b"), 85, 2),
    (re.compile(r"\bwks?\s*on\s*chart\b"), 85, 2),
    (re.compile(r"\bpeak\s*position\b"), 35, 2),
    (re.compile(r"\bbillboard\b"), 18, 4),
    (re.compile(r"\bchart\b"), 12, 6),
    (re.compile(r"\bartist\b"), 14, 6),
    (re.compile(r"\btitle\b"), 14, 6),
    (re.compile(r"\blabel\b"), 14, 6),
    (re.compile(r"\bhot\s*100\b"), 28, 2),
)

_PAIR = r"(?:dance(?:\s*music)?|disco)\s*(?:/|&|and|\+|-)\s*(?:disco|dance(?:\s*music)?)"

# Ordered from the most specific header phrase to the loosest variant.
PREFERENCE_PATTERNS: tuple[tuple[re.Pattern[str], float, int], ...] = (
    (re.compile(r"\bclub\s*play\b"), 5200, 2),
    (re.compile(rf"\bhot\s*{_PAIR}\b"), 5600, 2),
    (re.compile(rf"\b{_PAIR}\s*top\s*\d{{2,3}}\b"), 5600, 2),
    (re.compile(r"\bdisco\s*top\s*\d{2,3}\b"), 5600, 2),
    (re.compile(rf"\b{_PAIR}\s*top\b(?!\s*\d{{2,3}}\b)"), 4200, 2),
    (re.compile(r"\bdisco\s*top\b(?!\s*\d{2,3}\b)"), 4200, 2),
    (re.compile(rf"\b{_PAIR}\b"), 1800, 3),
    (re.compile(r"\b12\s*inch\b"), 900, 2),
    (re.compile(r"\b12\s*in\.(?!\w)"), 900, 2),
)

PREFERENCE_GATE_BASE_SCORE = 140.0
PREFERENCE_GATE_RANK_COUNT = 18


@dataclass(frozen=True, slots=True)
class PageTextScore:
    base_score: float
    disco_boost: float
    effective_score: float
    rank_count: int
    text_length: int


EMPTY_PAGE_SCORE = PageTextScore(
    base_score=0.0,
    disco_boost=0.0,
    effective_score=0.0,
    rank_count=0,
    text_length=0,
)


def normalize_page_text(raw_text: str) -> str:
    return _WHITESPACE.sub(" ", raw_text or "").strip().lower()


def count_matches(text: str, pattern: re.Pattern[str], limit: int) -> int:
    return sum(1 for _ in islice(pattern.finditer(text), limit))


def count_rank_tokens(text: str, limit: int = MAX_RANK_TOKENS) -> int:
    count = 0
    for match in _RANK_TOKEN.finditer(text):
        if 1 <= int(match.group(0)) <= 200:
            count += 1
            if count >= limit:
                break
    return count


def preference_boost(text: str, *, base_score: float, rank_count: int) -> float:
    """Sub-chart preference, applied only once the page already reads as a chart."""
    if base_score < PREFERENCE_GATE_BASE_SCORE and rank_count < PREFERENCE_GATE_RANK_COUNT:
        return 0.0
    return float(sum(count_matches(text, pattern, cap) * weight for pattern, weight, cap in PREFERENCE_PATTERNS))


def score_page_text(raw_text: str) -> PageTextScore:
    text = normalize_page_text(raw_text)
    if not text:
        return EMPTY_PAGE_SCORE

    base_score = float(sum(count_matches(text, pattern, cap) * weight for pattern, weight, cap in HEADER_PATTERNS))
    rank_count = count_rank_tokens(text)
    base_score += min(MAX_RANK_TOKENS, rank_count) * RANK_TOKEN_WEIGHT
    base_score += min(MAX_LENGTH_BONUS, len(text) / 1000)

    boost = preference_boost(text, base_score=base_score, rank_count=rank_count)
    return PageTextScore(
        base_score=base_score,
        disco_boost=boost,
        effective_score=base_score + boost,
        rank_count=rank_count,
        text_length=len(text),
    )


def looks_like_chart_page(score: PageTextScore) -> bool:
    return (
        score.base_score >= 160
        or score.rank_count >= 30
        or (score.base_score >= 110 and score.rank_count >= 18)
    )
