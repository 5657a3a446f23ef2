"""Text similarity helpers shared by duplicate detection and categorization.

``text_similarity`` is ``1 - levenshtein(a, b) / max(len(a), len(b))`` on
lower-cased, trimmed input, computed with ``rapidfuzz``. Identical strings
score 1.0; an empty string against a non-empty one scores 0.0.
"""

from __future__ import annotations

import re
from decimal import Decimal

from rapidfuzz.distance import Levenshtein

_WORD_RE = re.compile(r"[a-z0-9&']+")


def clamp_unit(value: float) -> float:
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return float(value)


def _prep(s: str | None) -> str:
    return (s or "").strip().lower()


def text_similarity(a: str | None, b: str | None) -> float:
    left, right = _prep(a), _prep(b)
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    distance = Levenshtein.distance(left, right)
    return clamp_unit(1.0 - distance / max(len(left), len(right)))


def words(text: str | None) -> list[str]:
    return _WORD_RE.findall(_prep(text))


def leading_words_similarity(a: str | None, b: str | None) -> float:
    """Similarity of the shorter text against the same number of leading words
    of the longer one.

    Posted descriptions often gain a suffix (store number, town) that the
    pending description lacked: ``"Tesco"`` vs ``"Tesco Stores"`` scores 1.0.
    """

    wa, wb = words(a), words(b)
    if not wa or not wb:
        return 0.0
    short, long_ = (wa, wb) if len(wa) <= len(wb) else (wb, wa)
    return text_similarity(" ".join(short), " ".join(long_[: len(short)]))


def description_similarity(a: str | None, b: str | None) -> float:
    return max(text_similarity(a, b), leading_words_similarity(a, b))


def word_overlap(a: str | None, b: str | None) -> float:
    """Fraction of the words of ``a`` that also occur in ``b``."""

    wa = words(a)
    if not wa:
        return 0.0
    wb = set(words(b))
    return sum(1 for w in wa if w in wb) / len(wa)


def common_words(a: str | None, b: str | None) -> list[str]:
    wb = set(words(b))
    out: list[str] = []
    for w in words(a):
        if w in wb and w not in out:
            out.append(w)
    return out


def amount_similarity(a: Decimal, b: Decimal) -> float:
    """``1 - |a - b| / max(|a|, |b|)``; two zero amounts are identical."""

    left, right = abs(a), abs(b)
    largest = max(left, right)
    if largest == 0:
        return 1.0
    return clamp_unit(float(1 - abs(left - right) / largest))


__all__ = [
    "amount_similarity",
    "clamp_unit",
    "common_words",
    "description_similarity",
    "leading_words_similarity",
    "text_similarity",
    "word_overlap",
    "words",
]
