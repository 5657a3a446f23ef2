from __future__ import annotations

from decimal import Decimal

import pytest

from transaction_ingestion.similarity import (
    amount_similarity,
    common_words,
    description_similarity,
    leading_words_similarity,
    text_similarity,
    word_overlap,
)


def test_text_similarity_bounds():
    assert text_similarity("Tesco", "  tesco ") == 1.0
    assert text_similarity("", "tesco") == 0.0
    assert text_similarity(None, None) == 1.0
    assert text_similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)


def test_leading_words_ignore_posted_suffix():
    assert leading_words_similarity("Tesco", "Tesco Stores 1234") == 1.0
    assert description_similarity("Tesco", "Tesco Stores") == 1.0
    assert description_similarity("Tesco", "Sainsburys") < 0.5


def test_word_overlap_and_common_words():
    assert word_overlap("PUREGYM MEMBERSHIP JAN", "puregym membership") == pytest.approx(2 / 3)
    assert word_overlap("", "anything") == 0.0
    assert common_words("uber trip uber", "Uber eats trip") == ["uber", "trip"]


def test_amount_similarity():
    assert amount_similarity(Decimal("100"), Decimal("-100")) == 1.0
    assert amount_similarity(Decimal("80"), Decimal("100")) == pytest.approx(0.8)
    assert amount_similarity(Decimal("0"), Decimal("0")) == 1.0
    assert amount_similarity(Decimal("0"), Decimal("5")) == 0.0
