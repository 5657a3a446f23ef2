from __future__ import annotations

from decimal import Decimal

import pytest

from tests.helpers.builders import USER_ID
from transaction_ingestion.enrichment import (
    EnrichmentRequest,
    MerchantDirectory,
    TransactionEnricher,
)
from transaction_ingestion.models import MerchantInfo


class _FlakyDirectory(MerchantDirectory):
    """Directory that fails for descriptions containing ``BOOM``."""

    def lookup(self, text: str) -> MerchantInfo | None:
        if "BOOM" in text:
            raise RuntimeError("merchant directory unavailable")
        return super().lookup(text)


@pytest.fixture()
def enricher(category_store) -> TransactionEnricher:
    return TransactionEnricher(categories=category_store)


# ---- Merchant ----------------------------------------------------------------


def test_dictionary_merchant_with_location_and_category(enricher):
    result = enricher.enrich(
        "CARD PAYMENT TO TESCO STORES 1234",
        amount=Decimal("45.99"),
        location="London SW1A 1AA",
        user_id=USER_ID,
        transaction_id="tx-1",
    )

    assert result.success
    assert result.enriched
    assert result.transaction_id == "tx-1"
    data = result.data
    assert data.merchant is not None
    assert (data.merchant.clean_name, data.merchant.source) == ("Tesco", "dictionary")
    assert data.location is not None
    assert data.location.postcode == "SW1A 1AA"
    assert data.location.country == "GB"
    assert data.location.venue is not None and data.location.venue.type == "store"
    assert data.category is not None
    assert (data.category.category_id, data.category.source) == ("cat-groceries", "merchant")
    assert data.metadata is not None and data.metadata.payment_method == "card"
    assert result.sources == (
        "merchant_database",
        "location_data",
        "category_engine",
        "metadata_extraction",
    )
    assert result.confidence == pytest.approx((0.8 + 0.6 + 0.9 + 0.4) / 2.8)


def test_fuzzy_merchant_match(enricher):
    result = enricher.enrich("NANDO GREENWICH")

    assert result.data.merchant is not None
    assert result.data.merchant.name == "Nando's"
    assert result.data.merchant.source == "fuzzy"
    assert result.confidence == pytest.approx(0.75)


def test_merchant_extracted_from_description(enricher):
    result = enricher.enrich("Faster payment to John Smith")

    merchant = result.data.merchant
    assert merchant is not None
    assert (merchant.clean_name, merchant.source, merchant.category) == (
        "John Smith",
        "extracted",
        "unknown",
    )
    assert result.data.metadata is not None
    assert result.data.metadata.payment_method == "transfer"
    assert result.sources == ("merchant_extraction", "metadata_extraction")
    assert result.confidence == pytest.approx(0.8 / 1.2)


def test_registered_merchant_is_found(enricher):
    enricher.update_merchant_database(
        "puregym",
        MerchantInfo(name="PureGym", clean_name="PureGym", category="fitness"),
    )
    result = enricher.enrich("PUREGYM LTD 0001")
    assert result.data.merchant is not None
    assert result.data.merchant.name == "PureGym"

    with pytest.raises(ValueError):
        enricher.update_merchant_database(
            "  ", MerchantInfo(name="X", clean_name="X", category="x")
        )


def test_nothing_recognised_is_not_enriched(enricher):
    result = enricher.enrich("xyz")
    assert result.success
    assert not result.enriched
    assert result.confidence == 0.0
    assert result.sources == ()


# ---- Location ----------------------------------------------------------------


def test_city_is_recognised_without_postcode(enricher):
    location = enricher.resolve_location("Market Street, manchester", "Corner Cafe")
    assert location is not None
    assert location.city == "Manchester"
    assert location.postcode is None
    assert location.venue is not None and location.venue.type == "restaurant"


def test_unknown_location_hint_is_ignored(enricher):
    assert enricher.resolve_location("Somewhere", None) is None
    assert enricher.resolve_location(None, None) is None


# ---- Category and metadata ---------------------------------------------------


def test_small_amount_suggests_coffee(enricher):
    suggestion = enricher.suggest_category(USER_ID, "misc purchase", None, Decimal("3.20"))
    assert suggestion is not None
    assert (suggestion.category_id, suggestion.source) == ("cat-coffee", "amount")
    assert suggestion.confidence == pytest.approx(0.5)


def test_description_keyword_suggestion_is_capped(enricher):
    suggestion = enricher.suggest_category(USER_ID, "SHELL PETROL STATION", None, None)
    assert suggestion is not None
    assert suggestion.category_id == "cat-fuel"
    assert suggestion.source == "description"
    assert suggestion.confidence == pytest.approx(0.7)


def test_no_category_without_user(enricher):
    assert enricher.suggest_category(None, "TESCO", None, Decimal("10")) is None


def test_direct_debit_is_monthly_recurring(enricher):
    metadata = enricher.extract_metadata("DIRECT DEBIT NETFLIX.COM")
    assert metadata is not None
    assert metadata.payment_method == "direct_debit"
    assert metadata.is_recurring
    assert metadata.recurring_pattern == "monthly"


def test_tags_use_word_boundaries(enricher):
    metadata = enricher.extract_metadata("AMAZON REFUND incl. fees")
    assert metadata is not None
    assert metadata.tags == ("refund", "fee")
    assert enricher.extract_metadata("COFFEE SHOP") is None


# ---- Failures and batches ----------------------------------------------------


def test_failure_is_reported_not_raised():
    enricher = TransactionEnricher(directory=_FlakyDirectory.from_resource())

    result = enricher.enrich("BOOM", transaction_id="tx-9")

    assert not result.success
    assert not result.enriched
    assert result.transaction_id == "tx-9"
    assert result.error == "merchant directory unavailable"


def test_enrich_batch_keeps_order_and_survives_failures(category_store):
    enricher = TransactionEnricher(
        directory=_FlakyDirectory.from_resource(), categories=category_store
    )
    requests = [
        EnrichmentRequest(description="TESCO EXTRA", user_id=USER_ID, transaction_id="a"),
        EnrichmentRequest(description="BOOM", transaction_id="b"),
        EnrichmentRequest(description="UBER TRIP", user_id=USER_ID, transaction_id="c"),
        EnrichmentRequest(description="SPOTIFY P1234", transaction_id="d"),
    ]

    results = enricher.enrich_batch(requests, concurrency=3)

    assert [r.transaction_id for r in results] == ["a", "b", "c", "d"]
    assert [r.success for r in results] == [True, False, True, True]
    assert results[2].data.category is not None
    assert results[2].data.category.category_id == "cat-transport"


def test_enrich_batch_empty():
    assert TransactionEnricher().enrich_batch([]) == []
