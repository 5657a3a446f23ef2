"""Transaction enrichment: merchant, location, category hint, payment metadata.

Every signal is optional. Present signals feed a weighted aggregate
confidence; a transaction counts as ``enriched`` when that aggregate exceeds
0.3.

======================  ======  =======================================
signal                  weight  confidence
======================  ======  =======================================
merchant                0.8     dictionary 1.0, fuzzy 0.75, extracted 0.5
location                0.6     1.0
category suggestion     1.0     the suggestion's own confidence
payment metadata        0.4     1.0
======================  ======  =======================================

The merchant directory, extraction patterns, city list and payment keywords
are data (``resources/merchants.v1.json`` and
``resources/enrichment_rules.v1.json``).
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict

from .categorization import KeywordMatcher, find_category
from .formats import compile_pattern
from .logging_setup import get_logger
from .models import (
    Category,
    CategorySuggestion,
    EnrichmentData,
    EnrichmentResult,
    LocationInfo,
    MerchantInfo,
    PaymentMetadata,
    PaymentMethod,
    RecurringPattern,
    VenueInfo,
    VenueType,
)
from .normalizers import clean_merchant_name
from .pmap import p_map
from .rate_limit import RateLimiter
from .settings import load_resource_json
from .stores import CategoryStore

_logger = get_logger("transaction_ingestion.enrichment")

MERCHANTS_RESOURCE = "merchants.v1.json"
ENRICHMENT_RULES_RESOURCE = "enrichment_rules.v1.json"

_MERCHANT_WEIGHT = 0.8
_LOCATION_WEIGHT = 0.6
_CATEGORY_WEIGHT = 1.0
_METADATA_WEIGHT = 0.4
_ENRICHED_THRESHOLD = 0.3

_SOURCE_CONFIDENCE = {"dictionary": 1.0, "fuzzy": 0.75, "extracted": 0.5}
_MERCHANT_CATEGORY_CONFIDENCE = 0.9
_DESCRIPTION_CATEGORY_CONFIDENCE = 0.7
_MIN_FUZZY_WORD = 4
_EXTRACTED_LEN = (3, 50)
_UNKNOWN_CATEGORY = "unknown"

_NON_WORD_RE = re.compile(r"[^\w\s]")

# ---------------------------------------------------------------------------
# Resource models
# ---------------------------------------------------------------------------


class _MerchantsFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1]
    merchants: dict[str, MerchantInfo]


class _Pattern(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    pattern: str
    flags: str = "i"

    @property
    def regex(self) -> re.Pattern[str]:
        return compile_pattern(self.pattern, self.flags)


class _VenueRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: VenueType
    keywords: tuple[str, ...]


class _PaymentRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    method: PaymentMethod
    patterns: tuple[str, ...]


class _TagRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    tag: str
    pattern: str


class _AmountHint(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str
    max_amount: Decimal
    confidence: float


class EnrichmentRules(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal[1]
    merchant_extraction: tuple[_Pattern, ...]
    postcode_pattern: str
    country: str
    cities: tuple[str, ...]
    venue_types: tuple[_VenueRule, ...]
    payment_methods: tuple[_PaymentRule, ...]
    recurring_methods: dict[PaymentMethod, RecurringPattern]
    tags: tuple[_TagRule, ...]
    small_amount_hint: _AmountHint

    @classmethod
    def from_resource(cls, path: Path | None = None) -> EnrichmentRules:
        return cls.model_validate(load_resource_json(ENRICHMENT_RULES_RESOURCE, path=path))


# ---------------------------------------------------------------------------
# Merchant directory
# ---------------------------------------------------------------------------


class MerchantDirectory:
    """Lower-case brand fragment → :class:`MerchantInfo`.

    Lookups iterate in insertion order. ``register`` swaps in a new mapping so
    concurrent readers always see a complete dictionary.
    """

    def __init__(self, merchants: Mapping[str, MerchantInfo] | None = None) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, MerchantInfo] = {
            k.strip().lower(): v for k, v in (merchants or {}).items()
        }

    @classmethod
    def from_resource(cls, path: Path | None = None) -> MerchantDirectory:
        parsed = _MerchantsFile.model_validate(load_resource_json(MERCHANTS_RESOURCE, path=path))
        return cls(parsed.merchants)

    def register(self, key: str, info: MerchantInfo) -> None:
        k = key.strip().lower()
        if not k:
            raise ValueError("merchant key must be non-empty")
        with self._lock:
            self._entries = {**self._entries, k: info}

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, text: str) -> MerchantInfo | None:
        """Dictionary key contained in ``text``, else a fuzzy word match."""

        entries = self._entries
        lowered = text.lower()
        for key, info in entries.items():
            if key in lowered:
                return info

        words = [w for w in _NON_WORD_RE.sub(" ", lowered).split() if len(w) >= _MIN_FUZZY_WORD]
        for info in entries.values():
            clean = info.clean_name.lower()
            if any(w in clean for w in words):
                return info.model_copy(update={"source": "fuzzy"})
        return None


# ---------------------------------------------------------------------------
# Enricher
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EnrichmentRequest:
    description: str
    merchant: str | None = None
    amount: Decimal | None = None
    location: str | None = None
    user_id: str | None = None
    transaction_id: str | None = None


class TransactionEnricher:
    """Derive merchant, location, category and payment facts from free text."""

    def __init__(
        self,
        *,
        directory: MerchantDirectory | None = None,
        rules: EnrichmentRules | None = None,
        categories: CategoryStore | None = None,
        matcher: KeywordMatcher | None = None,
    ) -> None:
        self.directory = directory if directory is not None else MerchantDirectory.from_resource()
        self.rules = rules if rules is not None else EnrichmentRules.from_resource()
        self.categories = categories
        self.matcher = matcher if matcher is not None else KeywordMatcher.from_resource()

    def update_merchant_database(self, key: str, info: MerchantInfo) -> None:
        self.directory.register(key, info)

    # -- Merchant ------------------------------------------------------------

    def extract_merchant(self, description: str) -> str | None:
        lo, hi = _EXTRACTED_LEN
        for pat in self.rules.merchant_extraction:
            m = pat.regex.search(description)
            if not m or not m.group(1):
                continue
            extracted = m.group(1).strip()
            if lo <= len(extracted) < hi:
                cleaned = clean_merchant_name(extracted)
                if cleaned:
                    return cleaned
        return None

    def resolve_merchant(self, description: str, merchant: str | None) -> MerchantInfo | None:
        found = self.directory.lookup(f"{description} {merchant or ''}")
        if found is not None:
            return found
        extracted = self.extract_merchant(description)
        if extracted is None:
            return None
        return MerchantInfo(
            name=extracted,
            clean_name=extracted,
            category=_UNKNOWN_CATEGORY,
            description="Extracted from transaction description",
            source="extracted",
        )

    # -- Location ------------------------------------------------------------

    def infer_venue_type(self, merchant_name: str | None) -> VenueType:
        if not merchant_name:
            return "other"
        name = merchant_name.lower()
        for rule in self.rules.venue_types:
            if any(kw in name for kw in rule.keywords):
                return rule.type
        return "other"

    def resolve_location(self, hint: str | None, merchant_name: str | None) -> LocationInfo | None:
        if not hint or not hint.strip():
            return None
        venue = VenueInfo(type=self.infer_venue_type(merchant_name), name=merchant_name)
        m = compile_pattern(self.rules.postcode_pattern, "i").search(hint)
        if m:
            return LocationInfo(
                address=hint.strip(),
                postcode=m.group(1).upper(),
                country=self.rules.country,
                venue=venue,
            )
        lowered = hint.lower()
        for city in self.rules.cities:
            if compile_pattern(rf"\b{re.escape(city)}\b").search(lowered):
                return LocationInfo(
                    address=hint.strip(),
                    city=city[:1].upper() + city[1:],
                    country=self.rules.country,
                    venue=venue,
                )
        return None

    # -- Category ------------------------------------------------------------

    def suggest_category(
        self,
        user_id: str | None,
        description: str,
        merchant: MerchantInfo | None,
        amount: Decimal | None,
    ) -> CategorySuggestion | None:
        if self.categories is None or not user_id:
            return None
        cats = list(self.categories.list_categories(user_id))
        if not cats:
            return None

        if merchant is not None and merchant.category != _UNKNOWN_CATEGORY:
            cat = find_category(cats, merchant.category) or _category_named_in(
                cats, merchant.category
            )
            if cat is not None:
                return _suggestion(cat, _MERCHANT_CATEGORY_CONFIDENCE, "merchant")

        for hit in self.matcher.match(description):
            cat = find_category(cats, hit.family, hit.keyword)
            if cat is not None:
                return _suggestion(
                    cat, min(hit.confidence, _DESCRIPTION_CATEGORY_CONFIDENCE), "description"
                )
        cat = _category_named_in(cats, description)
        if cat is not None:
            return _suggestion(cat, _DESCRIPTION_CATEGORY_CONFIDENCE, "description")

        hint = self.rules.small_amount_hint
        if amount is not None and 0 < abs(amount) < hint.max_amount:
            cat = find_category(cats, hint.category)
            if cat is not None:
                return _suggestion(cat, hint.confidence, "amount")
        return None

    # -- Metadata ------------------------------------------------------------

    def extract_metadata(self, description: str) -> PaymentMetadata | None:
        lowered = description.lower()
        method: PaymentMethod | None = None
        for rule in self.rules.payment_methods:
            if any(compile_pattern(p, "i").search(lowered) for p in rule.patterns):
                method = rule.method
                break
        pattern = self.rules.recurring_methods.get(method) if method else None
        tags = tuple(
            t.tag for t in self.rules.tags if compile_pattern(t.pattern, "i").search(lowered)
        )
        metadata = PaymentMetadata(
            payment_method=method,
            is_recurring=pattern is not None,
            recurring_pattern=pattern,
            tags=tags,
        )
        return None if metadata.is_empty else metadata

    # -- Entry points --------------------------------------------------------

    def enrich(
        self,
        description: str,
        merchant: str | None = None,
        amount: Decimal | None = None,
        location: str | None = None,
        *,
        user_id: str | None = None,
        transaction_id: str | None = None,
    ) -> EnrichmentResult:
        """Enrich one transaction. Failures come back as ``success=False``."""

        try:
            description = description or ""
            weighted = 0.0
            weights = 0.0
            sources: list[str] = []

            merchant_info = self.resolve_merchant(description, merchant)
            if merchant_info is not None:
                weighted += _SOURCE_CONFIDENCE[merchant_info.source] * _MERCHANT_WEIGHT
                weights += _MERCHANT_WEIGHT
                sources.append(
                    "merchant_extraction"
                    if merchant_info.source == "extracted"
                    else "merchant_database"
                )

            venue_name = merchant_info.clean_name if merchant_info else merchant
            location_info = self.resolve_location(location, venue_name)
            if location_info is not None:
                weighted += _LOCATION_WEIGHT
                weights += _LOCATION_WEIGHT
                sources.append("location_data")

            category = self.suggest_category(user_id, description, merchant_info, amount)
            if category is not None:
                weighted += category.confidence * _CATEGORY_WEIGHT
                weights += _CATEGORY_WEIGHT
                sources.append("category_engine")

            metadata = self.extract_metadata(description)
            if metadata is not None:
                weighted += _METADATA_WEIGHT
                weights += _METADATA_WEIGHT
                sources.append("metadata_extraction")

            confidence = weighted / weights if weights > 0 else 0.0
            return EnrichmentResult(
                success=True,
                transaction_id=transaction_id,
                enriched=confidence > _ENRICHED_THRESHOLD,
                data=EnrichmentData(
                    merchant=merchant_info,
                    location=location_info,
                    category=category,
                    metadata=metadata,
                ),
                confidence=confidence,
                sources=tuple(sources),
            )
        except Exception as e:  # noqa: BLE001
            _logger.exception("enrichment failed for transaction %s", transaction_id)
            return EnrichmentResult(
                success=False,
                transaction_id=transaction_id,
                enriched=False,
                data=EnrichmentData(),
                confidence=0.0,
                error=str(e) or e.__class__.__name__,
            )

    def enrich_batch(
        self,
        items: Sequence[EnrichmentRequest],
        *,
        concurrency: int = 4,
        limiter: RateLimiter | None = None,
    ) -> list[EnrichmentResult]:
        """Enrich ``items`` on a bounded pool, in input order.

        ``limiter`` gates each call; failed items are returned as results
        with ``success=False`` and do not stop the batch.
        """

        if not items:
            return []

        def _one(req: EnrichmentRequest) -> EnrichmentResult:
            return self.enrich(
                req.description,
                req.merchant,
                req.amount,
                req.location,
                user_id=req.user_id,
                transaction_id=req.transaction_id,
            )

        results = p_map(
            items,
            _one,
            concurrency=max(1, min(concurrency, len(items))),
            stop_on_error=False,
            limiter=limiter,
        )
        failed = sum(1 for r in results if not r.success)
        _logger.info("enriched %d items (%d failed)", len(results), failed)
        return results


def _category_named_in(categories: Sequence[Category], text: str) -> Category | None:
    """Category whose name (or one of its words) appears in ``text``."""

    lowered = text.lower()
    for cat in categories:
        name = cat.name.lower()
        if name and name in lowered:
            return cat
        if any(len(w) >= 3 and compile_pattern(rf"\b{re.escape(w)}\b").search(lowered)
               for w in name.split()):
            return cat
    return None


def _suggestion(
    cat: Category, confidence: float, source: Literal["merchant", "description", "amount"]
) -> CategorySuggestion:
    return CategorySuggestion(
        category_id=cat.id, category_name=cat.name, confidence=confidence, source=source
    )


__all__ = [
    "ENRICHMENT_RULES_RESOURCE",
    "MERCHANTS_RESOURCE",
    "EnrichmentRequest",
    "EnrichmentRules",
    "MerchantDirectory",
    "TransactionEnricher",
]
