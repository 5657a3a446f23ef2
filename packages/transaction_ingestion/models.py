"""Data models and type aliases for ``transaction_ingestion``.

Value objects produced by the pipeline are frozen, slotted dataclasses. Shapes
that are loaded from JSON resources or external stores (bank formats, merchant
entries, categorization rules) are pydantic models so that malformed input is
rejected at the boundary with a ``pydantic.ValidationError``.

Amounts are ``Decimal`` magnitudes (never negative); direction lives in the
transaction ``type``. Dates are ``datetime.date`` values.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Raw input and closed vocabularies
# ---------------------------------------------------------------------------

# A single bank-export row. Keys are bank-specific headers; values are raw cell
# values (usually strings from CSV, sometimes numbers from JSON sources).
type RawRecord = Mapping[str, Any]

type TransactionType = Literal["income", "expense", "transfer"]

TRANSACTION_TYPES: tuple[str, ...] = ("income", "expense", "transfer")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class NormalizedTransaction:
    """Canonical transaction produced by the normalizer.

    ``date_inferred`` is set when no configured or general date format matched
    and the normalizer fell back to the current day.
    """

    amount: Decimal
    currency: str
    description: str
    date: dt.date
    type: TransactionType
    external_id: str | None = None
    merchant: str | None = None
    location: str | None = None
    reference: str | None = None
    date_inferred: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Render a JSON-friendly mapping (ISO date, 2 dp amount string)."""

        return {
            "external_id": self.external_id,
            "amount": f"{self.amount:.2f}",
            "currency": self.currency,
            "description": self.description,
            "date": self.date.isoformat(),
            "type": self.type,
            "merchant": self.merchant,
            "location": self.location,
            "reference": self.reference,
            "date_inferred": self.date_inferred,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class BatchError:
    """A record that could not be normalized, with its position and input."""

    index: int
    error: str
    data: RawRecord


@dataclass(frozen=True, slots=True)
class BatchNormalization:
    normalized: list[NormalizedTransaction]
    errors: list[BatchError]
    format_used: str


# ---------------------------------------------------------------------------
# Store read models
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Category:
    id: str
    name: str
    type: TransactionType
    parent_id: str | None = None


@dataclass(frozen=True, slots=True)
class StoredTransaction:
    """A transaction already persisted for an account."""

    id: str
    account_id: str
    amount: Decimal
    date: dt.date
    description: str
    type: TransactionType
    external_id: str | None = None
    merchant: str | None = None
    location: str | None = None
    category_id: str | None = None
    category_name: str | None = None
    is_duplicate: bool = False
    duplicate_of_id: str | None = None


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DuplicateMatch:
    transaction_id: str
    match_score: float
    match_reasons: tuple[str, ...]
    matched_fields: tuple[str, ...]
    is_exact_duplicate: bool


@dataclass(frozen=True, slots=True)
class DuplicateDetectionResult:
    is_duplicate: bool
    matches: tuple[DuplicateMatch, ...] = ()
    best_match: DuplicateMatch | None = None
    confidence: float = 0.0


type CleanupAction = Literal["marked", "error", "manual_review"]


@dataclass(frozen=True, slots=True)
class CleanupDetail:
    transaction_id: str
    duplicate_id: str
    action: CleanupAction
    reason: str


@dataclass(frozen=True, slots=True)
class CleanupReport:
    """Outcome of an account-wide duplicate sweep."""

    found: int
    resolved: int
    errors: int
    details: tuple[CleanupDetail, ...] = ()


# ---------------------------------------------------------------------------
# Categorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationSuggestion:
    category_id: str
    category_name: str
    confidence: float
    reason: str


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    category_id: str | None
    confidence: float
    rule: str | None = None
    suggestions: tuple[CategorizationSuggestion, ...] = ()

    @classmethod
    def empty(cls) -> CategorizationResult:
        return cls(category_id=None, confidence=0.0)


class TextCondition(BaseModel):
    """Condition over a text field of the incoming transaction."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: Literal["description", "merchant", "location"]
    operator: Literal["contains", "equals", "starts_with", "ends_with", "regex"]
    value: str
    case_sensitive: bool = False


class AmountCondition(BaseModel):
    """Condition over the transaction amount magnitude."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: Literal["amount"]
    operator: Literal["equals", "greater_than", "less_than"]
    value: Decimal


# Tagged on ``field``: ``amount`` selects the numeric variant.
RuleCondition = Annotated[TextCondition | AmountCondition, Field(discriminator="field")]


class CategorizationRule(BaseModel):
    """A user-authored rule evaluated by the custom-rule strategy."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    id: str
    name: str
    type: TransactionType
    conditions: tuple[RuleCondition, ...] = ()
    category_id: str
    category_name: str = ""
    priority: int = 0
    confidence: float = 0.9
    is_active: bool = True

    @field_validator("confidence")
    @classmethod
    def _confidence_in_unit_interval(cls, v: float) -> float:
        if 0.0 <= v <= 1.0:
            return float(v)
        raise ValueError("confidence must be within [0,1]")


@dataclass(frozen=True, slots=True)
class CorrectionFeedback:
    """Append-only record of a user overriding an assigned category."""

    user_id: str
    transaction_id: str
    old_category_id: str | None
    new_category_id: str
    description: str
    merchant: str | None
    amount: Decimal
    created_at: dt.datetime


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


class ChainInfo(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    parent_company: str | None = None
    brand_type: Literal["chain", "franchise", "independent"] = "independent"


class MerchantInfo(BaseModel):
    """Merchant directory entry, or a merchant extracted from free text."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    name: str
    clean_name: str
    category: str
    subcategory: str | None = None
    website: str | None = None
    description: str | None = None
    chain: ChainInfo | None = None
    source: Literal["dictionary", "fuzzy", "extracted"] = "dictionary"


type VenueType = Literal["store", "restaurant", "atm", "online", "other"]


@dataclass(frozen=True, slots=True)
class VenueInfo:
    type: VenueType
    name: str | None = None


@dataclass(frozen=True, slots=True)
class LocationInfo:
    address: str | None = None
    city: str | None = None
    postcode: str | None = None
    country: str | None = None
    venue: VenueInfo | None = None


@dataclass(frozen=True, slots=True)
class CategorySuggestion:
    category_id: str
    category_name: str
    confidence: float
    source: Literal["merchant", "description", "amount"]


type PaymentMethod = Literal["card", "cash", "transfer", "direct_debit", "standing_order"]
type RecurringPattern = Literal["weekly", "monthly", "quarterly", "annually"]


@dataclass(frozen=True, slots=True)
class PaymentMetadata:
    """Closed set of payment facts plus an explicit bucket for anything else."""

    payment_method: PaymentMethod | None = None
    is_recurring: bool = False
    recurring_pattern: RecurringPattern | None = None
    tags: tuple[str, ...] = ()
    extras: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.payment_method is None and not self.is_recurring and not self.tags


@dataclass(frozen=True, slots=True)
class EnrichmentData:
    merchant: MerchantInfo | None = None
    location: LocationInfo | None = None
    category: CategorySuggestion | None = None
    metadata: PaymentMetadata | None = None


@dataclass(frozen=True, slots=True)
class EnrichmentResult:
    success: bool
    transaction_id: str | None
    enriched: bool
    data: EnrichmentData
    confidence: float
    sources: tuple[str, ...] = ()
    error: str | None = None


__all__ = [
    "TRANSACTION_TYPES",
    "AmountCondition",
    "BatchError",
    "BatchNormalization",
    "CategorizationResult",
    "CategorizationRule",
    "CategorizationSuggestion",
    "Category",
    "CategorySuggestion",
    "ChainInfo",
    "CleanupAction",
    "CleanupDetail",
    "CleanupReport",
    "CorrectionFeedback",
    "DuplicateDetectionResult",
    "DuplicateMatch",
    "EnrichmentData",
    "EnrichmentResult",
    "LocationInfo",
    "MerchantInfo",
    "NormalizedTransaction",
    "PaymentMetadata",
    "PaymentMethod",
    "RawRecord",
    "RecurringPattern",
    "RuleCondition",
    "StoredTransaction",
    "TextCondition",
    "TransactionType",
    "ValidationResult",
    "VenueInfo",
    "VenueType",
]
