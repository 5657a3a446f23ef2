"""Bank export formats: declarative configs, header matching and detection.

A :class:`BankFormatConfig` describes how one bank's export maps onto the
canonical transaction fields. Configs are data: the built-ins ship in
``resources/bank_formats.v1.json`` and callers may register more at runtime.

Header matching
---------------
Each canonical field maps to a pipe-separated list of candidate headers
(``"Debit Amount|Credit Amount"``). A record header matches a candidate in
three tiers, tried tier by tier across all candidates:

1. exact text;
2. case-insensitive equality;
3. the header contains the candidate (candidates of 3+ characters only, so
   ``"id"`` never matches ``"Paid Out"``).

Detection scores every registered config by the fraction of its mapped
fields that find a header, plus a small bonus when the bank's brand name
appears in a header. The best score wins; ties between two specific banks,
and all-zero scores, fall back to ``generic``.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterator, Mapping, Sequence
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .logging_setup import get_logger
from .models import RawRecord, TransactionType
from .settings import load_resource_json

_logger = get_logger("transaction_ingestion.formats")

GENERIC_CODE = "generic"
BANK_FORMATS_RESOURCE = "bank_formats.v1.json"

CANONICAL_FIELDS: frozenset[str] = frozenset(
    {
        "date",
        "amount",
        "description",
        "merchant",
        "location",
        "transaction_id",
        "reference",
        "balance",
        "type",
        "currency",
    }
)
_REQUIRED_FIELDS = ("date", "amount", "description")

_MIN_SUBSTRING_LEN = 3
_BRAND_BONUS = 0.1
_SCORE_EPSILON = 1e-9

# ---------------------------------------------------------------------------
# Date format tokens
# ---------------------------------------------------------------------------

_DATE_TOKEN_RE = re.compile(r"YYYY|YY|MMM|MM|DD")
_DATE_TOKENS = {"YYYY": "%Y", "YY": "%y", "MMM": "%b", "MM": "%m", "DD": "%d"}
_DATE_SEPARATORS = frozenset("/-. ")


def date_format_to_strptime(fmt: str) -> str:
    """Translate ``DD/MM/YYYY``-style tokens into a ``strptime`` pattern."""

    remainder = _DATE_TOKEN_RE.sub("", fmt)
    if not fmt.strip() or any(ch not in _DATE_SEPARATORS for ch in remainder):
        raise ValueError(f"unsupported date format: {fmt!r}")
    return _DATE_TOKEN_RE.sub(lambda m: _DATE_TOKENS[m.group(0)], fmt)


@lru_cache(maxsize=256)
def compile_pattern(pattern: str, flags: str = "") -> re.Pattern[str]:
    """Compile a config regex; ``i`` and ``m`` map to ``re`` flags."""

    re_flags = 0
    if "i" in flags:
        re_flags |= re.IGNORECASE
    if "m" in flags:
        re_flags |= re.MULTILINE
    return re.compile(pattern, re_flags)


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class AmountFormat(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    decimal_separator: str = "."
    thousands_separator: str = ","
    negative_format: Literal["minus", "parentheses", "cr_dr"] = "minus"
    currency_symbol: str | None = None
    currency_position: Literal["before", "after"] = "before"
    # Headers whose values are outflows even when written without a sign.
    debit_headers: tuple[str, ...] = ()

    @model_validator(mode="after")
    def _separators_differ(self) -> AmountFormat:
        if self.decimal_separator == self.thousands_separator:
            raise ValueError("decimal and thousands separators must differ")
        return self


class CleanupRule(BaseModel):
    """Ordered description rewrite; ``g`` in ``flags`` replaces every match."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    pattern: str
    replacement: str = ""
    flags: str = "g"
    extract_merchant: bool = False

    @field_validator("flags")
    @classmethod
    def _known_flags(cls, v: str) -> str:
        unknown = set(v) - set("gim")
        if unknown:
            raise ValueError(f"unsupported regex flags: {''.join(sorted(unknown))}")
        return v

    @model_validator(mode="after")
    def _pattern_compiles(self) -> CleanupRule:
        try:
            compiled = compile_pattern(self.pattern, self.flags)
        except re.error as exc:
            raise ValueError(f"invalid cleanup pattern {self.pattern!r}: {exc}") from exc
        if self.extract_merchant and compiled.groups < 1:
            raise ValueError("merchant-extracting rules need a capture group")
        return self

    @property
    def regex(self) -> re.Pattern[str]:
        return compile_pattern(self.pattern, self.flags)

    def apply(self, text: str) -> str:
        return self.regex.sub(self.replacement, text, count=0 if "g" in self.flags else 1)


class TypeCondition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    field: Literal["amount", "description", "merchant"]
    operator: Literal["contains", "equals", "greater_than", "less_than", "regex"]
    value: str

    @model_validator(mode="after")
    def _operand_matches_field(self) -> TypeCondition:
        if self.field == "amount":
            try:
                Decimal(self.value)
            except InvalidOperation as exc:
                raise ValueError(f"amount condition needs a numeric value: {self.value!r}") from exc
        elif self.operator in ("greater_than", "less_than"):
            raise ValueError(f"{self.operator} only applies to amount conditions")
        if self.operator == "regex":
            try:
                compile_pattern(self.value, "i")
            except re.error as exc:
                raise ValueError(f"invalid type-rule regex {self.value!r}: {exc}") from exc
        return self

    def holds(self, *, amount: Decimal, description: str, merchant: str | None) -> bool:
        """Evaluate against the signed amount and the cleaned text fields."""

        if self.field == "amount":
            target = Decimal(self.value)
            if self.operator == "greater_than":
                return amount > target
            if self.operator == "less_than":
                return amount < target
            if self.operator == "equals":
                return amount == target
            return False
        text = (description if self.field == "description" else merchant) or ""
        if self.operator == "contains":
            return self.value.lower() in text.lower()
        if self.operator == "equals":
            return text.strip().lower() == self.value.strip().lower()
        if self.operator == "regex":
            return compile_pattern(self.value, "i").search(text) is not None
        return False


class TypeRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    condition: TypeCondition
    type: TransactionType


class BankFormatConfig(BaseModel):
    """Immutable description of one bank's export layout."""

    model_config = ConfigDict(frozen=True, extra="forbid", str_strip_whitespace=True)

    name: str
    version: str = "1.0"
    field_mappings: dict[str, str]
    date_formats: tuple[str, ...]
    amount_format: AmountFormat = AmountFormat()
    description_cleanup: tuple[CleanupRule, ...] = ()
    transaction_type_rules: tuple[TypeRule, ...] = ()
    currency_default: str = "GBP"

    @field_validator("field_mappings")
    @classmethod
    def _known_fields(cls, v: dict[str, str]) -> dict[str, str]:
        unknown = set(v) - CANONICAL_FIELDS
        if unknown:
            raise ValueError(f"unknown canonical fields: {sorted(unknown)}")
        missing = [f for f in _REQUIRED_FIELDS if not (v.get(f) or "").strip()]
        if missing:
            raise ValueError(f"field_mappings missing required fields: {missing}")
        return v

    @field_validator("date_formats")
    @classmethod
    def _date_formats_supported(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("at least one date format is required")
        for fmt in v:
            date_format_to_strptime(fmt)
        return v

    @field_validator("currency_default")
    @classmethod
    def _currency_code(cls, v: str) -> str:
        code = v.upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"currency_default must be a 3-letter code, got {v!r}")
        return code

    def alternatives(self, field: str) -> tuple[str, ...]:
        raw = self.field_mappings.get(field) or ""
        return tuple(part.strip() for part in raw.split("|") if part.strip())

    @property
    def brand_token(self) -> str:
        words = self.name.split()
        return words[0].lower() if words else ""

    @property
    def day_first(self) -> bool:
        return self.date_formats[0].startswith("DD")


class _BankFormatsFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1]
    formats: dict[str, BankFormatConfig]


# ---------------------------------------------------------------------------
# Header matching
# ---------------------------------------------------------------------------


def iter_header_matches(headers: Sequence[str], alternatives: Sequence[str]) -> Iterator[str]:
    """Yield headers matching ``alternatives`` in tier order, without repeats."""

    seen: set[str] = set()
    lowered = [(h, h.strip().lower()) for h in headers]

    def _emit(h: str) -> Iterator[str]:
        if h not in seen:
            seen.add(h)
            yield h

    for alt in alternatives:
        if alt in headers:
            yield from _emit(alt)
    for alt in alternatives:
        a = alt.lower()
        for h, hl in lowered:
            if hl == a:
                yield from _emit(h)
    for alt in alternatives:
        a = alt.lower()
        if len(a) < _MIN_SUBSTRING_LEN:
            continue
        for h, hl in lowered:
            if a in hl:
                yield from _emit(h)


def extract_field(
    record: RawRecord, config: BankFormatConfig, field: str
) -> tuple[str | None, Any]:
    """Return ``(header, value)`` for the first non-empty match of ``field``."""

    alternatives = config.alternatives(field)
    if not alternatives:
        return None, None
    headers = [str(k) for k in record.keys()]
    for header in iter_header_matches(headers, alternatives):
        value = record.get(header)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return header, value
    return None, None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class FormatRegistry:
    """Mutable map of bank code to :class:`BankFormatConfig`.

    Registration is last-write-wins and codes are case-insensitive. Lookups
    are safe to run concurrently with registration.
    """

    def __init__(
        self,
        formats: Mapping[str, BankFormatConfig] | None = None,
        *,
        default_code: str = GENERIC_CODE,
    ) -> None:
        self._lock = threading.Lock()
        self._formats: dict[str, BankFormatConfig] = {}
        self.default_code = default_code.lower()
        for code, cfg in (formats or {}).items():
            self.register(code, cfg)

    def register(self, code: str, config: BankFormatConfig) -> None:
        key = code.strip().lower()
        if not key:
            raise ValueError("format code must be non-empty")
        with self._lock:
            replaced = key in self._formats
            self._formats = {**self._formats, key: config}
        _logger.debug(
            "%s bank format %s (%s)",
            "replaced" if replaced else "registered",
            key,
            config.name,
        )

    def get(self, code: str) -> BankFormatConfig:
        try:
            return self._formats[code.strip().lower()]
        except KeyError:
            raise ValueError(
                f"unknown bank format: {code!r}. Known: {sorted(self._formats)}"
            ) from None

    def codes(self) -> list[str]:
        return list(self._formats)

    def __contains__(self, code: object) -> bool:
        return isinstance(code, str) and code.strip().lower() in self._formats

    def score(self, headers: Sequence[str]) -> dict[str, float]:
        """Return the detection score of every registered format."""

        hs = [str(h) for h in headers]
        lowered = [h.lower() for h in hs]
        scores: dict[str, float] = {}
        for code, cfg in self._formats.items():
            mapped = [f for f in cfg.field_mappings if cfg.alternatives(f)]
            if not mapped:
                scores[code] = 0.0
                continue
            hits = sum(
                1 for f in mapped if next(iter_header_matches(hs, cfg.alternatives(f)), None)
            )
            value = hits / len(mapped)
            token = cfg.brand_token
            if token and len(token) >= _MIN_SUBSTRING_LEN and any(token in h for h in lowered):
                value += _BRAND_BONUS
            scores[code] = value
        return scores

    def detect(
        self, headers: Sequence[str], sample: Sequence[RawRecord] | None = None
    ) -> str:
        """Pick the best-matching format code for a header row.

        ``sample`` supplies headers when ``headers`` is empty (records decoded
        from JSON rather than CSV).
        """

        if not headers and sample:
            headers = [str(k) for k in sample[0].keys()]
        scores = self.score(headers)
        if not scores:
            return self.default_code
        best = max(scores.values())
        if best <= 0:
            return self.default_code
        top = [code for code, s in scores.items() if abs(s - best) <= _SCORE_EPSILON]
        specific = [code for code in top if code != self.default_code]
        if len(top) == 1:
            chosen = top[0]
        elif len(specific) == 1:
            chosen = specific[0]
        else:
            chosen = self.default_code
        _logger.debug("detected format %s (score=%.3f, candidates=%s)", chosen, best, top)
        return chosen


def load_bank_formats(path: Path | None = None) -> FormatRegistry:
    """Build a registry from the packaged bank formats (or ``path``)."""

    payload = load_resource_json(BANK_FORMATS_RESOURCE, path=path)
    parsed = _BankFormatsFile.model_validate(payload)
    return FormatRegistry(parsed.formats)


__all__ = [
    "BANK_FORMATS_RESOURCE",
    "CANONICAL_FIELDS",
    "GENERIC_CODE",
    "AmountFormat",
    "BankFormatConfig",
    "CleanupRule",
    "FormatRegistry",
    "TypeCondition",
    "TypeRule",
    "compile_pattern",
    "date_format_to_strptime",
    "extract_field",
    "iter_header_matches",
    "load_bank_formats",
]
