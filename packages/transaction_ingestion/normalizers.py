"""Raw bank records → :class:`NormalizedTransaction`.

The normalizer is driven entirely by a :class:`~.formats.BankFormatConfig`:
field extraction, date formats, amount conventions, description cleanup and
type rules all come from the config. There is no per-bank code here.

Fallback policies
-----------------
- Dates: configured formats in order, then general parsing with
  :mod:`dateutil` (day-first when the config's first format is day-first),
  then the current day. The last case sets ``date_inferred`` and surfaces as a
  validation warning.
- Type: the first matching type rule wins; otherwise a non-negative signed
  amount is ``income`` and a negative one ``expense``.
- Amounts that cannot be parsed are treated as missing.

CSV loading follows RFC 4180 via the stdlib :mod:`csv` module.
"""

from __future__ import annotations

import csv
import datetime as dt
import re
from collections.abc import Callable, Iterable, Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import StringIO
from typing import Any

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from .formats import (
    AmountFormat,
    BankFormatConfig,
    FormatRegistry,
    date_format_to_strptime,
    extract_field,
    load_bank_formats,
)
from .logging_setup import get_logger
from .models import (
    BatchError,
    BatchNormalization,
    NormalizedTransaction,
    RawRecord,
    TransactionType,
    ValidationResult,
)

_logger = get_logger("transaction_ingestion.normalizers")

_CENT = Decimal("0.01")
_COMMON_CURRENCY_SYMBOLS = ("£", "$", "€")
_LEGAL_SUFFIX_RE = re.compile(r"\b(?:LTD|LIMITED|PLC|LLP|INC)\b\.?", re.IGNORECASE)
_CR_DR_RE = re.compile(r"^(?P<body>.*?)\s*(?P<mark>CR|DR)\.?$", re.IGNORECASE)

_LARGE_AMOUNT = Decimal("1000000")
# Largest magnitude that still quantizes to cents under the default 28-digit context.
_MAX_AMOUNT_EXPONENT = 24
_MAX_DESCRIPTION_LEN = 500
_BATCH_SAMPLE = 5


# ---------------------------------------------------------------------------
# Helpers (amount/date/text normalization, CSV loading)
# ---------------------------------------------------------------------------


def _to_signed_decimal(raw: Any, fmt: AmountFormat) -> Decimal | None:
    """Parse ``raw`` into a signed ``Decimal`` or ``None`` when unusable."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float, Decimal)):
        try:
            d = Decimal(str(raw))
        except InvalidOperation:
            return None
        return _bounded(d, raw)

    s = str(raw).strip()
    if not s:
        return None
    negative = False
    symbols = tuple(sym for sym in (fmt.currency_symbol, *_COMMON_CURRENCY_SYMBOLS) if sym)

    # Strip sign, currency symbol, parentheses and CR/DR markers in any order
    # until stable, so "-£(1,234.56)" and "£45.00 DR" both resolve.
    while True:
        changed = False
        if s.startswith("+"):
            s = s[1:].lstrip()
            changed = True
        elif s.startswith("-"):
            negative = True
            s = s[1:].lstrip()
            changed = True
        if s.endswith("-") and fmt.negative_format == "minus":
            negative = True
            s = s[:-1].rstrip()
            changed = True
        for sym in symbols:
            if s.startswith(sym):
                s = s[len(sym):].lstrip()
                changed = True
            if s.endswith(sym):
                s = s[: -len(sym)].rstrip()
                changed = True
        if s.startswith("(") and s.endswith(")") and len(s) >= 2:
            negative = True
            s = s[1:-1].strip()
            changed = True
        if fmt.negative_format == "cr_dr":
            m = _CR_DR_RE.match(s)
            if m:
                negative = negative or m.group("mark").upper() == "DR"
                s = m.group("body").strip()
                changed = True
        if not changed:
            break

    if fmt.thousands_separator:
        s = s.replace(fmt.thousands_separator, "")
    if fmt.decimal_separator != ".":
        s = s.replace(fmt.decimal_separator, ".")
    s = s.replace(" ", "")
    try:
        d = Decimal(s)
    except InvalidOperation:
        _logger.debug("unparseable amount %r", raw)
        return None
    bounded = _bounded(d, raw)
    if bounded is None:
        return None
    return -abs(bounded) if negative else bounded


def _bounded(d: Decimal, raw: Any) -> Decimal | None:
    if not d.is_finite():
        return None
    if d and d.adjusted() >= _MAX_AMOUNT_EXPONENT:
        _logger.debug("amount %r out of range", raw)
        return None
    return d


def _parse_date(raw: Any, config: BankFormatConfig) -> dt.date | None:
    if raw is None:
        return None
    if isinstance(raw, dt.datetime):
        return raw.date()
    if isinstance(raw, dt.date):
        return raw
    s = str(raw).strip()
    if not s:
        return None
    for fmt in config.date_formats:
        try:
            return dt.datetime.strptime(s, date_format_to_strptime(fmt)).date()
        except ValueError:
            continue
    try:
        return date_parser.parse(s, dayfirst=config.day_first).date()
    except (ValueError, OverflowError):
        return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    s = " ".join(str(value).split())
    return s or None


def clean_merchant_name(name: str) -> str:
    """Drop legal suffixes, collapse whitespace and capitalize each word.

    ``"TESCO STORES LTD"`` → ``"Tesco Stores"``.
    """

    s = _LEGAL_SUFFIX_RE.sub("", name)
    parts = s.split()
    return " ".join(w[:1].upper() + w[1:].lower() for w in parts)


def read_csv_rows(csv_text: str) -> list[dict[str, str]]:
    """Load CSV text into header-keyed rows, skipping fully blank lines."""

    with StringIO(csv_text) as f:
        reader = csv.DictReader(f)
        rows: list[dict[str, str]] = []
        for row in reader:
            # DictReader collects overflow cells under a ``None`` key; drop them.
            cleaned = {k: (v if v is not None else "") for k, v in row.items() if k is not None}
            if all(not str(v).strip() for v in cleaned.values()):
                continue
            rows.append(cleaned)
        return rows


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class TransactionNormalizer:
    """Normalize and validate raw records using registered bank formats.

    Usage
    -----
    normalizer = TransactionNormalizer()
    tx = normalizer.normalize(row, "barclays")
    batch = normalizer.normalize_batch(rows)  # auto-detects the format
    """

    def __init__(
        self,
        registry: FormatRegistry | None = None,
        *,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self.registry = registry if registry is not None else load_bank_formats()
        self._today = today

    def detect_format(
        self, headers: Sequence[str], sample: Sequence[RawRecord] | None = None
    ) -> str:
        return self.registry.detect(headers, sample)

    def normalize(self, raw: RawRecord, format_code: str) -> NormalizedTransaction | None:
        """Map ``raw`` onto the canonical shape.

        Returns ``None`` only when the record has neither a description nor an
        amount. Raises ``ValueError`` for an unknown ``format_code``.
        """

        config = self.registry.get(format_code)

        amount_header, raw_amount = extract_field(raw, config, "amount")
        signed = _to_signed_decimal(raw_amount, config.amount_format)
        if signed is not None and amount_header in config.amount_format.debit_headers:
            signed = -abs(signed)

        _, raw_description = extract_field(raw, config, "description")
        description = _text(raw_description)
        if description is None and signed is None:
            return None

        _, raw_merchant = extract_field(raw, config, "merchant")
        merchant = _text(raw_merchant)
        description, extracted = self._clean_description(description or "", config)
        if merchant is None:
            merchant = extracted

        _, raw_date = extract_field(raw, config, "date")
        parsed = _parse_date(raw_date, config)
        date_inferred = parsed is None
        if parsed is None:
            parsed = self._today()
            _logger.warning(
                "no usable date in record (%r); defaulting to %s", raw_date, parsed.isoformat()
            )

        signed_amount = signed if signed is not None else Decimal(0)
        tx_type = self._infer_type(config, signed_amount, description, merchant)

        _, raw_currency = extract_field(raw, config, "currency")
        currency = (_text(raw_currency) or config.currency_default).upper()
        _, raw_external_id = extract_field(raw, config, "transaction_id")
        _, raw_reference = extract_field(raw, config, "reference")
        _, raw_location = extract_field(raw, config, "location")

        return NormalizedTransaction(
            amount=abs(signed_amount).quantize(_CENT, rounding=ROUND_HALF_UP),
            currency=currency,
            description=description,
            date=parsed,
            type=tx_type,
            external_id=_text(raw_external_id),
            merchant=merchant,
            location=_text(raw_location),
            reference=_text(raw_reference),
            date_inferred=date_inferred,
        )

    @staticmethod
    def _clean_description(text: str, config: BankFormatConfig) -> tuple[str, str | None]:
        merchant: str | None = None
        for rule in config.description_cleanup:
            if rule.extract_merchant and merchant is None:
                m = rule.regex.search(text)
                if m and m.group(1) and m.group(1).strip():
                    merchant = clean_merchant_name(m.group(1)) or None
            text = rule.apply(text)
        return text.strip(), merchant

    @staticmethod
    def _infer_type(
        config: BankFormatConfig, amount: Decimal, description: str, merchant: str | None
    ) -> TransactionType:
        for rule in config.transaction_type_rules:
            if rule.condition.holds(amount=amount, description=description, merchant=merchant):
                return rule.type
        return "income" if amount >= 0 else "expense"

    def validate(self, tx: NormalizedTransaction) -> ValidationResult:
        """Hard errors make a record invalid; warnings are informational."""

        errors: list[str] = []
        warnings: list[str] = []

        if tx.amount is None or tx.amount == 0:
            errors.append("Amount is required and must be non-zero")
        if not isinstance(tx.date, dt.date):
            errors.append("Date is required")
        if not (tx.description or "").strip():
            errors.append("Description is required")

        if isinstance(tx.date, dt.date):
            today = self._today()
            if tx.date < today - relativedelta(years=2):
                warnings.append("Transaction date is more than 2 years old")
            if tx.date > today + relativedelta(years=1):
                warnings.append("Transaction date is more than 1 year in the future")
        if tx.date_inferred:
            warnings.append("Date could not be parsed; defaulted to today")
        if tx.amount is not None and tx.amount > _LARGE_AMOUNT:
            warnings.append("Amount is unusually large")
        if len(tx.description or "") > _MAX_DESCRIPTION_LEN:
            warnings.append("Description is very long")

        return ValidationResult(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))

    def normalize_batch(
        self, raw_records: Iterable[RawRecord], format_code: str | None = None
    ) -> BatchNormalization:
        """Normalize every record independently and collect indexed failures.

        When ``format_code`` is omitted the format is detected from the first
        record's headers. An explicit unknown code raises ``ValueError``.
        """

        records = list(raw_records)
        if format_code is None:
            if records:
                format_code = self.detect_format(
                    [str(k) for k in records[0].keys()], records[:_BATCH_SAMPLE]
                )
            else:
                format_code = self.registry.default_code
        else:
            # Fail fast on caller error rather than once per record.
            self.registry.get(format_code)

        normalized: list[NormalizedTransaction] = []
        errors: list[BatchError] = []
        for index, raw in enumerate(records):
            try:
                tx = self.normalize(raw, format_code)
            except Exception as e:  # noqa: BLE001
                errors.append(BatchError(index=index, error=str(e), data=raw))
                continue
            if tx is None:
                errors.append(
                    BatchError(index=index, error="Record has no description or amount", data=raw)
                )
                continue
            result = self.validate(tx)
            if not result.valid:
                errors.append(BatchError(index=index, error="; ".join(result.errors), data=raw))
                continue
            normalized.append(tx)

        _logger.info(
            "normalized %d/%d records using %s (%d errors)",
            len(normalized),
            len(records),
            format_code,
            len(errors),
        )
        return BatchNormalization(normalized=normalized, errors=errors, format_used=format_code)


__all__ = ["TransactionNormalizer", "clean_merchant_name", "read_csv_rows"]
