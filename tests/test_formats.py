from __future__ import annotations

import pytest
from pydantic import ValidationError

from transaction_ingestion.formats import (
    BankFormatConfig,
    CleanupRule,
    date_format_to_strptime,
    iter_header_matches,
    load_bank_formats,
)

BARCLAYS_HEADERS = ["Date", "Amount", "Description", "Merchant", "Reference", "Balance"]
HSBC_HEADERS = [
    "Transaction Date",
    "Transaction Description",
    "Debit Amount",
    "Credit Amount",
    "Balance",
    "Reference Number",
]
LLOYDS_HEADERS = [
    "Transaction Date",
    "Transaction Description",
    "Debit Amount",
    "Credit Amount",
    "Merchant Name",
    "Transaction ID",
]


def test_builtin_formats_are_registered():
    registry = load_bank_formats()
    assert set(registry.codes()) >= {"barclays", "hsbc", "lloyds", "generic"}
    assert registry.get("BARCLAYS").name == "Barclays UK"


@pytest.mark.parametrize(
    ("headers", "expected"),
    [
        (BARCLAYS_HEADERS, "barclays"),
        (HSBC_HEADERS, "hsbc"),
        (LLOYDS_HEADERS, "lloyds"),
        (["date", "amount", "description"], "generic"),
        (["Foo", "Bar"], "generic"),
        ([], "generic"),
    ],
)
def test_detect_picks_best_coverage(headers, expected):
    assert load_bank_formats().detect(headers) == expected


def test_detect_uses_sample_keys_when_headers_missing():
    registry = load_bank_formats()
    sample = [{h: "" for h in HSBC_HEADERS}]
    assert registry.detect([], sample) == "hsbc"


def test_unknown_code_raises_value_error():
    registry = load_bank_formats()
    with pytest.raises(ValueError, match="unknown bank format"):
        registry.get("monzo")


def test_brand_in_headers_breaks_a_tie():
    registry = load_bank_formats()
    mappings = {"date": "Created", "amount": "Money", "description": "Name"}
    for code, name in (("monzo", "Monzo"), ("starling", "Starling Bank")):
        registry.register(
            code,
            BankFormatConfig(name=name, field_mappings=mappings, date_formats=("YYYY-MM-DD",)),
        )

    assert registry.detect(["Created", "Money", "Name"]) == "generic"

    branded = ["Created", "Money", "Name", "Starling Ref"]
    assert registry.score(branded)["starling"] == pytest.approx(1.1)
    assert registry.score(branded)["monzo"] == pytest.approx(1.0)
    assert registry.detect(branded) == "starling"


def test_register_is_last_write_wins():
    registry = load_bank_formats()
    custom = BankFormatConfig(
        name="Monzo",
        field_mappings={"date": "Created", "amount": "Money", "description": "Name"},
        date_formats=("YYYY-MM-DD",),
    )
    registry.register("Monzo", custom)
    assert registry.get("monzo") is custom
    assert registry.detect(["Created", "Money", "Name"]) == "monzo"

    replacement = custom.model_copy(update={"name": "Monzo v2"})
    registry.register("monzo", replacement)
    assert registry.get("monzo").name == "Monzo v2"


def test_header_matching_is_tiered():
    # Exact beats case-insensitive beats substring, and short candidates never
    # match as substrings.
    headers = ["Paid Out", "amount", "Debit Amount"]
    assert list(iter_header_matches(headers, ["Amount"])) == ["amount", "Debit Amount"]
    assert list(iter_header_matches(headers, ["id"])) == []


def test_config_rejects_missing_required_fields():
    with pytest.raises(ValidationError):
        BankFormatConfig(
            name="Broken",
            field_mappings={"date": "Date", "amount": "Amount"},
            date_formats=("DD/MM/YYYY",),
        )


def test_config_rejects_bad_cleanup_pattern():
    with pytest.raises(ValidationError):
        CleanupRule(pattern="(unclosed", replacement="")


def test_date_tokens_translate_to_strptime():
    assert date_format_to_strptime("DD/MM/YYYY") == "%d/%m/%Y"
    assert date_format_to_strptime("DD MMM YYYY") == "%d %b %Y"
    with pytest.raises(ValueError):
        date_format_to_strptime("QQ/MM")
