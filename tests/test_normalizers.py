from __future__ import annotations

import datetime as dt
import textwrap
from decimal import Decimal

import pytest

from tests.helpers.builders import TODAY
from transaction_ingestion.formats import AmountFormat
from transaction_ingestion.models import NormalizedTransaction
from transaction_ingestion.normalizers import (
    _to_signed_decimal,
    clean_merchant_name,
    read_csv_rows,
)


def _dedent(s: str) -> str:
    return textwrap.dedent(s).lstrip("\n")


# ---- Single-record normalization ---------------------------------------------


def test_barclays_card_payment(normalizer):
    raw = {
        "Date": "15/01/2024",
        "Amount": "-45.99",
        "Description": "CARD PAYMENT TO TESCO STORES 1234",
    }

    tx = normalizer.normalize(raw, "barclays")

    assert tx == NormalizedTransaction(
        amount=Decimal("45.99"),
        currency="GBP",
        description="TESCO STORES 1234",
        date=dt.date(2024, 1, 15),
        type="expense",
        merchant="Tesco Stores 1234",
    )
    assert normalizer.validate(tx).valid


def test_normalize_is_idempotent(normalizer):
    raw = {
        "Date": "15/01/2024",
        "Amount": "-45.99",
        "Description": "CARD PAYMENT TO TESCO STORES 1234",
    }
    assert normalizer.normalize(raw, "barclays") == normalizer.normalize(raw, "barclays")


def test_barclays_direct_debit_and_income(normalizer):
    dd = normalizer.normalize(
        {"Date": "01/02/2024", "Amount": "-12.00", "Description": "DIRECT  DEBIT  NETFLIX"},
        "barclays",
    )
    assert dd is not None
    assert dd.description == "DD: NETFLIX"
    assert dd.type == "expense"

    salary = normalizer.normalize(
        {
            "Date": "2024-02-28",
            "Amount": "£2,500.00",
            "Description": "ACME LTD SALARY",
            "Reference": "TXN42",
        },
        "barclays",
    )
    assert salary is not None
    assert salary.amount == Decimal("2500.00")
    assert salary.type == "income"
    assert salary.external_id == "TXN42"
    assert salary.date == dt.date(2024, 2, 28)


def test_hsbc_debit_and_credit_columns(normalizer):
    debit = normalizer.normalize(
        {
            "Transaction Date": "15 Jan 2024",
            "Transaction Description": "VISA COSTA COFFEE",
            "Debit Amount": "3.50",
            "Credit Amount": "",
            "Balance": "100.00",
        },
        "hsbc",
    )
    assert debit is not None
    assert (debit.amount, debit.type) == (Decimal("3.50"), "expense")
    assert debit.description == "COSTA COFFEE"
    assert debit.date == dt.date(2024, 1, 15)

    credit = normalizer.normalize(
        {
            "Transaction Date": "31/01/2024",
            "Transaction Description": "EMPLOYER PAYROLL",
            "Debit Amount": "",
            "Credit Amount": "1,200.00",
        },
        "hsbc",
    )
    assert credit is not None
    assert (credit.amount, credit.type) == (Decimal("1200.00"), "income")


def test_hsbc_card_number_is_masked(normalizer):
    tx = normalizer.normalize(
        {
            "Transaction Date": "15/01/2024",
            "Transaction Description": "MASTERCARD 1234********5678 AMAZON",
            "Debit Amount": "20.00",
        },
        "hsbc",
    )
    assert tx is not None
    assert tx.description == "[CARD] AMAZON"


def test_lloyds_parenthesised_amount_is_an_expense(normalizer):
    tx = normalizer.normalize(
        {
            "Transaction Date": "03/03/2024",
            "Transaction Description": "FASTPAY CORNER SHOP",
            "Credit Amount": "(12.50)",
            "Merchant Name": "Corner Shop",
            "Transaction ID": "LL-1",
        },
        "lloyds",
    )
    assert tx is not None
    assert (tx.amount, tx.type) == (Decimal("12.50"), "expense")
    assert tx.description == "CORNER SHOP"
    assert tx.merchant == "Corner Shop"
    assert tx.external_id == "LL-1"


def test_unparseable_date_falls_back_to_today(normalizer):
    tx = normalizer.normalize({"date": "??", "amount": "-5", "description": "Mystery"}, "generic")

    assert tx is not None
    assert tx.date == TODAY
    assert tx.date_inferred is True
    result = normalizer.validate(tx)
    assert result.valid
    assert "Date could not be parsed; defaulted to today" in result.warnings


def test_general_date_parsing_is_day_first_for_uk_banks(normalizer):
    tx = normalizer.normalize(
        {"Date": "5.1.2024", "Amount": "-1.00", "Description": "X"}, "barclays"
    )
    assert tx is not None
    assert tx.date == dt.date(2024, 1, 5)
    assert not tx.date_inferred


def test_record_without_description_or_amount_is_none(normalizer):
    assert normalizer.normalize({"Date": "15/01/2024"}, "barclays") is None


def test_normalize_unknown_format_raises(normalizer):
    with pytest.raises(ValueError):
        normalizer.normalize({"Date": "15/01/2024"}, "nope")


# ---- Validation --------------------------------------------------------------


def test_validate_reports_errors_and_warnings(normalizer):
    zero = NormalizedTransaction(
        amount=Decimal("0.00"), currency="GBP", description="  ", date=TODAY, type="income"
    )
    result = normalizer.validate(zero)
    assert not result.valid
    assert result.errors == ("Amount is required and must be non-zero", "Description is required")

    old_and_large = NormalizedTransaction(
        amount=Decimal("2000000.00"),
        currency="GBP",
        description="House",
        date=dt.date(2020, 1, 1),
        type="expense",
    )
    result = normalizer.validate(old_and_large)
    assert result.valid
    assert "Transaction date is more than 2 years old" in result.warnings
    assert "Amount is unusually large" in result.warnings


# ---- Amount parsing ----------------------------------------------------------


@pytest.mark.parametrize(
    ("raw", "fmt", "expected"),
    [
        ("-£1,234.56", AmountFormat(), Decimal("-1234.56")),
        ("£45.00 DR", AmountFormat(negative_format="cr_dr"), Decimal("-45.00")),
        ("45.00 CR", AmountFormat(negative_format="cr_dr"), Decimal("45.00")),
        ("(12.50)", AmountFormat(negative_format="parentheses"), Decimal("-12.50")),
        (
            "1.234,56",
            AmountFormat(decimal_separator=",", thousands_separator="."),
            Decimal("1234.56"),
        ),
        (7, AmountFormat(), Decimal("7")),
        ("abc", AmountFormat(), None),
        ("", AmountFormat(), None),
        ("1e30", AmountFormat(), None),
        ("1" * 30, AmountFormat(), None),
        (Decimal("-1E+30"), AmountFormat(), None),
        ("99999999999999999999999.99", AmountFormat(), Decimal("99999999999999999999999.99")),
    ],
)
def test_amount_parsing(raw, fmt, expected):
    assert _to_signed_decimal(raw, fmt) == expected


# ---- Batches -----------------------------------------------------------------


def test_batch_collects_indexed_errors(normalizer):
    records = [
        {"Date": f"{day:02d}/01/2024", "Amount": f"-{day}.00", "Description": f"SHOP {day}"}
        for day in range(1, 11)
    ]
    records[3] = {"Date": "04/01/2024", "Amount": "", "Description": ""}
    records[7] = {"Date": "08/01/2024", "Amount": "abc", "Description": "BROKEN AMOUNT"}

    batch = normalizer.normalize_batch(records, "barclays")

    assert batch.format_used == "barclays"
    assert len(batch.normalized) == 8
    assert [e.index for e in batch.errors] == [3, 7]
    assert batch.errors[0].error == "Record has no description or amount"
    assert batch.errors[1].error == "Amount is required and must be non-zero"
    assert batch.errors[1].data is records[7]


def test_out_of_range_amount_is_a_validation_error(normalizer):
    records = [
        {"Date": "15/01/2024", "Amount": "1e30", "Description": "BIG"},
        {"Date": "16/01/2024", "Amount": "1" * 30, "Description": "BIGGER"},
    ]

    tx = normalizer.normalize(records[0], "barclays")
    assert tx is not None
    assert tx.amount == Decimal("0.00")

    batch = normalizer.normalize_batch(records, "barclays")
    assert batch.normalized == []
    assert [e.error for e in batch.errors] == ["Amount is required and must be non-zero"] * 2


def test_batch_detects_format_from_headers(normalizer):
    rows = read_csv_rows(
        _dedent(
            """
            Transaction Date,Transaction Description,Debit Amount,Credit Amount,Balance,Reference Number
            15/01/2024,VISA PRET A MANGER,4.25,,95.75,R1
            16/01/2024,REFUND CREDIT,,10.00,105.75,R2
            """
        )
    )
    batch = normalizer.normalize_batch(rows)

    assert batch.format_used == "hsbc"
    assert [t.type for t in batch.normalized] == ["expense", "income"]
    assert batch.normalized[0].reference == "R1"


def test_batch_with_unknown_code_fails_fast(normalizer):
    with pytest.raises(ValueError):
        normalizer.normalize_batch([{"Date": "x"}], "unknown")


# ---- Helpers -----------------------------------------------------------------


def test_read_csv_rows_skips_blank_lines_and_handles_quotes():
    csv_text = _dedent(
        """
        Date,Amount,Description
        15/01/2024,-3.20,"COFFEE, CAKE"

        16/01/2024,-1.00,BUS
        """
    )
    rows = read_csv_rows(csv_text)
    assert rows == [
        {"Date": "15/01/2024", "Amount": "-3.20", "Description": "COFFEE, CAKE"},
        {"Date": "16/01/2024", "Amount": "-1.00", "Description": "BUS"},
    ]


def test_clean_merchant_name():
    assert clean_merchant_name("TESCO STORES LTD") == "Tesco Stores"
    assert clean_merchant_name("  acme   widgets plc ") == "Acme Widgets"
