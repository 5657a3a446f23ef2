"""Shared constants and small record builders for tests."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any

from transaction_ingestion.models import StoredTransaction

TODAY = dt.date(2024, 6, 1)
USER_ID = "user-1"
ACCOUNT_ID = "acc-1"


def stored(
    id: str,
    *,
    amount: str = "50.00",
    date: dt.date = dt.date(2024, 1, 15),
    description: str = "Tesco",
    account_id: str = ACCOUNT_ID,
    type: str = "expense",
    **extra: Any,
) -> StoredTransaction:
    return StoredTransaction(
        id=id,
        account_id=account_id,
        amount=Decimal(amount),
        date=date,
        description=description,
        type=type,  # type: ignore[arg-type]
        **extra,
    )


def barclays_row(
    date: str, amount: str, description: str, *, reference: str = "", merchant: str = ""
) -> dict[str, str]:
    return {
        "Date": date,
        "Amount": amount,
        "Description": description,
        "Merchant": merchant,
        "Reference": reference,
        "Balance": "",
    }
