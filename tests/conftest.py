"""Pytest configuration and shared fixtures.

The CLI and ``PipelineSettings.from_env`` read ``DATABASE_URL`` and the
``TXN_INGEST_*`` variables. A developer shell (or a ``.env`` loaded by an
earlier CLI test) must not leak into assertions, so every test starts from a
clean environment.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from tests.helpers.builders import TODAY, USER_ID
from transaction_ingestion.models import Category
from transaction_ingestion.normalizers import TransactionNormalizer
from transaction_ingestion.stores import InMemoryCategoryStore


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop database and tunable overrides for the duration of a test."""

    monkeypatch.delenv("DATABASE_URL", raising=False)
    for name in list(os.environ):
        if name.startswith("TXN_INGEST_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def user_categories() -> list[Category]:
    return [
        Category(id="cat-groceries", name="Groceries", type="expense"),
        Category(id="cat-dining", name="Dining Out", type="expense"),
        Category(id="cat-transport", name="Transport", type="expense"),
        Category(id="cat-coffee", name="Coffee", type="expense"),
        Category(id="cat-subs", name="Subscriptions", type="expense"),
        Category(id="cat-fuel", name="Fuel", type="expense"),
        Category(id="cat-salary", name="Salary", type="income"),
    ]


@pytest.fixture()
def category_store(user_categories: list[Category]) -> InMemoryCategoryStore:
    return InMemoryCategoryStore({USER_ID: user_categories})


@pytest.fixture()
def normalizer() -> TransactionNormalizer:
    return TransactionNormalizer(today=lambda: TODAY)


@pytest.fixture()
def sqlite_url(tmp_path: Path):
    """File-backed SQLite database with the full schema."""

    from db.client import dispose_engines

    from tests.helpers.db import bootstrap_sqlite_db

    url = bootstrap_sqlite_db(tmp_path / "ingest.sqlite")
    yield url
    dispose_engines()
