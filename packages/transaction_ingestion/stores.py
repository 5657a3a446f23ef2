"""Store interfaces consumed by the pipeline, plus in-memory implementations.

The core never owns storage. Detectors and engines receive these narrow,
mostly read-only protocols by injection; :mod:`.persistence` provides the
SQLAlchemy-backed versions and this module provides in-memory ones used by
tests and by the CLI when no database is configured.

Transactions already marked as duplicates are invisible to candidate and
sample queries so one duplicate never seeds another.
"""

from __future__ import annotations

import datetime as dt
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from decimal import Decimal
from typing import Protocol

from .models import (
    CategorizationRule,
    Category,
    CorrectionFeedback,
    StoredTransaction,
    TransactionType,
)

# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class CategoryStore(Protocol):
    def list_categories(
        self, user_id: str, type: TransactionType | None = None
    ) -> Sequence[Category]: ...


class TransactionStore(Protocol):
    def find_by_external_id(
        self, account_id: str, external_id: str
    ) -> Sequence[StoredTransaction]: ...

    def find_in_date_range(
        self, account_id: str, start: dt.date, end: dt.date, *, limit: int
    ) -> Sequence[StoredTransaction]:
        """Candidates in ``[start, end]`` for one account, most recent first."""
        ...

    def list_account(self, account_id: str) -> Sequence[StoredTransaction]: ...

    def sample_categorized(
        self, user_id: str, type: TransactionType, *, limit: int
    ) -> Sequence[StoredTransaction]: ...

    def find_recent_similar(
        self,
        account_id: str,
        amount: Decimal,
        description_prefix: str,
        *,
        before: dt.date,
        limit: int,
    ) -> Sequence[StoredTransaction]: ...

    def mark_duplicate(self, transaction_id: str, duplicate_of_id: str, reason: str) -> None: ...


class RuleStore(Protocol):
    def list_rules(self, user_id: str, type: TransactionType) -> Sequence[CategorizationRule]:
        """Active rules for the user and type, highest priority first."""
        ...


class FeedbackLog(Protocol):
    def append(self, feedback: CorrectionFeedback) -> None: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryCategoryStore:
    def __init__(self, categories: Mapping[str, Iterable[Category]] | None = None) -> None:
        self._by_user: dict[str, list[Category]] = {
            user: list(cats) for user, cats in (categories or {}).items()
        }

    def add(self, user_id: str, category: Category) -> None:
        self._by_user.setdefault(user_id, []).append(category)

    def list_categories(
        self, user_id: str, type: TransactionType | None = None
    ) -> list[Category]:
        cats = self._by_user.get(user_id, [])
        return [c for c in cats if type is None or c.type == type]


class InMemoryTransactionStore:
    """Thread-safe list of :class:`StoredTransaction` keyed by account."""

    def __init__(
        self,
        transactions: Iterable[StoredTransaction] = (),
        *,
        account_owners: Mapping[str, str] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, StoredTransaction] = {}
        self._owners: dict[str, str] = dict(account_owners or {})
        self.duplicate_reasons: dict[str, str] = {}
        for tx in transactions:
            self.add(tx)

    def add(self, tx: StoredTransaction, *, user_id: str | None = None) -> None:
        with self._lock:
            self._rows[tx.id] = tx
            if user_id is not None:
                self._owners[tx.account_id] = user_id

    def get(self, transaction_id: str) -> StoredTransaction | None:
        return self._rows.get(transaction_id)

    def _live(self, account_id: str) -> list[StoredTransaction]:
        with self._lock:
            rows = list(self._rows.values())
        return [t for t in rows if t.account_id == account_id and not t.is_duplicate]

    def find_by_external_id(self, account_id: str, external_id: str) -> list[StoredTransaction]:
        return [t for t in self._live(account_id) if t.external_id == external_id]

    def find_in_date_range(
        self, account_id: str, start: dt.date, end: dt.date, *, limit: int
    ) -> list[StoredTransaction]:
        rows = [t for t in self._live(account_id) if start <= t.date <= end]
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows[:limit]

    def list_account(self, account_id: str) -> list[StoredTransaction]:
        rows = self._live(account_id)
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows

    def sample_categorized(
        self, user_id: str, type: TransactionType, *, limit: int
    ) -> list[StoredTransaction]:
        accounts = {acc for acc, owner in self._owners.items() if owner == user_id}
        rows = [
            t
            for acc in accounts
            for t in self._live(acc)
            if t.type == type and t.category_id is not None
        ]
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows[:limit]

    def find_recent_similar(
        self,
        account_id: str,
        amount: Decimal,
        description_prefix: str,
        *,
        before: dt.date,
        limit: int,
    ) -> list[StoredTransaction]:
        prefix = description_prefix.lower()
        rows = [
            t
            for t in self._live(account_id)
            if t.amount == amount and t.date < before and t.description.lower().startswith(prefix)
        ]
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows[:limit]

    def mark_duplicate(self, transaction_id: str, duplicate_of_id: str, reason: str) -> None:
        with self._lock:
            tx = self._rows.get(transaction_id)
            if tx is None:
                raise KeyError(f"unknown transaction: {transaction_id!r}")
            self._rows[transaction_id] = replace(
                tx, is_duplicate=True, duplicate_of_id=duplicate_of_id
            )
            self.duplicate_reasons[transaction_id] = reason


class InMemoryRuleStore:
    def __init__(self, rules: Mapping[str, Iterable[CategorizationRule]] | None = None) -> None:
        self._by_user: dict[str, list[CategorizationRule]] = {
            user: list(rs) for user, rs in (rules or {}).items()
        }

    def add(self, user_id: str, rule: CategorizationRule) -> None:
        self._by_user.setdefault(user_id, []).append(rule)

    def list_rules(self, user_id: str, type: TransactionType) -> list[CategorizationRule]:
        rules = [r for r in self._by_user.get(user_id, []) if r.is_active and r.type == type]
        # Stable sort keeps insertion order among equal priorities.
        return sorted(rules, key=lambda r: r.priority, reverse=True)


class InMemoryFeedbackLog:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.entries: list[CorrectionFeedback] = []

    def append(self, feedback: CorrectionFeedback) -> None:
        with self._lock:
            self.entries.append(feedback)


__all__ = [
    "CategoryStore",
    "FeedbackLog",
    "InMemoryCategoryStore",
    "InMemoryFeedbackLog",
    "InMemoryRuleStore",
    "InMemoryTransactionStore",
    "RuleStore",
    "TransactionStore",
]
