# ruff: noqa: I001
"""SQLAlchemy-backed stores and result persistence.

The stores implement the protocols in :mod:`.stores` over the ORM models owned
by ``libs/db``. Each call opens its own short-lived session from the injected
factory, so one store instance can be shared by pool workers.

Scope:
- Read categories, rules and transaction history for the pipeline.
- Soft-mark duplicates found by account sweeps.
- Append categorization feedback.
- Insert finalized transactions returned by the pipeline (:func:`save_finalized`).
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable, Iterable
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from pydantic import ValidationError
from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from db.models.finance import (
    Account as AccountRow,
    CategorizationFeedback as FeedbackRow,
    CategorizationRule as RuleRow,
    Category as CategoryRow,
    Transaction as TransactionRow,
)
from .logging_setup import get_logger
from .models import (
    CategorizationRule,
    Category,
    CorrectionFeedback,
    StoredTransaction,
    TransactionType,
)
from .pipeline import FinalizedTransaction

_logger = get_logger("transaction_ingestion.persistence")

type SessionFactory = Callable[[], Session]

_CONFIDENCE_Q = Decimal("0.01")


def _to_category(row: CategoryRow) -> Category:
    return Category(
        id=row.id,
        name=row.name,
        type=row.type,  # type: ignore[arg-type]
        parent_id=row.parent_id,
    )


def _to_stored(row: TransactionRow, category_name: str | None = None) -> StoredTransaction:
    return StoredTransaction(
        id=row.id,
        account_id=row.account_id,
        amount=row.amount,
        date=row.date,
        description=row.description,
        type=row.type,  # type: ignore[arg-type]
        external_id=row.external_id,
        merchant=row.merchant,
        location=row.location,
        category_id=row.category_id,
        category_name=category_name,
        is_duplicate=row.is_duplicate,
        duplicate_of_id=row.duplicate_of_id,
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class SqlCategoryStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def list_categories(
        self, user_id: str, type: TransactionType | None = None
    ) -> list[Category]:
        stmt = select(CategoryRow).where(CategoryRow.user_id == user_id)
        if type is not None:
            stmt = stmt.where(CategoryRow.type == type)
        stmt = stmt.order_by(CategoryRow.name, CategoryRow.id)
        with self._session_factory() as s:
            return [_to_category(r) for r in s.scalars(stmt)]


class SqlTransactionStore:
    """Transaction history queries; rows marked as duplicates are excluded."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _live(account_id: str) -> Select[tuple[TransactionRow]]:
        return select(TransactionRow).where(
            TransactionRow.account_id == account_id,
            TransactionRow.is_duplicate.is_(False),
        )

    def find_by_external_id(self, account_id: str, external_id: str) -> list[StoredTransaction]:
        stmt = self._live(account_id).where(TransactionRow.external_id == external_id)
        with self._session_factory() as s:
            return [_to_stored(r) for r in s.scalars(stmt)]

    def find_in_date_range(
        self, account_id: str, start: dt.date, end: dt.date, *, limit: int
    ) -> list[StoredTransaction]:
        stmt = (
            self._live(account_id)
            .where(TransactionRow.date >= start, TransactionRow.date <= end)
            .order_by(TransactionRow.date.desc(), TransactionRow.id)
            .limit(limit)
        )
        with self._session_factory() as s:
            return [_to_stored(r) for r in s.scalars(stmt)]

    def list_account(self, account_id: str) -> list[StoredTransaction]:
        stmt = self._live(account_id).order_by(TransactionRow.date.desc(), TransactionRow.id)
        with self._session_factory() as s:
            return [_to_stored(r) for r in s.scalars(stmt)]

    def sample_categorized(
        self, user_id: str, type: TransactionType, *, limit: int
    ) -> list[StoredTransaction]:
        stmt = (
            select(TransactionRow, CategoryRow.name)
            .join(AccountRow, AccountRow.id == TransactionRow.account_id)
            .join(CategoryRow, CategoryRow.id == TransactionRow.category_id)
            .where(
                AccountRow.user_id == user_id,
                TransactionRow.type == type,
                TransactionRow.is_duplicate.is_(False),
            )
            .order_by(TransactionRow.date.desc(), TransactionRow.id)
            .limit(limit)
        )
        with self._session_factory() as s:
            return [_to_stored(row, name) for row, name in s.execute(stmt)]

    def find_recent_similar(
        self,
        account_id: str,
        amount: Decimal,
        description_prefix: str,
        *,
        before: dt.date,
        limit: int,
    ) -> list[StoredTransaction]:
        stmt = (
            self._live(account_id)
            .where(
                TransactionRow.amount == amount,
                TransactionRow.date < before,
                TransactionRow.description.istartswith(description_prefix, autoescape=True),
            )
            .order_by(TransactionRow.date.desc(), TransactionRow.id)
            .limit(limit)
        )
        with self._session_factory() as s:
            return [_to_stored(r) for r in s.scalars(stmt)]

    def mark_duplicate(self, transaction_id: str, duplicate_of_id: str, reason: str) -> None:
        stmt = (
            update(TransactionRow)
            .where(TransactionRow.id == transaction_id)
            .values(is_duplicate=True, duplicate_of_id=duplicate_of_id, duplicate_reason=reason)
        )
        with self._session_factory() as s, s.begin():
            result = s.execute(stmt)
            if result.rowcount == 0:
                raise KeyError(f"unknown transaction: {transaction_id!r}")


class SqlRuleStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def list_rules(self, user_id: str, type: TransactionType) -> list[CategorizationRule]:
        stmt = (
            select(RuleRow, CategoryRow.name)
            .join(CategoryRow, CategoryRow.id == RuleRow.category_id)
            .where(
                RuleRow.user_id == user_id,
                RuleRow.type == type,
                RuleRow.is_active.is_(True),
            )
            .order_by(RuleRow.priority.desc(), RuleRow.created_at, RuleRow.id)
        )
        rules: list[CategorizationRule] = []
        with self._session_factory() as s:
            for row, category_name in s.execute(stmt):
                try:
                    rules.append(
                        CategorizationRule(
                            id=row.id,
                            name=row.name,
                            type=row.type,
                            conditions=row.conditions,
                            category_id=row.category_id,
                            category_name=category_name,
                            priority=row.priority,
                            confidence=row.confidence,
                            is_active=row.is_active,
                        )
                    )
                except ValidationError as e:
                    _logger.warning("skipping malformed rule %s: %s", row.id, e)
        return rules


class SqlFeedbackLog:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def append(self, feedback: CorrectionFeedback) -> None:
        with self._session_factory() as s, s.begin():
            s.add(
                FeedbackRow(
                    user_id=feedback.user_id,
                    transaction_id=feedback.transaction_id,
                    old_category_id=feedback.old_category_id,
                    new_category_id=feedback.new_category_id,
                    description=feedback.description,
                    merchant=feedback.merchant,
                    amount=feedback.amount,
                    created_at=feedback.created_at,
                )
            )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _enrichment_payload(item: FinalizedTransaction) -> dict[str, Any]:
    data = item.enrichment.data
    return {
        "merchant": data.merchant.clean_name if data.merchant else None,
        "merchant_source": data.merchant.source if data.merchant else None,
        "postcode": data.location.postcode if data.location else None,
        "city": data.location.city if data.location else None,
        "payment_method": data.metadata.payment_method if data.metadata else None,
        "tags": list(data.metadata.tags) if data.metadata else [],
        "confidence": round(item.enrichment.confidence, 4),
        "sources": list(item.enrichment.sources),
    }


def save_finalized(session: Session, finalized: Iterable[FinalizedTransaction]) -> list[str]:
    """Insert finalized transactions and return their new ids, in order.

    The caller owns the transaction boundary (see ``db.client.session_scope``).
    """

    rows: list[TransactionRow] = []
    for item in finalized:
        tx = item.transaction
        category_id = item.category_id
        confidence: Decimal | None = None
        if category_id is not None:
            raw_conf = (
                item.categorization.confidence
                if item.categorization.category_id
                else item.enrichment.data.category.confidence  # type: ignore[union-attr]
            )
            confidence = Decimal(str(raw_conf)).quantize(_CONFIDENCE_Q, rounding=ROUND_HALF_UP)
        row = TransactionRow(
            account_id=item.account_id,
            external_id=tx.external_id,
            amount=tx.amount,
            currency=tx.currency,
            date=tx.date,
            date_inferred=tx.date_inferred,
            description=tx.description,
            type=tx.type,
            merchant=tx.merchant,
            location=tx.location,
            reference=tx.reference,
            category_id=category_id,
            category_confidence=confidence,
            is_recurring=item.is_recurring,
            enrichment=_enrichment_payload(item) if item.enrichment.enriched else None,
        )
        session.add(row)
        rows.append(row)
    session.flush()
    _logger.info("saved %d transactions", len(rows))
    return [r.id for r in rows]


__all__ = [
    "SessionFactory",
    "SqlCategoryStore",
    "SqlFeedbackLog",
    "SqlRuleStore",
    "SqlTransactionStore",
    "save_finalized",
]
