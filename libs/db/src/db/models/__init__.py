"""SQLAlchemy models for the ingestion database.

Tables: accounts, categories, transactions, categorization rules and the
append-only categorization feedback log.
"""

from .finance import (
    Account,
    Base,
    CategorizationFeedback,
    CategorizationRule,
    Category,
    Transaction,
)

__all__ = [
    "Account",
    "Base",
    "CategorizationFeedback",
    "CategorizationRule",
    "Category",
    "Transaction",
]
