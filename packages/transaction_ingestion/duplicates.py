"""Duplicate detection for incoming and stored transactions.

Detection runs in two tiers, always scoped to a single account:

1. External id: when the incoming record carries a bank-assigned id and the
   account already has a row with the same id, the result is an exact
   duplicate with confidence 1.0.
2. Fuzzy: stored rows within ``window_days`` of the incoming date are scored
   by a weighted sum of amount, date proximity, description, merchant and
   external-id similarity. Matches at or above ``threshold`` are returned,
   best first.

Public surface:
- ``DuplicateDetectionConfig``: weights and thresholds (defaults are
  uncalibrated starting points; tune them against labelled data).
- ``DuplicateDetector``: ``detect``, ``score_candidate``,
  ``find_all_duplicates_in_account`` and ``cleanup_duplicates``.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal

from .logging_setup import get_logger
from .models import (
    CleanupDetail,
    CleanupReport,
    DuplicateDetectionResult,
    DuplicateMatch,
    NormalizedTransaction,
    StoredTransaction,
)
from .similarity import clamp_unit, description_similarity, text_similarity
from .stores import TransactionStore

_logger = get_logger("transaction_ingestion.duplicates")

type Comparable = NormalizedTransaction | StoredTransaction

_SCORE_PRECISION = 6


@dataclass(frozen=True, slots=True)
class DuplicateDetectionConfig:
    amount_weight: float = 0.4
    date_weight: float = 0.3
    description_weight: float = 0.2
    merchant_weight: float = 0.1
    external_id_weight: float = 0.1
    threshold: float = 0.8
    window_days: int = 3
    exact_score: float = 0.95
    max_matches: int = 5
    candidate_limit: int = 50
    description_min_similarity: float = 0.7
    merchant_min_similarity: float = 0.8
    external_id_min_similarity: float = 0.6
    amount_tolerance: Decimal = Decimal("0.01")

    def __post_init__(self) -> None:
        weights = {
            "amount_weight": self.amount_weight,
            "date_weight": self.date_weight,
            "description_weight": self.description_weight,
            "merchant_weight": self.merchant_weight,
            "external_id_weight": self.external_id_weight,
        }
        for name, val in weights.items():
            if val < 0:
                raise ValueError(f"DuplicateDetectionConfig.{name} must be >= 0")
        for name in ("threshold", "exact_score"):
            if not 0.0 <= getattr(self, name) <= 1.0:
                raise ValueError(f"DuplicateDetectionConfig.{name} must be within [0,1]")
        if self.window_days < 0:
            raise ValueError("DuplicateDetectionConfig.window_days must be >= 0")
        if self.max_matches < 1 or self.candidate_limit < 1:
            raise ValueError("max_matches and candidate_limit must be positive")


class DuplicateDetector:
    """Decide whether a transaction already exists in an account's history."""

    def __init__(
        self, store: TransactionStore, config: DuplicateDetectionConfig | None = None
    ) -> None:
        self.store = store
        self.config = config or DuplicateDetectionConfig()

    # -- Detection -----------------------------------------------------------

    def detect(
        self,
        transaction: Comparable,
        *,
        account_id: str,
        window_days: int | None = None,
        config: DuplicateDetectionConfig | None = None,
        exclude_id: str | None = None,
    ) -> DuplicateDetectionResult:
        """Check ``transaction`` against the stored history of ``account_id``.

        ``exclude_id`` removes a stored row from consideration; sweeps over
        stored data pass the row's own id so it never matches itself.
        """

        cfg = config or self.config
        window = cfg.window_days if window_days is None else window_days
        if window < 0:
            raise ValueError("window_days must be >= 0")

        external_id = (transaction.external_id or "").strip()
        if external_id:
            for hit in self.store.find_by_external_id(account_id, external_id):
                if hit.id == exclude_id:
                    continue
                match = DuplicateMatch(
                    transaction_id=hit.id,
                    match_score=1.0,
                    match_reasons=("Exact external ID match",),
                    matched_fields=("external_id",),
                    is_exact_duplicate=True,
                )
                return DuplicateDetectionResult(
                    is_duplicate=True, matches=(match,), best_match=match, confidence=1.0
                )

        start = transaction.date - dt.timedelta(days=window)
        end = transaction.date + dt.timedelta(days=window)
        candidates = self.store.find_in_date_range(
            account_id, start, end, limit=cfg.candidate_limit
        )

        matches: list[DuplicateMatch] = []
        for candidate in candidates:
            if candidate.id == exclude_id:
                continue
            match = self.score_candidate(transaction, candidate, config=cfg, window_days=window)
            if match.match_score >= cfg.threshold:
                matches.append(match)

        matches.sort(key=lambda m: m.match_score, reverse=True)
        top = tuple(matches[: cfg.max_matches])
        best = top[0] if top else None
        return DuplicateDetectionResult(
            is_duplicate=bool(top),
            matches=top,
            best_match=best,
            confidence=best.match_score if best else 0.0,
        )

    def score_candidate(
        self,
        transaction: Comparable,
        candidate: StoredTransaction,
        *,
        config: DuplicateDetectionConfig | None = None,
        window_days: int | None = None,
    ) -> DuplicateMatch:
        """Score one stored ``candidate`` against ``transaction``."""

        cfg = config or self.config
        window = cfg.window_days if window_days is None else window_days
        score = 0.0
        reasons: list[str] = []
        fields: list[str] = []

        if abs(transaction.amount - candidate.amount) < cfg.amount_tolerance:
            score += cfg.amount_weight
            reasons.append("Exact amount match")
            fields.append("amount")

        days = abs((transaction.date - candidate.date).days)
        if days <= window:
            proximity = 1.0 if window == 0 else 1.0 - days / window
            score += cfg.date_weight * proximity
            reasons.append(f"Date within {days} days")
            fields.append("date")

        desc_sim = description_similarity(transaction.description, candidate.description)
        if desc_sim > cfg.description_min_similarity:
            score += cfg.description_weight * desc_sim
            reasons.append(f"Similar description ({desc_sim:.0%})")
            fields.append("description")

        if transaction.merchant and candidate.merchant:
            merchant_sim = text_similarity(transaction.merchant, candidate.merchant)
            if merchant_sim > cfg.merchant_min_similarity:
                score += cfg.merchant_weight * merchant_sim
                reasons.append(f"Similar merchant ({merchant_sim:.0%})")
                fields.append("merchant")

        if (
            transaction.external_id
            and candidate.external_id
            and transaction.external_id != candidate.external_id
        ):
            id_sim = text_similarity(transaction.external_id, candidate.external_id)
            if id_sim > cfg.external_id_min_similarity:
                score += cfg.external_id_weight * id_sim
                reasons.append("Similar external ID")
                fields.append("external_id")

        final = round(clamp_unit(score), _SCORE_PRECISION)
        return DuplicateMatch(
            transaction_id=candidate.id,
            match_score=final,
            match_reasons=tuple(reasons),
            matched_fields=tuple(fields),
            is_exact_duplicate=final >= cfg.exact_score,
        )

    # -- Account sweeps ------------------------------------------------------

    def find_all_duplicates_in_account(
        self, account_id: str, *, config: DuplicateDetectionConfig | None = None
    ) -> dict[str, list[DuplicateMatch]]:
        """Map each stored transaction id to its duplicate matches (self excluded)."""

        found: dict[str, list[DuplicateMatch]] = {}
        for tx in self.store.list_account(account_id):
            result = self.detect(tx, account_id=account_id, config=config, exclude_id=tx.id)
            if result.matches:
                found[tx.id] = list(result.matches)
        _logger.info("account %s: %d transactions with duplicates", account_id, len(found))
        return found

    def cleanup_duplicates(
        self,
        account_id: str,
        *,
        auto_resolve: bool = False,
        config: DuplicateDetectionConfig | None = None,
    ) -> CleanupReport:
        """Sweep an account and optionally soft-mark exact duplicates.

        Only best matches flagged ``is_exact_duplicate`` are marked, and only
        when ``auto_resolve`` is set; the rest are listed for manual review.
        Each pair is handled once, so two rows never end up marked as
        duplicates of each other.
        """

        all_matches = self.find_all_duplicates_in_account(account_id, config=config)
        details: list[CleanupDetail] = []
        resolved = 0
        errors = 0
        marked: set[str] = set()
        seen_pairs: set[frozenset[str]] = set()

        for tx_id, matches in all_matches.items():
            best = matches[0]
            pair = frozenset((tx_id, best.transaction_id))
            if pair in seen_pairs or tx_id in marked or best.transaction_id in marked:
                continue
            seen_pairs.add(pair)

            if not (auto_resolve and best.is_exact_duplicate):
                details.append(
                    CleanupDetail(
                        transaction_id=tx_id,
                        duplicate_id=best.transaction_id,
                        action="manual_review",
                        reason=f"Potential duplicate (score={best.match_score:.2f})",
                    )
                )
                continue

            reason = "; ".join(best.match_reasons)
            try:
                self.store.mark_duplicate(tx_id, best.transaction_id, reason)
            except Exception as e:  # noqa: BLE001
                errors += 1
                _logger.exception(
                    "failed to mark %s as duplicate of %s", tx_id, best.transaction_id
                )
                details.append(
                    CleanupDetail(
                        transaction_id=tx_id,
                        duplicate_id=best.transaction_id,
                        action="error",
                        reason=str(e),
                    )
                )
                continue
            resolved += 1
            marked.add(tx_id)
            details.append(
                CleanupDetail(
                    transaction_id=tx_id,
                    duplicate_id=best.transaction_id,
                    action="marked",
                    reason=reason,
                )
            )

        return CleanupReport(
            found=len(all_matches), resolved=resolved, errors=errors, details=tuple(details)
        )


__all__ = ["DuplicateDetectionConfig", "DuplicateDetector"]
