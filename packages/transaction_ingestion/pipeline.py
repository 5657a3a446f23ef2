"""End-to-end ingestion: raw record → normalize → duplicate gate → enrich → categorize.

The pipeline never persists anything. It returns :class:`FinalizedTransaction`
values inside an :class:`ImportReport` and leaves storage to the caller.

Batches run in two phases per account:

1. Serial gate, in input order. Each record is normalized, validated and
   checked for duplicates. Records accepted earlier in the same batch are
   visible to later ones through an overlay on the transaction store, so a
   file that repeats a row reports the repeat as a duplicate.
2. Parallel finish. Accepted records are enriched (rate limited) and
   categorized on a bounded worker pool; results keep input order.

Different accounts are independent and :meth:`IngestionPipeline.process_accounts`
runs them concurrently.
"""

from __future__ import annotations

import datetime as dt
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal

from .categorization import CategorizationEngine
from .duplicates import DuplicateDetectionConfig, DuplicateDetector
from .enrichment import TransactionEnricher
from .logging_setup import get_logger
from .models import (
    CategorizationResult,
    DuplicateDetectionResult,
    EnrichmentResult,
    NormalizedTransaction,
    RawRecord,
    RecurringPattern,
    StoredTransaction,
    TransactionType,
)
from .normalizers import TransactionNormalizer
from .pmap import p_map
from .rate_limit import RateLimiter
from .settings import PipelineSettings
from .stores import CategoryStore, FeedbackLog, RuleStore, TransactionStore

_logger = get_logger("transaction_ingestion.pipeline")

type IngestStatus = Literal["imported", "duplicate", "invalid", "error"]

_RECURRING_PREFIX_LEN = 10
_RECURRING_LOOKBACK = 3
_WEEKLY_DAYS = (6.0, 8.0)
_MONTHLY_DAYS = (28.0, 31.0)

# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FinalizedTransaction:
    """A normalized transaction with every pipeline signal attached."""

    account_id: str
    transaction: NormalizedTransaction
    enrichment: EnrichmentResult
    categorization: CategorizationResult
    duplicate_check: DuplicateDetectionResult
    recurring_pattern: RecurringPattern | None = None

    @property
    def is_recurring(self) -> bool:
        if self.recurring_pattern is not None:
            return True
        metadata = self.enrichment.data.metadata
        return bool(metadata and metadata.is_recurring)

    @property
    def category_id(self) -> str | None:
        """Cascade category, else the enricher's suggestion."""

        if self.categorization.category_id:
            return self.categorization.category_id
        suggestion = self.enrichment.data.category
        return suggestion.category_id if suggestion else None

    def to_dict(self) -> dict[str, object]:
        merchant = self.enrichment.data.merchant
        return {
            **self.transaction.to_dict(),
            "account_id": self.account_id,
            "category_id": self.category_id,
            "category_confidence": round(self.categorization.confidence, 4),
            "category_rule": self.categorization.rule,
            "merchant_name": merchant.clean_name if merchant else None,
            "enriched": self.enrichment.enriched,
            "enrichment_confidence": round(self.enrichment.confidence, 4),
            "is_recurring": self.is_recurring,
            "possible_duplicate": self.duplicate_check.is_duplicate,
        }


@dataclass(frozen=True, slots=True)
class IngestOutcome:
    index: int
    status: IngestStatus
    transaction: NormalizedTransaction | None = None
    finalized: FinalizedTransaction | None = None
    duplicate_check: DuplicateDetectionResult | None = None
    message: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ImportReport:
    account_id: str
    format_used: str
    outcomes: tuple[IngestOutcome, ...] = ()

    def _count(self, status: IngestStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def imported(self) -> int:
        return self._count("imported")

    @property
    def duplicates(self) -> int:
        return self._count("duplicate")

    @property
    def invalid(self) -> int:
        return self._count("invalid")

    @property
    def errors(self) -> int:
        return self._count("error")

    @property
    def success(self) -> bool:
        return self.errors == 0

    @property
    def finalized(self) -> list[FinalizedTransaction]:
        return [o.finalized for o in self.outcomes if o.finalized is not None]


# ---------------------------------------------------------------------------
# Batch overlay
# ---------------------------------------------------------------------------


class _BatchOverlayStore:
    """Read-through view of a store plus the records accepted so far in a batch."""

    def __init__(self, base: TransactionStore, account_id: str) -> None:
        self._base = base
        self._account_id = account_id
        self._lock = threading.Lock()
        self._pending: list[StoredTransaction] = []

    def stage(self, index: int, tx: NormalizedTransaction) -> None:
        with self._lock:
            self._pending.append(
                StoredTransaction(
                    id=f"batch:{index}",
                    account_id=self._account_id,
                    amount=tx.amount,
                    date=tx.date,
                    description=tx.description,
                    type=tx.type,
                    external_id=tx.external_id,
                    merchant=tx.merchant,
                    location=tx.location,
                )
            )

    def _staged(self, account_id: str) -> list[StoredTransaction]:
        if account_id != self._account_id:
            return []
        with self._lock:
            return list(self._pending)

    def find_by_external_id(self, account_id: str, external_id: str) -> list[StoredTransaction]:
        found = list(self._base.find_by_external_id(account_id, external_id))
        found.extend(t for t in self._staged(account_id) if t.external_id == external_id)
        return found

    def find_in_date_range(
        self, account_id: str, start: dt.date, end: dt.date, *, limit: int
    ) -> list[StoredTransaction]:
        rows = list(self._base.find_in_date_range(account_id, start, end, limit=limit))
        rows.extend(t for t in self._staged(account_id) if start <= t.date <= end)
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows[:limit]

    def list_account(self, account_id: str) -> list[StoredTransaction]:
        rows = list(self._base.list_account(account_id)) + self._staged(account_id)
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows

    def sample_categorized(
        self, user_id: str, type: TransactionType, *, limit: int
    ) -> Sequence[StoredTransaction]:
        return self._base.sample_categorized(user_id, type, limit=limit)

    def find_recent_similar(
        self,
        account_id: str,
        amount: Decimal,
        description_prefix: str,
        *,
        before: dt.date,
        limit: int,
    ) -> list[StoredTransaction]:
        rows = list(
            self._base.find_recent_similar(
                account_id, amount, description_prefix, before=before, limit=limit
            )
        )
        prefix = description_prefix.lower()
        rows.extend(
            t
            for t in self._staged(account_id)
            if t.amount == amount and t.date < before and t.description.lower().startswith(prefix)
        )
        rows.sort(key=lambda t: t.date, reverse=True)
        return rows[:limit]

    def mark_duplicate(self, transaction_id: str, duplicate_of_id: str, reason: str) -> None:
        self._base.mark_duplicate(transaction_id, duplicate_of_id, reason)


def detect_recurring(
    store: TransactionStore, account_id: str, tx: NormalizedTransaction
) -> RecurringPattern | None:
    """Weekly or monthly cadence among earlier rows with the same amount and prefix."""

    prefix = tx.description[:_RECURRING_PREFIX_LEN].strip()
    if not prefix:
        return None
    history = store.find_recent_similar(
        account_id, tx.amount, prefix, before=tx.date, limit=_RECURRING_LOOKBACK
    )
    if len(history) < 2:
        return None
    dates = sorted((t.date for t in history), reverse=True)
    intervals = [(a - b).days for a, b in zip(dates, dates[1:])]
    avg = sum(intervals) / len(intervals)
    if _WEEKLY_DAYS[0] <= avg <= _WEEKLY_DAYS[1]:
        return "weekly"
    if _MONTHLY_DAYS[0] <= avg <= _MONTHLY_DAYS[1]:
        return "monthly"
    return None


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Accepted:
    index: int
    transaction: NormalizedTransaction
    duplicate_check: DuplicateDetectionResult
    recurring_pattern: RecurringPattern | None
    warnings: tuple[str, ...]


class IngestionPipeline:
    """Wire the normalizer, duplicate gate, enricher and categorization engine."""

    def __init__(
        self,
        normalizer: TransactionNormalizer,
        detector: DuplicateDetector,
        enricher: TransactionEnricher,
        categorizer: CategorizationEngine,
        *,
        settings: PipelineSettings | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        self.normalizer = normalizer
        self.detector = detector
        self.enricher = enricher
        self.categorizer = categorizer
        self.settings = settings or PipelineSettings()
        self.limiter = limiter

    @classmethod
    def build(
        cls,
        *,
        categories: CategoryStore,
        rules: RuleStore,
        transactions: TransactionStore,
        feedback_log: FeedbackLog | None = None,
        settings: PipelineSettings | None = None,
    ) -> IngestionPipeline:
        """Assemble a pipeline with packaged resources and ``settings`` tunables."""

        s = settings or PipelineSettings()
        enricher = TransactionEnricher(categories=categories)
        detector = DuplicateDetector(
            transactions,
            DuplicateDetectionConfig(
                threshold=s.duplicate_threshold, window_days=s.duplicate_window_days
            ),
        )
        categorizer = CategorizationEngine.default(
            categories=categories,
            rules=rules,
            transactions=transactions,
            feedback_log=feedback_log,
            matcher=enricher.matcher,
            history_sample_size=s.history_sample_size,
        )
        return cls(
            TransactionNormalizer(),
            detector,
            enricher,
            categorizer,
            settings=s,
            limiter=RateLimiter(s.enrich_rate_per_sec, burst=s.enrich_burst),
        )

    # -- Phases --------------------------------------------------------------

    def _gate(
        self,
        index: int,
        raw: RawRecord,
        format_code: str,
        *,
        account_id: str,
        store: TransactionStore,
        detector: DuplicateDetector,
    ) -> IngestOutcome | _Accepted:
        try:
            tx = self.normalizer.normalize(raw, format_code)
        except Exception as e:  # noqa: BLE001
            return IngestOutcome(index=index, status="invalid", message=str(e))
        if tx is None:
            return IngestOutcome(
                index=index, status="invalid", message="Record has no description or amount"
            )
        validation = self.normalizer.validate(tx)
        if not validation.valid:
            return IngestOutcome(
                index=index,
                status="invalid",
                transaction=tx,
                message="; ".join(validation.errors),
                warnings=validation.warnings,
            )

        try:
            check = detector.detect(tx, account_id=account_id)
            if check.best_match is not None and check.best_match.is_exact_duplicate:
                return IngestOutcome(
                    index=index,
                    status="duplicate",
                    transaction=tx,
                    duplicate_check=check,
                    message=f"Duplicate of {check.best_match.transaction_id}",
                    warnings=validation.warnings,
                )
            recurring = detect_recurring(store, account_id, tx)
        except Exception as e:  # noqa: BLE001
            _logger.exception("duplicate gate failed for record %d", index)
            return IngestOutcome(index=index, status="error", transaction=tx, message=str(e))

        return _Accepted(
            index=index,
            transaction=tx,
            duplicate_check=check,
            recurring_pattern=recurring,
            warnings=validation.warnings,
        )

    def _finish(self, item: _Accepted, *, account_id: str, user_id: str) -> IngestOutcome:
        tx = item.transaction
        try:
            if self.limiter is not None:
                self.limiter.acquire()
            enrichment = self.enricher.enrich(
                tx.description,
                tx.merchant,
                tx.amount,
                tx.location,
                user_id=user_id,
                transaction_id=tx.external_id,
            )
            categorization = self.categorizer.categorize(tx, user_id=user_id)
        except Exception as e:  # noqa: BLE001
            _logger.exception("failed to finish record %d", item.index)
            return IngestOutcome(
                index=item.index,
                status="error",
                transaction=tx,
                duplicate_check=item.duplicate_check,
                message=str(e),
            )
        finalized = FinalizedTransaction(
            account_id=account_id,
            transaction=tx,
            enrichment=enrichment,
            categorization=categorization,
            duplicate_check=item.duplicate_check,
            recurring_pattern=item.recurring_pattern,
        )
        return IngestOutcome(
            index=item.index,
            status="imported",
            transaction=tx,
            finalized=finalized,
            duplicate_check=item.duplicate_check,
            warnings=item.warnings,
        )

    # -- Entry points --------------------------------------------------------

    def process_record(
        self, raw: RawRecord, *, account_id: str, user_id: str, format_code: str
    ) -> IngestOutcome:
        """Run one record through every stage against the stored history."""

        self.normalizer.registry.get(format_code)
        gated = self._gate(
            0,
            raw,
            format_code,
            account_id=account_id,
            store=self.detector.store,
            detector=self.detector,
        )
        if isinstance(gated, IngestOutcome):
            return gated
        return self._finish(gated, account_id=account_id, user_id=user_id)

    def process_batch(
        self,
        raw_records: Sequence[RawRecord],
        *,
        account_id: str,
        user_id: str,
        format_code: str | None = None,
        concurrency: int | None = None,
    ) -> ImportReport:
        """Import one account's records; item failures never abort the batch.

        The format is detected from the first records when ``format_code`` is
        omitted. An explicit unknown code raises ``ValueError``. ``concurrency``
        caps the enrichment pool and defaults to ``settings.max_workers``.
        """

        if concurrency is not None and concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        workers = self.settings.max_workers if concurrency is None else concurrency
        records = list(raw_records)
        if format_code is None:
            format_code = (
                self.normalizer.detect_format([str(k) for k in records[0].keys()], records[:5])
                if records
                else self.normalizer.registry.default_code
            )
        else:
            self.normalizer.registry.get(format_code)

        overlay = _BatchOverlayStore(self.detector.store, account_id)
        detector = DuplicateDetector(overlay, self.detector.config)

        outcomes: dict[int, IngestOutcome] = {}
        accepted: list[_Accepted] = []
        for index, raw in enumerate(records):
            gated = self._gate(
                index, raw, format_code, account_id=account_id, store=overlay, detector=detector
            )
            if isinstance(gated, IngestOutcome):
                outcomes[index] = gated
                continue
            accepted.append(gated)
            overlay.stage(index, gated.transaction)

        if accepted:
            finished = p_map(
                accepted,
                lambda item: self._finish(item, account_id=account_id, user_id=user_id),
                concurrency=max(1, min(workers, len(accepted))),
            )
            for outcome in finished:
                outcomes[outcome.index] = outcome

        report = ImportReport(
            account_id=account_id,
            format_used=format_code,
            outcomes=tuple(outcomes[i] for i in sorted(outcomes)),
        )
        _logger.info(
            "account %s: %d imported, %d duplicates, %d invalid, %d errors (%s)",
            account_id,
            report.imported,
            report.duplicates,
            report.invalid,
            report.errors,
            format_code,
        )
        return report

    def process_accounts(
        self,
        batches: Mapping[str, Sequence[RawRecord]],
        *,
        user_id: str,
        format_code: str | None = None,
    ) -> dict[str, ImportReport]:
        """Process several accounts concurrently, each one serially.

        ``settings.max_workers`` bounds the total thread count: it is split
        between the per-account pool and each account's enrichment pool.
        """

        if not batches:
            return {}
        account_ids = list(batches)
        outer = max(1, min(self.settings.max_workers, len(account_ids)))
        inner = max(1, self.settings.max_workers // outer)
        reports = p_map(
            account_ids,
            lambda acc: self.process_batch(
                batches[acc],
                account_id=acc,
                user_id=user_id,
                format_code=format_code,
                concurrency=inner,
            ),
            concurrency=outer,
        )
        return dict(zip(account_ids, reports))


__all__ = [
    "FinalizedTransaction",
    "ImportReport",
    "IngestOutcome",
    "IngestStatus",
    "IngestionPipeline",
    "detect_recurring",
]
