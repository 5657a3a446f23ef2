"""Public interface for the ``transaction_ingestion`` package.

This module exposes the pipeline components and their result models as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .categorization import (
    CategorizationEngine,
    CustomRuleStrategy,
    HistoricalSimilarityStrategy,
    KeywordMatcher,
    PatternStrategy,
)
from .duplicates import DuplicateDetectionConfig, DuplicateDetector
from .enrichment import EnrichmentRequest, MerchantDirectory, TransactionEnricher
from .formats import BankFormatConfig, FormatRegistry, load_bank_formats
from .models import (
    BatchNormalization,
    CategorizationResult,
    CategorizationRule,
    Category,
    CorrectionFeedback,
    DuplicateDetectionResult,
    DuplicateMatch,
    EnrichmentResult,
    MerchantInfo,
    NormalizedTransaction,
    StoredTransaction,
    ValidationResult,
)
from .normalizers import TransactionNormalizer
from .pipeline import FinalizedTransaction, ImportReport, IngestionPipeline, IngestOutcome
from .rate_limit import RateLimiter
from .settings import PipelineSettings

__all__ = [
    # Components
    "CategorizationEngine",
    "CustomRuleStrategy",
    "DuplicateDetector",
    "FormatRegistry",
    "HistoricalSimilarityStrategy",
    "IngestionPipeline",
    "KeywordMatcher",
    "MerchantDirectory",
    "PatternStrategy",
    "RateLimiter",
    "TransactionEnricher",
    "TransactionNormalizer",
    "load_bank_formats",
    # Configuration
    "BankFormatConfig",
    "DuplicateDetectionConfig",
    "PipelineSettings",
    # Models / results
    "BatchNormalization",
    "CategorizationResult",
    "CategorizationRule",
    "Category",
    "CorrectionFeedback",
    "DuplicateDetectionResult",
    "DuplicateMatch",
    "EnrichmentRequest",
    "EnrichmentResult",
    "FinalizedTransaction",
    "ImportReport",
    "IngestOutcome",
    "MerchantInfo",
    "NormalizedTransaction",
    "StoredTransaction",
    "ValidationResult",
]
