"""Confidence-gated categorization cascade.

Strategies run in a fixed order and each proposes a candidate category plus
ranked suggestions:

1. :class:`CustomRuleStrategy`: the user's own rules (accepts above 0.8).
2. :class:`PatternStrategy`: keyword dictionary and small heuristics
   (accepts above 0.6).
3. :class:`HistoricalSimilarityStrategy`: categories of similar past
   transactions for the same user.

The cascade stops at the first candidate that clears its strategy's bar.
Suggestions from every strategy that ran are merged, ranked and cut to five.
When nothing clears a bar the highest-confidence candidate wins, earlier
strategies winning ties.

Corrections are appended to a feedback log by
:meth:`CategorizationEngine.learn_from_user_correction`; nothing reads that log
back, so results stay deterministic for a fixed store state.
"""

from __future__ import annotations

import datetime as dt
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict

from .formats import compile_pattern
from .logging_setup import get_logger
from .models import (
    AmountCondition,
    CategorizationResult,
    CategorizationRule,
    CategorizationSuggestion,
    Category,
    CorrectionFeedback,
    NormalizedTransaction,
    TextCondition,
    TransactionType,
)
from .settings import load_resource_json
from .similarity import amount_similarity, clamp_unit, common_words, word_overlap
from .stores import CategoryStore, FeedbackLog, RuleStore, TransactionStore

_logger = get_logger("transaction_ingestion.categorization")

CATEGORY_KEYWORDS_RESOURCE = "category_keywords.v1.json"

_MAX_SUGGESTIONS = 5
_STRATEGY_SUGGESTIONS = 3

# ---------------------------------------------------------------------------
# Keyword dictionary
# ---------------------------------------------------------------------------


class KeywordFamily(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    family: str
    keywords: tuple[str, ...]


class IncomeKeywords(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str
    keywords: tuple[str, ...]
    confidence: float


class SmallCardPayment(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str
    keyword: str
    max_amount: Decimal
    confidence: float


class MatchConfidence(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    word_boundary: float = 0.9
    substring: float = 0.7


class KeywordDictionary(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_version: Literal[1]
    families: tuple[KeywordFamily, ...]
    income_keywords: IncomeKeywords
    small_card_payment: SmallCardPayment
    confidence: MatchConfidence = MatchConfidence()


@dataclass(frozen=True, slots=True)
class KeywordHit:
    family: str
    keyword: str
    confidence: float


def find_category(categories: Sequence[Category], *needles: str) -> Category | None:
    """Return the first category whose name contains any of ``needles``."""

    lowered = [n.lower() for n in needles if n]
    for cat in categories:
        name = cat.name.lower()
        if any(n in name for n in lowered):
            return cat
    return None


class KeywordMatcher:
    """Match free text against the keyword dictionary.

    Word-boundary hits score higher than raw substring hits (``"bus"`` inside
    ``"business"``).
    """

    def __init__(self, dictionary: KeywordDictionary) -> None:
        self.dictionary = dictionary

    @classmethod
    def from_resource(cls, path: Path | None = None) -> KeywordMatcher:
        payload = load_resource_json(CATEGORY_KEYWORDS_RESOURCE, path=path)
        return cls(KeywordDictionary.model_validate(payload))

    def confidence_for(self, keyword: str, text: str) -> float:
        """0 when absent, word-boundary or substring confidence otherwise."""

        kw = keyword.lower()
        if kw not in text:
            return 0.0
        if compile_pattern(rf"\b{re.escape(kw)}\b").search(text):
            return self.dictionary.confidence.word_boundary
        return self.dictionary.confidence.substring

    def match(self, text: str) -> list[KeywordHit]:
        lowered = text.lower()
        hits: list[KeywordHit] = []
        for fam in self.dictionary.families:
            for kw in fam.keywords:
                conf = self.confidence_for(kw, lowered)
                if conf > 0:
                    hits.append(KeywordHit(family=fam.family, keyword=kw, confidence=conf))
        return hits

    def is_income_text(self, text: str) -> bool:
        lowered = text.lower()
        return any(
            compile_pattern(rf"\b{re.escape(kw.lower())}").search(lowered)
            for kw in self.dictionary.income_keywords.keywords
        )


# ---------------------------------------------------------------------------
# Strategy plumbing
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationContext:
    user_id: str
    description: str
    merchant: str | None
    amount: Decimal
    type: TransactionType
    location: str | None = None

    @property
    def search_text(self) -> str:
        return f"{self.description} {self.merchant or ''}".lower()


@dataclass(frozen=True, slots=True)
class StrategyOutcome:
    category_id: str | None = None
    confidence: float = 0.0
    rule: str | None = None
    suggestions: tuple[CategorizationSuggestion, ...] = ()


class CategorizationStrategy(Protocol):
    name: str
    acceptance: float

    def evaluate(self, ctx: CategorizationContext) -> StrategyOutcome: ...


def _rank(suggestions: Sequence[CategorizationSuggestion]) -> list[CategorizationSuggestion]:
    # Stable: equal confidences keep strategy/discovery order.
    return sorted(suggestions, key=lambda s: s.confidence, reverse=True)


def _best_per_category(
    suggestions: Sequence[CategorizationSuggestion],
) -> list[CategorizationSuggestion]:
    best: dict[str, CategorizationSuggestion] = {}
    for s in suggestions:
        current = best.get(s.category_id)
        if current is None or s.confidence > current.confidence:
            best[s.category_id] = s
    return _rank(list(best.values()))


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def _text_condition_holds(cond: TextCondition, ctx: CategorizationContext) -> bool:
    target = getattr(ctx, cond.field) or ""
    value = cond.value
    if not cond.case_sensitive:
        target, value = target.lower(), value.lower()
    if cond.operator == "contains":
        return value in target
    if cond.operator == "equals":
        return target.strip() == value.strip()
    if cond.operator == "starts_with":
        return target.startswith(value)
    if cond.operator == "ends_with":
        return target.endswith(value)
    try:
        pattern = compile_pattern(cond.value, "" if cond.case_sensitive else "i")
    except re.error:
        _logger.warning("ignoring invalid rule regex %r", cond.value)
        return False
    return pattern.search(getattr(ctx, cond.field) or "") is not None


def _amount_condition_holds(cond: AmountCondition, ctx: CategorizationContext) -> bool:
    amount = abs(ctx.amount)
    if cond.operator == "greater_than":
        return amount > cond.value
    if cond.operator == "less_than":
        return amount < cond.value
    return amount == cond.value


def rule_matches(rule: CategorizationRule, ctx: CategorizationContext) -> bool:
    """All conditions must hold; a rule without conditions never matches."""

    if not rule.conditions:
        return False
    for cond in rule.conditions:
        if isinstance(cond, AmountCondition):
            ok = _amount_condition_holds(cond, ctx)
        else:
            ok = _text_condition_holds(cond, ctx)
        if not ok:
            return False
    return True


class CustomRuleStrategy:
    name = "Custom Rules"
    acceptance = 0.8

    def __init__(self, rules: RuleStore) -> None:
        self.rules = rules

    def evaluate(self, ctx: CategorizationContext) -> StrategyOutcome:
        for rule in self.rules.list_rules(ctx.user_id, ctx.type):
            if not rule.is_active or not rule_matches(rule, ctx):
                continue
            suggestion = CategorizationSuggestion(
                category_id=rule.category_id,
                category_name=rule.category_name or rule.name,
                confidence=clamp_unit(rule.confidence),
                reason=f"Matched custom rule: {rule.name}",
            )
            return StrategyOutcome(
                category_id=rule.category_id,
                confidence=suggestion.confidence,
                rule=rule.name,
                suggestions=(suggestion,),
            )
        return StrategyOutcome()


class PatternStrategy:
    name = "Pattern Matching"
    acceptance = 0.6

    def __init__(self, categories: CategoryStore, matcher: KeywordMatcher) -> None:
        self.categories = categories
        self.matcher = matcher

    def evaluate(self, ctx: CategorizationContext) -> StrategyOutcome:
        cats = list(self.categories.list_categories(ctx.user_id, ctx.type))
        if not cats:
            return StrategyOutcome()

        text = ctx.search_text
        suggestions: list[CategorizationSuggestion] = []
        for hit in self.matcher.match(text):
            cat = find_category(cats, hit.family, hit.keyword)
            if cat is None:
                continue
            suggestions.append(
                CategorizationSuggestion(
                    category_id=cat.id,
                    category_name=cat.name,
                    confidence=hit.confidence,
                    reason=f"Matched merchant pattern: {hit.keyword}",
                )
            )

        d = self.matcher.dictionary
        if ctx.type == "income" and self.matcher.is_income_text(text):
            cat = find_category(cats, d.income_keywords.category)
            if cat is not None:
                suggestions.append(
                    CategorizationSuggestion(
                        category_id=cat.id,
                        category_name=cat.name,
                        confidence=d.income_keywords.confidence,
                        reason="Salary/wage payment pattern",
                    )
                )

        small = d.small_card_payment
        if ctx.type == "expense" and abs(ctx.amount) < small.max_amount and small.keyword in text:
            cat = find_category(cats, small.category)
            if cat is not None:
                suggestions.append(
                    CategorizationSuggestion(
                        category_id=cat.id,
                        category_name=cat.name,
                        confidence=small.confidence,
                        reason="Small card payment (likely food/drink)",
                    )
                )

        ranked = _best_per_category(suggestions)
        if not ranked:
            return StrategyOutcome(rule=self.name)
        return StrategyOutcome(
            category_id=ranked[0].category_id,
            confidence=ranked[0].confidence,
            rule=self.name,
            suggestions=tuple(ranked[:_STRATEGY_SUGGESTIONS]),
        )


class HistoricalSimilarityStrategy:
    """Vote by categories of similar, already-categorized transactions.

    Similarity is a weighted average over the factors that apply: word
    overlap (0.6), exact merchant equality when both sides have one (0.3),
    and amount closeness when within ~20% (0.1).
    """

    name = "Historical Similarity"
    acceptance = 1.0

    def __init__(
        self,
        transactions: TransactionStore,
        *,
        sample_size: int = 100,
        min_similarity: float = 0.3,
    ) -> None:
        self.transactions = transactions
        self.sample_size = sample_size
        self.min_similarity = min_similarity

    @staticmethod
    def similarity(
        ctx: CategorizationContext, description: str, merchant: str | None, amount: Decimal
    ) -> float:
        total = 0.0
        factors = 0.0
        if ctx.description.strip():
            total += 0.6 * word_overlap(ctx.description, description)
            factors += 0.6
        if ctx.merchant and merchant:
            same = ctx.merchant.strip().lower() == merchant.strip().lower()
            total += 0.3 * (1.0 if same else 0.0)
            factors += 0.3
        amount_sim = amount_similarity(ctx.amount, amount)
        if amount_sim > 0.8:
            total += 0.1 * amount_sim
            factors += 0.1
        return total / factors if factors > 0 else 0.0

    @staticmethod
    def _reason(ctx: CategorizationContext, description: str, merchant: str | None) -> str:
        if ctx.merchant and merchant and ctx.merchant.strip().lower() == merchant.strip().lower():
            return f"Same merchant: {ctx.merchant}"
        shared = common_words(ctx.description, description)
        if shared:
            return f"Similar description: {', '.join(shared[:3])}"
        return "Similar transaction pattern"

    def evaluate(self, ctx: CategorizationContext) -> StrategyOutcome:
        samples = self.transactions.sample_categorized(
            ctx.user_id, ctx.type, limit=self.sample_size
        )
        groups: dict[str, list[float]] = {}
        names: dict[str, str] = {}
        reasons: dict[str, str] = {}
        for sample in samples:
            if sample.category_id is None:
                continue
            sim = self.similarity(ctx, sample.description, sample.merchant, sample.amount)
            if sim <= self.min_similarity:
                continue
            groups.setdefault(sample.category_id, []).append(sim)
            names.setdefault(sample.category_id, sample.category_name or sample.category_id)
            reasons.setdefault(
                sample.category_id, self._reason(ctx, sample.description, sample.merchant)
            )

        ranked = _rank(
            [
                CategorizationSuggestion(
                    category_id=cid,
                    category_name=names[cid],
                    confidence=clamp_unit(sum(sims) / len(sims)),
                    reason=reasons[cid],
                )
                for cid, sims in groups.items()
            ]
        )
        if not ranked:
            return StrategyOutcome(rule=self.name)
        return StrategyOutcome(
            category_id=ranked[0].category_id,
            confidence=ranked[0].confidence,
            rule=self.name,
            suggestions=tuple(ranked[:_STRATEGY_SUGGESTIONS]),
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CategorizationEngine:
    """Run the strategy cascade and record user corrections."""

    def __init__(
        self,
        strategies: Sequence[CategorizationStrategy],
        *,
        feedback_log: FeedbackLog | None = None,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self.strategies = list(strategies)
        self.feedback_log = feedback_log
        self._clock = clock

    @classmethod
    def default(
        cls,
        *,
        categories: CategoryStore,
        rules: RuleStore,
        transactions: TransactionStore,
        feedback_log: FeedbackLog | None = None,
        matcher: KeywordMatcher | None = None,
        history_sample_size: int = 100,
    ) -> CategorizationEngine:
        return cls(
            [
                CustomRuleStrategy(rules),
                PatternStrategy(categories, matcher or KeywordMatcher.from_resource()),
                HistoricalSimilarityStrategy(transactions, sample_size=history_sample_size),
            ],
            feedback_log=feedback_log,
        )

    def categorize_transaction(
        self,
        user_id: str,
        description: str,
        merchant: str | None,
        amount: Decimal,
        type: TransactionType,
        location: str | None = None,
    ) -> CategorizationResult:
        if not user_id or (not (description or "").strip() and not merchant):
            return CategorizationResult.empty()

        ctx = CategorizationContext(
            user_id=user_id,
            description=description or "",
            merchant=merchant,
            amount=Decimal(str(amount)),
            type=type,
            location=location,
        )

        collected: list[CategorizationSuggestion] = []
        outcomes: list[StrategyOutcome] = []
        for strategy in self.strategies:
            outcome = strategy.evaluate(ctx)
            outcomes.append(outcome)
            collected.extend(outcome.suggestions)
            if outcome.category_id and outcome.confidence > strategy.acceptance:
                _logger.debug(
                    "%s accepted %s (%.2f)", strategy.name, outcome.category_id, outcome.confidence
                )
                return self._result(outcome, collected)

        best = max(outcomes, key=lambda o: o.confidence, default=StrategyOutcome())
        return self._result(best, collected)

    @staticmethod
    def _result(
        outcome: StrategyOutcome, collected: Sequence[CategorizationSuggestion]
    ) -> CategorizationResult:
        return CategorizationResult(
            category_id=outcome.category_id,
            confidence=clamp_unit(outcome.confidence) if outcome.category_id else 0.0,
            rule=outcome.rule if outcome.category_id else None,
            suggestions=tuple(_rank(collected)[:_MAX_SUGGESTIONS]),
        )

    def categorize(
        self, transaction: NormalizedTransaction, *, user_id: str
    ) -> CategorizationResult:
        return self.categorize_transaction(
            user_id,
            transaction.description,
            transaction.merchant,
            transaction.amount,
            transaction.type,
            transaction.location,
        )

    def learn_from_user_correction(
        self,
        *,
        user_id: str,
        transaction_id: str,
        old_category_id: str | None,
        new_category_id: str,
        description: str,
        merchant: str | None,
        amount: Decimal,
    ) -> CorrectionFeedback:
        """Append a correction to the feedback log.

        The record is returned even without a configured log. Rules,
        dictionaries and future results are left untouched.
        """

        feedback = CorrectionFeedback(
            user_id=user_id,
            transaction_id=transaction_id,
            old_category_id=old_category_id,
            new_category_id=new_category_id,
            description=description,
            merchant=merchant,
            amount=Decimal(str(amount)),
            created_at=self._clock(),
        )
        if self.feedback_log is None:
            _logger.info("no feedback log configured; correction for %s not stored", transaction_id)
            return feedback
        self.feedback_log.append(feedback)
        return feedback


__all__ = [
    "CATEGORY_KEYWORDS_RESOURCE",
    "CategorizationContext",
    "CategorizationEngine",
    "CategorizationStrategy",
    "CustomRuleStrategy",
    "HistoricalSimilarityStrategy",
    "KeywordDictionary",
    "KeywordHit",
    "KeywordMatcher",
    "PatternStrategy",
    "StrategyOutcome",
    "find_category",
    "rule_matches",
]
