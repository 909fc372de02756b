"""Extraction strategy ranking and per-strategy performance bookkeeping.

Selection works over the configured preference list only; it reorders, never
adds strategies. A strategy counts as *strong* when it has a structural URL
signal in the discovered set and both of its rolling rates clear
``STRONG_RATE_THRESHOLD``. Strong strategies lead, ordered by composite score.
Without one, the configured order stands, except that ``headless`` may be
promoted when dynamic-content hints dominate and nothing static is available.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from ingest.core.rates import smooth_rate
from ingest.core.strategies import (
    ALL_STRATEGIES,
    STRUCTURAL_STRATEGIES,
    IngestStrategy,
    matches_strategy_url,
    normalize_strategy_order,
)
from ingest.core.values import as_float, clamp, to_iso
from ingest.schemas.metadata import SourceMetadata, StrategyPerformance

STRATEGY_SELECTION_VERSION = "ing031_v1"
STRONG_RATE_THRESHOLD = 0.7
DYNAMIC_HINT_DOMINANCE_RATIO = 0.5
DEFAULT_PRIOR_RATE = 0.5

StrategyAttemptStatus = Literal["no_pages", "failed", "partial", "success", "no_candidates"]

_RUNTIME_COST = {
    IngestStrategy.API: 0.95,
    IngestStrategy.FEED: 0.9,
    IngestStrategy.ICS: 0.88,
    IngestStrategy.SITEMAP_HTML: 0.75,
    IngestStrategy.PDF: 0.6,
    IngestStrategy.HEADLESS: 0.3,
}
_LEGAL_RISK_BASE = {
    IngestStrategy.API: 0.85,
    IngestStrategy.FEED: 0.9,
    IngestStrategy.ICS: 0.92,
    IngestStrategy.SITEMAP_HTML: 0.7,
    IngestStrategy.PDF: 0.65,
    IngestStrategy.HEADLESS: 0.35,
}


@dataclass(slots=True)
class StrategyScore:
    strategy: IngestStrategy
    score: float
    configured_preference: float
    availability: float
    reliability: float
    runtime_cost: float
    legal_risk: float
    matching_url_count: int
    rolling_success_rate: float
    rolling_yield_rate: float
    strong: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "score": round(self.score, 5),
            "configured_preference": round(self.configured_preference, 5),
            "availability": round(self.availability, 5),
            "reliability": round(self.reliability, 5),
            "runtime_cost": self.runtime_cost,
            "legal_risk": round(self.legal_risk, 5),
            "matching_url_count": self.matching_url_count,
            "rolling_success_rate": self.rolling_success_rate,
            "rolling_yield_rate": self.rolling_yield_rate,
            "strong": self.strong,
        }


@dataclass(slots=True)
class StrategySelectionPlan:
    configured_order: list[IngestStrategy]
    ranked_order: list[IngestStrategy]
    selected_primary: IngestStrategy
    scores: list[StrategyScore]
    reasoning: list[str]
    version: str = STRATEGY_SELECTION_VERSION

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "selected_primary": self.selected_primary.value,
            "ranked_order": [strategy.value for strategy in self.ranked_order],
            "configured_order": [strategy.value for strategy in self.configured_order],
            "scores": [score.as_dict() for score in self.scores],
            "reasoning": list(self.reasoning),
        }


@dataclass(slots=True)
class StrategyExecutionAttempt:
    strategy: IngestStrategy
    status: StrategyAttemptStatus
    pages_considered: int = 0
    pages_succeeded: int = 0
    pages_failed: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    fallback_reason: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return max(0, round((self.finished_at - self.started_at).total_seconds() * 1000))

    def as_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "status": self.status,
            "pages_considered": self.pages_considered,
            "pages_succeeded": self.pages_succeeded,
            "pages_failed": self.pages_failed,
            "candidate_count": self.candidate_count,
            "curated_candidate_count": self.curated_candidate_count,
            "quality_filtered_candidate_count": self.quality_filtered_candidate_count,
            "started_at": to_iso(self.started_at) if self.started_at else None,
            "finished_at": to_iso(self.finished_at) if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "fallback_reason": self.fallback_reason,
        }


def derive_attempt_status(
    *,
    pages_considered: int,
    pages_succeeded: int,
    pages_failed: int,
    candidate_count: int,
) -> StrategyAttemptStatus:
    if pages_considered <= 0:
        return "no_pages"
    if pages_succeeded == 0 and pages_failed > 0:
        return "failed"
    if pages_failed > 0:
        return "partial"
    if candidate_count == 0:
        return "no_candidates"
    return "success"


def runtime_cost_weight(strategy: IngestStrategy) -> float:
    return _RUNTIME_COST.get(strategy, 0.5)


def legal_risk_weight(strategy: IngestStrategy, legal_risk_level: str | None) -> float:
    normalized = (legal_risk_level or "medium").strip().lower()
    multiplier = 0.7 if normalized == "high" else 1.05 if normalized == "low" else 1.0
    return clamp(_LEGAL_RISK_BASE.get(strategy, 0.5) * multiplier, 0.0, 1.0)


def read_prior_rates(metadata: SourceMetadata, strategy: IngestStrategy) -> tuple[float, float]:
    node = metadata.strategy_performance.get(strategy.value)
    if node is None:
        return DEFAULT_PRIOR_RATE, DEFAULT_PRIOR_RATE
    extras = node.model_extra or {}
    success = node.rolling_success_rate
    if success is None:
        success = as_float(extras.get("success_rate"))
    yield_rate = node.rolling_yield_rate
    if yield_rate is None:
        yield_rate = as_float(extras.get("yield_rate"))
    return (
        clamp(success if success is not None else DEFAULT_PRIOR_RATE, 0.0, 1.0),
        clamp(yield_rate if yield_rate is not None else DEFAULT_PRIOR_RATE, 0.0, 1.0),
    )


def score_strategies(
    configured_order: list[IngestStrategy],
    discovered_urls: list[str],
    metadata: SourceMetadata,
    legal_risk_level: str | None,
) -> list[StrategyScore]:
    rows: list[StrategyScore] = []
    total = len(configured_order)
    for index, strategy in enumerate(configured_order):
        matching = sum(1 for url in discovered_urls if matches_strategy_url(strategy, url))
        availability = clamp(math.log10(matching + 1) / math.log10(8), 0.0, 1.0)
        preference = 1.0 if total <= 1 else 1.0 - index / (total - 1)
        success_rate, yield_rate = read_prior_rates(metadata, strategy)
        reliability = clamp(success_rate * 0.7 + yield_rate * 0.3, 0.0, 1.0)
        runtime_cost = runtime_cost_weight(strategy)
        legal_risk = legal_risk_weight(strategy, legal_risk_level)

        score = preference * 0.35 + availability * 0.2 + reliability * 0.3 + runtime_cost * 0.1 + legal_risk * 0.05
        if matching == 0:
            score -= 0.15

        rows.append(
            StrategyScore(
                strategy=strategy,
                score=clamp(score, 0.0, 1.0),
                configured_preference=preference,
                availability=availability,
                reliability=reliability,
                runtime_cost=runtime_cost,
                legal_risk=legal_risk,
                matching_url_count=matching,
                rolling_success_rate=success_rate,
                rolling_yield_rate=yield_rate,
                strong=(
                    strategy in STRUCTURAL_STRATEGIES
                    and matching > 0
                    and success_rate > STRONG_RATE_THRESHOLD
                    and yield_rate > STRONG_RATE_THRESHOLD
                ),
            )
        )
    return rows


def select_strategy_plan(
    *,
    configured_order: Iterable[object] | None,
    discovered_urls: list[str],
    metadata: SourceMetadata | dict[str, Any] | None = None,
    legal_risk_level: str | None = None,
    dynamic_hint_count: int = 0,
    sampled_page_count: int | None = None,
) -> StrategySelectionPlan:
    configured = normalize_strategy_order(configured_order)
    parsed_metadata = SourceMetadata.from_raw(metadata)
    scores = score_strategies(configured, discovered_urls, parsed_metadata, legal_risk_level)
    by_strategy = {row.strategy: row for row in scores}
    reasoning: list[str] = []

    strong = sorted(
        (row for row in scores if row.strong),
        key=lambda row: (-row.score, configured.index(row.strategy)),
    )
    if strong:
        leaders = [row.strategy for row in strong]
        ranked = leaders + [strategy for strategy in configured if strategy not in leaders]
        reasoning.append(
            f'Strong structural strategies [{", ".join(strategy.value for strategy in leaders)}] lead: '
            f"matching URLs present and rolling success/yield above {STRONG_RATE_THRESHOLD:.2f}."
        )
    else:
        ranked = list(configured)
        reasoning.append(
            f"No strong structural strategy; keeping configured order [{', '.join(s.value for s in configured)}]."
        )

    static_signal = sum(
        row.matching_url_count for row in scores if row.strategy in STRUCTURAL_STRATEGIES
    )
    sampled = sampled_page_count if sampled_page_count is not None else len(discovered_urls)
    dynamic_ratio = dynamic_hint_count / max(sampled, 1) if dynamic_hint_count > 0 else 0.0
    high_legal_risk = (legal_risk_level or "").strip().lower() == "high"
    if IngestStrategy.HEADLESS in ranked and ranked[0] is not IngestStrategy.HEADLESS:
        if dynamic_ratio >= DYNAMIC_HINT_DOMINANCE_RATIO and static_signal == 0 and not strong:
            if high_legal_risk:
                reasoning.append("Dynamic-content hints dominate but headless stays in place under high legal risk.")
            else:
                ranked.remove(IngestStrategy.HEADLESS)
                ranked.insert(0, IngestStrategy.HEADLESS)
                reasoning.append(
                    f"Promoted headless: dynamic hint ratio {dynamic_ratio:.2f} with no static structural signal."
                )

    primary = ranked[0]
    top = by_strategy[primary]
    reasoning.append(
        f'Selected primary strategy "{primary.value}" with score {top.score:.3f} '
        f"(matching_urls={top.matching_url_count}, reliability={top.reliability:.3f}, "
        f"runtime_cost={top.runtime_cost:.3f}, legal_risk={top.legal_risk:.3f})."
    )

    return StrategySelectionPlan(
        configured_order=configured,
        ranked_order=ranked,
        selected_primary=primary,
        scores=scores,
        reasoning=reasoning,
    )


def assign_pages_to_strategies(
    urls: list[str],
    ranked_order: list[IngestStrategy],
) -> dict[IngestStrategy, list[str]]:
    """Each URL goes to the first ranked strategy whose URL shape it matches.

    URLs no strategy claims fall to the primary so every page is still processed.
    """
    assignments: dict[IngestStrategy, list[str]] = {strategy: [] for strategy in ranked_order}
    for url in urls:
        owner = next((strategy for strategy in ranked_order if matches_strategy_url(strategy, url)), ranked_order[0])
        assignments[owner].append(url)
    return assignments


def merge_strategy_performance(
    metadata: SourceMetadata,
    attempts: list[StrategyExecutionAttempt],
) -> SourceMetadata:
    recorded = [attempt for attempt in attempts if attempt.status != "no_pages"]
    if not recorded:
        return metadata

    merged = metadata.model_copy(deep=True)
    for strategy in ALL_STRATEGIES:
        strategy_attempts = [attempt for attempt in recorded if attempt.strategy is strategy]
        if not strategy_attempts:
            continue

        node = merged.strategy_performance.get(strategy.value) or StrategyPerformance()
        success_rate = node.rolling_success_rate if node.rolling_success_rate is not None else DEFAULT_PRIOR_RATE
        yield_rate = node.rolling_yield_rate if node.rolling_yield_rate is not None else DEFAULT_PRIOR_RATE

        for attempt in strategy_attempts:
            finished_at = to_iso(attempt.finished_at) if attempt.finished_at else None
            successful = attempt.status in ("success", "partial")
            node.attempts_total += 1
            if successful:
                node.success_total += 1
                node.last_success_at = finished_at
            elif attempt.status == "no_candidates":
                node.no_candidate_total += 1
            elif attempt.status == "failed":
                node.failure_total += 1

            success_rate = smooth_rate(success_rate, 1.0 if successful else 0.0)
            yield_rate = smooth_rate(yield_rate, 1.0 if attempt.candidate_count > 0 else 0.0)
            node.rolling_success_rate = round(success_rate, 5)
            node.rolling_yield_rate = round(yield_rate, 5)
            node.last_status = attempt.status
            node.last_attempt_at = finished_at
            node.last_candidate_count = attempt.candidate_count
            node.last_pages_considered = attempt.pages_considered
            node.updated_at = finished_at

        merged.strategy_performance[strategy.value] = node
    return merged
