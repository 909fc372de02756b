from datetime import datetime, timezone

import pytest

from ingest.core.rates import ROLLING_RATE_ALPHA, smooth_rate
from ingest.core.strategies import IngestStrategy, matches_strategy_url, normalize_strategy_order
from ingest.jobs.strategy_selection import (
    DEFAULT_PRIOR_RATE,
    StrategyExecutionAttempt,
    assign_pages_to_strategies,
    derive_attempt_status,
    merge_strategy_performance,
    select_strategy_plan,
)
from ingest.schemas.metadata import SourceMetadata

FEED_URLS = ["https://example.org/feed/", "https://example.org/news.rss"]
HTML_URLS = ["https://example.org/ideas/1", "https://example.org/ideas/2"]


def _metadata(strategy: str, success: float, yield_rate: float) -> dict:
    return {
        "strategy_performance": {
            strategy: {"rolling_success_rate": success, "rolling_yield_rate": yield_rate, "attempts_total": 10}
        }
    }


def test_normalize_strategy_order_drops_unknown_and_duplicates() -> None:
    assert normalize_strategy_order(["Feed", "bogus", "feed", "pdf"]) == [IngestStrategy.FEED, IngestStrategy.PDF]
    assert normalize_strategy_order(None) == [IngestStrategy.SITEMAP_HTML]


def test_url_shapes_route_to_matching_strategies() -> None:
    assert matches_strategy_url(IngestStrategy.FEED, "https://example.org/feed/")
    assert not matches_strategy_url(IngestStrategy.FEED, "https://example.org/sitemap.xml")
    assert matches_strategy_url(IngestStrategy.API, "https://example.org/api/ideas")
    assert matches_strategy_url(IngestStrategy.PDF, "https://example.org/guide.pdf")
    assert matches_strategy_url(IngestStrategy.SITEMAP_HTML, "https://example.org/ideas/1")
    assert not matches_strategy_url(IngestStrategy.HEADLESS, "https://example.org/photo.jpg")


def test_strong_structural_strategy_leads() -> None:
    plan = select_strategy_plan(
        configured_order=["sitemap_html", "feed"],
        discovered_urls=HTML_URLS + FEED_URLS,
        metadata=_metadata("feed", 0.9, 0.85),
    )
    assert plan.ranked_order == [IngestStrategy.FEED, IngestStrategy.SITEMAP_HTML]
    assert plan.selected_primary is IngestStrategy.FEED
    assert "Strong structural strategies [feed] lead" in plan.reasoning[0]
    assert next(row for row in plan.scores if row.strategy is IngestStrategy.FEED).strong


def test_rates_at_threshold_are_not_strong() -> None:
    plan = select_strategy_plan(
        configured_order=["sitemap_html", "feed"],
        discovered_urls=HTML_URLS + FEED_URLS,
        metadata=_metadata("feed", 0.7, 0.9),
    )
    assert plan.ranked_order == [IngestStrategy.SITEMAP_HTML, IngestStrategy.FEED]
    assert plan.reasoning[0].startswith("No strong structural strategy")


def test_strong_requires_matching_urls() -> None:
    plan = select_strategy_plan(
        configured_order=["sitemap_html", "feed"],
        discovered_urls=HTML_URLS,
        metadata=_metadata("feed", 0.95, 0.95),
    )
    assert plan.selected_primary is IngestStrategy.SITEMAP_HTML


def test_headless_promoted_when_dynamic_hints_dominate() -> None:
    plan = select_strategy_plan(
        configured_order=["sitemap_html", "headless"],
        discovered_urls=HTML_URLS,
        dynamic_hint_count=3,
        sampled_page_count=4,
    )
    assert plan.ranked_order == [IngestStrategy.HEADLESS, IngestStrategy.SITEMAP_HTML]
    assert any(line.startswith("Promoted headless") for line in plan.reasoning)


def test_headless_stays_put_under_high_legal_risk() -> None:
    plan = select_strategy_plan(
        configured_order=["sitemap_html", "headless"],
        discovered_urls=HTML_URLS,
        legal_risk_level="high",
        dynamic_hint_count=3,
        sampled_page_count=4,
    )
    assert plan.selected_primary is IngestStrategy.SITEMAP_HTML
    assert any("high legal risk" in line for line in plan.reasoning)


def test_headless_not_promoted_with_static_signal() -> None:
    plan = select_strategy_plan(
        configured_order=["feed", "headless"],
        discovered_urls=FEED_URLS,
        dynamic_hint_count=5,
        sampled_page_count=2,
    )
    assert plan.selected_primary is IngestStrategy.FEED


def test_assign_pages_prefers_first_matching_ranked_strategy() -> None:
    urls = ["https://example.org/guide.pdf", "https://example.org/feed/", "https://example.org/ideas/1"]
    assignments = assign_pages_to_strategies(
        urls, [IngestStrategy.FEED, IngestStrategy.PDF, IngestStrategy.SITEMAP_HTML]
    )
    assert assignments[IngestStrategy.FEED] == ["https://example.org/feed/"]
    assert assignments[IngestStrategy.PDF] == ["https://example.org/guide.pdf"]
    assert assignments[IngestStrategy.SITEMAP_HTML] == ["https://example.org/ideas/1"]


def test_unclaimed_pages_fall_to_primary() -> None:
    assignments = assign_pages_to_strategies(["https://example.org/ideas/1"], [IngestStrategy.FEED])
    assert assignments == {IngestStrategy.FEED: ["https://example.org/ideas/1"]}


def test_derive_attempt_status() -> None:
    assert derive_attempt_status(pages_considered=0, pages_succeeded=0, pages_failed=0, candidate_count=0) == "no_pages"
    assert derive_attempt_status(pages_considered=2, pages_succeeded=0, pages_failed=2, candidate_count=0) == "failed"
    assert derive_attempt_status(pages_considered=2, pages_succeeded=1, pages_failed=1, candidate_count=3) == "partial"
    assert (
        derive_attempt_status(pages_considered=2, pages_succeeded=2, pages_failed=0, candidate_count=0)
        == "no_candidates"
    )
    assert derive_attempt_status(pages_considered=2, pages_succeeded=2, pages_failed=0, candidate_count=1) == "success"


def test_merge_skips_no_page_attempts() -> None:
    metadata = SourceMetadata()
    attempts = [StrategyExecutionAttempt(strategy=IngestStrategy.FEED, status="no_pages")]
    assert merge_strategy_performance(metadata, attempts) is metadata


def test_merge_updates_counters_and_rolling_rates() -> None:
    finished = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    metadata = SourceMetadata.from_raw(_metadata("feed", 0.9, 0.9))
    attempts = [
        StrategyExecutionAttempt(
            strategy=IngestStrategy.FEED, status="no_candidates", pages_considered=2, finished_at=finished
        )
    ]

    merged = merge_strategy_performance(metadata, attempts)

    node = merged.strategy_performance["feed"]
    assert node.attempts_total == 11
    assert node.no_candidate_total == 1
    assert node.success_total == 0
    assert node.rolling_success_rate == pytest.approx(0.9 * (1 - ROLLING_RATE_ALPHA), abs=1e-5)
    assert node.last_status == "no_candidates"
    assert node.last_attempt_at == "2026-01-05T10:00:00Z"
    assert metadata.strategy_performance["feed"].attempts_total == 10


def test_merge_seeds_unseen_strategy_from_default_prior() -> None:
    attempts = [
        StrategyExecutionAttempt(
            strategy=IngestStrategy.SITEMAP_HTML, status="success", pages_considered=3, candidate_count=4
        )
    ]

    node = merge_strategy_performance(SourceMetadata(), attempts).strategy_performance["sitemap_html"]

    expected = DEFAULT_PRIOR_RATE * (1 - ROLLING_RATE_ALPHA) + ROLLING_RATE_ALPHA
    assert node.rolling_success_rate == pytest.approx(expected, abs=1e-5)
    assert node.rolling_yield_rate == pytest.approx(expected, abs=1e-5)
    assert node.attempts_total == 1


def test_smooth_rate_halves_old_weight_after_three_runs() -> None:
    rate = 1.0
    for _ in range(3):
        rate = smooth_rate(rate, 0.0)
    assert rate == pytest.approx(0.5)
    assert smooth_rate(None, 0.25) == 0.25
