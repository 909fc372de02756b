import asyncio
from datetime import datetime, timezone

import pytest

from ingest.jobs.source_health import build_source_health_entry, source_health
from ingest.services.repository import RepositoryNotFoundError, SourceRuntimeRecord
from ingest.services.store import InMemoryStore
from ingest.sources.registry import SourceRegistry
from tests.fakes import FakeSource

LAST_RUN = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)


def _codes(entry) -> dict[str, str]:
    return {signal.code: signal.severity for signal in entry.signals}


def test_failing_source_gets_critical_signals() -> None:
    row = SourceRuntimeRecord(
        source_key="kindness_blog",
        display_name="Kindness Blog",
        last_run_at=LAST_RUN,
        last_success_at=LAST_RUN,
        rolling_failure_rate_30d=0.65,
        rolling_promotion_rate_30d=0.3,
        metadata_json={"health": {"consecutive_failures": 3, "health_score": 55, "last_run_status": "failed"}},
    )

    entry = build_source_health_entry(row)

    assert _codes(entry) == {"high_failure_rate": "critical", "consecutive_failures": "critical"}
    assert entry.signals[0].message == "Rolling failure rate is 65.0%."
    assert entry.last_run_status == "failed"
    assert entry.consecutive_failures == 3


def test_never_run_source_and_low_score() -> None:
    row = SourceRuntimeRecord(
        source_key="new_source",
        display_name="New Source",
        rolling_promotion_rate_30d=0.02,
        metadata_json={"health": {"health_score": 12.4}},
    )

    codes = _codes(build_source_health_entry(row))

    assert codes == {"never_run": "warn", "no_success": "warn", "low_yield": "warn", "low_health_score": "warn"}


def test_paused_approved_source_is_flagged_inactive() -> None:
    row = SourceRuntimeRecord(
        source_key="paused_source",
        display_name="Paused",
        state="paused",
        approved_for_prod=True,
        last_run_at=LAST_RUN,
        last_success_at=LAST_RUN,
    )
    assert _codes(build_source_health_entry(row)) == {"inactive_source": "info"}


def test_healthy_source_gets_single_info_signal() -> None:
    row = SourceRuntimeRecord(
        source_key="kindness_blog",
        display_name="Kindness Blog",
        last_run_at=LAST_RUN,
        last_success_at=LAST_RUN,
        rolling_failure_rate_30d=0.1,
        rolling_promotion_rate_30d=0.4,
    )
    entry = build_source_health_entry(row)
    assert _codes(entry) == {"healthy": "info"}
    assert entry.as_dict()["last_run_at"] == "2026-01-05T10:00:00Z"


def test_source_health_job_reports_unregistered_modules() -> None:
    store = InMemoryStore([SourceRuntimeRecord(source_key="alpha", display_name="Alpha")])
    registry = SourceRegistry([FakeSource("alpha"), FakeSource("beta")])

    result = asyncio.run(source_health(store, registry))

    assert [entry.source_key for entry in result.sources] == ["alpha"]
    assert result.unregistered_sources == ["beta"]


def test_source_health_job_for_unknown_row_raises() -> None:
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(source_health(InMemoryStore(), SourceRegistry(), "missing"))
