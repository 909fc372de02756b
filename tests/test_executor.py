from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ingest.core.config import Settings
from ingest.jobs import executor
from ingest.jobs.executor import JobContext, JobInputError, execute_job
from ingest.services.snapshots import MemorySnapshotWriter
from ingest.services.store import InMemoryStore
from ingest.sources.registry import SourceRegistry
from tests.fakes import FakeSource, fast_runtime


def _context(**settings: Any) -> JobContext:
    return JobContext(
        store=InMemoryStore([fast_runtime()]),
        registry=SourceRegistry([FakeSource()]),
        snapshot_writer=MemorySnapshotWriter(),
        settings=Settings(**settings),
    )


def test_run_source_job_returns_run_summary() -> None:
    outcome = asyncio.run(execute_job("run_source", {"source_key": "fake_source"}, context=_context()))

    assert outcome["handled"] is True
    assert outcome["kind"] == "run_source"
    assert outcome["result"]["status"] == "success"
    assert outcome["result"]["extracted_pages"] == 3


def test_run_source_job_requires_source_key() -> None:
    with pytest.raises(JobInputError, match="source_key is required"):
        asyncio.run(execute_job("run_source", {"source_key": "  "}, context=_context()))


def test_run_source_job_uses_settings_threshold(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_run_source(source_key: str, *, store, registry, snapshot_writer, options) -> Any:
        captured["source_key"] = source_key
        captured["options"] = options

        class _Result:
            def as_dict(self) -> dict[str, Any]:
                return {"run_id": "run-1"}

        return _Result()

    monkeypatch.setattr(executor, "run_source", fake_run_source)
    asyncio.run(
        execute_job(
            "run_source",
            {"source_key": "fake_source", "respect_cadence": True},
            context=_context(quality_threshold=0.75, default_locale="de"),
        )
    )

    options = captured["options"]
    assert options.respect_cadence is True
    assert options.force is False
    assert options.quality_threshold == 0.75
    assert options.default_locale == "de"


def test_source_probe_job_passes_probe_settings(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_source_probe(input_url: str, **kwargs: Any) -> Any:
        captured["input_url"] = input_url
        captured.update(kwargs)

        class _Result:
            def as_dict(self) -> dict[str, Any]:
                return {"source_key": "kind_example"}

        return _Result()

    monkeypatch.setattr(executor, "source_probe", fake_source_probe)
    outcome = asyncio.run(
        execute_job("source_probe", {"url": "kind.example", "max_probe_pages": 4}, context=_context(probe_timeout_seconds=3))
    )

    assert outcome["result"] == {"source_key": "kind_example"}
    assert captured["input_url"] == "kind.example"
    assert captured["max_probe_pages"] == 4
    assert captured["timeout_seconds"] == 3.0
    assert captured["source_key"] is None


def test_reconcile_job_defaults_spike_threshold_from_settings(monkeypatch) -> None:
    captured: dict[str, Any] = {}

    async def fake_reconcile(store, *, spike_threshold: int) -> Any:
        captured["spike_threshold"] = spike_threshold

        class _Result:
            def as_dict(self) -> dict[str, Any]:
                return {"total_repairs": 0}

        return _Result()

    monkeypatch.setattr(executor, "reconcile_promotions", fake_reconcile)
    asyncio.run(execute_job("reconcile_promotions", {}, context=_context(reconciliation_spike_threshold=7)))
    assert captured["spike_threshold"] == 7

    asyncio.run(execute_job("reconcile_promotions", {"spike_threshold": 3}, context=_context()))
    assert captured["spike_threshold"] == 3


def test_list_sources_job() -> None:
    outcome = asyncio.run(execute_job("list_sources", None, context=_context()))
    assert outcome["result"] == {"sources": [{"source_key": "fake_source", "display_name": "Fake Source"}]}


def test_health_and_alert_jobs_run_against_store() -> None:
    context = _context()
    health = asyncio.run(execute_job("source_health", {}, context=context))
    alerts = asyncio.run(execute_job("incident_alerts", {"source_key": "fake_source"}, context=context))

    assert [entry["source_key"] for entry in health["result"]["sources"]] == ["fake_source"]
    assert alerts["result"]["source_count"] == 1


def test_replay_job_end_to_end() -> None:
    context = _context()
    first = asyncio.run(execute_job("run_source", {"source_key": "fake_source"}, context=context))

    outcome = asyncio.run(
        execute_job(
            "replay_run",
            {"run_id": first["result"]["run_id"], "tolerance": {"min_candidate_key_overlap_ratio": 0.9}},
            context=context,
        )
    )

    assert outcome["result"]["determinism"]["passed"] is True
    assert outcome["result"]["determinism"]["tolerance"]["min_candidate_key_overlap_ratio"] == 0.9


def test_unknown_kind_is_not_handled() -> None:
    outcome = asyncio.run(execute_job("send_newsletter", {}, context=_context()))
    assert outcome == {"handled": False, "kind": "send_newsletter"}
