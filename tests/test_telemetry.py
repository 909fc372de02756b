import asyncio

import pytest

from ingest.core.config import Settings
from ingest.core.telemetry import job_span, parse_otlp_headers, setup_telemetry, shutdown_telemetry
from ingest.jobs import executor
from ingest.jobs.executor import JobContext, execute_job
from ingest.services.snapshots import MemorySnapshotWriter
from ingest.services.store import InMemoryStore
from ingest.sources.registry import SourceRegistry


def test_parse_otlp_headers() -> None:
    assert parse_otlp_headers(None) == {}
    assert parse_otlp_headers("authorization=Bearer%20abc, x-tenant = ingest ,broken,=nokey") == {
        "authorization": "Bearer abc",
        "x-tenant": "ingest",
    }


def test_disabled_telemetry_is_a_noop() -> None:
    runtime = setup_telemetry(Settings(otel_enabled=False))
    assert runtime.enabled is False
    assert runtime.provider is None
    shutdown_telemetry(runtime)


def test_job_span_reraises_failures() -> None:
    with pytest.raises(RuntimeError, match="boom"):
        with job_span("run_source", {"source_key": "fake_source", "force": True}):
            raise RuntimeError("boom")


def test_execute_job_runs_inside_job_span(monkeypatch) -> None:
    opened: list[tuple[str, dict]] = []
    real_job_span = executor.job_span

    def recording_job_span(kind, inputs):
        opened.append((kind, dict(inputs)))
        return real_job_span(kind, inputs)

    monkeypatch.setattr(executor, "job_span", recording_job_span)
    context = JobContext(
        store=InMemoryStore([]),
        registry=SourceRegistry([]),
        snapshot_writer=MemorySnapshotWriter(),
        settings=Settings(),
    )

    outcome = asyncio.run(execute_job("list_sources", {"source_key": "x"}, context=context))

    assert outcome == {"handled": True, "kind": "list_sources", "result": {"sources": []}}
    assert opened == [("list_sources", {"source_key": "x"})]
