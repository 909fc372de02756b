from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ingest.core.config import Settings
from ingest.core.telemetry import job_span
from ingest.core.values import as_count, as_float, as_record, as_text
from ingest.jobs.incident_alerts import incident_alerts
from ingest.jobs.reconcile_promotions import reconcile_promotions
from ingest.jobs.replay_run import replay_run
from ingest.jobs.run_source import RunSourceOptions, run_source
from ingest.jobs.source_health import source_health
from ingest.jobs.source_probe import DEFAULT_MAX_PROBE_PAGES, source_probe
from ingest.services.repository import DurableStore
from ingest.services.snapshots import SnapshotWriter
from ingest.sources.registry import SourceRegistry

JOB_KINDS = (
    "run_source",
    "source_health",
    "incident_alerts",
    "reconcile_promotions",
    "replay_run",
    "source_probe",
    "list_sources",
)


class JobInputError(ValueError):
    """Raised when a job is missing a required input."""


@dataclass(slots=True)
class JobContext:
    store: DurableStore
    registry: SourceRegistry
    snapshot_writer: SnapshotWriter
    settings: Settings


async def execute_job(kind: str, inputs: dict[str, Any] | None, *, context: JobContext) -> dict[str, Any]:
    """Run one job kind and return its JSON-ready result."""
    payload = as_record(inputs)
    with job_span(kind, payload) as span:
        outcome = await _dispatch(kind, payload, context)
        span.set_attribute("ingest.job.handled", outcome["handled"])
    return outcome


async def _dispatch(kind: str, payload: dict[str, Any], context: JobContext) -> dict[str, Any]:
    settings = context.settings

    if kind == "run_source":
        options = RunSourceOptions(
            respect_cadence=bool(payload.get("respect_cadence", False)),
            force=bool(payload.get("force", False)),
            quality_threshold=_threshold(payload, settings),
            default_locale=settings.default_locale,
        )
        result = await run_source(
            _required_text(payload, "source_key"),
            store=context.store,
            registry=context.registry,
            snapshot_writer=context.snapshot_writer,
            options=options,
        )
        return _handled(kind, result.as_dict())

    if kind == "source_health":
        result = await source_health(context.store, context.registry, as_text(payload.get("source_key")))
        return _handled(kind, result.as_dict())

    if kind == "incident_alerts":
        result = await incident_alerts(context.store, as_text(payload.get("source_key")))
        return _handled(kind, result.as_dict())

    if kind == "reconcile_promotions":
        threshold = as_count(payload.get("spike_threshold")) or settings.reconciliation_spike_threshold
        result = await reconcile_promotions(context.store, spike_threshold=threshold)
        return _handled(kind, result.as_dict())

    if kind == "replay_run":
        result = await replay_run(
            _required_text(payload, "run_id"),
            store=context.store,
            registry=context.registry,
            snapshot_writer=context.snapshot_writer,
            config_version_override=as_text(payload.get("config_version")),
            force=bool(payload.get("force", True)),
            tolerance=as_record(payload.get("tolerance")) or None,
            quality_threshold=_threshold(payload, settings),
            default_locale=settings.default_locale,
        )
        return _handled(kind, result.as_dict())

    if kind == "source_probe":
        result = await source_probe(
            _required_text(payload, "url"),
            source_key=as_text(payload.get("source_key")),
            display_name=as_text(payload.get("display_name")),
            max_probe_pages=as_count(payload.get("max_probe_pages")) or DEFAULT_MAX_PROBE_PAGES,
            timeout_seconds=settings.probe_timeout_seconds,
        )
        return _handled(kind, result.as_dict())

    if kind == "list_sources":
        sources = [
            {"source_key": source.key, "display_name": source.display_name}
            for source in context.registry.list_sources()
        ]
        return _handled(kind, {"sources": sources})

    return {"handled": False, "kind": kind}


def _handled(kind: str, result: dict[str, Any]) -> dict[str, Any]:
    return {"handled": True, "kind": kind, "result": result}


def _required_text(payload: dict[str, Any], name: str) -> str:
    value = as_text(payload.get(name))
    if value is None:
        raise JobInputError(f"{name} is required")
    return value


def _threshold(payload: dict[str, Any], settings: Settings) -> float:
    value = as_float(payload.get("quality_threshold"))
    return value if value is not None else settings.quality_threshold
