from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from opentelemetry import trace

from ingest.core.values import to_iso, utc_now
from ingest.schemas.metadata import SourceMetadata
from ingest.services.repository import DurableStore, RepositoryNotFoundError, SourceRuntimeRecord
from ingest.sources.registry import SourceRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SignalSeverity = Literal["info", "warn", "critical"]

HIGH_FAILURE_RATE = 0.35
LOW_YIELD_RATE = 0.05
CONSECUTIVE_FAILURE_CEILING = 3
LOW_HEALTH_SCORE = 40


@dataclass(slots=True)
class SourceHealthSignal:
    code: str
    severity: SignalSeverity
    message: str

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code, "severity": self.severity, "message": self.message}


@dataclass(slots=True)
class SourceHealthEntry:
    source_key: str
    display_name: str
    state: str
    approved_for_prod: bool
    cadence: str | None
    last_run_at: datetime | None
    last_success_at: datetime | None
    rolling_promotion_rate_30d: float | None
    rolling_failure_rate_30d: float | None
    health_score: float | None
    consecutive_failures: int
    last_run_status: str | None
    last_error: str | None
    signals: list[SourceHealthSignal] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_key": self.source_key,
            "display_name": self.display_name,
            "state": self.state,
            "approved_for_prod": self.approved_for_prod,
            "cadence": self.cadence,
            "last_run_at": to_iso(self.last_run_at) if self.last_run_at else None,
            "last_success_at": to_iso(self.last_success_at) if self.last_success_at else None,
            "rolling_promotion_rate_30d": self.rolling_promotion_rate_30d,
            "rolling_failure_rate_30d": self.rolling_failure_rate_30d,
            "health_score": self.health_score,
            "consecutive_failures": self.consecutive_failures,
            "last_run_status": self.last_run_status,
            "last_error": self.last_error,
            "signals": [signal.as_dict() for signal in self.signals],
        }


@dataclass(slots=True)
class SourceHealthResult:
    generated_at: datetime
    sources: list[SourceHealthEntry]
    unregistered_sources: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "generated_at": to_iso(self.generated_at),
            "sources": [entry.as_dict() for entry in self.sources],
            "unregistered_sources": list(self.unregistered_sources),
        }


def build_health_signals(row: SourceRuntimeRecord, metadata: SourceMetadata) -> list[SourceHealthSignal]:
    health = metadata.health
    failure_rate = row.rolling_failure_rate_30d or 0.0
    promotion_rate = row.rolling_promotion_rate_30d or 0.0
    signals: list[SourceHealthSignal] = []

    if row.last_run_at is None:
        signals.append(SourceHealthSignal("never_run", "warn", "No run has been recorded for this source."))
    if row.last_success_at is None:
        signals.append(
            SourceHealthSignal("no_success", "warn", "No successful run has been recorded for this source.")
        )
    if failure_rate >= HIGH_FAILURE_RATE:
        signals.append(
            SourceHealthSignal(
                "high_failure_rate",
                "critical",
                f"Rolling failure rate is {100 * failure_rate:.1f}%.",
            )
        )
    if 0 < promotion_rate < LOW_YIELD_RATE:
        signals.append(
            SourceHealthSignal("low_yield", "warn", f"Rolling promotion proxy is {100 * promotion_rate:.1f}%.")
        )
    if health.consecutive_failures >= CONSECUTIVE_FAILURE_CEILING:
        signals.append(
            SourceHealthSignal(
                "consecutive_failures",
                "critical",
                f"Consecutive failed runs: {health.consecutive_failures}.",
            )
        )
    if health.health_score is not None and health.health_score < LOW_HEALTH_SCORE:
        signals.append(
            SourceHealthSignal("low_health_score", "warn", f"Health score is {round(health.health_score)} / 100.")
        )
    if row.state in ("paused", "retired") and row.approved_for_prod:
        signals.append(
            SourceHealthSignal(
                "inactive_source",
                "info",
                f"Source is {row.state} and not expected to run on schedule.",
            )
        )

    if not signals:
        signals.append(
            SourceHealthSignal("healthy", "info", "No immediate failure or yield risk signals detected.")
        )
    return signals


def build_source_health_entry(row: SourceRuntimeRecord) -> SourceHealthEntry:
    metadata = SourceMetadata.from_raw(row.metadata_json)
    health = metadata.health
    return SourceHealthEntry(
        source_key=row.source_key,
        display_name=row.display_name,
        state=row.state,
        approved_for_prod=row.approved_for_prod,
        cadence=row.cadence,
        last_run_at=row.last_run_at,
        last_success_at=row.last_success_at,
        rolling_promotion_rate_30d=row.rolling_promotion_rate_30d,
        rolling_failure_rate_30d=row.rolling_failure_rate_30d,
        health_score=health.health_score,
        consecutive_failures=health.consecutive_failures,
        last_run_status=health.last_run_status,
        last_error=health.last_error,
        signals=build_health_signals(row, metadata),
    )


async def source_health(
    store: DurableStore,
    registry: SourceRegistry,
    source_key: str | None = None,
) -> SourceHealthResult:
    with tracer.start_as_current_span("ingest.source_health") as span:
        span.set_attribute("ingest.source_key", source_key or "*")
        rows = await store.list_source_health_rows([source_key] if source_key else None)
        if source_key and not rows:
            raise RepositoryNotFoundError(f'No source registry row found for source key "{source_key}"')

        registered = {row.source_key for row in rows}
        unregistered = [] if source_key else [key for key in registry.keys() if key not in registered]
        entries = [build_source_health_entry(row) for row in rows]

        critical = sum(1 for entry in entries if any(signal.severity == "critical" for signal in entry.signals))
        logger.info(
            "source health computed sources=%s critical_sources=%s unregistered=%s",
            len(entries),
            critical,
            len(unregistered),
        )
        return SourceHealthResult(generated_at=utc_now(), sources=entries, unregistered_sources=unregistered)
