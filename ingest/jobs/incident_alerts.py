from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from opentelemetry import trace

from ingest.core.cadence import parse_cadence_interval
from ingest.core.values import as_record, as_text_list, to_iso, utc_now
from ingest.schemas.metadata import SourceMetadata, prepend_bounded
from ingest.services.repository import (
    DurableStore,
    RejectionRateTrend,
    RepositoryError,
    RepositoryNotFoundError,
    SourceRuntimeRecord,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

IncidentSeverity = Literal["sev1", "sev2", "sev3"]

INCIDENT_ALERT_VERSION = "ing051_v1"
REJECTION_SURGE_WINDOW = timedelta(days=7)
REJECTION_SURGE_MIN_REVIEWED = 20
SEVERITIES: tuple[IncidentSeverity, ...] = ("sev1", "sev2", "sev3")
_SEVERITY_RANK = {"sev1": 3, "sev2": 2, "sev3": 1}
_LOG_LEVEL_BY_SEVERITY = {"sev1": logging.ERROR, "sev2": logging.WARNING}


@dataclass(slots=True, frozen=True)
class IncidentRouting:
    channels: tuple[str, ...]
    ack_within_minutes: int
    mitigate_within_minutes: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "channels": list(self.channels),
            "ack_within_minutes": self.ack_within_minutes,
            "mitigate_within_minutes": self.mitigate_within_minutes,
        }


ROUTING_BY_SEVERITY: dict[str, IncidentRouting] = {
    "sev1": IncidentRouting(("ingestion-oncall", "compliance-owner", "product-owner"), 15, 60),
    "sev2": IncidentRouting(("ingestion-oncall", "source-owner"), 60, 240),
    "sev3": IncidentRouting(("source-owner",), 240, 1440),
}


@dataclass(slots=True)
class IncidentAlert:
    id: str
    source_key: str
    display_name: str
    code: str
    severity: IncidentSeverity
    summary: str
    routing: IncidentRouting
    generated_at: str
    evidence_bundle: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_key": self.source_key,
            "display_name": self.display_name,
            "code": self.code,
            "severity": self.severity,
            "summary": self.summary,
            "routing": self.routing.as_dict(),
            "generated_at": self.generated_at,
            "evidence_bundle": self.evidence_bundle,
        }


@dataclass(slots=True)
class IncidentAlertsResult:
    generated_at: datetime
    source_count: int
    alerts: list[IncidentAlert]

    @property
    def alerts_by_severity(self) -> dict[str, int]:
        return count_by_severity(self.alerts)

    def as_dict(self) -> dict[str, Any]:
        return {
            "generated_at": to_iso(self.generated_at),
            "source_count": self.source_count,
            "alert_count": len(self.alerts),
            "alerts_by_severity": self.alerts_by_severity,
            "alerts": [alert.as_dict() for alert in self.alerts],
        }


def count_by_severity(alerts: list[IncidentAlert]) -> dict[str, int]:
    counts = {severity: 0 for severity in SEVERITIES}
    for alert in alerts:
        counts[alert.severity] += 1
    return counts


def build_alert_id(source_key: str, code: str, generated_at: datetime) -> str:
    return f"{source_key}:{code}:{generated_at.strftime('%Y%m%d%H%M%S')}"


class _AlertCollector:
    def __init__(self, row: SourceRuntimeRecord, now: datetime) -> None:
        self.row = row
        self.now = now
        self.generated_at = to_iso(now)
        self.alerts: list[IncidentAlert] = []

    def push(self, code: str, severity: IncidentSeverity, summary: str, evidence: dict[str, Any]) -> None:
        self.alerts.append(
            IncidentAlert(
                id=build_alert_id(self.row.source_key, code, self.now),
                source_key=self.row.source_key,
                display_name=self.row.display_name,
                code=code,
                severity=severity,
                summary=summary,
                routing=ROUTING_BY_SEVERITY[severity],
                generated_at=self.generated_at,
                evidence_bundle={
                    "version": INCIDENT_ALERT_VERSION,
                    "source_key": self.row.source_key,
                    "code": code,
                    "severity": severity,
                    "summary": summary,
                    "generated_at": self.generated_at,
                    **evidence,
                },
            )
        )

    def deduplicated(self) -> list[IncidentAlert]:
        by_code: dict[str, IncidentAlert] = {}
        for alert in self.alerts:
            existing = by_code.get(alert.code)
            if existing is None or _SEVERITY_RANK[alert.severity] > _SEVERITY_RANK[existing.severity]:
                by_code[alert.code] = alert
        return list(by_code.values())


def evaluate_incident_alerts_for_source(
    row: SourceRuntimeRecord,
    *,
    now: datetime,
    rejection_trend: RejectionRateTrend | None = None,
) -> list[IncidentAlert]:
    metadata = SourceMetadata.from_raw(row.metadata_json)
    health = metadata.health
    compliance = metadata.compliance
    failure_rate = row.rolling_failure_rate_30d or 0.0
    promotion_rate = row.rolling_promotion_rate_30d or 0.0
    in_service = row.state == "active" and row.approved_for_prod
    collector = _AlertCollector(row, now)

    if (
        in_service
        and promotion_rate >= 0.1
        and health.last_run_candidate_count >= 5
        and health.last_run_curated_candidate_count == 0
    ):
        collector.push(
            "zero_yield_anomaly",
            "sev2",
            "Zero curated yield on historically productive source.",
            {
                "rolling_promotion_rate_30d": promotion_rate,
                "last_run_candidate_count": health.last_run_candidate_count,
                "last_run_curated_candidate_count": health.last_run_curated_candidate_count,
                "state": row.state,
                "approved_for_prod": row.approved_for_prod,
            },
        )

    if in_service and (
        health.consecutive_failures >= 3 or (failure_rate >= 0.5 and health.observed_runs >= 6)
    ):
        severity: IncidentSeverity = "sev1" if health.consecutive_failures >= 5 or failure_rate >= 0.8 else "sev2"
        collector.push(
            "failure_spike",
            severity,
            "Failure spike exceeds runtime reliability thresholds.",
            {
                "consecutive_failures": health.consecutive_failures,
                "observed_runs": health.observed_runs,
                "rolling_failure_rate_30d": failure_rate,
                "last_run_status": health.last_run_status,
                "last_error": health.last_error,
            },
        )

    interval = parse_cadence_interval(row.cadence) if in_service else None
    if interval is not None:
        interval_ms = int(interval.total_seconds() * 1000)
        if row.last_run_at is None:
            collector.push(
                "schedule_miss",
                "sev2",
                "Scheduled source has no recorded run timestamp.",
                {"cadence": row.cadence, "last_run_at": None, "expected_interval_ms": interval_ms},
            )
        else:
            expected_next = row.last_run_at + interval
            overdue = now - expected_next
            if overdue >= interval:
                collector.push(
                    "schedule_miss",
                    "sev2",
                    "Source appears to have missed at least one scheduled run.",
                    {
                        "cadence": row.cadence,
                        "last_run_at": to_iso(row.last_run_at),
                        "expected_next_run_at": to_iso(expected_next),
                        "overdue_ms": int(overdue.total_seconds() * 1000),
                    },
                )

    if rejection_trend is not None:
        recent = rejection_trend.recent_rejection_rate
        prior = rejection_trend.prior_rejection_rate
        if (
            recent is not None
            and prior is not None
            and rejection_trend.recent_reviewed_count >= REJECTION_SURGE_MIN_REVIEWED
            and rejection_trend.prior_reviewed_count >= REJECTION_SURGE_MIN_REVIEWED
            and recent >= prior + 0.1
            and recent >= prior * 1.5
        ):
            collector.push(
                "rejection_rate_surge",
                "sev2",
                "Editorial rejection rate increased sharply versus prior window.",
                {
                    "window_days": REJECTION_SURGE_WINDOW.days,
                    "recent_reviewed_count": rejection_trend.recent_reviewed_count,
                    "recent_rejected_count": rejection_trend.recent_rejected_count,
                    "recent_rejection_rate": recent,
                    "prior_reviewed_count": rejection_trend.prior_reviewed_count,
                    "prior_rejected_count": rejection_trend.prior_rejected_count,
                    "prior_rejection_rate": prior,
                    "delta_rejection_rate": recent - prior,
                },
            )

    if compliance.last_pre_run_check_status == "failed":
        last_check = as_record(compliance.last_pre_run_check)
        collector.push(
            "compliance_failure",
            "sev1" if last_check.get("severity") == "critical" else "sev2",
            "Recent compliance pre-run failure requires operator triage.",
            {
                "compliance_check": last_check,
                "reason_codes": as_text_list(last_check.get("reason_codes")),
            },
        )

    return collector.deduplicated()


def merge_incident_alerts(metadata: SourceMetadata, alerts: list[IncidentAlert], *, now: datetime) -> SourceMetadata:
    merged = metadata.model_copy(deep=True)
    incidents = merged.incidents
    incidents.version = INCIDENT_ALERT_VERSION
    incidents.last_alert_run_at = to_iso(now)
    incidents.last_alert_count = len(alerts)
    incidents.last_alerts = [
        {
            "id": alert.id,
            "code": alert.code,
            "severity": alert.severity,
            "summary": alert.summary,
            "routing": alert.routing.as_dict(),
            "generated_at": alert.generated_at,
        }
        for alert in alerts
    ]
    incidents.alert_severity_counts = count_by_severity(alerts)
    incidents.alert_history = prepend_bounded([alert.evidence_bundle for alert in alerts], incidents.alert_history)
    return merged


async def incident_alerts(
    store: DurableStore,
    source_key: str | None = None,
    *,
    now: datetime | None = None,
) -> IncidentAlertsResult:
    generated_at = now or utc_now()
    with tracer.start_as_current_span("ingest.incident_alerts") as span:
        span.set_attribute("ingest.source_key", source_key or "*")
        rows = await store.list_source_health_rows([source_key] if source_key else None)
        if source_key and not rows:
            raise RepositoryNotFoundError(f'No source registry row found for source key "{source_key}"')

        trends = await store.list_source_rejection_trends(
            [row.source_key for row in rows],
            window=REJECTION_SURGE_WINDOW,
            now=generated_at,
        )
        trend_by_source = {trend.source_key: trend for trend in trends}

        alerts: list[IncidentAlert] = []
        for row in rows:
            row_alerts = evaluate_incident_alerts_for_source(
                row,
                now=generated_at,
                rejection_trend=trend_by_source.get(row.source_key),
            )
            if not row_alerts:
                continue
            alerts.extend(row_alerts)

            merged = merge_incident_alerts(SourceMetadata.from_raw(row.metadata_json), row_alerts, now=generated_at)
            try:
                await store.update_source_runtime(row.source_key, {"metadata_json": merged.to_json()})
            except RepositoryError as exc:
                logger.warning(
                    "failed to persist incident alert metadata source_key=%s error=%s",
                    row.source_key,
                    exc,
                )

            for alert in row_alerts:
                logger.log(
                    _LOG_LEVEL_BY_SEVERITY.get(alert.severity, logging.INFO),
                    "incident alert severity=%s code=%s source_key=%s summary=%s",
                    alert.severity.upper(),
                    alert.code,
                    alert.source_key,
                    alert.summary,
                )

        span.set_attribute("ingest.alert_count", len(alerts))
        return IncidentAlertsResult(generated_at=generated_at, source_count=len(rows), alerts=alerts)
