import asyncio
from datetime import datetime, timedelta, timezone

from ingest.jobs.incident_alerts import (
    INCIDENT_ALERT_VERSION,
    ROUTING_BY_SEVERITY,
    _AlertCollector,
    evaluate_incident_alerts_for_source,
    incident_alerts,
)
from ingest.schemas.metadata import MAX_ALERT_HISTORY
from ingest.services.repository import RejectionRateTrend, SourceRuntimeRecord
from ingest.services.store import InMemoryStore

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _row(**overrides) -> SourceRuntimeRecord:
    values = {
        "source_key": "kindness_blog",
        "display_name": "Kindness Blog",
        "approved_for_prod": True,
        "last_run_at": NOW - timedelta(hours=1),
    }
    values.update(overrides)
    return SourceRuntimeRecord(**values)


def _codes(alerts) -> dict[str, str]:
    return {alert.code: alert.severity for alert in alerts}


def test_failure_spike_severity_escalates() -> None:
    sev2 = evaluate_incident_alerts_for_source(
        _row(metadata_json={"health": {"consecutive_failures": 3}}), now=NOW
    )
    sev1 = evaluate_incident_alerts_for_source(
        _row(rolling_failure_rate_30d=0.85, metadata_json={"health": {"observed_runs": 10}}), now=NOW
    )

    assert _codes(sev2) == {"failure_spike": "sev2"}
    assert _codes(sev1) == {"failure_spike": "sev1"}
    alert = sev1[0]
    assert alert.id == "kindness_blog:failure_spike:20260105120000"
    assert alert.routing == ROUTING_BY_SEVERITY["sev1"]
    assert alert.evidence_bundle["version"] == INCIDENT_ALERT_VERSION
    assert alert.evidence_bundle["rolling_failure_rate_30d"] == 0.85


def test_unapproved_source_only_reports_compliance() -> None:
    row = _row(
        approved_for_prod=False,
        metadata_json={
            "health": {"consecutive_failures": 9},
            "compliance": {
                "last_pre_run_check_status": "failed",
                "last_pre_run_check": {"severity": "critical", "reason_codes": ["robots_disallow", 3]},
            },
        },
    )

    alerts = evaluate_incident_alerts_for_source(row, now=NOW)

    assert _codes(alerts) == {"compliance_failure": "sev1"}
    assert alerts[0].evidence_bundle["reason_codes"] == ["robots_disallow"]


def test_zero_yield_anomaly() -> None:
    row = _row(
        rolling_promotion_rate_30d=0.2,
        metadata_json={"health": {"last_run_candidate_count": 8, "last_run_curated_candidate_count": 0}},
    )
    assert _codes(evaluate_incident_alerts_for_source(row, now=NOW)) == {"zero_yield_anomaly": "sev2"}


def test_schedule_miss_needs_a_full_missed_interval() -> None:
    cadence = "FREQ=DAILY;INTERVAL=1"
    on_time = _row(cadence=cadence, last_run_at=NOW - timedelta(hours=47))
    missed = _row(cadence=cadence, last_run_at=NOW - timedelta(hours=48))
    never = _row(cadence=cadence, last_run_at=None)

    assert evaluate_incident_alerts_for_source(on_time, now=NOW) == []
    (alert,) = evaluate_incident_alerts_for_source(missed, now=NOW)
    assert alert.code == "schedule_miss"
    assert alert.evidence_bundle["overdue_ms"] == 86_400_000
    assert evaluate_incident_alerts_for_source(never, now=NOW)[0].evidence_bundle["last_run_at"] is None


def test_rejection_rate_surge() -> None:
    trend = RejectionRateTrend("kindness_blog", 20, 10, 20, 4)
    flat = RejectionRateTrend("kindness_blog", 20, 5, 20, 4)
    small = RejectionRateTrend("kindness_blog", 10, 9, 20, 1)

    assert _codes(evaluate_incident_alerts_for_source(_row(), now=NOW, rejection_trend=trend)) == {
        "rejection_rate_surge": "sev2"
    }
    assert evaluate_incident_alerts_for_source(_row(), now=NOW, rejection_trend=flat) == []
    assert evaluate_incident_alerts_for_source(_row(), now=NOW, rejection_trend=small) == []


def test_collector_keeps_highest_severity_per_code() -> None:
    collector = _AlertCollector(_row(), NOW)
    collector.push("failure_spike", "sev2", "first", {})
    collector.push("failure_spike", "sev1", "second", {})
    collector.push("failure_spike", "sev3", "third", {})

    (alert,) = collector.deduplicated()
    assert alert.severity == "sev1"
    assert alert.summary == "second"


def test_incident_alerts_job_persists_bounded_history() -> None:
    history = [{"code": f"old-{index}"} for index in range(MAX_ALERT_HISTORY)]
    failing = _row(metadata_json={"health": {"consecutive_failures": 5}, "incidents": {"alert_history": history}})
    quiet = _row(source_key="quiet_source", display_name="Quiet")
    store = InMemoryStore([failing, quiet])

    result = asyncio.run(incident_alerts(store, now=NOW))

    assert result.source_count == 2
    assert result.alerts_by_severity == {"sev1": 1, "sev2": 0, "sev3": 0}
    incidents = store.sources["kindness_blog"].metadata_json["incidents"]
    assert incidents["version"] == INCIDENT_ALERT_VERSION
    assert incidents["last_alert_count"] == 1
    assert incidents["last_alerts"][0]["code"] == "failure_spike"
    assert len(incidents["alert_history"]) == MAX_ALERT_HISTORY
    assert incidents["alert_history"][0]["code"] == "failure_spike"
    assert "incidents" not in store.sources["quiet_source"].metadata_json


def test_incident_alerts_job_includes_rejection_trends() -> None:
    store = InMemoryStore([_row()])
    for index in range(20):
        store.reviews.append(("kindness_blog", "rejected" if index < 12 else "exported", NOW - timedelta(days=1)))
        store.reviews.append(("kindness_blog", "rejected" if index < 4 else "exported", NOW - timedelta(days=10)))

    result = asyncio.run(incident_alerts(store, "kindness_blog", now=NOW))

    assert [alert.code for alert in result.alerts] == ["rejection_rate_surge"]
    assert result.as_dict()["alert_count"] == 1
