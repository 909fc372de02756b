from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from ingest.core.cadence import derive_degraded_cadence, needs_cadence_downgrade
from ingest.core.values import to_iso
from ingest.schemas.metadata import SourceMetadata, prepend_bounded

LIFECYCLE_AUTOMATION_VERSION = "ing032_v1"
CONSECUTIVE_FAILURE_CEILING = 3
FAILURE_RATE_SPIKE = 0.5
MIN_OBSERVED_RUNS = 6
LOW_QUALITY_RUN_CEILING = 3
QUALITY_DROP_PROMOTION_RATE = 0.03
QUALITY_DROP_MIN_CANDIDATES = 5
FAILURE_TRIGGERS = ("consecutive_failures", "rolling_failure_rate_spike")

AlertSeverity = Literal["warn", "critical"]

_RECOMMENDED_ACTIONS = {
    "consecutive_failures": "Investigate extractor breakage on latest failed pages.",
    "rolling_failure_rate_spike": "Reduce crawl scope and validate network/source stability.",
    "quality_drop": "Review recent candidates and tune quality/extractor heuristics.",
}


@dataclass(slots=True)
class LifecycleInput:
    source_key: str
    state: str
    cadence: str | None
    skipped_by_cadence: bool
    final_run_status: str
    rolling_failure_rate_30d: float | None
    rolling_promotion_rate_30d: float | None
    metadata: SourceMetadata
    now: datetime


@dataclass(slots=True)
class LifecycleDecision:
    should_transition_to_degraded: bool = False
    should_downgrade_cadence: bool = False
    degraded_cadence: str | None = None
    trigger_codes: list[str] = field(default_factory=list)
    reason: str | None = None
    alert_severity: AlertSeverity | None = None
    evidence_bundle: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "should_transition_to_degraded": self.should_transition_to_degraded,
            "should_downgrade_cadence": self.should_downgrade_cadence,
            "degraded_cadence": self.degraded_cadence,
            "trigger_codes": list(self.trigger_codes),
            "reason": self.reason,
            "alert_severity": self.alert_severity,
            "evidence_bundle": self.evidence_bundle,
        }


def _recommended_actions(trigger_codes: list[str]) -> list[str]:
    actions = [_RECOMMENDED_ACTIONS[code] for code in trigger_codes if code in _RECOMMENDED_ACTIONS]
    return actions or ["Monitor source health and strategy performance."]


def evaluate_lifecycle_automation(data: LifecycleInput) -> LifecycleDecision:
    """Decide whether a source should be degraded after a run.

    Failure-class triggers degrade and slow the cadence to at most weekly.
    ``quality_drop`` degrades on its own but never touches the cadence.
    A run skipped by cadence yields an empty decision.
    """
    if data.skipped_by_cadence:
        return LifecycleDecision()

    health = data.metadata.health
    trigger_codes: list[str] = []

    if health.consecutive_failures >= CONSECUTIVE_FAILURE_CEILING:
        trigger_codes.append("consecutive_failures")

    if (data.rolling_failure_rate_30d or 0.0) >= FAILURE_RATE_SPIKE and health.observed_runs >= MIN_OBSERVED_RUNS:
        trigger_codes.append("rolling_failure_rate_spike")

    promotion_rate = data.rolling_promotion_rate_30d if data.rolling_promotion_rate_30d is not None else 1.0
    if health.consecutive_low_quality_runs >= LOW_QUALITY_RUN_CEILING or (
        promotion_rate <= QUALITY_DROP_PROMOTION_RATE
        and health.observed_runs >= MIN_OBSERVED_RUNS
        and health.last_run_candidate_count >= QUALITY_DROP_MIN_CANDIDATES
        and health.last_run_curated_candidate_count == 0
    ):
        trigger_codes.append("quality_drop")

    if not trigger_codes:
        return LifecycleDecision()

    failure_triggered = any(code in FAILURE_TRIGGERS for code in trigger_codes)
    should_transition = data.state == "active"
    should_downgrade = (
        failure_triggered
        and (should_transition or data.state == "degraded")
        and needs_cadence_downgrade(data.cadence)
    )
    degraded_cadence = derive_degraded_cadence(data.cadence) if should_downgrade else None
    reason = f"Lifecycle automation triggers: {', '.join(trigger_codes)}"
    severity: AlertSeverity = "critical" if failure_triggered else "warn"

    evidence_bundle = {
        "version": LIFECYCLE_AUTOMATION_VERSION,
        "source_key": data.source_key,
        "generated_at": to_iso(data.now),
        "status": data.final_run_status,
        "trigger_codes": list(trigger_codes),
        "reason": reason,
        "severity": severity,
        "suggested_state": "degraded" if should_transition else data.state,
        "cadence_before": data.cadence,
        "cadence_after": degraded_cadence if should_downgrade else data.cadence,
        "health_snapshot": {
            "health_score": health.health_score,
            "consecutive_failures": health.consecutive_failures,
            "consecutive_low_quality_runs": health.consecutive_low_quality_runs,
            "observed_runs": health.observed_runs,
            "observed_failed_runs": health.observed_failed_runs,
            "rolling_failure_rate_30d": data.rolling_failure_rate_30d,
            "rolling_promotion_rate_30d": data.rolling_promotion_rate_30d,
            "last_run_candidate_count": health.last_run_candidate_count,
            "last_run_curated_candidate_count": health.last_run_curated_candidate_count,
        },
        "recommended_actions": _recommended_actions(trigger_codes),
    }

    return LifecycleDecision(
        should_transition_to_degraded=should_transition,
        should_downgrade_cadence=should_downgrade,
        degraded_cadence=degraded_cadence,
        trigger_codes=trigger_codes,
        reason=reason,
        alert_severity=severity,
        evidence_bundle=evidence_bundle,
    )


def merge_lifecycle_alert(
    metadata: SourceMetadata,
    evidence_bundle: dict[str, Any],
    *,
    transitioned_to_degraded: bool,
    downgraded_cadence: bool,
    now: datetime,
) -> SourceMetadata:
    merged = metadata.model_copy(deep=True)
    lifecycle = merged.lifecycle
    lifecycle.version = LIFECYCLE_AUTOMATION_VERSION
    lifecycle.last_alert = evidence_bundle
    lifecycle.alert_history = prepend_bounded([evidence_bundle], lifecycle.alert_history)
    lifecycle.last_automation_at = to_iso(now)
    lifecycle.last_automation_result = {
        "transitioned_to_degraded": transitioned_to_degraded,
        "downgraded_cadence": downgraded_cadence,
    }
    return merged
