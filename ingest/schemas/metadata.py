"""Typed view over a source's metadata aggregate.

Each concern (health, compliance, strategy performance, lifecycle, incidents)
gets its own sub-model. Every field is coerced leniently on the way in so that
partially written or legacy metadata parses instead of raising; unknown keys
are preserved on dump.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ingest.core.values import as_count, as_float, as_record, as_record_list, as_text

MAX_ALERT_HISTORY = 30


class _MetadataSection(BaseModel):
    model_config = ConfigDict(extra="allow")


class HealthMetadata(_MetadataSection):
    version: str | None = None
    health_score: float | None = None
    consecutive_failures: int = 0
    consecutive_low_quality_runs: int = 0
    observed_runs: int = 0
    observed_failed_runs: int = 0
    last_run_status: str | None = None
    last_error: str | None = None
    last_run_promotion_rate: float | None = None
    last_run_failure_rate: float | None = None
    last_run_completion_rate: float | None = None
    last_run_candidate_count: int = 0
    last_run_curated_candidate_count: int = 0
    last_run_quality_filtered_candidate_count: int = 0
    last_run_discovered_pages: int = 0
    last_run_extracted_pages: int = 0
    last_run_failed_pages: int = 0
    skipped_by_cadence: bool = False
    runtime_policy: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None

    @field_validator(
        "consecutive_failures",
        "consecutive_low_quality_runs",
        "observed_runs",
        "observed_failed_runs",
        "last_run_candidate_count",
        "last_run_curated_candidate_count",
        "last_run_quality_filtered_candidate_count",
        "last_run_discovered_pages",
        "last_run_extracted_pages",
        "last_run_failed_pages",
        mode="before",
    )
    @classmethod
    def _coerce_counts(cls, value: Any) -> int:
        return as_count(value)

    @field_validator(
        "health_score",
        "last_run_promotion_rate",
        "last_run_failure_rate",
        "last_run_completion_rate",
        mode="before",
    )
    @classmethod
    def _coerce_rates(cls, value: Any) -> float | None:
        return as_float(value)

    @field_validator("version", "last_run_status", "last_error", "updated_at", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)

    @field_validator("skipped_by_cadence", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return value is True

    @field_validator("runtime_policy", mode="before")
    @classmethod
    def _coerce_record(cls, value: Any) -> dict[str, Any]:
        return as_record(value)


class ComplianceMetadata(_MetadataSection):
    last_pre_run_check_status: str | None = None
    last_pre_run_check: dict[str, Any] = Field(default_factory=dict)

    @field_validator("last_pre_run_check_status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> str | None:
        return as_text(value)

    @field_validator("last_pre_run_check", mode="before")
    @classmethod
    def _coerce_check(cls, value: Any) -> dict[str, Any]:
        return as_record(value)


class StrategyPerformance(_MetadataSection):
    attempts_total: int = 0
    success_total: int = 0
    failure_total: int = 0
    no_candidate_total: int = 0
    rolling_success_rate: float | None = None
    rolling_yield_rate: float | None = None
    last_status: str | None = None
    last_attempt_at: str | None = None
    last_success_at: str | None = None
    last_candidate_count: int = 0
    last_pages_considered: int = 0
    updated_at: str | None = None

    @field_validator(
        "attempts_total",
        "success_total",
        "failure_total",
        "no_candidate_total",
        "last_candidate_count",
        "last_pages_considered",
        mode="before",
    )
    @classmethod
    def _coerce_counts(cls, value: Any) -> int:
        return as_count(value)

    @field_validator("rolling_success_rate", "rolling_yield_rate", mode="before")
    @classmethod
    def _coerce_rates(cls, value: Any) -> float | None:
        return as_float(value)

    @field_validator("last_status", "last_attempt_at", "last_success_at", "updated_at", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)


class LifecycleMetadata(_MetadataSection):
    version: str | None = None
    last_alert: dict[str, Any] | None = None
    alert_history: list[dict[str, Any]] = Field(default_factory=list)
    last_automation_at: str | None = None
    last_automation_result: dict[str, Any] = Field(default_factory=dict)

    @field_validator("alert_history", mode="before")
    @classmethod
    def _coerce_history(cls, value: Any) -> list[dict[str, Any]]:
        return as_record_list(value)

    @field_validator("last_alert", mode="before")
    @classmethod
    def _coerce_last_alert(cls, value: Any) -> dict[str, Any] | None:
        return value if isinstance(value, dict) else None

    @field_validator("last_automation_result", mode="before")
    @classmethod
    def _coerce_result(cls, value: Any) -> dict[str, Any]:
        return as_record(value)

    @field_validator("version", "last_automation_at", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)


class IncidentMetadata(_MetadataSection):
    version: str | None = None
    last_alert_run_at: str | None = None
    last_alert_count: int = 0
    last_alerts: list[dict[str, Any]] = Field(default_factory=list)
    alert_severity_counts: dict[str, int] = Field(default_factory=dict)
    alert_history: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("last_alerts", "alert_history", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> list[dict[str, Any]]:
        return as_record_list(value)

    @field_validator("alert_severity_counts", mode="before")
    @classmethod
    def _coerce_counts(cls, value: Any) -> dict[str, int]:
        return {str(key): as_count(count) for key, count in as_record(value).items()}

    @field_validator("last_alert_count", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return as_count(value)

    @field_validator("version", "last_alert_run_at", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return as_text(value)


class SourceMetadata(_MetadataSection):
    health: HealthMetadata = Field(default_factory=HealthMetadata)
    compliance: ComplianceMetadata = Field(default_factory=ComplianceMetadata)
    strategy_performance: dict[str, StrategyPerformance] = Field(default_factory=dict)
    lifecycle: LifecycleMetadata = Field(default_factory=LifecycleMetadata)
    incidents: IncidentMetadata = Field(default_factory=IncidentMetadata)
    runtime: dict[str, Any] = Field(default_factory=dict)

    @field_validator("health", "compliance", "lifecycle", "incidents", "runtime", mode="before")
    @classmethod
    def _coerce_sections(cls, value: Any) -> dict[str, Any]:
        return as_record(value)

    @field_validator("strategy_performance", mode="before")
    @classmethod
    def _coerce_performance(cls, value: Any) -> dict[str, dict[str, Any]]:
        return {str(key): node for key, node in as_record(value).items() if isinstance(node, dict)}

    @classmethod
    def from_raw(cls, raw: Any) -> SourceMetadata:
        if isinstance(raw, SourceMetadata):
            return raw
        return cls.model_validate(as_record(raw))

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def prepend_bounded(
    entries: list[dict[str, Any]],
    history: list[dict[str, Any]],
    *,
    cap: int = MAX_ALERT_HISTORY,
) -> list[dict[str, Any]]:
    """Newest-first history: new entries go on top, the oldest fall off the end."""
    return [*entries, *history][:cap]
