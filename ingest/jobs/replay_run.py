from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any

from opentelemetry import trace

from ingest.core.values import as_float, as_record, as_text, clamp
from ingest.jobs.run_source import RunSourceOptions, RunSourceResult, run_source
from ingest.services.repository import DurableStore, RepositoryConflictError, RepositoryNotFoundError, StoredCandidate
from ingest.services.snapshots import SnapshotWriter
from ingest.sources.registry import SourceRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

REPLAY_DETERMINISM_VERSION = "ing052_v1"


@dataclass(slots=True)
class ReplayTolerance:
    max_candidate_delta_ratio: float = 0.35
    max_curated_delta_ratio: float = 0.4
    max_quality_filtered_delta_ratio: float = 0.45
    min_candidate_delta_absolute: float = 2
    min_curated_delta_absolute: float = 1
    min_quality_filtered_delta_absolute: float = 1
    min_candidate_key_overlap_ratio: float = 0.5
    min_curated_key_overlap_ratio: float = 0.4

    @classmethod
    def resolve(cls, overrides: dict[str, Any] | None = None) -> ReplayTolerance:
        """Defaults with any finite overrides applied; ratios clamp to [0, 1], floors to [0, 10000]."""
        tolerance = cls()
        for item in fields(cls):
            value = as_float((overrides or {}).get(item.name))
            if value is None:
                continue
            upper = 10_000.0 if item.name.endswith("_absolute") else 1.0
            setattr(tolerance, item.name, clamp(value, 0.0, upper))
        return tolerance

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass(slots=True)
class CountDelta:
    baseline: int
    replay: int
    delta: int
    delta_ratio: float
    max_ratio: float
    min_absolute: float

    @property
    def exceeded(self) -> bool:
        return self.delta_ratio > self.max_ratio and self.delta > self.min_absolute

    def as_dict(self) -> dict[str, Any]:
        return {
            "baseline": self.baseline,
            "replay": self.replay,
            "delta": self.delta,
            "delta_ratio": round(self.delta_ratio, 5),
            "max_ratio": self.max_ratio,
            "min_absolute": self.min_absolute,
            "exceeded": self.exceeded,
        }


@dataclass(slots=True)
class ReplayDeterminismResult:
    passed: bool
    candidate_delta: CountDelta
    curated_delta: CountDelta
    quality_filtered_delta: CountDelta
    candidate_key_overlap: float | None
    curated_key_overlap: float | None
    tolerance: ReplayTolerance
    failure_reasons: list[str] = field(default_factory=list)
    failure_details: list[str] = field(default_factory=list)
    version: str = REPLAY_DETERMINISM_VERSION

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "passed": self.passed,
            "candidate_delta": self.candidate_delta.as_dict(),
            "curated_delta": self.curated_delta.as_dict(),
            "quality_filtered_delta": self.quality_filtered_delta.as_dict(),
            "overlap": {
                "candidate_keys": self.candidate_key_overlap,
                "curated_candidate_keys": self.curated_key_overlap,
            },
            "tolerance": self.tolerance.as_dict(),
            "failure_reasons": list(self.failure_reasons),
            "failure_details": list(self.failure_details),
        }


@dataclass(slots=True)
class ReplayRunResult:
    original_run_id: str
    replay_run_id: str
    source_key: str
    original_run_status: str
    default_config_version: str | None
    requested_config_version: str | None
    resolved_config_version: str | None
    override_applied: bool
    replay: RunSourceResult
    determinism: ReplayDeterminismResult
    warnings: list[str] = field(default_factory=list)
    config_resolved_from: str = "current_runtime"

    def as_dict(self) -> dict[str, Any]:
        return {
            "original_run_id": self.original_run_id,
            "replay_run_id": self.replay_run_id,
            "source_key": self.source_key,
            "original_run_status": self.original_run_status,
            "default_config_version": self.default_config_version,
            "requested_config_version": self.requested_config_version,
            "resolved_config_version": self.resolved_config_version,
            "config_resolved_from": self.config_resolved_from,
            "override_applied": self.override_applied,
            "replay": self.replay.as_dict(),
            "determinism": self.determinism.as_dict(),
            "warnings": list(self.warnings),
        }


def extract_source_config_version(meta: Any) -> str | None:
    record = as_record(meta)
    return (
        as_text(as_record(record.get("run_versions")).get("source_config_version"))
        or as_text(as_record(record.get("strategy_selection")).get("source_config_version"))
        or as_text(record.get("source_config_version"))
    )


def key_overlap_ratio(left: set[str], right: set[str]) -> float | None:
    """Jaccard ratio of two key sets; None when both are empty."""
    union = left | right
    if not union:
        return None
    return len(left & right) / len(union)


def _count_delta(baseline: int, replay: int, max_ratio: float, min_absolute: float) -> CountDelta:
    delta = abs(replay - baseline)
    return CountDelta(
        baseline=baseline,
        replay=replay,
        delta=delta,
        delta_ratio=delta / max(baseline, 1),
        max_ratio=max_ratio,
        min_absolute=min_absolute,
    )


def evaluate_replay_determinism(
    original_candidates: list[StoredCandidate],
    replay_candidates: list[StoredCandidate],
    tolerance: ReplayTolerance | dict[str, Any] | None = None,
) -> ReplayDeterminismResult:
    resolved = tolerance if isinstance(tolerance, ReplayTolerance) else ReplayTolerance.resolve(tolerance)

    def counts(candidates: list[StoredCandidate]) -> tuple[int, int, int]:
        curated = sum(1 for candidate in candidates if candidate.is_curated)
        filtered = sum(1 for candidate in candidates if candidate.is_quality_filtered)
        return len(candidates), curated, filtered

    base_total, base_curated, base_filtered = counts(original_candidates)
    replay_total, replay_curated, replay_filtered = counts(replay_candidates)

    candidate_delta = _count_delta(
        base_total, replay_total, resolved.max_candidate_delta_ratio, resolved.min_candidate_delta_absolute
    )
    curated_delta = _count_delta(
        base_curated, replay_curated, resolved.max_curated_delta_ratio, resolved.min_curated_delta_absolute
    )
    filtered_delta = _count_delta(
        base_filtered,
        replay_filtered,
        resolved.max_quality_filtered_delta_ratio,
        resolved.min_quality_filtered_delta_absolute,
    )

    candidate_overlap = key_overlap_ratio(
        {candidate.candidate_key for candidate in original_candidates},
        {candidate.candidate_key for candidate in replay_candidates},
    )
    curated_overlap = key_overlap_ratio(
        {candidate.candidate_key for candidate in original_candidates if candidate.is_curated},
        {candidate.candidate_key for candidate in replay_candidates if candidate.is_curated},
    )

    reasons: list[str] = []
    details: list[str] = []
    for code, count_delta in (
        ("candidate_count_delta_exceeded", candidate_delta),
        ("curated_count_delta_exceeded", curated_delta),
        ("quality_filtered_count_delta_exceeded", filtered_delta),
    ):
        if count_delta.exceeded:
            reasons.append(code)
            details.append(
                f"{code}: delta {count_delta.delta} (ratio {count_delta.delta_ratio:.3f} > "
                f"{count_delta.max_ratio:.3f}, floor {count_delta.min_absolute:g})"
            )

    for code, overlap, minimum in (
        ("candidate_key_overlap_below_threshold", candidate_overlap, resolved.min_candidate_key_overlap_ratio),
        ("curated_key_overlap_below_threshold", curated_overlap, resolved.min_curated_key_overlap_ratio),
    ):
        if overlap is not None and overlap < minimum and not math.isclose(overlap, minimum):
            reasons.append(code)
            details.append(f"{code}: {overlap:.3f} < {minimum:.3f}")

    return ReplayDeterminismResult(
        passed=not reasons,
        candidate_delta=candidate_delta,
        curated_delta=curated_delta,
        quality_filtered_delta=filtered_delta,
        candidate_key_overlap=candidate_overlap,
        curated_key_overlap=curated_overlap,
        tolerance=resolved,
        failure_reasons=reasons,
        failure_details=details,
    )


async def replay_run(
    run_id: str,
    *,
    store: DurableStore,
    registry: SourceRegistry,
    snapshot_writer: SnapshotWriter,
    config_version_override: str | None = None,
    force: bool = True,
    tolerance: dict[str, Any] | None = None,
    quality_threshold: float | None = None,
    default_locale: str = "en",
) -> ReplayRunResult:
    with tracer.start_as_current_span("ingest.replay_run") as span:
        span.set_attribute("ingest.original_run_id", run_id)
        original = await store.get_run(run_id)
        if original is None:
            raise RepositoryNotFoundError(f"Run not found for replay: {run_id}")
        if original.status == "running":
            raise RepositoryConflictError(f"Run {run_id} is still in progress and cannot be replayed yet")

        default_version = extract_source_config_version(original.meta_json)
        override = as_text(config_version_override)
        requested_version = override or default_version
        override_applied = override is not None and override != default_version
        warnings: list[str] = []

        runtime = await store.get_source_runtime(original.source_key)
        resolved_version = runtime.config_version if runtime else None
        if requested_version and requested_version != resolved_version:
            warnings.append(
                f'Config version "{requested_version}" is not the current runtime config for '
                f'"{original.source_key}" (current: "{resolved_version or "unknown"}"). '
                "Replaying with current runtime config."
            )

        options = RunSourceOptions(
            respect_cadence=False,
            force=force,
            mode="replay",
            runtime_override=runtime,
            default_locale=default_locale,
            replay={
                "original_run_id": run_id,
                "requested_config_version": requested_version,
                "default_config_version": default_version,
                "resolved_config_version": resolved_version,
                "config_resolved_from": "current_runtime",
                "override_applied": override_applied,
                "override_reason": "config_version_override" if override_applied else None,
            },
        )
        if quality_threshold is not None:
            options.quality_threshold = quality_threshold

        replay = await run_source(
            original.source_key,
            store=store,
            registry=registry,
            snapshot_writer=snapshot_writer,
            options=options,
        )

        determinism = evaluate_replay_determinism(
            await store.list_candidates_by_run(run_id),
            await store.list_candidates_by_run(replay.run_id),
            tolerance,
        )

        if determinism.passed:
            logger.info(
                "replay determinism check passed original_run_id=%s replay_run_id=%s source_key=%s overlap=%s",
                run_id,
                replay.run_id,
                original.source_key,
                determinism.candidate_key_overlap,
            )
        else:
            logger.warning(
                "replay determinism check failed original_run_id=%s replay_run_id=%s source_key=%s reasons=%s",
                run_id,
                replay.run_id,
                original.source_key,
                ",".join(determinism.failure_reasons),
            )
        span.set_attribute("ingest.replay_passed", determinism.passed)

        return ReplayRunResult(
            original_run_id=run_id,
            replay_run_id=replay.run_id,
            source_key=original.source_key,
            original_run_status=original.status,
            default_config_version=default_version,
            requested_config_version=requested_version,
            resolved_config_version=resolved_version,
            override_applied=override_applied,
            replay=replay,
            determinism=determinism,
            warnings=warnings,
        )
