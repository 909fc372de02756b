"""One ingestion run for one source.

health check -> discover -> extract pages (bounded worker pool) -> snapshot -> finalize.

Page failures are isolated: the page is marked failed and the run continues.
Contract violations are not: they fail the page, stop the pool from taking
further pages, finalize the run as failed and propagate. The source registry
row is updated in a ``finally`` step with the health patch, strategy
performance and lifecycle decision; errors there are logged, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from opentelemetry import trace

from ingest.core.cadence import CadenceEvaluation, evaluate_cadence
from ingest.core.quality import DEFAULT_QUALITY_THRESHOLD, QUALITY_RULE_VERSION, evaluate_candidate_quality
from ingest.core.strategies import IngestStrategy
from ingest.core.text import candidate_key, collapse_whitespace, normalize_optional_text
from ingest.core.values import as_count, to_iso, utc_now
from ingest.jobs.lifecycle import LifecycleInput, evaluate_lifecycle_automation, merge_lifecycle_alert
from ingest.jobs.runtime_controls import (
    OperationRateLimiter,
    RunOutcome,
    SourceRuntimePolicy,
    compute_source_health_patch,
    filter_urls_by_patterns,
    resolve_source_runtime_policy,
    run_with_retry,
)
from ingest.jobs.strategy_selection import (
    StrategyExecutionAttempt,
    StrategySelectionPlan,
    assign_pages_to_strategies,
    derive_attempt_status,
    merge_strategy_performance,
    select_strategy_plan,
)
from ingest.schemas.sources import DiscoveredPage, ExtractedCandidate, SourceModuleContext
from ingest.services.repository import (
    CandidateUpsert,
    DurableStore,
    PageRecord,
    RepositoryError,
    SourceRuntimeRecord,
)
from ingest.services.snapshots import SnapshotWriter
from ingest.sources.contract import (
    SourceContractError,
    SourceModule,
    assert_discovered_pages,
    assert_extracted_candidates,
    assert_health_check_result,
)
from ingest.sources.registry import SourceRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RunMode = Literal["standard", "replay"]
INACTIVE_STATES = ("paused", "retired")


class SourceHealthCheckFailedError(Exception):
    """Raised when a source reports a failed health check before any page work."""


class SourceUnavailableError(Exception):
    """Raised when a paused or retired source is run without ``force``."""


@dataclass(slots=True)
class RunSourceOptions:
    respect_cadence: bool = False
    force: bool = False
    mode: RunMode = "standard"
    runtime_override: SourceRuntimeRecord | None = None
    replay: dict[str, Any] | None = None
    quality_threshold: float = DEFAULT_QUALITY_THRESHOLD
    default_locale: str = "en"


@dataclass(slots=True)
class RunSourceResult:
    run_id: str
    source_key: str
    status: str
    discovered_pages: int = 0
    extracted_pages: int = 0
    failed_pages: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    snapshot_location: str = ""
    skipped_by_cadence: bool = False
    cadence_next_run_at: datetime | None = None
    runtime_policy: dict[str, Any] = field(default_factory=dict)
    strategy_selection: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "source_key": self.source_key,
            "status": self.status,
            "discovered_pages": self.discovered_pages,
            "extracted_pages": self.extracted_pages,
            "failed_pages": self.failed_pages,
            "candidate_count": self.candidate_count,
            "curated_candidate_count": self.curated_candidate_count,
            "quality_filtered_candidate_count": self.quality_filtered_candidate_count,
            "snapshot_location": self.snapshot_location,
            "skipped_by_cadence": self.skipped_by_cadence,
            "cadence_next_run_at": to_iso(self.cadence_next_run_at) if self.cadence_next_run_at else None,
            "runtime_policy": self.runtime_policy,
            "strategy_selection": self.strategy_selection,
        }


@dataclass(slots=True)
class _StrategyTally:
    pages_considered: int = 0
    pages_succeeded: int = 0
    pages_failed: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(slots=True)
class _RunState:
    discovered_pages: int = 0
    extracted_pages: int = 0
    failed_pages: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    dropped_by_include: int = 0
    dropped_by_exclude: int = 0
    invalid_url_pattern_count: int = 0
    source_health_status: str | None = None
    snapshot_location: str = ""
    skipped_by_cadence: bool = False
    status: str = "failed"
    error: str | None = None
    plan: StrategySelectionPlan | None = None
    tallies: dict[IngestStrategy, _StrategyTally] = field(default_factory=dict)
    contract_error: SourceContractError | None = None

    def attempts(self) -> list[StrategyExecutionAttempt]:
        attempts: list[StrategyExecutionAttempt] = []
        for strategy, tally in self.tallies.items():
            attempts.append(
                StrategyExecutionAttempt(
                    strategy=strategy,
                    status=derive_attempt_status(
                        pages_considered=tally.pages_considered,
                        pages_succeeded=tally.pages_succeeded,
                        pages_failed=tally.pages_failed,
                        candidate_count=tally.candidate_count,
                    ),
                    pages_considered=tally.pages_considered,
                    pages_succeeded=tally.pages_succeeded,
                    pages_failed=tally.pages_failed,
                    candidate_count=tally.candidate_count,
                    curated_candidate_count=tally.curated_candidate_count,
                    quality_filtered_candidate_count=tally.quality_filtered_candidate_count,
                    started_at=tally.started_at,
                    finished_at=tally.finished_at,
                )
            )
        return attempts


def resolve_run_status(discovered_pages: int, failed_pages: int) -> str:
    """Final status for a run that reached the end of page extraction."""
    if failed_pages <= 0:
        return "success"
    if failed_pages >= discovered_pages:
        return "failed"
    return "partial"


def prepare_candidate(
    candidate: ExtractedCandidate,
    *,
    assigned_strategy: IngestStrategy,
    quality_threshold: float,
) -> CandidateUpsert:
    title = collapse_whitespace(candidate.title)
    description = normalize_optional_text(candidate.description)
    quality = evaluate_candidate_quality(title, description, threshold=quality_threshold)
    meta = dict(candidate.meta)
    meta["quality"] = {**quality.as_dict(), "rule_version": QUALITY_RULE_VERSION}
    meta["assigned_strategy"] = assigned_strategy.value
    return CandidateUpsert(
        source_key=candidate.source_key,
        source_url=candidate.source_url,
        title=title,
        description=description,
        reason_snippet=normalize_optional_text(candidate.reason_snippet),
        raw_excerpt=normalize_optional_text(candidate.raw_excerpt),
        candidate_key=candidate_key(
            source_key=candidate.source_key,
            source_url=candidate.source_url,
            title=title,
            description=description,
        ),
        status="curated" if quality.passed else "quality_filtered",
        quality_passed=quality.passed,
        quality_score=quality.score,
        meta_json=meta,
        traits=list(candidate.traits),
    )


class _RunContext:
    def __init__(
        self,
        *,
        source: SourceModule,
        store: DurableStore,
        run_id: str,
        policy: SourceRuntimePolicy,
        options: RunSourceOptions,
        state: _RunState,
    ) -> None:
        self.source = source
        self.source_key = source.key
        self.store = store
        self.run_id = run_id
        self.policy = policy
        self.options = options
        self.state = state
        self.limiter = OperationRateLimiter(policy.max_rps)
        self.module_context = SourceModuleContext(
            logger=logging.getLogger(f"ingest.sources.{source.key}"),
            default_locale=options.default_locale,
        )

    async def call(self, label: str, operation):
        await self.limiter.wait_turn()
        result = await run_with_retry(
            operation,
            label=f"{label}:{self.source_key}",
            timeout_seconds=self.policy.timeout_seconds,
            max_attempts=self.policy.retry_max_attempts,
            backoff_ms=self.policy.retry_backoff_ms,
            backoff_multiplier=self.policy.retry_backoff_multiplier,
            no_retry=(SourceContractError,),
        )
        return result.value

    async def extract_pages(self, pages: list[PageRecord], strategy_by_url: dict[str, IngestStrategy]) -> None:
        queue = deque(pages)
        stop = asyncio.Event()

        async def worker() -> None:
            while queue and not stop.is_set():
                page = queue.popleft()
                strategy = strategy_by_url[page.url]
                tally = self.state.tallies.setdefault(strategy, _StrategyTally())
                if tally.started_at is None:
                    tally.started_at = utc_now()
                try:
                    await self.extract_page(page, strategy, tally)
                except SourceContractError as exc:
                    stop.set()
                    self.state.contract_error = self.state.contract_error or exc
                    await self.fail_page(page, tally, str(exc))
                except Exception as exc:
                    await self.fail_page(page, tally, str(exc) or exc.__class__.__name__)
                tally.finished_at = utc_now()

        worker_count = min(self.policy.max_concurrency, max(1, len(pages)))
        async with asyncio.TaskGroup() as group:
            for _ in range(worker_count):
                group.create_task(worker())

    async def extract_page(self, page: PageRecord, strategy: IngestStrategy, tally: _StrategyTally) -> None:
        discovered = DiscoveredPage(source_key=self.source_key, url=page.url)
        raw = await self.call(
            f"extract:{page.id}",
            lambda: self.source.extract(self.module_context, discovered),
        )
        candidates = assert_extracted_candidates(self.source_key, raw)
        upserts = [
            prepare_candidate(
                candidate,
                assigned_strategy=strategy,
                quality_threshold=self.options.quality_threshold,
            )
            for candidate in candidates
        ]
        stored = await self.store.upsert_candidates(self.run_id, page.id, upserts)
        await self.store.mark_page_extracted(page.id)

        curated = sum(1 for candidate in stored if candidate.is_curated)
        self.state.extracted_pages += 1
        tally.pages_succeeded += 1
        tally.candidate_count += len(stored)
        tally.curated_candidate_count += curated
        tally.quality_filtered_candidate_count += len(stored) - curated
        logger.debug(
            "page extracted source_key=%s page_id=%s strategy=%s candidates=%s curated=%s",
            self.source_key,
            page.id,
            strategy.value,
            len(stored),
            curated,
        )

    async def fail_page(self, page: PageRecord, tally: _StrategyTally, message: str) -> None:
        self.state.failed_pages += 1
        tally.pages_failed += 1
        logger.warning(
            "page extraction failed source_key=%s page_id=%s url=%s error=%s",
            self.source_key,
            page.id,
            page.url,
            message,
        )
        try:
            await self.store.mark_page_failed(page.id, message)
        except Exception:
            logger.exception(
                "page failure not recorded source_key=%s page_id=%s",
                self.source_key,
                page.id,
            )


def _run_meta(
    state: _RunState,
    *,
    cadence: CadenceEvaluation,
    policy: SourceRuntimePolicy,
    base: dict[str, Any],
) -> dict[str, Any]:
    meta = dict(base)
    meta.update(
        {
            "discovered_pages": state.discovered_pages,
            "extracted_pages": state.extracted_pages,
            "failed_pages": state.failed_pages,
            "candidates": state.candidate_count,
            "curated_candidates": state.curated_candidate_count,
            "quality_filtered_candidates": state.quality_filtered_candidate_count,
            "dropped_by_include": state.dropped_by_include,
            "dropped_by_exclude": state.dropped_by_exclude,
            "invalid_url_pattern_count": state.invalid_url_pattern_count,
            "source_health_status": state.source_health_status,
            "skipped_by_cadence": state.skipped_by_cadence,
            "cadence": cadence.as_dict(),
            "runtime_policy": policy.as_dict(),
            "snapshot_location": state.snapshot_location or None,
        }
    )
    if state.plan is not None:
        meta["strategy_selection"] = {
            **state.plan.as_dict(),
            "source_config_version": _read_path(base, "run_versions", "source_config_version"),
        }
        meta["strategy_attempts"] = [attempt.as_dict() for attempt in state.attempts()]
    if state.error is not None:
        meta["error"] = state.error
    return meta


def _read_path(record: dict[str, Any], *path: str) -> Any:
    cursor: Any = record
    for segment in path:
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(segment)
    return cursor


async def _update_source_registry(
    store: DurableStore,
    *,
    source_key: str,
    prior: SourceRuntimeRecord,
    state: _RunState,
    policy: SourceRuntimePolicy,
) -> None:
    now = utc_now()
    outcome = RunOutcome(
        status=state.status,
        discovered_pages=state.discovered_pages,
        extracted_pages=state.extracted_pages,
        failed_pages=state.failed_pages,
        candidate_count=state.candidate_count,
        curated_candidate_count=state.curated_candidate_count,
        quality_filtered_candidate_count=state.quality_filtered_candidate_count,
        skipped_by_cadence=state.skipped_by_cadence,
        run_error=state.error,
    )
    patch = compute_source_health_patch(outcome, policy=policy, prior=prior, now=now)
    metadata = merge_strategy_performance(patch.metadata, state.attempts())
    update = patch.as_update()

    decision = evaluate_lifecycle_automation(
        LifecycleInput(
            source_key=source_key,
            state=prior.state,
            cadence=prior.cadence,
            skipped_by_cadence=state.skipped_by_cadence,
            final_run_status=state.status,
            rolling_failure_rate_30d=patch.rolling_failure_rate_30d,
            rolling_promotion_rate_30d=patch.rolling_promotion_rate_30d,
            metadata=metadata,
            now=now,
        )
    )
    if decision.evidence_bundle is not None:
        downgraded = decision.should_downgrade_cadence and decision.degraded_cadence is not None
        if decision.should_transition_to_degraded:
            update["state"] = "degraded"
        if downgraded:
            update["cadence"] = decision.degraded_cadence
        metadata = merge_lifecycle_alert(
            metadata,
            decision.evidence_bundle,
            transitioned_to_degraded=decision.should_transition_to_degraded,
            downgraded_cadence=downgraded,
            now=now,
        )
        logger.log(
            logging.ERROR if decision.alert_severity == "critical" else logging.WARNING,
            "lifecycle automation triggered source_key=%s triggers=%s transitioned=%s cadence_after=%s",
            source_key,
            ",".join(decision.trigger_codes),
            decision.should_transition_to_degraded,
            update.get("cadence", prior.cadence),
        )

    update["metadata_json"] = metadata.to_json()
    await store.update_source_runtime(source_key, update)


async def run_source(
    source_key: str,
    *,
    store: DurableStore,
    registry: SourceRegistry,
    snapshot_writer: SnapshotWriter,
    options: RunSourceOptions | None = None,
) -> RunSourceResult:
    options = options or RunSourceOptions()
    source = registry.get(source_key)

    stored_runtime = await store.get_source_runtime(source_key)
    runtime = options.runtime_override or stored_runtime
    if runtime is None:
        logger.warning("source has no registry entry; runtime defaults applied source_key=%s", source_key)

    policy = resolve_source_runtime_policy(runtime)
    cadence = evaluate_cadence(policy.cadence, runtime.last_run_at if runtime else None)

    if runtime is not None and runtime.state in INACTIVE_STATES and not options.force:
        raise SourceUnavailableError(f'Source "{source_key}" is {runtime.state}. Use force to run manually.')

    logger.info(
        "resolved source runtime policy source_key=%s mode=%s max_rps=%s max_concurrency=%s timeout_seconds=%s "
        "retry_max_attempts=%s cadence_reason=%s state=%s",
        source_key,
        options.mode,
        policy.max_rps,
        policy.max_concurrency,
        policy.timeout_seconds,
        policy.retry_max_attempts,
        cadence.reason,
        runtime.state if runtime else "not_registered",
    )

    base_meta: dict[str, Any] = {
        "mode": options.mode,
        "run_versions": {"source_config_version": runtime.config_version if runtime else None},
    }
    if options.replay is not None:
        base_meta["replay"] = dict(options.replay)

    run = await store.create_run(source_key, base_meta)
    state = _RunState()
    finalized = False
    context = _RunContext(source=source, store=store, run_id=run.id, policy=policy, options=options, state=state)

    with tracer.start_as_current_span("ingest.run_source") as span:
        span.set_attribute("ingest.source_key", source_key)
        span.set_attribute("ingest.run_id", run.id)
        span.set_attribute("ingest.mode", options.mode)
        try:
            if options.respect_cadence and not options.force and not cadence.is_due:
                state.skipped_by_cadence = True
                state.snapshot_location = await snapshot_writer.write(source_key, run.id, [])
                state.status = "success"
                await store.finish_run(run.id, state.status, _run_meta(state, cadence=cadence, policy=policy, base=base_meta))
                finalized = True
                logger.info(
                    "run skipped by cadence source_key=%s run_id=%s next_run_at=%s",
                    source_key,
                    run.id,
                    to_iso(cadence.next_run_at) if cadence.next_run_at else None,
                )
                return _result(run.id, source_key, state, cadence, policy)

            if not cadence.is_due:
                logger.info(
                    "cadence window not due; proceeding source_key=%s force=%s reason=%s",
                    source_key,
                    options.force,
                    cadence.reason,
                )

            health = assert_health_check_result(
                source_key,
                await context.call("health_check", lambda: source.health_check(context.module_context)),
            )
            state.source_health_status = health.status
            if health.status == "failed":
                raise SourceHealthCheckFailedError(f'Source health check failed for "{source_key}"')
            if health.status == "degraded":
                logger.warning(
                    "source health check degraded source_key=%s diagnostics=%s", source_key, health.diagnostics
                )

            discovered = assert_discovered_pages(
                source_key,
                await context.call("discover", lambda: source.discover(context.module_context)),
            )
            deduped = list(dict.fromkeys(page.url for page in discovered))
            filtered = filter_urls_by_patterns(deduped, policy.include_url_patterns, policy.exclude_url_patterns)
            state.dropped_by_include = filtered.dropped_by_include
            state.dropped_by_exclude = filtered.dropped_by_exclude
            state.invalid_url_pattern_count = filtered.invalid_pattern_count
            if filtered.dropped_by_include or filtered.dropped_by_exclude or filtered.invalid_pattern_count:
                logger.info(
                    "applied url pattern filters source_key=%s discovered=%s accepted=%s dropped_by_include=%s "
                    "dropped_by_exclude=%s invalid_patterns=%s",
                    source_key,
                    len(deduped),
                    len(filtered.accepted),
                    filtered.dropped_by_include,
                    filtered.dropped_by_exclude,
                    filtered.invalid_pattern_count,
                )

            state.plan = select_strategy_plan(
                configured_order=runtime.strategy_order if runtime else None,
                discovered_urls=filtered.accepted,
                metadata=runtime.metadata_json if runtime else None,
                legal_risk_level=runtime.legal_risk_level if runtime else None,
                dynamic_hint_count=as_count(health.diagnostics.get("dynamic_hint_count")),
                sampled_page_count=(
                    as_count(health.diagnostics["sampled_page_count"])
                    if "sampled_page_count" in health.diagnostics
                    else None
                ),
            )
            assignments = assign_pages_to_strategies(filtered.accepted, state.plan.ranked_order)
            strategy_by_url: dict[str, IngestStrategy] = {}
            ordered_urls: list[str] = []
            for strategy in state.plan.ranked_order:
                urls = assignments[strategy]
                if urls:
                    state.tallies[strategy] = _StrategyTally(pages_considered=len(urls))
                for url in urls:
                    strategy_by_url[url] = strategy
                    ordered_urls.append(url)

            pages = await store.insert_discovered_pages(run.id, source_key, ordered_urls)
            state.discovered_pages = len(pages)
            span.set_attribute("ingest.discovered_pages", state.discovered_pages)

            await context.extract_pages(pages, strategy_by_url)
            if state.contract_error is not None:
                raise state.contract_error

            run_candidates = await store.list_candidates_by_run(run.id)
            state.candidate_count = len(run_candidates)
            state.curated_candidate_count = sum(1 for candidate in run_candidates if candidate.is_curated)
            state.quality_filtered_candidate_count = sum(
                1 for candidate in run_candidates if candidate.is_quality_filtered
            )
            state.snapshot_location = await snapshot_writer.write(source_key, run.id, run_candidates)

            state.status = resolve_run_status(state.discovered_pages, state.failed_pages)
            if state.status == "failed":
                state.error = f"all {state.failed_pages} discovered pages failed"
            await store.finish_run(
                run.id,
                state.status,
                _run_meta(state, cadence=cadence, policy=policy, base=base_meta),
                state.error,
            )
            finalized = True
            span.set_attribute("ingest.run_status", state.status)
            logger.info(
                "run finished source_key=%s run_id=%s status=%s discovered=%s extracted=%s failed=%s "
                "candidates=%s curated=%s",
                source_key,
                run.id,
                state.status,
                state.discovered_pages,
                state.extracted_pages,
                state.failed_pages,
                state.candidate_count,
                state.curated_candidate_count,
            )
            return _result(run.id, source_key, state, cadence, policy)
        except Exception as exc:
            state.status = "failed"
            state.error = str(exc) or exc.__class__.__name__
            span.record_exception(exc)
            span.set_attribute("ingest.run_status", state.status)
            if not finalized:
                try:
                    await store.finish_run(
                        run.id,
                        state.status,
                        _run_meta(state, cadence=cadence, policy=policy, base=base_meta),
                        state.error,
                    )
                except RepositoryError as finish_exc:
                    logger.error(
                        "failed to finalize run source_key=%s run_id=%s error=%s", source_key, run.id, finish_exc
                    )
            logger.error("run failed source_key=%s run_id=%s error=%s", source_key, run.id, state.error)
            raise
        finally:
            if stored_runtime is not None and options.mode != "replay":
                try:
                    await _update_source_registry(
                        store,
                        source_key=source_key,
                        prior=stored_runtime,
                        state=state,
                        policy=policy,
                    )
                except Exception:  # pragma: no cover - registry bookkeeping must not mask the run outcome
                    logger.exception("failed to update source runtime health source_key=%s", source_key)


def _result(
    run_id: str,
    source_key: str,
    state: _RunState,
    cadence: CadenceEvaluation,
    policy: SourceRuntimePolicy,
) -> RunSourceResult:
    return RunSourceResult(
        run_id=run_id,
        source_key=source_key,
        status=state.status,
        discovered_pages=state.discovered_pages,
        extracted_pages=state.extracted_pages,
        failed_pages=state.failed_pages,
        candidate_count=state.candidate_count,
        curated_candidate_count=state.curated_candidate_count,
        quality_filtered_candidate_count=state.quality_filtered_candidate_count,
        snapshot_location=state.snapshot_location,
        skipped_by_cadence=state.skipped_by_cadence,
        cadence_next_run_at=cadence.next_run_at,
        runtime_policy=policy.as_dict(),
        strategy_selection=state.plan.as_dict() if state.plan else None,
    )
