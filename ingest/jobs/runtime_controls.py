from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from ingest.core.rates import clamp_rate, smooth_rate
from ingest.core.values import as_float, as_record, as_text_list, clamp, to_iso
from ingest.schemas.metadata import SourceMetadata
from ingest.services.repository import SourceRuntimeRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RPS = 1.0
DEFAULT_MAX_CONCURRENCY = 1
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_RETRY_MAX_ATTEMPTS = 2
DEFAULT_RETRY_BACKOFF_MS = 750
DEFAULT_RETRY_BACKOFF_MULTIPLIER = 2.0
HEALTH_SCORE_VERSION = "ing022_v1"
LOW_QUALITY_PROMOTION_RATE = 0.05

_RETRY_SETTING_PATHS: dict[str, tuple[tuple[str, ...], ...]] = {
    "retry_max_attempts": (
        ("runtime", "retry_max_attempts"),
        ("runtime", "retryMaxAttempts"),
        ("runtime", "max_retries"),
        ("retry_max_attempts",),
        ("retryMaxAttempts",),
        ("max_retries",),
    ),
    "retry_backoff_ms": (
        ("runtime", "retry_backoff_ms"),
        ("runtime", "retryBackoffMs"),
        ("retry_backoff_ms",),
        ("retryBackoffMs",),
    ),
    "retry_backoff_multiplier": (
        ("runtime", "retry_backoff_multiplier"),
        ("runtime", "retryBackoffMultiplier"),
        ("retry_backoff_multiplier",),
        ("retryBackoffMultiplier",),
    ),
}


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, label: str, attempts: int, message: str) -> None:
        super().__init__(f"{label} failed after {attempts} attempts: {message}")
        self.label = label
        self.attempts = attempts


@dataclass(slots=True)
class SourceRuntimePolicy:
    cadence: str | None = None
    max_rps: float = DEFAULT_MAX_RPS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    include_url_patterns: list[str] = field(default_factory=list)
    exclude_url_patterns: list[str] = field(default_factory=list)
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    retry_backoff_ms: int = DEFAULT_RETRY_BACKOFF_MS
    retry_backoff_multiplier: float = DEFAULT_RETRY_BACKOFF_MULTIPLIER

    def as_dict(self) -> dict[str, Any]:
        return {
            "cadence": self.cadence,
            "max_rps": self.max_rps,
            "max_concurrency": self.max_concurrency,
            "timeout_seconds": self.timeout_seconds,
            "retry_max_attempts": self.retry_max_attempts,
            "retry_backoff_ms": self.retry_backoff_ms,
            "retry_backoff_multiplier": self.retry_backoff_multiplier,
        }


@dataclass(slots=True)
class UrlFilterResult:
    accepted: list[str]
    dropped_by_include: int = 0
    dropped_by_exclude: int = 0
    invalid_pattern_count: int = 0


@dataclass(slots=True)
class RetryResult(Generic[T]):
    value: T
    attempts: int


@dataclass(slots=True)
class RunOutcome:
    status: str
    discovered_pages: int = 0
    extracted_pages: int = 0
    failed_pages: int = 0
    candidate_count: int = 0
    curated_candidate_count: int = 0
    quality_filtered_candidate_count: int = 0
    skipped_by_cadence: bool = False
    run_error: str | None = None


@dataclass(slots=True)
class SourceHealthPatch:
    last_run_at: datetime
    last_success_at: datetime | None
    rolling_promotion_rate_30d: float | None
    rolling_failure_rate_30d: float | None
    metadata: SourceMetadata

    def as_update(self) -> dict[str, Any]:
        return {
            "last_run_at": self.last_run_at,
            "last_success_at": self.last_success_at,
            "rolling_promotion_rate_30d": self.rolling_promotion_rate_30d,
            "rolling_failure_rate_30d": self.rolling_failure_rate_30d,
            "metadata_json": self.metadata.to_json(),
        }


def _read_path(metadata: dict[str, Any], path: tuple[str, ...]) -> Any:
    cursor: Any = metadata
    for segment in path:
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(segment)
    return cursor


def _read_retry_setting(metadata: dict[str, Any], name: str) -> float | None:
    for path in _RETRY_SETTING_PATHS[name]:
        value = as_float(_read_path(metadata, path))
        if value is not None:
            return value
    return None


def resolve_source_runtime_policy(record: SourceRuntimeRecord | None) -> SourceRuntimePolicy:
    if record is None:
        return SourceRuntimePolicy()

    metadata = as_record(record.metadata_json)
    retry_max_attempts = _read_retry_setting(metadata, "retry_max_attempts")
    retry_backoff_ms = _read_retry_setting(metadata, "retry_backoff_ms")
    retry_backoff_multiplier = _read_retry_setting(metadata, "retry_backoff_multiplier")

    return SourceRuntimePolicy(
        cadence=record.cadence,
        max_rps=clamp(record.max_rps if record.max_rps is not None else DEFAULT_MAX_RPS, 0.1, 20.0),
        max_concurrency=round(
            clamp(record.max_concurrency if record.max_concurrency is not None else DEFAULT_MAX_CONCURRENCY, 1, 20)
        ),
        timeout_seconds=round(
            clamp(record.timeout_seconds if record.timeout_seconds is not None else DEFAULT_TIMEOUT_SECONDS, 5, 300)
        ),
        include_url_patterns=as_text_list(record.include_url_patterns),
        exclude_url_patterns=as_text_list(record.exclude_url_patterns),
        retry_max_attempts=round(
            clamp(retry_max_attempts if retry_max_attempts is not None else DEFAULT_RETRY_MAX_ATTEMPTS, 1, 8)
        ),
        retry_backoff_ms=round(
            clamp(retry_backoff_ms if retry_backoff_ms is not None else DEFAULT_RETRY_BACKOFF_MS, 100, 15_000)
        ),
        retry_backoff_multiplier=clamp(
            retry_backoff_multiplier if retry_backoff_multiplier is not None else DEFAULT_RETRY_BACKOFF_MULTIPLIER,
            1.0,
            5.0,
        ),
    )


def compile_url_pattern(pattern: str) -> re.Pattern[str] | None:
    """Case-insensitive regex; patterns that are not valid regexes are read as ``*`` globs."""
    trimmed = pattern.strip()
    if not trimmed:
        return None
    try:
        return re.compile(trimmed, re.IGNORECASE)
    except re.error:
        pass
    glob = re.escape(trimmed).replace(r"\*", ".*")
    try:
        return re.compile(f"^{glob}$", re.IGNORECASE)
    except re.error:
        return None


def filter_urls_by_patterns(
    urls: Iterable[str],
    include_patterns: Iterable[str],
    exclude_patterns: Iterable[str],
) -> UrlFilterResult:
    include = [compile_url_pattern(pattern) for pattern in include_patterns]
    exclude = [compile_url_pattern(pattern) for pattern in exclude_patterns]
    invalid_pattern_count = sum(1 for regex in [*include, *exclude] if regex is None)
    valid_include = [regex for regex in include if regex is not None]
    valid_exclude = [regex for regex in exclude if regex is not None]

    result = UrlFilterResult(accepted=[], invalid_pattern_count=invalid_pattern_count)
    for url in dict.fromkeys(urls):
        if valid_include and not any(regex.search(url) for regex in valid_include):
            result.dropped_by_include += 1
            continue
        if any(regex.search(url) for regex in valid_exclude):
            result.dropped_by_exclude += 1
            continue
        result.accepted.append(url)
    return result


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    timeout_seconds: float,
    max_attempts: int,
    backoff_ms: float,
    backoff_multiplier: float,
    no_retry: tuple[type[BaseException], ...] = (),
) -> RetryResult[T]:
    """Run ``operation`` with a per-attempt timeout and exponential backoff.

    Exceptions listed in ``no_retry`` propagate unchanged on first occurrence.
    """
    attempts_allowed = max(1, round(max_attempts))
    backoff = max(0, round(backoff_ms))
    attempt = 1

    while True:
        try:
            value = await asyncio.wait_for(operation(), timeout=timeout_seconds)
            return RetryResult(value=value, attempts=attempt)
        except no_retry:
            raise
        except asyncio.TimeoutError as exc:
            error_message = f"{label} (attempt {attempt}) timed out after {round(timeout_seconds * 1000)}ms"
            last_error: Exception = exc
        except Exception as exc:
            error_message = str(exc) or exc.__class__.__name__
            last_error = exc

        if attempt >= attempts_allowed:
            raise RetryExhaustedError(label, attempt, error_message) from last_error

        logger.warning(
            "operation attempt failed; retrying operation=%s attempt=%s max_attempts=%s backoff_ms=%s error=%s",
            label,
            attempt,
            attempts_allowed,
            backoff,
            error_message,
        )
        if backoff > 0:
            await asyncio.sleep(backoff / 1000)
        backoff = round(backoff * backoff_multiplier)
        attempt += 1


class OperationRateLimiter:
    """Spaces operation starts at least ``ceil(1000 / max_rps)`` milliseconds apart."""

    def __init__(self, max_rps: float) -> None:
        self.minimum_gap_ms = math.ceil(1000 / clamp(max_rps, 0.1, 20.0))
        self._next_available_at = 0.0
        self._lock = asyncio.Lock()

    async def wait_turn(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            now = loop.time()
            scheduled_at = max(self._next_available_at, now)
            self._next_available_at = scheduled_at + self.minimum_gap_ms / 1000
        wait_seconds = scheduled_at - now
        if wait_seconds > 0:
            await asyncio.sleep(wait_seconds)


def compute_source_health_patch(
    outcome: RunOutcome,
    *,
    policy: SourceRuntimePolicy,
    prior: SourceRuntimeRecord | None,
    now: datetime,
) -> SourceHealthPatch:
    metadata = SourceMetadata.from_raw(prior.metadata_json if prior else {}).model_copy(deep=True)
    health = metadata.health
    prior_promotion = prior.rolling_promotion_rate_30d if prior else None
    prior_failure = prior.rolling_failure_rate_30d if prior else None
    prior_success_at = prior.last_success_at if prior else None

    promotion_rate = (
        clamp_rate(outcome.curated_candidate_count / outcome.candidate_count) if outcome.candidate_count > 0 else 0.0
    )
    failure_denominator = max(outcome.discovered_pages, outcome.extracted_pages + outcome.failed_pages)
    if failure_denominator > 0:
        failure_rate = clamp_rate(outcome.failed_pages / failure_denominator)
    else:
        failure_rate = 1.0 if outcome.status == "failed" else 0.0
    if outcome.discovered_pages > 0:
        completion_rate = clamp_rate(outcome.extracted_pages / outcome.discovered_pages)
    else:
        completion_rate = 0.0 if outcome.status == "failed" else 1.0

    if outcome.skipped_by_cadence:
        rolling_promotion = prior_promotion
        rolling_failure = prior_failure
    else:
        rolling_promotion = smooth_rate(prior_promotion, promotion_rate)
        rolling_failure = smooth_rate(prior_failure, failure_rate)
        health.health_score = round(
            100 * clamp_rate((1 - rolling_failure) * 0.5 + rolling_promotion * 0.3 + completion_rate * 0.2)
        )
        health.consecutive_failures = health.consecutive_failures + 1 if outcome.status == "failed" else 0
        health.observed_runs += 1
        if outcome.status == "failed":
            health.observed_failed_runs += 1
        low_quality = (
            outcome.status != "failed"
            and outcome.candidate_count > 0
            and promotion_rate < LOW_QUALITY_PROMOTION_RATE
        )
        health.consecutive_low_quality_runs = health.consecutive_low_quality_runs + 1 if low_quality else 0

    successful_run = not outcome.skipped_by_cadence and (
        outcome.status == "success" or (outcome.status == "partial" and outcome.extracted_pages > 0)
    )

    health.version = HEALTH_SCORE_VERSION
    health.last_run_status = outcome.status
    health.last_error = outcome.run_error
    health.last_run_promotion_rate = promotion_rate
    health.last_run_failure_rate = failure_rate
    health.last_run_completion_rate = completion_rate
    health.last_run_candidate_count = outcome.candidate_count
    health.last_run_curated_candidate_count = outcome.curated_candidate_count
    health.last_run_quality_filtered_candidate_count = outcome.quality_filtered_candidate_count
    health.last_run_discovered_pages = outcome.discovered_pages
    health.last_run_extracted_pages = outcome.extracted_pages
    health.last_run_failed_pages = outcome.failed_pages
    health.skipped_by_cadence = outcome.skipped_by_cadence
    health.runtime_policy = policy.as_dict()
    health.updated_at = to_iso(now)

    return SourceHealthPatch(
        last_run_at=now,
        last_success_at=now if successful_run else prior_success_at,
        rolling_promotion_rate_30d=rolling_promotion,
        rolling_failure_rate_30d=rolling_failure,
        metadata=metadata,
    )
