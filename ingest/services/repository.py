from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from ingest.core.config import get_settings
from ingest.schemas.sources import TraitHint


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


RUN_STATUSES = {"running", "success", "partial", "failed"}
TERMINAL_RUN_STATUSES = {"success", "partial", "failed"}
PAGE_STATUSES = {"discovered", "extracted", "failed"}
CANDIDATE_STATUSES = {"normalized", "curated", "quality_filtered", "rejected", "pushed_to_studio", "exported"}
REVIEWED_CANDIDATE_STATUSES = ("rejected", "pushed_to_studio", "exported")
SOURCE_STATES = {"active", "degraded", "paused", "retired"}
SYNC_STATUSES = {"pending", "success", "failed"}
APP_DRAFT_TARGET_SYSTEM = "app_draft"
MAX_PAGE_ERROR_LENGTH = 2000
SOURCE_RUNTIME_PATCH_FIELDS = {
    "state",
    "cadence",
    "metadata_json",
    "last_run_at",
    "last_success_at",
    "rolling_promotion_rate_30d",
    "rolling_failure_rate_30d",
}


@dataclass(slots=True)
class RunRecord:
    id: str
    source_key: str
    status: str
    started_at: datetime | None = None
    finished_at: datetime | None = None
    meta_json: dict[str, Any] = field(default_factory=dict)
    error_text: str | None = None


@dataclass(slots=True)
class PageRecord:
    id: str
    run_id: str
    source_key: str
    url: str
    status: str = "discovered"
    error_text: str | None = None


@dataclass(slots=True)
class CandidateUpsert:
    source_key: str
    source_url: str
    title: str
    description: str | None
    reason_snippet: str | None
    raw_excerpt: str | None
    candidate_key: str
    status: str
    quality_passed: bool
    quality_score: float
    meta_json: dict[str, Any]
    traits: list[TraitHint] = field(default_factory=list)


@dataclass(slots=True)
class StoredCandidate:
    id: str
    run_id: str
    page_id: str | None
    source_key: str
    source_url: str
    title: str
    description: str | None
    reason_snippet: str | None
    raw_excerpt: str | None
    candidate_key: str
    status: str
    meta_json: dict[str, Any] = field(default_factory=dict)
    traits: list[TraitHint] = field(default_factory=list)
    quality_passed: bool | None = None

    @property
    def is_curated(self) -> bool:
        if self.quality_passed is not None:
            return self.quality_passed
        return self.status == "curated"

    @property
    def is_quality_filtered(self) -> bool:
        if self.quality_passed is not None:
            return not self.quality_passed
        return self.status == "quality_filtered"

    def as_snapshot_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "page_id": self.page_id,
            "source_key": self.source_key,
            "source_url": self.source_url,
            "title": self.title,
            "description": self.description,
            "reason_snippet": self.reason_snippet,
            "raw_excerpt": self.raw_excerpt,
            "candidate_key": self.candidate_key,
            "status": self.status,
            "quality_passed": self.quality_passed,
            "meta_json": self.meta_json,
            "traits": [trait.model_dump() for trait in self.traits],
        }


@dataclass(slots=True)
class SourceRuntimeRecord:
    source_key: str
    display_name: str
    state: str = "active"
    approved_for_prod: bool = False
    cadence: str | None = None
    max_rps: float | None = None
    max_concurrency: int | None = None
    timeout_seconds: int | None = None
    include_url_patterns: list[str] = field(default_factory=list)
    exclude_url_patterns: list[str] = field(default_factory=list)
    strategy_order: list[str] = field(default_factory=list)
    legal_risk_level: str | None = None
    config_version: str | None = None
    metadata_json: dict[str, Any] = field(default_factory=dict)
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    rolling_promotion_rate_30d: float | None = None
    rolling_failure_rate_30d: float | None = None


@dataclass(slots=True)
class RejectionRateTrend:
    source_key: str
    recent_reviewed_count: int
    recent_rejected_count: int
    prior_reviewed_count: int
    prior_rejected_count: int

    @property
    def recent_rejection_rate(self) -> float | None:
        if self.recent_reviewed_count <= 0:
            return None
        return self.recent_rejected_count / self.recent_reviewed_count

    @property
    def prior_rejection_rate(self) -> float | None:
        if self.prior_reviewed_count <= 0:
            return None
        return self.prior_rejected_count / self.prior_reviewed_count


@dataclass(slots=True)
class DraftLink:
    draft_id: str
    candidate_id: str


@dataclass(slots=True)
class CandidateStatusRow:
    candidate_id: str
    status: str | None


@dataclass(slots=True)
class SyncLogSuccess:
    candidate_id: str
    target_id: str | None


class DurableStore(Protocol):
    async def create_run(self, source_key: str, meta: dict[str, Any] | None = None) -> RunRecord: ...

    async def finish_run(
        self,
        run_id: str,
        status: str,
        meta: dict[str, Any],
        error_text: str | None = None,
    ) -> RunRecord: ...

    async def get_run(self, run_id: str) -> RunRecord | None: ...

    async def insert_discovered_pages(self, run_id: str, source_key: str, urls: list[str]) -> list[PageRecord]: ...

    async def mark_page_extracted(self, page_id: str) -> None: ...

    async def mark_page_failed(self, page_id: str, error_text: str) -> None: ...

    async def upsert_candidates(
        self,
        run_id: str,
        page_id: str | None,
        candidates: list[CandidateUpsert],
    ) -> list[StoredCandidate]: ...

    async def list_candidates_by_run(self, run_id: str) -> list[StoredCandidate]: ...

    async def get_source_runtime(self, source_key: str) -> SourceRuntimeRecord | None: ...

    async def update_source_runtime(self, source_key: str, patch: dict[str, Any]) -> None: ...

    async def list_source_health_rows(self, source_keys: list[str] | None = None) -> list[SourceRuntimeRecord]: ...

    async def list_source_rejection_trends(
        self,
        source_keys: list[str],
        *,
        window: timedelta,
        now: datetime,
    ) -> list[RejectionRateTrend]: ...

    async def list_draft_links(self) -> list[DraftLink]: ...

    async def list_candidate_statuses(self, candidate_ids: list[str]) -> list[CandidateStatusRow]: ...

    async def list_success_sync_logs(self, candidate_ids: list[str]) -> list[SyncLogSuccess]: ...

    async def update_candidate_status(self, candidate_id: str, status: str) -> None: ...

    async def write_sync_log(
        self,
        *,
        candidate_id: str,
        target_system: str,
        target_id: str | None,
        status: str,
        error_text: str | None = None,
    ) -> None: ...

    async def close(self) -> None: ...


def validate_source_runtime_patch(patch: dict[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - SOURCE_RUNTIME_PATCH_FIELDS
    if unknown:
        raise RepositoryValidationError(f"unsupported source runtime fields: {sorted(unknown)}")
    state = patch.get("state")
    if state is not None and state not in SOURCE_STATES:
        raise RepositoryValidationError(f"invalid source state: {state}")
    return patch


def truncate_error(error_text: str) -> str:
    return error_text[:MAX_PAGE_ERROR_LENGTH]


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        app_database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float,
        page_size: int,
    ) -> None:
        self.database_url = database_url
        self.app_database_url = app_database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self.page_size = max(1, page_size)
        self._pool: asyncpg.Pool | None = None
        self._app_pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        if self._app_pool is not None:
            await self._app_pool.close()
            self._app_pool = None

    async def create_run(self, source_key: str, meta: dict[str, Any] | None = None) -> RunRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into ingest_runs (source_key, status, meta_json)
            values ($1, 'running', $2::jsonb)
            returning id::text as id, source_key, status, started_at, finished_at, meta_json, error_text
            """,
            source_key,
            json.dumps(meta or {}),
        )
        return self._run_from_row(row)

    async def finish_run(
        self,
        run_id: str,
        status: str,
        meta: dict[str, Any],
        error_text: str | None = None,
    ) -> RunRecord:
        if status not in TERMINAL_RUN_STATUSES:
            raise RepositoryValidationError(f"invalid terminal run status: {status}")

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update ingest_runs
                set status = $2,
                    meta_json = $3::jsonb,
                    error_text = $4,
                    finished_at = now()
                where id = $1::uuid
                  and status = 'running'
                returning id::text as id, source_key, status, started_at, finished_at, meta_json, error_text
                """,
                run_id,
                status,
                json.dumps(meta),
                error_text,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("run not found") from exc

        if row is None:
            if await self.get_run(run_id) is None:
                raise RepositoryNotFoundError("run not found")
            raise RepositoryConflictError(f"run {run_id} is already finalized")
        return self._run_from_row(row)

    async def get_run(self, run_id: str) -> RunRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select id::text as id, source_key, status, started_at, finished_at, meta_json, error_text
                from ingest_runs
                where id = $1::uuid
                """,
                run_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._run_from_row(row) if row else None

    async def insert_discovered_pages(self, run_id: str, source_key: str, urls: list[str]) -> list[PageRecord]:
        if not urls:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            insert into ingest_pages (run_id, source_key, url, status)
            select $1::uuid, $2, item.url, 'discovered'
            from unnest($3::text[]) with ordinality as item(url, position)
            order by item.position
            returning id::text as id, run_id::text as run_id, source_key, url, status, error_text
            """,
            run_id,
            source_key,
            urls,
        )
        by_url = {row["url"]: self._page_from_row(row) for row in rows}
        return [by_url[url] for url in urls if url in by_url]

    async def mark_page_extracted(self, page_id: str) -> None:
        await self._transition_page(page_id, "extracted", None)

    async def mark_page_failed(self, page_id: str, error_text: str) -> None:
        await self._transition_page(page_id, "failed", truncate_error(error_text))

    async def upsert_candidates(
        self,
        run_id: str,
        page_id: str | None,
        candidates: list[CandidateUpsert],
    ) -> list[StoredCandidate]:
        if not candidates:
            return []

        pool = await self._get_pool()
        by_key = {candidate.candidate_key: candidate for candidate in candidates}
        async with pool.acquire() as conn:
            async with conn.transaction():
                for candidate in by_key.values():
                    await conn.execute(
                        """
                        insert into ingest_candidates (
                          run_id,
                          page_id,
                          source_key,
                          source_url,
                          title,
                          description,
                          reason_snippet,
                          raw_excerpt,
                          candidate_key,
                          status,
                          meta_json
                        )
                        values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
                        on conflict (candidate_key) do nothing
                        """,
                        run_id,
                        page_id,
                        candidate.source_key,
                        candidate.source_url,
                        candidate.title,
                        candidate.description,
                        candidate.reason_snippet,
                        candidate.raw_excerpt,
                        candidate.candidate_key,
                        candidate.status,
                        json.dumps(candidate.meta_json),
                    )

                rows = await conn.fetch(
                    f"""
                    select {self._CANDIDATE_COLUMNS}
                    from ingest_candidates c
                    where c.candidate_key = any($1::text[])
                    """,
                    list(by_key),
                )

                stored: list[StoredCandidate] = []
                for row in rows:
                    upsert = by_key[row["candidate_key"]]
                    await conn.execute(
                        """
                        insert into ingest_run_candidates (run_id, candidate_id, page_id, quality_passed, quality_score)
                        values ($1::uuid, $2::uuid, $3::uuid, $4, $5)
                        on conflict (run_id, candidate_id) do nothing
                        """,
                        run_id,
                        row["id"],
                        page_id,
                        upsert.quality_passed,
                        upsert.quality_score,
                    )
                    for trait in upsert.traits:
                        await conn.execute(
                            """
                            insert into ingest_candidate_traits (
                              candidate_id,
                              trait_type_slug,
                              trait_option_slug,
                              confidence,
                              source
                            )
                            values ($1::uuid, $2, $3, $4, $5)
                            on conflict (candidate_id, trait_type_slug, trait_option_slug)
                            do update set confidence = excluded.confidence, source = excluded.source
                            """,
                            row["id"],
                            trait.trait_type_slug,
                            trait.trait_option_slug,
                            trait.confidence,
                            trait.source or "pipeline",
                        )
                    candidate = self._candidate_from_row(row)
                    candidate.traits = list(upsert.traits)
                    candidate.quality_passed = upsert.quality_passed
                    stored.append(candidate)
        return stored

    async def list_candidates_by_run(self, run_id: str) -> list[StoredCandidate]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {self._CANDIDATE_COLUMNS}, rc.quality_passed
            from ingest_run_candidates rc
            join ingest_candidates c on c.id = rc.candidate_id
            where rc.run_id = $1::uuid
            order by rc.created_at asc, c.candidate_key asc
            """,
            run_id,
        )
        candidates = [self._candidate_from_row(row) for row in rows]
        for candidate, row in zip(candidates, rows):
            candidate.quality_passed = row["quality_passed"]

        if candidates:
            trait_rows = await pool.fetch(
                """
                select candidate_id::text as candidate_id, trait_type_slug, trait_option_slug, confidence, source
                from ingest_candidate_traits
                where candidate_id = any($1::uuid[])
                order by trait_type_slug, trait_option_slug
                """,
                [candidate.id for candidate in candidates],
            )
            traits_by_candidate: dict[str, list[TraitHint]] = {}
            for row in trait_rows:
                traits_by_candidate.setdefault(row["candidate_id"], []).append(
                    TraitHint(
                        trait_type_slug=row["trait_type_slug"],
                        trait_option_slug=row["trait_option_slug"],
                        confidence=self._coerce_float(row["confidence"]),
                        source=row["source"],
                    )
                )
            for candidate in candidates:
                candidate.traits = traits_by_candidate.get(candidate.id, [])
        return candidates

    async def get_source_runtime(self, source_key: str) -> SourceRuntimeRecord | None:
        rows = await self.list_source_health_rows([source_key])
        return rows[0] if rows else None

    async def list_source_health_rows(self, source_keys: list[str] | None = None) -> list[SourceRuntimeRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              source_key,
              display_name,
              state,
              approved_for_prod,
              cadence,
              max_rps,
              max_concurrency,
              timeout_seconds,
              include_url_patterns,
              exclude_url_patterns,
              strategy_order,
              legal_risk_level,
              config_version,
              metadata_json,
              last_run_at,
              last_success_at,
              rolling_promotion_rate_30d,
              rolling_failure_rate_30d
            from ingest_source_registry
            where ($1::text[] is null or source_key = any($1::text[]))
            order by source_key asc
            """,
            source_keys,
        )
        return [self._source_from_row(row) for row in rows]

    async def update_source_runtime(self, source_key: str, patch: dict[str, Any]) -> None:
        validate_source_runtime_patch(patch)
        if not patch:
            return

        assignments: list[str] = []
        values: list[Any] = [source_key]
        for column in sorted(patch):
            value = patch[column]
            if column == "metadata_json":
                values.append(json.dumps(value))
                assignments.append(f"{column} = ${len(values)}::jsonb")
            else:
                values.append(value)
                assignments.append(f"{column} = ${len(values)}")

        pool = await self._get_pool()
        result = await pool.execute(
            f"""
            update ingest_source_registry
            set {", ".join(assignments)}, updated_at = now()
            where source_key = $1
            """,
            *values,
        )
        if result.endswith(" 0"):
            raise RepositoryNotFoundError(f"source registry row not found: {source_key}")

    async def list_source_rejection_trends(
        self,
        source_keys: list[str],
        *,
        window: timedelta,
        now: datetime,
    ) -> list[RejectionRateTrend]:
        if not source_keys:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              source_key,
              count(*) filter (where updated_at >= $2) as recent_reviewed_count,
              count(*) filter (where updated_at >= $2 and status = 'rejected') as recent_rejected_count,
              count(*) filter (where updated_at < $2) as prior_reviewed_count,
              count(*) filter (where updated_at < $2 and status = 'rejected') as prior_rejected_count
            from ingest_candidates
            where source_key = any($1::text[])
              and status = any($4::text[])
              and updated_at >= $3
              and updated_at <= $5
            group by source_key
            """,
            source_keys,
            now - window,
            now - window * 2,
            list(REVIEWED_CANDIDATE_STATUSES),
            now,
        )
        return [
            RejectionRateTrend(
                source_key=row["source_key"],
                recent_reviewed_count=int(row["recent_reviewed_count"]),
                recent_rejected_count=int(row["recent_rejected_count"]),
                prior_reviewed_count=int(row["prior_reviewed_count"]),
                prior_rejected_count=int(row["prior_rejected_count"]),
            )
            for row in rows
        ]

    async def list_draft_links(self) -> list[DraftLink]:
        pool = await self._get_app_pool()
        links: list[DraftLink] = []
        offset = 0
        while True:
            rows = await pool.fetch(
                """
                select id::text as id, ingest_candidate_id::text as candidate_id
                from idea_drafts
                where ingest_candidate_id is not null
                order by id asc
                limit $1 offset $2
                """,
                self.page_size,
                offset,
            )
            links.extend(DraftLink(draft_id=row["id"], candidate_id=row["candidate_id"]) for row in rows)
            if len(rows) < self.page_size:
                return links
            offset += self.page_size

    async def list_candidate_statuses(self, candidate_ids: list[str]) -> list[CandidateStatusRow]:
        pool = await self._get_pool()
        output: list[CandidateStatusRow] = []
        for batch in self._chunks(candidate_ids):
            rows = await pool.fetch(
                """
                select id::text as id, status
                from ingest_candidates
                where id = any($1::uuid[])
                """,
                batch,
            )
            output.extend(CandidateStatusRow(candidate_id=row["id"], status=row["status"]) for row in rows)
        return output

    async def list_success_sync_logs(self, candidate_ids: list[str]) -> list[SyncLogSuccess]:
        pool = await self._get_pool()
        output: list[SyncLogSuccess] = []
        for batch in self._chunks(candidate_ids):
            rows = await pool.fetch(
                """
                select candidate_id::text as candidate_id, target_id
                from ingest_sync_log
                where candidate_id = any($1::uuid[])
                  and target_system = $2
                  and status = 'success'
                """,
                batch,
                APP_DRAFT_TARGET_SYSTEM,
            )
            output.extend(SyncLogSuccess(candidate_id=row["candidate_id"], target_id=row["target_id"]) for row in rows)
        return output

    async def update_candidate_status(self, candidate_id: str, status: str) -> None:
        if status not in CANDIDATE_STATUSES:
            raise RepositoryValidationError(f"invalid candidate status: {status}")
        pool = await self._get_pool()
        try:
            result = await pool.execute(
                """
                update ingest_candidates
                set status = $2, updated_at = now()
                where id = $1::uuid
                """,
                candidate_id,
                status,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("candidate not found") from exc
        if result.endswith(" 0"):
            raise RepositoryNotFoundError("candidate not found")

    async def write_sync_log(
        self,
        *,
        candidate_id: str,
        target_system: str,
        target_id: str | None,
        status: str,
        error_text: str | None = None,
    ) -> None:
        if status not in SYNC_STATUSES:
            raise RepositoryValidationError(f"invalid sync status: {status}")
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into ingest_sync_log (candidate_id, target_system, target_id, status, error_text)
                values ($1::uuid, $2, $3, $4, $5)
                """,
                candidate_id,
                target_system,
                target_id,
                status,
                error_text,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    _CANDIDATE_COLUMNS = """
              c.id::text as id,
              c.run_id::text as run_id,
              c.page_id::text as page_id,
              c.source_key,
              c.source_url,
              c.title,
              c.description,
              c.reason_snippet,
              c.raw_excerpt,
              c.candidate_key,
              c.status,
              c.meta_json
    """

    async def _transition_page(self, page_id: str, status: str, error_text: str | None) -> None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                update ingest_pages
                set status = $2, error_text = $3, updated_at = now()
                where id = $1::uuid
                  and status = 'discovered'
                returning id::text as id
                """,
                page_id,
                status,
                error_text,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("page not found") from exc
        if row is None:
            raise RepositoryConflictError(f"page {page_id} is not in discovered state")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("INGEST_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        self._pool = await self._create_pool(self.database_url)
        return self._pool

    async def _get_app_pool(self) -> asyncpg.Pool:
        if not self.app_database_url:
            raise RepositoryUnavailableError("INGEST_APP_DATABASE_URL is required")

        if self._app_pool is not None:
            return self._app_pool

        self._app_pool = await self._create_pool(self.app_database_url)
        return self._app_pool

    async def _create_pool(self, dsn: str) -> asyncpg.Pool:
        try:
            return await asyncpg.create_pool(
                dsn=dsn,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _chunks(self, values: list[str]) -> list[list[str]]:
        return [values[index : index + self.page_size] for index in range(0, len(values), self.page_size)]

    @classmethod
    def _run_from_row(cls, row: asyncpg.Record) -> RunRecord:
        return RunRecord(
            id=row["id"],
            source_key=row["source_key"],
            status=row["status"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            meta_json=cls._coerce_json_dict(row["meta_json"]),
            error_text=row["error_text"],
        )

    @staticmethod
    def _page_from_row(row: asyncpg.Record) -> PageRecord:
        return PageRecord(
            id=row["id"],
            run_id=row["run_id"],
            source_key=row["source_key"],
            url=row["url"],
            status=row["status"],
            error_text=row["error_text"],
        )

    @classmethod
    def _candidate_from_row(cls, row: asyncpg.Record) -> StoredCandidate:
        return StoredCandidate(
            id=row["id"],
            run_id=row["run_id"],
            page_id=row["page_id"],
            source_key=row["source_key"],
            source_url=row["source_url"],
            title=row["title"],
            description=row["description"],
            reason_snippet=row["reason_snippet"],
            raw_excerpt=row["raw_excerpt"],
            candidate_key=row["candidate_key"],
            status=row["status"],
            meta_json=cls._coerce_json_dict(row["meta_json"]),
        )

    @classmethod
    def _source_from_row(cls, row: asyncpg.Record) -> SourceRuntimeRecord:
        return SourceRuntimeRecord(
            source_key=row["source_key"],
            display_name=cls._coerce_text(row["display_name"]) or row["source_key"],
            state=cls._coerce_text(row["state"]) or "active",
            approved_for_prod=bool(row["approved_for_prod"]),
            cadence=cls._coerce_text(row["cadence"]),
            max_rps=cls._coerce_float(row["max_rps"]),
            max_concurrency=cls._coerce_int(row["max_concurrency"]),
            timeout_seconds=cls._coerce_int(row["timeout_seconds"]),
            include_url_patterns=cls._coerce_text_list(row["include_url_patterns"]),
            exclude_url_patterns=cls._coerce_text_list(row["exclude_url_patterns"]),
            strategy_order=cls._coerce_text_list(row["strategy_order"]),
            legal_risk_level=cls._coerce_text(row["legal_risk_level"]),
            config_version=cls._coerce_text(row["config_version"]),
            metadata_json=cls._coerce_json_dict(row["metadata_json"]),
            last_run_at=row["last_run_at"],
            last_success_at=row["last_success_at"],
            rolling_promotion_rate_30d=cls._coerce_float(row["rolling_promotion_rate_30d"]),
            rolling_failure_rate_30d=cls._coerce_float(row["rolling_failure_rate_30d"]),
        )

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            stripped = item.strip()
            if stripped:
                items.append(stripped)
        return items

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        app_database_url=settings.app_database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
        page_size=settings.reconciliation_page_size,
    )
