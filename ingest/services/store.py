from __future__ import annotations

import copy
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from ingest.core.values import utc_now
from ingest.services.repository import (
    APP_DRAFT_TARGET_SYSTEM,
    CANDIDATE_STATUSES,
    REVIEWED_CANDIDATE_STATUSES,
    SYNC_STATUSES,
    TERMINAL_RUN_STATUSES,
    CandidateStatusRow,
    CandidateUpsert,
    DraftLink,
    PageRecord,
    RejectionRateTrend,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    RunRecord,
    SourceRuntimeRecord,
    StoredCandidate,
    SyncLogSuccess,
    truncate_error,
    validate_source_runtime_patch,
)


class InMemoryStore:
    """Process-local store with the same semantics as the Postgres repository.

    Used by tests and local dry runs. Candidates are deduplicated by
    ``candidate_key`` with the first writer winning; every run keeps its own
    link to the candidates it produced.
    """

    def __init__(self, sources: list[SourceRuntimeRecord] | None = None) -> None:
        self.runs: dict[str, RunRecord] = {}
        self.pages: dict[str, PageRecord] = {}
        self.candidates: dict[str, StoredCandidate] = {}
        self.candidate_ids_by_key: dict[str, str] = {}
        self.run_candidates: dict[str, list[tuple[str, bool]]] = {}
        self.sources: dict[str, SourceRuntimeRecord] = {source.source_key: source for source in sources or []}
        self.reviews: list[tuple[str, str, datetime]] = []
        self.draft_links: list[DraftLink] = []
        self.sync_logs: list[dict[str, Any]] = []
        self.closed = False

    async def create_run(self, source_key: str, meta: dict[str, Any] | None = None) -> RunRecord:
        run = RunRecord(
            id=str(uuid4()),
            source_key=source_key,
            status="running",
            started_at=utc_now(),
            meta_json=copy.deepcopy(meta or {}),
        )
        self.runs[run.id] = run
        return replace(run)

    async def finish_run(
        self,
        run_id: str,
        status: str,
        meta: dict[str, Any],
        error_text: str | None = None,
    ) -> RunRecord:
        if status not in TERMINAL_RUN_STATUSES:
            raise RepositoryValidationError(f"invalid terminal run status: {status}")
        run = self.runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        if run.status != "running":
            raise RepositoryConflictError(f"run {run_id} is already finalized")
        run.status = status
        run.meta_json = copy.deepcopy(meta)
        run.error_text = error_text
        run.finished_at = utc_now()
        return replace(run)

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self.runs.get(run_id)
        return replace(run) if run else None

    async def insert_discovered_pages(self, run_id: str, source_key: str, urls: list[str]) -> list[PageRecord]:
        if run_id not in self.runs:
            raise RepositoryNotFoundError("run not found")
        pages: list[PageRecord] = []
        for url in urls:
            page = PageRecord(id=str(uuid4()), run_id=run_id, source_key=source_key, url=url)
            self.pages[page.id] = page
            pages.append(replace(page))
        return pages

    async def mark_page_extracted(self, page_id: str) -> None:
        self._transition_page(page_id, "extracted", None)

    async def mark_page_failed(self, page_id: str, error_text: str) -> None:
        self._transition_page(page_id, "failed", truncate_error(error_text))

    async def upsert_candidates(
        self,
        run_id: str,
        page_id: str | None,
        candidates: list[CandidateUpsert],
    ) -> list[StoredCandidate]:
        if run_id not in self.runs:
            raise RepositoryNotFoundError("run not found")

        stored: list[StoredCandidate] = []
        linked = self.run_candidates.setdefault(run_id, [])
        for upsert in candidates:
            candidate_id = self.candidate_ids_by_key.get(upsert.candidate_key)
            if candidate_id is None:
                candidate_id = str(uuid4())
                self.candidate_ids_by_key[upsert.candidate_key] = candidate_id
                self.candidates[candidate_id] = StoredCandidate(
                    id=candidate_id,
                    run_id=run_id,
                    page_id=page_id,
                    source_key=upsert.source_key,
                    source_url=upsert.source_url,
                    title=upsert.title,
                    description=upsert.description,
                    reason_snippet=upsert.reason_snippet,
                    raw_excerpt=upsert.raw_excerpt,
                    candidate_key=upsert.candidate_key,
                    status=upsert.status,
                    meta_json=copy.deepcopy(upsert.meta_json),
                )
            candidate = self.candidates[candidate_id]
            candidate.traits = self._merge_traits(candidate, upsert)
            if all(existing_id != candidate_id for existing_id, _ in linked):
                linked.append((candidate_id, upsert.quality_passed))
            stored.append(replace(candidate, traits=list(candidate.traits), quality_passed=upsert.quality_passed))
        return stored

    async def list_candidates_by_run(self, run_id: str) -> list[StoredCandidate]:
        return [
            replace(self.candidates[candidate_id], quality_passed=quality_passed)
            for candidate_id, quality_passed in self.run_candidates.get(run_id, [])
        ]

    async def get_source_runtime(self, source_key: str) -> SourceRuntimeRecord | None:
        source = self.sources.get(source_key)
        return copy.deepcopy(source) if source else None

    async def update_source_runtime(self, source_key: str, patch: dict[str, Any]) -> None:
        validate_source_runtime_patch(patch)
        source = self.sources.get(source_key)
        if source is None:
            raise RepositoryNotFoundError(f"source registry row not found: {source_key}")
        for column, value in patch.items():
            setattr(source, column, copy.deepcopy(value))

    async def list_source_health_rows(self, source_keys: list[str] | None = None) -> list[SourceRuntimeRecord]:
        keys = sorted(self.sources) if source_keys is None else [key for key in sorted(self.sources) if key in source_keys]
        return [copy.deepcopy(self.sources[key]) for key in keys]

    async def list_source_rejection_trends(
        self,
        source_keys: list[str],
        *,
        window: timedelta,
        now: datetime,
    ) -> list[RejectionRateTrend]:
        trends: dict[str, RejectionRateTrend] = {}
        recent_start = now - window
        prior_start = now - window * 2
        for source_key, status, reviewed_at in self.reviews:
            if source_key not in source_keys or status not in REVIEWED_CANDIDATE_STATUSES:
                continue
            if reviewed_at < prior_start or reviewed_at > now:
                continue
            trend = trends.setdefault(source_key, RejectionRateTrend(source_key, 0, 0, 0, 0))
            rejected = status == "rejected"
            if reviewed_at >= recent_start:
                trend.recent_reviewed_count += 1
                trend.recent_rejected_count += int(rejected)
            else:
                trend.prior_reviewed_count += 1
                trend.prior_rejected_count += int(rejected)
        return [trends[key] for key in sorted(trends)]

    async def list_draft_links(self) -> list[DraftLink]:
        return list(self.draft_links)

    async def list_candidate_statuses(self, candidate_ids: list[str]) -> list[CandidateStatusRow]:
        return [
            CandidateStatusRow(candidate_id=candidate_id, status=self.candidates[candidate_id].status)
            for candidate_id in candidate_ids
            if candidate_id in self.candidates
        ]

    async def list_success_sync_logs(self, candidate_ids: list[str]) -> list[SyncLogSuccess]:
        wanted = set(candidate_ids)
        return [
            SyncLogSuccess(candidate_id=entry["candidate_id"], target_id=entry["target_id"])
            for entry in self.sync_logs
            if entry["candidate_id"] in wanted
            and entry["target_system"] == APP_DRAFT_TARGET_SYSTEM
            and entry["status"] == "success"
        ]

    async def update_candidate_status(self, candidate_id: str, status: str) -> None:
        if status not in CANDIDATE_STATUSES:
            raise RepositoryValidationError(f"invalid candidate status: {status}")
        candidate = self.candidates.get(candidate_id)
        if candidate is None:
            raise RepositoryNotFoundError("candidate not found")
        candidate.status = status

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
        if candidate_id not in self.candidates:
            raise RepositoryConflictError(f"candidate {candidate_id} does not exist")
        self.sync_logs.append(
            {
                "candidate_id": candidate_id,
                "target_system": target_system,
                "target_id": target_id,
                "status": status,
                "error_text": error_text,
            }
        )

    async def close(self) -> None:
        self.closed = True

    def _transition_page(self, page_id: str, status: str, error_text: str | None) -> None:
        page = self.pages.get(page_id)
        if page is None:
            raise RepositoryNotFoundError("page not found")
        if page.status != "discovered":
            raise RepositoryConflictError(f"page {page_id} is not in discovered state")
        page.status = status
        page.error_text = error_text

    @staticmethod
    def _merge_traits(candidate: StoredCandidate, upsert: CandidateUpsert) -> list:
        merged = {(trait.trait_type_slug, trait.trait_option_slug): trait for trait in candidate.traits}
        for trait in upsert.traits:
            merged[(trait.trait_type_slug, trait.trait_option_slug)] = trait.model_copy(
                update={"source": trait.source or "pipeline"}
            )
        return list(merged.values())
