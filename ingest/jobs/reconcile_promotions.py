from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace

from ingest.core.values import to_iso, utc_now
from ingest.services.repository import (
    APP_DRAFT_TARGET_SYSTEM,
    CandidateStatusRow,
    DraftLink,
    DurableStore,
    RepositoryError,
    SyncLogSuccess,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PROMOTED_STATUS = "pushed_to_studio"
DEFAULT_SPIKE_THRESHOLD = 25


@dataclass(slots=True, frozen=True)
class SyncLogRepair:
    candidate_id: str
    draft_id: str


@dataclass(slots=True)
class PromotionReconciliationPlan:
    scanned_draft_count: int
    missing_candidate_count: int
    status_repair_candidate_ids: list[str] = field(default_factory=list)
    sync_log_repairs: list[SyncLogRepair] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned_draft_count": self.scanned_draft_count,
            "missing_candidate_count": self.missing_candidate_count,
            "status_repair_candidate_ids": list(self.status_repair_candidate_ids),
            "sync_log_repairs": [
                {"candidate_id": repair.candidate_id, "draft_id": repair.draft_id} for repair in self.sync_log_repairs
            ],
        }


@dataclass(slots=True)
class ReconcilePromotionsResult:
    started_at: datetime
    finished_at: datetime
    plan: PromotionReconciliationPlan
    repaired_candidate_status_count: int = 0
    repaired_sync_log_count: int = 0
    failed_candidate_status_repairs: int = 0
    failed_sync_log_repairs: int = 0
    spike_threshold: int = DEFAULT_SPIKE_THRESHOLD

    @property
    def total_repairs(self) -> int:
        return self.repaired_candidate_status_count + self.repaired_sync_log_count

    @property
    def spike_detected(self) -> bool:
        return self.total_repairs >= self.spike_threshold

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "scanned_draft_count": self.plan.scanned_draft_count,
            "missing_candidate_count": self.plan.missing_candidate_count,
            "planned_status_repairs": len(self.plan.status_repair_candidate_ids),
            "planned_sync_log_repairs": len(self.plan.sync_log_repairs),
            "repaired_candidate_status_count": self.repaired_candidate_status_count,
            "repaired_sync_log_count": self.repaired_sync_log_count,
            "failed_candidate_status_repairs": self.failed_candidate_status_repairs,
            "failed_sync_log_repairs": self.failed_sync_log_repairs,
            "total_repairs": self.total_repairs,
            "spike_threshold": self.spike_threshold,
            "spike_detected": self.spike_detected,
        }


def build_promotion_reconciliation_plan(
    drafts: list[DraftLink],
    candidates: list[CandidateStatusRow],
    success_logs: list[SyncLogSuccess],
) -> PromotionReconciliationPlan:
    """Plan status and sync-log repairs for drafts whose promotion was not fully recorded.

    A success log row with a null target never satisfies a draft pairing.
    """
    status_by_candidate = {candidate.candidate_id: candidate.status for candidate in candidates}
    targets_by_candidate: dict[str, set[str]] = {}
    for log in success_logs:
        if log.target_id:
            targets_by_candidate.setdefault(log.candidate_id, set()).add(log.target_id)

    missing = 0
    status_repairs: dict[str, None] = {}
    sync_repairs: dict[SyncLogRepair, None] = {}
    for draft in drafts:
        if draft.candidate_id not in status_by_candidate:
            missing += 1
            continue
        if status_by_candidate[draft.candidate_id] != PROMOTED_STATUS:
            status_repairs[draft.candidate_id] = None
        if draft.draft_id not in targets_by_candidate.get(draft.candidate_id, set()):
            sync_repairs[SyncLogRepair(candidate_id=draft.candidate_id, draft_id=draft.draft_id)] = None

    return PromotionReconciliationPlan(
        scanned_draft_count=len(drafts),
        missing_candidate_count=missing,
        status_repair_candidate_ids=list(status_repairs),
        sync_log_repairs=list(sync_repairs),
    )


async def reconcile_promotions(
    store: DurableStore,
    *,
    spike_threshold: int = DEFAULT_SPIKE_THRESHOLD,
) -> ReconcilePromotionsResult:
    started_at = utc_now()
    with tracer.start_as_current_span("ingest.reconcile_promotions") as span:
        drafts = await store.list_draft_links()
        candidate_ids = list(dict.fromkeys(draft.candidate_id for draft in drafts))
        candidates = await store.list_candidate_statuses(candidate_ids)
        success_logs = await store.list_success_sync_logs(candidate_ids)
        plan = build_promotion_reconciliation_plan(drafts, candidates, success_logs)

        draft_by_candidate: dict[str, str] = {}
        for draft in drafts:
            draft_by_candidate.setdefault(draft.candidate_id, draft.draft_id)

        result = ReconcilePromotionsResult(
            started_at=started_at,
            finished_at=started_at,
            plan=plan,
            spike_threshold=spike_threshold,
        )

        for candidate_id in plan.status_repair_candidate_ids:
            try:
                await store.update_candidate_status(candidate_id, PROMOTED_STATUS)
            except RepositoryError as exc:
                result.failed_candidate_status_repairs += 1
                logger.error(
                    "promotion reconciliation failed to repair candidate status candidate_id=%s error=%s",
                    candidate_id,
                    exc,
                )
                continue
            result.repaired_candidate_status_count += 1
            logger.info(
                "promotion reconciliation repaired candidate status candidate_id=%s draft_id=%s",
                candidate_id,
                draft_by_candidate.get(candidate_id),
            )

        for repair in plan.sync_log_repairs:
            try:
                await store.write_sync_log(
                    candidate_id=repair.candidate_id,
                    target_system=APP_DRAFT_TARGET_SYSTEM,
                    target_id=repair.draft_id,
                    status="success",
                )
            except RepositoryError as exc:
                result.failed_sync_log_repairs += 1
                logger.error(
                    "promotion reconciliation failed to repair sync log candidate_id=%s draft_id=%s error=%s",
                    repair.candidate_id,
                    repair.draft_id,
                    exc,
                )
                continue
            result.repaired_sync_log_count += 1
            logger.info(
                "promotion reconciliation repaired sync log candidate_id=%s draft_id=%s",
                repair.candidate_id,
                repair.draft_id,
            )

        if result.spike_detected:
            logger.warning(
                "promotion reconciliation repair spike detected total_repairs=%s spike_threshold=%s scanned=%s",
                result.total_repairs,
                spike_threshold,
                plan.scanned_draft_count,
            )

        result.finished_at = utc_now()
        span.set_attribute("ingest.total_repairs", result.total_repairs)
        logger.info(
            "promotion reconciliation completed scanned=%s missing=%s repaired=%s failed=%s",
            plan.scanned_draft_count,
            plan.missing_candidate_count,
            result.total_repairs,
            result.failed_candidate_status_repairs + result.failed_sync_log_repairs,
        )
        return result
