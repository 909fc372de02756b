import asyncio

import pytest

from ingest.schemas.sources import TraitHint
from ingest.services.repository import (
    MAX_PAGE_ERROR_LENGTH,
    CandidateUpsert,
    PostgresRepository,
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    truncate_error,
    validate_source_runtime_patch,
)
from ingest.services.store import InMemoryStore
from tests.fakes import fast_runtime


def _repository(database_url: str | None = None) -> PostgresRepository:
    return PostgresRepository(
        database_url=database_url,
        app_database_url=None,
        min_pool_size=1,
        max_pool_size=2,
        command_timeout_seconds=1.0,
        page_size=100,
    )


def _upsert(key: str, *, passed: bool = True, traits: list[TraitHint] | None = None) -> CandidateUpsert:
    return CandidateUpsert(
        source_key="fake_source",
        source_url="https://example.org/ideas/1",
        title=f"Write note {key}",
        description=None,
        reason_snippet=None,
        raw_excerpt=None,
        candidate_key=key,
        status="curated" if passed else "quality_filtered",
        quality_passed=passed,
        quality_score=1.0 if passed else 0.2,
        meta_json={"extraction_strategy": "sitemap_html"},
        traits=traits or [],
    )


def test_source_runtime_patch_validation() -> None:
    assert validate_source_runtime_patch({"state": "degraded", "cadence": None}) == {
        "state": "degraded",
        "cadence": None,
    }
    with pytest.raises(RepositoryValidationError, match="unsupported source runtime fields"):
        validate_source_runtime_patch({"display_name": "nope"})
    with pytest.raises(RepositoryValidationError, match="invalid source state"):
        validate_source_runtime_patch({"state": "broken"})


def test_truncate_error() -> None:
    assert len(truncate_error("x" * (MAX_PAGE_ERROR_LENGTH + 50))) == MAX_PAGE_ERROR_LENGTH
    assert truncate_error("short") == "short"


def test_repository_without_database_url_is_unavailable() -> None:
    repository = _repository()
    with pytest.raises(RepositoryUnavailableError, match="INGEST_DATABASE_URL"):
        asyncio.run(repository.create_run("fake_source"))
    with pytest.raises(RepositoryUnavailableError, match="INGEST_APP_DATABASE_URL"):
        asyncio.run(repository.list_draft_links())
    asyncio.run(repository.close())


def test_finish_run_only_once() -> None:
    store = InMemoryStore([fast_runtime()])

    async def scenario() -> None:
        run = await store.create_run("fake_source", {"mode": "normal"})
        await store.finish_run(run.id, "success", {"mode": "normal"})
        with pytest.raises(RepositoryConflictError):
            await store.finish_run(run.id, "failed", {})
        with pytest.raises(RepositoryValidationError):
            await store.finish_run(run.id, "running", {})

    asyncio.run(scenario())


def test_page_transitions_leave_discovered_state_once() -> None:
    store = InMemoryStore([fast_runtime()])

    async def scenario() -> None:
        run = await store.create_run("fake_source")
        (page,) = await store.insert_discovered_pages(run.id, "fake_source", ["https://example.org/ideas/1"])
        await store.mark_page_failed(page.id, "boom " * 1000)
        with pytest.raises(RepositoryConflictError):
            await store.mark_page_extracted(page.id)
        assert len(store.pages[page.id].error_text) == MAX_PAGE_ERROR_LENGTH

    asyncio.run(scenario())


def test_upsert_deduplicates_by_key_and_links_each_run() -> None:
    store = InMemoryStore([fast_runtime()])

    async def scenario() -> None:
        first = await store.create_run("fake_source")
        second = await store.create_run("fake_source")
        await store.upsert_candidates(first.id, None, [_upsert("k1"), _upsert("k2", passed=False)])
        stored = await store.upsert_candidates(
            second.id,
            None,
            [_upsert("k1", traits=[TraitHint(trait_type_slug="effort", trait_option_slug="low")])],
        )

        assert len(store.candidates) == 2
        assert stored[0].run_id == first.id
        assert stored[0].traits[0].source == "pipeline"
        assert [c.candidate_key for c in await store.list_candidates_by_run(second.id)] == ["k1"]
        filtered = [c for c in await store.list_candidates_by_run(first.id) if c.is_quality_filtered]
        assert [c.candidate_key for c in filtered] == ["k2"]

    asyncio.run(scenario())


def test_update_source_runtime_rejects_unknown_columns() -> None:
    store = InMemoryStore([fast_runtime()])
    with pytest.raises(RepositoryValidationError):
        asyncio.run(store.update_source_runtime("fake_source", {"max_rps": 5}))
