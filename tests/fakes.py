from __future__ import annotations

from typing import Any

from ingest.schemas.sources import DiscoveredPage, SourceModuleContext
from ingest.services.repository import SourceRuntimeRecord

ACTION_TITLES = (
    "Write a thank you note to a neighbor",
    "Bring coffee to the night shift nurses",
    "Volunteer at the local food pantry",
    "Send a postcard to an old friend",
    "Help a classmate study for exams",
    "Donate books to the school library",
)


class FakeSource:
    """Scriptable source module used across orchestrator and job tests."""

    def __init__(
        self,
        key: str = "fake_source",
        *,
        urls: list[str] | None = None,
        candidates_per_page: int = 1,
        failing_urls: set[str] | None = None,
        contract_violation_urls: set[str] | None = None,
        health_status: str = "ok",
        diagnostics: dict[str, Any] | None = None,
        titles: dict[str, list[str]] | None = None,
    ) -> None:
        self.key = key
        self.display_name = key.replace("_", " ").title()
        self.urls = urls if urls is not None else [f"https://example.org/ideas/{index}" for index in range(1, 4)]
        self.candidates_per_page = candidates_per_page
        self.failing_urls = failing_urls or set()
        self.contract_violation_urls = contract_violation_urls or set()
        self.health_status = health_status
        self.diagnostics = diagnostics or {}
        self.titles = titles or {}
        self.extract_calls: list[str] = []

    async def health_check(self, ctx: SourceModuleContext) -> dict[str, Any]:
        return {
            "status": self.health_status,
            "checked_at": "2026-01-05T10:00:00Z",
            "diagnostics": self.diagnostics,
        }

    async def discover(self, ctx: SourceModuleContext) -> list[dict[str, Any]]:
        return [{"source_key": self.key, "url": url} for url in self.urls]

    async def extract(self, ctx: SourceModuleContext, page: DiscoveredPage) -> list[dict[str, Any]]:
        self.extract_calls.append(page.url)
        if page.url in self.failing_urls:
            raise RuntimeError(f"upstream returned 500 for {page.url}")
        if page.url in self.contract_violation_urls:
            return [{"source_key": self.key, "source_url": page.url, "title": "Missing evidence", "meta": {}}]

        page_index = self.urls.index(page.url)
        titles = self.titles.get(page.url) or [
            ACTION_TITLES[(page_index + offset) % len(ACTION_TITLES)] + f" #{page_index}-{offset}"
            for offset in range(self.candidates_per_page)
        ]
        return [
            {
                "source_key": self.key,
                "source_url": page.url,
                "title": title,
                "description": "A small act that takes under ten minutes.",
                "meta": {"extraction_strategy": "sitemap_html", "detail_url": page.url},
                "traits": [{"trait_type_slug": "effort", "trait_option_slug": "low"}],
            }
            for title in titles
        ]


def fast_runtime(source_key: str = "fake_source", **overrides: Any) -> SourceRuntimeRecord:
    """Registry row tuned so orchestrator tests do not wait on rate limits or backoff."""
    values: dict[str, Any] = {
        "source_key": source_key,
        "display_name": source_key.replace("_", " ").title(),
        "state": "active",
        "approved_for_prod": True,
        "max_rps": 20,
        "max_concurrency": 2,
        "timeout_seconds": 5,
        "strategy_order": ["sitemap_html"],
        "config_version": "cfg-1",
        "metadata_json": {"runtime": {"retry_max_attempts": 1, "retry_backoff_ms": 100}},
    }
    values.update(overrides)
    return SourceRuntimeRecord(**values)
