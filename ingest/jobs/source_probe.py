"""Onboarding probe for a prospective source.

Fetches a handful of same-origin listing pages, robots.txt and sitemap hints,
summarizes the structural signals and recommends a strategy order. Nothing is
persisted; the result is a report for the operator.
"""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse, urlunparse

import httpx
from opentelemetry import trace

from ingest.core.strategies import ALL_STRATEGIES, IngestStrategy
from ingest.core.urls import absolutize, url_origin
from ingest.core.values import clamp

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PROBE_VERSION = "ing030_v1"
DEFAULT_PROBE_TIMEOUT_SECONDS = 12.0
DEFAULT_MAX_PROBE_PAGES = 6
REQUEST_HEADERS = {"User-Agent": "ingest-pipeline-probe/0.1"}

LISTING_PATH_HINTS = (
    "idea",
    "ideas",
    "campaign",
    "calendar",
    "event",
    "events",
    "practice",
    "resource",
    "resources",
    "tips",
    "kindness",
    "guide",
    "guides",
)
DYNAMIC_HINTS = (
    "__next_data__",
    "data-reactroot",
    "webpack",
    "hydration",
    "window.__initial_state__",
    "ng-app",
    'id="app"',
)

_HREF_RE = re.compile(r"""(?:href|src)=["']([^"']+)["']""", re.IGNORECASE)
_LOC_RE = re.compile(r"<loc>([^<]+)</loc>", re.IGNORECASE)
_ROBOTS_SITEMAP_RE = re.compile(r"^\s*sitemap\s*:\s*(\S+)", re.IGNORECASE)
_SITEMAP_PATH_RE = re.compile(r"/sitemap(?:[_-].+)?\.xml$", re.IGNORECASE)
_FEED_PATH_RE = re.compile(r"(?:^|/)(feed|rss|atom)(?:/|$)")
_FEED_EXT_RE = re.compile(r"\.(rss|atom|xml)$")
_API_PATH_RE = re.compile(r"(?:^|/)(api|v1|v2|graphql)(?:/|$)")
_FILE_LEAF_RE = re.compile(r"\.[a-z0-9]{2,5}$")
_NON_LISTING_EXT_RE = re.compile(r"\.(pdf|ics|png|jpg|jpeg|gif|svg|xml|json)$")
_SOURCE_KEY_RE = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class FetchResult:
    ok: bool
    status: int | None
    content_type: str | None
    body: str
    duration_ms: int
    error: str | None


@dataclass(slots=True)
class ProbePage:
    url: str
    ok: bool
    status: int | None
    content_type: str | None
    duration_ms: int
    error: str | None
    links: list[str] = field(default_factory=list)
    same_origin_links: list[str] = field(default_factory=list)
    dynamic_hint_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "ok": self.ok,
            "status": self.status,
            "content_type": self.content_type,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "link_count": len(self.links),
            "same_origin_link_count": len(self.same_origin_links),
            "dynamic_hint_count": self.dynamic_hint_count,
            "sample_links": self.links[:10],
        }


@dataclass(slots=True)
class ProbeSummary:
    fetched_page_count: int = 0
    successful_page_count: int = 0
    failed_page_count: int = 0
    same_origin_link_count: int = 0
    external_link_count: int = 0
    listing_link_count: int = 0
    detail_patterns: list[tuple[str, int]] = field(default_factory=list)
    feed_link_count: int = 0
    ics_link_count: int = 0
    pdf_link_count: int = 0
    api_link_count: int = 0
    sitemap_hint_count: int = 0
    dynamic_hint_count: int = 0

    @property
    def detail_pattern_count(self) -> int:
        return len(self.detail_patterns)

    def as_dict(self) -> dict[str, Any]:
        return {
            "fetched_page_count": self.fetched_page_count,
            "successful_page_count": self.successful_page_count,
            "failed_page_count": self.failed_page_count,
            "same_origin_link_count": self.same_origin_link_count,
            "external_link_count": self.external_link_count,
            "listing_link_count": self.listing_link_count,
            "detail_pattern_count": self.detail_pattern_count,
            "detail_patterns": [{"prefix": prefix, "count": count} for prefix, count in self.detail_patterns],
            "feed_link_count": self.feed_link_count,
            "ics_link_count": self.ics_link_count,
            "pdf_link_count": self.pdf_link_count,
            "api_link_count": self.api_link_count,
            "sitemap_hint_count": self.sitemap_hint_count,
            "dynamic_hint_count": self.dynamic_hint_count,
        }


@dataclass(slots=True)
class StrategyRecommendation:
    strategy_order: list[IngestStrategy]
    confidence: float
    scores: dict[IngestStrategy, float]
    reasoning: list[str]

    def as_dict(self) -> dict[str, Any]:
        return {
            "strategy_order": [strategy.value for strategy in self.strategy_order],
            "confidence": self.confidence,
            "scores": {strategy.value: round(score, 4) for strategy, score in self.scores.items()},
            "reasoning": list(self.reasoning),
        }


@dataclass(slots=True)
class SourceProbeResult:
    source_key: str
    display_name: str
    input_url: str
    root_url: str
    source_domain: str
    probe_status: str
    fetch_status: str
    pages: list[ProbePage]
    sitemap_hints: list[str]
    summary: ProbeSummary
    recommendation: StrategyRecommendation
    version: str = PROBE_VERSION

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "source_key": self.source_key,
            "display_name": self.display_name,
            "input_url": self.input_url,
            "root_url": self.root_url,
            "source_domain": self.source_domain,
            "probe_status": self.probe_status,
            "fetch_status": self.fetch_status,
            "scanned_page_count": self.summary.fetched_page_count,
            "successful_page_count": self.summary.successful_page_count,
            "scanned_pages": [page.as_dict() for page in self.pages],
            "sitemap_hints": self.sitemap_hints[:25],
            "structure_summary": self.summary.as_dict(),
            "recommendation": self.recommendation.as_dict(),
        }


def sanitize_source_key(value: str) -> str:
    return _SOURCE_KEY_RE.sub("_", value.lower()).strip("_")


def display_name_from_source_key(source_key: str) -> str:
    return " ".join(part.capitalize() for part in re.split(r"[_-]+", source_key) if part)


def normalize_probe_input(value: str) -> str:
    trimmed = value.strip()
    if not trimmed:
        raise ValueError("source-probe input cannot be empty")
    prefixed = trimmed if re.match(r"^https?://", trimmed, re.IGNORECASE) else f"https://{trimmed}"
    parsed = urlparse(prefixed)
    if not parsed.netloc:
        raise ValueError(f"source-probe input is not a valid URL: {value!r}")
    return urlunparse(parsed._replace(path=parsed.path or "/", fragment=""))


def derive_source_key(input_url: str) -> str:
    host = urlparse(input_url).hostname or ""
    host = re.sub(r"^www\.", "", host, flags=re.IGNORECASE)
    return sanitize_source_key(host) or "source_probe"


def extract_links(html: str, base_url: str) -> list[str]:
    links: dict[str, None] = {}
    for match in _HREF_RE.finditer(html):
        absolute = absolutize(match.group(1), base_url)
        if absolute:
            links[absolute] = None
    return list(links)


def parse_robots_sitemaps(content: str) -> list[str]:
    hints: dict[str, None] = {}
    for line in content.splitlines():
        match = _ROBOTS_SITEMAP_RE.match(line)
        if match:
            hints[match.group(1).strip()] = None
    return list(hints)


def parse_sitemap_locations(content: str) -> list[str]:
    return list(dict.fromkeys(value.strip() for value in _LOC_RE.findall(content) if value.strip()))


def count_dynamic_hints(html: str) -> int:
    lowered = html.lower()
    return sum(1 for hint in DYNAMIC_HINTS if hint in lowered)


def detail_prefix(path: str) -> str | None:
    """Parent path of a slug or id leaf, so sibling detail pages share one prefix."""
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2:
        return None
    leaf = segments[-1]
    if not re.search(r"[-\d]", leaf) or _FILE_LEAF_RE.search(leaf):
        return None
    return "/" + "/".join(segments[:-1])


def is_listing_link(url: str) -> bool:
    path = urlparse(url).path.lower()
    if _NON_LISTING_EXT_RE.search(path):
        return False
    return any(hint in path for hint in LISTING_PATH_HINTS) or path == "/" or len(path) <= 2


def summarize_probe_signals(*, root_origin: str, pages: list[ProbePage], sitemap_hints: list[str]) -> ProbeSummary:
    summary = ProbeSummary(
        fetched_page_count=len(pages),
        successful_page_count=sum(1 for page in pages if page.ok),
        failed_page_count=sum(1 for page in pages if not page.ok),
        sitemap_hint_count=len(sitemap_hints),
    )
    same_origin: set[str] = set()
    external: set[str] = set()
    prefixes: dict[str, int] = {}

    for page in pages:
        summary.dynamic_hint_count += page.dynamic_hint_count
        for link in page.links:
            if url_origin(link) != root_origin:
                external.add(link)
                continue
            if link in same_origin:
                continue
            same_origin.add(link)

            path = urlparse(link).path.lower()
            if any(hint in path.strip("/") for hint in LISTING_PATH_HINTS):
                summary.listing_link_count += 1
            if _FEED_PATH_RE.search(path) or _FEED_EXT_RE.search(path):
                summary.feed_link_count += 1
            if path.endswith(".ics"):
                summary.ics_link_count += 1
            if path.endswith(".pdf"):
                summary.pdf_link_count += 1
            if _API_PATH_RE.search(path) or path.endswith(".json"):
                summary.api_link_count += 1
            prefix = detail_prefix(path)
            if prefix:
                prefixes[prefix] = prefixes.get(prefix, 0) + 1

    summary.same_origin_link_count = len(same_origin)
    summary.external_link_count = len(external)
    summary.detail_patterns = sorted(
        ((prefix, count) for prefix, count in prefixes.items() if count >= 2),
        key=lambda item: item[1],
        reverse=True,
    )[:8]
    return summary


def recommend_strategy_order(summary: ProbeSummary) -> StrategyRecommendation:
    scores = {strategy: 0.0 for strategy in ALL_STRATEGIES}
    scores[IngestStrategy.API] += summary.api_link_count * 2
    scores[IngestStrategy.FEED] += summary.feed_link_count * 2 + summary.sitemap_hint_count * 0.5
    scores[IngestStrategy.ICS] += summary.ics_link_count * 2.5
    scores[IngestStrategy.PDF] += summary.pdf_link_count * 2.2
    scores[IngestStrategy.SITEMAP_HTML] += (
        summary.listing_link_count * 1.2
        + summary.detail_pattern_count * 2
        + summary.sitemap_hint_count * 1.3
        + (1 if summary.same_origin_link_count > 0 else 0)
    )
    scores[IngestStrategy.HEADLESS] += summary.dynamic_hint_count * 1.8 + (
        2 if summary.fetched_page_count > 0 and summary.successful_page_count == 0 else 0
    )

    # stable sort keeps the canonical order for ties
    ranked = sorted(ALL_STRATEGIES, key=lambda strategy: -scores[strategy])
    positive = [strategy for strategy in ranked if scores[strategy] > 0]
    order = positive + [strategy for strategy in ALL_STRATEGIES if strategy not in positive]

    fetched = summary.fetched_page_count
    coverage = summary.successful_page_count / fetched if fetched else 0.0
    failure_penalty = (summary.failed_page_count / fetched) * 0.25 if fetched else 0.0
    non_zero = sum(1 for score in scores.values() if score > 0)
    raw_confidence = (
        0.15
        + clamp(max(scores.values()) / 10, 0, 1) * 0.45
        + clamp(non_zero / 3, 0, 1) * 0.2
        + clamp(coverage, 0, 1) * 0.2
        + clamp(summary.detail_pattern_count / 3, 0, 1) * 0.1
        - failure_penalty
    )

    reasoning: list[str] = []
    if summary.feed_link_count:
        reasoning.append(f"Detected {summary.feed_link_count} feed-like links.")
    if summary.ics_link_count:
        reasoning.append(f"Detected {summary.ics_link_count} ICS links.")
    if summary.pdf_link_count:
        reasoning.append(f"Detected {summary.pdf_link_count} PDF links.")
    if summary.detail_pattern_count:
        reasoning.append(f"Detected {summary.detail_pattern_count} repeated detail path patterns.")
    if summary.dynamic_hint_count:
        reasoning.append(f"Detected {summary.dynamic_hint_count} dynamic-rendering hints.")
    if summary.failed_page_count:
        reasoning.append(f"{summary.failed_page_count} pages failed during probe, reducing confidence.")
    if not reasoning:
        reasoning.append("Weak structural evidence; using conservative default strategy ladder.")

    return StrategyRecommendation(
        strategy_order=order,
        confidence=round(clamp(raw_confidence, 0.05, 0.99), 4),
        scores=scores,
        reasoning=reasoning,
    )


async def fetch_probe_target(client: httpx.AsyncClient, url: str) -> FetchResult:
    started = time.monotonic()
    try:
        response = await client.get(url, headers=REQUEST_HEADERS)
    except httpx.HTTPError as exc:
        return FetchResult(
            ok=False,
            status=None,
            content_type=None,
            body="",
            duration_ms=int((time.monotonic() - started) * 1000),
            error=str(exc) or exc.__class__.__name__,
        )
    return FetchResult(
        ok=not response.is_error,
        status=response.status_code,
        content_type=response.headers.get("content-type"),
        body=response.text,
        duration_ms=int((time.monotonic() - started) * 1000),
        error=f"HTTP {response.status_code}" if response.is_error else None,
    )


def to_probe_page(url: str, root_origin: str, fetched: FetchResult) -> ProbePage:
    links = extract_links(fetched.body, url) if fetched.body else []
    is_html = "html" in (fetched.content_type or "").lower()
    return ProbePage(
        url=url,
        ok=fetched.ok,
        status=fetched.status,
        content_type=fetched.content_type,
        duration_ms=fetched.duration_ms,
        error=fetched.error,
        links=links,
        same_origin_links=[link for link in links if url_origin(link) == root_origin],
        dynamic_hint_count=count_dynamic_hints(fetched.body) if is_html else 0,
    )


async def source_probe(
    input_url: str,
    *,
    source_key: str | None = None,
    display_name: str | None = None,
    max_probe_pages: int = DEFAULT_MAX_PROBE_PAGES,
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    client: httpx.AsyncClient | None = None,
) -> SourceProbeResult:
    normalized = normalize_probe_input(input_url)
    root_origin = url_origin(normalized)
    root_url = f"{root_origin}/"
    key = sanitize_source_key(source_key) if source_key else derive_source_key(normalized)
    if not key:
        raise ValueError("Unable to derive source key from input. Provide a source key.")
    name = (display_name or "").strip() or display_name_from_source_key(key)
    page_limit = round(clamp(max_probe_pages, 2, 12))

    with tracer.start_as_current_span("ingest.source_probe") as span:
        span.set_attribute("ingest.source_key", key)
        if client is not None:
            pages, hints = await _crawl(client, root_url, root_origin, page_limit, key)
        else:
            async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as temp_client:
                pages, hints = await _crawl(temp_client, root_url, root_origin, page_limit, key)

        summary = summarize_probe_signals(root_origin=root_origin, pages=pages, sitemap_hints=hints)
        recommendation = recommend_strategy_order(summary)
        if summary.failed_page_count == 0:
            fetch_status = "ok"
        elif summary.successful_page_count > 0:
            fetch_status = "partial"
        else:
            fetch_status = "failed"

        span.set_attribute("ingest.probe_pages", summary.fetched_page_count)
        logger.info(
            "source probe finished source_key=%s pages=%s fetch_status=%s primary=%s confidence=%s",
            key,
            summary.fetched_page_count,
            fetch_status,
            recommendation.strategy_order[0].value,
            recommendation.confidence,
        )
        return SourceProbeResult(
            source_key=key,
            display_name=name,
            input_url=normalized,
            root_url=root_url,
            source_domain=urlparse(root_url).hostname or "",
            probe_status="completed" if summary.successful_page_count > 0 else "failed",
            fetch_status=fetch_status,
            pages=pages,
            sitemap_hints=hints,
            summary=summary,
            recommendation=recommendation,
        )


async def _crawl(
    client: httpx.AsyncClient,
    root_url: str,
    root_origin: str,
    page_limit: int,
    source_key: str,
) -> tuple[list[ProbePage], list[str]]:
    pages: list[ProbePage] = []
    visited: set[str] = set()
    queue: deque[str] = deque([root_url])
    queued = {root_url}
    hints: dict[str, None] = {}

    while queue and len(pages) < page_limit:
        url = queue.popleft()
        queued.discard(url)
        if url in visited:
            continue
        visited.add(url)

        fetched = await fetch_probe_target(client, url)
        page = to_probe_page(url, root_origin, fetched)
        pages.append(page)
        if not page.ok:
            logger.warning(
                "probe page fetch failed source_key=%s url=%s status=%s error=%s",
                source_key,
                url,
                page.status,
                page.error,
            )
            continue

        if url.endswith("/robots.txt"):
            hints.update(dict.fromkeys(parse_robots_sitemaps(fetched.body)))
            continue
        if _SITEMAP_PATH_RE.search(urlparse(url).path) or "xml" in (page.content_type or "").lower():
            hints.update(dict.fromkeys(parse_sitemap_locations(fetched.body)[:50]))
            continue

        for link in page.same_origin_links:
            if is_listing_link(link) and link not in visited and link not in queued:
                queued.add(link)
                queue.append(link)

    robots_url = f"{root_origin}/robots.txt"
    if robots_url not in visited and len(pages) < page_limit:
        fetched = await fetch_probe_target(client, robots_url)
        pages.append(to_probe_page(robots_url, root_origin, fetched))
        visited.add(robots_url)
        if fetched.ok:
            hints.update(dict.fromkeys(parse_robots_sitemaps(fetched.body)))

    if not hints:
        hints[f"{root_origin}/sitemap.xml"] = None

    for sitemap_url in list(hints)[:2]:
        if sitemap_url in visited or len(pages) >= page_limit:
            continue
        fetched = await fetch_probe_target(client, sitemap_url)
        pages.append(to_probe_page(sitemap_url, root_origin, fetched))
        visited.add(sitemap_url)
        if fetched.ok:
            hints.update(dict.fromkeys(parse_sitemap_locations(fetched.body)[:25]))

    return pages, list(hints)
