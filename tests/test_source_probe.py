import asyncio

import httpx
import pytest

from ingest.core.strategies import IngestStrategy
from ingest.jobs.source_probe import (
    ProbeSummary,
    count_dynamic_hints,
    derive_source_key,
    detail_prefix,
    display_name_from_source_key,
    extract_links,
    is_listing_link,
    normalize_probe_input,
    parse_robots_sitemaps,
    parse_sitemap_locations,
    recommend_strategy_order,
    source_probe,
)

ROOT_HTML = """
<html><body><div id="app"></div>
<a href="/ideas/">All ideas</a>
<a href="/ideas/call-a-friend">Call a friend</a>
<a href='/ideas/write-a-note'>Write a note</a>
<link rel="alternate" href="/feed.xml">
<a href="https://other.example/x">Elsewhere</a>
</body></html>
"""
LISTING_HTML = '<a href="/ideas/bake-cookies-3">Bake</a><a href="/ideas/call-a-friend">Call</a>'
SITEMAP_XML = "<urlset><url><loc> https://kind.example/ideas/call-a-friend </loc></url></urlset>"


def _site(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/":
        return httpx.Response(200, html=ROOT_HTML)
    if path == "/ideas/":
        return httpx.Response(200, html=LISTING_HTML)
    if path.startswith("/ideas/"):
        return httpx.Response(200, html="<p>detail</p>")
    if path == "/robots.txt":
        return httpx.Response(200, text="User-agent: *\nSitemap: https://kind.example/sitemap.xml\n")
    if path == "/sitemap.xml":
        return httpx.Response(200, content=SITEMAP_XML, headers={"content-type": "application/xml"})
    return httpx.Response(404, text="not found")


def _probe(handler, url: str = "kind.example", **kwargs):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await source_probe(url, client=client, **kwargs)

    return asyncio.run(scenario())


def test_normalize_probe_input() -> None:
    assert normalize_probe_input("  example.org/path#frag ") == "https://example.org/path"
    assert normalize_probe_input("http://example.org") == "http://example.org/"
    with pytest.raises(ValueError, match="cannot be empty"):
        normalize_probe_input("   ")


def test_source_key_helpers() -> None:
    assert derive_source_key("https://www.Kind-Acts.org/ideas") == "kind_acts_org"
    assert display_name_from_source_key("kind_acts_org") == "Kind Acts Org"


def test_link_and_hint_parsers() -> None:
    assert extract_links(ROOT_HTML, "https://kind.example/")[:2] == [
        "https://kind.example/ideas/",
        "https://kind.example/ideas/call-a-friend",
    ]
    assert parse_robots_sitemaps("Sitemap: https://a.test/s.xml\nsitemap:https://a.test/s.xml") == [
        "https://a.test/s.xml"
    ]
    assert parse_sitemap_locations(SITEMAP_XML) == ["https://kind.example/ideas/call-a-friend"]
    assert count_dynamic_hints(ROOT_HTML) == 1


def test_path_classifiers() -> None:
    assert detail_prefix("/ideas/call-a-friend") == "/ideas"
    assert detail_prefix("/events/2026/charity-run-5k") == "/events/2026"
    assert detail_prefix("/ideas/about") is None
    assert detail_prefix("/docs/guide-1.pdf") is None
    assert detail_prefix("/call-a-friend") is None
    assert is_listing_link("https://kind.example/ideas/")
    assert is_listing_link("https://kind.example/")
    assert not is_listing_link("https://kind.example/ideas.xml")
    assert not is_listing_link("https://kind.example/contact")


def test_recommendation_without_evidence_is_conservative() -> None:
    recommendation = recommend_strategy_order(ProbeSummary())
    assert recommendation.strategy_order[0] is IngestStrategy.API
    assert recommendation.reasoning == ["Weak structural evidence; using conservative default strategy ladder."]
    assert recommendation.confidence == 0.15


def test_headless_bonus_requires_fetched_pages() -> None:
    unreachable = recommend_strategy_order(ProbeSummary(fetched_page_count=2, failed_page_count=2))
    assert unreachable.strategy_order[0] is IngestStrategy.HEADLESS
    assert unreachable.scores[IngestStrategy.HEADLESS] == 2
    assert recommend_strategy_order(ProbeSummary()).scores[IngestStrategy.HEADLESS] == 0


def test_source_probe_crawls_listing_pages_robots_and_sitemap() -> None:
    result = _probe(_site, max_probe_pages=8)

    assert result.source_key == "kind_example"
    assert result.display_name == "Kind Example"
    assert result.root_url == "https://kind.example/"
    assert result.fetch_status == "ok"
    assert result.probe_status == "completed"
    assert [page.url for page in result.pages] == [
        "https://kind.example/",
        "https://kind.example/ideas/",
        "https://kind.example/ideas/call-a-friend",
        "https://kind.example/ideas/write-a-note",
        "https://kind.example/ideas/bake-cookies-3",
        "https://kind.example/robots.txt",
        "https://kind.example/sitemap.xml",
    ]
    assert result.sitemap_hints == [
        "https://kind.example/sitemap.xml",
        "https://kind.example/ideas/call-a-friend",
    ]

    summary = result.summary
    assert summary.detail_patterns == [("/ideas", 3)]
    assert summary.feed_link_count == 1
    assert summary.external_link_count == 1
    assert summary.dynamic_hint_count == 1
    assert result.recommendation.strategy_order[:2] == [IngestStrategy.SITEMAP_HTML, IngestStrategy.FEED]
    payload = result.as_dict()
    assert payload["version"] == "ing030_v1"
    assert payload["scanned_page_count"] == 7


def test_source_probe_respects_page_limit() -> None:
    result = _probe(_site, max_probe_pages=2)
    assert len(result.pages) == 2
    assert result.pages[-1].url == "https://kind.example/ideas/"


def test_source_probe_when_site_is_unreachable() -> None:
    def offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = _probe(offline, "https://down.example", source_key="Down Example")

    assert result.source_key == "down_example"
    assert result.fetch_status == "failed"
    assert result.probe_status == "failed"
    assert [page.url for page in result.pages] == [
        "https://down.example/",
        "https://down.example/robots.txt",
        "https://down.example/sitemap.xml",
    ]
    assert result.pages[0].error == "connection refused"
    assert result.recommendation.strategy_order[0] is IngestStrategy.HEADLESS
    assert "3 pages failed during probe, reducing confidence." in result.recommendation.reasoning
