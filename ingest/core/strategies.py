from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from ingest.core.urls import url_path


class IngestStrategy(str, Enum):
    API = "api"
    FEED = "feed"
    SITEMAP_HTML = "sitemap_html"
    PDF = "pdf"
    ICS = "ics"
    HEADLESS = "headless"


ALL_STRATEGIES: tuple[IngestStrategy, ...] = tuple(IngestStrategy)
DEFAULT_STRATEGY_ORDER: tuple[IngestStrategy, ...] = (IngestStrategy.SITEMAP_HTML,)
STRUCTURAL_STRATEGIES = frozenset({IngestStrategy.API, IngestStrategy.FEED, IngestStrategy.PDF, IngestStrategy.ICS})

_API_PATH_RE = re.compile(r"(?:^|/)(api|v1|v2|graphql)(?:/|$)")
_SITEMAP_XML_RE = re.compile(r"/sitemap(?:[_-].+)?\.xml$")
_FEED_PATH_RE = re.compile(r"/(feed|rss|atom)(?:/|$)")
_FEED_EXT_RE = re.compile(r"\.(rss|atom|xml)$")
_MEDIA_EXT_RE = re.compile(r"\.(png|jpg|jpeg|gif|svg|webp|mp4|mp3|zip)$")


@dataclass(slots=True, frozen=True)
class UrlShape:
    is_api: bool
    is_feed: bool
    is_pdf: bool
    is_ics: bool
    is_sitemap_xml: bool
    is_media: bool


def parse_strategy(value: object) -> IngestStrategy | None:
    if isinstance(value, IngestStrategy):
        return value
    if not isinstance(value, str):
        return None
    try:
        return IngestStrategy(value.strip().lower())
    except ValueError:
        return None


def normalize_strategy_order(configured: Iterable[object] | None) -> list[IngestStrategy]:
    """Keep recognized strategies in first-seen order; unknown entries are dropped."""
    ordered: list[IngestStrategy] = []
    for entry in configured or ():
        strategy = parse_strategy(entry)
        if strategy is not None and strategy not in ordered:
            ordered.append(strategy)
    return ordered or list(DEFAULT_STRATEGY_ORDER)


def classify_url(url: str) -> UrlShape:
    path = url_path(url)
    is_sitemap_xml = bool(_SITEMAP_XML_RE.search(path))
    return UrlShape(
        is_api=bool(_API_PATH_RE.search(path)) or path.endswith(".json"),
        is_feed=not is_sitemap_xml and bool(_FEED_PATH_RE.search(path) or _FEED_EXT_RE.search(path)),
        is_pdf=path.endswith(".pdf"),
        is_ics=path.endswith(".ics"),
        is_sitemap_xml=is_sitemap_xml,
        is_media=bool(_MEDIA_EXT_RE.search(path)),
    )


def matches_strategy_url(strategy: IngestStrategy, url: str) -> bool:
    shape = classify_url(url)
    if strategy is IngestStrategy.API:
        return shape.is_api
    if strategy is IngestStrategy.FEED:
        return shape.is_feed
    if strategy is IngestStrategy.PDF:
        return shape.is_pdf
    if strategy is IngestStrategy.ICS:
        return shape.is_ics
    if strategy is IngestStrategy.SITEMAP_HTML:
        return not (shape.is_api or shape.is_feed or shape.is_pdf or shape.is_ics)
    return not (shape.is_pdf or shape.is_ics or shape.is_media)
