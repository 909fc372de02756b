from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from pydantic import BaseModel

from ingest.core.urls import is_http_url
from ingest.core.values import parse_timestamp
from ingest.schemas.sources import (
    DiscoveredPage,
    ExtractedCandidate,
    SourceHealthCheckResult,
    SourceModuleContext,
    TraitHint,
)

EVIDENCE_META_KEYS = (
    "source_evidence",
    "selector_path",
    "node_key",
    "document_region",
    "listing_url",
    "detail_url",
)
HEALTH_STATUSES = {"ok", "degraded", "failed"}


class SourceContractError(Exception):
    """Raised when a source module or its output violates the module contract."""


class SourceModule(Protocol):
    key: str
    display_name: str

    async def discover(self, ctx: SourceModuleContext) -> Sequence[Any]: ...

    async def extract(self, ctx: SourceModuleContext, page: DiscoveredPage) -> Sequence[Any]: ...

    async def health_check(self, ctx: SourceModuleContext) -> Any: ...


def assert_source_module_contract(source: Any) -> None:
    key = _require_text(getattr(source, "key", None), "source.key")
    _require_text(getattr(source, "display_name", None), f'source "{key}" display_name')
    for method in ("discover", "extract", "health_check"):
        if not callable(getattr(source, method, None)):
            raise SourceContractError(f'source "{key}" is missing {method}()')


def assert_health_check_result(source_key: str, result: Any) -> SourceHealthCheckResult:
    context = f'source "{source_key}" health_check'
    if not _is_record(result):
        raise SourceContractError(f"{context} must return an object")

    status = _get(result, "status")
    if status not in HEALTH_STATUSES:
        raise SourceContractError(f"{context} returned invalid status {status!r}")

    checked_at = _require_text(_get(result, "checked_at"), f"{context}.checked_at")
    if parse_timestamp(checked_at) is None:
        raise SourceContractError(f"{context}.checked_at must be a valid ISO datetime string")

    diagnostics = _get(result, "diagnostics")
    if not isinstance(diagnostics, Mapping):
        raise SourceContractError(f"{context}.diagnostics must be an object")

    return SourceHealthCheckResult(status=status, checked_at=checked_at, diagnostics=dict(diagnostics))


def assert_discovered_pages(source_key: str, pages: Any) -> list[DiscoveredPage]:
    context = f'source "{source_key}" discover()'
    if not _is_sequence(pages):
        raise SourceContractError(f"{context} must return a list")

    validated: list[DiscoveredPage] = []
    for index, page in enumerate(pages):
        if not _is_record(page):
            raise SourceContractError(f"{context} returned invalid page at index {index}")
        page_source_key = _get(page, "source_key")
        if page_source_key != source_key:
            raise SourceContractError(
                f'{context} returned page with mismatched source_key "{page_source_key}" at index {index}'
            )
        url = _require_text(_get(page, "url"), f"{context}.url[{index}]")
        _require_http_url(url, f"{context}.url[{index}]")
        validated.append(DiscoveredPage(source_key=source_key, url=url))
    return validated


def assert_extracted_candidates(source_key: str, candidates: Any) -> list[ExtractedCandidate]:
    context = f'source "{source_key}" extract()'
    if not _is_sequence(candidates):
        raise SourceContractError(f"{context} must return a list")

    validated: list[ExtractedCandidate] = []
    for index, candidate in enumerate(candidates):
        if not _is_record(candidate):
            raise SourceContractError(f"{context} returned invalid candidate at index {index}")

        candidate_source_key = _get(candidate, "source_key")
        if candidate_source_key != source_key:
            raise SourceContractError(
                f'{context} returned candidate with mismatched source_key "{candidate_source_key}" at index {index}'
            )

        title = _require_text(_get(candidate, "title"), f"{context} candidate.title[{index}]")
        source_url = _require_text(_get(candidate, "source_url"), f"{context} candidate.source_url[{index}]")
        _require_http_url(source_url, f"{context} candidate.source_url[{index}]")

        optional_text: dict[str, str | None] = {}
        for name in ("description", "reason_snippet", "raw_excerpt"):
            value = _get(candidate, name)
            if value is not None:
                _require_text(value, f"{context} candidate.{name}[{index}]")
            optional_text[name] = value

        meta = _get(candidate, "meta")
        if not isinstance(meta, Mapping):
            raise SourceContractError(f"{context} candidate.meta[{index}] must be an object")
        _require_text(meta.get("extraction_strategy"), f"{context} candidate.meta.extraction_strategy[{index}]")
        if not has_evidence_pointer(meta):
            raise SourceContractError(
                f"{context} candidate.meta[{index}] must include one of: {', '.join(EVIDENCE_META_KEYS)}"
            )

        traits = _get(candidate, "traits")
        if traits is None:
            traits = []
        if not _is_sequence(traits):
            raise SourceContractError(f"{context} candidate.traits[{index}] must be a list")
        trait_hints: list[TraitHint] = []
        for trait_index, trait in enumerate(traits):
            if not _is_record(trait):
                raise SourceContractError(f"{context} candidate.traits[{index}][{trait_index}] must be an object")
            trait_context = f"{context} candidate.traits[{index}][{trait_index}]"
            confidence = _get(trait, "confidence")
            if confidence is not None and (isinstance(confidence, bool) or not isinstance(confidence, (int, float))):
                raise SourceContractError(f"{trait_context}.confidence must be a number")
            trait_source = _get(trait, "source")
            if trait_source is not None and not isinstance(trait_source, str):
                raise SourceContractError(f"{trait_context}.source must be a string")
            trait_hints.append(
                TraitHint(
                    trait_type_slug=_require_text(_get(trait, "trait_type_slug"), f"{trait_context}.trait_type_slug"),
                    trait_option_slug=_require_text(
                        _get(trait, "trait_option_slug"), f"{trait_context}.trait_option_slug"
                    ),
                    confidence=confidence,
                    source=trait_source,
                )
            )

        validated.append(
            ExtractedCandidate(
                source_key=source_key,
                source_url=source_url,
                title=title,
                traits=trait_hints,
                meta=dict(meta),
                **optional_text,
            )
        )
    return validated


def has_evidence_pointer(meta: Mapping[str, Any]) -> bool:
    for key in EVIDENCE_META_KEYS:
        value = meta.get(key)
        if isinstance(value, str):
            if value.strip():
                return True
        elif isinstance(value, (Mapping, list, tuple)):
            return True
    return False


def _get(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def _is_record(item: Any) -> bool:
    return isinstance(item, (Mapping, BaseModel))


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _require_text(value: Any, context: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise SourceContractError(f"{context} must be a non-empty string")
    return value


def _require_http_url(value: str, context: str) -> None:
    if not is_http_url(value):
        raise SourceContractError(f"{context} must be a valid http(s) URL")
