from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SourceHealthStatus = Literal["ok", "degraded", "failed"]


class TraitHint(BaseModel):
    model_config = ConfigDict(extra="ignore")

    trait_type_slug: str
    trait_option_slug: str
    confidence: float | None = None
    source: str | None = None


class DiscoveredPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source_key: str
    url: str


class ExtractedCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    source_key: str
    source_url: str
    title: str
    description: str | None = None
    reason_snippet: str | None = None
    raw_excerpt: str | None = None
    traits: list[TraitHint] = Field(default_factory=list)
    meta: dict[str, Any] = Field(default_factory=dict)


class SourceHealthCheckResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: SourceHealthStatus
    checked_at: str
    diagnostics: dict[str, Any] = Field(default_factory=dict)


@dataclass(slots=True)
class SourceModuleContext:
    logger: logging.Logger
    default_locale: str = "en"
