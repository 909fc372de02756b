from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobKind(str, Enum):
    RUN_SOURCE = "run_source"
    SOURCE_HEALTH = "source_health"
    INCIDENT_ALERTS = "incident_alerts"
    RECONCILE_PROMOTIONS = "reconcile_promotions"
    REPLAY_RUN = "replay_run"
    SOURCE_PROBE = "source_probe"
    LIST_SOURCES = "list_sources"


class JobRequest(BaseModel):
    inputs: dict[str, Any] = Field(default_factory=dict)


class JobResultOut(BaseModel):
    kind: JobKind
    handled: bool
    result: dict[str, Any] = Field(default_factory=dict)
