from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from ingest.core.values import parse_timestamp, to_iso, utc_now

DEGRADED_MIN_INTERVAL = timedelta(days=7)
DEFAULT_DEGRADED_CADENCE = "FREQ=WEEKLY;INTERVAL=1;BYDAY=SUN;BYHOUR=2;BYMINUTE=0"

_FREQUENCY_UNITS = {
    "HOURLY": timedelta(hours=1),
    "DAILY": timedelta(days=1),
    "WEEKLY": timedelta(weeks=1),
}


@dataclass(slots=True)
class CadenceEvaluation:
    cadence: str | None
    min_interval: timedelta | None
    is_due: bool
    reason: str
    next_run_at: datetime | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "cadence": self.cadence,
            "min_interval_seconds": int(self.min_interval.total_seconds()) if self.min_interval else None,
            "is_due": self.is_due,
            "reason": self.reason,
            "next_run_at": to_iso(self.next_run_at) if self.next_run_at else None,
        }


def parse_cadence_tokens(cadence: str) -> dict[str, str]:
    tokens: dict[str, str] = {}
    for token in cadence.split(";"):
        key, separator, value = token.partition("=")
        key = key.strip().upper()
        value = value.strip().upper()
        if separator and key and value:
            tokens[key] = value
    return tokens


def parse_cadence_interval(cadence: str | None) -> timedelta | None:
    """Minimum spacing between runs for an RRULE-like cadence, if recognizable."""
    if not cadence or not cadence.strip():
        return None
    tokens = parse_cadence_tokens(cadence)
    unit = _FREQUENCY_UNITS.get(tokens.get("FREQ", ""))
    if unit is None:
        return None
    try:
        interval = int(tokens.get("INTERVAL", "1"))
    except ValueError:
        return None
    if interval <= 0:
        return None
    return unit * interval


def evaluate_cadence(cadence: str | None, last_run_at: Any, now: datetime | None = None) -> CadenceEvaluation:
    current = now or utc_now()
    if not cadence or not cadence.strip():
        return CadenceEvaluation(cadence, None, True, "no_cadence_configured", None)

    min_interval = parse_cadence_interval(cadence)
    if min_interval is None:
        return CadenceEvaluation(cadence, None, True, "cadence_unparsed_treat_due", None)

    if last_run_at is None or last_run_at == "":
        return CadenceEvaluation(cadence, min_interval, True, "no_last_run", None)

    last_run = parse_timestamp(last_run_at)
    if last_run is None:
        return CadenceEvaluation(cadence, min_interval, True, "invalid_last_run_treat_due", None)

    next_run_at = last_run + min_interval
    due = current >= next_run_at
    return CadenceEvaluation(
        cadence,
        min_interval,
        due,
        "cadence_due" if due else "cadence_not_due",
        next_run_at,
    )


def derive_degraded_cadence(cadence: str | None) -> str:
    """Weekly cadence that keeps the configured day and time-of-day fields."""
    if not cadence or not cadence.strip():
        return DEFAULT_DEGRADED_CADENCE
    tokens = parse_cadence_tokens(cadence)
    by_day = tokens.get("BYDAY", "SUN")
    by_hour = tokens.get("BYHOUR", "2")
    by_minute = tokens.get("BYMINUTE", "0")
    return f"FREQ=WEEKLY;INTERVAL=1;BYDAY={by_day};BYHOUR={by_hour};BYMINUTE={by_minute}"


def needs_cadence_downgrade(cadence: str | None) -> bool:
    interval = parse_cadence_interval(cadence)
    if interval is None:
        return True
    return interval < DEGRADED_MIN_INTERVAL
