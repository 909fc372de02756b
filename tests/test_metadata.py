from ingest.core.values import as_count, as_float, parse_timestamp, to_iso
from ingest.schemas.metadata import MAX_ALERT_HISTORY, SourceMetadata, prepend_bounded


def test_from_raw_tolerates_legacy_and_malformed_values() -> None:
    metadata = SourceMetadata.from_raw(
        {
            "health": {"consecutive_failures": "2", "health_score": "not-a-number", "skipped_by_cadence": "yes"},
            "strategy_performance": {"feed": {"attempts_total": 4.6}, "broken": "nope"},
            "lifecycle": [],
            "custom_flag": True,
        }
    )
    assert metadata.health.consecutive_failures == 2
    assert metadata.health.health_score is None
    assert metadata.health.skipped_by_cadence is False
    assert metadata.strategy_performance["feed"].attempts_total == 5
    assert "broken" not in metadata.strategy_performance
    assert metadata.lifecycle.alert_history == []
    assert metadata.to_json()["custom_flag"] is True


def test_from_raw_accepts_non_mapping() -> None:
    metadata = SourceMetadata.from_raw(None)
    assert metadata.health.observed_runs == 0
    assert metadata.strategy_performance == {}


def test_prepend_bounded_keeps_newest_first_and_caps_length() -> None:
    history = [{"id": index} for index in range(MAX_ALERT_HISTORY)]
    merged = prepend_bounded([{"id": "new"}], history)
    assert len(merged) == MAX_ALERT_HISTORY
    assert merged[0] == {"id": "new"}
    assert merged[-1] == {"id": MAX_ALERT_HISTORY - 2}


def test_value_readers_never_raise() -> None:
    assert as_float("1.5") == 1.5
    assert as_float(True) is None
    assert as_float(float("nan")) is None
    assert as_count("-3") == 0
    assert as_count(None, default=7) == 7
    assert parse_timestamp("garbage") is None
    assert to_iso(parse_timestamp("2026-01-05T10:00:00")) == "2026-01-05T10:00:00Z"
