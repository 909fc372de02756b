from __future__ import annotations

import json
from typing import Any

import pytest

from ingest import main as cli


def test_job_inputs_from_run_source_command() -> None:
    args = cli.build_parser().parse_args(["run-source", "kindness_blog", "--respect-cadence", "--quality-threshold", "0.7"])

    kind, inputs = cli.job_inputs(args)

    assert kind == "run_source"
    assert inputs == {
        "source_key": "kindness_blog",
        "respect_cadence": True,
        "force": False,
        "quality_threshold": 0.7,
    }


def test_replay_command_parses_tolerance_json() -> None:
    args = cli.build_parser().parse_args(
        ["replay-run", "run-1", "--no-force", "--tolerance", '{"min_candidate_key_overlap_ratio": 0.8}']
    )

    kind, inputs = cli.job_inputs(args)

    assert kind == "replay_run"
    assert inputs == {"run_id": "run-1", "force": False, "tolerance": {"min_candidate_key_overlap_ratio": 0.8}}


def test_optional_flags_are_omitted() -> None:
    kind, inputs = cli.job_inputs(cli.build_parser().parse_args(["source-health"]))
    assert kind == "source_health"
    assert inputs == {}


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_main_prints_job_result(monkeypatch, capsys) -> None:
    async def fake_run_command(args) -> dict[str, Any]:
        return {"handled": True, "kind": "list_sources", "result": {"sources": []}}

    monkeypatch.setenv("INGEST_OTEL_ENABLED", "false")
    cli.get_settings.cache_clear()
    monkeypatch.setattr(cli, "run_command", fake_run_command)

    exit_code = cli.main(["list-sources"])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out) == {"sources": []}
    cli.get_settings.cache_clear()


def test_main_reports_failures(monkeypatch, capsys) -> None:
    async def failing_run_command(args) -> dict[str, Any]:
        raise RuntimeError("INGEST_DATABASE_URL is required")

    monkeypatch.setenv("INGEST_OTEL_ENABLED", "false")
    cli.get_settings.cache_clear()
    monkeypatch.setattr(cli, "run_command", failing_run_command)

    exit_code = cli.main(["run-source", "kindness_blog"])

    assert exit_code == 1
    assert "INGEST_DATABASE_URL is required" in capsys.readouterr().err
    cli.get_settings.cache_clear()
