from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List

import pytest
from typer.testing import CliRunner

from history_migration import main as cli

runner = CliRunner()

ENV = {"MtBackend__MarginTradingDemo__Db__HistoryConnString": "UseDevelopmentStorage=true"}


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "appsettings.dev.json"
    path.write_text(json.dumps({"Migration": {"MaxParallelism": 3}}), encoding="utf-8")
    return path


@pytest.fixture
def phase_calls(monkeypatch) -> List[str]:
    calls: List[str] = []

    async def fake_run_phase(settings, envs: Dict[str, str], phase: str):
        calls.append(phase)
        return [{"env": name, "phase": phase, "rows": 10, "error": None} for name in envs]

    monkeypatch.setattr(cli, "_run_phase_async", fake_run_phase)
    return calls


def test_info_shows_configured_environments(config_file: Path):
    result = runner.invoke(cli.app, ["info", "--config", str(config_file)], env=ENV)

    assert result.exit_code == 0, result.output
    assert "envs=DEMO" in result.output
    assert "parallelism=3" in result.output
    assert "UseDevelopmentStorage" not in result.output


def test_migrate_runs_phases_in_order(config_file: Path, phase_calls: List[str]):
    result = runner.invoke(
        cli.app,
        ["migrate", "--config", str(config_file), "--cleanup", "--yes", "--no-wait"],
        env=ENV,
    )

    assert result.exit_code == 0, result.output
    assert phase_calls == ["cleanup", "convert", "remove_old"]


def test_migrate_asks_before_cleanup_and_deletion(config_file: Path, phase_calls: List[str]):
    result = runner.invoke(
        cli.app,
        ["migrate", "--config", str(config_file), "--no-wait"],
        env=ENV,
        input="n\nn\n",
    )

    assert result.exit_code == 0, result.output
    assert phase_calls == ["convert"]
    assert "Old rows kept" in result.output


def test_single_phase_command(config_file: Path, phase_calls: List[str]):
    result = runner.invoke(
        cli.app, ["remove-old", "--config", str(config_file), "--no-wait"], env=ENV
    )

    assert result.exit_code == 0, result.output
    assert phase_calls == ["remove_old"]


def test_unknown_environment_is_fatal(config_file: Path, phase_calls: List[str]):
    result = runner.invoke(
        cli.app,
        ["convert", "--config", str(config_file), "--env", "LIVE", "--no-wait"],
        env=ENV,
    )

    assert result.exit_code == 1
    assert phase_calls == []


def test_fatal_error_waits_for_quit_key(config_file: Path, monkeypatch):
    async def broken(settings, envs, phase):
        raise RuntimeError("storage down")

    monkeypatch.setattr(cli, "_run_phase_async", broken)
    keys = iter(["x", "q"])
    monkeypatch.setattr(cli.typer, "getchar", lambda: next(keys))

    result = runner.invoke(cli.app, ["convert", "--config", str(config_file)], env=ENV)

    assert result.exit_code == 1
    assert result.output.count("Press 'q' to exit.") == 2
