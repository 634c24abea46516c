"""
Command line entry point: runs the migration phases for the configured environments.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from pathlib import Path
from typing import Dict, List, Optional

import typer

from history_migration.config import DEFAULT_CONFIG_FILE, Settings, load_settings
from history_migration.domain.errors import ConfigurationError, PhaseFailedError
from history_migration.driver import PhaseResult, available_phases, open_driver, run_phase
from history_migration.reporter import print_results
from history_migration.utils.logging import configure_logging, get_logger

app = typer.Typer(help="Account history migration CLI.")

log = get_logger("history_migration")

CONFIG_OPTION = typer.Option(
    Path(DEFAULT_CONFIG_FILE),
    "--config",
    "-c",
    help="Local JSON settings file (optional; env vars and SettingsUrl override it).",
)
ENV_OPTION = typer.Option(
    None,
    "--env",
    "-e",
    help="Environment to migrate (DEMO, LIVE). Repeatable; defaults to every configured one.",
)
NO_WAIT_OPTION = typer.Option(
    False,
    "--no-wait",
    help="Exit right away instead of waiting for 'q' when done.",
)


def _load(config: Path) -> Settings:
    configure_logging()
    settings = asyncio.run(load_settings(config))
    configure_logging(level=settings.log_level, json_logs=settings.json_logs)
    return settings


def _select_envs(settings: Settings, envs: Optional[List[str]]) -> Dict[str, str]:
    configured = settings.environments()
    if not envs:
        return configured
    wanted = [name.upper() for name in envs]
    missing = [name for name in wanted if name not in configured]
    if missing:
        raise ConfigurationError(
            f"Environment(s) {', '.join(missing)} not configured. "
            f"Available: {', '.join(configured) or 'none'}"
        )
    return {name: configured[name] for name in wanted}


async def _run_phase_async(settings: Settings, envs: Dict[str, str], phase: str) -> List[PhaseResult]:
    async with contextlib.AsyncExitStack() as stack:
        drivers = [
            await stack.enter_async_context(open_driver(name, conn, settings))
            for name, conn in envs.items()
        ]
        return await run_phase(drivers, phase)


def _execute(settings: Settings, envs: Dict[str, str], phase: str, results: List[PhaseResult]) -> None:
    typer.echo(f"Running {phase} for {', '.join(envs)}..")
    try:
        results.extend(asyncio.run(_run_phase_async(settings, envs, phase)))
    except PhaseFailedError as exc:
        results.extend(exc.results)
        raise


def _wait_for_quit(no_wait: bool) -> None:
    if no_wait:
        return
    typer.echo("End. Press 'q' to exit.")
    while typer.getchar() != "q":
        typer.echo("End. Press 'q' to exit.")


def _fatal(exc: Exception, results: List[PhaseResult], no_wait: bool) -> None:
    log.critical("TOP LEVEL FAIL", exc_info=exc)
    if results:
        print_results(results)
    _wait_for_quit(no_wait)
    raise typer.Exit(code=1)


@app.command()
def info(config: Path = CONFIG_OPTION) -> None:
    """
    Show effective configuration values.
    """
    settings = _load(config)
    typer.echo(
        f"envs={','.join(settings.environments()) or 'none'} | "
        f"tables={settings.primary_table} -> backup {settings.backup_table} | "
        f"page={settings.page_size} parallelism={settings.max_parallelism} "
        f"progress_step={settings.progress_step}"
    )
    typer.echo("Phases: " + ", ".join(available_phases()))


@app.command()
def migrate(
    config: Path = CONFIG_OPTION,
    env: Optional[List[str]] = ENV_OPTION,
    cleanup: Optional[bool] = typer.Option(
        None,
        "--cleanup/--no-cleanup",
        help="Delete rows left by a previous partial run before converting (asked if omitted).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Don't ask before deleting old rows.",
    ),
    no_wait: bool = NO_WAIT_OPTION,
) -> None:
    """
    Full workflow: optional cleanup, convert, then (after confirmation) remove old rows.
    """
    typer.echo("Start")
    results: List[PhaseResult] = []
    try:
        settings = _load(config)
        envs = _select_envs(settings, env)

        if cleanup is None:
            cleanup = typer.confirm(
                "Delete rows left by a previous partial run (cleanup) first?", default=False
            )
        if cleanup:
            _execute(settings, envs, "cleanup", results)

        _execute(settings, envs, "convert", results)

        if yes or typer.confirm("Convert finished. Delete the old rows now?", default=False):
            _execute(settings, envs, "remove_old", results)
        else:
            typer.echo("Old rows kept; run 'remove-old' when ready.")
    except Exception as exc:  # noqa: BLE001 - top level: log as fatal and wait for the operator
        _fatal(exc, results, no_wait)

    print_results(results)
    _wait_for_quit(no_wait)


def _single_phase(phase: str, config: Path, env: Optional[List[str]], no_wait: bool) -> None:
    results: List[PhaseResult] = []
    try:
        settings = _load(config)
        _execute(settings, _select_envs(settings, env), phase, results)
    except Exception as exc:  # noqa: BLE001 - top level: log as fatal and wait for the operator
        _fatal(exc, results, no_wait)
    print_results(results)
    _wait_for_quit(no_wait)


@app.command("cleanup")
def cleanup_command(
    config: Path = CONFIG_OPTION,
    env: Optional[List[str]] = ENV_OPTION,
    no_wait: bool = NO_WAIT_OPTION,
) -> None:
    """
    Delete already converted rows from the primary table.
    """
    _single_phase("cleanup", config, env, no_wait)


@app.command("convert")
def convert_command(
    config: Path = CONFIG_OPTION,
    env: Optional[List[str]] = ENV_OPTION,
    no_wait: bool = NO_WAIT_OPTION,
) -> None:
    """
    Convert legacy rows to the current version and back them up.
    """
    _single_phase("convert", config, env, no_wait)


@app.command("remove-old")
def remove_old_command(
    config: Path = CONFIG_OPTION,
    env: Optional[List[str]] = ENV_OPTION,
    no_wait: bool = NO_WAIT_OPTION,
) -> None:
    """
    Delete legacy rows from the primary table. Run only after convert finished everywhere.
    """
    _single_phase("remove_old", config, env, no_wait)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
