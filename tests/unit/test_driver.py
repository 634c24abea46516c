from __future__ import annotations

import pytest

from history_migration.domain.errors import PhaseFailedError
from history_migration.driver import MigrationDriver, run_phase


def _driver(make_table, name: str, records, **kwargs):
    primary, primary_client = make_table("MarginTradingAccountsHistory", page_size=100)
    backup, backup_client = make_table("MarginTradingAccountsHistoryBackup")
    primary_client.prime(records)
    driver = MigrationDriver(name, primary, backup, max_parallelism=4, **kwargs)
    return driver, primary_client, backup_client


@pytest.mark.asyncio
async def test_phase_result_reports_rows_and_timing(make_table, legacy_records):
    driver, _, _ = _driver(make_table, "DEMO", legacy_records[:300])

    result = await driver.convert()

    assert result["env"] == "DEMO"
    assert result["phase"] == "convert"
    assert result["rows"] == 300
    assert result["duration_seconds"] >= 0.0
    assert result["error"] is None


@pytest.mark.asyncio
async def test_convert_logs_single_completion_line(make_table, legacy_records, caplog):
    driver, _, _ = _driver(make_table, "LIVE", legacy_records[:50])
    caplog.set_level("INFO", logger="history_migration.driver")

    await driver.convert()

    finished = [r.getMessage() for r in caplog.records if "finished" in r.getMessage()]
    assert len(finished) == 1
    assert finished[0].startswith("LIVE: Convert finished. Rows: 50; elapsed:")


@pytest.mark.asyncio
async def test_run_phase_runs_environments_side_by_side(make_table, legacy_records):
    demo, demo_primary, _ = _driver(make_table, "DEMO", legacy_records[:200])
    live, live_primary, _ = _driver(make_table, "LIVE", legacy_records[200:500])

    results = await run_phase([demo, live], "convert")

    assert [(r["env"], r["rows"]) for r in results] == [("DEMO", 200), ("LIVE", 300)]
    assert len(demo_primary.rows) == 400
    assert len(live_primary.rows) == 600


@pytest.mark.asyncio
async def test_run_phase_reports_every_environment_when_one_fails(make_table, legacy_records):
    demo, _, _ = _driver(make_table, "DEMO", legacy_records[:100])
    live, _, live_backup = _driver(make_table, "LIVE", legacy_records[:100])
    live_backup.fail_partitions.add(legacy_records[0].partition_key)

    with pytest.raises(PhaseFailedError, match="LIVE") as excinfo:
        await run_phase([demo, live], "convert")

    results = {r["env"]: r for r in excinfo.value.results}
    assert results["DEMO"]["rows"] == 100
    assert results["DEMO"].get("error") is None
    assert "Injected failure" in results["LIVE"]["error"]


@pytest.mark.asyncio
async def test_run_phase_rejects_unknown_phase(make_table):
    with pytest.raises(ValueError, match="Unknown phase"):
        await run_phase([], "drop_everything")
