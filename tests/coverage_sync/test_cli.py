import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from coverage_sync import cli
from coverage_sync.cli import main


@pytest.fixture(autouse=True)
def _keep_test_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda settings, level=None: None)


def test_tick_command_prints_scheduler_status(tmp_path: Path):
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    result = runner.invoke(
        main,
        ["tick", "--count", "2"],
        env={"CS_DB_PATH": str(db_path), "CS_SLEEP_MS": "0"},
    )

    assert result.exit_code == 0, result.output
    status = json.loads(result.output)
    assert status["tick_count"] == 2
    assert status["pending_jobs"] == 0
    assert db_path.exists()


def test_jobs_command_lists_nothing_on_fresh_database(tmp_path: Path):
    runner = CliRunner()

    result = runner.invoke(
        main, ["jobs"], env={"CS_DB_PATH": str(tmp_path / "cli.db")}
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.output) == []


def test_backfill_rejects_unknown_timeframe(tmp_path: Path):
    runner = CliRunner()

    result = runner.invoke(
        main,
        ["backfill", "BTC/USDT", "7m", "2024-01-01", "2024-01-02"],
        env={"CS_DB_PATH": str(tmp_path / "cli.db")},
    )

    assert result.exit_code != 0


def test_log_settings_reach_logging_setup(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    seen = []
    monkeypatch.setattr(
        cli, "configure_logging", lambda settings, level=None: seen.append((settings, level))
    )
    runner = CliRunner()
    log_file = tmp_path / "logs" / "cli.log"

    result = runner.invoke(
        main,
        ["-v", "jobs"],
        env={
            "CS_DB_PATH": str(tmp_path / "cli.db"),
            "CS_LOG_FILE": str(log_file),
            "CS_LOG_BACKUP_COUNT": "2",
        },
    )

    assert result.exit_code == 0, result.output
    ((settings, level),) = seen
    assert settings.log_file == str(log_file)
    assert settings.log_backup_count == 2
    assert level == "DEBUG"


def test_missing_config_file_is_a_usage_error(tmp_path: Path):
    runner = CliRunner()

    result = runner.invoke(main, ["-c", str(tmp_path / "missing.yaml"), "jobs"])

    assert result.exit_code != 0
    assert "Configuration file not found" in result.output
