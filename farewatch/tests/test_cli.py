from unittest.mock import Mock, patch

import pytest
from click.testing import CliRunner

from farewatch.cli import cli
from farewatch.config import get_settings
from farewatch.db import SqliteStore


@pytest.fixture
def env(tmp_path, monkeypatch):
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("FAREWATCH_DB", str(db_path))
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "cli.log"))
    monkeypatch.setenv("DEFAULT_WATCH_LIMIT", "1")
    get_settings.cache_clear()
    yield SqliteStore(str(db_path))
    get_settings.cache_clear()


def invoke(*args):
    return CliRunner().invoke(cli, list(args))


def add_watch(*extra):
    return invoke(
        "watch", "add", "alice", "ber", "lis",
        "--out", "2030-06-01", "2030-06-05",
        "--threshold", "150",
        *extra,
    )


def test_owner_and_watch_lifecycle(env):
    assert invoke("init-db").exit_code == 0
    assert invoke("owner", "add", "alice", "1001", "--quiet", "23:00-07:00").exit_code == 0

    result = add_watch("--in", "2030-06-10", "2030-06-12")
    assert result.exit_code == 0, result.output
    assert "BER ➔ LIS" in result.output

    watch = env.list_watches("alice")[0]
    assert watch.flight_type == "roundtrip"
    assert watch.inbound is not None
    assert env.get_owner("alice").notification_defaults.quiet_hours.enabled

    result = invoke("watch", "list")
    assert "[active]" in result.output

    assert invoke("watch", "pause", str(watch.id)).exit_code == 0
    assert not env.get_watch(watch.id).is_active
    assert invoke("watch", "resume", str(watch.id)).exit_code == 0
    assert env.get_watch(watch.id).is_active

    assert invoke("watch", "delete", str(watch.id)).exit_code == 0
    assert invoke("watch", "delete", str(watch.id)).exit_code != 0


def test_watch_limit_enforced(env):
    invoke("owner", "add", "alice", "1001")
    assert add_watch().exit_code == 0

    result = add_watch()
    assert result.exit_code != 0
    assert "limit 1" in result.output
    assert len(env.list_watches("alice")) == 1


def test_watch_for_unknown_owner(env):
    invoke("init-db")
    result = add_watch()
    assert result.exit_code != 0
    assert "does not exist" in result.output


def test_bad_quiet_hours(env):
    result = invoke("owner", "add", "alice", "1001", "--quiet", "late")
    assert result.exit_code != 0


def test_preview_dates(env):
    result = invoke(
        "preview-dates",
        "--out", "2030-06-01", "2030-06-11",
        "--in", "2030-06-15", "2030-06-15",
    )
    assert result.exit_code == 0, result.output
    assert "Outbound: 2030-06-01, 2030-06-06, 2030-06-11" in result.output
    assert "Combinations: 3" in result.output


@patch("farewatch.cli.tasks.build_orchestrator")
def test_check_unknown_watch(mock_build, env):
    orch = Mock()
    orch.check_now.return_value = None
    mock_build.return_value = orch

    result = invoke("check", "7")
    assert result.exit_code != 0
    orch.check_now.assert_called_once_with(7)
