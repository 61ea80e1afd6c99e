import logging

import pytest

from ufw_geoblock import main as cli
from ufw_geoblock.errors import PreconditionError
from ufw_geoblock.reconciler import Mode, RunReport

from conftest import FakeFirewall


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text(f"COUNTRY_CODE=se\nLOG_FILE={tmp_path / 'geoblock.log'}\n")
    return path


@pytest.fixture
def fake_run(monkeypatch):
    calls = {}
    fw = FakeFirewall()

    class StubReconciler:
        def __init__(self, config, client):
            calls["config"] = config

        def run(self, mode):
            calls["mode"] = mode
            return RunReport(mode=mode, added=3, fetch_failed=False)

    monkeypatch.setattr(cli, "check_root", lambda: None)
    monkeypatch.setattr(cli, "check_command", lambda name: None)
    monkeypatch.setattr(cli, "UfwClient", lambda ufw_bin: fw)
    monkeypatch.setattr(cli, "RuleReconciler", StubReconciler)
    return calls


def test_update_mode_by_default(env_file, fake_run):
    assert cli.run(["--env-file", str(env_file)]) == 0
    assert fake_run["mode"] is Mode.UPDATE
    assert fake_run["config"].country_code == "se"


def test_init_flag(env_file, fake_run):
    assert cli.run(["--init", "--env-file", str(env_file)]) == 0
    assert fake_run["mode"] is Mode.INIT


def test_log_file_written(env_file, fake_run, tmp_path):
    cli.run(["--env-file", str(env_file)])
    logging.shutdown()
    assert "Added 3 new rules for SE" in (tmp_path / "geoblock.log").read_text()


def test_missing_country_is_precondition_error(tmp_path, fake_run):
    with pytest.raises(PreconditionError):
        cli.run(["--env-file", str(tmp_path / "absent.env"), "--log-file", str(tmp_path / "x.log")])
    assert "mode" not in fake_run


def test_main_exit_codes(monkeypatch):
    def fail():
        raise PreconditionError("This script must be run as root (or using sudo)")

    monkeypatch.setattr(cli, "run", fail)
    with pytest.raises(SystemExit) as excinfo:
        cli.main()
    assert excinfo.value.code == 1

    def interrupted():
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "run", interrupted)
    with pytest.raises(SystemExit) as excinfo:
        cli.main()
    assert excinfo.value.code == 130

    monkeypatch.setattr(cli, "run", lambda: 0)
    with pytest.raises(SystemExit) as excinfo:
        cli.main()
    assert excinfo.value.code == 0


def test_partial_failures_still_exit_zero(env_file, fake_run, monkeypatch):
    class FailingReconciler:
        def __init__(self, config, client):
            pass

        def run(self, mode):
            return RunReport(mode=mode, fetch_failed=True, fetch_error="empty response", delete_failed=2)

    monkeypatch.setattr(cli, "RuleReconciler", FailingReconciler)
    assert cli.run(["--env-file", str(env_file)]) == 0


def test_check_root(monkeypatch):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 1000)
    with pytest.raises(PreconditionError):
        cli.check_root()
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    cli.check_root()


def test_check_command(monkeypatch):
    monkeypatch.setattr(cli.shutil, "which", lambda name: None)
    with pytest.raises(PreconditionError, match="ufw"):
        cli.check_command("ufw")
