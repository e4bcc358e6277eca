"""End-to-end tests of the command line entry point against a fake host."""

import json
import os

import pytest

import main
from app_config import ENV_OVERRIDES
from app_io import ToolPaths
from app_types import TestKind

from conftest import FakeRunner
from test_health import LSBLK, host_outputs

SMARTCTL = "/usr/sbin/smartctl"

SMART_IDLE = "Self-test execution status:      (   0)	The previous self-test routine completed\n"

pytestmark = pytest.mark.usefixtures("restore_root_logging")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def host(tmp_path):
    """Scratch host layout: by-id links, loadavg and a config file pointing at them."""
    by_id = tmp_path / "dev" / "disk" / "by-id"
    by_id.mkdir(parents=True)
    for name, node in (("ata-WDC_AAAA", "sda"), ("ata-WDC_BBBB", "sdb")):
        (tmp_path / "dev" / node).touch()
        os.symlink(tmp_path / "dev" / node, by_id / name)

    loadavg = tmp_path / "loadavg"
    loadavg.write_text("0.10 0.20 0.30 1/100 42\n")

    config = {
        "by_id_dir": str(by_id),
        "loadavg_path": str(loadavg),
        "state_file": str(tmp_path / "state" / "hdd_index"),
        "log_dir": str(tmp_path / "logs"),
        "settle_interval_sec": 0,
    }
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(config))

    class Host:
        root = tmp_path
        config_file = config_path
        log_dir = tmp_path / "logs"
        state_file = tmp_path / "state" / "hdd_index"

        @staticmethod
        def device(node):
            return str((tmp_path / "dev" / node).resolve())

    return Host


def use_tools(monkeypatch, tools):
    monkeypatch.setattr(ToolPaths, "resolve", classmethod(lambda cls, search_path: tools))


def events(host):
    path = host.log_dir / "events.ndjson"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class TestBuildConfig:

    def test_command_line_beats_environment_beats_file(self, host, monkeypatch):
        monkeypatch.setenv("TEST_TYPE", "long")
        monkeypatch.setenv("MAX_LOAD", "6")

        args = main.parse_arguments(["--config", str(host.config_file), "--max-load", "1.5"])
        config = main.build_config(args)

        assert config.test_kind == TestKind.LONG
        assert config.max_load == 1.5
        assert config.by_id_dir.endswith("by-id")

    def test_unset_switches_keep_configured_values(self, host):
        args = main.parse_arguments(["--config", str(host.config_file)])
        config = main.build_config(args)
        assert config.rotate_long_tests is True
        assert config.include_nvme_on_long is True

    def test_negative_switches(self, host):
        args = main.parse_arguments(["--config", str(host.config_file), "--no-rotate", "--no-nvme-on-long"])
        config = main.build_config(args)
        assert config.rotate_long_tests is False
        assert config.include_nvme_on_long is False


class TestRun:

    def test_config_info(self, host, monkeypatch, capsys):
        use_tools(monkeypatch, ToolPaths(smartctl=SMARTCTL))

        assert main.run(["--config", str(host.config_file), "--config-info"]) == 0

        out = capsys.readouterr().out
        assert "effective max_concurrent: 2" in out
        assert f"smartctl: {SMARTCTL}" in out
        assert "nvme: not found" in out
        assert not host.log_dir.exists()

    def test_missing_smartctl_aborts_cleanly(self, host, monkeypatch):
        use_tools(monkeypatch, ToolPaths())

        assert main.run(["--config", str(host.config_file)]) == 0

        (event,) = events(host)
        assert event["event_type"] == "run_aborted"
        assert "smartctl" in event["reason"]

    def test_high_load_aborts_cleanly(self, host, monkeypatch):
        use_tools(monkeypatch, ToolPaths(smartctl=SMARTCTL))
        runner = FakeRunner()
        monkeypatch.setattr(main, "CommandRunner", lambda: runner)

        assert main.run(["--config", str(host.config_file), "--max-load", "0.05"]) == 0

        assert [e["event_type"] for e in events(host)] == ["run_aborted"]
        assert not any(argv[1] == "-t" for argv in runner.commands())

    def test_dry_run_previews_without_side_effects(self, host, monkeypatch, capsys):
        use_tools(monkeypatch, ToolPaths(smartctl=SMARTCTL))
        runner = FakeRunner()
        monkeypatch.setattr(main, "CommandRunner", lambda: runner)

        assert main.run(["--config", str(host.config_file), "--type", "long", "--dry-run"]) == 0

        out = capsys.readouterr().out
        assert "Guards: clear" in out
        assert "Max concurrent: 1" in out
        assert "HDD long:" in out and "ata-WDC_AAAA" in out
        assert "ata-WDC_BBBB" not in out
        assert runner.calls == []
        assert not host.state_file.exists()

    def test_short_run_starts_every_disk(self, host, monkeypatch):
        use_tools(monkeypatch, ToolPaths(smartctl=SMARTCTL))
        sda, sdb = host.device("sda"), host.device("sdb")
        runner = FakeRunner({
            (SMARTCTL, "-a", sda): SMART_IDLE,
            (SMARTCTL, "-a", sdb): SMART_IDLE,
            (SMARTCTL, "-t", "short", sda): "Testing has begun.",
            (SMARTCTL, "-t", "short", sdb): "Testing has begun.",
        })
        monkeypatch.setattr(main, "CommandRunner", lambda: runner)

        assert main.run(["--config", str(host.config_file)]) == 0

        started = [argv for argv in runner.commands() if argv[1] == "-t"]
        assert started == [(SMARTCTL, "-t", "short", sda), (SMARTCTL, "-t", "short", sdb)]
        log = events(host)
        assert [e["event_type"] for e in log] == ["run_start", "dispatch", "dispatch", "run_summary"]
        assert log[-1]["started"] == 2
        assert log[-1]["severity"] == "OK"

    def test_long_run_advances_rotation(self, host, monkeypatch):
        use_tools(monkeypatch, ToolPaths(smartctl=SMARTCTL))
        sdb = host.device("sdb")
        runner = FakeRunner({
            (SMARTCTL, "-a", host.device("sda")): SMART_IDLE,
            (SMARTCTL, "-a", sdb): SMART_IDLE,
            (SMARTCTL, "-t", "long", sdb): "Testing has begun.",
        })
        monkeypatch.setattr(main, "CommandRunner", lambda: runner)
        host.state_file.parent.mkdir(parents=True)
        host.state_file.write_text("1\n")

        assert main.run(["--config", str(host.config_file), "--type", "long"]) == 0

        assert [argv for argv in runner.commands() if argv[1] == "-t"] == [(SMARTCTL, "-t", "long", sdb)]
        assert host.state_file.read_text() == "2\n"

    def test_health_report_needs_smartctl(self, host, monkeypatch):
        use_tools(monkeypatch, ToolPaths(lsblk=LSBLK))
        runner = FakeRunner()
        monkeypatch.setattr(main, "CommandRunner", lambda: runner)

        assert main.run(["--config", str(host.config_file), "--health-report"]) == 1
        assert runner.calls == []

    def test_health_report_saves_and_records_event(self, host, monkeypatch, capsys):
        use_tools(monkeypatch, ToolPaths(smartctl=SMARTCTL, lsblk=LSBLK))
        runner = FakeRunner(host_outputs())
        monkeypatch.setattr(main, "CommandRunner", lambda: runner)
        report_dir = host.root / "reports"

        assert main.run(["--config", str(host.config_file), "--health-report",
                         "--report-dir", str(report_dir)]) == 0

        (saved,) = report_dir.glob("report_*.html")
        assert f"Report saved to: {saved}" in capsys.readouterr().out
        assert "ZFS not available on this system." in saved.read_text(encoding="utf-8")
        assert not any(argv[1] == "-t" for argv in runner.commands())
        (event,) = events(host)
        assert event["event_type"] == "health_report"
        assert (event["state"], event["drives"], event["alerts"]) == ("OK", 2, 0)
        assert event["report_path"] == str(saved)

    def test_unexpected_error_exits_nonzero(self, monkeypatch):
        def explode(argv=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(main, "run", explode)
        monkeypatch.setattr(main.logging, "shutdown", lambda: None)

        with pytest.raises(SystemExit) as excinfo:
            main.main()
        assert excinfo.value.code == 1
