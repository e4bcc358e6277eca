"""Tests for configuration defaults, the JSON file and environment overrides."""

import json

import pytest

from app_config import AppConfig, ConfigManager
from app_types import TestKind


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "config.json"


class TestAppConfig:

    def test_defaults(self):
        config = AppConfig()
        assert config.test_kind == TestKind.SHORT
        assert config.rotate_long_tests is True
        assert config.include_nvme_on_long is True
        assert config.max_load == 4.0
        assert config.poll_interval_sec == 60.0
        assert config.settle_interval_sec == 120.0

    @pytest.mark.parametrize("overrides,expected", [
        ({}, 2),
        ({"test_type": "long"}, 1),
        ({"test_type": "long", "default_max_concurrent_long": 3}, 3),
        ({"test_type": "short", "max_concurrent": 4}, 4),
        ({"test_type": "long", "max_concurrent": 4}, 4),
    ])
    def test_effective_max_concurrent(self, overrides, expected):
        assert AppConfig(**overrides).effective_max_concurrent() == expected

    def test_invalid_values_fall_back(self):
        config = AppConfig(test_type="medium", max_concurrent=0, default_max_concurrent_long=0,
                           max_load=-1, poll_interval_sec=-5, settle_interval_sec=-5)
        assert config.test_type == "short"
        assert config.max_concurrent is None
        assert config.default_max_concurrent_long == 1
        assert config.max_load == 4.0
        assert config.poll_interval_sec == 60.0
        assert config.settle_interval_sec == 120.0

    def test_health_report_values_fall_back(self):
        config = AppConfig(temp_warn=55, temp_crit=40, selftest_lines=0, keep_reports_days=-1)
        assert config.temp_crit == 55
        assert config.selftest_lines == 25
        assert config.keep_reports_days == 90


class TestConfigManager:

    def test_missing_file_gives_defaults(self, config_file):
        assert ConfigManager(config_file).load_config(environ={}) == AppConfig()

    def test_file_values(self, config_file):
        config_file.write_text(json.dumps({"test_type": "long", "max_load": 2.5, "email": "ops@example.com"}))

        config = ConfigManager(config_file).load_config(environ={})

        assert config.test_kind == TestKind.LONG
        assert config.max_load == 2.5
        assert config.email == "ops@example.com"

    def test_unknown_keys_ignored(self, config_file, caplog):
        config_file.write_text(json.dumps({"test_type": "long", "window_width": 800}))

        config = ConfigManager(config_file).load_config(environ={})

        assert config.test_type == "long"
        assert "window_width" in caplog.text

    @pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
    def test_corrupt_file_backed_up(self, config_file, content):
        config_file.write_text(content)

        config = ConfigManager(config_file).load_config(environ={})

        assert config == AppConfig()
        backups = list(config_file.parent.glob("config.*.backup"))
        assert len(backups) == 1
        assert backups[0].read_text() == content

    def test_environment_overrides_file(self, config_file):
        config_file.write_text(json.dumps({"test_type": "short", "max_concurrent": 2, "email": "a@example.com"}))
        environ = {
            "TEST_TYPE": " LONG ",
            "ROTATE_LONG_TESTS": "false",
            "INCLUDE_NVME_ON_LONG": "0",
            "MAX_CONCURRENT": "3",
            "MAX_LOAD": "8.5",
            "STATE_FILE": "/tmp/state",
            "ONLY_ZFS_MEMBER_DISKS": "yes",
            "SEND_EMAIL": "true",
            "DISCORD_ENABLED": "1",
            "DISCORD_WEBHOOK": "https://discord.example/hook",
        }

        config = ConfigManager(config_file).load_config(environ=environ)

        assert config.test_kind == TestKind.LONG
        assert config.rotate_long_tests is False
        assert config.include_nvme_on_long is False
        assert config.max_concurrent == 3
        assert config.max_load == 8.5
        assert config.state_file == "/tmp/state"
        assert config.only_pool_member_disks is True
        assert config.send_email is True
        assert config.email == "a@example.com"
        assert config.discord_enabled is True
        assert config.discord_webhook == "https://discord.example/hook"

    @pytest.mark.parametrize("environ", [
        {"MAX_CONCURRENT": "three"},
        {"MAX_CONCURRENT": "\u00b2"},
        {"MAX_CONCURRENT": ""},
        {"MAX_LOAD": "high"},
    ])
    def test_invalid_environment_values_ignored(self, config_file, environ):
        config_file.write_text(json.dumps({"max_concurrent": 2, "max_load": 3.0}))

        config = ConfigManager(config_file).load_config(environ=environ)

        assert config.max_concurrent == 2
        assert config.max_load == 3.0

    def test_file_values_are_coerced(self, config_file):
        config_file.write_text(json.dumps({
            "max_concurrent": "3",
            "max_load": "2.5",
            "rotate_long_tests": "no",
            "poll_interval_sec": 30,
        }))

        config = ConfigManager(config_file).load_config(environ={})

        assert config.max_concurrent == 3
        assert config.max_load == 2.5
        assert config.rotate_long_tests is False
        assert config.poll_interval_sec == 30.0

    @pytest.mark.parametrize("key,value", [
        ("max_concurrent", "three"),
        ("max_concurrent", [3]),
        ("max_load", "high"),
        ("max_load", True),
        ("send_email", "sometimes"),
        ("email", 42),
        ("log_max_kb", None),
    ])
    def test_mistyped_file_value_falls_back_to_default(self, config_file, key, value, caplog):
        config_file.write_text(json.dumps({key: value, "test_type": "long"}))

        config = ConfigManager(config_file).load_config(environ={})

        assert getattr(config, key) == getattr(AppConfig(), key)
        assert config.test_type == "long"
        assert f"Invalid value for {key}" in caplog.text

    def test_null_allowed_for_optional_field(self, config_file):
        config_file.write_text(json.dumps({"max_concurrent": None}))
        assert ConfigManager(config_file).load_config(environ={}).max_concurrent is None

    def test_health_report_environment(self, config_file):
        environ = {
            "TEMP_WARN": "40",
            "TEMP_CRIT": "48",
            "REALLOC_WARN": "10",
            "SELFTEST_LINES": "5",
            "REPORT_DIR": "/srv/reports",
            "SUBJECT_PREFIX": "Disk Health",
            "INCLUDE_SMART_ATTRS": "false",
            "DISCORD_ONLY_ON_ALERTS": "no",
            "MAIL_FROM": "smart@nas01.example",
        }

        config = ConfigManager(config_file).load_config(environ=environ)

        assert (config.temp_warn, config.temp_crit, config.realloc_warn) == (40, 48, 10)
        assert config.selftest_lines == 5
        assert config.report_dir == "/srv/reports"
        assert config.report_subject_prefix == "Disk Health"
        assert config.include_smart_attrs is False
        assert config.discord_only_on_alerts is False
        assert config.mail_from == "smart@nas01.example"
