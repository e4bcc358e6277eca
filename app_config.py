# app_config.py
# Version: 1.2.0
# Configuration layer for the SMART test scheduler: validated defaults, optional JSON file,
# timestamped backup of corrupt files, and environment overrides using the historical
# cron variable names.

import json
import os
import shutil
import time
from pathlib import Path
from typing import Dict, Any, Optional, Mapping, get_args
from dataclasses import dataclass, fields, Field
import logging

from app_types import TestKind
from app_utils import sha256_head, parse_bool, parse_int, BOOL_STRINGS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("/etc/smart-test-scheduler/config.json")
CRON_SAFE_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_MAX_CONCURRENT_SHORT = 2

@dataclass
class AppConfig:
    """Main application configuration."""
    version: int = 1
    test_type: str = "short"  # "short" or "long"
    rotate_long_tests: bool = True  # long runs test ONE rotating disk per run
    include_nvme_on_long: bool = True
    max_concurrent: Optional[int] = None  # None: 2 for short, default_max_concurrent_long for long
    default_max_concurrent_long: int = 1
    max_load: float = 4.0  # 1-minute load average ceiling
    only_pool_member_disks: bool = False
    state_file: str = "/var/lib/smart-test-scheduler/state_hdd_index"
    log_dir: str = "/var/log/smart-test-scheduler"
    log_max_kb: int = 1024
    log_history_count: int = 5
    log_ndjson: bool = True
    by_id_dir: str = "/dev/disk/by-id"
    loadavg_path: str = "/proc/loadavg"
    search_path: str = CRON_SAFE_PATH
    poll_interval_sec: float = 60.0
    settle_interval_sec: float = 120.0
    email: str = ""
    send_email: bool = False
    discord_webhook: str = ""
    discord_enabled: bool = False
    mail_from: str = ""  # health report sender; root@<host> when empty

    # drive health report
    report_dir: str = "/var/log/smart-test-scheduler/reports"
    keep_reports_days: int = 90
    report_subject_prefix: str = "SMART/ZFS Health Report"
    temp_warn: int = 45  # Celsius
    temp_crit: int = 50
    realloc_warn: int = 5
    pending_warn: int = 1
    include_zfs_report: bool = True
    include_smart_attrs: bool = True
    include_selftest_logs: bool = True
    selftest_lines: int = 25
    discord_only_on_alerts: bool = True  # skip Discord when the host is OK
    discord_trigger_on_warn: bool = True  # False: CRIT only

    def __post_init__(self):
        if self.test_type not in (TestKind.SHORT.value, TestKind.LONG.value):
            logger.warning(f"Invalid test_type: {self.test_type!r}, using 'short'")
            self.test_type = TestKind.SHORT.value
        if self.max_concurrent is not None and self.max_concurrent < 1:
            logger.warning(f"Invalid max_concurrent: {self.max_concurrent}, using default")
            self.max_concurrent = None
        if self.default_max_concurrent_long < 1:
            logger.warning(f"Invalid default_max_concurrent_long: {self.default_max_concurrent_long}, using 1")
            self.default_max_concurrent_long = 1
        if self.max_load <= 0:
            logger.warning(f"Invalid max_load: {self.max_load}, using 4.0")
            self.max_load = 4.0
        if self.poll_interval_sec < 0:
            logger.warning(f"Invalid poll_interval_sec: {self.poll_interval_sec}, using 60")
            self.poll_interval_sec = 60.0
        if self.settle_interval_sec < 0:
            logger.warning(f"Invalid settle_interval_sec: {self.settle_interval_sec}, using 120")
            self.settle_interval_sec = 120.0
        if self.temp_crit < self.temp_warn:
            logger.warning(f"temp_crit {self.temp_crit} below temp_warn {self.temp_warn}, using {self.temp_warn}")
            self.temp_crit = self.temp_warn
        if self.selftest_lines < 1:
            logger.warning(f"Invalid selftest_lines: {self.selftest_lines}, using 25")
            self.selftest_lines = 25
        if self.keep_reports_days < 0:
            logger.warning(f"Invalid keep_reports_days: {self.keep_reports_days}, using 90")
            self.keep_reports_days = 90

    @property
    def test_kind(self) -> TestKind:
        return TestKind(self.test_type)

    def effective_max_concurrent(self) -> int:
        """Concurrency ceiling for this run's test kind."""
        if self.max_concurrent is not None:
            return self.max_concurrent
        if self.test_kind == TestKind.LONG:
            return self.default_max_concurrent_long
        return DEFAULT_MAX_CONCURRENT_SHORT

# env var -> (field, parser)
ENV_OVERRIDES = {
    "TEST_TYPE": ("test_type", lambda v: v.strip().lower()),
    "ROTATE_LONG_TESTS": ("rotate_long_tests", parse_bool),
    "INCLUDE_NVME_ON_LONG": ("include_nvme_on_long", parse_bool),
    "MAX_CONCURRENT": ("max_concurrent", parse_int),
    "DEFAULT_MAX_CONCURRENT_LONG": ("default_max_concurrent_long", parse_int),
    "MAX_LOAD": ("max_load", float),
    "STATE_FILE": ("state_file", str),
    "LOG_DIR": ("log_dir", str),
    "ONLY_ZFS_MEMBER_DISKS": ("only_pool_member_disks", parse_bool),
    "EMAIL": ("email", str),
    "SEND_EMAIL": ("send_email", parse_bool),
    "DISCORD_WEBHOOK": ("discord_webhook", str),
    "DISCORD_ENABLED": ("discord_enabled", parse_bool),
    "MAIL_FROM": ("mail_from", str),
    "REPORT_DIR": ("report_dir", str),
    "KEEP_REPORTS_DAYS": ("keep_reports_days", parse_int),
    "SUBJECT_PREFIX": ("report_subject_prefix", str),
    "TEMP_WARN": ("temp_warn", parse_int),
    "TEMP_CRIT": ("temp_crit", parse_int),
    "REALLOC_WARN": ("realloc_warn", parse_int),
    "PENDING_WARN": ("pending_warn", parse_int),
    "INCLUDE_ZFS_REPORT": ("include_zfs_report", parse_bool),
    "INCLUDE_SMART_ATTRS": ("include_smart_attrs", parse_bool),
    "INCLUDE_SELFTEST_LOGS": ("include_selftest_logs", parse_bool),
    "SELFTEST_LINES": ("selftest_lines", parse_int),
    "DISCORD_ONLY_ON_ALERTS": ("discord_only_on_alerts", parse_bool),
    "DISCORD_TRIGGER_ON_WARN": ("discord_trigger_on_warn", parse_bool),
}

def _field_type(f: Field) -> type:
    """Concrete type of a field, unwrapping Optional[X]."""
    args = [a for a in get_args(f.type) if a is not type(None)]
    return args[0] if args else f.type

def _coerce(f: Field, value: Any) -> Any:
    """Coerce a JSON/env value to the field type; raises ValueError or TypeError when it cannot."""
    target = _field_type(f)
    if value is None:
        if target is not f.type:
            return None
        raise ValueError("null not allowed")
    if target is bool:
        if isinstance(value, bool):
            return value
        if str(value).strip().lower() not in BOOL_STRINGS:
            raise ValueError(f"not a boolean: {value!r}")
        return parse_bool(value)
    if isinstance(value, bool):
        raise TypeError(f"boolean given for {f.name}")
    if target is int:
        if isinstance(value, int):
            return value
        parsed = parse_int(value)
        if parsed is None:
            raise ValueError(f"not an integer: {value!r}")
        return parsed
    if target is float:
        return float(value)
    if target is str:
        if not isinstance(value, str):
            raise TypeError(f"not a string: {value!r}")
        return value
    return value

class ConfigManager:
    """Manages configuration loading and env overrides."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    @property
    def config_path(self) -> Path:
        """Read-only access to config path."""
        return self._config_path

    def load_config(self, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
        """Load configuration file (if any), then apply environment overrides."""
        if environ is None:
            environ = os.environ

        if not self.config_path.exists():
            logger.debug(f"No config file at {self.config_path}, using defaults")
            data: Dict[str, Any] = {}
        else:
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("top-level JSON value must be an object")
                self._log_boot_banner()
            except (json.JSONDecodeError, ValueError) as e:
                logger.error(f"Failed to load config: {e}")
                logger.info("Creating backup and using default config")
                self._backup_corrupted_config()
                data = {}

        data = self._apply_env_overrides(data, environ)
        return self._dict_to_config(data)

    def _log_boot_banner(self):
        """Log config path with sha256 head."""
        sha256_head_str = sha256_head(self.config_path, 16)
        logger.info(f"Using config at {self.config_path} (sha256:{sha256_head_str})")

    def _apply_env_overrides(self, data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
        """Overlay recognised environment variables onto the file data."""
        data = dict(data)
        for env_name, (field_name, parser) in ENV_OVERRIDES.items():
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                value = parser(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {env_name}={raw!r}")
                continue
            if value is None:
                logger.warning(f"Ignoring invalid {env_name}={raw!r}")
                continue
            data[field_name] = value
        return data

    def _dict_to_config(self, data: Dict[str, Any]) -> AppConfig:
        """Convert dictionary to AppConfig object, dropping unknown keys and mistyped values."""
        known = {f.name: f for f in fields(AppConfig)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        values = {}
        for key, raw in data.items():
            if key not in known:
                continue
            try:
                values[key] = _coerce(known[key], raw)
            except (TypeError, ValueError):
                logger.warning(f"Invalid value for {key}: {raw!r}, using default")
        return AppConfig(**values)

    def _backup_corrupted_config(self):
        """Backup corrupted config file with timestamp."""
        if self.config_path.exists():
            # config.json -> config.YYYY-MM-DDTHH-MM-SS.backup
            timestamp = time.strftime("%Y-%m-%dT%H-%M-%S")
            backup_path = self.config_path.with_suffix(f'.{timestamp}.backup')
            try:
                shutil.copy2(self.config_path, backup_path)
                logger.info(f"Backed up corrupted config to {backup_path}")
            except OSError as e:
                logger.error(f"Failed to backup corrupted config: {e}")

