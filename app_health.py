# app_health.py
# Version: 1.0.0
# Drive health collection for the SMART/ZFS health report: whole-disk discovery through
# lsblk, identity/health/attribute parsing of smartctl output, pool health, and the
# OK/WARN/CRIT assessment against a handful of numeric thresholds.

import re
from typing import Iterable, List, Optional, Tuple
from dataclasses import dataclass
import logging

from app_types import Severity
from app_io import CommandRunner, ToolPaths

logger = logging.getLogger(__name__)

EXCLUDED_DEVICE_PREFIXES = ("/dev/zd", "/dev/loop", "/dev/sr")
NVME_DEVICE_PREFIX = "/dev/nvme"
POOL_ONLINE = "ONLINE"
UNKNOWN = "UNKNOWN"

# SATA/SAS attribute ids
ATTR_REALLOCATED = 5
ATTR_POWER_ON_HOURS = 9
ATTR_TEMPERATURE = 194
ATTR_PENDING = 197

MODEL_LABELS = ("Device Model", "Model Number", "Product:")
SERIAL_LABELS = ("Serial Number", "Serial number")
HEALTH_LABELS = ("SMART overall-health", "SMART Health Status", "test result:")
SELFTEST_UNSUPPORTED = re.compile(r"Invalid Field in Command|not supported", re.IGNORECASE)
LEADING_INT = re.compile(r"\d+")

_SEVERITY_RANK = {Severity.OK: 0, Severity.WARN: 1, Severity.CRIT: 2}

@dataclass
class HealthThresholds:
    temp_warn: int = 45
    temp_crit: int = 50
    realloc_warn: int = 5
    pending_warn: int = 1

    @classmethod
    def from_config(cls, config) -> "HealthThresholds":
        return cls(temp_warn=config.temp_warn, temp_crit=config.temp_crit,
                   realloc_warn=config.realloc_warn, pending_warn=config.pending_warn)

@dataclass
class DriveHealth:
    """Point-in-time health readings for one whole disk."""
    device: str  # /dev/sda, /dev/nvme0n1
    drive_type: str  # "SATA", "SCSI/SAS" or "NVMe"
    model: str = ""
    serial: str = ""
    capacity: str = "N/A"
    health: str = ""
    temperature: Optional[int] = None
    power_on_hours: Optional[int] = None
    reallocated: Optional[int] = None
    pending: Optional[int] = None
    media_errors: Optional[int] = None
    percent_used: Optional[int] = None
    attributes_text: str = ""
    selftest_text: str = ""

    @property
    def is_nvme(self) -> bool:
        return self.drive_type == "NVMe"

    @property
    def health_known(self) -> bool:
        return bool(self.health) and self.health != UNKNOWN

    @property
    def health_passed(self) -> bool:
        return "PASSED" in self.health or "OK" in self.health

@dataclass
class PoolHealth:
    name: str
    health: str
    status_text: str = ""

    @property
    def online(self) -> bool:
        return self.health == POOL_ONLINE

def worst(severities: Iterable[Severity]) -> Severity:
    return max(severities, key=_SEVERITY_RANK.__getitem__, default=Severity.OK)

def labelled_value(text: str, labels: Tuple[str, ...]) -> str:
    """Value after the first colon of the first line mentioning any label."""
    for line in text.splitlines():
        if any(label in line for label in labels) and ":" in line:
            return line.split(":", 1)[1].strip()
    return ""

def leading_int(value: str) -> Optional[int]:
    """First run of digits in value, thousands separators ignored."""
    match = LEADING_INT.match(value.strip().replace(",", ""))
    return int(match.group()) if match else None

def smart_attribute_raw(attributes_text: str, attr_id: int) -> Optional[int]:
    """RAW_VALUE column of an ATA attribute row from `smartctl -A`."""
    for line in attributes_text.splitlines():
        parts = line.split()
        if len(parts) >= 10 and parts[0] == str(attr_id):
            return leading_int(parts[9])
    return None

def nvme_value(text: str, label: str) -> Optional[int]:
    """Numeric value of an NVMe health-log line such as 'Percentage Used:  3%'."""
    prefix = f"{label}:"
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith(prefix):
            return leading_int(stripped[len(prefix):])
    return None

def bytes_to_tb(size_bytes: Optional[int]) -> str:
    """Decimal terabytes, e.g. 8001563222016 -> '8.00 TB'."""
    if not size_bytes:
        return "N/A"
    return f"{size_bytes / 1_000_000_000_000:.2f} TB"

def drive_state(drive: DriveHealth, thresholds: HealthThresholds) -> Severity:
    """OK/WARN/CRIT for one drive. Unknown health does not count against it."""
    if drive.health_known and not drive.health_passed:
        return Severity.CRIT

    state = Severity.OK
    if drive.is_nvme:
        if drive.media_errors:
            return Severity.CRIT
    else:
        if drive.pending is not None and drive.pending > thresholds.pending_warn:
            return Severity.CRIT
        if drive.reallocated is not None and drive.reallocated > thresholds.realloc_warn:
            state = Severity.WARN

    if drive.temperature is not None:
        if drive.temperature >= thresholds.temp_crit:
            return Severity.CRIT
        if drive.temperature >= thresholds.temp_warn:
            state = Severity.WARN
    return state

def system_state(drives: List[DriveHealth], pools: Optional[List[PoolHealth]],
                 thresholds: HealthThresholds) -> Severity:
    """Any pool not ONLINE is critical; otherwise the worst drive state."""
    if pools and any(not p.online for p in pools):
        return Severity.CRIT
    return worst(drive_state(d, thresholds) for d in drives)

def critical_alerts(drives: List[DriveHealth], thresholds: HealthThresholds) -> List[str]:
    """Alert lines for failed health, media errors and sector counts over threshold."""
    alerts = []
    for drive in drives:
        if drive.health_known and not drive.health_passed:
            alerts.append(f"Drive {drive.device} health status: {drive.health}")
        if drive.is_nvme:
            if drive.media_errors:
                alerts.append(f"Drive {drive.device} has {drive.media_errors} media errors")
        else:
            if drive.reallocated is not None and drive.reallocated > thresholds.realloc_warn:
                alerts.append(f"Drive {drive.device} has {drive.reallocated} reallocated sectors")
            if drive.pending is not None and drive.pending > thresholds.pending_warn:
                alerts.append(f"Drive {drive.device} has {drive.pending} pending sectors")
    return alerts

class HealthCollector:
    """Reads drive and pool health through lsblk, smartctl and zpool."""

    def __init__(self, runner: CommandRunner, tools: ToolPaths, selftest_lines: int = 25):
        self.runner = runner
        self.tools = tools
        self.selftest_lines = selftest_lines

    def discover_drives(self) -> List[str]:
        """Whole disks from lsblk, without zvols, loop and optical devices."""
        if not self.tools.lsblk:
            logger.warning("lsblk not found; no drives to report")
            return []
        result = self.runner.run([self.tools.lsblk, "-dn", "-o", "NAME,TYPE"])
        if not result.ok:
            logger.warning(f"lsblk failed (rc={result.returncode})")
            return []
        drives = []
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) < 2 or parts[1] != "disk":
                continue
            device = f"/dev/{parts[0]}"
            if device.startswith(EXCLUDED_DEVICE_PREFIXES):
                continue
            drives.append(device)
        return drives

    def capacity(self, device: str) -> str:
        if not self.tools.lsblk:
            return "N/A"
        result = self.runner.run([self.tools.lsblk, "-b", "-dn", "-o", "SIZE", device])
        first = result.stdout.strip().split("\n")[0].strip() if result.ok else ""
        return bytes_to_tb(int(first)) if first.isascii() and first.isdigit() else "N/A"

    def _smartctl(self, *args: str) -> str:
        return self.runner.run([self.tools.smartctl, *args]).stdout

    def collect_drive(self, device: str) -> Optional[DriveHealth]:
        """Readings for one disk; None when smartctl cannot talk to it."""
        info = self.runner.run([self.tools.smartctl, "-i", device])
        if not info.ok:
            logger.debug(f"SMART not available on {device} (rc={info.returncode})")
            return None

        if device.startswith(NVME_DEVICE_PREFIX):
            drive_type = "NVMe"
        elif "SCSI" in info.stdout or "Transport protocol:" in info.stdout:
            drive_type = "SCSI/SAS"
        else:
            drive_type = "SATA"

        drive = DriveHealth(
            device=device,
            drive_type=drive_type,
            model=labelled_value(info.stdout, MODEL_LABELS),
            serial=labelled_value(info.stdout, SERIAL_LABELS),
            capacity=self.capacity(device),
            health=labelled_value(self._smartctl("-H", device), HEALTH_LABELS),
        )

        attributes = self._smartctl("-A", device)
        if drive.is_nvme:
            full = self._smartctl("-a", device)
            drive.temperature = nvme_value(full, "Temperature")
            drive.percent_used = nvme_value(full, "Percentage Used")
            drive.power_on_hours = nvme_value(full, "Power On Hours")
            drive.media_errors = nvme_value(full, "Media and Data Integrity Errors")
        else:
            drive.temperature = smart_attribute_raw(attributes, ATTR_TEMPERATURE)
            drive.power_on_hours = smart_attribute_raw(attributes, ATTR_POWER_ON_HOURS)
            drive.reallocated = smart_attribute_raw(attributes, ATTR_REALLOCATED)
            drive.pending = smart_attribute_raw(attributes, ATTR_PENDING)
        drive.attributes_text = attributes if attributes.strip() else "SMART attributes not available"

        drive.selftest_text = self.selftest_log(drive)
        return drive

    def selftest_log(self, drive: DriveHealth) -> str:
        """Tail of `smartctl -l selftest`."""
        text = self.runner.run([self.tools.smartctl, "-l", "selftest", drive.device]).stdout
        if drive.is_nvme and SELFTEST_UNSUPPORTED.search(text):
            return "Self-test log not supported by this NVMe device"
        lines = text.rstrip("\n").splitlines()
        return "\n".join(lines[-self.selftest_lines:]) if lines else "No self-test data available"

    def collect(self) -> List[DriveHealth]:
        if not self.tools.smartctl:
            return []
        drives = []
        for device in self.discover_drives():
            drive = self.collect_drive(device)
            if drive is not None:
                drives.append(drive)
        logger.info(f"Collected health for {len(drives)} drive(s)")
        return drives

    def pools(self, with_status: bool = True) -> Optional[List[PoolHealth]]:
        """Health of every pool; None when ZFS is not available."""
        if not self.tools.zpool:
            return None
        listing = self.runner.run([self.tools.zpool, "list", "-H", "-o", "name"])
        if not listing.ok:
            logger.debug(f"zpool list failed (rc={listing.returncode})")
            return []
        pools = []
        for name in (line.strip() for line in listing.stdout.splitlines()):
            if not name:
                continue
            health = self.runner.run([self.tools.zpool, "list", "-H", "-o", "health", name])
            status = self.runner.run([self.tools.zpool, "status", name]).stdout if with_status else ""
            pools.append(PoolHealth(name=name, health=health.stdout.strip() if health.ok else UNKNOWN,
                                    status_text=status))
        return pools

    def pool_listing(self) -> str:
        """Plain `zpool list` table."""
        if not self.tools.zpool:
            return ""
        result = self.runner.run([self.tools.zpool, "list"])
        return result.stdout if result.ok and result.stdout.strip() else "No ZFS pools found"

    def platform_version(self) -> str:
        if not self.tools.pveversion:
            return "N/A"
        result = self.runner.run([self.tools.pveversion])
        return result.stdout.strip().splitlines()[0] if result.ok and result.stdout.strip() else "N/A"
