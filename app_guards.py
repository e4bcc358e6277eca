# app_guards.py
# Version: 1.0.1
# Run-level guards: no pool scrub/resilver in progress and an acceptable 1-minute load
# average. Both fail open when their subsystem is absent or unreadable.

import re
from pathlib import Path
from typing import List, Optional
import logging

from app_types import GuardState
from app_io import CommandRunner, ToolPaths

logger = logging.getLogger(__name__)

POOL_SCAN_ACTIVE = re.compile(r"scan: (scrub|resilver) in progress")
LOAD_UNREADABLE = 0.0

class GuardEvaluator:
    """Read-only go/no-go predicates for a dispatch run."""

    def __init__(self, runner: CommandRunner, tools: ToolPaths, loadavg_path: str = "/proc/loadavg"):
        self.runner = runner
        self.tools = tools
        self.loadavg_path = Path(loadavg_path)

    def active_pool_scan(self) -> Optional[str]:
        """Name of the first pool with a scrub/resilver running, or None."""
        if not self.tools.zpool:
            return None
        listing = self.runner.run([self.tools.zpool, "list", "-H", "-o", "name"])
        if not listing.ok:
            logger.debug(f"zpool list failed (rc={listing.returncode}), treating pools as idle")
            return None
        for pool in (line.strip() for line in listing.stdout.splitlines()):
            if not pool:
                continue
            status = self.runner.run([self.tools.zpool, "status", pool])
            if POOL_SCAN_ACTIVE.search(status.stdout):
                logger.info(f"ZFS scan in progress on pool '{pool}'")
                return pool
        return None

    def no_pool_maintenance_active(self) -> bool:
        return self.active_pool_scan() is None

    def read_load_average(self) -> float:
        """Most recent 1-minute load average; unreadable load counts as 0."""
        try:
            text = self.loadavg_path.read_text(encoding='utf-8')
            return float(text.split()[0])
        except (OSError, ValueError, IndexError) as e:
            logger.debug(f"Could not read load average from {self.loadavg_path}: {e}")
            return LOAD_UNREADABLE

    def load_acceptable(self, ceiling: float) -> bool:
        return self.read_load_average() <= ceiling

    def evaluate(self, load_ceiling: float) -> GuardState:
        """Evaluate both guards once; the result holds for the whole run."""
        reasons: List[str] = []

        busy_pool = self.active_pool_scan()
        if busy_pool is not None:
            reasons.append(f"ZFS scan in progress on pool '{busy_pool}'")

        load = self.read_load_average()
        load_ok = load <= load_ceiling
        if not load_ok:
            reasons.append(f"System load too high ({load} > {load_ceiling})")

        return GuardState(
            pool_idle=busy_pool is None,
            load_ok=load_ok,
            load_average=load,
            reasons=tuple(reasons),
        )
