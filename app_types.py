# app_types.py
# Version: 1.0.2
# Shared type definitions for the SMART test scheduler to avoid circular imports,
# including dispatch outcomes and the per-run summary handed to reporters.

import os
from typing import List, Optional
from dataclasses import dataclass, field
from enum import Enum

class DeviceClass(Enum):
    ROTATING = "rotating"
    NVME = "nvme"

class TestKind(Enum):
    __test__ = False  # not a pytest test class

    SHORT = "short"
    LONG = "long"

class StartResult(Enum):
    STARTED = "STARTED"
    ALREADY_TESTING = "ALREADY_TESTING"
    UNSUPPORTED = "UNSUPPORTED"
    START_FAILED = "START_FAILED"

class OutcomeStatus(Enum):
    STARTED = "started"
    SKIPPED = "skipped"
    FAILED = "failed"

class Severity(Enum):
    OK = "OK"
    WARN = "WARN"
    CRIT = "CRIT"

class SchedulerError(Exception):
    """Base error for the scheduler."""

class ConfigurationError(SchedulerError):
    """Invalid or unusable configuration."""

class RotationError(ConfigurationError):
    """No rotation candidates available."""

@dataclass(frozen=True)
class Device:
    """A disk addressed by its stable by-id identity."""
    identity: str  # /dev/disk/by-id/<name>
    device_class: DeviceClass
    path: Optional[str] = None  # resolved node, e.g. /dev/sda

    @property
    def name(self) -> str:
        return os.path.basename(self.identity)

@dataclass(frozen=True)
class GuardState:
    """Go/no-go decision for a run, evaluated once."""
    pool_idle: bool
    load_ok: bool
    load_average: float = 0.0
    reasons: tuple = ()

    @property
    def ok(self) -> bool:
        return self.pool_idle and self.load_ok

@dataclass
class DispatchOutcome:
    """Result of one dispatch attempt."""
    device: Device
    kind: TestKind
    status: OutcomeStatus
    reason: str = ""
    label: str = ""

@dataclass
class RunSummary:
    """Counts and ordered item lists for one dispatch run."""
    test_kind: TestKind
    rotate_long: bool = False
    include_nvme_on_long: bool = False
    outcomes: List[DispatchOutcome] = field(default_factory=list)

    def record(self, outcome: DispatchOutcome):
        self.outcomes.append(outcome)

    def _items(self, status: OutcomeStatus) -> List[str]:
        return [o.label for o in self.outcomes if o.status == status]

    @property
    def started(self) -> List[str]:
        return self._items(OutcomeStatus.STARTED)

    @property
    def skipped(self) -> List[str]:
        return self._items(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._items(OutcomeStatus.FAILED)

    @property
    def severity(self) -> Severity:
        return severity_for(len(self.failed), len(self.skipped))

def severity_for(failed: int, skipped: int) -> Severity:
    """Derive run severity from outcome counts alone."""
    if failed > 0:
        return Severity.CRIT
    if skipped > 0:
        return Severity.WARN
    return Severity.OK

@dataclass
class RunResult:
    """What a run produced: either an abort reason or a summary."""
    aborted: bool
    reason: str = ""
    summary: Optional[RunSummary] = None
    guard_state: Optional[GuardState] = None
