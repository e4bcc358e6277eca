# app_core.py
# Version: 1.2.1
# Core dispatch engine for the SMART test scheduler: guard short-circuit, target selection
# (full fleet or one rotating disk per run plus NVMe), a fleet-wide concurrency ceiling
# enforced by polling, and per-device outcome classification.

import time
from typing import List, Optional, Tuple
from dataclasses import dataclass, replace
import logging

from app_config import AppConfig
from app_types import (Device, DeviceClass, DispatchOutcome, OutcomeStatus, RotationError,
                       RunResult, RunSummary, StartResult, TestKind)
from app_devices import DeviceCatalog
from app_guards import GuardEvaluator
from app_adapters import AdapterRegistry
from app_rotation import RotationSelector
from app_utils import format_timespan

logger = logging.getLogger(__name__)

REASON_ALREADY_TESTING = "already under test"
REASON_UNRESOLVED = "unresolved identity"
REASON_UNSUPPORTED = "unsupported device"
REASON_START_FAILED = "adapter rejected/errored"

class Clock:
    """Clock abstraction for testing and consistent timing."""

    def monotonic(self) -> float:
        """Get monotonic time in seconds."""
        return time.monotonic()

    def sleep(self, seconds: float):
        time.sleep(seconds)

class FakeClock:
    """Fake clock for testing. sleep() advances time instead of blocking."""

    def __init__(self, start_time: float = 0.0):
        self._time = start_time
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self._time

    def advance(self, delta: float):
        """Advance fake time."""
        self._time += delta

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.advance(seconds)

@dataclass
class DispatchTarget:
    """A device queued for dispatch and the label prefix used in reports."""
    device: Device
    label: str  # e.g. "HDD long", "SATA short", "NVMe long"

class DispatchEngine:
    """Runs one scheduling pass. Single-threaded; the only suspension points are slot waits."""

    def __init__(self, config: AppConfig, catalog: DeviceCatalog, guards: GuardEvaluator,
                 adapters: AdapterRegistry, rotation: RotationSelector,
                 clock: Optional[Clock] = None, backend_available: bool = True,
                 logging_manager=None):
        self.config = config
        self.catalog = catalog
        self.guards = guards
        self.adapters = adapters
        self.rotation = rotation
        self.clock = clock or Clock()
        self.backend_available = backend_available
        self.logging_manager = logging_manager

        self.kind = config.test_kind
        self.max_concurrent = config.effective_max_concurrent()
        self.poll_interval = config.poll_interval_sec
        self.settle_interval = config.settle_interval_sec

    @property
    def rotation_mode(self) -> bool:
        return self.kind == TestKind.LONG and self.config.rotate_long_tests

    def _abort(self, reason: str, guard_state=None) -> RunResult:
        logger.info(f"Abort: {reason}")
        if self.logging_manager:
            self.logging_manager.log_abort(reason, guard_state)
        return RunResult(aborted=True, reason=reason, guard_state=guard_state)

    def run(self) -> RunResult:
        """Evaluate guards and, if clear, dispatch tests to every target."""
        logger.info("=== SMART Test Scheduler Started ===")
        logger.info(f"TEST_TYPE={self.kind.value}  ROTATE_LONG_TESTS={self.config.rotate_long_tests}  "
                    f"ONLY_ZFS_MEMBER_DISKS={self.config.only_pool_member_disks}  "
                    f"MAX_CONCURRENT={self.max_concurrent}")

        if not self.backend_available:
            return self._abort("smartctl not found (install smartmontools)")

        guard_state = self.guards.evaluate(self.config.max_load)
        if not guard_state.ok:
            return self._abort("; ".join(guard_state.reasons), guard_state)

        if self.logging_manager:
            self.logging_manager.log_run_start(self.kind.value, self.rotation_mode, self.max_concurrent)

        summary = RunSummary(
            test_kind=self.kind,
            rotate_long=self.config.rotate_long_tests,
            include_nvme_on_long=self.config.include_nvme_on_long,
        )
        for target in self.build_targets():
            self.wait_for_slot()
            outcome = self.dispatch(target)
            summary.record(outcome)
            if self.logging_manager:
                self.logging_manager.log_outcome(outcome)
            if (outcome.status == OutcomeStatus.STARTED and self.kind == TestKind.LONG
                    and target.device.device_class == DeviceClass.ROTATING
                    and self.settle_interval > 0):
                logger.info(f"Settling {format_timespan(self.settle_interval)} after long test start")
                self.clock.sleep(self.settle_interval)

        logger.info("=== SMART Test Scheduler Completed ===")
        if self.logging_manager:
            self.logging_manager.log_run_summary(summary)
        return RunResult(aborted=False, summary=summary, guard_state=guard_state)

    def discover(self) -> Tuple[List[Device], List[Device]]:
        """Rotating and NVMe candidates for this run."""
        pool_only = self.config.only_pool_member_disks
        rotating = self.catalog.list_devices(DeviceClass.ROTATING, pool_only)
        nvme = self.catalog.list_devices(DeviceClass.NVME, pool_only)
        logger.info(f"HDD by-id count: {len(rotating)}")
        logger.info(f"NVMe by-id count: {len(nvme)}")
        return rotating, nvme

    def build_targets(self, advance_rotation: bool = True) -> List[DispatchTarget]:
        """Ordered dispatch list. advance_rotation=False previews without touching state."""
        rotating, nvme = self.discover()
        kind = self.kind.value

        if not self.rotation_mode:
            return ([DispatchTarget(d, f"SATA {kind}") for d in rotating]
                    + [DispatchTarget(d, f"NVMe {kind}") for d in nvme])

        targets = []
        try:
            if advance_rotation:
                pick = self.rotation.next_rotation_target(rotating)
            else:
                pick = self.rotation.peek(rotating)
            targets.append(DispatchTarget(pick, f"HDD {kind}"))
        except RotationError:
            logger.warning("WARN: No HDDs discovered for long rotation.")

        if self.config.include_nvme_on_long:
            targets += [DispatchTarget(d, f"NVMe {kind}") for d in nvme]
        return targets

    def wait_for_slot(self):
        """Block until fewer than max_concurrent tests run anywhere in the fleet. No deadline."""
        while True:
            active = self.adapters.count_active(self.catalog.all_devices())
            if active < self.max_concurrent:
                return
            logger.info(f"Waiting for test slots (active: {active}, max: {self.max_concurrent})...")
            self.clock.sleep(self.poll_interval)

    def dispatch(self, target: DispatchTarget) -> DispatchOutcome:
        """Start one test and classify the result. Never raises for device problems."""
        device = target.device
        skip_word = "skip" if device.device_class == DeviceClass.NVME else "busy"

        path = self.catalog.resolver(device.identity)
        if not path:
            logger.warning(f"WARN: cannot resolve {device.identity}, deferring to next run")
            return self._outcome(device, OutcomeStatus.SKIPPED, REASON_UNRESOLVED,
                                 f"{target.label} ({skip_word}): {device.name}")
        if path != device.path:
            device = replace(device, path=path)

        try:
            result = self.adapters.start_test(device, self.kind)
        except Exception as e:
            logger.error(f"ERROR: unexpected failure starting {self.kind.value} on {device.identity}: {e}")
            result = StartResult.START_FAILED

        if result == StartResult.STARTED:
            return self._outcome(device, OutcomeStatus.STARTED, "", f"{target.label}: {device.name}")
        if result == StartResult.ALREADY_TESTING:
            return self._outcome(device, OutcomeStatus.SKIPPED, REASON_ALREADY_TESTING,
                                 f"{target.label} ({skip_word}): {device.name}")
        if result == StartResult.UNSUPPORTED:
            return self._outcome(device, OutcomeStatus.SKIPPED, REASON_UNSUPPORTED,
                                 f"{target.label} ({skip_word}): {device.name}")
        return self._outcome(device, OutcomeStatus.FAILED, REASON_START_FAILED,
                             f"{target.label} (fail): {device.name}")

    def _outcome(self, device: Device, status: OutcomeStatus, reason: str, label: str) -> DispatchOutcome:
        return DispatchOutcome(device=device, kind=self.kind, status=status, reason=reason, label=label)
