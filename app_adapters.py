# app_adapters.py
# Version: 1.1.0
# Test capability adapters over the two device classes. All smartctl / nvme-cli text
# matching lives here so the dispatch loop only sees booleans and StartResult values.

import re
from typing import Dict, Iterable, Optional
import logging

from app_types import Device, DeviceClass, StartResult, TestKind
from app_io import CommandRunner, ToolPaths

logger = logging.getLogger(__name__)

SMART_TEST_IN_PROGRESS = re.compile(r"Self-test execution status:.*in progress")
NVME_TEST_IN_PROGRESS = re.compile(r"in progress", re.IGNORECASE)
NVME_SELF_TEST_CODES = {TestKind.SHORT: 1, TestKind.LONG: 2}

class TestAdapter:
    """Capability interface: is a test running, start a test."""

    device_class: DeviceClass

    def __init__(self, runner: CommandRunner, tools: ToolPaths):
        self.runner = runner
        self.tools = tools

    def is_testing(self, device: Device) -> bool:
        raise NotImplementedError

    def _start(self, device: Device, kind: TestKind) -> StartResult:
        raise NotImplementedError

    def start_test(self, device: Device, kind: TestKind) -> StartResult:
        """Start a self-test unless one is already running on the device."""
        if not device.path:
            logger.warning(f"Cannot resolve {device.identity}")
            return StartResult.UNSUPPORTED
        if self.is_testing(device):
            logger.info(f"Skip (already testing): {device.identity} -> {device.path}")
            return StartResult.ALREADY_TESTING
        return self._start(device, kind)

class SmartctlAdapter(TestAdapter):
    """ATA/SAS disks through smartctl."""

    device_class = DeviceClass.ROTATING

    def is_testing(self, device: Device) -> bool:
        if not self.tools.smartctl or not device.path:
            return False
        result = self.runner.run([self.tools.smartctl, "-a", device.path])
        # smartctl sets status bits for disk warnings, so stdout is parsed regardless of rc
        return bool(SMART_TEST_IN_PROGRESS.search(result.stdout))

    def _start(self, device: Device, kind: TestKind) -> StartResult:
        if not self.tools.smartctl:
            logger.error(f"smartctl not installed; cannot test {device.identity}")
            return StartResult.START_FAILED
        logger.info(f"Start SATA {kind.value} test: {device.identity} -> {device.path}")
        result = self.runner.run([self.tools.smartctl, "-t", kind.value, device.path])
        if result.ok:
            logger.info(f"OK: started {kind.value} on {device.path}")
            return StartResult.STARTED
        logger.error(f"ERROR: failed to start {kind.value} on {device.path} (rc={result.returncode})")
        return StartResult.START_FAILED

class NvmeAdapter(TestAdapter):
    """NVMe disks through nvme-cli. Self-test log support is best-effort."""

    device_class = DeviceClass.NVME

    def is_testing(self, device: Device) -> bool:
        if not self.tools.nvme or not device.path:
            return False
        result = self.runner.run([self.tools.nvme, "self-test-log", device.path])
        if not result.ok:
            # some firmware lacks the log page
            return False
        return bool(NVME_TEST_IN_PROGRESS.search(result.stdout))

    def start_test(self, device: Device, kind: TestKind) -> StartResult:
        if not self.tools.nvme:
            logger.warning(f"nvme-cli not installed; skipping NVMe test for {device.identity}")
            return StartResult.UNSUPPORTED
        return super().start_test(device, kind)

    def _start(self, device: Device, kind: TestKind) -> StartResult:
        code = NVME_SELF_TEST_CODES[kind]
        logger.info(f"Start NVMe {kind.value} device-self-test: {device.identity} -> {device.path} (code={code})")
        result = self.runner.run([self.tools.nvme, "device-self-test", device.path,
                                  f"--self-test-code={code}"])
        if result.ok:
            logger.info(f"OK: started NVMe {kind.value} on {device.path}")
            return StartResult.STARTED
        logger.warning(f"nvme-cli could not start {kind.value} on {device.path} "
                       f"(may be unsupported or already running)")
        return StartResult.START_FAILED

class AdapterRegistry:
    """Routes each device to the adapter for its class."""

    def __init__(self, adapters: Iterable[TestAdapter]):
        self._adapters: Dict[DeviceClass, TestAdapter] = {a.device_class: a for a in adapters}

    @classmethod
    def default(cls, runner: CommandRunner, tools: ToolPaths) -> "AdapterRegistry":
        return cls([SmartctlAdapter(runner, tools), NvmeAdapter(runner, tools)])

    def for_device(self, device: Device) -> Optional[TestAdapter]:
        return self._adapters.get(device.device_class)

    def is_testing(self, device: Device) -> bool:
        adapter = self.for_device(device)
        return adapter.is_testing(device) if adapter else False

    def count_active(self, devices: Iterable[Device]) -> int:
        """Number of devices currently running a self-test."""
        return sum(1 for d in devices if self.is_testing(d))

    def start_test(self, device: Device, kind: TestKind) -> StartResult:
        adapter = self.for_device(device)
        if adapter is None:
            logger.warning(f"No test adapter for {device.identity} ({device.device_class.value})")
            return StartResult.UNSUPPORTED
        return adapter.start_test(device, kind)
