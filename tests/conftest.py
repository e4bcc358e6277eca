"""
Pytest configuration and shared fixtures.

Fakes stand in for the external world: a command runner with canned tool output,
a device catalog, a fleet of disks whose self-tests run against a FakeClock, and
fixed guard results.
"""

import logging

import pytest

from app_types import Device, DeviceClass, GuardState, StartResult
from app_io import CommandResult
from app_core import FakeClock

BY_ID = "/dev/disk/by-id"


def rotating(name: str, path: str = None) -> Device:
    return Device(identity=f"{BY_ID}/ata-{name}", device_class=DeviceClass.ROTATING,
                  path=path or f"/dev/sd{name.lower()}")


def nvme(name: str, path: str = None) -> Device:
    return Device(identity=f"{BY_ID}/nvme-eui.{name}", device_class=DeviceClass.NVME,
                  path=path or f"/dev/nvme{name}n1")


class FakeRunner:
    """Command runner returning canned output keyed by argv tuple."""

    def __init__(self, outputs=None):
        self.outputs = dict(outputs or {})
        self.calls = []

    def run(self, argv, input_text=None):
        argv = tuple(argv)
        self.calls.append((argv, input_text))
        result = self.outputs.get(argv)
        if result is None:
            return CommandResult(1, "", "unexpected command")
        if isinstance(result, str):
            return CommandResult(0, result, "")
        return result

    def commands(self):
        return [argv for argv, _ in self.calls]


class FakeCatalog:
    """Device catalog over a fixed device list."""

    def __init__(self, devices, vanished=()):
        self.devices = list(devices)
        self.vanished = set(vanished)
        self.all_devices_calls = 0

    def resolver(self, identity):
        if identity in self.vanished:
            return None
        for device in self.devices:
            if device.identity == identity:
                return device.path
        return None

    def all_devices(self):
        self.all_devices_calls += 1
        return list(self.devices)

    def list_devices(self, class_filter=None, pool_member_only=False):
        return [d for d in self.devices if class_filter is None or d.device_class == class_filter]


class FakeFleet:
    """
    Adapter registry fake. A started test stays active for `duration` seconds of
    FakeClock time; duration=None means it never completes.
    """

    def __init__(self, clock, duration=None, busy=(), failing=(), unsupported=(), raising=()):
        self.clock = clock
        self.duration = duration
        self.busy = set(busy)
        self.failing = set(failing)
        self.unsupported = set(unsupported)
        self.raising = set(raising)
        self.started_at = {}
        self.start_calls = []
        self.max_active_seen = 0

    def _testing(self, identity):
        if identity in self.busy:
            return True
        start = self.started_at.get(identity)
        if start is None:
            return False
        return self.duration is None or self.clock.monotonic() < start + self.duration

    def active_now(self):
        return sum(1 for i in set(self.started_at) | self.busy if self._testing(i))

    def is_testing(self, device):
        return self._testing(device.identity)

    def count_active(self, devices):
        return sum(1 for d in devices if self.is_testing(d))

    def start_test(self, device, kind):
        self.start_calls.append(device.identity)
        if device.identity in self.raising:
            raise RuntimeError("adapter exploded")
        if self.is_testing(device):
            return StartResult.ALREADY_TESTING
        if device.identity in self.unsupported:
            return StartResult.UNSUPPORTED
        if device.identity in self.failing:
            return StartResult.START_FAILED
        self.started_at[device.identity] = self.clock.monotonic()
        self.max_active_seen = max(self.max_active_seen, self.active_now())
        return StartResult.STARTED


class FakeGuards:
    def __init__(self, state=None):
        self.state = state or GuardState(pool_idle=True, load_ok=True, load_average=0.5)
        self.evaluations = 0

    def evaluate(self, load_ceiling):
        self.evaluations += 1
        return self.state


class SimulationWindowElapsed(Exception):
    pass


class BoundedClock(FakeClock):
    """FakeClock that ends the simulation after a number of sleeps."""

    def __init__(self, max_sleeps: int):
        super().__init__()
        self.max_sleeps = max_sleeps

    def sleep(self, seconds):
        super().sleep(seconds)
        if len(self.sleeps) >= self.max_sleeps:
            raise SimulationWindowElapsed()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def restore_root_logging():
    """Put the root logger back the way it was after LoggingManager rewires it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
