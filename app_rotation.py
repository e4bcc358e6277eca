# app_rotation.py
# Version: 1.0.2
# Rotation state for long tests: a persisted, monotonically advancing index choosing which
# rotating disk gets the next long test. File-backed for production, in-memory for tests.

import os
from pathlib import Path
from typing import List, Sequence
import logging

from app_types import Device, RotationError

logger = logging.getLogger(__name__)

class StateStore:
    """Persisted rotation index."""

    def read(self) -> int:
        raise NotImplementedError

    def write(self, index: int):
        raise NotImplementedError

class MemoryStateStore(StateStore):
    def __init__(self, index: int = 0):
        self.index = index
        self.writes: List[int] = []

    def read(self) -> int:
        return self.index

    def write(self, index: int):
        self.index = index
        self.writes.append(index)

class FileStateStore(StateStore):
    """Single newline-terminated integer in a file. No locking: runs must not overlap."""

    def __init__(self, path):
        self.path = Path(path)

    def read(self) -> int:
        """Index from the first token of the first line; absent or non-numeric reads as 0."""
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                first_line = f.readline()
        except FileNotFoundError:
            return 0
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read rotation state {self.path}: {e}")
            return 0

        tokens = first_line.split()
        if not tokens or not (tokens[0].isascii() and tokens[0].isdigit()):
            logger.warning(f"Rotation state {self.path} is not a number ({first_line.strip()!r}), using 0")
            return 0
        return int(tokens[0])

    def write(self, index: int):
        """Atomically replace the state file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix('.tmp')
        try:
            with open(temp_path, 'w', encoding='utf-8') as f:
                f.write(f"{index}\n")
                f.flush()
                try:
                    os.fsync(f.fileno())
                except OSError as e:
                    logger.warning(f"File fsync failed: {e} (continuing with atomic replace)")
            temp_path.replace(self.path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

class RotationSelector:
    """Picks the next rotation target and advances the persisted index."""

    def __init__(self, store: StateStore):
        self.store = store

    def next_rotation_target(self, devices: Sequence[Device]) -> Device:
        if not devices:
            raise RotationError("No rotating devices to rotate through")

        index = self.store.read()
        offset = index % len(devices)
        target = devices[offset]
        try:
            self.store.write(index + 1)
        except OSError as e:
            logger.error(f"Could not persist rotation index {index + 1}: {e} (same disk will be picked next run)")
        logger.info(f"Rotation index {index} -> {target.name} ({offset + 1}/{len(devices)})")
        return target

    def peek(self, devices: Sequence[Device]) -> Device:
        """The device the next call would select, without advancing the index."""
        if not devices:
            raise RotationError("No rotating devices to rotate through")
        return devices[self.store.read() % len(devices)]
