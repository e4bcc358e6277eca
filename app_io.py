# app_io.py
# Version: 1.0.1
# External command layer for the SMART test scheduler: a subprocess runner that turns
# every failure into a result value, cron-safe tool resolution, and by-id symlink resolution.

import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_SEC = 120.0
RC_NOT_FOUND = 127
RC_OS_ERROR = -1

@dataclass
class CommandResult:
    """Result of an external command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

class CommandRunner:
    """Runs external tools; never raises for tool failures."""

    def __init__(self, timeout_sec: float = COMMAND_TIMEOUT_SEC):
        self.timeout_sec = timeout_sec

    def run(self, argv: Sequence[str], input_text: Optional[str] = None) -> CommandResult:
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            proc = subprocess.run(
                list(argv),
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
                env={**os.environ, "LC_ALL": "C"},
            )
        except FileNotFoundError as e:
            logger.debug(f"Command not found: {argv[0]} ({e})")
            return CommandResult(RC_NOT_FOUND, "", str(e))
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out after {self.timeout_sec}s: {' '.join(argv)}")
            return CommandResult(RC_OS_ERROR, "", "timeout")
        except OSError as e:
            logger.warning(f"Command failed to execute: {' '.join(argv)}: {e}")
            return CommandResult(RC_OS_ERROR, "", str(e))
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")

@dataclass
class ToolPaths:
    """Absolute paths of the external tools, None when not installed."""
    smartctl: Optional[str] = None
    nvme: Optional[str] = None
    zpool: Optional[str] = None
    mail: Optional[str] = None
    msmtp: Optional[str] = None
    lsblk: Optional[str] = None
    pveversion: Optional[str] = None

    @classmethod
    def resolve(cls, search_path: str) -> "ToolPaths":
        """Resolve every tool once against a fixed PATH (cron runs with a minimal one)."""
        tools = cls(
            smartctl=shutil.which("smartctl", path=search_path),
            nvme=shutil.which("nvme", path=search_path),
            zpool=shutil.which("zpool", path=search_path),
            mail=shutil.which("mail", path=search_path),
            msmtp=shutil.which("msmtp", path=search_path),
            lsblk=shutil.which("lsblk", path=search_path),
            pveversion=shutil.which("pveversion", path=search_path),
        )
        logger.debug(f"Resolved tools: {tools}")
        return tools

def resolve_device_path(identity: str) -> Optional[str]:
    """Resolve a by-id symlink to its device node; None if missing or dangling."""
    link = Path(identity)
    if not link.is_symlink():
        return None
    try:
        target = link.resolve(strict=True)
    except (OSError, RuntimeError) as e:
        logger.debug(f"Cannot resolve {identity}: {e}")
        return None
    return str(target)
