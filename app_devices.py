# app_devices.py
# Version: 1.0.3
# Device catalog for the SMART test scheduler: stable by-id discovery of rotating
# (ATA/SAS) and NVMe disks, de-duplication by device node, and optional restriction
# to storage-pool members.

import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set
import logging

from app_types import Device, DeviceClass
from app_io import CommandRunner, ToolPaths, resolve_device_path

logger = logging.getLogger(__name__)

ROTATING_PREFIXES = ("ata-", "scsi-")
NVME_PREFIX = "nvme-"
NVME_EUI_PREFIX = "nvme-eui."
PARTITION_MARKER = "-part"
PARTITION_SUFFIX = re.compile(r"-part\d+$")
POOL_MEMBER_PREFIXES = ROTATING_PREFIXES + (NVME_PREFIX,)

class DeviceCatalog:
    """Enumerates disks by stable identity. Recomputed on every call, nothing is cached."""

    def __init__(self, by_id_dir: str, runner: CommandRunner, tools: ToolPaths,
                 resolver: Callable[[str], Optional[str]] = resolve_device_path):
        self.by_id_dir = Path(by_id_dir)
        self.runner = runner
        self.tools = tools
        self.resolver = resolver

    def _entries(self) -> List[str]:
        if not self.by_id_dir.is_dir():
            logger.warning(f"By-id directory {self.by_id_dir} not found")
            return []
        return sorted(p.name for p in self.by_id_dir.iterdir() if p.is_symlink())

    def _rotating_names(self, names: List[str]) -> List[str]:
        return [n for n in names
                if n.startswith(ROTATING_PREFIXES) and PARTITION_MARKER not in n]

    def _nvme_names(self, names: List[str]) -> List[str]:
        # nvme-eui.* is stable across firmware/model renames; fall back to nvme-<model> links
        eui = [n for n in names if n.startswith(NVME_EUI_PREFIX) and PARTITION_MARKER not in n]
        if eui:
            return eui
        return [n for n in names
                if n.startswith(NVME_PREFIX) and not n.startswith(NVME_EUI_PREFIX)
                and PARTITION_MARKER not in n]

    def _build(self, names: List[str], device_class: DeviceClass,
               seen_paths: Dict[str, str]) -> List[Device]:
        devices = []
        for name in sorted(set(names)):
            identity = str(self.by_id_dir / name)
            path = self.resolver(identity)
            if not path:
                logger.warning(f"Cannot resolve {identity}, dropping it for this run")
                continue
            if path in seen_paths:
                logger.debug(f"{name} duplicates {seen_paths[path]} ({path})")
                continue
            seen_paths[path] = name
            devices.append(Device(identity=identity, device_class=device_class, path=path))
        return devices

    def all_devices(self) -> List[Device]:
        """Every resolvable disk in the fleet, sorted by identity."""
        names = self._entries()
        seen_paths: Dict[str, str] = {}
        devices = self._build(self._rotating_names(names), DeviceClass.ROTATING, seen_paths)
        devices += self._build(self._nvme_names(names), DeviceClass.NVME, seen_paths)
        return sorted(devices, key=lambda d: d.identity)

    def list_devices(self, class_filter: Optional[DeviceClass] = None,
                     pool_member_only: bool = False) -> List[Device]:
        """List disks of one class (or all), optionally only storage-pool members."""
        devices = self.all_devices()
        if class_filter is not None:
            devices = [d for d in devices if d.device_class == class_filter]
        if pool_member_only:
            members = self.pool_members()
            if members is None:
                logger.info("Pool manager unavailable, pool-member filter not applied")
            else:
                devices = [d for d in devices if d.name in members]
        return devices

    def pool_members(self) -> Optional[Set[str]]:
        """By-id names listed in any pool's status; None when the pool manager is unavailable."""
        if not self.tools.zpool:
            return None
        result = self.runner.run([self.tools.zpool, "status"])
        if not result.ok:
            logger.warning(f"zpool status failed (rc={result.returncode}), pool-member filter not applied")
            return None
        members = set()
        for line in result.stdout.splitlines():
            parts = line.split()
            if parts and parts[0].startswith(POOL_MEMBER_PREFIXES):
                # vdevs built on partitions still make the whole disk a member
                members.add(PARTITION_SUFFIX.sub("", parts[0]))
        return members
