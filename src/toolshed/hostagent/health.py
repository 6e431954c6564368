"""Host health snapshot sent with every heartbeat.

Reads from /proc on Linux and uses shutil.disk_usage; no psutil.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import asdict, dataclass


@dataclass
class HostHealth:
    memory_total_mb: float = 0
    memory_used_mb: float = 0
    memory_percent: float = 0
    disk_total_mb: float = 0
    disk_free_mb: float = 0
    disk_percent: float = 0
    load_1m: float = 0
    cpu_count: int = 0
    managed_instances: int = 0

    def to_dict(self) -> dict:
        return {k: round(v, 1) if isinstance(v, float) else v for k, v in asdict(self).items()}


def _read_memory() -> tuple[float, float, float]:
    """Return (total_mb, used_mb, percent_used) from /proc/meminfo, or zeros."""
    try:
        meminfo: dict[str, int] = {}
        with open("/proc/meminfo") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    meminfo[parts[0].rstrip(":")] = int(parts[1])  # kB
    except (FileNotFoundError, OSError):
        return 0, 0, 0
    total_mb = meminfo.get("MemTotal", 0) / 1024
    used_mb = total_mb - meminfo.get("MemAvailable", 0) / 1024
    pct = (used_mb / total_mb * 100) if total_mb > 0 else 0
    return total_mb, used_mb, pct


def snapshot(managed_instances: int = 0, disk_path: str = "/") -> HostHealth:
    health = HostHealth(managed_instances=managed_instances, cpu_count=os.cpu_count() or 0)
    health.memory_total_mb, health.memory_used_mb, health.memory_percent = _read_memory()
    try:
        usage = shutil.disk_usage(disk_path)
        health.disk_total_mb = usage.total / (1024 * 1024)
        health.disk_free_mb = usage.free / (1024 * 1024)
        health.disk_percent = (usage.used / usage.total * 100) if usage.total else 0
    except OSError:
        pass
    try:
        health.load_1m = os.getloadavg()[0]
    except (AttributeError, OSError):
        pass
    return health
