# mcfleet/services/system_monitor.py
"""Host resource statistics and pressure checks (psutil)."""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional

import psutil

from mcfleet.core.config import (
    CPU_ALERT_PERCENT,
    DISK_ALERT_PERCENT,
    MEMORY_ALERT_PERCENT,
    SERVERS_DIR,
)

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class SystemStats:
    cpu_percent: float = 0.0
    memory_used_mb: float = 0.0
    memory_total_mb: float = 0.0
    memory_percent: float = 0.0
    disk_used_gb: float = 0.0
    disk_total_gb: float = 0.0
    disk_percent: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _disk_anchor(path: Path) -> Path:
    # disk_usage needs an existing path; walk up until one exists
    for candidate in [path, *path.parents]:
        if candidate.exists():
            return candidate
    return Path("/")


def get_system_stats(disk_path: Optional[Path] = None) -> SystemStats:
    memory = psutil.virtual_memory()
    disk = psutil.disk_usage(str(_disk_anchor(Path(disk_path or SERVERS_DIR))))
    return SystemStats(
        cpu_percent=round(psutil.cpu_percent(interval=None), 1),
        memory_used_mb=round(memory.used / _MB, 1),
        memory_total_mb=round(memory.total / _MB, 1),
        memory_percent=round(memory.percent, 1),
        disk_used_gb=round(disk.used / (1024 * _MB), 2),
        disk_total_gb=round(disk.total / (1024 * _MB), 2),
        disk_percent=round(disk.percent, 1),
    )


def pressure_reasons(stats: SystemStats) -> List[str]:
    reasons = []
    if stats.cpu_percent > CPU_ALERT_PERCENT:
        reasons.append("CPU")
    if stats.memory_percent > MEMORY_ALERT_PERCENT:
        reasons.append("Memory")
    if stats.disk_percent > DISK_ALERT_PERCENT:
        reasons.append("Disk")
    return reasons


def is_high_resource_usage(stats: SystemStats) -> bool:
    return bool(pressure_reasons(stats))


def describe_pressure(stats: SystemStats) -> str:
    return "High resource usage detected: " + " ".join(pressure_reasons(stats))


def get_process_stats(pid: Optional[int]) -> dict:
    """CPU/RSS for one server process; empty dict if it is gone."""
    if not pid:
        return {}
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            return {
                "cpu_percent": round(proc.cpu_percent(interval=None), 1),
                "ram_mb": round(proc.memory_info().rss / _MB, 1),
            }
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return {}
