"""
Process and host resource snapshots backed by psutil.
"""

import os
import platform
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import psutil

BYTES_PER_MB = 1024 * 1024
BYTES_PER_GB = 1024 * 1024 * 1024

_process = psutil.Process(os.getpid())


def bytes_to_mb(value: float) -> float:
    return value / BYTES_PER_MB


def bytes_to_gb(value: float) -> float:
    return value / BYTES_PER_GB


@dataclass(frozen=True)
class MemorySnapshot:
    """Resident and virtual memory of this process, in bytes."""

    rss: int
    vms: int
    percent: float

    @property
    def rss_mb(self) -> float:
        return bytes_to_mb(self.rss)

    def to_dict(self) -> Dict[str, float]:
        return {
            "rss_mb": round(self.rss_mb, 2),
            "vms_mb": round(bytes_to_mb(self.vms), 2),
            "percent": round(self.percent, 2),
        }


@dataclass(frozen=True)
class CpuTimes:
    """User and system CPU seconds consumed by this process."""

    user: float
    system: float

    @property
    def total(self) -> float:
        return self.user + self.system


def memory_snapshot() -> MemorySnapshot:
    info = _process.memory_info()
    return MemorySnapshot(rss=info.rss, vms=info.vms, percent=_process.memory_percent())


def cpu_times_snapshot() -> CpuTimes:
    times = _process.cpu_times()
    return CpuTimes(user=times.user, system=times.system)


def cpu_delta(before: Optional[CpuTimes]) -> Optional[CpuTimes]:
    """CPU time spent since ``before``, or None without a baseline."""
    if before is None:
        return None
    after = cpu_times_snapshot()
    return CpuTimes(
        user=max(after.user - before.user, 0.0),
        system=max(after.system - before.system, 0.0),
    )


def system_memory():
    return psutil.virtual_memory()


def load_average() -> List[float]:
    return [round(value, 2) for value in psutil.getloadavg()]


def cpu_count() -> int:
    return psutil.cpu_count() or 1


def system_uptime_seconds() -> float:
    return time.time() - psutil.boot_time()


def runtime_info() -> Dict[str, str]:
    return {
        "python_version": platform.python_version(),
        "platform": platform.system().lower(),
        "arch": platform.machine(),
    }


def disk_usage(path: str):
    return psutil.disk_usage(path)
