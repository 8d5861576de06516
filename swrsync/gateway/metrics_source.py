"""
Host metrics for the admin dashboard, read from the standard library.

Payload shapes match what the dashboard caches under admin:health and
admin:metrics.
"""
import os
import platform
import shutil
import socket
import time
from datetime import datetime
from typing import Any, Dict, Optional

from swrsync.utils.helpers import safe_lower


def _round(value: float) -> float:
    return round(value, 2)


def _load_average() -> list:
    try:
        return list(os.getloadavg())
    except (AttributeError, OSError):
        return [0.0, 0.0, 0.0]


def _memory_bytes() -> Dict[str, int]:
    try:
        page = os.sysconf("SC_PAGE_SIZE")
        total = page * os.sysconf("SC_PHYS_PAGES")
        free = page * os.sysconf("SC_AVPHYS_PAGES")
    except (AttributeError, ValueError, OSError):
        return {"total": 0, "used": 0, "free": 0}
    return {"total": total, "used": total - free, "free": free}


class HostMetricsSource:
    """
    Builds health reports and metrics samples for this host.

    Service statuses start as "up" and can be flipped with
    set_service_status(); the hub uses that to publish service alerts.
    """

    SERVICES = ("database", "cache", "storage")

    def __init__(self, started_at: Optional[float] = None):
        self._started_at = started_at if started_at is not None else time.time()
        self._services: Dict[str, str] = {name: "up" for name in self.SERVICES}
        self.active_sessions = 0

    @property
    def uptime(self) -> float:
        return _round(time.time() - self._started_at)

    def set_service_status(self, service: str, status: str) -> bool:
        """
        Record a service status.

        Returns:
            True if the status changed
        """
        key = safe_lower(service)
        if self._services.get(key) == status:
            return False
        self._services[key] = status
        return True

    def service_status(self, service: str) -> Optional[str]:
        return self._services.get(safe_lower(service))

    def cpu_usage(self) -> float:
        """Approximate CPU usage from the 1-minute load average."""
        cores = os.cpu_count() or 1
        usage = _load_average()[0] / cores * 100
        return _round(min(100.0, max(0.0, usage)))

    def memory_usage_percent(self) -> float:
        memory = _memory_bytes()
        if not memory["total"]:
            return 0.0
        return _round(memory["used"] / memory["total"] * 100)

    def detailed_health(self) -> Dict[str, Any]:
        """Overall status plus per-service health."""
        services: Dict[str, Dict[str, Any]] = {
            name: {"status": status} for name, status in self._services.items()
        }
        services["system"] = {
            "status": "up",
            "platform": f"{platform.system()} {platform.release()}",
            "version": platform.python_version(),
            "details": {
                "hostname": socket.gethostname(),
                "cpus": os.cpu_count() or 1,
                "loadAverage": _load_average(),
            },
        }

        statuses = list(self._services.values())
        if all(s == "up" for s in statuses):
            overall = "healthy"
        elif all(s == "down" for s in statuses):
            overall = "unhealthy"
        else:
            overall = "degraded"

        return {
            "status": overall,
            "uptime": self.uptime,
            "services": services,
            "system": {
                "uptime": self.uptime,
                "pythonVersion": platform.python_version(),
                "platform": platform.system(),
                "arch": platform.machine(),
                "hostname": socket.gethostname(),
            },
        }

    def realtime_metrics(self) -> Dict[str, Any]:
        """CPU, memory, disk, session and application figures."""
        memory = _memory_bytes()
        try:
            disk = shutil.disk_usage("/")
            disk_info = {
                "total": disk.total,
                "used": disk.used,
                "free": disk.free,
                "usagePercent": _round(disk.used / disk.total * 100) if disk.total else 0.0,
            }
        except OSError:
            disk_info = {"total": 0, "used": 0, "free": 0, "usagePercent": 0.0}

        return {
            "cpu": {
                "usage": self.cpu_usage(),
                "cores": os.cpu_count() or 1,
                "model": platform.processor() or "Unknown",
                "loadAverage": _load_average(),
            },
            "memory": {**memory, "usagePercent": self.memory_usage_percent()},
            "disk": disk_info,
            "sessions": self.session_stats(),
            "application": {
                "uptime": self.uptime,
                "pid": os.getpid(),
            },
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

    def quick_metrics(self) -> Dict[str, Any]:
        """Lightweight sample for the frequent quickMetrics push."""
        return {
            "cpu": self.cpu_usage(),
            "memory": self.memory_usage_percent(),
            "uptime": self.uptime,
            "timestamp": datetime.utcnow().isoformat() + "Z",
        }

    def session_stats(self) -> Dict[str, Any]:
        return {"active": self.active_sessions}
