"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# name -> help text, in exposition order
COUNTERS = {
    "requests_total": "Total HTTP requests",
    "jobs_admitted_total": "Build jobs admitted",
    "jobs_completed_total": "Build jobs completed successfully",
    "jobs_failed_total": "Build jobs failed",
    "jobs_cancelled_total": "Build jobs cancelled",
    "routes_rendered_total": "Routes pre-rendered successfully",
    "routes_failed_total": "Routes that fell back to the SPA shell",
    "artifacts_downloaded_total": "Artifacts redeemed",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
        self._status: Dict[str, int] = {"2xx": 0, "4xx": 0, "5xx": 0}

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + value

    def observe_status(self, status_code: int) -> None:
        bucket = f"{status_code // 100}xx"
        with self._lock:
            if bucket in self._status:
                self._status[bucket] += 1

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        with self._lock:
            counters = self._counters.copy()
            status = self._status.copy()

        lines = []
        for name, help_text in COUNTERS.items():
            lines.append(f"# HELP buildfarm_{name} {help_text}")
            lines.append(f"# TYPE buildfarm_{name} counter")
            lines.append(f"buildfarm_{name} {counters.get(name, 0)}")

        lines.append("# HELP buildfarm_requests_by_status HTTP requests by status class")
        lines.append("# TYPE buildfarm_requests_by_status counter")
        for bucket, count in status.items():
            lines.append(f'buildfarm_requests_by_status{{status="{bucket}"}} {count}')

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
