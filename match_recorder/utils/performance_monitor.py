"""Host resource checks for the recordings directory."""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

import psutil

from match_recorder.models.domain import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ResourceMetrics:
    """Container for system resource metrics."""
    timestamp: datetime
    cpu_percent: float
    memory_percent: float
    disk_usage_percent: float
    disk_free_mb: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'cpu_percent': self.cpu_percent,
            'memory_percent': self.memory_percent,
            'disk_usage_percent': self.disk_usage_percent,
            'disk_free_mb': self.disk_free_mb,
        }


class ResourceMonitor:
    """Reports host resources relevant to capture admission."""

    def __init__(
        self,
        recordings_dir: str,
        min_free_disk_mb: int = 500,
        cpu_threshold: float = 90.0,
        memory_threshold: float = 90.0
    ):
        """Initialize resource monitor.

        Args:
            recordings_dir: Directory whose filesystem holds capture output
            min_free_disk_mb: Free space floor for new captures (0 disables)
            cpu_threshold: CPU usage reported as degraded above this (%)
            memory_threshold: Memory usage reported as degraded above this (%)
        """
        self.recordings_dir = Path(recordings_dir)
        self.min_free_disk_mb = min_free_disk_mb
        self.cpu_threshold = cpu_threshold
        self.memory_threshold = memory_threshold

    def disk_free_mb(self) -> float:
        """Free space on the recordings filesystem in MiB."""
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        return psutil.disk_usage(str(self.recordings_dir)).free / (1024 * 1024)

    def has_capacity_for_capture(self) -> bool:
        """Whether free disk space is above the configured floor."""
        if self.min_free_disk_mb <= 0:
            return True
        free_mb = self.disk_free_mb()
        if free_mb < self.min_free_disk_mb:
            logger.warning("Free disk space below capture floor", extra={
                'disk_free_mb': round(free_mb, 1),
                'min_free_disk_mb': self.min_free_disk_mb
            })
            return False
        return True

    def collect_metrics(self) -> ResourceMetrics:
        """Collect current system metrics."""
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        disk = psutil.disk_usage(str(self.recordings_dir))
        return ResourceMetrics(
            timestamp=utcnow(),
            cpu_percent=psutil.cpu_percent(interval=None),
            memory_percent=psutil.virtual_memory().percent,
            disk_usage_percent=disk.percent,
            disk_free_mb=disk.free / (1024 * 1024),
        )

    def get_resource_summary(self) -> Dict[str, Any]:
        """Summarize resources as healthy/warning for the health endpoint."""
        metrics = self.collect_metrics()
        alerts = {
            'cpu': metrics.cpu_percent > self.cpu_threshold,
            'memory': metrics.memory_percent > self.memory_threshold,
            'disk': self.min_free_disk_mb > 0 and metrics.disk_free_mb < self.min_free_disk_mb,
        }
        return {
            'status': 'warning' if any(alerts.values()) else 'healthy',
            'current': metrics.to_dict(),
            'alerts': alerts,
            'thresholds': {
                'cpu': self.cpu_threshold,
                'memory': self.memory_threshold,
                'min_free_disk_mb': self.min_free_disk_mb,
            }
        }
