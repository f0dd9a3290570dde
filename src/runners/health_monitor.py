"""
Health Monitor Runner for PiFleet

This module provides a threaded runner that samples host resources on a
fixed period, keeps a sliding window of samples and derives a HealthStatus
from it. Status changes are pushed to subscribers (the runner agents' event
channels) so agents never poll a shared flag mid-execution.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from errors import ResourceExhaustionError
from sensors.host_monitor import HealthSample, HostMonitor, SensorReadError

from .base_runner import BaseRunner

MB = 1024 * 1024


class HealthStatus(str, Enum):
    """Derived host health."""

    OK = "ok"
    DEGRADED = "degraded"
    CRITICAL = "critical"


_SEVERITY = {HealthStatus.OK: 0, HealthStatus.DEGRADED: 1, HealthStatus.CRITICAL: 2}


def worst_status(statuses: Iterable[HealthStatus]) -> HealthStatus:
    """Return the most severe status, OK for an empty iterable."""
    worst = HealthStatus.OK
    for status in statuses:
        if _SEVERITY[status] > _SEVERITY[worst]:
            worst = status
    return worst


@dataclass
class HealthThresholds:
    """Limits the sample window is compared against."""

    temp_critical: float = 80.0
    temp_degraded: float = 70.0
    mem_min: int = 128 * MB
    mem_critical: int = 32 * MB
    disk_min: int = 1024 * MB
    cpu_load_degraded: float = 2.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "HealthThresholds":
        """Build thresholds from config; memory and disk limits are in MB."""
        defaults = cls()
        return cls(
            temp_critical=float(config.get("temp_critical", defaults.temp_critical)),
            temp_degraded=float(config.get("temp_degraded", defaults.temp_degraded)),
            mem_min=int(config.get("mem_min", defaults.mem_min // MB) * MB),
            mem_critical=int(config.get("mem_critical", defaults.mem_critical // MB) * MB),
            disk_min=int(config.get("disk_min", defaults.disk_min // MB) * MB),
            cpu_load_degraded=float(
                config.get("cpu_load_degraded", defaults.cpu_load_degraded)
            ),
        )


HealthListener = Callable[[HealthStatus, HealthStatus], None]


class HealthMonitor(BaseRunner):
    """
    Threaded runner for host health monitoring.

    Continuously samples the host and derives:
    - CRITICAL when the temperature (or available memory) breaches its
      critical limit for ``critical_consecutive`` consecutive samples
    - DEGRADED when the latest sample breaches a soft limit, or when
      ``unknown_streak_limit`` samples in a row could not be taken
    - OK otherwise
    """

    def __init__(
        self,
        config: Dict[str, Any],
        production: bool = False,
        host_monitor: Optional[HostMonitor] = None,
    ):
        """
        Initialize the health monitor.

        Args:
            config: The ``health`` configuration section
            production: Whether running in production mode
            host_monitor: Pre-built host monitor (tests inject one)
        """
        super().__init__("health_monitor", config, production)

        self.interval = self._get_config_value("interval", 30.0)
        self.thresholds = HealthThresholds.from_config(
            self._get_config_value("thresholds", {})
        )
        self.window_size = self._get_config_value("window_size", 10)
        self.critical_consecutive = self._get_config_value("critical_consecutive", 2)
        self.unknown_streak_limit = self._get_config_value("unknown_streak_limit", 3)

        self.host_monitor = host_monitor

        self._lock = threading.Lock()
        self._window: deque = deque(maxlen=self.window_size)
        self._unknown_streak = 0
        self._status = HealthStatus.OK
        self._status_reason = "no samples yet"
        self._listeners: List[HealthListener] = []

    def _initialize(self) -> bool:
        """Create the host monitor and take a first sample."""
        try:
            if self.host_monitor is None:
                self.host_monitor = HostMonitor(self.config, self.production)
        except SensorReadError as e:
            self.logger.error(f"Failed to initialize health monitor: {e}")
            return False

        self.sample()
        self.logger.info(f"Health monitor initialized - Status: {self.status().value}")
        return True

    def _work_cycle(self) -> None:
        self.sample()

    def sample(self) -> Optional[HealthSample]:
        """
        Take one sample and update the derived status.

        A failed read yields no sample and extends the unknown streak.
        """
        if self.host_monitor is None:
            raise RuntimeError("Health monitor not initialized")

        try:
            reading: Optional[HealthSample] = self.host_monitor.get_reading()
        except SensorReadError:
            reading = None

        with self._lock:
            if reading is not None:
                self._window.append(reading)
                self._unknown_streak = 0
            else:
                self._unknown_streak += 1
            previous = self._status
            self._status, self._status_reason = self._derive_status()
            current = self._status
            reason = self._status_reason

        if current != previous:
            log = self.logger.warning if current != HealthStatus.OK else self.logger.info
            log(f"Health status changed {previous.value} -> {current.value} ({reason})")
            self._emit(previous, current)
        return reading

    def _derive_status(self):
        """Derive (status, reason) from the window. Caller holds the lock."""
        samples = list(self._window)
        limits = self.thresholds
        streak = samples[-self.critical_consecutive:]

        if len(streak) >= self.critical_consecutive:
            if all(s.temp_c is not None and s.temp_c > limits.temp_critical for s in streak):
                return HealthStatus.CRITICAL, (
                    f"temperature above {limits.temp_critical}C for "
                    f"{self.critical_consecutive} samples"
                )
            if all(s.mem_available < limits.mem_critical for s in streak):
                return HealthStatus.CRITICAL, (
                    f"available memory below {limits.mem_critical // MB}MB for "
                    f"{self.critical_consecutive} samples"
                )

        if self._unknown_streak >= self.unknown_streak_limit:
            return HealthStatus.DEGRADED, f"{self._unknown_streak} missed samples"

        if not samples:
            return HealthStatus.OK, "no samples yet"

        latest = samples[-1]
        if latest.temp_c is not None and latest.temp_c > limits.temp_degraded:
            return HealthStatus.DEGRADED, f"temperature {latest.temp_c:.1f}C"
        if latest.mem_available < limits.mem_min:
            return HealthStatus.DEGRADED, (
                f"available memory {latest.mem_available // MB}MB"
            )
        if latest.disk_available < limits.disk_min:
            return HealthStatus.DEGRADED, f"free disk {latest.disk_available // MB}MB"
        if latest.cpu_load > limits.cpu_load_degraded:
            return HealthStatus.DEGRADED, f"cpu load {latest.cpu_load:.2f}"

        return HealthStatus.OK, "within limits"

    def _emit(self, previous: HealthStatus, current: HealthStatus) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(previous, current)
            except Exception as e:
                self.logger.error(f"Health listener failed: {e}")

    def subscribe(self, listener: HealthListener) -> None:
        """Register a callback invoked on every status change."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: HealthListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def status(self) -> HealthStatus:
        """Get the latest derived status."""
        with self._lock:
            return self._status

    @property
    def status_reason(self) -> str:
        with self._lock:
            return self._status_reason

    def raise_for_status(self) -> None:
        """Raise ResourceExhaustionError while the host is critical."""
        with self._lock:
            status, reason = self._status, self._status_reason
        if status == HealthStatus.CRITICAL:
            raise ResourceExhaustionError(f"Host health critical: {reason}")

    def latest_sample(self) -> Optional[HealthSample]:
        with self._lock:
            return self._window[-1] if self._window else None

    def get_samples(self, count: Optional[int] = None) -> List[HealthSample]:
        """
        Get recent samples.

        Args:
            count: Maximum number of samples to return (default: all)
        """
        with self._lock:
            samples = list(self._window)
        if count is not None:
            samples = samples[-count:]
        return samples

    def is_healthy(self) -> bool:
        """The monitor itself is healthy when it keeps producing samples."""
        latest = self.latest_sample()
        if latest is None:
            return False
        return time.time() - latest.timestamp <= self.interval * 2

    def get_enhanced_status(self) -> Dict[str, Any]:
        """Get status information including the latest sample."""
        latest = self.latest_sample()
        with self._lock:
            unknown_streak = self._unknown_streak
        return {
            "base_status": self.get_status(),
            "health": self.status().value,
            "reason": self.status_reason,
            "unknown_streak": unknown_streak,
            "window_size": len(self.get_samples()),
            "latest_sample": latest.to_dict() if latest else None,
        }

    def _cleanup(self) -> None:
        if self.host_monitor:
            self.logger.info("Cleaning up host monitor")
            self.host_monitor.cleanup()
