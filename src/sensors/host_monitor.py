"""
Host Monitor Module for PiFleet

This module reads local resource state on a runner host (typically a
Raspberry Pi): CPU load, SoC temperature, available memory and free disk.

Features:
- psutil-backed hardware readings
- Raspberry Pi thermal zone fallback for the SoC temperature
- Development mode simulation
"""

import abc
import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import psutil

# Thermal zone exposed by the Raspberry Pi firmware, in millidegrees Celsius
PI_THERMAL_ZONE = Path("/sys/class/thermal/thermal_zone0/temp")

# psutil sensor names that carry the SoC temperature on common boards
PREFERRED_TEMP_SENSORS = ("cpu_thermal", "cpu-thermal", "coretemp", "soc_thermal")


class SensorReadError(IOError):
    """Custom exception for errors encountered during host readings."""

    pass


@dataclass
class HealthSample:
    """Data class for one host resource sample."""

    timestamp: float
    cpu_load: float  # 1-minute load average per core
    temp_c: Optional[float]  # SoC temperature, None when no sensor exists
    mem_available: int  # bytes
    disk_available: int  # bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "cpu_load": round(self.cpu_load, 3),
            "temp_c": round(self.temp_c, 1) if self.temp_c is not None else None,
            "mem_available": self.mem_available,
            "disk_available": self.disk_available,
        }


class HostSensorAdapter(abc.ABC):
    """Abstract base class for host sensor adapters."""

    @abc.abstractmethod
    def initialize(self, disk_path: str) -> None:
        """Initialize the sensor source."""
        pass

    @abc.abstractmethod
    def read_sample(self) -> HealthSample:
        """Read the current host resource state."""
        pass

    def cleanup(self) -> None:
        """Release any sensor resources."""
        pass


class HardwareHostAdapter(HostSensorAdapter):
    """Adapter reading real host metrics through psutil."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.disk_path = "/"
        self._cpu_count = psutil.cpu_count() or 1

    def initialize(self, disk_path: str) -> None:
        self.disk_path = disk_path
        if not Path(disk_path).exists():
            raise SensorReadError(f"Disk path does not exist: {disk_path}")
        self.logger.info(
            f"HardwareHostAdapter initialized (cpus={self._cpu_count}, disk={disk_path})"
        )

    def _read_temperature(self) -> Optional[float]:
        """Read the SoC temperature, None when the host has no sensor."""
        sensors_temperatures = getattr(psutil, "sensors_temperatures", None)
        if sensors_temperatures is not None:
            try:
                readings = sensors_temperatures() or {}
            except (OSError, RuntimeError) as e:
                self.logger.debug(f"psutil temperature read failed: {e}")
                readings = {}

            for name in PREFERRED_TEMP_SENSORS:
                if readings.get(name):
                    return float(readings[name][0].current)
            for entries in readings.values():
                if entries:
                    return float(entries[0].current)

        if PI_THERMAL_ZONE.exists():
            try:
                return int(PI_THERMAL_ZONE.read_text().strip()) / 1000.0
            except (OSError, ValueError) as e:
                raise SensorReadError(f"Unreadable thermal zone: {e}") from e

        return None

    def read_sample(self) -> HealthSample:
        try:
            load_1m = psutil.getloadavg()[0]
            memory = psutil.virtual_memory()
            disk = psutil.disk_usage(self.disk_path)
            temp_c = self._read_temperature()
        except SensorReadError:
            raise
        except Exception as e:
            raise SensorReadError(f"Error reading host metrics: {e}") from e

        return HealthSample(
            timestamp=time.time(),
            cpu_load=load_1m / self._cpu_count,
            temp_c=temp_c,
            mem_available=int(memory.available),
            disk_available=int(disk.free),
        )


class SimulatedHostAdapter(HostSensorAdapter):
    """Adapter for a simulated Raspberry Pi host."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.temp_c = 48.0
        self.cpu_load = 0.3
        self.mem_available = 1536 * 1024 * 1024
        self.disk_available = 12 * 1024 * 1024 * 1024

    def initialize(self, disk_path: str) -> None:
        self.logger.info(f"SimulatedHostAdapter initialized (disk={disk_path})")

    def read_sample(self) -> HealthSample:
        # Random walk around a lightly loaded, passively cooled board
        self.cpu_load = max(0.0, min(4.0, self.cpu_load + random.uniform(-0.1, 0.1)))
        self.temp_c = max(35.0, min(85.0, self.temp_c + random.uniform(-1.0, 1.2)))
        self.mem_available = max(
            64 * 1024 * 1024,
            self.mem_available + random.randint(-32, 32) * 1024 * 1024,
        )

        sample = HealthSample(
            timestamp=time.time(),
            cpu_load=self.cpu_load,
            temp_c=self.temp_c,
            mem_available=self.mem_available,
            disk_available=self.disk_available,
        )
        self.logger.debug(f"SimulatedHostAdapter reading: {sample}")
        return sample


class HostMonitor:
    """
    Host Monitor for reading resource state from the local machine.
    Supports both production (psutil) and development (simulated) modes.
    """

    def __init__(self, config: Dict[str, Any], production: bool = False):
        self.config = config
        self.production = production
        self.logger = logging.getLogger(__name__)

        self.disk_path = self.config.get("disk_path", "/")
        self.log_readings = self.config.get("log_readings", False)

        self.sensor_adapter: HostSensorAdapter
        self._last_reading: Optional[HealthSample] = None
        self._init_sensor_adapter()

        self.logger.info(
            f"Host Monitor initialized. Mode: {'Production' if production else 'Development'}"
        )

    def _init_sensor_adapter(self) -> None:
        """Initialize the appropriate sensor adapter based on environment."""
        if self.production:
            self.sensor_adapter = HardwareHostAdapter()
        else:
            self.sensor_adapter = SimulatedHostAdapter()

        try:
            self.sensor_adapter.initialize(self.disk_path)
        except SensorReadError as e:
            self.logger.error(f"Failed to initialize host sensor adapter: {e}")
            raise

    def get_reading(self) -> HealthSample:
        """
        Get a resource sample from the host.

        Returns:
            HealthSample with the current resource state.
        Raises:
            SensorReadError if reading fails.
        """
        try:
            reading = self.sensor_adapter.read_sample()
        except SensorReadError as e:
            self.logger.warning(f"Failed to get host reading: {e}")
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error during host reading: {e}")
            raise SensorReadError(f"Unexpected error during host reading: {e}") from e

        self._last_reading = reading
        if self.log_readings:
            temp_str = f"{reading.temp_c:.1f}C" if reading.temp_c is not None else "N/A"
            self.logger.info(
                f"Host Status - Load: {reading.cpu_load:.2f}, Temp: {temp_str}, "
                f"Mem: {reading.mem_available // (1024 * 1024)}MB, "
                f"Disk: {reading.disk_available // (1024 * 1024)}MB"
            )
        return reading

    def get_last_reading(self) -> Optional[HealthSample]:
        """Get the last reading without taking a new measurement."""
        return self._last_reading

    def get_status(self) -> Dict[str, Any]:
        """Get status information about the host monitor."""
        reading = self.get_last_reading()
        return {
            "sensor_type": type(self.sensor_adapter).__name__,
            "mode": "production" if self.production else "development/simulated",
            "disk_path": self.disk_path,
            "last_reading": reading.to_dict() if reading else None,
        }

    def cleanup(self) -> None:
        """Cleanup resources used by the sensor adapter."""
        if hasattr(self, "sensor_adapter") and self.sensor_adapter:
            self.sensor_adapter.cleanup()
        self.logger.debug("HostMonitor cleaned up.")
