"""
Sensor Modules for PiFleet

This package contains host sensor implementations for runner hosts.
Each sensor module provides interfaces for both hardware (production) and
simulated (development) modes.

Exports:
    - HostMonitor: Main host resource monitor class
    - HealthSample: Data class for one resource sample
    - SensorReadError: Exception for sensor read failures
"""

from .host_monitor import (
    HardwareHostAdapter,
    HealthSample,
    HostMonitor,
    HostSensorAdapter,
    SensorReadError,
    SimulatedHostAdapter,
)

__all__ = [
    "HardwareHostAdapter",
    "HealthSample",
    "HostMonitor",
    "HostSensorAdapter",
    "SensorReadError",
    "SimulatedHostAdapter",
]
