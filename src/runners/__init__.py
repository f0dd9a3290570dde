"""
Runner System for PiFleet

This package implements the threaded runners of the fleet controller. The
architecture provides:

- Thread-safe concurrent execution
- Crash detection and restart with backoff
- Host health monitoring
- Graceful shutdown handling
- Extensible base classes for new runners

Core Components:
    - BaseRunner: Abstract base class for all runners
    - HealthMonitor: Samples host resources and derives a HealthStatus
    - RunnerAgent: One CI runner slot and its state machine
    - FleetController: Central manager for all agents

Usage:
    from runners import FleetController

    controller = FleetController(config, store, coordinator, executor, report_queue)
    controller.run()
"""

from .base_runner import BaseRunner, RunnerState, RunnerStatus
from .fleet_controller import ConcurrencyGate, FleetController, FleetStatus
from .health_monitor import HealthMonitor, HealthStatus
from .runner_agent import AgentState, AgentStatus, RunnerAgent

__all__ = [
    "BaseRunner",
    "RunnerState",
    "RunnerStatus",
    "HealthMonitor",
    "HealthStatus",
    "RunnerAgent",
    "AgentState",
    "AgentStatus",
    "FleetController",
    "FleetStatus",
    "ConcurrencyGate",
]
