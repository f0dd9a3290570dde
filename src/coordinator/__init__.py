"""
Coordinator protocol, wire models and implementations.
"""

from .client import CoordinatorClient, HttpCoordinatorClient
from .models import (
    ExecutionResult,
    HeartbeatAck,
    JobLease,
    JobOutcome,
    JobPayload,
    RegistrationToken,
    ReportAck,
    RunnerIdentity,
)
from .simulated import SimulatedCoordinator

__all__ = [
    "CoordinatorClient",
    "HttpCoordinatorClient",
    "SimulatedCoordinator",
    "ExecutionResult",
    "HeartbeatAck",
    "JobLease",
    "JobOutcome",
    "JobPayload",
    "RegistrationToken",
    "ReportAck",
    "RunnerIdentity",
]
