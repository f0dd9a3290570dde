"""
Fleet Interface Package for PiFleet

This package provides the fleet's local persistence and operator surface:
- SQLite state store for identities, agent state and queued reports
- Write-ahead report queue with retry and backoff
- REST API server for operators
"""

from .api_server import FleetAPIServer
from .database import StateStore
from .models import APIResponse, PersistedAgentState, QueuedReport, ReportStatus
from .report_queue import FlushOutcome, ReportQueue

__all__ = [
    "FleetAPIServer",
    "StateStore",
    "ReportQueue",
    "FlushOutcome",
    "APIResponse",
    "PersistedAgentState",
    "QueuedReport",
    "ReportStatus",
]
