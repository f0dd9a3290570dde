"""
Data Models for the Fleet Interface

This module defines the models persisted by the state store and returned by
the operator API. All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from coordinator.models import ExecutionResult, JobLease, utcnow


class ReportStatus(str, Enum):
    """Delivery state of a queued result report."""

    PENDING = "pending"
    DELIVERED = "delivered"
    ABANDONED = "abandoned"


class QueuedReport(BaseModel):
    """A result written ahead to disk before it is delivered."""

    id: int
    job_id: str
    runner_id: UUID
    result: ExecutionResult
    attempts: int = Field(default=0, ge=0)
    next_retry: Optional[datetime] = None
    status: ReportStatus = ReportStatus.PENDING
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None


class PersistedAgentState(BaseModel):
    """Last known state of one runner agent."""

    runner_id: UUID
    state: str
    job_id: Optional[str] = None
    lease: Optional[JobLease] = None
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class APIResponse(BaseModel):
    """Standard API response format."""

    success: bool
    message: str
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utcnow)
