"""
Data Models for the Coordinator Protocol

This module defines the wire types exchanged between runner agents and the
CI coordinator. All models use Pydantic for validation and serialization.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobOutcome(str, Enum):
    """Final outcome of one job execution."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ReportAck(str, Enum):
    """Coordinator answer to a result report."""

    ACK = "ack"
    RETRY_LATER = "retry_later"


class RunnerIdentity(BaseModel):
    """Stable identity of one runner, immutable once created."""

    model_config = ConfigDict(frozen=True)

    runner_id: UUID
    host_id: str
    labels: FrozenSet[str] = Field(default_factory=frozenset)
    capabilities: FrozenSet[str] = Field(default_factory=frozenset)


class JobPayload(BaseModel):
    """What to run for a job."""

    command: List[str]
    image: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(None, gt=0)  # seconds, overrides job_timeout


class JobLease(BaseModel):
    """Exclusive, time-bounded right to execute one job."""

    job_id: str
    runner_id: UUID
    claimed_at: datetime = Field(default_factory=utcnow)
    ttl: float = Field(gt=0)  # seconds
    payload_ref: str
    payload: JobPayload

    @property
    def expires_at(self) -> datetime:
        return self.claimed_at + timedelta(seconds=self.ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class ExecutionResult(BaseModel):
    """Immutable result of one job execution."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    outcome: JobOutcome
    exit_code: Optional[int] = None
    duration: float = Field(default=0.0, ge=0.0)  # seconds
    log_ref: Optional[str] = None
    runner_id: Optional[UUID] = None
    finished_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class HeartbeatAck(BaseModel):
    """Coordinator answer to a heartbeat."""

    revoked_jobs: List[str] = Field(default_factory=list)


class RegistrationToken(BaseModel):
    """A registration token and its validity window. The value never shows in repr."""

    model_config = ConfigDict(frozen=True)

    value: SecretStr
    issued_at: datetime
    expires_at: datetime

    @property
    def lifetime(self) -> float:
        """Total validity in seconds."""
        return max(0.0, (self.expires_at - self.issued_at).total_seconds())

    def remaining(self, now: Optional[datetime] = None) -> float:
        """Seconds left before expiry (negative once expired)."""
        return (self.expires_at - (now or utcnow())).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.remaining(now) <= 0

    def to_cache(self) -> Dict[str, str]:
        """Plain dict including the secret, for the encrypted cache only."""
        return {
            "value": self.value.get_secret_value(),
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }
