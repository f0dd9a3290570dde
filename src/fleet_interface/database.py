"""
State Store for PiFleet

This module provides the local SQLite database the fleet uses to survive
restarts. It holds:

- runner identities, so a host slot keeps its runner_id across restarts
- the last known state, job and lease of every agent
- the write-ahead queue of result reports awaiting delivery

Uses SQLAlchemy with a synchronous engine; writes are serialized with a lock
because every agent thread shares one store.
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union
from uuid import UUID

from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import Column

from config.paths import STATE_DB_PATH
from coordinator.models import ExecutionResult, JobLease, RunnerIdentity

from .models import PersistedAgentState, QueuedReport, ReportStatus

Base = declarative_base()


def _now() -> datetime:
    """Naive UTC now; SQLite drops tzinfo so everything stored is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_db(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(dt: Optional[datetime]) -> Optional[datetime]:
    return dt.replace(tzinfo=timezone.utc) if dt is not None else None


class RunnerIdentityTable(Base):
    """Database table for runner identities."""

    __tablename__ = "runner_identities"
    __table_args__ = (UniqueConstraint("host_id", "slot"),)

    runner_id = Column(String, primary_key=True)
    host_id = Column(String, nullable=False, index=True)
    slot = Column(Integer, nullable=False)
    labels = Column(Text)  # JSON list
    capabilities = Column(Text)  # JSON list
    created_at = Column(DateTime, nullable=False)


class AgentStateTable(Base):
    """Database table for the last known state of each agent."""

    __tablename__ = "agent_states"

    runner_id = Column(String, primary_key=True)
    state = Column(String, nullable=False)
    job_id = Column(String)
    lease = Column(Text)  # JSON JobLease
    last_error = Column(Text)
    updated_at = Column(DateTime, nullable=False)


class PendingReportTable(Base):
    """Database table for the write-ahead report queue."""

    __tablename__ = "pending_reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, unique=True)
    runner_id = Column(String, nullable=False, index=True)
    result = Column(Text, nullable=False)  # JSON ExecutionResult
    attempts = Column(Integer, default=0)
    next_retry = Column(DateTime)
    status = Column(String, nullable=False, default=ReportStatus.PENDING.value, index=True)
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False)
    delivered_at = Column(DateTime)


class StateStore:
    """Database manager for fleet state."""

    def __init__(self, db_path: Union[str, Path] = STATE_DB_PATH):
        """
        Initialize the state store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
        """
        self.logger = logging.getLogger(__name__)
        self.db_path = str(db_path)
        self._write_lock = threading.RLock()

        if self.db_path == ":memory:":
            self.engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                connect_args={"check_same_thread": False},
                echo=False,
            )

        self.session_factory = sessionmaker(self.engine, expire_on_commit=False)

    def initialize(self) -> bool:
        """Create tables."""
        try:
            Base.metadata.create_all(self.engine)
            self.logger.info(f"State store initialized at {self.db_path}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to initialize state store: {e}")
            return False

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
        self.logger.info("State store connections closed")

    @contextmanager
    def _write(self) -> Iterator[Session]:
        """Serialized write transaction."""
        with self._write_lock:
            with self.session_factory() as session:
                with session.begin():
                    yield session

    # Runner Identity Methods
    def get_or_create_identity(
        self,
        host_id: str,
        slot: int,
        labels: Iterable[str] = (),
        capabilities: Iterable[str] = (),
    ) -> RunnerIdentity:
        """
        Get the identity for a host slot, creating it on first use.

        The runner_id never changes; labels and capabilities follow the
        current configuration.
        """
        labels = sorted(set(labels))
        capabilities = sorted(set(capabilities))
        with self._write() as session:
            row = session.execute(
                select(RunnerIdentityTable).where(
                    RunnerIdentityTable.host_id == host_id,
                    RunnerIdentityTable.slot == slot,
                )
            ).scalar_one_or_none()

            if row is None:
                row = RunnerIdentityTable(
                    runner_id=str(uuid.uuid4()),
                    host_id=host_id,
                    slot=slot,
                    labels=json.dumps(labels),
                    capabilities=json.dumps(capabilities),
                    created_at=_now(),
                )
                session.add(row)
                self.logger.info(f"Created runner identity {row.runner_id} for {host_id}/{slot}")
            else:
                row.labels = json.dumps(labels)
                row.capabilities = json.dumps(capabilities)

            return RunnerIdentity(
                runner_id=UUID(row.runner_id),
                host_id=host_id,
                labels=frozenset(labels),
                capabilities=frozenset(capabilities),
            )

    def list_identities(self, host_id: Optional[str] = None) -> List[RunnerIdentity]:
        """List stored identities, optionally for one host."""
        with self.session_factory() as session:
            query = select(RunnerIdentityTable).order_by(
                RunnerIdentityTable.host_id, RunnerIdentityTable.slot
            )
            if host_id is not None:
                query = query.where(RunnerIdentityTable.host_id == host_id)
            rows = session.execute(query).scalars().all()
            return [
                RunnerIdentity(
                    runner_id=UUID(row.runner_id),
                    host_id=row.host_id,
                    labels=frozenset(json.loads(row.labels or "[]")),
                    capabilities=frozenset(json.loads(row.capabilities or "[]")),
                )
                for row in rows
            ]

    def delete_identity(self, runner_id: UUID) -> bool:
        """Forget a runner completely, including its state."""
        with self._write() as session:
            deleted = session.execute(
                RunnerIdentityTable.__table__.delete().where(
                    RunnerIdentityTable.runner_id == str(runner_id)
                )
            ).rowcount
            session.execute(
                AgentStateTable.__table__.delete().where(
                    AgentStateTable.runner_id == str(runner_id)
                )
            )
        return bool(deleted)

    # Agent State Methods
    def save_agent_state(
        self,
        runner_id: UUID,
        state: str,
        job_id: Optional[str] = None,
        lease: Optional[JobLease] = None,
        last_error: Optional[str] = None,
    ) -> None:
        """Upsert the last known state of an agent."""
        with self._write() as session:
            self._upsert_state(session, runner_id, state, job_id, lease, last_error)

    @staticmethod
    def _upsert_state(
        session: Session,
        runner_id: UUID,
        state: str,
        job_id: Optional[str],
        lease: Optional[JobLease],
        last_error: Optional[str],
    ) -> None:
        row = session.get(AgentStateTable, str(runner_id))
        if row is None:
            row = AgentStateTable(runner_id=str(runner_id))
            session.add(row)
        row.state = state
        row.job_id = job_id
        row.lease = lease.model_dump_json() if lease is not None else None
        row.last_error = last_error
        row.updated_at = _now()

    def load_agent_state(self, runner_id: UUID) -> Optional[PersistedAgentState]:
        """Get the last known state of an agent."""
        with self.session_factory() as session:
            row = session.get(AgentStateTable, str(runner_id))
            if row is None:
                return None
            return PersistedAgentState(
                runner_id=UUID(row.runner_id),
                state=row.state,
                job_id=row.job_id,
                lease=JobLease.model_validate_json(row.lease) if row.lease else None,
                last_error=row.last_error,
                updated_at=_from_db(row.updated_at),
            )

    def recover_interrupted_job(
        self, runner_id: UUID, result: ExecutionResult, reset_state: str
    ) -> bool:
        """
        Queue the result of a job interrupted by a crash and reset the agent.

        Both happen in one transaction, so a crash during recovery cannot
        produce a second report or lose the first.

        Returns:
            True if a report was queued, False if one already existed
        """
        with self._write() as session:
            queued = self._insert_report(session, runner_id, result)
            self._upsert_state(session, runner_id, reset_state, None, None, result.error)
        return queued

    # Report Queue Methods
    def _insert_report(self, session: Session, runner_id: UUID, result: ExecutionResult) -> bool:
        exists = session.execute(
            select(PendingReportTable.id).where(PendingReportTable.job_id == result.job_id)
        ).first()
        if exists:
            self.logger.debug(f"Report for {result.job_id} already queued")
            return False
        session.add(
            PendingReportTable(
                job_id=result.job_id,
                runner_id=str(runner_id),
                result=result.model_dump_json(),
                attempts=0,
                status=ReportStatus.PENDING.value,
                created_at=_now(),
            )
        )
        return True

    def enqueue_report(self, runner_id: UUID, result: ExecutionResult) -> bool:
        """
        Write a result ahead of delivery. Idempotent per job_id.

        Returns:
            True if queued, False if a report for the job already exists
        """
        with self._write() as session:
            return self._insert_report(session, runner_id, result)

    def get_reports(
        self,
        runner_id: Optional[UUID] = None,
        status: Optional[ReportStatus] = ReportStatus.PENDING,
        limit: Optional[int] = None,
    ) -> List[QueuedReport]:
        """Get queued reports in FIFO order."""
        with self.session_factory() as session:
            query = select(PendingReportTable).order_by(PendingReportTable.id.asc())
            if runner_id is not None:
                query = query.where(PendingReportTable.runner_id == str(runner_id))
            if status is not None:
                query = query.where(PendingReportTable.status == status.value)
            if limit is not None:
                query = query.limit(limit)
            rows = session.execute(query).scalars().all()
            return [self._report_from_row(row) for row in rows]

    def get_report(self, job_id: str) -> Optional[QueuedReport]:
        with self.session_factory() as session:
            row = session.execute(
                select(PendingReportTable).where(PendingReportTable.job_id == job_id)
            ).scalar_one_or_none()
            return self._report_from_row(row) if row else None

    @staticmethod
    def _report_from_row(row: PendingReportTable) -> QueuedReport:
        return QueuedReport(
            id=row.id,
            job_id=row.job_id,
            runner_id=UUID(row.runner_id),
            result=ExecutionResult.model_validate_json(row.result),
            attempts=row.attempts or 0,
            next_retry=_from_db(row.next_retry),
            status=ReportStatus(row.status),
            error_message=row.error_message,
            created_at=_from_db(row.created_at),
            delivered_at=_from_db(row.delivered_at),
        )

    def mark_report_delivered(self, report_id: int) -> None:
        with self._write() as session:
            session.execute(
                update(PendingReportTable)
                .where(PendingReportTable.id == report_id)
                .values(
                    status=ReportStatus.DELIVERED.value,
                    delivered_at=_now(),
                    next_retry=None,
                    error_message=None,
                )
            )

    def schedule_report_retry(
        self, report_id: int, attempts: int, next_retry: datetime, error_message: str
    ) -> None:
        with self._write() as session:
            session.execute(
                update(PendingReportTable)
                .where(PendingReportTable.id == report_id)
                .values(
                    attempts=attempts,
                    next_retry=_to_db(next_retry),
                    error_message=error_message,
                )
            )

    def mark_report_abandoned(self, report_id: int, attempts: int, error_message: str) -> None:
        with self._write() as session:
            session.execute(
                update(PendingReportTable)
                .where(PendingReportTable.id == report_id)
                .values(
                    status=ReportStatus.ABANDONED.value,
                    attempts=attempts,
                    next_retry=None,
                    error_message=error_message,
                )
            )

    def count_reports(
        self, status: Optional[ReportStatus] = None, runner_id: Optional[UUID] = None
    ) -> int:
        with self.session_factory() as session:
            query = select(func.count(PendingReportTable.id))
            if status is not None:
                query = query.where(PendingReportTable.status == status.value)
            if runner_id is not None:
                query = query.where(PendingReportTable.runner_id == str(runner_id))
            return session.execute(query).scalar() or 0

    # Cleanup Methods
    def cleanup_delivered(self, days: int = 7) -> int:
        """Delete delivered reports older than the given number of days."""
        cutoff = _now() - timedelta(days=days)
        try:
            with self._write() as session:
                deleted = session.execute(
                    PendingReportTable.__table__.delete().where(
                        PendingReportTable.status == ReportStatus.DELIVERED.value,
                        PendingReportTable.delivered_at < cutoff,
                    )
                ).rowcount
            if deleted:
                self.logger.info(f"Cleaned up {deleted} delivered reports")
            return deleted
        except Exception as e:
            self.logger.error(f"Failed to cleanup delivered reports: {e}")
            return 0
