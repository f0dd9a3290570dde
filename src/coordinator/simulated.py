"""
Simulated Coordinator for PiFleet

An in-process, thread-safe coordinator used in development mode and by the
test suite. It arbitrates leases the way a real CI coordinator would:

- a job is leased to at most one runner at a time
- a runner holds at most one live lease
- a lease that is not heartbeated within its ttl is reclaimed and the job
  goes back to the front of the queue
- reports are idempotent per job_id

Faults can be injected per operation with ``fail_next``.
"""

import logging
import secrets
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set
from uuid import UUID

from errors import AuthError, LeaseConflict

from .client import CoordinatorClient
from .models import (
    ExecutionResult,
    HeartbeatAck,
    JobLease,
    JobPayload,
    RegistrationToken,
    ReportAck,
    RunnerIdentity,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulatedJob:
    """A queued job and the runner properties it requires."""

    job_id: str
    payload: JobPayload
    labels: FrozenSet[str] = field(default_factory=frozenset)
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def matches(self, labels: Iterable[str], capabilities: Iterable[str]) -> bool:
        return self.labels <= set(labels) and self.capabilities <= set(capabilities)


class SimulatedCoordinator(CoordinatorClient):
    """Coordinator living in the same process as the fleet."""

    def __init__(
        self,
        lease_ttl: float = 600.0,
        token_lifetime: float = 3600.0,
        require_token: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            lease_ttl: Seconds a lease lives without a heartbeat
            token_lifetime: Lifetime of issued registration tokens in seconds
            require_token: Reject registrations with tokens this coordinator
                did not issue
            clock: Source of the current time
        """
        self.lease_ttl = lease_ttl
        self.token_lifetime = token_lifetime
        self.require_token = require_token
        self.clock = clock

        self._lock = threading.RLock()
        self._queue: Deque[SimulatedJob] = deque()
        self._jobs: Dict[str, SimulatedJob] = {}
        self._leases: Dict[str, JobLease] = {}
        self._runner_leases: Dict[UUID, str] = {}
        self._results: Dict[str, ExecutionResult] = {}
        self._registered: Dict[UUID, RunnerIdentity] = {}
        self._heartbeats: Dict[UUID, datetime] = {}
        self._revoked: Set[str] = set()
        self._tokens: Dict[str, datetime] = {}
        self._faults: Dict[str, List[list]] = {}

        self.poll_count = 0
        self.report_calls = 0
        self.lease_history: List[JobLease] = []

    # Test and operator controls

    def submit_job(
        self,
        command: List[str],
        job_id: Optional[str] = None,
        image: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        labels: Iterable[str] = (),
        capabilities: Iterable[str] = (),
    ) -> str:
        """Queue a job and return its id."""
        job = SimulatedJob(
            job_id=job_id or f"job-{uuid.uuid4().hex[:12]}",
            payload=JobPayload(command=command, image=image, env=env or {}, timeout=timeout),
            labels=frozenset(labels),
            capabilities=frozenset(capabilities),
        )
        with self._lock:
            self._jobs[job.job_id] = job
            self._queue.append(job)
        logger.info(f"Job {job.job_id} queued: {' '.join(command)}")
        return job.job_id

    def revoke(self, job_id: str) -> None:
        """Mark a job as revoked; its runner learns about it on the next heartbeat."""
        with self._lock:
            self._revoked.add(job_id)
            self._queue = deque(j for j in self._queue if j.job_id != job_id)
        logger.info(f"Job {job_id} revoked")

    def issue_token(self, lifetime: Optional[float] = None) -> RegistrationToken:
        """Mint a registration token this coordinator will accept."""
        now = self.clock()
        token = RegistrationToken(
            value=secrets.token_urlsafe(24),
            issued_at=now,
            expires_at=now + timedelta(seconds=lifetime or self.token_lifetime),
        )
        with self._lock:
            self._tokens[token.value.get_secret_value()] = token.expires_at
        return token

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        with self._lock:
            self._faults.setdefault(operation, []).append([error, times])

    def _maybe_fail(self, operation: str) -> None:
        with self._lock:
            pending = self._faults.get(operation)
            if not pending:
                return
            entry = pending[0]
            entry[1] -= 1
            if entry[1] <= 0:
                pending.pop(0)
            error = entry[0]
        raise error

    # Inspection

    @property
    def results(self) -> Dict[str, ExecutionResult]:
        with self._lock:
            return dict(self._results)

    def result_for(self, job_id: str) -> Optional[ExecutionResult]:
        with self._lock:
            return self._results.get(job_id)

    def active_leases(self) -> Dict[str, JobLease]:
        with self._lock:
            self._reclaim_expired()
            return dict(self._leases)

    def lease_for_runner(self, runner_id: UUID) -> Optional[JobLease]:
        with self._lock:
            self._reclaim_expired()
            job_id = self._runner_leases.get(runner_id)
            return self._leases.get(job_id) if job_id else None

    def pending_jobs(self) -> List[str]:
        with self._lock:
            return [job.job_id for job in self._queue]

    def registered_runners(self) -> List[RunnerIdentity]:
        with self._lock:
            return list(self._registered.values())

    # Lease bookkeeping (caller holds the lock)

    def _drop_lease(self, job_id: str, requeue: bool) -> None:
        lease = self._leases.pop(job_id, None)
        if lease is None:
            return
        if self._runner_leases.get(lease.runner_id) == job_id:
            del self._runner_leases[lease.runner_id]
        job = self._jobs.get(job_id)
        if requeue and job is not None and job_id not in self._revoked:
            self._queue.appendleft(job)

    def _reclaim_expired(self) -> None:
        now = self.clock()
        for job_id, lease in list(self._leases.items()):
            if lease.is_expired(now):
                logger.warning(f"Lease on {job_id} held by {lease.runner_id} expired, reclaiming")
                self._drop_lease(job_id, requeue=True)

    # CoordinatorClient

    def register(self, identity: RunnerIdentity, token: str) -> bool:
        self._maybe_fail("register")
        with self._lock:
            if self.require_token:
                expires_at = self._tokens.get(token)
                if expires_at is None or self.clock() >= expires_at:
                    logger.warning(f"Rejected registration of {identity.runner_id}")
                    return False
            self._registered[identity.runner_id] = identity
        logger.info(f"Runner {identity.runner_id} registered from host {identity.host_id}")
        return True

    def poll(
        self,
        runner_id: UUID,
        labels: Iterable[str],
        capabilities: Iterable[str] = (),
    ) -> Optional[JobLease]:
        self._maybe_fail("poll")
        with self._lock:
            self.poll_count += 1
            if runner_id not in self._registered:
                raise AuthError(f"Runner {runner_id} is not registered")
            self._reclaim_expired()
            if runner_id in self._runner_leases:
                raise LeaseConflict(
                    f"Runner {runner_id} already holds {self._runner_leases[runner_id]}"
                )

            labels = set(labels)
            capabilities = set(capabilities)
            for job in list(self._queue):
                if not job.matches(labels, capabilities):
                    continue
                self._queue.remove(job)
                lease = JobLease(
                    job_id=job.job_id,
                    runner_id=runner_id,
                    claimed_at=self.clock(),
                    ttl=self.lease_ttl,
                    payload_ref=f"sim://jobs/{job.job_id}",
                    payload=job.payload,
                )
                self._leases[job.job_id] = lease
                self._runner_leases[runner_id] = job.job_id
                self.lease_history.append(lease)
                logger.info(f"Job {job.job_id} leased to {runner_id}")
                return lease
        return None

    def report(self, job_id: str, result: ExecutionResult) -> ReportAck:
        self._maybe_fail("report")
        with self._lock:
            self.report_calls += 1
            if job_id in self._results:
                logger.debug(f"Duplicate report for {job_id} acknowledged")
                return ReportAck.ACK
            self._results[job_id] = result
            self._drop_lease(job_id, requeue=False)
            self._revoked.discard(job_id)
        logger.info(f"Job {job_id} reported: {result.outcome.value}")
        return ReportAck.ACK

    def heartbeat(
        self, runner_id: UUID, status: str, job_id: Optional[str] = None
    ) -> HeartbeatAck:
        self._maybe_fail("heartbeat")
        with self._lock:
            now = self.clock()
            self._heartbeats[runner_id] = now
            held = self._runner_leases.get(runner_id)
            if held and held in self._leases:
                self._leases[held] = self._leases[held].model_copy(update={"claimed_at": now})
            revoked = sorted(
                j for j in self._revoked if j in (held, job_id) and j is not None
            )
        return HeartbeatAck(revoked_jobs=revoked)

    def last_heartbeat(self, runner_id: UUID) -> Optional[datetime]:
        with self._lock:
            return self._heartbeats.get(runner_id)

    def release(self, job_id: str, runner_id: UUID) -> None:
        self._maybe_fail("release")
        with self._lock:
            lease = self._leases.get(job_id)
            if lease is None or lease.runner_id != runner_id:
                return
            self._drop_lease(job_id, requeue=True)
        logger.info(f"Job {job_id} released by {runner_id}")

    def deregister(self, runner_id: UUID, token: str) -> None:
        self._maybe_fail("deregister")
        with self._lock:
            self._registered.pop(runner_id, None)
            held = self._runner_leases.get(runner_id)
            if held:
                self._drop_lease(held, requeue=True)
        logger.info(f"Runner {runner_id} deregistered")

    def fetch_registration_token(self) -> RegistrationToken:
        self._maybe_fail("fetch_registration_token")
        return self.issue_token()
