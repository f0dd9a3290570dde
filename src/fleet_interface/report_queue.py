"""
Report Queue for PiFleet

This module delivers job results to the coordinator from the persistent
write-ahead queue. A result is stored before the first delivery attempt and
stays queued until the coordinator acknowledges it, so a lost connection or a
crash never loses a result and never causes a job to run twice.

Reports from one runner are delivered strictly in the order they were queued:
a report waiting for its retry time holds back the ones behind it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from backoff import compute_delay
from coordinator.models import ExecutionResult, ReportAck
from errors import TRANSIENT_ERRORS, CoordinatorError

from .database import StateStore
from .models import QueuedReport, ReportStatus

Deliver = Callable[[str, ExecutionResult], ReportAck]


@dataclass
class FlushOutcome:
    """What one flush achieved."""

    delivered: int = 0
    retried: int = 0
    abandoned: int = 0
    blocked: bool = False  # head of the queue is waiting for its retry time


class ReportQueue:
    """Manages the write-ahead queue of result reports."""

    def __init__(
        self,
        store: StateStore,
        config: Dict[str, Any],
        rng: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the report queue.

        Args:
            store: State store holding the queue
            config: The ``report_retry_policy`` configuration section
            rng: Random source for jitter
        """
        self.store = store
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.base_delay = float(config.get("base_delay", 2.0))
        self.max_delay = float(config.get("max_delay", 300.0))
        self.max_attempts = int(config.get("max_attempts", 50))
        self.jitter = float(config.get("jitter", 0.2))
        self._rng = rng

        # Statistics
        self.stats = {
            "queued": 0,
            "delivered": 0,
            "retried": 0,
            "abandoned": 0,
        }

    def enqueue(self, runner_id: UUID, result: ExecutionResult) -> bool:
        """Write a result ahead of delivery. Safe to call twice for one job."""
        queued = self.store.enqueue_report(runner_id, result)
        if queued:
            self.stats["queued"] += 1
            self.logger.debug(f"Queued report for {result.job_id} ({result.outcome.value})")
        return queued

    def pending(self, runner_id: Optional[UUID] = None) -> List[QueuedReport]:
        return self.store.get_reports(runner_id=runner_id, status=ReportStatus.PENDING)

    def has_pending(self, runner_id: UUID) -> bool:
        return self.store.count_reports(status=ReportStatus.PENDING, runner_id=runner_id) > 0

    def retry_delay(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failures."""
        return compute_delay(
            attempts, self.base_delay, self.max_delay, jitter=self.jitter, rng=self._rng
        )

    def flush(
        self,
        runner_id: UUID,
        deliver: Deliver,
        now: Optional[datetime] = None,
        due_only: bool = True,
    ) -> FlushOutcome:
        """
        Deliver due reports for one runner in FIFO order.

        Transient failures reschedule the report and stop the flush. With
        ``due_only`` off, reports waiting for their retry time are tried now
        as well (used for the last attempt at shutdown). An
        unrecoverable coordinator error is recorded and re-raised; so is an
        AuthError, which leaves the report untouched.

        Returns:
            FlushOutcome describing what happened
        """
        now = now or datetime.now(timezone.utc)
        outcome = FlushOutcome()

        for report in self.pending(runner_id):
            if due_only and report.next_retry is not None and now < report.next_retry:
                outcome.blocked = True
                break

            try:
                ack = deliver(report.job_id, report.result)
            except TRANSIENT_ERRORS as e:
                if self._schedule_retry(report, now, str(e)):
                    outcome.abandoned += 1
                    continue
                outcome.retried += 1
                break
            except CoordinatorError as e:
                self._schedule_retry(report, now, str(e))
                raise

            if ack == ReportAck.ACK:
                self.store.mark_report_delivered(report.id)
                self.stats["delivered"] += 1
                outcome.delivered += 1
                self.logger.info(f"Report for {report.job_id} delivered")
            else:
                if self._schedule_retry(report, now, "coordinator asked to retry later"):
                    outcome.abandoned += 1
                    continue
                outcome.retried += 1
                break

        return outcome

    def _schedule_retry(self, report: QueuedReport, now: datetime, error: str) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the report was abandoned after exhausting its attempts
        """
        attempts = report.attempts + 1
        if attempts >= self.max_attempts:
            self.store.mark_report_abandoned(report.id, attempts, error)
            self.stats["abandoned"] += 1
            self.logger.error(
                f"Abandoning report for {report.job_id} after {attempts} attempts: {error}"
            )
            return True

        delay = self.retry_delay(attempts)
        self.store.schedule_report_retry(
            report.id, attempts, now + timedelta(seconds=delay), error
        )
        self.stats["retried"] += 1
        self.logger.warning(
            f"Report for {report.job_id} failed (attempt {attempts}), retrying in {delay:.1f}s: {error}"
        )
        return False

    def next_retry_in(self, runner_id: UUID, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until the head report is due, None if nothing is pending."""
        reports = self.store.get_reports(runner_id=runner_id, status=ReportStatus.PENDING, limit=1)
        if not reports:
            return None
        head = reports[0]
        if head.next_retry is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return max(0.0, (head.next_retry - now).total_seconds())
