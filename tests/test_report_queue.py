#!/usr/bin/env python3
"""
Unit tests for the ReportQueue

Delivers queued results through scripted coordinator answers and checks the
retry, FIFO and abandonment rules.
"""

import sys
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

# Add the src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from coordinator.models import ExecutionResult, JobOutcome, ReportAck
from errors import AuthError, CoordinatorError, NetworkError
from fleet_interface import ReportQueue, ReportStatus, StateStore


def make_result(job_id: str) -> ExecutionResult:
    return ExecutionResult(job_id=job_id, outcome=JobOutcome.SUCCESS, exit_code=0)


class TestReportQueue(unittest.TestCase):
    """Test cases for delivery through the queue."""

    def setUp(self):
        self.store = StateStore(":memory:")
        self.store.initialize()
        self.addCleanup(self.store.close)
        self.queue = ReportQueue(
            self.store,
            {"base_delay": 2, "max_delay": 60, "max_attempts": 3, "jitter": 0},
        )
        self.runner_id = uuid.uuid4()
        self.now = datetime.now(timezone.utc)

    def test_delivered_on_ack(self):
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        deliver = MagicMock(return_value=ReportAck.ACK)

        outcome = self.queue.flush(self.runner_id, deliver, self.now)

        self.assertEqual(outcome.delivered, 1)
        deliver.assert_called_once()
        self.assertFalse(self.queue.has_pending(self.runner_id))
        self.assertEqual(self.store.get_report("job-1").status, ReportStatus.DELIVERED)

    def test_transient_failure_then_success_delivers_once(self):
        """Two network failures then an ack: one delivery, no duplicate."""
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        deliver = MagicMock(
            side_effect=[NetworkError("down"), NetworkError("down"), ReportAck.ACK]
        )

        now = self.now
        first = self.queue.flush(self.runner_id, deliver, now)
        self.assertEqual(first.retried, 1)
        self.assertEqual(self.queue.next_retry_in(self.runner_id, now), 2.0)

        # Not yet due
        blocked = self.queue.flush(self.runner_id, deliver, now + timedelta(seconds=1))
        self.assertTrue(blocked.blocked)
        self.assertEqual(deliver.call_count, 1)

        now += timedelta(seconds=2)
        self.queue.flush(self.runner_id, deliver, now)
        self.assertEqual(self.queue.next_retry_in(self.runner_id, now), 4.0)

        now += timedelta(seconds=4)
        final = self.queue.flush(self.runner_id, deliver, now)
        self.assertEqual(final.delivered, 1)
        self.assertEqual(deliver.call_count, 3)
        self.assertIsNone(self.queue.next_retry_in(self.runner_id, now))

    def test_strict_fifo(self):
        """A failing head report holds back the reports behind it."""
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        self.queue.enqueue(self.runner_id, make_result("job-2"))
        delivered = []

        def deliver(job_id, result):
            if job_id == "job-1" and not delivered:
                delivered.append("fail")
                raise NetworkError("down")
            delivered.append(job_id)
            return ReportAck.ACK

        self.queue.flush(self.runner_id, deliver, self.now)
        self.assertEqual(delivered, ["fail"])

        self.queue.flush(self.runner_id, deliver, self.now + timedelta(seconds=5))
        self.assertEqual(delivered, ["fail", "job-1", "job-2"])

    def test_retry_later_is_rescheduled(self):
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        outcome = self.queue.flush(
            self.runner_id, MagicMock(return_value=ReportAck.RETRY_LATER), self.now
        )
        self.assertEqual(outcome.retried, 1)
        self.assertEqual(self.store.get_report("job-1").attempts, 1)

    def test_abandoned_after_max_attempts(self):
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        self.queue.enqueue(self.runner_id, make_result("job-2"))

        def deliver(job_id, result):
            if job_id == "job-1":
                raise NetworkError("down")
            return ReportAck.ACK

        now = self.now
        for _ in range(3):
            outcome = self.queue.flush(self.runner_id, deliver, now)
            now += timedelta(seconds=120)

        self.assertEqual(outcome.abandoned, 1)
        self.assertEqual(outcome.delivered, 1)
        self.assertEqual(self.store.get_report("job-1").status, ReportStatus.ABANDONED)
        self.assertEqual(self.queue.stats["abandoned"], 1)

    def test_coordinator_error_recorded_and_raised(self):
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        with self.assertRaises(CoordinatorError):
            self.queue.flush(
                self.runner_id, MagicMock(side_effect=CoordinatorError("bad body")), self.now
            )
        self.assertEqual(self.store.get_report("job-1").attempts, 1)

    def test_auth_error_leaves_report_untouched(self):
        self.queue.enqueue(self.runner_id, make_result("job-1"))
        with self.assertRaises(AuthError):
            self.queue.flush(self.runner_id, MagicMock(side_effect=AuthError("401")), self.now)
        report = self.store.get_report("job-1")
        self.assertEqual(report.attempts, 0)
        self.assertEqual(report.status, ReportStatus.PENDING)

    def test_enqueue_twice_is_harmless(self):
        self.assertTrue(self.queue.enqueue(self.runner_id, make_result("job-1")))
        self.assertFalse(self.queue.enqueue(self.runner_id, make_result("job-1")))
        self.assertEqual(len(self.queue.pending(self.runner_id)), 1)


if __name__ == "__main__":
    unittest.main()
