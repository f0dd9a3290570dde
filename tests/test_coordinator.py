#!/usr/bin/env python3
"""
Unit tests for the coordinator clients

The HTTP client is tested against a mocked requests session for its error
mapping; the simulated coordinator for lease arbitration, reclaim and
idempotent reports.
"""

import sys
import threading
import unittest
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

# Add the src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import requests

from coordinator import (
    ExecutionResult,
    HttpCoordinatorClient,
    JobOutcome,
    ReportAck,
    RunnerIdentity,
    SimulatedCoordinator,
)
from errors import AuthError, CoordinatorError, LeaseConflict, NetworkError


def make_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.text = "" if body is None else str(body)
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body if body is not None else {}
    return response


class TestHttpCoordinatorClient(unittest.TestCase):
    """Test cases for request building and error mapping."""

    def setUp(self):
        self.client = HttpCoordinatorClient(
            "https://ci.example.com/",
            token_source=lambda: "reg-token",
            timeout=3.0,
            admin_token="admin",
        )
        self.client.session = MagicMock()
        self.runner_id = uuid.uuid4()

    def respond(self, *responses):
        self.client.session.request.side_effect = list(responses)

    def test_poll_sends_bearer_token_and_timeout(self):
        self.respond(make_response(204))
        self.assertIsNone(self.client.poll(self.runner_id, ["arm64"], ["docker"]))

        args, kwargs = self.client.session.request.call_args
        self.assertEqual(args, ("POST", f"https://ci.example.com/api/runners/{self.runner_id}/poll"))
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer reg-token"})
        self.assertEqual(kwargs["timeout"], 3.0)
        self.assertEqual(kwargs["json"], {"labels": ["arm64"], "capabilities": ["docker"]})

    def test_poll_returns_lease(self):
        self.respond(
            make_response(
                200,
                {
                    "lease": {
                        "job_id": "job-7",
                        "runner_id": str(self.runner_id),
                        "claimed_at": "2026-01-01T00:00:00+00:00",
                        "ttl": 600,
                        "payload_ref": "https://ci.example.com/jobs/7",
                        "payload": {"command": ["make"], "image": "python:3.12"},
                    }
                },
            )
        )
        lease = self.client.poll(self.runner_id, [])
        self.assertEqual(lease.job_id, "job-7")
        self.assertEqual(lease.payload.image, "python:3.12")

    def test_error_mapping(self):
        cases = [
            (make_response(401), AuthError),
            (make_response(403), AuthError),
            (make_response(409), LeaseConflict),
            (make_response(429), NetworkError),
            (make_response(503), NetworkError),
            (make_response(400), CoordinatorError),
            (make_response(200, ValueError("not json")), CoordinatorError),
            (make_response(200, {"lease": {"job_id": "missing fields"}}), CoordinatorError),
        ]
        for response, expected in cases:
            with self.subTest(status=response.status_code, expected=expected.__name__):
                self.respond(response)
                with self.assertRaises(expected):
                    self.client.poll(self.runner_id, [])

    def test_transport_errors_are_network_errors(self):
        for error in (requests.ConnectionError("refused"), requests.Timeout("slow")):
            with self.subTest(error=type(error).__name__):
                self.client.session.request.side_effect = error
                with self.assertRaises(NetworkError):
                    self.client.heartbeat(self.runner_id, "idle")

    def test_conflict_outside_poll_is_coordinator_error(self):
        self.respond(make_response(409))
        with self.assertRaises(CoordinatorError):
            self.client.release("job-1", self.runner_id)

    def test_register_uses_given_token(self):
        self.respond(make_response(200, {"accepted": True}))
        identity = RunnerIdentity(runner_id=self.runner_id, host_id="pi-01", labels={"arm64"})
        self.assertTrue(self.client.register(identity, "fresh-token"))
        kwargs = self.client.session.request.call_args.kwargs
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer fresh-token"})

    def test_register_rejected_credentials(self):
        self.respond(make_response(401))
        identity = RunnerIdentity(runner_id=self.runner_id, host_id="pi-01")
        self.assertFalse(self.client.register(identity, "stale"))

    def test_report_answers(self):
        result = ExecutionResult(job_id="job-1", outcome=JobOutcome.SUCCESS, exit_code=0)
        self.respond(make_response(200, {"status": "ack"}), make_response(202))
        self.assertEqual(self.client.report("job-1", result), ReportAck.ACK)
        self.assertEqual(self.client.report("job-1", result), ReportAck.RETRY_LATER)

    def test_heartbeat_revocations(self):
        self.respond(make_response(200, {"revoked_jobs": ["job-1"]}))
        ack = self.client.heartbeat(self.runner_id, "executing", "job-1")
        self.assertEqual(ack.revoked_jobs, ["job-1"])

    def test_fetch_registration_token(self):
        self.respond(
            make_response(200, {"token": "minted", "expires_at": "2099-01-01T00:00:00"})
        )
        token = self.client.fetch_registration_token()
        self.assertEqual(token.value.get_secret_value(), "minted")
        self.assertEqual(token.expires_at.tzinfo, timezone.utc)
        kwargs = self.client.session.request.call_args.kwargs
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer admin"})

    def test_fetch_registration_token_without_admin_token(self):
        self.client.admin_token = None
        with self.assertRaises(AuthError):
            self.client.fetch_registration_token()


class FakeClock:
    """Settable clock for lease expiry."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class TestSimulatedCoordinator(unittest.TestCase):
    """Test cases for the in-process coordinator."""

    def setUp(self):
        self.clock = FakeClock()
        self.coordinator = SimulatedCoordinator(lease_ttl=60, clock=self.clock)
        self.runners = [
            RunnerIdentity(runner_id=uuid.uuid4(), host_id="pi-01", labels={"arm64"})
            for _ in range(3)
        ]
        for identity in self.runners:
            token = self.coordinator.issue_token().value.get_secret_value()
            self.assertTrue(self.coordinator.register(identity, token))

    def result(self, job_id):
        return ExecutionResult(job_id=job_id, outcome=JobOutcome.SUCCESS, exit_code=0)

    def test_unknown_token_rejected(self):
        identity = RunnerIdentity(runner_id=uuid.uuid4(), host_id="pi-02")
        self.assertFalse(self.coordinator.register(identity, "forged"))

    def test_expired_token_rejected(self):
        token = self.coordinator.issue_token(lifetime=10).value.get_secret_value()
        self.clock.advance(11)
        identity = RunnerIdentity(runner_id=uuid.uuid4(), host_id="pi-02")
        self.assertFalse(self.coordinator.register(identity, token))

    def test_unregistered_runner_cannot_poll(self):
        with self.assertRaises(AuthError):
            self.coordinator.poll(uuid.uuid4(), [])

    def test_label_matching(self):
        self.coordinator.submit_job(["make"], job_id="x86-only", labels={"x86_64"})
        self.assertIsNone(self.coordinator.poll(self.runners[0].runner_id, {"arm64"}))
        self.coordinator.submit_job(["make"], job_id="arm", labels={"arm64"})
        lease = self.coordinator.poll(self.runners[0].runner_id, {"arm64"})
        self.assertEqual(lease.job_id, "arm")

    def test_one_lease_per_runner(self):
        """A runner holding a lease cannot claim another."""
        runner_id = self.runners[0].runner_id
        self.coordinator.submit_job(["a"], job_id="a")
        self.coordinator.submit_job(["b"], job_id="b")
        self.coordinator.poll(runner_id, [])
        with self.assertRaises(LeaseConflict):
            self.coordinator.poll(runner_id, [])

        self.coordinator.report("a", self.result("a"))
        self.assertEqual(self.coordinator.poll(runner_id, []).job_id, "b")

    def test_concurrent_claims_never_share_a_job(self):
        """At most one live lease per job across racing runners."""
        for index in range(20):
            self.coordinator.submit_job(["true"], job_id=f"job-{index}")

        claimed = []
        lock = threading.Lock()

        def worker(runner_id):
            for _ in range(10):
                try:
                    lease = self.coordinator.poll(runner_id, [])
                except LeaseConflict:
                    continue
                if lease is None:
                    return
                with lock:
                    claimed.append(lease.job_id)
                self.coordinator.report(lease.job_id, self.result(lease.job_id))

        threads = [
            threading.Thread(target=worker, args=(identity.runner_id,))
            for identity in self.runners
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        self.assertEqual(len(claimed), len(set(claimed)))
        self.assertEqual(len(self.coordinator.results), len(claimed))

    def test_expired_lease_is_reclaimed(self):
        self.coordinator.submit_job(["true"], job_id="job-1")
        first = self.runners[0].runner_id
        self.coordinator.poll(first, [])

        self.clock.advance(61)
        lease = self.coordinator.poll(self.runners[1].runner_id, [])
        self.assertEqual(lease.job_id, "job-1")
        self.assertIsNone(self.coordinator.lease_for_runner(first))

    def test_heartbeat_renews_lease(self):
        self.coordinator.submit_job(["true"], job_id="job-1")
        runner_id = self.runners[0].runner_id
        self.coordinator.poll(runner_id, [])

        self.clock.advance(50)
        self.coordinator.heartbeat(runner_id, "executing", "job-1")
        self.clock.advance(50)
        self.assertIsNotNone(self.coordinator.lease_for_runner(runner_id))

    def test_report_is_idempotent(self):
        self.coordinator.submit_job(["true"], job_id="job-1")
        self.coordinator.poll(self.runners[0].runner_id, [])
        first = self.result("job-1")
        duplicate = ExecutionResult(job_id="job-1", outcome=JobOutcome.FAILURE, exit_code=1)

        self.assertEqual(self.coordinator.report("job-1", first), ReportAck.ACK)
        self.assertEqual(self.coordinator.report("job-1", duplicate), ReportAck.ACK)
        self.assertEqual(self.coordinator.result_for("job-1").outcome, JobOutcome.SUCCESS)
        self.assertEqual(self.coordinator.report_calls, 2)

    def test_revocation_reaches_holder_on_heartbeat(self):
        self.coordinator.submit_job(["true"], job_id="job-1")
        runner_id = self.runners[0].runner_id
        self.coordinator.poll(runner_id, [])
        self.coordinator.revoke("job-1")

        ack = self.coordinator.heartbeat(runner_id, "executing", "job-1")
        self.assertEqual(ack.revoked_jobs, ["job-1"])
        other = self.coordinator.heartbeat(self.runners[1].runner_id, "idle")
        self.assertEqual(other.revoked_jobs, [])

    def test_release_requeues_at_front(self):
        self.coordinator.submit_job(["true"], job_id="job-1")
        self.coordinator.submit_job(["true"], job_id="job-2")
        runner_id = self.runners[0].runner_id
        self.coordinator.poll(runner_id, [])
        self.coordinator.release("job-1", runner_id)
        self.assertEqual(self.coordinator.pending_jobs(), ["job-1", "job-2"])

    def test_fault_injection(self):
        self.coordinator.fail_next("report", NetworkError("down"), times=2)
        for _ in range(2):
            with self.assertRaises(NetworkError):
                self.coordinator.report("job-1", self.result("job-1"))
        self.assertEqual(self.coordinator.report("job-1", self.result("job-1")), ReportAck.ACK)
        self.assertEqual(self.coordinator.report_calls, 1)

    def test_deregister_drops_lease(self):
        self.coordinator.submit_job(["true"], job_id="job-1")
        runner_id = self.runners[0].runner_id
        self.coordinator.poll(runner_id, [])
        self.coordinator.deregister(runner_id, "token")
        self.assertEqual(self.coordinator.pending_jobs(), ["job-1"])
        with self.assertRaises(AuthError):
            self.coordinator.poll(runner_id, [])


if __name__ == "__main__":
    unittest.main()
