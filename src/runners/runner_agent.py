"""
Runner Agent for PiFleet

One RunnerAgent represents one CI runner slot on a host. It registers with
the coordinator, claims one job at a time, executes it, reports the result
and keeps heartbeating, all from its own thread.

The lifecycle is an explicit state machine:

    registering -> idle -> claiming -> executing -> reporting -> idle
                     \\-> degraded (health degraded, refuses claims)
    any -> offline   (health critical, credentials invalid, auth rejected,
                      too many coordinator errors; left only via recover())
    any -> terminated (explicit shutdown)

Health and credential changes arrive on a per-agent event queue and are
applied at transition points. While a job is executing or being reported the
forced transition waits until the result is written ahead and delivered
(finish-then-offline), unless ``offline_job_policy`` is ``cancel``.
"""

import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from backoff import Backoff
from coordinator.client import CoordinatorClient
from coordinator.models import ExecutionResult, JobLease, JobOutcome, RunnerIdentity
from errors import (
    AuthError,
    CoordinatorError,
    FleetError,
    IllegalTransitionError,
    LeaseConflict,
    NetworkError,
    ResourceExhaustionError,
)
from executor.cancellation import CancellationToken
from executor.job_executor import JobExecutor
from fleet_interface.database import StateStore
from fleet_interface.report_queue import ReportQueue

from .base_runner import BaseRunner
from .health_monitor import HealthStatus


class AgentState(str, Enum):
    """Lifecycle states of a runner agent."""

    REGISTERING = "registering"
    IDLE = "idle"
    CLAIMING = "claiming"
    EXECUTING = "executing"
    REPORTING = "reporting"
    DEGRADED = "degraded"
    OFFLINE = "offline"
    TERMINATED = "terminated"


TRANSITIONS = {
    AgentState.REGISTERING: {
        AgentState.IDLE,
        AgentState.DEGRADED,
        AgentState.OFFLINE,
        AgentState.TERMINATED,
    },
    AgentState.IDLE: {
        AgentState.CLAIMING,
        AgentState.DEGRADED,
        AgentState.OFFLINE,
        AgentState.TERMINATED,
    },
    AgentState.CLAIMING: {
        AgentState.EXECUTING,
        AgentState.IDLE,
        AgentState.DEGRADED,
        AgentState.OFFLINE,
        AgentState.TERMINATED,
    },
    AgentState.EXECUTING: {AgentState.REPORTING, AgentState.TERMINATED},
    AgentState.REPORTING: {
        AgentState.IDLE,
        AgentState.DEGRADED,
        AgentState.OFFLINE,
        AgentState.TERMINATED,
    },
    AgentState.DEGRADED: {
        AgentState.IDLE,
        AgentState.REGISTERING,
        AgentState.OFFLINE,
        AgentState.TERMINATED,
    },
    AgentState.OFFLINE: {AgentState.REGISTERING, AgentState.TERMINATED},
    AgentState.TERMINATED: set(),
}

# States in which a forced health or credential transition waits for the job
DEFERRING_STATES = (AgentState.EXECUTING, AgentState.REPORTING)

# Offline causes that clear on their own once the condition goes away
RECOVERABLE_CAUSES = ("health", "credentials")


class EventKind(str, Enum):
    HEALTH = "health"
    CREDENTIALS = "credentials"


@dataclass
class AgentEvent:
    """A condition change pushed to the agent from another thread."""

    kind: EventKind
    value: Any


@dataclass
class AgentStatus:
    """Status snapshot of one runner agent."""

    name: str
    runner_id: str
    host_id: str
    slot: int
    state: AgentState
    health: HealthStatus
    job_id: Optional[str]
    alive: bool
    crashed: bool
    error_count: int
    last_error: Optional[str]
    offline_cause: Optional[str]
    poll_interval: float
    jobs_completed: int
    last_state_change: float
    restarts: int = 0


class RunnerAgent(BaseRunner):
    """
    Threaded runner slot talking to the CI coordinator.

    Collaborators are injected so the fleet controller can share the
    executor, state store and report queue between agents, and tests can
    substitute the simulated coordinator and sandbox.
    """

    def __init__(
        self,
        identity: RunnerIdentity,
        slot: int,
        config: Dict[str, Any],
        coordinator: CoordinatorClient,
        executor: JobExecutor,
        store: StateStore,
        report_queue: ReportQueue,
        credential_store=None,
        health_monitor=None,
        gate=None,
        production: bool = False,
    ):
        """
        Initialize the runner agent.

        Args:
            identity: Stable identity of this runner
            slot: Index of this runner on its host
            config: The ``agent`` configuration section
            coordinator: Coordinator client
            executor: Job executor
            store: State store for crash recovery
            report_queue: Write-ahead report queue
            credential_store: Source of the registration token
            health_monitor: Host health source
            gate: Fleet-wide concurrency gate
            production: Whether running in production mode
        """
        super().__init__(f"agent_{identity.host_id}_{slot}", config, production)

        self.identity = identity
        self.slot = slot
        self.coordinator = coordinator
        self.executor = executor
        self.store = store
        self.report_queue = report_queue
        self.credential_store = credential_store
        self.health_monitor = health_monitor
        self.gate = gate

        self.interval = self._get_config_value("offline_check_interval", 5.0)
        poll_interval = float(self._get_config_value("poll_interval", 5.0))
        poll_cap = float(self._get_config_value("poll_backoff_cap", 60.0))
        self.poll_backoff = Backoff(poll_interval, poll_cap)
        self.register_backoff = Backoff(poll_interval, poll_cap)
        self.heartbeat_interval = float(self._get_config_value("heartbeat_interval", 30.0))
        self.max_coordinator_errors = int(self._get_config_value("max_coordinator_errors", 5))
        self.offline_job_policy = self._get_config_value("offline_job_policy", "finish")
        self.terminate_grace = float(self._get_config_value("terminate_grace", 60.0))

        # Agent state machine
        self._agent_lock = threading.RLock()
        self._agent_state = AgentState.REGISTERING
        self._state_changed_at = time.time()
        self._registered = False
        self._offline_cause: Optional[str] = None

        # Conditions fed from the event channel
        self._events: "queue.Queue[AgentEvent]" = queue.Queue()
        self._wake = threading.Event()
        self._health = HealthStatus.OK
        self._credentials_valid = True
        self._auth_failed = False
        self._coordinator_errors = 0

        # In-flight job
        self._current_lease: Optional[JobLease] = None
        self._job_token: Optional[CancellationToken] = None
        self._last_heartbeat = 0.0
        self._next_poll_at = 0.0
        self._results: deque = deque(maxlen=int(self._get_config_value("result_history", 50)))
        self._jobs_completed = 0

    # Properties

    @property
    def runner_id(self):
        return self.identity.runner_id

    @property
    def agent_state(self) -> AgentState:
        with self._agent_lock:
            return self._agent_state

    @property
    def health(self) -> HealthStatus:
        with self._agent_lock:
            return self._health

    @property
    def offline_cause(self) -> Optional[str]:
        with self._agent_lock:
            return self._offline_cause

    @property
    def current_job_id(self) -> Optional[str]:
        lease = self._current_lease
        return lease.job_id if lease else None

    def recent_results(self, count: Optional[int] = None) -> List[ExecutionResult]:
        results = list(self._results)
        if count is not None:
            results = results[-count:]
        return results

    # Event channel

    def on_health_change(self, previous: HealthStatus, current: HealthStatus) -> None:
        """Health monitor listener; runs on the monitor thread."""
        self._events.put(AgentEvent(EventKind.HEALTH, current))
        self._wake.set()

    def on_credentials_change(self, valid: bool) -> None:
        """Credential store listener; runs on the store thread."""
        self._events.put(AgentEvent(EventKind.CREDENTIALS, valid))
        self._wake.set()

    def _drain_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            with self._agent_lock:
                if event.kind == EventKind.HEALTH:
                    self._health = event.value
                elif event.kind == EventKind.CREDENTIALS:
                    self._credentials_valid = bool(event.value)
                    if event.value:
                        self._auth_failed = False

    def _forced_target(self) -> Optional[Tuple[AgentState, str, str]]:
        """The (state, cause, reason) current conditions force, if any."""
        with self._agent_lock:
            if not self._credentials_valid:
                return AgentState.OFFLINE, "credentials", "credential store invalid"
            if self._auth_failed:
                return AgentState.OFFLINE, "auth", "coordinator rejected credentials"
            if self._coordinator_errors >= self.max_coordinator_errors:
                return AgentState.OFFLINE, "coordinator", (
                    f"{self._coordinator_errors} consecutive coordinator errors"
                )
            if self._health == HealthStatus.CRITICAL:
                return AgentState.OFFLINE, "health", "host health critical"
            if self._health == HealthStatus.DEGRADED:
                return AgentState.DEGRADED, "health", "host health degraded"
        return None

    def _enforce(self) -> None:
        """Drain events and apply forced transitions at a transition point."""
        self._drain_events()
        state = self.agent_state
        if state in (AgentState.OFFLINE, AgentState.TERMINATED):
            return

        target = self._forced_target()
        if state in DEFERRING_STATES:
            if (
                target is not None
                and target[0] == AgentState.OFFLINE
                and self.offline_job_policy == "cancel"
                and state == AgentState.EXECUTING
                and self._job_token is not None
            ):
                self._job_token.cancel(target[2])
            return

        if target is None:
            if state == AgentState.DEGRADED:
                next_state = AgentState.IDLE if self._registered else AgentState.REGISTERING
                self._transition(next_state, "health recovered")
            return

        self._apply_target(target)

    def _apply_target(self, target: Tuple[AgentState, str, str]) -> None:
        to_state, cause, reason = target
        if self.agent_state == to_state:
            return
        if to_state == AgentState.OFFLINE:
            self._go_offline(cause, reason)
        else:
            self._transition(to_state, reason)

    def _go_offline(self, cause: str, reason: str) -> None:
        with self._agent_lock:
            self._offline_cause = cause
        self._record_error(f"Going offline: {reason}")
        self._transition(AgentState.OFFLINE, reason)

    # State machine

    def _transition(self, target: AgentState, reason: Optional[str] = None) -> None:
        with self._agent_lock:
            current = self._agent_state
            if target == current:
                return
            if target not in TRANSITIONS[current]:
                raise IllegalTransitionError(current.value, target.value)
            self._agent_state = target
            self._state_changed_at = time.time()

        lease = self._current_lease if target == AgentState.EXECUTING else None
        job_id = self.current_job_id if target in DEFERRING_STATES else None
        self.store.save_agent_state(
            self.runner_id, target.value, job_id, lease, self._last_error
        )

        message = f"{current.value} -> {target.value}"
        if reason:
            message += f" ({reason})"
        if target in (AgentState.OFFLINE, AgentState.DEGRADED):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    # Runner hooks

    def _initialize(self) -> bool:
        """Recover from a previous crash and subscribe to condition changes."""
        persisted = self.store.load_agent_state(self.runner_id)
        if (
            persisted is not None
            and persisted.state == AgentState.EXECUTING.value
            and persisted.job_id
        ):
            result = ExecutionResult(
                job_id=persisted.job_id,
                outcome=JobOutcome.CANCELLED,
                runner_id=self.runner_id,
                log_ref=self.executor.log_store.log_ref(persisted.job_id),
                error="runner restarted while the job was executing",
            )
            queued = self.store.recover_interrupted_job(
                self.runner_id, result, AgentState.REGISTERING.value
            )
            self.logger.warning(
                f"Recovered interrupted job {persisted.job_id}"
                + (", queued cancelled report" if queued else ", report already queued")
            )

        with self._agent_lock:
            self._agent_state = AgentState.REGISTERING
            self._registered = False
        self.store.save_agent_state(self.runner_id, AgentState.REGISTERING.value)

        if self.health_monitor is not None:
            self.health_monitor.subscribe(self.on_health_change)
            with self._agent_lock:
                self._health = self.health_monitor.status()
        if self.credential_store is not None:
            self.credential_store.subscribe(self.on_credentials_change)
            with self._agent_lock:
                self._credentials_valid = self.credential_store.is_valid
        return True

    def _work_cycle(self) -> None:
        self._enforce()
        state = self.agent_state

        if state == AgentState.TERMINATED:
            return
        if state == AgentState.OFFLINE:
            # No claims or heartbeats, but results already written ahead still go out
            if self._reports_deliverable():
                self._flush_reports()
            return
        if state == AgentState.REGISTERING:
            self._register()
            return

        self._flush_reports()
        self._maybe_heartbeat()
        self._enforce()

        if (
            self.agent_state == AgentState.IDLE
            and not self.stop_requested
            and time.monotonic() >= self._next_poll_at
        ):
            self._claim_and_run()

    def _wait(self, timeout: float) -> bool:
        self._wake.wait(max(0.0, timeout))
        self._wake.clear()
        return self._stop_event.is_set()

    def _cycle_delay(self) -> float:
        state = self.agent_state
        if state == AgentState.REGISTERING:
            return self.register_backoff.current if self.register_backoff.failures else 0.0

        now = time.monotonic()
        if state == AgentState.IDLE:
            delay = max(0.0, self._next_poll_at - now)
        else:
            delay = self.interval

        if state in (AgentState.IDLE, AgentState.DEGRADED) and self._last_heartbeat:
            until_heartbeat = self.heartbeat_interval - (now - self._last_heartbeat)
            delay = min(delay, max(0.0, until_heartbeat))
        if state in (AgentState.IDLE, AgentState.DEGRADED) or (
            state == AgentState.OFFLINE and self._reports_deliverable()
        ):
            report_due = self.report_queue.next_retry_in(self.runner_id)
            if report_due is not None:
                delay = min(delay, report_due)
        return delay

    def _reports_deliverable(self) -> bool:
        """False once the coordinator has refused this runner's credentials."""
        with self._agent_lock:
            return self._offline_cause not in ("auth", "rejected")

    def _on_stop_requested(self) -> None:
        self._wake.set()

    def _handle_error(self, error: Exception) -> bool:
        if isinstance(error, IllegalTransitionError):
            return False
        return isinstance(error, FleetError)

    def _cleanup(self) -> None:
        if self.health_monitor is not None:
            self.health_monitor.unsubscribe(self.on_health_change)
        if self.credential_store is not None:
            self.credential_store.unsubscribe(self.on_credentials_change)
        # A crashed agent keeps its persisted state for recovery
        if self.stop_requested:
            if self._reports_deliverable() and self.report_queue.has_pending(self.runner_id):
                self._flush_reports(due_only=False)
            self._transition(AgentState.TERMINATED, "shutdown")

    def is_healthy(self) -> bool:
        return self.is_alive() and self.agent_state != AgentState.OFFLINE

    # Registration

    def _register(self) -> None:
        token = ""
        if self.credential_store is not None:
            try:
                token = self.credential_store.token_value()
            except AuthError as e:
                # An invalid store is handled by _enforce; otherwise wait for a refresh
                delay = self.register_backoff.increase()
                self.logger.warning(f"No usable registration token, retrying in {delay:.0f}s: {e}")
                return

        try:
            accepted = self.coordinator.register(self.identity, token)
        except AuthError as e:
            self._go_offline("auth", f"registration failed: {e}")
            return
        except NetworkError as e:
            delay = self.register_backoff.increase()
            self.logger.warning(f"Registration failed, retrying in {delay:.0f}s: {e}")
            return
        except CoordinatorError as e:
            self._coordinator_failure(e)
            self._enforce()
            return

        if not accepted:
            self._go_offline("rejected", "registration rejected by coordinator")
            return

        with self._agent_lock:
            self._registered = True
            self._coordinator_errors = 0
        self.register_backoff.reset()
        self.poll_backoff.reset()
        self._next_poll_at = 0.0
        self._transition(AgentState.IDLE, "registered")

    # Claiming and execution

    def _claim_and_run(self) -> None:
        if self.health_monitor is not None:
            try:
                self.health_monitor.raise_for_status()
            except ResourceExhaustionError as e:
                self._go_offline("health", str(e))
                return

        if self.gate is not None and not self.gate.try_acquire():
            self._next_poll_at = time.monotonic() + self.poll_backoff.base
            return

        result = None
        try:
            lease = self._claim()
            if lease is None:
                self._next_poll_at = time.monotonic() + self.poll_backoff.next_delay()
            else:
                self._next_poll_at = 0.0
                result = self._execute(lease)
        finally:
            if self.gate is not None:
                self.gate.release()

        if result is not None:
            self._report(result)

    def _claim(self) -> Optional[JobLease]:
        self._transition(AgentState.CLAIMING)
        try:
            lease = self.coordinator.poll(
                self.runner_id, self.identity.labels, self.identity.capabilities
            )
        except LeaseConflict as e:
            self.logger.info(f"Lost claim race: {e}")
            self._transition(AgentState.IDLE)
            return None
        except NetworkError as e:
            delay = self.poll_backoff.increase()
            self.logger.warning(f"Poll failed, next poll in {delay:.0f}s: {e}")
            self._transition(AgentState.IDLE)
            return None
        except AuthError as e:
            self._go_offline("auth", f"poll rejected: {e}")
            return None
        except CoordinatorError as e:
            self._coordinator_failure(e)
            self._transition(AgentState.IDLE)
            return None

        with self._agent_lock:
            self._coordinator_errors = 0

        if lease is None:
            self.poll_backoff.increase()
            self._transition(AgentState.IDLE)
            return None

        self._drain_events()
        target = self._forced_target()
        if target is not None or self.stop_requested:
            self._release(lease)
            self._transition(AgentState.IDLE, "lease released")
            self._enforce()
            return None

        self.poll_backoff.reset()
        return lease

    def _release(self, lease: JobLease) -> None:
        try:
            self.coordinator.release(lease.job_id, self.runner_id)
            self.logger.info(f"Released lease on {lease.job_id}")
        except FleetError as e:
            # The coordinator reclaims it when the ttl runs out
            self.logger.warning(f"Failed to release {lease.job_id}: {e}")

    def _execute(self, lease: JobLease) -> ExecutionResult:
        self._current_lease = lease
        self._job_token = CancellationToken()
        self._transition(AgentState.EXECUTING, f"job {lease.job_id}")
        self._maybe_heartbeat(force=True)

        result = self.executor.execute(
            lease, cancel_token=self._job_token, on_tick=self._on_tick
        )
        self._results.append(result)
        self._jobs_completed += 1
        return result

    def _on_tick(self) -> None:
        """Runs on the agent thread between executor wait slices."""
        self._enforce()
        self._maybe_heartbeat()

    def _maybe_heartbeat(self, force: bool = False) -> None:
        now = time.monotonic()
        if (
            not force
            and self._last_heartbeat
            and now - self._last_heartbeat < self.heartbeat_interval
        ):
            return
        self._last_heartbeat = now

        job_id = self.current_job_id
        try:
            ack = self.coordinator.heartbeat(self.runner_id, self.agent_state.value, job_id)
        except (NetworkError, LeaseConflict) as e:
            self.logger.warning(f"Heartbeat failed: {e}")
            return
        except AuthError as e:
            self.logger.error(f"Heartbeat rejected: {e}")
            with self._agent_lock:
                self._auth_failed = True
            return
        except CoordinatorError as e:
            self._coordinator_failure(e)
            return

        with self._agent_lock:
            self._coordinator_errors = 0
        token = self._job_token
        if job_id and token is not None and job_id in ack.revoked_jobs:
            token.cancel("lease revoked by coordinator")

    def _coordinator_failure(self, error: Exception) -> None:
        with self._agent_lock:
            self._coordinator_errors += 1
            count = self._coordinator_errors
        self._record_error(
            f"Coordinator error ({count}/{self.max_coordinator_errors}): {error}"
        )

    # Reporting

    def _report(self, result: ExecutionResult) -> None:
        self.report_queue.enqueue(self.runner_id, result)
        self._transition(AgentState.REPORTING, result.outcome.value)
        try:
            self._flush_reports()
        finally:
            self._current_lease = None
            self._job_token = None

        self._drain_events()
        target = self._forced_target()
        if target is None:
            self._transition(AgentState.IDLE)
        else:
            self._apply_target(target)

    def _flush_reports(self, due_only: bool = True) -> None:
        try:
            outcome = self.report_queue.flush(
                self.runner_id, self.coordinator.report, due_only=due_only
            )
        except AuthError as e:
            self.logger.error(f"Report rejected: {e}")
            with self._agent_lock:
                self._auth_failed = True
                if self._agent_state == AgentState.OFFLINE:
                    self._offline_cause = "auth"
            return
        except CoordinatorError as e:
            self._coordinator_failure(e)
            return
        if outcome.delivered:
            with self._agent_lock:
                self._coordinator_errors = 0

    # Operator commands

    def recover(self) -> bool:
        """
        Leave offline and register again.

        Returns:
            True if the agent was offline
        """
        with self._agent_lock:
            if self._agent_state != AgentState.OFFLINE:
                return False
            self._offline_cause = None
            self._auth_failed = False
            self._coordinator_errors = 0
            self._registered = False
        self._last_error = None
        self.register_backoff.reset()
        self._transition(AgentState.REGISTERING, "recover")
        self._wake.set()
        return True

    def cause_cleared(self) -> bool:
        """True if the agent is offline for a reason that no longer holds."""
        self._drain_events()
        with self._agent_lock:
            if self._agent_state != AgentState.OFFLINE:
                return False
            cause = self._offline_cause
            if cause not in RECOVERABLE_CAUSES:
                return False
            if cause == "health":
                return self._health != HealthStatus.CRITICAL
            return self._credentials_valid

    def clear_errors(self) -> None:
        """Forget recorded errors."""
        self._error_count = 0
        self._last_error = None

    def terminate(self, grace: Optional[float] = None) -> bool:
        """
        Shut the agent down.

        An in-flight job gets up to ``grace`` seconds to finish; after that it
        is cancelled and reported as cancelled.

        Returns:
            True if the agent thread stopped
        """
        self.request_termination()
        grace = self.terminate_grace if grace is None else grace
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(grace)
            if self._thread.is_alive():
                token = self._job_token
                if token is not None:
                    self.logger.warning("Grace period over, cancelling in-flight job")
                    token.cancel("runner terminated")
        return self.stop(timeout=self.executor.cancel_grace + 10.0)

    def request_termination(self) -> None:
        """Ask the agent to stop without waiting."""
        self._stop_event.set()
        self._wake.set()

    def get_agent_status(self) -> AgentStatus:
        with self._agent_lock:
            state = self._agent_state
            health = self._health
            cause = self._offline_cause
            changed_at = self._state_changed_at
        return AgentStatus(
            name=self.name,
            runner_id=str(self.runner_id),
            host_id=self.identity.host_id,
            slot=self.slot,
            state=state,
            health=health,
            job_id=self.current_job_id,
            alive=self.is_alive(),
            crashed=self.crashed,
            error_count=self.error_count,
            last_error=self.last_error,
            offline_cause=cause,
            poll_interval=self.poll_backoff.current,
            jobs_completed=self._jobs_completed,
            last_state_change=changed_at,
        )
