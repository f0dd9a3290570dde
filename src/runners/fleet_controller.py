"""
Fleet Controller Module for PiFleet

This module provides central management for all runner agents on all hosts.
It reconciles the desired number of agents per host with the agents actually
running, restarts crashed agents under a restart policy, enforces the global
concurrency cap and reports fleet status.
"""

import logging
import signal
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Tuple
from uuid import UUID

from backoff import compute_delay
from coordinator.client import CoordinatorClient
from coordinator.models import RunnerIdentity
from errors import FleetError
from executor.job_executor import JobExecutor
from fleet_interface.database import StateStore
from fleet_interface.report_queue import ReportQueue

from .base_runner import BaseRunner
from .health_monitor import HealthStatus, worst_status
from .runner_agent import AgentState, AgentStatus, RunnerAgent


class ConcurrencyGate:
    """Fleet-wide cap on executing jobs; an agent holds a permit from claim to end of execution."""

    def __init__(self, permits: int):
        if permits < 1:
            raise ValueError("Concurrency gate needs at least one permit")
        self.permits = permits
        self._lock = threading.Lock()
        self._in_use = 0
        self.peak = 0

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_use >= self.permits:
                return False
            self._in_use += 1
            self.peak = max(self.peak, self._in_use)
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_use == 0:
                raise RuntimeError("Concurrency gate released more often than acquired")
            self._in_use -= 1

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def available(self) -> int:
        with self._lock:
            return self.permits - self._in_use


@dataclass
class Alert:
    """Something an operator should look at."""

    timestamp: float
    level: str
    message: str
    host_id: Optional[str] = None
    runner_id: Optional[str] = None


@dataclass
class _HostRecord:
    host_id: str
    capacity: int
    labels: FrozenSet[str]
    capabilities: FrozenSet[str]
    online: bool = True
    offline_reason: Optional[str] = None
    crash_times: Deque[float] = field(default_factory=deque)
    crash_count: int = 0


@dataclass
class _SlotRecord:
    host_id: str
    slot: int
    identity: RunnerIdentity
    agent: Optional[RunnerAgent] = None
    stopped: bool = False
    restarts: int = 0
    crash_times: Deque[float] = field(default_factory=deque)
    next_start_at: float = 0.0
    last_status: Optional[AgentStatus] = None


@dataclass
class HostStatus:
    """Status of one host."""

    host_id: str
    online: bool
    capacity: int
    live_agents: int
    crash_count: int
    offline_reason: Optional[str]


@dataclass
class FleetStatus:
    """Overall fleet status."""

    total_agents: int
    live_agents: int
    states: Dict[str, int]
    executing: int
    health: HealthStatus
    crash_count: int
    max_concurrent_jobs: int
    permits_in_use: int
    hosts: List[HostStatus]
    agents: List[AgentStatus]
    alerts: List[Alert]
    uptime: float
    last_status_check: float


AgentFactory = Callable[[RunnerIdentity, int], RunnerAgent]


class FleetController:
    """
    Central manager for all runner agents.

    Provides:
    - Host registration and per-host desired agent counts
    - Reconciliation with a global cap on live agents
    - Crash detection and a restart policy with exponential backoff
    - Operator commands (stop, restart, clear, deregister)
    - Status reporting
    - Signal handling
    """

    def __init__(
        self,
        config: Dict[str, Any],
        store: StateStore,
        coordinator: Optional[CoordinatorClient] = None,
        executor: Optional[JobExecutor] = None,
        report_queue: Optional[ReportQueue] = None,
        credential_store=None,
        health_monitor=None,
        agent_factory: Optional[AgentFactory] = None,
        production: bool = False,
    ):
        """
        Initialize the fleet controller.

        Args:
            config: Full configuration dictionary
            store: State store holding identities and agent state
            coordinator: Coordinator client shared by all agents
            executor: Job executor shared by all agents
            report_queue: Report queue shared by all agents
            credential_store: Registration token owner
            health_monitor: Host health runner
            agent_factory: Builds an agent for (identity, slot); tests inject one
            production: Whether running in production mode
        """
        self.config = config
        self.production = production
        self.store = store
        self.coordinator = coordinator
        self.executor = executor
        self.report_queue = report_queue
        self.credential_store = credential_store
        self.health_monitor = health_monitor
        self.logger = logging.getLogger(__name__)

        app_config = config.get("application", {})
        self.reconcile_interval = app_config.get("reconcile_interval", 10.0)
        self.shutdown_grace = app_config.get("shutdown_grace", 60.0)
        self.max_concurrent_jobs = int(app_config.get("max_concurrent_jobs", 2))
        self.max_agents = int(app_config.get("max_agents") or self.max_concurrent_jobs)
        self.auto_recover = app_config.get("auto_recover", True)
        self.maintenance_interval = app_config.get("maintenance_interval", 3600.0)
        self.status_report_interval = app_config.get("status_report_interval", 0)

        restart_config = config.get("restart_policy", {})
        self.max_restarts = int(restart_config.get("max_restarts", 5))
        self.restart_window = float(restart_config.get("window", 600.0))
        self.restart_backoff_base = float(restart_config.get("backoff_base", 5.0))
        self.restart_backoff_cap = float(restart_config.get("backoff_cap", 300.0))

        self.agent_config = dict(config.get("agent", {}))
        self.agent_config.setdefault("terminate_grace", self.shutdown_grace)

        self.gate = ConcurrencyGate(self.max_concurrent_jobs)
        self._agent_factory = agent_factory or self._default_agent_factory

        # Registries
        self._lock = threading.RLock()
        self._hosts: Dict[str, _HostRecord] = {}
        self._slots: Dict[Tuple[str, int], _SlotRecord] = {}
        self._by_runner: Dict[UUID, Tuple[str, int]] = {}
        self._alerts: Deque[Alert] = deque(maxlen=100)
        self.crash_count = 0

        # Controller state
        self._running = False
        self._shutdown_requested = False
        self._shutdown_event = threading.Event()
        self._start_time: Optional[float] = None
        self._last_maintenance = 0.0
        self._last_status_report = 0.0

        self.logger.info(
            f"Fleet controller initialized - max agents {self.max_agents}, "
            f"max concurrent jobs {self.max_concurrent_jobs}"
        )

    def _default_agent_factory(self, identity: RunnerIdentity, slot: int) -> RunnerAgent:
        return RunnerAgent(
            identity=identity,
            slot=slot,
            config=self.agent_config,
            coordinator=self.coordinator,
            executor=self.executor,
            store=self.store,
            report_queue=self.report_queue,
            credential_store=self.credential_store,
            health_monitor=self.health_monitor,
            gate=self.gate,
            production=self.production,
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.request_shutdown()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    # Hosts

    def register_host(
        self,
        host_id: str,
        capacity: int,
        labels: Iterable[str] = (),
        capabilities: Iterable[str] = (),
    ) -> bool:
        """
        Register a host and the number of agents it should run.

        Returns:
            True if registered, False if the host already exists
        """
        if capacity < 0:
            raise ValueError(f"Capacity of host '{host_id}' must not be negative")

        labels = frozenset(labels) | frozenset(self.agent_config.get("labels", []))
        capabilities = frozenset(capabilities) | frozenset(
            self.agent_config.get("capabilities", [])
        )

        with self._lock:
            if host_id in self._hosts:
                self.logger.warning(f"Host '{host_id}' already registered")
                return False

            self._hosts[host_id] = _HostRecord(
                host_id=host_id,
                capacity=capacity,
                labels=labels,
                capabilities=capabilities,
            )
            for slot in range(capacity):
                identity = self.store.get_or_create_identity(host_id, slot, labels, capabilities)
                self._slots[(host_id, slot)] = _SlotRecord(host_id, slot, identity)
                self._by_runner[identity.runner_id] = (host_id, slot)

        self.logger.info(f"Registered host {host_id} with capacity {capacity}")
        return True

    def _auto_register_hosts(self) -> None:
        """Register hosts listed in configuration."""
        for host_id, host_config in (self.config.get("hosts") or {}).items():
            if not isinstance(host_config, dict):
                self.logger.warning(f"Invalid configuration for host '{host_id}'")
                continue
            self.register_host(
                host_id,
                int(host_config.get("capacity", 1)),
                host_config.get("labels", []),
                host_config.get("capabilities", []),
            )

    # Reconciliation

    @staticmethod
    def _is_crashed(agent: BaseRunner) -> bool:
        # BaseRunner flags any thread exit without a stop request
        return agent.crashed

    def _live_agents(self) -> int:
        return sum(
            1 for rec in self._slots.values() if rec.agent is not None and rec.agent.is_alive()
        )

    def reconcile(self) -> int:
        """
        Bring every online host to its desired agent count.

        Returns:
            Number of agents started
        """
        started = 0
        now = time.monotonic()

        with self._lock:
            for rec in self._slots.values():
                if rec.agent is not None and self._is_crashed(rec.agent):
                    self._on_crash(rec, now)

            live = self._live_agents()
            for host in self._hosts.values():
                if not host.online:
                    continue
                for slot in range(host.capacity):
                    rec = self._slots[(host.host_id, slot)]
                    if rec.agent is not None or rec.stopped or now < rec.next_start_at:
                        continue
                    if live >= self.max_agents:
                        self.logger.debug(
                            f"Agent cap {self.max_agents} reached, not starting "
                            f"{host.host_id}/{slot}"
                        )
                        continue
                    if self._start_slot(rec, now):
                        live += 1
                        started += 1

            if self.auto_recover:
                self._auto_recover()

        return started

    def _start_slot(self, rec: _SlotRecord, now: float) -> bool:
        agent = self._agent_factory(rec.identity, rec.slot)
        if agent.start():
            rec.agent = agent
            self.logger.info(f"Started agent {agent.name} ({rec.identity.runner_id})")
            return True

        self.logger.error(f"Failed to start agent for {rec.host_id}/{rec.slot}")
        rec.agent = agent
        self._on_crash(rec, now)
        return False

    def _on_crash(self, rec: _SlotRecord, now: float) -> None:
        """Count a crash and schedule the restart under the restart policy."""
        agent = rec.agent
        host = self._hosts[rec.host_id]
        if agent is not None:
            rec.last_status = agent.get_agent_status()
        rec.agent = None

        self.crash_count += 1
        host.crash_count += 1
        host.crash_times.append(now)
        while host.crash_times and now - host.crash_times[0] > self.restart_window:
            host.crash_times.popleft()

        rec.crash_times.append(now)
        while rec.crash_times and now - rec.crash_times[0] > self.restart_window:
            rec.crash_times.popleft()

        # First crash in the window restarts at once, later ones back off
        rec.restarts += 1
        delay = 0.0
        if len(rec.crash_times) > 1:
            delay = compute_delay(
                len(rec.crash_times) - 1,
                self.restart_backoff_base,
                self.restart_backoff_cap,
            )
        rec.next_start_at = now + delay

        last_error = rec.last_status.last_error if rec.last_status else None
        self.logger.error(
            f"Agent {rec.host_id}/{rec.slot} crashed ({last_error}), "
            f"restart in {delay:.0f}s"
        )

        if host.online and len(host.crash_times) > self.max_restarts:
            host.online = False
            host.offline_reason = (
                f"{len(host.crash_times)} crashes within {self.restart_window:.0f}s"
            )
            self._raise_alert(
                "critical",
                f"Host {host.host_id} marked offline: {host.offline_reason}",
                host_id=host.host_id,
            )

    def _auto_recover(self) -> None:
        for rec in self._slots.values():
            agent = rec.agent
            if agent is not None and agent.is_alive() and agent.cause_cleared():
                self.logger.info(f"Auto-recovering {agent.name}, offline cause cleared")
                agent.recover()

    def _raise_alert(
        self,
        level: str,
        message: str,
        host_id: Optional[str] = None,
        runner_id: Optional[str] = None,
    ) -> None:
        self._alerts.append(Alert(time.time(), level, message, host_id, runner_id))
        log = self.logger.critical if level == "critical" else self.logger.warning
        log(f"ALERT: {message}")

    # Lookup

    def _record_for(self, runner_id: UUID) -> _SlotRecord:
        key = self._by_runner.get(runner_id)
        if key is None:
            raise KeyError(f"Unknown runner {runner_id}")
        return self._slots[key]

    def get_agent(self, runner_id: UUID) -> Optional[RunnerAgent]:
        with self._lock:
            key = self._by_runner.get(runner_id)
            return self._slots[key].agent if key else None

    def get_all_agents(self) -> List[RunnerAgent]:
        with self._lock:
            return [rec.agent for rec in self._slots.values() if rec.agent is not None]

    # Operator commands

    def stop_agent(self, runner_id: UUID, grace: Optional[float] = None) -> bool:
        """Stop an agent and keep it stopped until restarted."""
        with self._lock:
            rec = self._record_for(runner_id)
            rec.stopped = True
            agent = rec.agent
        if agent is None:
            return True
        stopped = agent.terminate(self.shutdown_grace if grace is None else grace)
        with self._lock:
            rec.last_status = agent.get_agent_status()
            rec.agent = None
        self.logger.info(f"Stopped agent {agent.name}")
        return stopped

    def restart_agent(self, runner_id: UUID) -> bool:
        """Stop an agent if running and start a fresh one for the same identity."""
        self.stop_agent(runner_id)
        with self._lock:
            rec = self._record_for(runner_id)
            rec.stopped = False
            rec.crash_times.clear()
            rec.next_start_at = 0.0
            if not self._hosts[rec.host_id].online:
                self.logger.warning(f"Host {rec.host_id} is offline, not restarting")
                return False
            if self._live_agents() >= self.max_agents:
                self.logger.warning("Agent cap reached, restart deferred to reconcile")
                return False
            return self._start_slot(rec, time.monotonic())

    def clear_agent(self, runner_id: UUID) -> bool:
        """Clear an agent's errors and crash history; recover it if offline."""
        with self._lock:
            rec = self._record_for(runner_id)
            rec.crash_times.clear()
            rec.restarts = 0
            rec.next_start_at = 0.0
            rec.last_status = None
            agent = rec.agent
        if agent is not None:
            agent.clear_errors()
            if agent.agent_state == AgentState.OFFLINE:
                agent.recover()
        self.logger.info(f"Cleared agent {runner_id}")
        return True

    def clear_host(self, host_id: str) -> bool:
        """Bring an offline host back and forget its crash history."""
        with self._lock:
            host = self._hosts.get(host_id)
            if host is None:
                return False
            host.online = True
            host.offline_reason = None
            host.crash_times.clear()
            for rec in self._slots.values():
                if rec.host_id == host_id:
                    rec.crash_times.clear()
                    rec.next_start_at = 0.0
        self.logger.info(f"Cleared host {host_id}")
        return True

    def deregister_agent(self, runner_id: UUID) -> bool:
        """
        Stop an agent, remove it from the coordinator and forget its identity.

        The slot gets a fresh identity on the next reconcile.
        """
        self.stop_agent(runner_id)
        if self.coordinator is not None:
            token = ""
            if self.credential_store is not None:
                try:
                    token = self.credential_store.token_value()
                except FleetError as e:
                    self.logger.warning(f"Deregistering without a token: {e}")
            try:
                self.coordinator.deregister(runner_id, token)
            except FleetError as e:
                self.logger.error(f"Coordinator deregistration of {runner_id} failed: {e}")

        with self._lock:
            host_id, slot = self._by_runner.pop(runner_id)
            host = self._hosts[host_id]
            self.store.delete_identity(runner_id)
            identity = self.store.get_or_create_identity(
                host_id, slot, host.labels, host.capabilities
            )
            self._slots[(host_id, slot)] = _SlotRecord(host_id, slot, identity)
            self._by_runner[identity.runner_id] = (host_id, slot)
        self.logger.info(f"Deregistered runner {runner_id}")
        return True

    # Status

    def get_agent_status(self, runner_id: UUID) -> Optional[AgentStatus]:
        with self._lock:
            key = self._by_runner.get(runner_id)
            if key is None:
                return None
            return self._slot_status(self._slots[key])

    def _slot_status(self, rec: _SlotRecord) -> Optional[AgentStatus]:
        if rec.agent is not None:
            status = rec.agent.get_agent_status()
        elif rec.last_status is not None:
            status = rec.last_status
        else:
            return None
        return replace(status, restarts=rec.restarts)

    def get_all_agent_statuses(self) -> List[AgentStatus]:
        with self._lock:
            statuses = [self._slot_status(rec) for rec in self._slots.values()]
        return [s for s in statuses if s is not None]

    def get_alerts(self) -> List[Alert]:
        with self._lock:
            return list(self._alerts)

    def get_fleet_status(self) -> FleetStatus:
        """Get overall fleet status."""
        agents = self.get_all_agent_statuses()

        states: Dict[str, int] = {state.value: 0 for state in AgentState}
        for status in agents:
            states[status.state.value] += 1

        if self.health_monitor is not None:
            health = self.health_monitor.status()
        else:
            health = worst_status(s.health for s in agents)

        with self._lock:
            hosts = [
                HostStatus(
                    host_id=host.host_id,
                    online=host.online,
                    capacity=host.capacity,
                    live_agents=sum(
                        1
                        for rec in self._slots.values()
                        if rec.host_id == host.host_id
                        and rec.agent is not None
                        and rec.agent.is_alive()
                    ),
                    crash_count=host.crash_count,
                    offline_reason=host.offline_reason,
                )
                for host in self._hosts.values()
            ]
            live = self._live_agents()
            alerts = list(self._alerts)

        uptime = 0.0
        if self._start_time:
            uptime = time.time() - self._start_time

        return FleetStatus(
            total_agents=len(agents),
            live_agents=live,
            states=states,
            executing=states[AgentState.EXECUTING.value],
            health=health,
            crash_count=self.crash_count,
            max_concurrent_jobs=self.max_concurrent_jobs,
            permits_in_use=self.gate.in_use,
            hosts=hosts,
            agents=agents,
            alerts=alerts,
            uptime=uptime,
            last_status_check=time.time(),
        )

    def print_status_report(self) -> None:
        """Print a comprehensive status report."""
        status = self.get_fleet_status()

        print("\n" + "=" * 60)
        print("PiFleet Status Report")
        print("=" * 60)

        print(f"Uptime: {status.uptime:.1f}s")
        print(f"Host Health: {status.health.value}")
        print(f"Agents: {status.live_agents} live / {status.total_agents} known")
        print(
            f"Executing: {status.executing} "
            f"(permits {status.permits_in_use}/{status.max_concurrent_jobs})"
        )
        print(f"Crashes: {status.crash_count}")

        print("\nHosts:")
        print("-" * 60)
        for host in status.hosts:
            indicator = "●" if host.online else "○"
            print(
                f"{indicator} {host.host_id:<15} "
                f"Agents: {host.live_agents}/{host.capacity} "
                f"Crashes: {host.crash_count}"
            )
            if host.offline_reason:
                print(f"    Offline: {host.offline_reason}")

        print("\nAgents:")
        print("-" * 60)
        for agent in status.agents:
            health_indicator = "✓" if agent.alive and not agent.crashed else "⚠"
            job = f" Job: {agent.job_id}" if agent.job_id else ""
            print(
                f"{health_indicator} {agent.name:<20} "
                f"State: {agent.state.value:<11} "
                f"Errors: {agent.error_count} "
                f"Restarts: {agent.restarts}{job}"
            )
            if agent.last_error:
                print(f"    Last Error: {agent.last_error}")

        if status.alerts:
            print("\nAlerts:")
            print("-" * 60)
            for alert in status.alerts[-5:]:
                print(f"[{alert.level}] {alert.message}")

        print("=" * 60)

    # Lifecycle

    def start(self) -> bool:
        """
        Start shared services and the first round of agents.

        Returns:
            True if started successfully, False otherwise
        """
        if self._running:
            self.logger.warning("Fleet controller is already running")
            return False

        self.logger.info("Starting fleet controller...")
        self._auto_register_hosts()

        for service in (self.credential_store, self.health_monitor):
            if service is not None and not service.is_running and not service.start():
                self.logger.error(f"Failed to start {service.name}")
                return False

        self._running = True
        self._start_time = time.time()
        started = self.reconcile()
        self.logger.info(f"Fleet controller started with {started} agents")
        return True

    def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Shut down every agent, then the shared services.

        All agents are asked to stop first so their grace periods overlap.
        """
        if self._shutdown_requested:
            return

        self._shutdown_requested = True
        self._shutdown_event.set()
        grace = self.shutdown_grace if grace is None else grace
        self.logger.info("Shutting down fleet controller...")

        agents = self.get_all_agents()
        for agent in agents:
            agent.request_termination()

        deadline = time.monotonic() + grace
        stopped = 0
        for agent in agents:
            if agent.terminate(max(0.0, deadline - time.monotonic())):
                stopped += 1
            else:
                self.logger.warning(f"Agent {agent.name} did not stop gracefully")

        for service in (self.health_monitor, self.credential_store):
            if service is not None:
                service.stop()

        self._running = False
        self.logger.info(f"Fleet controller shutdown complete ({stopped}/{len(agents)} agents stopped)")

    def run(self) -> None:
        """
        Run the reconcile loop.

        This method blocks until shutdown is requested.
        """
        self._setup_signal_handlers()
        if not self.start():
            self.logger.error("Failed to start fleet controller")
            return

        try:
            self.logger.info("Fleet controller main loop started")

            while self._running and not self._shutdown_event.is_set():
                self.reconcile()
                self._health_check_cycle()
                self._maintenance()
                self._status_report_cycle()

                # Sleep until next cycle or shutdown
                self._shutdown_event.wait(self.reconcile_interval)

        except KeyboardInterrupt:
            self.logger.info("Keyboard interrupt received")
        except Exception as e:
            self.logger.error(f"Error in fleet controller main loop: {e}")
        finally:
            self.shutdown()

    def request_shutdown(self) -> None:
        """Make run() return; usable from any thread."""
        self._shutdown_event.set()

    def _health_check_cycle(self) -> None:
        """Log agents that are unhealthy."""
        unhealthy = [
            agent.name
            for agent in self.get_all_agents()
            if agent.is_running and not agent.is_healthy()
        ]
        if unhealthy:
            self.logger.warning(f"Unhealthy agents detected: {unhealthy}")

    def _maintenance(self) -> None:
        """Prune old job logs and delivered reports."""
        now = time.monotonic()
        if self._last_maintenance and now - self._last_maintenance < self.maintenance_interval:
            return
        self._last_maintenance = now
        if self.executor is not None:
            self.executor.log_store.prune()
        self.store.cleanup_delivered()

    def _status_report_cycle(self) -> None:
        """Print the status report every status_report_interval seconds, if enabled."""
        if not self.status_report_interval:
            return
        now = time.monotonic()
        if self._last_status_report and now - self._last_status_report < self.status_report_interval:
            return
        self._last_status_report = now
        self.print_status_report()

    @property
    def is_running(self) -> bool:
        """Check if the fleet controller is running."""
        return self._running

    @property
    def is_healthy(self) -> bool:
        """Check if every online host runs its agents without crashes pending."""
        with self._lock:
            return all(host.online for host in self._hosts.values()) and all(
                rec.agent is None or not self._is_crashed(rec.agent)
                for rec in self._slots.values()
            )
