"""
Job Executor for PiFleet

Runs one leased job inside a sandbox and turns whatever happens into exactly
one ExecutionResult:

    exit code 0                 -> success
    non-zero exit, SandboxError -> failure
    wall-clock deadline passed  -> timeout (sandbox killed and the kill
                                   confirmed before returning)
    cancellation token fired    -> cancelled (terminate, grace, then kill)

Waiting is sliced so the caller's on_tick hook runs regularly while the job
is in flight; the runner agent uses it for heartbeats and revocation checks.
"""

import logging
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from coordinator.models import ExecutionResult, JobLease, JobOutcome
from errors import JobTimeoutError, SandboxError

from .cancellation import CancellationToken
from .log_store import JobLogWriter, LogStore
from .sandbox import ResourceLimits, Sandbox, SandboxHandle

logger = logging.getLogger(__name__)


class JobCancelled(Exception):
    """Internal signal that the cancellation token fired."""

    pass


class JobExecutor:
    """Executes leases in a sandbox with timeouts, cancellation and log capture."""

    def __init__(
        self,
        sandbox: Sandbox,
        log_store: LogStore,
        config: Optional[Dict[str, Any]] = None,
    ):
        """
        Args:
            sandbox: Where jobs run
            log_store: Where job output goes
            config: The ``executor`` configuration section
        """
        config = config or {}
        self.sandbox = sandbox
        self.log_store = log_store
        self.default_limits = ResourceLimits.from_config(config)
        self.cancel_grace = float(config.get("cancel_grace", 30.0))
        self.wait_slice = float(config.get("wait_slice", 1.0))
        self.kill_confirm_attempts = int(config.get("kill_confirm_attempts", 5))
        self.kill_confirm_timeout = float(config.get("kill_confirm_timeout", 10.0))
        self.log_drain_timeout = float(config.get("log_drain_timeout", 5.0))

    def limits_for(self, lease: JobLease, limits: Optional[ResourceLimits] = None) -> ResourceLimits:
        """Resolve the limits for a lease; a payload timeout overrides the default."""
        limits = limits or self.default_limits
        if lease.payload.timeout:
            limits = replace(limits, timeout=float(lease.payload.timeout))
        return limits

    def execute(
        self,
        lease: JobLease,
        limits: Optional[ResourceLimits] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_tick: Optional[Callable[[], None]] = None,
    ) -> ExecutionResult:
        """
        Run a leased job to completion.

        Never raises for job-level problems; every path yields one result.
        """
        job_id = lease.job_id
        limits = self.limits_for(lease, limits)
        token = cancel_token or CancellationToken()
        started = time.monotonic()
        log_ref = self.log_store.log_ref(job_id)

        def result(outcome: JobOutcome, exit_code: Optional[int], error: Optional[str] = None):
            return ExecutionResult(
                job_id=job_id,
                outcome=outcome,
                exit_code=exit_code,
                duration=time.monotonic() - started,
                log_ref=log_ref,
                runner_id=lease.runner_id,
                error=error,
            )

        if token.cancelled:
            return result(JobOutcome.CANCELLED, None, f"cancelled before start: {token.reason}")

        try:
            handle = self.sandbox.run(job_id, lease.payload, limits)
        except SandboxError as e:
            logger.error(f"Job {job_id} failed to start: {e}")
            return result(JobOutcome.FAILURE, None, str(e))

        logger.info(f"Job {job_id} started (timeout {limits.timeout:.0f}s)")
        writer = self.log_store.open(job_id)
        pump = threading.Thread(
            target=self._pump_logs, args=(handle, writer, job_id), name=f"logs_{job_id}", daemon=True
        )
        pump.start()

        try:
            exit_code = self._watch(handle, started + limits.timeout, token, on_tick)
            outcome = JobOutcome.SUCCESS if exit_code == 0 else JobOutcome.FAILURE
            final = result(outcome, exit_code)
        except JobTimeoutError as e:
            logger.warning(f"Job {job_id}: {e}, killing sandbox")
            exit_code = self._kill_and_confirm(handle)
            error = str(e) if exit_code is not None else f"{e}; kill not confirmed"
            final = result(JobOutcome.TIMEOUT, exit_code, error)
        except JobCancelled:
            logger.info(f"Job {job_id} cancelled: {token.reason}")
            exit_code = self._cancel(handle)
            final = result(JobOutcome.CANCELLED, exit_code, f"cancelled: {token.reason}")
        except SandboxError as e:
            logger.error(f"Job {job_id} sandbox failed: {e}")
            self._best_effort_kill(handle)
            final = result(JobOutcome.FAILURE, None, str(e))
        finally:
            pump.join(self.log_drain_timeout)
            handle.close()
            pump.join(1.0)
            writer.close()

        logger.info(
            f"Job {job_id} finished: {final.outcome.value} "
            f"(exit {final.exit_code}, {final.duration:.1f}s)"
        )
        return final

    def _watch(
        self,
        handle: SandboxHandle,
        deadline: float,
        token: CancellationToken,
        on_tick: Optional[Callable[[], None]],
    ) -> int:
        """Wait for exit in slices. Raises JobTimeoutError or JobCancelled."""
        while True:
            if token.cancelled:
                raise JobCancelled(token.reason)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise JobTimeoutError("wall-clock timeout exceeded")
            exit_code = handle.wait(min(self.wait_slice, remaining))
            if exit_code is not None:
                return exit_code
            if on_tick is not None:
                try:
                    on_tick()
                except Exception as e:
                    logger.warning(f"Tick hook failed: {e}")

    def _cancel(self, handle: SandboxHandle) -> Optional[int]:
        """Terminate, allow the grace period, then kill."""
        try:
            handle.terminate()
            exit_code = handle.wait(self.cancel_grace)
        except SandboxError as e:
            logger.warning(f"Graceful stop failed: {e}")
            exit_code = None
        if exit_code is not None:
            return exit_code
        return self._kill_and_confirm(handle)

    def _kill_and_confirm(self, handle: SandboxHandle) -> Optional[int]:
        """Kill the sandbox and wait until it is confirmed dead."""
        for attempt in range(1, self.kill_confirm_attempts + 1):
            try:
                handle.kill()
                exit_code = handle.wait(self.kill_confirm_timeout)
            except SandboxError as e:
                logger.warning(f"Kill attempt {attempt} failed: {e}")
                continue
            if exit_code is not None:
                return exit_code
        logger.critical(
            f"Sandbox still alive after {self.kill_confirm_attempts} kill attempts"
        )
        return None

    def _best_effort_kill(self, handle: SandboxHandle) -> None:
        try:
            handle.kill()
        except SandboxError as e:
            logger.warning(f"Kill after sandbox failure failed: {e}")

    @staticmethod
    def _pump_logs(handle: SandboxHandle, writer: JobLogWriter, job_id: str) -> None:
        try:
            for chunk in handle.logs():
                writer.write(chunk)
        except ValueError:
            # Writer closed after the drain timeout
            logger.debug(f"Log pump for {job_id} stopped after writer closed")
        except Exception as e:
            logger.warning(f"Log pump for {job_id} failed: {e}")
