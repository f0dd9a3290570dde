"""
Simulated Sandbox for PiFleet

Runs a fake job on a background thread so the fleet can be exercised without
Docker. The job's behaviour is driven by its environment:

    SIM_DURATION     seconds the job runs (default 0.1)
    SIM_EXIT_CODE    exit code on normal completion (default 0)
    SIM_IGNORE_TERM  "1" to ignore terminate() so only kill() stops it
    SIM_START_ERROR  if set, starting the job raises SandboxError
"""

import queue
import threading
import time
from typing import Dict, Iterator, List, Optional

from coordinator.models import JobPayload
from errors import SandboxError

from .sandbox import ResourceLimits, Sandbox, SandboxHandle

EXIT_KILLED = 137
EXIT_TERMINATED = 143


class SimulatedHandle(SandboxHandle):
    """Handle to a simulated job thread."""

    def __init__(self, job_id: str, payload: JobPayload, tick: float = 0.05):
        env = payload.env
        self.job_id = job_id
        self.command = list(payload.command)
        self.duration = float(env.get("SIM_DURATION", 0.1))
        self.exit_code_on_success = int(env.get("SIM_EXIT_CODE", 0))
        self.ignore_term = env.get("SIM_IGNORE_TERM", "") in ("1", "true", "yes")
        self.tick = tick

        self.terminated = False
        self.killed = False
        self.closed = False
        self.killed_at: Optional[float] = None

        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._done = threading.Event()
        self._exit_code: Optional[int] = None
        self._chunks: "queue.Queue[Optional[bytes]]" = queue.Queue()

        self._thread = threading.Thread(
            target=self._simulate, name=f"sim_{job_id}", daemon=True
        )
        self._thread.start()

    def _emit(self, text: str) -> None:
        self._chunks.put(text.encode("utf-8"))

    def _finish(self, exit_code: int) -> None:
        with self._lock:
            if self._exit_code is not None:
                return
            self._exit_code = exit_code
        self._emit(f"exit {exit_code}\n")
        self._chunks.put(None)
        self._done.set()

    def _simulate(self) -> None:
        self._emit(f"$ {' '.join(self.command)}\n")
        deadline = time.monotonic() + self.duration
        step = 0
        while True:
            if self.killed:
                self._finish(EXIT_KILLED)
                return
            if self.terminated and not self.ignore_term:
                self._emit("received SIGTERM\n")
                self._finish(EXIT_TERMINATED)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._wakeup.wait(min(self.tick, remaining))
            self._wakeup.clear()
            step += 1
            self._emit(f"step {step}\n")
        self._finish(self.exit_code_on_success)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if timeout is not None:
            timeout = max(0.0, timeout)
        if not self._done.wait(timeout):
            return None
        with self._lock:
            return self._exit_code

    def terminate(self) -> None:
        self.terminated = True
        self._wakeup.set()

    def kill(self) -> None:
        if self._done.is_set():
            return
        self.killed = True
        self.killed_at = time.monotonic()
        self._wakeup.set()

    def logs(self) -> Iterator[bytes]:
        while True:
            chunk = self._chunks.get()
            if chunk is None:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True

    @property
    def finished(self) -> bool:
        return self._done.is_set()


class SimulatedSandbox(Sandbox):
    """In-process sandbox for development mode and tests."""

    name = "simulated"

    def __init__(self, tick: float = 0.05):
        self.tick = tick
        self._lock = threading.Lock()
        self.handles: Dict[str, SimulatedHandle] = {}
        self.started: List[str] = []

    def run(self, job_id: str, payload: JobPayload, limits: ResourceLimits) -> SandboxHandle:
        error = payload.env.get("SIM_START_ERROR")
        if error:
            raise SandboxError(f"Simulated start failure: {error}")
        handle = SimulatedHandle(job_id, payload, tick=self.tick)
        with self._lock:
            self.handles[job_id] = handle
            self.started.append(job_id)
        return handle
