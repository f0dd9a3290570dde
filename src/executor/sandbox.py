"""
Sandbox Interface for PiFleet

This module defines the isolated execution environment a job runs in. The
executor only talks to these two abstractions, so the Docker sandbox used in
production and the simulated sandbox used in development are interchangeable.
"""

import abc
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from coordinator.models import JobPayload


@dataclass
class ResourceLimits:
    """Limits applied to one job's sandbox."""

    cpus: Optional[float] = None
    memory_mb: Optional[int] = None
    timeout: float = 6 * 60 * 60  # wall clock seconds

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ResourceLimits":
        """Build limits from the ``executor`` config section."""
        limits = config.get("limits", {}) or {}
        return cls(
            cpus=limits.get("cpus"),
            memory_mb=limits.get("memory_mb"),
            timeout=float(config.get("job_timeout", cls.timeout)),
        )


class SandboxHandle(abc.ABC):
    """Handle to one running job."""

    @abc.abstractmethod
    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """
        Wait for the job to exit.

        Returns:
            The exit code, or None if still running after timeout

        Raises:
            SandboxError: If the sandbox failed while waiting
        """
        pass

    @abc.abstractmethod
    def terminate(self) -> None:
        """Ask the job to stop (SIGTERM)."""
        pass

    @abc.abstractmethod
    def kill(self) -> None:
        """Stop the job immediately (SIGKILL)."""
        pass

    @abc.abstractmethod
    def logs(self) -> Iterator[bytes]:
        """Lazily yield output chunks until the job exits."""
        pass

    def close(self) -> None:
        """Release sandbox resources."""
        pass


class Sandbox(abc.ABC):
    """Factory for sandboxed job runs."""

    name = "sandbox"

    @abc.abstractmethod
    def run(self, job_id: str, payload: JobPayload, limits: ResourceLimits) -> SandboxHandle:
        """
        Start a job.

        Raises:
            SandboxError: If the job could not be started
        """
        pass

    def close(self) -> None:
        pass
