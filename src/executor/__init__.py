"""
Job execution: sandboxes, cancellation, log capture and the executor itself.
"""

from .cancellation import CancellationToken
from .docker_sandbox import DockerSandbox
from .job_executor import JobExecutor
from .log_store import LogStore
from .sandbox import ResourceLimits, Sandbox, SandboxHandle
from .simulated_sandbox import SimulatedSandbox

__all__ = [
    "CancellationToken",
    "DockerSandbox",
    "JobExecutor",
    "LogStore",
    "ResourceLimits",
    "Sandbox",
    "SandboxHandle",
    "SimulatedSandbox",
]
