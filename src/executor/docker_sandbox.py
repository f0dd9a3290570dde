"""
Docker Sandbox for PiFleet

Runs each job in its own detached container with CPU and memory limits.
Containers are labelled with the job id and named ``pifleet_<job_id>`` so a
stale container from a crashed run is found and removed before a rerun.
"""

import logging
from typing import Any, Dict, Iterator, Optional

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from coordinator.models import JobPayload
from errors import SandboxError

from .sandbox import ResourceLimits, Sandbox, SandboxHandle

logger = logging.getLogger(__name__)

JOB_LABEL = "pifleet.job_id"


class DockerHandle(SandboxHandle):
    """Handle to a detached container."""

    def __init__(self, container):
        self.container = container

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            result = self.container.wait(timeout=timeout)
        except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError):
            # docker-py surfaces a wait timeout as a transport timeout
            try:
                self.container.reload()
            except (APIError, NotFound) as e:
                raise SandboxError(f"Lost container {self.container.name}: {e}") from e
            if self.container.status in ("exited", "dead"):
                return self.container.attrs.get("State", {}).get("ExitCode")
            return None
        except (APIError, NotFound) as e:
            raise SandboxError(f"Waiting on {self.container.name} failed: {e}") from e
        return result.get("StatusCode")

    def terminate(self) -> None:
        self._signal("SIGTERM")

    def kill(self) -> None:
        self._signal("SIGKILL")

    def _signal(self, sig: str) -> None:
        try:
            self.container.kill(signal=sig)
        except NotFound:
            pass
        except APIError as e:
            # Killing an already stopped container answers 409
            if getattr(e, "status_code", None) != 409:
                raise SandboxError(f"{sig} to {self.container.name} failed: {e}") from e

    def logs(self) -> Iterator[bytes]:
        try:
            for chunk in self.container.logs(stream=True, follow=True):
                yield chunk
        except (APIError, NotFound) as e:
            logger.warning(f"Log stream for {self.container.name} ended: {e}")

    def close(self) -> None:
        try:
            self.container.remove(force=True)
        except NotFound:
            pass
        except APIError as e:
            logger.warning(f"Failed to remove container {self.container.name}: {e}")


class DockerSandbox(Sandbox):
    """Sandbox backed by the local Docker daemon."""

    name = "docker"

    def __init__(self, config: Dict[str, Any], client=None):
        """
        Args:
            config: The ``executor`` configuration section
            client: Pre-built docker client (tests inject a mock)
        """
        self.config = config
        self.default_image = config.get("default_image", "alpine:3")
        self.pull_images = config.get("pull_images", True)
        self.network = config.get("network")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise SandboxError(f"Docker daemon unavailable: {e}") from e
        return self._client

    def _remove_stale(self, name: str) -> None:
        try:
            self.client.containers.get(name).remove(force=True)
            logger.warning(f"Removed stale container {name}")
        except NotFound:
            pass
        except APIError as e:
            raise SandboxError(f"Could not remove stale container {name}: {e}") from e

    def _ensure_image(self, image: str) -> None:
        if not self.pull_images:
            return
        try:
            self.client.images.pull(image)
        except APIError as e:
            # Fall back to the local image cache
            logger.warning(f"Pull of {image} failed, using local image: {e}")

    def run(self, job_id: str, payload: JobPayload, limits: ResourceLimits) -> SandboxHandle:
        image = payload.image or self.default_image
        name = f"pifleet_{job_id}"

        self._remove_stale(name)
        self._ensure_image(image)

        options: Dict[str, Any] = {
            "image": image,
            "command": payload.command,
            "name": name,
            "environment": dict(payload.env),
            "labels": {JOB_LABEL: job_id},
            "detach": True,
        }
        if limits.cpus:
            options["nano_cpus"] = int(limits.cpus * 1e9)
        if limits.memory_mb:
            options["mem_limit"] = f"{int(limits.memory_mb)}m"
        if self.network:
            options["network"] = self.network

        try:
            container = self.client.containers.run(**options)
        except ImageNotFound as e:
            raise SandboxError(f"Image {image} not found: {e}") from e
        except APIError as e:
            raise SandboxError(f"Failed to start container {name}: {e}") from e

        logger.info(f"Started container {name} ({image})")
        return DockerHandle(container)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
