"""
Coordinator Client for PiFleet

This module defines the coordinator protocol used by runner agents and its
HTTP implementation. Every call is idempotent on retry: a report is keyed by
job_id, so resending one whose ack was lost is safe.

Error mapping for the HTTP client:
    connection error, timeout, 5xx, 429  -> NetworkError (transient)
    401, 403                             -> AuthError
    409 on poll                          -> LeaseConflict
    other 4xx, malformed body            -> CoordinatorError
"""

import abc
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional
from uuid import UUID

import requests
from pydantic import ValidationError

from errors import AuthError, CoordinatorError, LeaseConflict, NetworkError

from .models import (
    ExecutionResult,
    HeartbeatAck,
    JobLease,
    RegistrationToken,
    ReportAck,
    RunnerIdentity,
)

logger = logging.getLogger(__name__)


class CoordinatorClient(abc.ABC):
    """Operations a runner agent needs from the CI coordinator."""

    @abc.abstractmethod
    def register(self, identity: RunnerIdentity, token: str) -> bool:
        """Register a runner. Returns True on ack, False on reject."""
        pass

    @abc.abstractmethod
    def poll(
        self,
        runner_id: UUID,
        labels: Iterable[str],
        capabilities: Iterable[str] = (),
    ) -> Optional[JobLease]:
        """Ask for a job. None when nothing matches; LeaseConflict on a lost race."""
        pass

    @abc.abstractmethod
    def report(self, job_id: str, result: ExecutionResult) -> ReportAck:
        """Report a finished job."""
        pass

    @abc.abstractmethod
    def heartbeat(
        self, runner_id: UUID, status: str, job_id: Optional[str] = None
    ) -> HeartbeatAck:
        """Tell the coordinator the runner is alive."""
        pass

    @abc.abstractmethod
    def release(self, job_id: str, runner_id: UUID) -> None:
        """Give an unexecuted lease back to the coordinator."""
        pass

    @abc.abstractmethod
    def deregister(self, runner_id: UUID, token: str) -> None:
        """Remove a runner from the coordinator."""
        pass

    @abc.abstractmethod
    def fetch_registration_token(self) -> RegistrationToken:
        """Obtain a fresh registration token."""
        pass

    def close(self) -> None:
        pass


class HttpCoordinatorClient(CoordinatorClient):
    """Coordinator client speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: str,
        token_source: Optional[Callable[[], str]] = None,
        timeout: float = 10.0,
        admin_token: Optional[str] = None,
    ):
        """
        Args:
            base_url: Coordinator root URL
            token_source: Returns the current registration token for auth headers
            timeout: Per-request timeout in seconds
            admin_token: Long-lived access token used only to mint
                registration tokens
        """
        self.base_url = base_url.rstrip("/")
        self.token_source = token_source
        self.timeout = timeout
        self.admin_token = admin_token
        self.session = requests.Session()

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        token = token if token is not None else (
            self.token_source() if self.token_source else None
        )
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        conflict_is_race: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(token),
                timeout=self.timeout,
                **kwargs,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e
        except requests.RequestException as e:
            raise CoordinatorError(f"{method} {path} failed: {e}") from e

        code = response.status_code
        if code in (401, 403):
            raise AuthError(f"{method} {path} rejected credentials ({code})")
        if code == 409 and conflict_is_race:
            raise LeaseConflict(f"{method} {path}: job already claimed")
        if code == 429 or code >= 500:
            raise NetworkError(f"{method} {path} answered {code}")
        if code >= 400:
            raise CoordinatorError(f"{method} {path} answered {code}: {response.text[:200]}")
        return response

    @staticmethod
    def _json(response: requests.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise CoordinatorError(f"Malformed coordinator response: {e}") from e
        if not isinstance(body, dict):
            raise CoordinatorError("Coordinator response is not an object")
        return body

    def register(self, identity: RunnerIdentity, token: str) -> bool:
        try:
            response = self._request(
                "POST",
                "/api/runners/register",
                token=token,
                json=identity.model_dump(mode="json"),
            )
        except AuthError:
            return False
        return bool(self._json(response).get("accepted", False))

    def poll(
        self,
        runner_id: UUID,
        labels: Iterable[str],
        capabilities: Iterable[str] = (),
    ) -> Optional[JobLease]:
        response = self._request(
            "POST",
            f"/api/runners/{runner_id}/poll",
            conflict_is_race=True,
            json={"labels": sorted(labels), "capabilities": sorted(capabilities)},
        )
        if response.status_code == 204:
            return None
        body = self._json(response)
        if not body.get("lease"):
            return None
        try:
            return JobLease.model_validate(body["lease"])
        except ValidationError as e:
            raise CoordinatorError(f"Malformed job lease: {e}") from e

    def report(self, job_id: str, result: ExecutionResult) -> ReportAck:
        response = self._request(
            "POST",
            f"/api/jobs/{job_id}/report",
            json=result.model_dump(mode="json"),
        )
        if response.status_code == 202:
            return ReportAck.RETRY_LATER
        status = self._json(response).get("status", ReportAck.ACK.value)
        try:
            return ReportAck(status)
        except ValueError as e:
            raise CoordinatorError(f"Unknown report status: {status}") from e

    def heartbeat(
        self, runner_id: UUID, status: str, job_id: Optional[str] = None
    ) -> HeartbeatAck:
        response = self._request(
            "POST",
            f"/api/runners/{runner_id}/heartbeat",
            json={"status": status, "job_id": job_id},
        )
        if response.status_code == 204:
            return HeartbeatAck()
        try:
            return HeartbeatAck.model_validate(self._json(response))
        except ValidationError as e:
            raise CoordinatorError(f"Malformed heartbeat response: {e}") from e

    def release(self, job_id: str, runner_id: UUID) -> None:
        self._request(
            "POST",
            f"/api/jobs/{job_id}/release",
            json={"runner_id": str(runner_id)},
        )

    def deregister(self, runner_id: UUID, token: str) -> None:
        self._request("DELETE", f"/api/runners/{runner_id}", token=token)

    def fetch_registration_token(self) -> RegistrationToken:
        if not self.admin_token:
            raise AuthError("No access token configured to mint registration tokens")
        response = self._request(
            "POST", "/api/runners/registration-token", token=self.admin_token
        )
        body = self._json(response)
        try:
            expires_at = datetime.fromisoformat(body["expires_at"])
            value = body["token"]
        except (KeyError, TypeError, ValueError) as e:
            raise CoordinatorError(f"Malformed registration token response: {e}") from e
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return RegistrationToken(
            value=value,
            issued_at=datetime.now(timezone.utc),
            expires_at=expires_at,
        )

    def close(self) -> None:
        self.session.close()
