"""
Error Taxonomy for PiFleet

This module defines the exceptions shared by every fleet component.

Transient errors (NetworkError, LeaseConflict) are retried locally and never
surface as job failures on their own. Fatal errors (AuthError,
ResourceExhaustionError) stop an agent from claiming new work without touching
the state of a job already in flight.
"""


class FleetError(Exception):
    """Base class for all fleet errors."""

    pass


class AuthError(FleetError):
    """Registration token is missing, invalid, expired, or was rejected."""

    pass


class NetworkError(FleetError):
    """Transient transport failure talking to the coordinator."""

    pass


class LeaseConflict(FleetError):
    """Another runner won the claim race for a job."""

    pass


class CoordinatorError(FleetError):
    """Coordinator answered with something we cannot recover from by retrying."""

    pass


class SandboxError(FleetError):
    """The isolated execution environment failed."""

    pass


class ResourceExhaustionError(FleetError):
    """Host resources are critically exhausted (thermal, memory, disk)."""

    pass


class JobTimeoutError(FleetError, TimeoutError):
    """A job or a bounded call exceeded its time limit."""

    pass


class IllegalTransitionError(FleetError):
    """A state machine was asked to make a transition it does not allow."""

    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition {current} -> {target}")


# Errors that should be retried with backoff rather than counted as failures
TRANSIENT_ERRORS = (NetworkError, LeaseConflict)
