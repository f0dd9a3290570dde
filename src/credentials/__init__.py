"""
Credential handling for PiFleet runner registration.
"""

from coordinator.models import RegistrationToken

from .credential_store import CredentialStore

__all__ = ["CredentialStore", "RegistrationToken"]
