"""
Credential Store for PiFleet

This module holds the registration token runner agents authenticate with,
refreshes it before it expires, and keeps an encrypted cache on disk so a
process restart does not force a new registration.

The token value only ever exists in plaintext in process memory. The cache
file is encrypted with Fernet using a key kept in a separate 0600 file.
"""

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from config.paths import TOKEN_CACHE_PATH, TOKEN_KEY_PATH
from coordinator.models import RegistrationToken
from errors import AuthError
from runners.base_runner import BaseRunner

TokenProvider = Callable[[], RegistrationToken]
ValidityListener = Callable[[bool], None]


class CredentialStore(BaseRunner):
    """
    Threaded owner of the registration token.

    Provides:
    - get_token(), which never hands out an expired token
    - rotate(), which swaps the token and rewrites the encrypted cache
    - a background check that refreshes once the remaining lifetime drops to
      ``refresh_margin`` of the total lifetime
    - invalidation after ``max_refresh_attempts`` consecutive refresh failures,
      announced to subscribers so dependent agents go offline
    """

    def __init__(
        self,
        config: Dict[str, Any],
        production: bool = False,
        token_provider: Optional[TokenProvider] = None,
        cache_path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        """
        Initialize the credential store.

        Args:
            config: The ``credentials`` configuration section
            production: Whether running in production mode
            token_provider: Callable returning a fresh RegistrationToken
            cache_path: Encrypted token cache location
            key_path: Fernet key location
        """
        super().__init__("credential_store", config, production)

        self.interval = self._get_config_value("check_interval", 60.0)
        self.refresh_margin = self._get_config_value("refresh_margin", 0.1)
        self.max_refresh_attempts = self._get_config_value("max_refresh_attempts", 5)
        self.persist_cache = self._get_config_value("persist_cache", True)
        self.cache_path = Path(
            cache_path or self._get_config_value("cache_file", TOKEN_CACHE_PATH)
        )
        self.key_path = Path(
            key_path or self._get_config_value("key_file", TOKEN_KEY_PATH)
        )
        self.token_provider = token_provider

        self._lock = threading.RLock()
        self._token: Optional[RegistrationToken] = None
        self._valid = True
        self._refresh_failures = 0
        self._listeners: List[ValidityListener] = []
        self._fernet: Optional[Fernet] = None

        if self.persist_cache:
            self._load_cache()

    # Token access

    def get_token(self) -> RegistrationToken:
        """
        Get the current registration token.

        Raises:
            AuthError: If the store is invalid or holds no unexpired token
        """
        with self._lock:
            if not self._valid:
                raise AuthError("Credential store is invalid after repeated refresh failures")
            if self._token is None:
                raise AuthError("No registration token available")
            if self._token.is_expired():
                raise AuthError("Registration token expired")
            return self._token

    def token_value(self) -> str:
        """Plain token value, for building auth headers."""
        return self.get_token().value.get_secret_value()

    def rotate(self, new_token: RegistrationToken) -> None:
        """
        Replace the current token.

        Raises:
            AuthError: If the new token is already expired
        """
        if new_token.is_expired():
            raise AuthError("Refusing to rotate to an expired token")

        with self._lock:
            was_invalid = not self._valid
            self._token = new_token
            self._valid = True
            self._refresh_failures = 0
            if self.persist_cache:
                self._write_cache(new_token)

        self.logger.info(
            f"Registration token rotated, expires at {new_token.expires_at.isoformat()}"
        )
        if was_invalid:
            self._notify(True)

    @property
    def is_valid(self) -> bool:
        with self._lock:
            return self._valid

    @property
    def refresh_failures(self) -> int:
        with self._lock:
            return self._refresh_failures

    # Refresh

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        """True once the remaining lifetime is within the refresh margin."""
        with self._lock:
            token = self._token
        if token is None:
            return True
        return token.remaining(now) <= self.refresh_margin * token.lifetime

    def check_refresh(self) -> bool:
        """
        Refresh the token if it is close to expiry.

        Returns:
            True if a new token was installed
        """
        if not self.needs_refresh():
            return False
        if self.token_provider is None:
            self.logger.warning("Token needs refresh but no token provider is configured")
            return False

        try:
            new_token = self.token_provider()
            self.rotate(new_token)
            return True
        except Exception as e:
            with self._lock:
                self._refresh_failures += 1
                failures = self._refresh_failures
                exhausted = failures >= self.max_refresh_attempts and self._valid
                if exhausted:
                    self._valid = False
            self._record_error(f"Token refresh failed ({failures}/{self.max_refresh_attempts}): {e}")
            if exhausted:
                self.logger.critical("Credential store marked invalid, agents must go offline")
                self._notify(False)
            return False

    # Subscribers

    def subscribe(self, listener: ValidityListener) -> None:
        """Register a callback invoked with the new validity on every change."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: ValidityListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, valid: bool) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(valid)
            except Exception as e:
                self.logger.error(f"Credential listener failed: {e}")

    # Encrypted cache

    def _cipher(self) -> Fernet:
        if self._fernet is None:
            if self.key_path.exists():
                key = self.key_path.read_bytes().strip()
            else:
                key = Fernet.generate_key()
                self.key_path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(key)
                self.logger.info(f"Generated token cache key at {self.key_path}")
            self._fernet = Fernet(key)
        return self._fernet

    def _write_cache(self, token: RegistrationToken) -> None:
        try:
            payload = self._cipher().encrypt(json.dumps(token.to_cache()).encode("utf-8"))
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.cache_path.with_suffix(".tmp")
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_path, self.cache_path)
        except OSError as e:
            self.logger.error(f"Failed to write token cache: {e}")

    def _load_cache(self) -> None:
        if not self.cache_path.exists():
            return
        try:
            data = self._cipher().decrypt(self.cache_path.read_bytes())
            token = RegistrationToken.model_validate(json.loads(data))
        except (InvalidToken, OSError, ValueError, ValidationError) as e:
            self.logger.warning(f"Ignoring unreadable token cache {self.cache_path}: {e}")
            return

        if token.is_expired():
            self.logger.info("Cached registration token has expired, ignoring it")
            return
        self._token = token
        self.logger.info(
            f"Loaded cached registration token, expires at {token.expires_at.isoformat()}"
        )

    # Runner hooks

    def _initialize(self) -> bool:
        if self._token is None and self.token_provider is not None:
            self.check_refresh()
        return True

    def _work_cycle(self) -> None:
        self.check_refresh()

    def is_healthy(self) -> bool:
        with self._lock:
            return self._valid and self._token is not None and not self._token.is_expired()

    def get_enhanced_status(self) -> Dict[str, Any]:
        with self._lock:
            token = self._token
            valid = self._valid
            failures = self._refresh_failures
        return {
            "base_status": self.get_status(),
            "valid": valid,
            "has_token": token is not None,
            "expires_at": token.expires_at.isoformat() if token else None,
            "refresh_failures": failures,
        }
