#!/usr/bin/env python3
"""
Unit tests for the Credential Store

Covers token access, proactive rotation, invalidation after repeated refresh
failures and the encrypted on-disk cache.
"""

import os
import stat
import sys
import tempfile
import time
import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

# Add the src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from coordinator.models import RegistrationToken, utcnow
from credentials import CredentialStore
from errors import AuthError


def make_token(value="tok-1", lifetime=3600.0, age=0.0) -> RegistrationToken:
    issued = utcnow() - timedelta(seconds=age)
    return RegistrationToken(
        value=value,
        issued_at=issued,
        expires_at=issued + timedelta(seconds=lifetime),
    )


class CredentialStoreTestCase(unittest.TestCase):
    """Shared fixtures: a temporary cache directory."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.cache_path = Path(self.tmp.name) / "token.cache"
        self.key_path = Path(self.tmp.name) / "token.key"
        self.config = {
            "check_interval": 0.05,
            "refresh_margin": 0.1,
            "max_refresh_attempts": 3,
        }

    def make_store(self, provider=None, **overrides) -> CredentialStore:
        config = dict(self.config, **overrides)
        return CredentialStore(
            config,
            token_provider=provider,
            cache_path=self.cache_path,
            key_path=self.key_path,
        )


class TestTokenAccess(CredentialStoreTestCase):
    """Test cases for get_token and rotate."""

    def test_no_token_raises_auth_error(self):
        store = self.make_store()
        with self.assertRaises(AuthError):
            store.get_token()

    def test_rotate_then_get(self):
        store = self.make_store()
        token = make_token("abc")
        store.rotate(token)
        self.assertEqual(store.get_token(), token)
        self.assertEqual(store.token_value(), "abc")

    def test_expired_token_never_returned(self):
        store = self.make_store()
        store.rotate(make_token(lifetime=0.2))
        time.sleep(0.3)
        with self.assertRaises(AuthError):
            store.get_token()

    def test_rotate_rejects_expired_token(self):
        store = self.make_store()
        with self.assertRaises(AuthError):
            store.rotate(make_token(lifetime=10, age=20))

    def test_repr_hides_value(self):
        token = make_token("super-secret")
        self.assertNotIn("super-secret", repr(token))
        self.assertNotIn("super-secret", str(token))


class TestRefresh(CredentialStoreTestCase):
    """Test cases for proactive refresh and invalidation."""

    def test_needs_refresh_at_margin(self):
        store = self.make_store()
        store.rotate(make_token(lifetime=1000, age=850))
        self.assertFalse(store.needs_refresh())
        store.rotate(make_token(lifetime=1000, age=905))
        self.assertTrue(store.needs_refresh())

    def test_rotation_before_expiry_keeps_tokens_available(self):
        """A refresh inside the margin means the next call never fails."""
        provider = MagicMock(return_value=make_token("tok-2", lifetime=1000))
        store = self.make_store(provider)
        store.rotate(make_token("tok-1", lifetime=1000, age=950))

        self.assertTrue(store.check_refresh())
        self.assertEqual(store.token_value(), "tok-2")
        provider.assert_called_once()

    def test_no_refresh_outside_margin(self):
        provider = MagicMock()
        store = self.make_store(provider)
        store.rotate(make_token(lifetime=1000))
        self.assertFalse(store.check_refresh())
        provider.assert_not_called()

    def test_invalid_after_max_failures(self):
        provider = MagicMock(side_effect=ConnectionError("coordinator down"))
        store = self.make_store(provider)
        events = []
        store.subscribe(events.append)

        for _ in range(2):
            self.assertFalse(store.check_refresh())
        self.assertTrue(store.is_valid)
        self.assertEqual(events, [])

        store.check_refresh()
        self.assertFalse(store.is_valid)
        self.assertEqual(store.refresh_failures, 3)
        self.assertEqual(events, [False])

        # Further failures do not notify again
        store.check_refresh()
        self.assertEqual(events, [False])

        with self.assertRaises(AuthError):
            store.get_token()

    def test_invalid_store_hides_unexpired_token(self):
        provider = MagicMock(side_effect=ConnectionError("down"))
        store = self.make_store(provider, max_refresh_attempts=1)
        store.rotate(make_token(lifetime=1000, age=990))
        store.check_refresh()
        with self.assertRaises(AuthError):
            store.get_token()

    def test_successful_refresh_revalidates(self):
        provider = MagicMock(side_effect=ConnectionError("down"))
        store = self.make_store(provider, max_refresh_attempts=1)
        events = []
        store.subscribe(events.append)
        store.check_refresh()
        self.assertFalse(store.is_valid)

        provider.side_effect = None
        provider.return_value = make_token("tok-3")
        self.assertTrue(store.check_refresh())
        self.assertTrue(store.is_valid)
        self.assertEqual(store.refresh_failures, 0)
        self.assertEqual(events, [False, True])

    def test_background_refresh(self):
        """The runner fetches a token on start and keeps it fresh."""
        provider = MagicMock(side_effect=lambda: make_token(lifetime=1000))
        store = self.make_store(provider, persist_cache=False)
        self.assertTrue(store.start())
        try:
            self.assertTrue(store.is_healthy())
            self.assertEqual(provider.call_count, 1)
        finally:
            store.stop()


class TestEncryptedCache(CredentialStoreTestCase):
    """Test cases for the encrypted token cache."""

    def test_cache_is_encrypted(self):
        store = self.make_store()
        store.rotate(make_token("plain-value"))
        self.assertTrue(self.cache_path.exists())
        self.assertNotIn(b"plain-value", self.cache_path.read_bytes())

    @unittest.skipIf(os.name == "nt", "POSIX permissions")
    def test_key_file_is_private(self):
        store = self.make_store()
        store.rotate(make_token())
        mode = stat.S_IMODE(self.key_path.stat().st_mode)
        self.assertEqual(mode, 0o600)

    def test_restart_reloads_valid_token(self):
        self.make_store().rotate(make_token("cached"))
        reloaded = self.make_store()
        self.assertEqual(reloaded.token_value(), "cached")

    def test_expired_cache_ignored(self):
        self.make_store().rotate(make_token(lifetime=0.2))
        time.sleep(0.3)
        reloaded = self.make_store()
        with self.assertRaises(AuthError):
            reloaded.get_token()

    def test_corrupt_cache_ignored(self):
        self.make_store().rotate(make_token())
        self.cache_path.write_bytes(b"not a fernet token")
        reloaded = self.make_store()
        with self.assertRaises(AuthError):
            reloaded.get_token()

    def test_cache_with_other_key_ignored(self):
        self.make_store().rotate(make_token())
        self.key_path.unlink()
        reloaded = self.make_store()
        with self.assertRaises(AuthError):
            reloaded.get_token()

    def test_persist_cache_disabled(self):
        store = self.make_store(persist_cache=False)
        store.rotate(make_token())
        self.assertFalse(self.cache_path.exists())


if __name__ == "__main__":
    unittest.main()
