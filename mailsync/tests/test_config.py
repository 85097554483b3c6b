"""Unit tests for settings and the credential vault."""

import pytest

from mailsync.core.config import SyncSettings
from mailsync.core.credential_vault import CredentialVault, DecryptionError
from mailsync.providers.base import AuthType, ConnectionCredentials, OAuthTokens


class TestSyncSettings:
    """Tests for SyncSettings defaults."""

    def test_sync_defaults(self):
        """Test batch, limit and timing defaults."""
        s = SyncSettings()

        assert s.default_batch_size == 5
        assert s.default_sync_limit == 25
        assert s.initial_sync_limit == 200
        assert s.initial_sync_batch_size == 50
        assert s.quick_sync_limit == 10
        assert s.sync_cooldown_seconds == 30
        assert s.continuation_delay_seconds == 10
        assert s.token_refresh_buffer_seconds == 300

    def test_retry_defaults(self):
        """Test retry schedules and per-unit timeouts."""
        s = SyncSettings()

        assert s.sync_max_attempts == 3
        assert s.sync_backoff_seconds == [60, 300, 600]
        assert s.message_backoff_seconds == [30, 60, 120]
        assert s.initial_sync_timeout_seconds == 1800
        assert s.sync_timeout_seconds == 1200
        assert s.message_timeout_seconds == 120
        assert s.renewal_timeout_seconds == 300

    def test_extraction_defaults(self):
        """Test MIME bound and the seeded poisoned id."""
        s = SyncSettings()

        assert s.max_mime_depth == 25
        assert "1985b8d55892dd7f" in s.poisoned_message_ids

    def test_env_override(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("QUICK_SYNC_LIMIT", "3")
        monkeypatch.setenv("SYNC_BACKOFF_SECONDS", "[1, 2, 3]")

        s = SyncSettings()

        assert s.quick_sync_limit == 3
        assert s.sync_backoff_seconds == [1, 2, 3]


class TestCredentialVault:
    """Tests for sealing connection credentials."""

    def test_seal_and_open(self, vault):
        """Test that sealed OAuth credentials come back intact."""
        creds = ConnectionCredentials(
            auth_type=AuthType.OAUTH2,
            oauth_tokens=OAuthTokens(access_token="a", refresh_token="r"),
        )

        sealed = vault.seal(creds)
        opened = vault.open(sealed)

        assert "refresh" not in sealed
        assert opened.auth_type == AuthType.OAUTH2
        assert opened.oauth_tokens.access_token == "a"
        assert opened.oauth_tokens.refresh_token == "r"

    def test_password_never_stored_in_clear(self, vault):
        """Test that IMAP passwords do not appear in the sealed value."""
        creds = ConnectionCredentials(
            auth_type=AuthType.PASSWORD,
            username="u@example.com",
            password="hunter2",
            host="imap.example.com",
        )

        sealed = vault.seal(creds)

        assert "hunter2" not in sealed
        assert vault.open(sealed).password == "hunter2"

    def test_wrong_key_fails(self, vault):
        """Test that a different master key cannot open the value."""
        sealed = vault.seal(ConnectionCredentials(auth_type=AuthType.PASSWORD, password="x"))
        other = CredentialVault(master_key="another-key", salt="test-salt")

        with pytest.raises(DecryptionError):
            other.open(sealed)

    def test_from_settings_is_stable(self):
        """Test that two vaults built from the same settings open each other's values."""
        s = SyncSettings(credential_vault_key="k1", credential_vault_salt="s1")
        sealed = CredentialVault.from_settings(s).seal(
            ConnectionCredentials(auth_type=AuthType.PASSWORD, password="x")
        )

        assert CredentialVault.from_settings(s).open(sealed).password == "x"

    def test_garbage_rejected(self, vault):
        with pytest.raises(DecryptionError):
            vault.open("not-a-token")
