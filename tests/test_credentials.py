"""Tests for the encrypted credential store."""

from datetime import UTC, datetime, timedelta

import pytest

from conftest import MAILBOX, USER, FakeTokenClient, gmail_credentials
from dmarc_sync.config import GOOGLE_MODIFY_SCOPE, GOOGLE_READ_SCOPE
from dmarc_sync.credentials import CredentialStore
from dmarc_sync.crypto import TokenCipher
from dmarc_sync.database import SYNC_CONFIGS
from dmarc_sync.exceptions import AuthenticationError, ConfigNotFoundError, TokenDecryptionError
from dmarc_sync.models import Provider


def test_tokens_are_encrypted_at_rest(store, db):
    config_id = store.save_credentials(gmail_credentials(), USER)
    row = db[SYNC_CONFIGS].get(config_id)
    assert row["access_token"] != "access-1"
    assert row["refresh_token"] != "refresh-1"
    assert row["email_address"] == MAILBOX


def test_get_credentials_round_trip(store):
    config_id = store.save_credentials(gmail_credentials(), USER)
    creds = store.get_credentials(config_id, USER)
    assert creds.access_token == "access-1"
    assert creds.refresh_token == "refresh-1"
    assert creds.provider is Provider.GMAIL


def test_other_user_cannot_read(store):
    config_id = store.save_credentials(gmail_credentials(), USER)
    assert store.get_credentials(config_id, "someone-else") is None


def test_save_same_mailbox_updates_existing(store):
    first = store.save_credentials(gmail_credentials(), USER)
    second = store.save_credentials(gmail_credentials(), USER)
    assert first == second


def test_expiring_token_is_refreshed_and_keeps_refresh_token(store, token_client, db):
    config_id = store.save_credentials(gmail_credentials(expires_in=timedelta(minutes=2)), USER)
    creds = store.get_credentials(config_id, USER)
    assert token_client.refresh_calls == ["refresh-1"]
    assert creds.access_token == "fresh-token-1"
    assert creds.refresh_token == "refresh-1"

    reloaded = store.get_credentials(config_id, USER)
    assert reloaded.access_token == "fresh-token-1"
    assert reloaded.refresh_token == "refresh-1"
    assert len(token_client.refresh_calls) == 1


def test_refresh_uses_new_refresh_token_when_provider_rotates(db, cipher, settings):
    client = FakeTokenClient(new_refresh_token="refresh-2")
    store = CredentialStore(db, cipher, {Provider.GMAIL: client}, settings)
    config_id = store.save_credentials(gmail_credentials(), USER)
    creds = store.refresh_token_for_config(config_id, USER)
    assert creds.refresh_token == "refresh-2"


def test_expired_without_refresh_token_returns_none(store):
    config_id = store.save_credentials(
        gmail_credentials(expires_in=timedelta(minutes=-5), refresh_token=None), USER
    )
    assert store.get_credentials(config_id, USER) is None


def test_refresh_failure_returns_none(db, cipher, settings):
    store = CredentialStore(db, cipher, {Provider.GMAIL: FakeTokenClient(fail=True)}, settings)
    config_id = store.save_credentials(gmail_credentials(expires_in=timedelta(seconds=10)), USER)
    assert store.get_credentials(config_id, USER) is None
    assert store.refresh_token_for_config(config_id, USER) is None


def test_corrupted_access_token_deletes_config(store, db):
    config_id = store.save_credentials(gmail_credentials(), USER)
    db[SYNC_CONFIGS].update(config_id, {"access_token": "garbage"})
    assert store.get_credentials(config_id, USER) is None
    assert db[SYNC_CONFIGS].count == 0


def test_corrupted_refresh_token_continues_without_it(store, db):
    config_id = store.save_credentials(gmail_credentials(), USER)
    db[SYNC_CONFIGS].update(config_id, {"refresh_token": "garbage"})
    creds = store.get_credentials(config_id, USER)
    assert creds.access_token == "access-1"
    assert creds.refresh_token is None


def test_upgrade_scope_overwrites_tokens(store, token_client):
    config_id = store.save_credentials(gmail_credentials(scopes=(GOOGLE_READ_SCOPE,)), USER)
    before = store.get_credentials(config_id, USER)
    assert not store.has_modify_scope(before)

    upgraded = store.upgrade_scope(config_id, USER)
    scopes, hint = token_client.authorize_calls[0]
    assert scopes == [GOOGLE_MODIFY_SCOPE]
    assert hint == MAILBOX
    assert store.has_modify_scope(upgraded)
    assert store.get_credentials(config_id, USER).access_token == "authorized-token"


def test_upgrade_scope_rejects_different_account(db, cipher, settings):
    store = CredentialStore(db, cipher, {Provider.GMAIL: FakeTokenClient(email="other@example.com")}, settings)
    config_id = store.save_credentials(gmail_credentials(scopes=(GOOGLE_READ_SCOPE,)), USER)
    with pytest.raises(AuthenticationError, match="other@example.com"):
        store.upgrade_scope(config_id, USER)


def test_upgrade_scope_unknown_config(store):
    with pytest.raises(ConfigNotFoundError):
        store.upgrade_scope(999, USER)


def test_connect_creates_config(store, token_client):
    config_id = store.connect(Provider.GMAIL, USER)
    creds = store.get_credentials(config_id, USER)
    assert creds.email == MAILBOX
    assert creds.scopes == [GOOGLE_READ_SCOPE]
    assert creds.account_id == "acct-1"


def test_cipher_rejects_foreign_ciphertext(cipher):
    other = TokenCipher(TokenCipher.generate_key())
    with pytest.raises(TokenDecryptionError):
        cipher.decrypt(other.encrypt("secret"))


def test_expiry_buffer_is_five_minutes(store, token_client):
    config_id = store.save_credentials(gmail_credentials(expires_in=timedelta(minutes=6)), USER)
    store.get_credentials(config_id, USER)
    assert token_client.refresh_calls == []


def test_clock_injection(db, cipher, settings, token_client):
    later = datetime.now(tz=UTC) + timedelta(hours=2)
    store = CredentialStore(db, cipher, {Provider.GMAIL: token_client}, settings, clock=lambda: later)
    config_id = store.save_credentials(gmail_credentials(), USER)
    store.get_credentials(config_id, USER)
    assert token_client.refresh_calls == ["refresh-1"]
