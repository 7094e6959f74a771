"""Encrypted OAuth credential lifecycle per sync configuration.

This store is the only writer of the ``access_token``, ``refresh_token``,
``expires_at`` and ``scopes`` columns of ``sync_configs``.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

import sqlite_utils

from .config import Settings
from .crypto import TokenCipher
from .database import SYNC_CONFIGS
from .exceptions import (
    AuthenticationError,
    ConfigNotFoundError,
    TokenDecryptionError,
    TokenRefreshError,
)
from .models import Credentials, Provider, SyncStatus
from .oauth import TokenGrant
from .sync_configs import SyncConfigRepository
from .utils import isoformat_utc, parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)


class CredentialStore:
    def __init__(
        self,
        db: sqlite_utils.Database,
        cipher: TokenCipher,
        token_clients: Mapping[Provider, Any],
        settings: Settings,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self.db = db
        self.table = db[SYNC_CONFIGS]
        self.configs = SyncConfigRepository(db)
        self.cipher = cipher
        self.token_clients = dict(token_clients)
        self.settings = settings
        self.clock = clock
        self.expiry_buffer = timedelta(seconds=settings.token_expiry_buffer_seconds)

    def get_credentials(self, config_id: int, user_id: str) -> Optional[Credentials]:
        """Decrypted credentials, refreshed first when within the expiry buffer.

        Returns ``None`` when the config is gone, its access token cannot be
        decrypted (the config is deleted), or it expired without a usable
        refresh token.
        """
        credentials = self._load(config_id, user_id)
        if credentials is None:
            return None

        if credentials.expires_at and self.clock() >= credentials.expires_at - self.expiry_buffer:
            if not credentials.refresh_token:
                logger.warning("Access token for config %s expired and no refresh token is stored", config_id)
                return None
            logger.info("Access token for config %s is expiring; refreshing", config_id)
            return self._refresh(config_id, credentials)
        return credentials

    def refresh_token_for_config(self, config_id: int, user_id: str) -> Optional[Credentials]:
        credentials = self._load(config_id, user_id)
        if credentials is None:
            return None
        if not credentials.refresh_token:
            logger.warning("Config %s has no refresh token; reconnect required", config_id)
            return None
        return self._refresh(config_id, credentials)

    def upgrade_scope(self, config_id: int, user_id: str) -> Credentials:
        """Re-run consent with the modify scope and overwrite stored tokens."""
        config = self.configs.get(config_id, user_id)
        if config is None:
            raise ConfigNotFoundError(f"Sync configuration {config_id} not found")
        client = self._client(config.provider)
        grant = client.authorize(
            self.settings.modify_scopes(config.provider), login_hint=config.email_address
        )
        if grant.email and grant.email.lower() != config.email_address.lower():
            raise AuthenticationError(
                f"Signed in as {grant.email}, expected {config.email_address}", reason="required"
            )
        credentials = self._from_grant(grant, config.provider, config.email_address)
        self._write_tokens(config_id, credentials)
        logger.info("Upgraded config %s to modify permissions", config_id)
        return credentials

    def connect(self, provider: Provider, user_id: str, modify: bool = False) -> int:
        """Run the provider consent flow and store the resulting mailbox connection."""
        scopes = self.settings.modify_scopes(provider) if modify else self.settings.read_scopes(provider)
        grant = self._client(provider).authorize(scopes)
        if not grant.email:
            raise AuthenticationError("Provider did not report the mailbox address")
        return self.save_credentials(self._from_grant(grant, provider, grant.email), user_id)

    def save_credentials(self, credentials: Credentials, user_id: str) -> int:
        """Create or update the config for (user, provider, mailbox)."""
        existing = self.configs.find_by_mailbox(user_id, credentials.provider, credentials.email)
        if existing is not None:
            self._write_tokens(existing, credentials)
            self.configs.update_sync_status(existing, SyncStatus.IDLE)
            logger.info("Updated credentials for config %s (%s)", existing, credentials.email)
            return existing

        now = isoformat_utc(self.clock())
        self.table.insert(
            {
                "user_id": user_id,
                "provider": credentials.provider.value,
                "email_address": credentials.email,
                "sync_status": SyncStatus.IDLE.value,
                "created_at": now,
                "updated_at": now,
                **self._token_columns(credentials),
            }
        )
        config_id = self.table.last_pk
        logger.info("Created sync config %s for %s", config_id, credentials.email)
        return config_id

    def has_modify_scope(self, credentials: Credentials) -> bool:
        return self.settings.grants_modify(credentials.provider, credentials.scopes)

    def _load(self, config_id: int, user_id: str) -> Optional[Credentials]:
        row = self.configs.get_row(config_id, user_id)
        if row is None:
            logger.warning("Sync config %s not found for user %s", config_id, user_id)
            return None

        try:
            access_token = self.cipher.decrypt(row["access_token"] or "")
        except TokenDecryptionError:
            logger.error("Access token for config %s is corrupted; removing config", config_id)
            self.configs.delete(config_id, user_id)
            return None

        refresh_token = None
        if row.get("refresh_token"):
            try:
                refresh_token = self.cipher.decrypt(row["refresh_token"])
            except TokenDecryptionError:
                logger.warning("Refresh token for config %s is corrupted; continuing without it", config_id)

        expires_at = row.get("expires_at")
        return Credentials(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=parse_iso_datetime(expires_at) if expires_at else None,
            email=row["email_address"],
            provider=Provider(row["provider"]),
            account_id=row.get("account_id"),
            scopes=(row.get("scopes") or "").split(),
        )

    def _refresh(self, config_id: int, credentials: Credentials) -> Optional[Credentials]:
        try:
            client = self._client(credentials.provider)
            grant = client.refresh(credentials.refresh_token, credentials.scopes)
        except (TokenRefreshError, AuthenticationError) as exc:
            logger.error("Token refresh for config %s failed: %s", config_id, exc)
            return None

        refreshed = Credentials(
            access_token=grant.access_token,
            # Providers often omit the refresh token on refresh; keep the working one.
            refresh_token=grant.refresh_token or credentials.refresh_token,
            expires_at=grant.expires_at,
            email=credentials.email,
            provider=credentials.provider,
            account_id=credentials.account_id,
            scopes=grant.scopes or credentials.scopes,
        )
        self._write_tokens(config_id, refreshed)
        logger.info("Refreshed access token for config %s", config_id)
        return refreshed

    def _client(self, provider: Provider):
        client = self.token_clients.get(provider)
        if client is None:
            raise AuthenticationError(f"No OAuth client configured for {provider.value}")
        return client

    def _write_tokens(self, config_id: int, credentials: Credentials) -> None:
        updates = self._token_columns(credentials)
        updates["updated_at"] = isoformat_utc(self.clock())
        self.table.update(config_id, updates)

    def _token_columns(self, credentials: Credentials) -> dict[str, Any]:
        return {
            "access_token": self.cipher.encrypt(credentials.access_token),
            "refresh_token": (
                self.cipher.encrypt(credentials.refresh_token) if credentials.refresh_token else None
            ),
            "expires_at": isoformat_utc(credentials.expires_at) if credentials.expires_at else None,
            "scopes": " ".join(credentials.scopes),
            "account_id": credentials.account_id,
        }

    @staticmethod
    def _from_grant(grant: TokenGrant, provider: Provider, email: str) -> Credentials:
        return Credentials(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
            email=email,
            provider=provider,
            account_id=grant.account_id,
            scopes=list(grant.scopes),
        )
