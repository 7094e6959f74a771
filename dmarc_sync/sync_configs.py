"""Repository for mailbox sync configurations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

import sqlite_utils
from sqlite_utils.db import NotFoundError

from .database import SYNC_CONFIGS
from .exceptions import ConfigNotFoundError
from .models import Provider, SyncConfig, SyncStatus
from .utils import isoformat_utc, parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)

_OPTION_COLUMNS = {
    "is_active",
    "delete_after_import",
    "sync_unread_only",
    "incremental_sync_enabled",
}


class SyncConfigRepository:
    """Read and mutate ``sync_configs`` rows, excluding the token columns."""

    def __init__(self, db: sqlite_utils.Database) -> None:
        self.db = db
        self.table = db[SYNC_CONFIGS]

    def get_row(self, config_id: int, user_id: str) -> Optional[dict[str, Any]]:
        try:
            row = self.table.get(config_id)
        except NotFoundError:
            return None
        if row["user_id"] != user_id:
            return None
        return row

    def get(self, config_id: int, user_id: str) -> Optional[SyncConfig]:
        row = self.get_row(config_id, user_id)
        return self._to_config(row) if row else None

    def list_for_user(self, user_id: str, active_only: bool = False) -> list[SyncConfig]:
        where = "user_id = ?"
        if active_only:
            where += " and is_active = 1"
        rows = self.table.rows_where(where, [user_id], order_by="id")
        return [self._to_config(row) for row in rows]

    def find_by_mailbox(self, user_id: str, provider: Provider, email_address: str) -> Optional[int]:
        rows = list(
            self.table.rows_where(
                "user_id = ? and provider = ? and email_address = ?",
                [user_id, provider.value, email_address],
                select="id",
            )
        )
        return rows[0]["id"] if rows else None

    def update_sync_status(
        self, config_id: int, status: SyncStatus, error_message: str | None = None
    ) -> None:
        now = isoformat_utc(utcnow())
        updates: dict[str, Any] = {
            "sync_status": status.value,
            "last_error_message": error_message,
            "updated_at": now,
        }
        if status is SyncStatus.COMPLETED:
            updates["last_sync_at"] = now
        self._update(config_id, updates)

    def advance_cursor(self, config_id: int, received: datetime) -> bool:
        """Move the incremental cursor forward; older timestamps are ignored."""
        try:
            row = self.table.get(config_id)
        except NotFoundError:
            return False
        current = row.get("last_sync_cursor")
        if current and parse_iso_datetime(current) >= received:
            logger.debug("Cursor for config %s already at %s; not moving back", config_id, current)
            return False
        self._update(config_id, {"last_sync_cursor": isoformat_utc(received)})
        return True

    def set_options(self, config_id: int, user_id: str, **options: bool) -> SyncConfig:
        unknown = set(options) - _OPTION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown sync options: {', '.join(sorted(unknown))}")
        if self.get_row(config_id, user_id) is None:
            raise ConfigNotFoundError(f"Sync configuration {config_id} not found")
        updates: dict[str, Any] = {key: bool(value) for key, value in options.items()}
        updates["updated_at"] = isoformat_utc(utcnow())
        self._update(config_id, updates)
        return self.get(config_id, user_id)

    def delete(self, config_id: int, user_id: str) -> bool:
        if self.get_row(config_id, user_id) is None:
            return False
        self.table.delete(config_id)
        logger.info("Deleted sync configuration %s", config_id)
        return True

    def acquire_lease(self, config_id: int, owner: str, ttl_seconds: int) -> bool:
        """Claim the run lease unless another live run holds it."""
        now = utcnow().timestamp()
        with self.db.conn:
            cursor = self.db.execute(
                f"update [{SYNC_CONFIGS}] set lease_owner = ?, lease_expires_at = ? "
                "where id = ? and (lease_owner is null or lease_expires_at is null "
                "or lease_expires_at < ?)",
                [owner, now + ttl_seconds, config_id, now],
            )
        acquired = cursor.rowcount == 1
        if not acquired:
            logger.warning("Sync lease for config %s is held by another run", config_id)
        return acquired

    def release_lease(self, config_id: int, owner: str) -> None:
        with self.db.conn:
            self.db.execute(
                f"update [{SYNC_CONFIGS}] set lease_owner = null, lease_expires_at = null "
                "where id = ? and lease_owner = ?",
                [config_id, owner],
            )

    def _update(self, config_id: int, updates: dict[str, Any]) -> None:
        try:
            self.table.update(config_id, updates)
        except NotFoundError:
            logger.warning("Sync configuration %s vanished before update", config_id)

    @staticmethod
    def _to_config(row: dict[str, Any]) -> SyncConfig:
        return SyncConfig(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            email_address=row["email_address"],
            is_active=bool(row.get("is_active")),
            delete_after_import=bool(row.get("delete_after_import")),
            sync_unread_only=bool(row.get("sync_unread_only")),
            incremental_sync_enabled=bool(row.get("incremental_sync_enabled")),
            last_sync_at=parse_iso_datetime(row["last_sync_at"]) if row.get("last_sync_at") else None,
            last_sync_cursor=(
                parse_iso_datetime(row["last_sync_cursor"]) if row.get("last_sync_cursor") else None
            ),
            sync_status=SyncStatus(row.get("sync_status") or SyncStatus.IDLE.value),
            last_error_message=row.get("last_error_message"),
            scopes=(row.get("scopes") or "").split(),
            account_id=row.get("account_id"),
        )
