"""SQLite-backed message ledger to prevent reprocessing across runs."""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Optional

import sqlite_utils

from .database import MESSAGE_TRACKING
from .models import CanonicalMessage, ProcessingRecord, TrackingStatus
from .utils import isoformat_utc, sha256_hex, utcnow

logger = logging.getLogger(__name__)

# Rows in these states are not picked up again; failed ones are retried next run.
_DONE_STATES = (TrackingStatus.COMPLETED.value, TrackingStatus.SKIPPED.value)


class MessageLedger:
    """Store which mailbox message ids were already handled for a config."""

    PK = ("user_id", "config_id", "message_id")

    def __init__(self, db: sqlite_utils.Database) -> None:
        self.db = db
        self.table = db[MESSAGE_TRACKING]

    def filter_new(
        self, user_id: str, config_id: int, messages: list[CanonicalMessage]
    ) -> tuple[list[CanonicalMessage], list[CanonicalMessage]]:
        """Split ``messages`` into (new, already processed).

        Any datastore failure degrades to treating every message as new.
        """
        if not messages:
            return [], []
        try:
            known = self._processed_ids(user_id, config_id, [m.id for m in messages])
        except sqlite3.Error as exc:
            logger.warning("Message tracking unavailable, treating all messages as new: %s", exc)
            return list(messages), []

        new = [m for m in messages if m.id not in known]
        duplicates = [m for m in messages if m.id in known]
        logger.info(
            "Message ledger: %s new, %s already processed for config %s",
            len(new),
            len(duplicates),
            config_id,
        )
        return new, duplicates

    def mark_processing(self, user_id: str, config_id: int, message: CanonicalMessage) -> None:
        now = isoformat_utc(utcnow())
        self._write(
            {
                "user_id": user_id,
                "config_id": config_id,
                "message_id": message.id,
                "thread_id": message.thread_id,
                "subject_hash": sha256_hex(message.subject or ""),
                "sender": message.sender,
                "received_date": isoformat_utc(message.received_date) if message.received_date else None,
                "status": TrackingStatus.PROCESSING.value,
                "first_seen_at": now,
                "updated_at": now,
            },
            keep_first_seen=True,
        )

    def mark_completed(self, user_id: str, config_id: int, record: ProcessingRecord) -> None:
        self._finish(user_id, config_id, record, TrackingStatus.COMPLETED, None)

    def mark_failed(
        self, user_id: str, config_id: int, record: ProcessingRecord, error: Optional[str]
    ) -> None:
        self._finish(user_id, config_id, record, TrackingStatus.FAILED, error)

    def mark_skipped(
        self, user_id: str, config_id: int, record: ProcessingRecord, reason: Optional[str] = None
    ) -> None:
        self._finish(user_id, config_id, record, TrackingStatus.SKIPPED, reason)

    def status_of(self, user_id: str, config_id: int, message_id: str) -> Optional[TrackingStatus]:
        rows = list(
            self.table.rows_where(
                "user_id = ? and config_id = ? and message_id = ?",
                [user_id, config_id, message_id],
                select="status",
            )
        )
        return TrackingStatus(rows[0]["status"]) if rows else None

    def _finish(
        self,
        user_id: str,
        config_id: int,
        record: ProcessingRecord,
        status: TrackingStatus,
        error: Optional[str],
    ) -> None:
        now = isoformat_utc(utcnow())
        self._write(
            {
                "user_id": user_id,
                "config_id": config_id,
                "message_id": record.message_id,
                "attachment_count": record.attachment_count,
                "reports_found": record.reports_imported + record.reports_skipped,
                "reports_processed": record.reports_imported,
                "reports_skipped": record.reports_skipped,
                "status": status.value,
                "error_message": error,
                "processed_at": now,
                "updated_at": now,
            }
        )

    def _write(self, row: dict, keep_first_seen: bool = False) -> None:
        # Tracking is best-effort: a missing table must not fail the run.
        if not self.table.exists():
            logger.debug("Tracking table missing; not recording message %s", row["message_id"])
            return
        try:
            if keep_first_seen and self.seen_any(row["user_id"], row["config_id"], row["message_id"]):
                row = {key: value for key, value in row.items() if key != "first_seen_at"}
            self.table.upsert(row, pk=self.PK)
        except sqlite3.Error as exc:
            logger.warning("Could not record message %s in ledger: %s", row["message_id"], exc)

    def seen_any(self, user_id: str, config_id: int, message_id: str) -> bool:
        return (
            self.table.count_where(
                "user_id = ? and config_id = ? and message_id = ?",
                [user_id, config_id, message_id],
            )
            > 0
        )

    def _processed_ids(self, user_id: str, config_id: int, message_ids: Iterable[str]) -> set[str]:
        ids = list(message_ids)
        placeholders = ", ".join("?" for _ in ids)
        cursor = self.db.execute(
            f"select message_id from [{MESSAGE_TRACKING}] "
            f"where user_id = ? and config_id = ? and status in (?, ?) "
            f"and message_id in ({placeholders})",
            [user_id, config_id, *_DONE_STATES, *ids],
        )
        return {row[0] for row in cursor.fetchall()}
