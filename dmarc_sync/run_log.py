"""Run log and deletion audit persistence."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import sqlite_utils

from .database import DELETION_AUDIT, SYNC_RUN_LOGS
from .models import DeletionAuditEntry, RunStatus, SyncResult, SyncRunLog
from .utils import isoformat_utc, parse_iso_datetime, utcnow

logger = logging.getLogger(__name__)


class RunLogRepository:
    """One ``sync_run_logs`` row per sync invocation."""

    def __init__(self, db: sqlite_utils.Database) -> None:
        self.db = db
        self.table = db[SYNC_RUN_LOGS]

    def start(self, config_id: int, user_id: str, deletion_enabled: bool) -> int:
        self.table.insert(
            {
                "config_id": config_id,
                "user_id": user_id,
                "status": RunStatus.RUNNING.value,
                "started_at": isoformat_utc(utcnow()),
                "deletion_enabled": deletion_enabled,
            }
        )
        run_id = self.table.last_pk
        logger.debug("Started run log %s for config %s", run_id, config_id)
        return run_id

    def finish(
        self,
        run_id: int,
        result: SyncResult,
        status: RunStatus,
        error_message: str | None = None,
    ) -> None:
        """Write the final counters. Runs exactly once per invocation."""
        self.table.update(
            run_id,
            {
                "status": status.value,
                "completed_at": isoformat_utc(utcnow()),
                "duration_ms": int(result.duration * 1000),
                "emails_found": result.emails_found,
                "emails_fetched": result.emails_fetched,
                "new_emails": result.new_emails,
                "duplicates_skipped": result.duplicates_skipped,
                "attachments_found": result.attachments_found,
                "reports_processed": result.reports_processed,
                "reports_skipped": result.reports_skipped,
                "emails_deleted": result.emails_deleted,
                "deletion_enabled": result.deletion_enabled,
                "deletion_errors": result.deletion_errors,
                "errors_count": len(result.errors),
                "error_message": error_message,
                "error_details": json.dumps(result.errors),
                "deleted_emails_metadata": json.dumps(
                    [entry.as_dict() for entry in result.deleted_emails]
                ),
                "attempts": result.attempts,
            },
        )

    def get(self, run_id: int) -> Optional[SyncRunLog]:
        rows = list(self.table.rows_where("id = ?", [run_id]))
        return self._to_run_log(rows[0]) if rows else None

    def history(self, config_id: int, limit: int = 20) -> list[SyncRunLog]:
        rows = self.table.rows_where(
            "config_id = ?", [config_id], order_by="started_at desc, id desc", limit=limit
        )
        return [self._to_run_log(row) for row in rows]

    def count_for_config(self, config_id: int) -> int:
        return self.table.count_where("config_id = ?", [config_id])

    @staticmethod
    def _to_run_log(row: dict[str, Any]) -> SyncRunLog:
        return SyncRunLog(
            id=row["id"],
            config_id=row["config_id"],
            user_id=row["user_id"],
            status=RunStatus(row["status"]),
            started_at=parse_iso_datetime(row["started_at"]),
            completed_at=parse_iso_datetime(row["completed_at"]) if row.get("completed_at") else None,
            duration_ms=row.get("duration_ms"),
            emails_found=row.get("emails_found") or 0,
            emails_fetched=row.get("emails_fetched") or 0,
            attachments_found=row.get("attachments_found") or 0,
            reports_processed=row.get("reports_processed") or 0,
            reports_skipped=row.get("reports_skipped") or 0,
            emails_deleted=row.get("emails_deleted") or 0,
            deletion_enabled=bool(row.get("deletion_enabled")),
            deletion_errors=row.get("deletion_errors") or 0,
            errors_count=row.get("errors_count") or 0,
            error_message=row.get("error_message"),
            error_details=json.loads(row["error_details"]) if row.get("error_details") else [],
            deleted_emails_metadata=(
                json.loads(row["deleted_emails_metadata"])
                if row.get("deleted_emails_metadata")
                else []
            ),
            attempts=row.get("attempts") or 0,
        )


class DeletionAuditLog:
    """Append-only record of confirmed mailbox deletions."""

    def __init__(self, db: sqlite_utils.Database) -> None:
        self.table = db[DELETION_AUDIT]

    def record(
        self,
        entry: DeletionAuditEntry,
        *,
        config_id: int,
        user_id: str,
        run_log_id: int | None = None,
    ) -> None:
        self.table.insert(
            {
                "config_id": config_id,
                "user_id": user_id,
                "run_log_id": run_log_id,
                "message_id": entry.message_id,
                "thread_id": entry.thread_id,
                "subject": entry.subject,
                "sender": entry.sender,
                "received_date": isoformat_utc(entry.received_date) if entry.received_date else None,
                "deleted_at": isoformat_utc(entry.deleted_at),
                "attachment_filenames": json.dumps(entry.attachment_filenames),
                "reports_imported": entry.reports_imported,
            }
        )

    def entries_for_config(self, config_id: int) -> list[dict[str, Any]]:
        return list(self.table.rows_where("config_id = ?", [config_id], order_by="id"))
