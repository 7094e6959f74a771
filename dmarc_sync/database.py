"""SQLite datastore shared by the sync pipeline."""

from __future__ import annotations

from pathlib import Path

import sqlite_utils

SYNC_CONFIGS = "sync_configs"
SYNC_RUN_LOGS = "sync_run_logs"
MESSAGE_TRACKING = "email_message_tracking"
DELETION_AUDIT = "email_deletion_audit"
DMARC_REPORTS = "dmarc_reports"
DMARC_RECORDS = "dmarc_records"


def open_database(db_path: Path | str) -> sqlite_utils.Database:
    """Open (and create if needed) the datastore with every pipeline table."""
    if str(db_path) != ":memory:":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        db = sqlite_utils.Database(str(path))
    else:
        db = sqlite_utils.Database(memory=True)
    ensure_schema(db)
    return db


def ensure_schema(db: sqlite_utils.Database) -> None:
    db[SYNC_CONFIGS].create(
        {
            "id": int,
            "user_id": str,
            "provider": str,
            "email_address": str,
            "account_id": str,
            "access_token": str,
            "refresh_token": str,
            "expires_at": str,
            "scopes": str,
            "is_active": bool,
            "delete_after_import": bool,
            "sync_unread_only": bool,
            "incremental_sync_enabled": bool,
            "last_sync_at": str,
            "last_sync_cursor": str,
            "sync_status": str,
            "last_error_message": str,
            "lease_owner": str,
            "lease_expires_at": float,
            "created_at": str,
            "updated_at": str,
        },
        pk="id",
        not_null={"user_id", "provider", "email_address"},
        defaults={
            "is_active": 1,
            "delete_after_import": 0,
            "sync_unread_only": 0,
            "incremental_sync_enabled": 0,
            "sync_status": "idle",
        },
        if_not_exists=True,
    )
    db[SYNC_CONFIGS].create_index(
        ["user_id", "provider", "email_address"], unique=True, if_not_exists=True
    )

    db[SYNC_RUN_LOGS].create(
        {
            "id": int,
            "config_id": int,
            "user_id": str,
            "status": str,
            "started_at": str,
            "completed_at": str,
            "duration_ms": int,
            "emails_found": int,
            "emails_fetched": int,
            "new_emails": int,
            "duplicates_skipped": int,
            "attachments_found": int,
            "reports_processed": int,
            "reports_skipped": int,
            "emails_deleted": int,
            "deletion_enabled": bool,
            "deletion_errors": int,
            "errors_count": int,
            "error_message": str,
            "error_details": str,
            "deleted_emails_metadata": str,
            "attempts": int,
        },
        pk="id",
        if_not_exists=True,
    )
    db[SYNC_RUN_LOGS].create_index(["config_id", "started_at"], if_not_exists=True)

    db[MESSAGE_TRACKING].create(
        {
            "user_id": str,
            "config_id": int,
            "message_id": str,
            "thread_id": str,
            "subject_hash": str,
            "sender": str,
            "received_date": str,
            "attachment_count": int,
            "reports_found": int,
            "reports_processed": int,
            "reports_skipped": int,
            "status": str,
            "error_message": str,
            "first_seen_at": str,
            "processed_at": str,
            "updated_at": str,
        },
        pk=("user_id", "config_id", "message_id"),
        if_not_exists=True,
    )

    db[DELETION_AUDIT].create(
        {
            "id": int,
            "config_id": int,
            "user_id": str,
            "run_log_id": int,
            "message_id": str,
            "thread_id": str,
            "subject": str,
            "sender": str,
            "received_date": str,
            "deleted_at": str,
            "attachment_filenames": str,
            "reports_imported": int,
        },
        pk="id",
        if_not_exists=True,
    )

    db[DMARC_REPORTS].create(
        {
            "id": int,
            "user_id": str,
            "report_id": str,
            "org_name": str,
            "email": str,
            "domain": str,
            "date_begin": int,
            "date_end": int,
            "policy": str,
            "record_count": int,
            "total_messages": int,
            "raw_xml": str,
            "created_at": str,
        },
        pk="id",
        if_not_exists=True,
    )
    db[DMARC_REPORTS].create_index(
        ["user_id", "report_id", "org_name"], unique=True, if_not_exists=True
    )

    db[DMARC_RECORDS].create(
        {
            "id": int,
            "report_pk": int,
            "source_ip": str,
            "count": int,
            "disposition": str,
            "dkim": str,
            "spf": str,
            "header_from": str,
        },
        pk="id",
        foreign_keys=[("report_pk", DMARC_REPORTS, "id")],
        if_not_exists=True,
    )
