"""Sequential, rate-limited deletion of fully processed source emails."""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Callable, Iterable

from .facade import ProviderFacade
from .models import Credentials, DeletionAuditEntry, DeletionSummary, ProcessingRecord
from .run_log import DeletionAuditLog
from .utils import utcnow

logger = logging.getLogger(__name__)


class DeletionEngine:
    def __init__(
        self,
        facade: ProviderFacade,
        audit_log: DeletionAuditLog,
        delay_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.facade = facade
        self.audit_log = audit_log
        self.delay_seconds = delay_seconds
        self.sleep = sleep

    def delete_processed(
        self,
        credentials: Credentials,
        records: Iterable[ProcessingRecord],
        *,
        config_id: int,
        user_id: str,
        run_log_id: int | None = None,
    ) -> DeletionSummary:
        """Delete every processed message, one at a time; unprocessed ones are skipped."""
        summary = DeletionSummary()
        attempted = 0
        for record in records:
            if not record.processed:
                summary.total_skipped += 1
                continue
            if attempted:
                self.sleep(self.delay_seconds)
            attempted += 1
            summary.total_attempted += 1

            result = self.facade.delete_message(credentials, record.message_id)
            if not (result.success and result.deleted):
                summary.total_errors += 1
                message = f"Failed to delete message {record.message_id}: {result.error or 'unknown error'}"
                summary.errors.append(message)
                logger.warning(message)
                continue

            entry = DeletionAuditEntry(
                message_id=record.message_id,
                thread_id=record.thread_id,
                subject=record.subject,
                sender=record.sender,
                received_date=record.received_date,
                deleted_at=utcnow(),
                attachment_filenames=list(record.attachment_filenames),
                reports_imported=record.reports_imported,
            )
            try:
                self.audit_log.record(entry, config_id=config_id, user_id=user_id, run_log_id=run_log_id)
            except sqlite3.Error as exc:
                message = f"Deleted message {record.message_id} but could not write its audit entry: {exc}"
                summary.errors.append(message)
                logger.error(message)
            summary.deleted_emails.append(entry)
            summary.total_deleted += 1

        logger.info(
            "Deletion complete: attempted=%s deleted=%s skipped=%s errors=%s",
            summary.total_attempted,
            summary.total_deleted,
            summary.total_skipped,
            summary.total_errors,
        )
        return summary
