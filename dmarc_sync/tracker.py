"""Per-run processing state for messages and their attachments."""

from __future__ import annotations

import logging
from typing import Optional

from .models import AttachmentOutcome, CanonicalAttachment, CanonicalMessage, ProcessingRecord

logger = logging.getLogger(__name__)


class ProcessingTracker:
    """Aggregate attachment outcomes into one record per message.

    A message is processed only when every one of its attachments ended as
    processed or skipped. One failure keeps it unprocessed for the rest of
    the run.
    """

    def __init__(self) -> None:
        self._records: dict[str, ProcessingRecord] = {}

    def register_message(self, message: CanonicalMessage) -> ProcessingRecord:
        record = self._records.get(message.id)
        if record is None:
            record = ProcessingRecord(
                message_id=message.id,
                thread_id=message.thread_id,
                subject=message.subject,
                sender=message.sender,
                received_date=message.received_date,
            )
            self._records[message.id] = record
        return record

    def start_attachment(self, attachment: CanonicalAttachment) -> ProcessingRecord:
        record = self._records.get(attachment.message_id)
        if record is None:
            record = ProcessingRecord(
                message_id=attachment.message_id, received_date=attachment.received_date
            )
            self._records[attachment.message_id] = record
        record.attachment_count += 1
        record.attachment_filenames.append(attachment.filename)
        record.processed = False
        return record

    def record_outcome(
        self,
        message_id: str,
        outcome: AttachmentOutcome,
        reports_imported: int = 0,
        reports_skipped: int = 0,
        error: str | None = None,
    ) -> ProcessingRecord:
        record = self._records[message_id]
        record.reports_imported += reports_imported
        record.reports_skipped += reports_skipped
        if outcome is AttachmentOutcome.FAILED:
            record.failed = True
            if error:
                record.errors.append(error)
        else:
            record.successful_count += 1
        record.processed = (
            not record.failed
            and record.attachment_count > 0
            and record.successful_count == record.attachment_count
        )
        logger.debug(
            "Message %s: %s/%s attachments handled, processed=%s",
            message_id,
            record.successful_count,
            record.attachment_count,
            record.processed,
        )
        return record

    def get(self, message_id: str) -> Optional[ProcessingRecord]:
        return self._records.get(message_id)

    def records(self) -> list[ProcessingRecord]:
        return list(self._records.values())

    def deletion_candidates(self) -> list[ProcessingRecord]:
        return [record for record in self._records.values() if record.processed]
