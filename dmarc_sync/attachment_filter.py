"""Heuristics that decide whether a message or attachment looks like a DMARC report."""

from __future__ import annotations

import logging
import re
from typing import Iterable

logger = logging.getLogger(__name__)

DMARC_EXTENSIONS = (".xml", ".zip", ".gz", ".gzip")
FILENAME_KEYWORDS = ("dmarc", "report")

# receiver!policy-domain!begin!end[!id].xml[.gz], used by most large mailbox providers
VENDOR_FILENAME = re.compile(r"^[\w.-]+![\w.-]+!\d+!\d+(![\w.-]+)?\.xml", re.IGNORECASE)

SUBJECT_KEYWORDS = ("dmarc", "report domain", "aggregate report")
KNOWN_REPORT_SENDERS = (
    "noreply-dmarc-support@google.com",
    "postmaster@yahoo.com",
    "dmarc-report@microsoft.com",
    "dmarcreport@microsoft.com",
)


class DmarcAttachmentFilter:
    """Permissive filename and message heuristics; the XML parser is the real filter."""

    def __init__(
        self,
        subject_keywords: Iterable[str] = SUBJECT_KEYWORDS,
        known_senders: Iterable[str] = KNOWN_REPORT_SENDERS,
    ) -> None:
        self.subject_keywords = [kw.lower() for kw in subject_keywords]
        self.known_senders = {sender.lower() for sender in known_senders}

    def is_dmarc_attachment(self, filename: str | None) -> bool:
        name = (filename or "").strip()
        if not name:
            return False
        lowered = name.lower()
        if any(keyword in lowered for keyword in FILENAME_KEYWORDS):
            logger.debug("Attachment '%s' matched DMARC keyword", name)
            return True
        if lowered.endswith(DMARC_EXTENSIONS):
            logger.debug("Attachment '%s' matched DMARC extension", name)
            return True
        if VENDOR_FILENAME.match(name):
            logger.debug("Attachment '%s' matched vendor report filename", name)
            return True
        logger.debug("Attachment '%s' did not match DMARC heuristics", name)
        return False

    def looks_like_report_message(self, subject: str | None, sender_email: str | None) -> bool:
        sender = (sender_email or "").lower()
        if sender and sender in self.known_senders:
            logger.debug("Sender %s is a known DMARC reporter", sender)
            return True
        lowered = (subject or "").lower()
        if any(keyword in lowered for keyword in self.subject_keywords):
            logger.debug("Subject '%s' matched DMARC keyword", subject)
            return True
        return False


default_filter = DmarcAttachmentFilter()
