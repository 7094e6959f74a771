"""Dataclasses and enums passed between the sync components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Provider(str, Enum):
    GMAIL = "gmail"
    MICROSOFT = "microsoft"


class SyncStatus(str, Enum):
    """Status column of a sync configuration."""

    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncPhase(str, Enum):
    """Phases reported through the progress callback, in run order."""

    INITIALIZING = "initializing"
    SEARCHING = "searching"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    DELETING = "deleting"
    COMPLETED = "completed"
    ERROR = "error"


class AttachmentOutcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


class TrackingStatus(str, Enum):
    """Per-message status persisted in the message ledger."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SyncConfig:
    """One mailbox connection for one user. Token columns are not exposed here."""

    id: int
    user_id: str
    provider: Provider
    email_address: str
    is_active: bool = True
    delete_after_import: bool = False
    sync_unread_only: bool = False
    incremental_sync_enabled: bool = False
    last_sync_at: Optional[datetime] = None
    last_sync_cursor: Optional[datetime] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    last_error_message: Optional[str] = None
    scopes: list[str] = field(default_factory=list)
    account_id: Optional[str] = None


@dataclass
class Credentials:
    """Decrypted OAuth material for one config."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    email: str
    provider: Provider
    account_id: Optional[str] = None
    scopes: list[str] = field(default_factory=list)

    def __repr__(self) -> str:
        return (
            f"Credentials(provider={self.provider.value!r}, email={self.email!r}, "
            f"expires_at={self.expires_at!r}, has_refresh_token={bool(self.refresh_token)})"
        )


@dataclass
class SearchOptions:
    unread_only: bool = False
    max_results: int = 100
    after_date: Optional[datetime] = None
    before_date: Optional[datetime] = None


@dataclass
class CanonicalMessage:
    """Provider-agnostic mailbox message; ``native`` keeps the provider record."""

    id: str
    thread_id: Optional[str]
    subject: str
    snippet: str
    received_date: Optional[datetime]
    sender_email: str
    sender_name: Optional[str]
    has_attachments: bool
    provider: Provider
    native: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def sender(self) -> str:
        if self.sender_name and self.sender_email:
            return f"{self.sender_name} <{self.sender_email}>"
        return self.sender_email or self.sender_name or ""


@dataclass
class CanonicalAttachment:
    """One extracted attachment with a base64 payload.

    ``error`` is set instead of ``data`` when the download failed, so the
    owning message can never be treated as fully processed.
    """

    filename: str
    data: Optional[str]
    message_id: str
    received_date: Optional[datetime]
    provider: Provider
    size: int = 0
    error: Optional[str] = None


@dataclass
class SearchResult:
    messages: list[CanonicalMessage]
    next_page_token: Optional[str]
    total_estimate: int
    query: str
    # Messages the provider listed but could not fetch.
    errors: list[str] = field(default_factory=list)


@dataclass
class DeleteResult:
    success: bool
    deleted: bool
    error: Optional[str] = None


@dataclass
class ProcessingRecord:
    """In-memory outcome for one message during a single run."""

    message_id: str
    thread_id: Optional[str] = None
    subject: str = ""
    sender: str = ""
    received_date: Optional[datetime] = None
    processed: bool = False
    failed: bool = False
    attachment_count: int = 0
    successful_count: int = 0
    reports_imported: int = 0
    reports_skipped: int = 0
    attachment_filenames: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class DeletionAuditEntry:
    message_id: str
    thread_id: Optional[str]
    subject: str
    sender: str
    received_date: Optional[datetime]
    deleted_at: datetime
    attachment_filenames: list[str] = field(default_factory=list)
    reports_imported: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "thread_id": self.thread_id,
            "subject": self.subject,
            "sender": self.sender,
            "received_date": self.received_date.isoformat() if self.received_date else None,
            "deleted_at": self.deleted_at.isoformat(),
            "attachment_filenames": list(self.attachment_filenames),
            "reports_imported": self.reports_imported,
        }


@dataclass
class DeletionSummary:
    total_attempted: int = 0
    total_deleted: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    deleted_emails: list[DeletionAuditEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncProgress:
    phase: SyncPhase
    message: str
    emails_found: int = 0
    reports_processed: int = 0
    reports_skipped: int = 0
    emails_deleted: int = 0
    errors: int = 0
    is_retry: bool = False


@dataclass
class SyncResult:
    """Summary returned for every sync invocation, whatever path it took."""

    success: bool = False
    emails_found: int = 0
    emails_fetched: int = 0
    new_emails: int = 0
    duplicates_skipped: int = 0
    attachments_found: int = 0
    reports_processed: int = 0
    reports_skipped: int = 0
    emails_deleted: int = 0
    deletion_enabled: bool = False
    deletion_errors: int = 0
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0
    attempts: int = 0
    run_log_id: Optional[int] = None
    deleted_emails: list[DeletionAuditEntry] = field(default_factory=list)


@dataclass
class SyncRunLog:
    id: int
    config_id: int
    user_id: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    emails_found: int = 0
    emails_fetched: int = 0
    attachments_found: int = 0
    reports_processed: int = 0
    reports_skipped: int = 0
    emails_deleted: int = 0
    deletion_enabled: bool = False
    deletion_errors: int = 0
    errors_count: int = 0
    error_message: Optional[str] = None
    error_details: list[str] = field(default_factory=list)
    deleted_emails_metadata: list[dict[str, Any]] = field(default_factory=list)
    attempts: int = 0
