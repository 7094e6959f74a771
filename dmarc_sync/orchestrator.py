"""Top-level sync run: credentials, search, ingest, optional deletion, run log."""

from __future__ import annotations

import functools
import logging
import time
import uuid
from datetime import timedelta
from typing import Callable, Optional

from .codec import decompress_attachment
from .config import Settings
from .credentials import CredentialStore
from .crypto import TokenCipher
from .database import open_database
from .deletion import DeletionEngine
from .exceptions import (
    AttachmentDecodeError,
    AuthenticationError,
    CredentialsUnavailableError,
    DmarcSyncError,
    DuplicateReportError,
    UnauthorizedError,
)
from .facade import ProviderFacade
from .ledger import MessageLedger
from .models import (
    AttachmentOutcome,
    CanonicalAttachment,
    CanonicalMessage,
    Credentials,
    RunStatus,
    SearchOptions,
    SyncConfig,
    SyncPhase,
    SyncProgress,
    SyncResult,
    SyncRunLog,
    SyncStatus,
)
from .oauth import default_token_clients
from .providers import default_adapter_factories
from .reports import ReportData, ReportStore, parse_dmarc_xml
from .run_log import DeletionAuditLog, RunLogRepository
from .sync_configs import SyncConfigRepository
from .tracker import ProcessingTracker

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], None]

EXPIRED_MESSAGE = "Authentication expired. Please reconnect your account."
CORRUPTED_MESSAGE = "Authentication corrupted. Please reconnect your account."
LEASE_HELD_MESSAGE = "A sync is already running for this configuration."
MODIFY_SCOPE_MESSAGE = (
    "Email deletion requires mailbox modify permission; run upgrade-scope for this configuration."
)


class SyncOrchestrator:
    """Runs one sync per call. Construct one per worker; it holds no per-run state."""

    MAX_AUTH_RETRIES = 1

    def __init__(
        self,
        *,
        configs: SyncConfigRepository,
        credentials: CredentialStore,
        facade: ProviderFacade,
        ledger: MessageLedger,
        report_store: ReportStore,
        run_logs: RunLogRepository,
        deletion: DeletionEngine,
        parser: Callable[[str], ReportData] = parse_dmarc_xml,
        max_results: int = 100,
        attachment_delay: float = 0.1,
        lease_seconds: int = 1800,
        message_tracking: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.configs = configs
        self.credentials = credentials
        self.facade = facade
        self.ledger = ledger
        self.report_store = report_store
        self.run_logs = run_logs
        self.deletion = deletion
        self.parser = parser
        self.max_results = max_results
        self.attachment_delay = attachment_delay
        self.lease_seconds = lease_seconds
        self.message_tracking = message_tracking
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncOrchestrator":
        db = open_database(settings.database_path)
        facade = ProviderFacade(default_adapter_factories(settings))
        return cls(
            configs=SyncConfigRepository(db),
            credentials=CredentialStore(
                db, TokenCipher(settings.token_encryption_key), default_token_clients(settings), settings
            ),
            facade=facade,
            ledger=MessageLedger(db),
            report_store=ReportStore(db),
            run_logs=RunLogRepository(db),
            deletion=DeletionEngine(facade, DeletionAuditLog(db), delay_seconds=settings.deletion_delay_seconds),
            max_results=settings.search_max_results,
            attachment_delay=settings.attachment_delay_seconds,
            lease_seconds=settings.sync_lease_seconds,
            message_tracking=settings.message_tracking_enabled,
        )

    def sync(self, config_id: int, user_id: str, progress: ProgressCallback | None = None) -> SyncResult:
        """Run a full sync for one config. Always returns a summary, never raises."""
        started = time.monotonic()
        config = self.configs.get(config_id, user_id)
        if config is None:
            return self._failure(f"Sync configuration {config_id} not found", started)

        owner = uuid.uuid4().hex
        if not self.configs.acquire_lease(config_id, owner, self.lease_seconds):
            return self._failure(LEASE_HELD_MESSAGE, started)

        result: Optional[SyncResult] = None
        run_id: Optional[int] = None
        error_message: Optional[str] = None
        try:
            self.configs.update_sync_status(config_id, SyncStatus.SYNCING)
            run_id = self.run_logs.start(config_id, user_id, deletion_enabled=config.delete_after_import)
            result = self._run_with_retry(config, run_id, progress)
        except Exception as exc:
            error_message = self._user_message(exc)
            logger.exception("Sync for config %s failed: %s", config_id, error_message)
            result = SyncResult(
                success=False,
                errors=[error_message],
                deletion_enabled=config.delete_after_import,
            )
            self._emit(progress, SyncPhase.ERROR, error_message, result)
        finally:
            if result is None:
                error_message = "Sync interrupted"
                result = SyncResult(success=False, errors=[error_message])
            result.duration = time.monotonic() - started
            result.run_log_id = run_id
            self._finalize(config_id, run_id, owner, result, error_message)
        return result

    def sync_all(self, user_id: str, progress: ProgressCallback | None = None) -> dict[int, SyncResult]:
        results: dict[int, SyncResult] = {}
        for config in self.configs.list_for_user(user_id, active_only=True):
            logger.info("Syncing %s (%s)", config.email_address, config.provider.value)
            results[config.id] = self.sync(config.id, user_id, progress)
        return results

    def test_connection(self, config_id: int, user_id: str) -> tuple[bool, str]:
        """Check credentials and a single search page without touching state."""
        credentials = self.credentials.get_credentials(config_id, user_id)
        if credentials is None:
            return False, EXPIRED_MESSAGE
        try:
            address = self.facade.mailbox_address(credentials)
            found = self.facade.search(credentials, SearchOptions(max_results=1))
        except DmarcSyncError as exc:
            return False, str(exc)
        if address and address.lower() != credentials.email.lower():
            logger.warning("Config %s is connected to %s, expected %s", config_id, address, credentials.email)
        return True, f"Connected to {address or credentials.email}; search estimate {found.total_estimate}"

    def sync_history(self, config_id: int, user_id: str, limit: int = 20) -> list[SyncRunLog]:
        if self.configs.get(config_id, user_id) is None:
            return []
        return self.run_logs.history(config_id, limit=limit)

    def update_deletion_preference(self, config_id: int, user_id: str, enabled: bool) -> bool:
        """Store the delete-after-import flag; True when upgrade-scope must run first."""
        config = self.configs.set_options(config_id, user_id, delete_after_import=enabled)
        if not enabled:
            return False
        return not self.credentials.settings.grants_modify(config.provider, config.scopes)

    def _run_with_retry(
        self, config: SyncConfig, run_id: int, progress: ProgressCallback | None
    ) -> SyncResult:
        attempt = 0
        while True:
            try:
                result = self._run_once(config, run_id, progress, is_retry=attempt > 0)
                result.attempts = attempt + 1
                return result
            except UnauthorizedError as exc:
                if attempt >= self.MAX_AUTH_RETRIES:
                    logger.error("Config %s still unauthorized after token refresh", config.id)
                    raise AuthenticationError(EXPIRED_MESSAGE, reason="expired") from exc
                logger.warning("Provider returned 401 for config %s; refreshing token and retrying", config.id)
                if self.credentials.refresh_token_for_config(config.id, config.user_id) is None:
                    raise AuthenticationError(EXPIRED_MESSAGE, reason="expired") from exc
                attempt += 1

    def _run_once(
        self,
        config: SyncConfig,
        run_id: int,
        progress: ProgressCallback | None,
        is_retry: bool,
    ) -> SyncResult:
        result = SyncResult(deletion_enabled=config.delete_after_import)
        emit = functools.partial(self._emit, progress, result=result, is_retry=is_retry)

        emit(SyncPhase.INITIALIZING, "Loading credentials")
        credentials = self._require_credentials(config)

        emit(SyncPhase.SEARCHING, f"Searching {config.email_address} for DMARC reports")
        options = SearchOptions(
            unread_only=config.sync_unread_only,
            max_results=self.max_results,
            after_date=self._after_date(config),
        )
        found = self.facade.search_all(credentials, options)
        messages = found.messages
        result.emails_found = len(messages)
        result.errors.extend(found.errors)
        if not messages:
            result.success = True
            emit(SyncPhase.COMPLETED, "No DMARC report emails found")
            return result

        new_messages = messages
        if self.message_tracking:
            new_messages, duplicates = self.ledger.filter_new(config.user_id, config.id, messages)
            result.duplicates_skipped = len(duplicates)
        result.new_emails = len(new_messages)

        if new_messages:
            tracker = self._ingest(config, credentials, new_messages, result, emit)
            if config.delete_after_import:
                self._delete(config, credentials, tracker, run_id, result, emit)
        else:
            logger.info("All %s messages for config %s were already processed", len(messages), config.id)

        if found.errors:
            # Messages that could not be fetched may be older than the ones that were.
            logger.warning(
                "Keeping the sync cursor for config %s; %s message(s) could not be fetched",
                config.id,
                len(found.errors),
            )
        else:
            self._advance_cursor(config, messages)
        result.success = True
        emit(
            SyncPhase.COMPLETED,
            f"Processed {result.reports_processed} report(s), skipped {result.reports_skipped}",
        )
        return result

    def _require_credentials(self, config: SyncConfig) -> Credentials:
        credentials = self.credentials.get_credentials(config.id, config.user_id)
        if credentials is not None:
            return credentials
        if self.configs.get(config.id, config.user_id) is None:
            # The store removes configs whose tokens cannot be decrypted.
            raise AuthenticationError(CORRUPTED_MESSAGE, reason="corrupted")
        raise CredentialsUnavailableError(EXPIRED_MESSAGE, reason="expired")

    def _ingest(
        self,
        config: SyncConfig,
        credentials: Credentials,
        messages: list[CanonicalMessage],
        result: SyncResult,
        emit,
    ) -> ProcessingTracker:
        tracker = ProcessingTracker()
        for message in messages:
            tracker.register_message(message)
            if self.message_tracking:
                self.ledger.mark_processing(config.user_id, config.id, message)

        emit(SyncPhase.DOWNLOADING, f"Downloading attachments from {len(messages)} email(s)")
        attachments = self.facade.extract_attachments(credentials, messages)
        result.emails_fetched = len(messages)
        result.attachments_found = len(attachments)

        emit(SyncPhase.PROCESSING, f"Processing {len(attachments)} attachment(s)")
        for index, attachment in enumerate(attachments):
            if index:
                self.sleep(self.attachment_delay)
            self._process_attachment(config.user_id, attachment, tracker, result)

        if self.message_tracking:
            for record in tracker.records():
                if record.attachment_count == 0:
                    self.ledger.mark_skipped(config.user_id, config.id, record, "No DMARC attachments")
                elif record.processed:
                    self.ledger.mark_completed(config.user_id, config.id, record)
                else:
                    self.ledger.mark_failed(config.user_id, config.id, record, "; ".join(record.errors) or None)
        return tracker

    def _process_attachment(
        self,
        user_id: str,
        attachment: CanonicalAttachment,
        tracker: ProcessingTracker,
        result: SyncResult,
    ) -> AttachmentOutcome:
        tracker.start_attachment(attachment)
        try:
            payloads = decompress_attachment(attachment)
        except AttachmentDecodeError as exc:
            error = f"{attachment.filename}: {exc}"
            logger.warning("Attachment %s of message %s failed: %s", attachment.filename, attachment.message_id, exc)
            result.errors.append(error)
            tracker.record_outcome(attachment.message_id, AttachmentOutcome.FAILED, error=error)
            return AttachmentOutcome.FAILED

        imported = skipped = 0
        errors: list[str] = []
        for xml in payloads:
            try:
                report = self.parser(xml)
                if self.report_store.find_report(user_id, report.report_id, report.org_name) is not None:
                    logger.info("Report %s from %s already stored; skipping", report.report_id, report.org_name)
                    skipped += 1
                    continue
                self.report_store.save_report(report, xml, user_id)
                imported += 1
            except DuplicateReportError:
                skipped += 1
            except UnauthorizedError:
                raise
            except Exception as exc:
                logger.warning("Report in %s could not be imported: %s", attachment.filename, exc)
                errors.append(f"{attachment.filename}: {exc}")

        result.reports_processed += imported
        result.reports_skipped += skipped
        result.errors.extend(errors)
        if errors:
            outcome = AttachmentOutcome.FAILED
        elif imported:
            outcome = AttachmentOutcome.PROCESSED
        else:
            outcome = AttachmentOutcome.SKIPPED
        tracker.record_outcome(
            attachment.message_id,
            outcome,
            reports_imported=imported,
            reports_skipped=skipped,
            error="; ".join(errors) or None,
        )
        return outcome

    def _delete(
        self,
        config: SyncConfig,
        credentials: Credentials,
        tracker: ProcessingTracker,
        run_id: int,
        result: SyncResult,
        emit,
    ) -> None:
        candidates = tracker.deletion_candidates()
        if not candidates:
            logger.info("No fully processed emails to delete for config %s", config.id)
            return
        if not self.credentials.has_modify_scope(credentials):
            logger.warning("Config %s lacks modify scope; skipping deletion of %s emails", config.id, len(candidates))
            result.errors.append(MODIFY_SCOPE_MESSAGE)
            return

        emit(SyncPhase.DELETING, f"Deleting {len(candidates)} processed email(s)")
        summary = self.deletion.delete_processed(
            credentials,
            tracker.records(),
            config_id=config.id,
            user_id=config.user_id,
            run_log_id=run_id,
        )
        result.emails_deleted = summary.total_deleted
        result.deletion_errors = summary.total_errors
        result.deleted_emails = summary.deleted_emails
        result.errors.extend(summary.errors)

    def _advance_cursor(self, config: SyncConfig, messages: list[CanonicalMessage]) -> None:
        received = [m.received_date for m in messages if m.received_date is not None]
        if received:
            self.configs.advance_cursor(config.id, max(received))

    @staticmethod
    def _after_date(config: SyncConfig):
        if config.incremental_sync_enabled and config.last_sync_cursor:
            # One day of overlap; the ledger filters what was already handled.
            return config.last_sync_cursor - timedelta(days=1)
        return None

    def _finalize(
        self,
        config_id: int,
        run_id: Optional[int],
        owner: str,
        result: SyncResult,
        error_message: Optional[str],
    ) -> None:
        try:
            if run_id is not None:
                status = RunStatus.COMPLETED if result.success else RunStatus.FAILED
                self.run_logs.finish(run_id, result, status, error_message)
            if result.success and not result.errors:
                self.configs.update_sync_status(config_id, SyncStatus.COMPLETED)
            else:
                self.configs.update_sync_status(
                    config_id, SyncStatus.ERROR, error_message or "; ".join(result.errors[:3])
                )
        finally:
            self.configs.release_lease(config_id, owner)
        logger.info(
            "Run complete: found=%s new=%s processed=%s skipped=%s deleted=%s errors=%s",
            result.emails_found,
            result.new_emails,
            result.reports_processed,
            result.reports_skipped,
            result.emails_deleted,
            len(result.errors),
        )

    @staticmethod
    def _user_message(exc: Exception) -> str:
        if isinstance(exc, AuthenticationError):
            if exc.reason == "corrupted":
                return CORRUPTED_MESSAGE
            if exc.reason == "expired":
                return EXPIRED_MESSAGE
        return str(exc) or exc.__class__.__name__

    @staticmethod
    def _failure(message: str, started: float) -> SyncResult:
        logger.warning(message)
        return SyncResult(success=False, errors=[message], duration=time.monotonic() - started)

    @staticmethod
    def _emit(
        progress: ProgressCallback | None,
        phase: SyncPhase,
        message: str,
        result: SyncResult,
        is_retry: bool = False,
    ) -> None:
        logger.debug("[%s] %s", phase.value, message)
        if progress is None:
            return
        progress(
            SyncProgress(
                phase=phase,
                message=message,
                emails_found=result.emails_found,
                reports_processed=result.reports_processed,
                reports_skipped=result.reports_skipped,
                emails_deleted=result.emails_deleted,
                errors=len(result.errors),
                is_retry=is_retry,
            )
        )
