"""Shared fixtures: temporary datastore, settings and a scripted mailbox."""

import base64
import io
import zipfile
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest
from cryptography.fernet import Fernet

from dmarc_sync.config import GOOGLE_MODIFY_SCOPE, Settings
from dmarc_sync.credentials import CredentialStore
from dmarc_sync.crypto import TokenCipher
from dmarc_sync.database import open_database
from dmarc_sync.deletion import DeletionEngine
from dmarc_sync.exceptions import TokenRefreshError, UnauthorizedError
from dmarc_sync.ledger import MessageLedger
from dmarc_sync.models import (
    CanonicalAttachment,
    CanonicalMessage,
    Credentials,
    DeleteResult,
    Provider,
    SearchResult,
)
from dmarc_sync.oauth import TokenGrant
from dmarc_sync.orchestrator import SyncOrchestrator
from dmarc_sync.reports import ReportStore
from dmarc_sync.run_log import DeletionAuditLog, RunLogRepository
from dmarc_sync.sync_configs import SyncConfigRepository

USER = "user-1"
MAILBOX = "dmarc@example.com"


def report_xml(report_id, org_name, domain="example.com", source_ip="192.0.2.1", count=3):
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>{org_name}</org_name>
    <email>noreply@{org_name.lower()}.test</email>
    <report_id>{report_id}</report_id>
    <date_range><begin>1700000000</begin><end>1700086400</end></date_range>
  </report_metadata>
  <policy_published>
    <domain>{domain}</domain>
    <p>none</p>
    <pct>100</pct>
  </policy_published>
  <record>
    <row>
      <source_ip>{source_ip}</source_ip>
      <count>{count}</count>
      <policy_evaluated><disposition>none</disposition><dkim>pass</dkim><spf>pass</spf></policy_evaluated>
    </row>
    <identifiers><header_from>{domain}</header_from></identifiers>
  </record>
</feedback>
"""


def urlsafe_b64(data: bytes) -> str:
    """Encode the way Gmail does: URL-safe alphabet, padding stripped."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def zip_bytes(entries: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def make_message(message_id, received=None, subject="Report Domain: example.com"):
    return CanonicalMessage(
        id=message_id,
        thread_id=f"thread-{message_id}",
        subject=subject,
        snippet="",
        received_date=received or datetime(2024, 1, 1, tzinfo=UTC),
        sender_email="noreply-dmarc-support@google.com",
        sender_name="Google",
        has_attachments=True,
        provider=Provider.GMAIL,
        native={"id": message_id},
    )


def make_attachment(message_id, filename, content: bytes):
    return CanonicalAttachment(
        filename=filename,
        data=urlsafe_b64(content),
        message_id=message_id,
        received_date=datetime(2024, 1, 1, tzinfo=UTC),
        provider=Provider.GMAIL,
        size=len(content),
    )


class FakeMailbox:
    """Stands in for the provider facade with canned messages and attachments."""

    def __init__(self, messages=(), attachments=None, unauthorized=False, failing_deletes=(), search_errors=()):
        self.messages = list(messages)
        self.search_errors = list(search_errors)
        self.attachments = attachments or {}
        self.unauthorized = unauthorized
        self.failing_deletes = set(failing_deletes)
        self.search_calls = []
        self.deleted = []
        self.tokens_seen = []

    def search_all(self, credentials, options):
        self.search_calls.append(options)
        self.tokens_seen.append(credentials.access_token)
        if self.unauthorized:
            raise UnauthorizedError("401 from provider")
        return SearchResult(
            messages=list(self.messages),
            next_page_token=None,
            total_estimate=len(self.messages),
            query="fake",
            errors=list(self.search_errors),
        )

    search = search_all

    def extract_attachments(self, credentials, messages):
        found = []
        for message in messages:
            found.extend(self.attachments.get(message.id, []))
        return found

    def mailbox_address(self, credentials):
        if self.unauthorized:
            raise UnauthorizedError("401 from provider")
        return credentials.email

    def delete_message(self, credentials, message_id):
        if message_id in self.failing_deletes:
            return DeleteResult(success=False, deleted=False, error="HTTP 500")
        self.deleted.append(message_id)
        return DeleteResult(success=True, deleted=True)


class FakeTokenClient:
    def __init__(self, fail=False, new_refresh_token=None, email=MAILBOX):
        self.fail = fail
        self.new_refresh_token = new_refresh_token
        self.email = email
        self.refresh_calls = []
        self.authorize_calls = []

    def refresh(self, refresh_token, scopes):
        self.refresh_calls.append(refresh_token)
        if self.fail:
            raise TokenRefreshError("invalid_grant", reason="expired")
        return TokenGrant(
            access_token=f"fresh-token-{len(self.refresh_calls)}",
            refresh_token=self.new_refresh_token,
            expires_at=datetime.now(tz=UTC) + timedelta(hours=1),
            scopes=list(scopes),
        )

    def authorize(self, scopes, login_hint=None):
        self.authorize_calls.append((list(scopes), login_hint))
        return TokenGrant(
            access_token="authorized-token",
            refresh_token="authorized-refresh",
            expires_at=datetime.now(tz=UTC) + timedelta(hours=1),
            scopes=list(scopes),
            email=self.email,
            account_id="acct-1",
        )


@pytest.fixture
def encryption_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def settings(encryption_key, tmp_path):
    return Settings(
        _env_file=None,
        TOKEN_ENCRYPTION_KEY=encryption_key,
        DMARC_SYNC_DB=str(tmp_path / "dmarc.db"),
        GOOGLE_CLIENT_ID="google-client",
        GOOGLE_CLIENT_SECRET="google-secret",
        GRAPH_CLIENT_ID="graph-client",
    )


@pytest.fixture
def db(tmp_path):
    return open_database(tmp_path / "dmarc.db")


@pytest.fixture
def cipher(encryption_key):
    return TokenCipher(encryption_key)


@pytest.fixture
def token_client():
    return FakeTokenClient()


@pytest.fixture
def store(db, cipher, token_client, settings):
    return CredentialStore(
        db,
        cipher,
        {Provider.GMAIL: token_client, Provider.MICROSOFT: token_client},
        settings,
    )


def gmail_credentials(scopes=(GOOGLE_MODIFY_SCOPE,), expires_in=timedelta(hours=1), refresh_token="refresh-1"):
    return Credentials(
        access_token="access-1",
        refresh_token=refresh_token,
        expires_at=datetime.now(tz=UTC) + expires_in,
        email=MAILBOX,
        provider=Provider.GMAIL,
        scopes=list(scopes),
    )


@pytest.fixture
def pipeline(db, store):
    """Build an orchestrator over a FakeMailbox with a stored Gmail config."""

    def build(
        mailbox,
        *,
        delete_after_import=False,
        tracking=True,
        scopes=(GOOGLE_MODIFY_SCOPE,),
        parser=None,
    ):
        configs = SyncConfigRepository(db)
        config_id = store.save_credentials(gmail_credentials(scopes=scopes), USER)
        configs.set_options(config_id, USER, delete_after_import=delete_after_import)
        sleeps = []
        run_logs = RunLogRepository(db)
        audit = DeletionAuditLog(db)
        reports = ReportStore(db)
        kwargs = {}
        if parser is not None:
            kwargs["parser"] = parser
        orchestrator = SyncOrchestrator(
            configs=configs,
            credentials=store,
            facade=mailbox,
            ledger=MessageLedger(db),
            report_store=reports,
            run_logs=run_logs,
            deletion=DeletionEngine(mailbox, audit, delay_seconds=0.5, sleep=sleeps.append),
            message_tracking=tracking,
            sleep=sleeps.append,
            **kwargs,
        )
        return SimpleNamespace(
            orchestrator=orchestrator,
            config_id=config_id,
            configs=configs,
            run_logs=run_logs,
            audit=audit,
            reports=reports,
            sleeps=sleeps,
            mailbox=mailbox,
        )

    return build

