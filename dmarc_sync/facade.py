"""Single entry point over all mailbox providers.

The facade is the only module that knows both the provider-native shapes and
the canonical ones; everything downstream works on canonical records.
"""

from __future__ import annotations

import base64
import logging
from email.utils import parseaddr
from typing import Any, Mapping

from google.oauth2.credentials import Credentials as GoogleCredentials

from .exceptions import UnsupportedProviderError
from .models import (
    CanonicalAttachment,
    CanonicalMessage,
    Credentials,
    DeleteResult,
    Provider,
    SearchOptions,
    SearchResult,
)
from .providers import AdapterFactory
from .providers.gmail import GmailAttachment
from .providers.graph import GraphAttachment
from .utils import from_epoch_ms, parse_iso_datetime

logger = logging.getLogger(__name__)


class ProviderFacade:
    """Route calls by provider tag; adapters are built lazily and cached."""

    def __init__(self, factories: Mapping[Provider, AdapterFactory]) -> None:
        self._factories = dict(factories)
        self._adapters: dict[Provider, Any] = {}

    def adapter(self, provider: Provider):
        if provider not in self._adapters:
            factory = self._factories.get(provider)
            if factory is None:
                raise UnsupportedProviderError(f"No adapter registered for provider '{provider}'")
            logger.debug("Creating %s adapter", provider.value)
            self._adapters[provider] = factory()
        return self._adapters[provider]

    def search(
        self, credentials: Credentials, options: SearchOptions, page_token: str | None = None
    ) -> SearchResult:
        adapter = self.adapter(credentials.provider)
        page = adapter.search(self.to_native_credentials(credentials), options, page_token)
        messages = [self.to_canonical_message(raw, credentials.provider) for raw in page.messages]
        if credentials.provider is Provider.GMAIL:
            estimate = page.result_size_estimate
        else:
            estimate = page.total_estimate
        return SearchResult(
            messages=messages,
            next_page_token=page.next_page_token,
            total_estimate=estimate,
            query=page.query,
            errors=list(page.errors),
        )

    def search_all(self, credentials: Credentials, options: SearchOptions) -> SearchResult:
        """Follow page tokens until ``options.max_results`` messages are collected."""
        messages: list[CanonicalMessage] = []
        errors: list[str] = []
        page_token = None
        result = None
        while True:
            result = self.search(credentials, options, page_token)
            messages.extend(result.messages)
            errors.extend(result.errors)
            page_token = result.next_page_token
            if not page_token or len(messages) >= options.max_results:
                break
        return SearchResult(
            messages=messages[: options.max_results],
            next_page_token=page_token,
            total_estimate=max(result.total_estimate, len(messages)),
            query=result.query,
            errors=errors,
        )

    def extract_attachments(
        self, credentials: Credentials, messages: list[CanonicalMessage]
    ) -> list[CanonicalAttachment]:
        if not messages:
            return []
        adapter = self.adapter(credentials.provider)
        natives = adapter.extract_attachments(
            self.to_native_credentials(credentials), [m.native for m in messages]
        )
        return [self.to_canonical_attachment(native, credentials.provider) for native in natives]

    def delete_message(self, credentials: Credentials, message_id: str) -> DeleteResult:
        adapter = self.adapter(credentials.provider)
        return adapter.delete_message(self.to_native_credentials(credentials), message_id)

    def mailbox_address(self, credentials: Credentials) -> str:
        adapter = self.adapter(credentials.provider)
        profile = adapter.get_profile(self.to_native_credentials(credentials))
        if credentials.provider is Provider.GMAIL:
            return profile.get("emailAddress", "")
        return profile.get("mail") or profile.get("userPrincipalName", "")

    @staticmethod
    def to_native_credentials(credentials: Credentials):
        if credentials.provider is Provider.GMAIL:
            # No refresh material: an expired token must surface as a 401, the store refreshes.
            return GoogleCredentials(token=credentials.access_token, scopes=credentials.scopes or None)
        return credentials.access_token

    @staticmethod
    def to_canonical_message(raw: dict[str, Any], provider: Provider) -> CanonicalMessage:
        if provider is Provider.GMAIL:
            payload = raw.get("payload") or {}
            headers = {
                (header.get("name") or "").lower(): header.get("value") or ""
                for header in payload.get("headers") or []
            }
            sender_name, sender_email = parseaddr(headers.get("from", ""))
            return CanonicalMessage(
                id=raw["id"],
                thread_id=raw.get("threadId"),
                subject=headers.get("subject", ""),
                snippet=raw.get("snippet", ""),
                received_date=from_epoch_ms(raw.get("internalDate")),
                sender_email=sender_email,
                sender_name=sender_name or None,
                has_attachments=_gmail_has_attachments(payload),
                provider=provider,
                native=raw,
            )

        sender = (raw.get("from") or raw.get("sender") or {}).get("emailAddress") or {}
        received = raw.get("receivedDateTime")
        return CanonicalMessage(
            id=raw["id"],
            thread_id=raw.get("conversationId"),
            subject=raw.get("subject") or "",
            snippet=raw.get("bodyPreview") or "",
            received_date=parse_iso_datetime(received) if received else None,
            sender_email=sender.get("address", ""),
            sender_name=sender.get("name"),
            has_attachments=bool(raw.get("hasAttachments")),
            provider=provider,
            native=raw,
        )

    @staticmethod
    def to_canonical_attachment(native, provider: Provider) -> CanonicalAttachment:
        if isinstance(native, GmailAttachment):
            return CanonicalAttachment(
                filename=native.filename,
                data=native.data,
                message_id=native.message_id,
                received_date=from_epoch_ms(native.internal_date),
                provider=provider,
                size=native.size,
                error=native.error,
            )
        if isinstance(native, GraphAttachment):
            data = None
            if native.content is not None:
                data = base64.b64encode(native.content).decode("ascii")
            received = native.received_date_time
            return CanonicalAttachment(
                filename=native.name,
                data=data,
                message_id=native.message_id,
                received_date=parse_iso_datetime(received) if received else None,
                provider=provider,
                size=native.size,
                error=native.error,
            )
        raise TypeError(f"Unknown attachment type {type(native).__name__}")


def _gmail_has_attachments(part: dict[str, Any]) -> bool:
    if part.get("filename") and (part.get("body") or {}).get("attachmentId"):
        return True
    return any(_gmail_has_attachments(child) for child in part.get("parts") or [])
