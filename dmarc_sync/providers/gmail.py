"""Gmail API adapter: DMARC search, attachment download and trash."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials as GoogleCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..attachment_filter import DmarcAttachmentFilter, default_filter
from ..exceptions import ProviderError, RateLimitError, UnauthorizedError
from ..models import DeleteResult, SearchOptions

logger = logging.getLogger(__name__)

DMARC_QUERY = (
    "has:attachment (filename:xml OR filename:zip OR filename:gz) "
    '(subject:DMARC OR subject:"Report Domain" OR subject:"dmarc report" '
    "OR from:noreply-dmarc-support@google.com OR from:postmaster@yahoo.com "
    "OR from:dmarc-report@microsoft.com)"
)


@dataclass
class GmailSearchPage:
    messages: list[dict[str, Any]]
    next_page_token: Optional[str]
    result_size_estimate: int
    query: str
    errors: list[str] = field(default_factory=list)


@dataclass
class GmailAttachment:
    """Attachment as Gmail hands it out: URL-safe base64 in ``data``."""

    message_id: str
    filename: str
    mime_type: str
    size: int
    internal_date: Optional[str]
    data: Optional[str] = None
    error: Optional[str] = None


def build_gmail_service(credentials: GoogleCredentials):
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


class GmailAdapter:
    """Talks to the Gmail REST API with google-auth credentials."""

    def __init__(
        self,
        service_factory: Callable[[GoogleCredentials], Any] = build_gmail_service,
        attachment_filter: DmarcAttachmentFilter = default_filter,
        num_retries: int = 2,
        user_id: str = "me",
    ) -> None:
        self.service_factory = service_factory
        self.attachment_filter = attachment_filter
        self.num_retries = num_retries
        self.user_id = user_id

    @staticmethod
    def build_query(options: SearchOptions) -> str:
        clauses = [DMARC_QUERY]
        if options.unread_only:
            clauses.append("is:unread")
        if options.after_date:
            clauses.append(f"after:{int(options.after_date.timestamp())}")
        if options.before_date:
            clauses.append(f"before:{int(options.before_date.timestamp())}")
        return " ".join(clauses)

    def search(
        self,
        credentials: GoogleCredentials,
        options: SearchOptions,
        page_token: str | None = None,
    ) -> GmailSearchPage:
        service = self.service_factory(credentials)
        query = self.build_query(options)
        params: dict[str, Any] = {
            "userId": self.user_id,
            "q": query,
            "maxResults": min(options.max_results, 500),
        }
        if page_token:
            params["pageToken"] = page_token

        logger.debug("Gmail search q=%s pageToken=%s", query, page_token)
        response = self._execute(service.users().messages().list(**params))

        messages: list[dict[str, Any]] = []
        errors: list[str] = []
        for ref in response.get("messages", []):
            try:
                messages.append(
                    self._execute(
                        service.users()
                        .messages()
                        .get(userId=self.user_id, id=ref["id"], format="full")
                    )
                )
            except ProviderError as exc:
                logger.warning("Could not fetch Gmail message %s: %s", ref["id"], exc)
                errors.append(f"Could not fetch message {ref['id']}: {exc}")

        return GmailSearchPage(
            messages=messages,
            next_page_token=response.get("nextPageToken"),
            result_size_estimate=response.get("resultSizeEstimate", len(messages)),
            query=query,
            errors=errors,
        )

    def extract_attachments(
        self, credentials: GoogleCredentials, messages: list[dict[str, Any]]
    ) -> list[GmailAttachment]:
        service = self.service_factory(credentials)
        attachments: list[GmailAttachment] = []
        for message in messages:
            for part in self._iter_parts(message.get("payload") or {}):
                filename = part.get("filename") or ""
                if not self.attachment_filter.is_dmarc_attachment(filename):
                    continue
                attachments.append(self._download(service, message, part))
        logger.info("Extracted %s DMARC attachment(s) from %s Gmail message(s)", len(attachments), len(messages))
        return attachments

    def delete_message(self, credentials: GoogleCredentials, message_id: str) -> DeleteResult:
        """Move a message to trash. Never raises and is never retried."""
        try:
            service = self.service_factory(credentials)
            service.users().messages().trash(userId=self.user_id, id=message_id).execute()
        except HttpError as exc:
            logger.error("Gmail delete of %s failed (%s)", message_id, exc.resp.status)
            return DeleteResult(success=False, deleted=False, error=f"HTTP {exc.resp.status}: {exc}")
        except RefreshError as exc:
            return DeleteResult(success=False, deleted=False, error=f"Unauthorized: {exc}")
        return DeleteResult(success=True, deleted=True)

    def get_profile(self, credentials: GoogleCredentials) -> dict[str, Any]:
        service = self.service_factory(credentials)
        return self._execute(service.users().getProfile(userId=self.user_id))

    def _download(self, service, message: dict[str, Any], part: dict[str, Any]) -> GmailAttachment:
        body = part.get("body") or {}
        attachment = GmailAttachment(
            message_id=message["id"],
            filename=part.get("filename") or "",
            mime_type=part.get("mimeType", "application/octet-stream"),
            size=body.get("size", 0),
            internal_date=message.get("internalDate"),
        )
        if body.get("data"):
            attachment.data = body["data"]
            return attachment
        if not body.get("attachmentId"):
            attachment.error = f"Attachment {attachment.filename} has no content"
            return attachment
        try:
            response = self._execute(
                service.users()
                .messages()
                .attachments()
                .get(userId=self.user_id, messageId=message["id"], id=body["attachmentId"])
            )
            attachment.data = response.get("data")
            if attachment.data is None:
                attachment.error = f"Empty attachment body for {attachment.filename}"
        except ProviderError as exc:
            logger.warning("Download of %s from %s failed: %s", attachment.filename, message["id"], exc)
            attachment.error = f"Download failed for {attachment.filename}: {exc}"
        return attachment

    def _execute(self, request) -> dict[str, Any]:
        try:
            return request.execute(num_retries=self.num_retries)
        except HttpError as exc:
            status = exc.resp.status
            if status == 401:
                raise UnauthorizedError(f"Gmail rejected the access token: {exc}") from exc
            if status == 429:
                raise RateLimitError(f"Gmail rate limit exceeded: {exc}") from exc
            logger.error("Gmail request failed (%s): %s", status, exc)
            raise ProviderError(f"Gmail request failed ({status}): {exc}") from exc
        except RefreshError as exc:
            raise UnauthorizedError(f"Gmail credentials could not be refreshed: {exc}") from exc

    @classmethod
    def _iter_parts(cls, part: dict[str, Any]) -> Iterator[dict[str, Any]]:
        yield part
        for child in part.get("parts") or []:
            yield from cls._iter_parts(child)
