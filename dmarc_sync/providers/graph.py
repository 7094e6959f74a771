"""Microsoft Graph adapter focused on DMARC message + attachment retrieval."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests
from requests import Response

from ..attachment_filter import DmarcAttachmentFilter, default_filter
from ..exceptions import ProviderError, RateLimitError, UnauthorizedError
from ..models import DeleteResult, SearchOptions
from ..utils import isoformat_utc

logger = logging.getLogger(__name__)

# Graph rejects $orderby unless the ordered property also leads the $filter.
EPOCH_FILTER = "1900-01-01T00:00:00Z"


@dataclass
class GraphSearchPage:
    messages: list[dict[str, Any]]
    next_page_token: Optional[str]
    total_estimate: int
    query: str
    errors: list[str] = field(default_factory=list)


@dataclass
class GraphAttachment:
    """File attachment downloaded from Graph as raw bytes."""

    message_id: str
    attachment_id: str
    name: str
    content_type: str
    size: int
    received_date_time: Optional[str]
    content: Optional[bytes] = None
    error: Optional[str] = None


class GraphAdapter:
    """Thin wrapper over Graph REST calls authenticated with a bearer token."""

    GRAPH_BASE = "https://graph.microsoft.com/v1.0"
    MESSAGE_FIELDS = (
        "id,conversationId,subject,bodyPreview,from,sender,receivedDateTime,"
        "hasAttachments,isRead,internetMessageId"
    )

    def __init__(
        self,
        session: requests.Session | None = None,
        attachment_filter: DmarcAttachmentFilter = default_filter,
        page_size: int = 25,
        timeout: int = 30,
        rate_limit_retries: int = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.attachment_filter = attachment_filter
        self.page_size = page_size
        self.timeout = timeout
        self.rate_limit_retries = rate_limit_retries
        self.sleep = sleep

    @staticmethod
    def build_filter(options: SearchOptions) -> str:
        after = isoformat_utc(options.after_date) if options.after_date else EPOCH_FILTER
        clauses = [f"receivedDateTime ge {after}", "hasAttachments eq true"]
        if options.before_date:
            clauses.append(f"receivedDateTime le {isoformat_utc(options.before_date)}")
        if options.unread_only:
            clauses.append("isRead eq false")
        return " and ".join(clauses)

    def search(
        self, access_token: str, options: SearchOptions, page_token: str | None = None
    ) -> GraphSearchPage:
        """Fetch one page; ``page_token`` is the opaque ``@odata.nextLink``."""
        query = self.build_filter(options)
        if page_token:
            url, params = page_token, None
        else:
            url = f"{self.GRAPH_BASE}/me/messages"
            params = {
                "$select": self.MESSAGE_FIELDS,
                "$filter": query,
                "$orderby": "receivedDateTime desc",
                "$top": min(self.page_size, options.max_results),
            }

        logger.debug("Fetching Graph messages page %s", url)
        payload = self._get(url, access_token, params=params).json()
        raw_messages = payload.get("value", [])
        messages = [
            raw
            for raw in raw_messages
            if raw.get("hasAttachments") and self._looks_like_report(raw)
        ]
        logger.debug("Graph page: %s of %s messages look like DMARC reports", len(messages), len(raw_messages))
        return GraphSearchPage(
            messages=messages,
            next_page_token=payload.get("@odata.nextLink"),
            total_estimate=len(messages),
            query=query,
        )

    def extract_attachments(
        self, access_token: str, messages: list[dict[str, Any]]
    ) -> list[GraphAttachment]:
        attachments: list[GraphAttachment] = []
        for message in messages:
            for raw in self._list_file_attachments(access_token, message["id"]):
                name = raw.get("name", "")
                if not self.attachment_filter.is_dmarc_attachment(name):
                    continue
                attachment = GraphAttachment(
                    message_id=message["id"],
                    attachment_id=raw["id"],
                    name=name,
                    content_type=raw.get("contentType", "application/octet-stream"),
                    size=raw.get("size", 0),
                    received_date_time=message.get("receivedDateTime"),
                )
                try:
                    attachment.content = self.download_attachment(
                        access_token, message["id"], raw["id"]
                    )
                except ProviderError as exc:
                    logger.warning("Download of %s from %s failed: %s", name, message["id"], exc)
                    attachment.error = f"Download failed for {name}: {exc}"
                attachments.append(attachment)
        logger.info("Extracted %s DMARC attachment(s) from %s Graph message(s)", len(attachments), len(messages))
        return attachments

    def download_attachment(self, access_token: str, message_id: str, attachment_id: str) -> bytes:
        """Download attachment bytes."""
        url = f"{self.GRAPH_BASE}/me/messages/{message_id}/attachments/{attachment_id}/$value"
        return self._get(url, access_token).content

    def delete_message(self, access_token: str, message_id: str) -> DeleteResult:
        """Delete a message. Never raises and is never retried."""
        url = f"{self.GRAPH_BASE}/me/messages/{message_id}"
        try:
            resp = self.session.delete(url, headers=self._headers(access_token), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Graph delete of %s failed: %s", message_id, exc)
            return DeleteResult(success=False, deleted=False, error=str(exc))
        if resp.status_code >= 400:
            logger.error("Graph delete of %s failed (%s): %s", message_id, resp.status_code, resp.text)
            return DeleteResult(
                success=False, deleted=False, error=f"HTTP {resp.status_code}: {resp.text}"
            )
        return DeleteResult(success=True, deleted=True)

    def get_profile(self, access_token: str) -> dict[str, Any]:
        return self._get(f"{self.GRAPH_BASE}/me", access_token).json()

    def _list_file_attachments(self, access_token: str, message_id: str) -> list[dict[str, Any]]:
        url = f"{self.GRAPH_BASE}/me/messages/{message_id}/attachments"
        params = {"$select": "id,name,contentType,size,isInline"}
        attachments: list[dict[str, Any]] = []

        while url:
            payload = self._get(url, access_token, params=params).json()
            for raw in payload.get("value", []):
                if raw.get("@odata.type") != "#microsoft.graph.fileAttachment":
                    continue
                attachments.append(raw)
            url = payload.get("@odata.nextLink")
            params = None  # nextLink already carries the query

        return attachments

    def _looks_like_report(self, raw: dict[str, Any]) -> bool:
        sender = ((raw.get("from") or raw.get("sender") or {}).get("emailAddress") or {}).get("address")
        return self.attachment_filter.looks_like_report_message(raw.get("subject"), sender)

    @staticmethod
    def _headers(access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _get(self, url: str, access_token: str, params: dict | None = None) -> Response:
        attempt = 0
        while True:
            try:
                resp = self.session.get(
                    url, headers=self._headers(access_token), params=params, timeout=self.timeout
                )
            except requests.RequestException as exc:
                raise ProviderError(f"Graph request failed: {exc}") from exc

            if resp.status_code == 401:
                raise UnauthorizedError("Graph rejected the access token")
            if resp.status_code == 429:
                if attempt >= self.rate_limit_retries:
                    raise RateLimitError(f"Graph rate limit exceeded for {url}")
                delay = self._retry_after(resp, attempt)
                logger.warning("Graph throttled request, retrying in %ss", delay)
                self.sleep(delay)
                attempt += 1
                continue
            if resp.status_code >= 400:
                logger.error("Graph request failed (%s): %s", resp.status_code, resp.text)
                raise ProviderError(f"Graph request failed ({resp.status_code}): {resp.text}")
            return resp

    @staticmethod
    def _retry_after(resp: Response, attempt: int) -> float:
        header = resp.headers.get("Retry-After")
        try:
            return max(float(header), 0.0)
        except (TypeError, ValueError):
            return float(2**attempt)
