"""Tests for the provider facade and its shape translation."""

import base64
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from conftest import gmail_credentials
from dmarc_sync.exceptions import UnsupportedProviderError
from dmarc_sync.facade import ProviderFacade
from dmarc_sync.models import Credentials, Provider, SearchOptions
from dmarc_sync.providers.gmail import GmailAttachment, GmailSearchPage
from dmarc_sync.providers.graph import GraphAttachment, GraphSearchPage

GMAIL_MESSAGE = {
    "id": "g1",
    "threadId": "t1",
    "snippet": "Report for example.com",
    "internalDate": "1704067200000",
    "payload": {
        "headers": [
            {"name": "Subject", "value": "Report Domain: example.com"},
            {"name": "From", "value": "Google <noreply-dmarc-support@google.com>"},
        ],
        "parts": [
            {"filename": "", "body": {"size": 10}},
            {"filename": "google.com!example.com!1!2.zip", "body": {"attachmentId": "a1", "size": 99}},
        ],
    },
}

GRAPH_MESSAGE = {
    "id": "o1",
    "conversationId": "c1",
    "subject": "Report domain: example.com",
    "bodyPreview": "This is a DMARC aggregate report",
    "receivedDateTime": "2024-01-01T00:00:00Z",
    "from": {"emailAddress": {"address": "dmarcreport@microsoft.com", "name": "Microsoft"}},
    "hasAttachments": True,
}


def graph_credentials():
    return Credentials(
        access_token="graph-token",
        refresh_token=None,
        expires_at=None,
        email="me@contoso.com",
        provider=Provider.MICROSOFT,
    )


def test_adapters_are_created_lazily_and_cached():
    factory = MagicMock(return_value=MagicMock())
    facade = ProviderFacade({Provider.GMAIL: factory})
    factory.assert_not_called()
    first = facade.adapter(Provider.GMAIL)
    second = facade.adapter(Provider.GMAIL)
    assert first is second
    factory.assert_called_once()


def test_unknown_provider():
    facade = ProviderFacade({})
    with pytest.raises(UnsupportedProviderError):
        facade.adapter(Provider.MICROSOFT)


def test_gmail_message_translation():
    message = ProviderFacade.to_canonical_message(GMAIL_MESSAGE, Provider.GMAIL)
    assert message.id == "g1"
    assert message.thread_id == "t1"
    assert message.subject == "Report Domain: example.com"
    assert message.sender_email == "noreply-dmarc-support@google.com"
    assert message.sender_name == "Google"
    assert message.received_date == datetime(2024, 1, 1, tzinfo=UTC)
    assert message.has_attachments
    assert message.native is GMAIL_MESSAGE


def test_graph_message_translation():
    message = ProviderFacade.to_canonical_message(GRAPH_MESSAGE, Provider.MICROSOFT)
    assert message.thread_id == "c1"
    assert message.snippet.startswith("This is a DMARC")
    assert message.sender_email == "dmarcreport@microsoft.com"
    assert message.received_date == datetime(2024, 1, 1, tzinfo=UTC)
    assert message.native is GRAPH_MESSAGE


def test_graph_attachment_bytes_become_base64():
    native = GraphAttachment(
        message_id="o1",
        attachment_id="a1",
        name="report.xml",
        content_type="text/xml",
        size=11,
        received_date_time="2024-01-01T00:00:00Z",
        content=b"<feedback/>",
    )
    attachment = ProviderFacade.to_canonical_attachment(native, Provider.MICROSOFT)
    assert base64.b64decode(attachment.data) == b"<feedback/>"
    assert attachment.message_id == "o1"
    assert attachment.error is None


def test_gmail_attachment_keeps_urlsafe_payload_and_error():
    native = GmailAttachment(
        message_id="g1",
        filename="r.zip",
        mime_type="application/zip",
        size=0,
        internal_date="1704067200000",
        error="Download failed",
    )
    attachment = ProviderFacade.to_canonical_attachment(native, Provider.GMAIL)
    assert attachment.data is None
    assert attachment.error == "Download failed"
    assert attachment.received_date == datetime(2024, 1, 1, tzinfo=UTC)


def test_search_all_follows_page_tokens_until_max_results():
    adapter = MagicMock()
    adapter.search.side_effect = [
        GmailSearchPage(messages=[dict(GMAIL_MESSAGE, id="g1")], next_page_token="p2", result_size_estimate=3, query="q"),
        GmailSearchPage(messages=[dict(GMAIL_MESSAGE, id="g2")], next_page_token="p3", result_size_estimate=3, query="q"),
        GmailSearchPage(messages=[dict(GMAIL_MESSAGE, id="g3")], next_page_token=None, result_size_estimate=3, query="q"),
    ]
    facade = ProviderFacade({Provider.GMAIL: lambda: adapter})
    result = facade.search_all(gmail_credentials(), SearchOptions(max_results=2))
    assert [m.id for m in result.messages] == ["g1", "g2"]
    assert adapter.search.call_count == 2
    assert adapter.search.call_args_list[1].args[2] == "p2"


def test_search_all_collects_fetch_errors_from_every_page():
    adapter = MagicMock()
    adapter.search.side_effect = [
        GmailSearchPage(
            messages=[dict(GMAIL_MESSAGE, id="g1")],
            next_page_token="p2",
            result_size_estimate=3,
            query="q",
            errors=["Could not fetch message g0: HTTP 429"],
        ),
        GmailSearchPage(messages=[], next_page_token=None, result_size_estimate=3, query="q"),
    ]
    facade = ProviderFacade({Provider.GMAIL: lambda: adapter})
    result = facade.search_all(gmail_credentials(), SearchOptions(max_results=10))
    assert [m.id for m in result.messages] == ["g1"]
    assert result.errors == ["Could not fetch message g0: HTTP 429"]


def test_graph_search_passes_token_string():
    adapter = MagicMock()
    adapter.search.return_value = GraphSearchPage(
        messages=[GRAPH_MESSAGE], next_page_token=None, total_estimate=1, query="f"
    )
    facade = ProviderFacade({Provider.MICROSOFT: lambda: adapter})
    result = facade.search(graph_credentials(), SearchOptions())
    assert adapter.search.call_args.args[0] == "graph-token"
    assert result.messages[0].provider is Provider.MICROSOFT


def test_extract_and_delete_route_to_adapter():
    adapter = MagicMock()
    adapter.extract_attachments.return_value = []
    facade = ProviderFacade({Provider.MICROSOFT: lambda: adapter})
    message = ProviderFacade.to_canonical_message(GRAPH_MESSAGE, Provider.MICROSOFT)
    assert facade.extract_attachments(graph_credentials(), [message]) == []
    adapter.extract_attachments.assert_called_once_with("graph-token", [GRAPH_MESSAGE])

    facade.delete_message(graph_credentials(), "o1")
    adapter.delete_message.assert_called_once_with("graph-token", "o1")


def test_mailbox_address_reads_provider_profile():
    gmail = MagicMock()
    gmail.get_profile.return_value = {"emailAddress": "dmarc@example.com"}
    graph = MagicMock()
    graph.get_profile.return_value = {"mail": None, "userPrincipalName": "me@contoso.com"}
    facade = ProviderFacade({Provider.GMAIL: lambda: gmail, Provider.MICROSOFT: lambda: graph})
    assert facade.mailbox_address(gmail_credentials()) == "dmarc@example.com"
    assert facade.mailbox_address(graph_credentials()) == "me@contoso.com"
    graph.get_profile.assert_called_once_with("graph-token")
