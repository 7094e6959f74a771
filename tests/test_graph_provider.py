"""Tests for the Microsoft Graph adapter."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest
import requests

from dmarc_sync.exceptions import ProviderError, RateLimitError, UnauthorizedError
from dmarc_sync.models import SearchOptions
from dmarc_sync.providers.graph import GraphAdapter


def response(status=200, json_body=None, content=b"", headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = json_body or {}
    resp.content = content
    resp.text = str(json_body or "")
    resp.headers = headers or {}
    return resp


@pytest.fixture
def graph():
    session = MagicMock()
    sleeps = []
    adapter = GraphAdapter(session=session, page_size=10, sleep=sleeps.append)
    return adapter, session, sleeps


def message(message_id, subject="Report Domain: example.com", sender="someone@example.org"):
    return {
        "id": message_id,
        "subject": subject,
        "hasAttachments": True,
        "receivedDateTime": "2024-01-01T00:00:00Z",
        "from": {"emailAddress": {"address": sender}},
    }


def test_filter_starts_with_received_date():
    query = GraphAdapter.build_filter(
        SearchOptions(unread_only=True, after_date=datetime(2024, 1, 1, tzinfo=UTC))
    )
    assert query.startswith("receivedDateTime ge 2024-01-01T00:00:00Z")
    assert "hasAttachments eq true" in query
    assert "isRead eq false" in query


def test_filter_without_after_date_still_leads_with_received_date():
    assert GraphAdapter.build_filter(SearchOptions()).startswith("receivedDateTime ge 1900")


def test_search_applies_client_side_heuristics(graph):
    adapter, session, _ = graph
    session.get.return_value = response(
        json_body={
            "value": [
                message("o1"),
                message("o2", subject="Lunch", sender="friend@example.com"),
                message("o3", subject="Hi", sender="noreply-dmarc-support@google.com"),
            ],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/messages?$skip=10",
        }
    )
    page = adapter.search("token", SearchOptions())
    assert [m["id"] for m in page.messages] == ["o1", "o3"]
    assert page.next_page_token.endswith("$skip=10")
    params = session.get.call_args.kwargs["params"]
    assert params["$orderby"] == "receivedDateTime desc"
    assert session.get.call_args.kwargs["headers"]["Authorization"] == "Bearer token"


def test_search_with_page_token_uses_next_link_verbatim(graph):
    adapter, session, _ = graph
    session.get.return_value = response(json_body={"value": []})
    adapter.search("token", SearchOptions(), page_token="https://next")
    assert session.get.call_args.args[0] == "https://next"
    assert session.get.call_args.kwargs["params"] is None


def test_unauthorized(graph):
    adapter, session, _ = graph
    session.get.return_value = response(status=401)
    with pytest.raises(UnauthorizedError):
        adapter.search("token", SearchOptions())


def test_throttling_honors_retry_after_then_gives_up(graph):
    adapter, session, sleeps = graph
    session.get.return_value = response(status=429, headers={"Retry-After": "3"})
    with pytest.raises(RateLimitError):
        adapter.search("token", SearchOptions())
    assert sleeps == [3.0, 3.0]
    assert session.get.call_count == 3


def test_throttling_recovers(graph):
    adapter, session, sleeps = graph
    session.get.side_effect = [response(status=429), response(json_body={"value": [message("o1")]})]
    page = adapter.search("token", SearchOptions())
    assert len(page.messages) == 1
    assert sleeps == [1.0]


def test_transport_error_is_provider_error(graph):
    adapter, session, _ = graph
    session.get.side_effect = requests.ConnectionError("boom")
    with pytest.raises(ProviderError):
        adapter.search("token", SearchOptions())


def test_extract_attachments_downloads_matching_files(graph):
    adapter, session, _ = graph
    listing = response(
        json_body={
            "value": [
                {"@odata.type": "#microsoft.graph.fileAttachment", "id": "a1", "name": "report.xml.gz", "size": 3},
                {"@odata.type": "#microsoft.graph.fileAttachment", "id": "a2", "name": "logo.png"},
                {"@odata.type": "#microsoft.graph.itemAttachment", "id": "a3", "name": "dmarc.xml"},
            ]
        }
    )
    download = response(content=b"abc")
    session.get.side_effect = [listing, download]
    attachments = adapter.extract_attachments("token", [message("o1")])
    assert len(attachments) == 1
    assert attachments[0].content == b"abc"
    assert attachments[0].received_date_time == "2024-01-01T00:00:00Z"
    assert session.get.call_args.args[0].endswith("/messages/o1/attachments/a1/$value")


def test_failed_download_is_recorded_not_raised(graph):
    adapter, session, _ = graph
    listing = response(
        json_body={"value": [{"@odata.type": "#microsoft.graph.fileAttachment", "id": "a1", "name": "r.zip"}]}
    )
    session.get.side_effect = [listing, response(status=500)]
    attachments = adapter.extract_attachments("token", [message("o1")])
    assert attachments[0].content is None
    assert "Download failed" in attachments[0].error


def test_delete_success_and_failure(graph):
    adapter, session, _ = graph
    session.delete.return_value = response(status=204)
    assert adapter.delete_message("token", "o1").deleted

    session.delete.return_value = response(status=403)
    result = adapter.delete_message("token", "o1")
    assert not result.success
    assert "403" in result.error

    session.delete.side_effect = requests.Timeout("slow")
    assert adapter.delete_message("token", "o1").error == "slow"


def test_profile(graph):
    adapter, session, _ = graph
    session.get.return_value = response(json_body={"mail": "me@contoso.com"})
    assert adapter.get_profile("token")["mail"] == "me@contoso.com"
    assert session.get.call_args.args[0].endswith("/me")
