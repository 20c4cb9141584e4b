"""Tests for the Microsoft Graph provider using httpx.MockTransport."""

import asyncio

import httpx
import pytest
import requests

from mail_sync.errors import (
    CredentialExpired,
    FolderUnavailable,
    ProviderRateLimited,
    ProviderTransientError,
)
from mail_sync.providers.base import EmailFolder
from mail_sync.providers.microsoft import MicrosoftProvider

DELTA_URL = "https://graph.microsoft.com/v1.0/me/mailFolders/f-inbox/messages/delta"
INBOX = EmailFolder(folder_id="f-inbox", name="Inbox")


def graph_message(message_id, subject="Hello", headers=None):
    return {
        "id": message_id,
        "conversationId": "conv-1",
        "parentFolderId": "f-inbox",
        "from": {"emailAddress": {"name": "Bob", "address": "bob@example.com"}},
        "toRecipients": [{"emailAddress": {"address": "me@contoso.com"}}],
        "subject": subject,
        "bodyPreview": "Hi there",
        "body": {"contentType": "html", "content": "<p>Hi there</p>"},
        "receivedDateTime": "2024-05-01T12:00:00Z",
        "isRead": True,
        "flag": {"flagStatus": "flagged"},
        "hasAttachments": False,
        "internetMessageHeaders": headers or [],
    }


def make_provider(handler, **config):
    config.setdefault("access_token", "graph-token")
    config.setdefault("refresh_token", "graph-refresh")
    return MicrosoftProvider(config, transport=httpx.MockTransport(handler))


class TestFolders:
    def test_list_folders_tags_well_known(self):
        def handler(request):
            path = request.url.path
            if path == "/v1.0/me/mailFolders":
                return httpx.Response(200, json={"value": [
                    {"id": "f-inbox", "displayName": "Inbox", "totalItemCount": 12, "unreadItemCount": 2},
                    {"id": "f-sent", "displayName": "Sent Items", "totalItemCount": 4},
                    {"id": "f-clients", "displayName": "Clients", "totalItemCount": 1},
                ]})
            if path == "/v1.0/me/mailFolders/inbox":
                return httpx.Response(200, json={"id": "f-inbox"})
            if path == "/v1.0/me/mailFolders/sentitems":
                return httpx.Response(200, json={"id": "f-sent"})
            return httpx.Response(404, json={"error": {"code": "ErrorFolderNotFound", "message": "not found"}})

        folders = asyncio.run(make_provider(handler).list_folders())
        by_id = {f.folder_id: f for f in folders}
        assert by_id["f-inbox"].attributes == ["inbox"]
        assert by_id["f-inbox"].total_count == 12
        assert by_id["f-sent"].attributes == ["sentitems"]
        assert by_id["f-clients"].attributes == []

    def test_paged_and_nested_folders(self):
        def handler(request):
            path = request.url.path
            if path == "/v1.0/me/mailFolders" and "skip" in str(request.url):
                return httpx.Response(200, json={"value": [{"id": "f-b", "displayName": "Beta"}]})
            if path == "/v1.0/me/mailFolders":
                return httpx.Response(200, json={
                    "value": [{"id": "f-a", "displayName": "Alpha", "childFolderCount": 1}],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/mailFolders?$skip=1",
                })
            if path == "/v1.0/me/mailFolders/f-a/childFolders":
                return httpx.Response(200, json={"value": [{"id": "f-a1", "displayName": "Nested"}]})
            return httpx.Response(404, json={"error": {"message": "not found"}})

        folders = asyncio.run(make_provider(handler).list_folders())
        assert [(f.folder_id, f.name) for f in folders] == [
            ("f-a", "Alpha"), ("f-a1", "Alpha/Nested"), ("f-b", "Beta"),
        ]


class TestDelta:
    def test_backfill_then_delta_link(self):
        seen = []

        def handler(request):
            seen.append(request)
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={
                    "value": [graph_message("m2")],
                    "@odata.deltaLink": DELTA_URL + "?$deltatoken=xyz",
                })
            return httpx.Response(200, json={
                "value": [
                    graph_message("m1", headers=[{"name": "List-Unsubscribe", "value": "<mailto:u@x>"}]),
                    {"id": "gone", "@removed": {"reason": "deleted"}},
                ],
                "@odata.nextLink": DELTA_URL + "?$skiptoken=abc",
            })

        provider = make_provider(handler)

        async def scenario():
            first = await provider.fetch_delta(INBOX, None, limit=2)
            second = await provider.fetch_delta(INBOX, first.next_cursor, limit=2)
            return first, second

        first, second = asyncio.run(scenario())

        assert [m.message_id for m in first.messages] == ["m1"]
        assert first.removed_ids == ["gone"]
        assert first.has_more is True
        assert "skiptoken=abc" in first.next_cursor
        assert first.messages[0].header("List-Unsubscribe") == "<mailto:u@x>"
        assert first.messages[0].is_flagged and first.messages[0].is_read
        assert first.messages[0].body_html == "<p>Hi there</p>"

        assert [m.message_id for m in second.messages] == ["m2"]
        assert second.has_more is False
        assert second.next_cursor.endswith("deltatoken=xyz")

        assert seen[0].headers["Authorization"] == "Bearer graph-token"
        assert seen[0].headers["Prefer"] == "odata.maxpagesize=2"

    def test_expired_delta_token_restarts(self):
        def handler(request):
            if "deltatoken" in str(request.url):
                return httpx.Response(410, json={"error": {"code": "SyncStateNotFound", "message": "expired"}})
            return httpx.Response(200, json={
                "value": [graph_message("m1")],
                "@odata.deltaLink": DELTA_URL + "?$deltatoken=new",
            })

        page = asyncio.run(make_provider(handler).fetch_delta(INBOX, DELTA_URL + "?$deltatoken=old"))
        assert [m.message_id for m in page.messages] == ["m1"]
        assert page.next_cursor.endswith("deltatoken=new")

    def test_deleted_folder(self):
        handler = lambda request: httpx.Response(404, json={"error": {"message": "folder gone"}})
        with pytest.raises(FolderUnavailable):
            asyncio.run(make_provider(handler).fetch_delta(INBOX))


class TestErrors:
    def test_unauthorized(self):
        handler = lambda request: httpx.Response(401, json={"error": {"message": "token expired"}})
        with pytest.raises(CredentialExpired):
            asyncio.run(make_provider(handler).list_folders())

    def test_throttled_with_retry_after(self):
        handler = lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={})
        with pytest.raises(ProviderRateLimited) as exc:
            asyncio.run(make_provider(handler).fetch_delta(INBOX))
        assert exc.value.retry_after == 7.0

    def test_server_error_without_json(self):
        handler = lambda request: httpx.Response(503, text="Service Unavailable")
        with pytest.raises(ProviderTransientError):
            asyncio.run(make_provider(handler).fetch_delta(INBOX))

    def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderTransientError):
            asyncio.run(make_provider(handler).list_folders())

    def test_fetch_full_missing_message(self):
        handler = lambda request: httpx.Response(404, json={"error": {"message": "not found"}})
        assert asyncio.run(make_provider(handler).fetch_full("nope")) is None


class FakeMsalApp:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def acquire_token_by_refresh_token(self, refresh_token, scopes):
        self.calls.append((refresh_token, scopes))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestRefresh:
    def test_refresh_rotates_tokens(self):
        provider = make_provider(lambda request: httpx.Response(200, json={}))
        provider._msal_app = FakeMsalApp({"access_token": "new", "refresh_token": "rotated", "expires_in": 3600})

        credentials = asyncio.run(provider.refresh_credential())

        assert credentials.access_token == "new"
        assert credentials.refresh_token == "rotated"
        assert credentials.expires_at is not None
        assert provider._msal_app.calls == [("graph-refresh", MicrosoftProvider.SCOPES)]

    def test_refresh_rejected(self):
        provider = make_provider(lambda request: httpx.Response(200, json={}))
        provider._msal_app = FakeMsalApp({"error": "invalid_grant", "error_description": "AADSTS70008"})
        with pytest.raises(CredentialExpired):
            asyncio.run(provider.refresh_credential())

    def test_no_refresh_token(self):
        provider = make_provider(lambda request: httpx.Response(200, json={}), refresh_token=None)
        with pytest.raises(CredentialExpired):
            asyncio.run(provider.refresh_credential())

    def test_token_endpoint_unreachable(self):
        provider = make_provider(lambda request: httpx.Response(200, json={}))
        provider._msal_app = FakeMsalApp(requests.ConnectionError("login.microsoftonline.com unreachable"))
        with pytest.raises(ProviderTransientError):
            asyncio.run(provider.refresh_credential())
