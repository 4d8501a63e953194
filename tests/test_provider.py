"""Tests for the provider HTTP client, the Graph mailbox adapter and token refresh.

The HTTP session, MSAL application and clock are mocked; no network access.
"""

import asyncio
import base64
import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from mailflow.auth.oauth import AccountTokenProvider
from mailflow.config_schema import OAuthConfig
from mailflow.core.errors import AuthenticationError, ProviderError, RateLimitExceeded
from mailflow.db.store import DatabaseStore, MailAccount
from mailflow.provider.client import ProviderClient
from mailflow.provider.mailbox import GraphMailbox

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _response(status: int, body: dict[str, Any] | None = None, headers: dict | None = None):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = body if body is not None else {}
    response.headers = headers or {}
    response.text = str(body)
    return response


def _client(*responses, max_retries: int = 3) -> tuple[ProviderClient, MagicMock, MagicMock]:
    session = MagicMock()
    session.request.side_effect = list(responses)
    sleep = MagicMock()
    client = ProviderClient(
        base_url="https://graph.example/v1.0",
        max_retries=max_retries,
        retry_delays=[1.0, 2.0, 4.0],
        session=session,
        sleep=sleep,
    )
    return client, session, sleep


def _graph_message(msg_id: str = "AAMk-1", **overrides: Any) -> dict[str, Any]:
    item = {
        "id": msg_id,
        "conversationId": "conv-1",
        "subject": "NAVI-1234 arrival notice",
        "from": {"emailAddress": {"address": "Agent@Maersk.com", "name": "Maersk Agent"}},
        "toRecipients": [{"emailAddress": {"address": "ops@navi.mx"}}],
        "ccRecipients": [{"emailAddress": {"address": "fin@navi.mx"}}],
        "receivedDateTime": "2026-03-02T15:00:00Z",
        "bodyPreview": "Vessel arrives Friday",
        "body": {"contentType": "html", "content": "<p>Vessel arrives Friday</p>"},
        "isRead": True,
        "flag": {"flagStatus": "flagged"},
        "importance": "high",
        "categories": ["Ops"],
        "parentFolderId": "inbox-id",
        "attachments": [
            {
                "id": "att-1",
                "name": "BL-7781.pdf",
                "contentType": "application/pdf",
                "size": 90_000,
                "isInline": False,
            }
        ],
    }
    item.update(overrides)
    return item


def _account(**overrides: Any) -> MailAccount:
    data = {
        "id": 1,
        "email": "ops@navi.mx",
        "access_token": "access-old",
        "refresh_token": "refresh-old",
        "token_expires_at": NOW + timedelta(hours=1),
    }
    data.update(overrides)
    return MailAccount(**data)


# ---------------------------------------------------------------------------
# ProviderClient
# ---------------------------------------------------------------------------


class TestProviderClient:
    def test_success(self):
        client, session, sleep = _client(_response(200, {"value": []}))
        assert client.get("/me/messages", "tok") == {"value": []}
        call = session.request.call_args.kwargs
        assert call["url"] == "https://graph.example/v1.0/me/messages"
        assert call["headers"]["Authorization"] == "Bearer tok"
        sleep.assert_not_called()

    def test_absolute_next_link_used_verbatim(self):
        client, session, _ = _client(_response(200, {}))
        client.get("https://graph.example/v1.0/me/messages?$skiptoken=abc", "tok")
        assert session.request.call_args.kwargs["url"].endswith("$skiptoken=abc")

    def test_no_content(self):
        client, _, _ = _client(_response(204))
        assert client.get("/me/messages", "tok") == {}

    def test_retries_server_error_then_succeeds(self):
        client, session, sleep = _client(_response(503), _response(200, {"ok": True}))
        assert client.get("/x", "tok") == {"ok": True}
        assert session.request.call_count == 2
        assert sleep.call_count == 1
        delay = sleep.call_args.args[0]
        assert 0.8 <= delay <= 1.2

    def test_honors_retry_after(self):
        client, _, sleep = _client(
            _response(429, headers={"Retry-After": "10"}), _response(200, {"ok": True})
        )
        client.get("/x", "tok")
        assert 8.0 <= sleep.call_args.args[0] <= 12.0

    def test_persistent_server_error(self):
        client, session, sleep = _client(*[_response(500)] * 4)
        with pytest.raises(ProviderError) as exc_info:
            client.get("/x", "tok")
        assert exc_info.value.status_code == 500
        assert exc_info.value.is_transient is True
        assert session.request.call_count == 4
        assert sleep.call_count == 3

    def test_persistent_rate_limit(self):
        client, _, _ = _client(*[_response(429, headers={"Retry-After": "3"})] * 4)
        with pytest.raises(RateLimitExceeded) as exc_info:
            client.get("/x", "tok")
        assert exc_info.value.retry_after == 3.0
        assert exc_info.value.status_code == 429

    def test_client_errors_not_retried(self):
        client, session, _ = _client(
            _response(401, {"error": {"code": "InvalidAuthenticationToken", "message": "expired"}})
        )
        with pytest.raises(ProviderError) as exc_info:
            client.get("/x", "tok")
        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "InvalidAuthenticationToken"
        assert exc_info.value.is_transient is False
        assert session.request.call_count == 1

    def test_timeout_retried(self):
        client, session, _ = _client(requests.exceptions.Timeout(), _response(200, {"ok": 1}))
        assert client.get("/x", "tok") == {"ok": 1}
        assert session.request.call_count == 2

    def test_connection_error_exhausted(self):
        client, _, _ = _client(
            *[requests.exceptions.ConnectionError("refused")] * 2, max_retries=1
        )
        with pytest.raises(ProviderError) as exc_info:
            client.get("/x", "tok")
        assert exc_info.value.status_code is None
        assert exc_info.value.is_transient is True


# ---------------------------------------------------------------------------
# GraphMailbox
# ---------------------------------------------------------------------------


@pytest.fixture
def tokens() -> MagicMock:
    provider = MagicMock()
    provider.get_access_token = AsyncMock(return_value="tok")
    return provider


def _routing_client(messages_response: dict[str, Any], junk: dict | Exception | None = None):
    junk = junk if junk is not None else {"id": "junk-id"}

    def get(endpoint, access_token, params=None, extra_headers=None):
        if endpoint.startswith("/me/mailFolders/"):
            if isinstance(junk, Exception):
                raise junk
            return junk
        return messages_response

    client = MagicMock()
    client.get.side_effect = get
    return client


class TestGraphMailbox:
    async def test_first_page(self, tokens: MagicMock):
        client = _routing_client(
            {"value": [_graph_message()], "@odata.nextLink": "https://graph.example/next"}
        )
        mailbox = GraphMailbox(client, tokens, page_size=500)

        page = await mailbox.list_page(_account(sync_range_months=6), None)

        first_call = client.get.call_args_list[0]
        assert first_call.args[0] == "/me/messages"
        params = first_call.kwargs["params"]
        assert params["$top"] == 500
        assert params["$orderby"] == "receivedDateTime desc"
        assert params["$filter"].startswith("receivedDateTime ge ")
        assert page.next_token == "https://graph.example/next"

        message = page.messages[0]
        assert message.provider_message_id == "AAMk-1"
        assert message.sender_email == "agent@maersk.com"
        assert message.recipients == ["ops@navi.mx", "fin@navi.mx"]
        assert message.received_at == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)
        assert message.is_starred is True
        assert message.is_important is True
        assert message.body_mime_type == "text/html"
        assert message.labels == ["Ops"]
        assert message.attachments[0].filename == "BL-7781.pdf"
        assert message.attachments[0].size == 90_000

    async def test_continuation_page(self, tokens: MagicMock):
        client = _routing_client({"value": []})
        mailbox = GraphMailbox(client, tokens)

        page = await mailbox.list_page(_account(), "https://graph.example/next")

        assert client.get.call_args_list[0].args[0] == "https://graph.example/next"
        assert page.messages == []
        assert page.next_token is None

    async def test_junk_folder_message_labelled(self, tokens: MagicMock):
        client = _routing_client({"value": [_graph_message(parentFolderId="junk-id")]})
        mailbox = GraphMailbox(client, tokens)
        page = await mailbox.list_page(_account(), None)
        assert "SPAM" in page.messages[0].labels

    async def test_junk_lookup_failure_is_cached(self, tokens: MagicMock):
        client = _routing_client(
            {"value": [_graph_message()]}, junk=ProviderError("not found", status_code=404)
        )
        mailbox = GraphMailbox(client, tokens)

        await mailbox.list_page(_account(), None)
        await mailbox.list_page(_account(), None)

        junk_calls = [c for c in client.get.call_args_list if c.args[0].startswith("/me/mailFolders")]
        assert len(junk_calls) == 1

    async def test_page_size_capped(self, tokens: MagicMock):
        assert GraphMailbox(MagicMock(), tokens, page_size=1000).page_size == 500

    async def test_get_attachment(self, tokens: MagicMock):
        client = MagicMock()
        client.get.return_value = {"contentBytes": base64.b64encode(b"%PDF-1.7").decode()}
        mailbox = GraphMailbox(client, tokens)

        data = await mailbox.get_attachment(_account(), "AAMk-1", "att-1")

        assert data == b"%PDF-1.7"
        assert client.get.call_args.args[0] == "/me/messages/AAMk-1/attachments/att-1"

    async def test_reference_attachment_has_no_bytes(self, tokens: MagicMock):
        client = MagicMock()
        client.get.return_value = {"@odata.type": "#microsoft.graph.referenceAttachment"}
        mailbox = GraphMailbox(client, tokens)

        with pytest.raises(ProviderError) as exc_info:
            await mailbox.get_attachment(_account(), "AAMk-1", "att-1")
        assert exc_info.value.error_code == "NoContentBytes"

    async def test_requests_for_two_accounts_overlap(self, tokens: MagicMock):
        # Both page requests must be in flight at once to pass the barrier
        barrier = threading.Barrier(2, timeout=5)
        messages = {"value": [_graph_message()]}

        def get(endpoint, access_token, params=None, extra_headers=None):
            if endpoint == "/me/messages":
                barrier.wait()
                return messages
            return {"id": "junk-id"}

        client = MagicMock()
        client.get.side_effect = get
        mailbox = GraphMailbox(client, tokens)

        pages = await asyncio.gather(
            mailbox.list_page(_account(id=1), None),
            mailbox.list_page(_account(id=2, email="billing@navi.mx"), None),
        )

        assert [len(p.messages) for p in pages] == [1, 1]


# ---------------------------------------------------------------------------
# AccountTokenProvider
# ---------------------------------------------------------------------------


@pytest.fixture
def msal_app() -> MagicMock:
    app = MagicMock()
    app.acquire_token_by_refresh_token.return_value = {
        "access_token": "access-new",
        "refresh_token": "refresh-new",
        "expires_in": 3600,
    }
    return app


def _provider(store: DatabaseStore, app: MagicMock | None) -> AccountTokenProvider:
    return AccountTokenProvider(
        store, OAuthConfig(client_id="client-1", refresh_margin_seconds=300), app=app, now=lambda: NOW
    )


class TestAccountTokenProvider:
    async def test_valid_token_returned_without_refresh(
        self, store: DatabaseStore, msal_app: MagicMock
    ):
        tokens = _provider(store, msal_app)
        assert await tokens.get_access_token(_account()) == "access-old"
        msal_app.acquire_token_by_refresh_token.assert_not_called()

    async def test_expiring_token_refreshed_and_persisted(
        self, store: DatabaseStore, msal_app: MagicMock, account_id: int
    ):
        account = await store.get_account(account_id)
        account.token_expires_at = NOW + timedelta(seconds=60)
        tokens = _provider(store, msal_app)

        assert await tokens.get_access_token(account) == "access-new"

        msal_app.acquire_token_by_refresh_token.assert_called_once_with(
            "refresh-token", scopes=["Mail.Read", "User.Read"]
        )
        stored = await store.get_account(account_id)
        assert stored.access_token == "access-new"
        assert stored.refresh_token == "refresh-new"
        assert stored.token_expires_at == NOW + timedelta(hours=1)
        assert account.refresh_token == "refresh-new"

    async def test_refresh_without_rotation_keeps_token(
        self, store: DatabaseStore, msal_app: MagicMock, account_id: int
    ):
        msal_app.acquire_token_by_refresh_token.return_value = {
            "access_token": "access-new",
            "expires_in": 3600,
        }
        account = await store.get_account(account_id)
        await _provider(store, msal_app).refresh(account)
        assert (await store.get_account(account_id)).refresh_token == "refresh-token"

    async def test_missing_access_token_triggers_refresh(
        self, store: DatabaseStore, msal_app: MagicMock
    ):
        tokens = _provider(store, msal_app)
        assert tokens.needs_refresh(_account(access_token=None)) is True
        assert tokens.needs_refresh(_account(token_expires_at=None)) is True

    async def test_revoked_refresh_token(self, store: DatabaseStore, msal_app: MagicMock):
        msal_app.acquire_token_by_refresh_token.return_value = {
            "error": "invalid_grant",
            "error_description": "AADSTS70000: token revoked",
        }
        with pytest.raises(AuthenticationError, match="Re-link"):
            await _provider(store, msal_app).refresh(_account())

    async def test_no_refresh_token(self, store: DatabaseStore, msal_app: MagicMock):
        with pytest.raises(AuthenticationError, match="no refresh token"):
            await _provider(store, msal_app).refresh(_account(refresh_token=None))

    async def test_network_errors_retried(
        self, store: DatabaseStore, msal_app: MagicMock, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr("mailflow.auth.oauth.time.sleep", MagicMock())
        msal_app.acquire_token_by_refresh_token.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            {"access_token": "access-new", "expires_in": 3600},
        ]
        token = await _provider(store, msal_app).refresh(_account(id=999))
        assert token == "access-new"

    async def test_refreshes_for_two_accounts_overlap(
        self, store: DatabaseStore, msal_app: MagicMock
    ):
        barrier = threading.Barrier(2, timeout=5)

        def acquire(refresh_token, scopes):
            barrier.wait()
            return {"access_token": f"access-{refresh_token}", "expires_in": 3600}

        msal_app.acquire_token_by_refresh_token.side_effect = acquire
        provider = _provider(store, msal_app)

        tokens = await asyncio.gather(
            provider.refresh(_account(id=998, refresh_token="a")),
            provider.refresh(_account(id=999, refresh_token="b")),
        )

        assert tokens == ["access-a", "access-b"]

    async def test_missing_client_secret(
        self, store: DatabaseStore, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.delenv("MAILFLOW_OAUTH_CLIENT_SECRET", raising=False)
        with pytest.raises(AuthenticationError, match="client secret"):
            await _provider(store, None).refresh(_account())
