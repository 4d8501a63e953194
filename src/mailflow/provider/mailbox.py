"""Mailbox adapter: the page/attachment contract the sync engine consumes.

Sync only needs two operations from a provider:

    list_page(account, page_token) -> MessagePage(messages, next_token)
    get_attachment(account, message_id, attachment_id) -> bytes

`GraphMailbox` implements them against Microsoft Graph. The HTTP client is
blocking, so every request runs in a worker thread and concurrent account
syncs do not stall the event loop. Other providers (or test fakes) only have
to satisfy the `Mailbox` protocol.

Usage:
    from mailflow.provider.mailbox import GraphMailbox

    mailbox = GraphMailbox(client, tokens, page_size=500)
    page = await mailbox.list_page(account, None)
    while page.next_token:
        page = await mailbox.list_page(account, page.next_token)
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from mailflow.core.errors import ProviderError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.auth.oauth import AccountTokenProvider
    from mailflow.db.store import MailAccount
    from mailflow.provider.client import ProviderClient

logger = get_logger(__name__)

MESSAGE_FIELDS = (
    "id,conversationId,subject,from,toRecipients,ccRecipients,receivedDateTime,"
    "bodyPreview,body,hasAttachments,isRead,flag,importance,categories,parentFolderId"
)
ATTACHMENT_FIELDS = "id,name,contentType,size,isInline"

# Graph serves the body as plain text when asked, html otherwise
PREFER_TEXT_BODY = 'outlook.body-content-type="text"'

JUNK_FOLDER = "junkemail"


@dataclass(frozen=True, slots=True)
class ProviderAttachmentRef:
    """Attachment metadata as listed by the provider (bytes fetched separately)."""

    provider_attachment_id: str
    filename: str
    mime_type: str
    size: int
    is_inline: bool = False


@dataclass
class ProviderMessage:
    """One message as returned by a provider page."""

    provider_message_id: str
    thread_id: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    recipients: list[str] = field(default_factory=list)
    subject: str | None = None
    snippet: str | None = None
    received_at: datetime | None = None
    is_read: bool = False
    is_starred: bool = False
    is_important: bool = False
    labels: list[str] = field(default_factory=list)
    body: str | None = None
    body_mime_type: str | None = None
    attachments: list[ProviderAttachmentRef] = field(default_factory=list)


@dataclass
class MessagePage:
    """A page of messages plus the opaque token for the next one (None at the end)."""

    messages: list[ProviderMessage]
    next_token: str | None = None


class Mailbox(Protocol):
    async def list_page(self, account: MailAccount, page_token: str | None) -> MessagePage: ...

    async def get_attachment(
        self, account: MailAccount, message_id: str, attachment_id: str
    ) -> bytes: ...


def _parse_received(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _address(entry: dict[str, Any] | None) -> tuple[str | None, str | None]:
    address = (entry or {}).get("emailAddress") or {}
    email = address.get("address")
    return (email.lower() if email else None), address.get("name")


class GraphMailbox:
    """Microsoft Graph implementation of the Mailbox contract.

    Attributes:
        client: ProviderClient used for HTTP calls (owns retries)
        tokens: Per-account access token provider
        page_size: Messages per page ($top), at most 500
        default_range_months: Lookback when the account has no range set
    """

    def __init__(
        self,
        client: ProviderClient,
        tokens: AccountTokenProvider,
        page_size: int = 500,
        default_range_months: int = 3,
    ):
        self.client = client
        self.tokens = tokens
        self.page_size = min(page_size, 500)
        self.default_range_months = default_range_months
        self._junk_folder_ids: dict[int, str | None] = {}

    async def list_page(self, account: MailAccount, page_token: str | None) -> MessagePage:
        """Fetch one page, newest first, within the account's sync range."""
        access_token = await self.tokens.get_access_token(account)
        headers = {"Prefer": PREFER_TEXT_BODY}

        if page_token:
            response = await asyncio.to_thread(
                self.client.get, page_token, access_token, extra_headers=headers
            )
        else:
            months = account.sync_range_months or self.default_range_months
            since = datetime.now(UTC) - timedelta(days=30 * months)
            params = {
                "$top": self.page_size,
                "$select": MESSAGE_FIELDS,
                "$filter": f"receivedDateTime ge {since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
                "$orderby": "receivedDateTime desc",
                "$expand": f"attachments($select={ATTACHMENT_FIELDS})",
            }
            response = await asyncio.to_thread(
                self.client.get, "/me/messages", access_token, params=params, extra_headers=headers
            )

        junk_id = await self._junk_folder_id(account, access_token)
        messages = [self._to_message(item, junk_id) for item in response.get("value", [])]
        next_token = response.get("@odata.nextLink")

        logger.debug(
            "provider_page_fetched",
            account_id=account.id,
            messages=len(messages),
            has_next=next_token is not None,
        )
        return MessagePage(messages=messages, next_token=next_token)

    async def get_attachment(
        self, account: MailAccount, message_id: str, attachment_id: str
    ) -> bytes:
        """Download one attachment's bytes.

        Raises:
            ProviderError: If the attachment has no inline content (e.g. an
                item or reference attachment) or the content is not valid base64
        """
        access_token = await self.tokens.get_access_token(account)
        response = await asyncio.to_thread(
            self.client.get, f"/me/messages/{message_id}/attachments/{attachment_id}", access_token
        )
        content = response.get("contentBytes")
        if content is None:
            raise ProviderError(
                f"Attachment {attachment_id[:20]} has no downloadable content "
                f"(type {response.get('@odata.type', 'unknown')})",
                status_code=None,
                error_code="NoContentBytes",
            )
        try:
            return base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProviderError(
                f"Attachment {attachment_id[:20]} content is not valid base64: {e}",
                status_code=None,
                error_code="InvalidContent",
            ) from e

    async def _junk_folder_id(self, account: MailAccount, access_token: str) -> str | None:
        """Id of the account's junk folder, looked up once per account."""
        if account.id not in self._junk_folder_ids:
            try:
                folder = await asyncio.to_thread(
                    self.client.get,
                    f"/me/mailFolders/{JUNK_FOLDER}",
                    access_token,
                    params={"$select": "id"},
                )
                self._junk_folder_ids[account.id] = folder.get("id")
            except ProviderError as e:
                if e.is_transient:
                    raise
                logger.warning("junk_folder_lookup_failed", account_id=account.id, error=str(e))
                self._junk_folder_ids[account.id] = None
        return self._junk_folder_ids[account.id]

    def _to_message(self, item: dict[str, Any], junk_folder_id: str | None) -> ProviderMessage:
        sender_email, sender_name = _address(item.get("from"))
        recipients = [
            email
            for entry in (item.get("toRecipients") or []) + (item.get("ccRecipients") or [])
            if (email := _address(entry)[0])
        ]

        labels = list(item.get("categories") or [])
        if junk_folder_id and item.get("parentFolderId") == junk_folder_id:
            labels.append("SPAM")

        body = item.get("body") or {}
        content_type = (body.get("contentType") or "text").lower()

        attachments = [
            ProviderAttachmentRef(
                provider_attachment_id=att["id"],
                filename=att.get("name") or "attachment",
                mime_type=att.get("contentType") or "application/octet-stream",
                size=int(att.get("size") or 0),
                is_inline=bool(att.get("isInline")),
            )
            for att in item.get("attachments") or []
            if att.get("id")
        ]

        return ProviderMessage(
            provider_message_id=item["id"],
            thread_id=item.get("conversationId"),
            sender_email=sender_email,
            sender_name=sender_name,
            recipients=recipients,
            subject=item.get("subject"),
            snippet=item.get("bodyPreview"),
            received_at=_parse_received(item.get("receivedDateTime")),
            is_read=bool(item.get("isRead")),
            is_starred=(item.get("flag") or {}).get("flagStatus") == "flagged",
            is_important=item.get("importance") == "high",
            labels=labels,
            body=body.get("content"),
            body_mime_type="text/html" if content_type == "html" else "text/plain",
            attachments=attachments,
        )
