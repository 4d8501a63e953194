"""Mail provider API client.

Provides a requests-based client with retry and rate-limit handling, and the
mailbox adapter that pages messages and downloads attachments.

Usage:
    from mailflow.provider import GraphMailbox, ProviderClient

    client = ProviderClient(base_url=config.sync.provider_base_url)
    mailbox = GraphMailbox(client, tokens, page_size=500)
    page = await mailbox.list_page(account, page_token=None)
"""

from mailflow.provider.client import ProviderClient
from mailflow.provider.mailbox import (
    GraphMailbox,
    Mailbox,
    MessagePage,
    ProviderAttachmentRef,
    ProviderMessage,
)

__all__ = [
    "GraphMailbox",
    "Mailbox",
    "MessagePage",
    "ProviderAttachmentRef",
    "ProviderClient",
    "ProviderMessage",
]
