"""Per-account OAuth token management.

Refreshes mailbox access tokens through MSAL before they expire and
persists the rotated credentials.

Usage:
    from mailflow.auth import AccountTokenProvider

    tokens = AccountTokenProvider(store, config.oauth)
    token = await tokens.get_access_token(account)
"""

from mailflow.auth.oauth import AccountTokenProvider

__all__ = ["AccountTokenProvider"]
