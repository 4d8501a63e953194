"""Per-account OAuth token management for linked mailboxes.

Each MailAccount owns its credential pair. Before a sync touches the
provider, the access token is checked against its expiry and refreshed
through MSAL's refresh-token grant when it is about to lapse. Providers
rotate refresh tokens, so the new pair is written back to the account row
immediately; losing it would strand the mailbox.

Usage:
    from mailflow.auth.oauth import AccountTokenProvider

    tokens = AccountTokenProvider(store, config.oauth)
    access_token = await tokens.get_access_token(account)
"""

from __future__ import annotations

import asyncio
import os
import random
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import msal
import requests

from mailflow.core.errors import AuthenticationError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.config_schema import OAuthConfig
    from mailflow.db.store import DatabaseStore, MailAccount

logger = get_logger(__name__)

# Retry configuration for MSAL network calls
MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]


class AccountTokenProvider:
    """Hands out valid access tokens for mail accounts, refreshing as needed.

    Refreshes are serialized per account so two concurrent callers never
    spend the same refresh token twice.

    Attributes:
        store: DatabaseStore used to persist rotated credentials
        oauth: OAuth application settings
    """

    def __init__(
        self,
        store: DatabaseStore,
        oauth: OAuthConfig,
        app: Any | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.store = store
        self.oauth = oauth
        self._app = app
        self._now = now
        self._locks: dict[int, asyncio.Lock] = {}

    def _get_app(self) -> Any:
        """Build the MSAL confidential client on first use."""
        if self._app is not None:
            return self._app

        if not self.oauth.client_id or not self.oauth.client_id.strip():
            raise AuthenticationError(
                "oauth.client_id is not configured. "
                "Register an application with the mail provider and set oauth.client_id in config.yaml."
            )
        client_secret = os.environ.get(self.oauth.client_secret_env)
        if not client_secret:
            raise AuthenticationError(
                f"OAuth client secret not found in ${self.oauth.client_secret_env}. "
                "Add it to your .env file or environment."
            )

        self._app = msal.ConfidentialClientApplication(
            client_id=self.oauth.client_id,
            client_credential=client_secret,
            authority=f"https://login.microsoftonline.com/{self.oauth.tenant_id}",
        )
        logger.debug(
            "OAuth client initialized",
            client_id=self.oauth.client_id[:8] + "...",
            tenant_id=self.oauth.tenant_id,
        )
        return self._app

    def needs_refresh(self, account: MailAccount) -> bool:
        if not account.access_token or account.token_expires_at is None:
            return True
        margin = timedelta(seconds=self.oauth.refresh_margin_seconds)
        return account.token_expires_at <= self._now() + margin

    async def get_access_token(self, account: MailAccount) -> str:
        """Return a usable access token for the account.

        Raises:
            AuthenticationError: If the account has no refresh token or the
                provider rejects the refresh
        """
        if not self.needs_refresh(account):
            return account.access_token

        lock = self._locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited
            if not self.needs_refresh(account):
                return account.access_token
            return await self.refresh(account)

    async def refresh(self, account: MailAccount) -> str:
        """Exchange the refresh token and persist the rotated pair."""
        if not account.refresh_token:
            raise AuthenticationError(
                f"Account {account.email} has no refresh token. "
                "Re-link the mailbox to grant offline access."
            )

        # MSAL client is built on the loop thread; only the blocking grant runs in a worker
        self._get_app()
        result = await asyncio.to_thread(self._acquire_with_retry, account.refresh_token)

        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "Token refresh failed")
            logger.error(
                "token_refresh_failed",
                account_id=account.id,
                error=error,
                description=description[:200],
            )
            if error == "invalid_grant":
                raise AuthenticationError(
                    f"Refresh token for {account.email} was revoked or expired. "
                    "Re-link the mailbox."
                )
            raise AuthenticationError(f"Token refresh failed for {account.email}: {description}")

        expires_at = self._now() + timedelta(seconds=int(result.get("expires_in", 3600)))
        rotated = result.get("refresh_token")
        await self.store.update_account_credentials(
            account.id,
            access_token=result["access_token"],
            refresh_token=rotated,
            token_expires_at=expires_at,
        )

        account.access_token = result["access_token"]
        account.token_expires_at = expires_at
        if rotated:
            account.refresh_token = rotated

        logger.info(
            "token_refreshed",
            account_id=account.id,
            rotated=bool(rotated),
            expires_at=expires_at.isoformat(),
        )
        return account.access_token

    def _acquire_with_retry(self, refresh_token: str) -> dict[str, Any]:
        """Refresh-token grant with retry for transient network errors only."""
        app = self._get_app()
        last_error: Exception | None = None

        for attempt in range(MSAL_MAX_RETRIES):
            try:
                return app.acquire_token_by_refresh_token(refresh_token, scopes=self.oauth.scopes)
            except requests.exceptions.RequestException as e:
                last_error = e
                if attempt < MSAL_MAX_RETRIES - 1:
                    delay = MSAL_RETRY_DELAYS[attempt]
                    jitter = delay * 0.2 * (2 * random.random() - 1)
                    actual_delay = delay + jitter
                    logger.warning(
                        "Token refresh failed, retrying",
                        attempt=attempt + 1,
                        max_retries=MSAL_MAX_RETRIES,
                        delay=actual_delay,
                        error=str(e),
                    )
                    time.sleep(actual_delay)

        raise AuthenticationError(
            f"Token refresh failed after {MSAL_MAX_RETRIES} attempts: {last_error}. "
            "Check your network connection and try again."
        ) from last_error
