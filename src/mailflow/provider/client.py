"""HTTP client for the mail provider API with retry logic and error handling.

This module provides the transport used by the mailbox adapter:
- Automatic retry with exponential backoff and jitter for transient errors
- Proper handling of rate limits (429 responses, Retry-After)
- Request logging without credentials
- One bearer token per call, since every linked account has its own

Usage:
    from mailflow.provider.client import ProviderClient

    client = ProviderClient(max_retries=3, retry_delays=[1.0, 2.0, 4.0])
    page = client.get("/me/messages", access_token, params={"$top": 500})
"""

import random
import time
from typing import Any

import requests

from mailflow.core.errors import ProviderError, RateLimitExceeded
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://graph.microsoft.com/v1.0"

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]


class ProviderClient:
    """Mail provider API client with retry logic and error handling.

    Attributes:
        base_url: Provider API base URL
        max_retries: Maximum number of retry attempts per request
        retry_delays: Delay (seconds) before each retry; the last value repeats
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        sleep=time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    def _make_url(self, endpoint: str) -> str:
        # Continuation links are already absolute
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _backoff(self, attempt: int) -> float:
        """Configured delay for this attempt with +/-20% jitter."""
        base_delay = self.retry_delays[min(attempt, len(self.retry_delays) - 1)]
        return base_delay + base_delay * 0.2 * (2 * random.random() - 1)

    def _retry_delay(self, response: requests.Response, attempt: int) -> float:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    return base_delay + base_delay * 0.2 * (2 * random.random() - 1)
                except ValueError:
                    logger.debug("Unparsable Retry-After header", value=retry_after[:20])
        return self._backoff(attempt)

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return response.status_code == 429 or 500 <= response.status_code < 600

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str) -> None:
        """Translate an error response into a typed exception.

        Raises:
            RateLimitExceeded: For 429
            ProviderError: For everything else
        """
        try:
            error_info = response.json().get("error", {})
            error_code = error_info.get("code", "unknown")
            error_message = error_info.get("message", response.text)
        except ValueError:
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Provider API error",
            method=method,
            endpoint=endpoint[:120],
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message[:200],
        )

        if response.status_code == 401:
            raise ProviderError(
                f"Authentication failed (401): {error_message}. "
                "The account's access token was rejected; it will be refreshed on the next sync.",
                status_code=401,
                error_code=error_code,
            )
        if response.status_code == 403:
            raise ProviderError(
                f"Permission denied (403): {error_message}. "
                "Check that the mailbox granted the required read permissions.",
                status_code=403,
                error_code=error_code,
            )
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_seconds = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_seconds = None
            raise RateLimitExceeded(
                f"Rate limit exceeded (429) after {self.max_retries} retries. "
                f"Retry after: {retry_after or 'unknown'} seconds.",
                retry_after=retry_after_seconds,
            )
        raise ProviderError(
            f"Provider API error ({response.status_code}): {error_message}",
            status_code=response.status_code,
            error_code=error_code,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request with retry logic.

        Returns:
            Parsed JSON response as a dictionary

        Raises:
            ProviderError: For API errors and exhausted network retries
            RateLimitExceeded: When 429s persist through every retry
        """
        url = self._make_url(endpoint)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        if extra_headers:
            headers.update(extra_headers)

        last_response = None
        for attempt in range(self.max_retries + 1):
            try:
                logger.debug(
                    "Provider API request",
                    method=method,
                    endpoint=endpoint[:120],
                    attempt=attempt + 1,
                    params=list(params.keys()) if params else None,
                )
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=self.timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204:
                        return {}
                    return response.json()

                if self._should_retry(response, attempt):
                    delay = self._retry_delay(response, attempt)
                    logger.warning(
                        "Retrying provider API request",
                        method=method,
                        endpoint=endpoint[:120],
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    self._sleep(delay)
                    continue

                self._raise_for_response(response, method, endpoint)

            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Provider API request timed out, retrying",
                        method=method,
                        endpoint=endpoint[:120],
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    self._sleep(delay)
                    continue
                raise ProviderError(
                    f"Request to {endpoint[:120]} timed out after {self.timeout}s and "
                    f"{self.max_retries} retries. The mail provider may be experiencing issues.",
                    status_code=None,
                ) from None

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "Provider API connection error, retrying",
                        method=method,
                        endpoint=endpoint[:120],
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    self._sleep(delay)
                    continue
                raise ProviderError(
                    f"Connection to the mail provider failed: {e}. "
                    "Check your network connection and try again.",
                    status_code=None,
                ) from e

        if last_response is not None:
            self._raise_for_response(last_response, method, endpoint)
        raise ProviderError(
            f"Request to {endpoint[:120]} failed after {self.max_retries} retries",
            status_code=None,
        )

    def get(
        self,
        endpoint: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        return self.request(
            "GET", endpoint, access_token, params=params, extra_headers=extra_headers
        )
