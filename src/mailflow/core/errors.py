"""Custom exception types for the mail ingestion pipeline.

Error messages follow one standard:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)
"""


class MailflowError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ConfigValidationError(MailflowError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailflowError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class AuthenticationError(MailflowError):
    """Raised when a mailbox access token cannot be acquired or refreshed."""

    pass


class ProviderError(MailflowError):
    """Raised when the mail provider API returns an error.

    Attributes:
        status_code: HTTP status code from the API (None for network failures)
        error_code: Provider error code from the response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_transient(self) -> bool:
        """Whether a retry of the same request could succeed."""
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class RateLimitExceeded(ProviderError):
    """Raised when the provider keeps answering 429 after all retries."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429, error_code="TooManyRequests")
        self.retry_after = retry_after


class DatabaseError(MailflowError):
    """Raised when SQLite operations fail."""

    pass


class BlobBackendError(MailflowError):
    """Raised when the primary blob backend is unreachable or rejects a write."""

    pass


class BlobNotFoundError(MailflowError):
    """Raised when a content hash has no stored blob.

    Attributes:
        content_hash: The hash that was looked up
    """

    def __init__(self, content_hash: str):
        super().__init__(f"No blob stored for content hash {content_hash}")
        self.content_hash = content_hash


class RuleValidationError(MailflowError):
    """Raised when an automation rule definition is malformed.

    Attributes:
        errors: Field-level error strings, one per problem found
    """

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class AnalysisError(MailflowError):
    """Raised when the AI document analysis call fails.

    Attributes:
        content_hash: Hash of the document that was being analyzed
    """

    def __init__(self, message: str, content_hash: str | None = None):
        super().__init__(message)
        self.content_hash = content_hash


class SuggestionNotFoundError(MailflowError):
    """Raised when a financial suggestion id does not exist."""

    def __init__(self, suggestion_id: int):
        super().__init__(f"Financial suggestion {suggestion_id} not found")
        self.suggestion_id = suggestion_id


class SuggestionConflictError(MailflowError):
    """Raised when approving/rejecting a suggestion that is no longer pending.

    Attributes:
        suggestion_id: The suggestion that was targeted
        status: Its current (terminal) status
    """

    def __init__(self, suggestion_id: int, status: str):
        super().__init__(
            f"Financial suggestion {suggestion_id} is already {status}; "
            "only pending suggestions can be approved or rejected"
        )
        self.suggestion_id = suggestion_id
        self.status = status
