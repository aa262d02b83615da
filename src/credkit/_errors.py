"""
Error taxonomy for the credkit package.

Every error raised by credkit extends `CredkitError`, which carries a stable
`kind` tag plus the underlying `cause`, so presentation layers can render the
tag and message without inspecting exception types.

Hierarchy:
    - CredkitError
        - AuthProtocolError: the authentication exchange itself failed.
        - RateLimitExceeded: the attempt budget for a key is exhausted.
        - StoreError: a persistence operation failed.
        - UpstreamError: a request to a backend service failed.
            - NetworkError: transport failure (DNS, connection reset, ...).
                - RequestTimeoutError: the request exceeded its timeout.
            - AuthExpiredError: the service rejected the credential.

Example:
    >>> try:
    ...     client.execute(request)
    ... except CredkitError as e:
    ...     print(e.describe())
    [auth.expired] Credential rejected by 'moon' after renewal
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from credkit._models import AttemptEntry, CredentialKey


class CredkitError(Exception):
    """
    Base class for all credkit errors.

    Attributes:
        kind: Stable taxonomy tag (e.g. "auth.expired").
        message: Description of the failure.
        cause: The underlying exception, if any.
    """

    kind: str = "credkit.error"

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def describe(self) -> str:
        """Return the error rendered as `[kind] message`."""
        return f"[{self.kind}] {self.message}"


class AuthProtocolError(CredkitError):
    """
    Raised when an AuthenticationProtocol fails to produce a credential.

    Delivered to every caller waiting on the same renewal. Never retried
    automatically.

    Attributes:
        reason: Short machine-friendly reason (e.g. "http_error", "invalid_response").
    """

    kind = "auth.protocol_failed"

    def __init__(self, message: str, reason: str = "unknown", cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.reason = reason


class RateLimitExceeded(CredkitError):
    """
    Raised when too many authentication attempts were made for a key.

    This is a budget decision, not a hard failure: callers may wait until
    `retry_at` and try again.

    Attributes:
        key: The credential key that was denied.
        attempts: Attempt log entries counted in the current window.
        retry_at: Epoch seconds when the oldest counted attempt leaves the window.
    """

    kind = "auth.rate_limited"

    def __init__(
        self,
        key: CredentialKey,
        attempts: list[AttemptEntry],
        retry_at: float | None = None,
    ):
        super().__init__(f"Too many attempts to authenticate ({key})")
        self.key = key
        self.attempts = attempts
        self.retry_at = retry_at


class StoreError(CredkitError):
    """Raised when the persistent store fails to read or write."""

    kind = "store.io"


class UpstreamError(CredkitError):
    """
    Raised when a request to a backend service fails.

    Attributes:
        status_code: HTTP status code, if a response was received.
        body: Response body (text or decoded JSON), if available.
    """

    kind = "upstream.error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.body = body


class NetworkError(UpstreamError):
    """Raised when the request never produced a response. Never triggers renewal."""

    kind = "upstream.network"


class RequestTimeoutError(NetworkError):
    """Raised when a request exceeds its own timeout. Never triggers renewal."""

    kind = "upstream.timeout"


class AuthExpiredError(UpstreamError):
    """Raised when the service still rejects the credential after one renewal."""

    kind = "auth.expired"
