"""
Request execution and response classification for backend services.

The Session Client never talks to the network itself. It hands each request and
the current credential to a RequestExecutor, and asks the same executor to
classify the response so it can decide whether to renew and retry.

Available implementations:
    - HttpRequestExecutor: Sends requests with `requests` and a Bearer token.

Which responses mean "credential rejected" differs per service, so it is
described by an AuthFailurePolicy lookup table instead of being hard-coded.

Example:
    >>> from credkit._http import AuthFailurePolicy, HttpRequest, HttpRequestExecutor
    >>> executor = HttpRequestExecutor(
    ...     base_url="https://api.example.com",
    ...     policy=AuthFailurePolicy(
    ...         status_codes=frozenset({401}),
    ...         remaining_lifetime_header="x-token-remaining",
    ...     ),
    ... )
    >>> response = executor.send(record, HttpRequest("GET", "/v1/friends"))
    >>> executor.classify(response).kind
    <ResponseKind.OK: 'ok'>
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, override

import requests

from credkit._errors import NetworkError, RequestTimeoutError
from credkit._models import CredentialRecord

logger = logging.getLogger(__name__)


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class HttpRequest:
    """
    A request to a backend service, independent of any credential.

    Attributes:
        method: HTTP method.
        url: Absolute URL, or a path relative to the executor's base_url.
        headers: Extra headers. The Authorization header is set by the executor.
        params: Query string parameters.
        json: JSON body.
        data: Form body.
        timeout: Request timeout in seconds. Defaults to the executor's timeout.
    """

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    json: Any = None
    data: Any = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        assert self.method, "method cannot be empty."
        assert self.url, "url cannot be empty."


class ResponseKind(StrEnum):
    OK = "ok"
    AUTH_EXPIRED = "auth_expired"
    AUTH_EXPIRES_SOON = "auth_expires_soon"
    OTHER_ERROR = "other_error"


@dataclass(frozen=True)
class ResponseClassification:
    """
    What a response means for the credential lifecycle.

    Attributes:
        kind: Classification of the response.
        remaining_seconds: Credential lifetime reported by the service, if any.
        status_code: HTTP status code.
        body: Decoded JSON body, or the raw text when it is not JSON.
    """

    kind: ResponseKind
    remaining_seconds: float | None = None
    status_code: int | None = None
    body: Any = None

    @property
    def is_auth_failure(self) -> bool:
        return self.kind == ResponseKind.AUTH_EXPIRED


@dataclass(frozen=True)
class AuthFailurePolicy:
    """
    Per-service table describing how a service signals credential problems.

    Attributes:
        status_codes: HTTP status codes meaning the credential was rejected.
        body_status_field: JSON body field carrying an application status, for
            services that answer HTTP 200 with an error status in the body.
        body_status_values: Values of `body_status_field` meaning the credential
            was rejected (e.g. 9404).
        remaining_lifetime_header: Response header with the credential's
            remaining lifetime in seconds.
        expires_soon_threshold: Remaining lifetime (seconds) below which the
            credential should be renewed proactively. Defaults to
            CREDKIT.config.session.expires_soon_threshold.

    Example:
        >>> # Service answering 200 with {"status": 9404} on expired tokens
        >>> AuthFailurePolicy(body_status_field="status", body_status_values=frozenset({9404}))
    """

    status_codes: frozenset[int] = frozenset({401})
    body_status_field: str | None = None
    body_status_values: frozenset[Any] = frozenset()
    remaining_lifetime_header: str | None = None
    expires_soon_threshold: float | None = None

    def __post_init__(self) -> None:
        assert not (self.body_status_values and not self.body_status_field), \
            "body_status_values requires body_status_field."
        if self.expires_soon_threshold is None:
            from credkit._config import CREDKIT

            object.__setattr__(self, "expires_soon_threshold", CREDKIT.config.session.expires_soon_threshold)
        assert self.expires_soon_threshold >= 0, "expires_soon_threshold must be >= 0."

    def classify(
        self,
        status_code: int,
        body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> ResponseClassification:
        """
        Classify a response by status code, body status and lifetime header.

        Rejection wins over any other signal. The lifetime header is only
        considered for successful responses.
        """
        if status_code in self.status_codes:
            return ResponseClassification(ResponseKind.AUTH_EXPIRED, status_code=status_code, body=body)

        if self.body_status_field and isinstance(body, dict):
            if body.get(self.body_status_field) in self.body_status_values:
                return ResponseClassification(ResponseKind.AUTH_EXPIRED, status_code=status_code, body=body)

        if status_code >= 400:
            return ResponseClassification(ResponseKind.OTHER_ERROR, status_code=status_code, body=body)

        remaining = self._remaining_lifetime(headers)
        if remaining is not None and remaining < self.expires_soon_threshold:
            return ResponseClassification(
                ResponseKind.AUTH_EXPIRES_SOON,
                remaining_seconds=remaining,
                status_code=status_code,
                body=body,
            )

        return ResponseClassification(
            ResponseKind.OK, remaining_seconds=remaining, status_code=status_code, body=body
        )

    def _remaining_lifetime(self, headers: Mapping[str, str] | None) -> float | None:
        if not self.remaining_lifetime_header or headers is None:
            return None
        value = headers.get(self.remaining_lifetime_header)
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            logger.warning(
                f"⚠️ Ignoring invalid '{self.remaining_lifetime_header}' header value: {value!r}"
            )
            return None


# =============================================================================
# Abstract Base Class
# =============================================================================


class RequestExecutor(ABC):
    """
    Abstract base class for request executors.

    One executor exists per service. It must be safe to call from any thread.

    Example:
        >>> class MyExecutor(RequestExecutor):
        ...     def send(self, credential, request):
        ...         return my_transport(request, token=credential.token)
        ...     def classify(self, response):
        ...         return ResponseClassification(ResponseKind.OK, status_code=200)
    """

    @abstractmethod
    def send(self, credential: CredentialRecord, request: HttpRequest) -> Any:
        """
        Send `request` authenticated with `credential`.

        Returns:
            The raw response.

        Raises:
            NetworkError: If no response was received (RequestTimeoutError on timeout).
        """
        pass

    @abstractmethod
    def classify(self, response: Any) -> ResponseClassification:
        """Classify a raw response returned by `send()`."""
        pass


# =============================================================================
# Implementations
# =============================================================================


class HttpRequestExecutor(RequestExecutor):
    """
    Executor sending requests over HTTP with `requests`.

    The credential is sent as `Authorization: Bearer <token>`. Transport
    failures are converted into NetworkError (RequestTimeoutError on timeout),
    keeping the original exception as cause.

    Args:
        base_url: Prefix for relative request URLs.
        policy: How the service signals credential problems.
        session: Optional requests.Session to reuse connections.
        timeout: Default request timeout in seconds. Defaults to
            CREDKIT.config.session.request_timeout.
        default_headers: Headers sent with every request.
    """

    def __init__(
        self,
        base_url: str | None = None,
        policy: AuthFailurePolicy | None = None,
        session: requests.Session | None = None,
        timeout: float | None = None,
        default_headers: dict[str, str] | None = None,
    ):
        if timeout is None:
            from credkit._config import CREDKIT

            timeout = CREDKIT.config.session.request_timeout

        assert timeout > 0, "Timeout must be greater than 0."
        assert base_url is None or base_url.startswith(("http://", "https://")), \
            "base_url must be an http(s) URL"

        self.base_url = base_url.rstrip("/") if base_url else None
        self.policy = policy or AuthFailurePolicy()
        self.timeout = timeout
        self._session = session or requests.Session()
        self._default_headers = dict(default_headers or {})

    def _build_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        assert self.base_url, f"Relative URL '{url}' requires a base_url."
        return f"{self.base_url}/{url.lstrip('/')}"

    @override
    def send(self, credential: CredentialRecord, request: HttpRequest) -> requests.Response:
        assert credential is not None, "credential cannot be None."

        url = self._build_url(request.url)
        headers = {
            **self._default_headers,
            **request.headers,
            "Authorization": f"Bearer {credential.token}",
        }
        timeout = request.timeout or self.timeout

        try:
            return self._session.request(
                request.method,
                url,
                headers=headers,
                params=request.params,
                json=request.json,
                data=request.data,
                timeout=timeout,
            )
        except requests.Timeout as e:
            raise RequestTimeoutError(
                f"{request.method} {url} timed out after {timeout}s", cause=e
            ) from e
        except requests.RequestException as e:
            raise NetworkError(f"{request.method} {url} failed: {e}", cause=e) from e

    @override
    def classify(self, response: requests.Response) -> ResponseClassification:
        return self.policy.classify(
            response.status_code,
            body=_decode_body(response),
            headers=response.headers,
        )


def _decode_body(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
