"""
Authentication protocols for the credkit package.

An AuthenticationProtocol turns a long-lived user secret into a short-lived
Credential Record for one service. Protocols may perform several chained
network calls; credkit treats them as opaque and only coordinates when and how
often they run.

The main classes are:
- AuthenticationProtocol: Abstract base class for protocols.
- CallableAuthenticationProtocol: Adapts a plain function.
- TokenEndpointProtocol: Single form-encoded POST to a token endpoint.
- DelegatedAuthenticationProtocol: Exchanges another service's credential.

Example:
    >>> from credkit._auth import TokenEndpointProtocol
    >>> protocol = TokenEndpointProtocol(
    ...     token_url="https://accounts.example.com/connect/token",
    ...     client_id="my-client-id",
    ... )
    >>> record = protocol.authenticate("my-session-token")
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, override

import requests

from credkit._errors import AuthProtocolError, CredkitError
from credkit._models import CredentialRecord

if TYPE_CHECKING:
    from credkit._session import SessionManager

logger = logging.getLogger(__name__)


# =============================================================================
# Abstract Base Class
# =============================================================================


class AuthenticationProtocol(ABC):
    """
    Abstract base class for authentication protocols.

    Implementations must be safe to call from any thread. The Renewal
    Coordinator guarantees that at most one call per (user, service) key is in
    flight at any time.

    Example:
        >>> class MyProtocol(AuthenticationProtocol):
        ...     def authenticate(self, user_secret: str) -> CredentialRecord:
        ...         return CredentialRecord(token="t", expires_at=time.time() + 900)
    """

    @abstractmethod
    def authenticate(self, user_secret: str) -> CredentialRecord:
        """
        Exchange the user secret for a new Credential Record.

        Raises:
            AuthProtocolError: If the exchange fails.
        """
        pass


# =============================================================================
# Implementations
# =============================================================================


class CallableAuthenticationProtocol(AuthenticationProtocol):
    """
    Adapts a function `(user_secret) -> CredentialRecord` to the protocol interface.

    Exceptions that are not CredkitErrors are wrapped in AuthProtocolError so the
    kind tag and the original cause survive propagation.

    Example:
        >>> protocol = CallableAuthenticationProtocol(my_login_function, name="moon")
    """

    def __init__(self, func: Callable[[str], CredentialRecord], name: str | None = None):
        assert func is not None, "func cannot be None."
        assert callable(func), "func must be callable."

        self._func = func
        self.name = name or getattr(func, "__name__", "callable")

    @override
    def authenticate(self, user_secret: str) -> CredentialRecord:
        try:
            record = self._func(user_secret)
        except CredkitError:
            raise
        except Exception as e:
            raise AuthProtocolError(
                f"Authentication protocol '{self.name}' failed: {e}",
                reason="protocol_error",
                cause=e,
            ) from e

        if not isinstance(record, CredentialRecord):
            raise AuthProtocolError(
                f"Authentication protocol '{self.name}' returned {type(record).__name__}, "
                f"expected CredentialRecord",
                reason="invalid_response",
            )
        return record


class TokenEndpointProtocol(AuthenticationProtocol):
    """
    Exchanges the user secret at an OAuth2-style token endpoint.

    Sends one form-encoded POST containing the user secret (under
    `secret_field`) plus `extra_fields`, and reads `access_token` and
    `expires_in` from the JSON response. Remaining response fields are kept as
    record metadata.

    Attributes:
        DEFAULT_EXPIRES_IN: Lifetime assumed when the response omits expires_in.

    Args:
        token_url: Token endpoint URL.
        client_id: Client identifier sent with the request.
        secret_field: Form field carrying the user secret.
        grant_type: OAuth2 grant type.
        extra_fields: Additional form fields.
        timeout: Request timeout in seconds. Defaults to CREDKIT.config.session.request_timeout.
        session: Optional requests.Session to reuse connections.
    """

    DEFAULT_EXPIRES_IN = 900

    def __init__(
        self,
        token_url: str,
        client_id: str,
        secret_field: str = "session_token",
        grant_type: str = "urn:ietf:params:oauth:grant-type:jwt-bearer-session-token",
        extra_fields: dict[str, str] | None = None,
        timeout: int | None = None,
        session: requests.Session | None = None,
    ):
        assert token_url, "token_url cannot be empty"
        assert token_url.startswith(("http://", "https://")), "token_url must be an http(s) URL"
        assert client_id, "client_id cannot be empty"
        assert secret_field, "secret_field cannot be empty"

        if timeout is None:
            from credkit._config import CREDKIT

            timeout = CREDKIT.config.session.request_timeout

        assert timeout > 0, "timeout must be greater than 0"

        self._token_url = token_url
        self._client_id = client_id
        self._secret_field = secret_field
        self._grant_type = grant_type
        self._extra_fields = dict(extra_fields or {})
        self._timeout = timeout
        self._session = session or requests.Session()

    @override
    def authenticate(self, user_secret: str) -> CredentialRecord:
        """
        Fetch a new token from the token endpoint.

        Raises:
            AuthProtocolError: If the request fails or the response is invalid.
        """
        assert user_secret, "user_secret cannot be empty"

        try:
            response = self._session.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "grant_type": self._grant_type,
                    self._secret_field: user_secret,
                    **self._extra_fields,
                },
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                timeout=self._timeout,
            )
            response.raise_for_status()

            data: dict[str, Any] = response.json()
            issued_at = time.time()
            expires_in = float(data.get("expires_in", self.DEFAULT_EXPIRES_IN))
            metadata = {k: v for k, v in data.items() if k not in ("access_token", "expires_in")}

            return CredentialRecord(
                token=data["access_token"],
                issued_at=issued_at,
                expires_at=issued_at + expires_in,
                metadata=metadata,
            )

        except requests.HTTPError as e:
            raise AuthProtocolError(
                f"Failed to obtain access token (HTTP {e.response.status_code}): {e}",
                reason="http_error",
                cause=e,
            ) from e
        except requests.RequestException as e:
            raise AuthProtocolError(
                f"Failed to obtain access token: {e}",
                reason="network_error",
                cause=e,
            ) from e
        except KeyError as e:
            raise AuthProtocolError(
                f"Invalid token response: missing '{e}' field",
                reason="invalid_response",
                cause=e,
            ) from e
        except (TypeError, ValueError) as e:
            raise AuthProtocolError(
                f"Invalid token response: {e}",
                reason="invalid_response",
                cause=e,
            ) from e


class DelegatedAuthenticationProtocol(AuthenticationProtocol):
    """
    Authenticates by exchanging a credential of another (upstream) service.

    Several services only issue credentials in exchange for a credential of a
    parent service. This protocol asks the SessionManager for a ready client of
    the upstream service (renewing it through the shared coordinator when
    needed) and passes its credential to `exchange`.

    Example:
        >>> protocol = DelegatedAuthenticationProtocol(
        ...     manager=manager,
        ...     upstream_service="coral",
        ...     exchange=lambda upstream: login_with_coral(upstream.token),
        ... )

    Args:
        manager: SessionManager owning the upstream service.
        upstream_service: Service id whose credential is exchanged.
        exchange: Function `(upstream_record) -> CredentialRecord`.
    """

    def __init__(
        self,
        manager: SessionManager,
        upstream_service: str,
        exchange: Callable[[CredentialRecord], CredentialRecord],
    ):
        assert manager is not None, "manager cannot be None."
        assert upstream_service, "upstream_service cannot be empty."
        assert callable(exchange), "exchange must be callable."

        self._manager = manager
        self._upstream_service = upstream_service
        self._exchange = exchange

    @override
    def authenticate(self, user_secret: str) -> CredentialRecord:
        upstream = self._manager.get_client(user_secret, self._upstream_service)
        upstream_record = upstream.ensure_fresh()
        logger.debug(f"{upstream.key} | Auth | Exchanging upstream credential")

        try:
            record = self._exchange(upstream_record)
        except CredkitError:
            raise
        except Exception as e:
            raise AuthProtocolError(
                f"Credential exchange with '{self._upstream_service}' failed: {e}",
                reason="exchange_failed",
                cause=e,
            ) from e

        if not isinstance(record, CredentialRecord):
            raise AuthProtocolError(
                f"Credential exchange with '{self._upstream_service}' returned "
                f"{type(record).__name__}, expected CredentialRecord",
                reason="invalid_response",
            )
        return record
