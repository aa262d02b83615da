"""
credkit: credential lifecycle and session management for Python.

credkit coordinates short-lived credentials that several backend services
issue in exchange for one long-lived user secret. Concurrent callers that find
a credential stale trigger a single renewal, failed requests are retried once
after renewal, fresh logins are kept within a per-service attempt budget, and
background polling survives transient failures without busy-looping.

Quick Start:
    >>> from credkit import (
    ...     HttpRequest, HttpRequestExecutor, ServiceDefinition, SessionManager,
    ...     TokenEndpointProtocol,
    ... )
    >>> manager = SessionManager(services=[
    ...     ServiceDefinition(
    ...         service_id="moon",
    ...         protocol=TokenEndpointProtocol(token_url="https://accounts.example.com/token", client_id="x"),
    ...         executor=HttpRequestExecutor(base_url="https://moon.example.com"),
    ...     ),
    ... ])
    >>> client = manager.get_client(user_secret, "moon")
    >>> response = client.execute(HttpRequest("GET", "/v1/users/me"))

Background polling:
    >>> from credkit import Monitor
    >>> monitor = Monitor(session=client, tick=lambda m: refresh(m.session), interval=60)
    >>> monitor.start()

Global Configuration:
    >>> from credkit import CREDKIT
    >>> CREDKIT.configure(
    ...     store={"backend": "file", "path": "/var/lib/app/credkit"},
    ...     rate_limit={"max_attempts": 4, "time_window": 3600},
    ... )

Main Classes:
    - SessionManager: Hands out ready SessionClients per (user, service).
    - SessionClient: Sends requests, renewing and retrying once on rejection.
    - RenewalCoordinator: Single-flight credential renewal per key.
    - SlidingWindowRateLimiter: Attempt budget for fresh logins.
    - Monitor: Polling loop with error classification and recovery.
    - Store: Persistence for Credential Records and Attempt Logs.

Errors:
    - CredkitError: Base class; every error has a `kind` tag and a `cause`.
    - AuthProtocolError, RateLimitExceeded, StoreError, UpstreamError,
      NetworkError, RequestTimeoutError, AuthExpiredError.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("credkit")

from credkit._auth import (
    AuthenticationProtocol,
    CallableAuthenticationProtocol,
    DelegatedAuthenticationProtocol,
    TokenEndpointProtocol,
)
from credkit._config import (
    CREDKIT,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    CredkitConfig,
    MonitorConfig,
    RateLimitConfig,
    SessionConfig,
    StoreConfig,
)
from credkit._errors import (
    AuthExpiredError,
    AuthProtocolError,
    CredkitError,
    NetworkError,
    RateLimitExceeded,
    RequestTimeoutError,
    StoreError,
    UpstreamError,
)
from credkit._http import (
    AuthFailurePolicy,
    HttpRequest,
    HttpRequestExecutor,
    RequestExecutor,
    ResponseClassification,
    ResponseKind,
)
from credkit._models import (
    AttemptEntry,
    AttemptOutcome,
    CredentialKey,
    CredentialRecord,
)
from credkit._monitor import (
    ErrorClass,
    Monitor,
    MonitorGroup,
    MonitorListener,
    MonitorState,
    TickResult,
)
from credkit._rate_limit import (
    AttemptHandle,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
)
from credkit._renewal import RenewalCoordinator
from credkit._session import (
    CoordinatorRenewalHooks,
    RenewalHooks,
    ServiceDefinition,
    SessionClient,
    SessionManager,
    SessionState,
)
from credkit._store import (
    InMemoryStore,
    JsonFileStore,
    Store,
    create_store,
)

__all__ = [
    "__version__",
    # Configuration
    "CREDKIT",
    "CredkitConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "StoreConfig",
    "RateLimitConfig",
    "SessionConfig",
    "MonitorConfig",
    # Errors
    "CredkitError",
    "AuthProtocolError",
    "RateLimitExceeded",
    "StoreError",
    "UpstreamError",
    "NetworkError",
    "RequestTimeoutError",
    "AuthExpiredError",
    # Models
    "CredentialKey",
    "CredentialRecord",
    "AttemptEntry",
    "AttemptOutcome",
    # Store
    "Store",
    "InMemoryStore",
    "JsonFileStore",
    "create_store",
    # Rate Limiting
    "RateLimitPolicy",
    "SlidingWindowRateLimiter",
    "AttemptHandle",
    # Authentication
    "AuthenticationProtocol",
    "CallableAuthenticationProtocol",
    "TokenEndpointProtocol",
    "DelegatedAuthenticationProtocol",
    # Renewal
    "RenewalCoordinator",
    # HTTP
    "HttpRequest",
    "RequestExecutor",
    "HttpRequestExecutor",
    "AuthFailurePolicy",
    "ResponseClassification",
    "ResponseKind",
    # Sessions
    "SessionClient",
    "SessionState",
    "RenewalHooks",
    "CoordinatorRenewalHooks",
    "ServiceDefinition",
    "SessionManager",
    # Monitor
    "Monitor",
    "MonitorState",
    "MonitorGroup",
    "MonitorListener",
    "TickResult",
    "ErrorClass",
]
