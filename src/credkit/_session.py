"""
Session clients: requests with renewal-aware retry.

A SessionClient holds the current Credential Record for one (user, service)
key. Before sending, it renews a credential it already knows is stale; when a
response signals that the credential was rejected, it renews through the
shared RenewalCoordinator and retries exactly once.

The SessionManager owns one client per key and hands out ready clients.

Example:
    >>> manager = SessionManager(services=[
    ...     ServiceDefinition("moon", protocol=moon_protocol, executor=moon_executor),
    ... ])
    >>> client = manager.get_client(user_secret, "moon")
    >>> response = client.execute(HttpRequest("GET", "/v1/users/me"))
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, override

from credkit._auth import AuthenticationProtocol
from credkit._errors import AuthExpiredError, CredkitError, UpstreamError
from credkit._http import HttpRequest, RequestExecutor, ResponseClassification, ResponseKind
from credkit._models import CredentialKey, CredentialRecord
from credkit._rate_limit import RateLimitPolicy
from credkit._renewal import RenewalCoordinator
from credkit._store import Store, create_store

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    FRESH = "fresh"
    STALE_LOCAL = "stale_local"
    RENEWING = "renewing"


# =============================================================================
# Renewal Hooks
# =============================================================================


class RenewalHooks(ABC):
    """
    Strategy invoked by a SessionClient when its credential must be replaced.

    Both hooks receive the credential the client was using (None if it had
    none) and return the credential the client should adopt.
    """

    @abstractmethod
    def on_token_expired(
        self,
        client: SessionClient,
        credential: CredentialRecord | None,
    ) -> CredentialRecord:
        """Called when `credential` is missing, expired or was rejected."""
        pass

    @abstractmethod
    def on_token_should_renew(
        self,
        client: SessionClient,
        credential: CredentialRecord,
        remaining: float | None,
    ) -> CredentialRecord:
        """Called when the service reports `credential` expires within `remaining` seconds."""
        pass


class CoordinatorRenewalHooks(RenewalHooks):
    """
    Renews through a shared RenewalCoordinator.

    The token the client was using is passed as the stale token, so a client
    that lags behind a renewal made by another caller adopts the newer record
    without a second exchange.
    """

    def __init__(
        self,
        coordinator: RenewalCoordinator,
        user_secret: str,
        protocol: AuthenticationProtocol,
        policy: RateLimitPolicy | None = None,
    ):
        assert coordinator is not None, "coordinator cannot be None."
        assert user_secret, "user_secret cannot be empty."
        assert protocol is not None, "protocol cannot be None."

        self.coordinator = coordinator
        self.protocol = protocol
        self.policy = policy
        self._user_secret = user_secret

    @override
    def on_token_expired(
        self,
        client: SessionClient,
        credential: CredentialRecord | None,
    ) -> CredentialRecord:
        if credential is None:
            return self.coordinator.get_fresh(
                client.key, self.protocol, self._user_secret,
                margin=client.renew_margin,
                policy=self.policy,
            )
        return self.coordinator.renew(
            client.key, self.protocol, self._user_secret,
            stale_token=credential.token,
            policy=self.policy,
        )

    @override
    def on_token_should_renew(
        self,
        client: SessionClient,
        credential: CredentialRecord,
        remaining: float | None,
    ) -> CredentialRecord:
        return self.on_token_expired(client, credential)


# =============================================================================
# Session Client
# =============================================================================


class SessionClient:
    """
    Sends requests for one (user, service) key, renewing the credential as needed.

    States:
        FRESH: the credential is believed valid.
        STALE_LOCAL: the credential is missing or known to be stale; the next
            request renews before sending.
        RENEWING: a renewal started by this client is in progress.

    A failed renewal leaves the client in STALE_LOCAL, so the next caller tries
    again instead of reusing the stale record.

    Args:
        key: Credential key of this client.
        executor: Sends requests and classifies responses.
        hooks: Renewal strategy.
        credential: Initial credential, if any.
        renew_margin: Seconds before expiry at which the credential is treated
            as stale. Defaults to CREDKIT.config.session.renew_margin.
        clock: Returns epoch seconds. Injectable for tests.
    """

    def __init__(
        self,
        key: CredentialKey,
        executor: RequestExecutor,
        hooks: RenewalHooks,
        credential: CredentialRecord | None = None,
        renew_margin: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        assert key is not None, "key cannot be None."
        assert executor is not None, "executor cannot be None."
        assert hooks is not None, "hooks cannot be None."

        if renew_margin is None:
            from credkit._config import CREDKIT

            renew_margin = CREDKIT.config.session.renew_margin

        assert renew_margin >= 0, "renew_margin must be >= 0."

        self.key = key
        self.executor = executor
        self.hooks = hooks
        self.renew_margin = renew_margin
        self._clock = clock

        self._lock = threading.Lock()
        self._credential = credential
        self._stale_token: str | None = None
        self._state = SessionState.FRESH if credential is not None else SessionState.STALE_LOCAL

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def credential(self) -> CredentialRecord | None:
        with self._lock:
            return self._credential

    # ======================
    # Public API
    # ======================

    def execute(self, request: HttpRequest) -> Any:
        """
        Send `request`, renewing and retrying once if the credential is rejected.

        Returns:
            The raw response of the executor.

        Raises:
            AuthExpiredError: If the retried request is rejected as well.
            UpstreamError: If the service answered with a non-auth error.
            NetworkError: If no response was received. Never triggers renewal.
            RateLimitExceeded, AuthProtocolError: If the renewal failed.
        """
        assert request is not None, "request cannot be None."

        credential = self.ensure_fresh()
        response = self.executor.send(credential, request)
        result = self.executor.classify(response)

        if result.kind == ResponseKind.AUTH_EXPIRED:
            logger.info(f"{self.key} | Session | Credential rejected (HTTP {result.status_code}), renewing")
            self._mark_stale(credential)
            credential = self._renew(credential)

            response = self.executor.send(credential, request)
            result = self.executor.classify(response)
            if result.kind == ResponseKind.AUTH_EXPIRED:
                self._mark_stale(credential)
                logger.error(f"{self.key} | Session | ❌ Credential rejected again after renewal")
                raise AuthExpiredError(
                    f"Credential rejected by '{self.key.service_id}' after renewal",
                    status_code=result.status_code,
                    body=result.body,
                )

        elif result.kind == ResponseKind.AUTH_EXPIRES_SOON:
            self._renew_soon(credential, result)

        if result.kind == ResponseKind.OTHER_ERROR:
            raise UpstreamError(
                f"Request to '{self.key.service_id}' failed with HTTP {result.status_code}",
                status_code=result.status_code,
                body=result.body,
            )

        return response

    def ensure_fresh(self) -> CredentialRecord:
        """
        Return a credential fit for a new request.

        Renews first when the credential is missing, known to be stale, or
        expires within `renew_margin`.
        """
        with self._lock:
            credential = self._credential
            known_stale = credential is not None and credential.token == self._stale_token

        if credential is None or known_stale:
            return self._renew(credential)

        if credential.needs_renewal(self._clock(), margin=self.renew_margin):
            logger.info(f"{self.key} | Session | Credential expires soon, renewing before sending")
            self._mark_stale(credential)
            return self._renew(credential)

        return credential

    def renew(self, force: bool = False) -> CredentialRecord:
        """
        Renew out of band.

        Without `force`, behaves like `ensure_fresh()`. With `force`, the
        current credential is treated as rejected.
        """
        if force:
            credential = self.credential
            if credential is not None:
                self._mark_stale(credential)
        return self.ensure_fresh()

    # ======================
    # Internals
    # ======================

    def _mark_stale(self, credential: CredentialRecord) -> None:
        with self._lock:
            # Another caller may already have adopted a newer record
            if self._credential is credential:
                self._stale_token = credential.token
                self._state = SessionState.STALE_LOCAL

    def _renew(self, stale: CredentialRecord | None) -> CredentialRecord:
        with self._lock:
            self._state = SessionState.RENEWING

        try:
            record = self.hooks.on_token_expired(self, stale)
        except BaseException:
            with self._lock:
                self._state = SessionState.STALE_LOCAL
            raise

        return self._adopt(record, stale)

    def _renew_soon(self, credential: CredentialRecord, result: ResponseClassification) -> None:
        logger.info(
            f"{self.key} | Session | Credential expires in {result.remaining_seconds:.0f}s, renewing"
        )
        with self._lock:
            self._state = SessionState.RENEWING

        try:
            record = self.hooks.on_token_should_renew(self, credential, result.remaining_seconds)
        except CredkitError as e:
            with self._lock:
                self._state = self._current_state()
            logger.warning(
                f"{self.key} | Session | ⚠️ Proactive renewal failed, keeping current credential: {e.describe()}"
            )
            return

        self._adopt(record, credential)

    def _adopt(self, record: CredentialRecord, stale: CredentialRecord | None) -> CredentialRecord:
        """
        Replace the credential this renewal started from with `record`.

        If another caller already replaced it, the client keeps that credential.
        """
        with self._lock:
            current = self._credential
            if current is None or current is stale or current.token == self._stale_token:
                self._credential = record
                if record.token != self._stale_token:
                    self._stale_token = None
            self._state = self._current_state()
            return self._credential

    def _current_state(self) -> SessionState:
        # Called with self._lock held
        if self._credential is None or self._credential.token == self._stale_token:
            return SessionState.STALE_LOCAL
        return SessionState.FRESH


# =============================================================================
# Session Manager
# =============================================================================


@dataclass(frozen=True)
class ServiceDefinition:
    """
    Everything needed to talk to one backend service.

    Attributes:
        service_id: Unique service identifier (e.g. "coral", "moon").
        protocol: Exchanges the user secret for a credential.
        executor: Sends requests and classifies responses.
        rate_limit: Attempt budget. Defaults to the limiter's default policy.
    """

    service_id: str
    protocol: AuthenticationProtocol
    executor: RequestExecutor
    rate_limit: RateLimitPolicy | None = None

    def __post_init__(self) -> None:
        assert self.service_id, "service_id cannot be empty."
        assert self.protocol is not None, "protocol cannot be None."
        assert self.executor is not None, "executor cannot be None."


class SessionManager:
    """
    Hands out ready SessionClients, one per (user, service) key.

    All clients share one RenewalCoordinator and one Store.

    Args:
        store: Store for records and attempts. Defaults to `create_store()`.
        coordinator: Shared coordinator. Defaults to one over `store`.
        services: Service definitions to register.
        clock: Returns epoch seconds. Injectable for tests.
    """

    def __init__(
        self,
        store: Store | None = None,
        coordinator: RenewalCoordinator | None = None,
        services: Iterable[ServiceDefinition] = (),
        clock: Callable[[], float] = time.time,
    ):
        self.store = store or (coordinator.store if coordinator else create_store())
        self.coordinator = coordinator or RenewalCoordinator(self.store, clock=clock)
        self._clock = clock

        self._services: dict[str, ServiceDefinition] = {}
        self._clients: dict[CredentialKey, SessionClient] = {}
        self._lock = threading.Lock()

        for service in services:
            self.register(service)

    def register(self, service: ServiceDefinition) -> None:
        assert service is not None, "service cannot be None."
        with self._lock:
            self._services[service.service_id] = service

    def service(self, service_id: str) -> ServiceDefinition:
        with self._lock:
            try:
                return self._services[service_id]
            except KeyError:
                raise KeyError(f"Unknown service '{service_id}'. Register it first.") from None

    def get_client(self, user_secret: str, service_id: str) -> SessionClient:
        """
        Return the client for (user_secret, service_id) with a fresh credential.

        Authenticates first when no fresh record exists in memory or in the Store.

        Raises:
            KeyError: If the service is not registered.
            RateLimitExceeded, AuthProtocolError, StoreError: If authentication fails.
        """
        assert user_secret, "user_secret cannot be empty."

        service = self.service(service_id)
        key = CredentialKey.for_secret(user_secret, service_id)

        with self._lock:
            client = self._clients.get(key)
        if client is not None:
            client.ensure_fresh()
            return client

        client = SessionClient(
            key=key,
            executor=service.executor,
            hooks=CoordinatorRenewalHooks(self.coordinator, user_secret, service.protocol, service.rate_limit),
            clock=self._clock,
        )
        client.ensure_fresh()

        with self._lock:
            client = self._clients.setdefault(key, client)
        logger.debug(f"{key} | Session | Client ready")
        return client

    def remove_client(self, user_secret: str, service_id: str) -> bool:
        """Forget the cached client. Returns True if one was cached."""
        key = CredentialKey.for_secret(user_secret, service_id)
        with self._lock:
            return self._clients.pop(key, None) is not None
