"""
Single-flight renewal of Credential Records.

The RenewalCoordinator guarantees that, for any (user, service) key, at most
one AuthenticationProtocol call is in flight. Callers that discover a stale
credential while a renewal is running wait on the same pending result instead
of starting a second exchange, and all of them observe its single outcome.

Example:
    >>> coordinator = RenewalCoordinator(store=InMemoryStore())
    >>> key = CredentialKey.for_secret(user_secret, "moon")
    >>> record = coordinator.renew(key, protocol, user_secret)
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future

from credkit._auth import AuthenticationProtocol
from credkit._errors import AuthProtocolError, StoreError
from credkit._models import AttemptOutcome, CredentialKey, CredentialRecord
from credkit._rate_limit import AttemptHandle, RateLimitPolicy, SlidingWindowRateLimiter
from credkit._store import Store

logger = logging.getLogger(__name__)


class RenewalCoordinator:
    """
    Coordinates credential renewals so each key has at most one in flight.

    The coordinator keeps:
    - a map of key -> pending Future, present only while a renewal runs;
    - a map of key -> latest record obtained in this process, which is treated
      as more current than anything read back from the Store.

    The pending Future is removed (and the new record published in memory)
    under the same lock, before the Future is resolved. A caller arriving right
    after a renewal settles therefore sees the fresh record instead of starting
    another exchange.

    Persistence is best-effort: if the Store write fails, a warning is logged
    and the in-memory record is still delivered to every waiter.

    Args:
        store: Store for Credential Records (and Attempt Logs).
        rate_limiter: Limiter consulted before each exchange. If None, a
            SlidingWindowRateLimiter over `store` with the configured defaults.
        clock: Returns epoch seconds. Injectable for tests.
    """

    def __init__(
        self,
        store: Store,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        clock: Callable[[], float] = time.time,
    ):
        assert store is not None, "store cannot be None."

        self.store = store
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(store, clock=clock)
        self._clock = clock

        self._pending: dict[CredentialKey, Future[CredentialRecord]] = {}
        self._current: dict[CredentialKey, CredentialRecord] = {}
        self._rejected: dict[CredentialKey, str] = {}
        self._lock = threading.Lock()

    # ======================
    # Public API
    # ======================

    def renew(
        self,
        key: CredentialKey,
        protocol: AuthenticationProtocol,
        user_secret: str,
        *,
        stale_token: str | None = None,
        policy: RateLimitPolicy | None = None,
    ) -> CredentialRecord:
        """
        Obtain a new Credential Record for `key`, joining a pending renewal if any.

        Args:
            key: Credential key to renew.
            protocol: Protocol that performs the exchange.
            user_secret: Long-lived user secret for the exchange.
            stale_token: Token the caller saw rejected. If this process already
                holds a different, unexpired record for `key`, it is returned
                without a new exchange.
            policy: Attempt budget for this service.

        Returns:
            The renewed (or already newer) Credential Record.

        Raises:
            RateLimitExceeded: If the attempt budget is exhausted. The protocol is not invoked.
            AuthProtocolError: Or any other error raised by the protocol.
        """
        assert key is not None, "key cannot be None."
        assert protocol is not None, "protocol cannot be None."
        assert user_secret, "user_secret cannot be empty."

        def is_newer(current: CredentialRecord) -> bool:
            return (
                stale_token is not None
                and current.token != stale_token
                and not current.is_expired(self._clock())
            )

        return self._single_flight(key, protocol, user_secret, policy, reuse=is_newer)

    def current(self, key: CredentialKey) -> CredentialRecord | None:
        """
        Return the latest known record for `key`, fresh or not.

        The in-process record wins over the Store. A stored record whose token
        was invalidated in this process is ignored.

        Raises:
            StoreError: If the Store cannot be read.
        """
        with self._lock:
            record = self._current.get(key)
        if record is not None:
            return record

        stored = self.store.get_record(key)

        with self._lock:
            if stored is not None and self._rejected.get(key) != stored.token:
                self._current.setdefault(key, stored)
            return self._current.get(key)

    def get_fresh(
        self,
        key: CredentialKey,
        protocol: AuthenticationProtocol,
        user_secret: str,
        *,
        margin: float = 0.0,
        policy: RateLimitPolicy | None = None,
    ) -> CredentialRecord:
        """
        Return a record that does not expire within `margin` seconds, renewing only if needed.

        Raises:
            RateLimitExceeded, AuthProtocolError, StoreError: See `renew()` and `current()`.
        """
        record = self.current(key)
        if record is not None and not record.needs_renewal(self._clock(), margin=margin):
            return record

        if record is None:
            logger.info(f"{key} | Renewal | No stored credential, authenticating")
        else:
            logger.info(f"{key} | Renewal | Stored credential is stale, renewing")
        return self._single_flight(
            key, protocol, user_secret, policy,
            reuse=lambda current: not current.needs_renewal(self._clock(), margin=margin),
        )

    def invalidate(self, key: CredentialKey) -> None:
        """Forget the in-process record for `key` so the next caller renews."""
        with self._lock:
            record = self._current.pop(key, None)
            if record is not None:
                self._rejected[key] = record.token
        logger.debug(f"{key} | Renewal | Credential invalidated")

    def is_pending(self, key: CredentialKey) -> bool:
        """Return True while a renewal for `key` is in flight."""
        with self._lock:
            return key in self._pending

    # ======================
    # Internals
    # ======================

    def _single_flight(
        self,
        key: CredentialKey,
        protocol: AuthenticationProtocol,
        user_secret: str,
        policy: RateLimitPolicy | None,
        reuse: Callable[[CredentialRecord], bool],
    ) -> CredentialRecord:
        with self._lock:
            pending = self._pending.get(key)
            if pending is None:
                current = self._current.get(key)
                if current is not None and reuse(current):
                    logger.debug(f"{key} | Renewal | Newer credential already available")
                    return current
                future: Future[CredentialRecord] = Future()
                self._pending[key] = future

        if pending is not None:
            logger.debug(f"{key} | Renewal | Waiting for renewal already in flight")
            return pending.result()

        try:
            record = self._authenticate(key, protocol, user_secret, policy)
        except BaseException as e:
            with self._lock:
                del self._pending[key]
            future.set_exception(e)
            raise

        self._persist(key, record)

        with self._lock:
            self._current[key] = record
            self._rejected.pop(key, None)
            del self._pending[key]
        future.set_result(record)

        logger.info(f"{key} | Renewal | ✅ Credential renewed (expires in {record.remaining(self._clock()):.0f}s)")
        return record

    def _authenticate(
        self,
        key: CredentialKey,
        protocol: AuthenticationProtocol,
        user_secret: str,
        policy: RateLimitPolicy | None,
    ) -> CredentialRecord:
        handle = self.rate_limiter.check_and_record_attempt(key, policy)

        logger.info(f"{key} | Renewal | Authenticating with {type(protocol).__name__}...")
        try:
            record = protocol.authenticate(user_secret)
            if not isinstance(record, CredentialRecord):
                raise AuthProtocolError(
                    f"{type(protocol).__name__} returned {type(record).__name__}, expected CredentialRecord",
                    reason="invalid_response",
                )
        except Exception as e:
            logger.error(f"{key} | Renewal | ❌ Authentication failed: {e}")
            self._record_outcome(handle, AttemptOutcome.ERROR, e)
            raise

        self._record_outcome(handle, AttemptOutcome.SUCCESS)
        return record

    def _record_outcome(
        self,
        handle: AttemptHandle,
        outcome: AttemptOutcome,
        error: BaseException | None = None,
    ) -> None:
        try:
            handle.record_outcome(outcome, error=error)
        except StoreError as e:
            logger.warning(f"{handle.key} | Renewal | ⚠️ Could not record attempt outcome: {e.describe()}")

    def _persist(self, key: CredentialKey, record: CredentialRecord) -> None:
        try:
            self.store.put_record(key, record)
        except StoreError as e:
            logger.warning(
                f"{key} | Renewal | ⚠️ Credential renewed but could not be persisted; "
                f"a restarted process may load an outdated record: {e.describe()}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
