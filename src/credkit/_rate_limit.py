"""
Client-side budget for fresh-login attempts.

The backend services are privately operated and not designed for frequent
re-authentication. This module caps how often the authentication exchange may
run for one (user, service) key within a sliding time window, so a loop that
keeps failing does not trip upstream abuse detection. It is a courtesy, not a
security boundary.

Example:
    >>> from credkit._rate_limit import RateLimitPolicy, SlidingWindowRateLimiter
    >>> limiter = SlidingWindowRateLimiter(store)
    >>> policy = RateLimitPolicy(max_attempts=4, time_window=15 * 60)
    >>> handle = limiter.check_and_record_attempt(key, policy)
    >>> try:
    ...     record = protocol.authenticate(user_secret)
    ... except Exception as e:
    ...     handle.record_outcome(AttemptOutcome.ERROR, error=e)
    ...     raise
    >>> handle.record_outcome(AttemptOutcome.SUCCESS)
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from credkit._errors import CredkitError, RateLimitExceeded
from credkit._models import AttemptEntry, AttemptOutcome, CredentialKey
from credkit._store import Store
from credkit._utils import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Attempt budget for one service.

    Attributes:
        max_attempts: Maximum weighted attempts allowed in the window.
        time_window: Sliding window length in seconds.
        error_weight: Weight of a failed attempt (successful and pending
            attempts weigh 1).
        enforce: When False, attempts are recorded but never denied.

    Example:
        >>> # Tokens that expire sooner get a shorter window
        >>> RateLimitPolicy(max_attempts=4, time_window=15 * 60)
    """

    max_attempts: int = 4
    time_window: float = 3600.0
    error_weight: float = 1.0
    enforce: bool = True

    def __post_init__(self) -> None:
        assert self.max_attempts > 0, "max_attempts must be greater than 0."
        assert self.time_window > 0, "time_window must be greater than 0."
        assert self.error_weight >= 0, "error_weight must be >= 0."

    @classmethod
    def from_config(cls) -> RateLimitPolicy:
        """Build the default policy from CREDKIT.config.rate_limit."""
        from credkit._config import CREDKIT

        cfg = CREDKIT.config.rate_limit
        return cls(
            max_attempts=cfg.max_attempts,
            time_window=cfg.time_window,
            error_weight=cfg.error_weight,
            enforce=cfg.enforce,
        )

    def weight_of(self, outcome: AttemptOutcome) -> float:
        return self.error_weight if outcome == AttemptOutcome.ERROR else 1.0


class AttemptHandle:
    """
    Handle for one recorded attempt.

    `record_outcome()` must be called once the authentication call resolves.
    Later calls are ignored.
    """

    def __init__(
        self,
        store: Store,
        key: CredentialKey,
        entry: AttemptEntry,
    ):
        self._store = store
        self.key = key
        self.entry = entry
        self._recorded = False

    @property
    def attempt_id(self) -> str:
        return self.entry.attempt_id

    def record_outcome(self, outcome: AttemptOutcome, error: BaseException | None = None) -> None:
        """
        Append the outcome of this attempt to the Attempt Log.

        Args:
            outcome: SUCCESS or ERROR.
            error: The failure, for ERROR outcomes. Its description is kept in the log.

        Raises:
            StoreError: If the store fails to append the entry.
        """
        assert outcome != AttemptOutcome.PENDING, "Outcome must be SUCCESS or ERROR."
        if self._recorded:
            return
        self._recorded = True

        detail = None
        if error is not None:
            detail = error.describe() if isinstance(error, CredkitError) else f"{type(error).__name__}: {error}"

        self._store.append_attempt(
            self.key,
            AttemptEntry(
                attempt_id=self.entry.attempt_id,
                timestamp=self.entry.timestamp,
                outcome=outcome,
                detail=detail,
            ),
        )


class SlidingWindowRateLimiter:
    """
    Sliding-window counter over authentication attempts, per key.

    Attempts are kept in the Store's append-only Attempt Log, so the budget
    survives process restarts when a persistent store is used. Check-and-append
    is serialized per key with an in-process lock, so concurrent callers for
    the same key never lose an attempt.

    Args:
        store: Store holding the Attempt Logs.
        default_policy: Policy used when a call does not pass one. If None,
            built from CREDKIT.config.rate_limit.
        clock: Returns epoch seconds. Injectable for tests.
    """

    def __init__(
        self,
        store: Store,
        default_policy: RateLimitPolicy | None = None,
        clock: Callable[[], float] = time.time,
    ):
        assert store is not None, "store cannot be None."
        assert clock is not None, "clock cannot be None."

        self.store = store
        self.default_policy = default_policy or RateLimitPolicy.from_config()
        self._clock = clock
        self._locks = KeyedLocks()

    def check_and_record_attempt(
        self,
        key: CredentialKey,
        policy: RateLimitPolicy | None = None,
    ) -> AttemptHandle:
        """
        Count the attempts of `key` in the window and record a new one.

        Args:
            key: Credential key about to authenticate.
            policy: Budget to apply. Defaults to `default_policy`.

        Returns:
            AttemptHandle to report the outcome with.

        Raises:
            RateLimitExceeded: If the window already holds `max_attempts` weighted attempts.
            StoreError: If the Attempt Log cannot be read or written.
        """
        policy = policy or self.default_policy

        with self._locks.hold(key):
            now = self._clock()
            window_start = now - policy.time_window
            self.store.prune_attempts(key, before=window_start)

            attempts = self._fold(self.store.list_attempts(key, since=window_start))
            used = sum(policy.weight_of(a.outcome) for a in attempts)

            if used >= policy.max_attempts:
                retry_at = min(a.timestamp for a in attempts) + policy.time_window
                if policy.enforce:
                    logger.warning(
                        f"{key} | RateLimit | ⚠️ Denied authentication attempt "
                        f"({used:g}/{policy.max_attempts} in {policy.time_window:g}s window)"
                    )
                    raise RateLimitExceeded(key=key, attempts=attempts, retry_at=retry_at)
                logger.info(
                    f"{key} | RateLimit | Budget exceeded ({used:g}/{policy.max_attempts}) "
                    f"but not enforced, allowing attempt"
                )

            entry = AttemptEntry(attempt_id=uuid.uuid4().hex, timestamp=now)
            self.store.append_attempt(key, entry)
            logger.debug(f"{key} | RateLimit | Attempt {used + 1:g}/{policy.max_attempts} recorded")

        return AttemptHandle(self.store, key, entry)

    def attempts_in_window(
        self,
        key: CredentialKey,
        policy: RateLimitPolicy | None = None,
    ) -> list[AttemptEntry]:
        """Return the attempts counted in the current window, one entry per attempt."""
        policy = policy or self.default_policy
        since = self._clock() - policy.time_window
        return self._fold(self.store.list_attempts(key, since=since))

    @staticmethod
    def _fold(entries: list[AttemptEntry]) -> list[AttemptEntry]:
        """Collapse entries sharing an attempt_id, keeping the latest outcome."""
        folded: dict[str, AttemptEntry] = {}
        for entry in entries:
            folded[entry.attempt_id] = entry
        return sorted(folded.values(), key=lambda e: e.timestamp)
