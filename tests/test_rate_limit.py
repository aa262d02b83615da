"""Tests for the sliding-window attempt budget."""

import threading
from unittest.mock import MagicMock

import pytest

from credkit import (
    CREDKIT,
    AttemptOutcome,
    AuthProtocolError,
    CredentialKey,
    InMemoryStore,
    RateLimitExceeded,
    RateLimitPolicy,
    SlidingWindowRateLimiter,
    StoreError,
)

KEY = CredentialKey.for_secret("S1", "moon")


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# RateLimitPolicy
# =============================================================================


class TestRateLimitPolicy:
    """Tests for RateLimitPolicy validation and weights."""

    def test_defaults(self):
        policy = RateLimitPolicy()

        assert policy.max_attempts == 4
        assert policy.time_window == 3600.0
        assert policy.error_weight == 1.0
        assert policy.enforce is True

    def test_invalid_max_attempts(self):
        with pytest.raises(AssertionError, match="max_attempts must be greater than 0"):
            RateLimitPolicy(max_attempts=0)

    def test_invalid_time_window(self):
        with pytest.raises(AssertionError, match="time_window must be greater than 0"):
            RateLimitPolicy(time_window=0)

    def test_invalid_error_weight(self):
        with pytest.raises(AssertionError, match="error_weight must be >= 0"):
            RateLimitPolicy(error_weight=-1)

    def test_weight_of_outcomes(self):
        policy = RateLimitPolicy(error_weight=2.0)

        assert policy.weight_of(AttemptOutcome.PENDING) == 1.0
        assert policy.weight_of(AttemptOutcome.SUCCESS) == 1.0
        assert policy.weight_of(AttemptOutcome.ERROR) == 2.0

    def test_from_config(self):
        CREDKIT.configure(rate_limit={"max_attempts": 7, "time_window": 900, "enforce": False})
        try:
            policy = RateLimitPolicy.from_config()
        finally:
            CREDKIT.reset()

        assert policy.max_attempts == 7
        assert policy.time_window == 900
        assert policy.enforce is False


# =============================================================================
# SlidingWindowRateLimiter
# =============================================================================


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryStore()
        self.policy = RateLimitPolicy(max_attempts=3, time_window=3600)
        self.limiter = SlidingWindowRateLimiter(self.store, default_policy=self.policy, clock=self.clock)

    def test_allows_attempts_up_to_the_ceiling(self):
        for _ in range(3):
            self.limiter.check_and_record_attempt(KEY).record_outcome(AttemptOutcome.SUCCESS)

        assert len(self.limiter.attempts_in_window(KEY)) == 3

    def test_denies_attempt_over_the_ceiling(self):
        for _ in range(3):
            self.limiter.check_and_record_attempt(KEY)
            self.clock.advance(10)

        with pytest.raises(RateLimitExceeded) as exc_info:
            self.limiter.check_and_record_attempt(KEY)

        error = exc_info.value
        assert error.key == KEY
        assert len(error.attempts) == 3
        assert error.retry_at == self.clock.now - 30 + 3600

    def test_denied_attempt_is_not_recorded(self):
        for _ in range(3):
            self.limiter.check_and_record_attempt(KEY)

        with pytest.raises(RateLimitExceeded):
            self.limiter.check_and_record_attempt(KEY)

        assert len(self.store.list_attempts(KEY, since=0)) == 3

    def test_allows_again_after_the_window_elapses(self):
        for _ in range(3):
            self.limiter.check_and_record_attempt(KEY)

        self.clock.advance(3600 + 1)

        handle = self.limiter.check_and_record_attempt(KEY)
        assert handle.attempt_id
        assert len(self.limiter.attempts_in_window(KEY)) == 1

    def test_old_attempts_are_pruned(self):
        self.limiter.check_and_record_attempt(KEY)
        self.clock.advance(4000)
        self.limiter.check_and_record_attempt(KEY)

        assert len(self.store.list_attempts(KEY, since=0)) == 1

    def test_budgets_are_independent_per_key(self):
        for _ in range(3):
            self.limiter.check_and_record_attempt(KEY)

        self.limiter.check_and_record_attempt(CredentialKey.for_secret("S1", "coral"))
        self.limiter.check_and_record_attempt(CredentialKey.for_secret("S2", "moon"))

    def test_outcome_entries_fold_into_one_attempt(self):
        handle = self.limiter.check_and_record_attempt(KEY)
        handle.record_outcome(AttemptOutcome.ERROR, error=AuthProtocolError("boom"))

        attempts = self.limiter.attempts_in_window(KEY)
        assert len(attempts) == 1
        assert attempts[0].outcome == AttemptOutcome.ERROR
        assert attempts[0].detail == "[auth.protocol_failed] boom"
        assert len(self.store.list_attempts(KEY, since=0)) == 2

    def test_record_outcome_is_idempotent(self):
        handle = self.limiter.check_and_record_attempt(KEY)
        handle.record_outcome(AttemptOutcome.SUCCESS)
        handle.record_outcome(AttemptOutcome.ERROR, error=ValueError("late"))

        assert [e.outcome for e in self.store.list_attempts(KEY, since=0)] == [
            AttemptOutcome.PENDING,
            AttemptOutcome.SUCCESS,
        ]

    def test_record_outcome_rejects_pending(self):
        handle = self.limiter.check_and_record_attempt(KEY)
        with pytest.raises(AssertionError, match="Outcome must be SUCCESS or ERROR"):
            handle.record_outcome(AttemptOutcome.PENDING)

    def test_plain_exception_detail(self):
        handle = self.limiter.check_and_record_attempt(KEY)
        handle.record_outcome(AttemptOutcome.ERROR, error=ValueError("bad payload"))

        assert self.limiter.attempts_in_window(KEY)[0].detail == "ValueError: bad payload"

    def test_errors_can_weigh_more(self):
        policy = RateLimitPolicy(max_attempts=3, time_window=3600, error_weight=2.0)
        self.limiter.check_and_record_attempt(KEY, policy).record_outcome(
            AttemptOutcome.ERROR, error=AuthProtocolError("boom")
        )
        self.limiter.check_and_record_attempt(KEY, policy)

        # 2.0 (error) + 1.0 (pending) reaches the ceiling
        with pytest.raises(RateLimitExceeded):
            self.limiter.check_and_record_attempt(KEY, policy)

    def test_not_enforced_records_but_never_denies(self):
        policy = RateLimitPolicy(max_attempts=1, time_window=3600, enforce=False)

        for _ in range(3):
            self.limiter.check_and_record_attempt(KEY, policy)

        assert len(self.limiter.attempts_in_window(KEY, policy)) == 3

    def test_concurrent_callers_never_exceed_the_ceiling(self):
        policy = RateLimitPolicy(max_attempts=5, time_window=3600)
        results = {"allowed": 0, "denied": 0}
        lock = threading.Lock()
        start = threading.Barrier(20)

        def attempt():
            start.wait()
            try:
                self.limiter.check_and_record_attempt(KEY, policy)
                outcome = "allowed"
            except RateLimitExceeded:
                outcome = "denied"
            with lock:
                results[outcome] += 1

        threads = [threading.Thread(target=attempt) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {"allowed": 5, "denied": 15}
        assert len(self.store.list_attempts(KEY, since=0)) == 5

    def test_store_errors_propagate(self):
        store = MagicMock()
        store.list_attempts.side_effect = StoreError("disk gone")
        limiter = SlidingWindowRateLimiter(store, default_policy=self.policy, clock=self.clock)

        with pytest.raises(StoreError, match="disk gone"):
            limiter.check_and_record_attempt(KEY)
        store.append_attempt.assert_not_called()
