"""
Polling loop for long-running background tasks.

A Monitor runs a business `tick()` on a fixed interval in its own thread until
stopped. It owns recovery for everything a tick may raise:

- AuthExpiredError (the Session Client's own retry was exhausted) is
  recoverable: the Monitor forces a renewal and runs the next tick right away.
- RateLimitExceeded backs off for the full interval, ignoring skip requests,
  so repeated denials never turn into a hot loop.
- Anything else is reported to the listeners and retried later with an
  increasing backoff.

Example:
    >>> def poll_presence(monitor: Monitor) -> TickResult | None:
    ...     response = monitor.session.execute(HttpRequest("GET", "/v3/Friend/List"))
    ...     publish(response.json())
    >>> monitor = Monitor(session=client, tick=poll_presence, interval=30)
    >>> monitor.start()
    >>> monitor.skip_interval_now()  # refresh now
    >>> monitor.stop()
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import TYPE_CHECKING, Any, override

from credkit._errors import AuthExpiredError, CredkitError, RateLimitExceeded

if TYPE_CHECKING:
    from credkit._session import SessionClient

logger = logging.getLogger(__name__)


class TickResult(StrEnum):
    """
    What a tick asks the loop to do next. Returning None means OK.

    Attributes:
        OK: Sleep for the configured interval.
        OK_SKIP_INTERVAL: Run the next tick immediately.
        DEFER_NEXT_UPDATE: Sleep for the error backoff interval.
        STOP: Stop the loop.
    """

    OK = "ok"
    OK_SKIP_INTERVAL = "ok_skip_interval"
    DEFER_NEXT_UPDATE = "defer_next_update"
    STOP = "stop"


class MonitorState(StrEnum):
    STOPPED = "stopped"
    RUNNING = "running"
    SLEEPING = "sleeping"


class ErrorClass(StrEnum):
    """
    How the Monitor recovers from an error raised by a tick.

    Attributes:
        RECOVERABLE: Force a credential renewal and tick again immediately.
        TRANSIENT: Report and retry after the error backoff.
        RATE_LIMITED: Report and wait a full interval, ignoring skip requests.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"


# =============================================================================
# Listeners
# =============================================================================


class MonitorListener:
    """
    Base class for observing a Monitor.

    All methods have default empty implementations. Exceptions raised by
    listeners are logged and never stop the loop.
    """

    def on_tick(self, monitor: Monitor, result: TickResult) -> None:
        """Called after every successful tick."""
        pass

    def on_error(self, monitor: Monitor, error: Exception, error_class: ErrorClass) -> None:
        """Called for every error that is not recovered by a renewal."""
        pass


class _CallbackListener(MonitorListener):
    def __init__(
        self,
        on_tick: Callable[[Monitor, TickResult], Any] | None,
        on_error: Callable[[Monitor, Exception, ErrorClass], Any] | None,
    ):
        self._on_tick = on_tick
        self._on_error = on_error

    @override
    def on_tick(self, monitor: Monitor, result: TickResult) -> None:
        if self._on_tick:
            self._on_tick(monitor, result)

    @override
    def on_error(self, monitor: Monitor, error: Exception, error_class: ErrorClass) -> None:
        if self._on_error:
            self._on_error(monitor, error, error_class)


# =============================================================================
# Monitor
# =============================================================================


class Monitor:
    """
    Runs `tick()` in a background thread every `interval` seconds.

    The first tick runs as soon as `start()` is called. Stopping is
    cooperative: a tick in progress always finishes, and `is_enabled` only
    becomes False once it has returned. A sleeping Monitor wakes up at once on
    `stop()` or `skip_interval_now()`.

    The business operation is either passed as `tick` (a callable receiving
    the monitor) or implemented by overriding `tick()` in a subclass.

    Args:
        session: Session Client driven by the ticks. Needed for recoverable
            error handling.
        tick: Callable `(monitor) -> TickResult | None`.
        name: Name used in logs and for the thread.
        interval: Seconds between ticks. Defaults to CREDKIT.config.monitor.interval.
        max_backoff_multiplier: Cap of the error backoff multiplier. Defaults to
            CREDKIT.config.monitor.max_backoff_multiplier.
        listeners: Observers notified of ticks and errors.
        on_tick: Shortcut for a listener with only `on_tick`.
        on_error: Shortcut for a listener with only `on_error`.
    """

    def __init__(
        self,
        session: SessionClient | None = None,
        tick: Callable[[Monitor], TickResult | None] | None = None,
        *,
        name: str | None = None,
        interval: float | None = None,
        max_backoff_multiplier: float | None = None,
        listeners: Iterable[MonitorListener] = (),
        on_tick: Callable[[Monitor, TickResult], Any] | None = None,
        on_error: Callable[[Monitor, Exception, ErrorClass], Any] | None = None,
    ):
        from credkit._config import CREDKIT

        cfg = CREDKIT.config.monitor
        interval = cfg.interval if interval is None else interval
        max_backoff_multiplier = cfg.max_backoff_multiplier if max_backoff_multiplier is None else max_backoff_multiplier

        assert interval > 0, "interval must be greater than 0."
        assert max_backoff_multiplier >= 1, "max_backoff_multiplier must be >= 1."
        assert tick is None or callable(tick), "tick must be callable."

        self.session = session
        self.name = name or (str(session.key) if session is not None else type(self).__name__)
        self.interval = interval
        self.max_backoff_multiplier = max_backoff_multiplier

        self.listeners: list[MonitorListener] = list(listeners)
        if on_tick or on_error:
            self.listeners.append(_CallbackListener(on_tick, on_error))

        self._tick_func = tick
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._generation = 0
        self._enabled = False
        self._stop_requested = False
        self._skip_requested = False
        self._rate_limited = False
        self._state = MonitorState.STOPPED
        self._errors = 0
        self._last_error: Exception | None = None
        self._next_deadline: float | None = None

    # ======================
    # State
    # ======================

    @property
    def is_enabled(self) -> bool:
        with self._cond:
            return self._enabled

    @property
    def state(self) -> MonitorState:
        with self._cond:
            return self._state

    @property
    def errors(self) -> int:
        """Consecutive failed ticks."""
        with self._cond:
            return self._errors

    @property
    def last_error(self) -> Exception | None:
        with self._cond:
            return self._last_error

    @property
    def next_deadline(self) -> float | None:
        """Epoch seconds of the next scheduled tick while sleeping, else None."""
        with self._cond:
            return self._next_deadline

    @property
    def next_error_interval(self) -> float:
        """Backoff applied after DEFER_NEXT_UPDATE or a transient error."""
        with self._cond:
            multiplier = min(self._errors / 2, self.max_backoff_multiplier)
        return max(self.interval, self.interval * multiplier)

    # ======================
    # Control
    # ======================

    def start(self) -> None:
        """
        Start the loop. The first tick runs immediately.

        Calling `start()` on a running Monitor is a no-op, except that it
        cancels a pending `stop()` whose tick has not returned yet.
        """
        with self._cond:
            if self._enabled:
                if self._stop_requested:
                    self._stop_requested = False
                    logger.info(f"{self.name} | Monitor | Pending stop cancelled")
                return

            self._enabled = True
            self._stop_requested = False
            self._skip_requested = False
            self._rate_limited = False
            self._errors = 0
            self._generation += 1
            self._state = MonitorState.RUNNING
            self._thread = threading.Thread(
                target=self._run,
                args=(self._generation,),
                name=f"credkit-monitor-{self.name}",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"{self.name} | Monitor | Started (interval={self.interval:g}s)")

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """
        Ask the loop to stop after the tick in progress, if any.

        The first tick always runs, even if `stop()` follows `start()` at once.
        Never waits out the remaining sleep. A second call is a no-op.

        Args:
            wait: Block until the in-flight tick has returned. Ignored when
                called from the Monitor's own thread.
            timeout: Maximum seconds to wait.
        """
        with self._cond:
            if not self._enabled or self._stop_requested:
                thread = self._thread if self._enabled else None
            else:
                self._stop_requested = True
                self._cond.notify_all()
                thread = self._thread
                logger.info(f"{self.name} | Monitor | Stopping...")

        if wait and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the loop thread to exit."""
        with self._cond:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def skip_interval_now(self, force: bool = False) -> None:
        """
        Run the next tick immediately instead of waiting out the interval.

        If called while a tick runs, the sleep after that tick is skipped.
        Ignored while backing off from RateLimitExceeded unless `force` is set.
        """
        with self._cond:
            if not self._enabled:
                return
            if self._rate_limited and not force:
                logger.debug(f"{self.name} | Monitor | Skip ignored during rate-limit backoff")
                return
            self._rate_limited = False
            self._skip_requested = True
            self._cond.notify_all()

    # ======================
    # Tick and error handling
    # ======================

    def tick(self) -> TickResult | None:
        """The business operation. Override, or pass `tick` to the constructor."""
        if self._tick_func is None:
            raise NotImplementedError(f"{type(self).__name__} has no tick function.")
        return self._tick_func(self)

    def on_stop(self) -> None:
        """Called from the loop thread once the loop has exited. Override to release resources."""
        pass

    def classify_error(self, error: Exception) -> ErrorClass:
        """Decide how to recover from an error raised by `tick()`."""
        if isinstance(error, RateLimitExceeded):
            return ErrorClass.RATE_LIMITED
        if isinstance(error, AuthExpiredError):
            return ErrorClass.RECOVERABLE
        return ErrorClass.TRANSIENT

    def handle_error(self, error: Exception) -> TickResult:
        """
        Recover from an error raised by `tick()` and return what to do next.

        Recoverable errors force a renewal through the session and run the
        next tick immediately. If that renewal fails, its error is handled in
        place of the original one.
        """
        error_class = self.classify_error(error)

        if error_class == ErrorClass.RECOVERABLE and self.session is not None:
            logger.info(f"{self.name} | Monitor | Credential rejected, renewing now")
            try:
                self.session.renew(force=True)
                return TickResult.OK_SKIP_INTERVAL
            except Exception as renewal_error:
                error = renewal_error
                error_class = self.classify_error(renewal_error)
                if error_class == ErrorClass.RECOVERABLE:
                    error_class = ErrorClass.TRANSIENT
        elif error_class == ErrorClass.RECOVERABLE:
            error_class = ErrorClass.TRANSIENT

        with self._cond:
            self._last_error = error

        self._log_error(error, error_class)
        self._notify_listeners("on_error", error=error, error_class=error_class)

        if error_class == ErrorClass.RATE_LIMITED:
            with self._cond:
                self._rate_limited = True
                self._skip_requested = False
            return TickResult.OK
        return TickResult.DEFER_NEXT_UPDATE

    # ======================
    # Loop
    # ======================

    def _run(self, generation: int) -> None:
        # The first tick always runs, even if stop() was called before this thread started
        try:
            while True:
                with self._cond:
                    self._state = MonitorState.RUNNING
                    self._rate_limited = False

                result = self._run_tick()

                with self._cond:
                    if result == TickResult.STOP:
                        logger.info(f"{self.name} | Monitor | Tick requested stop")
                        self._stop_requested = True
                    if self._exit_if_stopped(generation):
                        return
                    self._sleep(self._delay_for(result), generation)
                    if self._exit_if_stopped(generation):
                        return
        finally:
            with self._cond:
                self._reset(generation)
            self._finish()

    def _run_tick(self) -> TickResult:
        try:
            result = self.tick() or TickResult.OK
        except Exception as e:
            with self._cond:
                self._errors += 1
            return self.handle_error(e)

        with self._cond:
            self._errors = 0
            self._last_error = None
        self._notify_listeners("on_tick", result=result)
        return result

    def _is_current(self, generation: int) -> bool:
        return not self._stop_requested and generation == self._generation

    def _delay_for(self, result: TickResult) -> float:
        # Called with self._cond held
        if result == TickResult.OK_SKIP_INTERVAL:
            return 0.0
        if self._rate_limited:
            return self.interval
        if self._skip_requested:
            return 0.0
        if result == TickResult.DEFER_NEXT_UPDATE:
            return max(self.interval, self.interval * min(self._errors / 2, self.max_backoff_multiplier))
        return self.interval

    def _sleep(self, delay: float, generation: int) -> None:
        # Called with self._cond held
        if delay > 0:
            self._state = MonitorState.SLEEPING
            self._next_deadline = time.time() + delay
            logger.debug(f"{self.name} | Monitor | Next tick in {delay:g}s")
            self._cond.wait_for(
                lambda: not self._is_current(generation) or (self._skip_requested and not self._rate_limited),
                timeout=delay,
            )
            self._next_deadline = None
        self._skip_requested = False

    def _exit_if_stopped(self, generation: int) -> bool:
        # Called with self._cond held. start() sees the loop either before the
        # exit decision or after the reset, never in between.
        if self._is_current(generation):
            return False
        self._reset(generation)
        return True

    def _reset(self, generation: int) -> None:
        # Called with self._cond held
        if generation != self._generation or not self._enabled:
            return
        self._enabled = False
        self._stop_requested = False
        self._skip_requested = False
        self._rate_limited = False
        self._next_deadline = None
        self._state = MonitorState.STOPPED
        self._cond.notify_all()

    def _finish(self) -> None:
        logger.info(f"{self.name} | Monitor | Stopped")
        try:
            self.on_stop()
        except Exception as e:
            logger.warning(f"{self.name} | Monitor | ⚠️ on_stop() raised an exception: {e}")

    def _log_error(self, error: Exception, error_class: ErrorClass) -> None:
        message = error.describe() if isinstance(error, CredkitError) else f"{type(error).__name__}: {error}"
        if error_class == ErrorClass.RATE_LIMITED:
            logger.warning(f"{self.name} | Monitor | ⚠️ {message}; retrying in {self.interval:g}s")
        else:
            logger.error(
                f"{self.name} | Monitor | ❌ Tick failed ({self.errors} in a row): {message}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    def _notify_listeners(self, event: str, **kwargs: Any) -> None:
        """Notify listeners. Exceptions raised by listeners are logged but never stop the loop."""
        for listener in self.listeners:
            try:
                method = getattr(listener, event, None)
                if method and callable(method):
                    method(self, **kwargs)
            except Exception as e:
                listener_name = listener.__class__.__name__
                logger.warning(
                    f"{self.name} | Monitor | Listener `{listener_name}.{event}()` raised an exception: {e}"
                )

    def __repr__(self) -> str:
        return f"Monitor(name={self.name!r}, state={self.state.value}, interval={self.interval:g})"


# =============================================================================
# Monitor Group
# =============================================================================


class MonitorGroup:
    """
    Starts and stops several Monitors together, e.g. on process shutdown.

    Example:
        >>> group = MonitorGroup([presence_monitor, notifications_monitor])
        >>> group.start_all()
        >>> ...
        >>> group.stop_all(timeout=30)
    """

    def __init__(self, monitors: Iterable[Monitor] = ()):
        self._monitors: list[Monitor] = list(monitors)
        self._lock = threading.Lock()

    @property
    def monitors(self) -> list[Monitor]:
        with self._lock:
            return list(self._monitors)

    def add(self, monitor: Monitor) -> None:
        assert monitor is not None, "monitor cannot be None."
        with self._lock:
            self._monitors.append(monitor)

    def start_all(self) -> None:
        for monitor in self.monitors:
            monitor.start()

    def stop_all(self, timeout: float | None = None) -> None:
        """
        Signal every monitor to stop, then wait for their in-flight ticks.

        Args:
            timeout: Overall maximum seconds to wait.
        """
        monitors = self.monitors
        for monitor in monitors:
            monitor.stop(wait=False)

        deadline = None if timeout is None else time.monotonic() + timeout
        for monitor in monitors:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            monitor.join(remaining)
