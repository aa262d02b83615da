"""
Global configuration for the credkit package.

This module provides a simple configuration system following Convention over Configuration (CoC).
Applications can optionally call CREDKIT.configure() at startup to customize policy defaults.
If not called, sensible defaults are used.

Hierarchy of precedence (highest to lowest):
1. Arguments passed to component constructors (policies, intervals, timeouts)
2. Values set via CREDKIT.configure()
3. Environment variables (CREDKIT_*) - when allow_env_override=True
4. Hardcoded defaults (in dataclass fields)

Example:
    >>> from credkit import CREDKIT
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> CREDKIT.config.rate_limit.max_attempts
    4
    >>>
    >>> # Custom configuration
    >>> CREDKIT.configure(
    ...     store={"backend": "file", "path": "/var/lib/app/credkit"},
    ...     rate_limit={"max_attempts": 4, "time_window": 900.0},
    ...     monitor={"interval": 30.0},
    ... )
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from typing import Any, Literal, Self

# Type alias for store backends
StoreBackend = Literal["memory", "file"]

_SECTIONS = ("store", "rate_limit", "session", "monitor")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


class EnvVars:
    """
    Reads environment variables with type conversion.

    Example:
        >>> EnvVars.get("CREDKIT_MONITOR_INTERVAL", type_hint=float)
        30.0
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """Infer converter from a type or a string annotation (PEP 563)."""
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return _parse_bool
        return str


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration sections.

    Provides `.with_overrides()` for partial updates with strict field-name
    validation, and `.with_env_vars()` for applying the env vars declared in
    each field's metadata.

    Example:
        >>> config = MonitorConfig()
        >>> config.with_overrides({"interval": 10.0}).interval
        10.0
    """

    def with_overrides(self, overrides: dict[str, Any]) -> Self:
        """
        Return a new instance with specified fields overridden.

        None values are ignored.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields
        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        filtered = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            env_var = f.metadata.get("env")
            if env_var:
                value = EnvVars.get(var_name=env_var, type_hint=f.type)
                if value is not None:
                    overrides[f.name] = value
        return self.with_overrides(overrides)

    def validate(self) -> Self:
        return self


def _require_positive(section: str, name: str, value: float) -> None:
    if value <= 0:
        raise ConfigValidationError(name, value, "Must be greater than 0.", section=section)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class StoreConfig(OverridableConfig):
    """
    Persistent store configuration.

    Attributes:
        backend: "memory" (not persistent) or "file" (JSON files on disk).
            Env var: CREDKIT_STORE_BACKEND

        path: Directory used by the "file" backend.
            Env var: CREDKIT_STORE_PATH
    """

    backend: StoreBackend = field(default="memory", metadata={"env": "CREDKIT_STORE_BACKEND"})
    path: str = field(default=".credkit", metadata={"env": "CREDKIT_STORE_PATH"})

    def validate(self) -> Self:
        if self.backend not in ("memory", "file"):
            raise ConfigValidationError(
                "backend", self.backend,
                "Must be one of: ('memory', 'file').", section="store"
            )
        if self.backend == "file" and not self.path:
            raise ConfigValidationError(
                "path", self.path,
                "Must not be empty when backend is 'file'.", section="store"
            )
        return self


@dataclass(frozen=True)
class RateLimitConfig(OverridableConfig):
    """
    Default budget for fresh-login attempts, per (user, service) key.

    Services may override these values with their own RateLimitPolicy.

    Attributes:
        enforce: Whether exceeding the budget denies the attempt. When False,
            attempts are still recorded but never denied.
            Env var: CREDKIT_RATE_LIMIT_ENFORCE

        max_attempts: Maximum weighted attempts in the sliding window.
            Env var: CREDKIT_RATE_LIMIT_MAX_ATTEMPTS

        time_window: Sliding window length in seconds.
            Env var: CREDKIT_RATE_LIMIT_TIME_WINDOW

        error_weight: Weight of a failed attempt relative to a successful one.
            Env var: CREDKIT_RATE_LIMIT_ERROR_WEIGHT
    """

    enforce: bool = field(default=True, metadata={"env": "CREDKIT_RATE_LIMIT_ENFORCE"})
    max_attempts: int = field(default=4, metadata={"env": "CREDKIT_RATE_LIMIT_MAX_ATTEMPTS"})
    time_window: float = field(default=3600.0, metadata={"env": "CREDKIT_RATE_LIMIT_TIME_WINDOW"})
    error_weight: float = field(default=1.0, metadata={"env": "CREDKIT_RATE_LIMIT_ERROR_WEIGHT"})

    def validate(self) -> Self:
        _require_positive("rate_limit", "max_attempts", self.max_attempts)
        _require_positive("rate_limit", "time_window", self.time_window)
        if self.error_weight < 0:
            raise ConfigValidationError(
                "error_weight", self.error_weight,
                "Must be >= 0.", section="rate_limit"
            )
        return self


@dataclass(frozen=True)
class SessionConfig(OverridableConfig):
    """
    Session Client configuration.

    Attributes:
        request_timeout: Timeout in seconds for every outbound request.
            Env var: CREDKIT_SESSION_REQUEST_TIMEOUT

        renew_margin: Seconds before `expires_at` at which a record is
            treated as stale before sending.
            Env var: CREDKIT_SESSION_RENEW_MARGIN

        expires_soon_threshold: A response hint reporting fewer remaining
            seconds than this triggers a proactive renewal.
            Env var: CREDKIT_SESSION_EXPIRES_SOON_THRESHOLD
    """

    request_timeout: int = field(default=30, metadata={"env": "CREDKIT_SESSION_REQUEST_TIMEOUT"})
    renew_margin: float = field(default=60.0, metadata={"env": "CREDKIT_SESSION_RENEW_MARGIN"})
    expires_soon_threshold: float = field(default=300.0, metadata={"env": "CREDKIT_SESSION_EXPIRES_SOON_THRESHOLD"})

    def validate(self) -> Self:
        _require_positive("session", "request_timeout", self.request_timeout)
        if self.renew_margin < 0:
            raise ConfigValidationError(
                "renew_margin", self.renew_margin, "Must be >= 0.", section="session"
            )
        if self.expires_soon_threshold < 0:
            raise ConfigValidationError(
                "expires_soon_threshold", self.expires_soon_threshold,
                "Must be >= 0.", section="session"
            )
        return self


@dataclass(frozen=True)
class MonitorConfig(OverridableConfig):
    """
    Polling loop configuration.

    Attributes:
        interval: Default seconds between ticks.
            Env var: CREDKIT_MONITOR_INTERVAL

        max_backoff_multiplier: Upper bound of the error backoff, as a
            multiple of the interval.
            Env var: CREDKIT_MONITOR_MAX_BACKOFF_MULTIPLIER
    """

    interval: float = field(default=60.0, metadata={"env": "CREDKIT_MONITOR_INTERVAL"})
    max_backoff_multiplier: float = field(default=20.0, metadata={"env": "CREDKIT_MONITOR_MAX_BACKOFF_MULTIPLIER"})

    def validate(self) -> Self:
        _require_positive("monitor", "interval", self.interval)
        if self.max_backoff_multiplier < 1:
            raise ConfigValidationError(
                "max_backoff_multiplier", self.max_backoff_multiplier,
                "Must be >= 1.", section="monitor"
            )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "interval").
        value: The resolved value.
        source: "default", "env:VAR_NAME" or "configure".
    """

    name: str
    value: Any
    source: str


@dataclass(frozen=True)
class CredkitConfig:
    """
    Aggregates all configuration sections. Access via `CREDKIT.config`.

    Example:
        >>> from credkit import CREDKIT
        >>> CREDKIT.config.session.request_timeout
        30
        >>> CREDKIT.config.store.backend
        'memory'
    """

    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    def with_env_vars(self) -> CredkitConfig:
        """Return a new config with CREDKIT_* environment variables applied."""
        return CredkitConfig(
            store=self.store.with_env_vars(),
            rate_limit=self.rate_limit.with_env_vars(),
            session=self.session.with_env_vars(),
            monitor=self.monitor.with_env_vars(),
        )

    def with_section_overrides(
        self,
        *,
        store: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        session: dict[str, Any] | None = None,
        monitor: dict[str, Any] | None = None,
    ) -> CredkitConfig:
        """Return a new config with per-section overrides merged in."""
        return CredkitConfig(
            store=self.store.with_overrides(store or {}),
            rate_limit=self.rate_limit.with_overrides(rate_limit or {}),
            session=self.session.with_overrides(session or {}),
            monitor=self.monitor.with_overrides(monitor or {}),
        )

    def validate(self) -> CredkitConfig:
        for section_name in _SECTIONS:
            getattr(self, section_name).validate()
        return self


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _Credkit:
    """
    Singleton holding the credkit configuration.

    Use `CREDKIT.configure()` to customize settings and `CREDKIT.config`
    to access the current configuration.
    """

    def __init__(self) -> None:
        self._config: CredkitConfig = CredkitConfig().with_env_vars()
        self._overrides: dict[str, dict[str, Any]] = {}
        self._env_applied = True

    def configure(
        self,
        *,
        store: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        session: dict[str, Any] | None = None,
        monitor: dict[str, Any] | None = None,
        allow_env_override: bool = True,
    ) -> CredkitConfig:
        """
        Configure credkit settings.

        Args:
            store: Store config overrides (backend, path).
            rate_limit: Default attempt budget overrides.
            session: Session Client overrides (request_timeout, renew_margin, ...).
            monitor: Monitor overrides (interval, max_backoff_multiplier).
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, env vars are ignored.

        Returns:
            The configured CredkitConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.
        """
        base = CredkitConfig()
        if allow_env_override:
            base = base.with_env_vars()

        self._config = base.with_section_overrides(
            store=store, rate_limit=rate_limit, session=session, monitor=monitor,
        )
        self._overrides = {
            name: dict(values)
            for name, values in (
                ("store", store), ("rate_limit", rate_limit),
                ("session", session), ("monitor", monitor),
            )
            if values
        }
        self._env_applied = allow_env_override
        return self.validate()

    @property
    def config(self) -> CredkitConfig:
        return self._config

    def reset(self) -> CredkitConfig:
        """Reset configuration to defaults + env vars. Useful between tests."""
        self._config = CredkitConfig().with_env_vars()
        self._overrides = {}
        self._env_applied = True
        return self.validate()

    def validate(self) -> CredkitConfig:
        """
        Validate the current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        return self._config.validate()

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """Return every config value with the source it came from."""
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self._config, section_name)
            section_overrides = self._overrides.get(section_name, {})
            entries = []
            for f in fields(section_config):
                env_var = f.metadata.get("env")
                if f.name in section_overrides and section_overrides[f.name] is not None:
                    source = "configure"
                elif self._env_applied and env_var and os.environ.get(env_var):
                    source = f"env:{env_var}"
                else:
                    source = "default"
                entries.append(ConfigEntry(f.name, getattr(section_config, f.name), source))
            result[section_name] = entries
        return result

    def explain(self, output: Callable[[str], None] = print) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `CREDKIT.explain(logger.info)`
        """
        output("credkit configuration:")
        for section_name, entries in self.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                output(f"  {entry.name} = {entry.value!r} ({entry.source})")

    def __repr__(self) -> str:
        return f"CREDKIT(config={self._config!r})"


# Global singleton instance - always reflects current configuration
CREDKIT: _Credkit = _Credkit()
CREDKIT.validate()
