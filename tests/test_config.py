"""Tests for global configuration module."""

import os
import unittest
from unittest.mock import patch

from credkit._config import (
    CREDKIT,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    CredkitConfig,
    EnvVars,
    MonitorConfig,
    RateLimitConfig,
    SessionConfig,
    StoreConfig,
)


class TestDefaults(unittest.TestCase):
    """Tests for default configuration values."""

    def setUp(self):
        CREDKIT.reset()

    def tearDown(self):
        CREDKIT.reset()

    def test_store_defaults(self):
        self.assertEqual(CREDKIT.config.store.backend, "memory")
        self.assertEqual(CREDKIT.config.store.path, ".credkit")

    def test_rate_limit_defaults(self):
        """Should allow 4 attempts per hour, enforced."""
        self.assertTrue(CREDKIT.config.rate_limit.enforce)
        self.assertEqual(CREDKIT.config.rate_limit.max_attempts, 4)
        self.assertEqual(CREDKIT.config.rate_limit.time_window, 3600.0)
        self.assertEqual(CREDKIT.config.rate_limit.error_weight, 1.0)

    def test_session_defaults(self):
        self.assertEqual(CREDKIT.config.session.request_timeout, 30)
        self.assertEqual(CREDKIT.config.session.renew_margin, 60.0)
        self.assertEqual(CREDKIT.config.session.expires_soon_threshold, 300.0)

    def test_monitor_defaults(self):
        self.assertEqual(CREDKIT.config.monitor.interval, 60.0)
        self.assertEqual(CREDKIT.config.monitor.max_backoff_multiplier, 20.0)


class TestCredkitConfigure(unittest.TestCase):
    """Tests for CREDKIT.configure() method."""

    def setUp(self):
        CREDKIT.reset()

    def tearDown(self):
        CREDKIT.reset()

    def test_configure_sections(self):
        CREDKIT.configure(
            store={"backend": "file", "path": "/tmp/credkit"},
            rate_limit={"max_attempts": 10},
            monitor={"interval": 5.0},
        )

        self.assertEqual(CREDKIT.config.store.backend, "file")
        self.assertEqual(CREDKIT.config.store.path, "/tmp/credkit")
        self.assertEqual(CREDKIT.config.rate_limit.max_attempts, 10)
        self.assertEqual(CREDKIT.config.monitor.interval, 5.0)

    def test_partial_section_keeps_other_defaults(self):
        CREDKIT.configure(rate_limit={"time_window": 900.0})

        self.assertEqual(CREDKIT.config.rate_limit.time_window, 900.0)
        self.assertEqual(CREDKIT.config.rate_limit.max_attempts, 4)

    def test_configure_returns_instance(self):
        result = CREDKIT.configure(session={"request_timeout": 10})

        self.assertIsInstance(result, CredkitConfig)
        self.assertIs(result, CREDKIT.config)

    def test_configure_replaces_previous_overrides(self):
        CREDKIT.configure(monitor={"interval": 5.0})
        CREDKIT.configure(session={"request_timeout": 10})

        self.assertEqual(CREDKIT.config.monitor.interval, 60.0)

    def test_unknown_field_raises_error(self):
        with self.assertRaises(ValueError) as ctx:
            CREDKIT.configure(monitor={"intreval": 5.0})

        self.assertIn("intreval", str(ctx.exception))

    def test_invalid_value_raises_validation_error(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            CREDKIT.configure(monitor={"interval": 0})

        self.assertEqual(ctx.exception.field, "interval")
        self.assertEqual(ctx.exception.section, "monitor")
        self.assertIn("[monitor]", str(ctx.exception))


class TestEnvVars(unittest.TestCase):
    """Tests for environment variable override."""

    def setUp(self):
        CREDKIT.reset()

    def tearDown(self):
        CREDKIT.reset()

    @patch.dict(os.environ, {"CREDKIT_MONITOR_INTERVAL": "15.5"})
    def test_float_conversion(self):
        CREDKIT.reset()  # Re-read env vars
        self.assertEqual(CREDKIT.config.monitor.interval, 15.5)

    @patch.dict(os.environ, {"CREDKIT_RATE_LIMIT_MAX_ATTEMPTS": "7"})
    def test_int_conversion(self):
        CREDKIT.reset()
        self.assertEqual(CREDKIT.config.rate_limit.max_attempts, 7)

    @patch.dict(os.environ, {"CREDKIT_RATE_LIMIT_ENFORCE": "false"})
    def test_bool_conversion(self):
        CREDKIT.reset()
        self.assertFalse(CREDKIT.config.rate_limit.enforce)

    @patch.dict(os.environ, {"CREDKIT_STORE_BACKEND": "file", "CREDKIT_STORE_PATH": "/var/lib/credkit"})
    def test_string_values(self):
        CREDKIT.reset()
        self.assertEqual(CREDKIT.config.store.backend, "file")
        self.assertEqual(CREDKIT.config.store.path, "/var/lib/credkit")

    @patch.dict(os.environ, {"CREDKIT_SESSION_REQUEST_TIMEOUT": "45"})
    def test_configure_overrides_env_vars(self):
        CREDKIT.configure(session={"request_timeout": 90})
        self.assertEqual(CREDKIT.config.session.request_timeout, 90)

    @patch.dict(os.environ, {"CREDKIT_SESSION_REQUEST_TIMEOUT": "45", "CREDKIT_SESSION_RENEW_MARGIN": "5"})
    def test_env_vars_used_as_fallback(self):
        CREDKIT.configure(session={"request_timeout": 90})
        self.assertEqual(CREDKIT.config.session.request_timeout, 90)  # configure wins
        self.assertEqual(CREDKIT.config.session.renew_margin, 5.0)  # env var fallback

    @patch.dict(os.environ, {"CREDKIT_SESSION_RENEW_MARGIN": "5"})
    def test_configure_without_env_override(self):
        CREDKIT.configure(session={"request_timeout": 90}, allow_env_override=False)
        self.assertEqual(CREDKIT.config.session.renew_margin, 60.0)

    @patch.dict(os.environ, {"CREDKIT_RATE_LIMIT_MAX_ATTEMPTS": "many"})
    def test_invalid_env_var_raises_error(self):
        with self.assertRaises(ConfigEnvVarError) as ctx:
            CREDKIT.reset()

        self.assertEqual(ctx.exception.env_var, "CREDKIT_RATE_LIMIT_MAX_ATTEMPTS")
        self.assertEqual(ctx.exception.value, "many")

    @patch.dict(os.environ, {"CREDKIT_RATE_LIMIT_ENFORCE": "maybe"})
    def test_invalid_bool_raises_error(self):
        with self.assertRaises(ConfigEnvVarError):
            CREDKIT.reset()

    @patch.dict(os.environ, {"CREDKIT_MONITOR_INTERVAL": ""})
    def test_empty_env_var_is_ignored(self):
        CREDKIT.reset()
        self.assertEqual(CREDKIT.config.monitor.interval, 60.0)

    def test_env_vars_get_returns_none_when_unset(self):
        with patch.dict(os.environ, {}, clear=True):
            self.assertIsNone(EnvVars.get("CREDKIT_UNDEFINED"))


class TestCredkitReset(unittest.TestCase):
    """Tests for CREDKIT.reset() method."""

    def test_reset_clears_config(self):
        CREDKIT.configure(session={"request_timeout": 999}, monitor={"interval": 1.0})

        CREDKIT.reset()

        self.assertEqual(CREDKIT.config.session.request_timeout, 30)
        self.assertEqual(CREDKIT.config.monitor.interval, 60.0)

    def test_reset_returns_instance(self):
        result = CREDKIT.reset()

        self.assertIsInstance(result, CredkitConfig)
        self.assertEqual(result.session.request_timeout, CREDKIT.config.session.request_timeout)


class TestValidation(unittest.TestCase):
    """Tests for per-section validation."""

    def test_store_backend(self):
        with self.assertRaises(ConfigValidationError):
            StoreConfig(backend="redis").validate()  # type: ignore[arg-type]

    def test_file_store_requires_path(self):
        with self.assertRaises(ConfigValidationError):
            StoreConfig(backend="file", path="").validate()

    def test_rate_limit_values(self):
        with self.assertRaises(ConfigValidationError):
            RateLimitConfig(max_attempts=0).validate()
        with self.assertRaises(ConfigValidationError):
            RateLimitConfig(time_window=-1).validate()
        with self.assertRaises(ConfigValidationError):
            RateLimitConfig(error_weight=-0.5).validate()

    def test_session_values(self):
        with self.assertRaises(ConfigValidationError):
            SessionConfig(request_timeout=0).validate()
        with self.assertRaises(ConfigValidationError):
            SessionConfig(renew_margin=-1).validate()

    def test_monitor_backoff_multiplier(self):
        with self.assertRaises(ConfigValidationError):
            MonitorConfig(max_backoff_multiplier=0.5).validate()

    def test_valid_sections_return_self(self):
        config = MonitorConfig(interval=1.0)
        self.assertIs(config.validate(), config)


class TestWithOverrides(unittest.TestCase):
    """Tests for with_overrides() method."""

    def test_returns_new_instance(self):
        original = MonitorConfig()
        updated = original.with_overrides({"interval": 10.0})

        self.assertIsNot(original, updated)
        self.assertEqual(original.interval, 60.0)
        self.assertEqual(updated.interval, 10.0)

    def test_empty_dict_returns_same_instance(self):
        original = SessionConfig()
        self.assertIs(original.with_overrides({}), original)

    def test_none_values_ignored(self):
        updated = SessionConfig().with_overrides({"request_timeout": None, "renew_margin": 5.0})

        self.assertEqual(updated.request_timeout, 30)
        self.assertEqual(updated.renew_margin, 5.0)

    def test_invalid_field_raises_error(self):
        with self.assertRaises(ValueError) as ctx:
            RateLimitConfig().with_overrides({"max_attempt": 3})

        self.assertIn("Unknown config fields", str(ctx.exception))
        self.assertIn("max_attempt", str(ctx.exception))


class TestDataclassImmutability(unittest.TestCase):
    """Tests for dataclass immutability (frozen=True)."""

    def test_sections_are_frozen(self):
        for config, field_name in (
            (StoreConfig(), "backend"),
            (RateLimitConfig(), "max_attempts"),
            (SessionConfig(), "request_timeout"),
            (MonitorConfig(), "interval"),
        ):
            with self.subTest(section=type(config).__name__):
                with self.assertRaises(AttributeError):
                    setattr(config, field_name, 999)


class TestExplain(unittest.TestCase):
    """Tests for CREDKIT.explain() and explain_data()."""

    def setUp(self):
        CREDKIT.reset()

    def tearDown(self):
        CREDKIT.reset()

    def _entry(self, section: str, name: str) -> ConfigEntry:
        return next(e for e in CREDKIT.explain_data()[section] if e.name == name)

    def test_lists_every_section(self):
        self.assertEqual(list(CREDKIT.explain_data()), ["store", "rate_limit", "session", "monitor"])

    def test_default_source(self):
        entry = self._entry("monitor", "interval")

        self.assertEqual(entry.source, "default")
        self.assertEqual(entry.value, 60.0)

    def test_configure_source(self):
        CREDKIT.configure(monitor={"interval": 5.0})

        self.assertEqual(self._entry("monitor", "interval").source, "configure")

    @patch.dict(os.environ, {"CREDKIT_RATE_LIMIT_MAX_ATTEMPTS": "9"})
    def test_env_source(self):
        CREDKIT.reset()

        entry = self._entry("rate_limit", "max_attempts")
        self.assertEqual(entry.source, "env:CREDKIT_RATE_LIMIT_MAX_ATTEMPTS")
        self.assertEqual(entry.value, 9)

    def test_explain_outputs_lines(self):
        lines: list[str] = []
        CREDKIT.configure(store={"backend": "file"})

        CREDKIT.explain(lines.append)

        self.assertEqual(lines[0], "credkit configuration:")
        self.assertIn("[store]", lines)
        self.assertIn("  backend = 'file' (configure)", lines)
        self.assertIn("  interval = 60.0 (default)", lines)


class TestCredkitRepr(unittest.TestCase):
    def test_repr_includes_config(self):
        self.assertIn("CREDKIT(config=", repr(CREDKIT))


if __name__ == "__main__":
    unittest.main()
