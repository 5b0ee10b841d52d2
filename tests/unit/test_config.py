"""Tests for settings, database URL handling, errors and log context."""

import logging
from unittest.mock import patch

import pytest
import structlog
from pydantic import ValidationError

from vouchboard.config import VouchboardSettings, get_settings
from vouchboard.database import get_database_url
from vouchboard.exceptions import ConflictError, RateLimitedError, UpstreamTimeoutError
from vouchboard.logging_config import bind_index_context, clear_index_context, configure_logging


class TestSettings:
    def test_defaults(self):
        settings = VouchboardSettings()
        assert settings.lock_ttl_seconds == 60
        assert settings.rate_window_seconds == 60
        assert settings.fetch_timeout_seconds == 15.0
        assert settings.reindex_batch_size == 25

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("VOUCHBOARD_LOCK_TTL_SECONDS", "5")
        get_settings.cache_clear()
        assert get_settings().lock_ttl_seconds == 5

    def test_batch_size_bounds(self, monkeypatch):
        monkeypatch.setenv("VOUCHBOARD_REINDEX_BATCH_SIZE", "500")
        with pytest.raises(ValidationError):
            VouchboardSettings()


class TestDatabaseUrl:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
            ("sqlite+aiosqlite:///tmp/x.db", "sqlite+aiosqlite:///tmp/x.db"),
        ],
    )
    def test_driver_rewrite(self, monkeypatch, url, expected):
        monkeypatch.setenv("VOUCHBOARD_DATABASE_URL", url)
        get_settings.cache_clear()
        assert get_database_url() == expected


class TestExceptions:
    def test_conflict_details(self):
        error = ConflictError("acme/a", 123)
        assert error.details == {"slug": "acme/a", "expires_at_ms": 123}
        assert "already being indexed" in str(error)

    def test_rate_limited_carries_tier(self):
        error = RateLimitedError("repo", "repo-global:acme/a", 15, 42)
        assert error.code == "rate_limited"
        assert error.details["retry_after"] == 42

    def test_timeout_is_upstream_error(self):
        error = UpstreamTimeoutError(15)
        assert error.code == "upstream_error"
        assert error.details["timeout_seconds"] == 15


class TestLoggingContext:
    def test_configure_uses_settings_and_binds_service(self, monkeypatch):
        monkeypatch.setenv("VOUCHBOARD_LOG_FORMAT", "console")
        with (
            patch("vouchboard.logging_config.structlog.configure") as configure,
            patch("vouchboard.logging_config.logging.basicConfig") as basic_config,
        ):
            configure_logging(level="warning")

        assert basic_config.call_args.kwargs["level"] == logging.WARNING
        processors = configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        assert structlog.contextvars.get_contextvars() == {"service": "vouchboard"}
        structlog.contextvars.clear_contextvars()

    def test_index_context_bound_and_cleared(self):
        structlog.contextvars.clear_contextvars()
        bind_index_context("acme/widgets", "ip:abc")
        assert structlog.contextvars.get_contextvars() == {
            "slug": "acme/widgets",
            "requester": "ip:abc",
        }

        clear_index_context()
        assert structlog.contextvars.get_contextvars() == {}
