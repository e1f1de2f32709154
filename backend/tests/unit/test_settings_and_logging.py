"""
Tests for application settings, logging and request context.

Tests cover:
- AppSettings defaults and environment overrides
- JSON log formatting with extra fields
- Logger lookup
- RequestContext construction from proxy headers
"""

import asyncio
import json
import logging
import os
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from pydantic import ValidationError

from backend.src.config.settings import AppSettings
from backend.src.middleware.tenant import RequestContext, get_request_context, require_admin
from backend.src.utils.logging_config import JSONFormatter, get_logger


class TestAppSettings:
    """Tests for AppSettings."""

    def test_defaults(self):
        """Test default expansion limits."""
        with patch.dict(os.environ, {}, clear=True):
            settings = AppSettings(_env_file=None)

        assert settings.max_window_days == 1830
        assert settings.upcoming_limit == 5
        assert settings.upcoming_horizon_days == 365
        assert settings.preview_count == 4
        assert settings.max_series_years == 20
        assert settings.default_timezone == "America/New_York"

    def test_environment_overrides(self):
        """Test that CHAPTER_EVENTS_* variables override defaults."""
        env = {
            "CHAPTER_EVENTS_MAX_WINDOW_DAYS": "90",
            "CHAPTER_EVENTS_DEFAULT_TIMEZONE": "Europe/Paris",
            "CHAPTER_EVENTS_MAX_SERIES_YEARS": "5",
        }
        with patch.dict(os.environ, env):
            settings = AppSettings(_env_file=None)

        assert settings.max_window_days == 90
        assert settings.default_timezone == "Europe/Paris"
        assert settings.max_series_years == 5

    def test_invalid_timezone(self):
        """Test that an unknown default timezone is rejected."""
        with patch.dict(os.environ, {"CHAPTER_EVENTS_DEFAULT_TIMEZONE": "Nowhere/Special"}):
            with pytest.raises(ValidationError):
                AppSettings(_env_file=None)


class TestLogging:
    """Tests for logging configuration."""

    def test_json_formatter_includes_extra(self):
        """Test that extra={...} fields are emitted."""
        record = logging.LogRecord(
            "chapter_events.services", logging.INFO, __file__, 10,
            "Split series %s", ("ser_abc",), None,
        )
        record.series_guid = "ser_abc"

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "Split series ser_abc"
        assert data["level"] == "INFO"
        assert data["series_guid"] == "ser_abc"
        assert data["timestamp"].endswith("Z")

    def test_get_logger(self):
        """Test named logger lookup."""
        assert get_logger("services").name == "chapter_events.services"
        with pytest.raises(ValueError):
            get_logger("jobs")


class TestRequestContext:
    """Tests for request context dependencies."""

    def test_context_from_headers(self):
        """Test parsing the proxy headers."""
        ctx = asyncio.run(get_request_context(x_chapter_id="3", x_member_id="42", x_is_admin="True"))
        assert ctx == RequestContext(chapter_id=3, member_id=42, is_admin=True)

    def test_anonymous_context(self):
        """Test a request without headers."""
        ctx = asyncio.run(get_request_context(x_chapter_id=None, x_member_id=None, x_is_admin=None))
        assert ctx == RequestContext()
        assert not ctx.is_admin

    def test_non_numeric_id(self):
        """Test that a non-numeric id is a 400."""
        with pytest.raises(HTTPException) as exc_info:
            asyncio.run(get_request_context(x_chapter_id="one", x_member_id=None, x_is_admin=None))
        assert exc_info.value.status_code == 400

    def test_require_admin(self):
        """Test the admin gate."""
        assert require_admin(RequestContext.system()).is_admin
        with pytest.raises(HTTPException) as exc_info:
            require_admin(RequestContext(chapter_id=1, member_id=42))
        assert exc_info.value.status_code == 403
