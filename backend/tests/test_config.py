"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    from autopilot.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {"ENVIRONMENT": "development"}, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.report_chunk_size == 500
        assert settings.run_log_mutation_cap == 50
        get_settings.cache_clear()


def test_backend_url_trailing_slash_stripped():
    from autopilot.config import Settings
    settings = Settings(environment="development", backend_url="https://cfg.example.com/api/")
    assert settings.backend_url == "https://cfg.example.com/api"


def test_production_requires_cron_secret():
    """Production mode should refuse to start without a scheduler secret."""
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="CRON_SECRET must be set"):
        Settings(environment="production", backend_url="https://cfg.example.com/api")


def test_production_rejects_localhost_backend():
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="BACKEND_URL"):
        Settings(environment="production", cron_secret="x", backend_url="http://localhost:8080/api")


def test_unknown_default_run_mode_rejected():
    from autopilot.config import Settings

    with pytest.raises(ValueError, match="DEFAULT_RUN_MODE"):
        Settings(environment="development", default_run_mode="YOLO")
