# tests/test_models.py
# Job model defaults that come from the environment-backed browser settings

import pytest
from pydantic import ValidationError

from config.settings import BrowserConfig
from core import models
from core.models import Job, PaginationConfig, ScrapingConfig


def test_browser_settings_drive_config_defaults(monkeypatch):
    monkeypatch.setattr(models, "browser_config", BrowserConfig(navigation_timeout_ms=5000, settle_delay_ms=250))

    assert ScrapingConfig().timeout == 5000
    assert PaginationConfig().settle_delay_ms == 250


def test_job_values_override_browser_settings(monkeypatch):
    monkeypatch.setattr(models, "browser_config", BrowserConfig(navigation_timeout_ms=5000, settle_delay_ms=250))

    job = Job.model_validate(
        {
            "id": "a",
            "userId": "u",
            "url": "https://example.com",
            "config": {"timeout": 12000, "pagination": {"maxPages": 2, "settleDelayMs": 0}},
        }
    )

    assert job.config.timeout == 12000
    assert job.config.pagination.settle_delay_ms == 0


def test_navigation_timeout_env_var(monkeypatch):
    monkeypatch.setenv("NAVIGATION_TIMEOUT_MS", "45000")
    monkeypatch.setattr(models, "browser_config", BrowserConfig())

    assert ScrapingConfig().timeout == 45000


def test_rejects_non_http_url():
    with pytest.raises(ValidationError):
        Job.model_validate({"id": "a", "userId": "u", "url": "file:///etc/passwd"})
