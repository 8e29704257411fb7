"""Pytest configuration shared by every Snaxel test module."""

import pytest

from snaxel.services.shared.settings import get_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Keep tests away from any real config file and from cached settings."""
    monkeypatch.setenv("SNAXEL_CONFIG_PATH", str(tmp_path / "missing-config.yaml"))
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
