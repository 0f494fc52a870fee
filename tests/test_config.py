"""
tests/test_config.py -- Unit tests for core/config.py Settings validation.

Settings is instantiated directly (not through the cached get_settings())
with explicit keyword values so the process environment does not leak in.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings


def test_debug_autogenerates_secret() -> None:
    settings = Settings(debug=True, secret_key="")
    assert len(settings.secret_key) >= 32


def test_production_requires_secret() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=False, secret_key="")


def test_short_secret_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=True, secret_key="too-short")


def test_production_forces_secure_cookies() -> None:
    settings = Settings(debug=False, secret_key="s" * 32, app_env="production", secure_cookies=False)
    assert settings.secure_cookies is True


def test_refresh_ttl_not_shorter_than_access() -> None:
    with pytest.raises(ValidationError):
        Settings(debug=True, access_token_ttl_seconds=3600, refresh_token_ttl_seconds=60)


def test_defaults() -> None:
    settings = Settings(debug=True)
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 604800
    assert settings.token_issuer == "backoffice"
    assert settings.refresh_reuse_detection is True
    assert settings.refresh_reuse_grace_seconds == 5.0
