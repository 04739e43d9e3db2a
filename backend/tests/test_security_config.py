import importlib
import sys

import pytest


def reload_config_module():
    config_module = sys.modules.get("zenchat.config")
    if config_module:
        config_module.get_settings.cache_clear()
        sys.modules.pop("zenchat.config", None)
    return importlib.import_module("zenchat.config")


@pytest.fixture(autouse=True)
def restore_config_module():
    original = sys.modules.get("zenchat.config")
    yield
    if original is not None:
        sys.modules["zenchat.config"] = original


def test_missing_secret_key_fails_closed(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="secret_key|SECRET_KEY"):
        config_module.get_settings()


def test_weak_secret_key_fails_closed(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "changeme-in-production")

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()

    with pytest.raises(Exception, match="secret_key|SECRET_KEY"):
        config_module.get_settings()


def test_strong_secret_key_passes(monkeypatch):
    monkeypatch.setenv(
        "SECRET_KEY",
        "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef",
    )

    config_module = reload_config_module()
    config_module.get_settings.cache_clear()
    settings = config_module.get_settings()

    assert settings.secret_key
    assert settings.rate_limit_max_requests == 200
    assert settings.rate_limit_window_ms == 60_000
    assert settings.bcrypt_rounds == 10


def test_cookies_are_secure_only_in_production(monkeypatch):
    monkeypatch.setenv(
        "SECRET_KEY",
        "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef",
    )
    config_module = reload_config_module()

    monkeypatch.setenv("ENVIRONMENT", "production")
    assert config_module.Settings().cookie_secure is True
    assert config_module.Settings().expose_error_details is False

    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("DEBUG", "true")
    assert config_module.Settings().cookie_secure is False
    assert config_module.Settings().expose_error_details is True
