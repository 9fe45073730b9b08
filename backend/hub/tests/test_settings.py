"""Tests for the engine settings loader."""

import pytest

from hub.config.settings import (
    HubSettings,
    SettingsLoader,
    get_settings,
    override_settings,
    reset_settings,
)


@pytest.fixture
def load_from(monkeypatch):
    """Point HUB_CONFIG_PATH at `path` and return freshly loaded settings."""
    def _load(path):
        monkeypatch.setenv("HUB_CONFIG_PATH", str(path))
        reset_settings()
        return get_settings()
    return _load


class TestYamlLoading:

    def test_repository_config(self):
        settings = get_settings()

        assert settings.jwt_issuer == "hub"
        assert settings.default_currency == "BRL"
        assert settings.internal_admin_roles == ("super_admin", "support")
        assert settings.alert_min_failures == 3
        assert settings.access_log_retention_days == 365

    def test_custom_file(self, make_yaml_config, load_from):
        path = make_yaml_config("entitlements.yml", {
            "identity": {"tenant_header": "X-Clinic-Id", "internal_admin_roles": ["ops"]},
            "pricing": {"default_currency": "usd"},
            "audit": {"alert_min_failures": 5, "retention_days": 90},
        })

        settings = load_from(path)

        assert settings.tenant_header == "X-Clinic-Id"
        assert settings.internal_admin_roles == ("ops",)
        assert settings.default_currency == "USD"
        assert settings.alert_min_failures == 5
        assert settings.access_log_retention_days == 90
        # untouched keys keep their defaults
        assert settings.alert_window_hours == 24

    def test_empty_file_uses_defaults(self, make_yaml_config, load_from):
        path = make_yaml_config("entitlements.yml", {})
        settings = load_from(path)
        assert settings.token_ttl_minutes == HubSettings().token_ttl_minutes

    def test_missing_file_uses_defaults(self, temp_config_dir, load_from):
        settings = load_from(temp_config_dir / "absent.yml")

        assert settings.jwt_issuer is None
        assert settings.tenant_header == "X-Tenant-Id"


class TestEnvironmentOverrides:

    def test_env_wins_over_yaml(self, monkeypatch):
        monkeypatch.setenv("HUB_ALERT_MIN_FAILURES", "10")
        monkeypatch.setenv("HUB_JWT_ISSUER", "other")
        reset_settings()

        settings = get_settings()

        assert settings.alert_min_failures == 10
        assert settings.jwt_issuer == "other"

    def test_invalid_integer_is_ignored(self, monkeypatch):
        monkeypatch.setenv("HUB_ALERT_LIMIT", "lots")
        reset_settings()

        assert get_settings().alert_limit == 25

    def test_heroku_style_database_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://hub:pw@db:5432/hub")
        reset_settings()

        assert get_settings().database_url == "postgresql://hub:pw@db:5432/hub"

    def test_secret_only_from_env(self):
        assert get_settings().jwt_secret == "test-secret-key-for-identity-tokens"


class TestSingleton:

    def test_loader_is_cached(self):
        assert SettingsLoader() is SettingsLoader()
        assert get_settings() is get_settings()

    def test_reset_reloads(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("HUB_ALERT_WINDOW_HOURS", "6")
        assert get_settings().alert_window_hours == first.alert_window_hours

        reset_settings()
        assert get_settings().alert_window_hours == 6

    def test_override_returns_copy(self):
        changed = override_settings(alert_limit=3)

        assert changed.alert_limit == 3
        assert get_settings().alert_limit == 25
