"""Tests for YAML settings loading and worker bootstrap helpers."""
import pytest

from backend.coordinator import OfflineCoordinator
from config.settings import SteamConfig, get_settings, load_settings, reset_settings
from core.worker import configure_logging, load_coordinator


def build_coordinator(steam):
    return OfflineCoordinator(steam)


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


class TestLoadSettings:

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.store.backend == "memory"
        assert settings.bus.rate_limit_seconds == 5.0
        assert settings.bus.cache_ttl_seconds == 86400
        assert settings.heartbeat.stale_after_ms == 15000
        assert settings.bus.control_channel == "dota:command"

    def test_yaml_values_and_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STEAM_API_KEY", "abc123")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "log_level: debug\n"
            "store:\n"
            "  backend: redis\n"
            "  redis_url: redis://cache:6380\n"
            "bus:\n"
            "  rate_limit_seconds: 2\n"
            "  request_timeout_seconds: 0\n"
            "heartbeat:\n"
            "  stale_after_ms: 30000\n"
            "steam:\n"
            "  api_key: ${STEAM_API_KEY}\n"
            "  password: ${UNSET_PASSWORD_VAR}\n"
        )
        settings = load_settings(str(path))

        assert settings.log_level == "DEBUG"
        assert settings.store.backend == "redis"
        assert settings.store.redis_url == "redis://cache:6380"
        assert settings.bus.rate_limit_seconds == 2.0
        assert settings.bus.request_timeout_seconds is None
        assert settings.bus.waiter_ttl_seconds == 300.0
        assert settings.heartbeat.stale_after_ms == 30000
        assert settings.steam.api_key == "abc123"
        assert settings.steam.password == "${UNSET_PASSWORD_VAR}"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "other.yaml"
        path.write_text("app_name: Elsewhere\n")
        monkeypatch.setenv("DOTA_BRIDGE_CONFIG", str(path))
        assert get_settings().app_name == "Elsewhere"

    def test_get_settings_is_cached(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DOTA_BRIDGE_CONFIG", str(tmp_path / "none.yaml"))
        assert get_settings() is get_settings()


class TestWorkerBootstrap:

    def test_offline_coordinator_by_default(self):
        assert isinstance(load_coordinator(None), OfflineCoordinator)

    def test_coordinator_factory_import(self):
        coordinator = load_coordinator("backend.coordinator:OfflineCoordinator")
        assert isinstance(coordinator, OfflineCoordinator)

    def test_factory_receives_steam_settings(self):
        steam = SteamConfig(username="bot", password="pw")
        coordinator = load_coordinator("test_settings:build_coordinator", steam)
        assert coordinator.steam is steam

    def test_offline_coordinator_gets_default_steam_settings(self):
        assert load_coordinator(None).steam == SteamConfig()

    def test_configure_logging_accepts_unknown_level(self):
        configure_logging("chatty")
        configure_logging("debug")
