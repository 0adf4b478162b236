"""
Configuration loader for the Dota Bridge.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class StoreConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    max_connections: int = 20


@dataclass
class BusConfig:
    control_channel: str = "dota:command"
    rate_limit_seconds: float = 5.0     # min spacing between coordinator requests
    cache_ttl_seconds: int = 24 * 3600
    waiter_ttl_seconds: float = 300.0   # abandoned waiter registrations expire after this
    request_timeout_seconds: Optional[float] = 30.0


@dataclass
class HeartbeatConfig:
    key: str = "dota_status"
    interval_seconds: float = 10.0
    stale_after_ms: int = 15000


@dataclass
class SteamConfig:
    api_key: str = ""
    base_url: str = "https://api.steampowered.com"
    username: str = ""
    password: str = ""
    reconnect_delay_seconds: float = 30.0


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class Settings:
    app_name: str = "DotaBridge"
    debug: bool = False
    log_level: str = "INFO"
    store: StoreConfig = field(default_factory=StoreConfig)
    bus: BusConfig = field(default_factory=BusConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    steam: SteamConfig = field(default_factory=SteamConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _timeout(value: Any) -> Optional[float]:
    # An explicit null or 0 in YAML means "wait forever"
    if value is None or value == 0:
        return None
    return float(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "DOTA_BRIDGE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = str(raw.get("log_level", settings.log_level)).upper()

        if "store" in raw:
            st = raw["store"]
            settings.store = StoreConfig(
                backend=st.get("backend", "memory"),
                redis_url=st.get("redis_url", "redis://localhost:6379"),
                max_connections=int(st.get("max_connections", 20)),
            )

        if "bus" in raw:
            bus = raw["bus"]
            defaults = BusConfig()
            settings.bus = BusConfig(
                control_channel=bus.get("control_channel", defaults.control_channel),
                rate_limit_seconds=float(bus.get("rate_limit_seconds", defaults.rate_limit_seconds)),
                cache_ttl_seconds=int(bus.get("cache_ttl_seconds", defaults.cache_ttl_seconds)),
                waiter_ttl_seconds=float(bus.get("waiter_ttl_seconds", defaults.waiter_ttl_seconds)),
                request_timeout_seconds=_timeout(
                    bus.get("request_timeout_seconds", defaults.request_timeout_seconds)
                ),
            )

        if "heartbeat" in raw:
            hb = raw["heartbeat"]
            settings.heartbeat = HeartbeatConfig(
                key=hb.get("key", "dota_status"),
                interval_seconds=float(hb.get("interval_seconds", 10.0)),
                stale_after_ms=int(hb.get("stale_after_ms", 15000)),
            )

        if "steam" in raw:
            sa = raw["steam"]
            settings.steam = SteamConfig(
                api_key=sa.get("api_key", ""),
                base_url=sa.get("base_url", "https://api.steampowered.com"),
                username=sa.get("username", ""),
                password=sa.get("password", ""),
                reconnect_delay_seconds=float(sa.get("reconnect_delay_seconds", 30.0)),
            )

        if "api" in raw:
            api = raw["api"]
            settings.api = ApiConfig(
                host=api.get("host", "0.0.0.0"),
                port=int(api.get("port", 8000)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
