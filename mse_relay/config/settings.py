"""
config/settings.py — Central configuration via env vars + YAML override.

Priority: ENV > config.yaml > defaults

The [mse] section describes the default engine link. Extra engines can be
listed under [channels]; when that list is empty the relay runs a single
channel named "default" built from [mse].
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MSESettings(BaseSettings):
    host: str = Field("localhost", description="Media Sequencer host")
    port: int = Field(8595, description="Media Sequencer PepTalk WebSocket port")
    enabled: bool = Field(True, description="Connect to the engine at all")
    reconnect_interval: float = Field(5.0, description="Fixed delay before a reconnect attempt (seconds)")
    connect_timeout: float = Field(10.0, description="Socket open timeout (seconds)")
    request_timeout: float = Field(30.0, description="Timeout for correlated requests (seconds)")
    initial_query: str = Field("get /storage/shows 2", description="Sent once after the protocol handshake")
    subscriptions: list[str] = Field(default_factory=list, description="Extra commands sent after the handshake")

    model_config = SettingsConfigDict(env_prefix="MSE_")


class ChannelSettings(BaseModel):
    name: str
    host: str
    port: int = 8595
    enabled: bool = True


class APISettings(BaseSettings):
    host: str = Field("0.0.0.0", description="API server bind host")
    port: int = Field(8080, description="API server port")
    api_key: Optional[str] = Field(None, description="Bearer token for API auth (optional)")
    cors_origins: list[str] = Field(["*"], description="CORS allowed origins")
    log_level: str = Field("info", description="Log level")

    model_config = SettingsConfigDict(env_prefix="API_")


class Settings(BaseSettings):
    mse: MSESettings = Field(default_factory=MSESettings)
    api: APISettings = Field(default_factory=APISettings)
    channels: list[ChannelSettings] = Field(default_factory=list)
    config_file: Path = Field(Path("config.yaml"), description="Path to YAML config file")

    model_config = SettingsConfigDict(env_prefix="RELAY_")

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings, merging YAML file if present."""
        path = config_path or Path(os.environ.get("RELAY_CONFIG_FILE", "config.yaml"))
        yaml_data: dict = {}

        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

        mse = MSESettings(**yaml_data.get("mse", {}))
        api = APISettings(**yaml_data.get("api", {}))
        channels = [ChannelSettings(**ch) for ch in yaml_data.get("channels", []) or []]

        return cls(mse=mse, api=api, channels=channels, config_file=path)

    def effective_channels(self) -> list[ChannelSettings]:
        """Configured channels, or a single "default" channel built from [mse]."""
        if self.channels:
            return list(self.channels)
        return [ChannelSettings(name="default", host=self.mse.host, port=self.mse.port, enabled=self.mse.enabled)]

    def client_options(self) -> dict:
        """Per-client options shared by every channel."""
        return {
            "reconnect_interval": self.mse.reconnect_interval,
            "connect_timeout": self.mse.connect_timeout,
            "request_timeout": self.mse.request_timeout,
            "initial_query": self.mse.initial_query,
            "subscriptions": list(self.mse.subscriptions),
        }

    def to_yaml(self, path: Path) -> None:
        """Save current settings to YAML."""
        data = {
            "mse": self.mse.model_dump(),
            "api": self.api.model_dump(),
            "channels": [ch.model_dump() for ch in self.channels],
        }
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Singleton accessor: call get_settings() anywhere in the app
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reload_settings(config_path: Optional[Path] = None) -> Settings:
    global _settings
    _settings = Settings.load(config_path)
    return _settings
