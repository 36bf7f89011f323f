"""config — Settings, env loading, YAML config."""
from .settings import APISettings, ChannelSettings, MSESettings, Settings, get_settings, reload_settings

__all__ = ["APISettings", "ChannelSettings", "MSESettings", "Settings", "get_settings", "reload_settings"]
