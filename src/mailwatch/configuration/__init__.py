"""Configuration loading for mailwatch."""

from .settings import (
    AccountSettings,
    ConfigurationError,
    InstanceSettings,
    ReconnectSettings,
    Settings,
    describe_settings,
    load_settings,
    resolve_config_path,
)

__all__ = [
    "AccountSettings",
    "ConfigurationError",
    "InstanceSettings",
    "ReconnectSettings",
    "Settings",
    "describe_settings",
    "load_settings",
    "resolve_config_path",
]
