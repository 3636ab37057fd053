"""Typed configuration for mailwatch.

Accounts, the webhook each account forwards to and the mailboxes to watch are
read from a JSON file and validated with Pydantic. Reconnect and IDLE timing
can be overridden through environment variables so deployments can tune them
without editing the file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator, model_validator

from mailwatch.watcher.models import (
    DEFAULT_RECONNECT_CEILING,
    DEFAULT_RECONNECT_INCREMENT,
    MailboxRole,
    RetryBudget,
)


DEFAULT_CONFIG_PATH = Path("env-config.json")
CONFIG_PATH_ENV = "MAILWATCH_CONFIG"
MASK = "***"


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or invalid."""

    pass


class AccountSettings(BaseModel):
    """IMAP server address and credentials for one account."""

    host: str = Field(..., min_length=1, description="IMAP hostname")
    port: int = Field(993, ge=1, le=65535, description="IMAP port")
    secure: bool = Field(True, description="Connect over TLS")
    user: str = Field(..., min_length=1, description="Login name, usually the address")
    password: Optional[SecretStr] = Field(default=None, description="Login password")
    password_env: Optional[str] = Field(
        default=None, description="Environment variable holding the password"
    )

    @model_validator(mode="after")
    def _validate_transport(self) -> "AccountSettings":
        if self.secure and self.port == 143:
            raise ValueError("Port 143 is plain IMAP; set secure=false or use port 993")
        if not self.secure and self.port == 993:
            raise ValueError("Port 993 requires TLS; set secure=true")
        if self.password is None and not self.password_env:
            raise ValueError("Either password or password_env must be set")
        return self

    def resolve_password(self) -> str:
        if self.password is not None:
            return self.password.get_secret_value()
        value = os.getenv(self.password_env or "")
        if value is None:
            raise ConfigurationError(
                f"Environment variable {self.password_env} for {self.user} is not set"
            )
        return value


class ReconnectSettings(BaseModel):
    """Linear reconnect backoff."""

    increment_seconds: float = Field(DEFAULT_RECONNECT_INCREMENT, ge=0, le=3600)
    max_delay_seconds: float = Field(DEFAULT_RECONNECT_CEILING, ge=0, le=86400)

    def budget(self) -> RetryBudget:
        """Fresh retry budget; every watcher gets its own."""
        return RetryBudget(
            delay=0.0,
            ceiling=self.max_delay_seconds,
            increment=self.increment_seconds,
        )


class InstanceSettings(BaseModel):
    """One account, its forwarding target and the mailboxes to watch."""

    account: AccountSettings
    webhook_url: str = Field(..., description="Webhook receiving new messages")
    mailboxes: Dict[MailboxRole, str] = Field(
        default_factory=lambda: {MailboxRole.INBOX: "INBOX"},
        description="Mailbox role to server folder name",
    )

    @field_validator("webhook_url")
    @classmethod
    def _validate_webhook_url(cls, value: str) -> str:
        if not value.startswith(("https://", "http://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return value

    @field_validator("mailboxes")
    @classmethod
    def _validate_mailboxes(cls, value: Dict[MailboxRole, str]) -> Dict[MailboxRole, str]:
        if not value:
            raise ValueError("At least one mailbox must be watched")
        for role, folder in value.items():
            if not folder.strip():
                raise ValueError(f"Folder name for {role.value} must not be empty")
        return value


class Settings(BaseModel):
    """Root configuration state."""

    instances: List[InstanceSettings] = Field(..., min_length=1)
    reconnect: ReconnectSettings = Field(default_factory=ReconnectSettings)
    idle_check_interval_seconds: int = Field(
        300, ge=10, le=1740, description="Seconds per IDLE cycle before renewal"
    )
    noop_poll_interval_seconds: int = Field(
        60, ge=5, le=3600, description="Polling interval for servers without IDLE"
    )
    connection_timeout_seconds: int = Field(30, ge=1, le=300)


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Explicit path, then $MAILWATCH_CONFIG, then ./env-config.json."""
    if path is not None:
        return path
    env_path = os.getenv(CONFIG_PATH_ENV)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load and validate settings from disk.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid
    """
    path = resolve_config_path(path)
    if not path.exists():
        raise ConfigurationError(f"Settings file not found at {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")

    payload = _apply_env_overrides(payload)
    try:
        settings = Settings.model_validate(payload)
    except (ValidationError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    for instance in settings.instances:
        instance.account.resolve_password()
    return settings


def describe_settings(settings: Settings) -> Dict[str, Any]:
    """Dump settings with secrets masked."""
    payload = settings.model_dump(mode="json")
    for instance in payload.get("instances", []):
        account = instance.get("account", {})
        if account.get("password") is not None:
            account["password"] = MASK
        instance["webhook_url"] = _mask_webhook(instance.get("webhook_url", ""))
    return payload


def _mask_webhook(url: str) -> str:
    # webhook URLs embed their token as the last path segment
    head, sep, _token = url.rpartition("/")
    return f"{head}{sep}{MASK}" if sep else MASK


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    reconnect = data.setdefault("reconnect", {})
    _set_env_override(reconnect, "increment_seconds", "MAILWATCH_RECONNECT_INCREMENT_SECONDS", cast_float=True)
    _set_env_override(reconnect, "max_delay_seconds", "MAILWATCH_RECONNECT_MAX_DELAY_SECONDS", cast_float=True)
    _set_env_override(data, "idle_check_interval_seconds", "MAILWATCH_IDLE_CHECK_INTERVAL_SECONDS", cast_int=True)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    env_name: str,
    *,
    cast_int: bool = False,
    cast_float: bool = False,
) -> None:
    raw = os.getenv(env_name)
    if raw is None:
        return
    try:
        if cast_int:
            mapping[key] = int(raw)
        elif cast_float:
            mapping[key] = float(raw)
        else:
            mapping[key] = raw
    except ValueError as exc:
        raise ConfigurationError(f"{env_name} must be numeric, got {raw!r}") from exc


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
