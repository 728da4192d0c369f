"""Service configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Configuration is read once at startup and never reloaded; changing
targets requires a restart.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = SettingsConfigDict(env_prefix="IMAP_", populate_by_name=True)

    host: str = Field(description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    tls_verify: bool = Field(
        default=True,
        description="Verify the server certificate and hostname",
    )
    username: str = Field(
        validation_alias=AliasChoices("IMAP_USERNAME", "IMAP_USER", "username"),
        description="IMAP login username",
    )
    password: SecretStr = Field(description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to watch")
    connect_timeout_seconds: float = Field(
        default=30.0,
        description="Socket timeout for the connect/login handshake",
    )
    keepalive_interval_seconds: float = Field(
        default=60.0,
        description="NOOP interval when the server does not support IDLE",
    )
    idle_reissue_seconds: float = Field(
        default=600.0,
        description="Re-issue IDLE after this many seconds",
    )


class FilterConfig(BaseSettings):
    """Target sender/subject lists, pipe-delimited in the environment."""

    model_config = SettingsConfigDict(env_prefix="TARGET_EMAIL_", populate_by_name=True)

    subjects: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias=AliasChoices("TARGET_EMAIL_SUBJECTS", "TARGET_EMAIL_SUBJECT", "subjects"),
        description="Subject substrings to match (case-insensitive)",
    )
    addresses: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "TARGET_EMAIL_ADDRESSES", "TARGET_EMAIL_ADDRESS", "addresses"
        ),
        description="Sender addresses to search for",
    )

    @field_validator("subjects", "addresses", mode="before")
    @classmethod
    def _split_pipe_list(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.split("|")
        if isinstance(value, (list, tuple)):
            return [item.strip() for item in value if isinstance(item, str) and item.strip()]
        return value


class WatcherConfig(BaseSettings):
    """Check-cycle behaviour."""

    model_config = SettingsConfigDict(env_prefix="WATCHER_", populate_by_name=True)

    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias=AliasChoices(
            "POLLING_INTERVAL_SECONDS",
            "WATCHER_POLL_INTERVAL_SECONDS",
            "poll_interval_seconds",
        ),
        description="Fallback timer period between check cycles",
    )
    action_marker: str = Field(
        default="update-primary-location",
        description="Path fragment identifying the action link in a message body",
    )
    mark_unseen_on_automation_failure: bool = Field(
        default=False,
        description="Remove the \\Seen flag again when the automation fails",
    )
    automation_max_retries: int = Field(
        default=2,
        ge=0,
        description="Re-dispatches of a failed link before it is left seen for good",
    )


class ReconnectConfig(BaseSettings):
    """Exponential reconnect backoff with a hard attempt ceiling."""

    model_config = SettingsConfigDict(env_prefix="RECONNECT_")

    max_attempts: int = Field(default=10, ge=1, description="Reconnect attempts before exiting")
    base_delay_seconds: float = Field(default=5.0, description="Delay before the first reconnect")
    max_delay_seconds: float = Field(default=300.0, description="Upper bound for any delay")


class AutomationConfig(BaseSettings):
    """Playwright page-automation settings."""

    model_config = SettingsConfigDict(env_prefix="AUTOMATION_")

    headless: bool = Field(default=True, description="Run Chromium headless")
    navigation_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for loading the action page",
    )
    timeout_seconds: float = Field(
        default=30.0,
        description="Overall time allowed for clicking and confirming the action",
    )
    action_selector: str = Field(
        default="button[data-uia='set-primary-location-action']",
        description="Element clicked to perform the action",
    )
    success_selector: str = Field(
        default="div[data-uia='upl-success']",
        description="Element whose presence confirms success",
    )
    storage_state_path: Path | None = Field(
        default=None,
        description="JSON file holding browser session state between runs",
    )


class ServiceConfig(BaseSettings):
    """Root configuration.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    name: str = Field(default="inbox-trigger", description="Service name used in logs")
    health_port: int = Field(
        default=8080,
        description="Port for health probe endpoints (0 disables the server)",
    )
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    imap: ImapConfig = Field(default_factory=ImapConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
