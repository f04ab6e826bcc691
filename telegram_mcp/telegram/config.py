"""
Telegram Bridge Configuration

Configuration model for the Telegram bridge. Values come from an optional
YAML file (under the 'telegram' key) overlaid with environment variables.
"""

import hashlib
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from telegram_mcp.config import SESSION_DIR
from telegram_mcp.errors import ConfigError

# Environment variables, first match wins
ENV_VARS = {
    "phone": ("PHONE", "TELEGRAM_PHONE"),
    "app_id": ("APP_ID", "TELEGRAM_APP_ID"),
    "app_hash": ("APP_HASH", "TELEGRAM_APP_HASH"),
    "password": ("TELEGRAM_PASSWORD",),
    "etcd_endpoint": ("ETCD_ENDPOINT",),
    "port": ("MCP_SERVER_PORT",),
    "session_id": ("MCP_SESSION_ID",),
    "transport": ("MCP_TRANSPORT",),
    "session_dir": ("SESSION_DIR",),
}

REQUIRED_FIELDS = ("phone", "app_id", "app_hash", "port")


class TelegramConfig(BaseModel):
    """
    Configuration for the Telegram bridge and its MCP server.
    """

    phone: str = Field(description="Account phone number in international format")

    app_id: int = Field(description="Telegram application ID")

    app_hash: str = Field(description="Telegram application hash")

    password: Optional[str] = Field(
        default=None,
        description="Two-step verification password (only if the account has one)"
    )

    port: int = Field(description="Port the MCP server listens on")

    transport: str = Field(
        default="sse",
        description="MCP transport: 'sse' or 'streamable-http'"
    )

    session_id: Optional[str] = Field(
        default=None,
        description="If set, notifications go only to this MCP listener"
    )

    # Session storage
    etcd_endpoint: Optional[str] = Field(
        default=None,
        description="etcd HTTP endpoint; file storage is used when unset"
    )

    session_dir: str = Field(
        default=str(SESSION_DIR),
        description="Directory for file-based session storage"
    )

    storage_probe_timeout: float = Field(
        default=5.0,
        description="Timeout of the etcd health probe at startup"
    )

    storage_timeout: float = Field(
        default=10.0,
        description="Timeout of etcd load/save requests"
    )

    # Authentication
    auth_retry_delay: float = Field(
        default=30.0,
        description="Delay before retrying a failed authentication"
    )

    # Client lifecycle
    init_timeout: float = Field(
        default=30.0,
        description="Timeout for establishing the connection of a new client"
    )

    rebuild_delay: float = Field(
        default=5.0,
        description="Delay before rebuilding a client after a fatal error"
    )

    teardown_grace_period: float = Field(
        default=3.0,
        description="Time in-flight operations get before the old client is closed"
    )

    connection_retries: int = Field(
        default=5,
        description="Reconnect attempts telethon makes before giving up"
    )

    connection_retry_delay: float = Field(
        default=2.0,
        description="Delay between telethon reconnect attempts"
    )

    # Health monitoring
    health_check_interval: float = Field(
        default=15.0,
        description="Interval between periodic status probes"
    )

    health_check_timeout: float = Field(
        default=10.0,
        description="Timeout of a single status probe"
    )

    max_consecutive_errors: int = Field(
        default=3,
        description="Failed probes in a row before the client is rebuilt"
    )

    # Consumer-facing requests
    request_timeout: float = Field(
        default=30.0,
        description="Timeout of a single read-only query"
    )

    request_max_retries: int = Field(
        default=3,
        description="Attempts made for a read-only query on connection errors"
    )

    request_retry_delay: float = Field(
        default=2.0,
        description="Pause between attempts of a read-only query"
    )

    @field_validator("phone", "app_hash")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Validate required strings are not blank."""
        v = v.strip()
        if not v:
            raise ValueError("value cannot be empty")
        return v

    @field_validator("app_id")
    @classmethod
    def validate_app_id(cls, v: int) -> int:
        """Validate app_id is positive."""
        if v <= 0:
            raise ValueError("app_id must be positive")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is in the TCP range."""
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate the MCP transport name."""
        if v not in ("sse", "streamable-http"):
            raise ValueError("transport must be 'sse' or 'streamable-http'")
        return v

    @field_validator("etcd_endpoint", "session_id", "password")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty strings as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("max_consecutive_errors", "request_max_retries")
    @classmethod
    def validate_positive_count(cls, v: int) -> int:
        """Validate counters are at least one."""
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_health_timing(self) -> "TelegramConfig":
        """The probe interval must be longer than a single probe."""
        if self.health_check_interval <= self.health_check_timeout:
            raise ValueError(
                "health_check_interval must be greater than health_check_timeout"
            )
        return self

    @property
    def phone_hash(self) -> str:
        """Stable session key derived from the phone number."""
        return hashlib.md5(self.phone.encode("utf-8")).hexdigest()

    @property
    def uses_remote_storage(self) -> bool:
        """Check if sessions are kept in etcd."""
        return self.etcd_endpoint is not None

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        config_file: Optional[str] = None,
    ) -> "TelegramConfig":
        """
        Build the configuration from a YAML file and the environment.

        Args:
            environ: Environment mapping (defaults to os.environ)
            config_file: YAML file path (defaults to $TELEGRAM_MCP_CONFIG)

        Returns:
            Validated TelegramConfig

        Raises:
            ConfigError: If required values are missing or invalid
        """
        if environ is None:
            environ = os.environ

        data = _load_yaml(config_file or environ.get("TELEGRAM_MCP_CONFIG"))

        for field_name, names in ENV_VARS.items():
            for name in names:
                value = environ.get(name)
                if value:
                    data[field_name] = value
                    break

        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            env_names = ", ".join(ENV_VARS[name][0] for name in missing)
            raise ConfigError(f"Required configuration missing: {env_names}")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    class Config:
        """Pydantic configuration."""
        extra = "ignore"


def _load_yaml(path: Optional[str]) -> dict:
    """Read the 'telegram' section of a YAML config file."""
    if not path:
        return {}

    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

    section = raw.get("telegram", {}) if isinstance(raw, dict) else {}
    if not isinstance(section, dict):
        raise ConfigError(f"'telegram' section of {config_path} must be a mapping")
    return dict(section)
