"""Tests for TelegramConfig."""

import hashlib

import pytest

from telegram_mcp.errors import ConfigError
from telegram_mcp.telegram.config import TelegramConfig

ENV = {
    "PHONE": "+15550001234",
    "APP_ID": "12345",
    "APP_HASH": "0123456789abcdef",
    "MCP_SERVER_PORT": "8080",
}


def test_from_env_reads_required_values():
    config = TelegramConfig.from_env(environ=ENV)

    assert config.phone == "+15550001234"
    assert config.app_id == 12345
    assert config.port == 8080
    assert config.transport == "sse"
    assert config.etcd_endpoint is None
    assert not config.uses_remote_storage


def test_from_env_accepts_prefixed_names():
    environ = {
        "TELEGRAM_PHONE": "+15550001234",
        "TELEGRAM_APP_ID": "1",
        "TELEGRAM_APP_HASH": "hash",
        "MCP_SERVER_PORT": "9000",
    }
    config = TelegramConfig.from_env(environ=environ)

    assert config.app_id == 1
    assert config.app_hash == "hash"


def test_missing_values_are_listed():
    with pytest.raises(ConfigError) as exc_info:
        TelegramConfig.from_env(environ={"PHONE": "+1555"})

    message = str(exc_info.value)
    assert message.endswith("APP_ID, APP_HASH, MCP_SERVER_PORT")


def test_invalid_values_raise_config_error():
    with pytest.raises(ConfigError):
        TelegramConfig.from_env(environ={**ENV, "APP_ID": "not-a-number"})

    with pytest.raises(ConfigError):
        TelegramConfig.from_env(environ={**ENV, "MCP_SERVER_PORT": "70000"})

    with pytest.raises(ConfigError):
        TelegramConfig.from_env(environ={**ENV, "MCP_TRANSPORT": "stdio"})


def test_optional_values():
    environ = {
        **ENV,
        "ETCD_ENDPOINT": "http://etcd:2379",
        "MCP_SESSION_ID": "abc",
        "TELEGRAM_PASSWORD": "secret",
        "MCP_TRANSPORT": "streamable-http",
    }
    config = TelegramConfig.from_env(environ=environ)

    assert config.uses_remote_storage
    assert config.session_id == "abc"
    assert config.password == "secret"
    assert config.transport == "streamable-http"


def test_phone_hash_is_md5_of_phone():
    config = TelegramConfig.from_env(environ=ENV)
    assert config.phone_hash == hashlib.md5(b"+15550001234").hexdigest()


def test_yaml_file_is_overlaid_by_environment(tmp_path):
    config_file = tmp_path / "telegram.yaml"
    config_file.write_text(
        "telegram:\n"
        "  phone: '+15559999999'\n"
        "  app_id: 7\n"
        "  app_hash: from-file\n"
        "  port: 7000\n"
        "  health_check_interval: 30\n",
        encoding="utf-8",
    )

    config = TelegramConfig.from_env(environ={"APP_HASH": "from-env"}, config_file=str(config_file))

    assert config.phone == "+15559999999"
    assert config.app_hash == "from-env"
    assert config.health_check_interval == 30


def test_missing_yaml_file_raises(tmp_path):
    with pytest.raises(ConfigError):
        TelegramConfig.from_env(environ=ENV, config_file=str(tmp_path / "absent.yaml"))


def test_probe_interval_must_exceed_timeout():
    with pytest.raises(ValueError):
        TelegramConfig(
            phone="+1555",
            app_id=1,
            app_hash="hash",
            port=8080,
            health_check_interval=5,
            health_check_timeout=10,
        )
