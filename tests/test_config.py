"""Regression tests for layered settings loading."""

from __future__ import annotations

import pytest
import yaml
from loguru import logger
from pydantic import ValidationError

from productmaster.config import (
    AppConfig,
    ConfigError,
    ConfigLoader,
    ConfigParseError,
    ConfigUnmarshalError,
    Settings,
    iter_settings_keys,
    load_config,
)


def test_defaults_apply_without_file_or_env() -> None:
    settings = load_config()

    assert settings.app.name == "product-master-system"
    assert settings.app.env == "development"
    assert settings.server.http.host == "127.0.0.1"
    assert settings.server.http.port == 8080
    assert settings.database.postgres.host == ""
    assert settings.database.elasticsearch.urls == []


def test_env_overrides_default(monkeypatch) -> None:
    monkeypatch.setenv("PM_SERVER_HTTP_PORT", "9090")

    assert load_config().server.http.port == 9090


def test_env_overrides_file(monkeypatch, write_config) -> None:
    write_config("server:\n  http:\n    port: 7000\n")
    monkeypatch.setenv("PM_SERVER_HTTP_PORT", "9090")

    assert load_config().server.http.port == 9090


def test_file_overrides_defaults_and_keeps_unset_defaults(write_config) -> None:
    write_config(
        """
app:
  env: production
  version: 1.4.0
server:
  http:
    port: 7000
    read_timeout: 30s
  grpc:
    port: 9000
database:
  postgres:
    max_open_conns: 25
  elasticsearch:
    urls:
      - http://es-1:9200
      - http://es-2:9200
    sniff: true
log:
  level: debug
  format: json
"""
    )

    settings = load_config()

    assert settings.app.name == "product-master-system"
    assert settings.app.env == "production"
    assert settings.app.version == "1.4.0"
    assert settings.server.http.host == "127.0.0.1"
    assert settings.server.http.port == 7000
    assert settings.server.http.read_timeout == "30s"
    assert settings.server.grpc.port == 9000
    assert settings.database.postgres.max_open_conns == 25
    assert settings.database.elasticsearch.urls == ["http://es-1:9200", "http://es-2:9200"]
    assert settings.database.elasticsearch.sniff is True
    assert settings.log.level == "debug"
    assert settings.log.format == "json"


def test_configs_directory_wins_over_working_directory(write_config) -> None:
    write_config("app:\n  name: from-configs\n")
    write_config("app:\n  name: from-cwd\n", name="config.yaml")

    assert load_config().app.name == "from-configs"


def test_working_directory_is_searched(write_config) -> None:
    write_config("app:\n  name: from-cwd\n", name="config.yml")

    assert load_config().app.name == "from-cwd"


def test_json_settings_file(write_config) -> None:
    write_config('{"server": {"grpc": {"host": "0.0.0.0", "port": 50051}}}', name="configs/config.json")

    settings = load_config()

    assert settings.server.grpc.host == "0.0.0.0"
    assert settings.server.grpc.port == 50051


def test_file_keys_are_case_insensitive(write_config) -> None:
    write_config("APP:\n  Name: upper\n")

    assert load_config().app.name == "upper"


def test_empty_file_uses_defaults(write_config) -> None:
    write_config("")

    assert load_config().server.http.port == 8080


def test_missing_file_is_logged_not_raised() -> None:
    messages = []
    sink_id = logger.add(messages.append, level="INFO", format="{message}")
    try:
        load_config()
    finally:
        logger.remove(sink_id)

    assert any("Config file not found" in m for m in messages)


def test_malformed_file_raises_parse_error(write_config) -> None:
    path = write_config("app: [unclosed\n")

    with pytest.raises(ConfigParseError) as exc_info:
        load_config()

    assert isinstance(exc_info.value, ConfigError)
    assert isinstance(exc_info.value.cause, yaml.YAMLError)
    assert exc_info.value.path.name == path.name


def test_non_mapping_file_raises_parse_error(write_config) -> None:
    write_config("- just\n- a\n- list\n")

    with pytest.raises(ConfigParseError):
        load_config()


def test_wrong_type_in_file_raises_unmarshal_error(write_config) -> None:
    write_config("server:\n  http:\n    port: not-a-port\n")

    with pytest.raises(ConfigUnmarshalError) as exc_info:
        load_config()

    assert isinstance(exc_info.value, ConfigError)
    assert isinstance(exc_info.value.cause, ValidationError)


def test_wrong_type_in_env_raises_unmarshal_error(monkeypatch) -> None:
    monkeypatch.setenv("PM_DATABASE_REDIS_POOL_SIZE", "lots")

    with pytest.raises(ConfigUnmarshalError):
        load_config()


def test_env_values_are_coerced(monkeypatch) -> None:
    monkeypatch.setenv("PM_APP_DEBUG", "true")
    monkeypatch.setenv("PM_DATABASE_POSTGRES_MAX_IDLE_CONNS", "5")
    monkeypatch.setenv("PM_DATABASE_ELASTICSEARCH_URLS", "http://a:9200, http://b:9200,")

    settings = load_config()

    assert settings.app.debug is True
    assert settings.database.postgres.max_idle_conns == 5
    assert settings.database.elasticsearch.urls == ["http://a:9200", "http://b:9200"]


def test_empty_env_value_is_ignored(monkeypatch) -> None:
    monkeypatch.setenv("PM_APP_NAME", "")

    assert load_config().app.name == "product-master-system"


def test_explicit_environ_mapping() -> None:
    settings = load_config(environ={"PM_APP_ENV": "production"})

    assert settings.is_production()


def test_env_file_fills_unset_variables(monkeypatch, tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("PM_APP_VERSION=2.0.0\nPM_APP_ENV=staging\n", encoding="utf-8")
    monkeypatch.setenv("PM_APP_ENV", "production")

    settings = load_config(env_file=env_file)

    assert settings.app.version == "2.0.0"
    assert settings.app.env == "production"


@pytest.mark.parametrize(
    "env, development, production",
    [
        ("development", True, False),
        ("production", False, True),
        ("staging", False, False),
        ("", False, False),
    ],
)
def test_environment_predicates(env, development, production) -> None:
    settings = Settings(app=AppConfig(env=env))

    assert settings.get_env() == env
    assert settings.is_development() is development
    assert settings.is_production() is production


def test_settings_are_frozen() -> None:
    settings = load_config()

    with pytest.raises(ValidationError):
        settings.app.name = "changed"


def test_redacted_masks_passwords(write_config) -> None:
    write_config(
        "database:\n  postgres:\n    user: svc\n    password: s3cret\n"
        "  redis:\n    password: ''\n"
    )

    data = load_config().redacted()

    assert data["database"]["postgres"]["user"] == "svc"
    assert data["database"]["postgres"]["password"] == "******"
    assert data["database"]["redis"]["password"] == ""


def test_loaders_do_not_share_defaults() -> None:
    first = ConfigLoader(environ={})
    first.set_default("app.name", "first")
    second = ConfigLoader(environ={})

    assert first.load().app.name == "first"
    assert second.load().app.name == ""


def test_env_var_names_and_schema_keys() -> None:
    loader = ConfigLoader()
    keys = dict(iter_settings_keys())

    assert loader.env_var_name("server.http.port") == "PM_SERVER_HTTP_PORT"
    assert loader.env_var_name("database.postgres.max_open_conns") == (
        "PM_DATABASE_POSTGRES_MAX_OPEN_CONNS"
    )
    assert keys["database.elasticsearch.urls"] is True
    assert keys["server.http.port"] is False
    assert "log.output" in keys


def test_null_section_keeps_defaults(write_config) -> None:
    write_config("server:\n  # http:\n  #   port: 7000\n")

    settings = load_config()

    assert settings.server.http.host == "127.0.0.1"
    assert settings.server.http.port == 8080


def test_null_database_section_loads_zero_values(write_config) -> None:
    write_config("app:\n  name: catalog\ndatabase:\n  # postgres:\n  #   host: db\n")

    settings = load_config()

    assert settings.app.name == "catalog"
    assert settings.database.postgres.host == ""
    assert settings.database.redis.port == 0
    assert settings.database.elasticsearch.urls == []


def test_null_leaf_value_falls_back_to_default(write_config) -> None:
    write_config("app:\n  name:\n  env: staging\n")

    settings = load_config()

    assert settings.app.name == "product-master-system"
    assert settings.app.env == "staging"
