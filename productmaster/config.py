"""Configuration loading and management.

Settings are merged from three layers, lowest priority first:

1. Built-in defaults (``DEFAULTS``)
2. A ``config.yaml`` / ``config.yml`` / ``config.json`` file found in
   ``./configs`` or the current directory
3. ``PM_``-prefixed environment variables (``server.http.port`` is read from
   ``PM_SERVER_HTTP_PORT``), optionally backed by a ``.env`` file

The merged mapping is validated into a frozen ``Settings`` tree.
"""

from __future__ import annotations

import json
import os
import typing
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import yaml
from dotenv import dotenv_values
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_NAME = "config"
CONFIG_TYPE = "yaml"
SEARCH_PATHS = ("./configs", ".")
ENV_PREFIX = "PM"

DEFAULTS: Dict[str, Any] = {
    "app.name": "product-master-system",
    "app.env": "development",
    "server.http.host": "127.0.0.1",
    "server.http.port": 8080,
}

# Extensions tried for each search path, in order
_EXTENSIONS = {
    "yaml": ("yaml", "yml", "json"),
    "yml": ("yml", "yaml", "json"),
    "json": ("json", "yaml", "yml"),
}


class ConfigError(Exception):
    """Base class for configuration loading failures."""

    def __init__(
        self,
        message: str,
        path: Optional[Path] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.cause = cause


class ConfigFileNotFoundError(ConfigError):
    """No settings file exists in any search path. Not fatal to ``load()``."""


class ConfigParseError(ConfigError):
    """The settings file exists but cannot be parsed."""


class ConfigUnmarshalError(ConfigError):
    """The merged settings do not fit the ``Settings`` schema."""


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AppConfig(_Section):
    """Application identity."""

    name: str = ""
    env: str = ""
    version: str = ""
    debug: bool = False


class HTTPServerConfig(_Section):
    """HTTP endpoint binding. Timeouts are duration strings such as ``30s``."""

    host: str = ""
    port: int = 0
    read_timeout: str = ""
    write_timeout: str = ""
    idle_timeout: str = ""


class GRPCServerConfig(_Section):
    """gRPC endpoint binding."""

    host: str = ""
    port: int = 0


class ServerConfig(_Section):
    http: HTTPServerConfig = Field(default_factory=HTTPServerConfig)
    grpc: GRPCServerConfig = Field(default_factory=GRPCServerConfig)


class PostgresConfig(_Section):
    """PostgreSQL credentials and pool sizing."""

    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    dbname: str = ""
    sslmode: str = ""
    max_open_conns: int = 0
    max_idle_conns: int = 0
    conn_max_lifetime: str = ""


class RedisConfig(_Section):
    """Redis cache endpoint."""

    host: str = ""
    port: int = 0
    password: str = ""
    db: int = 0
    pool_size: int = 0


class ElasticsearchConfig(_Section):
    """Elasticsearch cluster nodes and credentials."""

    urls: List[str] = Field(default_factory=list)
    username: str = ""
    password: str = ""
    sniff: bool = False


class DatabaseConfig(_Section):
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    elasticsearch: ElasticsearchConfig = Field(default_factory=ElasticsearchConfig)


class LogConfig(_Section):
    """Arguments for ``productmaster.logger.new_logger``."""

    level: str = ""
    format: str = ""
    output: str = ""


class Settings(_Section):
    """Root settings model. Read-only once loaded."""

    app: AppConfig = Field(default_factory=AppConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    log: LogConfig = Field(default_factory=LogConfig)

    # -- Environment helpers ------------------------------------------------

    def get_env(self) -> str:
        """Return the environment tag (``app.env``)."""
        return self.app.env

    def is_development(self) -> bool:
        return self.app.env == "development"

    def is_production(self) -> bool:
        return self.app.env == "production"

    def redacted(self) -> Dict[str, Any]:
        """Dump the settings as plain data with every password masked.

        Returns:
            Nested dictionary safe to print or log.
        """
        return _mask_passwords(self.model_dump())


def _mask_passwords(data: Dict[str, Any]) -> Dict[str, Any]:
    masked: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            masked[key] = _mask_passwords(value)
        elif key == "password" and value:
            masked[key] = "******"
        else:
            masked[key] = value
    return masked


def _is_list_type(annotation: Any) -> bool:
    return annotation is list or typing.get_origin(annotation) in (list, List)


def iter_settings_keys(
    model: type = Settings, prefix: str = ""
) -> Iterator[Tuple[str, bool]]:
    """Yield every dotted leaf key of a settings model.

    Args:
        model: Pydantic model class to walk.
        prefix: Dotted path of *model* inside the root model.

    Yields:
        ``(key, is_list)`` pairs, e.g. ``("server.http.port", False)``.
    """
    for name, field in model.model_fields.items():
        key = f"{prefix}{name}"
        annotation = field.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            yield from iter_settings_keys(annotation, f"{key}.")
        else:
            yield key, _is_list_type(annotation)


def _set_nested(target: Dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        elif isinstance(value, Mapping):
            merged[key] = _deep_merge({}, value)
        else:
            merged[key] = value
    return merged


def _lower_keys(data: Mapping[Any, Any]) -> Dict[str, Any]:
    # null sections (every child commented out) count as absent
    lowered: Dict[str, Any] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            value = _lower_keys(value)
        lowered[str(key).lower()] = value
    return lowered


class ConfigLoader:
    """Merges defaults, a settings file and environment variables.

    Each instance owns its own key registry, so loads never share state.
    ``load_config()`` builds a fresh loader per call.
    """

    def __init__(
        self,
        config_name: str = CONFIG_NAME,
        config_type: str = CONFIG_TYPE,
        search_paths: Optional[Sequence[os.PathLike | str]] = None,
        env_prefix: str = ENV_PREFIX,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[os.PathLike | str] = None,
    ) -> None:
        self.config_name = config_name
        self.config_type = config_type
        self.search_paths = [
            Path(p) for p in (SEARCH_PATHS if search_paths is None else search_paths)
        ]
        self.env_prefix = env_prefix
        self.environ = os.environ if environ is None else environ
        self.env_file = Path(env_file) if env_file is not None else None
        self._defaults: Dict[str, Any] = {}

    def set_default(self, key: str, value: Any) -> None:
        """Register a default for a dotted key such as ``server.http.port``."""
        self._defaults[key.lower()] = value

    def env_var_name(self, key: str) -> str:
        """Map a dotted key to its environment variable name."""
        name = key.replace(".", "_").upper()
        if self.env_prefix:
            return f"{self.env_prefix.upper()}_{name}"
        return name

    def find_config_file(self) -> Path:
        """Find the settings file, checking each search path in order.

        Returns:
            Path to the first ``<config_name>.<ext>`` that exists.

        Raises:
            ConfigFileNotFoundError: If no search path holds a settings file.
        """
        extensions = _EXTENSIONS.get(self.config_type, (self.config_type,))
        for directory in self.search_paths:
            for ext in extensions:
                candidate = directory / f"{self.config_name}.{ext}"
                if candidate.is_file():
                    return candidate

        raise ConfigFileNotFoundError(
            f"Config file {self.config_name!r} not found in "
            f"{[str(p) for p in self.search_paths]}"
        )

    def read_config_file(self, path: Path) -> Dict[str, Any]:
        """Parse a settings file into a mapping with lower-cased keys.

        Raises:
            ConfigParseError: If the file is not valid YAML/JSON or its top
                level is not a mapping.
        """
        try:
            with open(path, "r", encoding="utf-8") as fh:
                if path.suffix == ".json":
                    raw = json.load(fh)
                else:
                    raw = yaml.safe_load(fh)
        except (yaml.YAMLError, ValueError, OSError) as e:
            raise ConfigParseError(
                f"failed to read config file {path}: {e}", path=path, cause=e
            ) from e

        if raw is None:
            logger.warning("Config file is empty, using defaults: {}", path)
            return {}

        if not isinstance(raw, dict):
            raise ConfigParseError(
                f"Invalid config format in {path}: expected a mapping, "
                f"got {type(raw).__name__}",
                path=path,
            )

        logger.debug("Loaded config from: {}", path)
        return _lower_keys(raw)

    def env_overrides(self) -> Dict[str, Any]:
        """Collect environment values for every key the schema knows.

        Variables set to an empty string are treated as unset. List keys are
        split on commas.
        """
        dotenv: Dict[str, Optional[str]] = {}
        if self.env_file is not None and self.env_file.exists():
            dotenv = dotenv_values(self.env_file)
            logger.debug("Loaded env from: {}", self.env_file)

        overrides: Dict[str, Any] = {}
        for key, is_list in iter_settings_keys():
            name = self.env_var_name(key)
            value = self.environ.get(name)
            if not value:
                value = dotenv.get(name)
            if not value:
                continue
            if is_list:
                value = [item.strip() for item in value.split(",") if item.strip()]
            _set_nested(overrides, key, value)
        return overrides

    def merged(self) -> Dict[str, Any]:
        """Return defaults < file < environment as one nested mapping.

        Raises:
            ConfigParseError: If a settings file exists but is malformed.
        """
        layered: Dict[str, Any] = {}
        for key, value in self._defaults.items():
            _set_nested(layered, key, value)

        try:
            path = self.find_config_file()
        except ConfigFileNotFoundError:
            logger.info("Config file not found, using environment variables")
        else:
            layered = _deep_merge(layered, self.read_config_file(path))

        return _deep_merge(layered, self.env_overrides())

    def load(self) -> Settings:
        """Merge every layer and validate the result.

        Returns:
            A validated, frozen ``Settings`` instance.

        Raises:
            ConfigParseError: If a settings file exists but is malformed.
            ConfigUnmarshalError: If a value has the wrong shape for its key.
        """
        data = self.merged()
        try:
            return Settings.model_validate(data)
        except ValidationError as e:
            raise ConfigUnmarshalError(
                f"failed to unmarshal config: {e}", cause=e
            ) from e


def load_config(
    search_paths: Optional[Sequence[os.PathLike | str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[os.PathLike | str] = None,
) -> Settings:
    """Load settings from file, environment and built-in defaults.

    Args:
        search_paths: Directories searched for ``config.<ext>``. Defaults to
            ``./configs`` then the current directory.
        environ: Environment mapping to read. Defaults to ``os.environ``.
        env_file: Optional ``.env`` file consulted for variables the
            environment does not define.

    Returns:
        A validated ``Settings`` instance.

    Raises:
        ConfigParseError: If a settings file exists but is malformed.
        ConfigUnmarshalError: If a value has the wrong shape for its key.
    """
    loader = ConfigLoader(
        search_paths=search_paths, environ=environ, env_file=env_file
    )
    for key, value in DEFAULTS.items():
        loader.set_default(key, value)
    return loader.load()
