"""Configuration loading and validation for ssh-fanout."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from sshfanout.logger import parse_log_level
from sshfanout.models import ExecutionSettings
from sshfanout.validation import Limits

__all__ = [
    "ConfigError",
    "Configuration",
    "ConfigurationError",
    "LogConfig",
    "ServerConfig",
]


@dataclass(frozen=True)
class ConfigError:
    """One schema or value error found in the configuration file."""

    path: str  # Dotted path to invalid value
    message: str


@dataclass
class ServerConfig:
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    max_duration: float = 300.0  # Seconds per streamed batch
    inventory: Path | None = None


@dataclass
class LogConfig:
    """Log levels as stdlib logging integers."""

    level: int = logging.INFO
    file: Path | None = None
    file_level: int = logging.DEBUG


@dataclass
class Configuration:
    """Parsed and validated configuration from YAML file."""

    server: ServerConfig = field(default_factory=ServerConfig)
    limits: Limits = field(default_factory=Limits)
    defaults: ExecutionSettings = field(default_factory=ExecutionSettings)
    logging: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> Configuration:
        """Load and validate configuration from YAML file.

        Args:
            path: Path to config.yaml

        Returns:
            Validated Configuration instance

        Raises:
            ConfigurationError: If YAML is invalid or schema validation fails
        """
        try:
            with path.open() as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(
                [ConfigError(path=str(path), message=f"Configuration file not found: {path}")]
            ) from None
        except yaml.YAMLError as e:
            error_msg = str(e)
            mark = getattr(e, "problem_mark", None)
            problem = getattr(e, "problem", None)
            if mark is not None and problem is not None:
                error_msg = f"YAML syntax error at line {mark.line + 1}, column {mark.column + 1}: {problem}"
            raise ConfigurationError([ConfigError(path=str(path), message=error_msg)]) from e

        return cls.from_dict(data or {}, base_dir=path.parent)

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> Configuration:
        """Validate a configuration mapping against the schema and build it.

        Raises:
            ConfigurationError: If schema validation fails
        """
        validator = jsonschema.Draft7Validator(_load_schema())
        errors = [
            ConfigError(
                path=".".join(str(p) for p in error.absolute_path) or "root",
                message=error.message,
            )
            for error in validator.iter_errors(data)
        ]
        if errors:
            raise ConfigurationError(errors)

        server_data = data.get("server", {})
        inventory = server_data.get("inventory")
        server = ServerConfig(
            host=server_data.get("host", ServerConfig.host),
            port=server_data.get("port", ServerConfig.port),
            max_duration=server_data.get("max_duration", ServerConfig.max_duration),
            inventory=_resolve_path(inventory, base_dir) if inventory else None,
        )

        limits = Limits(**_known_keys(Limits, data.get("limits", {})))
        defaults = ExecutionSettings(**_known_keys(ExecutionSettings, data.get("defaults", {})))

        log_data = data.get("logging", {})
        log_file = log_data.get("file")
        log_config = LogConfig(
            level=parse_log_level(log_data.get("level", "INFO")),
            file=_resolve_path(log_file, base_dir) if log_file else None,
            file_level=parse_log_level(log_data.get("file_level", "DEBUG")),
        )

        return cls(server=server, limits=limits, defaults=defaults, logging=log_config)

    @classmethod
    def get_default_config_path(cls) -> Path:
        """Get the default config file path."""
        return Path.home() / ".config" / "sshfanout" / "config.yaml"

    @classmethod
    def load(cls, path: Path | None = None) -> Configuration:
        """Load from path, or from the default path if it exists, else use defaults."""
        if path is not None:
            return cls.from_yaml(path)
        default_path = cls.get_default_config_path()
        if default_path.exists():
            return cls.from_yaml(default_path)
        return cls()


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, errors: list[ConfigError]) -> None:
        self.errors = errors
        messages = [f"{e.path}: {e.message}" for e in errors]
        super().__init__("Configuration validation failed:\n" + "\n".join(messages))


def _load_schema() -> dict[str, Any]:
    """Load the config schema from package resources."""
    schema_path = Path(__file__).parent / "schemas" / "config-schema.yaml"
    with schema_path.open() as f:
        return yaml.safe_load(f)


def _known_keys(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


def _resolve_path(value: str, base_dir: Path | None) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path
