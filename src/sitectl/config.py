"""Configuration loader for sitectl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/sitectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SITECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITECTL_HEALTH__INTERVAL=120
    export SITECTL_DOCKER__APP_IMAGE=wordpress:php8.3-apache

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "SITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime binaries and images."""

    bin: str = "docker"
    app_image: str = "wordpress:php8.2-apache"
    db_image: str = "mysql:8"
    wp_cli_url: str = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": self.bin,
            "app_image": self.app_image,
            "db_image": self.db_image,
            "wp_cli_url": self.wp_cli_url,
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Command timeout and post-start grace periods (seconds)."""

    command: float = 300.0
    grace_period: float = 5.0
    extended_grace_period: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "command": self.command,
            "grace_period": self.grace_period,
            "extended_grace_period": self.extended_grace_period,
        }


@dataclass(frozen=True)
class ReadinessConfig:
    """Bounded retry settings shared by every readiness probe."""

    max_attempts: int = 30
    backoff: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_attempts": self.max_attempts, "backoff": self.backoff}


@dataclass(frozen=True)
class HealthConfig:
    """Health monitoring cadence and debounce settings."""

    interval: float = 300.0
    failure_threshold: int = 3
    request_timeout: float = 4.0
    max_concurrency: int = 8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "interval": self.interval,
            "failure_threshold": self.failure_threshold,
            "request_timeout": self.request_timeout,
            "max_concurrency": self.max_concurrency,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Credentials used for per-site database containers."""

    user: str = "root"
    password: str = "root"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password masked)."""
        return {"user": self.user, "password": "***"}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitectl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    sites_dir: Path
    sandbox_dir: Path
    templates_dir: Path
    lock_timeout: float
    base_url: str
    default_locale: str
    docker: DockerConfig
    timeouts: TimeoutsConfig
    readiness: ReadinessConfig
    health: HealthConfig
    database: DatabaseConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "sites_dir": str(self.sites_dir),
            "sandbox_dir": str(self.sandbox_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "base_url": self.base_url,
            "default_locale": self.default_locale,
            "docker": self.docker.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "readiness": self.readiness.to_dict(),
            "health": self.health.to_dict(),
            "database": self.database.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitectl/config.yml",
    "state_dir": "/var/lib/sitectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/sitectl",
    "runtime_dir": "/run/sitectl",
    "sites_dir": "/srv/sites",
    "sandbox_dir": "/srv/sandbox",
    "templates_dir": "/etc/sitectl/templates",
    "lock_timeout": 30.0,
    "base_url": "http://localhost",
    "default_locale": "fr_FR",
    "docker": {
        "bin": "docker",
        "app_image": "wordpress:php8.2-apache",
        "db_image": "mysql:8",
        "wp_cli_url": DockerConfig.wp_cli_url,
    },
    "timeouts": {
        "command": 300.0,
        "grace_period": 5.0,
        "extended_grace_period": 10.0,
    },
    "readiness": {
        "max_attempts": 30,
        "backoff": 2.0,
    },
    "health": {
        "interval": 300.0,
        "failure_threshold": 3,
        "request_timeout": 4.0,
        "max_concurrency": 8,
    },
    "database": {
        "user": "root",
        "password": "root",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "docker": {"bin", "app_image", "db_image", "wp_cli_url"},
    "timeouts": {"command", "grace_period", "extended_grace_period"},
    "readiness": {"max_attempts", "backoff"},
    "health": {"interval", "failure_threshold", "request_timeout", "max_concurrency"},
    "database": {"user", "password"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    base_url = raw.get("base_url")
    if base_url is not None:
        text = str(base_url).strip()
        if not text.startswith(("http://", "https://")):
            raise ConfigError(f"base_url must start with http:// or https://. Got {text!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    sites_dir = _to_path(raw.get("sites_dir"))
    sandbox_dir = _to_path(raw.get("sandbox_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        bin=str(docker_mapping.get("bin", "docker")),
        app_image=str(docker_mapping.get("app_image", DockerConfig.app_image)),
        db_image=str(docker_mapping.get("db_image", DockerConfig.db_image)),
        wp_cli_url=str(docker_mapping.get("wp_cli_url", DockerConfig.wp_cli_url)),
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        command=_expect_positive_float(
            timeouts_mapping.get("command"), "timeouts.command", default=300.0
        ),
        grace_period=_expect_non_negative_float(
            timeouts_mapping.get("grace_period"), "timeouts.grace_period", default=5.0
        ),
        extended_grace_period=_expect_non_negative_float(
            timeouts_mapping.get("extended_grace_period"),
            "timeouts.extended_grace_period",
            default=10.0,
        ),
    )

    readiness_mapping = _as_dict(raw.get("readiness"), "readiness")
    max_attempts = _expect_int(
        readiness_mapping.get("max_attempts"), "readiness.max_attempts", default=30
    )
    if max_attempts < 1:
        raise ConfigError("readiness.max_attempts must be at least 1.")
    readiness = ReadinessConfig(
        max_attempts=max_attempts,
        backoff=_expect_non_negative_float(
            readiness_mapping.get("backoff"), "readiness.backoff", default=2.0
        ),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    threshold = _expect_int(
        health_mapping.get("failure_threshold"), "health.failure_threshold", default=3
    )
    if threshold < 1:
        raise ConfigError("health.failure_threshold must be at least 1.")
    concurrency = _expect_int(
        health_mapping.get("max_concurrency"), "health.max_concurrency", default=8
    )
    if concurrency < 1:
        raise ConfigError("health.max_concurrency must be at least 1.")
    health = HealthConfig(
        interval=_expect_positive_float(
            health_mapping.get("interval"), "health.interval", default=300.0
        ),
        failure_threshold=threshold,
        request_timeout=_expect_positive_float(
            health_mapping.get("request_timeout"), "health.request_timeout", default=4.0
        ),
        max_concurrency=concurrency,
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        user=str(database_mapping.get("user", "root")),
        password=str(database_mapping.get("password", "root")),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        sites_dir=sites_dir,
        sandbox_dir=sandbox_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        base_url=str(raw.get("base_url", "http://localhost")).strip().rstrip("/"),
        default_locale=str(raw.get("default_locale", "fr_FR")),
        docker=docker,
        timeouts=timeouts,
        readiness=readiness,
        health=health,
        database=database,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DatabaseConfig",
    "DockerConfig",
    "HealthConfig",
    "ReadinessConfig",
    "TimeoutsConfig",
    "load_config",
]
