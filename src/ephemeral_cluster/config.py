"""Configuration loader for ephemeral_cluster.

Values are merged from the following sources, later ones winning:

1. Built-in defaults.
2. An optional YAML file (``EPHEMERAL_CLUSTER_CONFIG_FILE`` or an explicit
   path).
3. Environment variables prefixed with ``EPHEMERAL_CLUSTER_``.
4. The Teleport test variables understood by the plugin test suites:
   ``TELEPORT_BINARY``, ``TELEPORT_BINARY_TCTL``, ``TELEPORT_BINARY_TSH``,
   ``TELEPORT_ENTERPRISE_LICENSE``, ``TELEPORT_GET_VERSION`` and ``CI``.
5. Explicit overrides supplied programmatically (used by CLI flags).

Prefixed environment keys use double underscores to express nesting, e.g.::

    export EPHEMERAL_CLUSTER_BINARIES__TCTL=/opt/teleport/bin/tctl
    export EPHEMERAL_CLUSTER_READY_TIMEOUT=90

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from .errors import IntegrationError

ENV_PREFIX = "EPHEMERAL_CLUSTER_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_LICENSE_PATH = Path("/var/lib/teleport/license.pem")

# Plain variable name -> dotted config key.
TELEPORT_ENV_KEYS: dict[str, str] = {
    "TELEPORT_BINARY": "binaries.teleport",
    "TELEPORT_BINARY_TCTL": "binaries.tctl",
    "TELEPORT_BINARY_TSH": "binaries.tsh",
    "TELEPORT_GET_VERSION": "get_version",
}
LICENSE_ENV_VAR = "TELEPORT_ENTERPRISE_LICENSE"
CI_ENV_VAR = "CI"


class ConfigError(IntegrationError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BinariesConfig:
    """Names or paths of the managed binaries."""

    teleport: str = "teleport"
    tctl: str = "tctl"
    tsh: str = "tsh"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"teleport": self.teleport, "tctl": self.tctl, "tsh": self.tsh}


@dataclass(frozen=True)
class HarnessConfig:
    """Resolved configuration values."""

    config_file: Path | None
    binaries: BinariesConfig
    license: str | None
    get_version: str | None
    ci: bool
    download_dir: Path
    work_dir_root: Path | None
    logs_dir: Path | None
    templates_dir: Path | None
    ready_timeout: float
    shutdown_timeout: float

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file) if self.config_file else None,
            "binaries": self.binaries.to_dict(),
            "license": self.license,
            "get_version": self.get_version,
            "ci": self.ci,
            "download_dir": str(self.download_dir),
            "work_dir_root": str(self.work_dir_root) if self.work_dir_root else None,
            "logs_dir": str(self.logs_dir) if self.logs_dir else None,
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "ready_timeout": self.ready_timeout,
            "shutdown_timeout": self.shutdown_timeout,
        }


DEFAULTS: dict[str, object] = {
    "config_file": None,
    "binaries": {
        "teleport": "teleport",
        "tctl": "tctl",
        "tsh": "tsh",
    },
    "license": None,
    "get_version": None,
    "ci": False,
    "download_dir": ".teleport",
    "work_dir_root": None,
    "logs_dir": None,
    "templates_dir": None,
    "ready_timeout": 60.0,
    "shutdown_timeout": 10.0,
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BINARY_KEYS = {"teleport", "tctl", "tsh"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> HarnessConfig:
    """Load and merge configuration sources into a :class:`HarnessConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(config_file, resolved_env)
    if config_path is not None:
        file_values = _load_yaml_file(config_path)
        if file_values:
            _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    teleport_values = _build_teleport_env(resolved_env)
    if teleport_values:
        _deep_merge(merged, teleport_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path) if config_path is not None else None

    _validate_structure(merged)

    return _build_config(merged)


def _determine_config_path(
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path | None:
    if cli_override:
        return Path(cli_override)
    if env.get(CONFIG_ENV_VAR):
        return Path(env[CONFIG_ENV_VAR])
    return None


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        raise ConfigError(f"Config file {path} does not exist.")
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

    binaries = _as_dict(raw.get("binaries"), "binaries")
    unknown = set(binaries.keys()) - ALLOWED_BINARY_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown binaries configuration keys: {joined}.")
    for key, value in binaries.items():
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"binaries.{key} must be a non-empty string.")


def _build_config(raw: Mapping[str, object]) -> HarnessConfig:
    binaries_mapping = _as_dict(raw.get("binaries"), "binaries")
    binaries = BinariesConfig(
        teleport=str(binaries_mapping.get("teleport", "teleport")).strip(),
        tctl=str(binaries_mapping.get("tctl", "tctl")).strip(),
        tsh=str(binaries_mapping.get("tsh", "tsh")).strip(),
    )

    return HarnessConfig(
        config_file=_optional_path(raw.get("config_file"), "config_file"),
        binaries=binaries,
        license=_optional_str(raw.get("license"), "license"),
        get_version=_optional_str(raw.get("get_version"), "get_version", blank_is_none=True),
        ci=_expect_bool(raw.get("ci"), "ci"),
        download_dir=_to_path(raw.get("download_dir")),
        work_dir_root=_optional_path(raw.get("work_dir_root"), "work_dir_root"),
        logs_dir=_optional_path(raw.get("logs_dir"), "logs_dir"),
        templates_dir=_optional_path(raw.get("templates_dir"), "templates_dir"),
        ready_timeout=_expect_positive_float(
            raw.get("ready_timeout"), "ready_timeout", default=60.0
        ),
        shutdown_timeout=_expect_positive_float(
            raw.get("shutdown_timeout"), "shutdown_timeout", default=10.0
        ),
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
        # License content is multi-line PEM text and must stay verbatim.
        coerced = value if path_segments == ["license"] else _coerce_value(value)
        _assign_nested(overrides, path_segments, coerced)
    return overrides


def _build_teleport_env(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for variable, dotted in TELEPORT_ENV_KEYS.items():
        value = env.get(variable, "").strip()
        if value:
            _assign_nested(overrides, dotted.split("."), value)
    # An explicitly empty license variable still counts as "set".
    if LICENSE_ENV_VAR in env:
        overrides["license"] = env[LICENSE_ENV_VAR]
    if env.get(CI_ENV_VAR, ""):
        overrides["ci"] = True
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


def _optional_path(value: object, label: str) -> Path | None:
    if value is None or value == "":
        return None
    if isinstance(value, (str, Path)):
        return _to_path(value)
    raise ConfigError(f"{label} must be a string, Path, or null.")


def _optional_str(value: object, label: str, *, blank_is_none: bool = False) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    text = str(value)
    if blank_is_none and not text.strip():
        return None
    return text


def _expect_bool(value: object | None, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in {"", "0", "false", "no", "off"}
    raise ConfigError(f"Expected {label} to be a boolean. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
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
    "BinariesConfig",
    "ConfigError",
    "DEFAULT_LICENSE_PATH",
    "HarnessConfig",
    "load_config",
]
