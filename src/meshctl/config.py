"""Configuration loader for meshctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``~/.config/meshctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MESHCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MESHCTL_RETRY__ATTEMPTS=5
    export MESHCTL_SYSTEMD__SETTLE_SECONDS=10

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

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load meshctl configuration. Install with "
        "`pip install meshctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "MESHCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ReleaseConfig:
    """Where releases are published and how the archive is named."""

    metadata_url: str
    download_url_template: str
    asset_name: str
    binary_name: str
    architecture: str = "x86_64"
    timeout: float | None = None

    def asset_url(self, tag: str) -> str:
        """Return the download URL for *tag*."""
        return self.download_url_template.format(tag=tag, asset=self.asset_name)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "metadata_url": self.metadata_url,
            "download_url_template": self.download_url_template,
            "asset_name": self.asset_name,
            "binary_name": self.binary_name,
            "architecture": self.architecture,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class RetryConfig:
    """Bounded retry policy for release metadata lookups."""

    attempts: int = 3
    backoff_seconds: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"attempts": self.attempts, "backoff_seconds": self.backoff_seconds}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    settle_seconds: float = 5.0
    use_sudo: bool | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "settle_seconds": self.settle_seconds,
            "use_sudo": self.use_sudo,
        }


@dataclass(frozen=True)
class DependenciesConfig:
    """Helper tools the workflow needs and how to install them."""

    json_helper: str = "jq"
    json_helper_package: str = "jq"
    package_manager_bin: str = "apt-get"
    auto_install: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "json_helper": self.json_helper,
            "json_helper_package": self.json_helper_package,
            "package_manager_bin": self.package_manager_bin,
            "auto_install": self.auto_install,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for meshctl."""

    config_file: Path
    install_root: Path
    logs_dir: Path
    templates_dir: Path | None
    service_name: str
    service_description: str
    register_url: str
    release: ReleaseConfig
    retry: RetryConfig
    systemd: SystemdConfig
    dependencies: DependenciesConfig

    @property
    def target_dir(self) -> Path:
        """Return the live install location under the installation root."""
        return self.install_root / "target"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_root": str(self.install_root),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "service_name": self.service_name,
            "service_description": self.service_description,
            "register_url": self.register_url,
            "release": self.release.to_dict(),
            "retry": self.retry.to_dict(),
            "systemd": self.systemd.to_dict(),
            "dependencies": self.dependencies.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/meshctl/config.yml",
    "install_root": "~/blockmesh",
    "logs_dir": "~/.local/state/meshctl",
    "templates_dir": None,
    "service_name": "blockmesh",
    "service_description": "Blockmesh Service",
    "register_url": "https://app.blockmesh.xyz/register",
    "release": {
        "metadata_url": (
            "https://api.github.com/repos/block-mesh/block-mesh-monorepo/releases/latest"
        ),
        "download_url_template": (
            "https://github.com/block-mesh/block-mesh-monorepo/releases/download/"
            "{tag}/{asset}"
        ),
        "asset_name": "blockmesh-cli-x86_64-unknown-linux-gnu.tar.gz",
        "binary_name": "blockmesh-cli",
        "architecture": "x86_64",
        "timeout": None,
    },
    "retry": {
        "attempts": 3,
        "backoff_seconds": 2.0,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "settle_seconds": 5.0,
        "use_sudo": None,
    },
    "dependencies": {
        "json_helper": "jq",
        "json_helper_package": "jq",
        "package_manager_bin": "apt-get",
        "auto_install": True,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("release", "retry", "systemd", "dependencies")
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
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


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

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    service_name = raw.get("service_name")
    if not isinstance(service_name, str) or not service_name.strip():
        raise ConfigError("service_name must be a non-empty string.")
    if "/" in service_name or service_name.endswith(".service"):
        raise ConfigError(
            f"service_name must be a bare unit name without suffix. Got {service_name!r}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_root = _to_path(raw.get("install_root"))
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_value = raw.get("templates_dir")
    templates_dir: Path | None = None
    if isinstance(templates_value, (str, Path)):
        if str(templates_value).strip():
            templates_dir = _to_path(templates_value)
    elif templates_value is not None:
        raise ConfigError("templates_dir must be a string, Path, or null.")

    release_mapping = _as_dict(raw.get("release"), "release")
    template = _expect_str(
        release_mapping.get("download_url_template"),
        "release.download_url_template",
    )
    if "{tag}" not in template:
        raise ConfigError("release.download_url_template must contain a '{tag}' placeholder.")
    try:
        template.format(tag="v0", asset="asset")
    except (AttributeError, IndexError, KeyError, ValueError) as exc:
        raise ConfigError(
            "release.download_url_template may only use the '{tag}' and '{asset}' "
            f"placeholders: {exc!r}."
        ) from exc
    timeout_value = release_mapping.get("timeout")
    release = ReleaseConfig(
        metadata_url=_expect_str(release_mapping.get("metadata_url"), "release.metadata_url"),
        download_url_template=template,
        asset_name=_expect_str(release_mapping.get("asset_name"), "release.asset_name"),
        binary_name=_expect_str(release_mapping.get("binary_name"), "release.binary_name"),
        architecture=_expect_str(release_mapping.get("architecture"), "release.architecture"),
        timeout=(
            None
            if timeout_value is None
            else _expect_positive_float(timeout_value, "release.timeout", default=30.0)
        ),
    )

    retry_mapping = _as_dict(raw.get("retry"), "retry")
    attempts = _expect_int(retry_mapping.get("attempts"), "retry.attempts", default=3)
    if attempts < 1:
        raise ConfigError("retry.attempts must be at least 1.")
    retry = RetryConfig(
        attempts=attempts,
        backoff_seconds=_expect_non_negative_float(
            retry_mapping.get("backoff_seconds"), "retry.backoff_seconds", default=2.0
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    use_sudo = systemd_mapping.get("use_sudo")
    if use_sudo is not None and not isinstance(use_sudo, bool):
        raise ConfigError("systemd.use_sudo must be a boolean or null.")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
        settle_seconds=_expect_non_negative_float(
            systemd_mapping.get("settle_seconds"), "systemd.settle_seconds", default=5.0
        ),
        use_sudo=use_sudo,
    )

    deps_mapping = _as_dict(raw.get("dependencies"), "dependencies")
    auto_install = deps_mapping.get("auto_install", True)
    if not isinstance(auto_install, bool):
        raise ConfigError("dependencies.auto_install must be a boolean.")
    dependencies = DependenciesConfig(
        json_helper=str(deps_mapping.get("json_helper", "jq")),
        json_helper_package=str(deps_mapping.get("json_helper_package", "jq")),
        package_manager_bin=str(deps_mapping.get("package_manager_bin", "apt-get")),
        auto_install=auto_install,
    )

    return AppConfig(
        config_file=config_file,
        install_root=install_root,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        service_name=str(raw.get("service_name", "blockmesh")),
        service_description=str(raw.get("service_description", "Blockmesh Service")),
        register_url=str(raw.get("register_url", "")),
        release=release,
        retry=retry,
        systemd=systemd,
        dependencies=dependencies,
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
    if isinstance(value, str) and value.strip():
        return value
    raise ConfigError(f"Expected {key} to resolve to a non-empty string. Got {value!r}.")


def _expect_number(value: object, label: str) -> float:
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
    numeric = _expect_number(value, label)
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
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
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
    "DependenciesConfig",
    "ReleaseConfig",
    "RetryConfig",
    "SystemdConfig",
    "load_config",
]
