"""Configuration loader for hostprep.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/hostprep/config.yml`` (or an override path).
3. Environment variables prefixed with ``HOSTPREP_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export HOSTPREP_APT__RETRIES=5
    export HOSTPREP_DOCKER__ADD_USER_TO_GROUP=true

Values are coerced via PyYAML's ``safe_load`` so that booleans and integers are
parsed naturally; anything that would load as a float stays a string so
dotted versions such as ``12.10`` survive. In the YAML file such versions
must be quoted. The historical ``ADD_USER_TO_DOCKER_GROUP=1`` switch (paired
with ``SUDO_USER``) is honoured as well. The resulting configuration is exposed
as immutable ``dataclasses``.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "HOSTPREP_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DOCKER_GROUP_ENV_VAR = "ADD_USER_TO_DOCKER_GROUP"
SUDO_USER_ENV_VAR = "SUDO_USER"

_CUDA_VERSION_RE = re.compile(r"^\d+\.\d+$")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class AptConfig:
    """Locations managed on behalf of APT."""

    keyrings_dir: Path = Path("/etc/apt/keyrings")
    share_keyrings_dir: Path = Path("/usr/share/keyrings")
    sources_list: Path = Path("/etc/apt/sources.list")
    sources_dir: Path = Path("/etc/apt/sources.list.d")
    preferences_dir: Path = Path("/etc/apt/preferences.d")
    retries: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "keyrings_dir": str(self.keyrings_dir),
            "share_keyrings_dir": str(self.share_keyrings_dir),
            "sources_list": str(self.sources_list),
            "sources_dir": str(self.sources_dir),
            "preferences_dir": str(self.preferences_dir),
            "retries": self.retries,
        }


@dataclass(frozen=True)
class DownloadConfig:
    """Bounded retry policy for network downloads."""

    retries: int = 3
    retry_delay: int = 2
    connect_timeout: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "retries": self.retries,
            "retry_delay": self.retry_delay,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class JavaConfig:
    """Java runtime selection."""

    version: str = "17"
    package: str = "openjdk-17-jdk-headless"
    priority: int = 1711

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"version": self.version, "package": self.package, "priority": self.priority}


@dataclass(frozen=True)
class CudaConfig:
    """CUDA toolkit release pinned by the cuda profile."""

    version: str = "12.4"
    repo_release: str = "12.4.0-550.54.14-1"
    driver_package: str = "cuda-drivers"

    @property
    def package_suffix(self) -> str:
        """Return the dashed form used in package names (``12.4`` -> ``12-4``)."""
        return self.version.replace(".", "-")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "repo_release": self.repo_release,
            "driver_package": self.driver_package,
        }


@dataclass(frozen=True)
class DockerConfig:
    """Docker group membership behaviour."""

    add_user_to_group: bool = False
    user: str | None = None
    daemon_config: Path = Path("/etc/docker/daemon.json")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "add_user_to_group": self.add_user_to_group,
            "user": self.user,
            "daemon_config": str(self.daemon_config),
        }


@dataclass(frozen=True)
class CommandsConfig:
    """Executables invoked across the process boundary."""

    apt_get: str = "apt-get"
    dpkg: str = "dpkg"
    dpkg_query: str = "dpkg-query"
    curl: str = "curl"
    gpg: str = "gpg"
    update_alternatives: str = "update-alternatives"
    systemctl: str = "systemctl"
    groupadd: str = "groupadd"
    usermod: str = "usermod"
    add_apt_repository: str = "add-apt-repository"
    nvidia_ctk: str = "nvidia-ctk"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "apt_get": self.apt_get,
            "dpkg": self.dpkg,
            "dpkg_query": self.dpkg_query,
            "curl": self.curl,
            "gpg": self.gpg,
            "update_alternatives": self.update_alternatives,
            "systemctl": self.systemctl,
            "groupadd": self.groupadd,
            "usermod": self.usermod,
            "add_apt_repository": self.add_apt_repository,
            "nvidia_ctk": self.nvidia_ctk,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for hostprep."""

    config_file: Path
    os_release_file: Path
    logs_dir: Path
    templates_dir: Path
    tmp_dir: Path
    profile_d_dir: Path
    apt: AptConfig
    download: DownloadConfig
    java: JavaConfig
    cuda: CudaConfig
    docker: DockerConfig
    commands: CommandsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "os_release_file": str(self.os_release_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "tmp_dir": str(self.tmp_dir),
            "profile_d_dir": str(self.profile_d_dir),
            "apt": self.apt.to_dict(),
            "download": self.download.to_dict(),
            "java": self.java.to_dict(),
            "cuda": self.cuda.to_dict(),
            "docker": self.docker.to_dict(),
            "commands": self.commands.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/hostprep/config.yml",
    "os_release_file": "/etc/os-release",
    "logs_dir": "/var/log/hostprep",
    "templates_dir": "/etc/hostprep/templates",
    "tmp_dir": "/tmp",  # noqa: S108 - downloads are staged where the shell installers put them
    "profile_d_dir": "/etc/profile.d",
    "apt": AptConfig().to_dict(),
    "download": DownloadConfig().to_dict(),
    "java": JavaConfig().to_dict(),
    "cuda": CudaConfig().to_dict(),
    "docker": DockerConfig().to_dict(),
    "commands": CommandsConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("apt", "download", "java", "cuda", "docker", "commands")
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

    legacy_values = _build_legacy_env_overrides(resolved_env)
    if legacy_values:
        _deep_merge(merged, legacy_values)

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
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    cuda_map = _as_dict(raw.get("cuda"), "cuda")
    raw_cuda_version = cuda_map.get("version")
    if not isinstance(raw_cuda_version, str):
        # YAML reads 12.10 as the float 12.1
        raise ConfigError(
            f"cuda.version must be a quoted string such as '12.4'. Got {raw_cuda_version!r}."
        )
    cuda_version = raw_cuda_version.strip()
    if not _CUDA_VERSION_RE.match(cuda_version):
        raise ConfigError(
            f"cuda.version must look like '<major>.<minor>'. Got {cuda_version!r}."
        )

    java_map = _as_dict(raw.get("java"), "java")
    java_version = java_map.get("version")
    if isinstance(java_version, (bool, float)):
        raise ConfigError(
            f"java.version must be a quoted string such as '17'. Got {java_version!r}."
        )
    if not _text(java_version):
        raise ConfigError("java.version must be a non-empty string.")
    if not _text(java_map.get("package")):
        raise ConfigError("java.package must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    apt_mapping = _as_dict(raw.get("apt"), "apt")
    apt = AptConfig(
        keyrings_dir=_to_path(apt_mapping.get("keyrings_dir")),
        share_keyrings_dir=_to_path(apt_mapping.get("share_keyrings_dir")),
        sources_list=_to_path(apt_mapping.get("sources_list")),
        sources_dir=_to_path(apt_mapping.get("sources_dir")),
        preferences_dir=_to_path(apt_mapping.get("preferences_dir")),
        retries=_expect_non_negative_int(apt_mapping.get("retries"), "apt.retries", default=3),
    )

    download_mapping = _as_dict(raw.get("download"), "download")
    download = DownloadConfig(
        retries=_expect_non_negative_int(
            download_mapping.get("retries"), "download.retries", default=3
        ),
        retry_delay=_expect_non_negative_int(
            download_mapping.get("retry_delay"), "download.retry_delay", default=2
        ),
        connect_timeout=_expect_non_negative_int(
            download_mapping.get("connect_timeout"), "download.connect_timeout", default=30
        ),
    )

    java_mapping = _as_dict(raw.get("java"), "java")
    java = JavaConfig(
        version=_text(java_mapping.get("version")),
        package=_text(java_mapping.get("package")),
        priority=_expect_non_negative_int(
            java_mapping.get("priority"), "java.priority", default=1711
        ),
    )

    cuda_mapping = _as_dict(raw.get("cuda"), "cuda")
    cuda = CudaConfig(
        version=_text(cuda_mapping.get("version")),
        repo_release=str(cuda_mapping.get("repo_release", "12.4.0-550.54.14-1")).strip(),
        driver_package=str(cuda_mapping.get("driver_package", "cuda-drivers")).strip(),
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker_user = docker_mapping.get("user")
    docker = DockerConfig(
        add_user_to_group=_expect_bool(
            docker_mapping.get("add_user_to_group"), "docker.add_user_to_group"
        ),
        user=str(docker_user).strip() if docker_user not in (None, "") else None,
        daemon_config=_to_path(docker_mapping.get("daemon_config", "/etc/docker/daemon.json")),
    )

    commands_mapping = _as_dict(raw.get("commands"), "commands")
    defaults = CommandsConfig().to_dict()
    commands = CommandsConfig(
        **{
            key: _expect_str(commands_mapping.get(key, default), f"commands.{key}")
            for key, default in defaults.items()
        }
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        os_release_file=_to_path(raw.get("os_release_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        tmp_dir=_to_path(raw.get("tmp_dir")),
        profile_d_dir=_to_path(raw.get("profile_d_dir")),
        apt=apt,
        download=download,
        java=java,
        cuda=cuda,
        docker=docker,
        commands=commands,
    )


def _build_legacy_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    docker: dict[str, object] = {}
    if env.get(DOCKER_GROUP_ENV_VAR, "").strip() == "1":
        docker["add_user_to_group"] = True
    sudo_user = env.get(SUDO_USER_ENV_VAR, "").strip()
    if sudo_user:
        docker["user"] = sudo_user
    return {"docker": docker} if docker else {}


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
    if isinstance(parsed, float):
        # keep dotted versions such as 12.10 intact
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


def _expect_non_negative_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        try:
            number = int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")
    if number < 0:
        raise ConfigError(f"{label} must be non-negative. Got {number}.")
    return number


def _expect_bool(value: object | None, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _text(value: object | None) -> str:
    return "" if value is None else str(value).strip()


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


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
    "AptConfig",
    "CommandsConfig",
    "ConfigError",
    "CudaConfig",
    "DockerConfig",
    "DownloadConfig",
    "JavaConfig",
    "load_config",
]
