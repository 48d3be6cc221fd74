"""Configuration loader for certrotate.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/certrotate/config.yml`` (or an override path).
3. Environment variables prefixed with ``CERTROTATE_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CERTROTATE_TIMEOUTS__SERVICE=45
    export CERTROTATE_SERVICE__STATE_DIR=/srv/teleport

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` so the orchestrator receives every path explicitly instead of
reaching for module-level constants.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import guard
    raise RuntimeError(
        "PyYAML is required to load certrotate configuration. Install with "
        "`pip install certrotate` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import ServicePaths

ENV_PREFIX = "CERTROTATE_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_CONFIGURE_COMMAND: tuple[str, ...] = (
    "{binary}",
    "configure",
    "--cluster-name={domain}",
    "--public-addr={domain}:{port}",
    "--cert-file={cert_file}",
    "--key-file={key_file}",
    "--output={config_file}",
)
CONFIGURE_PLACEHOLDERS = frozenset(
    {"binary", "domain", "port", "cert_file", "key_file", "config_file"}
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceConfig:
    """The managed service and the files it reads at startup."""

    name: str = "teleport"
    unit: str = "teleport.service"
    binary: str = "teleport"
    state_dir: Path = Path("/var/lib/teleport")
    config_file: Path = Path("/etc/teleport.yaml")
    tls_dir: Path = Path("/etc/teleport/tls")
    public_port: int = 443
    configure_command: tuple[str, ...] = DEFAULT_CONFIGURE_COMMAND
    tls_owner: str | None = None
    tls_group: str | None = None

    @property
    def paths(self) -> ServicePaths:
        """Return the service paths touched by backup and installation."""
        return ServicePaths(
            state_dir=self.state_dir,
            config_file=self.config_file,
            tls_dir=self.tls_dir,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "unit": self.unit,
            "binary": self.binary,
            "state_dir": str(self.state_dir),
            "config_file": str(self.config_file),
            "tls_dir": str(self.tls_dir),
            "public_port": self.public_port,
            "configure_command": list(self.configure_command),
            "tls_owner": self.tls_owner,
            "tls_group": self.tls_group,
        }


@dataclass(frozen=True)
class CertbotConfig:
    """Certificate acquisition through the certbot CLI."""

    binary: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    email: str | None = None
    authenticator: str = "standalone"
    extra_args: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "binary": self.binary,
            "live_dir": str(self.live_dir),
            "email": self.email,
            "authenticator": self.authenticator,
            "extra_args": list(self.extra_args),
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and compression defaults."""

    root: Path
    index: Path
    compression: str = "gzip"
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
        }


@dataclass(frozen=True)
class TimeoutsConfig:
    """Bounds for service transitions."""

    service: float = 30.0
    poll_interval: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"service": self.service, "poll_interval": self.poll_interval}


@dataclass(frozen=True)
class ProbeConfig:
    """External reachability probe settings."""

    path: str = "/healthz"
    timeout: float = 10.0
    verify_tls: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"path": self.path, "timeout": self.timeout, "verify_tls": self.verify_tls}


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for certrotate."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    require_root: bool
    expiry_threshold_days: int
    service: ServiceConfig
    certbot: CertbotConfig
    backups: BackupConfig
    timeouts: TimeoutsConfig
    probe: ProbeConfig
    systemd: SystemdConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "require_root": self.require_root,
            "expiry_threshold_days": self.expiry_threshold_days,
            "service": self.service.to_dict(),
            "certbot": self.certbot.to_dict(),
            "backups": self.backups.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "probe": self.probe.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/certrotate/config.yml",
    "logs_dir": "/var/log/certrotate",
    "runtime_dir": "/run/certrotate",
    "lock_timeout": 5.0,
    "require_root": True,
    "expiry_threshold_days": 30,
    "service": {
        "name": "teleport",
        "unit": "teleport.service",
        "binary": "teleport",
        "state_dir": "/var/lib/teleport",
        "config_file": "/etc/teleport.yaml",
        "tls_dir": "/etc/teleport/tls",
        "public_port": 443,
        "configure_command": list(DEFAULT_CONFIGURE_COMMAND),
        "tls_owner": None,
        "tls_group": None,
    },
    "certbot": {
        "binary": "certbot",
        "live_dir": "/etc/letsencrypt/live",
        "email": None,
        "authenticator": "standalone",
        "extra_args": [],
    },
    "backups": {
        "root": "/var/backups/certrotate",
        "index": None,
        "compression": {
            "algorithm": "gzip",
            "level": None,
        },
    },
    "timeouts": {
        "service": 30.0,
        "poll_interval": 1.0,
    },
    "probe": {
        "path": "/healthz",
        "timeout": 10.0,
        "verify_tls": True,
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}
ALLOWED_AUTHENTICATORS = {"standalone", "webroot", "nginx", "apache", "manual"}
_SECTION_KEYS: dict[str, set[str]] = {
    "service": set(cast(Mapping[str, object], DEFAULTS["service"]).keys()),
    "certbot": set(cast(Mapping[str, object], DEFAULTS["certbot"]).keys()),
    "backups": {"root", "index", "compression"},
    "timeouts": {"service", "poll_interval"},
    "probe": {"path", "timeout", "verify_tls"},
    "systemd": {"systemctl_bin", "journalctl_bin"},
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

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")
    algorithm = str(compression_map.get("algorithm", "gzip"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}.")

    certbot_map = _as_dict(raw.get("certbot"), "certbot")
    authenticator = str(certbot_map.get("authenticator", "standalone"))
    if authenticator not in ALLOWED_AUTHENTICATORS:
        allowed = ", ".join(sorted(ALLOWED_AUTHENTICATORS))
        raise ConfigError(
            f"Unsupported certbot authenticator '{authenticator}'. Allowed: {allowed}."
        )

    service_map = _as_dict(raw.get("service"), "service")
    command = service_map.get("configure_command")
    if command is not None:
        _validate_configure_command(command)


def _validate_configure_command(value: object) -> None:
    entries = _as_sequence(value, "service.configure_command")
    if not entries:
        raise ConfigError("service.configure_command must not be empty.")
    for index, entry in enumerate(entries):
        if not isinstance(entry, str):
            raise ConfigError(f"service.configure_command[{index}] must be a string.")
        try:
            entry.format(**{name: "" for name in CONFIGURE_PLACEHOLDERS})
        except (AttributeError, KeyError, IndexError, ValueError) as exc:
            allowed = ", ".join(sorted(CONFIGURE_PLACEHOLDERS))
            raise ConfigError(
                f"service.configure_command[{index}] uses an unknown placeholder "
                f"({exc}). Allowed: {allowed}."
            ) from exc


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=5.0)
    require_root = _expect_bool(raw.get("require_root"), "require_root", default=True)
    threshold = _expect_int(
        raw.get("expiry_threshold_days"),
        "expiry_threshold_days",
        default=30,
    )
    if threshold < 0:
        raise ConfigError("expiry_threshold_days must be non-negative.")

    service_mapping = _as_dict(raw.get("service"), "service")
    public_port = _expect_int(
        service_mapping.get("public_port"), "service.public_port", default=443
    )
    if not 0 < public_port < 65536:
        raise ConfigError("service.public_port must be between 1 and 65535.")
    command_raw = service_mapping.get("configure_command")
    configure_command = (
        tuple(str(item) for item in _as_sequence(command_raw, "service.configure_command"))
        if command_raw is not None
        else DEFAULT_CONFIGURE_COMMAND
    )
    service = ServiceConfig(
        name=str(service_mapping.get("name", "teleport")),
        unit=str(service_mapping.get("unit", "teleport.service")),
        binary=str(service_mapping.get("binary", "teleport")),
        state_dir=_to_path(service_mapping.get("state_dir", "/var/lib/teleport")),
        config_file=_to_path(service_mapping.get("config_file", "/etc/teleport.yaml")),
        tls_dir=_to_path(service_mapping.get("tls_dir", "/etc/teleport/tls")),
        public_port=public_port,
        configure_command=configure_command,
        tls_owner=_optional_str(service_mapping.get("tls_owner")),
        tls_group=_optional_str(service_mapping.get("tls_group")),
    )

    certbot_mapping = _as_dict(raw.get("certbot"), "certbot")
    extra_raw = certbot_mapping.get("extra_args")
    extra_args = (
        tuple(str(item) for item in _as_sequence(extra_raw, "certbot.extra_args"))
        if extra_raw is not None
        else ()
    )
    certbot = CertbotConfig(
        binary=str(certbot_mapping.get("binary", "certbot")),
        live_dir=_to_path(certbot_mapping.get("live_dir", "/etc/letsencrypt/live")),
        email=_optional_str(certbot_mapping.get("email")),
        authenticator=str(certbot_mapping.get("authenticator", "standalone")),
        extra_args=extra_args,
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/var/backups/certrotate"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )
    compression_mapping = _as_dict(backups_mapping.get("compression"), "backups.compression")
    compression_level_raw = compression_mapping.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        parsed_level = _expect_int(compression_level_raw, "backups.compression.level", default=1)
        if parsed_level <= 0:
            raise ConfigError(
                "backups.compression.level must be greater than zero when specified."
            )
        compression_level = parsed_level
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        compression=str(compression_mapping.get("algorithm", "gzip")),
        compression_level=compression_level,
    )

    timeouts_mapping = _as_dict(raw.get("timeouts"), "timeouts")
    timeouts = TimeoutsConfig(
        service=_expect_positive_float(
            timeouts_mapping.get("service"), "timeouts.service", default=30.0
        ),
        poll_interval=_expect_positive_float(
            timeouts_mapping.get("poll_interval"), "timeouts.poll_interval", default=1.0
        ),
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    probe_path = str(probe_mapping.get("path", "/healthz")).strip() or "/"
    if not probe_path.startswith("/"):
        probe_path = f"/{probe_path}"
    probe = ProbeConfig(
        path=probe_path,
        timeout=_expect_positive_float(probe_mapping.get("timeout"), "probe.timeout", default=10.0),
        verify_tls=_expect_bool(probe_mapping.get("verify_tls"), "probe.verify_tls", default=True),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        require_root=require_root,
        expiry_threshold_days=threshold,
        service=service,
        certbot=certbot,
        backups=backups,
        timeouts=timeouts,
        probe=probe,
        systemd=systemd,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


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
    "DEFAULT_CONFIGURE_COMMAND",
    "AppConfig",
    "BackupConfig",
    "CertbotConfig",
    "ConfigError",
    "ProbeConfig",
    "ServiceConfig",
    "SystemdConfig",
    "TimeoutsConfig",
    "load_config",
]
