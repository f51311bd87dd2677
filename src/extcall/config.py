"""Configuration loading.

Values come from defaults, then an optional YAML file, then environment
variables.  The YAML file is validated strictly; every problem is collected
into one ``ConfigError``.

Example file::

    discovery:
      command: /usr/local/bin/cmdb-discover
      timeout: 4
      transport: env
      collective: production
    provisioning:
      command: /usr/local/bin/provision-helper
      timeout: 10
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from extcall.errors import ConfigError

__all__ = [
    "DiscoveryConfig",
    "ExtcallConfig",
    "ProvisioningConfig",
    "load_config",
]

_DEFAULT_DISCOVERY_TIMEOUT = 2
_DEFAULT_PROVISIONING_TIMEOUT = 10
_DEFAULT_COLLECTIVE = "mcollective"
_DEFAULT_TRANSPORT = "env"

_ENV_CONFIG = "EXTCALL_CONFIG"
_ENV_DISCOVERY_COMMAND = "EXTCALL_DISCOVERY_COMMAND"
_ENV_DISCOVERY_TIMEOUT = "EXTCALL_DISCOVERY_TIMEOUT"
_ENV_DISCOVERY_TRANSPORT = "EXTCALL_DISCOVERY_TRANSPORT"
_ENV_COLLECTIVE = "EXTCALL_COLLECTIVE"
_ENV_PROVISIONING_COMMAND = "EXTCALL_PROVISIONING_COMMAND"
_ENV_PROVISIONING_TIMEOUT = "EXTCALL_PROVISIONING_TIMEOUT"

_TOP_LEVEL_KEYS = frozenset(("discovery", "provisioning"))
_DISCOVERY_KEYS = frozenset(("command", "timeout", "transport", "collective", "environment"))
_PROVISIONING_KEYS = frozenset(("command", "timeout", "environment"))
_TRANSPORTS = frozenset(("env", "argv", "stdio"))


@dataclass(frozen=True)
class DiscoveryConfig:
    """Settings for the external discovery provider."""

    command: str | None = None
    timeout: int = _DEFAULT_DISCOVERY_TIMEOUT
    transport: str = _DEFAULT_TRANSPORT
    collective: str = _DEFAULT_COLLECTIVE
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProvisioningConfig:
    """Settings for the provisioning helper."""

    command: str | None = None
    timeout: int = _DEFAULT_PROVISIONING_TIMEOUT
    environment: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtcallConfig:
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)


def load_config(
    path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> ExtcallConfig:
    """Build the effective configuration.

    Args:
        path: YAML file to read.  Falls back to ``$EXTCALL_CONFIG``; no file
            is read when neither is set.
        environ: Environment to read overrides from (default ``os.environ``).
    """
    env = os.environ if environ is None else environ
    config = ExtcallConfig()

    config_path = path
    if config_path is None:
        raw_path = _read_env_value(env, _ENV_CONFIG)
        config_path = Path(raw_path) if raw_path else None
    if config_path is not None:
        config = _load_file(config_path)

    return _apply_env(config, env)


def _load_file(path: Path) -> ExtcallConfig:
    resolved = path.resolve()
    if not resolved.is_file():
        msg = f"Config file not found: {resolved}"
        raise FileNotFoundError(msg)

    try:
        data = yaml.safe_load(resolved.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(str(resolved), [f"YAML parse error: {str(exc).strip()}"]) from exc

    if data is None:
        return ExtcallConfig()
    if not isinstance(data, dict):
        raise ConfigError(
            str(resolved),
            ["Top-level YAML document must be a mapping with keys: discovery, provisioning."],
        )

    errors: list[str] = []
    extra_top = sorted(str(key) for key in data if key not in _TOP_LEVEL_KEYS)
    if extra_top:
        errors.append(
            f"Unexpected top-level keys: {', '.join(extra_top)}. "
            "Allowed keys: discovery, provisioning."
        )

    discovery = _section(data.get("discovery"), "discovery", _DISCOVERY_KEYS, errors)
    provisioning = _section(data.get("provisioning"), "provisioning", _PROVISIONING_KEYS, errors)

    transport = _optional_str(discovery.get("transport"), "discovery.transport", errors)
    if transport is not None and transport not in _TRANSPORTS:
        errors.append(
            f"discovery.transport must be one of: {', '.join(sorted(_TRANSPORTS))}"
        )

    discovery_config = DiscoveryConfig(
        command=_optional_str(discovery.get("command"), "discovery.command", errors),
        timeout=_positive_int(
            discovery.get("timeout"), "discovery.timeout", errors, _DEFAULT_DISCOVERY_TIMEOUT
        ),
        transport=transport or _DEFAULT_TRANSPORT,
        collective=_optional_str(discovery.get("collective"), "discovery.collective", errors)
        or _DEFAULT_COLLECTIVE,
        environment=_str_mapping(discovery.get("environment"), "discovery.environment", errors),
    )
    provisioning_config = ProvisioningConfig(
        command=_optional_str(provisioning.get("command"), "provisioning.command", errors),
        timeout=_positive_int(
            provisioning.get("timeout"),
            "provisioning.timeout",
            errors,
            _DEFAULT_PROVISIONING_TIMEOUT,
        ),
        environment=_str_mapping(
            provisioning.get("environment"), "provisioning.environment", errors
        ),
    )

    if errors:
        raise ConfigError(str(resolved), errors)
    return ExtcallConfig(discovery=discovery_config, provisioning=provisioning_config)


def _apply_env(config: ExtcallConfig, env: Mapping[str, str]) -> ExtcallConfig:
    errors: list[str] = []
    discovery = config.discovery
    provisioning = config.provisioning

    command = _read_env_value(env, _ENV_DISCOVERY_COMMAND)
    if command:
        discovery = replace(discovery, command=command)
    timeout = _env_positive_int(env, _ENV_DISCOVERY_TIMEOUT, errors)
    if timeout is not None:
        discovery = replace(discovery, timeout=timeout)
    transport = _read_env_value(env, _ENV_DISCOVERY_TRANSPORT)
    if transport:
        transport = transport.lower()
        if transport in _TRANSPORTS:
            discovery = replace(discovery, transport=transport)
        else:
            errors.append(
                f"{_ENV_DISCOVERY_TRANSPORT} must be one of: {', '.join(sorted(_TRANSPORTS))}"
            )
    collective = _read_env_value(env, _ENV_COLLECTIVE)
    if collective:
        discovery = replace(discovery, collective=collective)

    command = _read_env_value(env, _ENV_PROVISIONING_COMMAND)
    if command:
        provisioning = replace(provisioning, command=command)
    timeout = _env_positive_int(env, _ENV_PROVISIONING_TIMEOUT, errors)
    if timeout is not None:
        provisioning = replace(provisioning, timeout=timeout)

    if errors:
        raise ConfigError("environment", errors)
    return ExtcallConfig(discovery=discovery, provisioning=provisioning)


def _section(
    value: Any,
    path: str,
    allowed: frozenset[str],
    errors: list[str],
) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{path} must be a mapping")
        return {}
    extra = sorted(str(key) for key in value if key not in allowed)
    if extra:
        errors.append(
            f"{path} has unexpected keys: {', '.join(extra)}. "
            f"Allowed keys: {', '.join(sorted(allowed))}."
        )
    return value


def _optional_str(value: Any, path: str, errors: list[str]) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f"{path} must be a string")
        return None
    return value.strip() or None


def _positive_int(value: Any, path: str, errors: list[str], default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{path} must be an integer number of seconds")
        return default
    if value <= 0:
        errors.append(f"{path} must be positive")
        return default
    return value


def _str_mapping(value: Any, path: str, errors: list[str]) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{path} must be a mapping of strings")
        return {}
    result: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str):
            errors.append(f"{path}.{key} must be a string")
            continue
        result[key] = item
    return result


def _read_env_value(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return value.strip() or None


def _env_positive_int(env: Mapping[str, str], key: str, errors: list[str]) -> int | None:
    raw = _read_env_value(env, key)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        errors.append(f"{key} must be an integer, got {raw!r}")
        return None
    if value <= 0:
        errors.append(f"{key} must be positive")
        return None
    return value
