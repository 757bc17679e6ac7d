"""CLI configuration management.

Handles persistent CLI configuration stored in ~/.driftless/config.yaml.
Supports environment variable overrides and CLI flag precedence.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .shared.paths import CONFIG_FILE, ensure_dirs

# Default values
DEFAULT_NAMESPACE = "flux-system"
DEFAULT_TIMEOUT = 300
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_LOG_LEVEL = "warning"

# Environment variable mappings
ENV_VARS = {
    "namespace": "DRIFTLESS_NAMESPACE",
    "timeout": "DRIFTLESS_TIMEOUT",
    "poll_interval": "DRIFTLESS_POLL_INTERVAL",
    "kubeconfig": "DRIFTLESS_KUBECONFIG",
    "log_level": "DRIFTLESS_LOG_LEVEL",
}

# Coercion applied to values read from the file or the environment
_CASTS = {
    "namespace": str,
    "timeout": int,
    "poll_interval": float,
    "kubeconfig": str,
    "log_level": str,
}


@dataclass
class CLIConfig:
    """CLI configuration."""

    namespace: str = DEFAULT_NAMESPACE
    timeout: int = DEFAULT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    kubeconfig: str | None = None
    log_level: str = DEFAULT_LOG_LEVEL

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")


def get_config_path() -> Path:
    """Get the CLI config file path.

    Returns:
        Path to ~/.driftless/config.yaml
    """
    return CONFIG_FILE


def load_config(config_path: Path | None = None) -> CLIConfig:
    """Load CLI configuration.

    Precedence (highest to lowest):
    1. Environment variables
    2. Config file (~/.driftless/config.yaml)
    3. Defaults

    CLI flags are applied on top of the result by the commands themselves.

    Args:
        config_path: Override for the config file location.

    Returns:
        CLIConfig with values and sources
    """
    config = CLIConfig()
    sources: dict[str, str] = {key: "default" for key in _CASTS}

    path = config_path or get_config_path()
    if path.exists():
        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            file_config = {}  # Unreadable config file, use defaults

        for key, cast in _CASTS.items():
            if key in file_config and file_config[key] is not None:
                try:
                    setattr(config, key, cast(file_config[key]))
                    sources[key] = "config file"
                except (TypeError, ValueError):
                    pass

    for key, env_name in ENV_VARS.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            setattr(config, key, _CASTS[key](raw))
            sources[key] = "environment"
        except ValueError:
            pass

    config._sources = sources
    return config


def save_config(key: str, value: Any, config_path: Path | None = None) -> None:
    """Save a config value to the config file.

    Args:
        key: Config key (namespace, timeout, poll_interval, kubeconfig, log_level)
        value: Value to save
        config_path: Override for the config file location.
    """
    if key not in _CASTS:
        raise KeyError(f"Unknown config key: {key}")

    path = config_path or get_config_path()

    existing: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            existing = yaml.safe_load(f) or {}

    existing[key] = _CASTS[key](value)

    if path == CONFIG_FILE:
        ensure_dirs()
    else:
        path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)


def unset_config(key: str, config_path: Path | None = None) -> bool:
    """Remove a config value from the config file.

    Args:
        key: Config key to remove
        config_path: Override for the config file location.

    Returns:
        True if key was removed, False if not found
    """
    path = config_path or get_config_path()
    if not path.exists():
        return False

    with open(path) as f:
        existing = yaml.safe_load(f) or {}

    if key not in existing:
        return False

    del existing[key]

    with open(path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)

    return True
