"""
Configuration Management Module

This module provides a centralized way to load and access configuration settings
from the config.yaml file. The parsed file is cached at module level so every
component reads the same values.

Secrets (encryption master key, identity provider key, cloud credentials) are
never written to config.yaml. The YAML only names the environment variables
they are read from.

Usage:
    from faceauth.config import get_config
    config = get_config()
    flow_config = config["flow"]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


# Environment variable that points at an alternative config file
CONFIG_ENV_VAR = "FACEAUTH_CONFIG"

# Store the cached configuration (module-level variable)
_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml file.
    This function walks up the directory tree from this file's location
    until it finds config.yaml.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        config_path = current_dir / "config.yaml"
        if config_path.exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        "Make sure you're running from within the project directory."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the config file. If not provided, the
                     FACEAUTH_CONFIG environment variable is consulted, then
                     the default config.yaml in the project root.

    Returns:
        Dict containing all configuration values.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)

    if config_path is None:
        config_path = get_project_root() / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    return config


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the cached configuration.

    Args:
        reload: If True, forces reloading the configuration from disk.
                Useful for testing or if the config file has changed.

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        threshold = config["matching"]["similarity_threshold"]
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a specific section from the configuration.

    Args:
        section_name: Name of the configuration section
                      (e.g., "capture", "matching", "flow")

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


def get_api_config() -> Dict[str, Any]:
    """Get API configuration."""
    return get_section("api")


def read_secret(env_var: Optional[str], required: bool = True) -> Optional[str]:
    """
    Read a secret from the environment variable named in config.

    Args:
        env_var: Name of the environment variable.
        required: Raise if the variable is unset or empty.

    Returns:
        The secret value, or None when optional and unset.

    Raises:
        RuntimeError: If a required secret is missing.
    """
    value = os.environ.get(env_var) if env_var else None
    if not value and required:
        raise RuntimeError(
            f"Required secret is not set. Export the environment variable '{env_var}'."
        )
    return value or None


def get_server_config() -> Dict[str, Any]:
    """
    Get server configuration for the API.

    Returns:
        Dict with host and port for the API server.
    """
    api_config = get_api_config()
    base_url = api_config.get("base_url", "http://localhost:8000")

    host = "0.0.0.0"
    port = 8000

    try:
        url_part = base_url.split("//")[-1]
        if ":" in url_part:
            host_part, port_str = url_part.rsplit(":", 1)
            port = int(port_str.rstrip("/"))
            if host_part != "localhost":
                host = host_part
    except (ValueError, IndexError):
        pass

    return {"host": host, "port": port}
