"""
Configuration Management Module

Settings live in config.yaml at the project root (or in the file named by
the FACEID_CONFIG environment variable). The file is parsed once and the
resulting dict is shared by the whole process.

Components receive plain dict sections and apply their own defaults with
dict.get, so a section may list only the keys it overrides.

Usage:
    from faceid.config import get_enrollment_config
    session = EnrollmentSession(get_enrollment_config(), storage=store)
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

CONFIG_FILENAME = "config.yaml"
CONFIG_ENV_VAR = "FACEID_CONFIG"

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

# Parsed config.yaml, shared by every caller
_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Locate the directory holding config.yaml.

    Starts next to this package and walks up one parent at a time.

    Raises:
        FileNotFoundError: If no parent directory contains config.yaml.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        if (current_dir / CONFIG_FILENAME).exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        f"Could not find {CONFIG_FILENAME} in any parent directory. "
        f"Run from inside the project or set {CONFIG_ENV_VAR}."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a YAML configuration file.

    Args:
        config_path: File to read. Defaults to $FACEID_CONFIG, then to
                     config.yaml at the project root.

    Returns:
        The parsed mapping ({} for an empty file).

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)

    path = Path(config_path) if config_path else get_project_root() / CONFIG_FILENAME

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Shared configuration dict, loaded on first use.

    Args:
        reload: Re-read the file even if it was already loaded.
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    One top-level section of the configuration.

    Raises:
        KeyError: If the section is missing.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name] or {}


def get_enrollment_config() -> Dict[str, Any]:
    """Admission thresholds, capture limits and thumbnail settings."""
    return get_section("enrollment")


def get_matching_config() -> Dict[str, Any]:
    """Match thresholds, mean-descriptor mode and default top-k."""
    return get_section("matching")


def get_storage_config() -> Dict[str, Any]:
    """Template directory and SQLite path, relative to the project root."""
    return get_section("storage")


def get_api_config() -> Dict[str, Any]:
    return get_section("api")


def get_logging_config() -> Dict[str, Any]:
    """Logging settings; optional, so a missing section gives {}."""
    return get_config().get("logging") or {}


def get_server_config() -> Dict[str, Any]:
    """
    Bind address for the API server, derived from api.base_url.

    "localhost" binds every interface; a missing or malformed port falls
    back to 8000.

    Returns:
        Dict with host and port.
    """
    base_url = get_api_config().get("base_url", f"http://localhost:{DEFAULT_PORT}")
    host, port = DEFAULT_HOST, DEFAULT_PORT

    parts = urlsplit(base_url if "//" in base_url else f"//{base_url}")
    if parts.hostname and parts.hostname != "localhost":
        host = parts.hostname

    try:
        port = parts.port or DEFAULT_PORT
    except ValueError:
        pass

    return {"host": host, "port": port}
