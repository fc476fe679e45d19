"""
Configuration Loading

Settings for every enrollment component live in config.yaml at the project
root. The parsed file is cached in a module-level singleton; each component
receives its own section as a plain dict and falls back to in-code defaults
for missing keys.

Set ENROLLMENT_CONFIG to point at a different YAML file.

Usage:
    from core.config import get_capture_config
    cooldown_ms = get_capture_config()["cooldown_ms"]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import yaml

CONFIG_FILENAME = "config.yaml"
CONFIG_ENV_VAR = "ENROLLMENT_CONFIG"

_config_instance: Optional[Dict[str, Any]] = None


def get_project_root() -> Path:
    """
    Locate the directory holding config.yaml, searching upward from this package.

    Raises:
        FileNotFoundError: If no parent directory has a config.yaml.
    """
    for directory in Path(__file__).resolve().parents:
        if (directory / CONFIG_FILENAME).exists():
            return directory

    raise FileNotFoundError(
        f"No {CONFIG_FILENAME} found above {Path(__file__).resolve().parent}. "
        f"Run from inside the project or set {CONFIG_ENV_VAR}."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Parse a YAML config file.

    Args:
        config_path: File to read. Defaults to $ENROLLMENT_CONFIG, then to
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
    """Return the cached configuration, reading it on first use or when reload=True."""
    global _config_instance

    if reload or _config_instance is None:
        _config_instance = load_config()
    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Return one top-level section of the configuration.

    Raises:
        KeyError: If config.yaml has no such section.
    """
    config = get_config()
    try:
        return config[section_name]
    except KeyError:
        raise KeyError(
            f"Missing '{section_name}' section in configuration "
            f"(have: {', '.join(config) or 'nothing'})"
        ) from None


def get_face_detection_config() -> Dict[str, Any]:
    return get_section("face_detection")


def get_quality_config() -> Dict[str, Any]:
    return get_section("quality")


def get_capture_config() -> Dict[str, Any]:
    return get_section("capture")


def get_enrollment_api_config() -> Dict[str, Any]:
    return get_section("enrollment_api")


def get_camera_config() -> Dict[str, Any]:
    return get_section("camera")


def get_server_config() -> Dict[str, Any]:
    """
    Settings for the reference enrollment backend.

    The bind address comes from server.base_url; "localhost" binds to every
    interface so the backend is reachable from other devices on the network.

    Returns:
        Dict with host, port, session_ttl_sec and min_quality.
    """
    server = get_section("server")
    url = urlsplit(server.get("base_url", "http://localhost:3000"))

    host = url.hostname if url.hostname and url.hostname != "localhost" else "0.0.0.0"
    try:
        port = url.port or 3000
    except ValueError:
        port = 3000

    return {
        "host": host,
        "port": port,
        "session_ttl_sec": server.get("session_ttl_sec", 900),
        "min_quality": server.get("min_quality", 0.85),
    }
