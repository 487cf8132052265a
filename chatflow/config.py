"""Shared chatflow configuration utilities.

Centralises reading of ~/.chatflow/configuration.json (or the file named by
CHATFLOW_CONFIG) so the runtime, the stores and the CLI share one
implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_FILE = Path.home() / ".chatflow" / "configuration.json"
DEFAULT_STORAGE_PATH = Path.home() / ".chatflow" / "storage"

DEFAULT_MAX_STEPS_PER_ADVANCE = 100
DEFAULT_FLOW_TIMEOUT_MINUTES = 10
DEFAULT_INACTIVITY_TIMEOUT_MINUTES = 24 * 60
DEFAULT_REST_TIMEOUT_SECONDS = 30.0


def get_config_file() -> Path:
    override = os.environ.get("CHATFLOW_CONFIG")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_FILE


def get_chatflow_config() -> dict[str, Any]:
    """Load chatflow configuration. Missing or unreadable files yield {}."""
    config_file = get_config_file()
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_section() -> dict[str, Any]:
    section = get_chatflow_config().get("engine", {})
    return section if isinstance(section, dict) else {}


def get_max_steps_per_advance() -> int:
    return int(_engine_section().get("max_steps_per_advance", DEFAULT_MAX_STEPS_PER_ADVANCE))


def get_flow_timeout_minutes() -> int:
    return int(_engine_section().get("flow_timeout_minutes", DEFAULT_FLOW_TIMEOUT_MINUTES))


def get_inactivity_timeout_minutes() -> int:
    return int(
        _engine_section().get("inactivity_timeout_minutes", DEFAULT_INACTIVITY_TIMEOUT_MINUTES)
    )


def get_rest_timeout_seconds() -> float:
    return float(_engine_section().get("rest_timeout_seconds", DEFAULT_REST_TIMEOUT_SECONDS))


def get_storage_path() -> Path:
    """Return the storage root, falling back to ~/.chatflow/storage."""
    configured = _engine_section().get("storage_path")
    return Path(configured).expanduser() if configured else DEFAULT_STORAGE_PATH


# ---------------------------------------------------------------------------
# EngineConfig – shared by the runtime and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from the chatflow configuration file."""

    max_steps_per_advance: int = field(default_factory=get_max_steps_per_advance)
    flow_timeout_minutes: int = field(default_factory=get_flow_timeout_minutes)
    inactivity_timeout_minutes: int = field(default_factory=get_inactivity_timeout_minutes)
    rest_timeout_seconds: float = field(default_factory=get_rest_timeout_seconds)
    storage_path: Path = field(default_factory=get_storage_path)
