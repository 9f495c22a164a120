"""Shared studioflow configuration utilities.

Centralises reading of ~/.studioflow/configuration.json so the executor,
the CLI and the shipped collaborators share one implementation.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_TEXT_MODEL = "gemini/gemini-2.5-flash"
DEFAULT_MAX_TASK_DURATION = 10.0
DEFAULT_HISTORY_SIZE = 50

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STUDIOFLOW_CONFIG_FILE = Path.home() / ".studioflow" / "configuration.json"


def _config_path() -> Path:
    override = os.environ.get("STUDIOFLOW_CONFIG")
    return Path(override) if override else STUDIOFLOW_CONFIG_FILE


def get_studioflow_config() -> dict[str, Any]:
    """Load configuration from ~/.studioflow/configuration.json (or $STUDIOFLOW_CONFIG)."""
    path = _config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_text_model() -> str:
    """Return the preferred text model as a LiteLLM model string."""
    llm = get_studioflow_config().get("llm", {})
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_TEXT_MODEL


def get_api_key() -> str | None:
    """Return the API key from the environment variable named in configuration."""
    llm = get_studioflow_config().get("llm", {})
    api_key_env_var = llm.get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def get_max_task_duration() -> float:
    """Return the default per-task video duration in seconds."""
    video = get_studioflow_config().get("video", {})
    try:
        return float(video.get("max_duration", DEFAULT_MAX_TASK_DURATION))
    except (TypeError, ValueError):
        return DEFAULT_MAX_TASK_DURATION


def get_asset_store_config() -> dict[str, Any] | None:
    """Return the remote asset store settings, or None when uploads are not configured."""
    store = get_studioflow_config().get("asset_store")
    if not store or not store.get("endpoint"):
        return None
    token_env = store.get("token_env_var")
    return {
        "endpoint": store["endpoint"],
        "bucket": store.get("bucket", ""),
        "public_base_url": store.get("public_base_url"),
        "token": os.environ.get(token_env) if token_env else None,
    }


def get_cache_dir() -> Path:
    """Return the directory used by the file-backed output store."""
    cache_dir = get_studioflow_config().get("cache_dir")
    if cache_dir:
        return Path(cache_dir).expanduser()
    return Path.home() / ".studioflow" / "outputs"


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.studioflow/configuration.json."""

    text_model: str = field(default_factory=get_text_model)
    api_key: str | None = field(default_factory=get_api_key)
    max_task_duration: float = field(default_factory=get_max_task_duration)
    # Provider-reported 0-100% is mapped onto this local window
    progress_window: tuple[int, int] = (30, 100)
    history_size: int = DEFAULT_HISTORY_SIZE
    cache_dir: Path = field(default_factory=get_cache_dir)
