"""Community chat engine configuration.

Loads settings from a single YAML file:
  * chat.settings.yaml: non-secret configuration

The path can be overridden with the ``CHAT_SETTINGS_PATH`` environment
variable. Missing files fall back to defaults so the service can start with
no configuration at all.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("chat.settings.yaml")
SETTINGS_ENV_VAR = "CHAT_SETTINGS_PATH"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class ChatSettings(BaseModel):
    """Tunables for the realtime chat engine."""
    max_content_length:            int   = 2000
    typing_expiry_seconds:         float = 2.0
    typing_sweep_interval_seconds: float = 0.5
    typing_refresh_seconds:        float = 0.5
    room_linger_seconds:           float = 30.0
    outbound_queue_size:           int   = 256
    history_page_size:             int   = 50
    max_page_size:                 int   = 100
    slowmode_exempt_roles:         List[str] = Field(default_factory=list)

    @field_validator("max_content_length", "outbound_queue_size", "history_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("slowmode_exempt_roles")
    @classmethod
    def _known_roles(cls, value: List[str]) -> List[str]:
        allowed = {"owner", "moderator", "member"}
        unknown = [role for role in value if role not in allowed]
        if unknown:
            raise ValueError(f"unknown roles: {', '.join(unknown)}")
        return value


class StorageSettings(BaseModel):
    db_path: str = "chat.duckdb"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings into a single *AppConfig* object.

    Relative ``storage.db_path`` values resolve from the settings file's
    directory so the database lands next to the configuration it belongs to.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    config = AppConfig(**_load_yaml(settings_path))

    db_path = config.storage.db_path
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        config.storage.db_path = str(settings_path.parent.resolve() / db_path)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, linger=%ss, typing_expiry=%ss)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.chat.room_linger_seconds,
        config.chat.typing_expiry_seconds,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Replace the process-wide configuration (used by tests)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
