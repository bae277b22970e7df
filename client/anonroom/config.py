"""Anonroom client configuration.

Loads settings from a single YAML file:
  * anonroom.settings.yaml: endpoints, limits and timer tuning

The two endpoint base URLs can also be supplied through the environment
(ANONROOM_API_BASE_URL / ANONROOM_WS_BASE_URL), which wins over the file.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("anonroom.settings.yaml")

API_BASE_ENV = "ANONROOM_API_BASE_URL"
WS_BASE_ENV  = "ANONROOM_WS_BASE_URL"


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
    api_base_url:            str   = "http://localhost:8000"
    ws_base_url:             str   = "ws://localhost:8000"
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("api_base_url")
    @classmethod
    def _check_http(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"api_base_url must be an http(s) URL, got {value!r}")
        return value.rstrip("/")

    @field_validator("ws_base_url")
    @classmethod
    def _check_ws(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError(f"ws_base_url must be a ws(s) URL, got {value!r}")
        return value.rstrip("/")


class AttachmentSettings(BaseModel):
    max_bytes:      int = Field(default=5 * 1024 * 1024, gt=0)
    allowed_prefix: str = "image/"


class MessageSettings(BaseModel):
    max_text_length:     int = Field(default=500, gt=0)
    reply_preview_chars: int = Field(default=50, gt=0)
    display_timezone:    str = "Asia/Kolkata"


class CountdownSettings(BaseModel):
    tick_seconds:         float = Field(default=1.0, gt=0)
    expiry_grace_seconds: float = Field(default=2.0, ge=0)


class ReconnectSettings(BaseModel):
    """Cooldown between foreground-triggered reconnects after failed opens."""
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds:  float = Field(default=30.0, ge=0)


class LoggingSettings(BaseModel):
    level: str = "info"


class AppSettings(BaseModel):
    server:      ServerSettings     = Field(default_factory=ServerSettings)
    attachments: AttachmentSettings = Field(default_factory=AttachmentSettings)
    messages:    MessageSettings    = Field(default_factory=MessageSettings)
    countdown:   CountdownSettings  = Field(default_factory=CountdownSettings)
    reconnect:   ReconnectSettings  = Field(default_factory=ReconnectSettings)
    logging:     LoggingSettings    = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    server = dict(data.get("server") or {})
    if os.environ.get(API_BASE_ENV):
        server["api_base_url"] = os.environ[API_BASE_ENV]
        logger.debug("api_base_url taken from %s", API_BASE_ENV)
    if os.environ.get(WS_BASE_ENV):
        server["ws_base_url"] = os.environ[WS_BASE_ENV]
        logger.debug("ws_base_url taken from %s", WS_BASE_ENV)
    data["server"] = server
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppSettings] = None


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load *anonroom.settings.yaml* (or *path*) into an *AppSettings* object."""
    settings_data = _apply_env_overrides(_load_yaml(path or SETTINGS_FILE))

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (api=%s, ws=%s, max_attachment_bytes=%d)",
        app_settings.server.api_base_url,
        app_settings.server.ws_base_url,
        app_settings.attachments.max_bytes,
    )
    return app_settings


def get_config(path: Optional[Path] = None) -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings(path)
    return _config


def reset_config() -> None:
    """Forget the cached settings (for testing)."""
    global _config
    _config = None
