"""Configuration utilities for the voice relay service."""
from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:3002",
]
DEFAULT_MAX_BODY_BYTES = 50 * 1024 * 1024


def _default_upload_dir() -> Path:
    return Path(tempfile.gettempdir()) / "voice-relay-uploads"


class Settings(BaseModel):
    """Application settings loaded once from environment variables."""

    model_config = ConfigDict(frozen=True)

    elevenlabs_api_key: str
    gemini_api_key: str
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    elevenlabs_voice_id: str = "EXAVITQu4vr4xnSDxMaL"
    elevenlabs_tts_model: str = "eleven_flash_v2_5"
    elevenlabs_stt_model: str = "scribe_v1"
    gemini_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    allowed_origins: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=1, le=65535)
    upload_dir: Path = Field(default_factory=_default_upload_dir)
    upstream_timeout: float = Field(default=60.0, gt=0)
    max_body_bytes: int = Field(default=DEFAULT_MAX_BODY_BYTES, gt=0)
    startup_check: bool = True

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, value: List[str] | str) -> List[str]:
        if isinstance(value, str):
            origins = [origin.strip() for origin in value.split(",") if origin.strip()]
            return origins or list(DEFAULT_ALLOWED_ORIGINS)
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        data = {
            "elevenlabs_api_key": os.getenv("VOICE_RELAY_ELEVENLABS_API_KEY")
            or os.getenv("ELEVENLABS_API_KEY")
            or "",
            "gemini_api_key": os.getenv("VOICE_RELAY_GEMINI_API_KEY")
            or os.getenv("GEMINI_API_KEY")
            or "",
            "elevenlabs_base_url": os.getenv(
                "VOICE_RELAY_ELEVENLABS_BASE_URL", "https://api.elevenlabs.io"
            ),
            "elevenlabs_voice_id": os.getenv(
                "VOICE_RELAY_ELEVENLABS_VOICE_ID", "EXAVITQu4vr4xnSDxMaL"
            ),
            "elevenlabs_tts_model": os.getenv(
                "VOICE_RELAY_ELEVENLABS_TTS_MODEL", "eleven_flash_v2_5"
            ),
            "elevenlabs_stt_model": os.getenv(
                "VOICE_RELAY_ELEVENLABS_STT_MODEL", "scribe_v1"
            ),
            "gemini_model": os.getenv("VOICE_RELAY_GEMINI_MODEL", "gemini-2.0-flash"),
            "gemini_base_url": os.getenv(
                "VOICE_RELAY_GEMINI_BASE_URL",
                "https://generativelanguage.googleapis.com/v1beta/openai/",
            ),
            "allowed_origins": os.getenv(
                "VOICE_RELAY_ALLOWED_ORIGINS", ",".join(DEFAULT_ALLOWED_ORIGINS)
            ),
            "host": os.getenv("VOICE_RELAY_HOST", "0.0.0.0"),
            "port": os.getenv("VOICE_RELAY_PORT", "3001"),
            "upload_dir": os.getenv("VOICE_RELAY_UPLOAD_DIR") or _default_upload_dir(),
            "upstream_timeout": os.getenv("VOICE_RELAY_UPSTREAM_TIMEOUT", "60"),
            "max_body_bytes": os.getenv(
                "VOICE_RELAY_MAX_BODY_BYTES", str(DEFAULT_MAX_BODY_BYTES)
            ),
            "startup_check": os.getenv("VOICE_RELAY_STARTUP_CHECK", "true"),
        }
        return cls(**data)


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    settings = Settings.from_env()
    missing = [
        name
        for name, value in (
            ("VOICE_RELAY_ELEVENLABS_API_KEY", settings.elevenlabs_api_key),
            ("VOICE_RELAY_GEMINI_API_KEY", settings.gemini_api_key),
        )
        if not value
    ]
    if missing:
        raise ValueError(
            "Missing upstream credentials: " + ", ".join(missing)
        )
    return settings
