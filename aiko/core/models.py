"""
aiko.core.models - Pydantic schemas shared by the engine.

Messages, sessions, provider profiles and the user-level configuration.
Everything that crosses a module boundary is declared here so providers,
the history optimizer and the job controller agree on one shape.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("aiko.config")


# ---------------------------------------------------------------------------
# Cross-platform directory helpers
# ---------------------------------------------------------------------------

def get_global_config_dir() -> Path:
    """
    Return the user-level config directory for aiko, created if needed.

    - Windows:  %LOCALAPPDATA%\\aiko
    - macOS:    ~/Library/Application Support/aiko
    - Linux:    $XDG_CONFIG_HOME/aiko  (default ~/.config/aiko)
    """
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    d = base / "aiko"
    d.mkdir(parents=True, exist_ok=True)
    return d


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class ProviderKind(StrEnum):
    """Wire family of a provider. Each kind maps to one StreamingClient."""
    OPENAI_COMPATIBLE = "openai_compatible"
    NATIVE_MULTI_TURN = "native_multi_turn"


class JobState(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.RUNNING


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A single chat message. Only the in-flight assistant message is ever mutated."""
    id: int | None = None
    session_id: int
    role: Role
    text: str = ""
    created_at: float = Field(default_factory=time.time)

    @property
    def is_user(self) -> bool:
        return self.role is Role.USER


class ConversationSession(BaseModel):
    """A named conversation owning its ordered messages."""
    id: int
    name: str = "New chat"
    messages: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class TokenLimits(BaseModel):
    """Budget for one provider/model pair.

    ``max_context`` is compared against character counts by the history
    optimizer (one character budgeted as one token).
    """
    model_config = ConfigDict(frozen=True)

    max_tokens: int
    max_context: int
    history_messages: int


class ProviderProfile(BaseModel):
    """Everything needed to talk to one provider. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    name: str
    kind: ProviderKind
    base_url: str
    api_key: str = ""
    models: tuple[str, ...] = ()
    supports_vision: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key.strip())


class ThinkingLevel(BaseModel):
    """One row of the deep-thinking table (level 0 is passthrough)."""
    model_config = ConfigDict(frozen=True)

    level: int
    name: str
    description: str
    thinking_time_ms: int
    detail_multiplier: float
    extra_detail_pct: int = 0
    angles: int = 0
    steps: tuple[tuple[str, float], ...] = ()


class FrameSample(BaseModel):
    """A sampled video frame. The decoded image is not kept, only its description."""
    index: int
    offset_ms: int
    description: str = ""


# ---------------------------------------------------------------------------
# User configuration
# ---------------------------------------------------------------------------

# Environment variables always win over keys saved in config.json
API_KEY_ENV: dict[str, str] = {
    "OPENAI": "OPENAI_API_KEY",
    "GEMINI": "GEMINI_API_KEY",
    "DEEPSEEK": "DEEPSEEK_API_KEY",
    "QWEN": "DASHSCOPE_API_KEY",
}


class AppConfig(BaseModel):
    """
    User-level settings stored as ``config.json`` in the global config
    directory: active provider/model, thinking level, API keys and any
    models the user added on top of the catalog.
    """
    provider: str = "OPENAI"
    model: str = "gpt-4o-mini"
    thinking_level: int = Field(default=0, ge=0, le=4)
    api_keys: dict[str, str] = Field(default_factory=dict)
    custom_models: dict[str, list[str]] = Field(default_factory=dict)
    db_path: Path | None = None
    catalog_path: Path | None = None

    @staticmethod
    def default_path() -> Path:
        return get_global_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Path | None = None) -> "AppConfig":
        """Load from disk, returning defaults if the file is missing or corrupt."""
        path = path or cls.default_path()
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                return cls(**data)
            except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError) as exc:
                logger.warning("Ignoring unreadable config %s: %s", path, exc)
                return cls()
        return cls()

    def save(self, path: Path | None = None) -> Path:
        """Persist to disk. Returns the file path."""
        path = path or self.default_path()
        path.write_text(
            json.dumps(self.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
        return path

    def api_key_for(self, provider: str) -> str:
        provider = provider.upper()
        env_name = API_KEY_ENV.get(provider)
        if env_name and os.environ.get(env_name):
            return os.environ[env_name]
        return self.api_keys.get(provider, "")

    def resolved_db_path(self) -> Path:
        return self.db_path or get_global_config_dir() / "aiko.db"
