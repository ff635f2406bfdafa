"""
aiko.providers.catalog - Static provider/model catalog and token limits.

The model list comes from a JSON descriptor shipped with the package
(``models.json``) or a user-supplied path. If the descriptor cannot be read
the embedded table below keeps the engine usable. The catalog never changes
after it is loaded.
"""

from __future__ import annotations

import json
import logging
from importlib import resources
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Sequence

from pydantic import BaseModel, ValidationError

from aiko.core.errors import ConfigError
from aiko.core.models import ProviderKind, ProviderProfile, TokenLimits

logger = logging.getLogger("aiko.catalog")


# ---- Provider wire defaults ----------------------------------------------
PROVIDER_DEFAULTS: dict[str, dict] = {
    "OPENAI": {
        "kind": ProviderKind.OPENAI_COMPATIBLE,
        "base_url": "https://api.openai.com",
        "supports_vision": True,
    },
    "GEMINI": {
        "kind": ProviderKind.NATIVE_MULTI_TURN,
        "base_url": "https://generativelanguage.googleapis.com",
        "supports_vision": True,
    },
    "DEEPSEEK": {
        "kind": ProviderKind.OPENAI_COMPATIBLE,
        "base_url": "https://api.deepseek.com",
        "supports_vision": False,
    },
    "QWEN": {
        "kind": ProviderKind.OPENAI_COMPATIBLE,
        "base_url": "https://dashscope-intl.aliyuncs.com/compatible-mode",
        "supports_vision": False,
    },
}

# Used when models.json is missing or broken
FALLBACK_MODELS: dict[str, tuple[str, ...]] = {
    "OPENAI": ("gpt-4o-mini", "gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"),
    "GEMINI": ("gemini-2.5-flash", "gemini-2.5-pro"),
    "DEEPSEEK": ("deepseek-chat", "deepseek-coder"),
    "QWEN": ("qwen-turbo", "qwen-plus", "qwen-max"),
}

DEFAULT_LIMITS = TokenLimits(max_tokens=3500, max_context=4096, history_messages=8)


class _ProviderEntry(BaseModel):
    provider: str
    models: list[str]


class _CatalogDocument(BaseModel):
    providers: list[_ProviderEntry]


class ProviderCatalog:
    """Read-only map of provider name to model list and token limits."""

    def __init__(self, models: Mapping[str, Sequence[str]]) -> None:
        self._models: Mapping[str, tuple[str, ...]] = MappingProxyType(
            {name.upper(): tuple(ms) for name, ms in models.items()}
        )

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "ProviderCatalog":
        """Load the descriptor at *path* (or the bundled one), falling back to the embedded table."""
        try:
            if path is not None:
                raw = path.read_text(encoding="utf-8")
            else:
                raw = resources.files("aiko.providers").joinpath("models.json").read_text(encoding="utf-8")
            doc = _CatalogDocument.model_validate(json.loads(raw))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            logger.error("Failed to load model catalog (%s); using built-in table", exc)
            return cls(FALLBACK_MODELS)

        models = {entry.provider: entry.models for entry in doc.providers if entry.models}
        if not models:
            logger.error("Model catalog is empty; using built-in table")
            return cls(FALLBACK_MODELS)
        logger.debug("Loaded catalog with %d providers", len(models))
        return cls(models)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def providers(self) -> tuple[str, ...]:
        return tuple(self._models)

    def models_for(self, provider: str) -> tuple[str, ...]:
        return self._models.get(provider.upper(), ())

    def default_model(self, provider: str) -> str:
        models = self.models_for(provider)
        return models[0] if models else ""

    def limits_for(self, provider: str, model: str) -> TokenLimits:
        """Token budget for a provider/model pair."""
        provider = provider.upper()
        if provider == "OPENAI" and model.startswith("gpt-3.5"):
            return TokenLimits(max_tokens=3500, max_context=4096, history_messages=6)
        if provider == "OPENAI" and model.startswith("gpt-4"):
            return TokenLimits(max_tokens=3500, max_context=4096, history_messages=8)
        if provider == "GEMINI":
            return TokenLimits(max_tokens=12000, max_context=128000, history_messages=15)
        if provider in ("DEEPSEEK", "QWEN"):
            return TokenLimits(max_tokens=6000, max_context=64000, history_messages=10)
        return DEFAULT_LIMITS

    def profile(
        self,
        provider: str,
        api_key: str = "",
        extra_models: Iterable[str] = (),
    ) -> ProviderProfile:
        """Build the immutable profile for *provider*; custom models are appended."""
        provider = provider.upper()
        defaults = PROVIDER_DEFAULTS.get(provider)
        if defaults is None:
            raise ConfigError(
                f"Unknown provider: '{provider}'. Supported: {', '.join(PROVIDER_DEFAULTS)}"
            )
        models = list(self.models_for(provider))
        models.extend(m for m in extra_models if m not in models)
        return ProviderProfile(
            name=provider,
            kind=defaults["kind"],
            base_url=defaults["base_url"],
            api_key=api_key,
            models=tuple(models),
            supports_vision=defaults["supports_vision"],
        )
