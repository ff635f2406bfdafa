"""
aiko.engine.context - Explicit engine context.

Holds everything the job controller used to reach for globally: user
config, the provider catalog, the message store and a cache of streaming
clients keyed by provider, model and key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from aiko.core.database import MessageStore, SQLiteMessageStore
from aiko.core.models import AppConfig, ProviderProfile
from aiko.engine.vision import VISION_MODELS, VisionPreprocessor
from aiko.providers import create_client
from aiko.providers.base import StreamingClient
from aiko.providers.catalog import ProviderCatalog

logger = logging.getLogger("aiko.context")


@dataclass
class EngineContext:
    config: AppConfig
    catalog: ProviderCatalog
    store: MessageStore
    transport: httpx.AsyncBaseTransport | None = None
    _clients: dict[tuple[str, str, str], StreamingClient] = field(default_factory=dict, repr=False)

    @classmethod
    def from_config(cls, config: AppConfig | None = None, store: MessageStore | None = None) -> "EngineContext":
        config = config or AppConfig.load()
        catalog = ProviderCatalog.load(config.catalog_path)
        store = store or SQLiteMessageStore(config.resolved_db_path())
        return cls(config=config, catalog=catalog, store=store)

    def profile(self, provider: str) -> ProviderProfile:
        provider = provider.upper()
        return self.catalog.profile(
            provider,
            api_key=self.config.api_key_for(provider),
            extra_models=self.config.custom_models.get(provider, ()),
        )

    def client(self, provider: str, model: str) -> StreamingClient:
        """Return the cached client for *provider*/*model*, creating it on first use."""
        profile = self.profile(provider)
        key = (profile.name, model, profile.api_key)
        client = self._clients.get(key)
        if client is None:
            limits = self.catalog.limits_for(profile.name, model)
            client = create_client(profile, model, max_tokens=limits.max_tokens, transport=self.transport)
            self._clients[key] = client
            logger.debug("Created %s client for %s", profile.kind.value, model)
        return client

    def vision(self) -> VisionPreprocessor:
        return VisionPreprocessor([self.client(p, m) for p, m in VISION_MODELS])

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()
