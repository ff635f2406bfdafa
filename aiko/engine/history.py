"""
aiko.engine.history - Fits conversation history into a provider's budget.

Lengths are counted in characters and one character is budgeted as one
token. That overestimates real token counts, so staying under
``max_context`` characters never exceeds the provider's actual bound.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from aiko.core.models import Message, TokenLimits
from aiko.engine.code_detection import contains_code
from aiko.providers.catalog import ProviderCatalog

logger = logging.getLogger("aiko.history")

TRUNCATION_MARKER = "\n[...truncated]"

# Per-message caps, in characters
CODE_LIMITS = {"GEMINI": 8000, "OPENAI": 3000}
DEFAULT_CODE_LIMIT = 5000
PROSE_LIMIT = 2000


def clip(text: str, limit: int) -> str:
    """Cut *text* to at most *limit* characters, marker included."""
    if len(text) <= limit:
        return text
    if limit > len(TRUNCATION_MARKER):
        return text[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
    return text[: max(limit, 0)]


@dataclass(frozen=True)
class BoundedContext:
    """What actually goes over the wire for one turn."""
    system_prompt: str
    history: tuple[Message, ...]
    prompt: str
    limits: TokenLimits

    @property
    def serialized_length(self) -> int:
        return len(self.system_prompt) + len(self.prompt) + sum(len(m.text) for m in self.history)


class HistoryOptimizer:
    """Selects and truncates prior messages per provider/model limits."""

    def __init__(self, catalog: ProviderCatalog) -> None:
        self._catalog = catalog

    def truncation_limit(self, text: str, provider: str) -> int:
        if contains_code(text):
            return CODE_LIMITS.get(provider.upper(), DEFAULT_CODE_LIMIT)
        return PROSE_LIMIT

    def optimize_message(self, message: Message, provider: str) -> Message:
        limit = self.truncation_limit(message.text, provider)
        if len(message.text) <= limit:
            return message
        return message.model_copy(update={"text": message.text[:limit] + TRUNCATION_MARKER})

    def optimize(self, history: Sequence[Message], provider: str, model: str) -> list[Message]:
        """Bounded history for *provider*/*model* with no system prompt or prompt."""
        return list(self.fit("", history, "", provider, model).history)

    def fit(
        self,
        system_prompt: str,
        history: Sequence[Message],
        prompt: str,
        provider: str,
        model: str,
    ) -> BoundedContext:
        """
        Build the bounded context for one turn.

        Keeps the last ``history_messages`` entries, truncates each one, then
        while the total is still over ``max_context`` drops the oldest
        history, then trims the system prompt, and trims the prompt last.
        """
        limits = self._catalog.limits_for(provider, model)
        recent = list(history)[-limits.history_messages:] if limits.history_messages > 0 else []
        kept = [self.optimize_message(m, provider) for m in recent]

        budget = limits.max_context
        total = len(system_prompt) + len(prompt) + sum(len(m.text) for m in kept)
        dropped = 0
        while kept and total > budget:
            total -= len(kept.pop(0).text)
            dropped += 1

        if total > budget:
            system_prompt = clip(system_prompt, max(budget - len(prompt), 0))
        if len(system_prompt) + len(prompt) > budget:
            prompt = clip(prompt, budget - len(system_prompt))

        context = BoundedContext(system_prompt, tuple(kept), prompt, limits)
        if dropped or len(recent) < len(history):
            logger.debug(
                "History for %s/%s: %d of %d messages kept, %d chars of %d",
                provider,
                model,
                len(kept),
                len(history),
                context.serialized_length,
                budget,
            )
        return context
