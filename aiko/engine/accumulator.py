"""
aiko.engine.accumulator - Owns the in-flight assistant message.

Deltas are appended in the order they arrive. ``finalize`` runs exactly
once per job: it adds the cancellation marker or error note when needed
and performs the job's single persistence write.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from aiko.core.database import MessageStore
from aiko.core.errors import AccumulatorStateError, AikoError
from aiko.core.models import JobState, Message, Role

if TYPE_CHECKING:
    from aiko.engine.jobs import ChatView

logger = logging.getLogger("aiko.accumulator")

CANCEL_MARKER = "❌ Message cancelled"
ERROR_PREFIX = "\n❌ Error: "


def error_note(error: BaseException | None) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, AikoError):
        return error.user_note()
    return str(error) or error.__class__.__name__


class ResponseAccumulator:
    def __init__(self, message: Message, store: MessageStore, view: "ChatView | None" = None) -> None:
        self.message = message
        self._store = store
        self._view = view
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    @property
    def text(self) -> str:
        return self.message.text

    def append(self, delta: str) -> None:
        if self._finalized:
            raise AccumulatorStateError("append after finalize")
        if not delta:
            return
        self.message.text += delta
        if self._view is not None:
            self._view.append_chunk(delta)

    def finalize(self, outcome: JobState, error: BaseException | None = None) -> Message:
        """Close the response and persist it once. Returns the stored message."""
        if self._finalized:
            raise AccumulatorStateError("response already finalized")
        if not outcome.is_terminal:
            raise ValueError(f"finalize needs a terminal outcome, got {outcome}")
        self._finalized = True

        suffix = ""
        if outcome is JobState.CANCELLED:
            suffix = f"\n{CANCEL_MARKER}" if self.message.text else CANCEL_MARKER
        elif outcome is JobState.FAILED:
            suffix = ERROR_PREFIX + error_note(error)
        if suffix:
            self.message.text += suffix
            if self._view is not None:
                self._view.append_chunk(suffix)

        self.message.id = self._store.insert_message(
            self.message.session_id, Role.ASSISTANT, self.message.text
        )
        logger.debug(
            "Finalized message %d (%s, %d chars)",
            self.message.id,
            outcome.value,
            len(self.message.text),
        )
        if self._view is not None:
            self._view.notify_finalized(self.message)
        return self.message
