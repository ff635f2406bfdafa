"""
aiko.core.errors - Exception hierarchy for the conversation engine.

Every error raised inside a generation job is one of these, so the job
boundary can turn it into exactly one terminal state and one short note for
the user.
"""

from __future__ import annotations


class AikoError(Exception):
    """Base class for all engine errors."""

    def user_note(self) -> str:
        """Short text appended to the assistant message when a job fails."""
        return str(self) or self.__class__.__name__


class ConfigError(AikoError):
    """Missing credentials, unknown provider or unusable settings."""


class NetworkError(AikoError):
    """Timeout or connection failure talking to a provider."""

    def user_note(self) -> str:
        return f"Network error: {self}"


class ProtocolError(AikoError):
    """The provider answered with a body we could not parse."""


class ProviderError(AikoError):
    """Non-2xx response from a provider, surfaced verbatim."""

    def __init__(self, status_code: int, body: str, provider: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.provider = provider
        prefix = f"{provider} " if provider else ""
        super().__init__(f"{prefix}HTTP {status_code}: {body[:500]}")


class ContextLengthExceededError(ProviderError):
    """The request did not fit the model's context window."""

    MESSAGE = "The message is too long. Start a new chat or send a shorter message."

    def user_note(self) -> str:
        return self.MESSAGE


class GenerationCancelled(AikoError):
    """Raised at a suspension point once the job's token has been cancelled.

    Not a failure: the job ends in the ``cancelled`` state.
    """


class FrameDecodeError(AikoError):
    """A single video frame could not be decoded."""

    def __init__(self, offset_ms: int, reason: str = "") -> None:
        self.offset_ms = offset_ms
        super().__init__(f"frame at {offset_ms} ms could not be decoded{': ' + reason if reason else ''}")


class AccumulatorStateError(AikoError):
    """Append or finalize was called on an already finalized response."""
