"""
Error kinds raised by the context engine.

Recoverable conditions are absorbed where they occur; only the
unrecoverable ones below reach the caller of a turn.
"""

from typing import Optional


class StoryContextError(Exception):
    """Base class for engine errors."""


class SessionExpired(StoryContextError):
    """Raised when neither the remote cache nor the uploaded file can be recovered.

    The caller must ask the user to reload the knowledge base.
    """

    def __init__(self, message: str = "Knowledge base context lost and cannot be recovered"):
        super().__init__(message)


class DecodeDegraded(StoryContextError):
    """Structured response could not be parsed; the turn keeps best-effort text.

    Never raised through a turn. The decoder records it on its result so
    callers can inspect what went wrong.
    """

    def __init__(self, message: str, raw_excerpt: str = ""):
        super().__init__(message)
        self.raw_excerpt = raw_excerpt


class TokenCountUnavailable(StoryContextError):
    """The provider tokenizer failed; callers fall back to a heuristic estimate."""


class ProviderTransportError(StoryContextError):
    """Network or HTTP failure while talking to the provider."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
