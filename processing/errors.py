# processing/errors.py
"""Exception types raised by the progressive feedback engine."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine errors."""


class EngineUsageError(EngineError):
    """Raised before any work starts when the engine is called incorrectly."""


class InvalidTransitionError(EngineError):
    """Raised when an item state machine is driven through an illegal edge."""


class OperationCancelledError(EngineError):
    """Raised by a cancellation token race when the token fires first."""


class ProviderError(EngineError):
    """Failure reported by the analysis provider.

    ``status_hint`` carries the HTTP status (or similar provider code) when
    one is known. The message is kept verbatim so that the classifier in
    :mod:`processing.backoff` can read provider wait hints out of it.
    """

    def __init__(self, message: str, status_hint: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_hint = status_hint

    def __repr__(self) -> str:
        return f"ProviderError({self.message!r}, status_hint={self.status_hint!r})"
