from __future__ import annotations

from typing import Optional


class FareWatchError(RuntimeError):
    """Base class for errors raised by farewatch collaborators."""


class TransportError(FareWatchError):
    """Network, timeout or busy-database failure. Safe to retry later."""


class ParseError(FareWatchError):
    """A single provider item could not be turned into an offer."""


class ValidationError(FareWatchError):
    """Persisted state violates a schema constraint.

    ``field`` is the column named by the failing constraint, when known.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class PermanentError(FareWatchError):
    """Any other persistence failure."""


__all__ = [
    "FareWatchError",
    "TransportError",
    "ParseError",
    "ValidationError",
    "PermanentError",
]
