"""Session-level error types for :mod:`codeindex`."""

from __future__ import annotations

__all__ = ["ConfigurationError"]


class ConfigurationError(ValueError):
    """Raised when settings cannot produce a usable indexing session.

    ``field`` names the offending setting (dotted path) when one is known so
    callers can point users at the exact key to fix.
    """

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field
