"""Error taxonomy.

Only ``InputError`` and ``CacheFormatError`` ever reach callers.
``ExternalServiceError`` and ``ParseError`` are raised by the service clients
and parser, then absorbed at the pass boundary so a failing enhancement pass
only costs recall.
"""

from __future__ import annotations


class PIISweepError(Exception):
    """Base class for all pii-sweep errors."""


class InputError(PIISweepError, ValueError):
    """Missing or invalid input text or type filter.  Not retried."""


class ExternalServiceError(PIISweepError):
    """Network or service failure in a generative or semantic call."""


class ParseError(PIISweepError):
    """Model output that could not be read as a list of findings."""


class CacheFormatError(PIISweepError, ValueError):
    """Corrupt session cache import payload."""


class RateLimitExceeded(PIISweepError):
    """Too many requests for one session within the window."""

    def __init__(self, reset_in: float) -> None:
        super().__init__(f"rate limit exceeded, retry in {reset_in:.0f}s")
        self.reset_in = reset_in
