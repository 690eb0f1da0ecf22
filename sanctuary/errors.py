"""Error taxonomy shared by the matching pipeline and the HTTP layer."""
from __future__ import annotations


class SanctuaryError(Exception):
    """Base class for expected, operator-visible failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(SanctuaryError):
    status_code = 404


class NotStructuredError(SanctuaryError):
    """Matching was requested before structuring completed."""

    status_code = 400


class ParseError(SanctuaryError):
    """The LLM answered, but not with the JSON shape we asked for."""

    status_code = 502


class UpstreamUnavailableError(SanctuaryError):
    """The LLM call itself failed (network, auth, rate limit, timeout)."""

    status_code = 503


class MatchingInProgressError(SanctuaryError):
    status_code = 409


class InvalidTransitionError(SanctuaryError):
    status_code = 409


class DuplicateError(SanctuaryError):
    status_code = 409


class RateLimitExceededError(SanctuaryError):
    status_code = 429

    def __init__(self, message: str, headers: dict[str, str] | None = None):
        super().__init__(message)
        self.headers = headers or {}
