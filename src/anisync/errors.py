"""Exception hierarchy shared by the entry model, providers and list cache."""

from __future__ import annotations


class AniSyncError(Exception):
    """Base class for every error raised by anisync."""


class TransportError(AniSyncError):
    """Network failure or unexpected HTTP status from a provider."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(AniSyncError):
    """Malformed or unmapped provider response."""


class AuthError(AniSyncError):
    """Invalid credentials or a failed authorization handshake."""


class AuthRequired(AuthError):
    """Reauthorization was declined or timed out."""


class AccountMismatchError(AuthError, ProtocolError):
    """The provider authenticated a different account than the one configured.

    The stored credential has already been cleared when this is raised.
    """

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Authenticated as {actual!r}, expected {expected!r}")
        self.expected = expected
        self.actual = actual


class ValidationError(AniSyncError):
    """A local invariant was violated."""


class ScoreRangeError(ValidationError):
    """A user score outside 0..10 was written."""

    def __init__(self, value: int) -> None:
        super().__init__(f"User score must be between 0 and 10, got {value}")
        self.value = value


class IdentityMismatchError(ValidationError):
    """``Entry.replace`` was given an entry with a different identity."""


class RejectedByProvider(AniSyncError):
    """The provider refused a business operation, e.g. a duplicate add."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
