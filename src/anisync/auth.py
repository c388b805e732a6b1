"""Per-adapter token lifecycle and the reauthorization channel.

Token expiry is checked lazily before each privileged call; nothing runs
on a timer.  Providers that cannot refresh a token on their own ask the
caller for a new secret through :class:`ReauthorizationChannel` and suspend
until it is answered.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

import structlog

from anisync.errors import AuthRequired

log = structlog.get_logger(__name__)

# Tokens are treated as expired slightly before the provider says so.
_EXPIRY_MARGIN = 60.0


class AuthState(StrEnum):
    NO_TOKEN = "no_token"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclass
class TokenState:
    """Access token, expiry and the account it resolved to."""

    access_token: str | None = None
    expires_at: float = 0.0
    user_id: int | None = None
    username: str | None = None
    state: AuthState = AuthState.NO_TOKEN

    def is_expired(self, now: float | None = None) -> bool:
        if self.access_token is None:
            return True
        now = time.time() if now is None else now
        return now >= self.expires_at - _EXPIRY_MARGIN

    def check(self, now: float | None = None) -> AuthState:
        """Move ``AUTHENTICATED`` to ``EXPIRED`` once the expiry has passed."""
        if self.state is AuthState.AUTHENTICATED and self.is_expired(now):
            self.state = AuthState.EXPIRED
        return self.state

    def begin_exchange(self) -> None:
        self.state = AuthState.EXCHANGING

    def accept(self, access_token: str, expires_at: float) -> None:
        self.access_token = access_token
        self.expires_at = expires_at
        self.state = AuthState.AUTHENTICATED

    def reset(self) -> None:
        self.access_token = None
        self.expires_at = 0.0
        self.user_id = None
        self.username = None
        self.state = AuthState.NO_TOKEN


# ---------------------------------------------------------------------------
# Reauthorization channel
# ---------------------------------------------------------------------------


@dataclass
class ReauthRequest:
    """A pending request for a fresh secret.

    Answer it exactly once with :meth:`supply` or :meth:`decline`.
    """

    provider: str
    username: str
    reason: str
    _future: asyncio.Future[str] = field(repr=False)

    @property
    def done(self) -> bool:
        return self._future.done()

    def supply(self, secret: str) -> None:
        if not secret:
            self.decline()
            return
        if not self._future.done():
            self._future.set_result(secret)

    def decline(self) -> None:
        if not self._future.done():
            self._future.set_exception(
                AuthRequired(f"Reauthorization for {self.provider} ({self.username}) was declined")
            )


ReauthHandler = Callable[[ReauthRequest], Awaitable[None]]


class ReauthorizationChannel:
    """Request/response channel between adapters and whoever holds the user.

    With a *handler*, each request is passed to it and the adapter waits for
    the handler (or anyone else) to answer.  Without one, requests are queued
    for :meth:`next_request`.  *timeout* bounds the wait; the default waits
    until the request is answered or the waiting task is cancelled.
    """

    def __init__(self, handler: ReauthHandler | None = None, *, timeout: float | None = None) -> None:
        self._handler = handler
        self._timeout = timeout
        self._queue: asyncio.Queue[ReauthRequest] = asyncio.Queue()

    async def request(self, provider: str, username: str, reason: str) -> str:
        """Suspend until a new secret is supplied; raise AuthRequired otherwise."""
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        req = ReauthRequest(provider=provider, username=username, reason=reason, _future=future)
        log.info("reauth_requested", provider=provider, username=username, reason=reason)

        if self._handler is not None:
            try:
                await self._handler(req)
            except BaseException:
                future.cancel()
                raise
        else:
            self._queue.put_nowait(req)

        try:
            secret = await asyncio.wait_for(future, self._timeout)
        except TimeoutError:
            log.warning("reauth_timed_out", provider=provider, username=username)
            raise AuthRequired(f"Reauthorization for {provider} ({username}) timed out") from None
        log.info("reauth_supplied", provider=provider, username=username)
        return secret

    async def next_request(self) -> ReauthRequest:
        """Wait for the next queued request (when no handler is set)."""
        return await self._queue.get()
