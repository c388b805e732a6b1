"""Tests for token state and the reauthorization channel."""

from __future__ import annotations

import asyncio

import pytest

from anisync.auth import AuthState, ReauthorizationChannel, ReauthRequest, TokenState
from anisync.errors import AuthError, AuthRequired

# ---------------------------------------------------------------------------
# TokenState
# ---------------------------------------------------------------------------


def test_token_state_starts_without_token():
    token = TokenState()
    assert token.state is AuthState.NO_TOKEN
    assert token.is_expired()


def test_token_state_accept_and_expire():
    token = TokenState()
    token.begin_exchange()
    assert token.state is AuthState.EXCHANGING

    token.accept("abc", expires_at=1000.0)
    assert token.check(now=500.0) is AuthState.AUTHENTICATED
    # expiry is brought forward by a safety margin
    assert token.check(now=950.0) is AuthState.EXPIRED


def test_token_state_reset():
    token = TokenState(access_token="abc", expires_at=1.0, user_id=3, username="alice")
    token.reset()
    assert token.access_token is None
    assert token.user_id is None
    assert token.state is AuthState.NO_TOKEN


# ---------------------------------------------------------------------------
# Channel without handler
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_request_resumes_when_secret_supplied():
    channel = ReauthorizationChannel()
    task = asyncio.create_task(channel.request("AniList", "alice", "access token expired"))

    req = await channel.next_request()
    assert (req.provider, req.username, req.reason) == ("AniList", "alice", "access token expired")
    assert not req.done

    req.supply("new-code")
    assert await task == "new-code"
    assert req.done


@pytest.mark.asyncio()
async def test_declined_request_raises_auth_required():
    channel = ReauthorizationChannel()
    task = asyncio.create_task(channel.request("AniList", "alice", "no authorization code"))

    req = await channel.next_request()
    req.decline()
    with pytest.raises(AuthRequired):
        await task


@pytest.mark.asyncio()
async def test_empty_secret_counts_as_decline():
    channel = ReauthorizationChannel()
    task = asyncio.create_task(channel.request("AniList", "alice", "no authorization code"))

    req = await channel.next_request()
    req.supply("")
    with pytest.raises(AuthError):
        await task


@pytest.mark.asyncio()
async def test_second_answer_is_ignored():
    channel = ReauthorizationChannel()
    task = asyncio.create_task(channel.request("AniList", "alice", "x"))

    req = await channel.next_request()
    req.supply("first")
    req.supply("second")
    req.decline()
    assert await task == "first"


@pytest.mark.asyncio()
async def test_timeout_raises_auth_required():
    channel = ReauthorizationChannel(timeout=0.01)
    with pytest.raises(AuthRequired, match="timed out"):
        await channel.request("AniList", "alice", "x")


@pytest.mark.asyncio()
async def test_cancelling_waiter_propagates_cancellation():
    channel = ReauthorizationChannel()
    task = asyncio.create_task(channel.request("AniList", "alice", "x"))
    req = await channel.next_request()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    # answering after the waiter is gone is a no-op
    assert req.done
    req.supply("late")
    req.decline()


# ---------------------------------------------------------------------------
# Channel with handler
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_handler_answers_request():
    seen: list[ReauthRequest] = []

    async def handler(req: ReauthRequest) -> None:
        seen.append(req)
        req.supply("from-handler")

    channel = ReauthorizationChannel(handler)
    assert await channel.request("AniList", "alice", "access token expired") == "from-handler"
    assert [r.reason for r in seen] == ["access token expired"]


@pytest.mark.asyncio()
async def test_handler_may_answer_later():
    pending: list[ReauthRequest] = []

    async def handler(req: ReauthRequest) -> None:
        pending.append(req)

    channel = ReauthorizationChannel(handler)
    task = asyncio.create_task(channel.request("AniList", "alice", "x"))
    while not pending:
        await asyncio.sleep(0)

    pending[0].supply("late")
    assert await task == "late"


@pytest.mark.asyncio()
async def test_handler_failure_propagates():
    async def handler(req: ReauthRequest) -> None:
        raise RuntimeError("prompt crashed")

    channel = ReauthorizationChannel(handler)
    with pytest.raises(RuntimeError, match="prompt crashed"):
        await channel.request("AniList", "alice", "x")
