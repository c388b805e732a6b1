"""Shared httpx plumbing for provider adapters."""

from __future__ import annotations

from collections.abc import Collection
from typing import Any

import httpx
import structlog

from anisync.errors import AuthError, ProtocolError, TransportError, ValidationError
from anisync.models import Entry

log = structlog.get_logger(__name__)

_TIMEOUT = 30.0


class HttpAdapter:
    """Owns one ``httpx.AsyncClient`` for the lifetime of an ``async with`` block."""

    name: str = ""

    def __init__(self, *, _transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Any:
        kw: dict = {"timeout": _TIMEOUT, "follow_redirects": True}
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = f"{type(self).__name__} is not open; use it as an async context manager"
            raise RuntimeError(msg)
        return self._client

    async def _send(
        self,
        method: str,
        url: str,
        *,
        expect: Collection[int] = (200,),
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request; return it if its status is in *expect*.

        Network failures and unexpected statuses become
        :class:`TransportError`, except 401/403 which become
        :class:`AuthError`.  Nothing is retried.
        """
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            log.warning("provider_network_error", provider=self.name, method=method, url=url, error=str(exc))
            raise TransportError(f"{self.name}: {method} {url} failed: {exc}") from exc

        if resp.status_code in expect:
            return resp

        log.warning("provider_http_error", provider=self.name, method=method, url=url, status=resp.status_code)
        if resp.status_code in (401, 403):
            raise AuthError(f"{self.name} rejected the credentials ({resp.status_code})")
        raise TransportError(
            f"{self.name}: {method} {url} returned {resp.status_code}: {resp.text[:200]}",
            status_code=resp.status_code,
        )

    async def fetch_cover(self, entry: Entry) -> bytes:
        """Download the cover image of *entry*.

        Raises :class:`ValidationError` if the entry has no image URL.
        """
        if not entry.image_url:
            raise ValidationError(f"{entry!r} has no cover image")
        resp = await self._send("GET", entry.image_url)
        return resp.content

    def _read_token(self, resp: httpx.Response) -> tuple[str, float]:
        """Access token and its lifetime in seconds from an OAuth token response."""
        try:
            data = resp.json()
            token = data["access_token"]
            lifetime = float(data.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise ProtocolError(f"{self.name} sent a malformed token response: {exc!r}") from exc
        if not isinstance(token, str) or not token:
            raise ProtocolError(f"{self.name} sent an empty access token")
        return token, lifetime
