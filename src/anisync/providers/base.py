"""Provider capability protocols and native-value mapping tables."""

from __future__ import annotations

from collections.abc import Hashable, Mapping
from typing import Generic, Protocol, TypeVar, runtime_checkable

from anisync.errors import ProtocolError
from anisync.models import Anime, ListStatus, Manga

N = TypeVar("N", bound=Hashable)
V = TypeVar("V")


# ---------------------------------------------------------------------------
# Capability protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class AnimeProvider(Protocol):
    """Operations a provider exposes for anime lists."""

    name: str
    username: str

    async def verify_credentials(self) -> bool: ...

    async def add_anime(self, anime_id: int, status: ListStatus) -> bool: ...

    async def remove_anime(self, anime_id: int) -> bool: ...

    async def update_anime(self, anime: Anime) -> bool: ...

    async def find_anime(self, keywords: str) -> list[Anime]: ...

    async def pull_anime_list(self) -> list[Anime]: ...


@runtime_checkable
class MangaProvider(Protocol):
    """Operations a provider exposes for manga lists."""

    name: str
    username: str

    async def verify_credentials(self) -> bool: ...

    async def add_manga(self, manga_id: int, status: ListStatus) -> bool: ...

    async def remove_manga(self, manga_id: int) -> bool: ...

    async def update_manga(self, manga: Manga) -> bool: ...

    async def find_manga(self, keywords: str) -> list[Manga]: ...

    async def pull_manga_list(self) -> list[Manga]: ...


# ---------------------------------------------------------------------------
# Mapping tables
# ---------------------------------------------------------------------------


class StatusMapping(Generic[N]):
    """Bidirectional table between :class:`ListStatus` and a native value.

    The table must cover every ``ListStatus`` member exactly once and is
    checked when constructed, so a gap fails at import time.  ``aliases``
    are extra native values accepted inbound only.
    """

    def __init__(
        self,
        provider: str,
        table: Mapping[ListStatus, N],
        *,
        aliases: Mapping[N, ListStatus] | None = None,
    ) -> None:
        missing = set(ListStatus) - set(table)
        if missing:
            names = ", ".join(sorted(s.name for s in missing))
            raise ValueError(f"{provider} status table is missing {names}")
        if len(set(table.values())) != len(table):
            raise ValueError(f"{provider} status table maps two statuses to the same value")

        self.provider = provider
        self._outbound = dict(table)
        self._inbound: dict[N, ListStatus] = {v: k for k, v in table.items()}
        for native, status in (aliases or {}).items():
            self._inbound.setdefault(native, status)

    def to_native(self, status: ListStatus) -> N:
        return self._outbound[ListStatus(status)]

    def to_generic(self, native: N) -> ListStatus:
        try:
            return self._inbound[native]
        except KeyError:
            raise ProtocolError(f"{self.provider} returned unknown list status {native!r}") from None


def lookup(table: Mapping[N, V], native: N, what: str) -> V:
    """Translate an inbound catalog value, raising on unknown input."""
    try:
        return table[native]
    except KeyError:
        raise ProtocolError(f"Unknown {what} {native!r}") from None
