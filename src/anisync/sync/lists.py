"""List cache with a pending sync queue, reconciled against one provider.

Local mutations only touch the cache and enqueue the entry.  ``sync()``
pulls the remote list, pushes every queued entry once (a failed push is
logged and dropped, not retried), then replaces the cache with a fresh pull.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Iterator
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any, ClassVar, Generic, TypeVar

import pydantic
import structlog

from anisync.errors import AuthError, ProtocolError, RejectedByProvider, TransportError
from anisync.logging import sync_context
from anisync.models import Anime, Entry, ListStatus, Manga
from anisync.providers.base import AnimeProvider, MangaProvider
from anisync.storage import ListStore, SnapshotError
from anisync.storage.models import MediaKind

log = structlog.get_logger(__name__)

E = TypeVar("E", bound=Entry)
L = TypeVar("L", bound="MediaList[Any]")


class ListState(StrEnum):
    LOADED = "loaded"
    SYNCING = "syncing"


@dataclass
class SyncStats:
    added: int = 0
    updated: int = 0
    removed: int = 0
    dropped: int = 0
    pulled: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self))


class MediaList(Generic[E]):
    """Cached list of one media kind for one provider account."""

    kind: ClassVar[MediaKind]
    entry_type: ClassVar[type[Entry]]

    def __init__(self, provider: Any, store: ListStore | None = None, entries: list[E] | None = None) -> None:
        self.provider = provider
        self._store = store
        self._entries: dict[int, E] = {e.id: e for e in entries or []}
        # insertion-ordered, so iteration order is the FIFO order
        self._pending: dict[int, E] = {}
        self._state = ListState.LOADED
        self._lock = asyncio.Lock()
        self._last_stats: SyncStats | None = None

    # -- provider bindings --

    async def _pull(self) -> list[E]:
        raise NotImplementedError

    async def _remote_add(self, entry: E) -> bool:
        raise NotImplementedError

    async def _remote_update(self, entry: E) -> bool:
        raise NotImplementedError

    async def _remote_find(self, keywords: str) -> list[E]:
        raise NotImplementedError

    # -- lookups --

    @property
    def state(self) -> ListState:
        return self._state

    @property
    def last_stats(self) -> SyncStats | None:
        return self._last_stats

    @property
    def pending(self) -> tuple[E, ...]:
        return tuple(self._pending.values())

    def get(self, entry_id: int) -> E | None:
        return self._entries.get(entry_id)

    def by_status(self, status: ListStatus) -> list[E]:
        return [e for e in self._entries.values() if e.list_status is status]

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Entry):
            return self._entries.get(item.id) == item
        return item in self._entries

    def __iter__(self) -> Iterator[E]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    # -- local mutations --

    def _enqueue(self, entry: E) -> None:
        self._pending.setdefault(entry.id, entry)

    def add(self, entry: E) -> bool:
        """Add *entry* and queue it; returns False if it is already listed."""
        if entry.id in self._entries:
            return False
        if entry.list_status is ListStatus.NOT_IN_LIST:
            entry.list_status = ListStatus.CURRENT
        self._entries[entry.id] = entry
        self._enqueue(entry)
        log.debug("entry_queued", op="add", kind=self.kind, id=entry.id)
        return True

    def remove(self, entry: E) -> bool:
        """Mark *entry* NOT_IN_LIST and queue it.

        The entry stays in the cache until the post-sync pull drops it.
        """
        cached = self._entries.get(entry.id)
        if cached is None:
            return False
        cached.list_status = ListStatus.NOT_IN_LIST
        self._enqueue(cached)
        log.debug("entry_queued", op="remove", kind=self.kind, id=entry.id)
        return True

    def update(self, entry: E) -> bool:
        """Queue the user fields of *entry*; adds it if it is not listed yet."""
        cached = self._entries.get(entry.id)
        if cached is None:
            return self.add(entry)
        if cached is not entry:
            cached.replace(entry)
        self._enqueue(cached)
        log.debug("entry_queued", op="update", kind=self.kind, id=entry.id)
        return True

    async def find(self, keywords: str) -> list[E]:
        """Search the provider; titles already listed come back as the cached instances."""
        results = await self._remote_find(keywords)
        return [self._entries.get(r.id, r) for r in results]

    # -- sync --

    async def sync(self) -> SyncStats:
        """Push queued entries to the provider, then refresh from it.

        Raises ``RuntimeError`` if a sync of this list is already running.
        """
        if self._lock.locked():
            raise RuntimeError("Sync already in progress")

        async with self._lock:
            self._state = ListState.SYNCING
            try:
                with sync_context(self.kind, self.provider.name, self.provider.username):
                    return await self._do_sync()
            finally:
                self._state = ListState.LOADED

    async def _do_sync(self) -> SyncStats:
        bound = log.bind(kind=self.kind, provider=self.provider.name, username=self.provider.username)
        bound.info("sync_start", pending=len(self._pending))
        run = await self._store.start_sync_run() if self._store else None

        stats = SyncStats()
        try:
            remote_ids = {e.id for e in await self._pull()}

            while self._pending:
                entry_id, entry = next(iter(self._pending.items()))
                try:
                    await self._push(entry, entry_id in remote_ids, stats)
                except AuthError:
                    raise
                except (TransportError, ProtocolError, RejectedByProvider) as exc:
                    stats.dropped += 1
                    bound.warning("queue_item_dropped", id=entry_id, error=str(exc))
                finally:
                    self._pending.pop(entry_id, None)

            fresh = await self._pull()
            self._replace_all(fresh)
            stats.pulled = len(fresh)

            if self._store is not None:
                await self.save()
                assert run is not None and run.id is not None  # noqa: S101
                await self._store.finish_sync_run(run.id, status="completed", stats_json=stats.to_json())
            bound.info("sync_completed", stats=stats.to_json())
            self._last_stats = stats
            return stats

        except Exception as exc:
            if self._store is not None and run is not None and run.id is not None:
                # dropped items must not come back on the next load
                await self.save()
                await self._store.finish_sync_run(run.id, status="failed", error_message=str(exc))
            bound.error("sync_failed", error=str(exc))
            raise

    async def _push(self, entry: E, on_remote: bool, stats: SyncStats) -> None:
        if not on_remote and entry.list_status is not ListStatus.NOT_IN_LIST:
            if await self._remote_add(entry):
                stats.added += 1
        ok = await self._remote_update(entry)
        if entry.list_status is ListStatus.NOT_IN_LIST:
            stats.removed += 1
        elif ok:
            stats.updated += 1

    def _replace_all(self, fresh: list[E]) -> None:
        """Overwrite the snapshot, keeping existing instances for surviving ids."""
        entries: dict[int, E] = {}
        for item in fresh:
            cached = self._entries.get(item.id)
            if cached is not None and type(cached) is type(item):
                cached.replace(item)
                entries[item.id] = cached
            else:
                entries[item.id] = item
        self._entries = entries

    # -- persistence --

    async def save(self) -> None:
        if self._store is None:
            msg = "This list has no store to save to"
            raise RuntimeError(msg)
        await self._store.save_snapshot(
            kind=self.kind,
            provider=self.provider.name,
            username=self.provider.username,
            entries=self._entries.values(),
            pending=self._pending.keys(),
        )
        log.debug("list_saved", kind=self.kind, path=str(self._store.path), entries=len(self._entries))

    @classmethod
    async def load(cls: type[L], provider: Any, store: ListStore) -> L:
        """Load the cached list from *store*, or build it with a full sync.

        *store* is connected here if it is not yet.  Any failure to read the
        cache (empty file, other list, unreadable rows, a file that is not a
        database) falls back to an empty list bound to *provider* followed
        by an immediate ``sync()``.  A file that cannot be opened at all is
        moved aside first.
        """
        try:
            if not store.connected:
                await store.connect()
            entries, pending = await store.load_snapshot(
                cls.entry_type,
                provider=provider.name,
                username=provider.username,
            )
        except (SnapshotError, sqlite3.Error, pydantic.ValidationError) as exc:
            log.warning("list_cache_unusable", kind=cls.kind, path=str(store.path), error=str(exc))
            if not store.connected:
                aside = await store.reset()
                log.warning("list_cache_moved_aside", kind=cls.kind, path=str(aside))
            fresh = cls(provider, store)
            await fresh.sync()
            return fresh

        loaded = cls(provider, store, entries)
        for entry_id in pending:
            entry = loaded._entries.get(entry_id)
            if entry is not None:
                loaded._enqueue(entry)
        log.info("list_loaded", kind=cls.kind, entries=len(loaded), pending=len(loaded._pending))
        return loaded


class AnimeList(MediaList[Anime]):
    kind = "anime"
    entry_type = Anime

    provider: AnimeProvider

    async def _pull(self) -> list[Anime]:
        return await self.provider.pull_anime_list()

    async def _remote_add(self, entry: Anime) -> bool:
        return await self.provider.add_anime(entry.id, entry.list_status)

    async def _remote_update(self, entry: Anime) -> bool:
        return await self.provider.update_anime(entry)

    async def _remote_find(self, keywords: str) -> list[Anime]:
        return await self.provider.find_anime(keywords)


class MangaList(MediaList[Manga]):
    kind = "manga"
    entry_type = Manga

    provider: MangaProvider

    async def _pull(self) -> list[Manga]:
        return await self.provider.pull_manga_list()

    async def _remote_add(self, entry: Manga) -> bool:
        return await self.provider.add_manga(entry.id, entry.list_status)

    async def _remote_update(self, entry: Manga) -> bool:
        return await self.provider.update_manga(entry)

    async def _remote_find(self, keywords: str) -> list[Manga]:
        return await self.provider.find_manga(keywords)
