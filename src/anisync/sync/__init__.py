"""Sync module: list caches and their reconciliation with a provider."""

from anisync.sync.lists import AnimeList, ListState, MangaList, MediaList, SyncStats

__all__ = ["AnimeList", "ListState", "MangaList", "MediaList", "SyncStats"]
