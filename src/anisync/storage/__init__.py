"""anisync storage layer: one async SQLite cache file per list."""

from anisync.storage.database import ListStore, SnapshotError, list_cache_path
from anisync.storage.models import ListMeta, SyncRun

__all__ = [
    "ListMeta",
    "ListStore",
    "SnapshotError",
    "SyncRun",
    "list_cache_path",
]
