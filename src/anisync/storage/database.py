"""Async SQLite store for one cached list.

Each (media kind, provider, username) gets its own database file holding
the entry snapshot, the pending sync queue and a history of sync runs.
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

import aiosqlite

from anisync.errors import AniSyncError
from anisync.models import Entry
from anisync.storage.models import ListMeta, MediaKind, SyncRun

E = TypeVar("E", bound=Entry)

FORMAT_VERSION = 1

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS list_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    kind TEXT NOT NULL CHECK(kind IN ('anime', 'manga')),
    provider TEXT NOT NULL,
    username TEXT NOT NULL,
    format_version INTEGER NOT NULL,
    saved_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entry (
    id INTEGER PRIMARY KEY,
    list_status INTEGER NOT NULL,
    payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending (
    position INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id INTEGER NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    status TEXT NOT NULL CHECK(status IN ('running', 'completed', 'failed')),
    stats_json TEXT,
    error_message TEXT
);
"""

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class SnapshotError(AniSyncError):
    """The cache file holds no usable snapshot for the requested list."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def list_cache_path(lists_dir: Path, kind: MediaKind, provider: str, username: str) -> Path:
    """Cache file for one list, e.g. ``lists/anime.AniList.someone.db``."""
    safe_user = _UNSAFE.sub("_", username) or "_"
    return lists_dir / f"{kind}.{provider}.{safe_user}.db"


class ListStore:
    """Async SQLite wrapper for a single list cache file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "ListStore not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        """Open the cache file and create its tables.

        Raises :class:`SnapshotError` if the file is not a usable SQLite
        database; the connection is closed again in that case.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        try:
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        except sqlite3.DatabaseError as exc:
            await self.close()
            msg = f"{self.path} is not a usable list cache: {exc}"
            raise SnapshotError(msg) from exc

    async def reset(self) -> Path:
        """Move the cache file aside as ``*.corrupt`` and start an empty one."""
        await self.close()
        aside = self.path.with_name(f"{self.path.name}.corrupt")
        if self.path.exists():
            self.path.replace(aside)
        for suffix in ("-wal", "-shm"):
            self.path.with_name(self.path.name + suffix).unlink(missing_ok=True)
        await self.connect()
        return aside

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> ListStore:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- snapshot -------------------------------------------------------------

    async def get_meta(self) -> ListMeta | None:
        cur = await self.conn.execute("SELECT * FROM list_meta WHERE id = 1")
        row = await cur.fetchone()
        return self._row_to_meta(row) if row else None

    async def save_snapshot(
        self,
        *,
        kind: MediaKind,
        provider: str,
        username: str,
        entries: Iterable[Entry],
        pending: Iterable[int],
    ) -> None:
        """Replace the stored snapshot and queue in one transaction."""
        conn = self.conn
        await conn.execute("DELETE FROM entry")
        await conn.execute("DELETE FROM pending")
        await conn.executemany(
            "INSERT INTO entry (id, list_status, payload) VALUES (?, ?, ?)",
            [(e.id, int(e.list_status), e.model_dump_json()) for e in entries],
        )
        await conn.executemany(
            "INSERT INTO pending (entry_id) VALUES (?)",
            [(entry_id,) for entry_id in pending],
        )
        await conn.execute(
            """
            INSERT INTO list_meta (id, kind, provider, username, format_version, saved_at)
            VALUES (1, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                kind = excluded.kind,
                provider = excluded.provider,
                username = excluded.username,
                format_version = excluded.format_version,
                saved_at = excluded.saved_at
            """,
            (kind, provider, username, FORMAT_VERSION, _now_iso()),
        )
        await conn.commit()

    async def load_snapshot(
        self,
        model: type[E],
        *,
        provider: str,
        username: str,
    ) -> tuple[list[E], list[int]]:
        """Return ``(entries, pending ids)`` for the list this file holds.

        Raises :class:`SnapshotError` when the file is empty, was written
        by another format version, or belongs to a different list.  Entry
        payloads that fail validation raise pydantic's ``ValidationError``.
        """
        meta = await self.get_meta()
        if meta is None:
            raise SnapshotError(f"No snapshot in {self.path}")
        if meta.format_version != FORMAT_VERSION:
            raise SnapshotError(f"{self.path} has format version {meta.format_version}, expected {FORMAT_VERSION}")
        if (meta.kind, meta.provider, meta.username) != (model.kind, provider, username):
            raise SnapshotError(
                f"{self.path} holds {meta.kind} for {meta.provider}/{meta.username}, "
                f"not {model.kind} for {provider}/{username}"
            )

        cur = await self.conn.execute("SELECT payload FROM entry ORDER BY id")
        entries = [model.model_validate_json(row["payload"]) for row in await cur.fetchall()]
        cur = await self.conn.execute("SELECT entry_id FROM pending ORDER BY position")
        pending = [row["entry_id"] for row in await cur.fetchall()]
        return entries, pending

    # -- sync_runs ------------------------------------------------------------

    async def start_sync_run(self) -> SyncRun:
        cur = await self.conn.execute(
            """
            INSERT INTO sync_runs (started_at, status)
            VALUES (?, 'running')
            RETURNING *
            """,
            (_now_iso(),),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        stats_json: str | None = None,
        error_message: str | None = None,
    ) -> SyncRun:
        cur = await self.conn.execute(
            """
            UPDATE sync_runs SET finished_at = ?, status = ?, stats_json = ?, error_message = ?
            WHERE id = ?
            RETURNING *
            """,
            (_now_iso(), status, stats_json, error_message, run_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def list_sync_runs(self, *, limit: int = 20) -> list[SyncRun]:
        cur = await self.conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,))
        rows = await cur.fetchall()
        return [self._row_to_sync_run(r) for r in rows]

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_meta(row: aiosqlite.Row) -> ListMeta:
        return ListMeta(
            kind=row["kind"],
            provider=row["provider"],
            username=row["username"],
            format_version=row["format_version"],
            saved_at=row["saved_at"],
        )

    @staticmethod
    def _row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            status=row["status"],
            stats_json=row["stats_json"],
            error_message=row["error_message"],
        )
