"""Pydantic models for the list cache tables."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

MediaKind = Literal["anime", "manga"]
SyncRunStatus = Literal["running", "completed", "failed"]


class ListMeta(BaseModel):
    """Which list a cache file holds."""

    kind: MediaKind
    provider: str
    username: str
    format_version: int
    saved_at: datetime | None = None


class SyncRun(BaseModel):
    """A single sync of one list."""

    id: int | None = None
    started_at: datetime
    finished_at: datetime | None = None
    status: SyncRunStatus
    stats_json: str | None = None
    error_message: str | None = None
