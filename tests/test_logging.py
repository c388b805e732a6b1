"""Tests for the structured logging configuration."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import structlog

from anisync.errors import RejectedByProvider
from anisync.logging import LoggerPrefixFilter, setup_logging, sync_context
from anisync.models import Anime, ListStatus
from anisync.sync import AnimeList


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging state between tests."""
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture()
def log_dir(tmp_path: Path) -> Path:
    path = tmp_path / "logs"
    setup_logging(log_level="info", log_dir=path)
    return path


def _sync_events(log_dir: Path) -> list[dict]:
    return [json.loads(line) for line in (log_dir / "sync.log").read_text().splitlines()]


class NoisyProvider:
    """Anime provider that logs from an adapter logger and rejects every add."""

    name = "Noisy"
    username = "tester"

    def __init__(self) -> None:
        self._log = structlog.get_logger("anisync.providers.noisy")

    async def verify_credentials(self) -> bool:
        return True

    async def add_anime(self, anime_id: int, status: ListStatus) -> bool:
        self._log.info("noisy_add", media_id=anime_id)
        raise RejectedByProvider(self.name, f"{anime_id} refused")

    async def remove_anime(self, anime_id: int) -> bool:
        return True

    async def update_anime(self, anime: Anime) -> bool:
        return False

    async def find_anime(self, keywords: str) -> list[Anime]:
        return []

    async def pull_anime_list(self) -> list[Anime]:
        self._log.info("noisy_pull", count=0)
        return []


# ---------------------------------------------------------------------------
# Files and formats
# ---------------------------------------------------------------------------


def test_both_files_created(log_dir: Path):
    assert (log_dir / "anisync.log").exists()
    assert (log_dir / "sync.log").exists()


def test_main_log_is_human_readable(log_dir: Path):
    structlog.get_logger("anisync.cli").info("list_shown", kind="anime")

    content = (log_dir / "anisync.log").read_text()
    assert "list_shown" in content
    assert "kind=anime" in content
    with pytest.raises(json.JSONDecodeError):
        json.loads(content.strip())


def test_rotation_parameters(log_dir: Path):
    rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
    assert {Path(h.baseFilename).name for h in rotating} == {"anisync.log", "sync.log"}
    for handler in rotating:
        assert handler.maxBytes == 10 * 1024 * 1024
        assert handler.backupCount == 5


def test_no_log_dir_no_handlers():
    setup_logging(log_level="info", log_dir=None)
    assert logging.getLogger().handlers == []


def test_level_and_noisy_libraries(tmp_path: Path):
    setup_logging(log_level="warning", log_dir=tmp_path / "logs")
    log = structlog.get_logger("anisync.sync.lists")
    log.info("below_level")
    log.warning("at_level")

    content = (tmp_path / "logs" / "anisync.log").read_text()
    assert "below_level" not in content
    assert "at_level" in content

    setup_logging(log_level="debug", log_dir=tmp_path / "logs")
    for name in ("httpx", "httpcore", "aiosqlite"):
        assert logging.getLogger(name).level == logging.WARNING


# ---------------------------------------------------------------------------
# sync.log routing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "logger_name",
    ["anisync.sync.lists", "anisync.providers.anilist", "anisync.providers._http", "anisync.auth"],
)
def test_sync_log_takes_engine_adapter_and_auth_events(log_dir: Path, logger_name: str):
    structlog.get_logger(logger_name).info("routed", n=1)

    (event,) = _sync_events(log_dir)
    assert event["event"] == "routed"
    assert event["logger"] == logger_name
    assert event["level"] == "info"
    assert "timestamp" in event


@pytest.mark.parametrize("logger_name", ["anisync.cli", "anisync.config", "anisync.storage.database", "httpx"])
def test_sync_log_skips_other_events(log_dir: Path, logger_name: str):
    logging.getLogger(logger_name).warning("elsewhere")

    assert (log_dir / "sync.log").read_text() == ""
    assert "elsewhere" in (log_dir / "anisync.log").read_text()


def test_prefix_filter_matches_whole_segments():
    filt = LoggerPrefixFilter(["anisync.sync"])

    def record(name: str) -> logging.LogRecord:
        return logging.LogRecord(name, logging.INFO, __file__, 0, "msg", None, None)

    assert filt.filter(record("anisync.sync"))
    assert filt.filter(record("anisync.sync.lists"))
    assert not filt.filter(record("anisync.synchronizer"))
    assert not filt.filter(record("anisync"))


# ---------------------------------------------------------------------------
# Sync context
# ---------------------------------------------------------------------------


def test_sync_context_binds_and_unbinds(log_dir: Path):
    log = structlog.get_logger("anisync.providers.kitsu")
    with sync_context("manga", "Kitsu", "alice"):
        log.info("inside")
    log.info("outside")

    inside, outside = _sync_events(log_dir)
    assert inside["sync_list"] == "manga:Kitsu/alice"
    assert "sync_list" not in outside


@pytest.mark.asyncio()
async def test_list_sync_tags_adapter_events(log_dir: Path):
    anime_list = AnimeList(NoisyProvider())
    anime_list.add(Anime(id=7, provider="Noisy"))

    stats = await anime_list.sync()
    structlog.get_logger("anisync.providers.noisy").info("after_sync")

    assert stats.dropped == 1
    events = {e["event"]: e for e in _sync_events(log_dir)}
    for name in ("sync_start", "noisy_pull", "noisy_add", "queue_item_dropped", "sync_completed"):
        assert events[name]["sync_list"] == "anime:Noisy/tester"
    assert events["queue_item_dropped"]["error"] == "Noisy: 7 refused"
    assert "sync_list" not in events["after_sync"]


# ---------------------------------------------------------------------------
# Secret masking
# ---------------------------------------------------------------------------


def test_secret_values_masked_in_both_files(log_dir: Path):
    structlog.get_logger("anisync.providers.anilist").info(
        "token_event", code="abc123", access_token="tok-xyz", password="", username="alice"
    )

    for name in ("anisync.log", "sync.log"):
        content = (log_dir / name).read_text()
        assert "abc123" not in content
        assert "tok-xyz" not in content
        assert "alice" in content

    (event,) = _sync_events(log_dir)
    assert event["code"] == "***"
    assert event["access_token"] == "***"
    assert event["password"] == ""


def test_stdlib_records_are_masked_too(log_dir: Path):
    logging.getLogger("anisync.auth").info("stdlib_event", extra={"secret": "s3cret"})

    (event,) = _sync_events(log_dir)
    assert event["secret"] == "***"
