"""Tests for the list cache and its sync with a provider."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from anisync.errors import AuthError, RejectedByProvider, TransportError
from anisync.models import Anime, ListStatus, Manga
from anisync.providers import AnimeProvider, MangaProvider
from anisync.storage import ListStore
from anisync.sync import AnimeList, ListState, MangaList


class FakeProvider:
    """In-memory provider holding one anime and one manga list."""

    name = "Fake"

    def __init__(self, username: str = "tester") -> None:
        self.username = username
        self.remote: dict[str, dict[int, Anime | Manga]] = {"anime": {}, "manga": {}}
        self.calls: list[tuple] = []
        self.pulls = 0
        self.fail_add: dict[int, Exception] = {}
        self.decline_add: set[int] = set()
        self.fail_update: dict[int, Exception] = {}
        self.fail_pull: Exception | None = None
        self.pull_gate: asyncio.Event | None = None

    def seed(self, entry: Anime | Manga) -> None:
        self.remote[entry.kind][entry.id] = entry

    # -- generic --

    async def _add(self, kind: str, media_id: int, status: ListStatus) -> bool:
        self.calls.append(("add", media_id, status))
        if media_id in self.fail_add:
            raise self.fail_add[media_id]
        if media_id in self.decline_add:
            return False
        cls = Anime if kind == "anime" else Manga
        self.remote[kind][media_id] = cls(id=media_id, provider=self.name, title=f"#{media_id}", list_status=status)
        return True

    async def _remove(self, kind: str, media_id: int) -> bool:
        self.calls.append(("remove", media_id))
        self.remote[kind].pop(media_id, None)
        return True

    async def _update(self, kind: str, entry: Anime | Manga) -> bool:
        self.calls.append(("update", entry.id, entry.list_status))
        if entry.id in self.fail_update:
            raise self.fail_update[entry.id]
        if entry.list_status is ListStatus.NOT_IN_LIST:
            return await self._remove(kind, entry.id)
        if entry.id not in self.remote[kind]:
            return False
        stored = entry.model_copy(deep=True)
        stored.title = self.remote[kind][entry.id].title
        self.remote[kind][entry.id] = stored
        return True

    async def _pull(self, kind: str) -> list:
        self.pulls += 1
        if self.pull_gate is not None:
            await self.pull_gate.wait()
        if self.fail_pull is not None:
            raise self.fail_pull
        return [e.model_copy(deep=True) for e in self.remote[kind].values()]

    # -- protocol surface --

    async def verify_credentials(self) -> bool:
        return True

    async def add_anime(self, anime_id: int, status: ListStatus) -> bool:
        return await self._add("anime", anime_id, status)

    async def remove_anime(self, anime_id: int) -> bool:
        return await self._remove("anime", anime_id)

    async def update_anime(self, anime: Anime) -> bool:
        return await self._update("anime", anime)

    async def find_anime(self, keywords: str) -> list[Anime]:
        return [Anime(id=i, provider=self.name, title=f"{keywords} {i}") for i in (1, 2)]

    async def pull_anime_list(self) -> list[Anime]:
        return await self._pull("anime")

    async def add_manga(self, manga_id: int, status: ListStatus) -> bool:
        return await self._add("manga", manga_id, status)

    async def remove_manga(self, manga_id: int) -> bool:
        return await self._remove("manga", manga_id)

    async def update_manga(self, manga: Manga) -> bool:
        return await self._update("manga", manga)

    async def find_manga(self, keywords: str) -> list[Manga]:
        return []

    async def pull_manga_list(self) -> list[Manga]:
        return await self._pull("manga")


def _anime(media_id: int, **kw) -> Anime:
    return Anime(id=media_id, provider="Fake", **kw)


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest_asyncio.fixture()
async def store(tmp_path: Path):
    s = ListStore(tmp_path / "anime.Fake.tester.db")
    await s.connect()
    yield s
    await s.close()


def test_fake_provider_satisfies_protocols(provider: FakeProvider):
    assert isinstance(provider, AnimeProvider)
    assert isinstance(provider, MangaProvider)


# ---------------------------------------------------------------------------
# Local mutations
# ---------------------------------------------------------------------------


def test_add_defaults_status_to_current(provider: FakeProvider):
    lst = AnimeList(provider)
    entry = _anime(42)
    assert lst.add(entry) is True
    assert entry.list_status is ListStatus.CURRENT
    assert 42 in lst
    assert entry in lst
    assert lst.pending == (entry,)


def test_add_keeps_explicit_status(provider: FakeProvider):
    lst = AnimeList(provider)
    lst.add(_anime(42, list_status=ListStatus.PLANNED))
    assert lst.get(42).list_status is ListStatus.PLANNED


def test_add_twice_returns_false(provider: FakeProvider):
    lst = AnimeList(provider)
    lst.add(_anime(42))
    assert lst.add(_anime(42)) is False
    assert len(lst.pending) == 1


def test_queue_holds_each_entry_once_in_fifo_order(provider: FakeProvider):
    lst = AnimeList(provider)
    a, b = _anime(1), _anime(2)
    lst.add(a)
    lst.add(b)
    a.user_score = 5
    lst.update(a)
    assert [e.id for e in lst.pending] == [1, 2]


def test_update_unlisted_entry_adds_it(provider: FakeProvider):
    lst = AnimeList(provider)
    assert lst.update(_anime(9)) is True
    assert lst.get(9).list_status is ListStatus.CURRENT


def test_update_with_other_instance_replaces_in_place(provider: FakeProvider):
    lst = AnimeList(provider, entries=[_anime(9, title="Held", list_status=ListStatus.CURRENT)])
    held = lst.get(9)
    lst.update(_anime(9, title="Held", list_status=ListStatus.COMPLETED, user_score=10))
    assert lst.get(9) is held
    assert held.list_status is ListStatus.COMPLETED
    assert held.user_score == 10
    assert lst.pending == (held,)


def test_remove_marks_entry_and_keeps_it_until_sync(provider: FakeProvider):
    lst = AnimeList(provider, entries=[_anime(9, list_status=ListStatus.CURRENT)])
    assert lst.remove(_anime(9)) is True
    assert 9 in lst
    assert lst.get(9).list_status is ListStatus.NOT_IN_LIST
    assert [e.id for e in lst.pending] == [9]


def test_remove_unlisted_returns_false(provider: FakeProvider):
    lst = AnimeList(provider)
    assert lst.remove(_anime(9)) is False
    assert lst.pending == ()


def test_lookups(provider: FakeProvider):
    lst = AnimeList(
        provider,
        entries=[
            _anime(1, list_status=ListStatus.CURRENT),
            _anime(2, list_status=ListStatus.COMPLETED),
            _anime(3, list_status=ListStatus.CURRENT),
        ],
    )
    assert len(lst) == 3
    assert [e.id for e in lst] == [1, 2, 3]
    assert [e.id for e in lst.by_status(ListStatus.CURRENT)] == [1, 3]
    assert lst.get(4) is None
    assert Anime(id=1, provider="Other") not in lst
    assert lst.state is ListState.LOADED


@pytest.mark.asyncio()
async def test_find_returns_cached_instances(provider: FakeProvider):
    lst = AnimeList(provider, entries=[_anime(2, title="Mine", list_status=ListStatus.CURRENT)])
    results = await lst.find("bebop")
    assert results[1] is lst.get(2)
    assert results[0].title == "bebop 1"


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_added_entry_is_on_remote_after_sync(provider: FakeProvider):
    lst = AnimeList(provider)
    lst.add(_anime(42))

    stats = await lst.sync()

    assert 42 in lst
    assert lst.get(42).list_status is ListStatus.CURRENT
    assert lst.pending == ()
    assert provider.remote["anime"][42].list_status is ListStatus.CURRENT
    assert provider.calls[:2] == [("add", 42, ListStatus.CURRENT), ("update", 42, ListStatus.CURRENT)]
    assert stats.added == 1
    assert stats.updated == 1
    assert stats.pulled == 1
    assert lst.last_stats is stats


@pytest.mark.asyncio()
async def test_sync_pushes_user_fields(provider: FakeProvider):
    provider.seed(_anime(5, title="Remote", list_status=ListStatus.CURRENT))
    lst = AnimeList(provider, entries=[_anime(5, title="Remote", list_status=ListStatus.CURRENT)])

    entry = lst.get(5)
    entry.user_score = 9
    entry.current_episode = 12
    lst.update(entry)
    await lst.sync()

    assert ("add", 5, ListStatus.CURRENT) not in provider.calls
    assert provider.remote["anime"][5].user_score == 9
    assert lst.get(5).current_episode == 12


@pytest.mark.asyncio()
async def test_removed_entry_leaves_cache_after_sync(provider: FakeProvider):
    provider.seed(_anime(9, list_status=ListStatus.CURRENT))
    lst = AnimeList(provider, entries=[_anime(9, list_status=ListStatus.CURRENT)])
    lst.remove(lst.get(9))

    stats = await lst.sync()

    assert 9 not in lst
    assert 9 not in provider.remote["anime"]
    assert stats.removed == 1
    assert ("add", 9, ListStatus.NOT_IN_LIST) not in provider.calls


@pytest.mark.asyncio()
async def test_sync_refresh_keeps_instances(provider: FakeProvider):
    provider.seed(_anime(5, title="Renamed", list_status=ListStatus.COMPLETED))
    provider.seed(_anime(6, title="New", list_status=ListStatus.PLANNED))
    lst = AnimeList(provider, entries=[_anime(5, title="Old", list_status=ListStatus.CURRENT), _anime(7)])
    held = lst.get(5)

    await lst.sync()

    assert lst.get(5) is held
    assert held.title == "Renamed"
    assert held.list_status is ListStatus.COMPLETED
    assert lst.get(6).title == "New"
    assert 7 not in lst


@pytest.mark.asyncio()
async def test_failed_item_is_dropped_and_sync_continues(provider: FakeProvider):
    provider.fail_add[7] = RejectedByProvider("Fake", "duplicate")
    provider.fail_update[8] = TransportError("timeout")
    lst = AnimeList(provider)
    for media_id in (7, 8, 9):
        lst.add(_anime(media_id))

    stats = await lst.sync()

    assert stats.dropped == 2
    assert stats.added == 2
    assert lst.pending == ()
    assert 7 not in lst
    assert 9 in lst


@pytest.mark.asyncio()
async def test_declined_add_is_not_counted(provider: FakeProvider):
    provider.decline_add.add(4)
    lst = AnimeList(provider)
    lst.add(_anime(4))
    lst.add(_anime(5))

    stats = await lst.sync()

    assert stats.added == 1
    assert stats.updated == 1
    assert stats.dropped == 0
    assert 4 not in lst


@pytest.mark.asyncio()
async def test_auth_error_aborts_sync_and_keeps_rest_of_queue(provider: FakeProvider):
    provider.fail_add[2] = AuthError("token revoked")
    lst = AnimeList(provider)
    for media_id in (1, 2, 3):
        lst.add(_anime(media_id))

    with pytest.raises(AuthError):
        await lst.sync()

    assert [e.id for e in lst.pending] == [3]
    assert lst.state is ListState.LOADED
    assert provider.pulls == 1


@pytest.mark.asyncio()
async def test_pull_failure_keeps_queue(provider: FakeProvider):
    provider.fail_pull = TransportError("unreachable")
    lst = AnimeList(provider)
    lst.add(_anime(1))

    with pytest.raises(TransportError):
        await lst.sync()
    assert [e.id for e in lst.pending] == [1]


@pytest.mark.asyncio()
async def test_concurrent_sync_raises(provider: FakeProvider):
    provider.pull_gate = asyncio.Event()
    lst = AnimeList(provider)
    first = asyncio.create_task(lst.sync())
    while lst.state is not ListState.SYNCING:
        await asyncio.sleep(0)

    with pytest.raises(RuntimeError, match="already in progress"):
        await lst.sync()

    provider.pull_gate.set()
    await first
    assert lst.state is ListState.LOADED


@pytest.mark.asyncio()
async def test_manga_list_sync(provider: FakeProvider):
    lst = MangaList(provider)
    lst.add(Manga(id=3, provider="Fake", current_chapter=10))

    await lst.sync()

    assert provider.remote["manga"][3].current_chapter == 10
    assert lst.get(3).list_status is ListStatus.CURRENT
    assert provider.remote["anime"] == {}


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_save_without_store_raises(provider: FakeProvider):
    with pytest.raises(RuntimeError, match="no store"):
        await AnimeList(provider).save()


@pytest.mark.asyncio()
async def test_save_and_load_round_trip(provider: FakeProvider, store: ListStore):
    lst = AnimeList(provider, store, entries=[_anime(1, list_status=ListStatus.CURRENT, notes="n")])
    lst.add(_anime(2))
    lst.update(lst.get(1))
    await lst.save()

    loaded = await AnimeList.load(provider, store)

    assert provider.pulls == 0
    assert [e.id for e in loaded.pending] == [2, 1]
    assert loaded.get(1).notes == "n"
    assert loaded.pending[0] is loaded.get(2)


@pytest.mark.asyncio()
async def test_load_empty_store_syncs(provider: FakeProvider, store: ListStore):
    provider.seed(_anime(5, title="Remote", list_status=ListStatus.DROPPED))

    loaded = await AnimeList.load(provider, store)

    assert provider.pulls == 2
    assert [e.id for e in loaded] == [5]
    meta = await store.get_meta()
    assert meta is not None and meta.username == "tester"


@pytest.mark.asyncio()
async def test_load_other_account_syncs(provider: FakeProvider, store: ListStore):
    await AnimeList(FakeProvider(username="someone"), store, entries=[_anime(1)]).save()
    provider.seed(_anime(5, list_status=ListStatus.CURRENT))

    loaded = await AnimeList.load(provider, store)

    assert [e.id for e in loaded] == [5]


@pytest.mark.asyncio()
async def test_sync_records_runs(provider: FakeProvider, store: ListStore):
    lst = AnimeList(provider, store)
    lst.add(_anime(1))
    await lst.sync()

    provider.fail_pull = TransportError("down")
    with pytest.raises(TransportError):
        await lst.sync()

    failed, completed = await store.list_sync_runs()
    assert completed.status == "completed"
    assert json.loads(completed.stats_json)["added"] == 1
    assert failed.status == "failed"
    assert failed.error_message == "down"


@pytest.mark.asyncio()
async def test_failed_sync_saves_drained_queue(provider: FakeProvider, store: ListStore):
    provider.fail_add[1] = RejectedByProvider("Fake", "duplicate")
    provider.fail_add[2] = AuthError("token revoked")
    lst = AnimeList(provider, store)
    for media_id in (1, 2, 3):
        lst.add(_anime(media_id))
    await lst.save()

    with pytest.raises(AuthError):
        await lst.sync()

    reloaded = await AnimeList.load(provider, store)
    assert [e.id for e in reloaded.pending] == [3]
    assert provider.pulls == 1
    (run,) = await store.list_sync_runs()
    assert run.status == "failed"


@pytest.mark.asyncio()
async def test_load_moves_unreadable_cache_aside(provider: FakeProvider, tmp_path: Path):
    path = tmp_path / "anime.Fake.tester.db"
    path.write_bytes(b"definitely not sqlite\n" * 64)
    provider.seed(_anime(5, list_status=ListStatus.CURRENT))
    store = ListStore(path)

    try:
        loaded = await AnimeList.load(provider, store)
        meta = await store.get_meta()
    finally:
        await store.close()

    assert [e.id for e in loaded] == [5]
    assert provider.pulls == 2
    assert meta is not None and meta.provider == "Fake"
    assert (tmp_path / "anime.Fake.tester.db.corrupt").read_bytes().startswith(b"definitely not sqlite")


@pytest.mark.asyncio()
async def test_load_connects_store(provider: FakeProvider, tmp_path: Path):
    store = ListStore(tmp_path / "anime.Fake.tester.db")
    try:
        await AnimeList.load(provider, store)
        assert store.connected
    finally:
        await store.close()
    assert not store.connected
