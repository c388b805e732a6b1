"""MyAnimeList adapter: HTTP Basic auth over the XML REST API.

Two surfaces are used.  The per-item API under ``/api/`` handles search,
add, update and delete; the legacy ``malappinfo.php`` bulk export is the
authoritative source for the full list.  The export omits English titles,
synopses and public scores, which are left empty rather than fetched one by
one.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from datetime import date
from typing import Any, Literal

import httpx
import structlog

from anisync.credentials import CredentialStore, credential_key
from anisync.errors import ProtocolError, RejectedByProvider, ValidationError
from anisync.models import (
    Anime,
    AnimeStatus,
    ListStatus,
    Manga,
    MangaStatus,
    MangaType,
    ShowType,
)
from anisync.providers._http import HttpAdapter
from anisync.providers.base import StatusMapping, lookup

log = structlog.get_logger(__name__)

NAME = "MyAnimeList"

_API_BASE = "https://myanimelist.net/api"
_EXPORT_URL = "https://myanimelist.net/malappinfo.php"
_UNSET_DATE = "0000-00-00"
_UNSET_REQUEST_DATE = "00000000"
_PARTIAL_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

MediaKind = Literal["anime", "manga"]

STATUSES: StatusMapping[str] = StatusMapping(
    NAME,
    {
        ListStatus.NOT_IN_LIST: "0",
        ListStatus.CURRENT: "1",
        ListStatus.COMPLETED: "2",
        ListStatus.ON_HOLD: "3",
        ListStatus.DROPPED: "4",
        ListStatus.PLANNED: "6",
    },
)

# The search API sends names, the export sends numeric codes.
_SHOW_TYPES = {
    "TV": ShowType.TV, "1": ShowType.TV,
    "OVA": ShowType.OVA, "2": ShowType.OVA,
    "Movie": ShowType.MOVIE, "3": ShowType.MOVIE,
    "Special": ShowType.SPECIAL, "4": ShowType.SPECIAL,
    "ONA": ShowType.ONA, "5": ShowType.ONA,
    "Music": ShowType.MUSIC, "6": ShowType.MUSIC,
}  # fmt: skip

_ANIME_STATUSES = {
    "Currently Airing": AnimeStatus.AIRING, "1": AnimeStatus.AIRING,
    "Finished Airing": AnimeStatus.COMPLETED, "2": AnimeStatus.COMPLETED,
    "Not yet aired": AnimeStatus.NOT_YET_AIRED, "3": AnimeStatus.NOT_YET_AIRED,
}  # fmt: skip

_MANGA_TYPES = {
    "Manga": MangaType.MANGA, "1": MangaType.MANGA,
    "Novel": MangaType.NOVEL, "2": MangaType.NOVEL,
    "One-shot": MangaType.ONE_SHOT, "One-Shot": MangaType.ONE_SHOT, "3": MangaType.ONE_SHOT,
    "Doujinshi": MangaType.DOUJINSHI, "4": MangaType.DOUJINSHI,
    "Manhwa": MangaType.MANHWA, "5": MangaType.MANHWA,
    "Manhua": MangaType.MANHUA, "6": MangaType.MANHUA,
    "OEL": MangaType.COMIC, "7": MangaType.COMIC,
}  # fmt: skip

_MANGA_STATUSES = {
    "Publishing": MangaStatus.PUBLISHING, "1": MangaStatus.PUBLISHING,
    "Finished": MangaStatus.FINISHED, "2": MangaStatus.FINISHED,
    "Not yet published": MangaStatus.NOT_YET_PUBLISHED, "3": MangaStatus.NOT_YET_PUBLISHED,
}  # fmt: skip


# ---------------------------------------------------------------------------
# XML helpers
# ---------------------------------------------------------------------------


def parse_date(value: str | None) -> date | None:
    """Parse ``YYYY-MM-DD``; zero month or day fall back to the first."""
    if not value or value == _UNSET_DATE:
        return None
    match = _PARTIAL_DATE.match(value.strip())
    if not match:
        raise ProtocolError(f"Could not parse MyAnimeList date {value!r}")
    year, month, day = (int(g) for g in match.groups())
    if year == 0:
        return None
    try:
        return date(year, month or 1, day or 1)
    except ValueError as exc:
        raise ProtocolError(f"Invalid MyAnimeList date {value!r}") from exc


def format_date(value: date | None) -> str:
    return _UNSET_REQUEST_DATE if value is None else value.strftime("%m%d%Y")


def _parse_xml(text: str) -> ET.Element:
    try:
        return ET.fromstring(text)
    except ET.ParseError as exc:
        raise ProtocolError(f"MyAnimeList returned malformed XML: {exc}") from exc


def _text(node: ET.Element, tag: str, *, required: bool = True) -> str:
    child = node.find(tag)
    if child is None or child.text is None:
        if required:
            raise ProtocolError(f"MyAnimeList <{node.tag}> is missing <{tag}>")
        return ""
    return child.text.strip()


def _int(node: ET.Element, tag: str) -> int:
    raw = _text(node, tag)
    try:
        return int(raw)
    except ValueError as exc:
        raise ProtocolError(f"MyAnimeList <{tag}> is not a number: {raw!r}") from exc


def _synonyms(raw: str) -> list[str]:
    return [s for s in raw.split("; ") if s] if raw else []


def _entry_xml(fields: dict[str, Any]) -> str:
    root = ET.Element("entry")
    for tag, value in fields.items():
        ET.SubElement(root, tag).text = str(value)
    return '<?xml version="1.0" encoding="UTF-8"?>' + ET.tostring(root, encoding="unicode")


def _search_fields(node: ET.Element) -> dict[str, Any]:
    title = _text(node, "title")
    score = _text(node, "score", required=False)
    return {
        "id": _int(node, "id"),
        "provider": NAME,
        "title": title,
        "english_title": _text(node, "english", required=False) or title,
        "synonyms": _synonyms(_text(node, "synonyms", required=False)),
        "synopsis": _text(node, "synopsis", required=False),
        "image_url": _text(node, "image", required=False),
        "public_score": float(score) if score else 0.0,
        "start_date": parse_date(_text(node, "start_date", required=False)),
        "end_date": parse_date(_text(node, "end_date", required=False)),
    }


def _export_fields(node: ET.Element, id_tag: str) -> dict[str, Any]:
    return {
        "id": _int(node, id_tag),
        "provider": NAME,
        "title": _text(node, "series_title"),
        "synonyms": _synonyms(_text(node, "series_synonyms", required=False)),
        "image_url": _text(node, "series_image", required=False),
        "start_date": parse_date(_text(node, "series_start", required=False)),
        "end_date": parse_date(_text(node, "series_end", required=False)),
        "list_status": STATUSES.to_generic(_text(node, "my_status")),
        "user_score": _int(node, "my_score"),
        "user_start": parse_date(_text(node, "my_start_date", required=False)),
        "user_end": parse_date(_text(node, "my_finish_date", required=False)),
    }


def _search_anime(node: ET.Element) -> Anime:
    return Anime(
        **_search_fields(node),
        episodes=_int(node, "episodes"),
        show_type=lookup(_SHOW_TYPES, _text(node, "type"), "MyAnimeList show type"),
        running_status=lookup(_ANIME_STATUSES, _text(node, "status"), "MyAnimeList airing status"),
    )


def _search_manga(node: ET.Element) -> Manga:
    return Manga(
        **_search_fields(node),
        chapters=_int(node, "chapters"),
        volumes=_int(node, "volumes"),
        manga_type=lookup(_MANGA_TYPES, _text(node, "type"), "MyAnimeList manga type"),
        running_status=lookup(_MANGA_STATUSES, _text(node, "status"), "MyAnimeList publishing status"),
    )


def _export_anime(node: ET.Element) -> Anime:
    return Anime(
        **_export_fields(node, "series_animedb_id"),
        episodes=_int(node, "series_episodes"),
        current_episode=_int(node, "my_watched_episodes"),
        show_type=lookup(_SHOW_TYPES, _text(node, "series_type"), "MyAnimeList show type"),
        running_status=lookup(_ANIME_STATUSES, _text(node, "series_status"), "MyAnimeList airing status"),
    )


def _export_manga(node: ET.Element) -> Manga:
    return Manga(
        **_export_fields(node, "series_mangadb_id"),
        chapters=_int(node, "series_chapters"),
        volumes=_int(node, "series_volumes"),
        current_chapter=_int(node, "my_read_chapters"),
        current_volume=_int(node, "my_read_volumes"),
        manga_type=lookup(_MANGA_TYPES, _text(node, "series_type"), "MyAnimeList manga type"),
        running_status=lookup(_MANGA_STATUSES, _text(node, "series_status"), "MyAnimeList publishing status"),
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class MyAnimeListProvider(HttpAdapter):
    """Anime and manga lists on MyAnimeList."""

    name = NAME

    def __init__(
        self,
        username: str,
        credentials: CredentialStore,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(_transport=_transport)
        self.username = username
        self._credentials = credentials
        self._key = credential_key(NAME, username)

    @property
    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.username, self._credentials.get_secret(self._key))

    async def _request(self, method: str, url: str, *, expect: tuple[int, ...] = (200,), **kwargs: Any) -> httpx.Response:
        return await self._send(method, url, expect=expect, auth=self._auth, **kwargs)

    # -- generic operations --

    async def _add(self, media_id: int, status: ListStatus, kind: MediaKind) -> bool:
        if status is ListStatus.NOT_IN_LIST:
            raise ValidationError("Cannot add an entry with status NOT_IN_LIST")
        if kind == "anime":
            fields = {"episode": 0, "status": STATUSES.to_native(status)}
        else:
            fields = {"chapter": 0, "volume": 0, "status": STATUSES.to_native(status)}
        resp = await self._request(
            "POST",
            f"{_API_BASE}/{kind}list/add/{media_id}.xml",
            expect=(200, 201, 400),
            data={"data": _entry_xml(fields)},
        )
        if resp.status_code != 201:
            raise RejectedByProvider(NAME, resp.text.strip() or f"add returned {resp.status_code}")
        log.info("mal_entry_added", kind=kind, media_id=media_id, status=status.name)
        return True

    async def _remove(self, media_id: int, kind: MediaKind) -> bool:
        resp = await self._request(
            "DELETE",
            f"{_API_BASE}/{kind}list/delete/{media_id}.xml",
            expect=(200, 400, 404),
        )
        if resp.status_code != 200:
            log.debug("mal_remove_absent", kind=kind, media_id=media_id)
            return True
        log.info("mal_entry_removed", kind=kind, media_id=media_id)
        return "Deleted" in resp.text

    async def _update(self, entry: Anime | Manga, kind: MediaKind) -> bool:
        if entry.list_status is ListStatus.NOT_IN_LIST:
            return await self._remove(entry.id, kind)

        completed = entry.list_status is ListStatus.COMPLETED
        if isinstance(entry, Anime):
            if completed and entry.episodes:
                entry.current_episode = entry.episodes
            fields: dict[str, Any] = {"episode": entry.current_episode}
        else:
            if completed:
                if entry.chapters:
                    entry.current_chapter = entry.chapters
                if entry.volumes:
                    entry.current_volume = entry.volumes
            fields = {"chapter": entry.current_chapter, "volume": entry.current_volume}
        fields |= {
            "status": STATUSES.to_native(entry.list_status),
            "score": entry.user_score,
            "date_start": format_date(entry.user_start),
            "date_finish": format_date(entry.user_end),
            "comments": entry.notes,
        }

        resp = await self._request(
            "POST",
            f"{_API_BASE}/{kind}list/update/{entry.id}.xml",
            expect=(200, 201, 400, 404),
            data={"data": _entry_xml(fields)},
        )
        updated = resp.status_code in (200, 201) and "Updated" in resp.text
        if updated:
            log.info("mal_entry_updated", kind=kind, media_id=entry.id, status=entry.list_status.name)
        else:
            log.info("mal_update_not_on_list", kind=kind, media_id=entry.id, status=resp.status_code)
        return updated

    async def _search(self, keywords: str, kind: MediaKind) -> list[ET.Element]:
        resp = await self._request("GET", f"{_API_BASE}/{kind}/search.xml", expect=(200, 204), params={"q": keywords})
        if resp.status_code == 204 or not resp.text.strip():
            return []
        return _parse_xml(resp.text).findall("entry")

    async def _export(self, kind: MediaKind) -> list[ET.Element]:
        resp = await self._request(
            "GET",
            _EXPORT_URL,
            params={"u": self.username, "status": "all", "type": kind},
        )
        root = _parse_xml(resp.text)
        if root.tag != "myanimelist" or len(root) == 0:
            raise ProtocolError(f"MyAnimeList has no {kind} list for {self.username!r}")
        error = root.findtext("error")
        if error:
            raise ProtocolError(f"MyAnimeList export failed: {error}")
        nodes = root.findall(kind)
        log.info("mal_list_pulled", kind=kind, count=len(nodes))
        return nodes

    # -- public API --

    async def verify_credentials(self) -> bool:
        resp = await self._request("GET", f"{_API_BASE}/account/verify_credentials.xml", expect=(200, 204, 401))
        return resp.status_code != 401

    async def add_anime(self, anime_id: int, status: ListStatus = ListStatus.CURRENT) -> bool:
        return await self._add(anime_id, status, "anime")

    async def remove_anime(self, anime_id: int) -> bool:
        return await self._remove(anime_id, "anime")

    async def update_anime(self, anime: Anime) -> bool:
        return await self._update(anime, "anime")

    async def find_anime(self, keywords: str) -> list[Anime]:
        return [_search_anime(n) for n in await self._search(keywords, "anime")]

    async def pull_anime_list(self) -> list[Anime]:
        return [_export_anime(n) for n in await self._export("anime")]

    async def add_manga(self, manga_id: int, status: ListStatus = ListStatus.CURRENT) -> bool:
        return await self._add(manga_id, status, "manga")

    async def remove_manga(self, manga_id: int) -> bool:
        return await self._remove(manga_id, "manga")

    async def update_manga(self, manga: Manga) -> bool:
        return await self._update(manga, "manga")

    async def find_manga(self, keywords: str) -> list[Manga]:
        return [_search_manga(n) for n in await self._search(keywords, "manga")]

    async def pull_manga_list(self) -> list[Manga]:
        return [_export_manga(n) for n in await self._export("manga")]
