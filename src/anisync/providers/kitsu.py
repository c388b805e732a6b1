"""Kitsu adapter: JSON:API with the OAuth2 password grant.

List operations address Kitsu "library entries", whose ids differ from the
media ids used everywhere else, so update and remove look the entry id up
first.  Tokens are re-granted silently from the stored password on expiry.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Any, Literal

import httpx
import structlog

from anisync.auth import AuthState, TokenState
from anisync.config import KitsuConfig
from anisync.credentials import CredentialStore, credential_key
from anisync.errors import AuthError, ProtocolError, RejectedByProvider, ValidationError
from anisync.models import (
    Anime,
    AnimeEpisode,
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

NAME = "Kitsu"

_API_BASE = "https://kitsu.io/api/edge"
_TOKEN_URL = "https://kitsu.io/api/oauth/token"  # noqa: S105
_CONTENT_TYPE = "application/vnd.api+json"
_FIND_PAGE_SIZE = 20
_FIND_MAX_PAGES = 3
_PULL_PAGE_SIZE = 500
_EPISODE_PAGE_SIZE = 20

MediaKind = Literal["anime", "manga"]

STATUSES: StatusMapping[str | None] = StatusMapping(
    NAME,
    {
        ListStatus.NOT_IN_LIST: None,
        ListStatus.CURRENT: "current",
        ListStatus.COMPLETED: "completed",
        ListStatus.ON_HOLD: "on_hold",
        ListStatus.DROPPED: "dropped",
        ListStatus.PLANNED: "planned",
    },
)

_SHOW_TYPES = {
    "TV": ShowType.TV,
    "movie": ShowType.MOVIE,
    "OVA": ShowType.OVA,
    "ONA": ShowType.ONA,
    "special": ShowType.SPECIAL,
    "music": ShowType.MUSIC,
}

_MANGA_TYPES = {
    "manga": MangaType.MANGA,
    "novel": MangaType.NOVEL,
    "manhua": MangaType.MANHUA,
    "oneshot": MangaType.ONE_SHOT,
    "doujin": MangaType.DOUJINSHI,
    "manhwa": MangaType.MANHWA,
    "oel": MangaType.COMIC,
}

_ANIME_STATUSES = {
    "current": AnimeStatus.AIRING,
    "finished": AnimeStatus.COMPLETED,
    "tba": AnimeStatus.NOT_YET_AIRED,
    "unreleased": AnimeStatus.NOT_YET_AIRED,
    "upcoming": AnimeStatus.NOT_YET_AIRED,
}

_MANGA_STATUSES = {
    "current": MangaStatus.PUBLISHING,
    "finished": MangaStatus.FINISHED,
    "tba": MangaStatus.NOT_YET_PUBLISHED,
    "unreleased": MangaStatus.NOT_YET_PUBLISHED,
    "upcoming": MangaStatus.NOT_YET_PUBLISHED,
}


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def _parse_date(value: str | None) -> date | None:
    """Kitsu sends ``YYYY-MM-DD`` or a full ISO timestamp; null means unset."""
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise ProtocolError(f"Could not parse Kitsu date {value!r}") from exc


def _format_date(value: date | None) -> str | None:
    return None if value is None else f"{value.isoformat()}T00:00:00.000Z"


def _catalog_fields(resource: dict) -> dict[str, Any]:
    try:
        attr = resource["attributes"]
        canonical = attr.get("canonicalTitle") or ""
        titles = attr.get("titles") or {}
        return {
            "id": int(resource["id"]),
            "provider": NAME,
            "title": titles.get("en_jp") or canonical,
            "english_title": titles.get("en") or titles.get("en_us") or canonical,
            "japanese_title": titles.get("ja_jp") or canonical,
            "synonyms": attr.get("abbreviatedTitles") or [],
            "synopsis": attr.get("synopsis") or "",
            "image_url": (attr.get("posterImage") or {}).get("original") or "",
            "public_score": float(attr.get("averageRating") or 0) / 10,
            "start_date": _parse_date(attr.get("startDate")),
            "end_date": _parse_date(attr.get("endDate")),
        }
    except (KeyError, TypeError, ValueError) as exc:
        raise ProtocolError(f"Malformed Kitsu resource: {exc!r}") from exc


def _to_anime(resource: dict) -> Anime:
    attr = resource.get("attributes") or {}
    return Anime(
        **_catalog_fields(resource),
        episodes=attr.get("episodeCount") or 0,
        show_type=lookup(_SHOW_TYPES, attr.get("showType"), "Kitsu show type"),
        running_status=lookup(_ANIME_STATUSES, attr.get("status"), "Kitsu airing status"),
    )


def _to_manga(resource: dict) -> Manga:
    attr = resource.get("attributes") or {}
    return Manga(
        **_catalog_fields(resource),
        chapters=attr.get("chapterCount") or 0,
        volumes=attr.get("volumeCount") or 0,
        manga_type=lookup(_MANGA_TYPES, attr.get("mangaType") or attr.get("subtype"), "Kitsu manga type"),
        running_status=lookup(_MANGA_STATUSES, attr.get("status"), "Kitsu publishing status"),
    )


def _to_episode(resource: dict) -> AnimeEpisode:
    attr = resource.get("attributes") or {}
    titles = attr.get("titles") or {}
    canonical = attr.get("canonicalTitle") or ""
    return AnimeEpisode(
        number=attr.get("number") or 0,
        season_number=attr.get("seasonNumber") or 1,
        air_date=_parse_date(attr.get("airdate")),
        english_title=titles.get("en_us") or canonical,
        japanese_title=titles.get("ja_jp") or canonical,
        synopsis=attr.get("synopsis") or "",
    )


def _next_link(body: dict) -> str | None:
    return (body.get("links") or {}).get("next")


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class KitsuProvider(HttpAdapter):
    """Anime and manga library on Kitsu."""

    name = NAME

    def __init__(
        self,
        config: KitsuConfig,
        username: str,
        credentials: CredentialStore,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(_transport=_transport)
        self._config = config
        self.username = username
        self._credentials = credentials
        self._key = credential_key(NAME, username)
        self._token = TokenState()

    # -- auth --

    async def _grant(self) -> bool:
        self._token.begin_exchange()
        resp = await self._send(
            "POST",
            _TOKEN_URL,
            expect=(200, 400, 401),
            data={
                "grant_type": "password",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret.get_secret_value(),
                "username": self.username,
                "password": self._credentials.get_secret(self._key),
            },
        )
        if resp.status_code != 200:
            log.warning("kitsu_grant_rejected", username=self.username, status=resp.status_code)
            self._token.reset()
            return False
        try:
            access_token, lifetime = self._read_token(resp)
        except ProtocolError:
            self._token.reset()
            raise
        self._token.accept(access_token, time.time() + lifetime)
        log.info("kitsu_token_granted", username=self.username)
        return True

    async def _resolve_user(self) -> bool:
        body = await self._get(f"{_API_BASE}/users", params={"filter[name]": self.username}, authenticate=False)
        users = body.get("data") or []
        if not users:
            log.warning("kitsu_user_not_found", username=self.username)
            return False
        self._token.user_id = int(users[0]["id"])
        self._token.username = users[0].get("attributes", {}).get("name", self.username)
        return True

    async def _ensure_token(self) -> str:
        if self._token.check() is not AuthState.AUTHENTICATED:
            if not await self._grant():
                raise AuthError("Kitsu rejected the username or password")
        if self._token.user_id is None and not await self._resolve_user():
            raise AuthError(f"Kitsu has no user named {self.username!r}")
        assert self._token.access_token is not None  # noqa: S101
        return self._token.access_token

    # -- request helpers --

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": _CONTENT_TYPE, "Content-Type": _CONTENT_TYPE}
        if self._token.access_token:
            headers["Authorization"] = f"Bearer {self._token.access_token}"
        return headers

    async def _get(self, url: str, *, params: dict | None = None, authenticate: bool = True) -> dict:
        if authenticate:
            await self._ensure_token()
        resp = await self._send("GET", url, params=params, headers=self._headers())
        try:
            return resp.json()
        except ValueError as exc:
            raise ProtocolError(f"Kitsu returned non-JSON body for {url}") from exc

    async def _entry_id(self, media_id: int, kind: MediaKind) -> int | None:
        await self._ensure_token()
        body = await self._get(
            f"{_API_BASE}/library-entries",
            params={
                "filter[userId]": self._token.user_id,
                "filter[kind]": kind,
                f"filter[{kind}Id]": media_id,
            },
        )
        data = body.get("data") or []
        return int(data[0]["id"]) if data else None

    def _relationships(self, media_id: int, kind: MediaKind) -> dict:
        return {
            "user": {"data": {"type": "users", "id": str(self._token.user_id)}},
            kind: {"data": {"type": kind, "id": str(media_id)}},
        }

    # -- generic operations --

    async def _add(self, media_id: int, status: ListStatus, kind: MediaKind) -> bool:
        if status is ListStatus.NOT_IN_LIST:
            raise ValidationError("Cannot add an entry with status NOT_IN_LIST")
        await self._ensure_token()
        payload = {
            "data": {
                "type": "libraryEntries",
                "attributes": {"status": STATUSES.to_native(status)},
                "relationships": self._relationships(media_id, kind),
            }
        }
        resp = await self._send(
            "POST",
            f"{_API_BASE}/library-entries",
            expect=(201, 422),
            json=payload,
            headers=self._headers(),
        )
        if resp.status_code == 422:
            errors = resp.json().get("errors") or [{}]
            message = errors[0].get("detail") or errors[0].get("title") or "entry rejected"
            raise RejectedByProvider(NAME, message)
        log.info("kitsu_entry_added", kind=kind, media_id=media_id, status=status.name)
        return True

    async def _remove(self, media_id: int, kind: MediaKind) -> bool:
        entry_id = await self._entry_id(media_id, kind)
        if entry_id is None:
            log.debug("kitsu_remove_absent", kind=kind, media_id=media_id)
            return True
        await self._send(
            "DELETE",
            f"{_API_BASE}/library-entries/{entry_id}",
            expect=(200, 204, 404),
            headers=self._headers(),
        )
        log.info("kitsu_entry_removed", kind=kind, media_id=media_id)
        return True

    async def _update(self, entry: Anime | Manga, kind: MediaKind) -> bool:
        if entry.list_status is ListStatus.NOT_IN_LIST:
            return await self._remove(entry.id, kind)
        entry_id = await self._entry_id(entry.id, kind)
        if entry_id is None:
            return False

        attributes: dict[str, Any] = {
            "status": STATUSES.to_native(entry.list_status),
            "notes": entry.notes,
            "startedAt": _format_date(entry.user_start),
            "finishedAt": _format_date(entry.user_end),
            "ratingTwenty": entry.user_score * 2 if entry.user_score >= 1 else None,
        }
        completed = entry.list_status is ListStatus.COMPLETED
        if isinstance(entry, Anime):
            if completed and entry.episodes:
                entry.current_episode = entry.episodes
            attributes["progress"] = entry.current_episode
        else:
            if completed and entry.chapters:
                entry.current_chapter = entry.chapters
            attributes["progress"] = entry.current_chapter
            attributes["volumesOwned"] = entry.current_volume

        await self._send(
            "PATCH",
            f"{_API_BASE}/library-entries/{entry_id}",
            json={
                "data": {
                    "id": str(entry_id),
                    "type": "libraryEntries",
                    "attributes": attributes,
                    "relationships": self._relationships(entry.id, kind),
                }
            },
            headers=self._headers(),
        )
        log.info("kitsu_entry_updated", kind=kind, media_id=entry.id, status=entry.list_status.name)
        return True

    async def _find(self, keywords: str, kind: MediaKind) -> list[dict]:
        resources: list[dict] = []
        url: str | None = f"{_API_BASE}/{kind}"
        params: dict | None = {"filter[text]": keywords, "page[limit]": _FIND_PAGE_SIZE}
        for _ in range(_FIND_MAX_PAGES):
            if url is None:
                break
            body = await self._get(url, params=params)
            resources.extend(body.get("data") or [])
            url, params = _next_link(body), None
        return resources

    async def _pull(self, kind: MediaKind) -> list[tuple[dict, dict]]:
        await self._ensure_token()
        pairs: list[tuple[dict, dict]] = []
        url: str | None = f"{_API_BASE}/library-entries"
        params: dict | None = {
            "filter[userId]": self._token.user_id,
            "filter[kind]": kind,
            "include": kind,
            "page[limit]": _PULL_PAGE_SIZE,
        }
        while url is not None:
            body = await self._get(url, params=params)
            included = {(r["type"], r["id"]): r for r in body.get("included") or []}
            for item in body.get("data") or []:
                try:
                    ref = item["relationships"][kind]["data"]
                    media = included[(ref["type"], ref["id"])]
                except (KeyError, TypeError) as exc:
                    raise ProtocolError(f"Kitsu library entry {item.get('id')} has no included {kind}") from exc
                pairs.append((item, media))
            url, params = _next_link(body), None
        log.info("kitsu_list_pulled", kind=kind, count=len(pairs))
        return pairs

    @staticmethod
    def _apply_user_fields(entry: Anime | Manga, item: dict) -> None:
        attr = item.get("attributes") or {}
        entry.list_status = STATUSES.to_generic(attr.get("status"))
        entry.notes = attr.get("notes") or ""
        entry.user_start = _parse_date(attr.get("startedAt"))
        entry.user_end = _parse_date(attr.get("finishedAt"))
        entry.user_score = (attr.get("ratingTwenty") or 0) // 2
        if isinstance(entry, Anime):
            entry.current_episode = attr.get("progress") or 0
        else:
            entry.current_chapter = attr.get("progress") or 0
            entry.current_volume = attr.get("volumesOwned") or 0

    # -- public API --

    async def verify_credentials(self) -> bool:
        """Run the password grant and resolve the user id."""
        if not await self._grant():
            return False
        return await self._resolve_user()

    async def add_anime(self, anime_id: int, status: ListStatus = ListStatus.CURRENT) -> bool:
        return await self._add(anime_id, status, "anime")

    async def remove_anime(self, anime_id: int) -> bool:
        return await self._remove(anime_id, "anime")

    async def update_anime(self, anime: Anime) -> bool:
        return await self._update(anime, "anime")

    async def find_anime(self, keywords: str) -> list[Anime]:
        return [_to_anime(r) for r in await self._find(keywords, "anime")]

    async def pull_anime_list(self) -> list[Anime]:
        result = []
        for item, media in await self._pull("anime"):
            anime = _to_anime(media)
            self._apply_user_fields(anime, item)
            result.append(anime)
        return result

    async def add_manga(self, manga_id: int, status: ListStatus = ListStatus.CURRENT) -> bool:
        return await self._add(manga_id, status, "manga")

    async def remove_manga(self, manga_id: int) -> bool:
        return await self._remove(manga_id, "manga")

    async def update_manga(self, manga: Manga) -> bool:
        return await self._update(manga, "manga")

    async def find_manga(self, keywords: str) -> list[Manga]:
        return [_to_manga(r) for r in await self._find(keywords, "manga")]

    async def pull_manga_list(self) -> list[Manga]:
        result = []
        for item, media in await self._pull("manga"):
            manga = _to_manga(media)
            self._apply_user_fields(manga, item)
            result.append(manga)
        return result

    # -- episodes --

    async def get_episodes(self, anime_id: int) -> list[AnimeEpisode]:
        """All episodes Kitsu lists for *anime_id*, ordered by number."""
        episodes: list[AnimeEpisode] = []
        url: str | None = f"{_API_BASE}/episodes"
        params: dict | None = {"filter[mediaId]": anime_id, "page[limit]": _EPISODE_PAGE_SIZE}
        while url is not None:
            body = await self._get(url, params=params, authenticate=False)
            episodes.extend(_to_episode(r) for r in body.get("data") or [])
            url, params = _next_link(body), None
        return sorted(episodes, key=lambda e: (e.season_number, e.number))

    async def fetch_air_dates(self, anime: Anime) -> Anime:
        """Fill ``anime.episode_air_dates`` from the episode listing."""
        episodes = await self.get_episodes(anime.id)
        anime.episode_air_dates = {e.number: e.air_date for e in episodes if e.air_date is not None}
        return anime
