"""AniList adapter: GraphQL API with the OAuth2 authorization-code grant.

AniList access tokens cannot be refreshed silently.  When no usable token
exists the stored secret is treated as an authorization code; once a token
expires a new code is requested through the reauthorization channel.
"""

from __future__ import annotations

import json
import time
from datetime import date
from typing import Any, Literal

import httpx
import structlog

from anisync.auth import AuthState, ReauthorizationChannel, TokenState
from anisync.config import AniListConfig
from anisync.credentials import CredentialStore, credential_key
from anisync.errors import (
    AccountMismatchError,
    AuthError,
    ProtocolError,
    RejectedByProvider,
    ValidationError,
)
from anisync.models import (
    Anime,
    AnimeStatus,
    Entry,
    ListStatus,
    Manga,
    MangaStatus,
    MangaType,
    ShowType,
)
from anisync.providers._http import HttpAdapter
from anisync.providers.base import StatusMapping, lookup

log = structlog.get_logger(__name__)

NAME = "AniList"

_API_URL = "https://graphql.anilist.co"
_OAUTH_URL = "https://anilist.co/api/v2/oauth"
_FIND_PAGE_SIZE = 50
_FIND_MAX_PAGES = 2
_PULL_CHUNK_SIZE = 500

MediaKind = Literal["ANIME", "MANGA"]

STATUSES: StatusMapping[str | None] = StatusMapping(
    NAME,
    {
        ListStatus.NOT_IN_LIST: None,
        ListStatus.CURRENT: "CURRENT",
        ListStatus.COMPLETED: "COMPLETED",
        ListStatus.ON_HOLD: "PAUSED",
        ListStatus.DROPPED: "DROPPED",
        ListStatus.PLANNED: "PLANNING",
    },
    aliases={"REPEATING": ListStatus.CURRENT},
)

_SHOW_TYPES = {
    "TV": ShowType.TV,
    "TV_SHORT": ShowType.TV,
    "MOVIE": ShowType.MOVIE,
    "SPECIAL": ShowType.SPECIAL,
    "OVA": ShowType.OVA,
    "ONA": ShowType.ONA,
    "MUSIC": ShowType.MUSIC,
}

_MANGA_TYPES = {
    "MANGA": MangaType.MANGA,
    "NOVEL": MangaType.NOVEL,
    "ONE_SHOT": MangaType.ONE_SHOT,
}

# Korean and Chinese comics are filed under MANGA with a country of origin.
_COUNTRY_MANGA_TYPES = {"KR": MangaType.MANHWA, "CN": MangaType.MANHUA, "TW": MangaType.MANHUA}

_ANIME_STATUSES = {
    "FINISHED": AnimeStatus.COMPLETED,
    "RELEASING": AnimeStatus.AIRING,
    "HIATUS": AnimeStatus.AIRING,
    "NOT_YET_RELEASED": AnimeStatus.NOT_YET_AIRED,
    "CANCELLED": AnimeStatus.NOT_YET_AIRED,
}

_MANGA_STATUSES = {
    "FINISHED": MangaStatus.FINISHED,
    "CANCELLED": MangaStatus.FINISHED,
    "RELEASING": MangaStatus.PUBLISHING,
    "HIATUS": MangaStatus.PUBLISHING,
    "NOT_YET_RELEASED": MangaStatus.NOT_YET_PUBLISHED,
}

# ---------------------------------------------------------------------------
# GraphQL documents
# ---------------------------------------------------------------------------

_MEDIA_FIELDS = """
    id
    type
    format
    status
    countryOfOrigin
    title { romaji english native }
    synonyms
    description(asHtml: false)
    coverImage { large }
    averageScore
    episodes
    chapters
    volumes
    startDate { year month day }
    endDate { year month day }
    airingSchedule(perPage: 50) { nodes { episode airingAt } }
"""

_VIEWER_QUERY = "query { Viewer { id name } }"

_FIND_QUERY = f"""
query ($search: String, $type: MediaType, $page: Int, $perPage: Int) {{
  Page(page: $page, perPage: $perPage) {{
    pageInfo {{ hasNextPage }}
    media(search: $search, type: $type) {{ {_MEDIA_FIELDS} }}
  }}
}}
"""

_PULL_QUERY = f"""
query ($userId: Int, $type: MediaType, $chunk: Int, $perChunk: Int) {{
  MediaListCollection(userId: $userId, type: $type, chunk: $chunk, perChunk: $perChunk) {{
    hasNextChunk
    lists {{
      entries {{
        status
        score(format: POINT_10)
        progress
        progressVolumes
        notes
        startedAt {{ year month day }}
        completedAt {{ year month day }}
        media {{ {_MEDIA_FIELDS} }}
      }}
    }}
  }}
}}
"""

_ENTRY_ID_QUERY = """
query ($userId: Int, $mediaId: Int) {
  MediaList(userId: $userId, mediaId: $mediaId) { id }
}
"""

_ADD_MUTATION = """
mutation ($mediaId: Int, $status: MediaListStatus) {
  SaveMediaListEntry(mediaId: $mediaId, status: $status) { id mediaId }
}
"""

_UPDATE_MUTATION = """
mutation ($id: Int, $status: MediaListStatus, $scoreRaw: Int, $progress: Int,
          $progressVolumes: Int, $notes: String,
          $startedAt: FuzzyDateInput, $completedAt: FuzzyDateInput) {
  SaveMediaListEntry(id: $id, status: $status, scoreRaw: $scoreRaw, progress: $progress,
                     progressVolumes: $progressVolumes, notes: $notes,
                     startedAt: $startedAt, completedAt: $completedAt) { id }
}
"""

_DELETE_MUTATION = """
mutation ($id: Int) {
  DeleteMediaListEntry(id: $id) { deleted }
}
"""


def authorize_url(config: AniListConfig) -> str:
    """URL the user opens to grant access and obtain an authorization code."""
    url = httpx.URL(
        f"{_OAUTH_URL}/authorize",
        params={
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "response_type": "code",
        },
    )
    return str(url)


# ---------------------------------------------------------------------------
# Converters
# ---------------------------------------------------------------------------


def _from_fuzzy_date(value: dict | None) -> date | None:
    if not value or not value.get("year"):
        return None
    try:
        return date(value["year"], value.get("month") or 1, value.get("day") or 1)
    except (ValueError, TypeError) as exc:
        raise ProtocolError(f"Invalid AniList date {value!r}") from exc


def _to_fuzzy_date(value: date | None) -> dict:
    if value is None:
        return {"year": None, "month": None, "day": None}
    return {"year": value.year, "month": value.month, "day": value.day}


def _catalog_fields(media: dict) -> dict[str, Any]:
    try:
        titles = media["title"]
        romaji = titles["romaji"] or ""
        return {
            "id": media["id"],
            "provider": NAME,
            "title": romaji,
            "english_title": titles.get("english") or romaji,
            "japanese_title": titles.get("native") or romaji,
            "synonyms": media.get("synonyms") or [],
            "synopsis": media.get("description") or "",
            "image_url": (media.get("coverImage") or {}).get("large") or "",
            "public_score": (media.get("averageScore") or 0) / 10,
            "start_date": _from_fuzzy_date(media.get("startDate")),
            "end_date": _from_fuzzy_date(media.get("endDate")),
        }
    except (KeyError, TypeError) as exc:
        raise ProtocolError(f"Malformed AniList media record: {exc!r}") from exc


def _to_anime(media: dict) -> Anime:
    air_dates = {
        node["episode"]: date.fromtimestamp(node["airingAt"])
        for node in (media.get("airingSchedule") or {}).get("nodes") or []
    }
    return Anime(
        **_catalog_fields(media),
        episodes=media.get("episodes") or 0,
        show_type=lookup(_SHOW_TYPES, media.get("format"), "AniList format"),
        running_status=lookup(_ANIME_STATUSES, media.get("status"), "AniList airing status"),
        episode_air_dates=air_dates,
    )


def _to_manga(media: dict) -> Manga:
    manga_type = lookup(_MANGA_TYPES, media.get("format"), "AniList format")
    if manga_type is MangaType.MANGA:
        manga_type = _COUNTRY_MANGA_TYPES.get(media.get("countryOfOrigin") or "", manga_type)
    return Manga(
        **_catalog_fields(media),
        chapters=media.get("chapters") or 0,
        volumes=media.get("volumes") or 0,
        manga_type=manga_type,
        running_status=lookup(_MANGA_STATUSES, media.get("status"), "AniList publishing status"),
    )


def _apply_user_fields(entry: Entry, item: dict) -> None:
    entry.list_status = STATUSES.to_generic(item.get("status"))
    entry.user_score = round(item.get("score") or 0)
    entry.notes = item.get("notes") or ""
    entry.user_start = _from_fuzzy_date(item.get("startedAt"))
    entry.user_end = _from_fuzzy_date(item.get("completedAt"))
    if isinstance(entry, Anime):
        entry.current_episode = item.get("progress") or 0
    elif isinstance(entry, Manga):
        entry.current_chapter = item.get("progress") or 0
        entry.current_volume = item.get("progressVolumes") or 0


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class AniListProvider(HttpAdapter):
    """Anime and manga lists on AniList."""

    name = NAME

    def __init__(
        self,
        config: AniListConfig,
        username: str,
        credentials: CredentialStore,
        reauth: ReauthorizationChannel,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(_transport=_transport)
        self._config = config
        self.username = username
        self._credentials = credentials
        self._reauth = reauth
        self._key = credential_key(NAME, username)
        self._token = TokenState()

    @property
    def _token_key(self) -> str:
        return f"{self._key}#token"

    # -- auth --

    async def _exchange(self, code: str) -> bool:
        self._token.begin_exchange()
        resp = await self._send(
            "POST",
            f"{_OAUTH_URL}/token",
            expect=(200, 400, 401),
            json={
                "grant_type": "authorization_code",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret.get_secret_value(),
                "redirect_uri": self._config.redirect_uri,
                "code": code,
            },
            headers={"Accept": "application/json"},
        )
        # authorization codes are single use, accepted or not
        self._credentials.set_secret(self._key, "")
        if resp.status_code != 200:
            log.warning("anilist_code_rejected", username=self.username, status=resp.status_code)
            self._token.reset()
            return False

        try:
            access_token, lifetime = self._read_token(resp)
        except ProtocolError:
            self._token.reset()
            raise
        expires_at = time.time() + lifetime
        self._token.accept(access_token, expires_at)
        self._credentials.set_secret(
            self._token_key,
            json.dumps({"access_token": access_token, "expires_at": expires_at}),
        )
        log.info("anilist_token_exchanged", username=self.username)
        return True

    def _restore_token(self) -> bool:
        raw = self._credentials.get_secret(self._token_key)
        if not raw:
            return False
        try:
            saved = json.loads(raw)
            token, expires_at = saved["access_token"], float(saved["expires_at"])
        except (ValueError, KeyError, TypeError):
            log.warning("anilist_stored_token_unreadable", username=self.username)
            return False
        self._token.accept(token, expires_at)
        return self._token.check() is AuthState.AUTHENTICATED

    async def _fetch_viewer(self) -> None:
        data = await self._graphql(_VIEWER_QUERY, authenticate=False)
        try:
            viewer = data["Viewer"]
            self._token.user_id = int(viewer["id"])
            self._token.username = str(viewer["name"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"Malformed AniList viewer response: {exc!r}") from exc

        if self._token.username.casefold() != self.username.casefold():
            actual = self._token.username
            log.warning("anilist_account_mismatch", expected=self.username, actual=actual)
            self._credentials.set_secret(self._key, "")
            self._credentials.set_secret(self._token_key, "")
            self._token.reset()
            raise AccountMismatchError(self.username, actual)

    async def _authenticate(self) -> bool:
        """Bring the token to AUTHENTICATED; False if AniList rejects the code."""
        code = ""
        if self._token.check() is AuthState.NO_TOKEN:
            if self._restore_token():
                await self._fetch_viewer()
                return True
            code = self._credentials.get_secret(self._key)
        if not code:
            expired = self._token.state is AuthState.EXPIRED
            reason = "access token expired" if expired else "no authorization code"
            code = await self._reauth.request(NAME, self.username, reason)

        if not await self._exchange(code):
            return False
        await self._fetch_viewer()
        return True

    async def _ensure_token(self) -> str:
        if self._token.check() is not AuthState.AUTHENTICATED and not await self._authenticate():
            code = await self._reauth.request(NAME, self.username, "authorization code rejected")
            if not await self._exchange(code):
                raise AuthError("AniList rejected the authorization code")
            await self._fetch_viewer()
        assert self._token.access_token is not None  # noqa: S101
        return self._token.access_token

    # -- request helper --

    async def _graphql(
        self,
        query: str,
        variables: dict | None = None,
        *,
        authenticate: bool = True,
        allow_missing: bool = False,
    ) -> dict | None:
        token = await self._ensure_token() if authenticate else self._token.access_token
        resp = await self._send(
            "POST",
            _API_URL,
            expect=(200, 400, 404),
            json={"query": query, "variables": variables or {}},
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProtocolError(f"AniList returned non-JSON body ({resp.status_code})") from exc

        errors = body.get("errors")
        if errors:
            if resp.status_code == 404 and allow_missing:
                return None
            message = "; ".join(str(e.get("message", e)) for e in errors)
            raise RejectedByProvider(NAME, message)
        if not isinstance(body.get("data"), dict):
            raise ProtocolError("AniList response has no data object")
        return body["data"]

    async def _entry_id(self, media_id: int) -> int | None:
        await self._ensure_token()
        data = await self._graphql(
            _ENTRY_ID_QUERY,
            {"userId": self._token.user_id, "mediaId": media_id},
            allow_missing=True,
        )
        if not data or not data.get("MediaList"):
            return None
        return int(data["MediaList"]["id"])

    # -- generic operations --

    async def _add(self, media_id: int, status: ListStatus) -> bool:
        if status is ListStatus.NOT_IN_LIST:
            raise ValidationError("Cannot add an entry with status NOT_IN_LIST")
        data = await self._graphql(_ADD_MUTATION, {"mediaId": media_id, "status": STATUSES.to_native(status)})
        assert data is not None  # noqa: S101
        log.info("anilist_entry_added", media_id=media_id, status=status.name)
        return data["SaveMediaListEntry"]["mediaId"] == media_id

    async def _remove(self, media_id: int) -> bool:
        entry_id = await self._entry_id(media_id)
        if entry_id is None:
            log.debug("anilist_remove_absent", media_id=media_id)
            return True
        data = await self._graphql(_DELETE_MUTATION, {"id": entry_id})
        assert data is not None  # noqa: S101
        log.info("anilist_entry_removed", media_id=media_id)
        return bool(data["DeleteMediaListEntry"]["deleted"])

    async def _update(self, entry: Anime | Manga) -> bool:
        if entry.list_status is ListStatus.NOT_IN_LIST:
            return await self._remove(entry.id)
        entry_id = await self._entry_id(entry.id)
        if entry_id is None:
            return False

        if isinstance(entry, Anime):
            progress, volumes = entry.current_episode, None
        else:
            progress, volumes = entry.current_chapter, entry.current_volume
        await self._graphql(
            _UPDATE_MUTATION,
            {
                "id": entry_id,
                "status": STATUSES.to_native(entry.list_status),
                "scoreRaw": entry.user_score * 10,
                "progress": progress,
                "progressVolumes": volumes,
                "notes": entry.notes,
                "startedAt": _to_fuzzy_date(entry.user_start),
                "completedAt": _to_fuzzy_date(entry.user_end),
            },
        )
        log.info("anilist_entry_updated", media_id=entry.id, status=entry.list_status.name)
        return True

    async def _find(self, keywords: str, kind: MediaKind) -> list[dict]:
        media: list[dict] = []
        for page in range(1, _FIND_MAX_PAGES + 1):
            data = await self._graphql(
                _FIND_QUERY,
                {"search": keywords, "type": kind, "page": page, "perPage": _FIND_PAGE_SIZE},
            )
            assert data is not None  # noqa: S101
            media.extend(data["Page"]["media"])
            if not data["Page"]["pageInfo"]["hasNextPage"]:
                break
        return media

    async def _pull(self, kind: MediaKind) -> list[dict]:
        await self._ensure_token()
        items: list[dict] = []
        chunk = 1
        while True:
            data = await self._graphql(
                _PULL_QUERY,
                {"userId": self._token.user_id, "type": kind, "chunk": chunk, "perChunk": _PULL_CHUNK_SIZE},
            )
            assert data is not None  # noqa: S101
            collection = data["MediaListCollection"]
            for group in collection["lists"]:
                items.extend(group["entries"])
            if not collection.get("hasNextChunk"):
                break
            chunk += 1
        log.info("anilist_list_pulled", kind=kind, count=len(items))
        return items

    # -- public API --

    async def verify_credentials(self) -> bool:
        if self._token.check() is AuthState.AUTHENTICATED:
            return True
        return await self._authenticate()

    async def add_anime(self, anime_id: int, status: ListStatus = ListStatus.CURRENT) -> bool:
        return await self._add(anime_id, status)

    async def remove_anime(self, anime_id: int) -> bool:
        return await self._remove(anime_id)

    async def update_anime(self, anime: Anime) -> bool:
        return await self._update(anime)

    async def find_anime(self, keywords: str) -> list[Anime]:
        return [_to_anime(m) for m in await self._find(keywords, "ANIME")]

    async def pull_anime_list(self) -> list[Anime]:
        result = []
        for item in await self._pull("ANIME"):
            anime = _to_anime(item["media"])
            _apply_user_fields(anime, item)
            result.append(anime)
        return result

    async def add_manga(self, manga_id: int, status: ListStatus = ListStatus.CURRENT) -> bool:
        return await self._add(manga_id, status)

    async def remove_manga(self, manga_id: int) -> bool:
        return await self._remove(manga_id)

    async def update_manga(self, manga: Manga) -> bool:
        return await self._update(manga)

    async def find_manga(self, keywords: str) -> list[Manga]:
        return [_to_manga(m) for m in await self._find(keywords, "MANGA")]

    async def pull_manga_list(self) -> list[Manga]:
        result = []
        for item in await self._pull("MANGA"):
            manga = _to_manga(item["media"])
            _apply_user_fields(manga, item)
            result.append(manga)
        return result
