"""Normalized entry model shared by every provider.

An :class:`Entry` carries two groups of facts: catalog facts supplied by the
provider (titles, synopsis, public score ...) and the signed-in user's list
facts (status, score, dates, notes).  Identity is ``(kind, id, provider)``
only, so an entry refreshed from a new pull compares equal to the instance
already held by a list.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import IntEnum, StrEnum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from anisync.errors import IdentityMismatchError, ScoreRangeError

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ListStatus(IntEnum):
    """The user's relationship to a title.

    The gap at 5 matches the legacy numeric encoding MyAnimeList transmits.
    """

    NOT_IN_LIST = 0
    CURRENT = 1
    COMPLETED = 2
    ON_HOLD = 3
    DROPPED = 4
    PLANNED = 6


class ShowType(StrEnum):
    TV = "tv"
    MOVIE = "movie"
    OVA = "ova"
    ONA = "ona"
    SPECIAL = "special"
    MUSIC = "music"


class AnimeStatus(StrEnum):
    AIRING = "airing"
    COMPLETED = "completed"
    NOT_YET_AIRED = "not_yet_aired"


class MangaType(StrEnum):
    MANGA = "manga"
    NOVEL = "novel"
    ONE_SHOT = "one_shot"
    DOUJINSHI = "doujinshi"
    MANHWA = "manhwa"
    MANHUA = "manhua"
    COMIC = "comic"


class MangaStatus(StrEnum):
    PUBLISHING = "publishing"
    FINISHED = "finished"
    NOT_YET_PUBLISHED = "not_yet_published"


class Cour(StrEnum):
    WINTER = "winter"
    SPRING = "spring"
    SUMMER = "summer"
    FALL = "fall"


# ---------------------------------------------------------------------------
# Season helper
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Season:
    """A broadcast season, e.g. ``Spring 2016``."""

    cour: Cour
    year: int

    @classmethod
    def from_date(cls, value: date) -> Season:
        """Season a title starting on *value* belongs to.

        Winter runs January to March, Spring April and May, Summer June to
        August and Fall September to December.
        """
        if value.month < 4:
            cour = Cour.WINTER
        elif value.month < 6:
            cour = Cour.SPRING
        elif value.month < 9:
            cour = Cour.SUMMER
        else:
            cour = Cour.FALL
        return cls(cour=cour, year=value.year)

    def __str__(self) -> str:
        return f"{self.cour.value.capitalize()} {self.year}"


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class Entry(BaseModel):
    """Base entry: identity, catalog facts and user-list facts."""

    model_config = ConfigDict(validate_assignment=True)

    kind: ClassVar[str] = "entry"

    id: int = Field(frozen=True)
    provider: str = Field(frozen=True)

    # catalog facts
    title: str = ""
    english_title: str = ""
    japanese_title: str = ""
    synonyms: list[str] = Field(default_factory=list)
    synopsis: str = ""
    image_url: str = ""
    public_score: float = Field(default=0.0, ge=0.0, le=10.0)

    # user-list facts
    list_status: ListStatus = ListStatus.NOT_IN_LIST
    user_score: int = 0
    user_start: date | None = None
    user_end: date | None = None
    notes: str = ""

    @field_validator("user_score")
    @classmethod
    def _check_score(cls, value: int) -> int:
        # ScoreRangeError is not a ValueError, so pydantic lets it through
        # unwrapped and the previous value stays in place.
        if not 0 <= value <= 10:
            raise ScoreRangeError(value)
        return value

    @field_validator("synonyms")
    @classmethod
    def _dedupe_synonyms(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(s for s in value if s))

    # -- identity ------------------------------------------------------------

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entry):
            return NotImplemented
        return type(self) is type(other) and self.id == other.id and self.provider == other.provider

    def __hash__(self) -> int:
        return hash((self.kind, self.id, self.provider))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id}, provider={self.provider!r}, title={self.title!r})"

    def replace(self, other: Entry) -> None:
        """Copy every catalog and user field of *other* into this instance.

        Raises :class:`IdentityMismatchError` unless *other* is the same kind
        of entry with the same ``id`` and ``provider``.
        """
        if type(other) is not type(self) or other.id != self.id or other.provider != self.provider:
            msg = f"Cannot replace {self!r} with {other!r}"
            raise IdentityMismatchError(msg)
        for name, value in other.model_dump(exclude={"id", "provider"}).items():
            setattr(self, name, value)


class Anime(Entry):
    kind: ClassVar[str] = "anime"

    episodes: int = 0
    current_episode: int = 0
    show_type: ShowType = ShowType.TV
    running_status: AnimeStatus = AnimeStatus.NOT_YET_AIRED
    start_date: date | None = None
    end_date: date | None = None
    episode_air_dates: dict[int, date] = Field(default_factory=dict)

    @property
    def season(self) -> Season | None:
        return Season.from_date(self.start_date) if self.start_date else None


class Manga(Entry):
    kind: ClassVar[str] = "manga"

    chapters: int = 0
    volumes: int = 0
    current_chapter: int = 0
    current_volume: int = 0
    manga_type: MangaType = MangaType.MANGA
    running_status: MangaStatus = MangaStatus.NOT_YET_PUBLISHED
    start_date: date | None = None
    end_date: date | None = None

    @property
    def season(self) -> Season | None:
        return Season.from_date(self.start_date) if self.start_date else None


class AnimeEpisode(BaseModel):
    """A single episode as listed by the provider's episode endpoint."""

    number: int
    season_number: int = 1
    air_date: date | None = None
    english_title: str = ""
    japanese_title: str = ""
    synopsis: str = ""
