"""Provider adapters and the capability protocols they implement."""

from __future__ import annotations

from anisync.auth import ReauthorizationChannel
from anisync.config import AppConfig
from anisync.credentials import CredentialStore
from anisync.providers.anilist import AniListProvider
from anisync.providers.base import AnimeProvider, MangaProvider, StatusMapping
from anisync.providers.kitsu import KitsuProvider
from anisync.providers.myanimelist import MyAnimeListProvider

Provider = AniListProvider | KitsuProvider | MyAnimeListProvider

__all__ = [
    "AniListProvider",
    "AnimeProvider",
    "KitsuProvider",
    "MangaProvider",
    "MyAnimeListProvider",
    "Provider",
    "StatusMapping",
    "create_provider",
]


def create_provider(
    config: AppConfig,
    provider: str,
    username: str,
    credentials: CredentialStore,
    reauth: ReauthorizationChannel,
) -> Provider:
    """Build the adapter for *provider* from the application config."""
    if provider == AniListProvider.name:
        return AniListProvider(config.anilist, username, credentials, reauth)
    if provider == KitsuProvider.name:
        return KitsuProvider(config.kitsu, username, credentials)
    if provider == MyAnimeListProvider.name:
        return MyAnimeListProvider(username, credentials)
    msg = f"Unknown provider: {provider!r}"
    raise ValueError(msg)
