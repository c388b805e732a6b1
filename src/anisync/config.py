"""Configuration management for anisync."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, SecretStr

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".anisync"
_CONFIG_FILE = "config.toml"
_CREDENTIALS_FILE = "credentials.toml"
_LOG_DIR = "logs"
_LISTS_DIR = "lists"

ProviderName = Literal["AniList", "Kitsu", "MyAnimeList"]


def get_base_dir() -> Path:
    """Return the base directory for all anisync runtime files (~/.anisync/)."""
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class AppSection(BaseModel):
    """Process-wide settings."""

    log_level: str = Field(default="info", description="Logging level")
    cache_dir: str = Field(default="", description="Override for the list cache directory")


class AniListConfig(BaseModel):
    """AniList client registration used for the authorization-code grant."""

    client_id: str = Field(default="", description="AniList API client ID")
    client_secret: SecretStr = Field(default=SecretStr(""), description="AniList API client secret")
    redirect_uri: str = Field(
        default="https://anilist.co/api/v2/oauth/pin",
        description="OAuth redirect URI",
    )


class KitsuConfig(BaseModel):
    """Kitsu client registration used for the password grant."""

    client_id: str = Field(default="", description="Kitsu API client ID")
    client_secret: SecretStr = Field(default=SecretStr(""), description="Kitsu API client secret")


class AccountConfig(BaseModel):
    """The account a media kind is synchronised with."""

    provider: ProviderName = Field(default="AniList", description="Provider the list lives on")
    username: str = Field(default="", description="Account name on that provider")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    app: AppSection = Field(default_factory=AppSection)
    anilist: AniListConfig = Field(default_factory=AniListConfig)
    kitsu: KitsuConfig = Field(default_factory=KitsuConfig)
    anime: AccountConfig = Field(default_factory=AccountConfig)
    manga: AccountConfig = Field(default_factory=AccountConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    @property
    def lists_dir(self) -> Path:
        if self.app.cache_dir:
            return Path(self.app.cache_dir).expanduser()
        return self.base_dir / _LISTS_DIR

    @property
    def credentials_path(self) -> Path:
        return self.base_dir / _CREDENTIALS_FILE

    def account(self, kind: Literal["anime", "manga"]) -> AccountConfig:
        return self.anime if kind == "anime" else self.manga

    def is_anilist_configured(self) -> bool:
        """Return True if the AniList client registration is set."""
        return bool(self.anilist.client_id and self.anilist.client_secret.get_secret_value())


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base, log and list directories if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LISTS_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config() -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string (tables of scalars)."""
    lines: list[str] = []
    for section_name in AppConfig.model_fields:
        section_model: BaseModel = getattr(config, section_name)
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
