"""Command-line interface for anisync."""

from __future__ import annotations

import asyncio
import json
import typing
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Literal

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from anisync.auth import ReauthorizationChannel, ReauthRequest
from anisync.config import ensure_dirs, load_config, save_config
from anisync.credentials import FileCredentialStore, credential_key
from anisync.errors import AniSyncError
from anisync.logging import setup_logging
from anisync.models import Anime, Entry, ListStatus, Manga
from anisync.providers import create_provider
from anisync.providers.anilist import authorize_url
from anisync.storage import ListStore, list_cache_path
from anisync.sync import AnimeList, MangaList, MediaList

app = typer.Typer(
    name="anisync",
    help="Keep anime and manga lists in sync with AniList, Kitsu and MyAnimeList.",
    add_completion=False,
)
console = Console()

Kind = Literal["anime", "manga"]
_KINDS: tuple[Kind, ...] = ("anime", "manga")
_PROVIDERS = ("AniList", "Kitsu", "MyAnimeList")


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _check_kind(kind: str) -> Kind:
    if kind not in _KINDS:
        console.print(f"[red]Unknown kind:[/red] {kind} [dim](use anime or manga)[/dim]")
        raise typer.Exit(1)
    return typing.cast(Kind, kind)


def _parse_status(raw: str) -> ListStatus:
    try:
        return ListStatus[raw.upper().replace("-", "_")]
    except KeyError:
        names = ", ".join(s.name.lower() for s in ListStatus)
        console.print(f"[red]Unknown status:[/red] {raw} [dim](choose from: {names})[/dim]")
        raise typer.Exit(1) from None


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run *coro*, turning anisync errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except AniSyncError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc


async def _prompt_reauth(request: ReauthRequest) -> None:
    cfg = load_config()
    console.print(
        f"\n[yellow]{request.provider} needs a new authorization code[/yellow] "
        f"for [bold]{request.username}[/bold] ({request.reason})."
    )
    console.print(f"Open this URL and paste the code it shows:\n  {authorize_url(cfg.anilist)}\n")
    code = await asyncio.to_thread(Prompt.ask, "Authorization code", console=console, password=True, default="")
    request.supply(code)


@asynccontextmanager
async def _open_list(kind: Kind) -> AsyncIterator[MediaList[Any]]:
    """Open the configured account's list for *kind*, loading or building its cache."""
    cfg = load_config()
    account = cfg.account(kind)
    if not account.username:
        console.print(f"[red]No {kind} account configured.[/red]  Run [bold]anisync login[/bold] first.")
        raise typer.Exit(1)

    ensure_dirs()
    setup_logging(cfg.app.log_level, cfg.log_dir)
    credentials = FileCredentialStore(cfg.credentials_path)
    reauth = ReauthorizationChannel(_prompt_reauth)
    provider = create_provider(cfg, account.provider, account.username, credentials, reauth)
    list_cls = AnimeList if kind == "anime" else MangaList
    path = list_cache_path(cfg.lists_dir, kind, account.provider, account.username)

    store = ListStore(path)
    try:
        async with provider:
            yield await list_cls.load(provider, store)
    finally:
        await store.close()


def _progress(entry: Entry) -> str:
    if isinstance(entry, Anime):
        total = entry.episodes or "?"
        return f"{entry.current_episode}/{total}"
    if isinstance(entry, Manga):
        total = entry.chapters or "?"
        return f"{entry.current_chapter}/{total}"
    return ""


def _entry_table(title: str, entries: list[Entry], *, user_fields: bool = True) -> Table:
    table = Table(title=title)
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Title")
    if user_fields:
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Score", justify="right")
    else:
        table.add_column("Season")
        table.add_column("Public", justify="right")
    for entry in entries:
        if user_fields:
            table.add_row(
                str(entry.id),
                entry.title,
                entry.list_status.name.lower(),
                _progress(entry),
                str(entry.user_score or "-"),
            )
        else:
            season = entry.season if isinstance(entry, (Anime, Manga)) else None
            table.add_row(str(entry.id), entry.title, str(season or "-"), f"{entry.public_score:.1f}")
    return table


# ---------------------------------------------------------------------------
# Account commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    provider: str = typer.Argument(help="AniList, Kitsu or MyAnimeList"),
    username: str = typer.Argument(help="Account name on the provider"),
    kind: str = typer.Option("all", "--kind", "-k", help="Use this account for anime, manga or all"),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Check the credentials right away"),
) -> None:
    """Store credentials for an account and make it the default list."""
    if provider not in _PROVIDERS:
        console.print(f"[red]Unknown provider:[/red] {provider} [dim](choose from: {', '.join(_PROVIDERS)})[/dim]")
        raise typer.Exit(1)
    kinds = _KINDS if kind == "all" else (_check_kind(kind),)

    cfg = load_config()
    if provider == "AniList":
        console.print(f"Open this URL and paste the code it shows:\n  {authorize_url(cfg.anilist)}\n")
        secret = Prompt.ask("Authorization code", console=console, password=True)
    else:
        secret = Prompt.ask("Password", console=console, password=True)

    ensure_dirs()
    credentials = FileCredentialStore(cfg.credentials_path)
    credentials.set_secret(credential_key(provider, username), secret)
    for k in kinds:
        account = cfg.account(k)
        account.provider = provider  # type: ignore[assignment]
        account.username = username
    save_config(cfg)

    if verify:

        async def _verify() -> bool:
            reauth = ReauthorizationChannel(_prompt_reauth)
            async with create_provider(cfg, provider, username, credentials, reauth) as adapter:
                return await adapter.verify_credentials()

        if not _run(_verify()):
            console.print(f"[red]{provider} rejected the credentials for {username}.[/red]")
            raise typer.Exit(1)
    console.print(f"[green]Logged in[/green] as {username} on {provider} ({', '.join(kinds)}).")


# ---------------------------------------------------------------------------
# List commands
# ---------------------------------------------------------------------------


@app.command()
def sync(
    kind: str = typer.Option("all", "--kind", "-k", help="anime, manga or all"),
) -> None:
    """Push queued changes to the provider and refresh the local lists."""
    kinds = _KINDS if kind == "all" else (_check_kind(kind),)
    for k in kinds:

        async def _sync(k: Kind = k) -> str:
            async with _open_list(k) as media_list:
                stats = await media_list.sync()
                return stats.to_json()

        stats = json.loads(_run(_sync()))
        summary = ", ".join(f"{key} {value}" for key, value in stats.items())
        console.print(f"[green]Synced {k}[/green]  [dim]{summary}[/dim]")


@app.command(name="list")
def list_entries(
    kind: str = typer.Option("anime", "--kind", "-k", help="anime or manga"),
    status: str = typer.Option("", "--status", "-s", help="Only show entries with this status"),
) -> None:
    """Show the cached list."""
    k = _check_kind(kind)
    wanted = _parse_status(status) if status else None

    async def _list() -> list[Entry]:
        async with _open_list(k) as media_list:
            entries = media_list.by_status(wanted) if wanted is not None else list(media_list)
            return sorted(entries, key=lambda e: e.title.casefold())

    entries = _run(_list())
    if not entries:
        console.print("[dim]Nothing listed.[/dim]")
        return
    console.print(_entry_table(f"{k.capitalize()} list", entries))


@app.command()
def search(
    keywords: str = typer.Argument(help="Search terms"),
    kind: str = typer.Option("anime", "--kind", "-k", help="anime or manga"),
) -> None:
    """Search the provider's catalog."""
    k = _check_kind(kind)

    async def _search() -> list[Entry]:
        async with _open_list(k) as media_list:
            return await media_list.find(keywords)

    results = _run(_search())
    if not results:
        console.print("[dim]No results.[/dim]")
        return
    console.print(_entry_table(f"Results for {keywords!r}", results, user_fields=False))


@app.command()
def add(
    entry_id: int = typer.Argument(help="Provider id of the title"),
    kind: str = typer.Option("anime", "--kind", "-k", help="anime or manga"),
    status: str = typer.Option("current", "--status", "-s", help="List status"),
    now: bool = typer.Option(False, "--now", help="Sync immediately instead of queueing"),
) -> None:
    """Queue a title for adding to the list."""
    k = _check_kind(kind)
    list_status = _parse_status(status)

    async def _add() -> bool:
        async with _open_list(k) as media_list:
            model = Anime if k == "anime" else Manga
            entry = model(id=entry_id, provider=media_list.provider.name, list_status=list_status)
            queued = media_list.add(entry)
            if now:
                await media_list.sync()
            else:
                await media_list.save()
            return queued

    if _run(_add()):
        console.print(f"[green]Added[/green] {k} {entry_id}" + ("" if now else " [dim](queued)[/dim]"))
    else:
        console.print(f"[yellow]{k.capitalize()} {entry_id} is already listed.[/yellow]")


@app.command()
def remove(
    entry_id: int = typer.Argument(help="Provider id of the title"),
    kind: str = typer.Option("anime", "--kind", "-k", help="anime or manga"),
    now: bool = typer.Option(False, "--now", help="Sync immediately instead of queueing"),
) -> None:
    """Queue a title for removal from the list."""
    k = _check_kind(kind)

    async def _remove() -> bool:
        async with _open_list(k) as media_list:
            entry = media_list.get(entry_id)
            if entry is None:
                return False
            media_list.remove(entry)
            if now:
                await media_list.sync()
            else:
                await media_list.save()
            return True

    if _run(_remove()):
        console.print(f"[green]Removed[/green] {k} {entry_id}" + ("" if now else " [dim](queued)[/dim]"))
    else:
        console.print(f"[yellow]{k.capitalize()} {entry_id} is not listed.[/yellow]")


@app.command()
def cover(
    entry_id: int = typer.Argument(help="Provider id of a listed title"),
    output: Path = typer.Option(..., "--output", "-o", help="File to write the image to"),
    kind: str = typer.Option("anime", "--kind", "-k", help="anime or manga"),
) -> None:
    """Download the cover image of a listed title."""
    k = _check_kind(kind)

    async def _cover() -> bytes | None:
        async with _open_list(k) as media_list:
            entry = media_list.get(entry_id)
            if entry is None:
                return None
            return await media_list.provider.fetch_cover(entry)

    image = _run(_cover())
    if image is None:
        console.print(f"[yellow]{k.capitalize()} {entry_id} is not listed.[/yellow]")
        raise typer.Exit(1)
    output.write_bytes(image)
    console.print(f"[green]Saved[/green] cover of {k} {entry_id} to {output} ({len(image)} bytes)")


@app.command()
def history(
    kind: str = typer.Option("anime", "--kind", "-k", help="anime or manga"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of runs to show"),
) -> None:
    """Show recent sync runs of a list."""
    k = _check_kind(kind)
    cfg = load_config()
    account = cfg.account(k)
    path = list_cache_path(cfg.lists_dir, k, account.provider, account.username)
    if not account.username or not path.exists():
        console.print("[yellow]No cache for this list yet.[/yellow]  Run [bold]anisync sync[/bold] first.")
        raise typer.Exit(1)

    async def _history() -> list:
        async with ListStore(path) as store:
            return await store.list_sync_runs(limit=limit)

    runs = _run(_history())
    table = Table(title=f"{k.capitalize()} sync runs ({account.provider}/{account.username})")
    table.add_column("#", justify="right")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Details")
    colors = {"completed": "green", "failed": "red", "running": "blue"}
    for run in runs:
        color = colors.get(run.status, "white")
        details = run.error_message or run.stats_json or ""
        table.add_row(str(run.id), run.started_at.strftime("%Y-%m-%d %H:%M"), f"[{color}]{run.status}[/{color}]", details)
    console.print(table)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def _mask(secret: SecretStr) -> str:
    """Return '***' if the secret is non-empty, else '(not set)'."""
    return "[bold]***[/bold]" if secret.get_secret_value() else "[dim](not set)[/dim]"


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration (secrets are masked)."""
    cfg = load_config()

    console.print("\n[bold]Current Configuration[/bold]\n")

    console.print("[bold cyan]\\[app][/bold cyan]")
    console.print(f"  log_level = {cfg.app.log_level}")
    console.print(f"  cache_dir = {cfg.app.cache_dir or '[dim](default)[/dim]'}")

    console.print("\n[bold cyan]\\[anilist][/bold cyan]")
    console.print(f"  client_id     = {cfg.anilist.client_id or '[dim](not set)[/dim]'}")
    console.print(f"  client_secret = {_mask(cfg.anilist.client_secret)}")
    console.print(f"  redirect_uri  = {cfg.anilist.redirect_uri}")

    console.print("\n[bold cyan]\\[kitsu][/bold cyan]")
    console.print(f"  client_id     = {cfg.kitsu.client_id or '[dim](not set)[/dim]'}")
    console.print(f"  client_secret = {_mask(cfg.kitsu.client_secret)}")

    for k in _KINDS:
        account = cfg.account(k)
        console.print(f"\n[bold cyan]\\[{k}][/bold cyan]")
        console.print(f"  provider = {account.provider}")
        console.print(f"  username = {account.username or '[dim](not set)[/dim]'}")
    console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. anime.provider"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. anisync config set app.log_level debug)."""
    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. app.log_level).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts

    cfg = load_config()
    sections = type(cfg).model_fields
    if section_name not in sections:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(sections)}[/dim]")
        raise typer.Exit(1)

    section_model = getattr(cfg, section_name)
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    section_data = section_model.model_dump(mode="python")
    section_data[field_name] = coerced
    setattr(cfg, section_name, type(section_model)(**section_data))
    save_config(cfg)

    display_val = "***" if isinstance(coerced, SecretStr) else coerced
    console.print(f"[green]Set[/green] {key} = {display_val}")


def _coerce_value(raw: str, field_type: Any) -> object:
    """Coerce a string value to the expected field type."""
    origin = typing.get_origin(field_type)
    args = typing.get_args(field_type)

    if field_type is SecretStr:
        return SecretStr(raw)

    if field_type is int:
        return int(raw)

    if origin is typing.Literal:
        if raw not in args:
            msg = f"'{raw}' is not a valid option (choose from: {', '.join(str(a) for a in args)})"
            raise ValueError(msg)
        return raw

    return raw
