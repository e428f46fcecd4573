"""
CLI for the asset cache.

Commands:
    assetcache fetch URL --namespace NS - Get an asset, downloading it on a miss
    assetcache prefetch URL --namespace NS - Warm the cache without output
    assetcache stats - Show cached records
    assetcache delete NS - Remove one record
    assetcache clear - Remove every record
    assetcache purge - Remove expired records
    assetcache config - Show current configuration
    assetcache version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Awaitable, Callable, Optional, TypeVar

import orjson
import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn
from rich.table import Table

from assetcache import __version__
from assetcache.cli.progress import FetchProgress
from assetcache.config import Settings, clear_settings_cache, get_settings
from assetcache.exceptions import AssetCacheError, StorageError
from assetcache.logging import setup_logging
from assetcache.service import CacheService
from assetcache.types import DEFAULT_VERSION, CacheKey

app = typer.Typer(
    name="assetcache",
    help="Offline cache for large binary assets",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

T = TypeVar("T")


def _get_settings_safe() -> Settings | None:
    """Get settings, returning None if configuration is invalid."""
    try:
        clear_settings_cache()
        return get_settings()
    except Exception:
        return None


def _load_settings() -> Settings:
    settings = _get_settings_safe()
    if settings is None:
        error_console.print(
            "[red]Error:[/red] Configuration is invalid. "
            "Run 'assetcache config' to see what's wrong."
        )
        raise typer.Exit(1)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE, console_output=False)
    return settings


def _run(settings: Settings, op: Callable[[CacheService], Awaitable[T]]) -> T:
    """Run op against a service opened from settings."""

    async def runner() -> T:
        async with CacheService.from_settings(settings) as service:
            return await op(service)

    try:
        return asyncio.run(runner())
    except AssetCacheError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _make_key(namespace: str, version: str) -> CacheKey:
    try:
        return CacheKey(namespace, version)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _format_age(age_ms: int) -> str:
    seconds = age_ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h {seconds % 3600 // 60}m"
    return f"{seconds // 86400}d {seconds % 86400 // 3600}h"


NamespaceOption = Annotated[
    str, typer.Option("--namespace", "-n", help="Asset family, e.g. an emulator system")
]
VersionOption = Annotated[
    str, typer.Option("--version", "-v", help="Asset version")
]


@app.command()
def fetch(
    url: Annotated[str, typer.Argument(help="URL of the asset")],
    namespace: NamespaceOption,
    version: VersionOption = DEFAULT_VERSION,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the asset to this file"),
    ] = None,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", "-t", help="Download timeout in seconds"),
    ] = None,
) -> None:
    """Get an asset from the cache, downloading and caching it on a miss."""
    settings = _load_settings()
    key = _make_key(namespace, version)

    async def op(service: CacheService) -> bytes:
        with FetchProgress(console, key.storage_key) as progress:
            try:
                data = await service.get_or_fetch(
                    key, url, progress.update, timeout=timeout
                )
            except StorageError as e:
                if e.payload is None:
                    progress.mark_error(str(e))
                    raise
                progress.mark_error(f"Not cached: {e}")
                return e.payload
            except AssetCacheError as e:
                progress.mark_error(str(e))
                raise
            progress.mark_complete()
            return data

    data = _run(settings, op)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(data)
        console.print(f"[bold]Saved to:[/bold] {output} ({_format_size(len(data))})")
    else:
        console.print(f"[bold]{key.storage_key}:[/bold] {_format_size(len(data))}")


@app.command()
def prefetch(
    url: Annotated[str, typer.Argument(help="URL of the asset")],
    namespace: NamespaceOption,
    version: VersionOption = DEFAULT_VERSION,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", "-t", help="Download timeout in seconds"),
    ] = None,
) -> None:
    """Download an asset into the cache unless it is already cached."""
    settings = _load_settings()
    key = _make_key(namespace, version)

    async def op(service: CacheService) -> None:
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(f"Prefetching {key.storage_key}", total=100)
            await service.prefetch(
                key,
                url,
                lambda percent: progress.update(task, completed=percent),
                timeout=timeout,
            )

    _run(settings, op)
    console.print(f"[green]Cached[/green] {key.storage_key}")


@app.command()
def stats(
    as_json: Annotated[
        bool, typer.Option("--json", help="Print statistics as JSON")
    ] = False,
) -> None:
    """Show cached records with size and age."""
    settings = _load_settings()
    snapshot = _run(settings, lambda service: service.get_stats())

    if as_json:
        console.print_json(orjson.dumps(snapshot.to_dict()).decode("utf-8"))
        return

    table = Table(title="Cached assets", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Age", justify="right")
    table.add_column("State")

    for record in snapshot.records:
        state = "[red]expired[/red]" if record.expired else "[green]valid[/green]"
        table.add_row(
            record.key.storage_key,
            _format_size(record.size_bytes),
            _format_age(record.age_ms),
            state,
        )

    console.print(table)
    console.print(
        f"[bold]Total:[/bold] {snapshot.record_count} records, "
        f"{_format_size(snapshot.total_size_bytes)} of "
        f"{_format_size(settings.MAX_CACHE_BYTES)}"
    )


@app.command()
def delete(
    namespace: Annotated[str, typer.Argument(help="Asset family")],
    version: VersionOption = DEFAULT_VERSION,
) -> None:
    """Remove one cached asset."""
    settings = _load_settings()
    key = _make_key(namespace, version)
    removed = _run(settings, lambda service: service.delete(key))
    if removed:
        console.print(f"[green]Deleted[/green] {key.storage_key}")
    else:
        console.print(f"[yellow]Not cached:[/yellow] {key.storage_key}")


@app.command()
def clear(
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Remove every cached asset."""
    settings = _load_settings()
    if not yes:
        typer.confirm(f"Remove all cached assets in {settings.CACHE_DIR}?", abort=True)
    removed = _run(settings, lambda service: service.clear())
    console.print(f"[green]Removed[/green] {removed} records")


@app.command()
def purge() -> None:
    """Remove expired assets."""
    settings = _load_settings()
    removed = _run(settings, lambda service: service.purge_expired())
    console.print(f"[green]Purged[/green] {removed} expired records")


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    settings = _get_settings_safe()

    if settings is None:
        error_console.print("[red]Configuration is invalid.[/red]")
        error_console.print()
        error_console.print("Check the ASSET_CACHE_* environment variables:")
        error_console.print("  - ASSET_CACHE_TTL_SECONDS and ASSET_CACHE_MAX_CACHE_BYTES must be positive")
        error_console.print("  - ASSET_CACHE_OVERSIZED_POLICY must be 'reject' or 'store'")
        raise typer.Exit(1)

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"assetcache version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
