import logging
import time

import click
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.progress import Progress
from rich.table import Table
from rich.text import Text

from player.cache import AudioCacheManager
from player.connectivity import Connectivity
from player.context import MPV_AVAILABLE, PlayerContext
from player.events import Topic
from player.library import LibraryManager
from shared.config import load_config
from shared.errors import PlaybackError
from shared.models import PlaybackMode, ProcessingState
from shared.storage import LibraryStore
from shared.sync_api import SyncApiClient

console = Console()


def _format_time(seconds: float) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def _format_size(usage_bytes: int) -> str:
    if usage_bytes > 1024**3:
        return f"{usage_bytes / 1024**3:.2f} GB"
    return f"{usage_bytes / 1024**2:.2f} MB"


def _library(config) -> LibraryManager:
    api = SyncApiClient(config.api_base_url, timeout=config.network_timeout,
                        probe_timeout=config.probe_timeout)
    return LibraryManager(api, LibraryStore())


def _tracks_for(library: LibraryManager, playlist_id: str):
    """Stored tracks of a playlist, fetched from the API when none are stored."""
    tracks = library.playable_tracks(playlist_id)
    if not tracks:
        library.refresh_playlist(playlist_id)
        tracks = library.playable_tracks(playlist_id)
    return tracks


def _cache(config, api: SyncApiClient) -> AudioCacheManager:
    return AudioCacheManager(
        config.cache_dir,
        stream_url=api.stream_url,
        session=api.session,
        connectivity=Connectivity(probe=api.is_reachable),
        max_size_bytes=config.cache_max_size_bytes,
        attempts=config.download_attempts,
        timeout=config.network_timeout,
    )


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              help="Path to config.json")
@click.option('-v', '--verbose', is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, config_path, verbose):
    """🎵 Cadence Player"""
    config = load_config(config_path)
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = config


@cli.command()
@click.argument('playlist_id')
@click.pass_obj
def tracks(config, playlist_id):
    """List tracks in a synced playlist."""
    library = _library(config)
    try:
        listing = library.refresh_playlist(playlist_id)
    except PlaybackError as e:
        console.print(f"[yellow]Could not refresh from server ({e}), showing stored tracks.[/yellow]")
        listing = library.playlist_tracks(playlist_id)

    if not listing:
        console.print("[yellow]Playlist is empty.[/yellow]")
        return

    table = Table(title=f"Playlist {playlist_id} ({len(listing)} tracks)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", style="bold white")
    table.add_column("Artist", style="green")
    table.add_column("Status", style="magenta")

    for t in listing:
        if t.is_ignored:
            status = "ignored"
        elif t.has_error:
            status = f"[red]{t.error_message or 'error'}[/red]"
        else:
            status = ""
        table.add_row(t.id[:12], t.title, t.artist, status)

    console.print(table)


@cli.command()
@click.argument('playlist_id')
@click.option('--shuffle', is_flag=True, help="Start in shuffle mode")
@click.pass_obj
def play(config, playlist_id, shuffle):
    """Play a synced playlist. Ctrl-C stops."""
    if not MPV_AVAILABLE:
        console.print(Panel.fit(
            "[red bold]Missing System Dependency: libmpv[/red bold]\n\n"
            "The music player requires the [cyan]libmpv[/cyan] library to work.\n\n"
            "Please install it:\n"
            "• Ubuntu/Debian: [green]sudo apt install libmpv1[/green]\n"
            "• Fedora: [green]sudo dnf install mpv-libs[/green]\n"
            "• Arch: [green]sudo pacman -S mpv[/green]",
            border_style="red"
        ))
        return

    try:
        player = PlayerContext.create(config)
    except Exception as e:
        console.print(f"[red]Error initializing player: {e}[/red]")
        return

    notices = []
    player.bus.subscribe(Topic.NOTICE, notices.append)

    try:
        playlist = _tracks_for(player.library, playlist_id)
        if shuffle:
            player.queue.set_mode(PlaybackMode.SHUFFLE)
        started = player.orchestrator.start_playlist(playlist)
        if started.done() and started.exception() is not None:
            console.print(f"[yellow]{started.exception()}[/yellow]")
            return

        with Live(refresh_per_second=4) as live:
            while True:
                track = player.orchestrator.current_track
                state = player.orchestrator.state
                status = Text()
                if track is not None:
                    status.append(f"{track.title}\n", style="bold green")
                    status.append(f"{track.artist}\n", style="cyan")
                status.append(f"{_format_time(state.position)} ", style="cyan")
                status.append(f"[{state.processing_state.value}] ", style="magenta")
                status.append(f"buffered {int(state.buffering_fraction * 100)}%", style="blue")
                if notices:
                    status.append(f"\n{notices[-1]}", style="yellow")
                live.update(Panel(status, title=f"Now Playing ({player.orchestrator.mode.value})"))
                if state.processing_state == ProcessingState.IDLE and notices:
                    break
                time.sleep(0.25)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
    except PlaybackError as e:
        console.print(f"[red]{e}[/red]")
    finally:
        player.close()


@cli.command()
@click.argument('url')
@click.option('--wait', is_flag=True, help="Poll the sync job until it finishes")
@click.pass_obj
def sync(config, url, wait):
    """Add a playlist by URL and start syncing it."""
    library = _library(config)
    try:
        playlist, job = library.add_playlist(url)
    except (ValueError, PlaybackError) as e:
        console.print(f"[red]Error adding playlist: {e}[/red]")
        return

    console.print(f"[green]Added \"{playlist.name}\". Songs are syncing in the background.[/green]")
    if not wait:
        console.print(f"Job: [cyan]{job.id}[/cyan]")
        return

    with Progress() as progress:
        task = progress.add_task("Syncing...", total=100)

        def on_progress(update):
            progress.update(task, completed=update.progress * 100,
                            description=f"Syncing ({update.status})")

        final = library.poll_sync(job.id, playlist.id, on_progress=on_progress)

    if final is None:
        console.print("[red]Could not get sync status.[/red]")
    elif final.is_complete:
        errors = library.store.load_track_errors(playlist.id)
        if errors:
            console.print(f"[yellow]Sync completed with {len(errors)} song errors[/yellow]")
        else:
            console.print("[green]✓ Playlist sync completed successfully![/green]")
    elif final.is_error:
        console.print(f"[red]Error syncing playlist: {final.error or 'Unknown error'}[/red]")
    else:
        console.print(f"[yellow]Sync still {final.status}; check again later.[/yellow]")


@cli.command()
@click.argument('playlist_id')
@click.option('--limit', default=10, show_default=True, help="Maximum tracks to download")
@click.pass_obj
def preload(config, playlist_id, limit):
    """Download tracks for offline use."""
    library = _library(config)
    try:
        playlist = _tracks_for(library, playlist_id)
    except PlaybackError as e:
        console.print(f"[red]Cannot load playlist: {e}[/red]")
        return
    playlist = [t for t in playlist if not t.is_ignored]
    if not playlist:
        console.print("[yellow]No tracks found to download.[/yellow]")
        return

    cache = _cache(config, library.api)
    try:
        console.print(f"[bold]Downloading up to {limit} of {len(playlist)} tracks...[/bold]")
        with console.status("Downloading..."):
            count = cache.preload_batch(playlist, limit)
        console.print(f"[green]✓ Downloaded {count} tracks.[/green]")
    finally:
        cache.close()


@cli.command()
@click.pass_obj
def cache_status(config):
    """Show cache usage stats."""
    api = SyncApiClient(config.api_base_url)
    cache = _cache(config, api)
    try:
        usage_bytes = cache.total_size()
        console.print(Panel.fit(
            f"[bold]Cache Status[/bold]\n\n"
            f"Usage: [green]{_format_size(usage_bytes)}[/green] / {_format_size(cache.max_size_bytes)}\n"
            f"Tracks: {len(cache.cached_ids())}\n"
            f"Location: {cache.media_dir}",
            title=" Offline Storage "
        ))
    finally:
        cache.close()


@cli.command()
@click.confirmation_option(prompt="Delete all cached audio?")
@click.pass_obj
def clear_cache(config):
    """Delete all cached audio files."""
    api = SyncApiClient(config.api_base_url)
    cache = _cache(config, api)
    try:
        cache.evict_all()
        console.print("[green]✓ Cache cleared.[/green]")
    finally:
        cache.close()


if __name__ == '__main__':
    cli()
