"""cli.py - discord-stats command-line interface

Usage examples
--------------
$ discord-stats run                                   # log + serve the API
$ discord-stats scan --max-count 5000                 # backfill tracked channels
$ discord-stats scan --channel 81384788765712384|381870553235193857
$ discord-stats track "My Server" general             # resolve names, then track
$ discord-stats track-dm someone
$ discord-stats untrack 381870553235193857
$ discord-stats channels

Exit codes
----------
2  bad configuration
3  credential rejected
4  gateway unreachable or handshake timed out
5  database could not be initialised

Environment variables
---------------------
DISCORD_STATS_CONFIG  Config file path (same as --config).
DISCORD_STATS_TOKEN   Overrides the token from the config file.
"""

from __future__ import annotations

import functools
import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import click

from discord_stats.config import (
    CONFIG_ENV_VAR,
    LOG_LEVELS,
    Settings,
    TrackedChannel,
    default_config_path,
    ensure_parent,
    format_channel_specifier,
    load_settings,
    parse_channel_specifier,
    save_tracked_channels,
)
from discord_stats.errors import (
    EXIT_CONFIG,
    EXIT_CONNECTION,
    EXIT_CREDENTIAL,
    EXIT_STORAGE,
    ConfigError,
    CredentialError,
    GatewayConnectionError,
    ResolutionError,
    StoreError,
)
from discord_stats.logging_utils import setup_logging
from discord_stats.storage import StatsStore

logger = logging.getLogger(__name__)


@dataclass
class CliState:
    config_path: Path
    settings: Settings


def _fail(message: str, code: int) -> None:
    logger.error(message)
    click.echo(message, err=True)
    sys.exit(code)


def handle_errors(f: Callable) -> Callable:
    """Map startup failures to their exit codes."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ConfigError as e:
            _fail(f"Configuration error: {e}", EXIT_CONFIG)
        except CredentialError as e:
            _fail(f"Login failed, check the token: {e}", EXIT_CREDENTIAL)
        except GatewayConnectionError as e:
            _fail(f"Cannot reach Discord: {e}", EXIT_CONNECTION)
        except StoreError as e:
            _fail(f"Database error: {e}", EXIT_STORAGE)
        except ResolutionError as e:
            raise click.ClickException(str(e))

    return wrapper


def _require_token(settings: Settings) -> str:
    if not settings.token:
        raise ConfigError("invalid_format", "no token configured")
    return settings.token


def _open_store(state: CliState) -> StatsStore:
    db_file = state.settings.database_file(state.config_path)
    ensure_parent(db_file)
    store = StatsStore(f"sqlite:///{db_file}")
    store.init_db()
    return store


def _sort_key(channel: TrackedChannel) -> tuple[int, int]:
    return (channel.guild_id or 0, channel.channel_id)


def _add_tracked(state: CliState, channel: TrackedChannel) -> None:
    spec = format_channel_specifier(channel)
    current = state.settings.tracked_channel_set()
    if channel in current:
        click.echo(f"Already tracking {spec}")
        return
    path = save_tracked_channels([*state.settings.tracked_channels, spec], state.config_path)
    click.echo(f"Tracking {spec} (saved to {path})")


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar=CONFIG_ENV_VAR,
    default=None,
    help="Path to the TOML config file.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
@click.pass_context
@handle_errors
def cli(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]):
    """Log your Discord messages and serve statistics about them."""
    path = config_path or default_config_path()
    settings = load_settings(path)
    setup_logging(log_level or settings.log_level)
    ctx.obj = CliState(config_path=path, settings=settings)


@cli.command()
@click.pass_obj
@handle_errors
def run(state: CliState):
    """Log gateway events and serve the stats API."""
    from discord_stats.gateway import LoggingClient, run_client
    from discord_stats.handler import EventRouter
    from discord_stats.identity import IdentityFilter
    from discord_stats.main import create_app, serve

    settings = state.settings
    token = _require_token(settings)
    tracked = settings.tracked_channel_set()
    store = _open_store(state)

    router = EventRouter(store, IdentityFilter(store.identity, tracked))
    app = create_app(store, init_db=False)

    server = threading.Thread(
        target=serve,
        args=(app, settings.http_host, settings.http_port, settings.log_level),
        name="http",
        daemon=True,
    )
    server.start()

    logger.info(f"Starting gateway client, tracking {len(tracked)} extra channel(s)")
    try:
        run_client(LoggingClient(router), token)
    finally:
        store.close()


@cli.command()
@click.option(
    "--max-count",
    default=1000,
    show_default=True,
    type=click.IntRange(min=1),
    help="Maximum messages to fetch per channel.",
)
@click.option(
    "--channel",
    "channels",
    multiple=True,
    help="guildId|channelId or bare channelId; defaults to the tracked channels.",
)
@click.option("--timeout", default=60.0, show_default=True, type=float, help="Handshake timeout in seconds.")
@click.option("--no-progress", is_flag=True, help="Disable progress bars.")
@click.pass_obj
@handle_errors
def scan(state: CliState, max_count: int, channels: tuple[str, ...], timeout: float, no_progress: bool):
    """Backfill channel history into the database."""
    from discord_stats.gateway import DiscordHistorySource, OneshotSession
    from discord_stats.scan import MessageScanner

    settings = state.settings
    token = _require_token(settings)
    targets = {parse_channel_specifier(spec) for spec in channels} or settings.tracked_channel_set()
    if not targets:
        click.echo("Nothing to scan: pass --channel or track a channel first")
        return

    store = _open_store(state)
    try:
        with OneshotSession(token, timeout=timeout) as session:
            store.set_current_user(session.ready.user_id)
            scanner = MessageScanner(
                store,
                DiscordHistorySource(session.client),
                page_size=settings.page_size,
                progress=not no_progress,
            )
            results = session.run(scanner.scan_messages(sorted(targets, key=_sort_key), max_count))
    finally:
        store.close()

    for result in results:
        status = "aborted" if result.aborted else "done"
        click.echo(
            f"{result.name}: {status}, {result.fetched} fetched, "
            f"{result.created} new, {result.duplicates} already stored"
        )


@cli.command()
@click.argument("guild_name")
@click.argument("channel_name")
@click.option("--timeout", default=60.0, show_default=True, type=float, help="Handshake timeout in seconds.")
@click.pass_obj
@handle_errors
def track(state: CliState, guild_name: str, channel_name: str, timeout: float):
    """Track a guild channel by name."""
    from discord_stats.gateway import OneshotSession
    from discord_stats.resolve import resolve_guild_channel

    token = _require_token(state.settings)
    with OneshotSession(token, timeout=timeout) as session:
        channel = resolve_guild_channel(session.ready, guild_name, channel_name)
    _add_tracked(state, channel)


@cli.command(name="track-dm")
@click.argument("recipient")
@click.option("--timeout", default=60.0, show_default=True, type=float, help="Handshake timeout in seconds.")
@click.pass_obj
@handle_errors
def track_dm(state: CliState, recipient: str, timeout: float):
    """Track a direct message channel by the other user's name."""
    from discord_stats.gateway import OneshotSession
    from discord_stats.resolve import resolve_direct_channel

    token = _require_token(state.settings)
    with OneshotSession(token, timeout=timeout) as session:
        channel = resolve_direct_channel(session.ready, recipient)
    _add_tracked(state, channel)


@cli.command()
@click.argument("spec")
@click.pass_obj
@handle_errors
def untrack(state: CliState, spec: str):
    """Stop tracking a channel given as guildId|channelId or channelId."""
    target = parse_channel_specifier(spec)
    remaining = [
        s for s in state.settings.tracked_channels
        if parse_channel_specifier(s) != target
    ]
    if len(remaining) == len(state.settings.tracked_channels):
        raise click.ClickException(f"{spec} is not tracked")
    save_tracked_channels(remaining, state.config_path)
    click.echo(f"No longer tracking {format_channel_specifier(target)}")


@cli.command()
@click.pass_obj
@handle_errors
def channels(state: CliState):
    """List tracked channels."""
    tracked = sorted(state.settings.tracked_channel_set(), key=_sort_key)
    if not tracked:
        click.echo("No tracked channels")
        return
    for channel in tracked:
        click.echo(format_channel_specifier(channel))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
