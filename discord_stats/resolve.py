"""
Resolve human readable names from a ready payload to tracked channels.

Names match case-insensitively; a leading "#" on channel names and "@" on
user names is ignored.
"""

import logging
from typing import Iterable, TypeVar

from discord_stats.config import TrackedChannel
from discord_stats.errors import ResolutionError
from discord_stats.schemas import ReadyData

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _normalize(name: str, prefix: str) -> str:
    return name.strip().lstrip(prefix).casefold()


def _single(matches: Iterable[T], kind: str, name: str) -> T:
    matches = list(matches)
    if not matches:
        raise ResolutionError(f"no {kind} named {name!r}")
    if len(matches) > 1:
        ids = ", ".join(str(match.id) for match in matches)
        raise ResolutionError(f"{len(matches)} {kind}s named {name!r}: {ids}")
    return matches[0]


def resolve_guild_channel(ready: ReadyData, guild_name: str, channel_name: str) -> TrackedChannel:
    """Find the text channel `channel_name` inside the guild `guild_name`."""
    wanted_guild = _normalize(guild_name, "")
    guild = _single(
        (g for g in ready.guilds if g.name.casefold() == wanted_guild),
        "guild",
        guild_name,
    )
    wanted_channel = _normalize(channel_name, "#")
    channel = _single(
        (c for c in guild.channels if c.name.casefold() == wanted_channel),
        "channel",
        channel_name,
    )
    logger.info(f"Resolved {guild_name}/{channel_name} to {guild.id}|{channel.id}")
    return TrackedChannel(guild.id, channel.id)


def resolve_direct_channel(ready: ReadyData, recipient: str) -> TrackedChannel:
    """
    Find the direct message channel with `recipient`.

    Matches the full "name#discriminator" form or the bare user name.
    """
    wanted = _normalize(recipient, "@")
    channel = _single(
        (
            c for c in ready.private_channels
            if c.recipient.casefold() == wanted or c.recipient.split("#")[0].casefold() == wanted
        ),
        "direct message channel",
        recipient,
    )
    logger.info(f"Resolved @{recipient} to {channel.id}")
    return TrackedChannel(None, channel.id)
