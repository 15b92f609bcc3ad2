"""
Gateway adapters.

Translates discord.py-self objects into the event models of schemas.py and
hands them to the event router. Two clients live here:

* LoggingClient - the long-running session that logs the tracked account.
* OneshotClient - a minimal session that captures the ready payload once
  and hands it to a waiting caller (name resolution and backfill).
"""

import asyncio
import logging
import queue
import threading
from datetime import datetime
from typing import Any, Coroutine, Optional, TypeVar, Union

import discord

from discord_stats.config import TrackedChannel
from discord_stats.errors import (
    CredentialError,
    GatewayConnectionError,
    HandshakeTimeout,
    ScanFetchError,
)
from discord_stats.handler import EventRouter
from discord_stats.schemas import (
    BulkMessageDelete,
    ChannelInfo,
    GuildInfo,
    MessageDelete,
    MessageUpdate,
    PrivateChannelInfo,
    Ready,
    ReadyData,
    StoreMessage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default wait for the one-shot handshake, in seconds
HANDSHAKE_TIMEOUT = 60.0

# Wait for the one-shot client to shut down, in seconds
CLOSE_TIMEOUT = 10.0


def _epoch(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp())


# =============================================================================
# Conversions
# =============================================================================

def message_to_store(message: discord.Message) -> StoreMessage:
    guild = getattr(message, "guild", None)
    return StoreMessage(
        message_id=message.id,
        time=_epoch(message.created_at),
        content=message.content or "",
        channel_id=message.channel.id,
        guild_id=guild.id if guild is not None else None,
        author_id=message.author.id,
    )


def update_from_payload(payload: discord.RawMessageUpdateEvent) -> MessageUpdate:
    """
    Build a MessageUpdate from a raw edit event.

    Partial updates may lack author and content; the cached message, when
    the client still holds it, is attached as the pre-edit snapshot.
    """
    data: dict[str, Any] = payload.data or {}
    author = data.get("author") or {}
    edited = data.get("edited_timestamp")
    guild_id = payload.guild_id if payload.guild_id is not None else data.get("guild_id")

    cached = None
    if payload.cached_message is not None:
        cached = message_to_store(payload.cached_message)

    return MessageUpdate(
        message_id=payload.message_id,
        channel_id=payload.channel_id,
        guild_id=guild_id,
        author_id=author.get("id"),
        content=data.get("content"),
        edited_timestamp=_epoch(discord.utils.parse_time(edited)) if edited else None,
        cached=cached,
    )


def ready_data_from_client(client: discord.Client) -> ReadyData:
    guilds = [
        GuildInfo(
            id=guild.id,
            name=guild.name,
            channels=[ChannelInfo(id=channel.id, name=channel.name) for channel in guild.text_channels],
        )
        for guild in client.guilds
    ]
    private_channels = [
        PrivateChannelInfo(id=channel.id, recipient=str(channel.recipient))
        for channel in client.private_channels
        if isinstance(channel, discord.DMChannel) and channel.recipient is not None
    ]
    return ReadyData(
        user_id=client.user.id,
        username=str(client.user),
        guilds=guilds,
        private_channels=private_channels,
    )


# =============================================================================
# Long-running Logging Session
# =============================================================================

class LoggingClient(discord.Client):
    """Passive session: forwards message events to the router, stays invisible."""

    def __init__(self, router: EventRouter, **options: Any):
        super().__init__(**options)
        self.router = router

    async def on_ready(self) -> None:
        self.router.on_ready(Ready(user_id=self.user.id, username=str(self.user)))
        # Observe only; never appear online to other users
        await self.change_presence(status=discord.Status.invisible)

    async def on_message(self, message: discord.Message) -> None:
        self.router.on_message(message_to_store(message))

    async def on_raw_message_edit(self, payload: discord.RawMessageUpdateEvent) -> None:
        self.router.on_message_update(update_from_payload(payload))

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        self.router.on_message_delete(MessageDelete(
            message_id=payload.message_id,
            channel_id=payload.channel_id,
            guild_id=payload.guild_id,
        ))

    async def on_raw_bulk_message_delete(self, payload: discord.RawBulkMessageDeleteEvent) -> None:
        self.router.on_bulk_message_delete(BulkMessageDelete(
            message_ids=sorted(payload.message_ids),
            channel_id=payload.channel_id,
            guild_id=payload.guild_id,
        ))


def run_client(client: discord.Client, token: str) -> None:
    """
    Run a client until it disconnects, translating startup failures.

    Raises:
        CredentialError if the token is rejected.
        GatewayConnectionError if the gateway cannot be reached.
    """
    try:
        client.run(token, log_handler=None)
    except discord.LoginFailure as e:
        raise CredentialError(str(e)) from e
    except (discord.GatewayNotFound, discord.ConnectionClosed, OSError) as e:
        raise GatewayConnectionError(str(e)) from e


# =============================================================================
# One-shot Handshake
# =============================================================================

class OneshotClient(discord.Client):
    """Delivers the first ready payload to `delivery` and does nothing else."""

    def __init__(self, delivery: "queue.Queue[Union[ReadyData, Exception]]", **options: Any):
        super().__init__(**options)
        self.delivery = delivery
        self._delivered = False

    async def on_ready(self) -> None:
        if self._delivered:
            return
        self._delivered = True
        logger.info(f"Handshake complete for {self.user}")
        self.delivery.put_nowait(ready_data_from_client(self))


class OneshotSession:
    """
    Runs an OneshotClient on its own thread and event loop.

    start() blocks until the ready payload arrives, the login fails, or
    `timeout` seconds pass. Afterwards coroutines (history requests) can be
    submitted to the client's loop with run().
    """

    def __init__(self, token: str, timeout: float = HANDSHAKE_TIMEOUT):
        self.token = token
        self.timeout = timeout
        self._delivery: "queue.Queue[Union[ReadyData, Exception]]" = queue.Queue(maxsize=1)
        self.client = OneshotClient(self._delivery)
        self._thread: Optional[threading.Thread] = None
        self.ready: Optional[ReadyData] = None

    def _deliver_failure(self, error: Exception) -> None:
        try:
            self._delivery.put_nowait(error)
        except queue.Full:
            # Ready was already delivered; the failure happened afterwards
            logger.error(f"Handshake session ended with error: {error}")

    def _run(self) -> None:
        try:
            run_client(self.client, self.token)
        except (CredentialError, GatewayConnectionError) as e:
            self._deliver_failure(e)
        except discord.DiscordException as e:
            self._deliver_failure(GatewayConnectionError(str(e)))

    def start(self) -> ReadyData:
        """
        Connect and wait for the ready payload.

        On timeout or a failed login the client is shut down before the
        error is raised, so no session keeps retrying in the background.
        """
        self._thread = threading.Thread(target=self._run, name="oneshot-gateway", daemon=True)
        self._thread.start()
        try:
            outcome = self._delivery.get(timeout=self.timeout)
        except queue.Empty:
            self.close()
            raise HandshakeTimeout(f"no ready event within {self.timeout:g}s")
        if isinstance(outcome, Exception):
            self.close()
            raise outcome
        self.ready = outcome
        return outcome

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Run a coroutine on the client's loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.client.loop).result(timeout)

    def close(self) -> None:
        try:
            running = self.client.loop.is_running()
        except AttributeError:
            # Login never got far enough to create the loop
            running = False
        if running and not self.client.is_closed():
            try:
                self.run(self.client.close(), timeout=CLOSE_TIMEOUT)
            except TimeoutError:
                logger.warning(f"Handshake client did not close within {CLOSE_TIMEOUT:g}s")
        if self._thread is not None:
            self._thread.join(timeout=CLOSE_TIMEOUT)

    def __enter__(self) -> "OneshotSession":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


# =============================================================================
# History Source
# =============================================================================

class DiscordHistorySource:
    """HistorySource backed by a connected client; must run on its loop."""

    def __init__(self, client: discord.Client):
        self.client = client

    async def _channel(self, target: TrackedChannel):
        channel = self.client.get_channel(target.channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(target.channel_id)
            except discord.HTTPException as e:
                raise ScanFetchError(f"cannot open channel {target.channel_id}: {e}") from e

        guild = getattr(channel, "guild", None)
        if target.guild_id is not None and (guild is None or guild.id != target.guild_id):
            raise ScanFetchError(f"channel {target.channel_id} is not in guild {target.guild_id}")
        if not hasattr(channel, "history"):
            raise ScanFetchError(f"channel {target.channel_id} has no message history")
        return channel

    async def channel_name(self, target: TrackedChannel) -> str:
        channel = await self._channel(target)
        if isinstance(channel, discord.DMChannel) and channel.recipient is not None:
            return f"@{channel.recipient}"
        name = getattr(channel, "name", None)
        return f"#{name}" if name else str(target.channel_id)

    async def fetch_page(
        self,
        target: TrackedChannel,
        limit: int,
        before: Optional[int],
    ) -> list[StoreMessage]:
        channel = await self._channel(target)
        before_obj = discord.Object(id=before) if before is not None else None
        try:
            return [
                message_to_store(message)
                async for message in channel.history(limit=limit, before=before_obj)
            ]
        except (discord.HTTPException, discord.ClientException) as e:
            raise ScanFetchError(str(e)) from e
