"""
Tests for the gateway adapters.

No connection is made: payloads and messages are plain stand-in objects
carrying the attributes the adapters read.
"""

import asyncio
import queue
import threading
from datetime import datetime, timezone
from types import SimpleNamespace

import discord
import pytest

from discord_stats.config import TrackedChannel
from discord_stats.errors import CredentialError, HandshakeTimeout, ScanFetchError
from discord_stats.gateway import (
    DiscordHistorySource,
    LoggingClient,
    OneshotSession,
    message_to_store,
    update_from_payload,
)
from discord_stats.handler import EventRouter
from discord_stats.identity import IdentityFilter
from discord_stats.schemas import ReadyData

from conftest import TRACKED_USER


def fake_message(message_id=100, channel_id=5, guild_id=None, author_id=TRACKED_USER, content="hi"):
    return SimpleNamespace(
        id=message_id,
        created_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
        content=content,
        channel=SimpleNamespace(id=channel_id),
        guild=SimpleNamespace(id=guild_id) if guild_id is not None else None,
        author=SimpleNamespace(id=author_id),
    )


class TestConversions:

    def test_message_to_store(self):
        msg = message_to_store(fake_message(guild_id=7, channel_id=70))
        assert msg.message_id == 100
        assert msg.time == 1577836800
        assert msg.guild_id == 7
        assert msg.channel_id == 70
        assert msg.author_id == TRACKED_USER

    def test_direct_message_has_no_guild(self):
        assert message_to_store(fake_message()).guild_id is None

    def test_update_from_full_payload(self):
        payload = SimpleNamespace(
            message_id=100,
            channel_id=5,
            guild_id=None,
            cached_message=None,
            data={
                "id": "100",
                "content": "bye",
                "edited_timestamp": "2020-01-01T00:00:10+00:00",
                "author": {"id": str(TRACKED_USER)},
            },
        )

        update = update_from_payload(payload)

        assert update.content == "bye"
        assert update.edited_timestamp == 1577836810
        assert update.author_id == TRACKED_USER
        assert update.cached is None

    def test_update_from_partial_payload_keeps_cached_snapshot(self):
        payload = SimpleNamespace(
            message_id=100,
            channel_id=70,
            guild_id=7,
            cached_message=fake_message(channel_id=70, guild_id=7),
            data={"id": "100", "embeds": []},
        )

        update = update_from_payload(payload)

        assert update.author_id is None
        assert update.content is None
        assert update.edited_timestamp is None
        assert update.cached.author_id == TRACKED_USER


class TestLoggingClient:

    def test_events_reach_the_router(self, store):
        router = EventRouter(store, IdentityFilter(store.identity))
        client = LoggingClient(router)
        store.set_current_user(TRACKED_USER)

        asyncio.run(client.on_message(fake_message()))
        asyncio.run(client.on_raw_message_delete(SimpleNamespace(message_id=100, channel_id=5, guild_id=None)))
        asyncio.run(client.on_raw_bulk_message_delete(
            SimpleNamespace(message_ids={100, 101}, channel_id=5, guild_id=None)
        ))

        assert store.get_msg_count() == 1
        assert store.get_deletion_count() == 2


class FakeChannel:
    def __init__(self, channel_id, guild_id=None, fail=None):
        self.id = channel_id
        self.name = "general"
        self.guild = SimpleNamespace(id=guild_id) if guild_id is not None else None
        self.fail = fail
        self.calls = []

    def history(self, limit, before):
        self.calls.append((limit, before.id if before is not None else None))

        async def pages():
            if self.fail is not None:
                raise self.fail
            for i in range(limit):
                yield fake_message(message_id=1000 - i, channel_id=self.id)

        return pages()


class FakeClient:
    def __init__(self, channels):
        self.channels = {c.id: c for c in channels}

    def get_channel(self, channel_id):
        return self.channels.get(channel_id)


class TestDiscordHistorySource:

    def test_fetch_page_passes_cursor(self):
        channel = FakeChannel(70, guild_id=7)
        source = DiscordHistorySource(FakeClient([channel]))

        page = asyncio.run(source.fetch_page(TrackedChannel(7, 70), 3, 500))

        assert [m.message_id for m in page] == [1000, 999, 998]
        assert channel.calls == [(3, 500)]

    def test_channel_in_wrong_guild(self):
        source = DiscordHistorySource(FakeClient([FakeChannel(70, guild_id=8)]))

        with pytest.raises(ScanFetchError):
            asyncio.run(source.fetch_page(TrackedChannel(7, 70), 3, None))

    def test_transport_error_becomes_fetch_error(self):
        error = discord.ClientException("boom")
        source = DiscordHistorySource(FakeClient([FakeChannel(80, fail=error)]))

        with pytest.raises(ScanFetchError):
            asyncio.run(source.fetch_page(TrackedChannel(None, 80), 3, None))

    def test_channel_name(self):
        source = DiscordHistorySource(FakeClient([FakeChannel(70, guild_id=7)]))
        assert asyncio.run(source.channel_name(TrackedChannel(7, 70))) == "#general"


class HangingClient:
    """Connects but never sends ready."""

    def __init__(self):
        self.connected = threading.Event()
        self.closed = threading.Event()

    async def serve(self):
        self.loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        self.connected.set()
        await self._stop.wait()

    def is_closed(self):
        return self.closed.is_set()

    async def close(self):
        self.closed.set()
        self._stop.set()


class TestOneshotSession:

    def test_login_failure_is_delivered(self, monkeypatch):
        session = OneshotSession("bad-token", timeout=5)

        def rejected(client, token):
            raise CredentialError("401 Unauthorized")

        monkeypatch.setattr("discord_stats.gateway.run_client", rejected)

        with pytest.raises(CredentialError):
            session.start()

    def test_timeout_when_ready_never_arrives(self, monkeypatch):
        session = OneshotSession("token", timeout=0.1)
        monkeypatch.setattr("discord_stats.gateway.run_client", lambda client, token: None)

        with pytest.raises(HandshakeTimeout):
            session.start()

    def test_timeout_shuts_the_client_down(self, monkeypatch):
        session = OneshotSession("token", timeout=0.5)
        session.client = HangingClient()
        monkeypatch.setattr("discord_stats.gateway.run_client", lambda client, token: asyncio.run(client.serve()))

        with pytest.raises(HandshakeTimeout):
            session.start()

        assert session.client.connected.is_set()
        assert session.client.closed.is_set()
        assert not session._thread.is_alive()

    def test_failed_login_leaves_no_thread_behind(self, monkeypatch):
        session = OneshotSession("bad-token", timeout=5)

        def rejected(client, token):
            raise CredentialError("401 Unauthorized")

        monkeypatch.setattr("discord_stats.gateway.run_client", rejected)

        with pytest.raises(CredentialError):
            with session:
                pass
        assert not session._thread.is_alive()

    def test_ready_payload_is_returned(self, monkeypatch):
        session = OneshotSession("token", timeout=5)
        monkeypatch.setattr(
            "discord_stats.gateway.run_client",
            lambda client, token: client.delivery.put_nowait(ReadyData(user_id=TRACKED_USER)),
        )

        assert session.start().user_id == TRACKED_USER
        assert session.ready.user_id == TRACKED_USER

    def test_delivery_slot_holds_one_item(self):
        session = OneshotSession("token")
        assert isinstance(session._delivery, queue.Queue)
        assert session._delivery.maxsize == 1
