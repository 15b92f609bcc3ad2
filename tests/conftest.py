"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file under tmp_path, so tests never share
rows or the tracked identity.
"""

import pytest

from discord_stats.handler import EventRouter
from discord_stats.identity import IdentityFilter
from discord_stats.schemas import StoreMessage
from discord_stats.storage import StatsStore


TRACKED_USER = 9
OTHER_USER = 42


def make_message(
    message_id=100,
    channel_id=5,
    guild_id=None,
    author_id=TRACKED_USER,
    content="hi",
    time=1000,
) -> StoreMessage:
    """Helper to build a message with sensible defaults."""
    return StoreMessage(
        message_id=message_id,
        time=time,
        content=content,
        channel_id=channel_id,
        guild_id=guild_id,
        author_id=author_id,
    )


@pytest.fixture
def store(tmp_path):
    """Fresh store with tables created."""
    stats_store = StatsStore(f"sqlite:///{tmp_path / 'stats.db'}")
    stats_store.init_db()
    yield stats_store
    stats_store.close()


@pytest.fixture
def tracked_store(store):
    """Store whose tracked identity is TRACKED_USER."""
    store.set_current_user(TRACKED_USER)
    return store


@pytest.fixture
def router(store):
    """Router tracking TRACKED_USER plus the guild channel 7|70 and the DM channel 80."""
    identity_filter = IdentityFilter(store.identity, [(7, 70), (None, 80)])
    return EventRouter(store, identity_filter)
