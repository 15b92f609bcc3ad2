"""
Tests for the stats HTTP API.

Tests cover:
- Count endpoints and their aliases
- Channel, guild and per-day listings
- Graceful degradation on storage errors
- Dashboard, health and metrics routes
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from discord_stats.errors import StoreError
from discord_stats.main import create_app
from discord_stats.schemas import MessageUpdate

from conftest import OTHER_USER, TRACKED_USER, make_message


@pytest.fixture
def client(store):
    """Test client over a fresh store."""
    with TestClient(create_app(store)) as test_client:
        yield test_client


@pytest.fixture
def seeded_client(client, store):
    """Client with messages, edits and deletions for the tracked user."""
    store.set_current_user(TRACKED_USER)
    messages = [
        make_message(message_id=1, channel_id=5, time=10),
        make_message(message_id=2, channel_id=70, guild_id=7, time=20),
        make_message(message_id=3, channel_id=70, guild_id=7, time=86400 + 1),
        make_message(message_id=4, channel_id=70, guild_id=7, time=86400 + 2, author_id=OTHER_USER),
    ]
    for msg in messages:
        store.insert_message(msg)
    store.insert_edit(MessageUpdate(message_id=1, channel_id=5, content="a", edited_timestamp=11))
    store.insert_edit(MessageUpdate(message_id=1, channel_id=5, content="b", edited_timestamp=12))
    store.insert_deletion(70, 2)
    return client


class TestCounts:

    def test_empty_counts(self, client):
        for path in ("/api/msg_count", "/api/user_msg_count", "/api/total_msg_count",
                     "/api/edit_count", "/api/deletion_count"):
            response = client.get(path)
            assert response.status_code == 200
            assert response.json() == {"count": 0}

    def test_user_msg_count_and_alias(self, seeded_client):
        assert seeded_client.get("/api/msg_count").json() == {"count": 3}
        assert seeded_client.get("/api/user_msg_count").json() == {"count": 3}

    def test_total_msg_count(self, seeded_client):
        assert seeded_client.get("/api/total_msg_count").json() == {"count": 4}

    def test_edit_and_deletion_counts(self, seeded_client):
        assert seeded_client.get("/api/edit_count").json() == {"count": 2}
        assert seeded_client.get("/api/deletion_count").json() == {"count": 1}

    def test_count_error_degrades_to_null(self, client, store):
        with patch.object(store, "get_msg_count", side_effect=StoreError("database is locked")):
            response = client.get("/api/total_msg_count")

        assert response.status_code == 500
        assert response.json() == {"count": None}


class TestListings:

    def test_channels(self, seeded_client):
        response = seeded_client.get("/api/channels")

        assert response.status_code == 200
        channels = response.json()
        assert len(channels) == 2
        assert {"channel_id": "5", "guild_id": None} in channels
        assert {"channel_id": "70", "guild_id": "7"} in channels

    def test_guilds(self, seeded_client):
        assert seeded_client.get("/api/guilds").json() == ["7"]

    def test_user_msg_count_per_day(self, seeded_client):
        assert seeded_client.get("/api/user_msg_count_per_day").json() == [
            ["1970-01-01", 1, 1],
            ["1970-01-02", 1, 0],
        ]

    def test_total_msg_count_per_day(self, seeded_client):
        assert seeded_client.get("/api/total_msg_count_per_day").json() == [
            ["1970-01-01", 1, 1],
            ["1970-01-02", 2, 0],
        ]

    @pytest.mark.parametrize("path,method", [
        ("/api/channels", "get_channels"),
        ("/api/guilds", "get_guilds"),
        ("/api/user_msg_count_per_day", "get_user_msgs_per_day"),
        ("/api/total_msg_count_per_day", "get_total_msgs_per_day"),
    ])
    def test_listing_error_degrades_to_empty(self, client, store, path, method):
        with patch.object(store, method, side_effect=StoreError("no such table: messages")):
            response = client.get(path)

        assert response.status_code == 500
        assert response.json() == []
        assert "no such table" not in response.text


class TestDashboard:

    def test_index_html(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "/index.js" in response.text

    def test_index_js(self, client):
        response = client.get("/index.js")
        assert response.status_code == 200
        assert "/api/msg_count" in response.text


class TestOperational:

    def test_health_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_health_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_request_id_header(self, client):
        response = client.get("/api/total_msg_count")
        assert "x-request-id" in response.headers

    def test_metrics_exposed(self, client):
        client.get("/api/total_msg_count")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text
