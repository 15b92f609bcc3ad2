"""
Event router: filters gateway events and forwards accepted ones to storage.

Every handler is synchronous and never raises a storage failure back to the
gateway; failures are logged and the event is dropped.
"""

import logging
from enum import Enum
from typing import Optional

from discord_stats.errors import EditSerializationError, StoreError
from discord_stats.identity import IdentityFilter
from discord_stats.metrics import record_gateway_event
from discord_stats.schemas import (
    BulkMessageDelete,
    MessageDelete,
    MessageUpdate,
    Ready,
    StoreMessage,
)
from discord_stats.storage import InsertResult, StatsStore

logger = logging.getLogger(__name__)


class EventOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ERROR = "error"


class EventRouter:
    """Stateful dispatcher bound to one store and one identity filter."""

    def __init__(self, store: StatsStore, identity_filter: IdentityFilter):
        self.store = store
        self.filter = identity_filter

    def on_ready(self, ready: Ready) -> None:
        logger.info(f"Session ready for {ready.username or ready.user_id}")
        self.store.set_current_user(ready.user_id)
        record_gateway_event("ready", EventOutcome.STORED.value)

    def on_message(self, msg: StoreMessage) -> EventOutcome:
        if not self.filter.should_handle(msg.author_id, msg.guild_id, msg.channel_id):
            return self._record("message", EventOutcome.IGNORED)

        try:
            result = self.store.insert_message(msg)
        except StoreError as e:
            logger.error(f"Failed to insert message {msg.message_id}: {e}")
            return self._record("message", EventOutcome.ERROR)

        if result is InsertResult.DUPLICATE:
            return self._record("message", EventOutcome.DUPLICATE)
        return self._record("message", EventOutcome.STORED)

    def _resolve_update_origin(self, update: MessageUpdate) -> tuple[Optional[int], Optional[int]]:
        """
        Find the author and guild of an edited message.

        Order: the update payload, the cached pre-edit snapshot, the stored
        message.
        """
        author_id = update.author_id
        guild_id = update.guild_id
        if author_id is not None:
            return author_id, guild_id

        if update.cached is not None:
            return update.cached.author_id, guild_id if guild_id is not None else update.cached.guild_id

        try:
            stored = self.store.get_message_with_channel_id(update.channel_id, update.message_id)
        except StoreError as e:
            logger.error(f"Failed to look up edited message {update.message_id}: {e}")
            return None, guild_id
        if stored is None:
            return None, guild_id
        return stored.author_id, guild_id if guild_id is not None else stored.guild_id

    def on_message_update(self, update: MessageUpdate) -> EventOutcome:
        if not update.changes_message:
            # Embed and link preview updates change neither content nor edit time
            return self._record("message_update", EventOutcome.IGNORED)

        author_id, guild_id = self._resolve_update_origin(update)
        if not self.filter.should_handle(author_id, guild_id, update.channel_id):
            return self._record("message_update", EventOutcome.IGNORED)

        try:
            self.store.insert_edit(update)
        except EditSerializationError as e:
            logger.error(f"Abandoning edit, stored history is corrupt: {e}")
            return self._record("message_update", EventOutcome.ERROR)
        except StoreError as e:
            logger.error(f"Failed to insert edit for message {update.message_id}: {e}")
            return self._record("message_update", EventOutcome.ERROR)
        return self._record("message_update", EventOutcome.STORED)

    def _delete_one(self, channel_id: int, message_id: int, kind: str) -> EventOutcome:
        # Deletions carry no author: attribute through the stored message
        try:
            stored = self.store.get_message_with_channel_id(channel_id, message_id)
        except StoreError as e:
            logger.error(f"Failed to look up deleted message {message_id}: {e}")
            return self._record(kind, EventOutcome.ERROR)

        if stored is None:
            logger.debug(f"Dropping deletion of unknown message {message_id}")
            return self._record(kind, EventOutcome.IGNORED)

        if not self.filter.should_handle(stored.author_id, stored.guild_id, stored.channel_id):
            return self._record(kind, EventOutcome.IGNORED)

        try:
            self.store.insert_deletion(channel_id, message_id)
        except StoreError as e:
            logger.error(f"Failed to insert deletion of message {message_id}: {e}")
            return self._record(kind, EventOutcome.ERROR)
        return self._record(kind, EventOutcome.STORED)

    def on_message_delete(self, event: MessageDelete) -> EventOutcome:
        return self._delete_one(event.channel_id, event.message_id, "message_delete")

    def on_bulk_message_delete(self, event: BulkMessageDelete) -> list[EventOutcome]:
        """Each id is handled on its own; one failure does not stop the rest."""
        outcomes = [
            self._delete_one(event.channel_id, message_id, "bulk_message_delete")
            for message_id in event.message_ids
        ]
        logger.info(
            f"Bulk deletion in channel {event.channel_id}: "
            f"{outcomes.count(EventOutcome.STORED)} of {len(outcomes)} recorded"
        )
        return outcomes

    def _record(self, kind: str, outcome: EventOutcome) -> EventOutcome:
        record_gateway_event(kind, outcome.value)
        return outcome
