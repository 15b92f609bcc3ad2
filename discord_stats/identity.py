"""
Tracked identity and event filtering.

The tracked identity is the account whose messages are logged. It is set
once per gateway session from the ready event and read on every event, so
it lives behind a lock instead of being a bare attribute.
"""

import logging
import threading
from typing import Iterable, Optional

from discord_stats.config import TrackedChannel

logger = logging.getLogger(__name__)


class TrackedIdentity:
    """Lock-protected optional user id. Single writer, many readers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._user_id: Optional[int] = None

    def set(self, user_id: int) -> None:
        with self._lock:
            previous = self._user_id
            self._user_id = user_id
        if previous != user_id:
            logger.info(f"Tracked identity set to {user_id} (was {previous})")

    def get(self) -> Optional[int]:
        with self._lock:
            return self._user_id


class IdentityFilter:
    """
    Decides whether an event concerns the tracked identity.

    An event is accepted when its author is the tracked identity, or when
    its (guild, channel) pair is in the static allowlist. Nothing is
    accepted before the tracked identity is known.
    """

    def __init__(self, identity: TrackedIdentity, tracked_channels: Iterable[TrackedChannel] = ()):
        self.identity = identity
        self.tracked_channels = frozenset(
            TrackedChannel(*channel) for channel in tracked_channels
        )

    def should_handle(
        self,
        author_id: Optional[int],
        guild_id: Optional[int],
        channel_id: int,
    ) -> bool:
        current = self.identity.get()
        if current is None:
            return False
        if author_id is not None and author_id == current:
            return True
        return TrackedChannel(guild_id, channel_id) in self.tracked_channels
