import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional

from sqlalchemy import case, create_engine, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from discord_stats.errors import EditSerializationError, StoreError
from discord_stats.identity import TrackedIdentity
from discord_stats.models import Base, Deletion, Edit, Message
from discord_stats.schemas import Channel, EditHistory, MessageUpdate, StoreMessage

logger = logging.getLogger(__name__)

TABLE_NAMES = ("messages", "edits", "deletions")


class InsertResult(str, Enum):
    """Outcome of a message insert."""
    CREATED = "created"
    DUPLICATE = "duplicate"


def _id(value: Optional[int]) -> Optional[str]:
    """Serialize a snowflake as its decimal string form."""
    if value is None:
        return None
    return str(int(value))


def _decode_history(raw: str, message_id: str, channel_id: str) -> list:
    try:
        values = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise EditSerializationError(message_id, channel_id, str(e)) from e
    if not isinstance(values, list):
        raise EditSerializationError(
            message_id, channel_id, f"expected a JSON array, got {type(values).__name__}"
        )
    return values


class StatsStore:
    """
    Sole owner of the database connection and schema.

    Every operation holds one process-wide lock for its whole duration, so
    reads and writes from the gateway thread, the HTTP thread and a backfill
    are serialized. The edit merge (read, append, write back) therefore runs
    as one atomic step.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        # check_same_thread=False: the connection is shared across threads,
        # access is serialized by self._lock instead
        self.engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._lock = threading.Lock()
        self.identity = TrackedIdentity()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            db = self.SessionLocal()
            try:
                yield db
            except SQLAlchemyError as e:
                db.rollback()
                raise StoreError(str(e)) from e
            finally:
                db.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init_db(self) -> None:
        """
        Initialize the database by creating all tables.
        Called once at startup, before any event is handled.
        """
        logger.debug(f"Initializing database with URL: {self.database_url}")
        try:
            with self._lock:
                Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StoreError(str(e)) from e
        logger.info("Database initialized successfully")

    def check_db_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and all tables exist, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
                for table in TABLE_NAMES:
                    found = db.execute(
                        text("SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name=:name"),
                        {"name": table},
                    ).scalar()
                    if not found:
                        logger.error(f"Database schema not applied: '{table}' table not found")
                        return False
        except StoreError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        logger.debug("Database health check passed")
        return True

    def close(self) -> None:
        self.engine.dispose()

    # =========================================================================
    # Tracked Identity
    # =========================================================================

    def set_current_user(self, user_id: int) -> None:
        self.identity.set(user_id)

    @property
    def current_user(self) -> Optional[int]:
        return self.identity.get()

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_message(self, msg: StoreMessage) -> InsertResult:
        """
        Store a message (idempotent).

        Returns:
            InsertResult.CREATED for a new row, InsertResult.DUPLICATE when
            the (message_id, channel_id) pair is already stored. The stored
            row is never modified by a duplicate.

        Raises:
            StoreError on any other storage failure.
        """
        row = Message(
            message_id=_id(msg.message_id),
            time=msg.time,
            content=msg.content,
            channel_id=_id(msg.channel_id),
            guild_id=_id(msg.guild_id),
            author_id=_id(msg.author_id),
        )
        with self._session() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # (message_id, channel_id) already exists - expected on replay
                db.rollback()
                logger.debug(f"Duplicate message: id={msg.message_id}, channel={msg.channel_id}")
                return InsertResult.DUPLICATE
        logger.debug(f"Message stored: id={msg.message_id}, channel={msg.channel_id}")
        return InsertResult.CREATED

    def insert_edit(self, update: MessageUpdate) -> None:
        """
        Append an edit to the message's history, creating it on first edit.

        An update carrying neither content nor an edit time is not an edit
        and leaves the history untouched. Otherwise both arrays grow by
        exactly one entry; the one missing value, if any, is recorded as
        null so the arrays stay index-aligned.

        Raises:
            EditSerializationError if the stored arrays cannot be decoded;
            the row is left untouched.
            StoreError on any other storage failure.
        """
        if not update.changes_message:
            logger.debug(f"Skipping update without content or edit time: id={update.message_id}")
            return

        message_id = _id(update.message_id)
        channel_id = _id(update.channel_id)

        with self._session() as db:
            record = (
                db.query(Edit)
                .filter(Edit.message_id == message_id, Edit.channel_id == channel_id)
                .first()
            )
            if record is not None:
                times = _decode_history(record.times, message_id, channel_id)
                contents = _decode_history(record.edit_contents, message_id, channel_id)
                if len(times) != len(contents):
                    raise EditSerializationError(
                        message_id,
                        channel_id,
                        f"{len(times)} timestamps but {len(contents)} contents",
                    )
                times.append(update.edited_timestamp)
                contents.append(update.content)
                record.times = json.dumps(times)
                record.edit_contents = json.dumps(contents)
                logger.debug(f"Edit appended: id={message_id}, edits={len(contents)}")
            else:
                db.add(Edit(
                    message_id=message_id,
                    channel_id=channel_id,
                    times=json.dumps([update.edited_timestamp]),
                    edit_contents=json.dumps([update.content]),
                ))
                logger.debug(f"Edit history created: id={message_id}")
            db.commit()

    def insert_deletion(self, channel_id: int, message_id: int) -> None:
        """Append a deletion record stamped with the current time. Never deduplicated."""
        now = int(datetime.now(timezone.utc).timestamp())
        with self._session() as db:
            db.add(Deletion(
                message_id=_id(message_id),
                channel_id=_id(channel_id),
                time=now,
            ))
            db.commit()
        logger.debug(f"Deletion recorded: id={message_id}, channel={channel_id}")

    # =========================================================================
    # Point Lookups
    # =========================================================================

    def get_message_with_channel_id(self, channel_id: int, message_id: int) -> Optional[StoreMessage]:
        """
        Retrieve a stored message.

        Returns:
            The message, or None when it was never stored.
        """
        with self._session() as db:
            row = (
                db.query(Message)
                .filter(Message.channel_id == _id(channel_id), Message.message_id == _id(message_id))
                .first()
            )
            if row is None:
                return None
            return StoreMessage(
                message_id=row.message_id,
                time=row.time,
                content=row.content,
                channel_id=row.channel_id,
                guild_id=row.guild_id,
                author_id=row.author_id,
            )

    def get_edit_history(self, channel_id: int, message_id: int) -> Optional[EditHistory]:
        """Decoded edit history of a message, None if it was never edited."""
        with self._session() as db:
            record = (
                db.query(Edit)
                .filter(Edit.channel_id == _id(channel_id), Edit.message_id == _id(message_id))
                .first()
            )
            if record is None:
                return None
            return EditHistory(
                message_id=record.message_id,
                channel_id=record.channel_id,
                times=_decode_history(record.times, record.message_id, record.channel_id),
                contents=_decode_history(record.edit_contents, record.message_id, record.channel_id),
            )

    # =========================================================================
    # Aggregates
    # =========================================================================

    def get_msg_count(self) -> int:
        with self._session() as db:
            return db.query(func.count(Message.event_id)).scalar() or 0

    def get_user_msg_count(self) -> int:
        """Messages authored by the tracked identity; 0 before it is known."""
        user = self.current_user
        if user is None:
            return 0
        with self._session() as db:
            return (
                db.query(func.count(Message.event_id))
                .filter(Message.author_id == _id(user))
                .scalar()
            ) or 0

    def _msgs_per_day(self, author_id: Optional[str]) -> list[tuple[str, int, int]]:
        msg_date = func.date(Message.time, "unixepoch").label("msg_date")
        guild_count = func.sum(case((Message.guild_id.isnot(None), 1), else_=0))
        direct_count = func.sum(case((Message.guild_id.is_(None), 1), else_=0))

        with self._session() as db:
            query = db.query(msg_date, guild_count, direct_count)
            if author_id is not None:
                query = query.filter(Message.author_id == author_id)
            rows = query.group_by("msg_date").order_by("msg_date").all()
        return [(day, int(guilds or 0), int(directs or 0)) for day, guilds, directs in rows]

    def get_user_msgs_per_day(self) -> list[tuple[str, int, int]]:
        """
        Per-day message counts for the tracked identity.

        Returns:
            (date "YYYY-MM-DD", guild message count, direct message count)
            tuples in ascending date order; empty before the identity is known.
        """
        user = self.current_user
        if user is None:
            return []
        return self._msgs_per_day(_id(user))

    def get_total_msgs_per_day(self) -> list[tuple[str, int, int]]:
        """Per-day message counts across every stored message."""
        return self._msgs_per_day(None)

    def get_edit_count(self) -> int:
        """Total number of edits: the sum of all edit array lengths."""
        with self._session() as db:
            return db.query(func.sum(func.json_array_length(Edit.edit_contents))).scalar() or 0

    def get_deletion_count(self) -> int:
        with self._session() as db:
            return db.query(func.count(Deletion.delete_id)).scalar() or 0

    def get_channels(self) -> list[Channel]:
        """Distinct (channel, guild) pairs across stored messages."""
        with self._session() as db:
            rows = (
                db.query(Message.channel_id, Message.guild_id)
                .distinct()
                .order_by(Message.guild_id, Message.channel_id)
                .all()
            )
        return [Channel(channel_id=channel_id, guild_id=guild_id) for channel_id, guild_id in rows]

    def get_guilds(self) -> list[str]:
        """Distinct guild ids across stored messages; direct messages excluded."""
        with self._session() as db:
            rows = (
                db.query(Message.guild_id)
                .filter(Message.guild_id.isnot(None))
                .distinct()
                .order_by(Message.guild_id)
                .all()
            )
        return [guild_id for (guild_id,) in rows]
