"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic event and response schemas, see schemas.py.

Snowflake identifiers are stored as decimal strings so that no 64-bit
value loses precision on its way through SQLite or JSON.
"""

from sqlalchemy import Column, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base


# Base class for SQLAlchemy models
Base = declarative_base()


class Message(Base):
    """
    One observed chat message.

    Table: messages
    Unique: (message_id, channel_id), so replays and overlapping backfill
    pages collapse into a single row.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("message_id", "channel_id", name="uq_messages_message_channel"),
    )

    event_id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, index=True)
    time = Column(Integer, nullable=False, index=True)  # epoch seconds
    content = Column(Text, nullable=False, default="")
    channel_id = Column(String, nullable=False, index=True)
    guild_id = Column(String, nullable=True)  # NULL for direct messages
    author_id = Column(String, nullable=False, index=True)


class Edit(Base):
    """
    Edit history of one message.

    Table: edits
    times and edit_contents are JSON arrays of equal length, oldest first.
    """
    __tablename__ = "edits"
    __table_args__ = (
        UniqueConstraint("message_id", "channel_id", name="uq_edits_message_channel"),
    )

    edit_id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, index=True)
    channel_id = Column(String, nullable=False)
    times = Column(Text, nullable=False)
    edit_contents = Column(Text, nullable=False)


class Deletion(Base):
    """Append-only deletion log. Table: deletions"""
    __tablename__ = "deletions"

    delete_id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, index=True)
    channel_id = Column(String, nullable=False)
    time = Column(Integer, nullable=False)  # epoch seconds
