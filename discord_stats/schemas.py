"""
Pydantic schemas for gateway events and API responses.

This module contains:
- Event models handed from the gateway adapter to the event router
- Ready payload models used by the one-shot handshake
- Response models for the stats API

Identifiers in event models are ints; decimal strings are accepted too.
Identifiers in response models are the stored decimal strings.
"""

from typing import Optional

from pydantic import BaseModel, Field


# =============================================================================
# Gateway Event Models
# =============================================================================

class StoreMessage(BaseModel):
    """A chat message as observed on the gateway or read back from storage."""
    message_id: int = Field(..., ge=0, description="Message snowflake")
    time: int = Field(..., description="Creation time in epoch seconds")
    content: str = Field(default="", description="Message text")
    channel_id: int = Field(..., ge=0, description="Channel snowflake")
    guild_id: Optional[int] = Field(
        None,
        ge=0,
        description="Guild snowflake, None for direct messages"
    )
    author_id: int = Field(..., ge=0, description="Author snowflake")


class MessageUpdate(BaseModel):
    """
    A message edit.

    The gateway may omit author and guild; cached carries the client's
    snapshot of the message before the edit when one exists.
    """
    message_id: int = Field(..., ge=0)
    channel_id: int = Field(..., ge=0)
    guild_id: Optional[int] = None
    author_id: Optional[int] = None
    content: Optional[str] = None
    edited_timestamp: Optional[int] = Field(
        None,
        description="Edit time in epoch seconds"
    )
    cached: Optional[StoreMessage] = None

    @property
    def changes_message(self) -> bool:
        """False for updates with neither new content nor an edit time (embed unfurls)."""
        return self.content is not None or self.edited_timestamp is not None


class MessageDelete(BaseModel):
    """A single deletion. Carries no author."""
    message_id: int = Field(..., ge=0)
    channel_id: int = Field(..., ge=0)
    guild_id: Optional[int] = None


class BulkMessageDelete(BaseModel):
    message_ids: list[int] = Field(default_factory=list)
    channel_id: int = Field(..., ge=0)
    guild_id: Optional[int] = None


class Ready(BaseModel):
    """Session established for the given account."""
    user_id: int = Field(..., ge=0)
    username: Optional[str] = None


# =============================================================================
# Handshake Models
# =============================================================================

class ChannelInfo(BaseModel):
    id: int
    name: str


class GuildInfo(BaseModel):
    id: int
    name: str
    channels: list[ChannelInfo] = Field(default_factory=list)


class PrivateChannelInfo(BaseModel):
    """A direct message channel; recipient is the other user's name."""
    id: int
    recipient: str


class ReadyData(BaseModel):
    """
    Snapshot of the ready payload captured by the one-shot handshake.

    Used to resolve human readable guild/channel names to identifiers.
    """
    user_id: int
    username: Optional[str] = None
    guilds: list[GuildInfo] = Field(default_factory=list)
    private_channels: list[PrivateChannelInfo] = Field(default_factory=list)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class CountResponse(BaseModel):
    """A single aggregate count; null when it could not be computed."""
    count: Optional[int] = Field(None, ge=0)


class Channel(BaseModel):
    """A distinct (channel, guild) pair observed across stored messages."""
    channel_id: str = Field(..., description="Channel snowflake")
    guild_id: Optional[str] = Field(
        None,
        description="Guild snowflake, null for direct messages"
    )


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class EditHistory(BaseModel):
    """Stored edit history of one message, oldest edit first."""
    message_id: str
    channel_id: str
    times: list[Optional[int]] = Field(default_factory=list)
    contents: list[Optional[str]] = Field(default_factory=list)
