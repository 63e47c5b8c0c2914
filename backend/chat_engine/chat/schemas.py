"""Pydantic schemas for community chat.

This module defines the data structures shared by the room, the message
pipeline, the store and the wire protocol:
    - ChatMode / MemberRole: enumerations used by the permission engine
    - CommunityChatSettings: per-community chat configuration (read-only here)
    - Member: a connected participant and the role resolved at connect time
    - Message: a persisted chat message, ordered by (createdAt, id)

Field names are camelCase because the models are serialised as-is onto the
WebSocket and REST surfaces.
"""
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


class ChatMode(str, Enum):
    """Who may post in a community's chat.

    Attributes:
        DISABLED: Nobody can post.
        OWNER_ONLY: Only the owner can post.
        MODERATORS_ONLY: Owner and moderators can post.
        ALL_MEMBERS: Every approved member can post.
    """
    DISABLED = "disabled"
    OWNER_ONLY = "owner_only"
    MODERATORS_ONLY = "moderators_only"
    ALL_MEMBERS = "all_members"


class MemberRole(str, Enum):
    """A member's role within one community."""
    OWNER = "owner"
    MODERATOR = "moderator"
    MEMBER = "member"


class CommunityChatSettings(BaseModel):
    """Chat configuration owned by the community.

    ``chatMode`` is kept as a plain string: values outside ``ChatMode`` are
    tolerated here and denied by the permission engine.
    """
    chatMode: str = Field(default=ChatMode.OWNER_ONLY.value, description="Chat mode")
    slowmodeSeconds: int = Field(default=0, ge=0, description="Minimum seconds between sends")


class Member(BaseModel):
    """A participant attached to a room."""
    userId: str = Field(..., description="Verified user ID")
    role: MemberRole = Field(..., description="Role resolved at connect time")
    displayName: str = Field(default="", description="Display name shown in UI")


class Message(BaseModel):
    """A persisted chat message.

    Attributes:
        id: Server-assigned, time-ordered identifier.
        communityId: Community this message belongs to.
        authorId: User ID of the author.
        authorName: Display name of the author at send time.
        content: Message text; empty once tombstoned.
        isAnnouncement: Owner broadcast with distinct visual treatment.
        isPinned: Whether the message is currently pinned.
        isDeleted: Soft-delete tombstone flag.
        createdAt: Server timestamp (seconds since epoch).
        pinnedAt: When the message was last pinned.
        deletedBy: Who deleted the message.
        deletedAt: When the message was deleted.
        updatedAt: When the message was last pinned, unpinned or deleted.
        version: Incremented on every pin/unpin/delete that changes the record.
    """
    id: str = Field(..., description="Unique message ID")
    communityId: str = Field(..., description="Community ID")
    authorId: str = Field(..., description="Author user ID")
    authorName: str = Field(default="", description="Author display name")
    content: str = Field(..., description="Message content")
    isAnnouncement: bool = Field(default=False)
    isPinned: bool = Field(default=False)
    isDeleted: bool = Field(default=False)
    createdAt: float = Field(..., description="Timestamp in seconds since epoch")
    pinnedAt: Optional[float] = Field(default=None)
    deletedBy: Optional[str] = Field(default=None)
    deletedAt: Optional[float] = Field(default=None)
    updatedAt: Optional[float] = Field(default=None)
    version: int = Field(default=1, ge=1)

    @property
    def sort_key(self) -> Tuple[float, str]:
        return (self.createdAt, self.id)


class PresenceEntry(BaseModel):
    """One user in a presence snapshot (multiple sessions collapse to one)."""
    userId: str
    displayName: str
    role: MemberRole


class TypingEntry(BaseModel):
    userId: str
    displayName: str


class HistoryPage(BaseModel):
    """A page of history returned by the REST surface."""
    messages: List[Message] = Field(default_factory=list)
    hasMore: bool = False


class SendMessageRequest(BaseModel):
    """REST body for submitting a message without a live connection."""
    content: str = Field(..., description="Message content")
    isAnnouncement: bool = Field(default=False)


class PinRequest(BaseModel):
    isPinned: bool = Field(default=True)
