"""WebSocket wire protocol for community chat.

Frames are JSON objects with a ``type`` field. Command fields may be given
at the top level or inside a ``payload`` object; top-level fields win.

Inbound commands:
    - send_message (alias: message): {content, isAnnouncement?}
    - typing:       {isTyping?}   (defaults to true)
    - typing_stop:  {}
    - pin:          {messageId, isPinned?}   (defaults to true)
    - unpin:        {messageId}
    - delete:       {messageId}
    - ping:         {}

Any command may carry a client-chosen ``ref`` which is echoed back on the
``denied`` frame it causes.

Outbound events:
    - connected:       identity, role and chat settings for this session
    - snapshot:        presence, pinned, typing and history for a new session
    - presence:        full presence list after a join/leave
    - typing:          full typing set after it changes
    - message:         a newly persisted message
    - message_updated: a pinned/unpinned/deleted message
    - denied:          a rejected command (requester only)
    - error:           connect or protocol failure
    - pong:            keep-alive reply
"""
from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from .errors import ChatError, ProtocolViolation
from .schemas import (
    CommunityChatSettings,
    Member,
    Message,
    PresenceEntry,
    TypingEntry,
)


class CommandType(str, Enum):
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    PIN = "pin"
    DELETE = "delete"
    PING = "ping"


class EventType(str, Enum):
    CONNECTED = "connected"
    SNAPSHOT = "snapshot"
    PRESENCE = "presence"
    TYPING = "typing"
    MESSAGE = "message"
    MESSAGE_UPDATED = "message_updated"
    DENIED = "denied"
    ERROR = "error"
    PONG = "pong"


# Wire aliases -> (command type, implied fields)
_ALIASES = {
    "send_message": (CommandType.SEND_MESSAGE, {}),
    "message": (CommandType.SEND_MESSAGE, {}),
    "typing": (CommandType.TYPING, {}),
    "typing_stop": (CommandType.TYPING, {"isTyping": False}),
    "pin": (CommandType.PIN, {}),
    "unpin": (CommandType.PIN, {"isPinned": False}),
    "delete": (CommandType.DELETE, {}),
    "ping": (CommandType.PING, {}),
}


class Command(BaseModel):
    """A parsed inbound command."""
    type: CommandType
    ref: Optional[str] = None
    content: Optional[str] = None
    isAnnouncement: bool = False
    isTyping: bool = True
    messageId: Optional[str] = None
    isPinned: bool = True


def parse_command(frame: Any) -> Command:
    """Turn a decoded JSON frame into a ``Command``.

    Raises:
        ProtocolViolation: Not an object, unknown type, or bad field types.
    """
    if not isinstance(frame, dict):
        raise ProtocolViolation()
    raw_type = frame.get("type")
    if raw_type not in _ALIASES:
        raise ProtocolViolation(f"Unknown message type: {raw_type}")
    command_type, implied = _ALIASES[raw_type]

    fields: dict = {}
    payload = frame.get("payload")
    if isinstance(payload, dict):
        fields.update(payload)
    fields.update({k: v for k, v in frame.items() if k not in ("type", "payload")})
    fields.update(implied)
    fields["type"] = command_type

    try:
        command = Command(**fields)
    except ValidationError as exc:
        raise ProtocolViolation(f"Invalid {raw_type} command") from exc

    if command_type in (CommandType.PIN, CommandType.DELETE) and not command.messageId:
        raise ProtocolViolation(f"{raw_type} requires messageId")
    return command


# =============================================================================
# Outbound event builders
# =============================================================================


def connected_event(
    session_id: str, member: Member, community_id: str, settings: CommunityChatSettings
) -> dict:
    return {
        "type": EventType.CONNECTED.value,
        "sessionId": session_id,
        "communityId": community_id,
        "userId": member.userId,
        "displayName": member.displayName,
        "role": member.role.value,
        "chatMode": settings.chatMode,
        "slowmodeSeconds": settings.slowmodeSeconds,
    }


def snapshot_event(
    users: Iterable[PresenceEntry],
    pinned: Iterable[Message],
    typing: Iterable[TypingEntry],
    messages: Iterable[Message],
    is_recovery: bool = False,
) -> dict:
    return {
        "type": EventType.SNAPSHOT.value,
        "users": [u.model_dump(mode="json") for u in users],
        "pinned": [m.model_dump() for m in pinned],
        "typing": [t.model_dump() for t in typing],
        "messages": [m.model_dump() for m in messages],
        "isRecovery": is_recovery,
    }


def presence_event(users: List[PresenceEntry]) -> dict:
    return {
        "type": EventType.PRESENCE.value,
        "users": [u.model_dump(mode="json") for u in users],
    }


def typing_event(entries: List[TypingEntry]) -> dict:
    return {
        "type": EventType.TYPING.value,
        "users": [t.model_dump() for t in entries],
    }


def message_event(message: Message) -> dict:
    return {"type": EventType.MESSAGE.value, "message": message.model_dump()}


def message_updated_event(message: Message, pinned_ids: List[str]) -> dict:
    return {
        "type": EventType.MESSAGE_UPDATED.value,
        "message": message.model_dump(),
        "pinned": list(pinned_ids),
    }


def denied_event(error: ChatError, command: Optional[str] = None, ref: Optional[str] = None) -> dict:
    event = {"type": EventType.DENIED.value, "command": command, **error.to_dict()}
    if ref is not None:
        event["ref"] = ref
    return event


def error_event(error: ChatError) -> dict:
    return {"type": EventType.ERROR.value, **error.to_dict()}


def pong_event() -> dict:
    return {"type": EventType.PONG.value}
