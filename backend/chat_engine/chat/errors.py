"""Error taxonomy for the chat engine.

Every error carries a machine-readable ``code`` (sent to clients in ``denied``
and ``error`` frames) and a human-readable message. Permission and rate-limit
denials are routine outcomes: they go back to the requester only and are
never logged as system errors.

Hierarchy:
    ChatError
    ├── ConnectError          (connect-time rejections)
    │   ├── AuthenticationFailed
    │   ├── CommunityNotFound
    │   └── NotAMember
    ├── Denial                (per-command rejections, requester only)
    │   ├── ChatDisabled
    │   ├── InsufficientRole
    │   ├── SlowmodeActive
    │   ├── MessageValidationError
    │   └── MessageNotFound
    ├── PersistenceFailure    (retryable, logged)
    ├── ConnectionOverflow    (one session terminated)
    └── ProtocolViolation     (malformed frame)
"""
import math
from typing import Optional


class ChatError(Exception):
    """Base class for all chat engine errors."""

    code: str = "chat_error"
    retryable: bool = False

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message()
        super().__init__(self.message)

    def default_message(self) -> str:
        return "Chat error"

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class ConnectError(ChatError):
    code = "connect_error"


class AuthenticationFailed(ConnectError):
    code = "authentication_failed"

    def default_message(self) -> str:
        return "Invalid authentication token"


class CommunityNotFound(ConnectError):
    code = "community_not_found"

    def __init__(self, community_id: str) -> None:
        self.community_id = community_id
        super().__init__(f"Community not found: {community_id}")


class NotAMember(ConnectError):
    code = "not_a_member"

    def default_message(self) -> str:
        return "Not a member of this community"


class Denial(ChatError):
    code = "denied"


class ChatDisabled(Denial):
    code = "chat_disabled"

    def default_message(self) -> str:
        return "Chat is currently disabled for this community"


class InsufficientRole(Denial):
    code = "insufficient_role"

    def default_message(self) -> str:
        return "You do not have permission to do that"


class SlowmodeActive(Denial):
    """Raised when a member sends again inside their slowmode window.

    ``remaining_seconds`` is the exact remaining time; ``wait_seconds`` is the
    whole-second countdown shown to users.
    """

    code = "slowmode_active"

    def __init__(self, remaining_seconds: float) -> None:
        self.remaining_seconds = max(0.0, remaining_seconds)
        self.wait_seconds = max(1, math.ceil(self.remaining_seconds))
        super().__init__(
            f"Please wait {self.wait_seconds} seconds before sending another message"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["remainingSeconds"] = self.wait_seconds
        return data


class MessageValidationError(Denial):
    code = "validation_error"

    def default_message(self) -> str:
        return "Invalid message content"


class MessageNotFound(Denial):
    code = "message_not_found"

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class PersistenceFailure(ChatError):
    code = "persistence_failure"
    retryable = True

    def default_message(self) -> str:
        return "Failed to save message, please try again"


class ConnectionOverflow(ChatError):
    code = "connection_overflow"

    def default_message(self) -> str:
        return "Outbound buffer exceeded; connection closed"


class ProtocolViolation(ChatError):
    code = "protocol_violation"

    def default_message(self) -> str:
        return "Invalid message format"
