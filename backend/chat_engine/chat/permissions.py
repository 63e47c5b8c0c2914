"""Permission and rate-limit decisions.

Pure functions only: no I/O, no clocks. Callers pass the server timestamp in,
so the same inputs always produce the same decision.

Send permission by chat mode:

    chatMode          owner   moderator   member
    disabled          deny    deny        deny
    owner_only        allow   deny        deny
    moderators_only   allow   allow       deny
    all_members       allow   allow       allow

Unrecognised chat modes deny.
"""
from typing import Iterable, Optional, Union

from .errors import ChatDisabled, InsufficientRole, SlowmodeActive
from .schemas import ChatMode, CommunityChatSettings, MemberRole

RoleLike = Union[MemberRole, str]

_SEND_MATRIX = {
    ChatMode.DISABLED.value: frozenset(),
    ChatMode.OWNER_ONLY.value: frozenset({MemberRole.OWNER}),
    ChatMode.MODERATORS_ONLY.value: frozenset({MemberRole.OWNER, MemberRole.MODERATOR}),
    ChatMode.ALL_MEMBERS.value: frozenset(
        {MemberRole.OWNER, MemberRole.MODERATOR, MemberRole.MEMBER}
    ),
}


def _role(role: RoleLike) -> Optional[MemberRole]:
    try:
        return MemberRole(role)
    except ValueError:
        return None


def _mode(chat_mode: Union[ChatMode, str]) -> str:
    return chat_mode.value if isinstance(chat_mode, ChatMode) else str(chat_mode)


def can_send(chat_mode: Union[ChatMode, str], role: RoleLike) -> bool:
    """Return True if ``role`` may post under ``chat_mode``."""
    allowed = _SEND_MATRIX.get(_mode(chat_mode))
    resolved = _role(role)
    if allowed is None or resolved is None:
        return False
    return resolved in allowed


def slowmode_remaining(
    slowmode_seconds: float, last_send_at: Optional[float], now: float
) -> float:
    """Seconds left before the next send is allowed (0 when allowed)."""
    if slowmode_seconds <= 0 or last_send_at is None:
        return 0.0
    return max(0.0, slowmode_seconds - (now - last_send_at))


def can_slowmode_send(
    slowmode_seconds: float, last_send_at: Optional[float], now: float
) -> bool:
    """Allowed if slowmode is off or at least ``slowmode_seconds`` have elapsed."""
    if slowmode_seconds <= 0 or last_send_at is None:
        return True
    return now - last_send_at >= slowmode_seconds


def can_pin(role: RoleLike) -> bool:
    return _role(role) == MemberRole.OWNER


def can_delete(role: RoleLike, is_author: bool) -> bool:
    return _role(role) == MemberRole.OWNER or bool(is_author)


def can_announce(role: RoleLike) -> bool:
    return _role(role) == MemberRole.OWNER


def check_send(
    settings: CommunityChatSettings,
    role: RoleLike,
    last_send_at: Optional[float],
    now: float,
    is_announcement: bool = False,
    exempt_roles: Iterable[str] = (),
) -> None:
    """Raise the specific denial for a send, or return None if allowed.

    Order matters for the user-facing reason: a disabled chat is reported as
    disabled even to members whose role would not qualify anyway.

    Raises:
        ChatDisabled: chat mode is ``disabled``.
        InsufficientRole: role not allowed by the mode (or announcement by a
            non-owner), including unrecognised modes.
        SlowmodeActive: inside the member's slowmode window.
    """
    if _mode(settings.chatMode) == ChatMode.DISABLED.value:
        raise ChatDisabled()
    if not can_send(settings.chatMode, role):
        raise InsufficientRole("You do not have permission to send messages")
    if is_announcement and not can_announce(role):
        raise InsufficientRole("Only the community owner can post announcements")

    resolved = _role(role)
    if resolved is not None and resolved.value in set(exempt_roles):
        return
    if not can_slowmode_send(settings.slowmodeSeconds, last_send_at, now):
        raise SlowmodeActive(slowmode_remaining(settings.slowmodeSeconds, last_send_at, now))
