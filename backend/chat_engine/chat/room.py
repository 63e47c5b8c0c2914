"""Room: the authoritative chat state for one community.

A ``Room`` owns connected members, the typing set, per-user slowmode stamps
and the pinned list, and fans events out to every attached session.

Scheduling:
    Every command (attach, detach, typing, submit, pin, delete, typing sweep)
    is queued on the room's inbox and executed by a single worker task, one
    at a time, in arrival order. Command handlers are synchronous, so no two
    commands for the same community ever interleave. Different rooms have
    different workers and run independently.

Fan-out:
    Broadcasting never awaits a client. Each session exposes
    ``deliver(event) -> bool`` backed by a bounded queue; a session whose
    queue is full is disconnected with ``ConnectionOverflow`` and removed
    from the room, and the remaining members see a fresh presence list.

Session interface (duck-typed):
    session_id: str
    user_id: str
    deliver(event: dict) -> bool
    close_with(error: Optional[ChatError]) -> None

Roles are captured once at attach time. A member demoted while connected
keeps the old role until they reconnect; chat settings, on the other hand,
are re-read on every send.
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import duckdb

from . import permissions
from .errors import ConnectionOverflow, InsufficientRole, PersistenceFailure
from .pipeline import MessagePipeline
from .protocol import (
    message_event,
    message_updated_event,
    presence_event,
    snapshot_event,
    typing_event,
)
from .schemas import Member, Message, PresenceEntry, TypingEntry

logger = logging.getLogger(__name__)

# Default tunables (overridden from config by the registry)
TYPING_EXPIRY_SECONDS = 2.0
TYPING_SWEEP_INTERVAL_SECONDS = 0.5
HISTORY_PAGE_SIZE = 50

# handler, args, reply future, callback if the caller gave up before it ran
_Command = Tuple[Callable, tuple, "asyncio.Future", Optional[Callable[[], None]]]


class RoomClosed(RuntimeError):
    """Raised for commands sent to a room that has been destroyed."""


class Room:
    """Single-owner state container for one community's chat.

    Args:
        community_id: The community this room serves.
        pipeline: Shared message pipeline (also used by the REST path).
        settings_provider: Object with ``get_chat_settings(community_id)``.
        on_empty: Called with the community id when the last session leaves.
        typing_expiry_seconds: Typing pings older than this are swept.
        typing_sweep_interval_seconds: How often the sweep runs.
        history_page_size: Messages included in a new session's snapshot.
        slowmode_exempt_roles: Roles that bypass slowmode.
        clock: Server clock returning seconds since epoch.
    """

    def __init__(
        self,
        community_id: str,
        pipeline: MessagePipeline,
        settings_provider: Any,
        on_empty: Optional[Callable[[str], None]] = None,
        typing_expiry_seconds: float = TYPING_EXPIRY_SECONDS,
        typing_sweep_interval_seconds: float = TYPING_SWEEP_INTERVAL_SECONDS,
        history_page_size: int = HISTORY_PAGE_SIZE,
        slowmode_exempt_roles: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.community_id = community_id
        self.pipeline = pipeline
        self.settings_provider = settings_provider
        self._on_empty = on_empty
        self.typing_expiry_seconds = typing_expiry_seconds
        self.typing_sweep_interval_seconds = typing_sweep_interval_seconds
        self.history_page_size = history_page_size
        self.slowmode_exempt_roles = frozenset(slowmode_exempt_roles)
        self._clock = clock

        # session_id -> session / member
        self._sessions: Dict[str, Any] = {}
        self._members: Dict[str, Member] = {}
        # user_id -> server time of the last typing ping
        self._typing: Dict[str, float] = {}
        # user_id -> server time of the last accepted send
        self._last_send_at: Dict[str, float] = {}
        # Most recently pinned first
        self._pinned: List[str] = []

        # Callers holding a registry reservation that have not attached yet
        self.reservations = 0

        self._inbox: "asyncio.Queue[_Command]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._closed = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the command worker. Must be called from the event loop."""
        if self._worker is None and not self._closed:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"room-{self.community_id}"
            )

    async def close(self) -> None:
        """Stop timers and the worker; fail any queued commands."""
        if self._closed:
            return
        self._closed = True
        for session in list(self._sessions.values()):
            session.close_with(None)
        for task in (self._sweeper, self._worker):
            if task is not None:
                task.cancel()
        for task in (self._sweeper, self._worker):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        while not self._inbox.empty():
            _, _, future, _ = self._inbox.get_nowait()
            if not future.done():
                future.set_exception(RoomClosed(self.community_id))
        logger.info(f"[Room] Closed room for community {self.community_id}")

    async def _run(self) -> None:
        while True:
            handler, args, future, on_abandon = await self._inbox.get()
            if future.done():
                # Caller was cancelled before the command ran
                if on_abandon is not None:
                    on_abandon()
                continue
            try:
                result = handler(*args)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    async def _call(
        self, handler: Callable, *args: Any, on_abandon: Optional[Callable[[], None]] = None
    ) -> Any:
        if self._closed:
            raise RoomClosed(self.community_id)
        self.start()
        future = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait((handler, args, future, on_abandon))
        return await future

    def _start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_loop(), name=f"room-{self.community_id}-typing"
            )

    def _stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.typing_sweep_interval_seconds)
            try:
                await self._call(self._handle_sweep_typing)
            except RoomClosed:
                return

    # =========================================================================
    # Read-only views (safe between commands on the event loop)
    # =========================================================================

    @property
    def member_count(self) -> int:
        return len(self._sessions)

    @property
    def is_idle(self) -> bool:
        return not self._sessions and self.reservations == 0 and not self._closed

    def presence(self) -> List[PresenceEntry]:
        """Attached users (one entry per user), sorted by display name."""
        seen: Dict[str, PresenceEntry] = {}
        for member in self._members.values():
            if member.userId not in seen:
                seen[member.userId] = PresenceEntry(
                    userId=member.userId, displayName=member.displayName, role=member.role
                )
        return sorted(seen.values(), key=lambda e: (e.displayName.lower(), e.userId))

    def typing_users(self) -> List[TypingEntry]:
        names = {m.userId: m.displayName for m in self._members.values()}
        return [
            TypingEntry(userId=user_id, displayName=names.get(user_id, user_id))
            for user_id in sorted(self._typing)
        ]

    def pinned_ids(self) -> List[str]:
        return list(self._pinned)

    def last_send_at(self, user_id: str) -> Optional[float]:
        return self._last_send_at.get(user_id)

    def _user_connected(self, user_id: str) -> bool:
        return any(m.userId == user_id for m in self._members.values())

    # =========================================================================
    # Public commands
    # =========================================================================

    async def attach(
        self,
        session: Any,
        member: Member,
        since: Optional[float] = None,
        since_id: Optional[str] = None,
    ) -> List[PresenceEntry]:
        """Add a session; reply with a snapshot and broadcast presence.

        With ``since`` (and the ``since_id`` of the newest message the client
        has) the snapshot is a recovery: every message after that cursor plus
        the messages changed while the client was away. An attach abandoned
        before it runs gives its registry reservation back.
        """
        return await self._call(
            self._handle_attach, session, member, since, since_id,
            on_abandon=self._release_reservation,
        )

    async def detach(self, session: Any) -> bool:
        """Remove a session. Returns False if it was not attached."""
        if self._closed:
            return False
        return await self._call(self._handle_detach, session)

    async def set_typing(self, user_id: str, is_typing: bool) -> None:
        await self._call(self._handle_set_typing, user_id, is_typing)

    async def sweep_typing(self) -> List[str]:
        """Drop stale typing entries now. Returns the expired user IDs."""
        return await self._call(self._handle_sweep_typing)

    async def submit_message(self, member: Member, content: str, is_announcement: bool = False) -> Message:
        """Check permissions, persist and broadcast a message.

        Raises:
            ChatDisabled, InsufficientRole, SlowmodeActive,
            MessageValidationError: Denials for the sender only.
            PersistenceFailure: Retryable; ``lastSendAt`` is untouched.
        """
        return await self._call(self._handle_submit, member, content, is_announcement)

    async def set_pinned(self, member: Member, message_id: str, desired: bool = True) -> Message:
        return await self._call(self._handle_set_pinned, member, message_id, desired)

    async def delete_message(self, member: Member, message_id: str) -> Message:
        return await self._call(self._handle_delete, member, message_id)

    # =========================================================================
    # Command handlers (run only on the worker)
    # =========================================================================

    def _release_reservation(self) -> None:
        self.reservations = max(0, self.reservations - 1)
        if self.is_idle and self._on_empty is not None:
            self._on_empty(self.community_id)

    def _handle_attach(
        self, session: Any, member: Member, since: Optional[float], since_id: Optional[str]
    ) -> List[PresenceEntry]:
        self.reservations = max(0, self.reservations - 1)
        store = self.pipeline.store
        try:
            if since is not None:
                messages = store.since(self.community_id, since, since_id)
            else:
                messages = store.history_page(self.community_id, limit=self.history_page_size)
            pinned = store.pinned(self.community_id)
        except duckdb.Error as exc:
            logger.error(f"[Room] Failed to load snapshot for {self.community_id}: {exc}")
            if not self._sessions and self._on_empty is not None:
                self._on_empty(self.community_id)
            raise PersistenceFailure("Could not load chat history") from exc

        first = not self._sessions
        self._sessions[session.session_id] = session
        self._members[session.session_id] = member
        self._pinned = [m.id for m in pinned]
        if first:
            self._start_sweeper()

        logger.info(
            f"[Room] {member.userId} ({member.role.value}) attached to {self.community_id}; "
            f"{len(self._sessions)} session(s)"
        )
        users = self.presence()
        session.deliver(snapshot_event(
            users=users,
            pinned=pinned,
            typing=self.typing_users(),
            messages=messages,
            is_recovery=since is not None,
        ))
        self._broadcast(presence_event(users))
        return users

    def _handle_detach(self, session: Any) -> bool:
        if not self._remove_session(session.session_id):
            return False
        if not self._sessions and self._on_empty is not None:
            self._on_empty(self.community_id)
        return True

    def _remove_session(self, session_id: str) -> bool:
        self._sessions.pop(session_id, None)
        member = self._members.pop(session_id, None)
        if member is None:
            return False
        logger.info(
            f"[Room] {member.userId} detached from {self.community_id}; "
            f"{len(self._sessions)} session(s) left"
        )
        if self._user_connected(member.userId):
            return True

        typing_changed = self._typing.pop(member.userId, None) is not None
        self._last_send_at.pop(member.userId, None)
        if not self._sessions:
            self._stop_sweeper()
        self._broadcast(presence_event(self.presence()))
        if typing_changed:
            self._broadcast(typing_event(self.typing_users()))
        return True

    def _handle_set_typing(self, user_id: str, is_typing: bool) -> None:
        if not self._user_connected(user_id):
            return
        if is_typing:
            was_typing = user_id in self._typing
            self._typing[user_id] = self._clock()
            if not was_typing:
                self._broadcast(typing_event(self.typing_users()))
        elif self._typing.pop(user_id, None) is not None:
            self._broadcast(typing_event(self.typing_users()))

    def _handle_sweep_typing(self) -> List[str]:
        now = self._clock()
        expired = [
            user_id for user_id, stamped in self._typing.items()
            if now - stamped > self.typing_expiry_seconds
        ]
        for user_id in expired:
            del self._typing[user_id]
        if expired:
            logger.debug(f"[Room] Typing expired in {self.community_id}: {expired}")
            self._broadcast(typing_event(self.typing_users()))
        return expired

    def _handle_submit(self, member: Member, content: str, is_announcement: bool) -> Message:
        settings = self.settings_provider.get_chat_settings(self.community_id)
        now = self._clock()

        last = self._last_send_at.get(member.userId)
        if last is None and settings.slowmodeSeconds > 0:
            # Seed from history so reconnecting does not reset slowmode
            try:
                last = self.pipeline.store.last_sent_at(self.community_id, member.userId)
            except duckdb.Error as exc:
                logger.error(f"[Room] Failed to read last send for {member.userId}: {exc}")
                raise PersistenceFailure() from exc

        permissions.check_send(
            settings,
            member.role,
            last,
            now,
            is_announcement=is_announcement,
            exempt_roles=self.slowmode_exempt_roles,
        )

        message = self.pipeline.persist(self.community_id, member, content, is_announcement)
        self._last_send_at[member.userId] = now

        self._broadcast(message_event(message))
        if self._typing.pop(member.userId, None) is not None:
            self._broadcast(typing_event(self.typing_users()))
        return message

    def _handle_set_pinned(self, member: Member, message_id: str, desired: bool) -> Message:
        if not permissions.can_pin(member.role):
            raise InsufficientRole("Only the community owner can pin messages")
        message, changed = self.pipeline.set_pinned(self.community_id, message_id, desired)
        if changed:
            if message_id in self._pinned:
                self._pinned.remove(message_id)
            if desired:
                self._pinned.insert(0, message_id)
            logger.info(
                f"[Room] {member.userId} {'pinned' if desired else 'unpinned'} {message_id} "
                f"in {self.community_id}"
            )
            self._broadcast(message_updated_event(message, self._pinned))
        return message

    def _handle_delete(self, member: Member, message_id: str) -> Message:
        existing = self.pipeline.get(self.community_id, message_id)
        if not permissions.can_delete(member.role, existing.authorId == member.userId):
            raise InsufficientRole("You can only delete your own messages")
        message, changed = self.pipeline.tombstone(self.community_id, message_id, member.userId)
        if changed:
            if message_id in self._pinned:
                self._pinned.remove(message_id)
            logger.info(f"[Room] {member.userId} deleted {message_id} in {self.community_id}")
            self._broadcast(message_updated_event(message, self._pinned))
        return message

    # =========================================================================
    # Fan-out
    # =========================================================================

    def _broadcast(self, event: dict) -> None:
        """Queue ``event`` on every attached session; drop sessions that overflow."""
        overflowed = [
            session_id
            for session_id, session in list(self._sessions.items())
            if not session.deliver(event)
        ]
        for session_id in overflowed:
            session = self._sessions.get(session_id)
            if session is None:
                continue
            logger.warning(
                f"[Room] Session {session_id} in {self.community_id} overflowed; disconnecting"
            )
            session.close_with(ConnectionOverflow())
            self._remove_session(session_id)
        if overflowed and not self._sessions and self._on_empty is not None:
            self._on_empty(self.community_id)
