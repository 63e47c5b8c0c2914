"""Connection session: one authenticated WebSocket attached to a room.

The session turns inbound frames into room commands and drains room events
onto the socket. Reading and writing are independent tasks:

    reader:  websocket -> parse_command -> Room command -> (denial -> outbox)
    writer:  outbox (bounded asyncio.Queue) -> websocket.send_json

The room only ever calls ``deliver``, which never blocks. When the outbox is
full the room disconnects the session with ``ConnectionOverflow`` instead of
waiting for a slow client.
"""
import asyncio
import json
import logging
import time
import uuid
from typing import Callable, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from .errors import (
    ChatError,
    CommunityNotFound,
    ConnectionOverflow,
    Denial,
    PersistenceFailure,
    ProtocolViolation,
)
from .protocol import (
    Command,
    CommandType,
    denied_event,
    error_event,
    parse_command,
    pong_event,
)
from .room import Room, RoomClosed
from .schemas import CommunityChatSettings, Member

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_GOING_AWAY = 1001
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013

DEFAULT_OUTBOUND_QUEUE_SIZE = 256
DEFAULT_TYPING_REFRESH_SECONDS = 0.5
FLUSH_TIMEOUT_SECONDS = 1.0


def resolve_member(directory, community_id: str, token: Optional[str]) -> Tuple[Member, CommunityChatSettings]:
    """Authenticate a connect attempt and resolve the member's role.

    The role is resolved once here and kept for the session's lifetime.

    Raises:
        AuthenticationFailed: Bad or missing token.
        CommunityNotFound: Unknown community.
        NotAMember: The user has no approved membership.
    """
    user_id = directory.authenticate(token)
    settings = directory.get_chat_settings(community_id)
    member = directory.get_member(community_id, user_id)
    return member, settings


class ConnectionSession:
    """A live duplex connection between one client and one room.

    Attributes:
        session_id: Server-assigned identifier for this connection.
        user_id: Verified user ID.
        community_id: Community the session is attached to.
        member: Member record (role frozen at connect time).
        last_typing_sent_at: Server time of the last forwarded typing ping.
    """

    def __init__(
        self,
        websocket: WebSocket,
        community_id: str,
        member: Member,
        queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE,
        typing_refresh_seconds: float = DEFAULT_TYPING_REFRESH_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.websocket = websocket
        self.session_id = str(uuid.uuid4())
        self.community_id = community_id
        self.member = member
        self.user_id = member.userId
        self.last_typing_sent_at: Optional[float] = None
        self.typing_refresh_seconds = typing_refresh_seconds
        self._clock = clock
        self._outbox: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._close_requested = asyncio.Event()
        self.close_reason: Optional[ChatError] = None

    # =========================================================================
    # Room-facing interface
    # =========================================================================

    def deliver(self, event: dict) -> bool:
        """Queue an event for the client. Returns False if the buffer is full."""
        if self._close_requested.is_set():
            return True
        try:
            self._outbox.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def close_with(self, error: Optional[ChatError]) -> None:
        """Ask the session to terminate (``None`` means a normal shutdown)."""
        if self._close_requested.is_set():
            return
        self.close_reason = error
        self._close_requested.set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def run(
        self, room: Room, since: Optional[float] = None, since_id: Optional[str] = None
    ) -> None:
        """Attach to ``room`` and pump frames until either side goes away.

        Args:
            room: The community's room.
            since: createdAt of the newest message the client already has.
            since_id: Id of that message.
        """
        writer = asyncio.create_task(self._write_loop(), name=f"session-{self.session_id}-writer")
        reader: Optional[asyncio.Task] = None
        closer: Optional[asyncio.Task] = None
        attached = False
        try:
            try:
                await room.attach(self, self.member, since, since_id)
                attached = True
            except asyncio.CancelledError:
                # The attach may already have run; detach is a no-op if not
                attached = True
                raise
            except PersistenceFailure as exc:
                self.deliver(error_event(exc))
                self.close_with(exc)
            except RoomClosed:
                self.close_with(None)

            if not self._close_requested.is_set():
                reader = asyncio.create_task(
                    self._read_loop(room), name=f"session-{self.session_id}-reader"
                )
                closer = asyncio.create_task(self._close_requested.wait())
                await asyncio.wait({writer, reader, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, closer):
                if task is not None:
                    task.cancel()
            if attached:
                try:
                    await room.detach(self)
                except RoomClosed:
                    pass
            await self._flush_and_close(writer)

    async def _drain(self, writer: asyncio.Task) -> None:
        while not self._outbox.empty() and not writer.done():
            await asyncio.sleep(0.01)

    async def _flush_and_close(self, writer: asyncio.Task) -> None:
        reason = self.close_reason
        if not isinstance(reason, ConnectionOverflow):
            # Let already-queued frames (e.g. a final error) reach the client
            try:
                await asyncio.wait_for(self._drain(writer), FLUSH_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.debug(f"[WS] Gave up flushing session {self.session_id}")
        writer.cancel()
        try:
            await writer
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass

        if not self._close_requested.is_set():
            return
        if isinstance(reason, ConnectionOverflow) or (reason is not None and reason.retryable):
            code = CLOSE_TRY_AGAIN_LATER
        elif isinstance(reason, ProtocolViolation):
            code = CLOSE_UNSUPPORTED_DATA
        elif reason is None:
            code = CLOSE_GOING_AWAY
        else:
            code = CLOSE_POLICY_VIOLATION
        try:
            await self.websocket.close(code=code)
        except RuntimeError as exc:
            logger.debug(f"[WS] Close on finished socket {self.session_id}: {exc}")
        logger.info(f"[WS] Session {self.session_id} closed with code {code}")

    async def _write_loop(self) -> None:
        while True:
            event = await self._outbox.get()
            try:
                await self.websocket.send_json(event)
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug(f"[WS] Failed to send to session {self.session_id}: {exc}")
                return

    async def _read_loop(self, room: Room) -> None:
        while True:
            try:
                text = await self.websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"[WS] Session {self.session_id} ({self.user_id}) disconnected")
                return
            except KeyError:
                # Binary frame where text was expected
                self.close_with(ProtocolViolation("Binary frames are not supported"))
                return

            try:
                frame = json.loads(text)
            except ValueError:
                logger.warning(f"[WS] Malformed frame from session {self.session_id}")
                self.deliver(error_event(ProtocolViolation()))
                self.close_with(ProtocolViolation())
                return

            try:
                command = parse_command(frame)
            except ProtocolViolation as exc:
                self.deliver(error_event(exc))
                continue

            if not await self._dispatch(room, command):
                return

    # =========================================================================
    # Command dispatch
    # =========================================================================

    async def _dispatch(self, room: Room, command: Command) -> bool:
        """Run one command. Returns False if the session must end."""
        try:
            if command.type == CommandType.PING:
                self.deliver(pong_event())
            elif command.type == CommandType.TYPING:
                await self._forward_typing(room, command.isTyping)
            elif command.type == CommandType.SEND_MESSAGE:
                await room.submit_message(self.member, command.content, command.isAnnouncement)
            elif command.type == CommandType.PIN:
                await room.set_pinned(self.member, command.messageId, command.isPinned)
            elif command.type == CommandType.DELETE:
                await room.delete_message(self.member, command.messageId)
        except Denial as exc:
            logger.debug(f"[WS] {command.type.value} by {self.user_id} denied: {exc.code}")
            self.deliver(denied_event(exc, command.type.value, command.ref))
        except PersistenceFailure as exc:
            self.deliver(denied_event(exc, command.type.value, command.ref))
        except CommunityNotFound as exc:
            logger.warning(f"[WS] Community {self.community_id} vanished; closing {self.session_id}")
            self.deliver(error_event(exc))
            self.close_with(exc)
            return False
        except RoomClosed:
            self.close_with(None)
            return False
        return True

    async def _forward_typing(self, room: Room, is_typing: bool) -> None:
        now = self._clock()
        if is_typing:
            last = self.last_typing_sent_at
            if last is not None and now - last < self.typing_refresh_seconds:
                return
            self.last_typing_sent_at = now
        else:
            self.last_typing_sent_at = None
        await room.set_typing(self.user_id, is_typing)
