"""Room registry: maps community IDs to live ``Room`` instances.

Rooms are created lazily on the first connection and destroyed once the
last member has left and a linger window has passed with nobody
re-attaching, so rapid reconnects reuse the same room.

The registry's lock guards only insertion into and removal from the room
map; message processing never happens under it.

Reservations:
    ``get_or_create_room`` reserves the room for the caller. The reservation
    is consumed by ``Room.attach`` or returned with ``release``. A room with
    outstanding reservations is never destroyed, which closes the window
    between "found the room" and "attached to it".
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from ..config import ChatSettings
from .errors import CommunityNotFound
from .pipeline import MessagePipeline
from .room import Room

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Owns every live room in this process.

    Args:
        directory: Community settings provider (``community_exists``,
            ``get_chat_settings``).
        pipeline: The single message pipeline shared by all rooms.
        chat_settings: Engine tunables from configuration.
        clock: Server clock handed to each room.
    """

    def __init__(
        self,
        directory: Any,
        pipeline: MessagePipeline,
        chat_settings: Optional[ChatSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.pipeline = pipeline
        self.chat_settings = chat_settings or ChatSettings()
        self._clock = clock
        self._rooms: Dict[str, Room] = {}
        self._lingers: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def _new_room(self, community_id: str) -> Room:
        cfg = self.chat_settings
        return Room(
            community_id,
            pipeline=self.pipeline,
            settings_provider=self.directory,
            on_empty=self.release_if_empty,
            typing_expiry_seconds=cfg.typing_expiry_seconds,
            typing_sweep_interval_seconds=cfg.typing_sweep_interval_seconds,
            history_page_size=cfg.history_page_size,
            slowmode_exempt_roles=cfg.slowmode_exempt_roles,
            clock=self._clock,
        )

    async def get_or_create_room(self, community_id: str) -> Room:
        """Return the room for a community, creating it if needed.

        Concurrent callers for the same community get the same instance.
        The caller must either attach to the room or call ``release``.

        Raises:
            CommunityNotFound: The community is unknown; no room is created.
        """
        async with self._lock:
            room = self._rooms.get(community_id)
            if room is None or room.closed:
                if not self.directory.community_exists(community_id):
                    raise CommunityNotFound(community_id)
                room = self._new_room(community_id)
                room.start()
                self._rooms[community_id] = room
                logger.info(f"[Registry] Created room for community {community_id}")
            self._cancel_linger(community_id)
            room.reservations += 1
            return room

    def get_room(self, community_id: str) -> Optional[Room]:
        return self._rooms.get(community_id)

    def room_count(self) -> int:
        return len(self._rooms)

    def release(self, room: Room) -> None:
        """Return a reservation taken by ``get_or_create_room`` without attaching."""
        room.reservations = max(0, room.reservations - 1)
        self.release_if_empty(room.community_id)

    def release_if_empty(self, community_id: str) -> None:
        """Schedule destruction of an idle room after the linger window."""
        room = self._rooms.get(community_id)
        if room is None or not room.is_idle or community_id in self._lingers:
            return
        linger = self.chat_settings.room_linger_seconds
        logger.debug(f"[Registry] Room {community_id} is empty; lingering {linger}s")
        self._lingers[community_id] = asyncio.get_running_loop().create_task(
            self._linger(community_id, room, linger),
            name=f"room-{community_id}-linger",
        )

    def _cancel_linger(self, community_id: str) -> None:
        task = self._lingers.pop(community_id, None)
        if task is not None:
            task.cancel()

    async def _linger(self, community_id: str, room: Room, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._lock:
            if self._lingers.get(community_id) is asyncio.current_task():
                del self._lingers[community_id]
            if self._rooms.get(community_id) is not room or not room.is_idle:
                return
            del self._rooms[community_id]
            self.pipeline.forget(community_id)
        await room.close()
        logger.info(f"[Registry] Destroyed idle room for community {community_id}")

    async def close_all(self) -> None:
        """Close every room (application shutdown)."""
        async with self._lock:
            rooms = list(self._rooms.values())
            self._rooms.clear()
            lingers = list(self._lingers.values())
            self._lingers.clear()
        for task in lingers:
            task.cancel()
        for room in rooms:
            self.pipeline.forget(room.community_id)
            await room.close()
        logger.info(f"[Registry] Closed {len(rooms)} room(s)")
