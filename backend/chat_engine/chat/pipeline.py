"""Message pipeline: validation, canonical ordering and persistence.

Both entry points (live WebSocket sends and REST submissions) go through one
``MessagePipeline`` instance, so there is exactly one place where message
ids and timestamps are assigned.

Ordering:
    Each community keeps a clock of the last assigned ``(microseconds,
    sequence)``. A new message gets ``createdAt = max(now, last)``; when two
    messages land on the same microsecond the sequence number increments.
    Ids are ``<microseconds:016d><sequence:04d><random:12 hex>``, so sorting
    by ``(createdAt, id)`` reproduces assignment order within a community and
    the random suffix keeps ids globally unique.

A message is only returned once the store has accepted it; a room never
broadcasts something that is not in persisted history.
"""
import logging
import threading
import time
import uuid
from typing import Callable, Dict, Optional, Tuple

import duckdb

from .errors import MessageNotFound, MessageValidationError, PersistenceFailure
from .schemas import Member, Message
from .store import MessageStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTENT_LENGTH = 2000

# Sequence numbers per microsecond before the clock is nudged forward
_MAX_SEQUENCE = 9999


def make_message_id(created_us: int, sequence: int) -> str:
    return f"{created_us:016d}{sequence:04d}{uuid.uuid4().hex[:12]}"


def _parse_sequence(message_id: str) -> int:
    try:
        return int(message_id[16:20])
    except (TypeError, ValueError):
        return 0


class MessagePipeline:
    """Validates, stamps and persists chat messages.

    Args:
        store: Durable message store.
        max_content_length: Maximum content length in characters.
        clock: Server clock returning seconds since epoch.
    """

    def __init__(
        self,
        store: MessageStore,
        max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_content_length = max_content_length
        self._clock = clock
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        # community_id -> (last created_at in microseconds, last sequence)
        self._clocks: Dict[str, Tuple[int, int]] = {}

    def _lock_for(self, community_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(community_id)
            if lock is None:
                lock = self._locks[community_id] = threading.Lock()
            return lock

    def forget(self, community_id: str) -> None:
        """Drop the ordering state of a community whose room was destroyed.

        The next message re-seeds the clock from the store.
        """
        with self._guard:
            self._locks.pop(community_id, None)
            self._clocks.pop(community_id, None)

    def validate(self, content: Optional[str]) -> str:
        """Return the content if acceptable.

        Raises:
            MessageValidationError: Empty, whitespace-only or over the cap.
        """
        if not isinstance(content, str) or not content.strip():
            raise MessageValidationError("Message content is required")
        if len(content) > self.max_content_length:
            raise MessageValidationError(
                f"Message exceeds the {self.max_content_length} character limit"
            )
        return content

    def _next_stamp(self, community_id: str) -> Tuple[int, int]:
        """Compute the next (microseconds, sequence) pair without committing it."""
        last = self._clocks.get(community_id)
        if last is None:
            latest = self.store.latest(community_id)
            if latest is not None:
                last = (int(round(latest.createdAt * 1_000_000)), _parse_sequence(latest.id))
        now_us = int(self._clock() * 1_000_000)
        if last is None or now_us > last[0]:
            return now_us, 0
        if last[1] >= _MAX_SEQUENCE:
            return last[0] + 1, 0
        return last[0], last[1] + 1

    def persist(
        self,
        community_id: str,
        author: Member,
        content: str,
        is_announcement: bool = False,
    ) -> Message:
        """Validate, stamp and durably store a new message.

        Raises:
            MessageValidationError: Content rejected.
            PersistenceFailure: The store could not write the message.
        """
        content = self.validate(content)
        with self._lock_for(community_id):
            try:
                created_us, sequence = self._next_stamp(community_id)
                message = Message(
                    id=make_message_id(created_us, sequence),
                    communityId=community_id,
                    authorId=author.userId,
                    authorName=author.displayName,
                    content=content,
                    isAnnouncement=bool(is_announcement),
                    createdAt=created_us / 1_000_000,
                )
                self.store.append(message)
            except duckdb.Error as exc:
                logger.error(
                    f"[Pipeline] Failed to persist message in community {community_id}: {exc}"
                )
                raise PersistenceFailure() from exc
            self._clocks[community_id] = (created_us, sequence)
        logger.debug(f"[Pipeline] Persisted {message.id} in community {community_id}")
        return message

    def get(self, community_id: str, message_id: str) -> Message:
        """Fetch a message or raise ``MessageNotFound``."""
        try:
            message = self.store.get(community_id, message_id)
        except duckdb.Error as exc:
            logger.error(f"[Pipeline] Failed to load message {message_id}: {exc}")
            raise PersistenceFailure() from exc
        if message is None:
            raise MessageNotFound(message_id)
        return message

    def _save(self, message: Message) -> Message:
        try:
            return self.store.save_flags(message)
        except duckdb.Error as exc:
            logger.error(f"[Pipeline] Failed to update message {message.id}: {exc}")
            raise PersistenceFailure() from exc

    def set_pinned(
        self, community_id: str, message_id: str, desired: bool
    ) -> Tuple[Message, bool]:
        """Pin or unpin a message. Idempotent.

        Returns:
            Tuple of (message, changed).
        """
        with self._lock_for(community_id):
            message = self.get(community_id, message_id)
            if message.isDeleted and desired:
                raise MessageValidationError("Deleted messages cannot be pinned")
            if message.isPinned == desired:
                return message, False
            now = self._clock()
            updated = message.model_copy(update={
                "isPinned": desired,
                "pinnedAt": now if desired else None,
                "updatedAt": now,
                "version": message.version + 1,
            })
            return self._save(updated), True

    def tombstone(
        self, community_id: str, message_id: str, deleted_by: str
    ) -> Tuple[Message, bool]:
        """Soft-delete a message: blank its content and keep the record.

        A deleted message is also unpinned. Idempotent.

        Returns:
            Tuple of (message, changed).
        """
        with self._lock_for(community_id):
            message = self.get(community_id, message_id)
            if message.isDeleted:
                return message, False
            now = self._clock()
            updated = message.model_copy(update={
                "content": "",
                "isDeleted": True,
                "isPinned": False,
                "pinnedAt": None,
                "deletedBy": deleted_by,
                "deletedAt": now,
                "updatedAt": now,
                "version": message.version + 1,
            })
            return self._save(updated), True
