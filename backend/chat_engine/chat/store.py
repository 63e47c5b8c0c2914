"""DuckDB-based durable message store.

Append-only storage for chat messages, keyed by ``(community_id, id)``. The
message pipeline is the only writer; the REST history and pinned endpoints
and the room's attach snapshot are the readers. Messages are never removed:
deletion is a tombstone written through ``save_flags``.

Database Schema:
    chat_messages table:
        - id: Time-ordered message identifier (primary key)
        - community_id: Community the message belongs to
        - author_id / author_name: Who sent it
        - content: Text (empty once tombstoned)
        - is_announcement / is_pinned / is_deleted: Flags
        - created_at: Server timestamp, non-decreasing per community
        - pinned_at / deleted_by / deleted_at: Moderation metadata
        - version: Bumped by every state change after creation
        - updated_at: Time of the last pin/unpin/delete (recovery replays it)

Thread Safety:
    The DuckDB connection is NOT thread-safe. All access happens from the
    event loop; the pipeline serialises writers per community.

Usage:
    store = MessageStore.get_instance()
    store.append(message)
    page = store.history_page("community-1", limit=50)
"""
from typing import List, Optional

import duckdb

from .schemas import Message

_COLUMNS = (
    "id, community_id, author_id, author_name, content, is_announcement, "
    "is_pinned, is_deleted, created_at, pinned_at, deleted_by, deleted_at, version, updated_at"
)


def _row_to_message(row: tuple) -> Message:
    return Message(
        id=row[0],
        communityId=row[1],
        authorId=row[2],
        authorName=row[3] or "",
        content=row[4],
        isAnnouncement=bool(row[5]),
        isPinned=bool(row[6]),
        isDeleted=bool(row[7]),
        createdAt=row[8],
        pinnedAt=row[9],
        deletedBy=row[10],
        deletedAt=row[11],
        version=row[12],
        updatedAt=row[13],
    )


class MessageStore:
    """Singleton store for chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file. ``":memory:"`` keeps data in RAM.
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and drop the singleton (used by tests)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id VARCHAR PRIMARY KEY,
                community_id VARCHAR NOT NULL,
                author_id VARCHAR NOT NULL,
                author_name VARCHAR,
                content VARCHAR NOT NULL,
                is_announcement BOOLEAN NOT NULL DEFAULT FALSE,
                is_pinned BOOLEAN NOT NULL DEFAULT FALSE,
                is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                created_at DOUBLE NOT NULL,
                pinned_at DOUBLE,
                deleted_by VARCHAR,
                deleted_at DOUBLE,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at DOUBLE
            )
        """)
        # Databases created before updated_at existed
        conn.execute("ALTER TABLE chat_messages ADD COLUMN IF NOT EXISTS updated_at DOUBLE")

    def append(self, message: Message) -> Message:
        """Insert a new message.

        Raises:
            duckdb.Error: If the write fails (e.g. duplicate id).
        """
        conn = self._get_connection()
        conn.execute(
            f"INSERT INTO chat_messages ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                message.id,
                message.communityId,
                message.authorId,
                message.authorName,
                message.content,
                message.isAnnouncement,
                message.isPinned,
                message.isDeleted,
                message.createdAt,
                message.pinnedAt,
                message.deletedBy,
                message.deletedAt,
                message.version,
                message.updatedAt,
            ],
        )
        return message

    def save_flags(self, message: Message) -> Message:
        """Persist pin/delete state (and the tombstoned content) of a message."""
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE chat_messages
            SET content = ?, is_pinned = ?, pinned_at = ?, is_deleted = ?,
                deleted_by = ?, deleted_at = ?, version = ?, updated_at = ?
            WHERE community_id = ? AND id = ?
            """,
            [
                message.content,
                message.isPinned,
                message.pinnedAt,
                message.isDeleted,
                message.deletedBy,
                message.deletedAt,
                message.version,
                message.updatedAt,
                message.communityId,
                message.id,
            ],
        )
        return message

    def get(self, community_id: str, message_id: str) -> Optional[Message]:
        row = self._get_connection().execute(
            f"SELECT {_COLUMNS} FROM chat_messages WHERE community_id = ? AND id = ?",
            [community_id, message_id],
        ).fetchone()
        return _row_to_message(row) if row else None

    def latest(self, community_id: str) -> Optional[Message]:
        """Most recent message in a community by (created_at, id)."""
        row = self._get_connection().execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE community_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            [community_id],
        ).fetchone()
        return _row_to_message(row) if row else None

    def history_page(
        self,
        community_id: str,
        before_ts: Optional[float] = None,
        before_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Message]:
        """Get a page of history, oldest first.

        Args:
            community_id: The community.
            before_ts: Cursor timestamp; only messages older than it are
                returned. ``None`` returns the most recent page.
            before_id: Optional id tie-break for messages sharing
                ``before_ts``.
            limit: Maximum number of messages.
        """
        conn = self._get_connection()
        if before_ts is None:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM chat_messages
                WHERE community_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                [community_id, limit],
            ).fetchall()
        elif before_id is None:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM chat_messages
                WHERE community_id = ? AND created_at < ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                [community_id, before_ts, limit],
            ).fetchall()
        else:
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM chat_messages
                WHERE community_id = ?
                  AND (created_at < ? OR (created_at = ? AND id < ?))
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                [community_id, before_ts, before_ts, before_id, limit],
            ).fetchall()
        return [_row_to_message(row) for row in reversed(rows)]

    def since(
        self,
        community_id: str,
        since_ts: float,
        since_id: Optional[str] = None,
    ) -> List[Message]:
        """Everything a client that last saw ``(since_ts, since_id)`` is missing.

        Used for reconnect recovery. Returns messages after the cursor plus
        older messages pinned, unpinned or deleted since ``since_ts``, oldest
        first. Without ``since_id`` every message at ``since_ts`` is included,
        so several messages sharing one timestamp are never skipped.

        Args:
            community_id: The community.
            since_ts: createdAt of the newest message the client has.
            since_id: Id of that message.
        """
        rows = self._get_connection().execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE community_id = ?
              AND (created_at > ?
                   OR (created_at = ? AND id > ?)
                   OR updated_at >= ?)
            ORDER BY created_at ASC, id ASC
            """,
            [community_id, since_ts, since_ts, since_id or "", since_ts],
        ).fetchall()
        return [_row_to_message(row) for row in rows]

    def pinned(self, community_id: str) -> List[Message]:
        """Pinned messages, most recently pinned first."""
        rows = self._get_connection().execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE community_id = ? AND is_pinned AND NOT is_deleted
            ORDER BY pinned_at DESC, id DESC
            """,
            [community_id],
        ).fetchall()
        return [_row_to_message(row) for row in rows]

    def last_sent_at(self, community_id: str, author_id: str) -> Optional[float]:
        row = self._get_connection().execute(
            "SELECT max(created_at) FROM chat_messages WHERE community_id = ? AND author_id = ?",
            [community_id, author_id],
        ).fetchone()
        return row[0] if row else None

    def count(self, community_id: str) -> int:
        row = self._get_connection().execute(
            "SELECT count(*) FROM chat_messages WHERE community_id = ?",
            [community_id],
        ).fetchone()
        return row[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
