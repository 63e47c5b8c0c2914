"""Community directory: settings provider, membership lookup and token auth.

The chat engine treats communities, memberships and login sessions as
collaborators it only reads. This DuckDB-backed implementation lets the
service run standalone; the write helpers (``upsert_community``,
``set_membership``, ``upsert_user``, ``issue_token``) exist for local setup
and tests and stand in for the community-admin and login flows.

Database Schema:
    communities:           id, name, chat_mode, chat_slowmode_seconds, status
    users:                 id, display_name
    community_memberships: community_id, user_id, role, status
    auth_sessions:         token, user_id, expires_at

Only ``approved`` memberships count as members. The legacy ``admin`` role
is treated as ``moderator``.

Usage:
    directory = CommunityDirectory.get_instance()
    user_id = directory.authenticate(token)
    settings = directory.get_chat_settings(community_id)
    member = directory.get_member(community_id, user_id)
"""
import logging
import secrets
import time
from typing import Optional

import duckdb

from ..chat.errors import AuthenticationFailed, CommunityNotFound, NotAMember
from ..chat.schemas import ChatMode, CommunityChatSettings, Member, MemberRole

logger = logging.getLogger(__name__)

_ROLE_ALIASES = {"admin": MemberRole.MODERATOR}


def _resolve_role(raw: str) -> Optional[MemberRole]:
    if raw in _ROLE_ALIASES:
        return _ROLE_ALIASES[raw]
    try:
        return MemberRole(raw)
    except ValueError:
        return None


class CommunityDirectory:
    """Singleton read model of communities, members and login sessions."""

    _instance: Optional["CommunityDirectory"] = None
    _db_path: str = "chat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "CommunityDirectory":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
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
            CREATE TABLE IF NOT EXISTS communities (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                chat_mode VARCHAR NOT NULL DEFAULT 'owner_only',
                chat_slowmode_seconds INTEGER NOT NULL DEFAULT 0,
                status VARCHAR NOT NULL DEFAULT 'active'
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                display_name VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS community_memberships (
                community_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                role VARCHAR NOT NULL DEFAULT 'member',
                status VARCHAR NOT NULL DEFAULT 'pending',
                PRIMARY KEY (community_id, user_id)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS auth_sessions (
                token VARCHAR PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                expires_at DOUBLE
            )
        """)

    # =========================================================================
    # Reads used by the chat engine
    # =========================================================================

    def community_exists(self, community_id: str) -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM communities WHERE id = ? AND status = 'active'",
            [community_id],
        ).fetchone()
        return row is not None

    def get_chat_settings(self, community_id: str) -> CommunityChatSettings:
        """Return the community's chat settings.

        Raises:
            CommunityNotFound: Unknown, deleted or inactive community.
        """
        row = self._get_connection().execute(
            """
            SELECT chat_mode, chat_slowmode_seconds FROM communities
            WHERE id = ? AND status = 'active'
            """,
            [community_id],
        ).fetchone()
        if row is None:
            raise CommunityNotFound(community_id)
        return CommunityChatSettings(chatMode=row[0], slowmodeSeconds=max(0, row[1] or 0))

    def get_member(self, community_id: str, user_id: str) -> Member:
        """Resolve a user's role in a community.

        Raises:
            NotAMember: No approved membership, or an unrecognised role.
        """
        row = self._get_connection().execute(
            """
            SELECT m.role, u.display_name
            FROM community_memberships m
            LEFT JOIN users u ON u.id = m.user_id
            WHERE m.community_id = ? AND m.user_id = ? AND m.status = 'approved'
            """,
            [community_id, user_id],
        ).fetchone()
        if row is None:
            raise NotAMember()
        role = _resolve_role(row[0])
        if role is None:
            logger.warning(
                "Membership %s/%s has unrecognised role %r; treating as non-member",
                community_id, user_id, row[0],
            )
            raise NotAMember()
        return Member(userId=user_id, role=role, displayName=row[1] or user_id)

    def authenticate(self, token: Optional[str]) -> str:
        """Verify a login token and return its user ID.

        Raises:
            AuthenticationFailed: Missing, unknown or expired token.
        """
        if not token:
            raise AuthenticationFailed()
        row = self._get_connection().execute(
            "SELECT user_id, expires_at FROM auth_sessions WHERE token = ?",
            [token],
        ).fetchone()
        if row is None:
            raise AuthenticationFailed()
        user_id, expires_at = row
        if expires_at is not None and expires_at <= time.time():
            raise AuthenticationFailed("Authentication token expired")
        return user_id

    # =========================================================================
    # Writes (local setup and tests)
    # =========================================================================

    def upsert_community(
        self,
        community_id: str,
        name: str = "",
        chat_mode: str = ChatMode.OWNER_ONLY.value,
        slowmode_seconds: int = 0,
        status: str = "active",
    ) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM communities WHERE id = ?", [community_id])
        conn.execute(
            """
            INSERT INTO communities (id, name, chat_mode, chat_slowmode_seconds, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            [community_id, name or community_id, chat_mode, slowmode_seconds, status],
        )

    def upsert_user(self, user_id: str, display_name: str) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM users WHERE id = ?", [user_id])
        conn.execute("INSERT INTO users (id, display_name) VALUES (?, ?)", [user_id, display_name])

    def set_membership(
        self,
        community_id: str,
        user_id: str,
        role: str = MemberRole.MEMBER.value,
        status: str = "approved",
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            "DELETE FROM community_memberships WHERE community_id = ? AND user_id = ?",
            [community_id, user_id],
        )
        conn.execute(
            """
            INSERT INTO community_memberships (community_id, user_id, role, status)
            VALUES (?, ?, ?, ?)
            """,
            [community_id, user_id, role, status],
        )

    def issue_token(self, user_id: str, ttl_seconds: Optional[float] = None) -> str:
        token = secrets.token_urlsafe(24)
        expires_at = time.time() + ttl_seconds if ttl_seconds is not None else None
        self._get_connection().execute(
            "INSERT INTO auth_sessions (token, user_id, expires_at) VALUES (?, ?, ?)",
            [token, user_id, expires_at],
        )
        return token

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
