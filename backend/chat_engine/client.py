"""Python client for the community chat service.

``CommunityChatClient`` wraps one member's connection: it opens the
WebSocket, reconnects with exponential backoff when the connection drops
(asking the server for everything since the last message it saw), and
exposes the REST history/moderation endpoints.

``ChatView`` is the client-side state: it folds server events into a local
timeline through the history reconciler, so a history page fetched over REST
and messages arriving live can be merged in any order without duplicates.

Usage:
    client = CommunityChatClient("http://localhost:8000", "community-1", token)
    async for event in client.events():
        print(event["type"], len(client.view.messages))
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .chat.reconciler import apply_update, reconcile
from .chat.schemas import HistoryPage, Message

logger = logging.getLogger(__name__)

# Reconnect backoff: 1s, 2s, 4s, 8s, then capped at 10s
RECONNECT_BASE_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 10.0
MAX_RECONNECT_ATTEMPTS = 5

# Close codes after which reconnecting cannot help
_TERMINAL_CLOSE_CODES = {1003, 1008}


def reconnect_delay(attempt: int) -> float:
    """Delay before reconnect attempt ``attempt`` (0-based)."""
    return min(RECONNECT_BASE_SECONDS * (2 ** attempt), RECONNECT_MAX_SECONDS)


class ChatRejected(Exception):
    """The server refused the connection (bad token, unknown community...)."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


# =============================================================================
# Local view
# =============================================================================


class ChatView:
    """Client-side state of one community chat.

    Attributes:
        messages: Reconciled timeline, ordered by (createdAt, id).
        users: Current presence list.
        typing: Users currently typing.
        pinned: Pinned message ids, most recent first.
        last_denial: The most recent ``denied`` frame, if any.
    """

    def __init__(self) -> None:
        self.session_id: Optional[str] = None
        self.user_id: Optional[str] = None
        self.role: Optional[str] = None
        self.chat_mode: Optional[str] = None
        self.slowmode_seconds = 0
        self.messages: List[Message] = []
        self.users: List[Dict[str, Any]] = []
        self.typing: List[Dict[str, Any]] = []
        self.pinned: List[str] = []
        self.last_denial: Optional[Dict[str, Any]] = None

    @property
    def last_created_at(self) -> Optional[float]:
        """createdAt of the newest message seen."""
        return self.messages[-1].createdAt if self.messages else None

    @property
    def cursor(self) -> Tuple[Optional[float], Optional[str]]:
        """``(createdAt, id)`` of the newest message seen (the reconnect cursor)."""
        if not self.messages:
            return None, None
        return self.messages[-1].createdAt, self.messages[-1].id

    @property
    def oldest(self) -> Optional[Message]:
        return self.messages[0] if self.messages else None

    def merge_history(self, page: List[Message]) -> None:
        self.messages = reconcile(page, self.messages)

    def apply(self, event: Dict[str, Any]) -> None:
        """Update local state from one server event."""
        kind = event.get("type")
        if kind == "connected":
            self.session_id = event.get("sessionId")
            self.user_id = event.get("userId")
            self.role = event.get("role")
            self.chat_mode = event.get("chatMode")
            self.slowmode_seconds = event.get("slowmodeSeconds", 0)
        elif kind == "snapshot":
            self.users = event.get("users", [])
            self.typing = event.get("typing", [])
            self.pinned = [m["id"] for m in event.get("pinned", [])]
            incoming = [Message(**m) for m in event.get("messages", [])]
            self.messages = reconcile(self.messages, incoming)
        elif kind == "presence":
            self.users = event.get("users", [])
        elif kind == "typing":
            self.typing = event.get("users", [])
        elif kind == "message":
            self.messages = apply_update(self.messages, Message(**event["message"]))
        elif kind == "message_updated":
            self.messages = apply_update(self.messages, Message(**event["message"]))
            self.pinned = list(event.get("pinned", self.pinned))
        elif kind == "denied":
            self.last_denial = event


# =============================================================================
# Connection wrapper
# =============================================================================


class CommunityChatClient:
    """One member's connection to a community chat.

    Args:
        base_url: HTTP base URL of the chat service.
        community_id: Community to join.
        token: Login token.
        max_attempts: Reconnect attempts before giving up.
    """

    def __init__(
        self,
        base_url: str,
        community_id: str,
        token: str,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.community_id = community_id
        self.token = token
        self.max_attempts = max_attempts
        self.view = ChatView()
        self._ws = None
        self._closed = False

    # -------------------------------------------------------------------------
    # REST
    # -------------------------------------------------------------------------

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _chat_url(self, suffix: str = "") -> str:
        return f"{self.base_url}/communities/{self.community_id}/chat{suffix}"

    async def fetch_history(
        self,
        before: Optional[float] = None,
        before_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> HistoryPage:
        """Fetch a history page and merge it into the local view."""
        params: Dict[str, Any] = {}
        if before is not None:
            params["before"] = before
        if before_id is not None:
            params["beforeId"] = before_id
        if limit is not None:
            params["limit"] = limit
        async with httpx.AsyncClient() as client:
            resp = await client.get(self._chat_url("/messages"), params=params, headers=self._headers())
            resp.raise_for_status()
        page = HistoryPage(**resp.json())
        self.view.merge_history(page.messages)
        return page

    async def fetch_older(self, limit: Optional[int] = None) -> HistoryPage:
        """Load the page just before the oldest message in the view."""
        oldest = self.view.oldest
        if oldest is None:
            return await self.fetch_history(limit=limit)
        return await self.fetch_history(oldest.createdAt, oldest.id, limit)

    async def post_message(self, content: str, is_announcement: bool = False) -> Message:
        async with httpx.AsyncClient() as client:
            resp = await client.post(
                self._chat_url("/messages"),
                json={"content": content, "isAnnouncement": is_announcement},
                headers=self._headers(),
            )
            resp.raise_for_status()
        return Message(**resp.json())

    # -------------------------------------------------------------------------
    # WebSocket
    # -------------------------------------------------------------------------

    def websocket_url(self, since: Optional[float] = None, since_id: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"token": self.token}
        if since is not None:
            params["since"] = repr(since)
            if since_id is not None:
                params["sinceId"] = since_id
        ws_base = self.base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
        return f"{ws_base}/ws/communities/{self.community_id}/chat?{urlencode(params)}"

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield server events, reconnecting with backoff until closed.

        Raises:
            ChatRejected: The server refused the connection.
            ConnectionError: Reconnect attempts were exhausted.
        """
        attempt = 0
        while not self._closed:
            url = self.websocket_url(*self.view.cursor)
            try:
                async with websockets.connect(url) as ws:
                    self._ws = ws
                    async for raw in ws:
                        event = json.loads(raw)
                        if event.get("type") == "error" and event.get("code") in (
                            "authentication_failed", "community_not_found", "not_a_member",
                        ):
                            raise ChatRejected(event["code"], event.get("message", ""))
                        if event.get("type") == "snapshot":
                            attempt = 0
                        self.view.apply(event)
                        yield event
            except ConnectionClosed as exc:
                code = exc.rcvd.code if exc.rcvd is not None else None
                if code in _TERMINAL_CLOSE_CODES:
                    raise ChatRejected("closed", f"Server closed the connection ({code})") from exc
                logger.info(f"[Client] Connection closed ({code}); reconnecting")
            except (OSError, WebSocketException) as exc:
                logger.info(f"[Client] Connection failed: {exc}")
            finally:
                self._ws = None

            if self._closed:
                return
            if attempt >= self.max_attempts:
                raise ConnectionError(
                    f"Could not reconnect to {self.community_id} after {attempt} attempts"
                )
            delay = reconnect_delay(attempt)
            attempt += 1
            logger.info(f"[Client] Reconnect attempt {attempt} in {delay:.0f}s")
            await asyncio.sleep(delay)

    async def _send(self, frame: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("Not connected")
        await self._ws.send(json.dumps(frame))

    async def send_message(self, content: str, is_announcement: bool = False, ref: Optional[str] = None) -> None:
        frame: Dict[str, Any] = {"type": "send_message", "content": content, "isAnnouncement": is_announcement}
        if ref is not None:
            frame["ref"] = ref
        await self._send(frame)

    async def set_typing(self, is_typing: bool = True) -> None:
        await self._send({"type": "typing", "isTyping": is_typing})

    async def pin(self, message_id: str, is_pinned: bool = True) -> None:
        await self._send({"type": "pin", "messageId": message_id, "isPinned": is_pinned})

    async def delete(self, message_id: str) -> None:
        await self._send({"type": "delete", "messageId": message_id})

    async def ping(self) -> None:
        await self._send({"type": "ping"})

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            await self._ws.close()
