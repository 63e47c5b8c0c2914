"""Community chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/communities/{community_id}/chat: Real-time chat
    - GET    /communities/{community_id}/chat/messages: Paginated history
    - GET    /communities/{community_id}/chat/pinned: Pinned messages
    - POST   /communities/{community_id}/chat/messages: Send without a socket
    - POST   /communities/{community_id}/chat/messages/{message_id}/pin
    - DELETE /communities/{community_id}/chat/messages/{message_id}

REST writes are executed by the community's live room, so connected members
receive them exactly like messages sent over a socket, and message ids are
assigned in one place.

Protocol Flow (WebSocket):
    1. Client connects with ?token=...[&since=<createdAt>&sinceId=<id>]
       → invalid token / unknown community / non-member:
         {type: "error", code, message} then close 1008
       → storage unavailable: {type: "error", code} then close 1013
    2. → {type: "connected", sessionId, userId, role, chatMode, slowmodeSeconds}
    3. → {type: "snapshot", users, pinned, typing, messages, isRecovery}
       → everyone: {type: "presence", users}
    4. Client sends commands (send_message, typing, pin, delete, ping)
       → rejected commands: {type: "denied", command, code, message, ref?}
"""
import logging
from typing import Optional

import duckdb
from fastapi import APIRouter, Depends, Header, Query, Request, WebSocket
from fastapi.responses import JSONResponse

from ..config import ChatSettings
from ..community.directory import CommunityDirectory
from .errors import (
    AuthenticationFailed,
    ChatError,
    CommunityNotFound,
    ConnectionOverflow,
    MessageNotFound,
    MessageValidationError,
    NotAMember,
    PersistenceFailure,
    ProtocolViolation,
    SlowmodeActive,
)
from .protocol import connected_event, error_event
from .registry import RoomRegistry
from .schemas import HistoryPage, Member, Message, PinRequest, SendMessageRequest
from .session import (
    CLOSE_POLICY_VIOLATION,
    CLOSE_TRY_AGAIN_LATER,
    ConnectionSession,
    resolve_member,
)
from .store import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

# ChatError subclass -> HTTP status (most specific first)
_HTTP_STATUS = (
    (AuthenticationFailed, 401),
    (CommunityNotFound, 404),
    (MessageNotFound, 404),
    (NotAMember, 403),
    (SlowmodeActive, 429),
    (MessageValidationError, 422),
    (ProtocolViolation, 400),
    (PersistenceFailure, 503),
    (ConnectionOverflow, 503),
)


def http_status_for(error: ChatError) -> int:
    for error_type, status in _HTTP_STATUS:
        if isinstance(error, error_type):
            return status
    return 403


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ``ChatError`` raised by a REST endpoint as JSON."""
    status = http_status_for(exc)
    headers = None
    if isinstance(exc, SlowmodeActive):
        headers = {"Retry-After": str(exc.wait_seconds)}
    if status >= 500:
        logger.error(f"[REST] {request.method} {request.url.path} failed: {exc.code}")
    else:
        logger.debug(f"[REST] {request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse({"error": exc.to_dict()}, status_code=status, headers=headers)


# =============================================================================
# Dependencies
# =============================================================================


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_directory(request: Request) -> CommunityDirectory:
    return request.app.state.directory


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_chat_settings(request: Request) -> ChatSettings:
    return request.app.state.config.chat


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_member(
    community_id: str,
    authorization: Optional[str] = Header(None),
    directory: CommunityDirectory = Depends(get_directory),
) -> Member:
    """Authenticate the bearer token and resolve the caller's membership.

    Must run on the event loop: the DuckDB connection is not shared across
    threads.
    """
    try:
        member, _ = resolve_member(directory, community_id, _bearer_token(authorization))
    except duckdb.Error as exc:
        logger.error(f"[REST] Directory lookup failed for {community_id}: {exc}")
        raise PersistenceFailure() from exc
    return member


# =============================================================================
# REST endpoints
# =============================================================================


@router.get("/communities/{community_id}/chat/messages", response_model=HistoryPage)
async def get_message_history(
    community_id: str,
    before: Optional[float] = Query(None, description="createdAt cursor (messages older than this)"),
    beforeId: Optional[str] = Query(None, description="Id tie-break for messages sharing `before`"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    member: Member = Depends(get_member),
    store: MessageStore = Depends(get_store),
    chat_settings: ChatSettings = Depends(get_chat_settings),
) -> HistoryPage:
    """Get a page of message history, oldest first.

    Clients fetch older messages by passing the ``createdAt`` (and ``id``) of
    the oldest message they already have. Deleted messages are included as
    tombstones so a client can reconcile its local copy.

    Args:
        community_id: The community.
        before: Timestamp cursor. Omit for the most recent page.
        beforeId: Optional id cursor for exact pagination across ties.
        limit: Page size (defaults to ``history_page_size``, capped at
            ``max_page_size``).

    Returns:
        HistoryPage with messages and a hasMore flag.

    Example:
        GET /communities/c1/chat/messages?limit=50
        GET /communities/c1/chat/messages?before=1707321600.123&beforeId=...
    """
    page_size = min(limit or chat_settings.history_page_size, chat_settings.max_page_size)
    try:
        rows = store.history_page(community_id, before, beforeId, page_size + 1)
    except duckdb.Error as exc:
        logger.error(f"[REST] History query failed for {community_id}: {exc}")
        raise PersistenceFailure() from exc
    has_more = len(rows) > page_size
    return HistoryPage(messages=rows[-page_size:] if has_more else rows, hasMore=has_more)


@router.get("/communities/{community_id}/chat/pinned")
async def get_pinned_messages(
    community_id: str,
    member: Member = Depends(get_member),
    store: MessageStore = Depends(get_store),
) -> dict:
    """Pinned messages, most recently pinned first."""
    try:
        pinned = store.pinned(community_id)
    except duckdb.Error as exc:
        logger.error(f"[REST] Pinned query failed for {community_id}: {exc}")
        raise PersistenceFailure() from exc
    return {"messages": [m.model_dump() for m in pinned]}


@router.post("/communities/{community_id}/chat/messages", status_code=201, response_model=Message)
async def post_message(
    community_id: str,
    request: SendMessageRequest,
    member: Member = Depends(get_member),
    registry: RoomRegistry = Depends(get_registry),
) -> Message:
    """Submit a message without a live connection.

    The message is checked against the same chat mode and slowmode rules as
    a WebSocket send and broadcast to every connected member.
    """
    room = await registry.get_or_create_room(community_id)
    try:
        message = await room.submit_message(member, request.content, request.isAnnouncement)
    finally:
        registry.release(room)
    logger.info(f"[REST] {member.userId} posted {message.id} to {community_id}")
    return message


@router.post("/communities/{community_id}/chat/messages/{message_id}/pin", response_model=Message)
async def pin_message(
    community_id: str,
    message_id: str,
    request: Optional[PinRequest] = None,
    member: Member = Depends(get_member),
    registry: RoomRegistry = Depends(get_registry),
) -> Message:
    """Pin (or, with ``{"isPinned": false}``, unpin) a message. Owner only."""
    room = await registry.get_or_create_room(community_id)
    try:
        desired = request.isPinned if request is not None else True
        return await room.set_pinned(member, message_id, desired)
    finally:
        registry.release(room)


@router.delete("/communities/{community_id}/chat/messages/{message_id}", response_model=Message)
async def delete_message(
    community_id: str,
    message_id: str,
    member: Member = Depends(get_member),
    registry: RoomRegistry = Depends(get_registry),
) -> Message:
    """Tombstone a message. Allowed for the owner and the author."""
    room = await registry.get_or_create_room(community_id)
    try:
        return await room.delete_message(member, message_id)
    finally:
        registry.release(room)


# =============================================================================
# WebSocket endpoint
# =============================================================================


@router.websocket("/ws/communities/{community_id}/chat")
async def community_chat_websocket(
    websocket: WebSocket,
    community_id: str,
    token: Optional[str] = Query(None, description="Login token"),
    since: Optional[float] = Query(None, description="createdAt of the last message seen (reconnect recovery)"),
    sinceId: Optional[str] = Query(None, description="Id of the last message seen"),
) -> None:
    """WebSocket endpoint for real-time chat in a community.

    SECURITY MODEL:
        - The user id comes from the token, never from the client
        - The role is resolved once here and kept for the connection

    Args:
        websocket: The WebSocket connection.
        community_id: The community to join.
        token: Login token issued by the auth service.
        since: Optional timestamp for message recovery on reconnect.
        sinceId: Id of the message at ``since``; messages sharing that
            timestamp but ordered after it are still recovered.
    """
    state = websocket.app.state
    directory: CommunityDirectory = state.directory
    registry: RoomRegistry = state.registry
    chat_settings: ChatSettings = state.config.chat

    logger.info(f"[WS] New connection to community {community_id}, since={since}")
    await websocket.accept()

    try:
        member, settings = resolve_member(directory, community_id, token)
        room = await registry.get_or_create_room(community_id)
    except ChatError as exc:
        logger.info(f"[WS] Rejected connection to {community_id}: {exc.code}")
        await websocket.send_json(error_event(exc))
        await websocket.close(code=CLOSE_POLICY_VIOLATION)
        return
    except duckdb.Error as exc:
        logger.error(f"[WS] Directory lookup failed for {community_id}: {exc}")
        await websocket.send_json(error_event(PersistenceFailure()))
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
        return

    session = ConnectionSession(
        websocket,
        community_id,
        member,
        queue_size=chat_settings.outbound_queue_size,
        typing_refresh_seconds=chat_settings.typing_refresh_seconds,
    )
    session.deliver(connected_event(session.session_id, member, community_id, settings))
    logger.info(
        f"[WS] Session {session.session_id} accepted for {member.userId} "
        f"({member.role.value}) in {community_id}"
    )
    await session.run(room, since, sinceId)
