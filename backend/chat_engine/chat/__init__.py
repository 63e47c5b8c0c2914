"""Realtime community chat.

Provides:
    - RoomRegistry / Room: per-community state and fan-out
    - ConnectionSession: one WebSocket attached to a room
    - MessagePipeline / MessageStore: ordering and persistence
    - permissions: chat mode, role and slowmode decisions
    - reconciler: merge history pages with live events
"""
from .pipeline import MessagePipeline
from .reconciler import apply_update, reconcile
from .registry import RoomRegistry
from .room import Room, RoomClosed
from .session import ConnectionSession
from .store import MessageStore

__all__ = [
    "ConnectionSession",
    "MessagePipeline",
    "MessageStore",
    "Room",
    "RoomClosed",
    "RoomRegistry",
    "apply_update",
    "reconcile",
]
