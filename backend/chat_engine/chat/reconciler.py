"""History reconciler: merge paginated history with live events.

A client that loads history over REST while its WebSocket keeps delivering
live messages sees the same message twice, in either order, possibly in
different states (e.g. pinned in one copy, not in the other). The functions
here merge such inputs into one canonical timeline.

Rules:
    - Messages are deduplicated by ``id``.
    - The copy with the highest ``version`` wins; on equal versions a
      deleted copy beats a live one (deletion is terminal).
    - Output is sorted by ``(createdAt, id)``.

Both functions are pure: the result depends only on the set of inputs, not
their order, and reconciling an already reconciled list changes nothing.
"""
from typing import Dict, Iterable, List, Tuple

from .schemas import Message


def _precedence(message: Message) -> Tuple[int, bool]:
    return (message.version, message.isDeleted)


def _newer(candidate: Message, current: Message) -> bool:
    return _precedence(candidate) > _precedence(current)


def reconcile(history: Iterable[Message], live: Iterable[Message]) -> List[Message]:
    """Merge a history page with live messages into one ordered list.

    Args:
        history: Messages from a history fetch (any order).
        live: Messages received over the live connection (any order).

    Returns:
        Deduplicated messages sorted by ``(createdAt, id)``.
    """
    merged: Dict[str, Message] = {}
    for source in (history, live):
        for message in source:
            current = merged.get(message.id)
            if current is None or _newer(message, current):
                merged[message.id] = message
    return sorted(merged.values(), key=lambda m: m.sort_key)


def apply_update(messages: Iterable[Message], updated: Message) -> List[Message]:
    """Fold a single new or updated message into an ordered list."""
    return reconcile(messages, [updated])
