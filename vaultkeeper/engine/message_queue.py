"""FIFO buffer of user messages waiting for the transport.

The transport connection serves one turn at a time; messages submitted
while a turn is in flight wait here. Entries leave only through
``dequeue``, ``remove`` or ``clear``.
"""
from __future__ import annotations

import itertools
import logging
import uuid
from collections.abc import Iterator
from typing import Any

from .models import QueuedMessage, now_ms

logger = logging.getLogger(__name__)


class MessageQueue:
    """Ordered queue of pending user messages."""

    def __init__(self) -> None:
        self._items: list[QueuedMessage] = []
        # Monotonic counter keeps ids unique even within one millisecond
        self._counter = itertools.count(1)

    def _generate_id(self) -> str:
        return f"msg-{now_ms()}-{next(self._counter)}-{uuid.uuid4().hex[:8]}"

    def enqueue(self, content: str) -> QueuedMessage:
        """Append a message and return its queued record."""
        message = QueuedMessage(id=self._generate_id(), content=content)
        self._items.append(message)
        logger.debug(
            "Queued message %s (queue length %d)", message.id, len(self._items),
        )
        return message

    def dequeue(self) -> QueuedMessage | None:
        """Pop the oldest message, or None if the queue is empty."""
        if not self._items:
            return None
        return self._items.pop(0)

    def remove(self, message_id: str) -> bool:
        """Delete a message by id. Returns False if no such message."""
        for index, message in enumerate(self._items):
            if message.id == message_id:
                del self._items[index]
                logger.debug("Removed queued message %s", message_id)
                return True
        return False

    def peek(self) -> QueuedMessage | None:
        return self._items[0] if self._items else None

    def clear(self) -> list[QueuedMessage]:
        """Empty the queue, returning what was dropped in order."""
        dropped, self._items = self._items, []
        return dropped

    def to_list(self) -> list[dict[str, Any]]:
        """Persisted shape of every pending message, oldest first."""
        return [message.to_dict() for message in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[QueuedMessage]:
        return iter(list(self._items))
