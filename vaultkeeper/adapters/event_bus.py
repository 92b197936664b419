"""Async queue between controller callbacks and a UI consumer loop.

``publish`` is the EngineConfig.event_callback; it converts each raw
event dict into its typed dataclass and queues it for ``consume``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from vaultkeeper.adapters.events import SessionEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, data: dict[str, Any]) -> None:
        """Callback for EngineConfig.event_callback."""
        await self.emit(dict_to_event(data))

    async def emit(self, event: SessionEvent) -> None:
        """Queue an event, waiting up to put_timeout for room."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(
                self._queue.put(event), timeout=self._put_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[SessionEvent]:
        """Yield events until the bus is closed and emptied."""
        while not (self._closed and self._queue.empty()):
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def close(self) -> None:
        """Refuse new events; consumers finish what is already queued."""
        self._closed = True
