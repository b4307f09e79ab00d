"""
feed.py — Live warning feed for streaming (server-sent events) clients.

``WarningFeed`` owns the set of open streaming connections. Each connection
gets its own bounded ``asyncio.Queue``; ``publish`` fans an event into every
queue without blocking. A consumer that falls behind loses its *oldest*
queued events, never the newest.

Connections are added and removed explicitly:

    connection_id, queue = feed.connect()
    try:
        while True:
            item = await queue.get()
            ...
    finally:
        feed.disconnect(connection_id)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class WarningFeed:
    """Registry of streaming connections keyed by connection id."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._connections: Dict[str, asyncio.Queue] = {}
        self.dropped = 0

    def connect(self, connection_id: Optional[str] = None) -> Tuple[str, asyncio.Queue]:
        connection_id = connection_id or uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._connections[connection_id] = queue
        logger.info(
            "Feed connection %s opened (%d open)", connection_id, len(self._connections),
        )
        return connection_id, queue

    def disconnect(self, connection_id: str) -> bool:
        removed = self._connections.pop(connection_id, None) is not None
        if removed:
            logger.info(
                "Feed connection %s closed (%d open)", connection_id, len(self._connections),
            )
        return removed

    def publish(self, event: Dict[str, Any]) -> int:
        """Queue ``event`` for every connection. Returns the number reached."""
        for connection_id, queue in list(self._connections.items()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                queue.get_nowait()
                queue.put_nowait(event)
                self.dropped += 1
                logger.warning("Feed connection %s is behind; dropped oldest event", connection_id)
        return len(self._connections)

    def close_all(self) -> None:
        self._connections.clear()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections
