"""In-memory buffer for the relay analytics client.

This module provides a thread-safe FIFO buffer holding normalized messages
until the flush scheduler cuts them into batches. It handles backpressure by
dropping new messages once the buffer reaches its ceiling; producers are never
blocked.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import List

from loguru import logger

from ..core.events import QueueItem


@dataclass
class QueueConfig:
    """Configuration for the internal buffer."""

    max_size: int = 20000  # Maximum messages held in memory


class InternalBuffer:
    """Thread-safe bounded buffer of pending queue items."""

    def __init__(self, config: QueueConfig = QueueConfig()):
        """Initialize the buffer.

        Args:
            config: Buffer configuration
        """
        self.config = config
        self._queue: deque[QueueItem] = deque()
        self._lock = threading.RLock()

        # Statistics
        self._total_enqueued = 0
        self._total_dequeued = 0
        self._total_dropped = 0

    def enqueue(self, item: QueueItem) -> bool:
        """Append an item unless the buffer is at capacity.

        Args:
            item: Item to enqueue

        Returns:
            True if enqueued, False if the item was dropped
        """
        with self._lock:
            if len(self._queue) >= self.config.max_size:
                self._total_dropped += 1
                logger.warning(f"Not adding events for processing as queue size {len(self._queue)} >= than max configuration {self.config.max_size}")
                return False

            self._queue.append(item)
            self._total_enqueued += 1
            logger.debug(f"Enqueued {item.message.get('type')} message, queue size: {len(self._queue)}")
            return True

    def take(self, max_items: int) -> List[QueueItem]:
        """Remove and return up to ``max_items`` from the front of the buffer.

        Args:
            max_items: Maximum number of items to return

        Returns:
            List of items in arrival order (may be empty)
        """
        items = []

        with self._lock:
            while len(items) < max_items and self._queue:
                items.append(self._queue.popleft())
            self._total_dequeued += len(items)

        if items:
            logger.debug(f"Took {len(items)} items, queue size: {len(self._queue)}")

        return items

    def size(self) -> int:
        """Return the current buffer size."""
        with self._lock:
            return len(self._queue)

    def is_empty(self) -> bool:
        with self._lock:
            return len(self._queue) == 0

    def is_full(self) -> bool:
        with self._lock:
            return len(self._queue) >= self.config.max_size

    def get_stats(self) -> dict:
        """Get buffer statistics."""
        with self._lock:
            return {
                "current_size": len(self._queue),
                "max_size": self.config.max_size,
                "total_enqueued": self._total_enqueued,
                "total_dequeued": self._total_dequeued,
                "total_dropped": self._total_dropped,
                "utilization": len(self._queue) / max(1, self.config.max_size),
            }
