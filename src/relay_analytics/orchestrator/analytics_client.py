"""Analytics client coordinating the event delivery flow.

This module coordinates the entire delivery pipeline:
Submission → Normalizer → Internal Buffer → Flush Scheduler → Dispatcher / Durable Queue → API

It manages the lifecycle of all components and provides the public
submission interface of the library.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Optional

from loguru import logger

from ..batcher import FlushCallback, FlushScheduler, SchedulerConfig
from ..config.settings import ClientConfig, PersistenceQueueConfig
from ..core.errors import AnalyticsError, BufferOverflowError, QueueInitializationError, QueueInvariantViolation
from ..core.events import Batch, Callback, EventType, QueueItem, noop, resolve_callbacks
from ..core.normalizer import MessageNormalizer
from ..core.validation import validate_event
from ..durable import DurableQueueAdapter, SQLiteJobStore
from ..queuer import InternalBuffer, QueueConfig
from ..sender import Dispatcher, SenderConfig
from ..sender.http_sender import Opener


class Analytics:
    """Client submitting analytics events to a data plane."""

    def __init__(
        self,
        write_key: str,
        data_plane_url: str,
        config: Optional[ClientConfig] = None,
        opener: Optional[Opener] = None,
    ):
        """Initialize the client.

        Args:
            write_key: Write key of the source, sent as basic-auth username
            data_plane_url: Ingestion endpoint the batches are posted to
            config: Batching and delivery configuration
            opener: Callable performing HTTP requests, ``urlopen`` by default

        Raises:
            ValueError: If the write key or data plane URL is missing, or the
                configuration is invalid
        """
        if not write_key:
            raise ValueError("You must pass your project's write key.")
        if not data_plane_url:
            raise ValueError("You must pass your data plane url.")

        self.config = config or ClientConfig()
        is_valid, errors = self.config.validate()
        if not is_valid:
            raise ValueError(f"Invalid client configuration: {'; '.join(errors)}")

        self.write_key = write_key
        self.host = data_plane_url.rstrip("/")
        self._enable = self.config.enable
        self._closed = False
        self._lock = threading.RLock()
        self._durable: Optional[DurableQueueAdapter] = None
        self._durable_starting = False
        self._start_time = datetime.now()

        self._init_components(opener)

    def _init_components(self, opener: Optional[Opener]) -> None:
        """Initialize all client components."""
        self.normalizer = MessageNormalizer()
        self.buffer = InternalBuffer(QueueConfig(max_size=self.config.max_internal_queue_size))
        self.dispatcher = Dispatcher(
            SenderConfig(
                host=self.host,
                write_key=self.write_key,
                timeout_ms=self.config.timeout_ms,
                max_retries=self.config.max_retries,
            ),
            opener=opener,
        )
        self.scheduler = FlushScheduler(
            self.buffer,
            self._handle_batch,
            SchedulerConfig(
                flush_at=self.config.flush_at,
                flush_interval_seconds=self.config.flush_interval_seconds,
                enable=self._enable,
            ),
        )
        logger.info(f"Initialized analytics client for {self.host} (enabled: {self._enable})")

    @property
    def enable(self) -> bool:
        return self._enable

    @property
    def durable(self) -> bool:
        """Whether batches go through the durable queue."""
        return self._durable is not None

    def __enter__(self) -> "Analytics":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def identify(self, message: Mapping[str, Any], callback: Optional[Callback] = None) -> "Analytics":
        """Send an identify message."""
        return self._submit(EventType.IDENTIFY, message, callback)

    def group(self, message: Mapping[str, Any], callback: Optional[Callback] = None) -> "Analytics":
        """Send a group message."""
        return self._submit(EventType.GROUP, message, callback)

    def track(self, message: Mapping[str, Any], callback: Optional[Callback] = None) -> "Analytics":
        """Send a track message."""
        return self._submit(EventType.TRACK, message, callback)

    def page(self, message: Mapping[str, Any], callback: Optional[Callback] = None) -> "Analytics":
        """Send a page message."""
        return self._submit(EventType.PAGE, message, callback)

    def screen(self, message: Mapping[str, Any], callback: Optional[Callback] = None) -> "Analytics":
        """Send a screen message."""
        return self._submit(EventType.SCREEN, message, callback)

    def alias(self, message: Mapping[str, Any], callback: Optional[Callback] = None) -> "Analytics":
        """Send an alias message."""
        return self._submit(EventType.ALIAS, message, callback)

    def flush(self, callback: Optional[FlushCallback] = None) -> bool:
        """Flush the buffer now.

        Args:
            callback: Called with ``(error, batch)`` once the cycle ends; not
                called when a cycle is already running

        Returns:
            True if a cycle was started, False if one was already running
        """
        return self.scheduler.flush(callback)

    def create_persistence_queue(self, config: Optional[PersistenceQueueConfig] = None, callback: Optional[Callback] = None) -> None:
        """Route batches through a durable queue from now on.

        The callback is invoked with None once the queue is running, or with
        the error that kept it from starting. The client stays in direct mode
        on failure and the call may be retried.

        Args:
            config: Durable queue configuration, defaults when omitted
            callback: Called once with the setup outcome
        """
        callback = callback or noop
        config = config or PersistenceQueueConfig()

        with self._lock:
            if self._durable is not None or self._durable_starting:
                logger.info("Persistence queue is already set up, ignoring")
                return
            self._durable_starting = True

        try:
            error = self._start_persistence_queue(config)
        finally:
            with self._lock:
                self._durable_starting = False

        resolve_callbacks([callback], error)

    def _start_persistence_queue(self, config: PersistenceQueueConfig) -> Optional[AnalyticsError]:
        try:
            store = SQLiteJobStore(config.get_store_config())
        except QueueInitializationError as e:
            logger.error(f"Cannot set up persistence queue: {e}")
            return e
        except (sqlite3.Error, OSError) as e:
            error = QueueInitializationError(f"Failed to open job store: {e}")
            logger.error(str(error))
            return error

        adapter = DurableQueueAdapter(store, self.dispatcher, config.job_opts)
        try:
            adapter.setup()
        except QueueInvariantViolation as e:
            logger.error(f"Persistence queue recovery failed: {e}")
            store.close()
            return e
        except sqlite3.Error as e:
            error = QueueInitializationError(f"Persistence queue recovery failed: {e}")
            logger.error(str(error))
            store.close()
            return error

        with self._lock:
            self._durable = adapter

        logger.info(f"Persistence queue {config.queue_key} is ready")
        return None

    def close(self, timeout: float = 10.0) -> None:
        """Deliver what is buffered and stop all background work.

        Args:
            timeout: Seconds allowed for draining the buffer
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        logger.info("Closing analytics client...")
        self.scheduler.close()
        self._drain(timeout)

        if self._durable is not None:
            self._durable.close()

        self._log_final_stats()
        logger.info("Analytics client closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get client statistics.

        Returns:
            Dictionary with statistics of every component
        """
        stats = {
            "client": {
                "enable": self._enable,
                "closed": self._closed,
                "durable": self.durable,
                "host": self.host,
                "uptime_seconds": (datetime.now() - self._start_time).total_seconds(),
            },
            "buffer": self.buffer.get_stats(),
            "scheduler": self.scheduler.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }

        if self._durable is not None:
            stats["durable"] = self._durable.get_stats()

        return stats

    def _submit(self, event_type: EventType, message: Mapping[str, Any], callback: Optional[Callback]) -> "Analytics":
        validate_event(message, event_type)
        callback = callback or noop

        if not self._enable:
            resolve_callbacks([callback], None)
            return self

        if self._closed:
            logger.warning(f"Client is closed, dropping {event_type.value} message")
            resolve_callbacks([callback], AnalyticsError("Client is closed"))
            return self

        normalized = self.normalizer.normalize(event_type, message)
        if not self.buffer.enqueue(QueueItem(message=normalized, callback=callback)):
            resolve_callbacks([callback], BufferOverflowError(f"Not adding events for processing as queue size {self.buffer.size()} >= than max configuration {self.buffer.config.max_size}"))
            return self

        self.scheduler.notify_enqueued()
        return self

    def _handle_batch(self, batch: Batch) -> Optional[BaseException]:
        """Hand a cut batch to the durable queue, or deliver it directly."""
        adapter = self._durable
        if adapter is not None:
            adapter.enqueue_batch(batch)
            return None
        return self.dispatcher.dispatch(batch)

    def _drain(self, timeout: float) -> None:
        """Run flush cycles until the buffer is empty or the timeout expires."""
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(f"Timed out draining buffer, {self.buffer.size()} messages left undelivered")
                return

            if not self.scheduler.wait(remaining):
                continue

            if self.buffer.is_empty():
                return

            self.scheduler.flush()

    def _log_final_stats(self) -> None:
        """Log final client statistics on shutdown."""
        stats = self.get_stats()

        logger.info("Final Client Statistics:")
        logger.info(f"  Uptime: {stats['client']['uptime_seconds']:.1f} seconds")
        logger.info(f"  Messages buffered: {stats['buffer']['total_enqueued']}, dropped: {stats['buffer']['total_dropped']}")
        logger.info(f"  Batches sent: {stats['dispatcher']['total_batches_sent']}")
        logger.info(f"  Events sent: {stats['dispatcher']['total_events_sent']}")
        logger.info(f"  Success rate: {stats['dispatcher']['success_rate']:.1%}")


def create_default_client(
    write_key: str,
    data_plane_url: str,
    **overrides: Any,
) -> Analytics:
    """Create a client with default configuration.

    Args:
        write_key: Write key of the source
        data_plane_url: Ingestion endpoint
        **overrides: ``ClientConfig`` fields to override

    Returns:
        Configured analytics client
    """
    return Analytics(write_key, data_plane_url, ClientConfig(**overrides))
