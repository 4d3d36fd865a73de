"""Flush scheduler deciding when the internal buffer is cut into a batch.

A flush cycle is triggered by the first message ever enqueued, by the buffer
reaching the batch size, by the periodic timer, or manually. Only one cycle
runs at a time: the scheduler owns an explicit IDLE/RUNNING state and the
periodic timer handle.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..core.events import Batch
from ..queuer import InternalBuffer

BatchHandler = Callable[[Batch], Optional[BaseException]]
FlushCallback = Callable[[Optional[BaseException], Optional[Batch]], None]


class FlushState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SchedulerConfig:
    """Configuration for the flush scheduler."""

    flush_at: int = 20  # Maximum messages per batch, and the size trigger
    flush_interval_seconds: float = 20.0  # Periodic flush; 0 disables the timer
    enable: bool = True


class FlushScheduler:
    """Cuts batches from the buffer and hands them to a batch handler."""

    def __init__(
        self,
        buffer: InternalBuffer,
        batch_handler: BatchHandler,
        config: SchedulerConfig = SchedulerConfig(),
    ):
        """Initialize the scheduler.

        Args:
            buffer: Buffer to cut batches from
            batch_handler: Called on the flush thread with each batch; it owns the
                batch's continuations from then on and returns the delivery error, if any
            config: Scheduler configuration
        """
        self.buffer = buffer
        self.batch_handler = batch_handler
        self.config = config

        self._state = FlushState.IDLE
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._cycle_thread: Optional[threading.Thread] = None
        self._flushed = False
        self._closed = False

        # Statistics
        self._total_cycles = 0
        self._total_batches = 0
        self._total_skipped = 0

    @property
    def state(self) -> FlushState:
        return self._state

    def notify_enqueued(self) -> None:
        """Check the flush triggers after an item was appended to the buffer."""
        with self._lock:
            cold_start = not self._flushed
            self._flushed = True

        if cold_start:
            self.flush()
            return

        if self.buffer.size() >= self.config.flush_at:
            self.flush()

        if not self.buffer.is_empty():
            self._arm_timer()

    def flush(self, callback: Optional[FlushCallback] = None) -> bool:
        """Start a flush cycle unless one is already running.

        Args:
            callback: Called with ``(error, batch)`` once the cycle ends

        Returns:
            True if a cycle was started, False if one was already running
        """
        with self._lock:
            if self._state == FlushState.RUNNING:
                self._total_skipped += 1
                logger.debug("Flush already running, skipping")
                return False
            self._state = FlushState.RUNNING
            self._total_cycles += 1

        self.cancel_timer()

        if not self.config.enable or self.buffer.is_empty():
            self._finish_cycle(callback, None, None)
            return True

        batch = Batch.cut(self.buffer.take(self.config.flush_at))
        self._total_batches += 1
        logger.debug(f"Cut batch of {batch.size()} messages, {self.buffer.size()} remaining")

        thread = threading.Thread(target=self._run_cycle, args=(batch, callback), daemon=True, name="relay-flush")
        with self._lock:
            self._cycle_thread = thread
        thread.start()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the running flush cycle to end.

        Returns:
            True if no cycle is running anymore
        """
        with self._lock:
            thread = self._cycle_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return self._state == FlushState.IDLE

    def cancel_timer(self) -> None:
        """Cancel the periodic flush timer if it is armed."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def close(self) -> None:
        """Stop arming the periodic timer and cancel the pending one."""
        with self._lock:
            self._closed = True
        self.cancel_timer()

    def get_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        with self._lock:
            return {
                "state": self._state.value,
                "timer_armed": self._timer is not None,
                "total_cycles": self._total_cycles,
                "total_batches": self._total_batches,
                "total_skipped": self._total_skipped,
                "config": {
                    "flush_at": self.config.flush_at,
                    "flush_interval_seconds": self.config.flush_interval_seconds,
                },
            }

    def _run_cycle(self, batch: Batch, callback: Optional[FlushCallback]) -> None:
        error: Optional[BaseException] = None
        try:
            error = self.batch_handler(batch)
        except Exception as e:
            error = e
            logger.error(f"Batch handler failed for {batch.size()} messages: {e}")
        finally:
            self._finish_cycle(callback, error, batch)

    def _finish_cycle(self, callback: Optional[FlushCallback], error: Optional[BaseException], batch: Optional[Batch]) -> None:
        # Released on every path, including handler failures.
        with self._lock:
            self._state = FlushState.IDLE

        if not self.buffer.is_empty():
            self._arm_timer()

        if callback is not None:
            try:
                callback(error, batch)
            except Exception as e:
                logger.error(f"Flush callback raised {type(e).__name__}: {e}")

    def _arm_timer(self) -> None:
        if not self.config.flush_interval_seconds:
            return

        with self._lock:
            if self._timer is not None or self._closed:
                return
            self._timer = threading.Timer(self.config.flush_interval_seconds, self._on_timer)
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        logger.debug("Flush interval elapsed")
        self.flush()
