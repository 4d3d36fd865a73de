"""
Custom exceptions for the relay analytics client.

Delivery errors never cross the asynchronous boundary: they are handed to the
completion callbacks of the affected events. Only validation errors are raised
synchronously to the caller of a submission operation.
"""

from __future__ import annotations

from typing import Optional


class AnalyticsError(Exception):
    """Base error for the analytics client."""

    pass


class ValidationError(AnalyticsError, ValueError):
    """Malformed event rejected before it reaches the buffer."""

    pass


class BufferOverflowError(AnalyticsError):
    """Event discarded because the internal buffer is at capacity."""

    pass


class DeliveryError(AnalyticsError):
    """A batch could not be delivered to the ingestion endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network failure, 5xx or 429 that outlived the retry budget."""

    pass


class TerminalDeliveryError(DeliveryError):
    """Delivery failure that must not be retried."""

    pass


class JobAbandonedError(DeliveryError):
    """Durable job dead-lettered after reaching its attempt ceiling."""

    pass


class QueueInitializationError(AnalyticsError):
    """Durable queue could not be set up; the caller has to re-attempt."""

    pass


class QueueInvariantViolation(AnalyticsError):
    """More than one job was found active when recovering the durable queue."""

    pass
