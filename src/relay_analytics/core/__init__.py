"""Core relay analytics components - event models, validation and normalization."""

from .errors import (
    AnalyticsError,
    BufferOverflowError,
    DeliveryError,
    JobAbandonedError,
    QueueInitializationError,
    QueueInvariantViolation,
    TerminalDeliveryError,
    TransientDeliveryError,
    ValidationError,
)
from .events import Batch, Callback, DispatchRequest, EventType, QueueItem, noop, resolve_callbacks
from .normalizer import LIBRARY_NAME, LIBRARY_VERSION, MessageNormalizer
from .validation import validate_event

__all__ = [
    # Event model
    "Batch",
    "Callback",
    "DispatchRequest",
    "EventType",
    "QueueItem",
    "noop",
    "resolve_callbacks",
    # Normalization
    "LIBRARY_NAME",
    "LIBRARY_VERSION",
    "MessageNormalizer",
    "validate_event",
    # Errors
    "AnalyticsError",
    "BufferOverflowError",
    "DeliveryError",
    "JobAbandonedError",
    "QueueInitializationError",
    "QueueInvariantViolation",
    "TerminalDeliveryError",
    "TransientDeliveryError",
    "ValidationError",
]
