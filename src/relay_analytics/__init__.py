"""Relay Analytics - batched, retrying analytics event delivery with an optional durable queue."""

from .config import ClientConfig, JobOptions, LoggingConfig, PersistenceQueueConfig, StoreOptions, setup_logging
from .core import LIBRARY_VERSION
from .core.errors import (
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
from .orchestrator import Analytics, create_default_client

__version__ = LIBRARY_VERSION

__all__ = [
    "Analytics",
    "create_default_client",
    "ClientConfig",
    "JobOptions",
    "LoggingConfig",
    "PersistenceQueueConfig",
    "StoreOptions",
    "setup_logging",
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
