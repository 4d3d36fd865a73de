"""In-memory buffering module for pending messages."""

from .event_queue import InternalBuffer, QueueConfig

__all__ = ["InternalBuffer", "QueueConfig"]
