"""Event models for the relay analytics client.

This module defines the structures that flow through the client:
Submission → Normalizer → Internal Buffer → Flush Scheduler → Dispatcher / Durable Queue → API
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from .utils import isoformat, utcnow

Callback = Callable[[Optional[BaseException]], None]


class EventType(str, Enum):
    """Types of messages accepted by the ingestion API."""

    IDENTIFY = "identify"
    GROUP = "group"
    TRACK = "track"
    PAGE = "page"
    SCREEN = "screen"
    ALIAS = "alias"


def noop(error: Optional[BaseException] = None) -> None:
    pass


def resolve_callbacks(callbacks: Sequence[Callback], error: Optional[BaseException] = None) -> None:
    """Invoke every continuation once, in order, isolating failures of each one."""
    for callback in callbacks:
        try:
            callback(error)
        except Exception as e:
            logger.error(f"Completion callback raised {type(e).__name__}: {e}")


@dataclass
class QueueItem:
    """A normalized message waiting in the internal buffer, with its continuation."""

    message: Dict[str, Any]
    callback: Callback = noop


@dataclass(frozen=True)
class Batch:
    """An ordered group of messages cut from the buffer, immutable once cut."""

    messages: Tuple[Dict[str, Any], ...]
    callbacks: Tuple[Callback, ...]
    sent_at: datetime = field(default_factory=utcnow)

    @classmethod
    def cut(cls, items: List[QueueItem]) -> "Batch":
        """Build a batch from buffer items, stamping each message with the cut time."""
        sent_at = utcnow()
        stamp = isoformat(sent_at)
        messages = []
        for item in items:
            if isinstance(item.message, dict):
                item.message["sentAt"] = stamp
            messages.append(item.message)
        return cls(messages=tuple(messages), callbacks=tuple(item.callback for item in items), sent_at=sent_at)

    def size(self) -> int:
        """Return the number of messages in this batch."""
        return len(self.messages)

    def to_payload(self) -> Dict[str, Any]:
        """Convert batch to the ingestion API body."""
        return {
            "batch": list(self.messages),
            "sentAt": isoformat(self.sent_at),
        }


@dataclass
class DispatchRequest:
    """HTTP request derived from a batch."""

    url: str
    write_key: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    timeout_ms: Optional[float] = None

    def refresh_sent_at(self) -> None:
        """Stamp the body right before a physical send attempt."""
        self.body["sentAt"] = isoformat(utcnow())

    def message_count(self) -> int:
        return len(self.body.get("batch", []))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "write_key": self.write_key,
            "headers": dict(self.headers),
            "body": copy.deepcopy(self.body),
            "timeout_ms": self.timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DispatchRequest":
        return cls(
            url=data["url"],
            write_key=data["write_key"],
            body=copy.deepcopy(data["body"]),
            headers=dict(data.get("headers") or {}),
            method=data.get("method", "POST"),
            timeout_ms=data.get("timeout_ms"),
        )
