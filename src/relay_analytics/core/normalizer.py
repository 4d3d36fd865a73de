"""Message normalizer stamping submitted events with the fields the API expects.

Every message gets a type tag, library context, metadata, an original
timestamp and a message id before it is buffered. Normalizing a message that
already carries these fields leaves them untouched.
"""

from __future__ import annotations

import hashlib
import platform
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Dict

from loguru import logger

from .events import EventType
from .utils import isoformat, to_json, utcnow

LIBRARY_NAME = "relay-analytics-python"
LIBRARY_VERSION = "1.0.0"


class MessageNormalizer:
    """Applies defaults to raw messages before they enter the buffer."""

    def __init__(
        self,
        library_name: str = LIBRARY_NAME,
        library_version: str = LIBRARY_VERSION,
        id_factory: Callable[[], Any] = uuid.uuid4,
    ):
        """Initialize the normalizer.

        Args:
            library_name: Name reported in ``context.library``
            library_version: Version reported in ``context.library``
            id_factory: Source of the random component of message ids
        """
        self.library_name = library_name
        self.library_version = library_version
        self._id_factory = id_factory

    def normalize(self, event_type: EventType | str, message: Mapping[str, Any]) -> Dict[str, Any]:
        """Return a normalized copy of ``message``.

        Args:
            event_type: Message type
            message: Raw message as submitted

        Returns:
            New message dict ready for buffering
        """
        event_type = EventType(event_type)
        message = dict(message)
        context = dict(message.get("context") or {})

        if event_type == EventType.IDENTIFY and message.get("traits") and "traits" not in context:
            context["traits"] = message["traits"]

        message["type"] = event_type.value
        message["context"] = {
            "library": {"name": self.library_name, "version": self.library_version},
            **context,
        }
        message["_metadata"] = {
            "pythonVersion": platform.python_version(),
            **(message.get("_metadata") or {}),
        }

        if not message.get("originalTimestamp"):
            message["originalTimestamp"] = isoformat(utcnow())

        if not message.get("messageId"):
            # Hashing the content adds entropy on top of the id factory.
            digest = hashlib.md5(to_json(message).encode("utf-8")).hexdigest()
            message["messageId"] = f"python-{digest}-{self._id_factory()}"

        # Numeric ids were historically accepted; the API only takes strings.
        for key in ("anonymousId", "userId"):
            value = message.get(key)
            if value and not isinstance(value, str):
                message[key] = to_json(value)

        logger.debug(f"Normalized {event_type.value} message {message['messageId']}")
        return message
