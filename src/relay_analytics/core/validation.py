"""Loose validation of submitted events.

Only the shape the ingestion API relies on is checked: identifier and field
types, plus the fields each message type requires. Unknown keys pass through.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr, ValidationError as PydanticValidationError, field_validator, model_validator

from .errors import ValidationError
from .events import EventType
from .utils import json_size

MAX_MESSAGE_SIZE = 32 * 1024

Identifier = Union[StrictStr, StrictInt, StrictFloat]


class GenericEvent(BaseModel):
    """Field type rules shared by every message type."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    anonymous_id: Optional[Identifier] = Field(None, alias="anonymousId")
    user_id: Optional[Identifier] = Field(None, alias="userId")
    group_id: Optional[Identifier] = Field(None, alias="groupId")
    previous_id: Optional[Identifier] = Field(None, alias="previousId")
    category: Optional[StrictStr] = None
    event: Optional[StrictStr] = None
    name: Optional[StrictStr] = None
    type: Optional[StrictStr] = None
    context: Optional[Dict[str, Any]] = None
    integrations: Optional[Dict[str, Any]] = None
    timestamp: Optional[Union[datetime, StrictStr]] = None

    @model_validator(mode="before")
    @classmethod
    def skip_falsy_values(cls, data: Any) -> Any:
        """Empty values are not type-checked."""
        if isinstance(data, Mapping):
            return {key: value for key, value in data.items() if value}
        return data

    @field_validator("context", "integrations", mode="before")
    @classmethod
    def require_mapping(cls, v: Any) -> Any:
        if v is not None and not isinstance(v, Mapping):
            raise ValueError("must be an object")
        return dict(v) if v is not None else None

    @field_validator("timestamp")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Any:
        if isinstance(v, str):
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v

    def _require_identity(self) -> None:
        if not (self.anonymous_id or self.user_id):
            raise ValueError('You must pass either an "anonymousId" or a "userId".')


class IdentifyEvent(GenericEvent):
    @model_validator(mode="after")
    def check_required(self) -> "IdentifyEvent":
        self._require_identity()
        return self


class PageEvent(IdentifyEvent):
    pass


class ScreenEvent(IdentifyEvent):
    pass


class TrackEvent(GenericEvent):
    @model_validator(mode="after")
    def check_required(self) -> "TrackEvent":
        self._require_identity()
        if not self.event:
            raise ValueError('You must pass an "event".')
        return self


class GroupEvent(GenericEvent):
    @model_validator(mode="after")
    def check_required(self) -> "GroupEvent":
        self._require_identity()
        if not self.group_id:
            raise ValueError('You must pass a "groupId".')
        return self


class AliasEvent(GenericEvent):
    @model_validator(mode="after")
    def check_required(self) -> "AliasEvent":
        if not self.user_id:
            raise ValueError('You must pass a "userId".')
        if not self.previous_id:
            raise ValueError('You must pass a "previousId".')
        return self


_VALIDATORS = {
    EventType.IDENTIFY: IdentifyEvent,
    EventType.GROUP: GroupEvent,
    EventType.TRACK: TrackEvent,
    EventType.PAGE: PageEvent,
    EventType.SCREEN: ScreenEvent,
    EventType.ALIAS: AliasEvent,
}


def _format_errors(error: PydanticValidationError) -> str:
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail.get("loc", ()))
        message = detail.get("msg", "invalid value").removeprefix("Value error, ")
        messages.append(f'"{location}" {message}' if location else message)
    return "; ".join(messages)


def validate_event(message: Any, event_type: EventType | str) -> None:
    """Validate a submitted message for the given type.

    Oversized messages are reported with a warning only, so that clients sending
    large payloads keep working.

    Args:
        message: The raw message mapping
        event_type: Message type it is submitted as

    Raises:
        ValidationError: If the message is malformed
    """
    if not isinstance(message, Mapping):
        raise ValidationError("You must pass a message object.")

    try:
        event_type = EventType(event_type)
    except ValueError:
        raise ValidationError(f"Invalid event type: {event_type!r}") from None

    try:
        _VALIDATORS[event_type].model_validate(dict(message))
    except PydanticValidationError as e:
        raise ValidationError(_format_errors(e)) from e

    size = json_size(message)
    if size >= MAX_MESSAGE_SIZE:
        logger.warning(f"Your message must be < 32kb ({size} bytes). This is currently surfaced as a warning to allow clients to update.")
