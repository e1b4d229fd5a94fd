"""Hub wire frames — one JSON object per text message.

Learn: Four frame types carry the hub protocol:

    invocation  client → server   {type, invocationId?, target, arguments}
    completion  server → client   {type, invocationId, result?, error?}
    event       server → client   {type, target, arguments}
    ping        both ways         {type}

An invocation without invocationId is fire-and-forget. Anything else
with a string ``type`` is a raw channel event (``query_progress``,
``system_metrics``, ...) and is passed on verbatim.
"""

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InvocationFrame(_Frame):
    type: Literal["invocation"] = "invocation"
    invocation_id: Optional[str] = Field(None, alias="invocationId")
    target: str
    arguments: list[Any] = Field(default_factory=list)


class CompletionFrame(_Frame):
    type: Literal["completion"] = "completion"
    invocation_id: str = Field(alias="invocationId")
    result: Any = None
    error: Optional[str] = None


class EventFrame(_Frame):
    type: Literal["event"] = "event"
    target: str
    arguments: list[Any] = Field(default_factory=list)

    def payload(self) -> Any:
        """Single-argument events deliver the argument itself."""
        if not self.arguments:
            return None
        if len(self.arguments) == 1:
            return self.arguments[0]
        return list(self.arguments)


class PingFrame(_Frame):
    type: Literal["ping"] = "ping"


class ChannelFrame:
    """A raw channel message, kept exactly as received."""

    __slots__ = ("type", "message")

    def __init__(self, message: dict):
        self.type: str = message["type"]
        self.message = message

    def payload(self) -> dict:
        return self.message


Frame = Union[InvocationFrame, CompletionFrame, EventFrame, PingFrame, ChannelFrame]

_FRAME_TYPES = {
    "invocation": InvocationFrame,
    "completion": CompletionFrame,
    "event": EventFrame,
    "ping": PingFrame,
}


def encode_frame(frame: _Frame) -> str:
    return frame.model_dump_json(by_alias=True, exclude_none=True)


def decode_frame(raw: Union[str, bytes]) -> Frame:
    """Parse one text message. Raises ValueError on anything malformed."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Frame is not JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Frame must be a JSON object")
    frame_type = message.get("type")
    if not isinstance(frame_type, str) or not frame_type:
        raise ValueError("Frame has no 'type'")

    model = _FRAME_TYPES.get(frame_type)
    if model is None:
        return ChannelFrame(message)
    try:
        return model.model_validate(message)
    except ValidationError as e:
        raise ValueError(f"Invalid {frame_type} frame: {e}")
