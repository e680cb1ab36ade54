"""Message shapes exchanged with the worker.

The harness does not interpret payloads. It only needs to tell apart:

- Responses: carry `request_seq` directly on the object.
- Broadcast events: `type == "event"` with any event name other than the
  completion event. Delivered to event listeners.
- Completion-notice events: `type == "event"` with the completion event name.
  Their `request_seq` lives in `body` and they are routed like responses.

Example (response):
    {"seq": 4, "type": "response", "request_seq": 2, "success": true, "body": {...}}

Example (broadcast event):
    {"seq": 5, "type": "event", "event": "semanticDiag", "body": {...}}

Example (completion notice):
    {"seq": 6, "type": "event", "event": "requestCompleted", "body": {"request_seq": 3}}
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ProtocolError

EVENT_TYPE = "event"

# Command that makes the worker shut down; it never produces a reply
EXIT_COMMAND = "exit"

# Event name marking a completion notice for a request
REQUEST_COMPLETED_EVENT = "requestCompleted"


class Request(BaseModel):
    """A request from the harness to the worker.

    Sequence numbers are chosen by the caller and must be unique among
    outstanding requests. Extra fields are passed through untouched.

    Example:
        {"seq": 1, "type": "request", "command": "configure", "arguments": {...}}
    """

    model_config = ConfigDict(extra="allow")

    seq: int = Field(gt=0)
    type: str = "request"
    command: str
    arguments: Any = None

    @classmethod
    def create(cls, seq: int, command: str, arguments: Any = None) -> Request:
        """Create a request."""
        return cls(seq=seq, command=command, arguments=arguments)

    def to_wire(self) -> dict[str, Any]:
        """Plain JSON object as written to the worker."""
        return self.model_dump(exclude_none=True)


def to_wire(request: Request | Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the JSON object for a request, leaving plain mappings untouched."""
    if isinstance(request, Request):
        return request.to_wire()
    return request


def is_broadcast_event(message: Any, completion_event: str = REQUEST_COMPLETED_EVENT) -> bool:
    """Check whether a message is an unsolicited event for listeners."""
    return (
        isinstance(message, Mapping)
        and message.get("type") == EVENT_TYPE
        and message.get("event") != completion_event
    )


def response_seq(message: Any) -> int:
    """Extract the request sequence number a response answers.

    Raises:
        ProtocolError: If the message carries no integer sequence number.
    """
    if not isinstance(message, Mapping):
        raise ProtocolError(f"Cannot correlate non-object message: {message!r}")

    if message.get("type") == EVENT_TYPE:
        body = message.get("body")
        seq = body.get("request_seq") if isinstance(body, Mapping) else None
    else:
        seq = message.get("request_seq")

    # bool is an int subclass but never a valid sequence number
    if not isinstance(seq, int) or isinstance(seq, bool):
        raise ProtocolError(f"Message has no request_seq: {message!r}")
    return seq
