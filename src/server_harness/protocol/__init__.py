"""Wire protocol between the harness and its worker.

- framing: Content-Length frame decoding, outbound JSON lines
- messages: response/event classification and the Request model
"""

from .framing import (
    FrameDecoder,
    decode_body,
    encode_frame,
    encode_request,
    iter_frames,
)
from .messages import (
    EVENT_TYPE,
    EXIT_COMMAND,
    REQUEST_COMPLETED_EVENT,
    Request,
    is_broadcast_event,
    response_seq,
    to_wire,
)

__all__ = [
    # Framing
    "FrameDecoder",
    "decode_body",
    "encode_frame",
    "encode_request",
    "iter_frames",
    # Messages
    "EVENT_TYPE",
    "EXIT_COMMAND",
    "REQUEST_COMPLETED_EVENT",
    "Request",
    "is_broadcast_event",
    "response_seq",
    "to_wire",
]
