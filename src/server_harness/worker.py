"""Worker-side counterpart of the harness transports.

Python workers use this to speak the same protocol the supervisor expects:

- stdio mode: requests are read as JSON lines from stdin, messages are written
  to stdout as Content-Length frames
- ipc mode: JSON lines both ways over the socket whose descriptor is in
  SERVER_HARNESS_CHANNEL_FD

The API is blocking; a worker is usually a simple read-handle-reply loop.

Usage:
    channel = WorkerChannel.from_environment()
    for request in channel.requests():
        if request["command"] == "exit":
            break
        channel.respond(request, body={"echo": request.get("arguments")})
"""

import itertools
import json
import os
import socket
import sys
from collections.abc import Iterator
from typing import Any, BinaryIO

from .protocol.framing import encode_frame, encode_request
from .transport.ipc import CHANNEL_FD_ENV


class WorkerChannel:
    """Blocking message channel from inside a worker process."""

    def __init__(self, reader: BinaryIO, writer: BinaryIO, framed: bool = True):
        """Initialize worker channel.

        Args:
            reader: Binary stream carrying requests as JSON lines
            writer: Binary stream for outgoing messages
            framed: Write Content-Length frames (stdio) instead of JSON lines (ipc)
        """
        self._reader = reader
        self._writer = writer
        self._framed = framed
        self._sock: socket.socket | None = None
        self._seq = itertools.count(1)

    @classmethod
    def from_environment(cls, channel_fd_env: str = CHANNEL_FD_ENV) -> "WorkerChannel":
        """Open the channel the harness set up for this process."""
        fd = os.environ.get(channel_fd_env)
        if not fd:
            return cls(sys.stdin.buffer, sys.stdout.buffer, framed=True)

        sock = socket.socket(fileno=int(fd))
        channel = cls(sock.makefile("rb"), sock.makefile("wb"), framed=False)
        channel._sock = sock
        return channel

    @property
    def framed(self) -> bool:
        return self._framed

    def requests(self) -> Iterator[dict[str, Any]]:
        """Yield requests until the harness closes its end."""
        for line in self._reader:
            line = line.strip()
            if line:
                yield json.loads(line)

    def send(self, message: Any) -> None:
        data = encode_frame(message) if self._framed else encode_request(message)
        self._writer.write(data)
        self._writer.flush()

    def respond(
        self,
        request: dict[str, Any],
        body: Any = None,
        success: bool = True,
        **fields: Any,
    ) -> None:
        """Send the response for a request."""
        message: dict[str, Any] = {
            "seq": next(self._seq),
            "type": "response",
            "command": request.get("command"),
            "request_seq": request["seq"],
            "success": success,
            **fields,
        }
        if body is not None:
            message["body"] = body
        self.send(message)

    def emit_event(self, event: str, body: Any = None) -> None:
        """Send an event. Use the completion event name with a request_seq in
        the body to complete a request instead of broadcasting."""
        message: dict[str, Any] = {"seq": next(self._seq), "type": "event", "event": event}
        if body is not None:
            message["body"] = body
        self.send(message)

    def close(self) -> None:
        self._writer.close()
        self._reader.close()
        if self._sock is not None:
            self._sock.close()
