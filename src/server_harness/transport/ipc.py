"""Native channel transport over an inherited socket.

The harness creates a connected socket pair before spawning the worker. The
worker's end is passed through `pass_fds` and its descriptor number is
published in an environment variable (SERVER_HARNESS_CHANNEL_FD by default).
Both directions carry one JSON object per line, so no Content-Length framing
is involved.

The worker's stdin and stdout are not used in this mode. POSIX only.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import AsyncIterator, Mapping
from typing import Any

from ..errors import ProtocolError, ServerExited
from ..protocol.framing import decode_body, encode_request
from .base import ChannelTransport, TransportMode

logger = logging.getLogger(__name__)

CHANNEL_FD_ENV = "SERVER_HARNESS_CHANNEL_FD"

# Largest single message accepted on the channel
LINE_LIMIT = 16 * 1024 * 1024


class IpcTransport(ChannelTransport):
    """Transport over a socket pair shared with the worker."""

    mode = TransportMode.IPC

    def __init__(self, channel_fd_env: str = CHANNEL_FD_ENV):
        super().__init__()
        self._channel_fd_env = channel_fd_env
        self._parent_sock: socket.socket | None = None
        self._child_sock: socket.socket | None = None
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._closed and not self._writer.is_closing()

    def spawn_options(self, env: Mapping[str, str]) -> dict[str, Any]:
        self._parent_sock, self._child_sock = socket.socketpair()
        child_fd = self._child_sock.fileno()
        return {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.DEVNULL,
            "pass_fds": (child_fd,),
            "env": {**env, self._channel_fd_env: str(child_fd)},
        }

    async def attach(self, process: asyncio.subprocess.Process) -> None:
        if self._parent_sock is None or self._child_sock is None:
            raise ConnectionError("spawn_options() must be called before attach()")

        # The worker holds its own copy now; keeping ours would hide its EOF
        self._child_sock.close()
        self._child_sock = None

        self._reader, self._writer = await asyncio.open_unix_connection(
            sock=self._parent_sock, limit=LINE_LIMIT
        )
        logger.debug(f"IPC channel attached (pid={process.pid})")

    async def send_raw(self, request: Mapping[str, Any]) -> None:
        """Send request as JSON line on the channel."""
        if not self.is_connected or self._writer is None:
            raise ServerExited("Server channel is closed")

        try:
            self._writer.write(encode_request(request))
            await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ServerExited(f"Failed to write to server channel: {e}") from e

        logger.debug(f"Sent {request.get('command')!r} over IPC (seq={request.get('seq')})")

    async def messages(self) -> AsyncIterator[Any]:
        """Read JSON lines from the channel."""
        if self._reader is None:
            raise ConnectionError("Transport is not attached")

        while True:
            try:
                line = await self._reader.readline()
            except ValueError as e:
                raise ProtocolError(f"Channel message exceeds {LINE_LIMIT} bytes") from e
            except ConnectionResetError:
                break

            if not line:
                # EOF - worker closed its end
                break

            if not line.strip():
                continue

            yield decode_body(line)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._child_sock is not None:
            self._child_sock.close()
            self._child_sock = None

        if self._writer is not None:
            self._writer.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await self._writer.wait_closed()
        elif self._parent_sock is not None:
            self._parent_sock.close()
