"""Byte-stream transport over the worker's stdin/stdout.

Wire format:
- Requests: JSON object + LF to worker stdin
- Replies: Content-Length frames from worker stdout (see protocol.framing)

Inbound and outbound framing differ on purpose; the worker reads lines and
writes frames.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from ..errors import ServerExited
from ..protocol.framing import FrameDecoder, encode_request, iter_frames
from .base import ChannelTransport, TransportMode

logger = logging.getLogger(__name__)


class StreamTransport(ChannelTransport):
    """Transport over subprocess pipes with Content-Length framed replies."""

    mode = TransportMode.STREAM

    def __init__(self) -> None:
        super().__init__()
        self._stdin: asyncio.StreamWriter | None = None
        self._stdout: asyncio.StreamReader | None = None
        self._decoder = FrameDecoder()

    @property
    def is_connected(self) -> bool:
        return self._stdin is not None and not self._closed and not self._stdin.is_closing()

    def spawn_options(self, env: Mapping[str, str]) -> dict[str, Any]:
        return {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "env": dict(env),
        }

    async def attach(self, process: asyncio.subprocess.Process) -> None:
        if not process.stdin or not process.stdout:
            raise ConnectionError("Process was not spawned with stdin/stdout pipes")
        self._stdin = process.stdin
        self._stdout = process.stdout

    async def send_raw(self, request: Mapping[str, Any]) -> None:
        """Send request as JSON line to stdin."""
        if not self.is_connected or self._stdin is None:
            raise ServerExited("Server stdin is closed")

        try:
            self._stdin.write(encode_request(request))
            await self._stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ServerExited(f"Failed to write to server: {e}") from e

        logger.debug(f"Sent {request.get('command')!r} (seq={request.get('seq')})")

    async def messages(self) -> AsyncIterator[Any]:
        """Read frames from stdout."""
        if self._stdout is None:
            raise ConnectionError("Transport is not attached")

        async for message in iter_frames(self._stdout, self._decoder):
            yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._stdin and not self._stdin.is_closing():
            self._stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await self._stdin.wait_closed()
