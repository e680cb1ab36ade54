"""Transport abstraction between the supervisor and its worker.

Two delivery mechanisms sit behind one interface:
- stream: requests as JSON lines on stdin, replies as Content-Length frames on stdout
- ipc: JSON lines in both directions over a socket inherited by the worker

The mode is chosen once, when the transport is created. Nothing outside this
package branches on it.

Lifecycle:
    transport = create_transport(TransportMode.STREAM)
    process = await asyncio.create_subprocess_exec(*cmd, **transport.spawn_options(env))
    await transport.attach(process)
    await transport.send_raw({"seq": 1, "command": "echo"})
    async for message in transport.messages():
        ...
    await transport.close()
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from enum import Enum
from typing import Any


class TransportMode(str, Enum):
    """How messages travel between harness and worker."""

    STREAM = "stream"
    IPC = "ipc"


class ChannelTransport(ABC):
    """Base class for worker transports."""

    mode: TransportMode

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True while requests can still be written to the worker."""
        ...

    @abstractmethod
    def spawn_options(self, env: Mapping[str, str]) -> dict[str, Any]:
        """Keyword arguments for asyncio.create_subprocess_exec.

        Args:
            env: Environment the worker will run with; implementations may
                return an extended copy under the "env" key.
        """
        ...

    @abstractmethod
    async def attach(self, process: asyncio.subprocess.Process) -> None:
        """Bind the transport to the freshly spawned worker."""
        ...

    @abstractmethod
    async def send_raw(self, request: Mapping[str, Any]) -> None:
        """Deliver one request object to the worker.

        Raises:
            ServerExited: If the channel is closed or the write fails.
        """
        ...

    @abstractmethod
    def messages(self) -> AsyncIterator[Any]:
        """Yield decoded worker messages in arrival order until EOF.

        Raises:
            ProtocolError: If the worker output cannot be decoded.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the outbound channel. Safe to call more than once."""
        ...
