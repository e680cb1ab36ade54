"""Transport layer between the supervisor and its worker.

- stream: stdin/stdout pipes, Content-Length framed replies
- ipc: inherited socket, JSON lines both ways
"""

from .base import ChannelTransport, TransportMode
from .ipc import CHANNEL_FD_ENV, IpcTransport
from .stream import StreamTransport


def create_transport(
    mode: TransportMode | str,
    channel_fd_env: str = CHANNEL_FD_ENV,
) -> ChannelTransport:
    """Create the transport for a delivery mode.

    Args:
        mode: TransportMode or its string value ("stream" or "ipc")
        channel_fd_env: Environment variable carrying the channel fd (ipc only)

    Returns:
        A fresh, unattached transport
    """
    mode = TransportMode(mode)
    if mode == TransportMode.IPC:
        return IpcTransport(channel_fd_env)
    return StreamTransport()


__all__ = [
    "CHANNEL_FD_ENV",
    "ChannelTransport",
    "IpcTransport",
    "StreamTransport",
    "TransportMode",
    "create_transport",
]
