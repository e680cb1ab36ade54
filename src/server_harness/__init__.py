"""Server Harness - supervise a worker process and talk to it in JSON.

Sends numbered requests, matches out-of-order replies by sequence number,
delivers unsolicited events to listeners, and manages the worker lifecycle
(graceful exit, forced kill, close notification).

Two transport modes:
- stream: requests on stdin, Content-Length framed replies on stdout
- ipc: JSON lines over a socket inherited by the worker (add the IPC flag to
  the worker arguments)
"""

from .config import IPC_FLAG, LaunchConfig
from .correlator import Correlator
from .errors import HarnessError, KillSignalFailed, ProtocolError, ServerExited
from .protocol import (
    EXIT_COMMAND,
    REQUEST_COMPLETED_EVENT,
    FrameDecoder,
    Request,
    encode_frame,
    encode_request,
)
from .supervisor import ProcessState, ProcessSupervisor, launch_server
from .transport import (
    ChannelTransport,
    IpcTransport,
    StreamTransport,
    TransportMode,
    create_transport,
)
from .worker import WorkerChannel

__all__ = [
    # Supervisor
    "ProcessSupervisor",
    "ProcessState",
    "launch_server",
    "LaunchConfig",
    "IPC_FLAG",
    # Correlation
    "Correlator",
    # Protocol
    "FrameDecoder",
    "Request",
    "encode_frame",
    "encode_request",
    "EXIT_COMMAND",
    "REQUEST_COMPLETED_EVENT",
    # Transports
    "ChannelTransport",
    "StreamTransport",
    "IpcTransport",
    "TransportMode",
    "create_transport",
    # Worker side
    "WorkerChannel",
    # Errors
    "HarnessError",
    "ProtocolError",
    "ServerExited",
    "KillSignalFailed",
]
