"""Launch configuration for a supervised worker."""

from __future__ import annotations

import os
import sys

from pydantic import BaseModel, Field, field_validator

from .protocol.messages import EXIT_COMMAND, REQUEST_COMPLETED_EVENT
from .transport import CHANNEL_FD_ENV, TransportMode

# Worker argument selecting the native channel instead of stdin/stdout
IPC_FLAG = "--useIpc"


class LaunchConfig(BaseModel):
    """How to start and talk to a worker process.

    The worker command line is:

        [runtime, *exec_args, server_path, *args]

    or, when `runtime` is None, `[server_path, *args]`.

    `args`, `exec_args` and `env` are passed through untouched. The only
    argument the harness looks at is `ipc_flag`, which selects the native
    channel transport.
    """

    server_path: str
    args: list[str] = Field(default_factory=list)
    exec_args: list[str] = Field(default_factory=list)
    runtime: str | None = Field(default_factory=lambda: sys.executable)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: str | None = None

    ipc_flag: str = IPC_FLAG
    channel_fd_env: str = CHANNEL_FD_ENV
    exit_command: str = EXIT_COMMAND
    completion_event: str = REQUEST_COMPLETED_EVENT

    # Seconds the async context manager waits for a graceful exit
    shutdown_timeout: float = Field(default=5.0, gt=0)

    @field_validator("server_path")
    @classmethod
    def _server_path_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("server_path must not be empty")
        return value

    @property
    def use_ipc(self) -> bool:
        """True if the worker arguments request the native channel."""
        flag = self.ipc_flag.lower()
        return any(arg.lower() == flag for arg in self.args)

    @property
    def transport_mode(self) -> TransportMode:
        return TransportMode.IPC if self.use_ipc else TransportMode.STREAM

    def command(self) -> list[str]:
        """Full command line for the worker."""
        head = [self.runtime, *self.exec_args] if self.runtime else []
        return [*head, self.server_path, *self.args]

    def build_env(self) -> dict[str, str]:
        """Parent environment with the configured overrides applied."""
        return {**os.environ, **self.env}
