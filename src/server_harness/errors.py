"""Error taxonomy for the server harness.

- ProtocolError: the worker's output can no longer be trusted (bad frame
  header, unparsable body, uncorrelatable response). Fatal to the transport.
- ServerExited: a send was attempted against a worker that is disconnected,
  killed, or already exited. Also used to reject sends still pending when the
  worker goes away.
- KillSignalFailed: the termination signal could not be delivered to a live
  worker.

A timed-out graceful shutdown is not an error; exit_or_kill() reports it as a
False result.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for all harness errors."""


class ProtocolError(HarnessError):
    """Raised when the inbound byte stream violates the framing protocol."""


class ServerExited(HarnessError):
    """Raised when the worker process is no longer able to receive requests."""

    def __init__(
        self,
        message: str = "Server has exited",
        *,
        exit_code: int | None = None,
        signal: str | None = None,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.signal = signal


class KillSignalFailed(HarnessError):
    """Raised when the kill signal cannot be delivered to a live worker."""
