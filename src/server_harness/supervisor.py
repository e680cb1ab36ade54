"""Worker process supervision.

ProcessSupervisor owns the child process and everything attached to it:

- the transport carrying requests out and messages in
- the correlator matching replies to pending sends
- the exit/close notifications and the shutdown sequence

State machine:

    STARTING -> RUNNING -> EXITING -> EXITED
                   |           |
                   +-----------+--> KILLED

Notifications:
- "exit": listener(exit_code) as soon as the process terminates, even if a
  descendant still holds its output open. exit_code is None when it was
  terminated by a signal.
- "close": listener(exit_code, signal) once the process has exited and its
  output has been fully drained. Always fires after "exit"; this is the
  "fully done" signal.
- "event": listener(message) for every broadcast event from the worker.

Usage:
    async with await launch_server("worker.py") as server:
        server.on("event", print)
        response = await server.send({"seq": 1, "type": "request", "command": "echo"})
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal as signal_module
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any

from .config import LaunchConfig
from .correlator import Correlator, EventListener
from .errors import HarnessError, KillSignalFailed, ProtocolError, ServerExited
from .protocol.messages import Request, to_wire
from .transport import ChannelTransport, create_transport

logger = logging.getLogger(__name__)

ExitListener = Callable[[int | None], None]
CloseListener = Callable[[int | None, str | None], None]

# Same buffer limit asyncio.create_subprocess_exec uses
STREAM_LIMIT = 2**16


class ProcessState(str, Enum):
    """Worker lifecycle state."""

    STARTING = "starting"
    RUNNING = "running"
    EXITING = "exiting"
    EXITED = "exited"
    KILLED = "killed"


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split an asyncio return code into (exit_code, signal_name).

    Negative return codes mean the process was terminated by that signal.
    """
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal_module.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


class _WorkerProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also reports process termination.

    Process.wait() only returns once every pipe has closed, which a
    descendant holding stdout or stderr can delay indefinitely.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop):
        super().__init__(limit=limit, loop=loop)
        self.exited = asyncio.Event()

    def process_exited(self) -> None:
        super().process_exited()
        self.exited.set()


class ProcessSupervisor:
    """Supervises one worker process and correlates its replies."""

    def __init__(
        self,
        config: LaunchConfig,
        transport: ChannelTransport | None = None,
        correlator: Correlator | None = None,
    ):
        self.config = config
        self._transport = transport or create_transport(
            config.transport_mode, config.channel_fd_env
        )
        self._correlator = correlator or Correlator(config.completion_event)

        self._process: asyncio.subprocess.Process | None = None
        self._state = ProcessState.STARTING
        self._killed = False
        self._exit_code: int | None = None
        self._signal: str | None = None
        self._transport_error: HarnessError | None = None

        self._exit_listeners: list[ExitListener] = []
        self._close_listeners: list[CloseListener] = []
        self._closed = asyncio.Event()

        self._dispatch_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def exit_code(self) -> int | None:
        """Exit code, or None while running or when terminated by a signal."""
        return self._exit_code

    @property
    def signal(self) -> str | None:
        """Name of the terminating signal, if any."""
        return self._signal

    @property
    def killed(self) -> bool:
        """True once a kill signal has been delivered."""
        return self._killed

    @property
    def connected(self) -> bool:
        return self._transport.is_connected

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def transport_error(self) -> HarnessError | None:
        """The protocol error that aborted the transport, if any."""
        return self._transport_error

    @property
    def transport(self) -> ChannelTransport:
        return self._transport

    @property
    def correlator(self) -> Correlator:
        return self._correlator

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker and start reading from it."""
        if self._process is not None:
            raise RuntimeError("Server already started")

        cmd = self.config.command()
        options = self._transport.spawn_options(self.config.build_env())

        loop = asyncio.get_running_loop()
        try:
            process_transport, protocol = await loop.subprocess_exec(
                lambda: _WorkerProtocol(limit=STREAM_LIMIT, loop=loop),
                *cmd,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.config.cwd,
                **options,
            )
        except Exception:
            await self._transport.close()
            raise

        process = asyncio.subprocess.Process(process_transport, protocol, loop)
        self._process = process

        await self._transport.attach(process)
        self._state = ProcessState.RUNNING

        self._dispatch_task = asyncio.create_task(self._dispatch())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._watch_task = asyncio.create_task(self._watch(process, protocol.exited))

        logger.info(
            f"Launched server: {' '.join(cmd)} "
            f"(pid={process.pid}, transport={self._transport.mode.value})"
        )

    def on(self, event: str, listener: Callable[..., None]) -> None:
        """Register a listener for "event", "exit" or "close".

        Listeners run synchronously, in registration order, every time the
        notification fires.
        """
        if event == "event":
            self._correlator.add_event_listener(listener)
        elif event == "exit":
            self._exit_listeners.append(listener)
        elif event == "close":
            self._close_listeners.append(listener)
        else:
            raise ValueError(f"Unknown server event: {event!r}")

    async def send(self, request: Request | Mapping[str, Any]) -> Any:
        """Send a request and wait for its reply.

        The exit command never gets a reply; it returns None as soon as the
        request is written. There is no timeout on ordinary requests.

        Raises:
            ServerExited: If the worker is disconnected, killed or exited, or
                exits while the request is pending.
            ProtocolError: If the worker output becomes undecodable while the
                request is pending.
        """
        self._ensure_alive()
        payload = to_wire(request)

        if payload.get("command") == self.config.exit_command:
            await self._transport.send_raw(payload)
            if self._state == ProcessState.RUNNING:
                self._state = ProcessState.EXITING
            return None

        seq = payload.get("seq")
        await self._transport.send_raw(payload)
        future = self._correlator.await_response(seq)

        # The channel may have died while the request was being written
        if self._transport_error is not None:
            self._correlator.fail_pending(self._transport_error)
        elif self.closed:
            self._correlator.fail_pending(self._exited_error())

        return await future

    async def exit_or_kill(self, timeout: float, *, seq: int | None = None) -> bool:
        """Ask the worker to exit, killing it if it has not closed in time.

        Args:
            timeout: Seconds to wait for the close notification
            seq: Sequence number for the exit request, if the worker wants one

        Returns:
            True if the worker closed on its own, False if it had to be killed
        """
        request: dict[str, Any] = {"type": "request", "command": self.config.exit_command}
        if seq is not None:
            request["seq"] = seq
        await self.send(request)

        try:
            await asyncio.wait_for(self._closed.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning(f"Server did not exit within {timeout}s, killing (pid={self.pid})")
            await self.kill()
            return False
        return True

    async def kill(self) -> None:
        """Forcefully terminate the worker and wait for the close notification.

        Returns immediately if the process has already exited.

        Raises:
            KillSignalFailed: If the signal cannot be delivered.
        """
        if self._process is None:
            raise RuntimeError("Server not started")
        if self._process.returncode is not None:
            return

        try:
            self._process.kill()
        except ProcessLookupError:
            # Exited but not reaped yet; close will still fire
            logger.debug(f"Server already gone when killed (pid={self._process.pid})")
        except OSError as e:
            raise KillSignalFailed(f"Failed to kill server (pid={self._process.pid}): {e}") from e
        else:
            self._killed = True
            self._state = ProcessState.KILLED
            logger.info(f"Sent kill signal to server (pid={self._process.pid})")

        await self._closed.wait()

    async def wait_closed(self) -> None:
        """Wait until the close notification has fired."""
        await self._closed.wait()

    def _ensure_alive(self) -> None:
        if self._process is None:
            raise ServerExited("Server not started")
        if (
            not self._transport.is_connected
            or self._killed
            or self._process.returncode is not None
        ):
            raise self._exited_error()

    def _exited_error(self) -> ServerExited:
        exit_code, sig = split_returncode(self.returncode)
        return ServerExited(
            f"Server has exited (pid={self.pid})",
            exit_code=exit_code,
            signal=sig,
        )

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    async def _dispatch(self) -> None:
        """Feed every worker message to the correlator, in arrival order."""
        try:
            async for message in self._transport.messages():
                self._correlator.handle_message(message)
        except ProtocolError as e:
            logger.error(f"Protocol error from server (pid={self.pid}): {e}")
            self._transport_error = e
            self._correlator.fail_pending(e)
            await self._transport.close()

    async def _read_stderr(self) -> None:
        """Read and log stderr output."""
        if not self._process or not self._process.stderr:
            return

        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            logger.debug(f"[server stderr] {line.decode('utf-8', errors='replace').rstrip()}")

    async def _watch(self, process: asyncio.subprocess.Process, exited: asyncio.Event) -> None:
        """Fire exit when the process terminates, then close once output is drained."""
        await exited.wait()
        self._exit_code, self._signal = split_returncode(process.returncode)
        if self._state != ProcessState.KILLED:
            self._state = ProcessState.EXITED

        if self._signal:
            logger.info(f"Server terminated by {self._signal} (pid={process.pid})")
        else:
            logger.info(f"Server exited with code {self._exit_code} (pid={process.pid})")

        self._notify(self._exit_listeners, self._exit_code)

        readers = [t for t in (self._dispatch_task, self._stderr_task) if t is not None]
        results = await asyncio.gather(*readers, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException) and not isinstance(
                result, asyncio.CancelledError
            ):
                logger.error(f"Server reader failed: {result!r}")

        await self._transport.close()
        await process.wait()
        self._correlator.fail_pending(
            ServerExited(
                f"Server closed before responding (pid={process.pid})",
                exit_code=self._exit_code,
                signal=self._signal,
            )
        )

        self._closed.set()
        self._notify(self._close_listeners, self._exit_code, self._signal)

    @staticmethod
    def _notify(listeners: list[Callable[..., None]], *args: Any) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Error in server lifecycle listener")

    # -------------------------------------------------------------------------
    # Context manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> ProcessSupervisor:
        if self._process is None:
            await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._process is None or self.closed:
            return
        if self._process.returncode is not None or not self.connected:
            await self.kill()
            await self._closed.wait()
            return
        with contextlib.suppress(ServerExited):
            await self.exit_or_kill(self.config.shutdown_timeout)
        await self._closed.wait()


async def launch_server(
    server_path: str,
    args: list[str] | None = None,
    exec_args: list[str] | None = None,
    env: dict[str, str] | None = None,
    **options: Any,
) -> ProcessSupervisor:
    """Start a worker and return its supervisor.

    Args:
        server_path: Worker script or binary
        args: Worker arguments; include the IPC flag to use the native channel
        exec_args: Runtime flags placed before server_path
        env: Environment overrides for the worker
        **options: Any other LaunchConfig field

    Returns:
        A running ProcessSupervisor
    """
    config = LaunchConfig(
        server_path=server_path,
        args=args or [],
        exec_args=exec_args or [],
        env=env or {},
        **options,
    )
    supervisor = ProcessSupervisor(config)
    await supervisor.start()
    return supervisor


__all__ = [
    "CloseListener",
    "EventListener",
    "ExitListener",
    "ProcessState",
    "ProcessSupervisor",
    "launch_server",
    "split_returncode",
]
