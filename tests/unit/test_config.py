"""Unit tests for launch configuration and the transport factory."""

from __future__ import annotations

import os
import sys

import pytest
from pydantic import ValidationError

from server_harness.config import IPC_FLAG, LaunchConfig
from server_harness.transport import (
    IpcTransport,
    StreamTransport,
    TransportMode,
    create_transport,
)


class TestLaunchConfig:
    """Tests for LaunchConfig."""

    def test_defaults(self) -> None:
        """Defaults run the worker with the current interpreter over stdio."""
        config = LaunchConfig(server_path="worker.py")

        assert config.runtime == sys.executable
        assert config.args == []
        assert config.exec_args == []
        assert config.exit_command == "exit"
        assert config.completion_event == "requestCompleted"
        assert config.shutdown_timeout == 5.0
        assert config.transport_mode == TransportMode.STREAM

    def test_command_line_order(self) -> None:
        """Runtime flags come before the worker, worker args after it."""
        config = LaunchConfig(
            server_path="server.js",
            runtime="node",
            exec_args=["--max-old-space-size=4096", "--expose-gc"],
            args=["--logVerbosity", "verbose"],
        )

        assert config.command() == [
            "node",
            "--max-old-space-size=4096",
            "--expose-gc",
            "server.js",
            "--logVerbosity",
            "verbose",
        ]

    def test_command_without_runtime(self) -> None:
        """With no runtime the worker is executed directly."""
        config = LaunchConfig(server_path="/usr/bin/worker", runtime=None, exec_args=["-x"])
        assert config.command() == ["/usr/bin/worker"]

    @pytest.mark.parametrize("flag", [IPC_FLAG, "--useipc", "--USEIPC"])
    def test_ipc_flag_is_case_insensitive(self, flag: str) -> None:
        """The IPC flag selects the native channel regardless of case."""
        config = LaunchConfig(server_path="w.py", args=["--other", flag])
        assert config.use_ipc
        assert config.transport_mode == TransportMode.IPC

    def test_custom_ipc_flag(self) -> None:
        """The flag name itself is configurable."""
        config = LaunchConfig(server_path="w.py", args=["--useNodeIpc"], ipc_flag="--useNodeIpc")
        assert config.use_ipc

    def test_ipc_flag_value_lookalike_ignored(self) -> None:
        """Only an exact argument match counts."""
        config = LaunchConfig(server_path="w.py", args=["--useIpcLater"])
        assert not config.use_ipc

    def test_env_overrides_merge(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Overrides are applied over the parent environment."""
        monkeypatch.setenv("HARNESS_TEST_KEEP", "parent")
        monkeypatch.setenv("HARNESS_TEST_OVERRIDE", "parent")
        config = LaunchConfig(server_path="w.py", env={"HARNESS_TEST_OVERRIDE": "child"})

        env = config.build_env()
        assert env["HARNESS_TEST_KEEP"] == "parent"
        assert env["HARNESS_TEST_OVERRIDE"] == "child"
        assert os.environ["HARNESS_TEST_OVERRIDE"] == "parent"

    def test_empty_server_path_rejected(self) -> None:
        """A blank worker path is a configuration error."""
        with pytest.raises(ValidationError):
            LaunchConfig(server_path="  ")

    def test_non_positive_shutdown_timeout_rejected(self) -> None:
        """The shutdown timeout must be positive."""
        with pytest.raises(ValidationError):
            LaunchConfig(server_path="w.py", shutdown_timeout=0)


class TestCreateTransport:
    """Tests for the transport factory."""

    def test_stream(self) -> None:
        transport = create_transport(TransportMode.STREAM)
        assert isinstance(transport, StreamTransport)
        assert not transport.is_connected

    def test_ipc_from_string(self) -> None:
        transport = create_transport("ipc")
        assert isinstance(transport, IpcTransport)
        assert transport.mode == TransportMode.IPC

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            create_transport("carrier-pigeon")

    @pytest.mark.asyncio
    async def test_ipc_spawn_options_publish_channel_fd(self) -> None:
        """The worker end of the socket is inherited and advertised in env."""
        transport = IpcTransport("MY_CHANNEL_FD")
        options = transport.spawn_options({"A": "1"})
        try:
            (fd,) = options["pass_fds"]
            assert options["env"]["MY_CHANNEL_FD"] == str(fd)
            assert options["env"]["A"] == "1"
        finally:
            await transport.close()

