"""Tests for run_command and wait_for_socket with real processes and sockets."""

import asyncio
import socket
from pathlib import Path

import pytest

from agentvm.exceptions import OperationTimeoutError, ProcessError
from agentvm.subprocess_utils import run_command, wait_for_socket


class TestRunCommand:
    async def test_captures_output(self) -> None:
        result = await run_command("sh", "-c", "echo out; echo err >&2; exit 4", timeout=5.0)

        assert result.returncode == 4
        assert not result.ok
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    async def test_stdin(self) -> None:
        result = await run_command("cat", timeout=5.0, stdin=b"payload")

        assert result.ok
        assert result.stdout == "payload"

    async def test_missing_binary(self) -> None:
        with pytest.raises(ProcessError, match="Failed to execute"):
            await run_command("/nonexistent/agentvm-helper", timeout=5.0)

    async def test_timeout_kills(self) -> None:
        with pytest.raises(OperationTimeoutError, match="did not finish"):
            await run_command("sleep", "30", timeout=0.1)


class TestWaitForSocket:
    async def test_ready_when_listening(self, short_tmp: Path) -> None:
        path = short_tmp / "api.sock"

        async def bind_later() -> socket.socket:
            await asyncio.sleep(0.05)
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.bind(str(path))
            sock.listen(1)
            return sock

        binder = asyncio.create_task(bind_later())
        await wait_for_socket(path, timeout=2.0, poll_interval=0.01)
        (await binder).close()

    async def test_file_without_listener_times_out(self, short_tmp: Path) -> None:
        path = short_tmp / "api.sock"
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.bind(str(path))
        try:
            with pytest.raises(OperationTimeoutError, match="not ready"):
                await wait_for_socket(path, timeout=0.1, poll_interval=0.01)
        finally:
            sock.close()

    async def test_abort_check_stops_wait(self, short_tmp: Path) -> None:
        def abort() -> None:
            raise ProcessError("hypervisor exited")

        with pytest.raises(ProcessError, match="exited"):
            await wait_for_socket(short_tmp / "never.sock", timeout=2.0, abort_check=abort)
