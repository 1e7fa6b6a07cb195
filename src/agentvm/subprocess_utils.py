"""Subprocess lifecycle utilities.

- run_command: run a short-lived helper binary with a bounded wait
- log_task_exception: done-callback for background tasks
- wait_for_socket: poll for a Unix socket created by a child process after fork+exec
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from agentvm._logging import get_logger
from agentvm.exceptions import OperationTimeoutError, ProcessError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of run_command()."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(*argv: str, timeout: float, stdin: bytes | None = None) -> CommandResult:
    """Run a command to completion and capture its output.

    A non-zero exit status is returned, not raised; callers decide what a
    failure means for them.

    Raises:
        ProcessError: The binary could not be executed
        OperationTimeoutError: The command did not finish within *timeout*
            (it is killed first)
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise ProcessError(f"Failed to execute {argv[0]}: {e}", context={"argv": list(argv)}) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(stdin), timeout=timeout)
    except TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=1.0)
        raise OperationTimeoutError(
            f"{argv[0]} did not finish within {timeout}s",
            context={"argv": list(argv), "timeout": timeout},
        ) from e

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback() so a failed background
    task never disappears silently.

    Usage:
        task = asyncio.create_task(some_coroutine())
        task.add_done_callback(log_task_exception)
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )


async def wait_for_socket(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.05,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Wait for a Unix socket to appear and accept connections.

    Used after launching the hypervisor, which creates its API socket some
    milliseconds after exec.  Two-phase wait: first the socket file must
    exist, then a probe-connect must succeed (the file appears before
    listen() completes).

    Args:
        path: Path to the socket file.
        timeout: Maximum seconds to wait.
        poll_interval: Seconds between checks.
        abort_check: Optional callable invoked each poll iteration. Should raise
            to abort the wait early (e.g. when the spawning process has died).

    Raises:
        OperationTimeoutError: Socket did not appear or accept connections within *timeout* seconds.
    """
    try:
        async with asyncio.timeout(timeout):
            while not path.exists():
                if abort_check is not None:
                    abort_check()
                await asyncio.sleep(poll_interval)

            while True:
                if abort_check is not None:
                    abort_check()
                try:
                    _, w = await asyncio.open_unix_connection(str(path))
                except (ConnectionRefusedError, ConnectionResetError, FileNotFoundError):
                    await asyncio.sleep(poll_interval)
                    continue
                w.close()
                with contextlib.suppress(OSError):
                    await w.wait_closed()
                return
    except TimeoutError as e:
        raise OperationTimeoutError(
            f"Control socket not ready after {timeout}s",
            context={"socket": str(path), "timeout": timeout},
        ) from e
