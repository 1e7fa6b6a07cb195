"""Host platform helpers: data directories and process liveness.

Uses psutil for PID-reuse safe process inspection.
"""

import asyncio
import contextlib
import os
from functools import cache
from pathlib import Path

import psutil


@cache
def get_data_dir() -> Path:
    """Base directory for all agentvm state.

    Follows the XDG convention: ``$XDG_DATA_HOME/agentvm`` or
    ``~/.local/share/agentvm``.
    """
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else Path.home() / ".local" / "share"
    return base / "agentvm"


def pid_is_alive(pid: int | None) -> bool:
    """Non-destructive liveness probe (signal-0 equivalent).

    Zombies count as dead: the hypervisor is gone even if its parent has
    not reaped it yet.
    """
    if not pid or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Exists but owned by another user
        return True


class ProcessHandle:
    """PID-reuse safe handle on an existing process.

    Unlike an asyncio subprocess, this works for processes launched by a
    previous orchestrator instance (reconciled from persisted state).
    """

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.psutil_proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self.psutil_proc = psutil.Process(pid)

    async def is_running(self) -> bool:
        """Check liveness off the event loop."""
        if self.psutil_proc is None:
            return False
        try:
            running = await asyncio.to_thread(self.psutil_proc.is_running)
            status = await asyncio.to_thread(self.psutil_proc.status) if running else None
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            return True
        return running and status != psutil.STATUS_ZOMBIE

    async def terminate(self) -> None:
        """Send SIGTERM."""
        if self.psutil_proc is not None:
            with contextlib.suppress(psutil.NoSuchProcess):
                await asyncio.to_thread(self.psutil_proc.terminate)

    async def kill(self) -> None:
        """Send SIGKILL."""
        if self.psutil_proc is not None:
            with contextlib.suppress(psutil.NoSuchProcess):
                await asyncio.to_thread(self.psutil_proc.kill)

    async def wait_gone(self, timeout: float, poll_interval: float = 0.05) -> None:
        """Wait for the process to disappear.

        Raises:
            TimeoutError: Still alive after *timeout* seconds
        """
        async with asyncio.timeout(timeout):
            while await self.is_running():
                await asyncio.sleep(poll_interval)
