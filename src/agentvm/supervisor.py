"""Hypervisor process supervision.

Launches the hypervisor detached (own session, output appended to a log
file) and tracks liveness by PID.  PIDs survive orchestrator restarts via
VmRecord.pid; processes launched by a previous instance are handled with
psutil, processes launched by this instance additionally through their
asyncio handle so they are reaped when they exit.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from typing import TYPE_CHECKING

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.exceptions import ProcessError
from agentvm.platform_utils import ProcessHandle, pid_is_alive
from agentvm.resource_cleanup import cleanup_file
from agentvm.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)


class HypervisorSupervisor:
    """Spawns, probes and terminates hypervisor processes.

    Attributes:
        launch_group: When set, the binary is started through ``sg <group> -c``
            so it runs with that supplementary group (typically "kvm").
    """

    def __init__(self, launch_group: str | None = None) -> None:
        self.launch_group = launch_group
        self._children: dict[int, asyncio.subprocess.Process] = {}
        self._reapers: dict[int, asyncio.Task[None]] = {}

    def build_argv(self, binary: Path, control_socket: Path) -> list[str]:
        argv = [str(binary), "--api-sock", str(control_socket)]
        if self.launch_group:
            return ["sg", self.launch_group, "-c", shlex.join(argv)]
        return argv

    async def launch(self, binary: Path, control_socket: Path, log_path: Path, *, context_id: str) -> int:
        """Start the hypervisor and return its PID without waiting for readiness.

        Callers poll for *control_socket* (see wait_for_socket).

        Raises:
            ProcessError: The binary could not be executed
        """
        await cleanup_file(control_socket, context_id, "stale control socket")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        argv = self.build_argv(binary, control_socket)

        try:
            # The child keeps its own copy of the descriptor
            with log_path.open("ab") as log_file:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=log_file,
                    start_new_session=True,
                )
        except OSError as e:
            raise ProcessError(
                f"Failed to launch hypervisor: {e}",
                context={"context_id": context_id, "argv": argv, "error": str(e)},
            ) from e

        self._children[proc.pid] = proc
        reaper = asyncio.create_task(self._reap(proc, context_id), name=f"reap-{context_id}-{proc.pid}")
        reaper.add_done_callback(log_task_exception)
        self._reapers[proc.pid] = reaper

        logger.info(
            "Hypervisor launched",
            extra={"context_id": context_id, "pid": proc.pid, "socket": str(control_socket), "log": str(log_path)},
        )
        return proc.pid

    async def _reap(self, proc: asyncio.subprocess.Process, context_id: str) -> None:
        try:
            returncode = await proc.wait()
            logger.info(
                "Hypervisor exited",
                extra={"context_id": context_id, "pid": proc.pid, "returncode": returncode},
            )
        finally:
            self._children.pop(proc.pid, None)
            self._reapers.pop(proc.pid, None)

    def is_alive(self, pid: int | None) -> bool:
        """Signal-0 style liveness probe."""
        if pid is None:
            return False
        child = self._children.get(pid)
        if child is not None:
            return child.returncode is None
        return pid_is_alive(pid)

    async def terminate(
        self,
        pid: int | None,
        *,
        graceful: bool = True,
        context_id: str = "",
        term_timeout: float = constants.TERM_TIMEOUT_SECONDS,
        kill_timeout: float = constants.KILL_TIMEOUT_SECONDS,
    ) -> bool:
        """Stop a process: SIGTERM, wait, then SIGKILL (or SIGKILL directly).

        A process that is already gone counts as success.  Never raises.

        Returns:
            True if the process is gone afterwards
        """
        if not self.is_alive(pid):
            return True
        assert pid is not None
        handle = ProcessHandle(pid)

        try:
            if graceful:
                logger.debug("Sending SIGTERM to hypervisor", extra={"context_id": context_id, "pid": pid})
                await handle.terminate()
                if await self._wait_gone(pid, handle, term_timeout):
                    logger.debug("Hypervisor stopped gracefully", extra={"context_id": context_id, "pid": pid})
                    return True
                logger.warning(
                    "Hypervisor didn't respond to SIGTERM, force killing",
                    extra={"context_id": context_id, "pid": pid, "term_timeout": term_timeout},
                )

            await handle.kill()
            if await self._wait_gone(pid, handle, kill_timeout):
                logger.warning("Hypervisor force killed", extra={"context_id": context_id, "pid": pid})
                return True

            logger.error(
                "Hypervisor didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "pid": pid, "kill_timeout": kill_timeout},
            )
            return False

        except ProcessLookupError:
            return True

        except Exception as e:
            logger.error(
                "Hypervisor termination error",
                extra={"context_id": context_id, "pid": pid, "error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            return False

    async def _wait_gone(self, pid: int, handle: ProcessHandle, timeout: float) -> bool:
        child = self._children.get(pid)
        try:
            if child is not None:
                await asyncio.wait_for(asyncio.shield(child.wait()), timeout=timeout)
            else:
                await handle.wait_gone(timeout)
        except TimeoutError:
            return False
        return True

    async def close(self) -> None:
        """Stop reaping.  Running hypervisors are left alone (they are detached)."""
        reapers = list(self._reapers.values())
        for task in reapers:
            task.cancel()
        for task in reapers:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._reapers.clear()
        self._children.clear()
