"""Guest SSH access: host keypair, readiness probing, connection info."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
from typing import TYPE_CHECKING

import aiofiles.os
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, wait_fixed

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.exceptions import AgentVmError, OperationTimeoutError
from agentvm.file_utils import read_text
from agentvm.models import SshInfo
from agentvm.subprocess_utils import run_command

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

_SSH_OPTIONS = ("-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null")


class _GuestNotReady(Exception):
    """Probe failed; retried until the readiness ceiling."""


class SshAccess:
    """Keypair management and SSH readiness probes.

    The same ed25519 keypair is injected into every guest (via the
    metadata document) and used by the readiness probe.

    Attributes:
        private_key: Path to the private key
        public_key_path: Path to the public key
        user: Guest login user
    """

    def __init__(
        self,
        private_key: Path,
        *,
        user: str = constants.GUEST_SSH_USER,
        ssh_bin: str = "ssh",
        ssh_keygen_bin: str = "ssh-keygen",
    ) -> None:
        self.private_key = private_key
        self.public_key_path = private_key.with_name(f"{private_key.name}.pub")
        self.user = user
        self.ssh_bin = ssh_bin
        self.ssh_keygen_bin = ssh_keygen_bin

    async def ensure_keypair(self) -> bool:
        """Generate the keypair if missing.  Returns False (logged) on failure."""
        if await aiofiles.os.path.exists(self.private_key):
            return True
        await aiofiles.os.makedirs(self.private_key.parent, mode=0o700, exist_ok=True)
        try:
            result = await run_command(
                self.ssh_keygen_bin,
                "-t",
                "ed25519",
                "-f",
                str(self.private_key),
                "-N",
                "",
                "-C",
                "agentvm",
                "-q",
                timeout=30.0,
            )
        except AgentVmError as e:
            logger.warning("SSH key generation failed", extra={"path": str(self.private_key), "error": e.message})
            return False
        if not result.ok:
            logger.warning(
                "SSH key generation failed",
                extra={"path": str(self.private_key), "error": result.stderr.strip()},
            )
            return False
        logger.info("SSH keypair generated", extra={"path": str(self.private_key)})
        return True

    async def public_key(self) -> str | None:
        with contextlib.suppress(FileNotFoundError):
            return (await read_text(self.public_key_path)).strip() or None
        return None

    async def private_key_text(self) -> str | None:
        with contextlib.suppress(FileNotFoundError):
            return await read_text(self.private_key)
        return None

    def connection_info(self, host: str, port: int) -> SshInfo:
        argv = [self.ssh_bin, "-i", str(self.private_key)]
        if port != constants.GUEST_SSH_PORT:
            argv += ["-p", str(port)]
        argv += [*_SSH_OPTIONS, f"{self.user}@{host}"]
        return SshInfo(host=host, port=port, user=self.user, command=shlex.join(argv))

    async def probe(self, host: str, port: int) -> bool:
        """One short-timeout ``ssh ... echo ready``."""
        connect_timeout = constants.SSH_PROBE_CONNECT_TIMEOUT_SECONDS
        try:
            result = await run_command(
                self.ssh_bin,
                "-i",
                str(self.private_key),
                *_SSH_OPTIONS,
                "-o",
                f"ConnectTimeout={connect_timeout}",
                "-o",
                "BatchMode=yes",
                "-p",
                str(port),
                f"{self.user}@{host}",
                "echo ready",
                timeout=connect_timeout + 5,
            )
        except AgentVmError as e:
            logger.debug("SSH probe error", extra={"host": host, "port": port, "error": e.message})
            return False
        return result.ok and "ready" in result.stdout

    async def wait_ready(self, host: str, port: int, *, timeout: float, interval: float) -> None:
        """Probe until the guest answers.

        Raises:
            OperationTimeoutError: No successful probe within *timeout*
        """
        try:
            async with asyncio.timeout(timeout):
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception_type(_GuestNotReady),
                    wait=wait_fixed(interval),
                    before_sleep=before_sleep_log(logger, logging.DEBUG),
                ):
                    with attempt:
                        if not await self.probe(host, port):
                            raise _GuestNotReady(f"{host}:{port}")
        except TimeoutError as e:
            raise OperationTimeoutError(
                f"Guest SSH not reachable after {timeout}s",
                context={"host": host, "port": port, "timeout": timeout},
            ) from e
        logger.info("Guest SSH ready", extra={"host": host, "port": port})
