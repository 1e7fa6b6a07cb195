"""Pool-mode TAP provisioning.

A provisioning script pre-creates the bridge and a fixed set of TAP
devices and records them in ``network.json``.  Allocation marks an entry
as owned by a VM; release marks it free.  The file is shared by every
orchestrator on the host, so each mutation is a read-modify-write under
an exclusive flock on a sidecar lock file, and the rewrite is atomic
(temp file + rename).
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
from typing import TYPE_CHECKING

import aiofiles.os
from pydantic import ValidationError

from agentvm._logging import get_logger
from agentvm.exceptions import NetworkError, NoCapacityError
from agentvm.file_utils import atomic_write_text, read_text
from agentvm.models import NetworkHealth, NetworkPoolConfig, TapAllocation

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from agentvm.settings import Settings

logger = get_logger(__name__)


class PoolTapProvisioner:
    """Hands out pre-created TAP devices recorded in the pool file.

    Attributes:
        config_path: The pool configuration file
    """

    mode = "pool"

    def __init__(self, settings: Settings, config_path: Path | None = None) -> None:
        self.config_path = config_path if config_path is not None else settings.network_pool_path
        self.sys_class_net = settings.sys_class_net
        self._lock = asyncio.Lock()

    @property
    def lock_path(self) -> Path:
        return self.config_path.with_name(f"{self.config_path.name}.lock")

    def device_exists(self, name: str) -> bool:
        return (self.sys_class_net / name).exists()

    def is_configured(self) -> bool:
        return self.config_path.exists()

    # =========================================================================
    # File access
    # =========================================================================

    async def load(self) -> NetworkPoolConfig | None:
        """Read the pool file; None when absent or unreadable."""
        if not await aiofiles.os.path.exists(self.config_path):
            return None
        try:
            return NetworkPoolConfig.model_validate_json(await read_text(self.config_path))
        except (OSError, ValidationError) as e:
            logger.error("Failed to load network pool config", extra={"path": str(self.config_path), "error": str(e)})
            return None

    async def _save(self, config: NetworkPoolConfig) -> None:
        await atomic_write_text(self.config_path, config.model_dump_json(by_alias=True, indent=2), mode=0o644)

    @contextlib.asynccontextmanager
    async def _file_lock(self) -> AsyncIterator[None]:
        """Exclusive lock for a read-modify-write of the pool file.

        The asyncio lock serializes tasks in this process; the flock
        serializes processes.  The lock file is never deleted.
        """
        async with self._lock:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = self.lock_path.open("a")
            try:
                await asyncio.to_thread(fcntl.flock, fd.fileno(), fcntl.LOCK_EX)
                yield
            finally:
                fd.close()  # closing releases the flock

    # =========================================================================
    # Probing
    # =========================================================================

    async def is_usable(self) -> bool:
        """Pool file present and its bridge exists."""
        config = await self.load()
        return config is not None and self.device_exists(config.bridge_name)

    async def check_health(self) -> NetworkHealth:
        config = await self.load()
        if config is None:
            return NetworkHealth(
                mode=self.mode,
                configured=False,
                bridge_exists=False,
                message="Network pool not configured" if not self.is_configured() else "Failed to load network pool",
            )

        bridge_exists = self.device_exists(config.bridge_name)
        present = [tap for tap in config.tap_devices if self.device_exists(tap.name)]
        available = [tap for tap in present if not tap.allocated]
        if not bridge_exists:
            message = f"Bridge {config.bridge_name} not found"
        elif len(present) != len(config.tap_devices):
            message = f"Only {len(present)}/{len(config.tap_devices)} TAP devices exist"
        elif not available:
            message = "No TAP devices available, all are allocated"
        else:
            message = f"Network ready, {len(available)} TAP devices available"
        return NetworkHealth(
            mode=self.mode,
            configured=True,
            bridge_exists=bridge_exists,
            device_count=len(present),
            available_count=len(available),
            message=message,
        )

    # =========================================================================
    # Allocate / release
    # =========================================================================

    async def allocate(self, vm_id: str) -> TapAllocation:
        """Claim the first free TAP whose device still exists.

        Raises:
            NetworkError: Pool file missing or unreadable
            NoCapacityError: No entry is both free and present
        """
        async with self._file_lock():
            config = await self.load()
            if config is None:
                raise NetworkError("Network pool not configured", context={"path": str(self.config_path)})

            for tap in config.tap_devices:
                if tap.allocated_to == vm_id:
                    return self._to_allocation(config, tap.name)

            tap = next((t for t in config.tap_devices if not t.allocated and self.device_exists(t.name)), None)
            if tap is None:
                raise NoCapacityError(
                    "No available TAP devices",
                    context={"vm_id": vm_id, "total": len(config.tap_devices)},
                )
            tap.allocated = True
            tap.allocated_to = vm_id
            await self._save(config)

        logger.info("TAP allocated", extra={"vm_id": vm_id, "tap": tap.name, "guest_ip": tap.guest_ip})
        return self._to_allocation(config, tap.name)

    async def release(self, tap_name: str | None, vm_id: str | None = None) -> None:
        """Mark the TAP free.

        Unknown or already-free entries are a no-op, and so is an entry
        owned by a VM other than *vm_id*.
        """
        async with self._file_lock():
            config = await self.load()
            if config is None:
                return
            tap = next(
                (
                    t
                    for t in config.tap_devices
                    if (tap_name is not None and t.name == tap_name) or (tap_name is None and t.allocated_to == vm_id)
                ),
                None,
            )
            if tap is None or not tap.allocated:
                return
            if vm_id is not None and tap.allocated_to is not None and tap.allocated_to != vm_id:
                logger.warning(
                    "Not releasing TAP owned by another VM",
                    extra={"tap": tap.name, "vm_id": vm_id, "owner": tap.allocated_to},
                )
                return
            previous = tap.allocated_to
            tap.allocated = False
            tap.allocated_to = None
            await self._save(config)
        logger.info("TAP released", extra={"tap": tap.name, "vm_id": previous})

    async def adopt(self, vm_id: str, allocation: TapAllocation) -> bool:
        """Re-claim a persisted allocation in the pool file (start-up).

        The entry is marked as owned by *vm_id* again, so a pool file that
        was reset or rewritten while the orchestrator was down cannot hand
        the same TAP to a second VM.  Rejected when the entry is gone, its
        device is gone, its address changed, or another VM owns it.
        """
        async with self._file_lock():
            config = await self.load()
            if config is None:
                logger.warning("Cannot adopt TAP, network pool not configured", extra={"vm_id": vm_id})
                return False
            tap = next((t for t in config.tap_devices if t.name == allocation.tap_name), None)
            if tap is None:
                reason = "entry missing from pool file"
            elif not self.device_exists(tap.name):
                reason = "device does not exist"
            elif tap.guest_ip != allocation.guest_ip:
                reason = f"guest IP changed to {tap.guest_ip}"
            elif tap.allocated_to not in (None, vm_id):
                reason = f"allocated to {tap.allocated_to}"
            else:
                reason = None
            if reason is not None:
                logger.warning(
                    "Rejected TAP adoption",
                    extra={"vm_id": vm_id, "tap": allocation.tap_name, "reason": reason},
                )
                return False
            if tap.allocated and tap.allocated_to == vm_id:
                return True
            tap.allocated = True
            tap.allocated_to = vm_id
            await self._save(config)
        logger.info("TAP re-adopted", extra={"vm_id": vm_id, "tap": tap.name})
        return True

    async def get_allocation(self, vm_id: str) -> TapAllocation | None:
        config = await self.load()
        if config is None:
            return None
        tap = next((t for t in config.tap_devices if t.allocated_to == vm_id), None)
        return self._to_allocation(config, tap.name) if tap is not None else None

    async def cleanup_stale(self, active_vm_ids: set[str]) -> int:
        """Free entries owned by VMs that no longer exist."""
        async with self._file_lock():
            config = await self.load()
            if config is None:
                return 0
            cleaned = 0
            for tap in config.tap_devices:
                if tap.allocated and tap.allocated_to and tap.allocated_to not in active_vm_ids:
                    logger.info("Cleaning up stale TAP allocation", extra={"tap": tap.name, "vm_id": tap.allocated_to})
                    tap.allocated = False
                    tap.allocated_to = None
                    cleaned += 1
            if cleaned:
                await self._save(config)
        return cleaned

    @staticmethod
    def _to_allocation(config: NetworkPoolConfig, tap_name: str) -> TapAllocation:
        tap = next(t for t in config.tap_devices if t.name == tap_name)
        return TapAllocation(
            tap_name=tap.name,
            guest_ip=tap.guest_ip,
            gateway=config.gateway,
            mac_address=tap.mac_address,
            bridge_name=config.bridge_name,
        )
