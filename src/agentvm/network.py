"""Network provisioning facade.

NetworkManager resolves, once, which TAP strategy the host supports and
then exposes one allocate/release/health API.  Callers never branch on the
mode themselves.

Detection order:
    1. helper: helper binary installed, holds CAP_NET_ADMIN, bridge exists
    2. pool:   pool file exists and its bridge exists
    3. none:   VMs are created without a network identity
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol

from agentvm._logging import get_logger
from agentvm.exceptions import NetworkError
from agentvm.models import NetworkHealth, TapAllocation
from agentvm.network_helper import HelperTapProvisioner
from agentvm.network_pool import PoolTapProvisioner

if TYPE_CHECKING:
    from agentvm.settings import Settings

logger = get_logger(__name__)


class ProvisionerMode(str, Enum):
    """Active TAP provisioning strategy."""

    HELPER = "helper"
    POOL = "pool"
    NONE = "none"


class TapProvisioner(Protocol):
    """Operations every provisioning strategy implements."""

    mode: str

    async def is_usable(self) -> bool: ...

    async def allocate(self, vm_id: str) -> TapAllocation: ...

    async def release(self, tap_name: str | None, vm_id: str | None = None) -> None: ...

    async def check_health(self) -> NetworkHealth: ...

    async def get_allocation(self, vm_id: str) -> TapAllocation | None: ...

    async def adopt(self, vm_id: str, allocation: TapAllocation) -> bool: ...

    async def cleanup_stale(self, active_vm_ids: set[str]) -> int: ...

    def device_exists(self, name: str) -> bool: ...


class NullTapProvisioner:
    """No usable strategy: every allocation fails softly."""

    mode = "none"

    def __init__(self, settings: Settings | None = None) -> None:
        self._sys_class_net = settings.sys_class_net if settings is not None else None

    async def is_usable(self) -> bool:
        return True

    async def allocate(self, vm_id: str) -> TapAllocation:
        raise NetworkError("No network mode available", context={"vm_id": vm_id})

    async def release(self, tap_name: str | None, vm_id: str | None = None) -> None:
        return None

    async def check_health(self) -> NetworkHealth:
        return NetworkHealth(
            mode=self.mode,
            configured=False,
            bridge_exists=False,
            message="No network mode available; VMs run without a network identity",
        )

    async def get_allocation(self, vm_id: str) -> TapAllocation | None:
        return None

    async def adopt(self, vm_id: str, allocation: TapAllocation) -> bool:
        return False

    async def cleanup_stale(self, active_vm_ids: set[str]) -> int:
        return 0

    def device_exists(self, name: str) -> bool:
        return self._sys_class_net is not None and (self._sys_class_net / name).exists()


class NetworkManager:
    """Single entry point for TAP allocation regardless of strategy.

    Usage:
        network = NetworkManager(settings)
        await network.detect_mode()
        allocation = await network.allocate(vm_id)
        ...
        await network.release(allocation.tap_name, vm_id)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        helper: TapProvisioner | None = None,
        pool: TapProvisioner | None = None,
    ) -> None:
        self.settings = settings
        self._helper: TapProvisioner = helper if helper is not None else HelperTapProvisioner(settings)
        self._pool: TapProvisioner = pool if pool is not None else PoolTapProvisioner(settings)
        self._active: TapProvisioner = NullTapProvisioner(settings)

    @property
    def mode(self) -> ProvisionerMode:
        return ProvisionerMode(self._active.mode)

    async def detect_mode(self) -> ProvisionerMode:
        """Pick the strategy for this process's lifetime."""
        if await self._helper.is_usable():
            self._active = self._helper
        elif await self._pool.is_usable():
            self._active = self._pool
        else:
            self._active = NullTapProvisioner(self.settings)
        logger.info("Network mode detected", extra={"mode": self._active.mode})
        return self.mode

    async def allocate(self, vm_id: str) -> TapAllocation:
        """Allocate a TAP for *vm_id*.

        Raises:
            NetworkError: No strategy available or the strategy failed
            NoCapacityError: Strategy has no free TAP / address
        """
        return await self._active.allocate(vm_id)

    async def release(self, tap_name: str | None, vm_id: str | None = None) -> None:
        """Undo an allocation.  Never raises for already-released resources."""
        await self._active.release(tap_name, vm_id)

    async def check_health(self) -> NetworkHealth:
        return await self._active.check_health()

    async def helper_status(self) -> NetworkHealth:
        """Helper diagnostics regardless of the active mode."""
        return await self._helper.check_health()

    async def get_allocation(self, vm_id: str) -> TapAllocation | None:
        return await self._active.get_allocation(vm_id)

    async def adopt(self, vm_id: str, allocation: TapAllocation) -> bool:
        """Re-register an allocation recorded before an orchestrator restart.

        Returns False when the active strategy cannot vouch for it.
        """
        return await self._active.adopt(vm_id, allocation)

    async def cleanup_stale(self, active_vm_ids: set[str]) -> int:
        cleaned = await self._active.cleanup_stale(active_vm_ids)
        if cleaned:
            logger.info("Stale TAP allocations released", extra={"count": cleaned})
        return cleaned

    def device_exists(self, name: str) -> bool:
        return self._active.device_exists(name)
