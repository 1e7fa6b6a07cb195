"""Helper-mode TAP provisioning.

A privilege-separated helper binary (holding CAP_NET_ADMIN) creates and
deletes one TAP device per VM on demand and enslaves it to the shared
bridge.  The orchestrator process itself stays unprivileged.

Helper CLI:
    agentc-tap-helper check-caps                      exit 0 when the capability is held
    agentc-tap-helper create --name N --bridge B --owner-uid U --owner-gid G --format json
    agentc-tap-helper delete --name N

Guest addressing is decided here, not by the helper: each VM leases one
suffix of the bridged /24 and the guest MAC is derived from that suffix
(``52:54:00:01:HH:LL`` with HHLL = suffix - 2) to stay consistent with the
static DHCP leases configured on the bridge side.  The lease table is
explicit: a suffix held by a live VM is never handed out again, including
after the cursor wraps at the top of the range.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import os
import re
from typing import TYPE_CHECKING

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.exceptions import AgentVmError, NetworkError, NoCapacityError
from agentvm.models import NetworkHealth, TapAllocation
from agentvm.subprocess_utils import run_command

if TYPE_CHECKING:
    from pathlib import Path

    from agentvm.settings import Settings

logger = get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


def tap_name_for(vm_id: str) -> str:
    """Deterministic TAP name: ``tap-`` + first 8 alphanumerics of the VM id."""
    return constants.TAP_NAME_PREFIX + _NON_ALNUM.sub("", vm_id)[: constants.TAP_NAME_ID_CHARS]


def mac_for_suffix(suffix: int) -> str:
    """Guest MAC for an address suffix (matches the bridge's static leases)."""
    value = suffix - constants.FIRST_GUEST_SUFFIX
    return f"{constants.GUEST_MAC_PREFIX}:{(value >> 8) & 0xFF:02x}:{value & 0xFF:02x}"


class HelperTapProvisioner:
    """Creates a TAP per VM through the helper binary.

    Attributes:
        helper_path: Resolved helper binary, or None when not installed
        bridge_name: Bridge every TAP is attached to
        gateway: Bridge address handed to guests as default route
    """

    mode = "helper"

    def __init__(self, settings: Settings, helper_path: Path | None = None) -> None:
        self.helper_path = helper_path if helper_path is not None else self.find_helper(settings.tap_helper_paths)
        self.bridge_name = settings.bridge_name
        self.gateway = settings.gateway
        self.subnet_prefix = settings.subnet_prefix
        self.sys_class_net = settings.sys_class_net
        self._network = ipaddress.IPv4Network(f"{settings.subnet_prefix}.0/24")
        self._next_suffix = constants.FIRST_GUEST_SUFFIX
        self._leases: dict[int, str] = {}  # suffix -> vm_id
        self._allocations: dict[str, TapAllocation] = {}  # vm_id -> allocation
        self._lock = asyncio.Lock()

    @staticmethod
    def find_helper(paths: list[Path]) -> Path | None:
        for path in paths:
            if path.is_file() and os.access(path, os.X_OK):
                return path
        return None

    def device_exists(self, name: str) -> bool:
        return (self.sys_class_net / name).exists()

    # =========================================================================
    # Probing
    # =========================================================================

    async def has_capability(self) -> bool:
        if self.helper_path is None:
            return False
        try:
            result = await run_command(str(self.helper_path), "check-caps", timeout=constants.TAP_HELPER_TIMEOUT_SECONDS)
        except AgentVmError as e:
            logger.warning("TAP helper capability check failed", extra={"helper": str(self.helper_path), "error": str(e)})
            return False
        return result.ok

    async def is_usable(self) -> bool:
        """Installed, holds CAP_NET_ADMIN, and the bridge exists."""
        return self.helper_path is not None and await self.has_capability() and self.device_exists(self.bridge_name)

    async def check_health(self) -> NetworkHealth:
        if self.helper_path is None:
            return NetworkHealth(
                mode=self.mode,
                configured=False,
                bridge_exists=self.device_exists(self.bridge_name),
                message="TAP helper not found",
            )
        capable = await self.has_capability()
        bridge_exists = self.device_exists(self.bridge_name)
        if not capable:
            message = "TAP helper missing CAP_NET_ADMIN"
        elif not bridge_exists:
            message = f"Bridge {self.bridge_name} not found"
        else:
            message = "TAP helper ready for on-demand TAP creation"
        return NetworkHealth(
            mode=self.mode,
            configured=capable,
            bridge_exists=bridge_exists,
            device_count=len(self._allocations),
            available_count=self.free_lease_count(),
            message=message,
        )

    # =========================================================================
    # Lease table
    # =========================================================================

    def free_lease_count(self) -> int:
        span = constants.LAST_GUEST_SUFFIX - constants.FIRST_GUEST_SUFFIX + 1
        return span - len(self._leases)

    def _lease_suffix(self, vm_id: str) -> int:
        """Take the next free suffix at or after the cursor, wrapping once."""
        first, last = constants.FIRST_GUEST_SUFFIX, constants.LAST_GUEST_SUFFIX
        span = last - first + 1
        for offset in range(span):
            suffix = first + (self._next_suffix - first + offset) % span
            if suffix not in self._leases:
                self._leases[suffix] = vm_id
                self._next_suffix = first + (suffix - first + 1) % span
                return suffix
        raise NoCapacityError(
            "No free guest addresses on the bridge subnet",
            context={"subnet": str(self._network), "leased": len(self._leases)},
        )

    def _suffix_of(self, guest_ip: str) -> int | None:
        try:
            addr = ipaddress.IPv4Address(guest_ip)
        except ValueError:
            return None
        if addr not in self._network:
            return None
        suffix = int(addr) - int(self._network.network_address)
        if not constants.FIRST_GUEST_SUFFIX <= suffix <= constants.LAST_GUEST_SUFFIX:
            return None
        return suffix

    async def adopt(self, vm_id: str, allocation: TapAllocation) -> bool:
        """Re-register an allocation recorded before a restart.

        Rejected (returns False) when the address is outside the subnet,
        the MAC does not match the address's lease, or another VM already
        holds the address.
        """
        suffix = self._suffix_of(allocation.guest_ip)
        if suffix is None or mac_for_suffix(suffix) != allocation.mac_address.lower():
            logger.warning(
                "Not adopting inconsistent TAP allocation",
                extra={"vm_id": vm_id, "guest_ip": allocation.guest_ip, "mac": allocation.mac_address},
            )
            return False
        holder = self._leases.get(suffix)
        if holder is not None and holder != vm_id:
            logger.warning(
                "Guest address already leased to another VM",
                extra={"vm_id": vm_id, "holder": holder, "guest_ip": allocation.guest_ip},
            )
            return False
        self._leases[suffix] = vm_id
        self._allocations[vm_id] = allocation
        return True

    async def get_allocation(self, vm_id: str) -> TapAllocation | None:
        return self._allocations.get(vm_id)

    # =========================================================================
    # Allocate / release
    # =========================================================================

    async def allocate(self, vm_id: str) -> TapAllocation:
        """Create the VM's TAP and lease it an address.

        Raises:
            NetworkError: Helper missing or helper reported failure
            NoCapacityError: Every address in the subnet is leased
        """
        if self.helper_path is None:
            raise NetworkError("TAP helper not installed", context={"vm_id": vm_id})

        async with self._lock:
            existing = self._allocations.get(vm_id)
            if existing is not None:
                return existing

            tap_name = tap_name_for(vm_id)
            if self.device_exists(tap_name):
                logger.info("TAP already exists, deleting first", extra={"vm_id": vm_id, "tap": tap_name})
                await self._delete_device(tap_name, vm_id)

            suffix = self._lease_suffix(vm_id)
            try:
                result = await run_command(
                    str(self.helper_path),
                    "create",
                    "--name",
                    tap_name,
                    "--bridge",
                    self.bridge_name,
                    "--owner-uid",
                    str(os.getuid()),
                    "--owner-gid",
                    str(os.getgid()),
                    "--format",
                    "json",
                    timeout=constants.TAP_HELPER_TIMEOUT_SECONDS,
                )
                if not result.ok:
                    raise NetworkError(
                        f"Failed to create TAP: {_helper_error(result.stdout, result.stderr)}",
                        context={"vm_id": vm_id, "tap": tap_name, "returncode": result.returncode},
                    )
            except BaseException:
                self._leases.pop(suffix, None)
                raise

            allocation = TapAllocation(
                tap_name=tap_name,
                guest_ip=f"{self.subnet_prefix}.{suffix}",
                gateway=self.gateway,
                mac_address=mac_for_suffix(suffix),
                bridge_name=self.bridge_name,
            )
            self._allocations[vm_id] = allocation
            logger.info(
                "TAP created",
                extra={"vm_id": vm_id, "tap": tap_name, "guest_ip": allocation.guest_ip, "mac": allocation.mac_address},
            )
            return allocation

    async def release(self, tap_name: str | None, vm_id: str | None = None) -> None:
        """Delete the TAP and free its lease.  Already-released is a no-op."""
        async with self._lock:
            allocation = self._allocations.pop(vm_id, None) if vm_id is not None else None
            if allocation is None and tap_name is not None:
                for owner, alloc in list(self._allocations.items()):
                    if alloc.tap_name == tap_name:
                        allocation = self._allocations.pop(owner)
                        vm_id = owner
                        break
            if vm_id is not None:
                for suffix, owner in list(self._leases.items()):
                    if owner == vm_id:
                        del self._leases[suffix]

            name = allocation.tap_name if allocation is not None else tap_name
            if name is None and vm_id is not None:
                name = tap_name_for(vm_id)
            if name is not None and self.device_exists(name):
                await self._delete_device(name, vm_id)

    async def _delete_device(self, tap_name: str, vm_id: str | None) -> None:
        if self.helper_path is None:
            return
        try:
            result = await run_command(
                str(self.helper_path), "delete", "--name", tap_name, timeout=constants.TAP_HELPER_TIMEOUT_SECONDS
            )
        except AgentVmError as e:
            logger.warning("TAP delete failed", extra={"vm_id": vm_id, "tap": tap_name, "error": str(e)})
            return
        if not result.ok:
            logger.warning(
                "TAP delete failed",
                extra={"vm_id": vm_id, "tap": tap_name, "error": _helper_error(result.stdout, result.stderr)},
            )
        else:
            logger.info("TAP deleted", extra={"vm_id": vm_id, "tap": tap_name})

    async def cleanup_stale(self, active_vm_ids: set[str]) -> int:
        """Release allocations owned by VMs that no longer exist."""
        stale = [vm_id for vm_id in self._allocations if vm_id not in active_vm_ids]
        for vm_id in stale:
            await self.release(None, vm_id)
        return len(stale)


def _helper_error(stdout: str, stderr: str) -> str:
    """Prefer the helper's JSON ``error`` field, else stderr."""
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return stderr.strip() or "unknown error"
