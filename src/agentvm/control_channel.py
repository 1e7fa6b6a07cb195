"""Firecracker API client over the hypervisor's Unix domain socket.

Requests go through httpx with a UDS transport, one short-lived client per
call so a wedged connection never outlives the request that opened it.
Every call is bounded by the channel timeout; on expiry OperationTimeoutError
is raised.

Configuration order before InstanceStart matters to the hypervisor:
boot source -> root drive -> network interface -> machine config ->
MMDS config -> MMDS payload.  The orchestrator owns that ordering; this
module only speaks the protocol.

Usage:
    channel = ControlChannel(vm_dir / "api.sock")
    await channel.put_boot_source(kernel, boot_args)
    await channel.put_drive("rootfs", disk, is_root_device=True)
    await channel.instance_start()
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.exceptions import NoControlChannelError, OperationTimeoutError, ProtocolError

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)


class ControlChannel:
    """Client for one VM's hypervisor control socket.

    Stateless between calls, so concurrent calls are safe at the transport
    level; the hypervisor itself processes them one at a time.

    Attributes:
        socket_path: Path to the hypervisor's API socket
        timeout: Upper bound, in seconds, on each request/response
    """

    __slots__ = ("socket_path", "timeout")

    def __init__(self, socket_path: Path, timeout: float = constants.CONTROL_CHANNEL_TIMEOUT_SECONDS) -> None:
        self.socket_path = socket_path
        self.timeout = timeout

    # =========================================================================
    # Transport
    # =========================================================================

    async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        """Send one request and return the decoded JSON body (None when empty).

        Raises:
            NoControlChannelError: Socket file missing or nobody listening
            OperationTimeoutError: No complete response within the timeout
            ProtocolError: Non-2xx status or malformed response
        """
        transport = httpx.AsyncHTTPTransport(uds=str(self.socket_path))
        try:
            async with httpx.AsyncClient(
                transport=transport,
                base_url="http://localhost",
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            ) as client:
                response = await client.request(method, path, json=body)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError(
                f"{method} {path} timed out after {self.timeout}s",
                context={"socket": str(self.socket_path), "method": method, "path": path},
            ) from e
        except httpx.ConnectError as e:
            raise NoControlChannelError(
                f"Control socket unavailable: {self.socket_path}",
                context={"socket": str(self.socket_path), "error": str(e)},
            ) from e
        except httpx.TransportError as e:
            raise ProtocolError(
                f"{method} {path}: malformed response ({e})",
                context={"socket": str(self.socket_path), "method": method, "path": path},
            ) from e

        status_line = f"{response.http_version} {response.status_code} {response.reason_phrase}".rstrip()
        text = response.text
        if not response.is_success:
            raise ProtocolError(
                f"{method} {path} failed: {_fault_message(text) or status_line}",
                context={"method": method, "path": path},
                status_line=status_line,
                status_code=response.status_code,
                body=text,
            )

        logger.debug("Control request ok", extra={"method": method, "path": path, "status_code": response.status_code})
        if not text.strip():
            return None
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise ProtocolError(
                f"{method} {path}: response body is not JSON",
                context={"method": method, "path": path},
                status_line=status_line,
                status_code=response.status_code,
                body=text,
            ) from e

    # =========================================================================
    # Pre-boot configuration
    # =========================================================================

    async def put_boot_source(self, kernel_image_path: Path, boot_args: str) -> None:
        await self.request("PUT", "/boot-source", {"kernel_image_path": str(kernel_image_path), "boot_args": boot_args})

    async def put_drive(
        self,
        drive_id: str,
        path_on_host: Path,
        *,
        is_root_device: bool = True,
        is_read_only: bool = False,
    ) -> None:
        await self.request(
            "PUT",
            f"/drives/{drive_id}",
            {
                "drive_id": drive_id,
                "path_on_host": str(path_on_host),
                "is_root_device": is_root_device,
                "is_read_only": is_read_only,
            },
        )

    async def patch_drive(self, drive_id: str, path_on_host: Path) -> None:
        """Re-point an attached drive at another file (valid while paused after a snapshot load)."""
        await self.request("PATCH", f"/drives/{drive_id}", {"drive_id": drive_id, "path_on_host": str(path_on_host)})

    async def put_network_interface(self, iface_id: str, host_dev_name: str, guest_mac: str | None = None) -> None:
        body: dict[str, Any] = {"iface_id": iface_id, "host_dev_name": host_dev_name}
        if guest_mac:
            body["guest_mac"] = guest_mac
        await self.request("PUT", f"/network-interfaces/{iface_id}", body)

    async def put_machine_config(self, vcpu_count: int, mem_size_mib: int) -> None:
        await self.request("PUT", "/machine-config", {"vcpu_count": vcpu_count, "mem_size_mib": mem_size_mib})

    async def put_mmds_config(
        self,
        network_interfaces: list[str],
        *,
        version: str = constants.MMDS_VERSION,
        ipv4_address: str = constants.MMDS_IPV4_ADDRESS,
    ) -> None:
        await self.request(
            "PUT",
            "/mmds/config",
            {"network_interfaces": network_interfaces, "version": version, "ipv4_address": ipv4_address},
        )

    # =========================================================================
    # Metadata service
    # =========================================================================

    async def put_mmds(self, document: dict[str, Any]) -> None:
        """Replace the whole metadata document served to the guest."""
        await self.request("PUT", "/mmds", document)

    async def get_mmds(self) -> Any:
        return await self.request("GET", "/mmds")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def instance_start(self) -> None:
        await self.request("PUT", "/actions", {"action_type": "InstanceStart"})

    async def send_ctrl_alt_del(self) -> None:
        """Ask the guest to shut down (x86 only)."""
        await self.request("PUT", "/actions", {"action_type": "SendCtrlAltDel"})

    async def pause(self) -> None:
        await self.request("PATCH", "/vm", {"state": "Paused"})

    async def resume(self) -> None:
        await self.request("PATCH", "/vm", {"state": "Resumed"})

    async def describe_instance(self) -> Any:
        return await self.request("GET", "/")

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def create_snapshot(self, snapshot_path: Path, mem_file_path: Path) -> None:
        """Write a full snapshot. The VM must be paused."""
        await self.request(
            "PUT",
            "/snapshot/create",
            {"snapshot_type": "Full", "snapshot_path": str(snapshot_path), "mem_file_path": str(mem_file_path)},
        )

    async def load_snapshot(
        self,
        snapshot_path: Path,
        mem_file_path: Path,
        *,
        resume_vm: bool = False,
        network_overrides: dict[str, str] | None = None,
    ) -> None:
        """Load a snapshot into a freshly launched (unconfigured) hypervisor.

        Args:
            network_overrides: iface_id -> host TAP name, rebinding the
                snapshotted interface to a different host device
        """
        body: dict[str, Any] = {
            "snapshot_path": str(snapshot_path),
            "mem_backend": {"backend_type": "File", "backend_path": str(mem_file_path)},
            "enable_diff_snapshots": False,
            "resume_vm": resume_vm,
        }
        if network_overrides:
            body["network_overrides"] = [
                {"iface_id": iface_id, "host_dev_name": tap} for iface_id, tap in network_overrides.items()
            ]
        await self.request("PUT", "/snapshot/load", body)


def _fault_message(body: str) -> str | None:
    """Extract Firecracker's ``fault_message`` from an error body."""
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return body.strip() or None
    if isinstance(data, dict) and isinstance(data.get("fault_message"), str):
        return data["fault_message"]
    return body.strip() or None
