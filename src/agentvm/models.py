"""Data models for agentvm.

Persisted records (VmRecord, SnapshotRecord, the network pool file) and
the documents exchanged with callers.  Records are mutated only by
VmOrchestrator; everything else gets copies.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from agentvm import constants
from agentvm.vm_types import VmStatus


VM_NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$"
"""Names double as guest hostnames."""


def utcnow() -> datetime:
    return datetime.now(UTC)


class NetworkMode(str, Enum):
    """How a VM (or the host) is networked."""

    TAP = "tap"
    NONE = "none"


# ============================================================================
# Metadata document (served to the guest by the metadata service)
# ============================================================================


class InstanceIdentity(BaseModel):
    id: str
    name: str
    hostname: str


class Ipv4Config(BaseModel):
    address: str
    netmask: str = constants.DEFAULT_NETMASK
    gateway: str


class InterfaceConfig(BaseModel):
    mac: str
    ipv4: Ipv4Config
    mtu: int | None = None


class NetworkDocument(BaseModel):
    interfaces: dict[str, InterfaceConfig] = Field(default_factory=dict)
    dns: list[str] = Field(default_factory=lambda: list(constants.DEFAULT_DNS_SERVERS))


class SshDocument(BaseModel):
    authorized_keys: list[str] = Field(default_factory=list)


class MetadataDocument(BaseModel):
    """Identity document the guest reads from the metadata service.

    The guest's init script reads ``network.interfaces.eth0`` and
    ``instance.hostname`` on boot and again after waking from pause.
    """

    model_config = ConfigDict(populate_by_name=True)

    instance: InstanceIdentity
    network: NetworkDocument = Field(default_factory=NetworkDocument)
    ssh: SshDocument = Field(default_factory=SshDocument)
    user_data: dict[str, Any] | None = Field(default=None, alias="userData")

    def to_guest_payload(self) -> dict[str, Any]:
        """Wire form pushed through the control channel."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ============================================================================
# VM record
# ============================================================================


class VmNetwork(BaseModel):
    mode: NetworkMode = NetworkMode.NONE
    tap_device: str | None = None
    bridge_name: str | None = None
    mac_address: str | None = None
    guest_ip: str | None = None
    gateway: str | None = None


class VmResources(BaseModel):
    vcpus: int = Field(default=constants.DEFAULT_VCPUS, ge=1)
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=128)
    disk_gb: int = Field(default=constants.DEFAULT_DISK_GB, ge=1)


class PortMapping(BaseModel):
    host_port: int = Field(ge=1, le=65535)
    guest_port: int = Field(ge=1, le=65535)
    protocol: str = "tcp"


class VolumeMount(BaseModel):
    host_path: str
    guest_path: str
    read_only: bool = False


class SourceSnapshot(BaseModel):
    vm_id: str
    snapshot_id: str
    snapshot_dir: Path


class VmRecord(BaseModel):
    """Everything needed to rebuild a VM's in-memory state after a restart.

    ``pid`` and ``control_socket`` are set together when a process is
    launched and cleared together when it is confirmed dead.
    """

    id: str
    name: str
    status: VmStatus = VmStatus.CREATING
    pid: int | None = None
    control_socket: Path | None = None
    ssh_port: int
    network: VmNetwork = Field(default_factory=VmNetwork)
    resources: VmResources = Field(default_factory=VmResources)
    base_image: str
    volumes: list[VolumeMount] = Field(default_factory=list)
    port_mappings: list[PortMapping] = Field(default_factory=list)
    metadata: MetadataDocument
    source_snapshot: SourceSnapshot | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    error: str | None = None


# ============================================================================
# Snapshots
# ============================================================================


class SnapshotRecord(BaseModel):
    """Immutable description of a full snapshot (state, memory, disk)."""

    id: str
    vm_id: str
    name: str | None = None
    base_image: str
    snapshot_path: Path
    mem_file_path: Path
    disk_path: Path
    metadata: MetadataDocument
    resources: VmResources
    network_mode: NetworkMode = NetworkMode.NONE
    size_bytes: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def directory(self) -> Path:
        return self.snapshot_path.parent


# ============================================================================
# Network
# ============================================================================


class TapAllocation(BaseModel):
    """Result of NetworkManager.allocate()."""

    tap_name: str
    guest_ip: str
    gateway: str
    mac_address: str
    bridge_name: str


class TapRecord(BaseModel):
    """One pre-created TAP device in the pool file."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    allocated: bool = False
    allocated_to: str | None = Field(default=None, alias="allocatedTo")
    guest_ip: str = Field(alias="guestIp")
    mac_address: str = Field(alias="macAddress")


class NetworkPoolConfig(BaseModel):
    """Contents of the shared pool configuration file (``network.json``).

    Field aliases keep the file compatible with the provisioning script
    that creates the bridge and TAP devices.
    """

    model_config = ConfigDict(populate_by_name=True)

    bridge_name: str = Field(alias="bridgeName")
    subnet: str
    gateway: str
    tap_devices: list[TapRecord] = Field(default_factory=list, alias="tapDevices")
    owner_uid: int | None = Field(default=None, alias="ownerUid")
    owner_gid: int | None = Field(default=None, alias="ownerGid")
    created_at: str | None = Field(default=None, alias="createdAt")


class NetworkHealth(BaseModel):
    """Diagnostic status of the active provisioning strategy."""

    mode: str
    configured: bool
    bridge_exists: bool
    device_count: int = 0
    available_count: int = 0
    message: str


class NetworkStatus(BaseModel):
    """Per-VM network view returned by get_network_status()."""

    vm_id: str
    mode: NetworkMode
    tap_device: str | None = None
    tap_exists: bool = False
    bridge_name: str | None = None
    guest_ip: str | None = None
    gateway: str | None = None
    mac_address: str | None = None
    ssh_port: int


# ============================================================================
# Requests / query results
# ============================================================================


class VmCreateRequest(BaseModel):
    """Validated create request.  Omitted sizing falls back to OrchestratorConfig."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=63, pattern=VM_NAME_PATTERN)
    base_image: str | None = None
    vcpus: int | None = Field(default=None, ge=1, le=32)
    memory_mb: int | None = Field(default=None, ge=128, le=65536)
    disk_gb: int | None = Field(default=None, ge=1, le=1000)
    port_mappings: list[PortMapping] = Field(default_factory=list)
    volumes: list[VolumeMount] = Field(default_factory=list)
    auto_start: bool = True
    user_data: dict[str, Any] | None = None


class SshInfo(BaseModel):
    host: str
    port: int
    user: str
    command: str


class VmStats(BaseModel):
    total: int = 0
    creating: int = 0
    booting: int = 0
    running: int = 0
    paused: int = 0
    stopped: int = 0
    error: int = 0


class BaseImageInfo(BaseModel):
    name: str
    path: Path
    has_rootfs: bool
    has_kernel: bool
    has_alternate: bool

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ready(self) -> bool:
        """Kernel present and at least one usable disk format."""
        return self.has_kernel and (self.has_rootfs or self.has_alternate)
