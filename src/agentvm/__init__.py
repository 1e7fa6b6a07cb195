"""agentvm: Firecracker microVM lifecycle and network orchestration.

Creates, boots, pauses, snapshots and clones Firecracker microVMs on a
single Linux host.  Each VM gets a host SSH port, optionally a TAP device
on a shared bridge, and an identity document served through the
hypervisor's metadata service.  Snapshots restore into new VMs with a
fresh identity pushed before the guest resumes.

Quick Start:
    ```python
    from agentvm import VmCreateRequest, VmOrchestrator

    async with VmOrchestrator() as orchestrator:
        vm = await orchestrator.create(VmCreateRequest(name="dev"))
        vm = await orchestrator.wait_until_settled(vm.id)
        print(orchestrator.get_ssh_info(vm.id).command)
    ```

Golden snapshot, many clones:
    ```python
    snap = await orchestrator.create_snapshot("dev", "golden")
    for i in range(3):
        await orchestrator.restore_from_snapshot(snap.directory, name=f"clone-{i}")
    ```

Requirements:
    - Linux with KVM and the Firecracker binary
    - Base images under ``~/.local/share/agentvm/base-images/<name>/``
    - Optional: the TAP helper or a pre-created TAP pool for guest networking
    - Python 3.12+
"""

from agentvm.config import OrchestratorConfig
from agentvm.events import EventBus, EventKind, LifecycleEvent, Subscription
from agentvm.exceptions import (
    AgentVmError,
    ConfigurationError,
    ImageNotFoundError,
    InvalidStateError,
    NetworkError,
    NoCapacityError,
    NoControlChannelError,
    OperationTimeoutError,
    PermanentError,
    ProcessError,
    ProtocolError,
    ResourceExhaustedError,
    SnapshotError,
    TransientError,
    VmAlreadyExistsError,
    VmNotFoundError,
)
from agentvm.models import (
    MetadataDocument,
    NetworkHealth,
    NetworkMode,
    NetworkStatus,
    SnapshotRecord,
    SshInfo,
    VmCreateRequest,
    VmRecord,
    VmStats,
)
from agentvm.orchestrator import VmOrchestrator
from agentvm.settings import Settings
from agentvm.vm_types import VmStatus

__all__ = [
    "AgentVmError",
    "ConfigurationError",
    "EventBus",
    "EventKind",
    "ImageNotFoundError",
    "InvalidStateError",
    "LifecycleEvent",
    "MetadataDocument",
    "NetworkError",
    "NetworkHealth",
    "NetworkMode",
    "NetworkStatus",
    "NoCapacityError",
    "NoControlChannelError",
    "OperationTimeoutError",
    "OrchestratorConfig",
    "PermanentError",
    "ProcessError",
    "ProtocolError",
    "ResourceExhaustedError",
    "Settings",
    "SnapshotError",
    "SnapshotRecord",
    "SshInfo",
    "Subscription",
    "TransientError",
    "VmAlreadyExistsError",
    "VmCreateRequest",
    "VmNotFoundError",
    "VmOrchestrator",
    "VmRecord",
    "VmStats",
    "VmStatus",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("agentvm")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
