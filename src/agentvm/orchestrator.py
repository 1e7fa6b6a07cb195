"""VM orchestration: lifecycle, snapshots and identity-reinjecting restore.

VmOrchestrator composes the port allocator, network manager, hypervisor
supervisor, control channel and state store into the public operations
and enforces the status machine in :mod:`agentvm.vm_types`.

Concurrency model:
    - One orchestrator per host, all state in ``_vms`` (authoritative while
      running, persisted on every transition).
    - Mutating operations on the same VM are serialized by a per-VM lock;
      different VMs proceed concurrently.
    - Registry-wide state (names, ports) is guarded by ``_registry_lock``.
    - The configure-and-boot phase of start() and the load/re-identify/
      resume phase of restore run as tracked background tasks.  Their
      failures land in ``status=ERROR`` + ``error``, never in a caller.

Restore ordering (hard invariant):
    load snapshot paused -> re-point root drive -> push new identity to the
    metadata service -> resume.  The guest re-reads the metadata service
    after waking and reconfigures hostname and network itself.

Example:
    ```python
    async with VmOrchestrator() as orchestrator:
        vm = await orchestrator.create(VmCreateRequest(name="golden"))
        await orchestrator.wait_until_settled(vm.id)
        snap = await orchestrator.create_snapshot(vm.id, "base")
        clone = await orchestrator.restore_from_snapshot(snap.directory, name="clone-1")
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import re
import shutil
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

import aiofiles.os

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.config import OrchestratorConfig
from agentvm.control_channel import ControlChannel
from agentvm.events import EventBus, EventKind, LifecycleEvent
from agentvm.exceptions import (
    AgentVmError,
    ConfigurationError,
    InvalidStateError,
    NoControlChannelError,
    ProcessError,
    SnapshotError,
    VmAlreadyExistsError,
    VmNotFoundError,
)
from agentvm.file_utils import copy_file, file_size
from agentvm.images import BaseImageStore
from agentvm.metadata import build_metadata
from agentvm.models import (
    VM_NAME_PATTERN,
    BaseImageInfo,
    MetadataDocument,
    NetworkHealth,
    NetworkMode,
    NetworkStatus,
    SnapshotRecord,
    SourceSnapshot,
    SshInfo,
    TapAllocation,
    VmCreateRequest,
    VmNetwork,
    VmRecord,
    VmResources,
    VmStats,
    utcnow,
)
from agentvm.network import NetworkManager, ProvisionerMode
from agentvm.port_allocator import PortAllocator
from agentvm.resource_cleanup import cleanup_directory, cleanup_file
from agentvm.settings import Settings
from agentvm.ssh import SshAccess
from agentvm.state_store import VmStateStore
from agentvm.subprocess_utils import log_task_exception, wait_for_socket
from agentvm.supervisor import HypervisorSupervisor
from agentvm.vm_types import ACTIVE_STATUSES, VmStatus, can_transition

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

logger = get_logger(__name__)

_NAME_RE = re.compile(VM_NAME_PATTERN)
_ROOT_DRIVE_ID = "rootfs"


class VmOrchestrator:
    """Top-level microVM lifecycle engine.

    Construct once per process, call :meth:`initialize` (or use ``async
    with``) before any other operation, and hand the instance to whatever
    transport layer sits above it.

    All collaborators are injectable; defaults are built from *settings*.

    Attributes:
        config: Tunables (port range, defaults, timeouts)
        settings: Host paths and binaries
        events: Lifecycle event bus
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        settings: Settings | None = None,
        *,
        store: VmStateStore | None = None,
        network: NetworkManager | None = None,
        supervisor: HypervisorSupervisor | None = None,
        images: BaseImageStore | None = None,
        ssh: SshAccess | None = None,
        events: EventBus | None = None,
        channel_factory: Callable[[Path], ControlChannel] | None = None,
    ) -> None:
        self.config = config or OrchestratorConfig()
        self.settings = settings or Settings()
        self.events = events or EventBus()
        self._store = store or VmStateStore(self.settings.data_dir)
        self._network = network or NetworkManager(self.settings)
        self._supervisor = supervisor or HypervisorSupervisor(self.settings.launch_group)
        self._images = images or BaseImageStore(self.settings.base_images_dir, self.settings.qemu_img_bin)
        self._ssh = ssh or SshAccess(
            self.settings.ssh_private_key,
            user=self.settings.ssh_user,
            ssh_bin=self.settings.ssh_bin,
            ssh_keygen_bin=self.settings.ssh_keygen_bin,
        )
        self._channel_factory = channel_factory or (
            lambda path: ControlChannel(path, timeout=self.config.control_timeout_seconds)
        )
        self._ports = PortAllocator(self.config.ssh_port_range_start, self.config.ssh_port_range_end)

        self._vms: dict[str, VmRecord] = {}
        self._vm_locks: dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._pending_names: set[str] = set()
        self._pending_ids: set[str] = set()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._hypervisor_bin: Path | None = None
        self._initialized = False

    # =========================================================================
    # Process lifecycle
    # =========================================================================

    async def __aenter__(self) -> Self:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """Prepare directories, keys and network, then reconcile persisted VMs.

        Runs once, before any external call is accepted.
        """
        if self._initialized:
            return

        for directory in (self.settings.data_dir, self.settings.base_images_dir, self.settings.ssh_keys_dir):
            await aiofiles.os.makedirs(directory, mode=0o700, exist_ok=True)

        self._hypervisor_bin = self._locate_hypervisor()
        if self._hypervisor_bin is None:
            logger.warning(
                "Hypervisor binary not found; VMs will fail to start",
                extra={"configured": str(self.settings.firecracker_bin)},
            )

        await self._ssh.ensure_keypair()
        await self._network.detect_mode()

        for record in await self._store.load_all():
            await self._reconcile(record)
            self._vms[record.id] = record
            self._ports.reserve(record.ssh_port)
        await self._network.cleanup_stale(set(self._vms))
        for record in self._vms.values():
            if record.network.mode is NetworkMode.TAP and record.network.tap_device:
                await self._adopt_network(record)

        self._initialized = True
        logger.info(
            "Orchestrator initialized",
            extra={"vms": len(self._vms), "network_mode": self._network.mode.value},
        )
        self.events.publish(LifecycleEvent(kind=EventKind.INITIALIZED, detail={"vms": len(self._vms)}))

    async def _adopt_network(self, record: VmRecord) -> None:
        """Re-claim a persisted TAP identity; detach it when another owner has it."""
        if await self._network.adopt(record.id, _allocation_of(record)):
            return
        if self._network.mode is ProvisionerMode.NONE:
            logger.warning(
                "No network mode available, keeping persisted TAP identity",
                extra={"vm_id": record.id, "tap": record.network.tap_device},
            )
            return
        if self._supervisor.is_alive(record.pid):
            logger.error(
                "Running VM holds a TAP the network layer did not confirm",
                extra={"vm_id": record.id, "tap": record.network.tap_device},
            )
            return
        logger.warning(
            "Detaching unconfirmed TAP identity; VM will start without network",
            extra={"vm_id": record.id, "tap": record.network.tap_device},
        )
        try:
            await self._network.release(None, record.id)
        except AgentVmError as e:
            logger.warning("Failed to release TAP of detached VM", extra={"vm_id": record.id, "error": e.message})
        record.network = VmNetwork(mode=NetworkMode.NONE, mac_address=record.network.mac_address)
        await self._store.save(record)

    def _locate_hypervisor(self) -> Path | None:
        configured = self.settings.firecracker_bin
        if configured.is_file():
            return configured
        found = shutil.which(configured.name)
        return Path(found) if found else None

    async def _reconcile(self, record: VmRecord) -> None:
        """Correct a persisted record against the live process table."""
        alive = self._supervisor.is_alive(record.pid)
        changed = False

        if record.status in ACTIVE_STATUSES and record.pid is not None and not alive:
            logger.info(
                "Hypervisor gone, marking VM stopped",
                extra={"vm_id": record.id, "pid": record.pid, "status": record.status.value},
            )
            record.status = VmStatus.STOPPED
            record.stopped_at = utcnow()
            changed = True
        elif record.status in (VmStatus.BOOTING, VmStatus.RUNNING, VmStatus.PAUSED) and record.pid is None:
            record.status = VmStatus.STOPPED
            changed = True
        elif record.status in (VmStatus.CREATING, VmStatus.BOOTING) and alive:
            logger.warning("Boot interrupted by orchestrator restart", extra={"vm_id": record.id, "pid": record.pid})
            record.status = VmStatus.ERROR
            record.error = "Boot interrupted by orchestrator restart"
            changed = True

        if record.pid is not None and not alive:
            record.pid = None
            record.control_socket = None
            changed = True

        if changed:
            await self._store.save(record)

    async def shutdown(self) -> None:
        """Stop every VM with a live hypervisor, then release background work.

        Used at process exit by long-running hosts.
        """
        await self._drain_tasks()
        targets = [vm.id for vm in self._vms.values() if self._supervisor.is_alive(vm.pid)]
        if targets:
            logger.info("Stopping VMs for shutdown", extra={"count": len(targets)})
            results = await asyncio.gather(*(self.stop(vm_id) for vm_id in targets), return_exceptions=True)
            for vm_id, result in zip(targets, results, strict=True):
                if isinstance(result, BaseException):
                    logger.error("Failed to stop VM during shutdown", extra={"vm_id": vm_id}, exc_info=result)
        await self.close()
        self.events.publish(LifecycleEvent(kind=EventKind.SHUTDOWN))
        await self.events.close()

    async def close(self) -> None:
        """Release background work without touching running VMs.

        Hypervisors are detached and keep running; the next initialize()
        reconciles them.
        """
        await self._drain_tasks()
        await self._supervisor.close()
        self._initialized = False

    async def _drain_tasks(self) -> None:
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=constants.SHUTDOWN_TASK_GRACE_SECONDS)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

    # =========================================================================
    # Registry helpers
    # =========================================================================

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InvalidStateError("Orchestrator is not initialized")

    def _lock_for(self, vm_id: str) -> asyncio.Lock:
        lock = self._vm_locks.get(vm_id)
        if lock is None:
            lock = self._vm_locks[vm_id] = asyncio.Lock()
        return lock

    def _resolve_id(self, id_or_name: str) -> str:
        if id_or_name in self._vms:
            return id_or_name
        for vm in self._vms.values():
            if vm.name == id_or_name:
                return vm.id
        raise VmNotFoundError(f"VM {id_or_name} not found", context={"vm": id_or_name})

    def _require(self, vm_id: str) -> VmRecord:
        vm = self._vms.get(vm_id)
        if vm is None:
            raise VmNotFoundError(f"VM {vm_id} not found", context={"vm_id": vm_id})
        return vm

    def _new_vm_id(self) -> str:
        while True:
            vm_id = f"fc-{uuid.uuid4().hex[:8]}"
            if vm_id not in self._vms and vm_id not in self._pending_ids:
                return vm_id

    def _claim_identity(self, name: str, vm_id: str | None) -> tuple[str, int]:
        """Check name/id uniqueness and reserve an id and SSH port.  Caller holds the registry lock."""
        if name in self._pending_names or any(vm.name == name for vm in self._vms.values()):
            raise VmAlreadyExistsError(f"VM with name '{name}' already exists", context={"name": name})
        if vm_id is not None and (vm_id in self._vms or vm_id in self._pending_ids):
            raise VmAlreadyExistsError(f"VM with id '{vm_id}' already exists", context={"vm_id": vm_id})
        vm_id = vm_id or self._new_vm_id()
        port = self._ports.allocate()
        self._pending_names.add(name)
        self._pending_ids.add(vm_id)
        return vm_id, port

    async def _release_claim(self, name: str, vm_id: str, *, register: VmRecord | None = None) -> None:
        async with self._registry_lock:
            self._pending_names.discard(name)
            self._pending_ids.discard(vm_id)
            if register is not None:
                self._vms[vm_id] = register

    def _vm_dir(self, vm_id: str) -> Path:
        return self._store.vm_dir(vm_id)

    def _channel_for(self, vm: VmRecord) -> ControlChannel:
        """Control channel of a VM with a live hypervisor.

        Raises:
            NoControlChannelError: No socket recorded, socket file gone, or process dead
        """
        if vm.control_socket is None or not vm.control_socket.exists() or not self._supervisor.is_alive(vm.pid):
            raise NoControlChannelError(
                f"VM {vm.id} has no control socket",
                context={"vm_id": vm.id, "socket": str(vm.control_socket) if vm.control_socket else None},
            )
        return self._channel_factory(vm.control_socket)

    # =========================================================================
    # State transitions
    # =========================================================================

    async def _transition(
        self,
        vm: VmRecord,
        target: VmStatus,
        *,
        event: EventKind | None = None,
        **changes: Any,
    ) -> None:
        """Validate, apply and persist a status change, then publish *event*.

        A successful (non-error) transition clears ``error``.

        Raises:
            InvalidStateError: ``vm.status -> target`` is not a legal edge
        """
        previous = vm.status
        if target != previous and not can_transition(previous, target):
            raise InvalidStateError(
                f"Invalid state transition: {previous.value} -> {target.value}",
                context={"vm_id": vm.id, "current_state": previous.value, "target_state": target.value},
                status=previous.value,
            )
        vm.status = target
        for key, value in changes.items():
            setattr(vm, key, value)
        if target is not VmStatus.ERROR and "error" not in changes:
            vm.error = None
        await self._store.save(vm)

        if target != previous:
            logger.info(
                "VM state transition",
                extra={"vm_id": vm.id, "old_state": previous.value, "new_state": target.value},
            )
        if event is not None:
            self.events.publish(LifecycleEvent(kind=event, vm_id=vm.id, status=vm.status, error=vm.error))

    async def _fail(self, vm: VmRecord, message: str, exc: BaseException | None = None) -> None:
        """Record a fatal failure of the current attempt.  Never raises."""
        logger.error("VM operation failed", extra={"vm_id": vm.id, "error": message}, exc_info=exc)
        try:
            await self._transition(vm, VmStatus.ERROR, event=EventKind.ERROR, error=message)
        except (OSError, AgentVmError):
            logger.exception("Failed to persist VM error state", extra={"vm_id": vm.id})

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, vm_id: str, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"{name}-{vm_id}")
        self._tasks[vm_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._tasks.get(vm_id) is done:
                del self._tasks[vm_id]

        task.add_done_callback(_forget)
        task.add_done_callback(log_task_exception)
        return task

    def _is_current_task(self, vm_id: str) -> bool:
        return self._tasks.get(vm_id) is asyncio.current_task()

    async def _cancel_background(self, vm_id: str) -> None:
        task = self._tasks.pop(vm_id, None)
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def wait_until_settled(self, id_or_name: str, timeout: float | None = None) -> VmRecord:
        """Wait for the VM's background boot/restore phase (if any) to finish.

        Raises:
            VmNotFoundError: Unknown VM
            TimeoutError: Still running after *timeout* seconds
        """
        vm_id = self._resolve_id(id_or_name)
        task = self._tasks.get(vm_id)
        if task is not None:
            _, pending = await asyncio.wait({task}, timeout=timeout)
            if pending:
                raise TimeoutError(f"VM {vm_id} still settling after {timeout}s")
        return self._require(vm_id).model_copy(deep=True)

    def _abort_if_dead(self, vm: VmRecord, pid: int) -> Callable[[], None]:
        def check() -> None:
            if not self._supervisor.is_alive(pid):
                raise ProcessError(
                    "Hypervisor exited before its control socket was ready",
                    context={"vm_id": vm.id, "pid": pid, "log": str(self._vm_dir(vm.id) / constants.HYPERVISOR_LOG_FILE)},
                )

        return check

    # =========================================================================
    # create / start
    # =========================================================================

    async def create(self, request: VmCreateRequest) -> VmRecord:
        """Create a VM record, reserving its port and (softly) a TAP.

        With ``auto_start`` the VM is also started; a start failure is
        recorded on the returned record (``status=ERROR``) instead of raised.

        Raises:
            VmAlreadyExistsError: Name already used by a live VM
            ResourceExhaustedError: No SSH port left
        """
        self._require_initialized()
        async with self._registry_lock:
            vm_id, port = self._claim_identity(request.name, None)

        allocation: TapAllocation | None = None
        try:
            await self._store.ensure_vm_dir(vm_id)
            allocation = await self._allocate_network(vm_id)
            metadata = build_metadata(
                vm_id=vm_id,
                name=request.name,
                allocation=allocation,
                public_key=await self._ssh.public_key(),
                dns_servers=self.settings.dns_servers,
                netmask=self.settings.netmask,
                user_data=request.user_data,
            )
            record = VmRecord(
                id=vm_id,
                name=request.name,
                status=VmStatus.CREATING,
                ssh_port=port,
                network=_network_of(allocation, metadata),
                resources=VmResources(
                    vcpus=request.vcpus or self.config.default_vcpus,
                    memory_mb=request.memory_mb or self.config.default_memory_mb,
                    disk_gb=request.disk_gb or self.config.default_disk_gb,
                ),
                base_image=request.base_image or self.config.default_base_image,
                volumes=request.volumes,
                port_mappings=request.port_mappings,
                metadata=metadata,
            )
            await self._store.save(record)
        except BaseException:
            await self._rollback_claim(request.name, vm_id, port, allocation)
            raise

        await self._release_claim(request.name, vm_id, register=record)
        logger.info(
            "VM created",
            extra={"vm_id": vm_id, "vm_name": request.name, "ssh_port": port, "network": record.network.mode.value},
        )
        self.events.publish(LifecycleEvent(kind=EventKind.CREATED, vm_id=vm_id, status=record.status))

        if request.auto_start:
            try:
                return await self.start(vm_id)
            except AgentVmError as e:
                logger.warning("Auto-start failed", extra={"vm_id": vm_id, "error": e.message})
        return record.model_copy(deep=True)

    async def _allocate_network(self, vm_id: str) -> TapAllocation | None:
        """Soft network allocation: failures degrade to no network."""
        try:
            return await self._network.allocate(vm_id)
        except AgentVmError as e:
            logger.warning(
                "No network identity for VM",
                extra={"vm_id": vm_id, "mode": self._network.mode.value, "error": e.message},
            )
            return None

    async def _rollback_claim(self, name: str, vm_id: str, port: int, allocation: TapAllocation | None) -> None:
        async with self._registry_lock:
            self._ports.release(port)
        if allocation is not None:
            try:
                await self._network.release(allocation.tap_name, vm_id)
            except AgentVmError as e:
                logger.warning("Failed to release TAP on rollback", extra={"vm_id": vm_id, "error": e.message})
        await cleanup_directory(self._vm_dir(vm_id), vm_id, "VM directory")
        await self._release_claim(name, vm_id)

    async def start(self, id_or_name: str) -> VmRecord:
        """Prepare the disk, launch the hypervisor and boot in the background.

        Returns once the process is launched and ``CREATING`` is persisted.
        Already running or already starting VMs are returned unchanged.

        Raises:
            VmNotFoundError: Unknown VM
            InvalidStateError: VM is paused
            ImageNotFoundError: Base image assets missing (also recorded as ERROR)
            ProcessError: Launch failed (also recorded as ERROR)
        """
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            if vm.status is VmStatus.RUNNING:
                return vm.model_copy(deep=True)
            if vm.status is VmStatus.PAUSED:
                raise InvalidStateError(f"VM {vm_id} is paused; resume it instead", status=vm.status.value)
            if vm.status in (VmStatus.CREATING, VmStatus.BOOTING) and (
                vm_id in self._tasks or self._supervisor.is_alive(vm.pid)
            ):
                return vm.model_copy(deep=True)

            if vm.status is not VmStatus.CREATING:
                await self._transition(vm, VmStatus.CREATING)
            if self._supervisor.is_alive(vm.pid):
                await self._supervisor.terminate(vm.pid, graceful=False, context_id=vm_id)

            vm_dir = self._vm_dir(vm_id)
            control_socket = vm_dir / constants.CONTROL_SOCKET_FILE
            try:
                kernel = self._images.kernel_path(vm.base_image)
                disk = await self._images.prepare_disk(vm.base_image, vm_dir / constants.ROOTFS_FILE, context_id=vm_id)
                pid = await self._supervisor.launch(
                    self._require_hypervisor(),
                    control_socket,
                    vm_dir / constants.HYPERVISOR_LOG_FILE,
                    context_id=vm_id,
                )
            except AgentVmError as e:
                await self._fail(vm, f"Failed to start: {e.message}")
                raise

            await self._transition(
                vm,
                VmStatus.CREATING,
                pid=pid,
                control_socket=control_socket,
                started_at=utcnow(),
                stopped_at=None,
            )
            self._spawn(vm_id, self._boot(vm, pid, kernel, disk), "boot")
            return vm.model_copy(deep=True)

    def _require_hypervisor(self) -> Path:
        if self._hypervisor_bin is None:
            self._hypervisor_bin = self._locate_hypervisor()
        if self._hypervisor_bin is None:
            raise ProcessError(
                "Hypervisor binary not found",
                context={"configured": str(self.settings.firecracker_bin)},
            )
        return self._hypervisor_bin

    async def _boot(self, vm: VmRecord, pid: int, kernel: Path, disk: Path) -> None:
        """Configure and start the guest, then wait for SSH (background)."""
        assert vm.control_socket is not None
        channel = self._channel_factory(vm.control_socket)
        networked = vm.network.mode is NetworkMode.TAP and vm.network.tap_device is not None
        started = time.monotonic()
        step = "waiting for control socket"
        try:
            await wait_for_socket(
                vm.control_socket,
                timeout=self.config.boot_socket_timeout_seconds,
                poll_interval=constants.SOCKET_POLL_INTERVAL_SECONDS,
                abort_check=self._abort_if_dead(vm, pid),
            )
            step = "configuring boot source"
            await channel.put_boot_source(kernel, self.config.boot_args)
            step = "attaching root drive"
            await channel.put_drive(_ROOT_DRIVE_ID, disk, is_root_device=True)
            if networked:
                step = "attaching network interface"
                await channel.put_network_interface(
                    constants.GUEST_INTERFACE,
                    vm.network.tap_device,  # type: ignore[arg-type]
                    vm.network.mac_address,
                )
            step = "configuring machine"
            await channel.put_machine_config(vm.resources.vcpus, vm.resources.memory_mb)
            if networked:
                step = "configuring metadata service"
                await channel.put_mmds_config([constants.GUEST_INTERFACE])
                await channel.put_mmds(vm.metadata.to_guest_payload())
            step = "starting instance"
            await channel.instance_start()

            if not self._is_current_task(vm.id):
                return
            await self._transition(vm, VmStatus.BOOTING, event=EventKind.BOOTING)

            step = "waiting for guest SSH"
            await self._wait_guest_ready(vm, self.config.boot_ready_timeout_seconds)

            if not self._is_current_task(vm.id):
                return
            await self._transition(vm, VmStatus.RUNNING, event=EventKind.STARTED)
            logger.info("VM running", extra={"vm_id": vm.id, "boot_seconds": round(time.monotonic() - started, 3)})

        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current_task(vm.id):
                await self._fail(vm, f"Failed to start ({step}): {_describe(e)}", e)

    async def _wait_guest_ready(self, vm: VmRecord, timeout: float) -> None:
        """SSH readiness; skipped (with a warning) for VMs without a network identity."""
        if vm.network.mode is not NetworkMode.TAP or not vm.network.guest_ip:
            logger.warning("VM has no network identity, skipping SSH readiness probe", extra={"vm_id": vm.id})
            return
        await self._ssh.wait_ready(
            vm.network.guest_ip,
            constants.GUEST_SSH_PORT,
            timeout=timeout,
            interval=self.config.ssh_retry_interval_seconds,
        )

    # =========================================================================
    # stop / delete
    # =========================================================================

    async def stop(self, id_or_name: str) -> VmRecord:
        """Shut the VM down, escalating from guest shutdown to SIGKILL.

        Always ends in ``STOPPED``; sub-step failures are logged only.

        Raises:
            VmNotFoundError: Unknown VM
        """
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            if vm.status is VmStatus.STOPPED:
                return vm.model_copy(deep=True)
            await self._stop_locked(vm)
            return vm.model_copy(deep=True)

    async def _stop_locked(self, vm: VmRecord) -> None:
        await self._cancel_background(vm.id)
        pid = vm.pid

        if self._supervisor.is_alive(pid) and vm.control_socket is not None and vm.control_socket.exists():
            try:
                await self._channel_factory(vm.control_socket).send_ctrl_alt_del()
                await self._wait_exit(pid, self.config.guest_shutdown_grace_seconds)
            except AgentVmError as e:
                logger.debug("Guest shutdown request failed", extra={"vm_id": vm.id, "error": e.message})

        if self._supervisor.is_alive(pid):
            gone = await self._supervisor.terminate(
                pid,
                graceful=True,
                context_id=vm.id,
                term_timeout=self.config.term_timeout_seconds,
            )
            if not gone:
                logger.error("Hypervisor still alive after stop", extra={"vm_id": vm.id, "pid": pid})

        await cleanup_file(vm.control_socket, vm.id, "control socket")
        try:
            await self._transition(
                vm,
                VmStatus.STOPPED,
                event=EventKind.STOPPED,
                pid=None,
                control_socket=None,
                stopped_at=utcnow(),
            )
        except OSError:
            logger.exception("Failed to persist stopped state", extra={"vm_id": vm.id})
        logger.info("VM stopped", extra={"vm_id": vm.id})

    async def _wait_exit(self, pid: int | None, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while self._supervisor.is_alive(pid) and time.monotonic() < deadline:
            await asyncio.sleep(0.1)

    async def delete(self, id_or_name: str) -> None:
        """Stop (if needed) and remove every trace of the VM.

        Raises:
            VmNotFoundError: Unknown VM (the only failure surfaced)
        """
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            if vm.status is not VmStatus.STOPPED or self._supervisor.is_alive(vm.pid):
                try:
                    await self._stop_locked(vm)
                except Exception:
                    logger.exception("Stop failed during delete", extra={"vm_id": vm_id})

            async with self._registry_lock:
                self._ports.release(vm.ssh_port)
            if vm.network.tap_device:
                try:
                    await self._network.release(vm.network.tap_device, vm_id)
                except Exception:
                    logger.exception("TAP release failed during delete", extra={"vm_id": vm_id})
            await self._store.delete(vm_id)

            async with self._registry_lock:
                self._vms.pop(vm_id, None)
            self._vm_locks.pop(vm_id, None)

        logger.info("VM deleted", extra={"vm_id": vm_id})
        self.events.publish(LifecycleEvent(kind=EventKind.DELETED, vm_id=vm_id))

    # =========================================================================
    # pause / resume / metadata
    # =========================================================================

    async def pause(self, id_or_name: str) -> VmRecord:
        """Running -> Paused.

        Raises:
            InvalidStateError: VM not running
            NoControlChannelError: No live control socket
        """
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            if vm.status is not VmStatus.RUNNING:
                raise InvalidStateError(
                    f"VM {vm_id} is not running (status: {vm.status.value})",
                    context={"vm_id": vm_id},
                    status=vm.status.value,
                )
            await self._channel_for(vm).pause()
            await self._transition(vm, VmStatus.PAUSED, event=EventKind.PAUSED)
            return vm.model_copy(deep=True)

    async def resume(self, id_or_name: str) -> VmRecord:
        """Paused -> Running.

        Raises:
            InvalidStateError: VM not paused
            NoControlChannelError: No live control socket
        """
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            if vm.status is not VmStatus.PAUSED:
                raise InvalidStateError(
                    f"VM {vm_id} is not paused (status: {vm.status.value})",
                    context={"vm_id": vm_id},
                    status=vm.status.value,
                )
            await self._channel_for(vm).resume()
            await self._transition(vm, VmStatus.RUNNING, event=EventKind.RESUMED)
            return vm.model_copy(deep=True)

    async def set_metadata(self, id_or_name: str, metadata: MetadataDocument | dict[str, Any]) -> VmRecord:
        """Replace the identity document served to the guest.

        Raises:
            NoControlChannelError: No live control socket
        """
        self._require_initialized()
        document = metadata if isinstance(metadata, MetadataDocument) else MetadataDocument.model_validate(metadata)
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            await self._channel_for(vm).put_mmds(document.to_guest_payload())
            vm.metadata = document
            await self._store.save(vm)
            logger.info("VM metadata updated", extra={"vm_id": vm_id})
            self.events.publish(LifecycleEvent(kind=EventKind.METADATA_UPDATED, vm_id=vm_id, status=vm.status))
            return vm.model_copy(deep=True)

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def create_snapshot(self, id_or_name: str, name: str | None = None) -> SnapshotRecord:
        """Write a full snapshot (state, memory, disk copy) of a live VM.

        A running VM is paused for the duration and always resumed
        afterwards, also when the snapshot fails.

        Raises:
            InvalidStateError: VM not running or paused
            NoControlChannelError: No live control socket
            SnapshotError: VM written but could not be resumed (VM left paused, error recorded)
        """
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        async with self._lock_for(vm_id):
            vm = self._require(vm_id)
            if vm.status not in (VmStatus.RUNNING, VmStatus.PAUSED):
                raise InvalidStateError(
                    f"VM {vm_id} must be running or paused to snapshot (status: {vm.status.value})",
                    context={"vm_id": vm_id},
                    status=vm.status.value,
                )
            channel = self._channel_for(vm)
            was_running = vm.status is VmStatus.RUNNING
            if was_running:
                await channel.pause()
                await self._transition(vm, VmStatus.PAUSED)

            failure: BaseException | None = None
            try:
                record = await self._write_snapshot(vm, channel, name)
            except BaseException as e:
                failure = e
                raise
            finally:
                if was_running:
                    await self._resume_after_snapshot(vm, channel, failure)

        logger.info("Snapshot created", extra={"vm_id": vm_id, "snapshot_id": record.id, "size_bytes": record.size_bytes})
        self.events.publish(
            LifecycleEvent(
                kind=EventKind.SNAPSHOT_CREATED,
                vm_id=vm_id,
                status=vm.status,
                detail={"snapshot_id": record.id, "snapshot_dir": str(record.directory)},
            )
        )
        return record

    async def _write_snapshot(self, vm: VmRecord, channel: ControlChannel, name: str | None) -> SnapshotRecord:
        snapshot_id = f"snap-{int(time.time() * 1000)}"
        while await aiofiles.os.path.exists(self._store.snapshot_dir(vm.id, snapshot_id)):
            snapshot_id = f"snap-{int(time.time() * 1000)}-{uuid.uuid4().hex[:4]}"
        snapshot_dir = self._store.snapshot_dir(vm.id, snapshot_id)
        await aiofiles.os.makedirs(snapshot_dir, mode=0o700, exist_ok=True)

        snapshot_path = snapshot_dir / constants.SNAPSHOT_STATE_FILE
        mem_file_path = snapshot_dir / constants.SNAPSHOT_MEMORY_FILE
        disk_path = snapshot_dir / constants.ROOTFS_FILE
        vm_disk = self._vm_dir(vm.id) / constants.ROOTFS_FILE
        try:
            await channel.create_snapshot(snapshot_path, mem_file_path)
            if not await aiofiles.os.path.isfile(vm_disk):
                raise SnapshotError(f"VM disk missing: {vm_disk}", context={"vm_id": vm.id})
            await copy_file(vm_disk, disk_path)
            size = sum([await file_size(p) for p in (snapshot_path, mem_file_path, disk_path)])
            record = SnapshotRecord(
                id=snapshot_id,
                vm_id=vm.id,
                name=name,
                base_image=vm.base_image,
                snapshot_path=snapshot_path,
                mem_file_path=mem_file_path,
                disk_path=disk_path,
                metadata=vm.metadata.model_copy(deep=True),
                resources=vm.resources.model_copy(),
                network_mode=vm.network.mode,
                size_bytes=size,
            )
            await self._store.save_snapshot(record)
        except BaseException:
            await cleanup_directory(snapshot_dir, vm.id, "partial snapshot")
            raise
        return record

    async def _resume_after_snapshot(
        self,
        vm: VmRecord,
        channel: ControlChannel,
        failure: BaseException | None,
    ) -> None:
        try:
            await channel.resume()
            await self._transition(vm, VmStatus.RUNNING)
        except AgentVmError as e:
            message = f"VM left paused after snapshot: resume failed: {e.message}"
            logger.critical(message, extra={"vm_id": vm.id}, exc_info=e)
            vm.error = message
            with contextlib.suppress(OSError):
                await self._store.save(vm)
            self.events.publish(LifecycleEvent(kind=EventKind.ERROR, vm_id=vm.id, status=vm.status, error=message))
            if failure is None:
                raise SnapshotError(message, context={"vm_id": vm.id}) from e

    async def list_snapshots(self, id_or_name: str) -> list[SnapshotRecord]:
        """Snapshots of a VM, newest first."""
        self._require_initialized()
        return await self._store.list_snapshots(self._resolve_id(id_or_name))

    async def get_snapshot(self, id_or_name: str, snapshot_id: str) -> SnapshotRecord:
        self._require_initialized()
        vm_id = self._resolve_id(id_or_name)
        snapshot_dir = self._store.snapshot_dir(vm_id, snapshot_id)
        if not await aiofiles.os.path.isdir(snapshot_dir):
            raise VmNotFoundError(f"Snapshot {snapshot_id} not found", context={"vm_id": vm_id, "snapshot_id": snapshot_id})
        return await self._store.load_snapshot_dir(snapshot_dir)

    async def delete_snapshot(self, id_or_name: str, snapshot_id: str) -> None:
        await self.get_snapshot(id_or_name, snapshot_id)
        await self._store.delete_snapshot(self._resolve_id(id_or_name), snapshot_id)

    async def restore_from_snapshot(
        self,
        snapshot_dir: Path | str,
        *,
        name: str,
        vm_id: str | None = None,
    ) -> VmRecord:
        """Clone a snapshot into a new VM with a fresh identity.

        Synchronously: mint id/port/TAP, copy the three artifacts, persist
        ``CREATING`` and launch the hypervisor.  In the background: load
        paused, re-point the root drive, push the new identity, resume,
        wait for SSH.

        Raises:
            VmNotFoundError: Snapshot directory does not exist
            SnapshotError: Snapshot metadata or artifacts missing/invalid
            VmAlreadyExistsError: Name or id already used
            ProcessError: Launch failed (also recorded as ERROR)
        """
        self._require_initialized()
        if not _NAME_RE.match(name):
            raise ConfigurationError(f"Invalid VM name: {name!r}", context={"name": name})
        if vm_id is not None and not _NAME_RE.match(vm_id):
            raise ConfigurationError(f"Invalid VM id: {vm_id!r}", context={"vm_id": vm_id})

        source_dir = Path(snapshot_dir)
        if not await aiofiles.os.path.isdir(source_dir):
            raise VmNotFoundError(f"Snapshot {source_dir} not found", context={"snapshot_dir": str(source_dir)})
        snapshot = await self._store.load_snapshot_dir(source_dir)
        for artifact in (snapshot.snapshot_path, snapshot.mem_file_path, snapshot.disk_path):
            if not await aiofiles.os.path.isfile(artifact):
                raise SnapshotError(f"Snapshot artifact missing: {artifact}", context={"snapshot_id": snapshot.id})

        async with self._registry_lock:
            new_id, port = self._claim_identity(name, vm_id)

        allocation: TapAllocation | None = None
        try:
            vm_dir = await self._store.ensure_vm_dir(new_id)
            allocation = await self._allocate_network(new_id)
            for src, file_name in (
                (snapshot.snapshot_path, constants.SNAPSHOT_STATE_FILE),
                (snapshot.mem_file_path, constants.SNAPSHOT_MEMORY_FILE),
                (snapshot.disk_path, constants.ROOTFS_FILE),
            ):
                await copy_file(src, vm_dir / file_name)

            metadata = build_metadata(
                vm_id=new_id,
                name=name,
                allocation=allocation,
                public_key=await self._ssh.public_key(),
                dns_servers=self.settings.dns_servers,
                netmask=self.settings.netmask,
                user_data=snapshot.metadata.user_data,
            )
            record = VmRecord(
                id=new_id,
                name=name,
                status=VmStatus.CREATING,
                ssh_port=port,
                network=_network_of(allocation, metadata),
                resources=snapshot.resources.model_copy(),
                base_image=snapshot.base_image,
                metadata=metadata,
                source_snapshot=SourceSnapshot(vm_id=snapshot.vm_id, snapshot_id=snapshot.id, snapshot_dir=source_dir),
            )
            await self._store.save(record)
        except BaseException:
            await self._rollback_claim(name, new_id, port, allocation)
            raise

        await self._release_claim(name, new_id, register=record)
        self.events.publish(LifecycleEvent(kind=EventKind.CREATED, vm_id=new_id, status=record.status))
        logger.info(
            "Restoring VM from snapshot",
            extra={"vm_id": new_id, "snapshot_id": snapshot.id, "source_vm": snapshot.vm_id},
        )

        async with self._lock_for(new_id):
            vm = self._require(new_id)
            control_socket = vm_dir / constants.CONTROL_SOCKET_FILE
            try:
                pid = await self._supervisor.launch(
                    self._require_hypervisor(),
                    control_socket,
                    vm_dir / constants.HYPERVISOR_LOG_FILE,
                    context_id=new_id,
                )
            except AgentVmError as e:
                await self._fail(vm, f"Failed to restore (launching hypervisor): {e.message}")
                raise
            await self._transition(vm, VmStatus.CREATING, pid=pid, control_socket=control_socket, started_at=utcnow())
            self._spawn(new_id, self._restore(vm, pid, snapshot), "restore")
            return vm.model_copy(deep=True)

    async def _restore(self, vm: VmRecord, pid: int, snapshot: SnapshotRecord) -> None:
        """Load paused -> re-point drive -> push identity -> resume (background)."""
        assert vm.control_socket is not None
        channel = self._channel_factory(vm.control_socket)
        vm_dir = self._vm_dir(vm.id)
        source_networked = snapshot.network_mode is NetworkMode.TAP
        networked = vm.network.mode is NetworkMode.TAP and vm.network.tap_device is not None
        started = time.monotonic()
        step = "waiting for control socket"
        try:
            await wait_for_socket(
                vm.control_socket,
                timeout=self.config.restore_socket_timeout_seconds,
                poll_interval=constants.SOCKET_POLL_INTERVAL_SECONDS,
                abort_check=self._abort_if_dead(vm, pid),
            )

            step = "loading snapshot"
            overrides = (
                {constants.GUEST_INTERFACE: vm.network.tap_device}
                if source_networked and networked and vm.network.tap_device
                else None
            )
            await channel.load_snapshot(
                vm_dir / constants.SNAPSHOT_STATE_FILE,
                vm_dir / constants.SNAPSHOT_MEMORY_FILE,
                resume_vm=False,
                network_overrides=overrides,
            )

            step = "re-pointing root drive"
            await channel.patch_drive(_ROOT_DRIVE_ID, vm_dir / constants.ROOTFS_FILE)

            if source_networked:
                step = "pushing new identity"
                await channel.put_mmds(vm.metadata.to_guest_payload())
            else:
                logger.warning(
                    "Snapshot has no metadata service; guest keeps its previous identity",
                    extra={"vm_id": vm.id, "snapshot_id": snapshot.id},
                )

            step = "resuming"
            await channel.resume()

            if not self._is_current_task(vm.id):
                return
            await self._transition(vm, VmStatus.BOOTING, event=EventKind.BOOTING)

            step = "waiting for guest SSH"
            await self._wait_guest_ready(vm, self.config.restore_ready_timeout_seconds)

            if not self._is_current_task(vm.id):
                return
            await self._transition(vm, VmStatus.RUNNING, event=EventKind.RESTORED)
            logger.info(
                "VM restored",
                extra={"vm_id": vm.id, "snapshot_id": snapshot.id, "restore_seconds": round(time.monotonic() - started, 3)},
            )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current_task(vm.id):
                await self._fail(vm, f"Failed to restore ({step}): {_describe(e)}", e)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, id_or_name: str) -> VmRecord | None:
        """VM by id or name, or None."""
        try:
            return self._vms[self._resolve_id(id_or_name)].model_copy(deep=True)
        except VmNotFoundError:
            return None

    def list_vms(self) -> list[VmRecord]:
        return [vm.model_copy(deep=True) for vm in sorted(self._vms.values(), key=lambda v: v.created_at)]

    def get_stats(self) -> VmStats:
        stats = VmStats(total=len(self._vms))
        for vm in self._vms.values():
            field = vm.status.value
            setattr(stats, field, getattr(stats, field) + 1)
        return stats

    def get_ssh_info(self, id_or_name: str) -> SshInfo:
        """Where and how to SSH into the VM.

        Routed (TAP) VMs are reached on their guest address, others on the
        host's reserved port.
        """
        vm = self._require(self._resolve_id(id_or_name))
        if vm.network.mode is NetworkMode.TAP and vm.network.guest_ip:
            return self._ssh.connection_info(vm.network.guest_ip, constants.GUEST_SSH_PORT)
        return self._ssh.connection_info("127.0.0.1", vm.ssh_port)

    def get_network_status(self, id_or_name: str) -> NetworkStatus:
        vm = self._require(self._resolve_id(id_or_name))
        net = vm.network
        return NetworkStatus(
            vm_id=vm.id,
            mode=net.mode,
            tap_device=net.tap_device,
            tap_exists=bool(net.tap_device) and self._network.device_exists(net.tap_device),  # type: ignore[arg-type]
            bridge_name=net.bridge_name,
            guest_ip=net.guest_ip,
            gateway=net.gateway,
            mac_address=net.mac_address,
            ssh_port=vm.ssh_port,
        )

    async def network_health(self) -> NetworkHealth:
        return await self._network.check_health()

    async def network_helper_status(self) -> NetworkHealth:
        """TAP helper diagnostics, also when another mode is active."""
        return await self._network.helper_status()

    async def list_base_images(self) -> list[BaseImageInfo]:
        return await self._images.list_images()

    async def get_ssh_private_key(self) -> str | None:
        return await self._ssh.private_key_text()


def _network_of(allocation: TapAllocation | None, metadata: MetadataDocument) -> VmNetwork:
    if allocation is None:
        mac = metadata.network.interfaces[constants.GUEST_INTERFACE].mac
        return VmNetwork(mode=NetworkMode.NONE, mac_address=mac)
    return VmNetwork(
        mode=NetworkMode.TAP,
        tap_device=allocation.tap_name,
        bridge_name=allocation.bridge_name,
        mac_address=allocation.mac_address,
        guest_ip=allocation.guest_ip,
        gateway=allocation.gateway,
    )


def _allocation_of(record: VmRecord) -> TapAllocation:
    net = record.network
    return TapAllocation(
        tap_name=net.tap_device or "",
        guest_ip=net.guest_ip or "",
        gateway=net.gateway or "",
        mac_address=net.mac_address or "",
        bridge_name=net.bridge_name or "",
    )


def _describe(exc: BaseException) -> str:
    if isinstance(exc, AgentVmError):
        return exc.message
    return f"{type(exc).__name__}: {exc}"
