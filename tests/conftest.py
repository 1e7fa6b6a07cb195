"""Shared pytest fixtures for agentvm tests.

Nothing here needs KVM, Firecracker or root.  The orchestrator is wired
to in-process fakes for the three host-facing collaborators:

- FakeSupervisor: "launches" a hypervisor by binding a listening Unix
  socket at the control socket path and handing out fake PIDs
- FakeControlChannel: records every control call in order, writes
  snapshot files on create_snapshot, and can be told to fail a call
- FakeSsh: real SshAccess (connection_info, key paths) with key
  generation and the readiness probe replaced
"""

from __future__ import annotations

import itertools
import json
import shutil
import socket
import tempfile
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from agentvm import constants
from agentvm.config import OrchestratorConfig
from agentvm.network import NetworkManager
from agentvm.network_helper import HelperTapProvisioner
from agentvm.network_pool import PoolTapProvisioner
from agentvm.orchestrator import VmOrchestrator
from agentvm.settings import Settings
from agentvm.ssh import SshAccess
from agentvm.supervisor import HypervisorSupervisor

# ============================================================================
# Paths and settings
# ============================================================================


@pytest.fixture
def short_tmp() -> Iterator[Path]:
    """Short temp directory: Unix socket paths are limited to 108 bytes."""
    path = Path(tempfile.mkdtemp(prefix="avm-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def settings(short_tmp: Path) -> Settings:
    """Settings rooted in a temp dir, no TAP helper, empty /sys/class/net."""
    sys_class_net = short_tmp / "net"
    sys_class_net.mkdir()
    firecracker = short_tmp / "bin" / "firecracker"
    firecracker.parent.mkdir()
    firecracker.write_text("#!/bin/sh\n")
    firecracker.chmod(0o755)
    return Settings(
        data_dir=short_tmp / "vms",
        base_images_dir=short_tmp / "images",
        ssh_keys_dir=short_tmp / "keys",
        firecracker_bin=firecracker,
        tap_helper_paths=[],
        sys_class_net=sys_class_net,
    )


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    """Small port range and short ceilings so failure paths finish quickly."""
    return OrchestratorConfig(
        ssh_port_range_start=20000,
        ssh_port_range_end=20009,
        control_timeout_seconds=2,
        boot_socket_timeout_seconds=2,
        restore_socket_timeout_seconds=2,
        boot_ready_timeout_seconds=2,
        restore_ready_timeout_seconds=2,
        ssh_retry_interval_seconds=0.05,
        guest_shutdown_grace_seconds=0,
        term_timeout_seconds=0.5,
    )


@pytest.fixture
def base_image(settings: Settings) -> str:
    """A complete base image (native rootfs + kernel) under the default name."""
    image_dir = settings.base_images_dir / constants.DEFAULT_BASE_IMAGE
    image_dir.mkdir(parents=True)
    (image_dir / constants.ROOTFS_FILE).write_bytes(b"rootfs" * 1024)
    (image_dir / constants.KERNEL_FILE).write_bytes(b"kernel")
    return constants.DEFAULT_BASE_IMAGE


def write_pool(settings: Settings, count: int, *, create_devices: bool = True) -> Path:
    """Write a pool file with *count* TAPs and fake their /sys/class/net entries."""
    taps = [
        {
            "name": f"tap{i}",
            "allocated": False,
            "allocatedTo": None,
            "guestIp": f"{settings.subnet_prefix}.{i + 2}",
            "macAddress": f"{constants.GUEST_MAC_PREFIX}:00:{i:02x}",
        }
        for i in range(count)
    ]
    config = {
        "bridgeName": settings.bridge_name,
        "subnet": f"{settings.subnet_prefix}.0/24",
        "gateway": settings.gateway,
        "tapDevices": taps,
    }
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.network_pool_path.write_text(json.dumps(config, indent=2))
    if create_devices:
        (settings.sys_class_net / settings.bridge_name).mkdir(exist_ok=True)
        for tap in taps:
            (settings.sys_class_net / tap["name"]).mkdir(exist_ok=True)
    return settings.network_pool_path


@pytest.fixture
def pool_factory(settings: Settings):
    def factory(count: int = 3, *, create_devices: bool = True) -> Path:
        return write_pool(settings, count, create_devices=create_devices)

    return factory


# ============================================================================
# Fakes
# ============================================================================


class FakeSupervisor(HypervisorSupervisor):
    """Binds a listening socket instead of starting a hypervisor."""

    _pids = itertools.count(900_000)

    def __init__(self) -> None:
        super().__init__()
        self.alive: set[int] = set()
        self.launched: list[tuple[int, Path]] = []
        self.terminated: list[tuple[int, bool]] = []
        self.launch_error: Exception | None = None
        self.bind_socket = True
        self._sockets: dict[int, socket.socket] = {}

    async def launch(self, binary: Path, control_socket: Path, log_path: Path, *, context_id: str) -> int:
        if self.launch_error is not None:
            raise self.launch_error
        control_socket.unlink(missing_ok=True)
        pid = next(self._pids)
        if self.bind_socket:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.bind(str(control_socket))
            sock.listen(16)
            self._sockets[pid] = sock
        self.alive.add(pid)
        self.launched.append((pid, control_socket))
        return pid

    def is_alive(self, pid: int | None) -> bool:
        return pid is not None and pid in self.alive

    def crash(self, pid: int) -> None:
        self.alive.discard(pid)
        sock = self._sockets.pop(pid, None)
        if sock is not None:
            sock.close()

    async def terminate(self, pid: int | None, *, graceful: bool = True, context_id: str = "", **_: Any) -> bool:
        if pid is not None:
            self.terminated.append((pid, graceful))
            self.crash(pid)
        return True

    async def close(self) -> None:
        for pid in list(self._sockets):
            self._sockets.pop(pid).close()


@dataclass
class ChannelLog:
    """Control calls across every channel, in call order."""

    calls: list[tuple[str, str, tuple[Any, ...], dict[str, Any]]] = field(default_factory=list)
    fail: dict[str, Exception] = field(default_factory=dict)

    def names(self, socket_path: Path | None = None) -> list[str]:
        return [name for path, name, _, _ in self.calls if socket_path is None or path == str(socket_path)]

    def args_of(self, name: str) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
        return [(args, kwargs) for _, n, args, kwargs in self.calls if n == name]


class FakeControlChannel:
    def __init__(self, socket_path: Path, log: ChannelLog) -> None:
        self.socket_path = socket_path
        self._log = log

    async def _call(self, name: str, *args: Any, **kwargs: Any) -> None:
        self._log.calls.append((str(self.socket_path), name, args, kwargs))
        error = self._log.fail.get(name)
        if error is not None:
            raise error

    async def put_boot_source(self, *args: Any, **kwargs: Any) -> None:
        await self._call("put_boot_source", *args, **kwargs)

    async def put_drive(self, *args: Any, **kwargs: Any) -> None:
        await self._call("put_drive", *args, **kwargs)

    async def patch_drive(self, *args: Any, **kwargs: Any) -> None:
        await self._call("patch_drive", *args, **kwargs)

    async def put_network_interface(self, *args: Any, **kwargs: Any) -> None:
        await self._call("put_network_interface", *args, **kwargs)

    async def put_machine_config(self, *args: Any, **kwargs: Any) -> None:
        await self._call("put_machine_config", *args, **kwargs)

    async def put_mmds_config(self, *args: Any, **kwargs: Any) -> None:
        await self._call("put_mmds_config", *args, **kwargs)

    async def put_mmds(self, *args: Any, **kwargs: Any) -> None:
        await self._call("put_mmds", *args, **kwargs)

    async def instance_start(self) -> None:
        await self._call("instance_start")

    async def send_ctrl_alt_del(self) -> None:
        await self._call("send_ctrl_alt_del")

    async def pause(self) -> None:
        await self._call("pause")

    async def resume(self) -> None:
        await self._call("resume")

    async def create_snapshot(self, snapshot_path: Path, mem_file_path: Path) -> None:
        await self._call("create_snapshot", snapshot_path, mem_file_path)
        snapshot_path.write_bytes(b"vmstate")
        mem_file_path.write_bytes(b"memory" * 100)

    async def load_snapshot(self, *args: Any, **kwargs: Any) -> None:
        await self._call("load_snapshot", *args, **kwargs)


class FakeSsh(SshAccess):
    """Real connection_info; fake key generation and readiness probe."""

    def __init__(self, private_key: Path) -> None:
        super().__init__(private_key)
        self.waited: list[tuple[str, int, float]] = []
        self.ready = True

    async def ensure_keypair(self) -> bool:
        self.private_key.parent.mkdir(parents=True, exist_ok=True)
        self.private_key.write_text("PRIVATE KEY\n")
        self.public_key_path.write_text("ssh-ed25519 AAAATEST agentvm\n")
        return True

    async def probe(self, host: str, port: int) -> bool:
        return self.ready

    async def wait_ready(self, host: str, port: int, *, timeout: float, interval: float) -> None:
        self.waited.append((host, port, timeout))
        await super().wait_ready(host, port, timeout=timeout, interval=interval)


@dataclass
class Harness:
    orchestrator: VmOrchestrator
    settings: Settings
    supervisor: FakeSupervisor
    channels: ChannelLog
    ssh: FakeSsh


def build_harness(settings: Settings, config: OrchestratorConfig) -> Harness:
    supervisor = FakeSupervisor()
    channels = ChannelLog()
    ssh = FakeSsh(settings.ssh_private_key)
    network = NetworkManager(
        settings,
        helper=HelperTapProvisioner(settings, helper_path=None),
        pool=PoolTapProvisioner(settings),
    )
    orchestrator = VmOrchestrator(
        config,
        settings,
        network=network,
        supervisor=supervisor,
        ssh=ssh,
        channel_factory=lambda path: FakeControlChannel(path, channels),  # type: ignore[arg-type,return-value]
    )
    return Harness(orchestrator, settings, supervisor, channels, ssh)


@pytest.fixture
def harness_factory(settings: Settings, fast_config: OrchestratorConfig, base_image: str):
    """Build (uninitialized) harnesses sharing one data dir, for restart tests."""
    built: list[Harness] = []

    def factory() -> Harness:
        h = build_harness(settings, fast_config)
        built.append(h)
        return h

    yield factory


@pytest.fixture
async def harness(harness_factory) -> AsyncIterator[Harness]:
    """Initialized orchestrator with no guest network."""
    h = harness_factory()
    await h.orchestrator.initialize()
    yield h
    await h.orchestrator.shutdown()


@pytest.fixture
async def tap_harness(harness_factory, pool_factory) -> AsyncIterator[Harness]:
    """Initialized orchestrator in pool mode with three TAP devices."""
    pool_factory(3)
    h = harness_factory()
    await h.orchestrator.initialize()
    yield h
    await h.orchestrator.shutdown()
