"""Durable per-VM state.

Layout under the data directory:
    <vm_id>/state.json                                    VmRecord
    <vm_id>/snapshots/<snapshot_id>/metadata.json         SnapshotRecord

The in-memory registry in VmOrchestrator is authoritative while running;
this store is what survives a restart.  Writes are atomic (temp + rename)
so a crash mid-write leaves the previous record intact, and writes of one
VM's record are serialized so the last save always reflects the newest
in-memory state.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiofiles.os
from pydantic import ValidationError

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.exceptions import SnapshotError
from agentvm.file_utils import atomic_write_text, read_text
from agentvm.models import SnapshotRecord, VmRecord
from agentvm.resource_cleanup import cleanup_directory

logger = get_logger(__name__)


class VmStateStore:
    """Reads and writes VM and snapshot records.

    Attributes:
        data_dir: Root directory holding one subdirectory per VM
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self._save_locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Paths
    # =========================================================================

    def vm_dir(self, vm_id: str) -> Path:
        return self.data_dir / vm_id

    def state_path(self, vm_id: str) -> Path:
        return self.vm_dir(vm_id) / constants.STATE_FILE

    def snapshots_dir(self, vm_id: str) -> Path:
        return self.vm_dir(vm_id) / constants.SNAPSHOTS_DIR

    def snapshot_dir(self, vm_id: str, snapshot_id: str) -> Path:
        return self.snapshots_dir(vm_id) / snapshot_id

    # =========================================================================
    # VM records
    # =========================================================================

    async def ensure_vm_dir(self, vm_id: str) -> Path:
        path = self.vm_dir(vm_id)
        await aiofiles.os.makedirs(path, mode=0o700, exist_ok=True)
        return path

    async def save(self, record: VmRecord) -> None:
        lock = self._save_locks.setdefault(record.id, asyncio.Lock())
        async with lock:
            await self.ensure_vm_dir(record.id)
            # Serialize under the lock: the record may have changed while waiting.
            await atomic_write_text(self.state_path(record.id), record.model_dump_json(indent=2))

    async def load(self, vm_id: str) -> VmRecord | None:
        path = self.state_path(vm_id)
        try:
            return VmRecord.model_validate_json(await read_text(path))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.error("Failed to load VM state", extra={"vm_id": vm_id, "path": str(path), "error": str(e)})
            return None

    async def load_all(self) -> list[VmRecord]:
        """Every readable record; unreadable ones are logged and skipped."""
        if not await aiofiles.os.path.isdir(self.data_dir):
            return []
        records: list[VmRecord] = []
        for entry in sorted(await aiofiles.os.listdir(self.data_dir)):
            if not await aiofiles.os.path.isfile(self.state_path(entry)):
                continue
            record = await self.load(entry)
            if record is not None:
                records.append(record)
        return records

    async def delete(self, vm_id: str) -> bool:
        """Remove the VM directory including disks and snapshots."""
        self._save_locks.pop(vm_id, None)
        return await cleanup_directory(self.vm_dir(vm_id), vm_id, "VM directory")

    # =========================================================================
    # Snapshot records
    # =========================================================================

    async def save_snapshot(self, record: SnapshotRecord) -> None:
        await atomic_write_text(
            record.directory / constants.SNAPSHOT_METADATA_FILE,
            record.model_dump_json(indent=2),
            mode=0o644,
        )

    async def load_snapshot_dir(self, snapshot_dir: Path) -> SnapshotRecord:
        """Load the record from a snapshot directory.

        Raises:
            SnapshotError: metadata.json missing or invalid
        """
        path = snapshot_dir / constants.SNAPSHOT_METADATA_FILE
        try:
            return SnapshotRecord.model_validate_json(await read_text(path))
        except FileNotFoundError as e:
            raise SnapshotError(f"Snapshot metadata not found: {path}", context={"path": str(path)}) from e
        except (OSError, ValidationError) as e:
            raise SnapshotError(f"Invalid snapshot metadata: {e}", context={"path": str(path)}) from e

    async def list_snapshots(self, vm_id: str) -> list[SnapshotRecord]:
        """Snapshots of a VM, newest first."""
        root = self.snapshots_dir(vm_id)
        if not await aiofiles.os.path.isdir(root):
            return []
        records: list[SnapshotRecord] = []
        for entry in await aiofiles.os.listdir(root):
            try:
                records.append(await self.load_snapshot_dir(root / entry))
            except SnapshotError as e:
                logger.warning("Skipping unreadable snapshot", extra={"vm_id": vm_id, "snapshot": entry, "error": e.message})
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    async def delete_snapshot(self, vm_id: str, snapshot_id: str) -> bool:
        return await cleanup_directory(self.snapshot_dir(vm_id, snapshot_id), vm_id, "snapshot directory")
