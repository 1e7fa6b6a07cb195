"""Base image store.

Layout:
    <base_images_dir>/<name>/rootfs.ext4    hypervisor-native root filesystem
    <base_images_dir>/<name>/image.qcow2    alternate format, converted on first use
    <base_images_dir>/<name>/vmlinux        uncompressed guest kernel

Images are built out-of-band; this module only reads them and copies a
writable disk per VM.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

import aiofiles.os

from agentvm import constants
from agentvm._logging import get_logger
from agentvm.exceptions import ConfigurationError, ImageNotFoundError, ProcessError
from agentvm.file_utils import copy_file
from agentvm.models import BaseImageInfo
from agentvm.resource_cleanup import cleanup_file
from agentvm.subprocess_utils import run_command

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

_IMAGE_NAME = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

# Converting a multi-GiB image can take a while
_CONVERT_TIMEOUT_SECONDS = 600.0


class BaseImageStore:
    """Read-only access to base images plus per-VM disk preparation."""

    def __init__(self, base_images_dir: Path, qemu_img_bin: str = "qemu-img") -> None:
        self.base_images_dir = base_images_dir
        self.qemu_img_bin = qemu_img_bin

    def image_dir(self, name: str) -> Path:
        if not _IMAGE_NAME.match(name) or ".." in name:
            raise ConfigurationError(f"Invalid base image name: {name!r}", context={"image": name})
        return self.base_images_dir / name

    def rootfs_path(self, name: str) -> Path:
        return self.image_dir(name) / constants.ROOTFS_FILE

    def alternate_path(self, name: str) -> Path:
        return self.image_dir(name) / constants.ALTERNATE_IMAGE_FILE

    def kernel_path(self, name: str) -> Path:
        """Kernel of a base image.

        Raises:
            ImageNotFoundError: The kernel file is missing
        """
        path = self.image_dir(name) / constants.KERNEL_FILE
        if not path.is_file():
            raise ImageNotFoundError(f"Kernel not found for base image {name}", context={"image": name, "path": str(path)})
        return path

    async def prepare_disk(self, name: str, dest: Path, *, context_id: str = "") -> Path:
        """Give a VM its writable root disk, copying at most once.

        An existing *dest* is kept (a restarted VM keeps its disk).  The
        native rootfs is copied when present; otherwise the alternate image
        is converted to raw.

        Raises:
            ImageNotFoundError: Neither format exists
            ProcessError: Conversion failed
        """
        if await aiofiles.os.path.exists(dest):
            return dest

        rootfs = self.rootfs_path(name)
        alternate = self.alternate_path(name)
        tmp = dest.with_name(f".{dest.name}.partial")

        if await aiofiles.os.path.isfile(rootfs):
            logger.info("Copying base rootfs", extra={"context_id": context_id, "image": name, "dest": str(dest)})
            try:
                await copy_file(rootfs, tmp)
            except OSError as e:
                await cleanup_file(tmp, context_id, "partial disk")
                raise ProcessError(f"Failed to copy base rootfs: {e}", context={"image": name}) from e
        elif await aiofiles.os.path.isfile(alternate):
            logger.info(
                "Converting base image to raw",
                extra={"context_id": context_id, "image": name, "source": str(alternate), "dest": str(dest)},
            )
            result = await run_command(
                self.qemu_img_bin,
                "convert",
                "-f",
                "qcow2",
                "-O",
                "raw",
                str(alternate),
                str(tmp),
                timeout=_CONVERT_TIMEOUT_SECONDS,
            )
            if not result.ok:
                await cleanup_file(tmp, context_id, "partial disk")
                raise ProcessError(
                    f"Image conversion failed: {result.stderr.strip() or result.returncode}",
                    context={"image": name, "returncode": result.returncode},
                )
        else:
            raise ImageNotFoundError(
                f"Base image {name} not found",
                context={"image": name, "searched": [str(rootfs), str(alternate)]},
            )

        await aiofiles.os.replace(tmp, dest)
        return dest

    async def list_images(self) -> list[BaseImageInfo]:
        if not await aiofiles.os.path.isdir(self.base_images_dir):
            return []
        images: list[BaseImageInfo] = []
        for entry in sorted(await aiofiles.os.listdir(self.base_images_dir)):
            path = self.base_images_dir / entry
            if not path.is_dir() or not _IMAGE_NAME.match(entry):
                continue
            images.append(
                BaseImageInfo(
                    name=entry,
                    path=path,
                    has_rootfs=(path / constants.ROOTFS_FILE).is_file(),
                    has_kernel=(path / constants.KERNEL_FILE).is_file(),
                    has_alternate=(path / constants.ALTERNATE_IMAGE_FILE).is_file(),
                )
            )
        return images
