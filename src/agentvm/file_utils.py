"""Small async filesystem helpers shared by the state store and the pool file."""

from __future__ import annotations

import asyncio
import os
import shutil
import uuid
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os

if TYPE_CHECKING:
    from pathlib import Path


async def atomic_write_text(path: Path, content: str, *, mode: int = 0o600) -> None:
    """Write *content* to *path* via a sibling temp file and rename.

    Readers see either the previous or the new content, never a torn file.
    Each call gets its own temp name, so overlapping writers to the same
    path cannot rename each other's half-written file into place.
    """
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        async with aiofiles.open(tmp, "w") as f:
            await f.write(content)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await asyncio.to_thread(os.chmod, tmp, mode)
        await aiofiles.os.replace(tmp, path)
    except BaseException:
        try:
            await aiofiles.os.remove(tmp)
        except FileNotFoundError:
            pass
        raise


async def read_text(path: Path) -> str:
    async with aiofiles.open(path) as f:
        return await f.read()


async def copy_file(src: Path, dest: Path) -> None:
    """Copy a (possibly multi-GiB) file off the event loop."""
    await asyncio.to_thread(shutil.copyfile, src, dest)


async def file_size(path: Path) -> int:
    try:
        return (await aiofiles.os.stat(path)).st_size
    except FileNotFoundError:
        return 0
