"""Resource cleanup utilities for VM lifecycle management.

Best-effort cleanup operations that log errors but don't raise.  Used by
VmOrchestrator's stop/delete paths and by failed create/restore rollbacks.
"""

import asyncio
import shutil
from pathlib import Path

import aiofiles.os

from agentvm._logging import get_logger

logger = get_logger(__name__)


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete a file (or stale socket).

    Silently succeeds if the file doesn't exist.

    Returns:
        True if the file is gone afterwards, False if removal failed
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(
            f"{description} removed",
            extra={"context_id": context_id, "path": str(file_path)},
        )
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} removal error",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False


async def cleanup_directory(
    dir_path: Path | None,
    context_id: str,
    description: str = "directory",
) -> bool:
    """Recursively remove a directory tree.

    Runs shutil.rmtree in a worker thread; VM directories hold multi-GiB
    disk and memory images.

    Returns:
        True if the directory is gone afterwards, False if removal failed
    """
    if dir_path is None:
        return True

    try:
        await asyncio.to_thread(shutil.rmtree, dir_path)
        logger.debug(
            f"{description} removed",
            extra={"context_id": context_id, "path": str(dir_path)},
        )
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} removal error",
            extra={"context_id": context_id, "path": str(dir_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
