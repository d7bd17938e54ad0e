"""
capk/utils/ephemeral_file.py

Async context managers for short-lived secret material (SSH private keys,
client certificates) kept in `/dev/shm` so it never reaches disk:

1) `ephemeral_dir`: create a private directory, yield its path, and remove it
   with everything inside on exit.
2) `ephemeral_file`: write `content` to a 0600 file inside such a directory
   and yield the file path.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles

DEFAULT_PARENT_DIR = "/dev/shm"


def _parent_dir(parent_dir: Optional[str]) -> Optional[str]:
    if parent_dir is not None:
        return parent_dir
    # Fall back to the platform temp dir where /dev/shm does not exist.
    return DEFAULT_PARENT_DIR if os.path.isdir(DEFAULT_PARENT_DIR) else None


@asynccontextmanager
async def ephemeral_dir(
    *, prefix: str = "capk-", parent_dir: Optional[str] = None
) -> AsyncGenerator[str, None]:
    """
    Create a 0700 directory, yield its path, and clean it up on exit.

    Args:
        prefix: Prefix for the directory name.
        parent_dir: Where to create it; `/dev/shm` when available.

    Yields:
        The directory path.
    """
    ephemeral = tempfile.mkdtemp(dir=_parent_dir(parent_dir), prefix=prefix)
    try:
        yield ephemeral
    finally:
        if os.path.isdir(ephemeral):
            for item in os.listdir(ephemeral):
                item_path = os.path.join(ephemeral, item)
                if os.path.isfile(item_path) or os.path.islink(item_path):
                    os.remove(item_path)
            os.rmdir(ephemeral)


@asynccontextmanager
async def ephemeral_file(
    content: bytes,
    *,
    file_name: str,
    prefix: str = "capk-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Write `content` to a 0600 file in an ephemeral directory and yield its path.

    Args:
        content: Bytes to write.
        file_name: Name of the file inside the ephemeral directory.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory; `/dev/shm` when available.

    Yields:
        The file path.
    """
    async with ephemeral_dir(prefix=prefix, parent_dir=parent_dir) as dir_path:
        path = os.path.join(dir_path, file_name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        os.close(fd)
        async with aiofiles.open(path, "wb") as fh:
            await fh.write(content)
        yield path
