"""
loadfleet/utils/ephemeral_file.py

Provides an async context manager for short-lived private files, such as the
control socket of an SSH master connection or an sftp batch script. Files are
created inside a fresh 0700 directory and everything is removed on exit.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

SHM_DIR = "/dev/shm"


def default_parent_dir() -> str:
    """Prefer memory-backed /dev/shm, fall back to the system temp dir."""
    if os.path.isdir(SHM_DIR) and os.access(SHM_DIR, os.W_OK):
        return SHM_DIR
    return tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_path(
    file_name: str,
    *,
    prefix: str = "loadfleet-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Yield a path named `file_name` inside a private temporary directory.

    The file itself is not created; the caller (or a subprocess) does that.
    The directory and anything in it are removed on exit.

    Args:
        file_name: Name of the file inside the ephemeral directory.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory, default /dev/shm when usable.
    """
    ephemeral_dir = tempfile.mkdtemp(
        dir=parent_dir or default_parent_dir(), prefix=prefix
    )
    try:
        yield os.path.join(ephemeral_dir, file_name)
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
