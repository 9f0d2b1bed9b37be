from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

PERM_MASK = stat.S_IRWXU | stat.S_IRWXG | stat.S_IRWXO


def permission_bits(path: str | Path) -> int:
    """rwx bits of ``path`` (setuid/setgid/sticky excluded)."""
    return os.stat(path).st_mode & PERM_MASK


def symlink_target(path: str | Path) -> str:
    st = os.lstat(path)
    if not stat.S_ISLNK(st.st_mode):
        raise OSError(f"File '{path}' is not a symbolic link.")
    return os.readlink(path)


def make_private_directory(path: str | Path, mode: int) -> Path:
    d = Path(path)
    d.mkdir(parents=True, exist_ok=True)
    # mkdir() is subject to the umask; set the bits explicitly.
    os.chmod(d, mode)
    return d


def move_file(src: str | Path, dst: str | Path) -> None:
    """rename(2), falling back to copy+unlink across filesystems."""
    try:
        os.rename(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        logger.debug("Cross-device move %s -> %s", src, dst)
        shutil.copy2(src, dst)
        os.unlink(src)


def remove_directory(path: str | Path) -> None:
    d = Path(path)
    if not d.is_dir() or d.is_symlink():
        raise NotADirectoryError(f"{d} is not a directory")
    shutil.rmtree(d)
    logger.debug("Removed directory %s", d)
