"""JSON persistence shared by the history and rule stores.

Writers serialize through an exclusive ``flock`` on a sibling ``.lock`` file and
replace the target atomically (temp file in the same directory, fsync, rename),
so readers such as the reporting dashboard never observe a half-written file.
"""
import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store file cannot be read or written."""
    pass


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def exclusive_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock for ``path`` across processes."""
    lock_file = lock_path_for(path)
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        handle = open(lock_file, "w")
    except OSError as e:
        raise StoreError(f"Cannot open lock file {lock_file}: {e}") from e
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        yield
    finally:
        # The lock file itself is left in place so concurrent waiters keep
        # contending on the same inode.
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        handle.close()


def read_json(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON object from ``path``.

    Returns:
        The decoded object, or None if the file does not exist.

    Raises:
        StoreError: If the file is unreadable or not a JSON object
    """
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise StoreError(f"Failed to read {path}: {e}") from e
    if not isinstance(data, dict):
        raise StoreError(f"Unexpected content in {path}: expected a JSON object")
    return data


def write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    """Atomically replace ``path`` with ``data`` serialized as JSON.

    The caller is expected to hold :func:`exclusive_lock` for ``path``.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise StoreError(f"Failed to prepare write of {path}: {e}") from e
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, str(path))
    except (OSError, TypeError, ValueError) as e:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise StoreError(f"Failed to write {path}: {e}") from e


def set_aside(path: Path) -> Path:
    """Move an unreadable store file out of the way so it is never overwritten.

    The caller is expected to hold :func:`exclusive_lock` for ``path``.

    Returns:
        Where the file was moved to
    """
    backup = path.with_name(f"{path.name}.corrupt-{int(time.time() * 1000)}")
    try:
        os.replace(str(path), str(backup))
    except OSError as e:
        raise StoreError(f"Failed to move aside {path}: {e}") from e
    logger.warning(f"Moved unreadable {path.name} to {backup.name}")
    return backup
