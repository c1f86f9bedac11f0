"""Serialization for archive bundle read-modify-write cycles.

Two layers: a ``threading.Lock`` per bundle path for writers inside this
process, and an exclusive ``fcntl.flock`` on a sibling ``.lock`` file for
writers in other processes. Writes land through a temp file + ``os.replace``
so readers never see a half-written bundle.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX
    fcntl = None

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05

# Entries vanish once no caller holds or waits on the lock
_thread_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def _thread_lock(key: str) -> threading.Lock:
    with _registry_lock:
        lock = _thread_locks.get(key)
        if lock is None:
            lock = _thread_locks[key] = threading.Lock()
        return lock


@contextmanager
def bundle_lock(path: Path, timeout: float = 10.0) -> Iterator[None]:
    """Hold the exclusive write lock for one bundle file."""
    key = str(path.resolve())
    lock = _thread_lock(key)
    if not lock.acquire(timeout=timeout):
        raise TimeoutError(f"Bundle is busy (in-process lock): {path}")
    try:
        if fcntl is None:  # pragma: no cover
            yield
            return
        lock_path = path.with_name(path.name + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR, 0o600)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(f"Bundle is busy (lock: {lock_path})")
                    logger.debug("Waiting for bundle lock %s", lock_path)
                    time.sleep(_POLL_INTERVAL)
            yield
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
    finally:
        lock.release()


def write_json_atomic(path: Path, data: dict) -> None:
    """Replace ``path`` with ``data`` serialized as indented JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".tmp.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
