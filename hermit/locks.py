"""Per-key locks for the store and the fetcher.

`key_lock(lock_dir, key)` serializes work on one key across threads of this
process (a lock per key) and across processes (`flock` on
`<lock_dir>/<key>.lock`). Different keys never contend.

A holder may `drop_lock()` its key once the key's data is gone. Anyone who
was waiting on the removed file notices that it is no longer linked and
locks the new one instead.
"""

import contextlib
import fcntl
import os
import threading
from pathlib import Path

_guard = threading.Lock()
_locks: dict[str, threading.Lock] = {}


def _thread_lock(path: str) -> threading.Lock:
    with _guard:
        lock = _locks.get(path)
        if lock is None:
            lock = _locks[path] = threading.Lock()
        return lock


def _still_linked(lf, lock_path: Path) -> bool:
    try:
        current = os.stat(lock_path)
    except FileNotFoundError:
        return False
    held = os.fstat(lf.fileno())
    return (held.st_dev, held.st_ino) == (current.st_dev, current.st_ino)


@contextlib.contextmanager
def key_lock(lock_dir: Path, key: str):
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path = lock_dir / f"{key}.lock"
    with _thread_lock(str(lock_path)):
        while True:
            lf = lock_path.open("a+")
            fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
            if _still_linked(lf, lock_path):
                break
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)
            lf.close()
        try:
            yield
        finally:
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)
            lf.close()


def drop_lock(lock_dir: Path, key: str) -> None:
    """Remove the lock file for `key`. Call only while holding key_lock for it."""
    lock_path = lock_dir / f"{key}.lock"
    lock_path.unlink(missing_ok=True)
    with _guard:
        _locks.pop(str(lock_path), None)
