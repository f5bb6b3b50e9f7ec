"""
Run lock: an exclusive OS-level file lock held for the whole run.

Mutual exclusion comes from ``filelock.FileLock``; the kernel drops the lock
when the owning process exits, so a crashed run never blocks the next one.
The owner's pid is kept in a ``.meta`` file next to the lock for busy
messages. Metadata naming a dead process only produces a warning.
"""
import os
import json
import socket
from contextlib import suppress
from pathlib import Path

from filelock import FileLock, Timeout

from dockerbackup import utils
from dockerbackup.errors import LockBusy
from dockerbackup.utils import get_logger

logger = get_logger(__name__)


def pid_alive(pid):
    """Return True if a process with ``pid`` exists."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


def meta_path(path):
    path = Path(path)
    return path.with_suffix(path.suffix + '.meta')


def read_owner(path):
    """Return the pid recorded for the lock at ``path`` or None if unreadable."""
    try:
        with meta_path(path).open(encoding='utf-8') as handle:
            payload = json.load(handle)
    except (OSError, ValueError):
        return None
    pid = payload.get('pid') if isinstance(payload, dict) else None
    return pid if isinstance(pid, int) else None


class RunLock:
    """Host-local mutual exclusion for one backup target.

    Usage::

        with RunLock('/var/lock/docker-backup.lock'):
            ...
    """

    def __init__(self, path, pid=None):
        self.path = Path(path)
        self.pid = pid or os.getpid()
        self.held = False
        self._lock = FileLock(str(self.path))

    def _note_stale_owner(self):
        owner = read_owner(self.path)
        if owner is not None and owner != self.pid and not pid_alive(owner):
            logger.warning("Lock %s was left by dead process %s, taking it over", self.path, owner)

    def _write_metadata(self):
        payload = {
            'pid': self.pid,
            'hostname': socket.gethostname(),
            'acquired_at': utils.now().isoformat(),
        }
        with meta_path(self.path).open('w', encoding='utf-8') as handle:
            json.dump(payload, handle)
            handle.flush()
            os.fsync(handle.fileno())

    def acquire(self):
        """Acquire the lock without waiting or raise LockBusy with the owning pid."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._note_stale_owner()
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            raise LockBusy(read_owner(self.path) or 0, str(self.path))
        self.held = True
        self._write_metadata()
        logger.debug("Acquired run lock %s (pid %s)", self.path, self.pid)
        return self

    def release(self):
        """Drop the lock and its metadata. Safe to call more than once."""
        if not self.held:
            return
        with suppress(OSError):
            meta_path(self.path).unlink()
        self._lock.release()
        self.held = False
        logger.debug("Released run lock %s", self.path)

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
