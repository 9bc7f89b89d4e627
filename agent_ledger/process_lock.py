"""
Cross-process ingest lock.

Exactly one process per store may hold the ingest role. The role is an
exclusive OS file lock (``filelock``) acquired without blocking. The lock
file name is derived from the resolved store path, so different stores
never contend.

The OS drops the lock when its holder exits, including on a crash. An
owner record (pid, host, start time) sits next to the lock file for
diagnostics; a record left behind by a dead pid is reported as stale and
replaced by the next holder.
"""

from enum import Enum
from pathlib import Path
from typing import Optional
import hashlib
import json
import logging
import os
import socket

from filelock import FileLock, Timeout

from agent_ledger.config import LedgerConfig
from agent_ledger.errors import IngestLockHeldError
from agent_ledger.ingest.types import utc_now

logger = logging.getLogger("agent_ledger.lock")


class ProcessRole(str, Enum):
    INGEST = "ingest"
    OBSERVER = "observer"


def lock_path_for(store_path: Path | str, lock_dir: Path | str) -> Path:
    """Lock file for a store: ``<lock_dir>/ingest-<sha256(store)[:16]>.lock``."""
    resolved = str(Path(store_path).expanduser().resolve())
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]
    return Path(lock_dir) / f"ingest-{digest}.lock"


def pid_is_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


class IngestLock:
    """Non-blocking exclusive lock on the ingest role for one store."""

    def __init__(self, store_path: Path | str, lock_dir: Path | str):
        self.store_path = Path(store_path).expanduser().resolve()
        self.lock_path = lock_path_for(self.store_path, lock_dir)
        self.owner_path = self.lock_path.with_suffix(".owner.json")
        self._lock = FileLock(str(self.lock_path))

    @property
    def held(self) -> bool:
        return self._lock.is_locked

    @property
    def role(self) -> ProcessRole:
        return ProcessRole.INGEST if self.held else ProcessRole.OBSERVER

    def try_acquire(self) -> bool:
        """Attempt the lock once; True if this process now holds the ingest role."""
        if self.held:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            owner = self.read_owner()
            logger.debug(
                "Ingest lock for %s held by pid %s",
                self.store_path, owner.get("pid") if owner else "unknown",
            )
            return False

        previous = self.read_owner()
        if previous and previous.get("pid") != os.getpid() and not self._owner_alive(previous):
            logger.info(
                "Reclaimed ingest lock for %s from dead process %s",
                self.store_path, previous.get("pid"),
            )
        self._write_owner()
        return True

    def release(self) -> None:
        if not self.held:
            return
        try:
            self.owner_path.unlink()
        except FileNotFoundError:
            pass
        self._lock.release()

    def read_owner(self) -> Optional[dict]:
        """Owner record of the current (or last) holder, if readable."""
        try:
            return json.loads(self.owner_path.read_text())
        except (OSError, ValueError):
            return None

    def owner_is_stale(self) -> bool:
        """True when an owner record exists for a process that is gone."""
        owner = self.read_owner()
        return bool(owner) and not self._owner_alive(owner)

    def _owner_alive(self, owner: dict) -> bool:
        if owner.get("host") not in (None, socket.gethostname()):
            # Cannot check a pid on another host.
            return True
        try:
            return pid_is_alive(int(owner.get("pid", 0)))
        except (TypeError, ValueError):
            return False

    def _write_owner(self) -> None:
        record = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "store_path": str(self.store_path),
            "started_at": utc_now().isoformat(),
        }
        tmp = self.owner_path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record))
        os.replace(tmp, self.owner_path)

    def __enter__(self) -> "IngestLock":
        self.try_acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"IngestLock(store={str(self.store_path)!r}, role={self.role.value})"


def acquire_ingest_role(config: LedgerConfig, dedicated: bool = False) -> IngestLock:
    """
    Try to become the ingest process for ``config``'s store.

    Args:
        config: Store and lock directory
        dedicated: The caller exists only to ingest; contention is fatal

    Returns:
        The lock. ``lock.role`` is OBSERVER when another process holds it.

    Raises:
        IngestLockHeldError: ``dedicated`` and another process holds the role
    """
    lock = IngestLock(config.store_path, config.lock_dir)
    if lock.try_acquire():
        logger.debug("Acquired ingest role for %s", lock.store_path)
        return lock
    if dedicated:
        raise IngestLockHeldError(lock.store_path, lock.read_owner())
    logger.info("Another process is ingesting %s; running read-only", lock.store_path)
    return lock
