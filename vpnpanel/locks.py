"""Named read/write advisory locks shared between panel processes.

Each lock name maps to a small JSON holder document inside the lock
directory.  The document is only ever read and rewritten while an exclusive
``flock`` is held on it, which makes the check-and-set of holders atomic
across processes.  Holders record the owning PID and its start time so that
locks left behind by crashed processes can be reclaimed even after the PID
has been reused, without a heartbeat protocol.

Holders are identified per process *and* thread, so worker threads of the
HTTP service exclude each other exactly like separate CLI invocations do.
Re-acquiring a lock the caller already holds at the same or a stronger mode
succeeds immediately and must be balanced by a matching ``release``.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple, TypeVar
from urllib.parse import quote, unquote

import psutil

from .errors import LockError, LockTimeout

logger = logging.getLogger("vpnpanel.locks")

READ = "read"
WRITE = "write"
_MODE_RANK = {READ: 1, WRITE: 2}

DEFAULT_TIMEOUT = 30.0
DEFAULT_RETRY_INTERVAL = 0.1
DEFAULT_CLEANUP_INTERVAL = 30.0

_LOCK_SUFFIX = ".lock"

T = TypeVar("T")
HolderDocument = Dict[str, Any]


# Tolerance when comparing process start times, which psutil reports with
# clock-tick resolution.
_START_TIME_SLACK = 1.0


def _process_start_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return None


def _holder_alive(entry: Dict[str, Any]) -> bool:
    """Return ``True`` while the process that wrote ``entry`` is still running.

    A reused PID is detected by comparing the recorded start time, or, for
    entries without one, by a process that started after the lock was taken.
    """

    pid = int(entry.get("pid", 0))
    if pid <= 0:
        return False
    try:
        process = psutil.Process(pid)
        if process.status() == psutil.STATUS_ZOMBIE:
            return False
        started = process.create_time()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # The process exists but belongs to another user.
        return True

    recorded = entry.get("started")
    if recorded is not None:
        return abs(started - float(recorded)) <= _START_TIME_SLACK
    return started <= float(entry.get("since", 0.0)) + _START_TIME_SLACK


@dataclass(frozen=True)
class LockHolder:
    owner: str
    pid: int
    since: float

    @staticmethod
    def from_entry(entry: Dict[str, Any]) -> "LockHolder":
        return LockHolder(
            owner=str(entry.get("owner", "")),
            pid=int(entry.get("pid", 0)),
            since=float(entry.get("since", 0.0)),
        )


@dataclass(frozen=True)
class LockInfo:
    """Snapshot of the holders of a named lock."""

    name: str
    writer: Optional[LockHolder]
    readers: Tuple[LockHolder, ...] = ()
    waiting: Tuple[LockHolder, ...] = ()

    @property
    def read_count(self) -> int:
        return len(self.readers)

    @property
    def mode(self) -> Optional[str]:
        if self.writer is not None:
            return WRITE
        if self.readers:
            return READ
        return None

    @property
    def held(self) -> bool:
        return self.mode is not None


@dataclass
class _Holding:
    mode: str
    depth: int = 1


def _empty_document(name: str) -> HolderDocument:
    return {"name": name, "writer": None, "readers": [], "waiting": []}


class LockManager:
    """Acquire, release and inspect named locks stored under ``lock_dir``."""

    def __init__(
        self,
        lock_dir: Path,
        *,
        default_timeout: float = DEFAULT_TIMEOUT,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        writer_preference: bool = True,
        cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL,
    ) -> None:
        self._lock_dir = Path(lock_dir)
        self._lock_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self._lock_dir, 0o700)
        except OSError:  # pragma: no cover - directory owned by another user
            logger.debug("Unable to restrict permissions on %s", self._lock_dir)
        self._default_timeout = default_timeout
        self._retry_interval = retry_interval
        self._writer_preference = writer_preference
        self._cleanup_interval = cleanup_interval
        self._token = secrets.token_hex(6)
        self._started = _process_start_time(os.getpid())
        self._held: Dict[Tuple[str, int], _Holding] = {}
        self._mutex = threading.Lock()
        self._last_cleanup = time.monotonic()
        self.cleanup_stale()

    @property
    def lock_dir(self) -> Path:
        return self._lock_dir

    @property
    def writer_preference(self) -> bool:
        return self._writer_preference

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def acquire(self, name: str, mode: str = WRITE, timeout: Optional[float] = None) -> None:
        """Take ``name`` in ``mode``, raising :class:`LockTimeout` on contention."""

        self._check_arguments(name, mode)
        wait = self._resolve_timeout(timeout)
        key = self._key(name)
        with self._mutex:
            holding = self._held.get(key)
            if holding is not None:
                if _MODE_RANK[holding.mode] >= _MODE_RANK[mode]:
                    holding.depth += 1
                    return
                raise LockError(
                    f"Lock '{name}' is held for reading; call upgrade() to take it for writing"
                )

        self._maybe_cleanup()
        self._acquire_entry(name, mode, wait)
        with self._mutex:
            self._held[key] = _Holding(mode=mode)
        logger.debug("Acquired %s lock '%s'", mode, name)

    def release(self, name: str) -> None:
        """Release one level of ``name``; a no-op when the lock is not held."""

        key = self._key(name)
        with self._mutex:
            holding = self._held.get(key)
            if holding is None:
                return
            holding.depth -= 1
            if holding.depth > 0:
                return
            del self._held[key]

        owner = self._owner()
        self._update(name, lambda doc: self._drop_owner(doc, owner))
        logger.debug("Released %s lock '%s'", holding.mode, name)

    def upgrade(self, name: str, timeout: Optional[float] = None) -> None:
        """Switch a held read lock to write mode.

        The switch releases the read lock before requesting the write lock,
        so another writer may run in between.  Callers must re-read anything
        they looked at under the read lock.  If the write lock cannot be
        obtained the caller holds nothing afterwards.
        """

        self._switch(name, WRITE, timeout)

    def downgrade(self, name: str, timeout: Optional[float] = None) -> None:
        """Switch a held write lock to read mode (release-then-acquire)."""

        self._switch(name, READ, timeout)

    @contextmanager
    def hold(
        self,
        name: str,
        mode: str = WRITE,
        timeout: Optional[float] = None,
    ) -> Generator[None, None, None]:
        self.acquire(name, mode, timeout)
        try:
            yield
        finally:
            self.release(name)

    def held_mode(self, name: str) -> Optional[str]:
        """Return the mode in which the calling thread holds ``name``."""

        with self._mutex:
            holding = self._held.get(self._key(name))
        return holding.mode if holding is not None else None

    def release_all(self) -> None:
        """Release every lock taken through this manager, from any thread."""

        with self._mutex:
            held = list(self._held.items())
            self._held.clear()

        for (name, thread_id), holding in held:
            owner = self._owner(thread_id)
            try:
                self._update(name, lambda doc: self._drop_owner(doc, owner))
            except OSError as exc:
                logger.warning("Failed to release %s lock '%s': %s", holding.mode, name, exc)

    def status(self, name: str) -> LockInfo:
        path = self._path_for(name)
        if not path.exists():
            return LockInfo(name=name, writer=None)

        def _snapshot(doc: HolderDocument) -> LockInfo:
            self._prune(doc)
            return LockInfo(
                name=name,
                writer=LockHolder.from_entry(doc["writer"]) if doc["writer"] else None,
                readers=tuple(LockHolder.from_entry(entry) for entry in doc["readers"]),
                waiting=tuple(LockHolder.from_entry(entry) for entry in doc["waiting"]),
            )

        return self._update(name, _snapshot)

    def list_locks(self) -> List[LockInfo]:
        infos = [self.status(name) for name in self._known_names()]
        return [info for info in infos if info.held or info.waiting]

    def stats(self) -> Dict[str, int]:
        infos = self.list_locks()
        with self._mutex:
            held_here = len(self._held)
        return {
            "total_locks": sum(1 for info in infos if info.held),
            "read_locks": sum(1 for info in infos if info.mode == READ),
            "write_locks": sum(1 for info in infos if info.mode == WRITE),
            "queued_writers": sum(len(info.waiting) for info in infos),
            "held_by_current_process": held_here,
        }

    def cleanup_stale(self) -> int:
        """Drop holders whose owning process has exited; returns the number removed."""

        removed = 0
        for name in self._known_names():
            try:
                removed += self._update(name, self._prune)
            except OSError as exc:
                logger.warning("Unable to inspect lock '%s' for stale holders: %s", name, exc)
        self._last_cleanup = time.monotonic()
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _acquire_entry(self, name: str, mode: str, timeout: float) -> None:
        owner = self._owner()
        deadline = time.monotonic() + timeout
        queued = False
        granted = False

        def _attempt(doc: HolderDocument) -> bool:
            nonlocal queued
            self._prune(doc)
            entry = {"owner": owner, "pid": os.getpid(), "since": time.time(), "started": self._started}
            if mode == READ:
                if doc["writer"] is not None:
                    return False
                if self._writer_preference and any(w["owner"] != owner for w in doc["waiting"]):
                    return False
                doc["readers"].append(entry)
                return True

            if doc["writer"] is None and not doc["readers"]:
                doc["writer"] = entry
                doc["waiting"] = [w for w in doc["waiting"] if w["owner"] != owner]
                return True
            if self._writer_preference and not queued:
                doc["waiting"].append(entry)
                queued = True
            return False

        try:
            while True:
                granted = self._update(name, _attempt)
                if granted:
                    return
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.error("Lock timeout for %s after %g seconds", name, timeout)
                    raise LockTimeout(name, timeout)
                time.sleep(min(self._retry_interval, remaining))
        finally:
            if queued and not granted:
                try:
                    self._update(name, lambda doc: self._drop_owner(doc, owner))
                except OSError as exc:
                    logger.warning("Failed to withdraw queued writer for '%s': %s", name, exc)

    def _switch(self, name: str, mode: str, timeout: Optional[float]) -> None:
        self._check_arguments(name, mode)
        key = self._key(name)
        with self._mutex:
            holding = self._held.get(key)
            if holding is None:
                raise LockError(f"Cannot change mode of lock '{name}': it is not held")
            if holding.mode == mode:
                return
            depth = holding.depth
            del self._held[key]

        owner = self._owner()
        self._update(name, lambda doc: self._drop_owner(doc, owner))
        self._acquire_entry(name, mode, self._resolve_timeout(timeout))
        with self._mutex:
            self._held[key] = _Holding(mode=mode, depth=depth)
        logger.debug("Switched lock '%s' to %s mode", name, mode)

    def _update(self, name: str, mutate: Callable[[HolderDocument], T]) -> T:
        """Run ``mutate`` on the holder document of ``name`` under ``flock``."""

        path = self._path_for(name)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        with os.fdopen(fd, "r+", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                raw = handle.read()
                document = self._parse(name, raw)
                before = json.dumps(document, sort_keys=True)
                result = mutate(document)
                after = json.dumps(document, sort_keys=True)
                if after != before:
                    handle.seek(0)
                    handle.truncate()
                    handle.write(after)
                    handle.flush()
                    os.fsync(handle.fileno())
                return result
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    @staticmethod
    def _parse(name: str, raw: str) -> HolderDocument:
        if not raw.strip():
            return _empty_document(name)
        try:
            loaded = json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable holder state for lock '%s'", name)
            return _empty_document(name)
        if not isinstance(loaded, dict):
            return _empty_document(name)
        document = _empty_document(name)
        writer = loaded.get("writer")
        document["writer"] = writer if isinstance(writer, dict) else None
        for key in ("readers", "waiting"):
            entries = loaded.get(key)
            if isinstance(entries, list):
                document[key] = [entry for entry in entries if isinstance(entry, dict)]
        return document

    @staticmethod
    def _prune(doc: HolderDocument) -> int:
        removed = 0
        writer = doc["writer"]
        if writer is not None and not _holder_alive(writer):
            logger.warning(
                "Cleaned up stale write lock '%s' left by process %s", doc["name"], writer.get("pid")
            )
            doc["writer"] = None
            removed += 1
        for key in ("readers", "waiting"):
            alive = [entry for entry in doc[key] if _holder_alive(entry)]
            dropped = len(doc[key]) - len(alive)
            if dropped:
                logger.warning(
                    "Cleaned up %d orphaned %s entr%s for lock '%s'",
                    dropped,
                    "read" if key == "readers" else "queued writer",
                    "y" if dropped == 1 else "ies",
                    doc["name"],
                )
                doc[key] = alive
                removed += dropped
        return removed

    @staticmethod
    def _drop_owner(doc: HolderDocument, owner: str) -> None:
        writer = doc["writer"]
        if writer is not None and writer.get("owner") == owner:
            doc["writer"] = None
        readers = doc["readers"]
        for index, entry in enumerate(readers):
            if entry.get("owner") == owner:
                del readers[index]
                break
        doc["waiting"] = [entry for entry in doc["waiting"] if entry.get("owner") != owner]

    def _maybe_cleanup(self) -> None:
        if time.monotonic() - self._last_cleanup >= self._cleanup_interval:
            self.cleanup_stale()

    def _known_names(self) -> List[str]:
        names = []
        for path in sorted(self._lock_dir.glob(f"*{_LOCK_SUFFIX}")):
            names.append(unquote(path.name[: -len(_LOCK_SUFFIX)]))
        return names

    def _path_for(self, name: str) -> Path:
        # Lock files are never unlinked: a process blocked in flock() on an
        # unlinked inode would no longer exclude anyone.
        return self._lock_dir / f"{quote(name, safe='')}{_LOCK_SUFFIX}"

    def _owner(self, thread_id: Optional[int] = None) -> str:
        ident = threading.get_ident() if thread_id is None else thread_id
        return f"{os.getpid()}-{self._token}-{ident}"

    @staticmethod
    def _key(name: str) -> Tuple[str, int]:
        return name, threading.get_ident()

    def _resolve_timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self._default_timeout
        return max(0.0, float(timeout))

    @staticmethod
    def _check_arguments(name: str, mode: str) -> None:
        if not name:
            raise LockError("Lock name must not be empty")
        if mode not in _MODE_RANK:
            raise LockError(f"Unknown lock mode '{mode}'")


__all__ = [
    "READ",
    "WRITE",
    "LockHolder",
    "LockInfo",
    "LockManager",
]
