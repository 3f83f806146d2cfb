"""Canonical JSON state document holding every managed user."""
from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, TypeVar

from .errors import DbError, ValidationError
from .locks import READ, WRITE, LockManager
from .models import (
    SERVICES,
    STATUS_ACTIVE,
    STATUSES,
    StateSnapshot,
    StoreMetadata,
    UserRecord,
    utcnow,
)

logger = logging.getLogger("vpnpanel.state")

STATE_LOCK_NAME = "state"

T = TypeVar("T")
Mutator = Callable[[Dict[str, UserRecord]], T]


def resolve_state_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path of the state document."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "users.json").resolve(strict=False)


def recount(users: Mapping[str, UserRecord]) -> tuple[int, int]:
    """Return ``(total, active)`` computed from the user map."""

    active = sum(1 for record in users.values() if record.status == STATUS_ACTIVE)
    return len(users), active


def validate_users(users: Mapping[str, UserRecord]) -> None:
    """Raise ``ValueError`` if the user map would produce an ill-formed document."""

    for key, record in users.items():
        if key != record.username:
            raise ValueError(f"Record stored under '{key}' is named '{record.username}'")
        if record.status not in STATUSES:
            raise ValueError(f"User '{key}' has invalid status '{record.status}'")
        if not record.services:
            raise ValueError(f"User '{key}' has no services")
        unknown = set(record.services) - set(SERVICES)
        if unknown:
            raise ValueError(f"User '{key}' has unknown services: {', '.join(sorted(unknown))}")
        if record.configs_generated < 0:
            raise ValueError(f"User '{key}' has a negative config counter")
        if record.expiry is not None and record.expiry.tzinfo is None:
            raise ValueError(f"User '{key}' has a naive expiry timestamp")


class StateStore:
    """Serialised access to the state document.

    Every mutation runs under the ``state`` write lock and replaces the file
    atomically, so readers only ever see complete revisions.
    """

    def __init__(
        self,
        path: Path,
        locks: LockManager,
        *,
        lock_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._locks = locks
        self._lock_timeout = lock_timeout
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def initialize(self) -> None:
        """Create an empty document if none exists yet."""

        with self._locks.hold(STATE_LOCK_NAME, WRITE, self._lock_timeout):
            if self._path.exists():
                return
            now = self._clock()
            metadata = StoreMetadata(
                total_count=0, active_count=0, created_at=now, updated_at=now, revision=0
            )
            self._replace({}, metadata)
            logger.info("Initialised empty state document at %s", self._path)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def read(self) -> StateSnapshot:
        """Return a snapshot; it may be stale as soon as this returns."""

        with self._locks.hold(STATE_LOCK_NAME, READ, self._lock_timeout):
            users, metadata = self._load()
        return StateSnapshot(users=users, metadata=metadata)

    def get_user(self, username: str) -> Optional[UserRecord]:
        return self.read().users.get(username)

    def user_exists(self, username: str) -> bool:
        return username in self.read().users

    def list_users(
        self,
        *,
        status: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> List[UserRecord]:
        try:
            regex = re.compile(pattern) if pattern else None
        except re.error as exc:
            raise ValidationError(f"Invalid username pattern: {exc}", field="pattern") from exc
        records = sorted(self.read().users.values(), key=lambda record: record.username)
        return [
            record
            for record in records
            if (status is None or record.status == status)
            and (regex is None or regex.search(record.username))
        ]

    def stats(self) -> StoreMetadata:
        return self.read().metadata

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def write(self, mutator: Mutator[T]) -> T:
        """Apply ``mutator`` to the user map and persist the result.

        The mutator receives a private copy of the user map and may insert,
        replace or delete records.  Anything it raises propagates and nothing
        is written.  Counters are recomputed from the resulting map.
        """

        with self._locks.hold(STATE_LOCK_NAME, WRITE, self._lock_timeout):
            users, metadata = self._load()
            working = dict(users)
            result = mutator(working)

            try:
                validate_users(working)
            except ValueError as exc:
                logger.error("Rejected state update: %s", exc)
                raise DbError(f"State update rejected: {exc}") from exc

            total, active = recount(working)
            updated = StoreMetadata(
                total_count=total,
                active_count=active,
                created_at=metadata.created_at,
                updated_at=self._clock(),
                revision=metadata.revision + 1,
            )
            self._replace(working, updated)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load(self) -> tuple[Dict[str, UserRecord], StoreMetadata]:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except FileNotFoundError:
            now = self._clock()
            return {}, StoreMetadata(
                total_count=0, active_count=0, created_at=now, updated_at=now, revision=0
            )
        except (OSError, ValueError) as exc:
            raise DbError(f"Unable to read state document {self._path}: {exc}") from exc

        try:
            raw_users = raw.get("users", {})
            if not isinstance(raw_users, dict):
                raise ValueError("'users' must be an object")
            users = {str(name): UserRecord.from_dict(data) for name, data in raw_users.items()}
            validate_users(users)
            metadata = StoreMetadata.from_dict(raw.get("metadata") or {"created_at": self._clock().isoformat()})
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise DbError(f"State document {self._path} is malformed: {exc}") from exc

        total, active = recount(users)
        if (metadata.total_count, metadata.active_count) != (total, active):
            logger.warning(
                "Stored counters (%s/%s) disagree with records (%s/%s); using recount",
                metadata.total_count,
                metadata.active_count,
                total,
                active,
            )
            metadata = StoreMetadata(
                total_count=total,
                active_count=active,
                created_at=metadata.created_at,
                updated_at=metadata.updated_at,
                revision=metadata.revision,
            )
        return users, metadata

    def _replace(self, users: Mapping[str, UserRecord], metadata: StoreMetadata) -> None:
        document = {
            "users": {name: users[name].to_dict() for name in sorted(users)},
            "metadata": metadata.to_dict(),
        }
        try:
            payload = json.dumps(document, indent=2, sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise DbError(f"State document could not be serialised: {exc}") from exc

        directory = self._path.parent
        fd, staged = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(staged, 0o600)
            os.replace(staged, self._path)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(staged)
            raise DbError(f"Unable to replace state document {self._path}: {exc}") from exc

        # Persist the rename itself; not every filesystem allows fsync on a directory.
        with contextlib.suppress(OSError):
            dir_fd = os.open(directory, os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)


__all__ = ["StateStore", "STATE_LOCK_NAME", "recount", "resolve_state_path", "validate_users"]
