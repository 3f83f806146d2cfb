"""Exception hierarchy shared by the lifecycle components."""
from __future__ import annotations

from typing import Iterable, Optional, Tuple


class PanelError(RuntimeError):
    """Base class for every failure surfaced by the panel core.

    ``stage`` names the part of the system that failed so an operator knows
    where manual reconciliation is needed.
    """

    stage = "panel"


class ValidationError(PanelError):
    """Raised when a username, service list, secret or expiry is malformed."""

    stage = "validation"

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(PanelError):
    """Raised when an operation references a username absent from the store."""

    stage = "lookup"

    def __init__(self, username: str) -> None:
        super().__init__(f"User '{username}' does not exist")
        self.username = username


class LockError(PanelError):
    """Raised when the advisory lock API is used incorrectly."""

    stage = "lock"


class LockTimeout(LockError):
    """Raised when a lock could not be obtained before its timeout elapsed."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s waiting for lock '{name}'")
        self.name = name
        self.timeout = timeout


class DbError(PanelError):
    """Raised when the state document cannot be read, validated or replaced."""

    stage = "store"


class BackendError(PanelError):
    """Raised when one or more backend adapter calls failed."""

    def __init__(self, services: str | Iterable[str], message: str) -> None:
        if isinstance(services, str):
            failed: Tuple[str, ...] = (services,)
        else:
            failed = tuple(services)
        super().__init__(message)
        self.services = failed

    @property
    def stage(self) -> str:  # type: ignore[override]
        return ",".join(self.services)

    @property
    def service(self) -> str:
        return self.services[0]


__all__ = [
    "PanelError",
    "ValidationError",
    "NotFoundError",
    "LockError",
    "LockTimeout",
    "DbError",
    "BackendError",
]
