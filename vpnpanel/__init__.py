"""User lifecycle management for the VPN panel."""

from __future__ import annotations

from typing import Any

from .errors import BackendError, DbError, LockError, LockTimeout, NotFoundError, PanelError, ValidationError
from .locks import READ, WRITE, LockManager
from .orchestrator import LifecycleOrchestrator
from .state import StateStore


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP API application."""

    from .application import create_application as _create_application

    return _create_application(*args, **kwargs)


__all__ = [
    "BackendError",
    "DbError",
    "LifecycleOrchestrator",
    "LockError",
    "LockManager",
    "LockTimeout",
    "NotFoundError",
    "PanelError",
    "READ",
    "StateStore",
    "ValidationError",
    "WRITE",
    "create_app",
]
