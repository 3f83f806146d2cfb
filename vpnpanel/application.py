"""Wiring of the panel components from a :class:`PanelConfig`."""
from __future__ import annotations

import atexit
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Dict, Mapping, Optional

from .audit import SqliteAuditSink
from .backends import BackendAdapter, LoginAccountBackend, ProxyBackend
from .config import RUNNER_SSH, BackendConfig, PanelConfig, RunnerConfig, load_config, resolve_config_path
from .locks import LockManager
from .models import SERVICE_SSH
from .orchestrator import LifecycleOrchestrator
from .ssh import CommandRunner, LocalCommandRunner, SSHClientFactory, SSHCommandRunner, SSHTarget
from .state import StateStore
from .vault import SecretVault

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger("vpnpanel.application")


@dataclass
class Panel:
    """Every long-lived component of one panel process."""

    config: PanelConfig
    locks: LockManager
    store: StateStore
    audit: SqliteAuditSink
    orchestrator: LifecycleOrchestrator


def load_panel_config(config_path: Optional[str] = None) -> PanelConfig:
    path = resolve_config_path(config_path or os.getenv("VPNPANEL_CONFIG"))
    config = load_config(path)
    logger.debug("Loaded configuration from %s", path)
    return config.with_env_overrides()


def build_runner(runner: RunnerConfig) -> CommandRunner:
    if runner.kind != RUNNER_SSH:
        return LocalCommandRunner()
    target = SSHTarget(
        hostname=str(runner.hostname),
        port=runner.port,
        username=str(runner.username),
        private_key=str(runner.private_key),
        passphrase=runner.passphrase,
        allow_unknown_hosts=runner.allow_unknown_hosts,
        known_hosts_path=runner.known_hosts_file,
    )
    return SSHCommandRunner(SSHClientFactory(target))


def build_backend(backend: BackendConfig) -> BackendAdapter:
    runner = build_runner(backend.runner)
    if backend.service == SERVICE_SSH:
        return LoginAccountBackend(
            runner,
            shell=backend.shell,
            home_base=backend.home_base,
            timeout=backend.timeout,
        )
    return ProxyBackend(
        backend.config_path,
        runner,
        reload_command=backend.reload_command,
        inbound_tags=backend.inbound_tags or None,
        timeout=backend.timeout,
    )


def build_panel(
    config: Optional[PanelConfig] = None,
    *,
    backends: Optional[Mapping[str, BackendAdapter]] = None,
) -> Panel:
    """Create and initialise the lock manager, store, audit sink and orchestrator."""

    if config is None:
        config = load_panel_config()

    locks = LockManager(
        config.lock_dir,
        default_timeout=config.lock_timeout,
        retry_interval=config.lock_retry_interval,
        writer_preference=config.writer_preference,
    )
    atexit.register(locks.release_all)

    store = StateStore(config.state_path, locks, lock_timeout=config.lock_timeout)
    store.initialize()

    audit = SqliteAuditSink(config.audit_db_path)
    audit.initialize()

    if backends is None:
        adapters: Dict[str, BackendAdapter] = {
            name: build_backend(backend) for name, backend in config.enabled_backends().items()
        }
    else:
        adapters = dict(backends)

    orchestrator = LifecycleOrchestrator(
        store,
        locks,
        adapters,
        audit,
        vault=SecretVault(config.secret_key or ""),
        lock_timeout=config.lock_timeout,
        warning_window=timedelta(days=config.expiry_warning_days),
    )
    return Panel(config=config, locks=locks, store=store, audit=audit, orchestrator=orchestrator)


def create_application(panel: Optional[Panel] = None) -> "FastAPI":
    """Create the ASGI application served by ``main.py serve``."""

    from .api import create_app

    if panel is None:
        panel = build_panel()
    app = create_app(panel.orchestrator, tokens=panel.config.api_tokens, audit=panel.audit)
    app.state.panel = panel
    return app


__all__ = [
    "Panel",
    "build_backend",
    "build_panel",
    "build_runner",
    "create_application",
    "load_panel_config",
]
