"""Configuration management for the VPN panel."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .models import SERVICE_PROXY, SERVICE_SSH
from .state import resolve_state_path

PROJECT_ROOT = Path(__file__).resolve().parent.parent

RUNNER_LOCAL = "local"
RUNNER_SSH = "ssh"


def _resolve_path(value: object, base_path: Path | None) -> Path:
    raw = Path(str(value)).expanduser()
    if raw.is_absolute():
        return raw.resolve(strict=False)
    if base_path is not None:
        return (base_path / raw).resolve(strict=False)
    return raw.resolve(strict=False)


def _as_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RunnerConfig:
    """Where a backend runs its commands: on this host or over SSH."""

    kind: str = RUNNER_LOCAL
    hostname: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    private_key: Optional[str] = None
    passphrase: Optional[str] = None
    allow_unknown_hosts: bool = False
    known_hosts_file: Optional[Path] = None

    @staticmethod
    def from_dict(data: Mapping[str, object] | None, base_path: Path | None = None) -> "RunnerConfig":
        if not data:
            return RunnerConfig()
        kind = str(data.get("type", RUNNER_LOCAL)).strip().lower()
        if kind not in {RUNNER_LOCAL, RUNNER_SSH}:
            raise ValueError(f"Unknown runner type '{kind}'")
        if kind == RUNNER_LOCAL:
            return RunnerConfig()

        required_fields = {"hostname", "username", "private_key_path"}
        missing = required_fields - data.keys()
        if missing:
            raise ValueError(f"Missing required SSH runner fields: {', '.join(sorted(missing))}")

        known_hosts = data.get("known_hosts_file")
        return RunnerConfig(
            kind=RUNNER_SSH,
            hostname=str(data["hostname"]),
            port=int(data.get("port", 22)),
            username=str(data["username"]),
            private_key=str(_resolve_path(data["private_key_path"], base_path)),
            passphrase=str(data["passphrase"]) if data.get("passphrase") is not None else None,
            allow_unknown_hosts=_as_bool(data.get("allow_unknown_hosts"), False),
            known_hosts_file=_resolve_path(known_hosts, base_path) if known_hosts else None,
        )


@dataclass(frozen=True)
class BackendConfig:
    """Settings of one backend adapter (``ssh`` or ``proxy``)."""

    service: str
    enabled: bool = True
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    timeout: int = 60
    shell: str = "/usr/sbin/nologin"
    home_base: str = "/home/vpn_users"
    config_path: Path = Path("/usr/local/etc/xray/config.json")
    reload_command: Tuple[str, ...] = ("systemctl", "reload", "xray")
    inbound_tags: Tuple[str, ...] = ()

    @staticmethod
    def from_dict(service: str, data: Mapping[str, object] | None, base_path: Path | None = None) -> "BackendConfig":
        if service not in {SERVICE_SSH, SERVICE_PROXY}:
            raise ValueError(f"Unknown backend '{service}'")
        data = data or {}
        defaults = BackendConfig(service=service)

        reload_command = data.get("reload_command", defaults.reload_command)
        if isinstance(reload_command, str):
            reload_command = tuple(reload_command.split())
        tags = data.get("inbound_tags") or ()
        if isinstance(tags, str):
            tags = (tags,)

        return BackendConfig(
            service=service,
            enabled=_as_bool(data.get("enabled"), True),
            runner=RunnerConfig.from_dict(data.get("runner"), base_path),  # type: ignore[arg-type]
            timeout=int(data.get("timeout", defaults.timeout)),
            shell=str(data.get("shell", defaults.shell)),
            home_base=str(data.get("home_base", defaults.home_base)),
            config_path=_resolve_path(data["config_path"], base_path)
            if data.get("config_path")
            else defaults.config_path,
            reload_command=tuple(str(part) for part in reload_command or ()),
            inbound_tags=tuple(str(tag) for tag in tags),
        )


def _default_backends() -> Dict[str, BackendConfig]:
    return {service: BackendConfig(service=service) for service in (SERVICE_SSH, SERVICE_PROXY)}


@dataclass(frozen=True)
class PanelConfig:
    """Top-level panel settings."""

    state_path: Path = resolve_state_path(None)
    lock_dir: Path = PROJECT_ROOT / "data" / "locks"
    audit_db_path: Path = PROJECT_ROOT / "data" / "audit.sqlite3"
    lock_timeout: float = 30.0
    lock_retry_interval: float = 0.1
    writer_preference: bool = True
    expiry_warning_days: int = 7
    backends: Dict[str, BackendConfig] = field(default_factory=_default_backends)
    secret_key: Optional[str] = None
    api_tokens: Tuple[str, ...] = ()

    @staticmethod
    def from_dict(data: Mapping[str, object] | None, base_path: Path | None = None) -> "PanelConfig":
        data = data or {}
        defaults = PanelConfig()

        lock_timeout = float(data.get("lock_timeout", defaults.lock_timeout))  # type: ignore[arg-type]
        if lock_timeout <= 0:
            raise ValueError("lock_timeout must be positive")
        retry_interval = float(data.get("lock_retry_interval", defaults.lock_retry_interval))  # type: ignore[arg-type]
        if retry_interval <= 0:
            raise ValueError("lock_retry_interval must be positive")
        warning_days = int(data.get("expiry_warning_days", defaults.expiry_warning_days))  # type: ignore[arg-type]
        if warning_days < 0:
            raise ValueError("expiry_warning_days must not be negative")

        backends_raw = data.get("backends") or {}
        if not isinstance(backends_raw, Mapping):
            raise ValueError("'backends' must be a mapping of service name to settings")
        unknown = set(backends_raw) - {SERVICE_SSH, SERVICE_PROXY}
        if unknown:
            raise ValueError(f"Unknown backends: {', '.join(sorted(unknown))}")
        backends = {
            service: BackendConfig.from_dict(service, backends_raw.get(service), base_path)
            for service in (SERVICE_SSH, SERVICE_PROXY)
        }

        tokens = data.get("api_tokens") or ()
        if isinstance(tokens, str):
            tokens = tokens.split(",")

        def _path(key: str, default: Path) -> Path:
            value = data.get(key)
            return _resolve_path(value, base_path) if value else default

        return PanelConfig(
            state_path=_path("state_path", defaults.state_path),
            lock_dir=_path("lock_dir", defaults.lock_dir),
            audit_db_path=_path("audit_db_path", defaults.audit_db_path),
            lock_timeout=lock_timeout,
            lock_retry_interval=retry_interval,
            writer_preference=_as_bool(data.get("writer_preference"), True),
            expiry_warning_days=warning_days,
            backends=backends,
            secret_key=str(data["secret_key"]) if data.get("secret_key") else None,
            api_tokens=tuple(str(token).strip() for token in tokens if str(token).strip()),
        )

    def enabled_backends(self) -> Dict[str, BackendConfig]:
        return {name: backend for name, backend in self.backends.items() if backend.enabled}

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> "PanelConfig":
        """Apply ``VPNPANEL_*`` environment variables on top of the file settings."""

        env = os.environ if environ is None else environ
        changes: Dict[str, object] = {}
        if env.get("VPNPANEL_STATE_PATH"):
            changes["state_path"] = resolve_state_path(env["VPNPANEL_STATE_PATH"])
        if env.get("VPNPANEL_LOCK_DIR"):
            changes["lock_dir"] = _resolve_path(env["VPNPANEL_LOCK_DIR"], None)
        if env.get("VPNPANEL_AUDIT_DB"):
            changes["audit_db_path"] = _resolve_path(env["VPNPANEL_AUDIT_DB"], None)
        if env.get("VPNPANEL_SECRET_KEY"):
            changes["secret_key"] = env["VPNPANEL_SECRET_KEY"]
        if env.get("VPNPANEL_API_TOKENS"):
            changes["api_tokens"] = tuple(
                token.strip() for token in env["VPNPANEL_API_TOKENS"].split(",") if token.strip()
            )
        return replace(self, **changes) if changes else self


def load_config(config_path: Path) -> PanelConfig:
    """Load panel settings from a YAML file; a missing file yields defaults."""
    if not config_path.exists():
        return PanelConfig()
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return PanelConfig.from_dict(raw, base_path=config_path.parent)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (PROJECT_ROOT / "config" / "panel.yaml").resolve(strict=False)
    return candidate


__all__ = [
    "BackendConfig",
    "PanelConfig",
    "RunnerConfig",
    "RUNNER_LOCAL",
    "RUNNER_SSH",
    "load_config",
    "resolve_config_path",
]
