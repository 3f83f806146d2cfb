"""Backend adapters that mirror panel users into external systems."""
from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from .models import SERVICE_PROXY, SERVICE_SSH
from .ssh import CommandError, CommandResult, CommandRunner
from .vault import hash_login_password

logger = logging.getLogger("vpnpanel.backends")


@dataclass(frozen=True)
class BackendResult:
    """Outcome of a single adapter call; anything but ``ok`` is a failure."""

    ok: bool
    message: str = ""

    @classmethod
    def success(cls, message: str = "") -> "BackendResult":
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, message: str) -> "BackendResult":
        return cls(ok=False, message=message)


class BackendAdapter(Protocol):
    """Contract every backend implements; calls may fail and are retry-safe."""

    name: str

    def create_account(self, username: str, secret: str, services: FrozenSet[str]) -> BackendResult:
        ...

    def remove_account(self, username: str) -> BackendResult:
        ...

    def set_expiry(self, username: str, expiry: Optional[datetime]) -> BackendResult:
        ...


def _failure_from(result: CommandResult, action: str) -> BackendResult:
    return BackendResult.failure(f"{action} failed: {result.summary()}")


class LoginAccountBackend:
    """Manages system login accounts with the shadow-utils tools."""

    name = SERVICE_SSH

    # Exit statuses documented in useradd(8), userdel(8) and pkill(1).
    _USERADD_EXISTS = 9
    _USERDEL_MISSING = 6
    _USERDEL_IN_USE = 8
    _USERDEL_HOME_NOT_REMOVED = 12
    _PKILL_NO_MATCH = 1

    def __init__(
        self,
        runner: CommandRunner,
        *,
        shell: str = "/usr/sbin/nologin",
        home_base: str = "/home/vpn_users",
        comment: str = "vpnpanel",
        timeout: int = 60,
    ) -> None:
        self._runner = runner
        self._shell = shell
        self._home_base = home_base.rstrip("/") or "/"
        self._comment = comment
        self._timeout = timeout

    def create_account(self, username: str, secret: str, services: FrozenSet[str]) -> BackendResult:
        args = [
            "useradd",
            "--shell",
            self._shell,
            "--home-dir",
            f"{self._home_base}/{username}",
            "--create-home",
            "--comment",
            self._comment,
            "--password",
            hash_login_password(secret),
            username,
        ]
        result = self._runner.run(args, timeout=self._timeout)
        if result.exit_status == self._USERADD_EXISTS:
            return BackendResult.failure(f"Login account '{username}' already exists")
        if not result.ok:
            return _failure_from(result, f"useradd for '{username}'")
        logger.info("Login account created for %s", username)
        return BackendResult.success()

    def remove_account(self, username: str) -> BackendResult:
        result = self._runner.run(["userdel", "--remove", username], timeout=self._timeout)
        if result.exit_status == self._USERDEL_IN_USE:
            return self._force_remove(username)
        return self._userdel_outcome(username, result)

    def _force_remove(self, username: str) -> BackendResult:
        """Terminate the sessions of a logged-in user and delete the account anyway."""

        logger.warning("Login account %s is in use; terminating its processes", username)
        killed = self._runner.run(["pkill", "--signal", "KILL", "--euid", username], timeout=self._timeout)
        if killed.exit_status not in (0, self._PKILL_NO_MATCH):
            logger.warning("pkill for %s failed: %s", username, killed.summary())

        result = self._runner.run(["userdel", "--force", "--remove", username], timeout=self._timeout)
        outcome = self._userdel_outcome(username, result)
        if not outcome.ok:
            return outcome

        lookup = self._runner.run(["id", "-u", username], timeout=self._timeout)
        if lookup.ok:
            return BackendResult.failure(f"Login account '{username}' still exists after forced removal")
        return outcome

    def _userdel_outcome(self, username: str, result: CommandResult) -> BackendResult:
        if result.exit_status == self._USERDEL_MISSING:
            return BackendResult.success("already absent")
        if result.exit_status == self._USERDEL_HOME_NOT_REMOVED:
            logger.warning("Home directory of %s could not be removed", username)
            return BackendResult.success("home directory left behind")
        if not result.ok:
            return _failure_from(result, f"userdel for '{username}'")
        logger.info("Login account removed for %s", username)
        return BackendResult.success()

    def set_expiry(self, username: str, expiry: Optional[datetime]) -> BackendResult:
        if expiry is None:
            value = "-1"
        else:
            value = expiry.astimezone(timezone.utc).strftime("%Y-%m-%d")
        result = self._runner.run(["chage", "-E", value, username], timeout=self._timeout)
        if not result.ok:
            return _failure_from(result, f"chage for '{username}'")
        return BackendResult.success()


XrayConfig = Dict[str, Any]


class ProxyBackend:
    """Maintains client entries in an Xray JSON configuration file.

    The file is edited under its own ``flock`` so concurrent panel processes
    never interleave edits, and the daemon is reloaded after every change.
    """

    name = SERVICE_PROXY

    def __init__(
        self,
        config_path: Path,
        runner: CommandRunner,
        *,
        reload_command: Sequence[str] = ("systemctl", "reload", "xray"),
        inbound_tags: Optional[Iterable[str]] = None,
        timeout: int = 30,
    ) -> None:
        self._config_path = Path(config_path)
        self._lock_path = self._config_path.with_name(self._config_path.name + ".lock")
        self._runner = runner
        self._reload_command = list(reload_command)
        self._inbound_tags = set(inbound_tags) if inbound_tags else None
        self._timeout = timeout

    def create_account(self, username: str, secret: str, services: FrozenSet[str]) -> BackendResult:
        def _add(config: XrayConfig) -> Tuple[bool, BackendResult]:
            inbounds = self._client_lists(config)
            if not inbounds:
                return False, BackendResult.failure("No proxy inbound accepts clients")
            if any(_has_client(clients, username) for clients in inbounds):
                return False, BackendResult.failure(f"Proxy client '{username}' already exists")
            client_id = str(uuid.uuid4())
            for clients in inbounds:
                clients.append({"id": client_id, "email": username, "password": secret, "level": 0})
            return True, BackendResult.success()

        return self._edit(_add, f"add proxy client '{username}'")

    def remove_account(self, username: str) -> BackendResult:
        def _remove(config: XrayConfig) -> Tuple[bool, BackendResult]:
            removed = 0
            for clients in self._client_lists(config):
                kept = [client for client in clients if client.get("email") != username]
                removed += len(clients) - len(kept)
                clients[:] = kept
            if not removed:
                return False, BackendResult.success("already absent")
            return True, BackendResult.success()

        return self._edit(_remove, f"remove proxy client '{username}'")

    def set_expiry(self, username: str, expiry: Optional[datetime]) -> BackendResult:
        # Xray has no notion of expiry; the panel sweep enforces it.  The call
        # still confirms the grant exists so a missing client is reported.
        def _check(config: XrayConfig) -> Tuple[bool, BackendResult]:
            if any(_has_client(clients, username) for clients in self._client_lists(config)):
                return False, BackendResult.success()
            return False, BackendResult.failure(f"Proxy client '{username}' not found")

        return self._edit(_check, f"check proxy client '{username}'")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _client_lists(self, config: XrayConfig) -> List[List[Dict[str, Any]]]:
        lists: List[List[Dict[str, Any]]] = []
        for inbound in config.get("inbounds") or []:
            if not isinstance(inbound, dict):
                continue
            if self._inbound_tags is not None and inbound.get("tag") not in self._inbound_tags:
                continue
            settings = inbound.get("settings")
            if not isinstance(settings, dict):
                continue
            clients = settings.get("clients")
            if isinstance(clients, list):
                lists.append(clients)
        return lists

    def _edit(
        self,
        mutate: Callable[[XrayConfig], Tuple[bool, BackendResult]],
        action: str,
    ) -> BackendResult:
        fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        with os.fdopen(fd, "r+") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                try:
                    original = self._config_path.read_text(encoding="utf-8")
                    config = json.loads(original)
                except (OSError, ValueError) as exc:
                    return BackendResult.failure(f"Unable to read proxy configuration: {exc}")
                if not isinstance(config, dict):
                    return BackendResult.failure("Proxy configuration must be a JSON object")

                changed, outcome = mutate(config)
                if not changed or not outcome.ok:
                    return outcome

                try:
                    self._write(json.dumps(config, indent=2) + "\n")
                except OSError as exc:
                    return BackendResult.failure(f"Unable to write proxy configuration: {exc}")

                reload_failure = self._reload()
                if reload_failure is not None:
                    logger.error("Proxy reload failed after %s; restoring previous configuration", action)
                    try:
                        self._write(original)
                    except OSError as exc:
                        logger.error("Unable to restore proxy configuration: %s", exc)
                    return reload_failure
                return outcome
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def _write(self, payload: str) -> None:
        directory = self._config_path.parent
        fd, staged = tempfile.mkstemp(prefix=f".{self._config_path.name}.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(staged, 0o600)
            os.replace(staged, self._config_path)
        except OSError:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(staged)
            raise

    def _reload(self) -> Optional[BackendResult]:
        if not self._reload_command:
            return None
        try:
            result = self._runner.run(self._reload_command, timeout=self._timeout)
        except CommandError as exc:
            return BackendResult.failure(f"Proxy reload failed: {exc}")
        if not result.ok:
            return _failure_from(result, "Proxy reload")
        return None


def _has_client(clients: List[Dict[str, Any]], username: str) -> bool:
    return any(client.get("email") == username for client in clients)


__all__ = ["BackendAdapter", "BackendResult", "LoginAccountBackend", "ProxyBackend"]
