"""Command runners used by the backend adapters (local shell or SSH)."""
from __future__ import annotations

import logging
import shlex
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Generator, Optional, Protocol, Sequence

import paramiko

logger = logging.getLogger("vpnpanel.ssh")


class CommandError(RuntimeError):
    """Raised when a command could not be executed at all."""


class HostKeyVerificationError(CommandError):
    """Raised when the remote host key is unknown or does not match."""

    def __init__(self, hostname: str, *, port: int | None = None) -> None:
        location = hostname if port is None else f"{hostname}:{port}"
        super().__init__(
            f"Host key verification failed for {location}. Add the host to the configured "
            "known hosts file or set allow_unknown_hosts for this backend."
        )
        self.hostname = hostname
        self.port = port


@dataclass
class CommandResult:
    """Outcome of an executed command."""

    command: Sequence[str]
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def summary(self) -> str:
        output = (self.stderr or self.stdout).strip()
        printable = " ".join(shlex.quote(part) for part in self.command)
        if output:
            return f"'{printable}' exited with status {self.exit_status}: {output}"
        return f"'{printable}' exited with status {self.exit_status}"


class CommandRunner(Protocol):
    def run(self, args: Sequence[str], timeout: int = 60) -> CommandResult:
        ...


class LocalCommandRunner:
    """Runs commands on the panel host itself."""

    def run(self, args: Sequence[str], timeout: int = 60) -> CommandResult:
        logger.debug("Running %s", " ".join(shlex.quote(arg) for arg in args))
        try:
            completed = subprocess.run(
                list(args),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandError(f"Command not found: {args[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(f"Command '{args[0]}' timed out after {timeout} seconds") from exc
        return CommandResult(
            command=list(args),
            exit_status=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


@dataclass
class SSHTarget:
    """Connection parameters for a backend node reached over SSH."""

    hostname: str
    port: int
    username: str
    private_key: str
    passphrase: Optional[str] = None
    allow_unknown_hosts: bool = False
    known_hosts_path: Optional[Path] = None


_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def _load_private_key(private_key: str, passphrase: str | None) -> paramiko.PKey:
    """Load a key given either inline PEM text or a path to a key file."""

    cleaned = private_key.strip()
    inline = "-----BEGIN" in cleaned
    last_error: Exception | None = None
    for key_cls in _KEY_CLASSES:
        try:
            if inline:
                return key_cls.from_private_key(StringIO(cleaned), password=passphrase)
            return key_cls.from_private_key_file(str(Path(cleaned).expanduser()), password=passphrase)
        except FileNotFoundError as exc:
            raise CommandError(f"Private key file not found: {cleaned}") from exc
        except paramiko.PasswordRequiredException as exc:
            raise CommandError("The private key is encrypted and requires a passphrase") from exc
        except paramiko.SSHException as exc:
            last_error = exc
    raise CommandError("Unable to load private key - unsupported format or invalid passphrase") from last_error


class SSHClientFactory:
    """Builds connected paramiko clients for one :class:`SSHTarget`."""

    def __init__(self, target: SSHTarget) -> None:
        self._target = target

    @contextmanager
    def connect(self) -> Generator[paramiko.SSHClient, None, None]:
        client = paramiko.SSHClient()
        if self._target.known_hosts_path:
            client.load_host_keys(str(self._target.known_hosts_path))
        else:
            client.load_system_host_keys()

        if self._target.allow_unknown_hosts:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

        pkey = _load_private_key(self._target.private_key, self._target.passphrase)
        try:
            client.connect(
                hostname=self._target.hostname,
                port=self._target.port,
                username=self._target.username,
                pkey=pkey,
                timeout=20,
                look_for_keys=False,
                allow_agent=False,
            )
            yield client
        except paramiko.AuthenticationException as exc:
            raise CommandError(f"Authentication with {self._target.hostname} failed") from exc
        except paramiko.BadHostKeyException as exc:
            raise HostKeyVerificationError(exc.hostname, port=self._target.port) from exc
        except paramiko.SSHException as exc:
            if "not found in known_hosts" in str(exc):
                raise HostKeyVerificationError(self._target.hostname, port=self._target.port) from exc
            raise CommandError(f"SSH connection to {self._target.hostname} failed: {exc}") from exc
        finally:
            client.close()


class SSHCommandRunner:
    """Executes backend commands on a remote node over SSH."""

    def __init__(self, factory: SSHClientFactory) -> None:
        self._factory = factory

    def run(self, args: Sequence[str], timeout: int = 60) -> CommandResult:
        command = " ".join(shlex.quote(arg) for arg in args)
        with self._factory.connect() as client:
            try:
                _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            except paramiko.SSHException as exc:
                raise CommandError(f"Failed to execute remote command '{args[0]}': {exc}") from exc

            stdout_text = stdout.read().decode("utf-8", errors="replace")
            stderr_text = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()

        return CommandResult(command=list(args), exit_status=exit_status, stdout=stdout_text, stderr=stderr_text)


__all__ = [
    "CommandError",
    "HostKeyVerificationError",
    "CommandResult",
    "CommandRunner",
    "LocalCommandRunner",
    "SSHTarget",
    "SSHClientFactory",
    "SSHCommandRunner",
]
