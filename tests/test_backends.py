import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnpanel.backends import LoginAccountBackend, ProxyBackend
from vpnpanel.ssh import CommandError, CommandResult

SERVICES = frozenset({"ssh", "proxy"})


class DummyRunner:
    def __init__(self, exit_statuses=None, stderr: str = "") -> None:
        self.calls = []
        self._exit_statuses = dict(exit_statuses or {})
        self._stderr = stderr

    def run(self, args, timeout: int = 60) -> CommandResult:
        self.calls.append(list(args))
        status = self._exit_statuses.get(args[0], 0)
        if isinstance(status, list):
            status = status.pop(0) if status else 0
        return CommandResult(
            command=list(args),
            exit_status=status,
            stdout="",
            stderr=self._stderr if status else "",
        )


class ExplodingRunner:
    def run(self, args, timeout: int = 60) -> CommandResult:
        raise CommandError("Command not found: systemctl")


# ----------------------------------------------------------------------
# Login accounts
# ----------------------------------------------------------------------
def test_login_account_created_with_hashed_password():
    runner = DummyRunner()
    backend = LoginAccountBackend(runner, home_base="/home/vpn_users/")

    result = backend.create_account("alice", "plain-secret", SERVICES)

    assert result.ok
    args = runner.calls[0]
    assert args[0] == "useradd"
    assert args[-1] == "alice"
    assert args[args.index("--home-dir") + 1] == "/home/vpn_users/alice"
    assert args[args.index("--shell") + 1] == "/usr/sbin/nologin"
    hashed = args[args.index("--password") + 1]
    assert hashed.startswith("$6$")
    assert "plain-secret" not in args


def test_login_account_existing_user_is_a_failure():
    backend = LoginAccountBackend(DummyRunner({"useradd": 9}))
    result = backend.create_account("alice", "plain-secret", SERVICES)
    assert not result.ok
    assert "already exists" in result.message


def test_login_account_failure_reports_stderr():
    backend = LoginAccountBackend(DummyRunner({"useradd": 1}, stderr="useradd: cannot lock /etc/passwd"))
    result = backend.create_account("alice", "plain-secret", SERVICES)
    assert not result.ok
    assert "cannot lock /etc/passwd" in result.message


@pytest.mark.parametrize("status, ok", [(0, True), (6, True), (12, True), (1, False)])
def test_login_account_removal_tolerates_absence(status, ok):
    runner = DummyRunner({"userdel": status})
    result = LoginAccountBackend(runner).remove_account("alice")
    assert result.ok is ok
    assert runner.calls == [["userdel", "--remove", "alice"]]


def test_logged_in_account_is_removed_after_terminating_sessions():
    runner = DummyRunner({"userdel": [8, 0], "id": 1})

    result = LoginAccountBackend(runner).remove_account("alice")

    assert result.ok
    assert runner.calls == [
        ["userdel", "--remove", "alice"],
        ["pkill", "--signal", "KILL", "--euid", "alice"],
        ["userdel", "--force", "--remove", "alice"],
        ["id", "-u", "alice"],
    ]


def test_forced_removal_that_leaves_the_account_is_a_failure():
    runner = DummyRunner({"userdel": [8, 0], "id": 0})
    result = LoginAccountBackend(runner).remove_account("alice")
    assert not result.ok
    assert "still exists" in result.message


def test_forced_removal_reports_userdel_failure():
    runner = DummyRunner({"userdel": [8, 10], "pkill": 1}, stderr="userdel: cannot open /etc/group")
    result = LoginAccountBackend(runner).remove_account("alice")
    assert not result.ok
    assert "cannot open /etc/group" in result.message
    assert ["id", "-u", "alice"] not in runner.calls


def test_login_account_expiry_uses_chage():
    runner = DummyRunner()
    backend = LoginAccountBackend(runner)

    assert backend.set_expiry("alice", datetime(2025, 4, 1, 23, 30, tzinfo=timezone.utc)).ok
    assert backend.set_expiry("alice", None).ok
    assert runner.calls == [
        ["chage", "-E", "2025-04-01", "alice"],
        ["chage", "-E", "-1", "alice"],
    ]


# ----------------------------------------------------------------------
# Proxy clients
# ----------------------------------------------------------------------
def _write_config(path: Path, clients=None) -> None:
    config = {
        "log": {"loglevel": "warning"},
        "inbounds": [
            {"tag": "vless-in", "protocol": "vless", "settings": {"clients": list(clients or [])}},
            {"tag": "api", "protocol": "dokodemo-door", "settings": {"address": "127.0.0.1"}},
        ],
    }
    path.write_text(json.dumps(config), encoding="utf-8")


def _clients(path: Path):
    config = json.loads(path.read_text(encoding="utf-8"))
    return config["inbounds"][0]["settings"]["clients"]


@pytest.fixture
def proxy_config(tmp_path: Path) -> Path:
    path = tmp_path / "xray" / "config.json"
    path.parent.mkdir()
    _write_config(path)
    return path


def test_proxy_client_added_and_daemon_reloaded(proxy_config):
    runner = DummyRunner()
    backend = ProxyBackend(proxy_config, runner)

    result = backend.create_account("alice", "plain-secret", SERVICES)

    assert result.ok
    clients = _clients(proxy_config)
    assert len(clients) == 1
    assert clients[0]["email"] == "alice"
    assert clients[0]["password"] == "plain-secret"
    assert len(clients[0]["id"]) == 36
    assert runner.calls == [["systemctl", "reload", "xray"]]
    assert json.loads(proxy_config.read_text(encoding="utf-8"))["log"] == {"loglevel": "warning"}


def test_proxy_duplicate_client_is_a_failure(proxy_config):
    runner = DummyRunner()
    backend = ProxyBackend(proxy_config, runner)
    backend.create_account("alice", "plain-secret", SERVICES)

    result = backend.create_account("alice", "other-secret", SERVICES)

    assert not result.ok
    assert len(_clients(proxy_config)) == 1
    assert len(runner.calls) == 1


def test_proxy_removal_is_idempotent(proxy_config):
    runner = DummyRunner()
    backend = ProxyBackend(proxy_config, runner)
    backend.create_account("alice", "plain-secret", SERVICES)

    assert backend.remove_account("alice").ok
    assert _clients(proxy_config) == []
    second = backend.remove_account("alice")
    assert second.ok
    assert second.message == "already absent"
    assert len(runner.calls) == 2


def test_proxy_reload_failure_restores_previous_config(proxy_config):
    before = proxy_config.read_text(encoding="utf-8")
    backend = ProxyBackend(proxy_config, DummyRunner({"systemctl": 1}, stderr="Job failed"))

    result = backend.create_account("alice", "plain-secret", SERVICES)

    assert not result.ok
    assert "Job failed" in result.message
    assert proxy_config.read_text(encoding="utf-8") == before


def test_proxy_reload_command_error_is_a_failure(proxy_config):
    backend = ProxyBackend(proxy_config, ExplodingRunner())
    result = backend.create_account("alice", "plain-secret", SERVICES)
    assert not result.ok
    assert _clients(proxy_config) == []


def test_proxy_without_reload_command(proxy_config):
    runner = DummyRunner()
    backend = ProxyBackend(proxy_config, runner, reload_command=())
    assert backend.create_account("alice", "plain-secret", SERVICES).ok
    assert runner.calls == []


def test_proxy_set_expiry_checks_client_presence(proxy_config):
    backend = ProxyBackend(proxy_config, DummyRunner())
    assert not backend.set_expiry("alice", None).ok
    backend.create_account("alice", "plain-secret", SERVICES)
    assert backend.set_expiry("alice", None).ok


def test_proxy_inbound_tags_limit_edits(proxy_config):
    backend = ProxyBackend(proxy_config, DummyRunner(), inbound_tags=["trojan-in"])
    result = backend.create_account("alice", "plain-secret", SERVICES)
    assert not result.ok
    assert "No proxy inbound" in result.message


def test_proxy_unreadable_config_is_a_failure(tmp_path):
    missing = tmp_path / "absent.json"
    backend = ProxyBackend(missing, DummyRunner())
    result = backend.remove_account("alice")
    assert not result.ok
    assert "Unable to read proxy configuration" in result.message
