from __future__ import annotations

import importlib.util
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnpanel.application import build_panel, load_panel_config
from vpnpanel.backends import BackendResult
from vpnpanel.models import STATUS_EXPIRED, utcnow

SCRIPT_PATH = ROOT / "scripts" / "expire_sweep.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("expire_sweep_script", SCRIPT_PATH)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


class DummyBackend:
    def __init__(self) -> None:
        self.removed = []

    def create_account(self, username, secret, services):
        return BackendResult.success()

    def remove_account(self, username):
        self.removed.append(username)
        return BackendResult.success()

    def set_expiry(self, username, expiry):
        return BackendResult.success()


@pytest.fixture
def environment(tmp_path, monkeypatch):
    monkeypatch.setenv("VPNPANEL_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("VPNPANEL_STATE_PATH", str(tmp_path / "users.json"))
    monkeypatch.setenv("VPNPANEL_LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("VPNPANEL_AUDIT_DB", str(tmp_path / "audit.sqlite3"))
    return tmp_path


def test_sweep_expires_past_due_users(environment, monkeypatch):
    backend = DummyBackend()
    seeded = build_panel(load_panel_config(), backends={"ssh": backend})
    seeded.orchestrator.create("alice", "ssh", 5)

    def _backdate(users):
        users["alice"] = replace(users["alice"], expiry=utcnow() - timedelta(days=1))

    seeded.store.write(_backdate)

    script = _load_script()
    monkeypatch.setattr(script, "build_panel", lambda config: build_panel(config, backends={"ssh": backend}))

    assert script.main([]) == 0
    assert backend.removed == ["alice"]
    assert seeded.store.get_user("alice").status == STATUS_EXPIRED


def test_invalid_configuration_exits_with_two(tmp_path):
    config_path = tmp_path / "panel.yaml"
    config_path.write_text("lock_timeout: 0\n", encoding="utf-8")

    script = _load_script()

    assert script.main(["--config", str(config_path)]) == 2
