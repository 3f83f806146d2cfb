import json
import os
import sys
import threading
import time
from pathlib import Path

import psutil
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnpanel.errors import LockError, LockTimeout
from vpnpanel.locks import READ, WRITE, LockManager

DEAD_PID = 999_999_999


@pytest.fixture
def locks(tmp_path: Path) -> LockManager:
    manager = LockManager(tmp_path / "locks", default_timeout=2.0, retry_interval=0.01)
    yield manager
    manager.release_all()


def _in_thread(target, *args):
    outcome = {}

    def _run():
        try:
            outcome["value"] = target(*args)
        except Exception as exc:  # collected for the assertion in the main thread
            outcome["error"] = exc

    thread = threading.Thread(target=_run)
    thread.start()
    return thread, outcome


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_write_lock_excludes_other_holders_within_timeout(locks):
    locks.acquire("user:alice", WRITE)

    started = time.monotonic()
    thread, outcome = _in_thread(locks.acquire, "user:alice", WRITE, 0.2)
    thread.join()
    elapsed = time.monotonic() - started

    assert isinstance(outcome.get("error"), LockTimeout)
    assert elapsed < 1.0
    assert locks.status("user:alice").mode == WRITE


def test_second_contender_succeeds_after_release(locks):
    locks.acquire("user:alice", WRITE)
    acquired = threading.Event()

    def _contend():
        locks.acquire("user:alice", WRITE, 2.0)
        acquired.set()
        locks.release("user:alice")

    thread, outcome = _in_thread(_contend)
    time.sleep(0.1)
    assert not acquired.is_set()
    locks.release("user:alice")
    thread.join()

    assert "error" not in outcome
    assert acquired.is_set()
    assert not locks.status("user:alice").held


def test_separate_managers_exclude_each_other(tmp_path):
    first = LockManager(tmp_path / "locks", retry_interval=0.01)
    second = LockManager(tmp_path / "locks", retry_interval=0.01)

    first.acquire("state", WRITE)
    with pytest.raises(LockTimeout):
        second.acquire("state", WRITE, timeout=0.1)
    first.release("state")
    second.acquire("state", WRITE, timeout=0.5)
    second.release("state")


def test_readers_share_the_lock(locks):
    locks.acquire("state", READ)
    thread, outcome = _in_thread(locks.acquire, "state", READ, 0.5)
    thread.join()

    assert "error" not in outcome
    info = locks.status("state")
    assert info.mode == READ
    assert info.read_count == 2


def test_writer_waits_for_readers(locks):
    locks.acquire("state", READ)
    thread, outcome = _in_thread(locks.acquire, "state", WRITE, 0.2)
    thread.join()
    assert isinstance(outcome.get("error"), LockTimeout)


def test_reentrant_acquire_needs_matching_releases(locks):
    locks.acquire("user:bob", WRITE)
    locks.acquire("user:bob", WRITE)
    locks.acquire("user:bob", READ)

    locks.release("user:bob")
    locks.release("user:bob")
    assert locks.status("user:bob").mode == WRITE

    locks.release("user:bob")
    assert not locks.status("user:bob").held
    assert locks.held_mode("user:bob") is None


def test_write_while_holding_read_requires_upgrade(locks):
    locks.acquire("state", READ)
    with pytest.raises(LockError):
        locks.acquire("state", WRITE)


def test_upgrade_and_downgrade_switch_modes(locks):
    locks.acquire("state", READ)
    locks.upgrade("state")
    assert locks.held_mode("state") == WRITE
    assert locks.status("state").mode == WRITE

    locks.downgrade("state")
    assert locks.held_mode("state") == READ
    info = locks.status("state")
    assert info.mode == READ
    assert info.writer is None

    locks.release("state")
    assert not locks.status("state").held


def test_failed_upgrade_leaves_nothing_held(locks):
    locks.acquire("state", READ)
    thread, outcome = _in_thread(locks.acquire, "state", READ, 0.5)
    thread.join()
    assert "error" not in outcome

    with pytest.raises(LockTimeout):
        locks.upgrade("state", timeout=0.1)
    assert locks.held_mode("state") is None
    assert locks.status("state").read_count == 1


def test_upgrade_requires_a_held_lock(locks):
    with pytest.raises(LockError):
        locks.upgrade("never-taken")


def test_release_of_unheld_lock_is_a_no_op(locks):
    locks.release("never-taken")
    assert not locks.status("never-taken").held


def test_hold_context_manager_releases_on_error(locks):
    with pytest.raises(RuntimeError):
        with locks.hold("user:carol"):
            assert locks.status("user:carol").mode == WRITE
            raise RuntimeError("boom")
    assert not locks.status("user:carol").held


def test_invalid_arguments_are_rejected(locks):
    with pytest.raises(LockError):
        locks.acquire("", WRITE)
    with pytest.raises(LockError):
        locks.acquire("state", "exclusive")


def test_writer_preference_blocks_new_readers(locks):
    locks.acquire("state", READ)
    writer_done = threading.Event()

    def _writer():
        locks.acquire("state", WRITE, 3.0)
        writer_done.set()
        locks.release("state")

    writer, writer_outcome = _in_thread(_writer)
    assert _wait_for(lambda: bool(locks.status("state").waiting))

    reader, reader_outcome = _in_thread(locks.acquire, "state", READ, 0.2)
    reader.join()
    assert isinstance(reader_outcome.get("error"), LockTimeout)

    locks.release("state")
    writer.join()
    assert "error" not in writer_outcome
    assert writer_done.is_set()
    assert locks.status("state").waiting == ()


def test_without_writer_preference_readers_keep_writer_out(tmp_path):
    manager = LockManager(tmp_path / "locks", retry_interval=0.01, writer_preference=False)
    manager.acquire("state", READ)

    writer, writer_outcome = _in_thread(manager.acquire, "state", WRITE, 0.3)
    time.sleep(0.05)
    reader, reader_outcome = _in_thread(manager.acquire, "state", READ, 0.2)
    reader.join()
    writer.join()

    assert "error" not in reader_outcome
    assert isinstance(writer_outcome.get("error"), LockTimeout)
    assert manager.status("state").waiting == ()
    manager.release_all()


def test_timed_out_writer_leaves_the_queue(locks):
    locks.acquire("state", READ)
    writer, outcome = _in_thread(locks.acquire, "state", WRITE, 0.1)
    writer.join()

    assert isinstance(outcome.get("error"), LockTimeout)
    assert locks.status("state").waiting == ()
    # New readers are admitted again once the writer gave up.
    reader, reader_outcome = _in_thread(locks.acquire, "state", READ, 0.2)
    reader.join()
    assert "error" not in reader_outcome


def _plant_stale_holder(lock_dir: Path, name: str, role: str) -> None:
    entry = {"owner": f"{DEAD_PID}-dead-1", "pid": DEAD_PID, "since": 0.0}
    document = {"name": name, "writer": None, "readers": [], "waiting": []}
    if role == "writer":
        document["writer"] = entry
    else:
        document[role].append(entry)
    (lock_dir / f"{name}.lock").write_text(json.dumps(document), encoding="utf-8")


def test_stale_write_marker_is_cleaned(locks):
    _plant_stale_holder(locks.lock_dir, "state", "writer")

    assert locks.cleanup_stale() == 1
    assert not locks.status("state").held


def test_acquire_reclaims_lock_of_dead_process(locks):
    _plant_stale_holder(locks.lock_dir, "state", "writer")

    locks.acquire("state", WRITE, timeout=0.5)
    holder = locks.status("state").writer
    assert holder is not None
    assert holder.pid != DEAD_PID
    locks.release("state")


def test_orphaned_readers_are_cleaned_at_startup(tmp_path):
    lock_dir = tmp_path / "locks"
    lock_dir.mkdir()
    _plant_stale_holder(lock_dir, "state", "readers")

    manager = LockManager(lock_dir)
    assert manager.status("state").read_count == 0


def test_unreadable_holder_state_is_reset(locks):
    (locks.lock_dir / "state.lock").write_text("{not json", encoding="utf-8")
    locks.acquire("state", WRITE, timeout=0.5)
    assert locks.status("state").mode == WRITE
    locks.release("state")


def test_stats_and_release_all(locks):
    locks.acquire("state", READ)
    locks.acquire("user:alice", WRITE)

    stats = locks.stats()
    assert stats == {
        "total_locks": 2,
        "read_locks": 1,
        "write_locks": 1,
        "queued_writers": 0,
        "held_by_current_process": 2,
    }
    assert {info.name for info in locks.list_locks()} == {"state", "user:alice"}

    locks.release_all()
    assert locks.list_locks() == []
    assert locks.stats()["held_by_current_process"] == 0


def test_lock_files_are_never_removed(locks):
    with locks.hold("user:dave"):
        pass
    assert list(locks.lock_dir.glob("*.lock"))


def _plant_holder(lock_dir: Path, name: str, entry: dict) -> None:
    document = {"name": name, "writer": entry, "readers": [], "waiting": []}
    (lock_dir / f"{name}.lock").write_text(json.dumps(document), encoding="utf-8")


def test_reused_pid_with_other_start_time_is_stale(locks):
    started = psutil.Process(os.getpid()).create_time()
    _plant_holder(
        locks.lock_dir,
        "state",
        {"owner": "crashed", "pid": os.getpid(), "since": time.time(), "started": started - 3600},
    )

    assert locks.cleanup_stale() == 1
    locks.acquire("state", WRITE, timeout=0.2)
    locks.release("state")


def test_holder_taken_before_the_process_started_is_stale(locks):
    started = psutil.Process(os.getpid()).create_time()
    _plant_holder(locks.lock_dir, "state", {"owner": "crashed", "pid": os.getpid(), "since": started - 86400})

    assert locks.cleanup_stale() == 1
    assert not locks.status("state").held


def test_live_holder_with_matching_start_time_is_kept(locks):
    started = psutil.Process(os.getpid()).create_time()
    _plant_holder(
        locks.lock_dir,
        "state",
        {"owner": "other-manager", "pid": os.getpid(), "since": time.time(), "started": started},
    )

    assert locks.cleanup_stale() == 0
    with pytest.raises(LockTimeout):
        locks.acquire("state", WRITE, timeout=0.1)
