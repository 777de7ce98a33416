import json
import os
import sys
from datetime import datetime, timedelta

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from execution_lock import ExecutionLock, LockHeldError


def test_acquire_and_release(tmp_path):
    lock = ExecutionLock("reconciliation", lock_dir=str(tmp_path))
    assert lock.acquire_lock("p1", {"command": "reconcile"})
    assert not lock.acquire_lock("p2")
    assert lock.get_lock_info()["metadata"] == {"command": "reconcile"}

    assert not lock.release_lock("p2")
    assert lock.release_lock("p1")
    assert lock.get_lock_info() is None
    assert lock.acquire_lock("p2")


def test_stale_lock_is_taken_over(tmp_path):
    lock = ExecutionLock("reconciliation", timeout=60, lock_dir=str(tmp_path))
    with open(lock.lock_file, "w", encoding="utf-8") as f:
        json.dump({"process_id": "old", "timestamp": (datetime.now() - timedelta(hours=2)).isoformat()}, f)
    assert lock.acquire_lock("new")
    assert lock.get_lock_info()["process_id"] == "new"


def test_corrupt_lock_file_is_ignored(tmp_path):
    lock = ExecutionLock("reconciliation", lock_dir=str(tmp_path))
    with open(lock.lock_file, "w", encoding="utf-8") as f:
        f.write("{not json")
    assert lock.acquire_lock("p1")


def test_hold_context_manager(tmp_path, monkeypatch):
    monkeypatch.setenv("RECON_LOCK_DIR", str(tmp_path))
    lock = ExecutionLock("reconciliation")
    assert lock.lock_file.startswith(str(tmp_path))

    with lock.hold("p1"):
        with pytest.raises(LockHeldError):
            with ExecutionLock("reconciliation").hold("p2"):
                pass
    assert lock.get_lock_info() is None
