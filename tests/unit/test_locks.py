"""Tests for IssueLock and LockManager — per-issue claim locks."""

import os
import threading

import pytest

from teammate_agents.errors import LockTimeout
from teammate_agents.queue.locks import IssueLock, LockManager


class TestIssueLock:
    def test_acquire_writes_pid(self, tmp_path):
        lock = IssueLock(tmp_path, "issue-1")

        assert lock.try_acquire() is True
        assert lock.pid_file.read_text() == str(os.getpid())

        lock.release()
        assert not lock.lock_path.exists()

    def test_second_holder_times_out(self, tmp_path):
        first = IssueLock(tmp_path, "issue-1")
        first.acquire()

        second = IssueLock(tmp_path, "issue-1", poll_interval=0.01)
        with pytest.raises(LockTimeout) as exc_info:
            second.acquire(timeout=0.05)

        assert exc_info.value.retryable is True
        first.release()

    def test_stale_lock_from_dead_process_is_taken(self, tmp_path):
        stale = tmp_path / "issue-1.lock"
        stale.mkdir()
        (stale / "pid").write_text("999999999")

        lock = IssueLock(tmp_path, "issue-1")

        assert lock.try_acquire() is True
        lock.release()

    def test_invalid_pid_is_stale(self, tmp_path):
        stale = tmp_path / "issue-1.lock"
        stale.mkdir()
        (stale / "pid").write_text("not-a-pid")

        assert IssueLock(tmp_path, "issue-1").try_acquire() is True

    def test_unsafe_characters_in_id(self, tmp_path):
        lock = IssueLock(tmp_path, "epic/1:issue 2")

        assert lock.lock_path.name == "epic_1_issue_2.lock"

    def test_context_manager_releases(self, tmp_path):
        with IssueLock(tmp_path, "issue-1") as lock:
            assert lock.lock_path.exists()

        assert not lock.lock_path.exists()


class TestLockManager:
    def test_in_process_lock_serializes_threads(self):
        manager = LockManager()
        active = []
        overlaps = []

        def worker():
            with manager.lock("issue-1"):
                if active:
                    overlaps.append(True)
                active.append(1)
                threading.Event().wait(0.01)
                active.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []

    def test_different_issues_do_not_block(self):
        manager = LockManager(timeout=0.05)

        with manager.lock("issue-1"):
            with manager.lock("issue-2"):
                pass

    def test_timeout_on_held_issue(self):
        manager = LockManager()
        held = manager.lock("issue-1")
        held.__enter__()
        errors = []

        def contender():
            try:
                with manager.lock("issue-1", timeout=0.05):
                    pass
            except LockTimeout as e:
                errors.append(e)

        t = threading.Thread(target=contender)
        t.start()
        t.join()
        held.__exit__(None, None, None)

        assert len(errors) == 1
        assert errors[0].resource_id == "issue-1"

    def test_file_lock_released_after_use(self, tmp_path):
        manager = LockManager(lock_dir=tmp_path)

        with manager.lock("issue-1"):
            assert (tmp_path / "issue-1.lock").exists()

        assert not (tmp_path / "issue-1.lock").exists()
