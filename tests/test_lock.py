"""
Tests for memconf.lock — marker-file locks.

"Another process" is simulated by writing a marker file directly, which
is exactly what a foreign holder leaves on disk.
"""

import json
import os
import time
import pytest

from memconf.lock import (
    LockManager,
    LockTimeout,
    get_lock_manager,
    sanitize_lock_name,
)


@pytest.fixture
def lock_dir(tmp_path):
    return str(tmp_path / "locks")


@pytest.fixture
def mgr(lock_dir):
    m = LockManager(lock_dir, retry_interval=0.01)
    yield m
    m.release_all()


def _foreign_marker(path, age=0.0):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        json.dump({"pid": 999999, "timestamp": "x", "hostname": "other", "lock_type": "global"}, f)
    if age:
        past = time.time() - age
        os.utime(path, (past, past))


class TestGlobalLock:
    def test_acquire_release(self, mgr):
        handle = mgr.acquire_global()
        assert handle.scope == "global"
        assert os.path.exists(mgr.global_path)
        assert mgr.is_global_locked()
        assert mgr.release_global()
        assert not os.path.exists(mgr.global_path)
        assert not mgr.is_global_locked()

    def test_marker_content(self, mgr):
        mgr.acquire_global()
        info = mgr.read_lock_info(mgr.global_path)
        assert info.pid == os.getpid()
        assert info.lock_type == "global"

    def test_marker_mode(self, mgr):
        mgr.acquire_global()
        assert os.stat(mgr.global_path).st_mode & 0o777 == 0o600

    def test_reacquire_same_manager(self, mgr):
        first = mgr.acquire_global()
        assert mgr.acquire_global(timeout=0) is first

    def test_contended_between_managers(self, mgr, lock_dir):
        other = LockManager(lock_dir, retry_interval=0.01)
        mgr.acquire_global()
        with pytest.raises(LockTimeout) as exc:
            other.acquire_global(timeout=0.1)
        assert exc.value.scope == "global"
        assert not other.try_acquire_global(timeout=0)

    def test_release_unheld(self, mgr):
        assert not mgr.release_global()

    def test_held_by_any_process(self, mgr):
        _foreign_marker(mgr.global_path)
        assert mgr.is_global_lock_held()
        assert not mgr.is_global_locked()


class TestStaleLocks:
    def test_stale_global_removed(self, mgr):
        _foreign_marker(mgr.global_path, age=500)
        assert not mgr.is_global_lock_held()
        mgr.acquire_global(timeout=0)
        assert mgr.read_lock_info(mgr.global_path).pid == os.getpid()

    def test_stale_project_removed(self, mgr):
        _foreign_marker(mgr.project_path("alpha"), age=500)
        mgr.acquire_project("alpha", timeout=0)
        assert mgr.is_project_locked("alpha")

    def test_stale_global_does_not_block_projects(self, mgr):
        _foreign_marker(mgr.global_path, age=500)
        mgr.acquire_project("alpha", timeout=0)
        assert not os.path.exists(mgr.global_path)

    def test_marker_replaced_after_age_check_survives(self, mgr, lock_dir, monkeypatch):
        """A marker re-created between the age check and removal is kept."""
        holder = LockManager(lock_dir)
        holder.acquire_global()
        real_age = mgr._age
        monkeypatch.setattr(
            mgr, "_age", lambda p: 10_000.0 if p == mgr.global_path else real_age(p)
        )
        assert not mgr._remove_if_stale(mgr.global_path)
        assert os.listdir(lock_dir) == ["global.lock"]
        assert mgr.read_lock_info(mgr.global_path).pid == os.getpid()
        assert holder.is_global_lock_held()
        holder.release_all()

    def test_stale_marker_leaves_no_tombstone(self, mgr, lock_dir):
        _foreign_marker(mgr.project_path("alpha"), age=500)
        assert mgr._remove_if_stale(mgr.project_path("alpha"))
        assert os.listdir(lock_dir) == []

    def test_fresh_marker_not_stale(self, lock_dir):
        m = LockManager(lock_dir, stale_after=60, retry_interval=0.01)
        _foreign_marker(m.project_path("alpha"), age=10)
        assert not m.try_acquire_project("alpha", timeout=0.05)


class TestProjectLocks:
    def test_distinct_projects_coexist(self, mgr):
        mgr.acquire_project("alpha")
        mgr.acquire_project("bravo")
        assert mgr.list_held_project_locks() == ["alpha", "bravo"]
        assert os.path.exists(mgr.project_path("alpha"))
        assert os.path.exists(mgr.project_path("bravo"))

    def test_foreign_global_blocks_project(self, mgr):
        _foreign_marker(mgr.global_path)
        start = time.monotonic()
        with pytest.raises(LockTimeout) as exc:
            mgr.acquire_project("alpha", timeout=0.2)
        assert time.monotonic() - start >= 0.2
        assert exc.value.scope == "project:alpha"
        assert not os.path.exists(mgr.project_path("alpha"))

    def test_own_global_allows_project(self, mgr):
        mgr.acquire_global()
        mgr.acquire_project("alpha", timeout=0)
        assert mgr.is_project_locked("alpha")

    def test_same_project_contended(self, mgr, lock_dir):
        other = LockManager(lock_dir, retry_interval=0.01)
        mgr.acquire_project("alpha")
        assert not other.try_acquire_project("alpha", timeout=0.05)
        assert other.try_acquire_project("bravo", timeout=0)
        other.release_all()

    def test_name_sanitized(self, mgr, lock_dir):
        path = mgr.project_path("../../etc/passwd")
        assert os.path.dirname(path) == lock_dir
        assert os.path.basename(path) == "project-______etc_passwd.lock"

    def test_sanitize(self):
        assert sanitize_lock_name("my project!") == "my_project_"
        assert sanitize_lock_name("ok-name_1") == "ok-name_1"

    def test_held_by_any_process(self, mgr):
        _foreign_marker(mgr.project_path("alpha"))
        assert mgr.is_project_lock_held("alpha")
        assert not mgr.is_project_locked("alpha")


class TestMultiLock:
    def test_sorted_order(self, mgr, monkeypatch):
        order = []
        real = mgr.acquire_project

        def record(name, timeout=None):
            order.append(name)
            return real(name, timeout)

        monkeypatch.setattr(mgr, "acquire_project", record)
        handles = mgr.acquire_projects(["charlie", "alpha", "bravo"])
        assert order == ["alpha", "bravo", "charlie"]
        assert [h.scope for h in handles] == [
            "project:alpha", "project:bravo", "project:charlie",
        ]

    def test_duplicates_collapsed(self, mgr):
        handles = mgr.acquire_projects(["alpha", "alpha"])
        assert len(handles) == 1

    def test_all_or_nothing(self, mgr):
        _foreign_marker(mgr.project_path("bravo"))
        with pytest.raises(LockTimeout):
            mgr.acquire_projects(["charlie", "alpha", "bravo"], timeout=0.05)
        assert mgr.list_held_project_locks() == []
        assert not os.path.exists(mgr.project_path("alpha"))
        assert not os.path.exists(mgr.project_path("charlie"))

    def test_failure_keeps_previously_held(self, mgr):
        mgr.acquire_project("alpha")
        _foreign_marker(mgr.project_path("bravo"))
        assert not mgr.try_acquire_projects(["alpha", "bravo"], timeout=0.05)
        assert mgr.list_held_project_locks() == ["alpha"]

    def test_release_all(self, mgr):
        mgr.acquire_global()
        mgr.acquire_projects(["a", "b"])
        mgr.release_all()
        assert mgr.list_held_project_locks() == []
        assert not mgr.is_global_locked()
        assert os.listdir(mgr.lock_dir) == []


class TestContextManagers:
    def test_global_lock(self, mgr):
        with mgr.global_lock():
            assert mgr.is_global_locked()
        assert not mgr.is_global_locked()

    def test_project_lock_released_on_error(self, mgr):
        with pytest.raises(RuntimeError):
            with mgr.project_lock("alpha"):
                raise RuntimeError("boom")
        assert not mgr.is_project_locked("alpha")

    def test_project_locks_keep_outer(self, mgr):
        mgr.acquire_project("alpha")
        with mgr.project_locks(["alpha", "bravo"]):
            assert mgr.list_held_project_locks() == ["alpha", "bravo"]
        assert mgr.list_held_project_locks() == ["alpha"]


class TestEnvironment:
    def test_timeout_from_env(self, lock_dir, monkeypatch):
        monkeypatch.setenv("MEMCONF_LOCK_TIMEOUT", "7")
        m = LockManager(lock_dir)
        assert m.global_timeout == 7.0
        assert m.project_timeout == 7.0

    def test_bad_env_ignored(self, lock_dir, monkeypatch):
        monkeypatch.setenv("MEMCONF_LOCK_TIMEOUT", "soon")
        m = LockManager(lock_dir)
        assert m.global_timeout == 60.0
        assert m.project_timeout == 30.0


class TestProcessWide:
    def test_singleton(self, lock_dir, monkeypatch):
        import memconf.lock as lock_mod
        monkeypatch.setattr(lock_mod, "_default_manager", None)
        a = get_lock_manager(lock_dir)
        b = get_lock_manager()
        assert a is b
        assert a.lock_dir == lock_dir
