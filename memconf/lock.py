"""
Lock Manager — Two-level advisory locks on marker files

Cross-process mutual exclusion for configuration changes and content
migrations.  A lock is a marker file created with O_CREAT|O_EXCL; the
marker's existence and modification time are the whole protocol.  The
JSON body (pid, hostname, timestamp) is diagnostic only.

Scopes:
    global              locks/global.lock
    project:<name>      locks/project-<sanitized name>.lock

Rules (invariant):
    - A global marker held by another process blocks project acquisition.
    - Holding the global lock in this manager lets project requests through.
    - Distinct project locks never block each other.
    - Markers older than STALE_THRESHOLD are abandoned and get removed.
    - Multi-lock requests are acquired in sorted order, all-or-nothing.

Public API:
    LockManager(lock_dir).acquire_global(timeout) -> LockHandle
    LockManager.acquire_project(name, timeout) -> LockHandle
    LockManager.acquire_projects(names, timeout) -> List[LockHandle]
    LockManager.global_lock() / project_lock(name) / project_locks(names)
    get_lock_manager() -> LockManager
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import re
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from memconf.config import resolve_config_dir
from memconf.fileio import FILE_MODE, ensure_private_dir, now_iso

logger = logging.getLogger(__name__)

STALE_THRESHOLD = 120.0  # seconds
RETRY_INTERVAL = 0.1
MAX_RETRY_INTERVAL = 1.0
GLOBAL_TIMEOUT = 60.0
PROJECT_TIMEOUT = 30.0

GLOBAL_SCOPE = "global"
GLOBAL_LOCK_NAME = "global.lock"

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9_-]")


class LockTimeout(TimeoutError):
    """Raised when a lock cannot be acquired before its deadline."""

    def __init__(self, scope: str, timeout: float):
        self.scope = scope
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:g}s waiting for {scope} lock")


def _env_float(name: str, default: float) -> float:
    """Parse float env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        value = float(v)
    except ValueError:
        return default
    return value if value >= 0 else default


def sanitize_lock_name(name: str) -> str:
    """Replace every character outside [a-zA-Z0-9_-] with '_'."""
    return _UNSAFE_NAME.sub("_", name)


def project_scope(name: str) -> str:
    return f"project:{name}"


@dataclass
class LockHandle:
    """A lock held by this manager."""
    scope: str
    path: str
    acquired_at: float = field(default_factory=time.time)


@dataclass
class LockInfo:
    """Advisory content of a marker file."""
    pid: int
    timestamp: str
    hostname: str
    lock_type: str
    project: Optional[str] = None

    def to_dict(self) -> dict:
        d = {
            "pid": self.pid,
            "timestamp": self.timestamp,
            "hostname": self.hostname,
            "lock_type": self.lock_type,
        }
        if self.project is not None:
            d["project"] = self.project
        return d


class LockManager:
    """Acquires and releases global and per-project marker-file locks."""

    def __init__(
        self,
        lock_dir: str,
        *,
        stale_after: float = STALE_THRESHOLD,
        retry_interval: float = RETRY_INTERVAL,
        global_timeout: Optional[float] = None,
        project_timeout: Optional[float] = None,
    ):
        self.lock_dir = lock_dir
        self.stale_after = stale_after
        self.retry_interval = retry_interval
        self.global_timeout = (
            global_timeout if global_timeout is not None
            else _env_float("MEMCONF_LOCK_TIMEOUT", GLOBAL_TIMEOUT)
        )
        self.project_timeout = (
            project_timeout if project_timeout is not None
            else _env_float("MEMCONF_LOCK_TIMEOUT", PROJECT_TIMEOUT)
        )
        self._held: Dict[str, LockHandle] = {}

    # -- paths --------------------------------------------------------------

    @property
    def global_path(self) -> str:
        return os.path.join(self.lock_dir, GLOBAL_LOCK_NAME)

    def project_path(self, name: str) -> str:
        return os.path.join(self.lock_dir, f"project-{sanitize_lock_name(name)}.lock")

    # -- marker primitives --------------------------------------------------

    def _try_create(self, path: str, lock_type: str, project: Optional[str]) -> bool:
        """Exclusive-create the marker. False if it already exists."""
        ensure_private_dir(self.lock_dir)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, FILE_MODE)
        except FileExistsError:
            return False
        info = LockInfo(
            pid=os.getpid(),
            timestamp=now_iso(),
            hostname=socket.gethostname(),
            lock_type=lock_type,
            project=project,
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.to_dict(), f)
        return True

    def _age(self, path: str) -> Optional[float]:
        try:
            return time.time() - os.stat(path).st_mtime
        except FileNotFoundError:
            return None

    def _is_stale(self, path: str) -> bool:
        age = self._age(path)
        return age is not None and age > self.stale_after

    def _remove_if_stale(self, path: str) -> bool:
        """Remove an abandoned marker. True if it was stale (or vanished)."""
        age = self._age(path)
        if age is None:
            return True
        if age <= self.stale_after:
            return False
        # Rename first: only one remover can capture a given marker
        tomb = f"{path}.{os.getpid()}-{uuid.uuid4().hex[:8]}.stale"
        try:
            os.rename(path, tomb)
        except FileNotFoundError:
            return True
        captured_age = self._age(tomb)
        if captured_age is not None and captured_age <= self.stale_after:
            # A new holder replaced the marker after the age check
            self._restore_marker(tomb, path)
            return False
        logger.warning("Removing stale lock %s (age %.0fs)", path, age)
        self._unlink(tomb)
        return True

    def _restore_marker(self, tomb: str, path: str) -> None:
        try:
            os.link(tomb, path)
        except FileExistsError:
            logger.warning("Lock %s re-created while restoring a live marker", path)
        except OSError as e:
            logger.warning("Failed to restore lock %s: %s", path, e)
        self._unlink(tomb)

    def _global_blocked(self) -> bool:
        """True while another holder owns a live global marker."""
        if GLOBAL_SCOPE in self._held:
            return False
        if not os.path.exists(self.global_path):
            return False
        return not self._remove_if_stale(self.global_path)

    def _acquire(
        self,
        scope: str,
        path: str,
        lock_type: str,
        project: Optional[str],
        timeout: float,
    ) -> LockHandle:
        if scope in self._held:
            return self._held[scope]

        deadline = time.monotonic() + timeout
        interval = self.retry_interval
        while True:
            if project is None or not self._global_blocked():
                if self._try_create(path, lock_type, project):
                    if project is not None and self._global_blocked():
                        # Lost the race against a global acquirer
                        self._unlink(path)
                    else:
                        handle = LockHandle(scope=scope, path=path)
                        self._held[scope] = handle
                        logger.debug("Acquired %s lock", scope)
                        return handle
                elif self._remove_if_stale(path):
                    continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeout(scope, timeout)
            time.sleep(min(interval, remaining))
            interval = min(interval * 1.5, MAX_RETRY_INTERVAL)

    def _unlink(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove lock %s: %s", path, e)

    def _release(self, scope: str) -> bool:
        handle = self._held.pop(scope, None)
        if handle is None:
            return False
        self._unlink(handle.path)
        logger.debug("Released %s lock", scope)
        return True

    # -- global -------------------------------------------------------------

    def acquire_global(self, timeout: Optional[float] = None) -> LockHandle:
        """Acquire the global lock.

        Raises:
            LockTimeout: If the lock is not obtained before timeout.
        """
        return self._acquire(
            GLOBAL_SCOPE, self.global_path, "global", None,
            self.global_timeout if timeout is None else timeout,
        )

    def try_acquire_global(self, timeout: Optional[float] = None) -> bool:
        try:
            self.acquire_global(timeout)
        except LockTimeout:
            return False
        return True

    def release_global(self) -> bool:
        return self._release(GLOBAL_SCOPE)

    # -- project ------------------------------------------------------------

    def acquire_project(self, name: str, timeout: Optional[float] = None) -> LockHandle:
        """Acquire the lock for one project.

        Waits while another holder owns the global lock.

        Raises:
            LockTimeout: If the lock is not obtained before timeout.
        """
        return self._acquire(
            project_scope(name), self.project_path(name), "project", name,
            self.project_timeout if timeout is None else timeout,
        )

    def try_acquire_project(self, name: str, timeout: Optional[float] = None) -> bool:
        try:
            self.acquire_project(name, timeout)
        except LockTimeout:
            return False
        return True

    def release_project(self, name: str) -> bool:
        return self._release(project_scope(name))

    def acquire_projects(
        self, names: List[str], timeout: Optional[float] = None,
    ) -> List[LockHandle]:
        """Acquire several project locks in sorted order, all-or-nothing.

        Returns handles in acquisition order.

        Raises:
            LockTimeout: After releasing every lock taken by this call.
        """
        taken: List[str] = []
        handles: List[LockHandle] = []
        try:
            for name in sorted(set(names)):
                already = project_scope(name) in self._held
                handles.append(self.acquire_project(name, timeout))
                if not already:
                    taken.append(name)
        except LockTimeout:
            for name in reversed(taken):
                self.release_project(name)
            raise
        return handles

    def try_acquire_projects(
        self, names: List[str], timeout: Optional[float] = None,
    ) -> bool:
        try:
            self.acquire_projects(names, timeout)
        except LockTimeout:
            return False
        return True

    def release_projects(self, names: List[str]) -> None:
        for name in sorted(set(names), reverse=True):
            self.release_project(name)

    def release_all(self) -> None:
        """Release every lock held by this manager (projects first)."""
        for scope in [s for s in self._held if s != GLOBAL_SCOPE]:
            self._release(scope)
        self._release(GLOBAL_SCOPE)

    # -- queries ------------------------------------------------------------

    def is_global_locked(self) -> bool:
        """True if this manager holds the global lock."""
        return GLOBAL_SCOPE in self._held

    def is_global_lock_held(self) -> bool:
        """True if any process holds a live global marker."""
        return os.path.exists(self.global_path) and not self._is_stale(self.global_path)

    def is_project_locked(self, name: str) -> bool:
        """True if this manager holds the lock for name."""
        return project_scope(name) in self._held

    def is_project_lock_held(self, name: str) -> bool:
        path = self.project_path(name)
        return os.path.exists(path) and not self._is_stale(path)

    def list_held_project_locks(self) -> List[str]:
        prefix = "project:"
        return sorted(s[len(prefix):] for s in self._held if s.startswith(prefix))

    def read_lock_info(self, path: str) -> Optional[LockInfo]:
        """Diagnostic content of a marker, or None if absent/unreadable."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                d = json.load(f)
            return LockInfo(
                pid=int(d["pid"]),
                timestamp=str(d["timestamp"]),
                hostname=str(d.get("hostname", "")),
                lock_type=str(d.get("lock_type", "")),
                project=d.get("project"),
            )
        except (OSError, ValueError, KeyError, TypeError):
            return None

    # -- context managers ---------------------------------------------------

    @contextmanager
    def global_lock(self, timeout: Optional[float] = None) -> Iterator[LockHandle]:
        was_held = self.is_global_locked()
        handle = self.acquire_global(timeout)
        try:
            yield handle
        finally:
            if not was_held:
                self.release_global()

    @contextmanager
    def project_lock(self, name: str, timeout: Optional[float] = None) -> Iterator[LockHandle]:
        was_held = self.is_project_locked(name)
        handle = self.acquire_project(name, timeout)
        try:
            yield handle
        finally:
            if not was_held:
                self.release_project(name)

    @contextmanager
    def project_locks(
        self, names: List[str], timeout: Optional[float] = None,
    ) -> Iterator[List[LockHandle]]:
        fresh = [n for n in set(names) if not self.is_project_locked(n)]
        handles = self.acquire_projects(names, timeout)
        try:
            yield handles
        finally:
            self.release_projects(fresh)


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_default_manager: Optional[LockManager] = None


def _release_default() -> None:
    if _default_manager is not None:
        _default_manager.release_all()


def get_lock_manager(lock_dir: Optional[str] = None) -> LockManager:
    """Process-wide LockManager; locks are released at interpreter exit."""
    global _default_manager
    if _default_manager is None:
        if lock_dir is None:
            lock_dir = os.path.join(resolve_config_dir(), "locks")
        _default_manager = LockManager(lock_dir)
        atexit.register(_release_default)
    return _default_manager
