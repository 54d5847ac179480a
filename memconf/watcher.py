"""
Config Watcher — Debounced reconfiguration on config file changes

Observes the config directory with watchdog and drives one
reconfiguration pass per burst of changes:

    load + validate  →  diff against last config  →  snapshot previous
    →  relocate content (if required)  →  sync backend  →  mark as good

An invalid config emits validation_error and, with auto_rollback,
reverts to Last-Known-Good.

Debounce state machine:
    idle ──notify_change──▶ armed ──timer / flush──▶ running ──▶ idle
    running + end_migration with a queued change ──▶ running (one replay)

While a migration is in progress (begin_migration), passes are not run;
the change is remembered and end_migration replays it exactly once, no
matter how many changes were queued.  At most one pass runs at a time.

Public API:
    ConfigWatcher(store, rollback, ...).start() / .stop()
    .notify_change() / .flush()
    .begin_migration() / .end_migration()
    .subscribe(callback) -> unsubscribe
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from memconf.config import (
    CONFIG_FILENAME,
    ConfigIOError,
    ConfigParseError,
    ConfigStore,
    MemoryConfig,
    ValidationError,
    configure_logging,
)
from memconf.diff import ConfigDiff, detect_config_diff, summarize_config_diff
from memconf.fileio import ensure_private_dir, now_iso
from memconf.paths import PathRejected
from memconf.relocate import ContentRelocator, RelocationError
from memconf.rollback import RollbackManager, RollbackResult

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 2000

WATCHER_STATES = ("stopped", "starting", "running", "error")
EVENT_TYPES = ("change", "error", "validation_error", "rollback", "reconfigure")

SyncCallback = Callable[[MemoryConfig], Any]


def _env_int(name: str, default: int) -> int:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        value = int(v)
    except ValueError:
        return default
    return value if value >= 0 else default


@dataclass
class WatcherEvent:
    type: str
    message: str
    timestamp: str = field(default_factory=now_iso)
    config: Optional[MemoryConfig] = None
    diff: Optional[ConfigDiff] = None
    error: Optional[BaseException] = None
    rollback_result: Optional[RollbackResult] = None


EventCallback = Callable[[WatcherEvent], Any]


class _ConfigFileHandler(FileSystemEventHandler):
    """Forwards events touching the config file to the watcher."""

    def __init__(self, watcher: ConfigWatcher, filename: str):
        super().__init__()
        self.watcher = watcher
        self.filename = filename

    def _matches(self, path) -> bool:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return os.path.basename(path) == self.filename

    def on_created(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.watcher.notify_change()

    def on_modified(self, event):
        if not event.is_directory and self._matches(event.src_path):
            self.watcher.notify_change()

    def on_moved(self, event):
        # Atomic saves land as a rename onto the config file
        if not event.is_directory and self._matches(event.dest_path):
            self.watcher.notify_change()


class ConfigWatcher:
    """Watches the config file and runs debounced reconfiguration passes."""

    def __init__(
        self,
        store: ConfigStore,
        rollback: RollbackManager,
        *,
        sync: Optional[SyncCallback] = None,
        relocator: Optional[ContentRelocator] = None,
        debounce_ms: Optional[int] = None,
        auto_rollback: bool = True,
        auto_sync: bool = True,
        on_event: Optional[EventCallback] = None,
        observer_factory: Callable[[], Any] = Observer,
    ):
        self.store = store
        self.rollback = rollback
        self.sync = sync
        self.relocator = relocator
        self.debounce_ms = (
            debounce_ms if debounce_ms is not None
            else _env_int("MEMCONF_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS)
        )
        self.auto_rollback = auto_rollback
        self.auto_sync = auto_sync
        self._observer_factory = observer_factory
        self._subscribers: List[EventCallback] = [on_event] if on_event else []

        self._state = "stopped"
        self._observer: Any = None
        self._last_config: Optional[MemoryConfig] = None

        self._mutex = threading.Lock()
        self._pass_lock = threading.RLock()
        self._pass_owner: Optional[int] = None
        self._timer: Optional[threading.Timer] = None
        self._phase = "idle"  # idle | armed | running
        self._migrating = False
        self._pending_change = False
        self._replay_requested = False

    # -- events -------------------------------------------------------------

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event: WatcherEvent) -> None:
        if event.type == "error":
            logger.error("%s", event.message)
        else:
            logger.debug("Watcher event %s: %s", event.type, event.message)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Watcher subscriber failed on %s event", event.type)

    # -- lifecycle ----------------------------------------------------------

    def get_state(self) -> str:
        return self._state

    def get_last_config(self) -> Optional[MemoryConfig]:
        return self._last_config.copy() if self._last_config else None

    @property
    def phase(self) -> str:
        return self._phase

    def start(self) -> None:
        """Load the baseline and begin observing. Idempotent."""
        if self._state == "running":
            return
        self._state = "starting"
        try:
            try:
                current: Optional[MemoryConfig] = self.store.load()
            except (ConfigIOError, ConfigParseError, ValidationError) as e:
                logger.warning("Current config unusable at start: %s", e)
                current = None
            if not self.rollback.is_initialized():
                self.rollback.initialize(current)
            self._last_config = current if current is not None else MemoryConfig()

            ensure_private_dir(self.store.config_dir)
            observer = self._observer_factory()
            observer.schedule(
                _ConfigFileHandler(self, CONFIG_FILENAME),
                self.store.config_dir,
                recursive=False,
            )
            observer.start()
            self._observer = observer
        except Exception as e:
            self._state = "error"
            self._emit(WatcherEvent("error", "Failed to start config watcher", error=e))
            raise

        self._state = "running"
        self._emit(WatcherEvent(
            "change", f"Config watcher started for {self.store.config_path}",
        ))

    def stop(self) -> None:
        """Cancel any armed pass and release the observer. Idempotent."""
        with self._mutex:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._phase == "armed":
                self._phase = "idle"
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        was_running = self._state != "stopped"
        self._state = "stopped"
        if was_running:
            self._emit(WatcherEvent("change", "Config watcher stopped"))

    # -- debounce -----------------------------------------------------------

    def notify_change(self) -> None:
        """(Re)arm the debounce timer."""
        with self._mutex:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_ms / 1000.0, self._on_timer)
            timer.daemon = True
            self._timer = timer
            if self._phase != "running":
                self._phase = "armed"
            timer.start()

    def _on_timer(self) -> None:
        with self._mutex:
            if self._timer is None or threading.current_thread() is not self._timer:
                return
            self._timer = None
        self._process()

    def flush(self) -> bool:
        """Run an armed pass now. Returns True if one was pending."""
        with self._mutex:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
        self._process()
        return True

    # -- migration gate -----------------------------------------------------

    def is_migration_in_progress(self) -> bool:
        return self._migrating

    def begin_migration(self) -> None:
        """Queue config changes instead of processing them."""
        with self._mutex:
            self._migrating = True

    def end_migration(self) -> None:
        """Leave migration mode; replay the latest queued change once."""
        with self._mutex:
            self._migrating = False
            replay = self._pending_change
            self._pending_change = False
            if replay and self._phase == "running":
                self._replay_requested = True
                return
        if replay:
            self._process()

    # -- reconfiguration ----------------------------------------------------

    def _run_pass(self) -> None:
        try:
            self._reconfigure()
        except Exception as e:
            self._emit(WatcherEvent("error", "Error processing config change", error=e))

    def _process(self) -> None:
        with self._pass_lock:
            # Re-entered from inside a pass (e.g. a flush during relocation)
            if self._pass_owner == threading.get_ident():
                self._run_pass()
                return
            self._pass_owner = threading.get_ident()
            try:
                while True:
                    with self._mutex:
                        self._phase = "running"
                        self._replay_requested = False
                    self._run_pass()
                    with self._mutex:
                        if not self._replay_requested:
                            self._phase = "armed" if self._timer is not None else "idle"
                            return
            finally:
                self._pass_owner = None

    def _reconfigure(self) -> None:
        with self._mutex:
            if self._migrating:
                self._pending_change = True
                queued = True
            else:
                queued = False
        if queued:
            self._emit(WatcherEvent(
                "change", "Config change detected during migration, queued for later",
            ))
            return

        try:
            new = self.store.load()
            self.store.validate_paths(new)
        except (ConfigIOError, ConfigParseError, ValidationError, PathRejected) as e:
            self._handle_invalid(e)
            return

        old = self._last_config
        diff = detect_config_diff(old, new)
        if not diff.has_changes:
            return

        self._emit(WatcherEvent(
            "change", f"Config changed:\n{summarize_config_diff(diff)}",
            config=new.copy(), diff=diff,
        ))

        if old is not None:
            self.rollback.snapshot(old, "Before manual config edit")

        if diff.requires_migration and self.relocator is not None and old is not None:
            failure: Optional[RelocationError] = None
            self.begin_migration()
            try:
                self.relocator.relocate(old, new)
            except RelocationError as e:
                failure = e
            finally:
                self.end_migration()
            if failure is not None:
                self._emit(WatcherEvent("error", f"Content relocation failed: {failure}", error=failure))
                self._revert()
                return

        if self.auto_sync and self.sync is not None:
            try:
                self.sync(new)
            except Exception as e:
                self._emit(WatcherEvent("error", "Failed to sync config to backend", error=e))

        self._last_config = new
        try:
            self.rollback.mark_as_good(new, "After successful config change")
        except (ValidationError, OSError) as e:
            self._emit(WatcherEvent("error", "Failed to mark config as good", error=e))

        if "logging" in diff.global_fields_changed:
            configure_logging(new.logging.level)

        self._emit(WatcherEvent(
            "reconfigure", "Reconfiguration complete", config=new.copy(), diff=diff,
        ))

    def _handle_invalid(self, error: Exception) -> None:
        self._emit(WatcherEvent(
            "validation_error", f"Invalid config detected: {error}", error=error,
        ))
        if self.auto_rollback:
            self._revert()

    def _revert(self) -> None:
        result = self.rollback.revert()
        message = (
            "Rolled back to last known good config" if result.success
            else f"Rollback failed: {result.error}"
        )
        self._emit(WatcherEvent(
            "rollback", message,
            config=result.restored_config, rollback_result=result,
        ))
        if result.success and result.restored_config is not None:
            self._last_config = result.restored_config


def create_config_watcher(
    store: ConfigStore, rollback: RollbackManager, **options,
) -> ConfigWatcher:
    """Construct and start a ConfigWatcher."""
    watcher = ConfigWatcher(store, rollback, **options)
    watcher.start()
    return watcher
