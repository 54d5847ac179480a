"""
Rollback Manager — Checksummed snapshot history and Last-Known-Good baseline

Keeps a bounded FIFO history (MAX_SNAPSHOTS) of configuration snapshots
and one distinguished Last-Known-Good (LKG) snapshot stored apart from
the history.  Every snapshot holds a deep copy of the configuration and
a SHA-256 checksum of its canonical JSON form (keys sorted recursively),
so key order never causes a mismatch.  A snapshot whose checksum does
not match is never restored.

On-disk layout (under <config_dir>/rollback/):
    last-known-good.json    {id, created_at, reason, checksum, config}
    history.json            {snapshot_ids, updated_at}
    <snapshot id>.json      one file per history snapshot

Public API:
    RollbackManager(rollback_dir, store, sync=None)
    .initialize(current=None)
    .snapshot(config, reason) -> Snapshot
    .mark_as_good(config, reason) -> Snapshot
    .rollback("last_known_good" | "previous") -> RollbackResult
    .revert() -> RollbackResult
    .get_history() / .get_last_snapshot() / .get_last_known_good()
    .clear_history()
    .matches_last_known_good(config) -> bool
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from memconf.config import (
    ConfigIOError,
    ConfigStore,
    MemoryConfig,
    ValidationError,
)
from memconf.fileio import atomic_write_json, generate_id, json_checksum, now_iso, read_json
from memconf.paths import PathRejected

logger = logging.getLogger(__name__)

MAX_SNAPSHOTS = 10
LKG_FILENAME = "last-known-good.json"
HISTORY_FILENAME = "history.json"

RollbackTarget = Literal["last_known_good", "previous"]
VALID_TARGETS: set = {"last_known_good", "previous"}

SyncCallback = Callable[[MemoryConfig], Any]


class ChecksumMismatch(ValueError):
    """Raised when a stored checksum differs from the recomputed one."""

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__("Snapshot checksum mismatch - data may be corrupted")


class NoSnapshotError(LookupError):
    """Raised when rollback to 'previous' is requested with empty history."""


class NoBaselineError(LookupError):
    """Raised when no Last-Known-Good snapshot exists."""


def compute_checksum(config: Union[MemoryConfig, Dict[str, Any]]) -> str:
    """SHA-256 of the canonical JSON form of a config (or its dict)."""
    data = config.to_dict() if isinstance(config, MemoryConfig) else config
    return json_checksum(data)


@dataclass
class Snapshot:
    """A checksummed, timestamped copy of a configuration."""
    id: str
    created_at: str
    reason: str
    checksum: str
    config: MemoryConfig

    @classmethod
    def capture(cls, config: MemoryConfig, reason: str) -> Snapshot:
        frozen = config.copy()
        return cls(
            id=generate_id("snap"),
            created_at=now_iso(),
            reason=reason,
            checksum=compute_checksum(frozen),
            config=frozen,
        )

    def verify(self) -> bool:
        return compute_checksum(self.config) == self.checksum

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "reason": self.reason,
            "checksum": self.checksum,
            "config": self.config.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Snapshot:
        return cls(
            id=str(d["id"]),
            created_at=str(d["created_at"]),
            reason=str(d.get("reason", "")),
            checksum=str(d["checksum"]),
            config=MemoryConfig.from_dict(d["config"]),
        )


@dataclass
class RollbackResult:
    """Outcome of a rollback; failures are reported, not raised."""
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None  # no_baseline | no_snapshot | checksum_mismatch | io_error
    restored_config: Optional[MemoryConfig] = None
    snapshot: Optional[Snapshot] = None
    sync_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "error_code": self.error_code,
            "snapshot_id": self.snapshot.id if self.snapshot else None,
            "sync_error": self.sync_error,
        }


class RollbackManager:
    """Snapshot history plus Last-Known-Good, persisted under rollback_dir."""

    def __init__(
        self,
        rollback_dir: str,
        store: ConfigStore,
        sync: Optional[SyncCallback] = None,
    ):
        self.rollback_dir = rollback_dir
        self.store = store
        self.sync = sync
        self._history: List[Snapshot] = []
        self._lkg: Optional[Snapshot] = None
        self._initialized = False

    # -- persistence --------------------------------------------------------

    @property
    def lkg_path(self) -> str:
        return os.path.join(self.rollback_dir, LKG_FILENAME)

    @property
    def history_path(self) -> str:
        return os.path.join(self.rollback_dir, HISTORY_FILENAME)

    def _snapshot_path(self, snapshot_id: str) -> str:
        return os.path.join(self.rollback_dir, f"{snapshot_id}.json")

    def _remove(self, path: str) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove %s: %s", path, e)

    def _write_history_index(self) -> None:
        atomic_write_json(self.history_path, {
            "snapshot_ids": [s.id for s in self._history],
            "updated_at": now_iso(),
        })

    def _load_snapshot_file(self, path: str) -> Optional[Snapshot]:
        """Read and verify a snapshot file; None if missing, bad or corrupt."""
        try:
            snap = Snapshot.from_dict(read_json(path))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Unreadable snapshot %s: %s", path, e)
            return None
        if not snap.verify():
            logger.warning("Discarding snapshot %s: checksum mismatch", snap.id)
            return None
        return snap

    # -- lifecycle ----------------------------------------------------------

    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self, current: Optional[MemoryConfig] = None) -> None:
        """Load persisted state; capture a baseline if none is trusted.

        Args:
            current: Active configuration used as the baseline when no
                valid Last-Known-Good exists. Defaults to the store's config.
        """
        if self._initialized:
            return

        lkg = self._load_snapshot_file(self.lkg_path)
        if lkg is not None and lkg.config.validate():
            logger.warning("Discarding Last-Known-Good %s: invalid config", lkg.id)
            lkg = None
        if lkg is None and os.path.exists(self.lkg_path):
            self._remove(self.lkg_path)
        self._lkg = lkg

        self._history = []
        try:
            index = read_json(self.history_path)
            ids = list(index.get("snapshot_ids", []))
        except FileNotFoundError:
            ids = []
        except (OSError, ValueError, AttributeError) as e:
            logger.warning("Unreadable rollback history, starting empty: %s", e)
            ids = []
        for snapshot_id in ids[-MAX_SNAPSHOTS:]:
            snap = self._load_snapshot_file(self._snapshot_path(str(snapshot_id)))
            if snap is not None:
                self._history.append(snap)

        if self._lkg is None:
            baseline = current if current is not None else self.store.load_or_default()
            if not baseline.validate():
                self.mark_as_good(baseline, "Initial baseline")
                logger.info("Captured Last-Known-Good baseline")
            else:
                logger.warning("Current config is invalid; no baseline captured")

        self._initialized = True

    # -- snapshots ----------------------------------------------------------

    def snapshot(self, config: MemoryConfig, reason: str) -> Snapshot:
        """Append a deep-copied, checksummed snapshot; evict beyond MAX_SNAPSHOTS.

        Raises:
            OSError: If the snapshot cannot be persisted.
        """
        snap = Snapshot.capture(config, reason)
        atomic_write_json(self._snapshot_path(snap.id), snap.to_dict())
        self._history.append(snap)
        while len(self._history) > MAX_SNAPSHOTS:
            evicted = self._history.pop(0)
            self._remove(self._snapshot_path(evicted.id))
        self._write_history_index()
        logger.debug("Snapshot %s: %s", snap.id, reason)
        return Snapshot.from_dict(snap.to_dict())

    def mark_as_good(self, config: MemoryConfig, reason: str = "Marked as good") -> Snapshot:
        """Record config as the Last-Known-Good baseline.

        Raises:
            ValidationError: If the config fails schema checks.
        """
        config.check()
        snap = Snapshot.capture(config, reason)
        atomic_write_json(self.lkg_path, snap.to_dict())
        self._lkg = snap
        logger.debug("Last-Known-Good updated: %s", reason)
        return Snapshot.from_dict(snap.to_dict())

    def get_history(self) -> List[Snapshot]:
        """Copies of the history snapshots, oldest first."""
        return [Snapshot.from_dict(s.to_dict()) for s in self._history]

    def get_last_snapshot(self) -> Optional[Snapshot]:
        if not self._history:
            return None
        return Snapshot.from_dict(self._history[-1].to_dict())

    def get_last_known_good(self) -> Optional[Snapshot]:
        if self._lkg is None:
            return None
        return Snapshot.from_dict(self._lkg.to_dict())

    def clear_history(self) -> None:
        """Drop every history snapshot. Last-Known-Good is kept."""
        for snap in self._history:
            self._remove(self._snapshot_path(snap.id))
        self._history = []
        self._remove(self.history_path)

    def matches_last_known_good(self, config: MemoryConfig) -> bool:
        return self._lkg is not None and compute_checksum(config) == self._lkg.checksum

    # -- restore ------------------------------------------------------------

    def _select(self, target: str) -> Snapshot:
        if target == "last_known_good":
            if self._lkg is None:
                raise NoBaselineError("No lastKnownGood snapshot available")
            snap = self._lkg
        elif target == "previous":
            if not self._history:
                raise NoSnapshotError("No snapshots in rollback history")
            snap = self._history[-1]
        else:
            raise ValueError(f"Unknown rollback target: {target!r}")
        if not snap.verify():
            raise ChecksumMismatch(snap.id)
        return snap

    def rollback(self, target: RollbackTarget = "last_known_good") -> RollbackResult:
        """Restore a snapshot, save it atomically, then re-sync downstream.

        A sync failure after a successful save is recorded in sync_error;
        the rollback still counts as a success.

        Raises:
            ValueError: If target is not a known rollback target.
        """
        try:
            snap = self._select(target)
        except NoBaselineError as e:
            return RollbackResult(False, error=str(e), error_code="no_baseline")
        except NoSnapshotError as e:
            return RollbackResult(False, error=str(e), error_code="no_snapshot")
        except ChecksumMismatch as e:
            logger.error("Refusing rollback to %s: %s", e.snapshot_id, e)
            return RollbackResult(False, error=str(e), error_code="checksum_mismatch")

        restored = snap.config.copy()
        try:
            self.store.save(restored)
        except (ConfigIOError, ValidationError, PathRejected, OSError) as e:
            logger.error("Rollback to %s failed: %s", snap.id, e)
            return RollbackResult(
                False, error=f"Rollback failed: {e}", error_code="io_error", snapshot=snap,
            )
        logger.info("Rolled back config to %s (%s)", snap.id, target)

        sync_error = None
        if self.sync is not None:
            try:
                self.sync(restored)
            except Exception as e:
                sync_error = str(e)
                logger.warning("Downstream sync after rollback failed: %s", e)

        return RollbackResult(
            True,
            restored_config=restored.copy(),
            snapshot=Snapshot.from_dict(snap.to_dict()),
            sync_error=sync_error,
        )

    def revert(self) -> RollbackResult:
        """Roll back to Last-Known-Good."""
        return self.rollback("last_known_good")
