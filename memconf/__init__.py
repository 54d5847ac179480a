"""
memconf — Configuration lifecycle and migration engine for a local memories store.

Atomic config persistence, marker-file locks, checksummed rollback
history, crash-restartable copy manifests, change classification and a
debounced config watcher.
"""

__version__ = "0.1.0"

from memconf.config import ConfigStore, MemoryConfig, ProjectConfig
from memconf.paths import PathSanitizer, PathRejected
from memconf.lock import LockManager, LockTimeout
from memconf.rollback import RollbackManager, RollbackResult, Snapshot
from memconf.manifest import ManifestLedger, CopyManifest, copy_manifest_entries
from memconf.diff import ConfigDiff, detect_config_diff
from memconf.translation import BackendConfigSync
from memconf.relocate import ContentRelocator, RelocationError
from memconf.watcher import ConfigWatcher, WatcherEvent

__all__ = [
    "__version__",
    "ConfigStore",
    "MemoryConfig",
    "ProjectConfig",
    "PathSanitizer",
    "PathRejected",
    "LockManager",
    "LockTimeout",
    "RollbackManager",
    "RollbackResult",
    "Snapshot",
    "ManifestLedger",
    "CopyManifest",
    "copy_manifest_entries",
    "ConfigDiff",
    "detect_config_diff",
    "BackendConfigSync",
    "ContentRelocator",
    "RelocationError",
    "ConfigWatcher",
    "WatcherEvent",
]
