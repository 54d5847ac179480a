"""
Translation — Memories path resolution and backend config sync

Maps the memconf configuration onto the flat format read by the
memory backend, and writes it atomically.  This is the downstream sync
collaborator called after a successful reconfiguration or rollback.

Field mapping:
    projects.<name> (resolved path)   →  projects.<name>
    sync.enabled                      →  sync_changes
    sync.delay_ms                     →  sync_delay
    logging.level                     →  log_level

Unknown keys of the existing backend file are preserved.

Path resolution by mode:
    DEFAULT   <defaults.memories_location>/<project name>
    CODE      <code_path>/docs
    CUSTOM    <memories_path>  (required)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from memconf.config import VALID_LOG_LEVELS, MemoryConfig, ProjectConfig
from memconf.fileio import atomic_write_json
from memconf.lock import LockManager, LockTimeout
from memconf.paths import PathSanitizer, expand_tilde, normalize_path

logger = logging.getLogger(__name__)

BACKEND_CONFIG_DIR = os.path.join("~", ".basic-memory")
BACKEND_CONFIG_FILENAME = "config.json"
SYNC_LOCK_TIMEOUT = 5.0


class TranslationError(RuntimeError):
    """Raised when the backend config cannot be written."""

    def __init__(self, message: str, code: str = "io_error"):
        self.code = code  # io_error | lock_error
        super().__init__(message)


def default_backend_path() -> str:
    return os.path.join(os.path.expanduser(BACKEND_CONFIG_DIR), BACKEND_CONFIG_FILENAME)


@dataclass
class ResolvedMemoriesPath:
    path: str
    mode: str
    error: Optional[str] = None


def resolve_memories_path(
    name: str,
    project: ProjectConfig,
    default_location: str,
    sanitizer: Optional[PathSanitizer] = None,
) -> ResolvedMemoriesPath:
    """Resolve where a project's memories live."""
    sanitizer = sanitizer or PathSanitizer()
    mode = project.effective_mode

    if mode == "CUSTOM":
        if not project.memories_path:
            return ResolvedMemoriesPath("", mode, "CUSTOM mode requires memories_path to be set")
        raw = project.memories_path
    elif mode == "CODE":
        raw = os.path.join(expand_tilde(project.code_path), "docs")
    else:
        raw = os.path.join(expand_tilde(default_location), name)

    result = sanitizer.validate(raw)
    if not result.valid:
        try:
            shown = normalize_path(raw)
        except (OSError, ValueError):
            shown = raw
        return ResolvedMemoriesPath(shown, mode, result.error)
    return ResolvedMemoriesPath(result.normalized_path or "", mode)


def resolve_all(
    config: MemoryConfig, sanitizer: Optional[PathSanitizer] = None,
) -> Dict[str, ResolvedMemoriesPath]:
    return {
        name: resolve_memories_path(
            name, project, config.defaults.memories_location, sanitizer
        )
        for name, project in config.projects.items()
    }


def translate_config(
    config: MemoryConfig,
    existing: Optional[Dict[str, Any]] = None,
    sanitizer: Optional[PathSanitizer] = None,
) -> Dict[str, Any]:
    """Backend config dict; projects that fail to resolve are left out."""
    result: Dict[str, Any] = dict(existing or {})
    projects: Dict[str, str] = {}
    for name, resolved in resolve_all(config, sanitizer).items():
        if resolved.error or not resolved.path:
            logger.warning("Skipping project '%s': %s", name, resolved.error)
            continue
        projects[name] = resolved.path
    result["projects"] = projects
    result["sync_changes"] = config.sync.enabled
    result["sync_delay"] = config.sync.delay_ms
    result["log_level"] = config.logging.level
    return result


def validate_translation(
    config: MemoryConfig, sanitizer: Optional[PathSanitizer] = None,
) -> List[str]:
    """Dry-run translation. Returns list of error messages."""
    errors: List[str] = []
    for name, resolved in resolve_all(config, sanitizer).items():
        if resolved.error:
            errors.append(f"Project '{name}': {resolved.error}")
    level = config.logging.level
    if not isinstance(level, str) or level not in VALID_LOG_LEVELS:
        errors.append(f"Invalid log level: {config.logging.level}")
    delay = config.sync.delay_ms
    if not isinstance(delay, int) or isinstance(delay, bool) or delay < 0:
        errors.append(f"Invalid sync delay: {config.sync.delay_ms} (must be >= 0)")
    return errors


class BackendConfigSync:
    """Callable sync collaborator writing the backend config file.

    If a lock manager is given, the write happens under its global lock.
    """

    def __init__(
        self,
        backend_path: Optional[str] = None,
        sanitizer: Optional[PathSanitizer] = None,
        lock_manager: Optional[LockManager] = None,
        lock_timeout: float = SYNC_LOCK_TIMEOUT,
    ):
        self.backend_path = backend_path or default_backend_path()
        self.sanitizer = sanitizer
        self.lock_manager = lock_manager
        self.lock_timeout = lock_timeout

    def load_existing(self) -> Dict[str, Any]:
        """Current backend config, or {} if missing/unreadable."""
        try:
            with open(self.backend_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable backend config %s: %s", self.backend_path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def preview(self, config: MemoryConfig) -> Dict[str, Any]:
        return translate_config(config, self.load_existing(), self.sanitizer)

    def _write(self, config: MemoryConfig) -> None:
        translated = self.preview(config)
        try:
            atomic_write_json(self.backend_path, translated)
        except OSError as e:
            raise TranslationError(f"Failed to write backend config: {e}") from e
        logger.debug("Backend config synced to %s", self.backend_path)

    def __call__(self, config: MemoryConfig) -> None:
        """Translate and write config.

        Raises:
            TranslationError: On lock timeout or write failure.
        """
        if self.lock_manager is None:
            self._write(config)
            return
        try:
            with self.lock_manager.global_lock(self.lock_timeout):
                self._write(config)
        except LockTimeout as e:
            raise TranslationError(str(e), code="lock_error") from e

    def try_sync(self, config: MemoryConfig) -> Optional[str]:
        """Sync without raising. Returns the error message, or None."""
        try:
            self(config)
        except TranslationError as e:
            logger.warning("Backend sync failed: %s", e)
            return str(e)
        return None
