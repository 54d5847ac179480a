"""
Legacy Config Migration — v1 brain-config.json → v2 config.json

One-shot migration of the legacy file (~/.basic-memory/brain-config.json)
into the current location and schema.  Two legacy layouts exist:

    Format A   {"notes_path": ..., "projects": {name: {code_path, notes_path?, mode?}}}
    Format B   {"default_notes_path": ..., "code_paths": {name: code_path}}

Both may carry "sync": {"enabled", "delay"} and "log_level".  A project
defined in Format A wins over the same name in Format B.

Steps (recorded in order, each completed / failed / skipped):
    check_migration_needed, load_old_config, create_backup,
    transform_schema, save_new_config, verify_new_config,
    sync_backend, remove_old_config
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from memconf.config import (
    CONFIG_VERSION,
    ConfigIOError,
    ConfigParseError,
    ConfigStore,
    DefaultsConfig,
    LoggingConfig,
    MemoryConfig,
    ProjectConfig,
    SyncConfig,
    ValidationError,
    WatcherConfig,
)
from memconf.fileio import FILE_MODE
from memconf.paths import PathRejected

logger = logging.getLogger(__name__)

LEGACY_CONFIG_DIR = os.path.join("~", ".basic-memory")
LEGACY_CONFIG_FILE = "brain-config.json"
BACKUP_SUFFIX = ".backup"

_MODE_MAP: Dict[str, str] = {
    "default": "DEFAULT",
    "code": "CODE",
    "custom": "CUSTOM",
    "DEFAULT": "DEFAULT",
    "CODE": "CODE",
    "CUSTOM": "CUSTOM",
}

SyncCallback = Callable[[MemoryConfig], Any]


def default_legacy_path() -> str:
    return os.path.join(os.path.expanduser(LEGACY_CONFIG_DIR), LEGACY_CONFIG_FILE)


@dataclass
class MigrationStep:
    name: str
    status: str  # completed | failed | skipped
    error: Optional[str] = None


@dataclass
class LegacyMigrationResult:
    success: bool
    error: Optional[str] = None
    backup_path: Optional[str] = None
    migrated_config: Optional[MemoryConfig] = None
    old_config_removed: bool = False
    steps: List[MigrationStep] = field(default_factory=list)

    def step(self, name: str) -> Optional[MigrationStep]:
        for s in self.steps:
            if s.name == name:
                return s
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "backup_path": self.backup_path,
            "old_config_removed": self.old_config_removed,
            "steps": [
                {"name": s.name, "status": s.status, "error": s.error}
                for s in self.steps
            ],
        }


def transform_legacy(old: Dict[str, Any]) -> MemoryConfig:
    """Map a legacy (Format A and/or B) document onto the current schema."""
    defaults = MemoryConfig()
    location = (
        old.get("notes_path")
        or old.get("default_notes_path")
        or defaults.defaults.memories_location
    )
    old_sync = old.get("sync") or {}
    cfg = MemoryConfig(
        version=CONFIG_VERSION,
        defaults=DefaultsConfig(memories_location=location, memories_mode="DEFAULT"),
        sync=SyncConfig(
            enabled=old_sync.get("enabled", defaults.sync.enabled),
            delay_ms=old_sync.get("delay", defaults.sync.delay_ms),
        ),
        logging=LoggingConfig(level=old.get("log_level") or defaults.logging.level),
        watcher=WatcherConfig(),
    )

    for name, p in (old.get("projects") or {}).items():
        if not isinstance(p, dict) or not p.get("code_path"):
            logger.debug("Skipping legacy project %r without code_path", name)
            continue
        project = ProjectConfig(code_path=p["code_path"])
        if p.get("notes_path"):
            project.memories_path = p["notes_path"]
            project.memories_mode = "CUSTOM"
        if p.get("mode"):
            project.memories_mode = _MODE_MAP.get(p["mode"], "DEFAULT")
        cfg.projects[name] = project

    for name, code_path in (old.get("code_paths") or {}).items():
        if name in cfg.projects:
            logger.debug("Legacy project %r defined in both formats; keeping Format A", name)
            continue
        cfg.projects[name] = ProjectConfig(code_path=code_path, memories_mode="DEFAULT")

    return cfg


def needs_legacy_migration(
    store: ConfigStore, legacy_path: Optional[str] = None, force: bool = False,
) -> bool:
    legacy_path = legacy_path or default_legacy_path()
    if not os.path.exists(legacy_path):
        return False
    return force or not store.exists()


def load_legacy_config(legacy_path: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Decoded legacy document, or None if missing or unreadable."""
    legacy_path = legacy_path or default_legacy_path()
    try:
        with open(legacy_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Failed to load legacy config %s: %s", legacy_path, e)
        return None
    return data if isinstance(data, dict) else None


def _create_backup(legacy_path: str) -> str:
    backup = legacy_path + BACKUP_SUFFIX
    if os.path.exists(backup):
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        backup = f"{legacy_path}.{stamp}{BACKUP_SUFFIX}"
    shutil.copyfile(legacy_path, backup)
    try:
        os.chmod(backup, FILE_MODE)
    except OSError:
        pass
    return backup


def migrate_legacy_config(
    store: ConfigStore,
    legacy_path: Optional[str] = None,
    *,
    remove_old: bool = True,
    force: bool = False,
    dry_run: bool = False,
    sync: Optional[SyncCallback] = None,
) -> LegacyMigrationResult:
    """Migrate the legacy config into store. Never raises; see result.steps."""
    legacy_path = legacy_path or default_legacy_path()
    result = LegacyMigrationResult(success=False)
    steps = result.steps

    def skip(name: str, why: str) -> None:
        steps.append(MigrationStep(name, "skipped", why))

    def fail(name: str, err: Exception, message: str) -> LegacyMigrationResult:
        steps.append(MigrationStep(name, "failed", str(err)))
        result.error = f"{message}: {err}"
        logger.error("Legacy migration failed at %s: %s", name, err)
        return result

    logger.info("Starting legacy config migration from %s", legacy_path)

    if not needs_legacy_migration(store, legacy_path, force):
        reason = (
            "Old config does not exist" if not os.path.exists(legacy_path)
            else "New config already exists (use force to override)"
        )
        skip("check_migration_needed", reason)
        result.success = True
        result.error = reason
        return result
    steps.append(MigrationStep("check_migration_needed", "completed"))

    old = load_legacy_config(legacy_path)
    if old is None:
        steps.append(MigrationStep("load_old_config", "failed", "Failed to load old config"))
        result.error = "Failed to load old configuration file"
        return result
    steps.append(MigrationStep("load_old_config", "completed"))

    if dry_run:
        skip("create_backup", "Dry run")
    else:
        try:
            result.backup_path = _create_backup(legacy_path)
        except OSError as e:
            return fail("create_backup", e, "Failed to create backup")
        steps.append(MigrationStep("create_backup", "completed"))

    try:
        new = transform_legacy(old)
        new.check()
    except (ValidationError, TypeError, AttributeError) as e:
        return fail("transform_schema", e, "Schema transformation failed")
    steps.append(MigrationStep("transform_schema", "completed"))
    result.migrated_config = new

    if dry_run:
        for name in ("save_new_config", "verify_new_config", "sync_backend"):
            skip(name, "Dry run")
    else:
        try:
            store.save(new)
        except (ValidationError, PathRejected, ConfigIOError) as e:
            return fail("save_new_config", e, "Failed to save new config")
        steps.append(MigrationStep("save_new_config", "completed"))

        try:
            loaded = store.load()
            if loaded.to_dict() != new.to_dict():
                raise ValidationError("Saved config differs after reload")
        except (ConfigIOError, ConfigParseError, ValidationError) as e:
            return fail("verify_new_config", e, "Config verification failed")
        steps.append(MigrationStep("verify_new_config", "completed"))

        if sync is None:
            skip("sync_backend", "No sync configured")
        else:
            try:
                sync(new)
                steps.append(MigrationStep("sync_backend", "completed"))
            except Exception as e:
                steps.append(MigrationStep("sync_backend", "failed", str(e)))
                logger.warning("Backend sync after legacy migration failed: %s", e)

    if remove_old and not dry_run:
        try:
            os.unlink(legacy_path)
            result.old_config_removed = True
            steps.append(MigrationStep("remove_old_config", "completed"))
        except FileNotFoundError:
            steps.append(MigrationStep("remove_old_config", "completed"))
        except OSError as e:
            steps.append(MigrationStep("remove_old_config", "failed", str(e)))
            logger.warning("Failed to remove legacy config: %s", e)
    else:
        skip("remove_old_config", "Dry run" if dry_run else "Removal disabled")

    result.success = True
    logger.info(
        "Legacy migration completed: %d projects, backup=%s",
        len(new.projects), result.backup_path,
    )
    return result


def restore_legacy_backup(
    backup_path: str, store: ConfigStore, legacy_path: Optional[str] = None,
) -> bool:
    """Put the legacy file back from its backup and drop the new config."""
    legacy_path = legacy_path or default_legacy_path()
    if not os.path.exists(backup_path):
        logger.error("Backup file not found: %s", backup_path)
        return False
    try:
        shutil.copyfile(backup_path, legacy_path)
        store.delete()
    except (OSError, ConfigIOError) as e:
        logger.error("Failed to restore legacy backup %s: %s", backup_path, e)
        return False
    logger.info("Legacy migration rolled back from %s", backup_path)
    return True


def migrate_with_rollback(
    rollback_manager,
    store: ConfigStore,
    legacy_path: Optional[str] = None,
    **options,
) -> LegacyMigrationResult:
    """migrate_legacy_config() bracketed by a snapshot and mark_as_good."""
    if store.exists() and rollback_manager.is_initialized():
        try:
            rollback_manager.snapshot(store.load(), "Before migration")
        except (ConfigIOError, ConfigParseError, ValidationError, OSError) as e:
            logger.debug("No snapshot before migration: %s", e)

    result = migrate_legacy_config(store, legacy_path, **options)

    if result.success and result.migrated_config is not None and rollback_manager.is_initialized():
        try:
            rollback_manager.mark_as_good(result.migrated_config, "After successful migration")
        except (ValidationError, OSError) as e:
            logger.debug("Could not mark migrated config as good: %s", e)
    return result
