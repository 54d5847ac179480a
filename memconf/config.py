"""
Configuration — Data Model, Validation and Atomic Persistence

Configuration dataclasses for the shared memories config: defaults,
per-project placement, sync, logging and watcher settings.  Includes
ConfigStore for reading and atomically writing the JSON document, and
load_config() for a silent fallback to compiled defaults.

Document layout (config.json):

    {
      "$schema": "...",
      "version": "2.0.0",
      "defaults": {"memories_location": "~/memories", "memories_mode": "DEFAULT"},
      "projects": {"<name>": {"code_path": "...", "memories_path": "...", "memories_mode": "CUSTOM"}},
      "sync": {"enabled": true, "delay_ms": 500},
      "logging": {"level": "info"},
      "watcher": {"enabled": true, "debounce_ms": 2000}
    }

Config directory precedence (invariant):
    explicit argument  >  MEMCONF_CONFIG_DIR  >  $XDG_CONFIG_HOME/memconf  >  ~/.config/memconf
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from memconf.fileio import DIR_MODE, FILE_MODE, atomic_write_json, ensure_private_dir
from memconf.paths import PathRejected, PathSanitizer

logger = logging.getLogger(__name__)

CONFIG_VERSION = "2.0.0"
SCHEMA_URL = "https://memconf.dev/schemas/config-v2.json"
CONFIG_FILENAME = "config.json"

MemoriesMode = Literal["DEFAULT", "CODE", "CUSTOM"]
LogLevel = Literal["trace", "debug", "info", "warn", "error"]

VALID_MODES: set = {"DEFAULT", "CODE", "CUSTOM"}
VALID_LOG_LEVELS: set = {"trace", "debug", "info", "warn", "error"}

# Config level → stdlib logging level
_LOG_LEVEL_MAP: Dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when a configuration fails schema checks."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = list(errors or [])
        super().__init__(message)


class ConfigParseError(ValueError):
    """Raised when the config file is not valid JSON."""


class ConfigIOError(OSError):
    """Raised when reading, writing or renaming the config file fails."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (
        not isinstance(value, typ) or (typ is int and isinstance(value, bool))
    ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_bool(errors: List[str], name: str, value) -> None:
    if not isinstance(value, bool):
        errors.append(f"{name}: expected bool, got {type(value).__name__}")


def _check_nonempty(errors: List[str], name: str, value) -> None:
    if not isinstance(value, str) or not value.strip():
        errors.append(f"{name}: is required")


def _check_choice(errors: List[str], name: str, value, choices) -> None:
    if not isinstance(value, str):
        errors.append(f"{name}: expected str, got {type(value).__name__}")
    elif value not in choices:
        errors.append(f"{name}: {value!r} not in {sorted(choices)}")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass
class ProjectConfig:
    """Placement settings for one project."""
    code_path: str = ""
    memories_path: Optional[str] = None
    memories_mode: Optional[str] = None

    @property
    def effective_mode(self) -> str:
        """Placement mode; unknown or empty values resolve to DEFAULT."""
        if isinstance(self.memories_mode, str) and self.memories_mode in VALID_MODES:
            return self.memories_mode  # type: ignore[return-value]
        return "DEFAULT"

    def validate(self, name: str) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        prefix = f"projects.{name}"
        _check_nonempty(errors, f"{prefix}.code_path", self.code_path)
        if self.memories_mode is not None:
            _check_choice(errors, f"{prefix}.memories_mode", self.memories_mode, VALID_MODES)
        if self.memories_path is not None and not isinstance(self.memories_path, str):
            errors.append(f"{prefix}.memories_path: expected str")
        if self.memories_mode == "CUSTOM" and not self.memories_path:
            errors.append(f"{prefix}: CUSTOM mode requires memories_path")
        return errors

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code_path": self.code_path}
        if self.memories_path is not None:
            d["memories_path"] = self.memories_path
        if self.memories_mode is not None:
            d["memories_mode"] = self.memories_mode
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ProjectConfig:
        mode = d.get("memories_mode")
        return cls(
            code_path=d.get("code_path", ""),
            memories_path=d.get("memories_path"),
            memories_mode=mode if mode else None,
        )


@dataclass
class DefaultsConfig:
    """Shared memories location and default placement mode."""
    memories_location: str = "~/memories"
    memories_mode: str = "DEFAULT"

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_nonempty(errors, "defaults.memories_location", self.memories_location)
        _check_choice(errors, "defaults.memories_mode", self.memories_mode, VALID_MODES)
        return errors


@dataclass
class SyncConfig:
    """File sync between code and memories."""
    enabled: bool = True
    delay_ms: int = 500

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_bool(errors, "sync.enabled", self.enabled)
        _check_range(errors, "sync.delay_ms", self.delay_ms, 0, 3_600_000, int)
        return errors


@dataclass
class LoggingConfig:
    level: str = "info"

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_choice(errors, "logging.level", self.level, VALID_LOG_LEVELS)
        return errors


@dataclass
class WatcherConfig:
    """Config file watcher settings."""
    enabled: bool = True
    debounce_ms: int = 2000

    def validate(self) -> List[str]:
        errors: List[str] = []
        _check_bool(errors, "watcher.enabled", self.enabled)
        _check_range(errors, "watcher.debounce_ms", self.debounce_ms, 0, 3_600_000, int)
        return errors


def _section(cls, d: Dict[str, Any], name: str):
    """Build a section dataclass from a dict, ignoring unknown keys."""
    raw = d.get(name)
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ValidationError(f"{name}: expected object", [f"{name}: expected object"])
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


@dataclass
class MemoryConfig:
    """Top-level memories configuration."""
    version: str = CONFIG_VERSION
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    projects: Dict[str, ProjectConfig] = field(default_factory=dict)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    schema: Optional[str] = SCHEMA_URL

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON).

        Raises:
            ValidationError: If a section has the wrong shape.
        """
        if not isinstance(d, dict):
            raise ValidationError("config: expected object", ["config: expected object"])
        raw_projects = d.get("projects") or {}
        if not isinstance(raw_projects, dict):
            raise ValidationError("projects: expected object", ["projects: expected object"])
        projects: Dict[str, ProjectConfig] = {}
        for name, p in raw_projects.items():
            if not isinstance(p, dict):
                raise ValidationError(
                    f"projects.{name}: expected object", [f"projects.{name}: expected object"]
                )
            projects[name] = ProjectConfig.from_dict(p)
        return cls(
            version=d.get("version", ""),
            defaults=_section(DefaultsConfig, d, "defaults"),
            projects=projects,
            sync=_section(SyncConfig, d, "sync"),
            logging=_section(LoggingConfig, d, "logging"),
            watcher=_section(WatcherConfig, d, "watcher"),
            schema=d.get("$schema"),
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.schema is not None:
            d["$schema"] = self.schema
        d["version"] = self.version
        d["defaults"] = {
            "memories_location": self.defaults.memories_location,
            "memories_mode": self.defaults.memories_mode,
        }
        d["projects"] = {name: p.to_dict() for name, p in self.projects.items()}
        d["sync"] = {"enabled": self.sync.enabled, "delay_ms": self.sync.delay_ms}
        d["logging"] = {"level": self.logging.level}
        d["watcher"] = {
            "enabled": self.watcher.enabled,
            "debounce_ms": self.watcher.debounce_ms,
        }
        return d

    def copy(self) -> MemoryConfig:
        """Deep copy; later mutation of either side never leaks across."""
        return copy.deepcopy(self)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        if self.version != CONFIG_VERSION:
            errors.append(f"version: expected {CONFIG_VERSION!r}, got {self.version!r}")
        errors.extend(self.defaults.validate())
        for name, project in self.projects.items():
            if not name:
                errors.append("projects: empty project name")
            errors.extend(project.validate(name))
        errors.extend(self.sync.validate())
        errors.extend(self.logging.validate())
        errors.extend(self.watcher.validate())
        return errors

    def check(self) -> None:
        """Raise ValidationError if validate() reports anything."""
        errors = self.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}", errors
            )


def default_config() -> MemoryConfig:
    """Compiled defaults for new installations."""
    return MemoryConfig()


def parse_config(data: Any) -> MemoryConfig:
    """Build and validate a config from decoded JSON.

    Raises:
        ValidationError: If the document fails schema checks.
    """
    cfg = MemoryConfig.from_dict(data)
    cfg.check()
    return cfg


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are invalid.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, ValidationError):
            cfg = MemoryConfig()

    if strict:
        cfg.check()

    return cfg


def configure_logging(level: str) -> None:
    """Apply a config log level to the memconf logger hierarchy."""
    logging.getLogger("memconf").setLevel(_LOG_LEVEL_MAP.get(level, logging.INFO))


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------


def resolve_config_dir(explicit: Optional[str] = None) -> str:
    """Resolve the config directory (see module docstring for precedence)."""
    if explicit:
        return os.path.abspath(os.path.expanduser(explicit))
    env_dir = os.environ.get("MEMCONF_CONFIG_DIR")
    if env_dir:
        return os.path.abspath(os.path.expanduser(env_dir))
    xdg = os.environ.get("XDG_CONFIG_HOME") or os.path.join(
        os.path.expanduser("~"), ".config"
    )
    return os.path.join(xdg, "memconf")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ConfigStore:
    """Reads and atomically writes the config file.

    Readers tolerate concurrent replacement: writers never touch the
    live file except through os.replace().
    """

    def __init__(
        self,
        config_dir: Optional[str] = None,
        sanitizer: Optional[PathSanitizer] = None,
    ):
        self.config_dir = resolve_config_dir(config_dir)
        self.sanitizer = sanitizer or PathSanitizer()

    @property
    def config_path(self) -> str:
        return os.path.join(self.config_dir, CONFIG_FILENAME)

    def subdir(self, name: str) -> str:
        """Path of a private subdirectory (locks/, rollback/, manifests/)."""
        return os.path.join(self.config_dir, name)

    def exists(self) -> bool:
        return os.path.exists(self.config_path)

    def _ensure_dir(self) -> None:
        try:
            ensure_private_dir(self.config_dir)
        except OSError as e:
            raise ConfigIOError(
                f"Failed to create config directory: {self.config_dir}"
            ) from e
        try:
            if (os.stat(self.config_dir).st_mode & 0o777) != DIR_MODE:
                os.chmod(self.config_dir, DIR_MODE)
        except OSError:
            pass

    def read_raw(self) -> Any:
        """Decoded JSON of the config file.

        Raises:
            ConfigIOError: If the file cannot be read.
            ConfigParseError: If the file is not valid JSON.
        """
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise ConfigIOError(f"Failed to read config file: {self.config_path}") from e
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigParseError(f"Invalid JSON in config file: {e}") from e

    def load(self) -> MemoryConfig:
        """Load and validate the config. Missing file → defaults.

        Raises:
            ConfigIOError, ConfigParseError, ValidationError
        """
        if not self.exists():
            return default_config()
        return parse_config(self.read_raw())

    def load_or_default(self) -> MemoryConfig:
        """Like load() but never raises; falls back to defaults."""
        try:
            return self.load()
        except (ConfigIOError, ConfigParseError, ValidationError) as e:
            logger.debug("Config unreadable, using defaults: %s", e)
            return default_config()

    def validate_paths(self, config: MemoryConfig) -> None:
        """Sanitize every configured path.

        Raises:
            PathRejected: Naming the offending field.
        """
        location = config.defaults.memories_location
        result = self.sanitizer.validate(location)
        if not result.valid:
            raise PathRejected(location, f"Invalid memories_location: {result.error}")

        for name, project in config.projects.items():
            result = self.sanitizer.validate(project.code_path)
            if not result.valid:
                raise PathRejected(
                    project.code_path,
                    f"Invalid code_path for project '{name}': {result.error}",
                )
            if project.memories_path:
                result = self.sanitizer.validate(project.memories_path)
                if not result.valid:
                    raise PathRejected(
                        project.memories_path,
                        f"Invalid memories_path for project '{name}': {result.error}",
                    )

    def save(self, config: MemoryConfig) -> None:
        """Validate and atomically write config (temp → verify → rename).

        Raises:
            ValidationError: Schema failure (nothing written).
            PathRejected: A configured path is unsafe (nothing written).
            ConfigIOError: Write or rename failed (live file untouched).
        """
        config.check()
        self.validate_paths(config)
        self._ensure_dir()
        try:
            atomic_write_json(self.config_path, config.to_dict(), mode=FILE_MODE)
        except OSError as e:
            raise ConfigIOError(f"Failed to write config file: {self.config_path}: {e}") from e
        logger.debug("Config saved to %s", self.config_path)

    def init(self) -> MemoryConfig:
        """Write defaults if no config exists, then return the config."""
        if not self.exists():
            cfg = default_config()
            self.save(cfg)
            logger.info("Initialized config at %s", self.config_path)
            return cfg
        return self.load()

    def delete(self) -> None:
        """Remove the config file (no-op if missing).

        Raises:
            ConfigIOError: If removal fails.
        """
        try:
            os.unlink(self.config_path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise ConfigIOError(f"Failed to delete config file: {self.config_path}") from e
