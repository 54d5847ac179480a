"""
Config Diff Detector — Classify configuration changes

Compares two configurations and tells a cheap change (reload only)
from a heavy one (content must move).

requires_migration (invariant):
    True  — projects added, removed or modified; defaults.memories_location changed
    False — changes confined to logging, sync, watcher or defaults.memories_mode

A None old config means "initial configuration": every project is added,
every global section changed, and migration is required only when the
project set is non-empty.

Public API:
    detect_config_diff(old, new) -> ConfigDiff
    detect_detailed_config_diff(old, new) -> DetailedConfigDiff
    get_affected_projects(diff) -> List[str]
    is_project_affected(diff, name) -> bool
    get_default_mode_affected_projects(diff, old, new) -> List[str]
    summarize_config_diff(diff) -> str
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from memconf.config import MemoryConfig, ProjectConfig

GLOBAL_SECTIONS = ("defaults", "sync", "logging", "watcher")

# Dotted field names compared per global section
_GLOBAL_FIELDS: Dict[str, tuple] = {
    "defaults": ("memories_location", "memories_mode"),
    "sync": ("enabled", "delay_ms"),
    "logging": ("level",),
    "watcher": ("enabled", "debounce_ms"),
}

_PROJECT_FIELDS = ("code_path", "memories_path", "memories_mode")


@dataclass
class ConfigDiff:
    projects_added: List[str] = field(default_factory=list)
    projects_removed: List[str] = field(default_factory=list)
    projects_modified: List[str] = field(default_factory=list)
    global_fields_changed: List[str] = field(default_factory=list)
    has_changes: bool = False
    requires_migration: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProjectFieldChanges:
    fields_added: List[str] = field(default_factory=list)
    fields_removed: List[str] = field(default_factory=list)
    fields_modified: List[str] = field(default_factory=list)


@dataclass
class GlobalFieldChange:
    field: str
    old_value: Any
    new_value: Any


@dataclass
class DetailedConfigDiff(ConfigDiff):
    project_changes: Dict[str, ProjectFieldChanges] = field(default_factory=dict)
    global_changes: List[GlobalFieldChange] = field(default_factory=list)


def _projects_equal(a: ProjectConfig, b: ProjectConfig) -> bool:
    return all(getattr(a, f) == getattr(b, f) for f in _PROJECT_FIELDS)


def _section_equal(old: MemoryConfig, new: MemoryConfig, section: str) -> bool:
    a, b = getattr(old, section), getattr(new, section)
    return all(getattr(a, f) == getattr(b, f) for f in _GLOBAL_FIELDS[section])


def detect_config_diff(old: Optional[MemoryConfig], new: MemoryConfig) -> ConfigDiff:
    """Compare two configs; old=None means initial configuration."""
    if old is None:
        names = list(new.projects)
        return ConfigDiff(
            projects_added=names,
            global_fields_changed=list(GLOBAL_SECTIONS),
            has_changes=True,
            requires_migration=bool(names),
        )

    added = [n for n in new.projects if n not in old.projects]
    removed = [n for n in old.projects if n not in new.projects]
    modified = [
        n for n in old.projects
        if n in new.projects and not _projects_equal(old.projects[n], new.projects[n])
    ]
    globals_changed = [s for s in GLOBAL_SECTIONS if not _section_equal(old, new, s)]

    location_changed = (
        old.defaults.memories_location != new.defaults.memories_location
    )
    return ConfigDiff(
        projects_added=added,
        projects_removed=removed,
        projects_modified=modified,
        global_fields_changed=globals_changed,
        has_changes=bool(added or removed or modified or globals_changed),
        requires_migration=bool(added or removed or modified or location_changed),
    )


def _project_field_changes(a: ProjectConfig, b: ProjectConfig) -> ProjectFieldChanges:
    changes = ProjectFieldChanges()
    if a.code_path != b.code_path:
        changes.fields_modified.append("code_path")
    for name in ("memories_path", "memories_mode"):
        before, after = getattr(a, name), getattr(b, name)
        if before is None and after is not None:
            changes.fields_added.append(name)
        elif before is not None and after is None:
            changes.fields_removed.append(name)
        elif before != after:
            changes.fields_modified.append(name)
    return changes


def detect_detailed_config_diff(
    old: Optional[MemoryConfig], new: MemoryConfig,
) -> DetailedConfigDiff:
    """detect_config_diff() plus per-field before/after values."""
    base = detect_config_diff(old, new)
    detailed = DetailedConfigDiff(**asdict(base))
    if old is None:
        return detailed

    for name in base.projects_modified:
        detailed.project_changes[name] = _project_field_changes(
            old.projects[name], new.projects[name]
        )

    for section in base.global_fields_changed:
        a, b = getattr(old, section), getattr(new, section)
        for f in _GLOBAL_FIELDS[section]:
            before, after = getattr(a, f), getattr(b, f)
            if before != after:
                detailed.global_changes.append(
                    GlobalFieldChange(f"{section}.{f}", before, after)
                )
    return detailed


def get_affected_projects(diff: ConfigDiff) -> List[str]:
    return diff.projects_added + diff.projects_removed + diff.projects_modified


def is_project_affected(diff: ConfigDiff, name: str) -> bool:
    return name in get_affected_projects(diff)


def get_default_mode_affected_projects(
    diff: ConfigDiff, old: Optional[MemoryConfig], new: MemoryConfig,
) -> List[str]:
    """DEFAULT-mode projects whose path moves with defaults.memories_location."""
    if (
        "defaults" not in diff.global_fields_changed
        or old is None
        or old.defaults.memories_location == new.defaults.memories_location
    ):
        return []
    return [
        name for name, project in new.projects.items()
        if project.effective_mode == "DEFAULT"
    ]


def summarize_config_diff(diff: ConfigDiff) -> str:
    """Multi-line human-readable summary."""
    if not diff.has_changes:
        return "No configuration changes detected."
    lines: List[str] = []
    if diff.projects_added:
        lines.append(f"Projects added: {', '.join(diff.projects_added)}")
    if diff.projects_removed:
        lines.append(f"Projects removed: {', '.join(diff.projects_removed)}")
    if diff.projects_modified:
        lines.append(f"Projects modified: {', '.join(diff.projects_modified)}")
    if diff.global_fields_changed:
        lines.append(f"Global settings changed: {', '.join(diff.global_fields_changed)}")
    if diff.requires_migration:
        lines.append("Migration required: Yes")
    return "\n".join(lines)
