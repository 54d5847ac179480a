"""
Content Relocation — Move project memories after a path change

When a reconfiguration changes where a project's memories live (its own
mode or path, or defaults.memories_location for DEFAULT projects), the
files under the old location are copied to the new one through a copy
manifest, under the affected project locks.

All-or-nothing across projects: if any copy fails, every copy made by
the call is rolled back.  Source content is never deleted.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from memconf.config import MemoryConfig
from memconf.lock import LockManager, LockTimeout
from memconf.manifest import CopyManifest, ManifestLedger, copy_manifest_entries
from memconf.paths import PathSanitizer, is_path_within
from memconf.translation import resolve_memories_path

logger = logging.getLogger(__name__)


class RelocationError(RuntimeError):
    """Raised when content cannot be relocated; copies are rolled back."""

    def __init__(self, message: str, project: Optional[str] = None):
        self.project = project
        super().__init__(message)


@dataclass
class RelocationPlan:
    project: str
    source: str
    target: str


@dataclass
class RelocationReport:
    """Per-project outcome of relocate()."""
    project: str
    source: str
    target: str
    files_copied: int = 0
    skipped: Optional[str] = None


def _relative_files(root: str) -> List[str]:
    """Regular files beneath root, relative to it, in walk order."""
    files: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            full = os.path.join(dirpath, name)
            if os.path.isfile(full) and not os.path.islink(full):
                files.append(os.path.relpath(full, root))
    return files


class ContentRelocator:
    """Copies memories for projects whose resolved path moved."""

    def __init__(
        self,
        ledger: ManifestLedger,
        lock_manager: LockManager,
        sanitizer: Optional[PathSanitizer] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.ledger = ledger
        self.lock_manager = lock_manager
        self.sanitizer = sanitizer or PathSanitizer()
        self.lock_timeout = lock_timeout

    def plan(self, old: MemoryConfig, new: MemoryConfig) -> List[RelocationPlan]:
        """Projects present in both configs whose memories path changed.

        Raises:
            RelocationError: If a path of an affected project is rejected.
        """
        plans: List[RelocationPlan] = []
        for name in sorted(set(old.projects) & set(new.projects)):
            before = resolve_memories_path(
                name, old.projects[name], old.defaults.memories_location, self.sanitizer
            )
            after = resolve_memories_path(
                name, new.projects[name], new.defaults.memories_location, self.sanitizer
            )
            if before.error is None and after.error is None and before.path == after.path:
                continue
            if after.error is not None:
                raise RelocationError(
                    f"Project '{name}': invalid target path: {after.error}", name
                )
            if before.error is not None:
                logger.warning(
                    "Project '%s': old path unresolvable (%s); nothing to relocate",
                    name, before.error,
                )
                continue
            plans.append(RelocationPlan(name, before.path, after.path))
        return plans

    def _check(self, p: RelocationPlan) -> Tuple[bool, Optional[str]]:
        """Whether to copy; the reason when skipped.

        Raises:
            RelocationError: If the copy would be unsafe.
        """
        if not os.path.isdir(p.source):
            return False, "source does not exist"
        if is_path_within(p.target, p.source) or is_path_within(p.source, p.target):
            raise RelocationError(
                f"Project '{p.project}': source and target overlap "
                f"({p.source} → {p.target})", p.project,
            )
        if os.path.isdir(p.target) and os.listdir(p.target):
            raise RelocationError(
                f"Project '{p.project}': target is not empty: {p.target}", p.project,
            )
        return True, None

    def _discard_failed_copies(self, manifest: CopyManifest) -> None:
        """Remove what failed entries left at their targets.

        Targets were checked empty before copying, so anything there
        was written by this relocation.
        """
        for entry in self.ledger.get_failed_entries(manifest):
            try:
                os.unlink(entry.target_path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Cannot remove failed copy %s: %s", entry.target_path, e)
                continue
            self.ledger.prune_empty_dirs(
                os.path.dirname(entry.target_path), manifest.target_root
            )

    def _undo(self, done: List[CopyManifest]) -> None:
        for manifest in reversed(done):
            self._discard_failed_copies(manifest)
            result = self.ledger.rollback_partial_copy(manifest)
            if not result.success:
                logger.error("Rollback of %s incomplete: %s", manifest.id, result.failures)

    def relocate(self, old: MemoryConfig, new: MemoryConfig) -> List[RelocationReport]:
        """Copy memories of every moved project under its lock.

        Raises:
            RelocationError: Lock timeout, unsafe plan, or failed copy.
        """
        plans = self.plan(old, new)
        if not plans:
            return []

        names = [p.project for p in plans]
        try:
            with self.lock_manager.project_locks(names, self.lock_timeout):
                return self._relocate_locked(plans)
        except LockTimeout as e:
            raise RelocationError(f"Cannot lock projects {names}: {e}") from e

    def _relocate_locked(self, plans: List[RelocationPlan]) -> List[RelocationReport]:
        reports: List[RelocationReport] = []
        done: List[CopyManifest] = []
        try:
            for p in plans:
                report = RelocationReport(p.project, p.source, p.target)
                reports.append(report)
                proceed, reason = self._check(p)
                if not proceed:
                    report.skipped = reason
                    logger.info("Project '%s': %s, skipping", p.project, reason)
                    continue

                manifest = self.ledger.create_manifest(
                    p.project, p.source, p.target, _relative_files(p.source)
                )
                done.append(manifest)
                result = copy_manifest_entries(self.ledger, manifest)
                if not result.completed:
                    failed = self.ledger.get_failed_entries(manifest)
                    detail = failed[0].error if failed else "incomplete copy"
                    raise RelocationError(
                        f"Project '{p.project}': {len(failed)} file(s) failed: {detail}",
                        p.project,
                    )
                report.files_copied = len(manifest.entries)
                logger.info(
                    "Relocated %d files for '%s': %s → %s",
                    report.files_copied, p.project, p.source, p.target,
                )
        except BaseException:
            self._undo(done)
            raise

        for manifest in done:
            self.ledger.delete_manifest(manifest)
        return reports
