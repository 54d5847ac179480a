"""
Copy Manifest Ledger — Crash-restartable bulk file copies

A manifest records every file of a bulk copy and its per-entry status.
It is persisted before any file is touched and re-persisted after every
entry transition, so after a crash the file on disk always reflects the
last completed step.

Entry status transitions (invariant):
    pending → copied → verified
    pending → failed
    copied  → failed

A manifest is incomplete while completed_at is unset or any entry is
not verified.  Incomplete manifests are rolled back by
recover_incomplete_migrations() at process start.

Public API:
    ManifestLedger(manifest_dir).create_manifest(project, source_root, target_root, files)
    .mark_entry_copied / .mark_entry_failed / .verify_entry / .mark_completed
    .rollback_partial_copy(manifest) -> PartialRollbackResult
    .recover_incomplete_migrations() -> RecoveryResult
    .get_progress / .get_status_counts / .get_failed_entries / .get_pending_entries
    copy_manifest_entries(ledger, manifest) -> CopyResult
"""

from __future__ import annotations

import glob
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from memconf.fileio import (
    atomic_write_json,
    ensure_private_dir,
    file_sha256,
    generate_id,
    now_iso,
    read_json,
)
from memconf.paths import is_path_within

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"

EntryStatus = Literal["pending", "copied", "verified", "failed"]
VALID_STATUSES = ("pending", "copied", "verified", "failed")

_ALLOWED_TRANSITIONS: Dict[str, set] = {
    "pending": {"copied", "failed"},
    "copied": {"verified", "failed"},
    "verified": set(),
    "failed": set(),
}

_UNSAFE_ID = re.compile(r"[^a-zA-Z0-9_-]")


class ManifestError(RuntimeError):
    """Raised on illegal transitions or malformed manifests."""


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------


@dataclass
class ManifestEntry:
    """One file of a bulk copy."""
    source_path: str
    target_path: str
    source_checksum: str
    target_checksum: Optional[str] = None
    status: str = "pending"
    copied_at: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_path": self.source_path,
            "target_path": self.target_path,
            "source_checksum": self.source_checksum,
            "target_checksum": self.target_checksum,
            "status": self.status,
            "copied_at": self.copied_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> ManifestEntry:
        status = d.get("status", "pending")
        if status not in VALID_STATUSES:
            raise ManifestError(f"Unknown entry status: {status!r}")
        return cls(
            source_path=d["source_path"],
            target_path=d["target_path"],
            source_checksum=d.get("source_checksum", ""),
            target_checksum=d.get("target_checksum"),
            status=status,
            copied_at=d.get("copied_at"),
            error=d.get("error"),
        )


@dataclass
class CopyManifest:
    """Persisted ledger of one bulk copy."""
    id: str
    project: str
    source_root: str
    target_root: str
    started_at: str
    completed_at: Optional[str] = None
    entries: List[ManifestEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "source_root": self.source_root,
            "target_root": self.target_root,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> CopyManifest:
        return cls(
            id=d["id"],
            project=d["project"],
            source_root=d["source_root"],
            target_root=d["target_root"],
            started_at=d["started_at"],
            completed_at=d.get("completed_at"),
            entries=[ManifestEntry.from_dict(e) for e in d.get("entries", [])],
        )


@dataclass
class ManifestProgress:
    total: int
    completed: int
    pending: int
    failed: int
    percent_complete: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "pending": self.pending,
            "failed": self.failed,
            "percent_complete": self.percent_complete,
        }


@dataclass
class PartialRollbackResult:
    success: bool
    files_rolled_back: int = 0
    failures: List[str] = field(default_factory=list)


@dataclass
class RecoveryResult:
    found: int = 0
    recovered: int = 0
    failures: List[str] = field(default_factory=list)


@dataclass
class CopyResult:
    copied: int = 0
    verified: int = 0
    failed: int = 0
    completed: bool = False


def is_incomplete(manifest: CopyManifest) -> bool:
    """True unless completed and every entry is verified."""
    if not manifest.completed_at:
        return True
    return any(e.status != "verified" for e in manifest.entries)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class ManifestLedger:
    """Creates, persists, transitions and rolls back copy manifests."""

    def __init__(self, manifest_dir: str):
        self.manifest_dir = manifest_dir

    def manifest_path(self, manifest_id: str) -> str:
        return os.path.join(
            self.manifest_dir, _UNSAFE_ID.sub("_", manifest_id) + MANIFEST_SUFFIX
        )

    def _save(self, manifest: CopyManifest) -> None:
        ensure_private_dir(self.manifest_dir)
        atomic_write_json(self.manifest_path(manifest.id), manifest.to_dict())

    def _transition(self, entry: ManifestEntry, status: str) -> None:
        if status not in _ALLOWED_TRANSITIONS[entry.status]:
            raise ManifestError(
                f"Illegal transition {entry.status} → {status} for {entry.target_path}"
            )
        entry.status = status

    # -- create / read ------------------------------------------------------

    def create_manifest(
        self,
        project: str,
        source_root: str,
        target_root: str,
        relative_files: List[str],
    ) -> CopyManifest:
        """Persist a manifest with every entry pending and source checksums set.

        Raises:
            ManifestError: If a relative path escapes its root.
        """
        source_root = os.path.abspath(source_root)
        target_root = os.path.abspath(target_root)
        entries: List[ManifestEntry] = []
        for rel in relative_files:
            src = os.path.normpath(os.path.join(source_root, rel))
            dst = os.path.normpath(os.path.join(target_root, rel))
            if not (is_path_within(src, source_root) and is_path_within(dst, target_root)):
                raise ManifestError(f"Path escapes copy root: {rel}")
            try:
                checksum = file_sha256(src)
            except OSError as e:
                logger.warning("Cannot checksum source %s: %s", src, e)
                checksum = ""
            entries.append(ManifestEntry(src, dst, checksum))

        manifest = CopyManifest(
            id=generate_id("migration"),
            project=project,
            source_root=source_root,
            target_root=target_root,
            started_at=now_iso(),
            entries=entries,
        )
        self._save(manifest)
        logger.info(
            "Created manifest %s for project '%s' (%d files)",
            manifest.id, project, len(entries),
        )
        return manifest

    def get_manifest(self, manifest_id: str) -> Optional[CopyManifest]:
        """Load a manifest by id. None if absent.

        Raises:
            ManifestError: If the file exists but is malformed.
        """
        path = self.manifest_path(manifest_id)
        try:
            return self._load(path)
        except FileNotFoundError:
            return None

    def _load(self, path: str) -> CopyManifest:
        try:
            data = read_json(path)
            return CopyManifest.from_dict(data)
        except FileNotFoundError:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise ManifestError(f"Malformed manifest {path}: {e}") from e

    def _manifest_files(self) -> List[str]:
        return sorted(glob.glob(os.path.join(self.manifest_dir, "*" + MANIFEST_SUFFIX)))

    def list_manifests(self) -> List[CopyManifest]:
        """All readable manifests; malformed files are logged and skipped."""
        manifests: List[CopyManifest] = []
        for path in self._manifest_files():
            try:
                manifests.append(self._load(path))
            except (OSError, ManifestError) as e:
                logger.warning("Skipping manifest %s: %s", path, e)
        return manifests

    def delete_manifest(self, manifest: CopyManifest) -> None:
        try:
            os.unlink(self.manifest_path(manifest.id))
        except FileNotFoundError:
            pass

    # -- transitions --------------------------------------------------------

    def mark_entry_copied(self, manifest: CopyManifest, entry: ManifestEntry) -> None:
        """pending → copied; records the target checksum.

        If the target cannot be read the entry goes to failed instead.
        """
        try:
            target_checksum = file_sha256(entry.target_path)
        except OSError as e:
            self._transition(entry, "failed")
            entry.error = f"Failed to compute target checksum: {e}"
        else:
            self._transition(entry, "copied")
            entry.target_checksum = target_checksum
            entry.copied_at = now_iso()
        self._save(manifest)

    def mark_entry_failed(
        self, manifest: CopyManifest, entry: ManifestEntry, reason: str,
    ) -> None:
        self._transition(entry, "failed")
        entry.error = reason
        self._save(manifest)

    def verify_entry(self, manifest: CopyManifest, entry: ManifestEntry) -> bool:
        """copied → verified when the target matches the source checksum.

        Entries in any other state are left alone; returns whether the
        entry ends up verified.
        """
        if entry.status != "copied":
            return entry.status == "verified"
        try:
            actual = file_sha256(entry.target_path)
        except OSError as e:
            self._transition(entry, "failed")
            entry.error = f"Failed to verify target: {e}"
            self._save(manifest)
            return False

        entry.target_checksum = actual
        if actual != entry.source_checksum:
            self._transition(entry, "failed")
            entry.error = (
                f"Checksum mismatch: expected {entry.source_checksum}, got {actual}"
            )
            self._save(manifest)
            return False

        self._transition(entry, "verified")
        self._save(manifest)
        return True

    def mark_completed(self, manifest: CopyManifest) -> None:
        manifest.completed_at = now_iso()
        self._save(manifest)
        logger.info("Manifest %s completed", manifest.id)

    # -- rollback / recovery ------------------------------------------------

    def prune_empty_dirs(self, start: str, root: str) -> None:
        """Remove empty directories from start up to and including root."""
        current = start
        while is_path_within(current, root):
            try:
                os.rmdir(current)
            except OSError:
                return
            if os.path.normpath(current) == os.path.normpath(root):
                return
            current = os.path.dirname(current)

    def rollback_partial_copy(self, manifest: CopyManifest) -> PartialRollbackResult:
        """Delete copied/verified targets, empty target dirs, and the manifest.

        Pending and failed entries are never touched.  Individual failures
        are collected and do not stop the rollback.
        """
        result = PartialRollbackResult(success=True)
        for entry in manifest.entries:
            if entry.status not in ("copied", "verified"):
                continue
            if not os.path.exists(entry.target_path):
                continue
            try:
                os.unlink(entry.target_path)
                result.files_rolled_back += 1
            except OSError as e:
                result.failures.append(f"{entry.target_path}: {e}")
                continue
            self.prune_empty_dirs(os.path.dirname(entry.target_path), manifest.target_root)

        if os.path.isdir(manifest.target_root):
            self.prune_empty_dirs(manifest.target_root, manifest.target_root)

        try:
            self.delete_manifest(manifest)
        except OSError as e:
            result.failures.append(f"{self.manifest_path(manifest.id)}: {e}")

        result.success = not result.failures
        logger.info(
            "Rolled back manifest %s: %d files removed, %d failures",
            manifest.id, result.files_rolled_back, len(result.failures),
        )
        return result

    def recover_incomplete_migrations(self) -> RecoveryResult:
        """Roll back every incomplete manifest; skip and report failures."""
        result = RecoveryResult()
        for path in self._manifest_files():
            try:
                manifest = self._load(path)
            except (OSError, ManifestError) as e:
                logger.error("Cannot recover manifest %s: %s", path, e)
                result.failures.append(f"{path}: {e}")
                continue
            if not is_incomplete(manifest):
                continue
            result.found += 1
            rb = self.rollback_partial_copy(manifest)
            if rb.success:
                result.recovered += 1
            else:
                logger.error("Incomplete recovery of %s: %s", manifest.id, rb.failures)
                result.failures.extend(rb.failures)
        if result.found:
            logger.info(
                "Recovered %d/%d incomplete migrations", result.recovered, result.found,
            )
        return result

    # -- read helpers -------------------------------------------------------

    def is_incomplete(self, manifest: CopyManifest) -> bool:
        return is_incomplete(manifest)

    def get_status_counts(self, manifest: CopyManifest) -> Dict[str, int]:
        counts = {s: 0 for s in VALID_STATUSES}
        for e in manifest.entries:
            counts[e.status] += 1
        return counts

    def get_progress(self, manifest: CopyManifest) -> ManifestProgress:
        counts = self.get_status_counts(manifest)
        total = len(manifest.entries)
        completed = counts["verified"] + counts["copied"]
        return ManifestProgress(
            total=total,
            completed=completed,
            pending=counts["pending"],
            failed=counts["failed"],
            percent_complete=round(completed * 100 / total) if total else 0,
        )

    def get_failed_entries(self, manifest: CopyManifest) -> List[ManifestEntry]:
        return [e for e in manifest.entries if e.status == "failed"]

    def get_pending_entries(self, manifest: CopyManifest) -> List[ManifestEntry]:
        return [e for e in manifest.entries if e.status == "pending"]


# ---------------------------------------------------------------------------
# Copy driver
# ---------------------------------------------------------------------------


def copy_manifest_entries(ledger: ManifestLedger, manifest: CopyManifest) -> CopyResult:
    """Copy pending entries, verify copied ones, complete when all verified.

    Safe to re-run on a resumed manifest: verified entries are skipped
    and copied entries are re-verified.
    """
    result = CopyResult()
    for entry in manifest.entries:
        if entry.status == "pending":
            try:
                os.makedirs(os.path.dirname(entry.target_path), exist_ok=True)
                shutil.copy2(entry.source_path, entry.target_path)
            except OSError as e:
                ledger.mark_entry_failed(manifest, entry, f"Copy failed: {e}")
                result.failed += 1
                continue
            ledger.mark_entry_copied(manifest, entry)
            if entry.status == "failed":
                result.failed += 1
                continue
            result.copied += 1
        if entry.status == "copied":
            if ledger.verify_entry(manifest, entry):
                result.verified += 1
            else:
                result.failed += 1

    if all(e.status == "verified" for e in manifest.entries):
        ledger.mark_completed(manifest)
        result.completed = True
    return result
