"""
Path Sanitizer — Validation of untrusted path strings

Every configuration value that becomes a filesystem path goes through
this module first.  Rejects traversal sequences (plain and URL-encoded),
null bytes, and system directories; expands a leading '~'.

Known gap (kept deliberately): double-encoded traversal such as
'%252e%252e' is accepted, since it only decodes to '%2e%2e' and never
reaches the filesystem as '..'.

Public API:
    PathSanitizer(blocked_paths=None).validate(raw) -> PathValidationResult
    PathSanitizer.validate_or_raise(raw) -> str
    expand_tilde(raw) -> str
    normalize_path(raw) -> str
    is_path_within(path, base) -> bool
    explain_path_validation(raw) -> str
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


class PathRejected(ValueError):
    """Raised when the sanitizer refuses an untrusted path."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(reason)


BLOCKED_SYSTEM_PATHS_UNIX = (
    "/etc", "/usr", "/var", "/bin", "/sbin", "/lib", "/lib64",
    "/boot", "/dev", "/proc", "/sys", "/run", "/tmp", "/root",
)

BLOCKED_SYSTEM_PATHS_WINDOWS = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
    "C:\\System Volume Information",
)

_TRAVERSAL_PATTERNS = ("..", "..\\", "../", "%2e%2e", "%2E%2E")


def default_blocked_paths() -> Sequence[str]:
    """Blocked system directories for the current platform."""
    if sys.platform == "win32":
        return BLOCKED_SYSTEM_PATHS_WINDOWS
    return BLOCKED_SYSTEM_PATHS_UNIX


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def expand_tilde(raw: str) -> str:
    """Expand '~', '~/…' and '~\\…' to the user's home directory."""
    if raw == "~":
        return os.path.expanduser("~")
    if raw.startswith("~/") or raw.startswith("~\\"):
        return os.path.join(os.path.expanduser("~"), raw[2:])
    return raw


def normalize_path(raw: str) -> str:
    """Expand '~' and return an absolute, normalized path (no fs access)."""
    return os.path.normpath(os.path.abspath(expand_tilde(raw)))


def is_path_within(path: str, base: str) -> bool:
    """True if path equals base or lies beneath it."""
    p = normalize_path(path)
    b = normalize_path(base)
    base_with_sep = b if b.endswith(os.sep) else b + os.sep
    return p == b or p.startswith(base_with_sep)


def _contains_traversal(raw: str) -> bool:
    return any(pattern in raw for pattern in _TRAVERSAL_PATTERNS)


def _contains_null_byte(raw: str) -> bool:
    return "\0" in raw


# ---------------------------------------------------------------------------
# Sanitizer
# ---------------------------------------------------------------------------


@dataclass
class PathValidationResult:
    """Outcome of validating one path string."""
    valid: bool
    normalized_path: Optional[str] = None
    error: Optional[str] = None


class PathSanitizer:
    """Validates and normalizes untrusted path strings."""

    def __init__(self, blocked_paths: Optional[Sequence[str]] = None):
        self._blocked = tuple(
            default_blocked_paths() if blocked_paths is None else blocked_paths
        )

    @property
    def blocked_paths(self) -> Sequence[str]:
        return self._blocked

    def blocked_match(self, normalized: str) -> Optional[str]:
        """Return the blocked directory containing normalized, if any."""
        lower = normalized.lower()
        for blocked in self._blocked:
            lower_blocked = blocked.lower()
            if lower == lower_blocked or lower.startswith(lower_blocked + os.sep):
                return blocked
        return None

    def validate(self, raw: str) -> PathValidationResult:
        """
        Validate a raw path string.

        Order of checks: empty, null byte, traversal (before any
        normalization, so '..' cannot be folded away), system directory.
        """
        if not raw or not raw.strip():
            return PathValidationResult(False, error="Path cannot be empty")

        if _contains_null_byte(raw):
            return PathValidationResult(
                False, error="Invalid path characters: null byte detected"
            )

        if _contains_traversal(raw):
            return PathValidationResult(False, error="Path traversal not allowed")

        try:
            normalized = normalize_path(raw)
        except (OSError, ValueError):
            return PathValidationResult(False, error="Failed to normalize path")

        blocked = self.blocked_match(normalized)
        if blocked is not None:
            return PathValidationResult(
                False, error=f"System path not allowed: {blocked}"
            )

        return PathValidationResult(True, normalized_path=normalized)

    def validate_or_raise(self, raw: str) -> str:
        """Return the normalized path or raise PathRejected."""
        result = self.validate(raw)
        if not result.valid:
            logger.warning("Rejected path %r: %s", raw, result.error)
            raise PathRejected(raw, result.error or "Path rejected")
        return result.normalized_path  # type: ignore[return-value]

    def explain(self, raw: str) -> str:
        """Human-readable reason why raw is (in)valid."""
        if not raw or not raw.strip():
            return "Path is empty or contains only whitespace"
        if _contains_null_byte(raw):
            return "Path contains null bytes which could be used for path truncation attacks"
        if _contains_traversal(raw):
            return "Path contains '..' sequences which could be used to escape directory boundaries"
        try:
            normalized = normalize_path(raw)
        except (OSError, ValueError):
            return "Path cannot be normalized due to invalid format"
        if self.blocked_match(normalized) is not None:
            return "Path resolves to a system directory which is blocked for security reasons"
        return "Path is valid"


_DEFAULT_SANITIZER = PathSanitizer()


def validate_path(raw: str) -> PathValidationResult:
    """Validate with the platform-default blocked list."""
    return _DEFAULT_SANITIZER.validate(raw)


def explain_path_validation(raw: str) -> str:
    return _DEFAULT_SANITIZER.explain(raw)
