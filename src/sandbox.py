"""
Sandbox boundary for the secure filesystem server.

Every path a caller hands us goes through PathGuard.validate() before any
filesystem call is made. The guard expands, normalizes and symlink-resolves
the path, then checks it lies inside one of the configured allowed roots.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import NewType, Sequence

logger = logging.getLogger("secure-fs-server")

# Absolute, symlink-resolved path proven to lie inside the allowed roots.
# Only PathGuard constructs these.
ValidatedPath = NewType("ValidatedPath", Path)


class FileOperationError(Exception):
    """Base class for errors raised by the file-operation engine."""

    code = "file_operation_error"


class OutOfBounds(FileOperationError):
    code = "out_of_bounds"


class NotFound(FileOperationError):
    code = "not_found"


class AmbiguousOrMissingMatch(FileOperationError):
    code = "ambiguous_or_missing_match"


class CycleDetected(FileOperationError):
    code = "cycle_detected"


class InvalidPattern(FileOperationError):
    code = "invalid_pattern"


class AlreadyExists(FileOperationError):
    code = "already_exists"


class NotText(FileOperationError):
    code = "not_text"


class ConfigurationError(Exception):
    """Raised when the allowed roots cannot be established at startup."""


def _expand_home(raw: str) -> str:
    if raw == "~" or raw.startswith("~/") or raw.startswith("~" + os.sep):
        return os.path.expanduser(raw)
    return raw


@dataclass(frozen=True)
class AllowedRoots:
    """Immutable set of directories the server may touch."""

    roots: tuple[Path, ...]

    @classmethod
    def from_args(cls, raw_roots: Sequence[str]) -> "AllowedRoots":
        """Resolve and check the directories given at startup.

        Raises ConfigurationError if no root is given or a root is not an
        existing directory.
        """
        if not raw_roots:
            raise ConfigurationError("At least one allowed directory must be specified")

        resolved: list[Path] = []
        for raw in raw_roots:
            path = Path(os.path.realpath(os.path.abspath(_expand_home(raw))))
            if not path.is_dir():
                raise ConfigurationError(f"{raw} is not an existing directory")
            if path not in resolved:
                resolved.append(path)
        return cls(tuple(resolved))

    @property
    def working_root(self) -> Path:
        """Relative caller paths are resolved against this root."""
        return self.roots[0]

    def contains(self, path: Path) -> bool:
        return any(path == root or path.is_relative_to(root) for root in self.roots)

    def __iter__(self):
        return iter(self.roots)

    def __len__(self) -> int:
        return len(self.roots)


class PathGuard:
    """Resolves caller paths and enforces containment in AllowedRoots."""

    def __init__(self, allowed: AllowedRoots):
        self.allowed = allowed

    def validate(self, raw_path: str) -> ValidatedPath:
        """Return the real path for raw_path, or raise OutOfBounds.

        Paths that do not exist yet are validated through their nearest
        existing ancestor, with the missing segments re-appended.
        """
        expanded = _expand_home(str(raw_path))
        if not os.path.isabs(expanded):
            expanded = os.path.join(self.allowed.working_root, expanded)
        normalized = Path(os.path.normpath(expanded))

        existing = normalized
        missing: list[str] = []
        while not os.path.lexists(existing):
            if existing.parent == existing:
                break
            missing.append(existing.name)
            existing = existing.parent

        real = Path(os.path.realpath(existing))
        for segment in reversed(missing):
            real = real / segment

        if not self.allowed.contains(real):
            self._deny(raw_path, real)
        return ValidatedPath(real)

    def recheck(self, path: ValidatedPath) -> ValidatedPath:
        """Validate an already-validated path again right before mutating it.

        The filesystem may have changed (for example a symlink retargeted)
        since the first check.
        """
        return self.validate(str(path))

    def _deny(self, raw_path: str, resolved: Path):
        logger.warning(f"Denied access to {raw_path!r} (resolved to {resolved})")
        raise OutOfBounds(f"Access denied - path outside allowed directories: {raw_path}")
