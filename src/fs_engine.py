"""
File-operation engine for the secure filesystem server.

Everything here receives paths that already went through PathGuard.
Recursive traversals (tree, search) re-validate each directory before
descending into it and track the real paths on the current stack so a
symlink loop fails fast instead of recursing forever.
"""

import difflib
import errno
import logging
import os
import shutil
import stat
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import regex as regex_lib  # For ReDoS-safe pattern matching with timeout

from sandbox import (
    AlreadyExists,
    AmbiguousOrMissingMatch,
    CycleDetected,
    InvalidPattern,
    NotFound,
    NotText,
    OutOfBounds,
    PathGuard,
    ValidatedPath,
)
from schemas import EditOperation

logger = logging.getLogger("secure-fs-server")

# Seconds allowed for a single glob match against one name
PATTERN_TIMEOUT = 1
GLOB_CHARS = frozenset("*?[")


@dataclass(frozen=True)
class FileInfo:
    size: int
    created: datetime
    modified: datetime
    accessed: datetime
    is_directory: bool
    is_file: bool
    permissions: str

    def as_lines(self) -> str:
        """Render as `key: value` lines."""
        fields = {
            "size": self.size,
            "created": self.created.isoformat(),
            "modified": self.modified.isoformat(),
            "accessed": self.accessed.isoformat(),
            "isDirectory": str(self.is_directory).lower(),
            "isFile": str(self.is_file).lower(),
            "permissions": self.permissions,
        }
        return "\n".join(f"{key}: {value}" for key, value in fields.items())


@dataclass
class TreeEntry:
    name: str
    kind: str  # "file" or "directory"
    children: Optional[list["TreeEntry"]] = None

    def to_dict(self) -> dict:
        data: dict = {"name": self.name, "type": self.kind}
        if self.children is not None:
            data["children"] = [child.to_dict() for child in self.children]
        return data


def stat_path(path: ValidatedPath) -> FileInfo:
    """Read metadata for a validated path (symlinks followed)."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        raise NotFound(f"No such file or directory: {path}") from None

    created = getattr(st, "st_birthtime", st.st_ctime)
    return FileInfo(
        size=st.st_size,
        created=datetime.fromtimestamp(created),
        modified=datetime.fromtimestamp(st.st_mtime),
        accessed=datetime.fromtimestamp(st.st_atime),
        is_directory=stat.S_ISDIR(st.st_mode),
        is_file=stat.S_ISREG(st.st_mode),
        permissions=f"{st.st_mode & 0o777:03o}",
    )


def read_text(path: ValidatedPath) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise NotFound(f"No such file or directory: {path}") from None
    except UnicodeDecodeError:
        raise NotText(f"{path} is not a UTF-8 text file") from None


def write_text(guard: PathGuard, path: ValidatedPath, content: str) -> None:
    target = guard.recheck(path)
    try:
        target.write_text(content, encoding="utf-8")
    except FileNotFoundError:
        raise NotFound(f"Parent directory does not exist: {target.parent}") from None


def create_directory(guard: PathGuard, path: ValidatedPath) -> None:
    target = guard.recheck(path)
    os.makedirs(target, exist_ok=True)


def move_path(guard: PathGuard, source: ValidatedPath, destination: ValidatedPath) -> None:
    if not os.path.lexists(source):
        raise NotFound(f"No such file or directory: {source}")
    if os.path.lexists(destination):
        raise AlreadyExists(f"Destination already exists: {destination}")

    source = guard.recheck(source)
    destination = guard.recheck(destination)
    shutil.move(source, destination)


def _scan(directory: Path) -> list[os.DirEntry]:
    """List a directory in the order the filesystem returns entries."""
    try:
        with os.scandir(directory) as entries:
            return list(entries)
    except FileNotFoundError:
        raise NotFound(f"No such directory: {directory}") from None


def list_directory(path: ValidatedPath) -> list[tuple[str, bool]]:
    """Return (name, is_directory) pairs in listing order.

    Symlinks are not followed: a link to a directory is listed as a file.
    """
    return [(entry.name, entry.is_dir(follow_symlinks=False)) for entry in _scan(path)]


def _is_traversable_dir(entry: os.DirEntry, shown_as: Path) -> bool:
    """is_dir() following symlinks; a self-referencing link chain is a cycle."""
    try:
        return entry.is_dir()
    except OSError as e:
        if e.errno == errno.ELOOP:
            raise CycleDetected(f"Symlink cycle detected at {shown_as}") from None
        raise


# Tree


def build_tree(guard: PathGuard, path: ValidatedPath) -> TreeEntry:
    """Snapshot a directory as a nested TreeEntry.

    Raises OutOfBounds if any subdirectory resolves outside the sandbox and
    CycleDetected if a symlink leads back to a directory on the current path.
    """
    return TreeEntry(
        name=path.name or str(path),
        kind="directory",
        children=_tree_children(guard, path, {path}),
    )


def _tree_children(guard: PathGuard, directory: ValidatedPath, on_stack: set[Path]) -> list[TreeEntry]:
    children: list[TreeEntry] = []
    for entry in _scan(directory):
        if not _is_traversable_dir(entry, directory / entry.name):
            children.append(TreeEntry(name=entry.name, kind="file"))
            continue

        subdir = guard.validate(str(directory / entry.name))
        if subdir in on_stack:
            raise CycleDetected(f"Symlink cycle detected at {directory / entry.name}")

        on_stack.add(subdir)
        try:
            grandchildren = _tree_children(guard, subdir, on_stack)
        finally:
            on_stack.discard(subdir)
        children.append(TreeEntry(name=entry.name, kind="directory", children=grandchildren))
    return children


# Search


def _glob_to_regex(pattern: str) -> str:
    """Translate a shell glob (`*`, `?`, `[...]`) into a regex body."""
    parts: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        i += 1
        if char == "*":
            if not parts or parts[-1] != ".*":
                parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[":
            j = i
            if j < n and pattern[j] == "!":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            j = pattern.find("]", j)
            if j == -1:
                parts.append(regex_lib.escape(char))
                continue
            body = pattern[i:j].replace("\\", "\\\\").replace("[", "\\[")
            if body[:1] == "!":
                body = "^" + body[1:]
            elif body[:1] == "^":
                body = "\\" + body
            parts.append(f"[{body}]")
            i = j + 1
        else:
            parts.append(regex_lib.escape(char))
    return "".join(parts)


def compile_glob(pattern: str, substring: bool = False):
    """Compile a case-insensitive glob.

    With substring=True a pattern without wildcards matches anywhere in the
    name.
    """
    if substring and not GLOB_CHARS.intersection(pattern):
        pattern = f"*{pattern}*"
    try:
        return regex_lib.compile(_glob_to_regex(pattern), regex_lib.IGNORECASE | regex_lib.DOTALL)
    except regex_lib.error as e:
        raise InvalidPattern(f"Invalid pattern {pattern!r}: {e}") from None


def glob_matches(compiled, text: str) -> bool:
    try:
        return compiled.fullmatch(text, timeout=PATTERN_TIMEOUT) is not None
    except TimeoutError:
        raise InvalidPattern(
            f"Pattern {compiled.pattern!r} timed out after {PATTERN_TIMEOUT}s"
        ) from None


def search_files(
    guard: PathGuard,
    root: ValidatedPath,
    pattern: str,
    exclude_patterns: Sequence[str] = (),
) -> list[str]:
    """Find entries under root whose name matches pattern.

    Results are depth-first pre-order: a directory is reported before its
    contents, siblings in listing order. Excluded entries are pruned with
    their whole subtree. Entries resolving outside the sandbox are skipped.
    """
    matcher = compile_glob(pattern, substring=True)
    excludes = [compile_glob(p) for p in exclude_patterns]
    results: list[str] = []
    _search_dir(guard, root, root, "", matcher, excludes, results, {root})
    return results


def _search_dir(guard, root, directory, prefix, matcher, excludes, results, on_stack) -> None:
    for entry in _scan(directory):
        relative = f"{prefix}{entry.name}"
        if any(glob_matches(ex, relative) or glob_matches(ex, entry.name) for ex in excludes):
            continue

        try:
            real = guard.validate(str(directory / entry.name))
        except OutOfBounds:
            logger.debug(f"Search skipped {relative}: outside allowed directories")
            continue

        if glob_matches(matcher, entry.name):
            results.append(str(root / relative))

        if _is_traversable_dir(entry, root / relative):
            if real in on_stack:
                raise CycleDetected(f"Symlink cycle detected at {root / relative}")
            on_stack.add(real)
            try:
                _search_dir(guard, root, real, f"{relative}/", matcher, excludes, results, on_stack)
            finally:
                on_stack.discard(real)


# Editing


def _normalize_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n")


def _count_occurrences(haystack: str, needle: str) -> int:
    """Count occurrences, overlapping ones included."""
    count = 0
    start = haystack.find(needle)
    while start != -1:
        count += 1
        start = haystack.find(needle, start + 1)
    return count


def _diff_lines(text: str) -> list[str]:
    """Split into newline-terminated lines, marking a missing final newline."""
    lines = [line + "\n" for line in text.split("\n")]
    last = lines.pop()
    if last != "\n":
        lines.append(last + "\\ No newline at end of file\n")
    return lines


def unified_diff(original: str, modified: str, label: str) -> str:
    """Whole-file diff wrapped in a fenced ```diff block."""
    diff = "".join(
        difflib.unified_diff(
            _diff_lines(original),
            _diff_lines(modified),
            fromfile=label,
            tofile=label,
            fromfiledate="original",
            tofiledate="modified",
            lineterm="\n",
        )
    )
    fence = "```"
    while fence in diff:
        fence += "`"
    return f"{fence}diff\n{diff}{fence}"


def apply_edits(
    guard: PathGuard,
    path: ValidatedPath,
    edits: Sequence[EditOperation],
    dry_run: bool = False,
) -> str:
    """Apply edits in order and return the whole-file diff.

    Each edit's match_text must occur exactly once in the content as left
    by the previous edits. Nothing is written unless every edit applies and
    dry_run is false.
    """
    original = _normalize_line_endings(read_text(path))
    modified = original

    for index, edit in enumerate(edits, start=1):
        match_text = _normalize_line_endings(edit.match_text)
        occurrences = _count_occurrences(modified, match_text)
        if occurrences != 1:
            raise AmbiguousOrMissingMatch(
                f"Edit {index}: matchText must occur exactly once, found {occurrences}:\n{edit.match_text}"
            )
        modified = modified.replace(match_text, _normalize_line_endings(edit.replacement_text), 1)

    diff = unified_diff(original, modified, str(path))
    if not dry_run:
        write_text(guard, path, modified)
    return diff
