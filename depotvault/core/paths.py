"""Canonical on-disk layout for branch versions.

Layout under the managed root::

    <root>/branches/<branch>/build_<build id>/...
    <root>/branches/<branch>/manifest_<manifest id>/...

A legacy branch has its files directly under ``<root>/branches/<branch>``.
All functions here are pure apart from reading the filesystem.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import structlog

from depotvault.core.errors import PathValidationError
from depotvault.core.types import InstalledVersion, VersionKind

logger = structlog.get_logger()

BRANCHES_DIR = "branches"


def branch_base_path(root: Path, branch: str) -> Path:
    """Get the branch directory, without any version subdirectory."""
    return Path(root).resolve() / BRANCHES_DIR / branch


def version_dir_name(version_id: str, kind: VersionKind = VersionKind.BUILD) -> str:
    """Directory name for a version identifier of the given kind."""
    return normalize_version_identifier(version_id, kind)


def version_path(
    root: Path,
    branch: str,
    version_id: str,
    kind: VersionKind = VersionKind.BUILD,
) -> Path:
    """Resolve the absolute directory of one version.

    Args:
        root: Managed root directory
        branch: Branch folder name
        version_id: Build ID or manifest ID
        kind: Which identifier kind names the directory

    Returns:
        Absolute path ``<root>/branches/<branch>/<kind>_<id>``
    """
    return branch_base_path(root, branch) / version_dir_name(version_id, kind)


def build_version_path(root: Path, branch: str, build_id: str) -> Path:
    """Build-naming variant of :func:`version_path`."""
    return version_path(root, branch, build_id, VersionKind.BUILD)


def manifest_version_path(root: Path, branch: str, manifest_id: str) -> Path:
    """Manifest-naming variant of :func:`version_path`."""
    return version_path(root, branch, manifest_id, VersionKind.MANIFEST)


def parse_version_dir_name(name: str) -> tuple[VersionKind, str] | None:
    """Split a version directory name into kind and identifier.

    Returns:
        ``(kind, id)`` or None if the name carries no kind prefix
    """
    for kind in VersionKind:
        if name.startswith(kind.prefix) and len(name) > len(kind.prefix):
            return kind, name[len(kind.prefix):]
    return None


def detect_version_kind(name: str) -> VersionKind | None:
    """Detect which identifier kind a directory name uses."""
    parsed = parse_version_dir_name(name)
    return parsed[0] if parsed else None


def normalize_version_identifier(version_id: str, kind: VersionKind) -> str:
    """Apply the prefix for ``kind``, replacing any other kind prefix."""
    if version_id.startswith(kind.prefix):
        return version_id
    parsed = parse_version_dir_name(version_id)
    clean_id = parsed[1] if parsed else version_id
    return f"{kind.prefix}{clean_id}"


def has_versioned_subdirectories(branch_path: Path) -> bool:
    """Check whether a branch directory holds any kind-prefixed subdirectory."""
    try:
        return any(
            entry.is_dir() and detect_version_kind(entry.name) is not None
            for entry in Path(branch_path).iterdir()
        )
    except FileNotFoundError:
        return False


def is_legacy_layout(branch_path: Path) -> bool:
    """Check whether a branch directory is a legacy flat install.

    True only when files sit directly in the branch directory and no
    kind-prefixed version subdirectory exists. A missing directory is not
    legacy.
    """
    path = Path(branch_path)
    # A version directory is never a branch root
    if not path.is_dir() or detect_version_kind(path.name) is not None:
        return False

    has_direct_files = False
    for entry in path.iterdir():
        if entry.is_dir() and detect_version_kind(entry.name) is not None:
            return False
        if entry.is_file():
            has_direct_files = True
    return has_direct_files


def is_within_root(root: Path, target: Path) -> bool:
    """Check that ``target`` resolves to ``root`` or somewhere below it.

    Both paths are fully resolved first; a sibling such as ``<root>-evil``
    is rejected even though it shares a string prefix with the root.
    """
    try:
        resolved_root = str(Path(root).resolve())
        resolved_target = str(Path(target).resolve())
    except (OSError, RuntimeError) as e:
        logger.warning("path_resolution_failed", target=str(target), error=str(e))
        return False

    if resolved_target == resolved_root:
        return True
    return resolved_target.startswith(resolved_root.rstrip(os.sep) + os.sep)


def ensure_within_root(root: Path, target: Path) -> Path:
    """Resolve ``target`` and require it to stay within ``root``.

    Raises:
        PathValidationError: If the path escapes the root
    """
    if not is_within_root(root, target):
        raise PathValidationError(
            f"Path {target} is outside managed root {root}",
            root=Path(root),
            target=Path(target),
        )
    return Path(target).resolve()


def directory_size(path: Path) -> int:
    """Total size in bytes of all regular files below ``path``."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, filename)).st_size
            except OSError:
                continue
    return total


def is_empty_dir(path: Path) -> bool:
    """True when ``path`` is a directory with no entries."""
    path = Path(path)
    return path.is_dir() and next(path.iterdir(), None) is None


def list_branches(root: Path) -> list[str]:
    """List branch folder names under the managed root."""
    branches_dir = Path(root) / BRANCHES_DIR
    if not branches_dir.is_dir():
        return []
    return sorted(entry.name for entry in branches_dir.iterdir() if entry.is_dir())


def list_branch_versions(root: Path, branch: str) -> list[InstalledVersion]:
    """Scan a branch directory for version subdirectories.

    Args:
        root: Managed root directory
        branch: Branch folder name

    Returns:
        Installed versions, newest first
    """
    base = branch_base_path(root, branch)
    if not base.is_dir():
        return []

    versions: list[InstalledVersion] = []
    for entry in base.iterdir():
        if not entry.is_dir():
            continue
        parsed = parse_version_dir_name(entry.name)
        if parsed is None:
            continue
        kind, version_id = parsed
        stat = entry.stat()
        versions.append(
            InstalledVersion(
                kind=kind,
                version_id=version_id,
                path=entry,
                created=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                size_bytes=directory_size(entry),
            )
        )

    versions.sort(key=lambda v: v.created, reverse=True)
    return versions
