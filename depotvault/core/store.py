"""Durable store of installed versions and active-version pointers.

The store is a single JSON document with an explicit ``schema_version``.
Older documents are upgraded on load by the migrations registered in
``SCHEMA_MIGRATIONS`` and written back in the current schema.

Every mutation is a full read-modify-write under the store's lock and is
persisted with an atomic write (temp file + os.replace) before returning.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from depotvault.core import paths
from depotvault.core.errors import ConfigIOError
from depotvault.core.types import VersionKind, VersionRecord

logger = structlog.get_logger()

CURRENT_SCHEMA_VERSION = 3
MIN_RECENT_BUILDS = 1
MAX_RECENT_BUILDS = 50
DEFAULT_RECENT_BUILDS = 10


def clamp_recent_builds(value: int) -> int:
    """Clamp a "max recent builds" value to the supported range."""
    return max(MIN_RECENT_BUILDS, min(MAX_RECENT_BUILDS, int(value)))


class BranchBuildInfo(BaseModel):
    """Last build ID seen for a branch (legacy field)."""
    build_id: str
    updated_time: datetime = Field(default_factory=lambda: datetime.now(UTC))


class StoreDocument(BaseModel):
    """Persisted store layout, schema version 3."""
    schema_version: int = CURRENT_SCHEMA_VERSION
    managed_root: Path | None = None
    selected_branches: list[str] = Field(default_factory=list)
    branch_build_ids: dict[str, BranchBuildInfo] = Field(default_factory=dict)
    active_build_per_branch: dict[str, str] = Field(default_factory=dict)
    active_manifest_per_branch: dict[str, str] = Field(default_factory=dict)
    branch_versions: dict[str, dict[str, VersionRecord]] = Field(default_factory=dict)
    branch_manifest_versions: dict[str, dict[str, VersionRecord]] = Field(default_factory=dict)
    max_recent_builds: int = DEFAULT_RECENT_BUILDS
    last_known_changenumbers: dict[str, int] = Field(default_factory=dict)
    custom_launch_commands: dict[str, str] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def versions_for(self, branch: str, kind: VersionKind) -> dict[str, VersionRecord]:
        """Get (creating if needed) the record map of one kind for a branch."""
        table = self.branch_manifest_versions if kind == VersionKind.MANIFEST else self.branch_versions
        return table.setdefault(branch, {})


# Schema migrations

def detect_schema_version(data: dict[str, Any]) -> int:
    """Work out which schema a raw document was written with."""
    if "schema_version" in data:
        return int(data["schema_version"])
    config_version = str(data.get("configVersion", "1.0"))
    if config_version.startswith("2"):
        return 2
    return 1


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Turn plain branch -> build ID strings into BranchBuildInfo objects."""
    now = datetime.now(UTC).isoformat()
    migrated = dict(data)
    build_ids: dict[str, Any] = {}
    for branch, value in (data.get("branchBuildIds") or {}).items():
        if isinstance(value, str):
            build_ids[branch] = {"buildId": value, "updatedTime": now}
        elif isinstance(value, dict):
            build_ids[branch] = value
    migrated["branchBuildIds"] = build_ids
    migrated.setdefault("activeBuildPerBranch", {})
    migrated.setdefault("activeManifestPerBranch", {})
    migrated.setdefault("branchVersions", {})
    migrated.setdefault("branchManifestVersions", {})
    migrated["configVersion"] = "2.0"
    return migrated


def _split_identifiers(
    build_id: str | None,
    manifest_id: str | None,
) -> tuple[str | None, str | None, bool]:
    """Separate aliased identifiers into (build_id, manifest_id, pending)."""
    if build_id is not None:
        parsed = paths.parse_version_dir_name(build_id)
        if parsed is not None:
            kind, clean_id = parsed
            if kind == VersionKind.MANIFEST:
                return None, manifest_id or clean_id, False
            build_id = clean_id

    # A manifest ID equal to the build ID was a stand-in, not a real manifest
    if build_id is not None and manifest_id == build_id:
        return build_id, None, True
    return build_id, manifest_id, False


def _convert_v2_record(
    raw: dict[str, Any],
    kind: VersionKind,
    key: str,
    branch: str,
    root: Path | None,
) -> dict[str, Any] | None:
    build_id, manifest_id, pending = _split_identifiers(
        raw.get("buildId"), raw.get("manifestId")
    )
    if kind == VersionKind.MANIFEST and manifest_id is None and not pending:
        manifest_id = key
    if build_id is None and manifest_id is None:
        build_id, pending = key, False

    record_kind = kind
    if kind == VersionKind.BUILD and build_id is None:
        record_kind = VersionKind.MANIFEST

    path = raw.get("path")
    if not path:
        if root is None:
            logger.warning("store_record_dropped", branch=branch, key=key, reason="no path")
            return None
        version_id = manifest_id if record_kind == VersionKind.MANIFEST else build_id
        path = str(paths.version_path(root, branch, version_id, record_kind))  # type: ignore[arg-type]

    record: dict[str, Any] = {
        "kind": record_kind.value,
        "build_id": build_id,
        "manifest_id": manifest_id,
        "manifest_pending": pending,
        "size_bytes": raw.get("sizeBytes"),
        "is_active": bool(raw.get("isActive", False)),
        "path": path,
        "description": raw.get("description"),
    }
    if raw.get("downloadDate"):
        record["download_date"] = raw["downloadDate"]
    return record


def _migrate_v2_to_v3(data: dict[str, Any]) -> dict[str, Any]:
    """Rename to snake_case and replace identifier aliasing with pending markers."""
    root = data.get("managedEnvironmentPath") or None
    root_path = Path(root) if root else None

    branch_versions: dict[str, dict[str, Any]] = {}
    manifest_versions: dict[str, dict[str, Any]] = {}
    sources = (
        (data.get("branchVersions") or {}, VersionKind.BUILD),
        (data.get("branchManifestVersions") or {}, VersionKind.MANIFEST),
    )
    for table, kind in sources:
        for branch, versions in table.items():
            for key, raw in (versions or {}).items():
                record = _convert_v2_record(raw, kind, key, branch, root_path)
                if record is None:
                    continue
                if record["kind"] == VersionKind.MANIFEST.value:
                    version_id = record["manifest_id"] or record["build_id"]
                    manifest_versions.setdefault(branch, {})[version_id] = record
                else:
                    branch_versions.setdefault(branch, {})[record["build_id"]] = record

    active_builds: dict[str, str] = {}
    active_manifests: dict[str, str] = dict(data.get("activeManifestPerBranch") or {})
    for branch, value in (data.get("activeBuildPerBranch") or {}).items():
        parsed = paths.parse_version_dir_name(value)
        if parsed and parsed[0] == VersionKind.MANIFEST:
            active_manifests.setdefault(branch, parsed[1])
        else:
            active_builds[branch] = parsed[1] if parsed else value

    build_ids = {
        branch: {
            "build_id": info.get("buildId"),
            "updated_time": info.get("updatedTime") or datetime.now(UTC).isoformat(),
        }
        for branch, info in (data.get("branchBuildIds") or {}).items()
        if isinstance(info, dict) and info.get("buildId")
    }

    return {
        "schema_version": 3,
        "managed_root": root,
        "selected_branches": list(data.get("selectedBranches") or []),
        "branch_build_ids": build_ids,
        "active_build_per_branch": active_builds,
        "active_manifest_per_branch": active_manifests,
        "branch_versions": branch_versions,
        "branch_manifest_versions": manifest_versions,
        "max_recent_builds": clamp_recent_builds(data.get("maxRecentBuilds", DEFAULT_RECENT_BUILDS)),
        "last_known_changenumbers": dict(data.get("lastKnownChangenumbers") or {}),
        "custom_launch_commands": dict(data.get("customLaunchCommands") or {}),
        "last_updated": data.get("lastUpdated") or datetime.now(UTC).isoformat(),
    }


SCHEMA_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    1: _migrate_v1_to_v2,
    2: _migrate_v2_to_v3,
}


def migrate_document(data: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Upgrade a raw document to the current schema.

    Args:
        data: Raw decoded JSON document

    Returns:
        Tuple of (upgraded document, whether any migration ran)

    Raises:
        ValueError: If the document is newer than this code understands
    """
    version = detect_schema_version(data)
    if version > CURRENT_SCHEMA_VERSION:
        raise ValueError(f"Unsupported store schema version {version}")

    migrated = False
    while version < CURRENT_SCHEMA_VERSION:
        logger.info("store_schema_migration", from_version=version, to_version=version + 1)
        data = SCHEMA_MIGRATIONS[version](data)
        version += 1
        migrated = True
    return data, migrated


class ConfigStore:
    """Versioned JSON store for per-branch version metadata.

    Args:
        path: Store file
        managed_root: Managed root used when the document carries none
    """

    def __init__(self, path: Path, managed_root: Path | None = None) -> None:
        self.path = Path(path)
        self._managed_root = managed_root
        self._lock = threading.RLock()

    @property
    def managed_root(self) -> Path | None:
        """Managed root from the document, or the one given at construction."""
        return self.load().managed_root or self._managed_root

    def load(self) -> StoreDocument:
        """Read the current document (a default one if the file is missing)."""
        with self._lock:
            return self._read()

    def _read(self) -> StoreDocument:
        if not self.path.exists():
            return StoreDocument(managed_root=self._managed_root)

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigIOError(f"Cannot read store {self.path}: {e}", path=self.path) from e
        except json.JSONDecodeError as e:
            raise ConfigIOError(f"Store {self.path} is not valid JSON: {e}", path=self.path) from e

        try:
            data, migrated = migrate_document(raw)
            document = StoreDocument.model_validate(data)
        except (ValueError, ValidationError) as e:
            raise ConfigIOError(f"Store {self.path} has an invalid layout: {e}", path=self.path) from e

        if document.managed_root is None and self._managed_root is not None:
            document.managed_root = self._managed_root
        if migrated:
            self._write(document)
        return document

    def _write(self, document: StoreDocument) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(document.model_dump(mode="json"), indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigIOError(f"Cannot write store {self.path}: {e}", path=self.path) from e

    @contextmanager
    def transaction(self) -> Iterator[StoreDocument]:
        """Read-modify-write the document under the store lock.

        The document is persisted when the block exits normally; an
        exception leaves the file untouched.
        """
        with self._lock:
            document = self._read()
            yield document
            document.last_updated = datetime.now(UTC)
            self._write(document)

    # Active pointers

    def get_active_build(self, branch: str) -> str | None:
        return self.load().active_build_per_branch.get(branch)

    def set_active_build(self, branch: str, build_id: str | None) -> None:
        """Set or clear the active build pointer of a branch."""
        with self.transaction() as doc:
            if build_id is None:
                doc.active_build_per_branch.pop(branch, None)
            else:
                doc.active_build_per_branch[branch] = build_id
            _sync_active_flags(doc, branch)
        logger.info("active_build_set", branch=branch, build_id=build_id)

    def get_active_manifest(self, branch: str) -> str | None:
        return self.load().active_manifest_per_branch.get(branch)

    def set_active_manifest(self, branch: str, manifest_id: str | None) -> None:
        """Set or clear the active manifest pointer of a branch."""
        with self.transaction() as doc:
            if manifest_id is None:
                doc.active_manifest_per_branch.pop(branch, None)
            else:
                doc.active_manifest_per_branch[branch] = manifest_id
            _sync_active_flags(doc, branch)
        logger.info("active_manifest_set", branch=branch, manifest_id=manifest_id)

    def get_active_version(self, branch: str) -> tuple[VersionKind, str] | None:
        """Get the active version of a branch.

        The manifest pointer takes priority over the build pointer.
        """
        return _active_pointer(self.load(), branch)

    def activate_version(self, branch: str, kind: VersionKind, version_id: str) -> None:
        """Make one version the only active version of its branch."""
        with self.transaction() as doc:
            if kind == VersionKind.MANIFEST:
                doc.active_manifest_per_branch[branch] = version_id
            else:
                doc.active_build_per_branch[branch] = version_id
                doc.active_manifest_per_branch.pop(branch, None)
            _sync_active_flags(doc, branch)
        logger.info("version_activated", branch=branch, kind=kind.value, version_id=version_id)

    def clear_active(self, branch: str) -> None:
        """Clear both active pointers of a branch."""
        with self.transaction() as doc:
            doc.active_build_per_branch.pop(branch, None)
            doc.active_manifest_per_branch.pop(branch, None)
            _sync_active_flags(doc, branch)

    def active_version_path(self, branch: str) -> Path | None:
        """Directory of the active version of a branch, if any."""
        document = self.load()
        active = _active_pointer(document, branch)
        if active is None:
            return None
        kind, version_id = active
        record = document.versions_for(branch, kind).get(version_id)
        if record is not None:
            return record.path
        root = document.managed_root or self._managed_root
        if root is None:
            return None
        return paths.version_path(root, branch, version_id, kind)

    # Version records

    def get_version_record(self, branch: str, kind: VersionKind, version_id: str) -> VersionRecord | None:
        return self.load().versions_for(branch, kind).get(version_id)

    def get_version_records(self, branch: str) -> list[VersionRecord]:
        """All records of a branch, newest download first."""
        document = self.load()
        records = list(document.versions_for(branch, VersionKind.BUILD).values())
        records += document.versions_for(branch, VersionKind.MANIFEST).values()
        return sorted(records, key=lambda r: r.download_date, reverse=True)

    def set_version_record(self, branch: str, record: VersionRecord) -> None:
        """Insert or replace the record for ``record.version_id``."""
        with self.transaction() as doc:
            doc.versions_for(branch, record.kind)[record.version_id] = record
            _sync_active_flags(doc, branch)
        logger.debug(
            "version_record_set",
            branch=branch,
            kind=record.kind.value,
            version_id=record.version_id,
        )

    def remove_version_record(self, branch: str, kind: VersionKind, version_id: str) -> bool:
        """Forget a version record and any pointer to it."""
        with self.transaction() as doc:
            removed = doc.versions_for(branch, kind).pop(version_id, None) is not None
            if _active_pointer(doc, branch) == (kind, version_id):
                pointers = doc.active_manifest_per_branch if kind == VersionKind.MANIFEST else doc.active_build_per_branch
                pointers.pop(branch, None)
            _sync_active_flags(doc, branch)
        return removed

    def reconcile_placeholder(self, branch: str, build_id: str, manifest_id: str) -> VersionRecord | None:
        """Replace a pending record with the real manifest ID.

        Also prunes placeholder keys left over from identifier aliasing: a
        pending entry in the manifest table keyed by the build ID, and an
        active manifest pointer that holds the build ID.

        Returns:
            The resolved record, or None if no pending record matched
        """
        with self.transaction() as doc:
            builds = doc.versions_for(branch, VersionKind.BUILD)
            manifests = doc.versions_for(branch, VersionKind.MANIFEST)

            placeholder = builds.get(build_id)
            if placeholder is None or not placeholder.manifest_pending:
                stale = manifests.get(build_id)
                placeholder = stale if stale is not None and stale.manifest_pending else None
            if placeholder is None:
                return None

            resolved = placeholder.model_copy(
                update={"manifest_id": manifest_id, "manifest_pending": False, "kind": VersionKind.BUILD}
            )
            stale = manifests.get(build_id)
            if stale is not None and stale.manifest_pending:
                del manifests[build_id]
            builds[build_id] = resolved

            if doc.active_manifest_per_branch.get(branch) == build_id:
                del doc.active_manifest_per_branch[branch]
                doc.active_build_per_branch[branch] = build_id
            _sync_active_flags(doc, branch)

        logger.info(
            "placeholder_reconciled",
            branch=branch,
            build_id=build_id,
            manifest_id=manifest_id,
        )
        return builds[build_id]

    def prune_placeholders(self, branch: str) -> int:
        """Drop pending records whose directory no longer exists."""
        removed = 0
        with self.transaction() as doc:
            for kind in VersionKind:
                versions = doc.versions_for(branch, kind)
                for key in [k for k, r in versions.items() if r.manifest_pending and not r.path.exists()]:
                    del versions[key]
                    removed += 1
            _sync_active_flags(doc, branch)
        if removed:
            logger.info("placeholders_pruned", branch=branch, count=removed)
        return removed

    # Settings

    def get_max_recent_builds(self) -> int:
        return clamp_recent_builds(self.load().max_recent_builds)

    def set_max_recent_builds(self, value: int) -> int:
        """Set the recent-builds display bound, clamped to [1, 50].

        Returns:
            The value actually stored
        """
        clamped = clamp_recent_builds(value)
        with self.transaction() as doc:
            doc.max_recent_builds = clamped
        return clamped

    def get_last_known_changenumber(self, app_id: str) -> int | None:
        return self.load().last_known_changenumbers.get(app_id)

    def set_last_known_changenumber(self, app_id: str, changenumber: int) -> None:
        with self.transaction() as doc:
            doc.last_known_changenumbers[app_id] = changenumber

    def get_build_id_for_branch(self, branch: str) -> str | None:
        info = self.load().branch_build_ids.get(branch)
        return info.build_id if info else None

    def set_build_id_for_branch(self, branch: str, build_id: str) -> None:
        with self.transaction() as doc:
            doc.branch_build_ids[branch] = BranchBuildInfo(build_id=build_id)

    def get_custom_launch_command(self, branch: str) -> str | None:
        return self.load().custom_launch_commands.get(branch)

    def set_custom_launch_command(self, branch: str, command: str | None) -> None:
        with self.transaction() as doc:
            if command:
                doc.custom_launch_commands[branch] = command
            else:
                doc.custom_launch_commands.pop(branch, None)


def _active_pointer(document: StoreDocument, branch: str) -> tuple[VersionKind, str] | None:
    manifest_id = document.active_manifest_per_branch.get(branch)
    if manifest_id:
        return VersionKind.MANIFEST, manifest_id
    build_id = document.active_build_per_branch.get(branch)
    if build_id:
        return VersionKind.BUILD, build_id
    return None


def _sync_active_flags(document: StoreDocument, branch: str) -> None:
    """Mirror the effective active pointer into the records' is_active flags."""
    active = _active_pointer(document, branch)
    for kind in VersionKind:
        for version_id, record in document.versions_for(branch, kind).items():
            record.is_active = active == (kind, version_id)
