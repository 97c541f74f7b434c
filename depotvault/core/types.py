"""Core type definitions for depotvault."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = structlog.get_logger()


class VersionKind(StrEnum):
    """Identifier kind used to name a version directory."""
    BUILD = "build"
    MANIFEST = "manifest"

    @property
    def prefix(self) -> str:
        """Directory name prefix for this kind."""
        return f"{self.value}_"


class DownloadPhase(StrEnum):
    """Phases reported by the download orchestrator."""
    PREFLIGHT = "preflight"
    WAITING_FOR_CONFLICT = "waiting_for_conflict"
    LAUNCH = "launch"
    STREAMING = "streaming"
    AUTH_REQUIRED = "auth_required"
    RETRY = "retry"
    NORMALIZING = "normalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GuardType(StrEnum):
    """Kind of out-of-band confirmation requested by the downloader."""
    EMAIL = "email"
    MOBILE = "mobile"
    CODE = "code"


class Branch(BaseModel):
    """A release channel.

    The catalog key is what the remote catalog calls the branch
    (``public``, ``beta``); the folder is the on-disk directory name.
    """
    key: str = Field(..., description="Catalog branch key")
    folder: str = Field(..., description="Folder name under <root>/branches")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_folder(cls, folder: str) -> Branch:
        """Build a branch from its folder name using the default key mapping."""
        return cls(key=branch_key_for_folder(folder), folder=folder)


DEFAULT_BRANCH_FOLDERS: dict[str, str] = {
    "main-branch": "public",
    "beta-branch": "beta",
    "alternate-branch": "alternate",
    "alternate-beta-branch": "alternate-beta",
}


def branch_key_for_folder(folder: str) -> str:
    """Map a branch folder name to its catalog key.

    ``main-branch`` maps to ``public``; other ``<name>-branch`` folders map
    to ``<name>``. Unknown names are used as-is.
    """
    if folder in DEFAULT_BRANCH_FOLDERS:
        return DEFAULT_BRANCH_FOLDERS[folder]
    if folder.endswith("-branch"):
        return folder[: -len("-branch")]
    return folder


class DepotRef(BaseModel):
    """Depot ID plus manifest ID, enough to fetch one payload."""
    depot_id: str = Field(..., description="Depot ID")
    manifest_id: str = Field(..., description="Manifest ID (gid)")
    size: int | None = Field(None, description="Download size in bytes if known")

    model_config = ConfigDict(frozen=True)


def select_primary_depot(
    depots: Sequence[DepotRef],
    primary_depot_ids: Iterable[str] = (),
) -> DepotRef | None:
    """Pick the depot whose manifest identifies a version.

    Configured primary depots win in the order given. Without one, the
    first depot is used; that choice is an arbitrary tie-break and is
    logged as such.
    """
    by_id = {depot.depot_id: depot for depot in depots}
    for depot_id in primary_depot_ids:
        if depot_id in by_id:
            return by_id[depot_id]
    if not depots:
        return None
    if len(depots) > 1:
        logger.warning(
            "primary_depot_tie_break",
            chosen=depots[0].depot_id,
            candidates=[d.depot_id for d in depots],
        )
    return depots[0]


class VersionRecord(BaseModel):
    """Metadata for one installed version of a branch.

    Build and manifest IDs are distinct optional fields. A record created
    before its manifest is known carries ``manifest_pending=True`` and no
    manifest ID.
    """
    kind: VersionKind = Field(..., description="Kind used to name the directory")
    build_id: str | None = Field(None, description="Build ID")
    manifest_id: str | None = Field(None, description="Manifest ID")
    manifest_pending: bool = Field(False, description="Manifest ID not resolved yet")
    download_date: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the version finished downloading",
    )
    size_bytes: int | None = Field(None, description="Size on disk")
    is_active: bool = Field(False, description="Active version of its branch")
    path: Path = Field(..., description="Absolute on-disk path")
    description: str | None = Field(None, description="Free-form label")

    @model_validator(mode="after")
    def check_identifiers(self) -> VersionRecord:
        """Require at least one identifier and a consistent pending marker."""
        if self.build_id is None and self.manifest_id is None:
            raise ValueError("Version record needs a build ID or a manifest ID")
        if self.manifest_pending and self.manifest_id is not None:
            raise ValueError("Pending record cannot carry a manifest ID")
        if self.manifest_pending and self.build_id is None:
            raise ValueError("Pending record needs a build ID")
        return self

    @property
    def version_id(self) -> str:
        """Identifier that names the version directory."""
        # The directory name wins; migrated installs may use a manifest ID
        # in a build-named directory.
        name = self.path.name
        if name.startswith(self.kind.prefix) and len(name) > len(self.kind.prefix):
            return name[len(self.kind.prefix):]
        if self.kind == VersionKind.MANIFEST and self.manifest_id is not None:
            return self.manifest_id
        if self.build_id is not None:
            return self.build_id
        return self.manifest_id  # type: ignore[return-value]


class InstalledVersion(BaseModel):
    """A version directory found on disk."""
    kind: VersionKind
    version_id: str
    path: Path
    created: datetime
    size_bytes: int = 0


class RecentBuild(BaseModel):
    """A build reported by the catalog for one branch."""
    build_id: str
    manifest_id: str | None = None
    time_updated: datetime | None = None
    changenumber: int | None = None
    is_current: bool = False
    depots: list[DepotRef] = Field(default_factory=list)


class RecentBuildsResult(BaseModel):
    """Recent builds of a branch.

    ``history_available`` is false when the catalog only knows the current
    build; the list then holds that single entry.
    """
    branch: str
    builds: list[RecentBuild] = Field(default_factory=list)
    history_available: bool = False
    max_count: int = 10

    @property
    def actual_count(self) -> int:
        return len(self.builds)


class ProgressEvent(BaseModel):
    """Typed event emitted while a download runs."""
    phase: DownloadPhase
    percent: float | None = None
    message: str = ""
    depot_id: str | None = None
    depot_index: int | None = None
    depot_total: int | None = None
    guard_type: GuardType | None = None
