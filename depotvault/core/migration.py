"""Migration of legacy flat installs into the versioned layout.

A legacy install keeps its files directly in ``<root>/branches/<branch>``.
Migration reads the app manifest shipped with the install to find the
installed manifest ID, moves every entry into
``<root>/branches/<branch>/<kind>_<manifest id>``, records the version in
the store and marks it active.

Each installation walks a small state machine::

    DETECTED -> MANIFEST_EXTRACTED -> MOVED -> CONFIG_UPDATED -> VALIDATED
    DETECTED | MANIFEST_EXTRACTED -> FAILED
    MOVED | CONFIG_UPDATED | VALIDATED -> ROLLED_BACK

Branches are evaluated independently; an installation whose manifest cannot
be resolved is skipped and reported without blocking the others.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import structlog

from depotvault.core import paths
from depotvault.core.errors import ConfigIOError, MigrationUnresolved
from depotvault.core.store import ConfigStore
from depotvault.core.types import DepotRef, VersionKind, VersionRecord, select_primary_depot
from depotvault.formats.keyvalues import AppManifestParser, find_app_manifests

logger = structlog.get_logger()


class MigrationState(StrEnum):
    """States of a single legacy installation."""
    DETECTED = "detected"
    MANIFEST_EXTRACTED = "manifest_extracted"
    MOVED = "moved"
    CONFIG_UPDATED = "config_updated"
    VALIDATED = "validated"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TRANSITIONS: dict[MigrationState, frozenset[MigrationState]] = {
    MigrationState.DETECTED: frozenset({MigrationState.MANIFEST_EXTRACTED, MigrationState.FAILED}),
    MigrationState.MANIFEST_EXTRACTED: frozenset({MigrationState.MOVED, MigrationState.FAILED}),
    MigrationState.MOVED: frozenset({MigrationState.CONFIG_UPDATED, MigrationState.ROLLED_BACK}),
    MigrationState.CONFIG_UPDATED: frozenset({MigrationState.VALIDATED, MigrationState.ROLLED_BACK}),
    MigrationState.VALIDATED: frozenset({MigrationState.ROLLED_BACK}),
    MigrationState.FAILED: frozenset(),
    MigrationState.ROLLED_BACK: frozenset(),
}


@dataclass
class LegacyInstallation:
    """A legacy flat install and its migration progress.

    Attributes:
        branch: Branch folder name
        path: Branch directory holding the flat install
        state: Current migration state
        depot: Primary depot found in the app manifest
        build_id: Build ID recorded in the app manifest, if any
        kind: Identifier kind used for the target directory
        target: Version directory the files were moved into
        error: Reason for failure or rollback
    """

    branch: str
    path: Path
    state: MigrationState = MigrationState.DETECTED
    depot: DepotRef | None = None
    build_id: str | None = None
    kind: VersionKind | None = None
    target: Path | None = None
    error: str | None = None
    history: list[MigrationState] = field(default_factory=list)

    def advance(self, state: MigrationState) -> None:
        """Move to ``state``.

        Raises:
            ValueError: If the transition is not allowed
        """
        if state not in TRANSITIONS[self.state]:
            raise ValueError(f"Illegal migration transition {self.state} -> {state}")
        self.history.append(self.state)
        self.state = state
        logger.debug("migration_state", branch=self.branch, state=state.value)


@dataclass
class SkippedInstallation:
    """A legacy installation left untouched, with the reason."""

    branch: str
    path: Path
    reason: str


@dataclass
class MigrationReport:
    """Outcome of a migration run."""

    migrated: list[LegacyInstallation] = field(default_factory=list)
    skipped: list[SkippedInstallation] = field(default_factory=list)
    failed: list[LegacyInstallation] = field(default_factory=list)

    @property
    def affected(self) -> int:
        """Number of installations whose files were moved and kept."""
        return len(self.migrated)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class LayoutReport:
    """Problems found by :meth:`MigrationEngine.validate_layout`."""

    legacy_branches: list[str] = field(default_factory=list)
    empty_version_dirs: list[Path] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.legacy_branches and not self.empty_version_dirs


class MigrationEngine:
    """Detects and migrates legacy flat installs.

    Args:
        root: Managed root directory
        store: Version store updated after each move
        app_id: Product ID used to find ``appmanifest_<app id>.acf``
        primary_depot_ids: Depots preferred when an install has several
    """

    def __init__(
        self,
        root: Path,
        store: ConfigStore,
        app_id: str | None = None,
        primary_depot_ids: Iterable[str] = (),
    ) -> None:
        self.root = Path(root).resolve()
        self.store = store
        self.app_id = app_id
        self.primary_depot_ids = list(primary_depot_ids)
        self._parser = AppManifestParser()

    def detect(self) -> list[LegacyInstallation]:
        """Find branches in legacy flat form, each judged on its own."""
        found = []
        for branch in paths.list_branches(self.root):
            branch_path = paths.branch_base_path(self.root, branch)
            if paths.is_legacy_layout(branch_path):
                found.append(LegacyInstallation(branch=branch, path=branch_path))
        logger.info("legacy_installations_detected", count=len(found), branches=[i.branch for i in found])
        return found

    def extract_manifest(self, installation: LegacyInstallation) -> DepotRef:
        """Read the primary depot manifest from the install's app manifest.

        Raises:
            MigrationUnresolved: If no readable app manifest names a depot
        """
        for manifest_file in find_app_manifests(installation.path, self.app_id):
            try:
                manifest = self._parser.parse_file(manifest_file)
            except ValueError as e:
                logger.warning("app_manifest_unreadable", path=str(manifest_file), error=str(e))
                continue

            depot = select_primary_depot(manifest.depot_refs(), self.primary_depot_ids)
            if depot is None:
                logger.warning("app_manifest_without_depots", path=str(manifest_file))
                continue

            installation.depot = depot
            installation.build_id = manifest.build_id
            installation.advance(MigrationState.MANIFEST_EXTRACTED)
            logger.info(
                "legacy_manifest_extracted",
                branch=installation.branch,
                depot_id=depot.depot_id,
                manifest_id=depot.manifest_id,
            )
            return depot

        installation.error = "No app manifest with an installed depot was found"
        installation.advance(MigrationState.FAILED)
        raise MigrationUnresolved(
            f"Cannot resolve a manifest for legacy branch {installation.branch}: {installation.error}",
            branch=installation.branch,
            path=installation.path,
        )

    def migrate_installation(
        self,
        installation: LegacyInstallation,
        kind: VersionKind = VersionKind.MANIFEST,
    ) -> LegacyInstallation:
        """Move one legacy install into its version directory.

        Args:
            installation: Detected installation
            kind: Name the directory ``manifest_<id>`` or ``build_<id>``

        Returns:
            The installation, now VALIDATED, FAILED or ROLLED_BACK

        Raises:
            MigrationUnresolved: If no manifest can be extracted
        """
        if installation.state == MigrationState.DETECTED:
            self.extract_manifest(installation)
        if installation.state != MigrationState.MANIFEST_EXTRACTED or installation.depot is None:
            raise ValueError(f"Installation {installation.branch} is {installation.state}, cannot migrate")

        manifest_id = installation.depot.manifest_id
        target = paths.ensure_within_root(
            self.root, paths.version_path(self.root, installation.branch, manifest_id, kind)
        )
        installation.kind = kind
        installation.target = target

        moved: list[Path] = []
        try:
            target.mkdir(parents=True, exist_ok=True)
            for entry in sorted(installation.path.iterdir()):
                if entry == target:
                    continue
                destination = target / entry.name
                entry.rename(destination)
                moved.append(destination)
        except OSError as e:
            logger.error("legacy_move_failed", branch=installation.branch, error=str(e))
            self._restore(moved, installation.path, target)
            installation.error = f"Move failed: {e}"
            installation.advance(MigrationState.FAILED)
            return installation

        installation.advance(MigrationState.MOVED)
        logger.info("legacy_files_moved", branch=installation.branch, target=str(target), entries=len(moved))

        record = VersionRecord(
            kind=kind,
            build_id=installation.build_id,
            manifest_id=manifest_id,
            size_bytes=paths.directory_size(target),
            path=target,
            description="Migrated from legacy install",
        )
        try:
            self.store.set_version_record(installation.branch, record)
            self.store.activate_version(installation.branch, kind, manifest_id)
        except ConfigIOError as e:
            installation.error = f"Store update failed: {e}"
            self.rollback(installation)
            return installation
        installation.advance(MigrationState.CONFIG_UPDATED)

        problems = self.validate(installation)
        if problems:
            installation.error = "; ".join(problems)
            logger.warning("legacy_validation_failed", branch=installation.branch, problems=problems)
            self.rollback(installation)
            return installation

        installation.advance(MigrationState.VALIDATED)
        logger.info("legacy_migrated", branch=installation.branch, version=target.name)
        return installation

    def validate(self, installation: LegacyInstallation) -> list[str]:
        """Check a migrated installation; returns a list of problems."""
        problems = []
        target = installation.target
        if target is None or not target.is_dir() or paths.is_empty_dir(target):
            problems.append("version directory is missing or empty")
        leftovers = [entry.name for entry in installation.path.iterdir() if entry.is_file()]
        if leftovers:
            problems.append(f"files left in branch root: {', '.join(sorted(leftovers))}")
        if installation.kind is not None and installation.depot is not None:
            record = self.store.get_version_record(
                installation.branch, installation.kind, installation.depot.manifest_id
            )
            if record is None:
                problems.append("no version record in store")
        return problems

    def rollback(self, installation: LegacyInstallation) -> None:
        """Move files back to the branch root and drop the version record."""
        target = installation.target
        if target is None:
            raise ValueError(f"Installation {installation.branch} has no target to roll back")

        moved = list(target.iterdir()) if target.is_dir() else []
        self._restore(moved, installation.path, target)
        if installation.kind is not None and installation.depot is not None:
            self.store.remove_version_record(
                installation.branch, installation.kind, installation.depot.manifest_id
            )
        installation.advance(MigrationState.ROLLED_BACK)
        logger.info("legacy_migration_rolled_back", branch=installation.branch, reason=installation.error)

    def migrate_all(self, kind: VersionKind = VersionKind.MANIFEST) -> MigrationReport:
        """Migrate every resolvable legacy install.

        Installations without a resolvable manifest are skipped and listed
        in the report. Running again after success affects nothing.
        """
        report = MigrationReport()
        for installation in self.detect():
            try:
                self.migrate_installation(installation, kind)
            except MigrationUnresolved as e:
                report.skipped.append(
                    SkippedInstallation(branch=installation.branch, path=installation.path, reason=str(e))
                )
                continue

            if installation.state == MigrationState.VALIDATED:
                report.migrated.append(installation)
            else:
                report.failed.append(installation)

        logger.info(
            "migration_complete",
            migrated=len(report.migrated),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    def validate_layout(self) -> LayoutReport:
        """Check every branch for leftover legacy files and empty version dirs."""
        report = LayoutReport()
        for branch in paths.list_branches(self.root):
            branch_path = paths.branch_base_path(self.root, branch)
            if paths.is_legacy_layout(branch_path):
                report.legacy_branches.append(branch)
            for entry in branch_path.iterdir():
                if entry.is_dir() and paths.detect_version_kind(entry.name) and paths.is_empty_dir(entry):
                    report.empty_version_dirs.append(entry)
        return report

    @staticmethod
    def _restore(moved: list[Path], branch_path: Path, target: Path) -> None:
        for entry in moved:
            entry.rename(branch_path / entry.name)
        if paths.is_empty_dir(target):
            target.rmdir()
