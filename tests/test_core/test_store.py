"""Tests for depotvault.core.store module."""

import json
import threading
from pathlib import Path

import pytest

from depotvault.core.errors import ConfigIOError
from depotvault.core.store import (
    CURRENT_SCHEMA_VERSION,
    ConfigStore,
    clamp_recent_builds,
    detect_schema_version,
    migrate_document,
)
from depotvault.core.types import VersionKind, VersionRecord


def _record(root: Path, branch: str, kind: VersionKind, version_id: str, **fields) -> VersionRecord:
    prefix = kind.prefix
    defaults = {"build_id": version_id} if kind == VersionKind.BUILD else {"manifest_id": version_id}
    defaults.update(fields)
    return VersionRecord(kind=kind, path=root / "branches" / branch / f"{prefix}{version_id}", **defaults)


class TestClampRecentBuilds:
    """Test the recent-builds bound."""

    def test_clamp(self):
        """Values are clamped to [1, 50]."""
        assert clamp_recent_builds(0) == 1
        assert clamp_recent_builds(-5) == 1
        assert clamp_recent_builds(10) == 10
        assert clamp_recent_builds(50) == 50
        assert clamp_recent_builds(51) == 50


class TestActivePointers:
    """Test active version pointers."""

    def test_empty_store(self, store: ConfigStore):
        """A fresh store has no active version and no file yet."""
        assert store.get_active_version("main-branch") is None
        assert store.active_version_path("main-branch") is None
        assert not store.path.exists()

    def test_build_pointer(self, store: ConfigStore):
        """Setting the build pointer persists immediately."""
        store.set_active_build("main-branch", "1000")
        assert store.get_active_build("main-branch") == "1000"
        reopened = ConfigStore(store.path)
        assert reopened.get_active_version("main-branch") == (VersionKind.BUILD, "1000")

    def test_manifest_pointer_has_priority(self, store: ConfigStore):
        """The manifest pointer wins over the build pointer."""
        store.set_active_build("main-branch", "1000")
        store.set_active_manifest("main-branch", "5550001")
        assert store.get_active_version("main-branch") == (VersionKind.MANIFEST, "5550001")

        store.set_active_manifest("main-branch", None)
        assert store.get_active_version("main-branch") == (VersionKind.BUILD, "1000")

    def test_activate_keeps_one_active(self, store: ConfigStore, managed_root: Path):
        """Activating a version clears is_active on every other record."""
        store.set_version_record("main-branch", _record(managed_root, "main-branch", VersionKind.BUILD, "1"))
        store.set_version_record("main-branch", _record(managed_root, "main-branch", VersionKind.BUILD, "2"))
        store.set_version_record(
            "main-branch", _record(managed_root, "main-branch", VersionKind.MANIFEST, "77")
        )

        store.activate_version("main-branch", VersionKind.BUILD, "1")
        store.activate_version("main-branch", VersionKind.MANIFEST, "77")
        active = [r for r in store.get_version_records("main-branch") if r.is_active]
        assert [(r.kind, r.version_id) for r in active] == [(VersionKind.MANIFEST, "77")]

        store.activate_version("main-branch", VersionKind.BUILD, "2")
        active = [r for r in store.get_version_records("main-branch") if r.is_active]
        assert [(r.kind, r.version_id) for r in active] == [(VersionKind.BUILD, "2")]
        assert store.get_active_manifest("main-branch") is None

    def test_branches_are_independent(self, store: ConfigStore):
        """Pointers of one branch do not affect another."""
        store.set_active_build("main-branch", "1")
        store.set_active_build("beta-branch", "2")
        store.clear_active("main-branch")
        assert store.get_active_version("main-branch") is None
        assert store.get_active_build("beta-branch") == "2"

    def test_active_version_path(self, store: ConfigStore, managed_root: Path):
        """The active path comes from the record, or the layout without one."""
        record = _record(managed_root, "main-branch", VersionKind.MANIFEST, "77")
        store.set_version_record("main-branch", record)
        store.activate_version("main-branch", VersionKind.MANIFEST, "77")
        assert store.active_version_path("main-branch") == record.path

        store.set_active_build("beta-branch", "9")
        assert store.active_version_path("beta-branch") == managed_root / "branches" / "beta-branch" / "build_9"


class TestVersionRecords:
    """Test version record storage."""

    def test_round_trip(self, store: ConfigStore, managed_root: Path):
        """Records survive reopening the store."""
        record = _record(managed_root, "main-branch", VersionKind.BUILD, "1000", manifest_id="5550001", size_bytes=12)
        store.set_version_record("main-branch", record)

        loaded = ConfigStore(store.path).get_version_record("main-branch", VersionKind.BUILD, "1000")
        assert loaded is not None
        assert loaded.manifest_id == "5550001"
        assert loaded.size_bytes == 12
        assert loaded.path == record.path

    def test_remove_clears_pointer(self, store: ConfigStore, managed_root: Path):
        """Removing the active record clears its pointer."""
        store.set_version_record("main-branch", _record(managed_root, "main-branch", VersionKind.BUILD, "1"))
        store.activate_version("main-branch", VersionKind.BUILD, "1")

        assert store.remove_version_record("main-branch", VersionKind.BUILD, "1") is True
        assert store.get_active_version("main-branch") is None
        assert store.remove_version_record("main-branch", VersionKind.BUILD, "1") is False

    def test_record_requires_identifier(self, managed_root: Path):
        """A record without identifiers is rejected."""
        with pytest.raises(ValueError):
            VersionRecord(kind=VersionKind.BUILD, path=managed_root / "x")

    def test_pending_record_cannot_carry_manifest(self, managed_root: Path):
        """Pending records carry no manifest ID."""
        with pytest.raises(ValueError):
            VersionRecord(
                kind=VersionKind.BUILD,
                build_id="1",
                manifest_id="2",
                manifest_pending=True,
                path=managed_root / "build_1",
            )

    def test_reconcile_placeholder(self, store: ConfigStore, managed_root: Path):
        """A pending record is resolved in place and keeps its active flag."""
        pending = _record(managed_root, "main-branch", VersionKind.BUILD, "1000", manifest_pending=True)
        store.set_version_record("main-branch", pending)
        store.activate_version("main-branch", VersionKind.BUILD, "1000")

        resolved = store.reconcile_placeholder("main-branch", "1000", "5550001")

        assert resolved is not None
        assert resolved.manifest_id == "5550001"
        assert resolved.manifest_pending is False
        assert resolved.is_active is True
        assert store.get_active_version("main-branch") == (VersionKind.BUILD, "1000")

    def test_reconcile_prunes_aliased_manifest_entry(self, store: ConfigStore, managed_root: Path):
        """A pending manifest-table entry keyed by the build ID is pruned."""
        stale = VersionRecord(
            kind=VersionKind.MANIFEST,
            build_id="1000",
            manifest_pending=True,
            path=managed_root / "branches" / "main-branch" / "manifest_1000",
        )
        store.set_version_record("main-branch", stale)
        store.set_active_manifest("main-branch", "1000")

        resolved = store.reconcile_placeholder("main-branch", "1000", "5550001")

        assert resolved is not None
        assert store.get_version_record("main-branch", VersionKind.MANIFEST, "1000") is None
        assert store.get_version_record("main-branch", VersionKind.BUILD, "1000") is not None
        assert store.get_active_version("main-branch") == (VersionKind.BUILD, "1000")

    def test_reconcile_without_placeholder(self, store: ConfigStore, managed_root: Path):
        """Reconciling a resolved record does nothing."""
        store.set_version_record(
            "main-branch",
            _record(managed_root, "main-branch", VersionKind.BUILD, "1000", manifest_id="5550001"),
        )
        assert store.reconcile_placeholder("main-branch", "1000", "9999") is None
        record = store.get_version_record("main-branch", VersionKind.BUILD, "1000")
        assert record is not None and record.manifest_id == "5550001"

    def test_prune_placeholders(self, store: ConfigStore, managed_root: Path):
        """Pending records without a directory are dropped."""
        kept = _record(managed_root, "main-branch", VersionKind.BUILD, "1", manifest_pending=True)
        kept.path.mkdir(parents=True)
        store.set_version_record("main-branch", kept)
        store.set_version_record(
            "main-branch", _record(managed_root, "main-branch", VersionKind.BUILD, "2", manifest_pending=True)
        )

        assert store.prune_placeholders("main-branch") == 1
        assert [r.version_id for r in store.get_version_records("main-branch")] == ["1"]


class TestSettings:
    """Test store-wide settings."""

    def test_max_recent_builds(self, store: ConfigStore):
        """The recent-builds bound defaults to 10 and is clamped on write."""
        assert store.get_max_recent_builds() == 10
        assert store.set_max_recent_builds(0) == 1
        assert store.set_max_recent_builds(500) == 50
        assert store.get_max_recent_builds() == 50

    def test_changenumber(self, store: ConfigStore):
        """Last known changenumbers are stored per app."""
        assert store.get_last_known_changenumber("3164500") is None
        store.set_last_known_changenumber("3164500", 42)
        assert store.get_last_known_changenumber("3164500") == 42

    def test_legacy_build_ids_and_launch_commands(self, store: ConfigStore):
        """Legacy build IDs and launch commands round-trip."""
        store.set_build_id_for_branch("main-branch", "1000")
        store.set_custom_launch_command("main-branch", "game.exe -console")
        assert store.get_build_id_for_branch("main-branch") == "1000"
        assert store.get_custom_launch_command("main-branch") == "game.exe -console"
        store.set_custom_launch_command("main-branch", None)
        assert store.get_custom_launch_command("main-branch") is None


class TestPersistence:
    """Test file handling."""

    def test_atomic_write_leaves_no_temp_file(self, store: ConfigStore):
        """Writes replace the file and clean up the temp file."""
        store.set_active_build("main-branch", "1")
        assert store.path.exists()
        assert not store.path.with_suffix(".json.tmp").exists()
        data = json.loads(store.path.read_text())
        assert data["schema_version"] == CURRENT_SCHEMA_VERSION

    def test_invalid_json(self, store: ConfigStore):
        """Corrupt files raise ConfigIOError."""
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text("{not json")
        with pytest.raises(ConfigIOError) as exc_info:
            store.load()
        assert exc_info.value.path == store.path

    def test_newer_schema_rejected(self, store: ConfigStore):
        """Documents from a newer schema are not silently accepted."""
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps({"schema_version": CURRENT_SCHEMA_VERSION + 1}))
        with pytest.raises(ConfigIOError):
            store.load()

    def test_failed_transaction_does_not_persist(self, store: ConfigStore):
        """An exception inside a transaction leaves the file untouched."""
        store.set_active_build("main-branch", "1")
        with pytest.raises(RuntimeError):
            with store.transaction() as doc:
                doc.active_build_per_branch["main-branch"] = "2"
                raise RuntimeError("abort")
        assert store.get_active_build("main-branch") == "1"

    def test_concurrent_mutations(self, store: ConfigStore):
        """Concurrent writers do not lose updates."""

        def worker(index: int) -> None:
            store.set_active_build(f"branch-{index}", str(index))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        document = store.load()
        assert len(document.active_build_per_branch) == 10


class TestSchemaMigration:
    """Test schema migrations on load."""

    def test_detect_versions(self):
        """Schema versions are detected from markers."""
        assert detect_schema_version({}) == 1
        assert detect_schema_version({"configVersion": "2.0"}) == 2
        assert detect_schema_version({"schema_version": 3}) == 3

    def test_v1_build_ids(self):
        """Plain v1 build ID strings become build info objects."""
        data, migrated = migrate_document({"branchBuildIds": {"main-branch": "1000"}})
        assert migrated is True
        assert data["schema_version"] == CURRENT_SCHEMA_VERSION
        assert data["branch_build_ids"]["main-branch"]["build_id"] == "1000"

    def test_current_document_untouched(self):
        """A current document is not migrated."""
        data, migrated = migrate_document({"schema_version": CURRENT_SCHEMA_VERSION})
        assert migrated is False

    def test_v2_aliasing_becomes_pending(self, store: ConfigStore, managed_root: Path):
        """Records whose manifest ID equals their build ID become pending."""
        v2 = {
            "configVersion": "2.0",
            "managedEnvironmentPath": str(managed_root),
            "activeBuildPerBranch": {"main-branch": "1000"},
            "branchVersions": {
                "main-branch": {
                    "1000": {
                        "buildId": "1000",
                        "manifestId": "1000",
                        "downloadDate": "2024-01-01T00:00:00+00:00",
                        "isActive": True,
                    },
                    "1001": {
                        "buildId": "1001",
                        "manifestId": "5550001",
                        "path": str(managed_root / "branches" / "main-branch" / "build_1001"),
                    },
                }
            },
            "maxRecentBuilds": 200,
        }
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps(v2))

        pending = store.get_version_record("main-branch", VersionKind.BUILD, "1000")
        resolved = store.get_version_record("main-branch", VersionKind.BUILD, "1001")

        assert pending is not None
        assert pending.manifest_pending is True
        assert pending.manifest_id is None
        assert pending.path == managed_root / "branches" / "main-branch" / "build_1000"
        assert resolved is not None and resolved.manifest_id == "5550001"
        assert store.get_max_recent_builds() == 50
        assert store.get_active_version("main-branch") == (VersionKind.BUILD, "1000")

        # Migrated document is written back in the current schema
        assert json.loads(store.path.read_text())["schema_version"] == CURRENT_SCHEMA_VERSION

    def test_v2_manifest_prefixed_build_pointer(self, store: ConfigStore, managed_root: Path):
        """A manifest-prefixed build pointer moves to the manifest pointer."""
        v2 = {
            "configVersion": "2.0",
            "managedEnvironmentPath": str(managed_root),
            "activeBuildPerBranch": {"main-branch": "manifest_5550001"},
            "branchVersions": {
                "main-branch": {
                    "manifest_5550001": {"buildId": "manifest_5550001"},
                }
            },
        }
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps(v2))

        assert store.get_active_version("main-branch") == (VersionKind.MANIFEST, "5550001")
        record = store.get_version_record("main-branch", VersionKind.MANIFEST, "5550001")
        assert record is not None
        assert record.build_id is None
        assert record.manifest_id == "5550001"
