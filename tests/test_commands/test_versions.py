"""Tests for the versions command group."""

import json
from pathlib import Path

from click.testing import CliRunner

from depotvault.__main__ import main
from depotvault.core.store import ConfigStore
from depotvault.core.types import VersionKind, VersionRecord


def _invoke(cli_config: Path, *args: str):
    runner = CliRunner()
    return runner.invoke(main, ["-c", str(cli_config), "-o", "json", "versions", *args])


def _install(managed_root: Path, branch: str, name: str) -> Path:
    path = managed_root / "branches" / branch / name
    path.mkdir(parents=True)
    (path / "game.exe").write_bytes(b"MZ" * 8)
    return path


class TestVersionsList:
    """Test versions list."""

    def test_empty(self, cli_config: Path) -> None:
        result = _invoke(cli_config, "list")
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_lists_installed_versions(self, cli_config: Path, managed_root: Path, store: ConfigStore) -> None:
        """Installed directories are listed with their records and active marker."""
        path = _install(managed_root, "main-branch", "build_1000")
        _install(managed_root, "main-branch", "manifest_5550002")
        store.set_version_record(
            "main-branch",
            VersionRecord(kind=VersionKind.BUILD, build_id="1000", manifest_id="5550001", path=path),
        )
        store.activate_version("main-branch", VersionKind.BUILD, "1000")

        result = _invoke(cli_config, "list", "main-branch")

        assert result.exit_code == 0
        rows = {row["version_id"]: row for row in json.loads(result.stdout)}
        assert set(rows) == {"1000", "5550002"}
        assert rows["1000"]["active"] is True
        assert rows["1000"]["manifest_id"] == "5550001"
        assert rows["1000"]["size_bytes"] == 16
        assert rows["5550002"]["active"] is False
        assert rows["5550002"]["kind"] == "manifest"


class TestVersionsActivate:
    """Test versions activate and path."""

    def test_activate_prefixed_id(self, cli_config: Path, managed_root: Path, store: ConfigStore) -> None:
        """A prefixed identifier selects its kind."""
        path = _install(managed_root, "beta-branch", "manifest_5550002")

        result = _invoke(cli_config, "activate", "beta-branch", "manifest_5550002")
        assert result.exit_code == 0
        assert store.get_active_version("beta-branch") == (VersionKind.MANIFEST, "5550002")

        result = _invoke(cli_config, "path", "beta-branch")
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"branch": "beta-branch", "path": str(path), "exists": True}

    def test_activate_missing_version(self, cli_config: Path, store: ConfigStore) -> None:
        """A version that is not installed cannot be activated."""
        result = _invoke(cli_config, "activate", "main-branch", "1234")
        assert result.exit_code == 1
        assert store.get_active_version("main-branch") is None

    def test_path_without_active_version(self, cli_config: Path) -> None:
        result = _invoke(cli_config, "path", "main-branch")
        assert result.exit_code == 1

    def test_path_rejects_traversal(self, cli_config: Path) -> None:
        """Paths outside the managed root are refused."""
        result = _invoke(cli_config, "path", "../../..", "--version-id", "1")
        assert result.exit_code == 1


class TestVersionsSettings:
    """Test versions settings."""

    def test_clamped_recent_builds(self, cli_config: Path, store: ConfigStore) -> None:
        """Out-of-range values are clamped before storing."""
        result = _invoke(cli_config, "settings", "--max-recent-builds", "99")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["max_recent_builds"] == 50
        assert store.get_max_recent_builds() == 50

    def test_launch_command(self, cli_config: Path, store: ConfigStore) -> None:
        result = _invoke(cli_config, "settings", "--launch-command", "main-branch", "game.exe -windowed")

        assert result.exit_code == 0
        assert json.loads(result.stdout)["custom_launch_commands"] == {"main-branch": "game.exe -windowed"}
        assert store.get_custom_launch_command("main-branch") == "game.exe -windowed"
