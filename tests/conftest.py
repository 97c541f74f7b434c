"""Pytest configuration and shared fixtures for depotvault tests."""

import asyncio
import tempfile
from collections.abc import Callable, Generator, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest
import structlog

from depotvault.core.catalog import CatalogConnection, ProductInfo
from depotvault.core.config import AppConfig, CatalogConfig, DownloaderConfig
from depotvault.core.process import ConflictDetector
from depotvault.core.store import ConfigStore

APP_ID = "3164500"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir).resolve()


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """Drop logging configuration left behind by CLI invocations."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def managed_root(temp_dir: Path) -> Path:
    """Managed root with an empty branches directory."""
    root = temp_dir / "environment"
    (root / "branches").mkdir(parents=True)
    return root


@pytest.fixture
def app_config(temp_dir: Path, managed_root: Path) -> AppConfig:
    """Application config confined to the temporary directory.

    The downloader executable is a placeholder file; tests replace the
    process launcher so it is never run.
    """
    executable = temp_dir / "DepotDownloader"
    executable.write_text("#!/bin/sh\n")
    return AppConfig(
        config_dir=temp_dir / "config",
        data_dir=temp_dir / "data",
        managed_root=managed_root,
        catalog=CatalogConfig(app_id=APP_ID, primary_depot_ids=["3164501"]),
        downloader=DownloaderConfig(executable=executable, flush_interval=0.01),
    )


@pytest.fixture
def store(app_config: AppConfig) -> ConfigStore:
    """Empty version store."""
    return ConfigStore(app_config.store_path, managed_root=app_config.root)


@pytest.fixture
def cli_config(temp_dir: Path, app_config: AppConfig) -> Path:
    """Config file for CLI invocations, pointing into the temporary directory."""
    path = temp_dir / "config.json"
    app_config.save(path)
    return path


@pytest.fixture
def pics_payload() -> dict[str, Any]:
    """Product info response in the PICS mirror format."""
    return {
        "data": {
            APP_ID: {
                "_change_number": 2500,
                "depots": {
                    "branches": {
                        "public": {"buildid": "1000", "timeupdated": "1700000000"},
                        "beta": {"buildid": "1100", "timeupdated": "1700500000", "description": "Beta"},
                        "internal": {"buildid": "900", "pwdrequired": "1"},
                    },
                    "3164501": {
                        "name": "Content",
                        "manifests": {
                            "public": {"gid": "5550001", "size": "1048576"},
                            "beta": {"gid": "5550002", "size": "2097152"},
                        },
                    },
                    "3164502": {
                        "name": "Extras",
                        "manifests": {
                            "public": {"gid": "6660001", "size": "4096"},
                        },
                    },
                    "3164503": {"name": "Empty"},
                },
            }
        }
    }


@pytest.fixture
def product_info(pics_payload: dict[str, Any]) -> ProductInfo:
    """Parsed product info."""
    return ProductInfo.from_pics(APP_ID, pics_payload)


class FakeCatalogConnection(CatalogConnection):
    """In-memory catalog connection that counts its calls."""

    def __init__(self, info: ProductInfo, delay: float = 0.0) -> None:
        self.info = info
        self.delay = delay
        self.error: Exception | None = None
        self.connected = False
        self.connect_calls = 0
        self.fetch_calls = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connect_calls += 1
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def fetch_product_info(self) -> ProductInfo:
        self.fetch_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.info


@pytest.fixture
def fake_connection(product_info: ProductInfo) -> FakeCatalogConnection:
    """Fake catalog connection serving the sample product info."""
    return FakeCatalogConnection(product_info)


class FakeStdin:
    """Collects bytes written to the child's stdin."""

    def __init__(self) -> None:
        self.data = b""

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return None


class FakeProcess:
    """Stand-in for an asyncio subprocess with scripted output.

    With ``hang`` set, stdout stays open and :meth:`wait` blocks until
    :meth:`kill` is called.
    """

    def __init__(
        self,
        stdout: str | Sequence[str] = "",
        stderr: str = "",
        exit_code: int = 0,
        hang: bool = False,
    ) -> None:
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        chunks = [stdout] if isinstance(stdout, str) else list(stdout)
        for chunk in chunks:
            self.stdout.feed_data(chunk.encode())
        self.stderr.feed_data(stderr.encode())
        self.stderr.feed_eof()
        if not hang:
            self.stdout.feed_eof()
        self.exit_code = exit_code
        self.killed = False
        self._done = asyncio.Event()
        if not hang:
            self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        return -9 if self.killed else self.exit_code

    def kill(self) -> None:
        self.killed = True
        if not self.stdout.at_eof():
            self.stdout.feed_eof()
        self._done.set()

    def finish(self) -> None:
        """End a hanging process normally."""
        if not self.stdout.at_eof():
            self.stdout.feed_eof()
        self._done.set()


class FakeLauncher:
    """Process launcher that plays back one script per launch.

    The last script repeats once the list is exhausted.
    """

    def __init__(self, *scripts: dict[str, Any]) -> None:
        self.scripts = list(scripts) or [{}]
        self.commands: list[list[str]] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, command: Sequence[str]) -> FakeProcess:
        self.commands.append(list(command))
        index = min(len(self.commands) - 1, len(self.scripts) - 1)
        process = FakeProcess(**self.scripts[index])
        self.processes.append(process)
        return process


@pytest.fixture
def make_launcher() -> Callable[..., FakeLauncher]:
    """Factory for scripted process launchers."""
    return FakeLauncher


@pytest.fixture
def no_conflicts() -> Mock:
    """Conflict detector that never finds a running client."""
    detector = Mock(spec=ConflictDetector)
    detector.find_conflicts_async = AsyncMock(return_value=[])
    return detector


@pytest.fixture
def instant_sleep() -> AsyncMock:
    """Backoff timer that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def write_app_manifest() -> Callable[..., Path]:
    """Write an ``appmanifest_<id>.acf`` into a directory."""

    def _write(
        directory: Path,
        depots: dict[str, str],
        app_id: str = APP_ID,
        build_id: str = "1000",
    ) -> Path:
        depot_lines = "".join(
            f'\t\t"{depot_id}"\n\t\t{{\n\t\t\t"manifest"\t\t"{manifest_id}"\n\t\t\t"size"\t\t"1024"\n\t\t}}\n'
            for depot_id, manifest_id in depots.items()
        )
        content = (
            '"AppState"\n{\n'
            f'\t"appid"\t\t"{app_id}"\n'
            '\t"name"\t\t"Sample Product"\n'
            '\t"StateFlags"\t\t"4"\n'
            f'\t"buildid"\t\t"{build_id}"\n'
            '\t"LastUpdated"\t\t"1700000000"\n'
            f'\t"InstalledDepots"\n\t{{\n{depot_lines}\t}}\n'
            '}\n'
        )
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"appmanifest_{app_id}.acf"
        path.write_text(content)
        return path

    return _write


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Add the unit marker to tests not marked otherwise."""
    for item in items:
        if not any(marker.name in ['integration', 'slow'] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)
