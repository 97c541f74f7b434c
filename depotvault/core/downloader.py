"""Download orchestration around the external depot downloader.

One orchestrator tracks at most one child process. A download runs::

    Idle -> PreflightCheck -> Launch -> Streaming -> Success | Retryable | Fatal

Preflight waits for conflicting client processes to exit along the backoff
schedule. Depots are downloaded strictly one after another; a failure on
depot N stops the sequence and reports how many depots completed. Only
conflict and authentication failures are retried, on the same schedule.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import tempfile
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog

from depotvault.core import paths
from depotvault.core.catalog import CatalogClient
from depotvault.core.config import AppConfig, DownloaderConfig
from depotvault.core.errors import (
    AuthenticationRequired,
    CatalogUnresolved,
    ConflictTimeout,
    DepotVaultError,
    DownloadCancelled,
    DownloaderNotFound,
    DownloadFailed,
    ErrorKind,
    FatalCredential,
    LoginTimeout,
    MalformedArguments,
    PartialSequenceFailure,
    TransientConflict,
    VersionAlreadyExists,
)
from depotvault.core.process import ConflictDetector
from depotvault.core.progress import ProgressChannel, ProgressCoalescer, detect_auth_gate, strip_ansi
from depotvault.core.store import ConfigStore
from depotvault.core.types import (
    Branch,
    DepotRef,
    DownloadPhase,
    GuardType,
    ProgressEvent,
    VersionKind,
    VersionRecord,
    select_primary_depot,
)

logger = structlog.get_logger()

MAX_USERNAME_LENGTH = 256
MAX_PASSWORD_LENGTH = 512
MAX_PATH_LENGTH = 1024
READ_CHUNK_SIZE = 4096
AUTH_SCAN_WINDOW = 512

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_APP_ID_RE = re.compile(r"^\d{1,10}$")
_BRANCH_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_CONFLICT_RE = re.compile(r"steam is running|steam client|logged ?in ?elsewhere", re.IGNORECASE)
_CREDENTIAL_RE = re.compile(
    r"login failed|invalid ?password|invalid username|access denied|account ?not ?found",
    re.IGNORECASE,
)
_MALFORMED_RE = re.compile(
    r"unknown argument|unrecognized (?:option|argument)|invalid argument|usage:",
    re.IGNORECASE,
)
_VERSION_RE = re.compile(r"DepotDownloader[^\d]*(\d+\.\d+\.\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class Credentials:
    """Account credentials passed to the downloader.

    Attributes:
        username: Account name
        password: Account password, never logged
        two_factor_code: One-time code to answer an authentication gate
        await_confirmation: Keep waiting when the gate asks for an
            out-of-band (mobile) confirmation
    """

    username: str
    password: str = field(repr=False)
    two_factor_code: str | None = field(default=None, repr=False)
    await_confirmation: bool = False

    def __post_init__(self) -> None:
        if not self.username or len(self.username) > MAX_USERNAME_LENGTH:
            raise MalformedArguments("Username is empty or too long")
        if not self.password or len(self.password) > MAX_PASSWORD_LENGTH:
            raise MalformedArguments("Password is empty or too long")
        if _CONTROL_CHARS_RE.search(self.username) or _CONTROL_CHARS_RE.search(self.password):
            raise MalformedArguments("Credentials contain control characters")

    def can_answer(self, guard_type: GuardType) -> bool:
        """Whether these credentials let the downloader get past a gate."""
        if guard_type == GuardType.MOBILE:
            return self.await_confirmation
        return bool(self.two_factor_code)


def validate_app_id(app_id: str) -> str:
    if not _APP_ID_RE.match(app_id):
        raise MalformedArguments(f"Invalid app ID: {app_id!r}")
    return app_id


def validate_branch_key(key: str) -> str:
    if not _BRANCH_KEY_RE.match(key):
        raise MalformedArguments(f"Invalid branch key: {key!r}")
    return key


def build_downloader_arguments(
    app_id: str,
    target_dir: Path,
    credentials: Credentials,
    depots: Sequence[DepotRef] = (),
    branch_key: str | None = None,
    max_downloads: int = 8,
    manifest_only: bool = False,
) -> list[str]:
    """Build the downloader command-line arguments.

    With explicit depots each one contributes ``-depot`` and ``-manifest``.
    Without depots the whole branch is requested, adding ``-beta <key>``
    for anything but the public branch. ``manifest_only`` fetches manifests
    and no content, which is enough to test a login.

    Raises:
        MalformedArguments: If an input fails validation
    """
    validate_app_id(app_id)
    target = str(target_dir)
    if len(target) > MAX_PATH_LENGTH or _CONTROL_CHARS_RE.search(target):
        raise MalformedArguments(f"Invalid target directory: {target!r}")

    args = [
        "-app", app_id,
        "-username", credentials.username,
        "-password", credentials.password,
        "-dir", target,
        "-max-downloads", str(max_downloads),
    ]
    if depots:
        for depot in depots:
            if not depot.depot_id.isdigit() or not depot.manifest_id.isdigit():
                raise MalformedArguments(f"Invalid depot reference {depot.depot_id}/{depot.manifest_id}")
            args += ["-depot", depot.depot_id, "-manifest", depot.manifest_id]
    elif branch_key and branch_key != "public":
        args += ["-beta", validate_branch_key(branch_key)]
    if manifest_only:
        args.append("-manifest-only")
    return args


def mask_arguments(args: Sequence[str]) -> list[str]:
    """Copy of ``args`` with the password value replaced by ``***``."""
    masked = list(args)
    for index, arg in enumerate(masked[:-1]):
        if arg == "-password":
            masked[index + 1] = "***"
    return masked


def resolve_downloader_command(config: DownloaderConfig) -> list[str]:
    """Work out how to invoke the downloader.

    A configured ``.dll`` is run through ``dotnet``.

    Raises:
        DownloaderNotFound: If no executable can be found
    """
    if config.executable is not None:
        executable = Path(config.executable)
        if not executable.is_file():
            raise DownloaderNotFound(f"Downloader not found at {executable}")
        if executable.suffix.lower() == ".dll":
            dotnet = shutil.which("dotnet")
            if dotnet is None:
                raise DownloaderNotFound("dotnet runtime is required to run a .dll downloader")
            return [dotnet, str(executable)]
        return [str(executable)]

    for name in config.executable_names:
        found = shutil.which(name)
        if found:
            return [found]
    raise DownloaderNotFound(f"No downloader on PATH (tried {', '.join(config.executable_names)})")


def classify_failure(output: str) -> ErrorKind:
    """Classify a failed run from its output."""
    text = strip_ansi(output)
    if detect_auth_gate(text) is not None:
        return ErrorKind.AUTHENTICATION_REQUIRED
    if _CONFLICT_RE.search(text):
        return ErrorKind.TRANSIENT_CONFLICT
    if _CREDENTIAL_RE.search(text):
        return ErrorKind.FATAL_CREDENTIAL
    if _MALFORMED_RE.search(text):
        return ErrorKind.MALFORMED_ARGUMENTS
    return ErrorKind.DOWNLOAD_FAILED


class ProcessHandle(Protocol):
    """The parts of :class:`asyncio.subprocess.Process` the orchestrator uses."""

    stdin: asyncio.StreamWriter | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int: ...

    def kill(self) -> None: ...


Launcher = Callable[[Sequence[str]], Awaitable[ProcessHandle]]


async def spawn_process(command: Sequence[str]) -> ProcessHandle:
    """Start the downloader with piped standard streams."""
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


@dataclass
class DownloadOutcome:
    """A successful version download."""

    branch: str
    kind: VersionKind
    version_id: str
    path: Path
    completed_depots: int
    total_depots: int
    record: VersionRecord


@dataclass
class _AuthGate:
    guard_type: GuardType | None = None
    aborted: bool = False
    timed_out: bool = False
    scan: str = ""
    watchdog: asyncio.TimerHandle | None = None

    def feed(self, text: str) -> GuardType | None:
        """Scan the output tail so a prompt split across reads is still seen."""
        self.scan = (self.scan + text)[-AUTH_SCAN_WINDOW:]
        return detect_auth_gate(self.scan)

    def clear_watchdog(self) -> None:
        if self.watchdog is not None:
            self.watchdog.cancel()
            self.watchdog = None


class DownloadOrchestrator:
    """Drives the downloader for one version at a time.

    Args:
        config: Application configuration
        store: Version store updated after a full success
        catalog: Catalog client used to resolve depots
        detector: Conflicting process detector
        launcher: Starts the child process; replaceable in tests
        channel: Progress event stream for the caller
        sleep: Backoff timer; replaceable in tests
    """

    def __init__(
        self,
        config: AppConfig,
        store: ConfigStore,
        catalog: CatalogClient | None = None,
        detector: ConflictDetector | None = None,
        launcher: Launcher = spawn_process,
        channel: ProgressChannel | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.root = config.root
        self.app_id = config.catalog.app_id
        self.primary_depot_ids = list(config.catalog.primary_depot_ids)
        self.settings = config.downloader
        self.store = store
        self.catalog = catalog
        self.detector = detector or ConflictDetector(self.settings.conflict_process_names)
        self.channel = channel or ProgressChannel()
        self._launcher = launcher
        self._sleep = sleep
        self._process: ProcessHandle | None = None
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        """Whether a child process is being tracked."""
        return self._process is not None

    def cancel(self) -> bool:
        """Kill the tracked process.

        Returns:
            False when nothing was running
        """
        if self._process is None:
            return False
        self._cancel_requested = True
        self._process.kill()
        logger.info("download_cancel_requested")
        return True

    def _emit(self, phase: DownloadPhase, message: str = "", **fields) -> None:
        self.channel.publish(ProgressEvent(phase=phase, message=message, **fields))

    async def preflight(self) -> None:
        """Wait for conflicting client processes to exit.

        Raises:
            ConflictTimeout: If a conflict is still present after the last attempt
        """
        attempts = self.settings.max_attempts
        names: list[str] = []
        for attempt in range(attempts):
            delay = self.settings.backoff_for(attempt)
            if attempt > 0:
                self._emit(
                    DownloadPhase.WAITING_FOR_CONFLICT,
                    f"{', '.join(names)} running; checking again in {delay:g}s",
                )
            if delay:
                await self._sleep(delay)

            self._emit(DownloadPhase.PREFLIGHT, f"Checking for conflicting processes ({attempt + 1}/{attempts})")
            conflicts = await self.detector.find_conflicts_async()
            if not conflicts:
                return
            names = sorted({proc.name for proc in conflicts})
            logger.warning("preflight_conflict", attempt=attempt + 1, processes=names)

        raise ConflictTimeout(
            f"Conflicting processes still running after {attempts} checks: {', '.join(names)}",
            attempts=attempts,
            processes=names,
        )

    async def validate_installation(self) -> str:
        """Run the downloader's ``--version`` and return the reported version.

        Raises:
            DownloaderNotFound: If the executable is missing or does not answer
        """
        command = resolve_downloader_command(self.settings) + ["--version"]
        try:
            process = await self._launcher(command)
        except OSError as e:
            raise DownloaderNotFound(f"Failed to start downloader: {e}") from e
        try:
            stdout, stderr = await asyncio.wait_for(_collect(process), timeout=self.settings.version_timeout)
        except TimeoutError as e:
            process.kill()
            raise DownloaderNotFound(
                f"Downloader did not answer --version within {self.settings.version_timeout:g}s"
            ) from e

        text = stdout + stderr
        match = _VERSION_RE.search(text)
        if match:
            return match.group(1)
        return text.strip().splitlines()[0] if text.strip() else "unknown"

    async def check_login(self, credentials: Credentials) -> None:
        """Test credentials with a manifest-only run.

        The whole run, authentication gate included, is bounded by
        ``login_timeout``. Nothing is written to the managed root.

        Raises:
            ConflictTimeout: A conflicting client kept running
            AuthenticationRequired: A gate the credentials cannot answer
            LoginTimeout: The login did not finish in time
            DepotVaultError: Rejected credentials and other failures
        """
        self._cancel_requested = False
        await self.preflight()
        timeout = self.settings.login_timeout
        with tempfile.TemporaryDirectory(prefix="depotvault-login-") as scratch:
            args = build_downloader_arguments(
                self.app_id,
                Path(scratch),
                credentials,
                max_downloads=self.settings.max_downloads,
                manifest_only=True,
            )
            try:
                await asyncio.wait_for(self._run_attempt(args, credentials, None, 1, 1), timeout=timeout)
            except TimeoutError as e:
                raise LoginTimeout(f"Login test did not finish within {timeout:g}s", timeout=timeout) from e
        logger.info("downloader_login_ok", username=credentials.username)

    async def _run_attempt(
        self,
        args: list[str],
        credentials: Credentials,
        depot: DepotRef | None,
        index: int,
        total: int,
    ) -> None:
        command = resolve_downloader_command(self.settings) + args
        logger.info("downloader_launch", command=" ".join(mask_arguments(command)))
        self._emit(DownloadPhase.LAUNCH, "Launching downloader", depot_id=depot.depot_id if depot else None)

        try:
            process = await self._launcher(command)
        except OSError as e:
            raise DownloaderNotFound(f"Failed to start downloader: {e}") from e

        self._process = process
        coalescer = ProgressCoalescer(
            self.channel,
            interval=self.settings.flush_interval,
            depot_id=depot.depot_id if depot else None,
            depot_index=index,
            depot_total=total,
        )
        output: list[str] = []
        gate = _AuthGate()

        async def pump(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            while chunk := await stream.read(READ_CHUNK_SIZE):
                text = chunk.decode("utf-8", errors="replace")
                output.append(text)
                coalescer.feed(text)
                if gate.guard_type is None:
                    guard_type = gate.feed(text)
                    if guard_type is not None:
                        gate.guard_type = guard_type
                        await self._handle_auth_gate(process, gate, credentials, depot)
                elif gate.watchdog is not None and detect_auth_gate(text) is None:
                    # Output past the prompt means the login went through
                    gate.clear_watchdog()
                    logger.info("downloader_auth_gate_passed")

        try:
            await asyncio.gather(pump(process.stdout), pump(process.stderr))
            exit_code = await process.wait()
        except asyncio.CancelledError:
            process.kill()
            raise
        finally:
            gate.clear_watchdog()
            coalescer.close()
            self._process = None

        full_output = "".join(output)
        if self._cancel_requested:
            raise DownloadCancelled("Download cancelled")
        if gate.timed_out:
            raise AuthenticationRequired(
                f"Downloader {gate.guard_type} confirmation not completed within {self.settings.login_timeout:g}s",
                guard_type=gate.guard_type or GuardType.CODE,
                depot=depot,
                timed_out=True,
            )
        if gate.aborted:
            raise AuthenticationRequired(
                f"Downloader requires {gate.guard_type} confirmation",
                guard_type=gate.guard_type or GuardType.CODE,
                depot=depot,
            )
        if exit_code == 0:
            return

        raise _error_for(classify_failure(full_output), exit_code, full_output, depot)

    async def _handle_auth_gate(
        self,
        process: ProcessHandle,
        gate: _AuthGate,
        credentials: Credentials,
        depot: DepotRef | None,
    ) -> None:
        guard_type = gate.guard_type or GuardType.CODE
        self._emit(
            DownloadPhase.AUTH_REQUIRED,
            f"Downloader is waiting for {guard_type} confirmation",
            guard_type=guard_type,
            depot_id=depot.depot_id if depot else None,
        )
        logger.warning("downloader_auth_gate", guard_type=guard_type.value)

        if guard_type != GuardType.MOBILE and credentials.two_factor_code and process.stdin is not None:
            process.stdin.write(f"{credentials.two_factor_code}\n".encode())
            await process.stdin.drain()
            logger.info("downloader_auth_code_sent")
        elif not credentials.can_answer(guard_type):
            gate.aborted = True
            process.kill()
            return

        gate.watchdog = asyncio.get_running_loop().call_later(
            self.settings.login_timeout, self._expire_auth_gate, process, gate
        )

    def _expire_auth_gate(self, process: ProcessHandle, gate: _AuthGate) -> None:
        gate.watchdog = None
        gate.timed_out = True
        logger.warning("downloader_auth_gate_timeout", timeout=self.settings.login_timeout)
        process.kill()

    async def download_depot(
        self,
        depot: DepotRef | None,
        target_dir: Path,
        credentials: Credentials,
        branch_key: str | None = None,
        index: int = 1,
        total: int = 1,
    ) -> None:
        """Download one depot (or a whole branch when ``depot`` is None).

        Conflict and authentication failures are retried along the backoff
        schedule; an authentication gate the credentials cannot answer is
        raised straight away so the caller can supply a code.

        Raises:
            ConflictTimeout: Conflicts persisted through every attempt
            AuthenticationRequired: The gate could not be answered
            DepotVaultError: Fatal failures, on first occurrence
        """
        args = build_downloader_arguments(
            self.app_id,
            target_dir,
            credentials,
            depots=[depot] if depot else (),
            branch_key=branch_key,
            max_downloads=self.settings.max_downloads,
        )
        attempts = self.settings.max_attempts
        last_error: DepotVaultError

        for attempt in range(attempts):
            if attempt > 0:
                delay = self.settings.backoff_for(attempt)
                self._emit(
                    DownloadPhase.RETRY,
                    f"Retrying (attempt {attempt + 1}/{attempts}) in {delay:g}s",
                    depot_id=depot.depot_id if depot else None,
                )
                if delay:
                    await self._sleep(delay)

            try:
                await self._run_attempt(args, credentials, depot, index, total)
                logger.info(
                    "depot_downloaded",
                    depot_id=depot.depot_id if depot else None,
                    attempt=attempt + 1,
                )
                return
            except TransientConflict as e:
                last_error = e
            except AuthenticationRequired as e:
                if e.timed_out or not credentials.can_answer(e.guard_type):
                    raise
                last_error = e
            logger.warning(
                "depot_attempt_failed",
                depot_id=depot.depot_id if depot else None,
                attempt=attempt + 1,
                kind=last_error.kind.value,
            )
            if attempt + 1 < attempts:
                continue
            if isinstance(last_error, TransientConflict):
                raise ConflictTimeout(
                    f"Conflict persisted through {attempts} download attempts",
                    attempts=attempts,
                    processes=last_error.processes,
                ) from last_error
            raise last_error

    async def download_depots(
        self,
        depots: Sequence[DepotRef],
        target_dir: Path,
        credentials: Credentials,
    ) -> int:
        """Download depots one after another.

        Returns:
            Number of depots downloaded (all of them)

        Raises:
            PartialSequenceFailure: A depot failed; carries the completed count
            AuthenticationRequired: A gate needs the caller's attention
            DownloadCancelled: The process was killed on request
        """
        total = len(depots)
        completed = 0
        for index, depot in enumerate(depots, 1):
            self._emit(
                DownloadPhase.STREAMING,
                f"Downloading depot {index} of {total}",
                depot_id=depot.depot_id,
                depot_index=index,
                depot_total=total,
            )
            try:
                await self.download_depot(depot, target_dir, credentials, index=index, total=total)
            except AuthenticationRequired as e:
                e.completed_depots = completed
                raise
            except DownloadCancelled:
                raise
            except DepotVaultError as e:
                raise PartialSequenceFailure(
                    f"Depot {depot.depot_id} failed after {completed} of {total} depots: {e}",
                    completed_depots=completed,
                    total_depots=total,
                    depot=depot,
                    cause=e,
                ) from e
            completed += 1
        return completed

    async def download_version(
        self,
        branch: Branch,
        credentials: Credentials,
        build_id: str | None = None,
        kind: VersionKind = VersionKind.BUILD,
        depots: Sequence[DepotRef] | None = None,
        overwrite: bool = False,
    ) -> DownloadOutcome:
        """Download a build of a branch into its version directory.

        The active pointer and version record are written only after every
        depot succeeded.

        Args:
            branch: Target branch
            credentials: Account credentials
            build_id: Build to fetch; the branch's current build if None
            kind: Name the directory after the build or the primary manifest
            depots: Depots to fetch; resolved through the catalog if None
            overwrite: Download into a populated version directory

        Raises:
            CatalogUnresolved: The catalog cannot resolve the build
            VersionAlreadyExists: The version directory is already populated
        """
        self._cancel_requested = False
        validate_branch_key(branch.key)
        try:
            if build_id is None or depots is None:
                catalog = self._require_catalog()
                if build_id is None:
                    build_id = await catalog.current_build_id(branch.key)
                if depots is None:
                    depots = await catalog.resolve_depots_for_branch(branch.key, build_id)

            primary = select_primary_depot(depots, self.primary_depot_ids)
            if kind == VersionKind.MANIFEST and primary is None:
                raise CatalogUnresolved(
                    f"No manifest known for build {build_id} on {branch.key}",
                    branch=branch.key,
                    build_id=build_id,
                )
            version_id = build_id if kind == VersionKind.BUILD else primary.manifest_id  # type: ignore[union-attr]
            target = self._prepare_target(branch.folder, version_id, kind, overwrite)

            await self.preflight()
            target.mkdir(parents=True, exist_ok=True)
            if depots:
                completed = await self.download_depots(depots, target, credentials)
            else:
                logger.info("branch_level_download", branch=branch.key, build_id=build_id)
                await self.download_depot(None, target, credentials, branch_key=branch.key)
                completed = 1

            record = VersionRecord(
                kind=kind,
                build_id=build_id,
                manifest_id=primary.manifest_id if primary else None,
                manifest_pending=primary is None,
                size_bytes=paths.directory_size(target),
                path=target,
            )
            self._record(branch.folder, record, build_id)
        except DepotVaultError as e:
            self._emit(DownloadPhase.CANCELLED if isinstance(e, DownloadCancelled) else DownloadPhase.FAILED, str(e))
            raise

        self._emit(DownloadPhase.COMPLETED, f"Version {target.name} ready", percent=100.0)
        return DownloadOutcome(
            branch=branch.folder,
            kind=kind,
            version_id=version_id,
            path=target,
            completed_depots=completed,
            total_depots=len(depots),
            record=record,
        )

    async def download_manifest(
        self,
        branch: Branch,
        depot: DepotRef,
        credentials: Credentials,
        kind: VersionKind = VersionKind.MANIFEST,
        build_id: str | None = None,
        overwrite: bool = False,
    ) -> DownloadOutcome:
        """Download one specific depot manifest.

        The download lands in ``manifest_<id>``. When ``kind`` is BUILD the
        result is normalized into ``build_<build id or manifest id>``.
        """
        self._cancel_requested = False
        try:
            staging = self._prepare_target(branch.folder, depot.manifest_id, VersionKind.MANIFEST, overwrite)
            if kind == VersionKind.BUILD:
                self._prepare_target(branch.folder, build_id or depot.manifest_id, kind, overwrite)

            await self.preflight()
            staging.mkdir(parents=True, exist_ok=True)
            completed = await self.download_depots([depot], staging, credentials)
            final = self.normalize_layout(staging, kind, build_id)

            record = VersionRecord(
                kind=kind,
                build_id=build_id,
                manifest_id=depot.manifest_id,
                size_bytes=paths.directory_size(final),
                path=final,
            )
            self._record(branch.folder, record, build_id)
        except DepotVaultError as e:
            self._emit(DownloadPhase.CANCELLED if isinstance(e, DownloadCancelled) else DownloadPhase.FAILED, str(e))
            raise

        self._emit(DownloadPhase.COMPLETED, f"Version {final.name} ready", percent=100.0)
        return DownloadOutcome(
            branch=branch.folder,
            kind=kind,
            version_id=record.version_id,
            path=final,
            completed_depots=completed,
            total_depots=1,
            record=record,
        )

    def normalize_layout(self, download_dir: Path, kind: VersionKind, build_id: str | None = None) -> Path:
        """Rename a finished download to the layout the caller asked for.

        A manifest-named download requested with build naming has its
        contents moved into ``build_<id>`` and the manifest directory removed
        entirely.

        Returns:
            Final version directory
        """
        parsed = paths.parse_version_dir_name(download_dir.name)
        if parsed is None or parsed[0] != VersionKind.MANIFEST or kind != VersionKind.BUILD:
            return download_dir

        self._emit(DownloadPhase.NORMALIZING, f"Moving {download_dir.name} to build layout")
        destination = paths.ensure_within_root(
            self.root,
            download_dir.parent / paths.version_dir_name(build_id or parsed[1], VersionKind.BUILD),
        )
        destination.mkdir(parents=True, exist_ok=True)
        for entry in download_dir.iterdir():
            target = destination / entry.name
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists():
                target.unlink()
            entry.rename(target)
        shutil.rmtree(download_dir)
        logger.info("download_normalized", source=download_dir.name, destination=destination.name)
        return destination

    def _prepare_target(self, branch: str, version_id: str, kind: VersionKind, overwrite: bool) -> Path:
        target = paths.ensure_within_root(self.root, paths.version_path(self.root, branch, version_id, kind))
        if not overwrite and target.is_dir() and not paths.is_empty_dir(target):
            raise VersionAlreadyExists(f"Version directory {target} already exists", path=target)
        return target

    def _record(self, branch: str, record: VersionRecord, build_id: str | None) -> None:
        self.store.set_version_record(branch, record)
        self.store.activate_version(branch, record.kind, record.version_id)
        if build_id:
            self.store.set_build_id_for_branch(branch, build_id)

    def _require_catalog(self) -> CatalogClient:
        if self.catalog is None:
            raise CatalogUnresolved("No catalog client configured to resolve depots")
        return self.catalog


def _error_for(kind: ErrorKind, exit_code: int, output: str, depot: DepotRef | None) -> DepotVaultError:
    tail = "\n".join(strip_ansi(output).strip().splitlines()[-5:])
    where = f" for depot {depot.depot_id}" if depot else ""
    if kind == ErrorKind.AUTHENTICATION_REQUIRED:
        guard_type = detect_auth_gate(output) or GuardType.CODE
        return AuthenticationRequired(f"Authentication required{where}", guard_type=guard_type, depot=depot)
    if kind == ErrorKind.TRANSIENT_CONFLICT:
        return TransientConflict(f"Conflicting client running{where}: {tail}")
    if kind == ErrorKind.FATAL_CREDENTIAL:
        return FatalCredential(f"Credentials rejected{where}: {tail}")
    if kind == ErrorKind.MALFORMED_ARGUMENTS:
        return MalformedArguments(f"Downloader rejected its arguments{where}: {tail}")
    return DownloadFailed(
        f"Downloader exited with code {exit_code}{where}: {tail or 'no output'}",
        exit_code=exit_code,
        output_tail=tail,
    )


async def _read_all(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    return (await stream.read()).decode("utf-8", errors="replace")


async def _collect(process: ProcessHandle) -> tuple[str, str]:
    stdout, stderr, _ = await asyncio.gather(_read_all(process.stdout), _read_all(process.stderr), process.wait())
    return stdout, stderr
