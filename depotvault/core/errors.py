"""Error taxonomy for depotvault.

Every error raised by the catalog client, the migration engine and the
download orchestrator derives from :class:`DepotVaultError` and carries an
:class:`ErrorKind` tag, so a caller can decide whether to offer a retry
without matching on exception types.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from depotvault.core.types import DepotRef, GuardType


class ErrorKind(StrEnum):
    """Classification tag attached to every depotvault error."""
    AUTHENTICATION_REQUIRED = "authentication_required"
    TRANSIENT_CONFLICT = "transient_conflict"
    CONFLICT_TIMEOUT = "conflict_timeout"
    FATAL_CREDENTIAL = "fatal_credential"
    MALFORMED_ARGUMENTS = "malformed_arguments"
    CATALOG_UNRESOLVED = "catalog_unresolved"
    CATALOG_CONNECTION = "catalog_connection"
    PARTIAL_SEQUENCE_FAILURE = "partial_sequence_failure"
    MIGRATION_UNRESOLVED = "migration_unresolved"
    CONFIG_IO = "config_io"
    PATH_VALIDATION = "path_validation"
    VERSION_EXISTS = "version_exists"
    DOWNLOADER_NOT_FOUND = "downloader_not_found"
    DOWNLOAD_FAILED = "download_failed"
    LOGIN_TIMEOUT = "login_timeout"
    CANCELLED = "cancelled"


RETRYABLE_KINDS = frozenset({
    ErrorKind.AUTHENTICATION_REQUIRED,
    ErrorKind.TRANSIENT_CONFLICT,
    ErrorKind.CONFLICT_TIMEOUT,
    ErrorKind.CATALOG_CONNECTION,
    ErrorKind.PARTIAL_SEQUENCE_FAILURE,
    ErrorKind.LOGIN_TIMEOUT,
})


class DepotVaultError(Exception):
    """Base class for depotvault errors.

    Attributes:
        kind: Classification tag
    """

    kind: ErrorKind = ErrorKind.DOWNLOAD_FAILED

    def __init__(self, message: str, *, kind: ErrorKind | None = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether offering the user a retry makes sense."""
        return self.kind in RETRYABLE_KINDS


class AuthenticationRequired(DepotVaultError):
    """The downloader is waiting for a confirmation or one-time code.

    Attributes:
        guard_type: Which confirmation the downloader asked for
        depot: Depot being downloaded when the gate appeared
        completed_depots: Depots finished earlier in the same sequence
        timed_out: The gate was answered but the login did not complete
            within the login timeout
    """

    kind = ErrorKind.AUTHENTICATION_REQUIRED

    def __init__(
        self,
        message: str,
        *,
        guard_type: GuardType = GuardType.CODE,
        depot: DepotRef | None = None,
        completed_depots: int = 0,
        timed_out: bool = False,
    ):
        self.guard_type = guard_type
        self.depot = depot
        self.completed_depots = completed_depots
        self.timed_out = timed_out
        super().__init__(message)


class TransientConflict(DepotVaultError):
    """A conflicting client process is running."""

    kind = ErrorKind.TRANSIENT_CONFLICT

    def __init__(self, message: str, *, processes: list[str] | None = None):
        self.processes = processes or []
        super().__init__(message)


class ConflictTimeout(DepotVaultError):
    """A conflict never cleared within the backoff schedule."""

    kind = ErrorKind.CONFLICT_TIMEOUT

    def __init__(self, message: str, *, attempts: int = 0, processes: list[str] | None = None):
        self.attempts = attempts
        self.processes = processes or []
        super().__init__(message)


class FatalCredential(DepotVaultError):
    """The downloader rejected the supplied credentials."""

    kind = ErrorKind.FATAL_CREDENTIAL


class MalformedArguments(DepotVaultError):
    """The downloader rejected its command line."""

    kind = ErrorKind.MALFORMED_ARGUMENTS


class CatalogUnresolved(DepotVaultError):
    """The catalog has no record for the requested build or branch.

    Attributes:
        branch: Branch key, if the lookup was branch-scoped
        build_id: Build ID that was requested
    """

    kind = ErrorKind.CATALOG_UNRESOLVED

    def __init__(self, message: str, *, branch: str | None = None, build_id: str | None = None):
        self.branch = branch
        self.build_id = build_id
        super().__init__(message)


class CatalogConnectionError(DepotVaultError):
    """The catalog connection could not be established in time."""

    kind = ErrorKind.CATALOG_CONNECTION

    def __init__(self, message: str, *, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class PartialSequenceFailure(DepotVaultError):
    """A sequential multi-depot download stopped part way.

    Attributes:
        completed_depots: Number of depots that finished before the failure
        total_depots: Number of depots in the sequence
        depot: The depot that failed
        cause: The error raised for that depot
    """

    kind = ErrorKind.PARTIAL_SEQUENCE_FAILURE

    def __init__(
        self,
        message: str,
        *,
        completed_depots: int,
        total_depots: int,
        depot: DepotRef,
        cause: DepotVaultError,
    ):
        self.completed_depots = completed_depots
        self.total_depots = total_depots
        self.depot = depot
        self.cause = cause
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.cause.retryable


class MigrationUnresolved(DepotVaultError):
    """No manifest could be extracted from a legacy installation."""

    kind = ErrorKind.MIGRATION_UNRESOLVED

    def __init__(self, message: str, *, branch: str, path: Path | None = None):
        self.branch = branch
        self.path = path
        super().__init__(message)


class ConfigIOError(DepotVaultError):
    """Reading or writing the configuration store failed."""

    kind = ErrorKind.CONFIG_IO

    def __init__(self, message: str, *, path: Path | None = None):
        self.path = path
        super().__init__(message)


class PathValidationError(DepotVaultError):
    """A path resolved outside the managed root."""

    kind = ErrorKind.PATH_VALIDATION

    def __init__(self, message: str, *, root: Path | None = None, target: Path | None = None):
        self.root = root
        self.target = target
        super().__init__(message)


class VersionAlreadyExists(DepotVaultError):
    """The target version directory is already populated."""

    kind = ErrorKind.VERSION_EXISTS

    def __init__(self, message: str, *, path: Path):
        self.path = path
        super().__init__(message)


class DownloaderNotFound(DepotVaultError):
    """The downloader executable could not be located."""

    kind = ErrorKind.DOWNLOADER_NOT_FOUND


class DownloadFailed(DepotVaultError):
    """The downloader exited with an unclassified failure.

    Attributes:
        exit_code: Process exit code
        output_tail: Last lines of the combined output
    """

    kind = ErrorKind.DOWNLOAD_FAILED

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        exit_code: int | None = None,
        output_tail: str = "",
    ):
        self.exit_code = exit_code
        self.output_tail = output_tail
        super().__init__(message, kind=kind)


class DownloadCancelled(DepotVaultError):
    """The tracked download process was killed on request."""

    kind = ErrorKind.CANCELLED


class LoginTimeout(DepotVaultError):
    """A login test did not finish within the login timeout.

    Attributes:
        timeout: The limit that was exceeded, in seconds
    """

    kind = ErrorKind.LOGIN_TIMEOUT

    def __init__(self, message: str, *, timeout: float):
        self.timeout = timeout
        super().__init__(message)
