"""Core functionality for depotvault.

This module provides the pieces shared by the CLI and any embedding
application:
- Configuration management
- Type definitions and the error taxonomy
- Path resolution inside the managed root
- The versioned configuration store
- Catalog client and its single-flight cache
- Legacy install migration
- Download orchestration
"""

from depotvault.core.errors import DepotVaultError, ErrorKind
from depotvault.core.types import (
    Branch,
    DepotRef,
    DownloadPhase,
    GuardType,
    ProgressEvent,
    VersionKind,
    VersionRecord,
)

__all__ = [
    # Types
    "Branch",
    "DepotRef",
    "DownloadPhase",
    "GuardType",
    "ProgressEvent",
    "VersionKind",
    "VersionRecord",
    # Errors
    "DepotVaultError",
    "ErrorKind",
]
