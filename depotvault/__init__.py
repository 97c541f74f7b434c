"""depotvault - side-by-side version management for branch-based product installs.

Key modules:
- core: Paths, version store, catalog client, migration and downloads
- formats: Text format parsers (KeyValues app manifests)
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "depotvault contributors"

# Re-export commonly used types
from depotvault.core.types import (
    Branch,
    DepotRef,
    VersionKind,
    VersionRecord,
)

__all__ = [
    "__version__",
    "__author__",
    "Branch",
    "DepotRef",
    "VersionKind",
    "VersionRecord",
]
