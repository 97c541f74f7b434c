"""Format parsers and builders.

- KeyValues: the text format used by app manifests (``appmanifest_<id>.acf``)
"""

from depotvault.formats.base import FormatParser
from depotvault.formats.keyvalues import (
    AppManifest,
    AppManifestParser,
    InstalledDepot,
    KeyValuesError,
    dumps,
    find_app_manifests,
    loads,
)

__all__ = [
    "FormatParser",
    "AppManifest",
    "AppManifestParser",
    "InstalledDepot",
    "KeyValuesError",
    "dumps",
    "find_app_manifests",
    "loads",
]
