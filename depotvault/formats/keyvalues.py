"""KeyValues (VDF) text format and app manifest (.acf) parser.

KeyValues is a nested key/value text format::

    "AppState"
    {
        "appid"     "3164500"
        "buildid"   "19000000"
        "InstalledDepots"
        {
            "3164501"
            {
                "manifest"  "5551234"
                "size"      "123456"
            }
        }
    }

Keys and values are quoted strings (``\\"`` and ``\\\\`` escapes) or bare
tokens; a key followed by ``{`` opens a nested section. ``//`` starts a
comment and ``[$PLATFORM]`` conditionals are ignored.

An app manifest (``appmanifest_<app id>.acf``) sits beside an installed
product and records which depot manifests are installed.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, BinaryIO

import structlog
from pydantic import BaseModel, Field

from depotvault.core.types import DepotRef
from depotvault.formats.base import FormatParser, decode_text

logger = structlog.get_logger()

KeyValues = dict[str, Any]

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>//[^\n]*)
    | (?P<cond>\[[^\]\n]*\])
    | (?P<open>\{)
    | (?P<close>\})
    | "(?P<quoted>(?:\\.|[^"\\])*)"
    | (?P<bare>[^\s{}"]+)
    """,
    re.VERBOSE,
)
_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"'}


class KeyValuesError(ValueError):
    """Raised for malformed KeyValues text.

    Attributes:
        position: Character offset of the problem
    """

    def __init__(self, message: str, *, position: int | None = None):
        self.position = position
        super().__init__(message)


def _unescape(text: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(0)), text)


def _tokenize(text: str) -> list[tuple[str, str, int]]:
    tokens: list[tuple[str, str, int]] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise KeyValuesError(f"Unexpected character {text[pos]!r} at {pos}", position=pos)
        kind = match.lastgroup or ""
        if kind == "quoted":
            tokens.append(("string", _unescape(match.group("quoted")), pos))
        elif kind == "bare":
            tokens.append(("string", match.group("bare"), pos))
        elif kind in ("open", "close"):
            tokens.append((kind, match.group(0), pos))
        pos = match.end()
    return tokens


def loads(text: str) -> KeyValues:
    """Parse KeyValues text into nested dicts.

    Raises:
        KeyValuesError: If braces are unbalanced or a key has no value
    """
    tokens = _tokenize(text)
    root: KeyValues = {}
    stack: list[KeyValues] = [root]
    index = 0

    while index < len(tokens):
        kind, value, position = tokens[index]
        if kind == "close":
            if len(stack) == 1:
                raise KeyValuesError(f"Unbalanced '}}' at {position}", position=position)
            stack.pop()
            index += 1
            continue
        if kind == "open":
            raise KeyValuesError(f"Section without a key at {position}", position=position)

        if index + 1 >= len(tokens):
            raise KeyValuesError(f"Key {value!r} has no value", position=position)
        next_kind, next_value, _ = tokens[index + 1]
        if next_kind == "open":
            section: KeyValues = {}
            stack[-1][value] = section
            stack.append(section)
        elif next_kind == "string":
            stack[-1][value] = next_value
        else:
            raise KeyValuesError(f"Key {value!r} has no value", position=position)
        index += 2

    if len(stack) != 1:
        raise KeyValuesError("Unexpected end of input inside a section")
    return root


def _quote(value: Any) -> str:
    if isinstance(value, bool):
        value = "1" if value else "0"
    text = "" if value is None else str(value)
    return text.replace("\\", "\\\\").replace('"', '\\"')


def dumps(data: KeyValues, indent: int = 0) -> str:
    """Serialize nested dicts to KeyValues text."""
    lines: list[str] = []
    pad = "\t" * indent
    for key, value in data.items():
        if isinstance(value, dict):
            lines.append(f'{pad}"{_quote(key)}"')
            lines.append(f"{pad}{{")
            inner = dumps(value, indent + 1)
            if inner:
                lines.append(inner.rstrip("\n"))
            lines.append(f"{pad}}}")
        else:
            lines.append(f'{pad}"{_quote(key)}"\t\t"{_quote(value)}"')
    return "\n".join(lines) + ("\n" if lines else "")


def get_ci(section: KeyValues, key: str, default: Any = None) -> Any:
    """Case-insensitive lookup; KeyValues keys are not case-sensitive."""
    if key in section:
        return section[key]
    lowered = key.lower()
    for candidate, value in section.items():
        if candidate.lower() == lowered:
            return value
    return default


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class InstalledDepot(BaseModel):
    """An installed depot entry of an app manifest."""
    depot_id: str
    manifest_id: str
    size: int | None = None


class AppManifest(BaseModel):
    """Parsed ``appmanifest_<app id>.acf``."""
    app_id: str
    name: str | None = None
    build_id: str | None = None
    target_build_id: str | None = None
    install_dir: str | None = None
    state_flags: int | None = None
    size_on_disk: int | None = None
    last_updated: datetime | None = None
    installed_depots: dict[str, InstalledDepot] = Field(default_factory=dict)

    def depot_refs(self) -> list[DepotRef]:
        """Installed depots as depot references, in file order."""
        return [
            DepotRef(depot_id=depot.depot_id, manifest_id=depot.manifest_id, size=depot.size)
            for depot in self.installed_depots.values()
        ]


class AppManifestParser(FormatParser[AppManifest]):
    """Parser for app manifest files."""

    def parse(self, data: bytes | str | BinaryIO) -> AppManifest:
        """Parse an app manifest.

        Raises:
            ValueError: If the text is not KeyValues or has no AppState section
        """
        document = loads(decode_text(data))
        state = get_ci(document, "AppState")
        if not isinstance(state, dict):
            raise ValueError("App manifest has no AppState section")

        app_id = get_ci(state, "appid")
        if not app_id:
            raise ValueError("App manifest has no appid")

        depots: dict[str, InstalledDepot] = {}
        for depot_id, entry in (get_ci(state, "InstalledDepots") or {}).items():
            if not isinstance(entry, dict):
                continue
            manifest_id = get_ci(entry, "manifest")
            if not manifest_id:
                logger.debug("acf_depot_without_manifest", depot_id=depot_id)
                continue
            depots[depot_id] = InstalledDepot(
                depot_id=depot_id,
                manifest_id=str(manifest_id),
                size=_as_int(get_ci(entry, "size")),
            )

        last_updated = _as_int(get_ci(state, "LastUpdated"))
        return AppManifest(
            app_id=str(app_id),
            name=get_ci(state, "name"),
            build_id=get_ci(state, "buildid"),
            target_build_id=get_ci(state, "TargetBuildID"),
            install_dir=get_ci(state, "installdir"),
            state_flags=_as_int(get_ci(state, "StateFlags")),
            size_on_disk=_as_int(get_ci(state, "SizeOnDisk")),
            last_updated=datetime.fromtimestamp(last_updated, tz=UTC) if last_updated else None,
            installed_depots=depots,
        )

    def build(self, obj: AppManifest) -> str:
        """Serialize an app manifest."""
        state: KeyValues = {"appid": obj.app_id}
        optional = {
            "name": obj.name,
            "StateFlags": obj.state_flags,
            "installdir": obj.install_dir,
            "LastUpdated": int(obj.last_updated.timestamp()) if obj.last_updated else None,
            "SizeOnDisk": obj.size_on_disk,
            "buildid": obj.build_id,
            "TargetBuildID": obj.target_build_id,
        }
        state.update({key: value for key, value in optional.items() if value is not None})
        state["InstalledDepots"] = {
            depot.depot_id: {
                "manifest": depot.manifest_id,
                **({"size": depot.size} if depot.size is not None else {}),
            }
            for depot in obj.installed_depots.values()
        }
        return dumps({"AppState": state})


def find_app_manifests(directory: Path, app_id: str | None = None) -> list[Path]:
    """Locate app manifest files in an install directory.

    Looks for ``appmanifest_<app id>.acf`` first, then any
    ``appmanifest_*.acf``, directly in ``directory`` and under ``steamapps/``.
    """
    directory = Path(directory)
    found: list[Path] = []
    for base in (directory, directory / "steamapps"):
        if not base.is_dir():
            continue
        if app_id is not None:
            exact = base / f"appmanifest_{app_id}.acf"
            if exact.is_file() and exact not in found:
                found.append(exact)
        for candidate in sorted(base.glob("appmanifest_*.acf")):
            if candidate not in found:
                found.append(candidate)
    return found
