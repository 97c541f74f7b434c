"""Tests for KeyValues and app manifest parsing."""

import io
from pathlib import Path

import pytest

from depotvault.core.types import DepotRef
from depotvault.formats.keyvalues import (
    AppManifestParser,
    KeyValuesError,
    dumps,
    find_app_manifests,
    get_ci,
    loads,
)

SAMPLE_ACF = """\
"AppState"
{
\t"appid"\t\t"3164500"
\t"name"\t\t"Sample Product"
\t"StateFlags"\t\t"4"
\t"installdir"\t\t"Sample"
\t"LastUpdated"\t\t"1700000000"
\t"SizeOnDisk"\t\t"2048"
\t"buildid"\t\t"19000000"
\t"InstalledDepots"
\t{
\t\t"3164501"
\t\t{
\t\t\t"manifest"\t\t"5551234"
\t\t\t"size"\t\t"1024"
\t\t}
\t\t"3164502"
\t\t{
\t\t\t"size"\t\t"1"
\t\t}
\t}
}
"""


class TestKeyValues:
    """Test the KeyValues text format."""

    def test_nested(self):
        """Sections nest into dicts."""
        data = loads('"a" { "b" "1" "c" { "d" "two words" } }')
        assert data == {"a": {"b": "1", "c": {"d": "two words"}}}

    def test_comments_conditionals_and_bare_tokens(self):
        """Comments and platform conditionals are skipped."""
        text = '// header\n"a"\n{\n\tkey value [$WIN32]\n\t"q" "x" // trailing\n}\n'
        assert loads(text) == {"a": {"key": "value", "q": "x"}}

    def test_escapes(self):
        r"""Quoted strings honour \" and \\ escapes."""
        assert loads(r'"k" "say \"hi\" c:\\dir"') == {"k": 'say "hi" c:\\dir'}

    @pytest.mark.parametrize("text", ['"a" {', '"a" "b" }', '"dangling"', "{ }"])
    def test_malformed(self, text: str):
        """Unbalanced or incomplete input raises KeyValuesError."""
        with pytest.raises(KeyValuesError):
            loads(text)

    def test_dumps(self):
        """Serialized text parses back to the same data."""
        data = {"AppState": {"appid": "1", "flag": True, "Nested": {"x": 'q"uote'}}}
        assert loads(dumps(data)) == {"AppState": {"appid": "1", "flag": "1", "Nested": {"x": 'q"uote'}}}

    def test_get_ci(self):
        """Lookups ignore key case."""
        section = {"BuildID": "5"}
        assert get_ci(section, "buildid") == "5"
        assert get_ci(section, "missing", "d") == "d"


class TestAppManifestParser:
    """Test app manifest parsing."""

    def test_parse(self):
        """Fields and installed depots are extracted."""
        manifest = AppManifestParser().parse(SAMPLE_ACF)

        assert manifest.app_id == "3164500"
        assert manifest.build_id == "19000000"
        assert manifest.state_flags == 4
        assert manifest.size_on_disk == 2048
        assert manifest.last_updated is not None
        assert manifest.depot_refs() == [DepotRef(depot_id="3164501", manifest_id="5551234", size=1024)]

    def test_parse_bytes_with_bom(self):
        """Byte input with a UTF-8 BOM is accepted."""
        manifest = AppManifestParser().parse(io.BytesIO(b"\xef\xbb\xbf" + SAMPLE_ACF.encode()))
        assert manifest.name == "Sample Product"

    def test_missing_app_state(self):
        with pytest.raises(ValueError):
            AppManifestParser().parse('"Other" { "a" "b" }')

    def test_missing_appid(self):
        with pytest.raises(ValueError):
            AppManifestParser().parse('"AppState" { "name" "x" }')

    def test_build_and_parse(self, tmp_path: Path):
        """A built manifest parses back to the same model."""
        parser = AppManifestParser()
        manifest = parser.parse(SAMPLE_ACF)
        path = tmp_path / "appmanifest_3164500.acf"

        parser.build_file(manifest, path)

        assert parser.parse_file(path) == manifest

    def test_parse_missing_file(self, tmp_path: Path):
        """An unreadable file raises ValueError."""
        with pytest.raises(ValueError):
            AppManifestParser().parse_file(tmp_path / "absent.acf")


class TestFindAppManifests:
    """Test locating app manifests."""

    def test_exact_match_first(self, tmp_path: Path):
        """The app's own manifest comes before others."""
        (tmp_path / "appmanifest_1.acf").write_text("")
        (tmp_path / "appmanifest_3164500.acf").write_text("")
        (tmp_path / "steamapps").mkdir()
        (tmp_path / "steamapps" / "appmanifest_2.acf").write_text("")

        found = find_app_manifests(tmp_path, "3164500")

        assert [p.name for p in found] == ["appmanifest_3164500.acf", "appmanifest_1.acf", "appmanifest_2.acf"]

    def test_none_found(self, tmp_path: Path):
        assert find_app_manifests(tmp_path / "missing") == []
