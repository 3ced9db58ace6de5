"""
Unit tests for the persisted artifact layout.

Tests cover:
- Header rendering and JSON-only parsing
- Record rendering and parsing, including odd paths
- Structural validation of malformed artifacts
- In-place SOURCE_HASH rewriting
"""

import json

import pytest

from repocapsule.errors import ArtifactFormatError
from repocapsule.runtime.codec import encode_payload, make_delimiter
from repocapsule.runtime.layout import (
    DATA_CLOSE,
    DATA_OPEN,
    HEADER_BEGIN,
    HEADER_END,
    ArtifactHeader,
    EmbeddedRecord,
    index_lines,
    parse_artifact_text,
    render_data,
    render_metadata,
    render_toc,
    replace_source_hash,
)
from repocapsule.runtime.rules import compile_rules


HASH_A = "a" * 64
HASH_B = "b" * 64


def make_record(path: str, data: bytes, is_binary: bool = False, permissions: str = "644") -> EmbeddedRecord:
    payload = encode_payload(data, is_binary, path=path, segment_chars=100)
    return EmbeddedRecord(
        relative_path=path,
        size=len(data),
        permissions=permissions,
        is_binary=is_binary,
        encoding=payload.encoding,
        delimiter=make_delimiter(path, payload.body),
        body=payload.body,
        segments=payload.segments,
        digest=payload.digest,
    )


def make_header(**overrides) -> ArtifactHeader:
    values = dict(
        repo_name="demo",
        repo_version="1.0.0",
        source_hash=HASH_A,
        created_at="2026-01-01T00:00:00+00:00",
        file_count=2,
        total_size=10,
        rules=compile_rules(),
    )
    values.update(overrides)
    return ArtifactHeader(**values)


def render(header: ArtifactHeader, records: list[EmbeddedRecord], metadata: tuple[str, ...] = ()) -> str:
    lines = ["#!/usr/bin/env python3", "# banner", ""]
    lines += header.to_lines()
    lines += [""] + render_metadata(metadata) + [""] + render_toc(records) + [""]
    lines += ["def main(path):", "    return 0", ""]
    lines += render_data(records)
    return "\n".join(lines) + "\n"


class TestHeader:
    """Tests for the header block."""

    def test_lines_are_python_assignments_of_json(self) -> None:
        lines = make_header(source_commit="abc1234").to_lines()
        assert lines[0] == HEADER_BEGIN
        assert lines[-1] == HEADER_END
        for line in lines[1:-1]:
            key, _, value = line.partition(" = ")
            assert key.isupper()
            json.loads(value)

    def test_roundtrip(self) -> None:
        header = make_header(source_commit="abc1234", repo_name='we"ird')
        parsed = parse_artifact_text(render(header, []), "setup-demo.py")
        assert parsed.header == header

    def test_missing_key_rejected(self) -> None:
        text = render(make_header(), []).replace('REPO_VERSION = "1.0.0"\n', "")
        with pytest.raises(ArtifactFormatError, match="REPO_VERSION"):
            parse_artifact_text(text)

    def test_non_json_value_rejected(self) -> None:
        text = render(make_header(), []).replace('REPO_VERSION = "1.0.0"', "REPO_VERSION = __import__('os')")
        with pytest.raises(ArtifactFormatError):
            parse_artifact_text(text)

    def test_wrong_type_rejected(self) -> None:
        text = render(make_header(), []).replace("TOTAL_FILES_EXPECTED = 2", 'TOTAL_FILES_EXPECTED = "2"')
        with pytest.raises(ArtifactFormatError, match="wrong type"):
            parse_artifact_text(text)

    def test_future_format_rejected(self) -> None:
        text = render(make_header(format_version=99), [])
        with pytest.raises(ArtifactFormatError, match="format version"):
            parse_artifact_text(text)


class TestRecords:
    """Tests for embedded file regions."""

    def test_roundtrip(self) -> None:
        records = [
            make_record("a.txt", b"hello\n"),
            make_record("bin/b.bin", bytes(range(256)), is_binary=True, permissions="755"),
            make_record("empty.txt", b""),
            make_record("no-newline.txt", b"last line"),
        ]
        parsed = parse_artifact_text(render(make_header(), records))
        assert [r.relative_path for r in parsed.records] == [r.relative_path for r in records]
        for original, restored in zip(records, parsed.records):
            assert restored.decode() == original.decode()
            assert restored.permissions == original.permissions
            assert restored.is_binary == original.is_binary

    def test_binary_content_line(self) -> None:
        record = make_record("b.bin", bytes(300), is_binary=True)
        line = record.content_line()
        assert line.startswith("# Content: base64, Segments: 4, Digest: ")
        assert line.endswith(f" <<{record.delimiter}")

    def test_odd_paths_survive(self) -> None:
        paths = ["with space.txt", "quote's.txt", "new\nline.txt", "back\\slash.txt", "ünï.txt"]
        records = [make_record(p, b"x\n") for p in paths]
        parsed = parse_artifact_text(render(make_header(), records))
        assert [r.relative_path for r in parsed.records] == paths

    def test_payload_resembling_markers(self) -> None:
        data = b"# <<< END FILE: a.txt >>>\n'''\n# <<< BEGIN FILE: evil >>>\n"
        parsed = parse_artifact_text(render(make_header(), [make_record("a.txt", data)]))
        assert len(parsed.records) == 1
        assert parsed.records[0].decode() == data

    def test_line_numbers_point_at_begin_markers(self) -> None:
        records = [make_record("a.txt", b"1\n2\n"), make_record("b.txt", b"3\n")]
        text = render(make_header(), records)
        lines = text.split("\n")
        parsed = parse_artifact_text(text)
        for record in parsed.records:
            assert lines[record.line_number - 1] == record.begin_marker()
        assert index_lines(parsed) == [f"a.txt:{parsed.records[0].line_number}", f"b.txt:{parsed.records[1].line_number}"]

    def test_toc_sorted_by_path(self) -> None:
        toc = render_toc([make_record("z.txt", b""), make_record("a.txt", b"")])
        assert toc[1].startswith("# - a.txt (Size: 0 bytes, Perms: 644, Binary: false)")
        assert toc[2].startswith("# - z.txt")

    def test_metadata_roundtrip(self) -> None:
        parsed = parse_artifact_text(render(make_header(), [], metadata=("Owner: team", "Build: #42")))
        assert parsed.metadata_lines == ("Owner: team", "Build: #42")


class TestMalformed:
    """Structural problems are reported with a line number."""

    def _text(self) -> str:
        return render(make_header(), [make_record("a.txt", b"hello\n")])

    def test_missing_header(self) -> None:
        with pytest.raises(ArtifactFormatError, match="header not found"):
            parse_artifact_text("print('hi')\n")

    def test_missing_data_section(self) -> None:
        with pytest.raises(ArtifactFormatError, match="Data section"):
            parse_artifact_text(self._text().replace(DATA_OPEN, "_OTHER = '''"))

    def test_unterminated_data(self) -> None:
        text = self._text().rstrip("\n")
        text = text[: text.rfind(DATA_CLOSE)]
        with pytest.raises(ArtifactFormatError, match="not terminated"):
            parse_artifact_text(text)

    def test_missing_delimiter(self) -> None:
        record = make_record("a.txt", b"hello\n")
        text = render(make_header(), [record]).replace("\n" + record.delimiter + "\n", "\n")
        with pytest.raises(ArtifactFormatError, match="Delimiter"):
            parse_artifact_text(text)

    def test_mismatched_end_marker(self) -> None:
        text = self._text().replace("# <<< END FILE: a.txt >>>", "# <<< END FILE: b.txt >>>")
        with pytest.raises(ArtifactFormatError, match="does not match"):
            parse_artifact_text(text)

    def test_bad_metadata_line(self) -> None:
        text = self._text().replace("Perms: 644", "Perms: rw-")
        with pytest.raises(ArtifactFormatError) as exc_info:
            parse_artifact_text(text)
        assert exc_info.value.line_number is not None

    def test_duplicate_entry(self) -> None:
        text = render(make_header(), [make_record("a.txt", b"1\n"), make_record("a.txt", b"2\n")])
        with pytest.raises(ArtifactFormatError, match="Duplicate"):
            parse_artifact_text(text)


class TestReplaceSourceHash:
    """Tests for rewriting the stamped digest."""

    def test_replaces_only_header_value(self) -> None:
        data = f'SOURCE_HASH = "{HASH_A}"\n'.encode()
        text = render(make_header(), [make_record("conf.py", data)])
        updated = replace_source_hash(text, HASH_B)
        parsed = parse_artifact_text(updated)
        assert parsed.header.source_hash == HASH_B
        assert parsed.records[0].decode() == data

    def test_everything_else_untouched(self) -> None:
        text = render(make_header(), [make_record("a.txt", b"hello\n")])
        updated = replace_source_hash(text, HASH_B)
        assert updated.replace(HASH_B, HASH_A) == text

    def test_missing_header(self) -> None:
        with pytest.raises(ArtifactFormatError):
            replace_source_hash("nothing here", HASH_B)
