"""
Persisted artifact layout: rendering and parsing.

An artifact is a Python script laid out as:

    #!/usr/bin/env python3
    # banner, editing guide
    # --- Capsule Header ---
    REPO_NAME = "demo"                 (one JSON literal per line)
    ...
    # --- End Capsule Header ---
    # --- Custom Project Metadata ---
    # --- Table of Contents ---
    # --- Reconstruction Runtime ---
    <bundled runtime source>
    _CAPSULE_DATA = '''
    # <<< BEGIN FILE: path >>>
    # Metadata: Size: N bytes, Perms: 644, Binary: false
    # Content: text <<EOF_...
    ...payload...
    EOF_...
    # <<< END FILE: path >>>
    '''

Header values are parsed with json.loads and nothing else. Records are
located by their markers and delimiters, so the data literal is never
executed to read it.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from repocapsule.errors import ArtifactFormatError
from repocapsule.runtime.codec import PayloadEncoding, decode_payload, escape_line, unescape_line
from repocapsule.runtime.rules import ExclusionRule, deserialize_rules, serialize_rules


FORMAT_VERSION = 1
SHEBANG = "#!/usr/bin/env python3"
HEADER_BEGIN = "# --- Capsule Header ---"
HEADER_END = "# --- End Capsule Header ---"
METADATA_BEGIN = "# --- Custom Project Metadata ---"
TOC_BEGIN = "# --- Table of Contents ---"
RUNTIME_BEGIN = "# --- Reconstruction Runtime ---"
DATA_OPEN = "_CAPSULE_DATA = '''"
DATA_CLOSE = "'''"
SECTION_PREFIX = "# --- "

_HEADER_LINE_RE = re.compile(r"^([A-Z][A-Z0-9_]*) = (.*)$")
_SOURCE_HASH_LINE_RE = re.compile(r'^SOURCE_HASH = "[0-9a-fA-F]*"$', re.MULTILINE)
_BEGIN_RE = re.compile(r"^# <<< BEGIN FILE: (.*) >>>$")
_END_RE = re.compile(r"^# <<< END FILE: (.*) >>>$")
_METADATA_RE = re.compile(r"^# Metadata: Size: (\d+) bytes, Perms: ([0-7]{3,4}), Binary: (true|false)$")
_CONTENT_RE = re.compile(
    r"^# Content: (text|base64|base64\+gzip)"
    r"(?:, Segments: (\d+), Digest: ([0-9a-f]{64}))?"
    r" <<([A-Za-z0-9_]+)$"
)


# =============================================================================
# Header
# =============================================================================


@dataclass(frozen=True)
class ArtifactHeader:
    """
    Values stamped into the artifact header.

    Only source_hash is ever rewritten after generation, and only by the
    recalculate-hash mode after confirmation.
    """

    repo_name: str
    repo_version: str
    source_hash: str
    created_at: str
    file_count: int
    total_size: int
    rules: tuple[ExclusionRule, ...] = ()
    source_commit: str = ""
    format_version: int = FORMAT_VERSION

    def to_lines(self) -> list[str]:
        values: list[tuple[str, Any]] = [
            ("FORMAT_VERSION", self.format_version),
            ("REPO_NAME", self.repo_name),
            ("REPO_VERSION", self.repo_version),
            ("SOURCE_HASH", self.source_hash),
            ("CREATED_AT", self.created_at),
            ("SOURCE_COMMIT", self.source_commit),
            ("TOTAL_FILES_EXPECTED", self.file_count),
            ("TOTAL_SIZE_ORIGINAL", self.total_size),
            ("EXCLUDE_RULES", serialize_rules(self.rules)),
        ]
        lines = [HEADER_BEGIN]
        lines.extend(f"{key} = {json.dumps(value)}" for key, value in values)
        lines.append(HEADER_END)
        return lines

    @classmethod
    def from_values(cls, values: dict[str, Any], artifact_path: str = "") -> "ArtifactHeader":
        """
        Build a header from parsed key/value pairs.

        Raises:
            ArtifactFormatError: If a key is missing or has the wrong type
        """
        expected: dict[str, type | tuple[type, ...]] = {
            "FORMAT_VERSION": int,
            "REPO_NAME": str,
            "REPO_VERSION": str,
            "SOURCE_HASH": str,
            "CREATED_AT": str,
            "SOURCE_COMMIT": str,
            "TOTAL_FILES_EXPECTED": int,
            "TOTAL_SIZE_ORIGINAL": int,
            "EXCLUDE_RULES": list,
        }
        for key, kind in expected.items():
            if key not in values:
                raise ArtifactFormatError(
                    message=f"Header is missing {key}",
                    artifact_path=artifact_path,
                )
            if not isinstance(values[key], kind) or isinstance(values[key], bool):
                raise ArtifactFormatError(
                    message=f"Header value {key} has the wrong type",
                    artifact_path=artifact_path,
                )
        if values["FORMAT_VERSION"] > FORMAT_VERSION:
            raise ArtifactFormatError(
                message=f"Unsupported artifact format version {values['FORMAT_VERSION']}",
                artifact_path=artifact_path,
            )
        try:
            rules = deserialize_rules(values["EXCLUDE_RULES"])
        except ValueError as e:
            raise ArtifactFormatError(
                message=f"Invalid EXCLUDE_RULES: {e}",
                artifact_path=artifact_path,
            ) from e
        return cls(
            repo_name=values["REPO_NAME"],
            repo_version=values["REPO_VERSION"],
            source_hash=values["SOURCE_HASH"],
            created_at=values["CREATED_AT"],
            file_count=values["TOTAL_FILES_EXPECTED"],
            total_size=values["TOTAL_SIZE_ORIGINAL"],
            rules=rules,
            source_commit=values["SOURCE_COMMIT"],
            format_version=values["FORMAT_VERSION"],
        )


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class EmbeddedRecord:
    """
    One file region inside the artifact's data literal.

    Attributes:
        relative_path: Path below the target root
        size: Original size in bytes
        permissions: 3 or 4 octal digits
        is_binary: Classifier verdict at build time
        encoding: Payload representation
        delimiter: Line that terminates the payload
        body: Payload lines joined with "\\n"
        segments: Binary segment count
        digest: SHA-256 of the reassembled base64 text, binary only
        line_number: 1-based line of the BEGIN marker (0 when not parsed)
    """

    relative_path: str
    size: int
    permissions: str
    is_binary: bool
    encoding: PayloadEncoding
    delimiter: str
    body: str = field(repr=False)
    segments: int = 1
    digest: str | None = None
    line_number: int = 0

    def decode(self) -> bytes:
        return decode_payload(
            self.encoding,
            self.body,
            path=self.relative_path,
            segments=self.segments,
            digest=self.digest,
        )

    def begin_marker(self) -> str:
        return f"# <<< BEGIN FILE: {escape_line(self.relative_path)} >>>"

    def end_marker(self) -> str:
        return f"# <<< END FILE: {escape_line(self.relative_path)} >>>"

    def metadata_line(self) -> str:
        binary = "true" if self.is_binary else "false"
        return f"# Metadata: Size: {self.size} bytes, Perms: {self.permissions}, Binary: {binary}"

    def content_line(self) -> str:
        if self.encoding is PayloadEncoding.TEXT:
            return f"# Content: {self.encoding.value} <<{self.delimiter}"
        return (
            f"# Content: {self.encoding.value}, Segments: {self.segments}, "
            f"Digest: {self.digest} <<{self.delimiter}"
        )

    def toc_line(self) -> str:
        binary = "true" if self.is_binary else "false"
        return (
            f"# - {escape_line(self.relative_path)} "
            f"(Size: {self.size} bytes, Perms: {self.permissions}, Binary: {binary})"
        )

    def to_lines(self) -> list[str]:
        lines = [self.begin_marker(), self.metadata_line(), self.content_line()]
        lines.extend(self.body.split("\n"))
        lines.append(self.delimiter)
        lines.append(self.end_marker())
        return lines


@dataclass(frozen=True)
class ParsedArtifact:
    """A parsed artifact: header, metadata and ordered records."""

    path: Path
    header: ArtifactHeader
    records: tuple[EmbeddedRecord, ...]
    metadata_lines: tuple[str, ...] = ()

    def find(self, relative_path: str) -> EmbeddedRecord | None:
        for record in self.records:
            if record.relative_path == relative_path:
                return record
        return None


# =============================================================================
# Rendering helpers
# =============================================================================


def render_metadata(lines: list[str] | tuple[str, ...]) -> list[str]:
    rendered = [METADATA_BEGIN]
    rendered.extend(f"# {escape_line(line)}" for line in lines)
    return rendered


def render_toc(records: list[EmbeddedRecord] | tuple[EmbeddedRecord, ...]) -> list[str]:
    rendered = [TOC_BEGIN]
    rendered.extend(record.toc_line() for record in sorted(records, key=lambda r: r.relative_path))
    return rendered


def render_data(records: list[EmbeddedRecord] | tuple[EmbeddedRecord, ...]) -> list[str]:
    rendered = [DATA_OPEN]
    for record in records:
        rendered.extend(record.to_lines())
        rendered.append("")
    rendered.append(DATA_CLOSE)
    return rendered


def index_lines(parsed: ParsedArtifact) -> list[str]:
    """One "path:line" entry per record, pointing at its BEGIN marker."""
    return [f"{escape_line(r.relative_path)}:{r.line_number}" for r in parsed.records]


# =============================================================================
# Parsing
# =============================================================================


def _parse_header(lines: list[str], artifact_path: str) -> tuple[ArtifactHeader, int]:
    try:
        start = lines.index(HEADER_BEGIN)
    except ValueError:
        raise ArtifactFormatError(
            message="Capsule header not found",
            artifact_path=artifact_path,
        ) from None

    values: dict[str, Any] = {}
    for offset, line in enumerate(lines[start + 1:], start=start + 1):
        if line == HEADER_END:
            return ArtifactHeader.from_values(values, artifact_path), offset
        if not line.strip() or line.startswith("#"):
            continue
        match = _HEADER_LINE_RE.match(line)
        if not match:
            raise ArtifactFormatError(
                message="Unrecognized header line",
                artifact_path=artifact_path,
                line_number=offset + 1,
            )
        try:
            values[match.group(1)] = json.loads(match.group(2))
        except json.JSONDecodeError as e:
            raise ArtifactFormatError(
                message=f"Header value {match.group(1)} is not valid JSON: {e.msg}",
                artifact_path=artifact_path,
                line_number=offset + 1,
            ) from e

    raise ArtifactFormatError(message="Capsule header is not terminated", artifact_path=artifact_path)


def _parse_metadata(lines: list[str], start: int) -> tuple[str, ...]:
    try:
        begin = lines.index(METADATA_BEGIN, start)
    except ValueError:
        return ()
    collected: list[str] = []
    for line in lines[begin + 1:]:
        if line.startswith(SECTION_PREFIX) or not line.startswith("#"):
            break
        collected.append(unescape_line(line[2:] if line.startswith("# ") else line[1:]))
    return tuple(collected)


def _parse_record(lines: list[str], index: int, artifact_path: str) -> tuple[EmbeddedRecord, int]:
    def fail(message: str, at: int) -> ArtifactFormatError:
        return ArtifactFormatError(message=message, artifact_path=artifact_path, line_number=at + 1)

    begin = _BEGIN_RE.match(lines[index])
    if not begin:
        raise fail("Expected a BEGIN FILE marker", index)
    try:
        relative_path = unescape_line(begin.group(1))
    except ValueError as e:
        raise fail(f"Invalid path in BEGIN FILE marker: {e}", index) from e

    if index + 2 >= len(lines):
        raise fail(f"Truncated record for {relative_path}", index)
    metadata = _METADATA_RE.match(lines[index + 1])
    if not metadata:
        raise fail(f"Invalid Metadata line for {relative_path}", index + 1)
    content = _CONTENT_RE.match(lines[index + 2])
    if not content:
        raise fail(f"Invalid Content line for {relative_path}", index + 2)

    encoding = PayloadEncoding(content.group(1))
    delimiter = content.group(4)
    if encoding is not PayloadEncoding.TEXT and content.group(2) is None:
        raise fail(f"Binary record {relative_path} lacks segment count and digest", index + 2)

    try:
        end = lines.index(delimiter, index + 3)
    except ValueError:
        raise fail(f"Delimiter for {relative_path} not found", index + 2) from None

    end_marker = _END_RE.match(lines[end + 1]) if end + 1 < len(lines) else None
    if not end_marker:
        raise fail(f"Missing END FILE marker for {relative_path}", end + 1)
    if end_marker.group(1) != begin.group(1):
        raise fail(f"END FILE marker does not match {relative_path}", end + 1)

    record = EmbeddedRecord(
        relative_path=relative_path,
        size=int(metadata.group(1)),
        permissions=metadata.group(2),
        is_binary=metadata.group(3) == "true",
        encoding=encoding,
        delimiter=delimiter,
        body="\n".join(lines[index + 3:end]),
        segments=int(content.group(2)) if content.group(2) else 1,
        digest=content.group(3),
        line_number=index + 1,
    )
    return record, end + 2


def parse_artifact_text(text: str, artifact_path: str | Path = "") -> ParsedArtifact:
    """
    Parse artifact text into its header, metadata and records.

    Raises:
        ArtifactFormatError: On any structural problem
    """
    path_str = str(artifact_path)
    lines = text.split("\n")
    header, header_end = _parse_header(lines, path_str)
    metadata = _parse_metadata(lines, header_end)

    try:
        data_start = lines.index(DATA_OPEN, header_end)
    except ValueError:
        raise ArtifactFormatError(message="Data section not found", artifact_path=path_str) from None

    records: list[EmbeddedRecord] = []
    seen: set[str] = set()
    index = data_start + 1
    while index < len(lines):
        line = lines[index]
        if line == DATA_CLOSE:
            break
        if not line.strip():
            index += 1
            continue
        record, index = _parse_record(lines, index, path_str)
        if record.relative_path in seen:
            raise ArtifactFormatError(
                message=f"Duplicate entry {record.relative_path}",
                artifact_path=path_str,
                line_number=record.line_number,
            )
        seen.add(record.relative_path)
        records.append(record)
    else:
        raise ArtifactFormatError(message="Data section is not terminated", artifact_path=path_str)

    return ParsedArtifact(
        path=Path(artifact_path),
        header=header,
        records=tuple(records),
        metadata_lines=metadata,
    )


def parse_artifact(path: str | Path) -> ParsedArtifact:
    """
    Read and parse an artifact file.

    Raises:
        ArtifactFormatError: If the file cannot be read or is malformed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ArtifactFormatError(
            message=f"Cannot read artifact {path}: {e}",
            artifact_path=str(path),
        ) from e
    return parse_artifact_text(text, path)


def replace_source_hash(text: str, new_hash: str, artifact_path: str = "") -> str:
    """
    Return artifact text with the SOURCE_HASH header line rewritten.

    Raises:
        ArtifactFormatError: If there is not exactly one SOURCE_HASH line
    """
    start = text.find(HEADER_BEGIN + "\n")
    end = text.find("\n" + HEADER_END, start)
    if start < 0 or end < 0:
        raise ArtifactFormatError(message="Capsule header not found", artifact_path=artifact_path)

    header = text[start:end]
    matches = _SOURCE_HASH_LINE_RE.findall(header)
    if len(matches) != 1:
        raise ArtifactFormatError(
            message=f"Expected exactly one SOURCE_HASH line, found {len(matches)}",
            artifact_path=artifact_path,
        )
    header = _SOURCE_HASH_LINE_RE.sub(lambda _: f"SOURCE_HASH = {json.dumps(new_hash)}", header, count=1)
    return text[:start] + header + text[end:]
