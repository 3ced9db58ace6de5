"""
Integration tests for artifact generation.

Tests cover:
- The stamped digest and its relation to the embedded files
- Default and user exclusions
- Output handling (overwrite refusal, force, index file)
- Binary compression and segmentation settings
"""

import hashlib
import os
from pathlib import Path

import pytest

from repocapsule.assembler import detect_source_commit
from repocapsule.errors import OutputExistsError
from repocapsule.runtime.codec import PayloadEncoding
from repocapsule.runtime.digest import digest_tree
from repocapsule.runtime.layout import parse_artifact
from repocapsule.runtime.rules import compile_rules


# =============================================================================
# Digest Tests
# =============================================================================


class TestStampedDigest:
    """The header digest covers exactly the embedded files."""

    def test_two_file_tree(self, temp_dir: Path, build_artifact) -> None:
        source = temp_dir / "proj"
        source.mkdir()
        payload = os.urandom(100)
        (source / "a.txt").write_bytes(b"hello\n")
        (source / "b.bin").write_bytes(payload)
        os.chmod(source / "a.txt", 0o644)
        os.chmod(source / "b.bin", 0o755)

        result = build_artifact(source, default_excludes=[])

        expected = hashlib.sha256(b"hello\n" + payload).hexdigest()
        assert result.source_hash == expected
        parsed = parse_artifact(result.output_path)
        assert parsed.header.source_hash == expected
        assert parsed.header.file_count == 2
        assert parsed.header.total_size == 106
        assert [r.relative_path for r in parsed.records] == ["a.txt", "b.bin"]
        assert [r.permissions for r in parsed.records] == ["644", "755"]

    def test_matches_tree_digest_of_source(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree)
        assert result.source_hash == digest_tree(source_tree, compile_rules()).hexdigest

    def test_stable_across_builds(self, source_tree: Path, build_artifact, temp_dir: Path) -> None:
        first = build_artifact(source_tree, output_dir=temp_dir / "one")
        second = build_artifact(source_tree, output_dir=temp_dir / "two")
        assert first.source_hash == second.source_hash
        assert [r.relative_path for r in first.artifact.records] == [
            r.relative_path for r in second.artifact.records
        ]

    def test_empty_source(self, temp_dir: Path, build_artifact) -> None:
        source = temp_dir / "empty"
        source.mkdir()
        result = build_artifact(source)
        assert result.file_count == 0
        assert result.source_hash == hashlib.sha256(b"").hexdigest()
        assert parse_artifact(result.output_path).records == ()


# =============================================================================
# Exclusion Tests
# =============================================================================


class TestExclusions:
    """Tests for what ends up in the artifact."""

    def test_default_exclusions(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree)
        text = result.output_path.read_text(encoding="utf-8")
        assert "BEGIN FILE: README.md" not in text
        assert "BEGIN FILE: .git/HEAD" not in text
        assert result.scan.relative_paths == ["a.txt", "b.bin", "sub/c.txt"]

    def test_include_vcs(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, include_vcs=True)
        paths = [r.relative_path for r in result.artifact.records]
        assert ".git/HEAD" in paths
        assert "README.md" in paths

    def test_user_patterns(self, source_tree: Path, build_artifact) -> None:
        (source_tree / "sub" / "debug.log").write_text("noise\n")
        result = build_artifact(source_tree, excludes=["*.log", "sub/c.txt"])
        assert result.scan.relative_paths == ["a.txt", "b.bin"]

    def test_directory_matching_default_name_rule_is_descended(self, source_tree: Path, build_artifact) -> None:
        (source_tree / "notes.md").mkdir()
        (source_tree / "notes.md" / "inner.txt").write_text("inner\n")

        result = build_artifact(source_tree)

        paths = [r.relative_path for r in parse_artifact(result.output_path).records]
        assert "notes.md/inner.txt" in paths
        assert "README.md" not in paths
        assert result.source_hash == digest_tree(source_tree, compile_rules()).hexdigest

    def test_rules_recorded_in_header(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, excludes=["build/"])
        header = parse_artifact(result.output_path).header
        assert header.rules == compile_rules(["build/"])


# =============================================================================
# Output Tests
# =============================================================================


class TestOutput:
    """Tests for the written files."""

    def test_artifact_is_executable_script(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, name="demo")
        assert result.output_path.name == "setup-demo.py"
        assert os.access(result.output_path, os.X_OK)
        text = result.output_path.read_text(encoding="utf-8")
        assert text.startswith("#!/usr/bin/env python3\n")
        compile(text, str(result.output_path), "exec")

    def test_refuses_to_overwrite(self, source_tree: Path, build_artifact) -> None:
        build_artifact(source_tree)
        with pytest.raises(OutputExistsError):
            build_artifact(source_tree)

    def test_force_overwrites(self, source_tree: Path, build_artifact) -> None:
        first = build_artifact(source_tree, version="1.0.0")
        second = build_artifact(source_tree, version="2.0.0", force=True)
        assert first.output_path == second.output_path
        assert parse_artifact(second.output_path).header.repo_version == "2.0.0"

    def test_no_scratch_files_left(self, source_tree: Path, build_artifact, temp_dir: Path) -> None:
        result = build_artifact(source_tree, name="demo")
        assert sorted(p.name for p in (temp_dir / "out").iterdir()) == [result.output_path.name]

    def test_index_file(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, create_index=True)
        assert result.index_path is not None
        lines = result.output_path.read_text(encoding="utf-8").split("\n")
        entries = result.index_path.read_text(encoding="utf-8").splitlines()
        assert [e.rsplit(":", 1)[0] for e in entries] == ["a.txt", "b.bin", "sub/c.txt"]
        for entry in entries:
            path, line_number = entry.rsplit(":", 1)
            assert lines[int(line_number) - 1] == f"# <<< BEGIN FILE: {path} >>>"

    def test_metadata_lines(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, metadata=["Owner: platform", "Ticket: OPS-1"])
        parsed = parse_artifact(result.output_path)
        assert parsed.metadata_lines == ("Owner: platform", "Ticket: OPS-1")


# =============================================================================
# Encoding Tests
# =============================================================================


class TestEncodingSettings:
    """Tests for codec policy effects."""

    def test_compressed_binaries(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, codec={"compress_binaries": True})
        parsed = parse_artifact(result.output_path)
        binary = parsed.find("b.bin")
        assert binary is not None
        assert binary.encoding is PayloadEncoding.BASE64_GZIP
        assert binary.decode() == bytes(range(256))
        assert parsed.find("a.txt").encoding is PayloadEncoding.TEXT

    def test_segmented_binary(self, temp_dir: Path, build_artifact) -> None:
        source = temp_dir / "big"
        source.mkdir()
        data = os.urandom(3000)
        (source / "blob.bin").write_bytes(data)
        result = build_artifact(source, codec={"segment_chars": 1000})
        record = parse_artifact(result.output_path).find("blob.bin")
        assert record is not None
        assert record.segments == 4
        assert record.decode() == data

    def test_text_with_quotes_and_controls(self, temp_dir: Path, build_artifact) -> None:
        source = temp_dir / "odd"
        source.mkdir()
        data = b"a'''b\\c\r\n\tend\x0c\n"
        (source / "odd.txt").write_bytes(data)
        result = build_artifact(source)
        record = parse_artifact(result.output_path).find("odd.txt")
        assert record is not None
        assert record.encoding is PayloadEncoding.TEXT
        assert record.decode() == data


# =============================================================================
# Source Commit Tests
# =============================================================================


class TestSourceCommit:
    """The source commit is recorded only for builds that include .git."""

    @pytest.fixture(autouse=True)
    def fixed_commit(self, monkeypatch) -> None:
        monkeypatch.setattr("repocapsule.assembler.detect_source_commit", lambda root: "abc1234")

    def test_not_recorded_by_default(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree)
        assert result.artifact.source_commit is None
        assert parse_artifact(result.output_path).header.source_commit == ""

    def test_recorded_with_include_vcs(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, include_vcs=True)
        assert result.artifact.source_commit == "abc1234"
        assert parse_artifact(result.output_path).header.source_commit == "abc1234"


class TestDetectSourceCommit:
    """Tests for reading the commit of a source checkout."""

    def test_no_checkout(self, temp_dir: Path) -> None:
        assert detect_source_commit(temp_dir) is None
