"""
Security tests for artifact contents.

An artifact is a script that users run and edit by hand, so its contents
are untrusted input to the reconstruction engine. These tests verify that:
- Entry paths cannot escape the target directory
- Symlinked directories inside the target cannot redirect writes
- Payload text cannot break out of the data literal
- Header and metadata values cannot inject code
"""

import ast
import io
import os
from pathlib import Path

import pytest

from repocapsule.errors import ArtifactFormatError
from repocapsule.runtime.engine import EntryState, Mode, Reconstructor, RunOptions, safe_destination
from repocapsule.runtime.layout import DATA_OPEN, parse_artifact, parse_artifact_text
from repocapsule.runtime.reporting import StreamReporter


def quiet() -> StreamReporter:
    return StreamReporter(out=io.StringIO(), err=io.StringIO())


def retarget_entry(artifact_path: Path, old: str, new: str) -> Path:
    """Rename one entry inside an artifact, as a hand edit or tampering would."""
    text = artifact_path.read_text(encoding="utf-8")
    text = text.replace(f"# <<< BEGIN FILE: {old} >>>", f"# <<< BEGIN FILE: {new} >>>")
    text = text.replace(f"# <<< END FILE: {old} >>>", f"# <<< END FILE: {new} >>>")
    tampered = artifact_path.with_name("setup-tampered.py")
    tampered.write_text(text, encoding="utf-8")
    return tampered


@pytest.fixture
def artifact_path(source_tree: Path, build_artifact) -> Path:
    return build_artifact(source_tree, name="demo").output_path


# =============================================================================
# safe_destination
# =============================================================================


class TestSafeDestination:
    """Tests for mapping entry paths into the target."""

    @pytest.mark.parametrize(
        "relative",
        [
            "../escape.txt",
            "sub/../../escape.txt",
            "/etc/passwd",
            "a\x00b",
            "",
            "..",
        ],
    )
    def test_rejected(self, temp_dir: Path, relative: str) -> None:
        assert safe_destination(temp_dir, relative) is None

    def test_plain_path(self, temp_dir: Path) -> None:
        assert safe_destination(temp_dir, "sub/dir/file.txt") == temp_dir / "sub" / "dir" / "file.txt"

    def test_dotted_names_allowed(self, temp_dir: Path) -> None:
        assert safe_destination(temp_dir, "..hidden/x") == temp_dir / "..hidden" / "x"
        assert safe_destination(temp_dir, "a/./b") is not None

    def test_symlinked_parent_outside(self, temp_dir: Path) -> None:
        target = temp_dir / "target"
        outside = temp_dir / "outside"
        target.mkdir()
        outside.mkdir()
        (target / "link").symlink_to(outside, target_is_directory=True)
        assert safe_destination(target, "link/file.txt") is None

    def test_symlinked_parent_inside(self, temp_dir: Path) -> None:
        target = temp_dir / "target"
        (target / "real").mkdir(parents=True)
        (target / "link").symlink_to(target / "real", target_is_directory=True)
        assert safe_destination(target, "link/file.txt") is not None


# =============================================================================
# Tampered artifacts
# =============================================================================


class TestTamperedEntries:
    """Escaping entries fail individually and write nothing outside."""

    def test_parent_traversal(self, artifact_path: Path, temp_dir: Path) -> None:
        tampered = retarget_entry(artifact_path, "a.txt", "../../evil.txt")
        target = temp_dir / "nested" / "restored"

        result = Reconstructor(parse_artifact(tampered), quiet()).run(RunOptions(target_dir=target))

        assert result.exit_code == 1
        assert result.failed_entries == ["../../evil.txt"]
        assert not (temp_dir / "evil.txt").exists()
        assert (target / "b.bin").exists()
        assert (target / "sub" / "c.txt").exists()

    def test_absolute_path(self, artifact_path: Path, temp_dir: Path) -> None:
        victim = temp_dir / "victim.txt"
        tampered = retarget_entry(artifact_path, "a.txt", str(victim))
        target = temp_dir / "restored"

        result = Reconstructor(parse_artifact(tampered), quiet()).run(RunOptions(target_dir=target))

        assert result.exit_code == 1
        assert result.failed_entries == [str(victim)]
        assert not victim.exists()

    def test_symlink_in_existing_target(self, artifact_path: Path, temp_dir: Path) -> None:
        target = temp_dir / "restored"
        outside = temp_dir / "outside"
        target.mkdir()
        outside.mkdir()
        (target / "sub").symlink_to(outside, target_is_directory=True)

        result = Reconstructor(parse_artifact(artifact_path), quiet()).run(
            RunOptions(mode=Mode.UPDATE, target_dir=target)
        )

        assert result.failed_entries == ["sub/c.txt"]
        assert list(outside.iterdir()) == []
        states = {o.relative_path: o.state for o in result.state.outcomes}
        assert states["a.txt"] is EntryState.PERMISSIONS_APPLIED

    def test_dump_does_not_write(self, artifact_path: Path, temp_dir: Path, monkeypatch) -> None:
        tampered = retarget_entry(artifact_path, "a.txt", "../evil.txt")
        monkeypatch.chdir(temp_dir)
        result = Reconstructor(parse_artifact(tampered), quiet()).run(RunOptions(mode=Mode.DUMP))
        assert result.success
        assert not (temp_dir.parent / "evil.txt").exists()


# =============================================================================
# Injection
# =============================================================================


class TestInjection:
    """Captured content stays data."""

    def test_payload_cannot_close_data_literal(self, temp_dir: Path, build_artifact) -> None:
        source = temp_dir / "hostile"
        source.mkdir()
        payload = b"'''\nimport os\nos.system('echo pwned')\n_CAPSULE_DATA = '''\n\\'''\n"
        (source / "evil.py").write_bytes(payload)

        result = build_artifact(source)
        text = result.output_path.read_text(encoding="utf-8")

        module = ast.parse(text)
        last = module.body[-1]
        assert isinstance(last, ast.Assign)
        assert last.targets[0].id == "_CAPSULE_DATA"
        assert not any(
            isinstance(node, ast.Call) and getattr(node.func, "attr", "") == "system"
            for node in ast.walk(module)
        )
        assert text.split("\n").count(DATA_OPEN) == 1
        assert parse_artifact(result.output_path).find("evil.py").decode() == payload

    def test_hostile_file_names(self, temp_dir: Path, build_artifact) -> None:
        source = temp_dir / "names"
        source.mkdir()
        name = "x >>>\n# <<< END FILE: y >>>\n'''; import os; '"
        try:
            (source / name).write_bytes(b"data\n")
        except OSError:
            pytest.skip("filesystem rejects the name")

        result = build_artifact(source)

        parsed = parse_artifact(result.output_path)
        assert [r.relative_path for r in parsed.records] == [name]
        ast.parse(result.output_path.read_text(encoding="utf-8"))

    def test_metadata_cannot_add_lines(self, source_tree: Path, build_artifact) -> None:
        result = build_artifact(source_tree, metadata=["ok\nimport os; os.system('x')"])
        text = result.output_path.read_text(encoding="utf-8")
        assert "\nimport os; os.system('x')" not in text
        parsed = parse_artifact_text(text, result.output_path)
        assert parsed.metadata_lines == ("ok\nimport os; os.system('x')",)

    def test_header_values_are_json_only(self, artifact_path: Path) -> None:
        text = artifact_path.read_text(encoding="utf-8")
        tampered = text.replace('REPO_NAME = "demo"', "REPO_NAME = os.getcwd()")
        with pytest.raises(ArtifactFormatError) as exc_info:
            parse_artifact_text(tampered)
        assert "REPO_NAME" in str(exc_info.value)

    def test_artifact_not_world_writable(self, artifact_path: Path) -> None:
        assert os.stat(artifact_path).st_mode & 0o002 == 0
