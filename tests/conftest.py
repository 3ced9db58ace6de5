"""
Pytest configuration and fixtures for RepoCapsule tests.

This module provides shared fixtures used across unit, integration,
and security tests.
"""

import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generator

import pytest

from repocapsule.assembler import ArtifactBuilder, BuildResult
from repocapsule.classify import Classifier
from repocapsule.runtime.reporting import Reporter
from repocapsule.schema import BuildConfig, ClassifierPolicy


class RecordingReporter(Reporter):
    """Reporter that keeps every message for assertions."""

    def __init__(self, verbose: bool = True) -> None:
        super().__init__(verbose)
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def success(self, message: str) -> None:
        self.messages.append(("success", message))

    def warn(self, message: str) -> None:
        self.messages.append(("warn", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))

    def line(self, text: str) -> None:
        self.messages.append(("line", text))

    def _emit_debug(self, message: str) -> None:
        self.messages.append(("debug", message))

    def of(self, level: str) -> list[str]:
        return [m for lvl, m in self.messages if lvl == level]

    @property
    def lines(self) -> list[str]:
        return self.of("line")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def plain_classifier() -> Classifier:
    """Classifier without the `file` command, so results don't depend on the host."""
    return Classifier(ClassifierPolicy(use_type_sniffer=False))


@pytest.fixture
def source_tree(temp_dir: Path) -> Path:
    """
    A small project tree:

        demo/
            a.txt           "hello\\n", 644
            b.bin           256 bytes incl. NUL, 755
            sub/c.txt       text with a quote and a backslash, 600
            README.md       excluded by default
            .git/HEAD       excluded by default
    """
    root = temp_dir / "demo"
    (root / "sub").mkdir(parents=True)
    (root / ".git").mkdir()

    (root / "a.txt").write_bytes(b"hello\n")
    (root / "b.bin").write_bytes(bytes(range(256)))
    (root / "sub" / "c.txt").write_bytes(b"it's a \\path\\ 'quoted'\n")
    (root / "README.md").write_text("# Demo\n")
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")

    os.chmod(root / "a.txt", 0o644)
    os.chmod(root / "b.bin", 0o755)
    os.chmod(root / "sub" / "c.txt", 0o600)
    return root


@pytest.fixture
def build_artifact(
    temp_dir: Path,
    plain_classifier: Classifier,
) -> Callable[..., BuildResult]:
    """Return a helper that builds an artifact from a source directory into temp_dir/out."""

    def _build(source: Path, **options: Any) -> BuildResult:
        options.setdefault("output_dir", temp_dir / "out")
        config = BuildConfig(source_dir=source, **options)
        return ArtifactBuilder(config, RecordingReporter(), classifier=plain_classifier).build()

    return _build
