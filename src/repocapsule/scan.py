"""
Source tree scanning.

Walks the source root with the absolute form of the exclusion rules and
returns an immutable, hash-ordered tuple of SourceEntry objects. Nothing is
kept in module state; downstream stages receive the entries explicitly.
"""

import os
import stat
from dataclasses import dataclass
from pathlib import Path

from repocapsule.classify import Classifier, FileKind
from repocapsule.errors import ConfigurationError, ScanError
from repocapsule.runtime.digest import canonical_order
from repocapsule.runtime.reporting import Reporter
from repocapsule.runtime.rules import ExclusionPredicate, ExclusionRule, iter_files
from repocapsule.schema import SourceEntry


@dataclass(frozen=True)
class ScanResult:
    """
    Files selected from a source tree.

    Attributes:
        root: Absolute source root
        entries: Included files in canonical hash order
        skipped: Relative paths left out because they could not be read
    """

    root: Path
    entries: tuple[SourceEntry, ...]
    skipped: tuple[str, ...] = ()

    @property
    def total_size(self) -> int:
        return sum(e.size_bytes for e in self.entries)

    @property
    def relative_paths(self) -> list[str]:
        return [e.relative_path for e in self.entries]


def format_permissions(mode: int) -> str:
    """Render permission bits as 3 octal digits, or 4 when special bits are set."""
    return format(stat.S_IMODE(mode), "03o")


def check_source_root(root: Path) -> Path:
    """
    Resolve the source root and make sure it can be listed.

    Raises:
        ConfigurationError: If it is missing, not a directory or unlistable
    """
    resolved = root.resolve()
    if not resolved.exists():
        raise ConfigurationError(
            message=f"Source directory not found: {root}",
            option="source_dir",
        )
    if not resolved.is_dir():
        raise ConfigurationError(
            message=f"Source path is not a directory: {root}",
            option="source_dir",
        )
    try:
        with os.scandir(resolved):
            pass
    except OSError as e:
        raise ConfigurationError(
            message=f"Source directory cannot be listed: {root} ({e.strerror or e})",
            option="source_dir",
        ) from e
    return resolved


def scan_source(
    root: Path,
    rules: tuple[ExclusionRule, ...],
    classifier: Classifier,
    reporter: Reporter,
) -> ScanResult:
    """
    Select, stat and classify every included file under a root.

    Unreadable files and directories are reported and left out; the scan
    keeps going.

    Args:
        root: Source root
        rules: Compiled exclusion rules
        classifier: Text/binary classifier
        reporter: Progress and warning sink

    Returns:
        ScanResult with entries in canonical order
    """
    resolved = check_source_root(root)
    predicate = ExclusionPredicate.absolute(rules, resolved)
    skipped: list[str] = []

    def on_error(error: ScanError) -> None:
        reporter.warn(str(error))
        skipped.append(error.path)

    found: dict[str, SourceEntry] = {}
    for relative in iter_files(resolved, predicate, on_error=on_error):
        absolute = resolved / relative
        try:
            info = absolute.stat()
        except OSError as e:
            on_error(ScanError(path=relative, underlying_error=e.strerror or str(e)))
            continue
        if not os.access(absolute, os.R_OK):
            on_error(ScanError(path=relative, underlying_error="permission denied"))
            continue

        kind = classifier.classify(absolute)
        found[relative] = SourceEntry(
            relative_path=relative,
            absolute_path=absolute,
            size_bytes=info.st_size,
            permissions=format_permissions(info.st_mode),
            is_binary=kind is FileKind.BINARY,
        )
        reporter.debug(f"Scanned {relative} ({info.st_size} bytes, {kind.value})")

    entries = tuple(found[p] for p in canonical_order(found))
    return ScanResult(root=resolved, entries=entries, skipped=tuple(skipped))
