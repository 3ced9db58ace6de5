"""
Exclusion rules and tree traversal.

Rules are compiled once from an ordered list of patterns and then rendered
into two predicates:

- the absolute form, anchored at the real source root, used while scanning
- the relative form, anchored at "./", used for hashing at build time and
  again at verification time inside the artifact

Both forms are built from the same rule tuple, so for any relative path the
two predicates always agree.

Design Decisions:
    - Patterns with a "/" (and ".git" itself) prune by path; anything else
      matches basenames at any depth
    - Only path rules prune a matching directory; a name rule excludes the
      entry itself and the walk still descends into a matching directory
    - Matching is fnmatchcase: case-sensitive and independent of locale
    - Symlinks are never followed and never yielded
    - Rules serialize to plain tagged dicts and are rebuilt as typed objects,
      never evaluated as code
"""

import os
import posixpath
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, ClassVar

from repocapsule.errors import ConfigurationError, ScanError


VCS_DIR_NAME = ".git"
DEFAULT_EXCLUDES: tuple[str, ...] = (".git", ".gitignore", "*.md", "LICENSE", ".DS_Store")
RELATIVE_ANCHOR = "."


class RuleKind(str, Enum):
    """How an exclusion pattern is matched."""

    NAME = "name"
    PATH_PRUNE = "path_prune"


# =============================================================================
# Rules
# =============================================================================


@dataclass(frozen=True)
class ExclusionRule(ABC):
    """A single compiled exclusion pattern."""

    pattern: str
    kind: ClassVar[RuleKind]
    prunes_directories: ClassVar[bool] = False

    @abstractmethod
    def matches(self, path: str, prefix: str) -> bool:
        """
        Check an anchored path against this rule.

        Args:
            path: Path in the predicate's coordinates ("<anchor>/<rel>")
            prefix: Glob-safe anchor followed by "/"
        """

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "pattern": self.pattern}


@dataclass(frozen=True)
class NameRule(ExclusionRule):
    """Matches the final path component at any depth."""

    kind: ClassVar[RuleKind] = RuleKind.NAME

    def matches(self, path: str, prefix: str) -> bool:
        return fnmatchcase(posixpath.basename(path), self.pattern)


@dataclass(frozen=True)
class PathPruneRule(ExclusionRule):
    """Matches the whole path below the anchor; "*" may cross separators."""

    kind: ClassVar[RuleKind] = RuleKind.PATH_PRUNE
    prunes_directories: ClassVar[bool] = True

    def matches(self, path: str, prefix: str) -> bool:
        return fnmatchcase(path, prefix + self.pattern)


_RULE_TYPES: dict[str, type[ExclusionRule]] = {
    RuleKind.NAME.value: NameRule,
    RuleKind.PATH_PRUNE.value: PathPruneRule,
}


def rule_from_pattern(pattern: str) -> ExclusionRule:
    """
    Compile one user-facing pattern into a typed rule.

    Raises:
        ConfigurationError: If the pattern is empty
    """
    if not pattern or not pattern.strip():
        raise ConfigurationError(
            message="Exclusion pattern must not be empty",
            option="exclude",
        )
    if "/" in pattern or pattern == VCS_DIR_NAME:
        normalized = pattern
        while normalized.startswith("./"):
            normalized = normalized[2:]
        normalized = normalized.strip("/") or pattern
        return PathPruneRule(normalized)
    return NameRule(pattern)


def compile_rules(
    user_patterns: Iterable[str] = (),
    include_vcs: bool = False,
    default_patterns: Iterable[str] = DEFAULT_EXCLUDES,
) -> tuple[ExclusionRule, ...]:
    """
    Compile the active pattern list into an ordered rule tuple.

    Defaults come first unless VCS content is included, in which case the
    default set is dropped entirely. Duplicate rules keep their first
    position.

    Args:
        user_patterns: Extra patterns from the user
        include_vcs: Whether to keep ".git" and the other defaults
        default_patterns: The default exclusion set

    Returns:
        Ordered, de-duplicated tuple of rules
    """
    active = [] if include_vcs else list(default_patterns)
    active.extend(user_patterns)
    compiled = [rule_from_pattern(p) for p in active]
    return tuple(dict.fromkeys(compiled))


def serialize_rules(rules: Iterable[ExclusionRule]) -> list[dict[str, str]]:
    """Convert rules to JSON-ready tagged dicts."""
    return [rule.to_dict() for rule in rules]


def deserialize_rules(data: Any) -> tuple[ExclusionRule, ...]:
    """
    Rebuild rules from tagged dicts.

    Raises:
        ValueError: If the data is not a list of {"kind", "pattern"} dicts
    """
    if not isinstance(data, list):
        raise ValueError("exclusion rules must be a list")
    rules: list[ExclusionRule] = []
    for item in data:
        if not isinstance(item, dict) or set(item) != {"kind", "pattern"}:
            raise ValueError(f"invalid exclusion rule: {item!r}")
        rule_type = _RULE_TYPES.get(item["kind"])
        if rule_type is None:
            raise ValueError(f"unknown exclusion rule kind: {item['kind']!r}")
        if not isinstance(item["pattern"], str) or not item["pattern"]:
            raise ValueError(f"invalid exclusion pattern: {item['pattern']!r}")
        rules.append(rule_type(item["pattern"]))
    return tuple(rules)


# =============================================================================
# Predicates
# =============================================================================


def _glob_escape(text: str) -> str:
    return "".join(f"[{ch}]" if ch in "*?[" else ch for ch in text)


@dataclass(frozen=True)
class ExclusionPredicate:
    """
    A rule tuple bound to an anchor.

    Attributes:
        rules: Ordered rules, OR-combined
        anchor: Absolute source root, or "." for the relative form
    """

    rules: tuple[ExclusionRule, ...]
    anchor: str

    @classmethod
    def absolute(cls, rules: Iterable[ExclusionRule], root: str | os.PathLike[str]) -> "ExclusionPredicate":
        """Build the scan-time form anchored at an absolute root."""
        anchor = os.path.abspath(os.fspath(root))
        if anchor != "/":
            anchor = anchor.rstrip("/")
        return cls(tuple(rules), anchor)

    @classmethod
    def relative(cls, rules: Iterable[ExclusionRule]) -> "ExclusionPredicate":
        """Build the hash-time form anchored at "./"."""
        return cls(tuple(rules), RELATIVE_ANCHOR)

    @property
    def prefix(self) -> str:
        if self.anchor == "/":
            return "/"
        return _glob_escape(self.anchor) + "/"

    def locate(self, relative_path: str) -> str:
        """Express a relative path in this predicate's coordinates."""
        if self.anchor == "/":
            return "/" + relative_path
        return f"{self.anchor}/{relative_path}"

    def matches(self, path: str) -> bool:
        """Check a located path against every rule."""
        prefix = self.prefix
        return any(rule.matches(path, prefix) for rule in self.rules)

    def excludes(self, relative_path: str) -> bool:
        """Check a relative path ("a/b.txt") against every rule."""
        return self.matches(self.locate(relative_path))

    def prunes(self, relative_path: str) -> bool:
        """Check whether a directory's subtree is cut off by a path rule."""
        path = self.locate(relative_path)
        prefix = self.prefix
        return any(rule.prunes_directories and rule.matches(path, prefix) for rule in self.rules)


# =============================================================================
# Traversal
# =============================================================================


def iter_files(
    root: str | os.PathLike[str],
    predicate: ExclusionPredicate,
    on_error: Callable[[ScanError], None] | None = None,
) -> Iterator[str]:
    """
    Walk a tree and yield relative paths of included regular files.

    Directories matching a path rule are pruned. Files matching any rule
    are skipped. Entries are visited in
    name order so progress output is stable; callers that need canonical
    hash order sort the result themselves.

    Args:
        root: Tree to walk
        predicate: Exclusion predicate (either form)
        on_error: Called for unlistable directories; without it they raise

    Yields:
        POSIX-style relative paths without a leading "./"

    Raises:
        ScanError: If a directory cannot be listed and no on_error is given
    """
    base = os.fspath(root)
    pending: list[str] = [""]
    while pending:
        current = pending.pop()
        directory = os.path.join(base, current) if current else base
        try:
            with os.scandir(directory) as listing:
                children = sorted(listing, key=lambda e: e.name)
        except OSError as e:
            error = ScanError(path=current or ".", underlying_error=e.strerror or str(e))
            if on_error is None:
                raise error from e
            on_error(error)
            continue

        subdirs: list[str] = []
        for entry in children:
            relative = f"{current}/{entry.name}" if current else entry.name
            try:
                if entry.is_dir(follow_symlinks=False):
                    if not predicate.prunes(relative):
                        subdirs.append(relative)
                elif entry.is_file(follow_symlinks=False) and not predicate.excludes(relative):
                    yield relative
            except OSError as e:
                error = ScanError(path=relative, underlying_error=e.strerror or str(e))
                if on_error is None:
                    raise error from e
                on_error(error)
        pending.extend(reversed(subdirs))
