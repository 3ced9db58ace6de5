"""
Order-sensitive tree digest.

The digest is SHA-256 over the raw bytes of every included file, concatenated
in ascending byte order of their relative paths. The same function runs when
the artifact is stamped and when a reconstructed tree is verified, so both
sides always agree on which files are included and in what order.
"""

import hashlib
import os
from collections.abc import Iterable
from dataclasses import dataclass

from repocapsule.errors import ScanError
from repocapsule.runtime.rules import ExclusionPredicate, ExclusionRule, iter_files


READ_CHUNK_BYTES = 1024 * 1024
EMPTY_TREE_DIGEST = hashlib.sha256(b"").hexdigest()


@dataclass(frozen=True)
class TreeDigest:
    """
    Result of hashing a file set.

    Attributes:
        hexdigest: SHA-256 hex digest
        paths: Relative paths in the order they were hashed
        total_bytes: Sum of all hashed file sizes
    """

    hexdigest: str
    paths: tuple[str, ...]
    total_bytes: int


def normalize_relative(path: str) -> str:
    """Strip any leading "./" or "/" from a relative path."""
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def canonical_order(paths: Iterable[str]) -> list[str]:
    """Sort relative paths by their filesystem bytes, independent of locale."""
    return sorted((normalize_relative(p) for p in paths), key=os.fsencode)


def digest_paths(root: str | os.PathLike[str], relative_paths: Iterable[str]) -> TreeDigest:
    """
    Hash an explicit set of files under a root.

    Raises:
        ScanError: If a file cannot be read
    """
    base = os.fspath(root)
    ordered = canonical_order(relative_paths)
    hasher = hashlib.sha256()
    total = 0
    for relative in ordered:
        try:
            with open(os.path.join(base, relative), "rb") as f:
                while chunk := f.read(READ_CHUNK_BYTES):
                    hasher.update(chunk)
                    total += len(chunk)
        except OSError as e:
            raise ScanError(path=relative, underlying_error=e.strerror or str(e)) from e
    return TreeDigest(hexdigest=hasher.hexdigest(), paths=tuple(ordered), total_bytes=total)


def digest_tree(root: str | os.PathLike[str], rules: Iterable[ExclusionRule]) -> TreeDigest:
    """
    Hash every included file under a root using the relative-form rules.

    An empty file set yields the digest of the empty string.
    """
    predicate = ExclusionPredicate.relative(rules)
    return digest_paths(root, iter_files(root, predicate))
