"""
Capsule runtime: the code that travels inside every generated artifact.

Every module in this package (and repocapsule.errors) uses only the Python
standard library. At build time their sources are concatenated, in
dependency order, into the artifact, with the intra-package imports removed.
A generated artifact therefore runs on a bare interpreter.

Constraints for modules listed in BUNDLED_MODULES:
    - Standard library imports only
    - Import package names with `from repocapsule... import name`, never
      `import repocapsule...`, so the import lines can be stripped
    - Top-level names must not clash across modules
    - No `from __future__` imports

Example:
    from repocapsule.runtime import Reconstructor, RunOptions, parse_artifact

    artifact = parse_artifact("setup-demo.py")
    result = Reconstructor(artifact, StreamReporter()).run(RunOptions())
"""

import importlib
import inspect
import re

from repocapsule.runtime.digest import TreeDigest, canonical_order, digest_paths, digest_tree
from repocapsule.runtime.engine import (
    DiffReport,
    EntryOutcome,
    EntryState,
    Mode,
    Reconstructor,
    RunOptions,
    RunResult,
    RunState,
)
from repocapsule.runtime.layout import ArtifactHeader, EmbeddedRecord, ParsedArtifact, parse_artifact
from repocapsule.runtime.reporting import Reporter, StreamReporter
from repocapsule.runtime.rules import ExclusionPredicate, ExclusionRule, compile_rules, iter_files


BUNDLED_MODULES: tuple[str, ...] = (
    "repocapsule.errors",
    "repocapsule.runtime.reporting",
    "repocapsule.runtime.rules",
    "repocapsule.runtime.codec",
    "repocapsule.runtime.digest",
    "repocapsule.runtime.layout",
    "repocapsule.runtime.engine",
    "repocapsule.runtime.main",
)

_PACKAGE_IMPORT_RE = re.compile(
    r"^from repocapsule(?:\.\w+)* import (?:\([^)]*\)|[^\n]*)\n",
    re.MULTILINE,
)


def bundle_source() -> str:
    """
    Concatenate the runtime modules into one standalone source text.

    Returns:
        Python source defining `main(artifact_path, argv=None)` and
        everything it needs
    """
    sections: list[str] = []
    for name in BUNDLED_MODULES:
        source = inspect.getsource(importlib.import_module(name))
        sections.append(f"# ---- {name} ----\n{_PACKAGE_IMPORT_RE.sub('', source).strip()}\n")
    return "\n\n".join(sections)


__all__ = [
    "ArtifactHeader",
    "BUNDLED_MODULES",
    "DiffReport",
    "EmbeddedRecord",
    "EntryOutcome",
    "EntryState",
    "ExclusionPredicate",
    "ExclusionRule",
    "Mode",
    "ParsedArtifact",
    "Reconstructor",
    "Reporter",
    "RunOptions",
    "RunResult",
    "RunState",
    "StreamReporter",
    "TreeDigest",
    "bundle_source",
    "canonical_order",
    "compile_rules",
    "digest_paths",
    "digest_tree",
    "iter_files",
    "parse_artifact",
]
