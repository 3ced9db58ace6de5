"""
Artifact assembly.

The builder runs the generation pipeline end to end:

    compile rules -> scan -> classify -> encode -> stamp -> render -> write

Design Principles:
    - The stamped digest is computed by the same hasher that verifies it
      later, over exactly the set of files that were embedded
    - The scanned set is cross-checked against the hash-time walk; if the
      two forms of the exclusion rules ever disagree, no artifact is written
    - The artifact is written to a temporary file and renamed into place, so
      a failed build never leaves a partial artifact behind
"""

import hashlib
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

from repocapsule import __version__
from repocapsule.classify import Classifier
from repocapsule.errors import ConfigurationError, EncodeError, ExclusionDivergenceError, OutputExistsError, ScanError
from repocapsule.runtime import bundle_source
from repocapsule.runtime.codec import encode_payload, make_delimiter
from repocapsule.runtime.digest import canonical_order, digest_paths
from repocapsule.runtime.layout import (
    RUNTIME_BEGIN,
    SHEBANG,
    ArtifactHeader,
    EmbeddedRecord,
    index_lines,
    parse_artifact_text,
    render_data,
    render_metadata,
    render_toc,
)
from repocapsule.runtime.main import EDITING_GUIDE
from repocapsule.runtime.reporting import Reporter
from repocapsule.runtime.rules import (
    VCS_DIR_NAME,
    ExclusionPredicate,
    ExclusionRule,
    compile_rules,
    deserialize_rules,
    iter_files,
    serialize_rules,
)
from repocapsule.scan import ScanResult, scan_source
from repocapsule.schema import Artifact, BuildConfig, CodecPolicy, FileRecord, SourceEntry


ARTIFACT_MODE = 0o755


@dataclass
class BuildResult:
    """
    Result of a successful build.

    Attributes:
        output_path: Written artifact
        index_path: Written index file, if requested
        artifact: The assembled artifact model
        scan: The scan the artifact was built from
    """

    output_path: Path
    index_path: Path | None
    artifact: Artifact
    scan: ScanResult

    @property
    def file_count(self) -> int:
        return self.artifact.file_count

    @property
    def source_hash(self) -> str:
        return self.artifact.source_hash


# =============================================================================
# Pipeline steps
# =============================================================================


def encode_entry(entry: SourceEntry, data: bytes, policy: CodecPolicy) -> FileRecord:
    """
    Encode one scanned file into an embeddable record.

    Raises:
        EncodeError: If the payload cannot be encoded losslessly
    """
    payload = encode_payload(
        data,
        entry.is_binary,
        path=entry.relative_path,
        compress=policy.compress_binaries,
        segment_chars=policy.segment_chars,
    )
    return FileRecord(
        relative_path=entry.relative_path,
        size_bytes=len(data),
        permissions=entry.permissions,
        is_binary=payload.encoding.is_binary,
        encoding=payload.encoding,
        delimiter=make_delimiter(entry.relative_path, payload.body),
        payload=payload.body,
        segments=payload.segments,
        digest=payload.digest,
    )


def to_embedded(record: FileRecord) -> EmbeddedRecord:
    return EmbeddedRecord(
        relative_path=record.relative_path,
        size=record.size_bytes,
        permissions=record.permissions,
        is_binary=record.is_binary,
        encoding=record.encoding,
        delimiter=record.delimiter,
        body=record.payload,
        segments=record.segments,
        digest=record.digest,
    )


def detect_source_commit(root: Path) -> str | None:
    """
    Short commit hash of a git checkout, or None if unavailable.

    The builder only calls this when the build includes the .git directory;
    otherwise the artifact carries no source commit.
    """
    git = shutil.which("git")
    if git is None or not (root / VCS_DIR_NAME).exists():
        return None
    try:
        completed = subprocess.run(
            [git, "-C", str(root), "rev-parse", "--short", "HEAD"],
            capture_output=True,
            text=True,
            timeout=10,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    commit = completed.stdout.strip()
    return commit if completed.returncode == 0 and commit else None


def render_artifact(artifact: Artifact, runtime_source: str | None = None) -> str:
    """
    Render an assembled artifact to its persisted text form.

    Args:
        artifact: The assembled artifact
        runtime_source: Bundled runtime (built from the installed package by default)

    Returns:
        Complete artifact text, newline-terminated
    """
    records = [to_embedded(r) for r in artifact.records]
    header = ArtifactHeader(
        repo_name=artifact.repo_name,
        repo_version=artifact.repo_version,
        source_hash=artifact.source_hash,
        created_at=artifact.created_at.isoformat(timespec="seconds"),
        file_count=artifact.file_count,
        total_size=artifact.total_size_bytes,
        rules=deserialize_rules(artifact.exclusion_rules),
        source_commit=artifact.source_commit or "",
    )
    guide = EDITING_GUIDE.format(prog=f"setup-{artifact.repo_name}.py")

    lines = [
        SHEBANG,
        f"# RepoCapsule artifact: {artifact.repo_name} {artifact.repo_version}",
        f"# Generated by repocapsule {__version__}",
        f"# Generation Date: {artifact.created_at.strftime('%Y-%m-%d %H:%M:%S %Z')}",
        f"# Source Git Commit: {artifact.source_commit or 'N/A'}",
        "#",
        "# Run `python3 <this file> --help` for all options.",
        "#",
    ]
    lines.extend(f"# {line}" if line else "#" for line in guide.splitlines())
    lines.append("")
    lines.extend(header.to_lines())
    lines.append("")
    lines.extend(render_metadata(artifact.metadata_lines))
    lines.append("")
    lines.extend(render_toc(records))
    lines.append("")
    lines.append(RUNTIME_BEGIN)
    lines.append(runtime_source if runtime_source is not None else bundle_source())
    lines.append("")
    lines.append('if __name__ == "__main__":')
    lines.append("    sys.exit(main(__file__))")
    lines.append("")
    lines.extend(render_data(records))
    lines.append("")
    return "\n".join(lines)


def write_artifact(text: str, path: Path, mode: int = ARTIFACT_MODE) -> None:
    """Write text to a temporary sibling, mark it executable and rename it into place."""
    fd, scratch = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
        os.chmod(scratch, mode)
        os.replace(scratch, path)
    finally:
        if os.path.lexists(scratch):
            os.unlink(scratch)


# =============================================================================
# Builder
# =============================================================================


class ArtifactBuilder:
    """
    Builds a self-extracting artifact from a BuildConfig.

    Example:
        config = BuildConfig(source_dir=Path("./my-project"), version="1.2.0")
        result = ArtifactBuilder(config, StreamReporter()).build()
        print(result.output_path, result.source_hash)
    """

    def __init__(
        self,
        config: BuildConfig,
        reporter: Reporter,
        classifier: Classifier | None = None,
    ) -> None:
        self.config = config
        self.reporter = reporter
        self.classifier = classifier or Classifier(config.classifier, reporter=reporter)

    def build(self) -> BuildResult:
        """
        Run the full generation pipeline.

        Returns:
            BuildResult describing the written artifact

        Raises:
            ConfigurationError: Bad source or output location
            OutputExistsError: Output exists and force is not set
            EncodeError: A payload could not be encoded
            ExclusionDivergenceError: Scan-time and hash-time file sets differ
            ScanError: The source changed while it was being captured
        """
        config = self.config
        output_path = self._prepare_output(config.output_path)
        index_path = self._prepare_output(config.index_path) if config.create_index else None

        rules = compile_rules(config.excludes, config.include_vcs, config.default_excludes)
        self.reporter.info(f"Scanning {config.source_dir} ({len(rules)} exclusion rules)")
        if not self.classifier.has_sniffer:
            self.reporter.debug("Type sniffer unavailable; classifying by printable characters")
        scan = scan_source(config.source_dir, rules, self.classifier, self.reporter)
        self._warn_if_self_capturing(scan, output_path)

        self._check_rule_forms(scan, rules)
        records, content_digest = self._encode(scan)
        stamped = digest_paths(scan.root, scan.relative_paths)
        if stamped.hexdigest != content_digest:
            raise ScanError(
                path=str(scan.root),
                underlying_error="source files changed while the artifact was being built",
            )

        artifact = Artifact(
            repo_name=config.repo_name,
            repo_version=config.version,
            source_hash=stamped.hexdigest,
            file_count=len(records),
            total_size_bytes=sum(r.size_bytes for r in records),
            exclusion_rules=serialize_rules(rules),
            records=records,
            metadata_lines=list(config.metadata),
            source_commit=detect_source_commit(scan.root) if config.include_vcs else None,
        )

        text = render_artifact(artifact)
        try:
            write_artifact(text, output_path)
        except OSError as e:
            raise ConfigurationError(
                message=f"Cannot write artifact {output_path}: {e.strerror or e}",
                option="output_dir",
            ) from e
        self.reporter.success(f"Wrote {output_path} ({len(records)} files, {artifact.total_size_bytes} bytes)")

        if index_path is not None:
            parsed = parse_artifact_text(text, output_path)
            index_path.write_text("\n".join(index_lines(parsed)) + "\n", encoding="utf-8")
            self.reporter.info(f"Wrote index {index_path}")

        return BuildResult(output_path=output_path, index_path=index_path, artifact=artifact, scan=scan)

    def _prepare_output(self, path: Path) -> Path:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                message=f"Cannot create output directory {path.parent}: {e.strerror or e}",
                option="output_dir",
            ) from e
        if path.exists():
            if path.is_dir():
                raise ConfigurationError(message=f"Output path is a directory: {path}", option="output_dir")
            if not self.config.force:
                raise OutputExistsError(path=str(path))
            self.reporter.warn(f"Overwriting {path}")
        return path

    def _warn_if_self_capturing(self, scan: ScanResult, output_path: Path) -> None:
        try:
            relative = output_path.resolve().relative_to(scan.root).as_posix()
        except ValueError:
            return
        if relative in scan.relative_paths:
            self.reporter.warn(f"The previous artifact {relative} is inside the source tree and will be captured")

    def _check_rule_forms(self, scan: ScanResult, rules: tuple[ExclusionRule, ...]) -> None:
        unlisted: list[str] = []
        walked = set(
            iter_files(
                scan.root,
                ExclusionPredicate.relative(rules),
                on_error=lambda e: unlisted.append(e.path),
            )
        )
        scanned = set(scan.relative_paths)
        ignored = set(scan.skipped) | set(unlisted)
        only_scanned = canonical_order(scanned - walked)
        only_hashed = canonical_order(walked - scanned - ignored)
        if only_scanned or only_hashed:
            raise ExclusionDivergenceError(
                path=str(scan.root),
                only_scanned=only_scanned,
                only_hashed=only_hashed,
            )

    def _encode(self, scan: ScanResult) -> tuple[list[FileRecord], str]:
        records: list[FileRecord] = []
        content = hashlib.sha256()
        for entry in scan.entries:
            try:
                data = entry.absolute_path.read_bytes()
            except OSError as e:
                raise EncodeError(path=entry.relative_path, underlying_error=e.strerror or str(e)) from e
            content.update(data)
            record = encode_entry(entry, data, self.config.codec)
            self.reporter.debug(f"Encoded {entry.relative_path} as {record.encoding.value}")
            records.append(record)
        return records, content.hexdigest()
