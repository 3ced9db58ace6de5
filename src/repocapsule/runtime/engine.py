"""
Reconstruction engine.

Replays a parsed artifact against a target directory under one of the run
modes and tracks what happened to every entry.

Entry lifecycle:
    PENDING -> SKIPPED                                  (destination exists)
    PENDING -> DECODING -> WRITTEN -> PERMISSIONS_APPLIED
    PENDING -> DECODING -> FAILED                       (decode or write error)

A chmod failure leaves the entry WRITTEN and only produces a warning.

Design Principles:
    - One bad entry never stops the run; it is marked FAILED and the next
      entry is attempted
    - Writes land in a temporary sibling and are renamed into place, so a
      failed entry leaves nothing half-written
    - Every scratch file and directory is scoped and removed on every exit
      path, including SIGTERM
    - Failed entries are persisted so a later --retry-failed run can pick
      them up without touching anything else
"""

import difflib
import json
import os
import re
import shutil
import signal
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath

from repocapsule.errors import (
    ArtifactFormatError,
    CapsuleError,
    ConfigurationError,
    DecodeError,
    IntegrityMismatchError,
    TargetStateError,
    UserDeclinedError,
    WriteError,
)
from repocapsule.runtime.digest import canonical_order, digest_tree
from repocapsule.runtime.layout import EmbeddedRecord, ParsedArtifact, replace_source_hash
from repocapsule.runtime.reporting import Reporter
from repocapsule.runtime.rules import ExclusionPredicate, iter_files


FAILED_LIST_SUFFIX = ".failed.json"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


# =============================================================================
# Enums and state
# =============================================================================


class Mode(str, Enum):
    """Run mode selected by the artifact invocation. Modes are exclusive."""

    CREATE = "create"
    UPDATE = "update"
    RETRY_FAILED = "retry_failed"
    DRY_RUN = "dry_run"
    VERIFY = "verify"
    RECALCULATE_HASH = "recalculate_hash"
    DUMP = "dump"
    DIFF = "diff"


class EntryState(str, Enum):
    """Per-entry state during reconstruction."""

    PENDING = "pending"
    SKIPPED = "skipped"
    DECODING = "decoding"
    WRITTEN = "written"
    PERMISSIONS_APPLIED = "permissions_applied"
    FAILED = "failed"


@dataclass
class EntryOutcome:
    """Final state of one entry, with the reason for a skip or failure."""

    relative_path: str
    state: EntryState
    detail: str | None = None


@dataclass
class RunState:
    """
    Mutable bookkeeping for one invocation.

    Attributes:
        mode: The run mode
        expected_count: Entries the run expects to handle
        failed_entries: Relative paths that failed
        success_count: Entries written (with or without permissions)
        skipped_count: Entries left untouched
        outcomes: Every recorded outcome in order
    """

    mode: Mode
    expected_count: int = 0
    failed_entries: set[str] = field(default_factory=set)
    success_count: int = 0
    skipped_count: int = 0
    outcomes: list[EntryOutcome] = field(default_factory=list)

    def record(self, outcome: EntryOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.state == EntryState.FAILED:
            self.failed_entries.add(outcome.relative_path)
        elif outcome.state in (EntryState.WRITTEN, EntryState.PERMISSIONS_APPLIED):
            self.success_count += 1
        elif outcome.state == EntryState.SKIPPED:
            self.skipped_count += 1


@dataclass(frozen=True)
class RunOptions:
    """
    What to do and where.

    Attributes:
        mode: Run mode
        target_dir: Target directory (defaults to ./<repo name>)
        pattern: Regular expression over relative paths (dump, diff)
        reference_dir: Directory to compare against (diff)
        failed_list: Failed-entry list location (defaults beside the artifact)
        assume_yes: Skip the recalculate-hash confirmation
    """

    mode: Mode = Mode.CREATE
    target_dir: Path | None = None
    pattern: str | None = None
    reference_dir: Path | None = None
    failed_list: Path | None = None
    assume_yes: bool = False


@dataclass
class DiffReport:
    """Differences between a reference tree and the capsule contents."""

    only_in_reference: list[str] = field(default_factory=list)
    only_in_capsule: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    permission_changes: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def has_differences(self) -> bool:
        return bool(
            self.only_in_reference or self.only_in_capsule or self.changed or self.permission_changes
        )


@dataclass
class RunResult:
    """
    Result of one engine invocation.

    Attributes:
        mode: The run mode
        exit_code: 0 when the mode's success condition holds, else 1
        target_dir: Directory the run operated on
        state: Per-entry bookkeeping
        expected_hash: Stamped digest (verify, recalculate-hash)
        computed_hash: Recomputed digest (verify, recalculate-hash)
        diff: Comparison report (diff)
        backup_path: Artifact backup written by recalculate-hash
        error: The error that ended the run, if any
    """

    mode: Mode
    exit_code: int
    target_dir: Path | None
    state: RunState
    expected_hash: str | None = None
    computed_hash: str | None = None
    diff: DiffReport | None = None
    backup_path: Path | None = None
    error: CapsuleError | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def failed_entries(self) -> list[str]:
        return canonical_order(self.state.failed_entries)


# =============================================================================
# Helpers
# =============================================================================


def prompt_yes_no(prompt: str) -> bool:
    """Ask on the terminal; anything but y/yes (or end of input) is a no."""
    try:
        answer = input(f"{prompt} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


@contextmanager
def interruption_guard() -> Iterator[None]:
    """
    Turn SIGTERM into KeyboardInterrupt for the duration of a run.

    Scoped cleanup (temporary directories, scratch files) then runs on
    external termination exactly as it does on Ctrl-C.
    """

    def _interrupt(signum: int, frame: object) -> None:
        raise KeyboardInterrupt(f"terminated by signal {signum}")

    try:
        previous = signal.signal(signal.SIGTERM, _interrupt)
    except ValueError:
        # Not the main thread.
        installed = False
    else:
        installed = True
    try:
        yield
    finally:
        if installed:
            signal.signal(signal.SIGTERM, previous if previous is not None else signal.SIG_DFL)


def default_failed_list_path(artifact_path: Path) -> Path:
    return artifact_path.with_name(artifact_path.name + FAILED_LIST_SUFFIX)


def load_failed_list(path: Path) -> list[str]:
    """
    Read a persisted failed-entry list. A missing file means nothing failed.

    Raises:
        ConfigurationError: If the file exists but is not a valid list
    """
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(
            message=f"Cannot read failed-entry list {path}: {e}",
            option="failed-list",
        ) from e
    entries = data.get("failed") if isinstance(data, dict) else data
    if not isinstance(entries, list) or not all(isinstance(p, str) for p in entries):
        raise ConfigurationError(
            message=f"Failed-entry list {path} must contain a list of paths",
            option="failed-list",
        )
    return entries


def save_failed_list(path: Path, artifact_name: str, target_dir: Path, failed: set[str]) -> None:
    """Persist remaining failures, or remove the list when there are none."""
    if not failed:
        path.unlink(missing_ok=True)
        return
    payload = {
        "artifact": artifact_name,
        "target_dir": str(target_dir),
        "failed": canonical_order(failed),
    }
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")


def safe_destination(target: Path, relative_path: str) -> Path | None:
    """
    Map an entry path into the target, or None if it would escape it.

    Absolute paths, ".." components and NUL characters are rejected, as is
    any path whose existing parent resolves outside the target.
    """
    if not relative_path or "\x00" in relative_path:
        return None
    pure = PurePosixPath(relative_path)
    if pure.is_absolute() or ".." in pure.parts:
        return None
    destination = target.joinpath(*pure.parts)
    try:
        resolved_parent = destination.parent.resolve()
        resolved_target = target.resolve()
    except OSError:
        return None
    if resolved_parent != resolved_target and not resolved_parent.is_relative_to(resolved_target):
        return None
    return destination


def write_atomically(destination: Path, data: bytes) -> None:
    """Write bytes to a temporary sibling and rename it over the destination."""
    fd, scratch = tempfile.mkstemp(dir=destination.parent, prefix=f".{destination.name}.", suffix=".partial")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(scratch, destination)
    finally:
        if os.path.lexists(scratch):
            os.unlink(scratch)


def _plural(count: int, singular: str, plural: str | None = None) -> str:
    return f"{count} {singular if count == 1 else (plural or singular + 's')}"


# =============================================================================
# Engine
# =============================================================================


class Reconstructor:
    """
    Applies a parsed artifact to a target directory.

    Example:
        artifact = parse_artifact("setup-demo.py")
        engine = Reconstructor(artifact, StreamReporter())
        result = engine.run(RunOptions(target_dir=Path("/tmp/demo")))
        if not result.success:
            print(result.failed_entries)
    """

    def __init__(
        self,
        artifact: ParsedArtifact,
        reporter: Reporter,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        self.artifact = artifact
        self.header = artifact.header
        self.reporter = reporter
        self.confirm = confirm or prompt_yes_no

    def resolve_target(self, options: RunOptions) -> Path:
        target = options.target_dir if options.target_dir is not None else Path(self.header.repo_name)
        return Path(os.path.abspath(target))

    def run(self, options: RunOptions) -> RunResult:
        """
        Execute one mode and convert any RepoCapsule error into a failed result.

        Args:
            options: Mode and locations

        Returns:
            RunResult whose exit_code is 0 only if the mode succeeded
        """
        target = self.resolve_target(options)
        handlers: dict[Mode, Callable[[RunOptions, Path], RunResult]] = {
            Mode.CREATE: self.create,
            Mode.UPDATE: self.create,
            Mode.RETRY_FAILED: self.retry_failed,
            Mode.DRY_RUN: self.dry_run,
            Mode.VERIFY: self.verify,
            Mode.RECALCULATE_HASH: self.recalculate_hash,
            Mode.DUMP: self.dump,
            Mode.DIFF: self.diff,
        }
        try:
            return handlers[options.mode](options, target)
        except IntegrityMismatchError as e:
            self.reporter.error(str(e))
            return RunResult(
                mode=options.mode,
                exit_code=1,
                target_dir=target,
                state=RunState(options.mode, expected_count=self.header.file_count),
                expected_hash=e.expected_hash,
                computed_hash=e.actual_hash,
                error=e,
            )
        except UserDeclinedError as e:
            self.reporter.warn(str(e))
            return RunResult(options.mode, 1, target, RunState(options.mode), error=e)
        except CapsuleError as e:
            self.reporter.error(str(e))
            return RunResult(options.mode, 1, target, RunState(options.mode), error=e)

    # -------------------------------------------------------------------------
    # Writing modes
    # -------------------------------------------------------------------------

    def create(self, options: RunOptions, target: Path) -> RunResult:
        """Reconstruct every entry (CREATE) or overwrite them (UPDATE)."""
        update = options.mode == Mode.UPDATE
        mode = Mode.UPDATE if update else Mode.CREATE
        self._prepare_target(target, update)

        state = RunState(mode, expected_count=self.header.file_count)
        action = "Updating" if update else "Creating"
        self.reporter.info(
            f"{action} {self.header.repo_name} {self.header.repo_version} in {target}"
        )
        for record in self.artifact.records:
            state.record(self.apply_record(record, target, overwrite=update))

        handled = state.success_count + state.skipped_count + len(state.failed_entries)
        if handled != self.header.file_count:
            incomplete = ArtifactFormatError(
                message=(
                    f"Artifact holds {_plural(handled, 'entry', 'entries')} "
                    f"but the header expects {self.header.file_count}"
                ),
                artifact_path=str(self.artifact.path),
                suggestion="Restore the missing records or regenerate the artifact",
            )
            return self._finish(options, target, state, incomplete)
        return self._finish(options, target, state)

    def retry_failed(self, options: RunOptions, target: Path) -> RunResult:
        """Re-attempt only the entries on the persisted failed-entry list."""
        if not target.is_dir():
            raise TargetStateError(
                target_dir=str(target),
                reason="does not exist; there is nothing to retry",
                suggestion="Run without --retry-failed to create it",
            )

        list_path = options.failed_list or default_failed_list_path(self.artifact.path)
        scope = set(load_failed_list(list_path))
        state = RunState(Mode.RETRY_FAILED, expected_count=len(scope))
        if not scope:
            self.reporter.success("No failed entries recorded; nothing to retry")
            return RunResult(Mode.RETRY_FAILED, 0, target, state)

        self.reporter.info(f"Retrying {_plural(len(scope), 'failed entry', 'failed entries')} in {target}")
        state.failed_entries.clear()
        attempted: set[str] = set()
        for record in self.artifact.records:
            if record.relative_path not in scope:
                state.record(EntryOutcome(record.relative_path, EntryState.SKIPPED, "not on the failed list"))
                continue
            attempted.add(record.relative_path)
            state.record(self.apply_record(record, target, overwrite=True))

        for missing in canonical_order(scope - attempted):
            self.reporter.error(f"{missing}: not present in this artifact")
            state.record(EntryOutcome(missing, EntryState.FAILED, "not present in this artifact"))

        return self._finish(options, target, state)

    def apply_record(self, record: EmbeddedRecord, target: Path, overwrite: bool) -> EntryOutcome:
        """
        Materialize one entry. Never raises for per-entry problems.

        Returns:
            The entry's final outcome
        """
        relative = record.relative_path

        def failed(error: CapsuleError) -> EntryOutcome:
            self.reporter.error(str(error))
            return EntryOutcome(relative, EntryState.FAILED, error.message)

        destination = safe_destination(target, relative)
        if destination is None:
            return failed(WriteError(path=relative, underlying_error="path escapes the target directory"))

        if not overwrite and os.path.lexists(destination):
            self.reporter.debug(f"Skipping existing {relative}")
            return EntryOutcome(relative, EntryState.SKIPPED, "already exists")

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return failed(WriteError(path=relative, underlying_error=f"cannot create directory: {e.strerror or e}"))

        self.reporter.debug(f"Decoding {relative} ({record.encoding.value})")
        try:
            data = record.decode()
        except DecodeError as e:
            return failed(e)

        try:
            write_atomically(destination, data)
        except OSError as e:
            return failed(WriteError(path=relative, underlying_error=e.strerror or str(e)))

        try:
            os.chmod(destination, int(record.permissions, 8))
        except OSError as e:
            self.reporter.warn(f"{relative}: could not set permissions {record.permissions}: {e.strerror or e}")
            return EntryOutcome(relative, EntryState.WRITTEN, "permissions not applied")

        self.reporter.debug(f"Wrote {relative} ({record.size} bytes, {record.permissions})")
        return EntryOutcome(relative, EntryState.PERMISSIONS_APPLIED)

    def _prepare_target(self, target: Path, update: bool) -> None:
        if target.exists() and not target.is_dir():
            raise TargetStateError(target_dir=str(target), reason="exists and is not a directory")
        if target.exists():
            if not update:
                raise TargetStateError(
                    target_dir=str(target),
                    reason="already exists",
                    suggestion="Use --update to overwrite or --retry-failed to retry failed entries",
                )
            self.reporter.warn(f"Update mode: existing files in {target} will be overwritten")
            return
        try:
            target.mkdir(parents=True)
        except OSError as e:
            raise TargetStateError(
                target_dir=str(target),
                reason=f"cannot be created: {e.strerror or e}",
            ) from e

    def _finish(
        self,
        options: RunOptions,
        target: Path,
        state: RunState,
        incomplete: ArtifactFormatError | None = None,
    ) -> RunResult:
        list_path = options.failed_list or default_failed_list_path(self.artifact.path)
        try:
            save_failed_list(list_path, self.artifact.path.name, target, state.failed_entries)
        except OSError as e:
            self.reporter.warn(f"Could not update failed-entry list {list_path}: {e.strerror or e}")

        self.reporter.info(
            f"{_plural(state.success_count, 'entry', 'entries')} written, "
            f"{state.skipped_count} skipped, {len(state.failed_entries)} failed"
        )
        if state.failed_entries:
            self.reporter.error("Failed entries:")
            for path in canonical_order(state.failed_entries):
                self.reporter.line(f"  - {path}")
            self.reporter.info(f"Re-run with --retry-failed to retry them (list saved to {list_path})")
            return RunResult(state.mode, 1, target, state)
        if incomplete is not None:
            self.reporter.error(str(incomplete))
            return RunResult(state.mode, 1, target, state, error=incomplete)

        self.reporter.success(f"{self.header.repo_name} reconstructed in {target}")
        return RunResult(state.mode, 0, target, state)

    # -------------------------------------------------------------------------
    # Read-only modes
    # -------------------------------------------------------------------------

    def dry_run(self, options: RunOptions, target: Path) -> RunResult:
        """List intended writes without touching the filesystem."""
        state = RunState(Mode.DRY_RUN, expected_count=self.header.file_count)
        if target.exists():
            self.reporter.warn(f"[DRY RUN] {target} already exists; a real run would need --update")
        for record in self.artifact.records:
            self.reporter.line(f"[DRY RUN] Would process: {target / record.relative_path}")
            state.record(EntryOutcome(record.relative_path, EntryState.PENDING))
        self.reporter.info(
            f"[DRY RUN] {_plural(len(self.artifact.records), 'entry', 'entries')} "
            f"({self.header.file_count} expected, {self.header.total_size} bytes)"
        )
        return RunResult(Mode.DRY_RUN, 0, target, state)

    def verify(self, options: RunOptions, target: Path) -> RunResult:
        """
        Recompute the tree digest of the target and compare it to the stamp.

        Raises:
            TargetStateError: If the target does not exist
            IntegrityMismatchError: If the digests differ
        """
        self._require_existing(target)
        computed = digest_tree(target, self.header.rules).hexdigest
        expected = self.header.source_hash
        self.reporter.info(f"Embedded hash: {expected}")
        self.reporter.info(f"Computed hash: {computed}")
        if computed != expected:
            raise IntegrityMismatchError(
                expected_hash=expected,
                actual_hash=computed,
                target_dir=str(target),
            )
        self.reporter.success("Verification passed: target matches the artifact")
        return RunResult(
            Mode.VERIFY,
            0,
            target,
            RunState(Mode.VERIFY, expected_count=self.header.file_count),
            expected_hash=expected,
            computed_hash=computed,
        )

    def recalculate_hash(self, options: RunOptions, target: Path) -> RunResult:
        """
        Re-stamp the artifact's SOURCE_HASH from the target's current digest.

        The artifact is backed up first and rewritten through a scratch file.

        Raises:
            UserDeclinedError: If the confirmation is refused
            WriteError: If the artifact cannot be rewritten
        """
        self._require_existing(target)
        computed = digest_tree(target, self.header.rules).hexdigest
        expected = self.header.source_hash
        self.reporter.info(f"Embedded hash: {expected}")
        self.reporter.info(f"Computed hash: {computed}")
        state = RunState(Mode.RECALCULATE_HASH, expected_count=self.header.file_count)

        if computed == expected:
            self.reporter.success("Embedded hash already matches the target; nothing to do")
            return RunResult(Mode.RECALCULATE_HASH, 0, target, state, expected, computed)

        prompt = f"Replace the embedded hash in {self.artifact.path.name} with {computed}?"
        if not (options.assume_yes or self.confirm(prompt)):
            raise UserDeclinedError(action="recalculate hash")

        backup = self._rewrite_source_hash(computed)
        self.reporter.success(f"Embedded hash updated (backup: {backup})")
        return RunResult(
            Mode.RECALCULATE_HASH,
            0,
            target,
            state,
            expected_hash=expected,
            computed_hash=computed,
            backup_path=backup,
        )

    def dump(self, options: RunOptions, target: Path) -> RunResult:
        """Print record markers and metadata, optionally filtered by path."""
        pattern = self._compile_filter(options.pattern)
        state = RunState(Mode.DUMP, expected_count=self.header.file_count)
        matched = 0
        for record in self.artifact.records:
            if pattern is not None and not pattern.search(record.relative_path):
                continue
            matched += 1
            self.reporter.line(record.begin_marker())
            self.reporter.line(record.metadata_line())
            self.reporter.line(record.content_line())
            self.reporter.line(record.end_marker())
            self.reporter.line("")
        self.reporter.info(f"{_plural(matched, 'matching entry', 'matching entries')}")
        return RunResult(Mode.DUMP, 0, target, state)

    def diff(self, options: RunOptions, target: Path) -> RunResult:
        """
        Compare the capsule contents with a reference directory.

        Entries are decoded into a scratch directory that is always removed.
        The exit code only reflects extraction failures, not differences.
        """
        reference = options.reference_dir
        if reference is None:
            raise ConfigurationError(message="--diff needs a reference directory", option="diff")
        reference = Path(os.path.abspath(reference))
        if not reference.is_dir():
            raise TargetStateError(target_dir=str(reference), reason="does not exist or is not a directory")

        pattern = self._compile_filter(options.pattern)
        selected = [
            r for r in self.artifact.records
            if pattern is None or pattern.search(r.relative_path)
        ]
        state = RunState(Mode.DIFF, expected_count=len(selected))

        with tempfile.TemporaryDirectory(prefix="repocapsule_diff.") as scratch_dir:
            scratch = Path(scratch_dir)
            self.reporter.debug(f"Extracting {len(selected)} entries to {scratch}")
            for record in selected:
                state.record(self.apply_record(record, scratch, overwrite=False))
            if state.failed_entries:
                self.reporter.warn(
                    f"{_plural(len(state.failed_entries), 'entry', 'entries')} could not be extracted; "
                    "the comparison is incomplete"
                )
            report = self._compare(reference, scratch, selected, state.failed_entries, pattern)

        exit_code = 1 if state.failed_entries else 0
        return RunResult(Mode.DIFF, exit_code, reference, state, diff=report)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require_existing(self, target: Path) -> None:
        if not target.is_dir():
            raise TargetStateError(target_dir=str(target), reason="does not exist or is not a directory")

    def _compile_filter(self, pattern: str | None) -> re.Pattern[str] | None:
        if not pattern:
            return None
        try:
            return re.compile(pattern)
        except re.error as e:
            raise ConfigurationError(message=f"Invalid filter expression {pattern!r}: {e}", option="filter") from e

    def _rewrite_source_hash(self, new_hash: str) -> Path:
        path = self.artifact.path
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise WriteError(path=str(path), underlying_error=e.strerror or str(e)) from e
        updated = replace_source_hash(text, new_hash, str(path))

        backup = path.with_name(f"{path.name}.bak.{datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)}")
        scratch: str | None = None
        try:
            shutil.copy2(path, backup)
            fd, scratch = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(updated)
            shutil.copymode(backup, scratch)
            os.replace(scratch, path)
        except OSError as e:
            raise WriteError(path=str(path), underlying_error=e.strerror or str(e)) from e
        finally:
            if scratch is not None and os.path.lexists(scratch):
                os.unlink(scratch)
        return backup

    def _compare(
        self,
        reference: Path,
        extracted: Path,
        records: list[EmbeddedRecord],
        failed: set[str],
        pattern: re.Pattern[str] | None,
    ) -> DiffReport:
        predicate = ExclusionPredicate.relative(self.header.rules)
        reference_paths = {
            p for p in iter_files(reference, predicate, on_error=lambda e: self.reporter.warn(str(e)))
            if pattern is None or pattern.search(p)
        }
        capsule = {r.relative_path: r for r in records if r.relative_path not in failed}

        report = DiffReport(
            only_in_reference=canonical_order(reference_paths - capsule.keys()),
            only_in_capsule=canonical_order(capsule.keys() - reference_paths),
        )
        self.reporter.line(f"--- Diff: {reference} vs {self.artifact.path.name} ---")
        for path in report.only_in_reference:
            self.reporter.line(f"Only in reference: {path}")
        for path in report.only_in_capsule:
            self.reporter.line(f"Only in capsule: {path}")

        for path in canonical_order(reference_paths & capsule.keys()):
            record = capsule[path]
            ours = reference / path
            theirs = extracted / path
            try:
                before = ours.read_bytes()
                after = theirs.read_bytes()
                reference_mode = format(ours.stat().st_mode & 0o7777, "03o")
            except OSError as e:
                self.reporter.warn(f"Cannot compare {path}: {e.strerror or e}")
                report.changed.append(path)
                continue
            if before != after:
                report.changed.append(path)
                self._print_content_diff(path, before, after, record.is_binary)
            if int(reference_mode, 8) != int(record.permissions, 8):
                report.permission_changes.append((path, reference_mode, record.permissions))
                self.reporter.line(f"Mode differs: {path} (reference {reference_mode}, capsule {record.permissions})")

        if report.has_differences:
            self.reporter.line("--- Diff End (differences found) ---")
        else:
            self.reporter.line("--- Diff End (no differences found) ---")
        return report

    def _print_content_diff(self, path: str, before: bytes, after: bytes, is_binary: bool) -> None:
        if is_binary or b"\x00" in before or b"\x00" in after:
            self.reporter.line(f"Binary files differ: {path}")
            return
        old_lines = before.decode("utf-8", "replace").splitlines(keepends=True)
        new_lines = after.decode("utf-8", "replace").splitlines(keepends=True)
        for line in difflib.unified_diff(old_lines, new_lines, fromfile=f"reference/{path}", tofile=f"capsule/{path}"):
            self.reporter.line(line.rstrip("\n"))
