"""
Command-line entry point embedded in every generated artifact.

Running `python setup-<name>.py [options]` lands here. The artifact has to
work on a bare interpreter, so this surface uses argparse rather than the
repocapsule CLI stack.
"""

import argparse
import sys
from collections.abc import Callable
from pathlib import Path

from repocapsule.errors import CapsuleError
from repocapsule.runtime.engine import Mode, Reconstructor, RunOptions, interruption_guard
from repocapsule.runtime.layout import parse_artifact
from repocapsule.runtime.reporting import Reporter, StreamReporter


EDITING_GUIDE = """\
Editing workflow:
  1. Extract:   python {prog} --target-dir work
  2. Edit files under work/ with any tool.
  3. Inspect:   python {prog} --target-dir work --verify
                python {prog} --diff work
  4. Accept:    python {prog} --target-dir work --recalculate-hash
  5. Apply elsewhere with --update, or recover from errors with --retry-failed.

Each file in this script sits between '# <<< BEGIN FILE: path >>>' and
'# <<< END FILE: path >>>' markers. Edit payloads only between a file's
'# Content:' line and its delimiter line, never the markers themselves.
In text payloads backslash, single quote and control characters are
written as \\\\, \\' and \\xHH."""


class ArtifactArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad arguments."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser(prog: str, repo_name: str = "") -> argparse.ArgumentParser:
    parser = ArtifactArgumentParser(
        prog=prog,
        description=f"Reconstruct, verify or compare the '{repo_name}' capsule.",
        epilog=EDITING_GUIDE.format(prog=prog),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--target-dir",
        type=Path,
        metavar="DIR",
        help=f"directory to reconstruct into (default: ./{repo_name or '<repo name>'})",
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--update", action="store_true", help="overwrite existing files in the target")
    modes.add_argument("--dry-run", action="store_true", help="list what would be written, change nothing")
    modes.add_argument("--verify", action="store_true", help="compare the target's digest with the embedded one")
    modes.add_argument(
        "--recalculate-hash",
        action="store_true",
        help="re-stamp the embedded digest from the target (asks first, keeps a backup)",
    )
    modes.add_argument("--retry-failed", action="store_true", help="retry only entries that failed last time")
    modes.add_argument(
        "--diff",
        nargs="+",
        metavar=("REFERENCE_DIR", "FILTER"),
        help="compare the capsule contents with REFERENCE_DIR, optionally filtered by a path regex",
    )
    modes.add_argument(
        "--dump",
        nargs="?",
        const="",
        metavar="FILTER",
        help="print record markers and metadata, optionally filtered by a path regex",
    )
    parser.add_argument("--failed-list", type=Path, metavar="PATH", help="failed-entry list location")
    parser.add_argument("-y", "--yes", action="store_true", help="do not ask for confirmation")
    parser.add_argument("-v", "--verbose", action="store_true", help="show per-entry progress")
    return parser


def options_from_args(args: argparse.Namespace, parser: argparse.ArgumentParser) -> RunOptions:
    mode = Mode.CREATE
    pattern: str | None = None
    reference: Path | None = None
    if args.update:
        mode = Mode.UPDATE
    elif args.dry_run:
        mode = Mode.DRY_RUN
    elif args.verify:
        mode = Mode.VERIFY
    elif args.recalculate_hash:
        mode = Mode.RECALCULATE_HASH
    elif args.retry_failed:
        mode = Mode.RETRY_FAILED
    elif args.diff is not None:
        if len(args.diff) > 2:
            parser.error("--diff takes a reference directory and at most one filter")
        mode = Mode.DIFF
        reference = Path(args.diff[0])
        pattern = args.diff[1] if len(args.diff) > 1 else None
    elif args.dump is not None:
        mode = Mode.DUMP
        pattern = args.dump or None

    return RunOptions(
        mode=mode,
        target_dir=args.target_dir,
        pattern=pattern,
        reference_dir=reference,
        failed_list=args.failed_list,
        assume_yes=args.yes,
    )


def main(
    artifact_path: str | Path | None = None,
    argv: list[str] | None = None,
    reporter: Reporter | None = None,
    confirm: Callable[[str], bool] | None = None,
) -> int:
    """
    Run the artifact.

    Args:
        artifact_path: The artifact file (the running script by default)
        argv: Arguments (sys.argv[1:] by default)
        reporter: Output sink (plain stdout/stderr by default)
        confirm: Yes/no prompt for recalculate-hash

    Returns:
        Process exit code
    """
    path = Path(artifact_path if artifact_path is not None else sys.argv[0]).resolve()
    parser = build_parser(path.name)
    args = parser.parse_args(argv)
    reporter = reporter or StreamReporter(verbose=args.verbose)

    try:
        artifact = parse_artifact(path)
    except CapsuleError as e:
        reporter.error(str(e))
        return 1

    options = options_from_args(args, parser)
    engine = Reconstructor(artifact, reporter, confirm=confirm)
    try:
        with interruption_guard():
            result = engine.run(options)
    except KeyboardInterrupt:
        reporter.error("Interrupted")
        return 1
    return result.exit_code
