"""
CLI entry point for RepoCapsule.

This module provides the Typer-based command-line interface for RepoCapsule.

Commands:
    build       Capture a source directory into a self-extracting artifact
    apply       Run an artifact's modes in-process, with rich or JSON output
    doctor      Check the environment for optional capabilities

Architecture Note:
    The CLI is intentionally thin - it parses arguments and delegates to the
    assembler (generation) and the runtime engine (reconstruction). The
    generated artifact carries its own argparse surface and does not need
    this module, or any third-party package, to run.
"""

import json
import shutil
import sys
import traceback
import uuid
from pathlib import Path
from typing import Annotated, NoReturn, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from repocapsule import __version__
from repocapsule.assembler import ArtifactBuilder, BuildResult
from repocapsule.errors import CapsuleError, OutputExistsError
from repocapsule.report import (
    RichReporter,
    build_result_to_dict,
    dumps,
    error_to_dict,
    print_build_summary,
    print_run_summary,
    run_result_to_dict,
)
from repocapsule.runtime.engine import Mode, Reconstructor, RunOptions, interruption_guard
from repocapsule.runtime.layout import parse_artifact
from repocapsule.schema import ClassifierPolicy, config_from_options, load_config

# Initialize Typer app with metadata
app = typer.Typer(
    name="repocapsule",
    help="Capture a directory tree into a single self-extracting Python script.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]repocapsule[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    RepoCapsule - Portable, self-verifying snapshots of a source tree.

    Build a single executable Python script that reconstructs, verifies and
    diffs the captured tree on any machine with a Python 3 interpreter.
    """
    pass


# =============================================================================
# build
# =============================================================================


@app.command()
def build(
    source_dir: Annotated[
        Path,
        typer.Argument(help="Directory to capture."),
    ],
    output_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--output-dir",
            "-o",
            help="Directory for setup-<name>.py. Defaults to the current directory.",
        ),
    ] = None,
    name: Annotated[
        Optional[str],
        typer.Option(
            "--name",
            "-n",
            help="Repository name. Defaults to the source directory's name.",
        ),
    ] = None,
    repo_version: Annotated[
        Optional[str],
        typer.Option(
            "--version",
            "-V",
            help="Repository version recorded in the header (default 1.0.0).",
        ),
    ] = None,
    include_git: Annotated[
        bool,
        typer.Option(
            "--include-git",
            "-g",
            help="Capture .git and skip the default exclusions.",
        ),
    ] = False,
    exclude: Annotated[
        Optional[list[str]],
        typer.Option(
            "--exclude",
            "-e",
            help="Extra exclusion pattern (repeatable). Patterns with '/' match paths.",
        ),
    ] = None,
    metadata: Annotated[
        Optional[list[str]],
        typer.Option(
            "--metadata",
            "-m",
            help="Free-form metadata line copied into the artifact (repeatable).",
        ),
    ] = None,
    create_index: Annotated[
        bool,
        typer.Option(
            "--create-index",
            "-i",
            help="Also write setup-<name>.py.index with path:line entries.",
        ),
    ] = False,
    force: Annotated[
        bool,
        typer.Option(
            "--force",
            "-f",
            help="Overwrite an existing artifact without asking.",
        ),
    ] = False,
    compress: Annotated[
        bool,
        typer.Option(
            "--compress",
            help="Gzip binary payloads before base64 encoding.",
        ),
    ] = False,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            help="YAML build configuration. Command-line options take precedence.",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Enable verbose output for debugging.",
        ),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option(
            "--debug",
            help="Enable debug mode with full error tracebacks.",
        ),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output results in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Capture a source directory into setup-<name>.py.

    The artifact embeds every included file with its permissions, a SHA-256
    digest of the tree and the runtime needed to reconstruct it.

    Example:
        $ repocapsule build ./my-project -V 2.1.0 -e 'build/' -i
    """
    overrides = {
        "source_dir": source_dir,
        "output_dir": output_dir,
        "name": name,
        "version": repo_version,
        "include_vcs": True if include_git else None,
        "excludes": exclude,
        "metadata": metadata,
        "create_index": True if create_index else None,
        "force": True if force else None,
    }

    try:
        if config_path is not None:
            config = load_config(config_path, **overrides)
            if verbose and not json_output:
                console.print(f"[dim]Loaded config: {escape(str(config_path))}[/dim]")
        else:
            config = config_from_options(**overrides)
        if compress:
            config = config.model_copy(
                update={"codec": config.codec.model_copy(update={"compress_binaries": True})}
            )
    except (OSError, yaml.YAMLError, ValidationError, ValueError) as e:
        _fail(json_output, debug, "config_error", f"Invalid configuration: {e}")

    reporter = _make_reporter(verbose, json_output)
    try:
        try:
            result = ArtifactBuilder(config, reporter).build()
        except OutputExistsError as e:
            if json_output or not _confirm(f"{e.path} already exists. Overwrite?"):
                raise
            result = ArtifactBuilder(config.model_copy(update={"force": True}), reporter).build()
    except CapsuleError as e:
        _fail_with_error(json_output, debug, e)
    except Exception as e:
        _fail(json_output, debug, "build_error", str(e))

    _display_build_result(result, verbose, json_output)


def _display_build_result(result: BuildResult, verbose: bool, json_output: bool) -> None:
    if json_output:
        print(dumps(build_result_to_dict(result)))
    else:
        console.print()
        print_build_summary(console, result, verbose=verbose)


# =============================================================================
# apply
# =============================================================================


@app.command()
def apply(
    artifact_path: Annotated[
        Path,
        typer.Argument(help="Generated setup-<name>.py artifact."),
    ],
    target_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--target-dir",
            "-t",
            help="Target directory. Defaults to ./<repo name>.",
        ),
    ] = None,
    update: Annotated[
        bool,
        typer.Option("--update", help="Overwrite existing files in the target."),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="List what would be written, change nothing."),
    ] = False,
    verify: Annotated[
        bool,
        typer.Option("--verify", help="Compare the target's digest with the embedded one."),
    ] = False,
    recalculate_hash: Annotated[
        bool,
        typer.Option(
            "--recalculate-hash",
            help="Re-stamp the embedded digest from the target (asks first, keeps a backup).",
        ),
    ] = False,
    retry_failed: Annotated[
        bool,
        typer.Option("--retry-failed", help="Retry only entries that failed last time."),
    ] = False,
    dump: Annotated[
        bool,
        typer.Option("--dump", help="Print record markers and metadata."),
    ] = False,
    diff: Annotated[
        Optional[Path],
        typer.Option("--diff", help="Compare the capsule contents with this reference directory."),
    ] = None,
    filter_pattern: Annotated[
        Optional[str],
        typer.Option("--filter", help="Path regular expression for --dump and --diff."),
    ] = None,
    failed_list: Annotated[
        Optional[Path],
        typer.Option("--failed-list", help="Failed-entry list location."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show per-entry progress."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Enable debug mode with full error tracebacks."),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output results in JSON format."),
    ] = False,
) -> None:
    """
    Run an artifact in-process.

    Exposes the same modes as running the artifact directly, with rich
    output. Exactly one mode flag may be given; without one the tree is
    created in the target directory.

    Example:
        $ repocapsule apply setup-demo.py --target-dir ./demo --verify
    """
    selected = [
        mode
        for mode, flag in (
            (Mode.UPDATE, update),
            (Mode.DRY_RUN, dry_run),
            (Mode.VERIFY, verify),
            (Mode.RECALCULATE_HASH, recalculate_hash),
            (Mode.RETRY_FAILED, retry_failed),
            (Mode.DUMP, dump),
            (Mode.DIFF, diff is not None),
        )
        if flag
    ]
    if len(selected) > 1:
        names = ", ".join(m.value for m in selected)
        _fail(json_output, debug, "usage_error", f"Modes are mutually exclusive, got: {names}")
    mode = selected[0] if selected else Mode.CREATE
    if filter_pattern is not None and mode not in (Mode.DUMP, Mode.DIFF):
        _fail(json_output, debug, "usage_error", "--filter only applies to --dump and --diff")

    options = RunOptions(
        mode=mode,
        target_dir=target_dir,
        pattern=filter_pattern,
        reference_dir=diff,
        failed_list=failed_list,
        assume_yes=yes,
    )

    reporter = _make_reporter(verbose, json_output)
    try:
        artifact = parse_artifact(artifact_path)
        if verbose and not json_output:
            header = artifact.header
            console.print(
                f"[dim]Loaded {escape(artifact_path.name)}: {escape(header.repo_name)} "
                f"{escape(header.repo_version)}, {header.file_count} files[/dim]"
            )
        engine = Reconstructor(
            artifact,
            reporter,
            confirm=_never_confirm if json_output else _confirm,
        )
        with interruption_guard():
            result = engine.run(options)
    except KeyboardInterrupt:
        _fail(json_output, debug, "interrupted", "Interrupted")
    except CapsuleError as e:
        _fail_with_error(json_output, debug, e)
    except Exception as e:
        _fail(json_output, debug, "apply_error", str(e))

    if json_output:
        print(dumps(run_result_to_dict(result)))
    else:
        console.print()
        print_run_summary(console, result, verbose=verbose)
    raise typer.Exit(code=result.exit_code)


# =============================================================================
# doctor
# =============================================================================


@app.command()
def doctor(
    json_output: Annotated[
        bool,
        typer.Option(
            "--json",
            help="Output results in JSON format.",
        ),
    ] = False,
) -> None:
    """
    Check system environment and optional capabilities.

    Verifies what builds and reconstructions rely on:
    - Python version (3.11+)
    - Type sniffer (`file`) for text/binary classification
    - Entropy source for payload delimiters
    - git, for recording the source commit of builds made with --include-git

    Example:
        $ repocapsule doctor
    """
    checks = []
    all_ok = True

    # Check 1: Python version
    py_version = sys.version_info
    py_version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    py_ok = py_version >= (3, 11)
    checks.append({
        "name": "Python version",
        "ok": py_ok,
        "value": py_version_str,
        "message": "OK" if py_ok else "Requires Python 3.11+",
    })
    if not py_ok:
        all_ok = False

    # Check 2: Type sniffer (optional; the printable-character fallback applies without it)
    default_sniffer = ClassifierPolicy().sniffer_command
    sniffer_path = shutil.which(default_sniffer)
    checks.append({
        "name": "Type sniffer",
        "ok": True,
        "value": sniffer_path or default_sniffer,
        "message": "Available" if sniffer_path else "Not found; classification uses the printable-character fallback",
        "optional": True,
    })

    # Check 3: Entropy source for delimiters
    try:
        uuid.uuid4()
        entropy_source = "os.urandom"
        entropy_message = "Available"
    except NotImplementedError:
        entropy_source = "time + random"
        entropy_message = "os.urandom unavailable; delimiters use the clock and PRNG fallback"
    checks.append({
        "name": "Entropy source",
        "ok": True,
        "value": entropy_source,
        "message": entropy_message,
    })

    # Check 4: git (optional; only used to record the source commit with --include-git)
    git_path = shutil.which("git")
    checks.append({
        "name": "git",
        "ok": True,
        "value": git_path or "git",
        "message": "Available" if git_path else "Not found; --include-git builds will not record a source commit",
        "optional": True,
    })

    # Output results
    if json_output:
        output = {
            "ok": all_ok,
            "version": __version__,
            "checks": checks,
        }
        print(json.dumps(output, indent=2))
    else:
        console.print(f"[bold]RepoCapsule Doctor[/bold] v{__version__}")
        console.print()

        for check in checks:
            icon = "[green]✓[/green]" if check["ok"] else "[red]✗[/red]"
            if check["ok"] and check.get("optional") and "Not found" in check["message"]:
                icon = "[yellow]![/yellow]"
            name = check["name"]
            value = escape(str(check.get("value", "")))
            message = escape(check.get("message", ""))

            if check["ok"]:
                console.print(f"{icon} {name}: [dim]{value}[/dim] - {message}")
            else:
                console.print(f"{icon} {name}: [dim]{value}[/dim]")
                console.print(f"    [red]{message}[/red]")

        console.print()
        if all_ok:
            console.print("[green]All checks passed![/green]")
        else:
            console.print("[yellow]Some checks failed. See above for details.[/yellow]")

    raise typer.Exit(code=0 if all_ok else 1)


# =============================================================================
# Helpers
# =============================================================================


def _confirm(prompt: str) -> bool:
    try:
        return typer.confirm(prompt, default=False)
    except typer.Abort:
        return False


def _never_confirm(prompt: str) -> bool:
    """JSON mode cannot prompt; --yes is required to proceed."""
    return False


def _make_reporter(verbose: bool, json_output: bool) -> RichReporter:
    """Progress goes to stderr in JSON mode so stdout stays parseable."""
    if json_output:
        return RichReporter(console=err_console, verbose=verbose)
    return RichReporter(console=console, verbose=verbose, error_console=console)


def _fail(json_output: bool, debug: bool, error_type: str, message: str) -> NoReturn:
    if json_output:
        _output_json_error(error_type, message, debug)
    else:
        console.print(f"[red]Error: {escape(message)}[/red]")
        if debug:
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
    raise typer.Exit(code=1)


def _fail_with_error(json_output: bool, debug: bool, error: CapsuleError) -> NoReturn:
    if json_output:
        print(dumps(error_to_dict(error, traceback.format_exc() if debug else None)))
    else:
        console.print(f"[red]Error: {escape(str(error))}[/red]")
        if debug:
            console.print(f"[dim]{escape(traceback.format_exc())}[/dim]")
    raise typer.Exit(code=1)


def _output_json_error(error_type: str, message: str, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    output = {
        "error": True,
        "error_type": error_type,
        "message": message,
    }
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    app()
