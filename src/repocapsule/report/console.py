"""
Console reporting for RepoCapsule.

Renders build and run progress with the Rich library: status icons for
progress messages, a header panel and summary tables for results.

Design Principles:
    - Human-readable first: Optimize for quick scanning
    - Status at a glance: Use icons and colors for status
    - Progressive detail: Summary first, per-entry detail with --verbose
    - User text is never interpreted as markup
"""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from repocapsule.assembler import BuildResult
from repocapsule.runtime.engine import EntryState, Mode, RunResult
from repocapsule.runtime.reporting import Reporter


# Status icons
ICON_SUCCESS = "[green]✓[/green]"
ICON_ERROR = "[red]✗[/red]"
ICON_WARNING = "[yellow]![/yellow]"
ICON_INFO = "[blue]•[/blue]"
ICON_SKIPPED = "[dim]○[/dim]"

_STATE_STYLES = {
    EntryState.PERMISSIONS_APPLIED: ICON_SUCCESS,
    EntryState.WRITTEN: ICON_WARNING,
    EntryState.SKIPPED: ICON_SKIPPED,
    EntryState.FAILED: ICON_ERROR,
    EntryState.PENDING: ICON_SKIPPED,
    EntryState.DECODING: ICON_SKIPPED,
}


class RichReporter(Reporter):
    """Reporter that prints through a Rich console."""

    def __init__(
        self,
        console: Console | None = None,
        verbose: bool = False,
        error_console: Console | None = None,
    ) -> None:
        super().__init__(verbose)
        self.console = console or Console()
        self.error_console = error_console or self.console

    def info(self, message: str) -> None:
        self.console.print(f"{ICON_INFO} {escape(message)}")

    def success(self, message: str) -> None:
        self.console.print(f"{ICON_SUCCESS} {escape(message)}")

    def warn(self, message: str) -> None:
        self.error_console.print(f"{ICON_WARNING} [yellow]{escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        self.error_console.print(f"{ICON_ERROR} [red]{escape(message)}[/red]")

    def line(self, text: str) -> None:
        self.console.print(text, markup=False, highlight=False, soft_wrap=True)

    def _emit_debug(self, message: str) -> None:
        self.console.print(f"[dim]{escape(message)}[/dim]")


def print_build_summary(console: Console, result: BuildResult, verbose: bool = False) -> None:
    """Print a panel and table describing a finished build."""
    artifact = result.artifact
    header = Text()
    header.append(" Capsule ", style="bold")
    header.append(artifact.repo_name, style="bold cyan")
    header.append(" │ ", style="dim")
    header.append(artifact.repo_version, style="bold")
    header.append(" │ ", style="dim")
    header.append("BUILT", style="bold green")
    console.print(Panel(header, expand=False))

    stats = Table(show_header=False, box=None, padding=(0, 2))
    stats.add_column("Metric", style="dim")
    stats.add_column("Value")
    stats.add_row("Artifact", escape(str(result.output_path)))
    if result.index_path is not None:
        stats.add_row("Index", escape(str(result.index_path)))
    stats.add_row("Files", str(artifact.file_count))
    stats.add_row("Binary files", str(sum(1 for r in artifact.records if r.is_binary)))
    stats.add_row("Total size", f"{artifact.total_size_bytes} bytes")
    stats.add_row("Source hash", artifact.source_hash)
    if artifact.source_commit:
        stats.add_row("Source commit", artifact.source_commit)
    if result.scan.skipped:
        stats.add_row("Unreadable", f"[yellow]{len(result.scan.skipped)}[/yellow]")
    console.print(stats)

    if verbose and artifact.records:
        console.print()
        table = Table(show_header=True, header_style="bold")
        table.add_column("Path", style="cyan", overflow="fold")
        table.add_column("Size", justify="right")
        table.add_column("Perms", width=5)
        table.add_column("Encoding")
        for record in artifact.records:
            table.add_row(
                escape(record.relative_path),
                str(record.size_bytes),
                record.permissions,
                record.encoding.value,
            )
        console.print(table)


def print_run_summary(console: Console, result: RunResult, verbose: bool = False) -> None:
    """Print the outcome of an artifact run."""
    icon = ICON_SUCCESS if result.success else ICON_ERROR
    style = "green" if result.success else "red"
    status = "ok" if result.success else "failed"
    target = escape(str(result.target_dir)) if result.target_dir else ""
    console.print(f"{icon} {result.mode.value} [{style}]{status}[/{style}] [dim]{target}[/dim]")

    if result.mode in (Mode.VERIFY, Mode.RECALCULATE_HASH) and result.computed_hash:
        console.print(f"  [dim]Embedded:[/dim] {result.expected_hash}")
        console.print(f"  [dim]Computed:[/dim] {result.computed_hash}")
        if result.backup_path is not None:
            console.print(f"  [dim]Backup:[/dim]   {escape(str(result.backup_path))}")

    if result.diff is not None:
        diff = result.diff
        console.print(
            f"  [dim]Only in reference: {len(diff.only_in_reference)} | "
            f"Only in capsule: {len(diff.only_in_capsule)} | "
            f"Changed: {len(diff.changed)} | "
            f"Mode changes: {len(diff.permission_changes)}[/dim]"
        )

    state = result.state
    if result.mode in (Mode.CREATE, Mode.UPDATE, Mode.RETRY_FAILED) and state.outcomes:
        console.print(
            f"  [dim]Written: {state.success_count} | Skipped: {state.skipped_count} | "
            f"Failed: {len(state.failed_entries)}[/dim]"
        )
        shown = [o for o in state.outcomes if verbose or o.state == EntryState.FAILED]
        if shown:
            table = Table(show_header=True, header_style="bold")
            table.add_column("", width=2)
            table.add_column("Path", style="cyan", overflow="fold")
            table.add_column("State")
            table.add_column("Details", overflow="fold")
            for outcome in shown:
                table.add_row(
                    _STATE_STYLES[outcome.state],
                    escape(outcome.relative_path),
                    outcome.state.value,
                    escape(outcome.detail or ""),
                )
            console.print(table)
