"""Console output helpers built on rich."""
from typing import List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .models import NodeStatus, RolloutResult, UpgradeProgress

SEPARATOR = "=" * 44

STATUS_STYLES = {
    'OK': 'green',
    'UNREACHABLE': 'red',
}

ROLE_STYLES = {
    'controlplane': 'magenta',
    'worker': 'cyan',
}


class ConsoleOutput:
    """Prefixed log lines, headers and tables for the terminal."""

    def __init__(self, console: Optional[Console] = None, err_console: Optional[Console] = None):
        self.console = console or Console(highlight=False, soft_wrap=True)
        self.err_console = err_console or self.console

    def info(self, message: str) -> None:
        self.console.print(f"[blue]\\[INFO][/blue] {escape(message)}")

    def success(self, message: str) -> None:
        self.console.print(f"[green]\\[OK][/green] {escape(message)}")

    def warn(self, message: str) -> None:
        self.console.print(f"[yellow]\\[WARN][/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]\\[ERROR][/red] {escape(message)}")

    def header(self, title: str) -> None:
        self.console.print(f"[bold]=== {escape(title)} ===[/bold]")

    def subheader(self, title: str) -> None:
        self.console.print(f"--- {escape(title)} ---")

    def separator(self) -> None:
        self.console.print(SEPARATOR)

    def print(self, message: str = "") -> None:
        self.console.print(escape(message))

    def status_table(self, statuses: List[NodeStatus]) -> None:
        table = Table(box=None, header_style="bold", pad_edge=False)
        for column in ("NODE", "TYPE", "PROFILE", "VERSION", "SECBOOT", "STATUS"):
            table.add_column(column)

        for s in statuses:
            status = "OK" if s.reachable else "UNREACHABLE"
            role_style = ROLE_STYLES.get(s.role, 'white')
            table.add_row(
                s.address,
                f"[{role_style}]{escape(s.role)}[/{role_style}]",
                escape(s.profile),
                escape(s.version),
                "yes" if s.secureboot else "no",
                f"[{STATUS_STYLES[status]}]{status}[/{STATUS_STYLES[status]}]",
            )
        self.console.print(table)

    def summary(self, result: RolloutResult) -> None:
        """Print all outcome buckets, including empty ones."""
        self.header("Upgrade Summary")
        self.print()
        self.info(f"Skipped (already at target): {_join(result.skipped)}")
        if result.dry_run:
            self.info(f"Would upgrade: {_join(result.planned)}")
        else:
            self.info(f"Upgraded: {_join(result.succeeded)}")
        if result.failed:
            for address, reason in result.failed.items():
                self.error(f"Failed: {address}: {reason}")
        else:
            self.info("Failed: none")
        if result.halted:
            self.warn("Rollout halted after control plane failure; remaining nodes were not attempted")
        if result.success and not result.dry_run:
            self.success("All nodes upgraded successfully!")


def _join(items: List[str]) -> str:
    return ", ".join(items) if items else "none"


class ProgressPrinter:
    """Progress observer printing stage changes and new phases and tasks.

    Repeated phase or task records are suppressed here; the upgrade engine
    forwards every record it sees.
    """

    def __init__(self, out: ConsoleOutput):
        self.out = out
        self.last_phase = ''
        self.last_task = ''

    def __call__(self, progress: UpgradeProgress) -> None:
        if progress.stage:
            suffix = f" {progress.action}" if progress.action else ""
            self.out.info(f"  [{progress.stage}]{suffix}")
        if progress.phase and progress.phase != self.last_phase:
            self.last_phase = progress.phase
            self.out.info(f"    phase: {progress.phase} ({progress.action})")
        if progress.task and progress.task != self.last_task:
            self.last_task = progress.task
            self.out.info(f"      task: {progress.task} ({progress.action})")
        if progress.error:
            self.out.error(f"    {progress.error}")
