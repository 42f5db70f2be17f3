"""Console reporter — renders run events and the final report with Rich."""

from __future__ import annotations

from datetime import datetime

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.table import Table

from phonehome import __version__
from phonehome.policy.models import PolicyMode
from phonehome.session.models import ConnectionEvent
from phonehome.session.stats import RunSummary

_TOP_DESTINATIONS = 5


def _clock(ts: float | None = None) -> str:
    when = datetime.fromtimestamp(ts) if ts is not None else datetime.now()
    return when.strftime("%H:%M:%S")


class ConsoleReporter:
    """Writes everything to stderr so the child's stdout stays untouched."""

    def __init__(
        self,
        console: Console | None = None,
        quiet: bool = False,
        verbose: bool = False,
    ) -> None:
        self.console = console or Console(stderr=True, highlight=False)
        self.quiet = quiet
        self.verbose = verbose

    def banner(self, command: str, mode: PolicyMode, dns_timeout_ms: int) -> None:
        if self.quiet:
            return
        c = self.console
        c.print(Rule(style="bright_blue"))
        c.print(f"[bold]phonehome[/bold] v{__version__}")
        c.print("   Monitor and control network connections of processes")
        c.print(Rule(style="bright_blue"))
        c.print("\n[bright_blue]Configuration:[/bright_blue]")
        c.print(f"   Command: [yellow]{escape(command)}[/yellow]")
        color = "green" if mode is PolicyMode.OBSERVE else "red"
        c.print(f"   Mode: [{color}]{mode.label}[/{color}]")
        c.print(f"   DNS Timeout: {dns_timeout_ms} ms")
        c.print(f"   Verbose: {'Yes' if self.verbose else 'No'}\n")

    def started(self, command: str) -> None:
        if not self.quiet:
            self.console.print(
                f"[dim]\\[{_clock()}][/dim] [bright_blue]STARTED[/bright_blue] "
                f"[yellow]{escape(command)}[/yellow]"
            )

    def finished(self, command: str) -> None:
        if not self.quiet:
            self.console.print(
                f"[dim]\\[{_clock()}][/dim] [bright_blue]FINISHED[/bright_blue] "
                f"[yellow]{escape(command)}[/yellow]"
            )

    def event(self, event: ConnectionEvent) -> None:
        # Blocked connections are always shown, even in quiet mode
        if self.quiet and not event.blocked:
            return
        label = "[red]BLOCKED[/red]" if event.blocked else "[green]CONNECTION[/green]"
        line = (
            f"[dim]\\[{_clock(event.observed_at)}][/dim] {label} "
            f"[yellow]{escape(event.key.remote)}[/yellow]"
        )
        if event.resolved_domain:
            line += f" [bright_blue]→[/bright_blue] [cyan]{escape(event.resolved_domain)}[/cyan]"
        self.console.print(line)

    def resolved(self, event: ConnectionEvent) -> None:
        """A domain arrived after the event was already printed."""
        if self.verbose and event.resolved_domain:
            self.console.print(
                f"[dim]   resolved {escape(event.key.remote)} → "
                f"{escape(event.resolved_domain)}[/dim]"
            )

    def terminated(self) -> None:
        self.console.print("[red]Process terminated due to network activity[/red]")

    def fatal(self, message: str, hint: str = "") -> None:
        self.console.print(f"[bold red]Error:[/bold red] {escape(message)}")
        if hint:
            self.console.print(f"[dim]Hint: {escape(hint)}[/dim]")

    def summary(self, summary: RunSummary, exit_code: int | None = None) -> None:
        c = self.console
        if self.quiet:
            if summary.total_connections:
                c.print(
                    f"\nTotal connections: [yellow]{summary.total_connections}[/yellow] "
                    f"[dim]({summary.duration:.1f}s)[/dim]"
                )
            return

        c.print()
        c.print(Rule("Network Activity Report", style="bright_blue"))

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="dim")
        table.add_column()
        table.add_row("Duration", f"{summary.duration:.1f} seconds")
        table.add_row("Connections", str(summary.total_connections))
        table.add_row("Blocked", str(summary.blocked_connections))
        table.add_row("Unique IPs", str(summary.unique_ips))
        table.add_row("Unique Destinations", str(summary.unique_destinations))
        table.add_row("Exit Code", str(exit_code) if exit_code is not None else "N/A")
        c.print(table)

        if not summary.destinations:
            return

        c.print("\n[bright_blue]Top Destinations:[/bright_blue]")
        top = Table(show_header=False, box=None, padding=(0, 2))
        top.add_column(justify="right", style="yellow")
        top.add_column(justify="right")
        top.add_column(style="cyan")
        for name, count in summary.top(_TOP_DESTINATIONS):
            top.add_row(str(count), f"{summary.share(count):.1f}%", escape(name))
        c.print(top)

        remaining = summary.unique_destinations - _TOP_DESTINATIONS
        if remaining > 0:
            c.print(f"   ... and {remaining} more")
