"""CLI command: phonehome run <cmd> — launch a process under monitoring."""

from __future__ import annotations

import logging
import signal
import sys

import click
from rich.console import Console

from phonehome.capture.base import SnapshotProvider, select_provider
from phonehome.config import MonitorConfig
from phonehome.errors import (
    ConfigError,
    SamplingFatalError,
    SpawnError,
    TerminationError,
    UnsupportedPlatformError,
)
from phonehome.report import ConsoleReporter
from phonehome.session.manager import SessionManager

console = Console(stderr=True, highlight=False)
logger = logging.getLogger(__name__)

# The child was killed because of the exit-first policy
EXIT_POLICY_TERMINATED = 3
EXIT_FATAL = 1
EXIT_SPAWN_FAILED = 127


@click.command(
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False}
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option(
    "--exit-first",
    "-e",
    is_flag=True,
    help="Terminate the command on its first network connection.",
)
@click.option(
    "--block",
    "-b",
    "-bc",
    is_flag=True,
    help="Block every network connection but let the command continue.",
)
@click.option(
    "--timeout",
    "-t",
    "dns_timeout",
    type=click.IntRange(min=0),
    default=1000,
    show_default=True,
    help="DNS lookup timeout in milliseconds.",
)
@click.option(
    "--interval",
    "-i",
    type=click.IntRange(min=1),
    default=250,
    show_default=True,
    help="Socket polling interval in milliseconds.",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug information.")
@click.option("--quiet", "-q", is_flag=True, help="Show only essential information.")
@click.pass_context
def run(
    ctx: click.Context,
    command: tuple[str, ...],
    exit_first: bool,
    block: bool,
    dns_timeout: int,
    interval: int,
    verbose: bool,
    quiet: bool,
) -> None:
    """Launch COMMAND and monitor its network connections."""
    verbose = verbose or bool(ctx.obj and ctx.obj.get("verbose"))
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = MonitorConfig.from_options(
            exit_first=exit_first,
            block=block,
            dns_timeout_ms=dns_timeout,
            interval_ms=interval,
            verbose=verbose,
            quiet=quiet,
        )
    except ConfigError as exc:
        raise click.UsageError(str(exc)) from exc

    reporter = ConsoleReporter(console=console, quiet=quiet, verbose=verbose)

    try:
        provider = select_provider(config.proc_root)
    except UnsupportedPlatformError as exc:
        reporter.fatal(str(exc))
        sys.exit(EXIT_FATAL)

    sys.exit(_run_monitored(config, provider, reporter, command))


def _run_monitored(
    config: MonitorConfig,
    provider: SnapshotProvider,
    reporter: ConsoleReporter,
    command: tuple[str, ...],
) -> int:
    """Run the command to completion and return the tool's exit code."""
    command_line = " ".join(command)
    reporter.banner(command_line, config.mode, int(config.dns_timeout * 1000))

    manager = SessionManager(
        config=config,
        provider=provider,
        on_event=reporter.event,
        on_resolved=reporter.resolved,
    )

    try:
        manager.run(list(command))
    except SpawnError as exc:
        reporter.fatal(str(exc))
        return EXIT_SPAWN_FAILED

    reporter.started(command_line)

    def _signal_handler(signum: int, frame: object) -> None:
        console.print("\n[dim]Stopping...[/dim]")
        manager.stop()

    previous = {
        sig: signal.signal(sig, _signal_handler)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        session = manager.monitor_loop()
    except SamplingFatalError as exc:
        reporter.fatal(str(exc), exc.hint)
        _terminate_quietly(manager)
        reporter.summary(manager.summary())
        return EXIT_FATAL
    except TerminationError as exc:
        reporter.fatal(str(exc))
        reporter.summary(manager.summary())
        return EXIT_FATAL
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if session.terminated_by_policy:
        reporter.terminated()
        reporter.summary(manager.summary(), session.exit_code)
        return EXIT_POLICY_TERMINATED

    # No-op unless stop() ended the loop while the tree was still running
    _terminate_quietly(manager)
    rc = manager.wait_subprocess()

    reporter.finished(command_line)
    reporter.summary(manager.summary(), rc)
    return rc or 0


def _terminate_quietly(manager: SessionManager) -> None:
    try:
        manager.terminate_subprocess()
    except TerminationError as exc:
        logger.warning("Could not terminate monitored process: %s", exc)
