"""CLI entry point — Click group with global options."""

from __future__ import annotations

import logging

import click

from phonehome import __version__


@click.group()
@click.version_option(version=__version__, prog_name="phonehome")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    """phonehome — see which TCP connections a command opens, and stop them."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _configure_logging(verbose)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from phonehome.cli.run import run  # noqa: F811

    main.add_command(run)


_register_commands()
