"""Mender CLI -- generate, repair and inspect build-repair sessions.

This module is never imported from mender/__init__.py. It is only loaded
via the ``mender`` entry point defined in pyproject.toml.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

import click

from mender.cli.formatting import format_error, get_console

if TYPE_CHECKING:
    from collections.abc import Iterator

    from rich.console import Console

    from mender.history.store import HistoryStore


@click.group()
@click.option(
    "--history-dir",
    default="fixhistory",
    envvar="MENDER_HISTORY_DIR",
    help="Directory of the file history store.",
)
@click.option(
    "--history-url",
    default=None,
    envvar="MENDER_HISTORY_URL",
    help="SQLAlchemy URL of a SQL history store (overrides --history-dir).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
@click.pass_context
def cli(ctx: click.Context, history_dir: str, history_url: str | None, verbose: bool) -> None:
    """Mender: drive a code oracle until a project builds."""
    ctx.ensure_object(dict)
    ctx.obj["history_dir"] = history_dir
    ctx.obj["history_url"] = history_url
    ctx.obj["verbose"] = verbose
    if verbose:
        _install_logging(logging.DEBUG)


def _install_logging(level: int) -> None:
    from rich.console import Console
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _open_history(ctx: click.Context) -> HistoryStore:
    from mender.history.sql import SqlHistoryStore
    from mender.history.store import FileHistoryStore

    if ctx.obj.get("history_url"):
        return SqlHistoryStore.from_url(ctx.obj["history_url"])
    return FileHistoryStore(ctx.obj.get("history_dir", "fixhistory"))


@contextmanager
def _history_session(ctx: click.Context) -> Iterator[tuple[HistoryStore, Console]]:
    """Open the history store, yield (store, console), and format failures.

    Any exception escaping the block is printed as a CLI error and turned
    into exit code 1.
    """
    console = get_console()
    try:
        store = _open_history(ctx)
        try:
            yield store, console
        finally:
            store.close()
    except SystemExit:
        raise
    except Exception as e:
        format_error(str(e), console)
        raise SystemExit(1) from None


# Register subcommands after cli group is defined
from mender.cli.commands.capabilities import capabilities  # noqa: E402
from mender.cli.commands.history import history  # noqa: E402
from mender.cli.commands.repair import repair  # noqa: E402
from mender.cli.commands.sessions import sessions  # noqa: E402

cli.add_command(repair)
cli.add_command(history)
cli.add_command(sessions)
cli.add_command(capabilities)
